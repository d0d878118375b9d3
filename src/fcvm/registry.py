"""Registry client: reference parsing, token auth, manifests and blobs."""

from __future__ import annotations

import contextlib
import hashlib
import io
import json
import logging
import re
import ssl
import urllib.error
import urllib.parse
import urllib.request
from collections.abc import Iterator
from dataclasses import dataclass
from typing import Any, BinaryIO

from .errors import AuthError, FetchError, ReferenceParseError
from .image import ImageConfig, ImageSource, LayerDescriptor, Manifest, derive_unit_name

logger = logging.getLogger(__name__)

DEFAULT_REGISTRY = "registry-1.docker.io"
AUTH_URL = "https://auth.docker.io/token"
AUTH_SERVICE = "registry.docker.io"
USER_AGENT = "fcvm/0.1"
MAX_MANIFEST_DEPTH = 4
_DEFAULT_TIMEOUT_S = 120
_CHUNK_SIZE = 1 << 20

MANIFEST_ACCEPT = (
    "application/vnd.docker.distribution.manifest.list.v2+json",
    "application/vnd.docker.distribution.manifest.v1+json",
    "application/vnd.docker.distribution.manifest.v2+json",
    "application/vnd.oci.image.index.v1+json",
    "application/vnd.oci.image.manifest.v1+json",
)

_HUB_ALIASES = {"docker.io", "index.docker.io", "registry.hub.docker.com"}
_REPOSITORY_RE = re.compile(r"^[a-z0-9]+(?:(?:[._]|__|-+)[a-z0-9]+)*(?:/[a-z0-9]+(?:(?:[._]|__|-+)[a-z0-9]+)*)*$")
_TAG_RE = re.compile(r"^[A-Za-z0-9_][A-Za-z0-9_.-]{0,127}$")
_DIGEST_RE = re.compile(r"^[a-z0-9]+(?:[+._-][a-z0-9]+)*:[A-Fa-f0-9]{32,}$")


@dataclass(frozen=True)
class ImageReference:
    registry: str
    repository: str
    reference: str

    @property
    def registry_url(self) -> str:
        return f"https://{self.registry}"

    @property
    def is_default_registry(self) -> bool:
        return self.registry == DEFAULT_REGISTRY

    @property
    def display(self) -> str:
        separator = "@" if self.reference.startswith("sha256:") else ":"
        return f"{self.registry}/{self.repository}{separator}{self.reference}"


def _looks_like_host(segment: str) -> bool:
    return "." in segment or ":" in segment or segment == "localhost"


def resolve(image_ref: str) -> ImageReference:
    """Split an image reference into registry host, repository path and tag."""
    text = image_ref.strip()
    if not text:
        raise ReferenceParseError("image reference cannot be empty")
    if any(char.isspace() for char in text):
        raise ReferenceParseError(f"image reference contains whitespace: {image_ref!r}")

    if "@" in text:
        base, reference = text.rsplit("@", 1)
        if not _DIGEST_RE.match(reference):
            raise ReferenceParseError(f"malformed digest in image reference: {image_ref!r}")
    else:
        slash = text.rfind("/")
        colon = text.rfind(":")
        if colon > slash:
            base = text[:colon]
            reference = text[colon + 1 :]
            if not _TAG_RE.match(reference):
                raise ReferenceParseError(f"malformed tag in image reference: {image_ref!r}")
        else:
            base = text
            reference = "latest"

    first, _, rest = base.partition("/")
    if rest and _looks_like_host(first):
        registry = first
        repository = rest
    else:
        registry = DEFAULT_REGISTRY
        repository = base

    if registry in _HUB_ALIASES:
        registry = DEFAULT_REGISTRY
    if registry == DEFAULT_REGISTRY and "/" not in repository:
        repository = f"library/{repository}"

    if not _REPOSITORY_RE.match(repository):
        raise ReferenceParseError(f"malformed repository in image reference: {image_ref!r}")
    return ImageReference(registry=registry, repository=repository, reference=reference)


def _ssl_context(ref: ImageReference) -> ssl.SSLContext | None:
    if ref.is_default_registry:
        return None
    # private registries commonly run with self-signed certificates
    context = ssl.create_default_context()
    context.check_hostname = False
    context.verify_mode = ssl.CERT_NONE
    return context


def _http_open(
    *,
    url: str,
    headers: dict[str, str],
    context: ssl.SSLContext | None = None,
    timeout_s: int = _DEFAULT_TIMEOUT_S,
):
    request = urllib.request.Request(url, headers=headers)
    return urllib.request.urlopen(request, timeout=timeout_s, context=context)


def _registry_request(
    ref: ImageReference,
    token: str | None,
    path: str,
    *,
    accept: str | None = None,
):
    url = f"{ref.registry_url}/v2/{ref.repository}/{path.lstrip('/')}"
    headers = {"User-Agent": USER_AGENT}
    if accept:
        headers["Accept"] = accept
    if token:
        headers["Authorization"] = f"Bearer {token}"

    logger.debug("GET %s", url)
    try:
        return _http_open(url=url, headers=headers, context=_ssl_context(ref))
    except urllib.error.HTTPError as exc:
        if exc.code == 401:
            if ref.is_default_registry:
                raise AuthError(f"Registry rejected bearer token for {ref.repository}.") from exc
            raise AuthError(
                f"{ref.registry} requires authentication; only the Docker Hub token "
                "service is supported."
            ) from exc
        raise FetchError(f"GET {url} failed with HTTP {exc.code}.") from exc
    except (urllib.error.URLError, OSError) as exc:
        raise FetchError(f"GET {url} failed: {exc}") from exc


def authenticate(ref: ImageReference) -> str | None:
    """Return a pull token for Docker Hub; other registries are accessed anonymously."""
    if not ref.is_default_registry:
        return None

    query = urllib.parse.urlencode(
        {"service": AUTH_SERVICE, "scope": f"repository:{ref.repository}:pull"}
    )
    token_url = f"{AUTH_URL}?{query}"
    try:
        with _http_open(url=token_url, headers={"User-Agent": USER_AGENT}) as response:
            payload = json.loads(response.read().decode("utf-8"))
    except (urllib.error.URLError, OSError, ValueError) as exc:
        raise AuthError(f"Failed to obtain registry token from {token_url}: {exc}") from exc

    bearer = None
    if isinstance(payload, dict):
        bearer = payload.get("token") or payload.get("access_token")
    if not bearer:
        raise AuthError(f"Token response from {token_url} carried no token.")
    return bearer


def _fetch_json(
    ref: ImageReference,
    token: str | None,
    path: str,
    *,
    accept: str | None = None,
) -> dict[str, Any]:
    with _registry_request(ref, token, path, accept=accept) as response:
        data = response.read()
    try:
        payload = json.loads(data.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise FetchError(f"Registry returned invalid JSON for {path}: {exc}") from exc
    if not isinstance(payload, dict):
        raise FetchError(f"Registry returned a non-object document for {path}.")
    return payload


def fetch_manifest(
    ref: ImageReference,
    token: str | None,
    reference: str | None = None,
) -> Manifest:
    """Fetch a platform manifest, resolving manifest lists to linux/amd64."""
    target = reference or ref.reference
    accept = ", ".join(MANIFEST_ACCEPT)
    for _ in range(MAX_MANIFEST_DEPTH):
        payload = _fetch_json(ref, token, f"manifests/{target}", accept=accept)
        try:
            manifest = Manifest.from_json(payload)
        except (ValueError, TypeError) as exc:
            raise FetchError(f"Malformed manifest for {ref.repository}@{target}: {exc}") from exc
        if not manifest.is_list:
            return manifest
        target = manifest.select_platform().digest
        logger.info("resolved manifest list to linux/amd64: %s", target)
    raise FetchError(f"Manifest list nesting exceeds {MAX_MANIFEST_DEPTH} levels for {ref.display}.")


class DigestReader(io.RawIOBase):
    """Readable stream that hashes what passes through it."""

    def __init__(self, stream: BinaryIO, digest: str):
        algorithm, _, expected = digest.partition(":")
        if algorithm != "sha256" or not expected:
            raise FetchError(f"Unsupported digest: {digest}")
        self._stream = stream
        self._digest = digest
        self._expected = expected.lower()
        self._hash = hashlib.sha256()

    def readable(self) -> bool:
        return True

    def readinto(self, buffer) -> int:
        data = self._stream.read(len(buffer))
        count = len(data)
        buffer[:count] = data
        self._hash.update(data)
        return count

    def verify(self) -> None:
        """Consume any unread bytes and compare against the expected digest."""
        while True:
            chunk = self._stream.read(_CHUNK_SIZE)
            if not chunk:
                break
            self._hash.update(chunk)
        actual = self._hash.hexdigest()
        if actual != self._expected:
            raise FetchError(f"Digest mismatch for {self._digest}: got sha256:{actual}")


@contextlib.contextmanager
def fetch_blob(ref: ImageReference, token: str | None, digest: str) -> Iterator[BinaryIO]:
    """Stream a blob; the digest is verified once the caller is done reading."""
    with _registry_request(ref, token, f"blobs/{digest}") as response:
        reader = DigestReader(response, digest)
        yield reader
        try:
            reader.verify()
        except (urllib.error.URLError, OSError) as exc:
            raise FetchError(f"Failed reading blob {digest}: {exc}") from exc


def fetch_config(ref: ImageReference, token: str | None, manifest: Manifest) -> ImageConfig:
    if manifest.legacy_config is not None:
        return manifest.legacy_config
    if not manifest.config_digest:
        raise FetchError(f"Manifest for {ref.display} has no config descriptor.")
    with fetch_blob(ref, token, manifest.config_digest) as stream:
        data = stream.read()
    try:
        return ImageConfig.from_blob(data)
    except (ValueError, UnicodeDecodeError) as exc:
        raise FetchError(f"Malformed image config {manifest.config_digest}: {exc}") from exc


class RegistryImage(ImageSource):
    """Image source backed by a remote registry."""

    def __init__(self, ref: ImageReference, token: str | None, manifest: Manifest, config: ImageConfig):
        super().__init__(
            name=derive_unit_name(ref.repository, ref.reference),
            manifest=manifest,
            config=config,
            layers=manifest.layers,
        )
        self.ref = ref
        self.token = token

    def open_layer(self, layer: LayerDescriptor):
        return fetch_blob(self.ref, self.token, layer.digest)


def pull(image_ref: str) -> RegistryImage:
    """Resolve, authenticate, and fetch manifest and config for ``image_ref``."""
    ref = resolve(image_ref)
    logger.info("pulling %s", ref.display)
    token = authenticate(ref)
    manifest = fetch_manifest(ref, token)
    if not manifest.layers:
        raise FetchError(f"Image manifest for {ref.display} has no layers.")
    config = fetch_config(ref, token, manifest)
    return RegistryImage(ref, token, manifest, config)
