"""Image source backed by a ``docker save`` archive on disk."""

from __future__ import annotations

import contextlib
import json
import logging
import tarfile
from collections.abc import Iterator
from pathlib import Path, PurePosixPath
from typing import BinaryIO

from .errors import FetchError
from .image import ImageConfig, ImageSource, LayerDescriptor, Manifest, derive_unit_name

logger = logging.getLogger(__name__)

ARCHIVE_SUFFIXES = (".tar", ".tar.gz", ".tgz")


def looks_like_archive(value: str) -> bool:
    path = Path(value)
    return path.is_file() and value.endswith(ARCHIVE_SUFFIXES)


def _normalize_member_name(name: str) -> str:
    parts = [part for part in PurePosixPath(name).parts if part not in {"", ".", "/"}]
    return "/".join(parts)


def _name_from_repo_tags(repo_tags: object, fallback: str) -> str:
    if isinstance(repo_tags, list) and repo_tags and isinstance(repo_tags[0], str):
        repo, _, tag = repo_tags[0].rpartition(":")
        if repo and "/" not in tag:
            return derive_unit_name(repo, tag)
        return derive_unit_name(repo_tags[0], "latest")
    return derive_unit_name(fallback, "latest")


class ArchiveImage(ImageSource):
    """Layers are read straight out of the archive member by member."""

    def __init__(
        self,
        path: Path,
        archive: tarfile.TarFile,
        members: dict[str, tarfile.TarInfo],
        name: str,
        manifest: Manifest,
        config: ImageConfig,
    ):
        super().__init__(name=name, manifest=manifest, config=config, layers=manifest.layers)
        self.path = path
        self._archive = archive
        self._members = members

    @contextlib.contextmanager
    def open_layer(self, layer: LayerDescriptor) -> Iterator[BinaryIO]:
        handle = self._extract(layer.digest)
        with handle:
            yield handle

    def _extract(self, member_name: str) -> BinaryIO:
        member = self._members.get(_normalize_member_name(member_name))
        if member is None:
            raise FetchError(f"{self.path}: archive has no member {member_name!r}")
        handle = self._archive.extractfile(member)
        if handle is None:
            raise FetchError(f"{self.path}: member {member_name!r} is not a regular file")
        return handle

    def close(self) -> None:
        self._archive.close()


def load(archive_path: str | Path) -> ArchiveImage:
    """Read manifest, config and layer list from a saved image archive.

    Only the first entry of ``manifest.json`` is used.
    """
    path = Path(archive_path)
    try:
        archive = tarfile.open(path, mode="r:*")
    except (OSError, tarfile.TarError) as exc:
        raise FetchError(f"Cannot open image archive {path}: {exc}") from exc

    try:
        members = {
            _normalize_member_name(member.name): member
            for member in archive.getmembers()
            if member.isfile()
        }
        manifest_member = members.get("manifest.json")
        if manifest_member is None:
            raise FetchError(f"{path}: archive has no manifest.json")
        with archive.extractfile(manifest_member) as handle:
            entries = json.loads(handle.read().decode("utf-8"))
        if not isinstance(entries, list) or not entries or not isinstance(entries[0], dict):
            raise FetchError(f"{path}: manifest.json must be a non-empty list of objects")
        if len(entries) > 1:
            logger.warning("%s holds %d images; using the first", path, len(entries))
        entry = entries[0]

        config_name = entry.get("Config")
        layer_names = entry.get("Layers") or []
        if not isinstance(config_name, str) or not isinstance(layer_names, list):
            raise FetchError(f"{path}: manifest.json entry lacks Config/Layers")
        if not layer_names:
            raise FetchError(f"{path}: image has no layers")

        config_member = members.get(_normalize_member_name(config_name))
        if config_member is None:
            raise FetchError(f"{path}: archive has no config member {config_name!r}")
        with archive.extractfile(config_member) as handle:
            config = ImageConfig.from_blob(handle.read())

        manifest = Manifest(
            config_digest=config_name,
            layers=tuple(LayerDescriptor(digest=str(name)) for name in layer_names),
        )
        name = _name_from_repo_tags(entry.get("RepoTags"), path.name.split(".", 1)[0])
    except FetchError:
        archive.close()
        raise
    except (OSError, tarfile.TarError, ValueError, UnicodeDecodeError) as exc:
        archive.close()
        raise FetchError(f"Cannot read image archive {path}: {exc}") from exc

    logger.info("loaded %s from archive %s (%d layers)", name, path, len(manifest.layers))
    return ArchiveImage(path, archive, members, name, manifest, config)
