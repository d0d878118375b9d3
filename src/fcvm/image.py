"""Image data model shared by the registry and archive sources."""

from __future__ import annotations

import contextlib
import json
import re
from collections.abc import Iterator
from dataclasses import dataclass, field
from typing import Any, BinaryIO

from .errors import NoMatchingPlatform

TARGET_OS = "linux"
TARGET_ARCHITECTURE = "amd64"


def _string_list(value: Any, *, key: str) -> tuple[str, ...]:
    # null and missing both mean "empty"; a bare string is a one-element list
    if value is None:
        return ()
    if isinstance(value, str):
        return (value,)
    if isinstance(value, list) and all(isinstance(item, str) for item in value):
        return tuple(value)
    raise ValueError(f"`{key}` must be a list of strings, got: {value!r}")


@dataclass(frozen=True)
class ImageConfig:
    working_dir: str = "/"
    env: tuple[str, ...] = ()
    cmd: tuple[str, ...] = ()
    entrypoint: tuple[str, ...] = ()

    @classmethod
    def from_container_config(cls, payload: dict[str, Any] | None) -> "ImageConfig":
        if payload is None:
            return cls()
        if not isinstance(payload, dict):
            raise ValueError("image `config` must be a JSON object.")
        working_dir = payload.get("WorkingDir") or "/"
        if not isinstance(working_dir, str):
            raise ValueError(f"`WorkingDir` must be a string, got: {working_dir!r}")
        return cls(
            working_dir=working_dir,
            env=_string_list(payload.get("Env"), key="Env"),
            cmd=_string_list(payload.get("Cmd"), key="Cmd"),
            entrypoint=_string_list(payload.get("Entrypoint"), key="Entrypoint"),
        )

    @classmethod
    def from_blob(cls, data: bytes) -> "ImageConfig":
        """Parse an image config blob (the document a manifest's config points at)."""
        payload = json.loads(data.decode("utf-8"))
        if not isinstance(payload, dict):
            raise ValueError("image config must be a JSON object.")
        return cls.from_container_config(payload.get("config"))

    def with_entrypoint(self, entrypoint: list[str] | tuple[str, ...]) -> "ImageConfig":
        """Replace the entrypoint and clear cmd, like ``docker run --entrypoint``."""
        return ImageConfig(
            working_dir=self.working_dir,
            env=self.env,
            cmd=(),
            entrypoint=tuple(entrypoint),
        )

    def to_json(self) -> dict[str, Any]:
        return {
            "WorkingDir": self.working_dir,
            "Env": list(self.env),
            "Cmd": list(self.cmd),
            "Entrypoint": list(self.entrypoint),
        }


@dataclass(frozen=True)
class LayerDescriptor:
    digest: str
    size: int = 0
    media_type: str = ""


@dataclass(frozen=True)
class PlatformEntry:
    digest: str
    os: str
    architecture: str
    media_type: str = ""


@dataclass(frozen=True)
class Manifest:
    """Either a platform manifest (config + layers) or a manifest list."""

    config_digest: str | None = None
    layers: tuple[LayerDescriptor, ...] = ()
    platforms: tuple[PlatformEntry, ...] = ()
    is_list: bool = False
    legacy_config: ImageConfig | None = None

    @classmethod
    def from_json(cls, payload: dict[str, Any]) -> "Manifest":
        if not isinstance(payload, dict):
            raise ValueError("Manifest payload must be a JSON object.")

        if "manifests" in payload:
            entries = payload.get("manifests")
            if not isinstance(entries, list):
                raise ValueError("Manifest list `manifests` must be a list.")
            platforms = []
            for item in entries:
                if not isinstance(item, dict) or not isinstance(item.get("digest"), str):
                    continue
                platform = item.get("platform") or {}
                platforms.append(
                    PlatformEntry(
                        digest=item["digest"],
                        os=str(platform.get("os", "")),
                        architecture=str(platform.get("architecture", "")),
                        media_type=str(item.get("mediaType", "")),
                    )
                )
            return cls(platforms=tuple(platforms), is_list=True)

        if payload.get("schemaVersion") == 1:
            return cls._from_schema1(payload)

        config = payload.get("config") or {}
        config_digest = config.get("digest") if isinstance(config, dict) else None
        layers = []
        for item in payload.get("layers") or []:
            if not isinstance(item, dict) or not isinstance(item.get("digest"), str):
                raise ValueError(f"Malformed layer descriptor: {item!r}")
            layers.append(
                LayerDescriptor(
                    digest=item["digest"],
                    size=int(item.get("size") or 0),
                    media_type=str(item.get("mediaType", "")),
                )
            )
        return cls(config_digest=config_digest, layers=tuple(layers))

    @classmethod
    def _from_schema1(cls, payload: dict[str, Any]) -> "Manifest":
        # schema 1 lists layers newest-first and embeds the config in history
        fs_layers = payload.get("fsLayers") or []
        layers = tuple(
            LayerDescriptor(digest=item["blobSum"])
            for item in reversed(fs_layers)
            if isinstance(item, dict) and isinstance(item.get("blobSum"), str)
        )
        legacy_config = ImageConfig()
        history = payload.get("history") or []
        if history and isinstance(history[0], dict):
            raw = history[0].get("v1Compatibility")
            if isinstance(raw, str):
                compat = json.loads(raw)
                legacy_config = ImageConfig.from_container_config(compat.get("config"))
        return cls(layers=layers, legacy_config=legacy_config)

    def select_platform(
        self,
        *,
        os_name: str = TARGET_OS,
        architecture: str = TARGET_ARCHITECTURE,
    ) -> PlatformEntry:
        for entry in self.platforms:
            if entry.architecture == architecture and entry.os == os_name:
                return entry
        available = ", ".join(f"{entry.os}/{entry.architecture}" for entry in self.platforms)
        raise NoMatchingPlatform(
            f"No {os_name}/{architecture} entry in manifest list (available: {available or 'none'})."
        )


def derive_unit_name(repository: str, reference: str) -> str:
    """Name of the bootable unit derived from an image repository and tag."""
    base = repository.rstrip("/").rsplit("/", 1)[-1] or "image"
    tag = reference.split(":", 1)[-1][:12] if reference.startswith("sha256:") else reference
    slug = re.sub(r"[^A-Za-z0-9_.-]+", "-", f"{base}-{tag}").strip("-.")
    return f"{slug}-fc"


@dataclass
class ImageSource:
    """A resolved image: manifest, config, and layers opened on demand."""

    name: str
    manifest: Manifest
    config: ImageConfig
    layers: tuple[LayerDescriptor, ...] = field(default=())

    def open_layer(self, layer: LayerDescriptor) -> contextlib.AbstractContextManager[BinaryIO]:
        raise NotImplementedError

    def iter_layer_streams(self) -> Iterator[tuple[LayerDescriptor, BinaryIO]]:
        """Yield each layer with an open stream, strictly in manifest order."""
        for layer in self.layers:
            with self.open_layer(layer) as stream:
                yield layer, stream

    def close(self) -> None:
        return None

    def __enter__(self) -> "ImageSource":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()
        return None
