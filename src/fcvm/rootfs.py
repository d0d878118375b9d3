"""Apply image layers, in order, onto a working directory."""

from __future__ import annotations

import contextlib
import gzip
import io
import logging
import os
import subprocess
import zlib
from collections.abc import Iterable, Iterator
from pathlib import Path, PurePosixPath
from typing import BinaryIO

from .errors import ExtractionError, FcvmError
from .image import LayerDescriptor
from .permissions import PermissionAnomalySet, force_rmtree, normalize
from .tools import HostTools

logger = logging.getLogger(__name__)

WHITEOUT_PREFIX = ".wh."
OPAQUE_MARKER = ".wh..wh..opq"
GZIP_MAGIC = b"\x1f\x8b"
ZSTD_MAGIC = b"\x28\xb5\x2f\xfd"
_MAX_SYMLINK_HOPS = 40
_CHUNK_SIZE = 1 << 20


@contextlib.contextmanager
def open_decompressed(stream: BinaryIO) -> Iterator[BinaryIO]:
    """Yield a plain tar stream, transparently gunzipping when needed."""
    buffered = io.BufferedReader(stream, _CHUNK_SIZE)
    magic = buffered.peek(4)[:4]
    if magic.startswith(GZIP_MAGIC):
        with gzip.GzipFile(fileobj=buffered, mode="rb") as decompressed:
            yield decompressed
        return
    if magic == ZSTD_MAGIC:
        raise ExtractionError("zstd-compressed layers are not supported.")
    yield buffered


def _member_key(name: str) -> str:
    parts = [part for part in PurePosixPath(name).parts if part not in {"", ".", "/"}]
    return "/".join(parts)


def _remove_path(target: Path) -> None:
    if target.is_symlink() or target.is_file():
        target.unlink(missing_ok=True)
    elif target.is_dir():
        force_rmtree(target)
    elif target.exists():
        target.unlink()


def _with_ancestors(keys: set[str]) -> set[str]:
    kept = set(keys)
    for key in keys:
        parts = key.split("/")
        kept.update("/".join(parts[:depth]) for depth in range(1, len(parts)))
    return kept


def _clear_opaque_directory(directory: Path, root: Path, kept: set[str]) -> None:
    # anything below the marker that this layer did not ship is hidden
    for child in list(directory.iterdir()):
        key = child.relative_to(root).as_posix()
        if key not in kept:
            _remove_path(child)
        elif child.is_dir() and not child.is_symlink():
            _clear_opaque_directory(child, root, kept)


def apply_whiteouts(root: Path, members: Iterable[str] = ()) -> int:
    """Delete whited-out siblings and the markers themselves; returns marker count."""
    kept = _with_ancestors({_member_key(name) for name in members})
    markers: list[Path] = []
    for current, dirnames, filenames in os.walk(root):
        for name in (*filenames, *dirnames):
            if name.startswith(WHITEOUT_PREFIX):
                markers.append(Path(current) / name)

    for marker in sorted(markers, key=lambda path: (path.name != OPAQUE_MARKER, str(path))):
        if marker.name == OPAQUE_MARKER:
            _clear_opaque_directory(marker.parent, root, kept)
        else:
            _remove_path(marker.parent / marker.name[len(WHITEOUT_PREFIX) :])
        _remove_path(marker)
    return len(markers)


def apply_layer(
    stream: BinaryIO,
    destination: Path,
    *,
    tools: HostTools,
    anomalies: PermissionAnomalySet,
) -> None:
    with open_decompressed(stream) as tar_stream:
        members = tools.extract(tar_stream, destination)
    anomalies.merge(normalize(destination))
    apply_whiteouts(destination, members)


def assemble(
    layers: Iterable[tuple[LayerDescriptor, BinaryIO]],
    destination: Path,
    *,
    tools: HostTools,
    restore: bool = True,
) -> PermissionAnomalySet:
    """Flatten ``layers`` into ``destination``.

    Any failure removes ``destination``; nothing partial is left for use.
    With ``restore=False`` the caller must call ``restore()`` on the result
    once it has finished writing into the tree.
    """
    destination.mkdir(parents=True, exist_ok=True)
    anomalies = PermissionAnomalySet()
    try:
        for index, (layer, stream) in enumerate(layers, start=1):
            logger.info("applying layer %d: %s", index, layer.digest)
            apply_layer(stream, destination, tools=tools, anomalies=anomalies)
        if restore:
            anomalies.restore()
    except FcvmError:
        force_rmtree(destination)
        raise
    except subprocess.CalledProcessError as exc:
        force_rmtree(destination)
        detail = (exc.stderr or "").strip() if isinstance(exc.stderr, str) else ""
        raise ExtractionError(f"Layer extraction failed: {detail or exc}") from exc
    except (OSError, EOFError, zlib.error) as exc:
        force_rmtree(destination)
        raise ExtractionError(f"Layer extraction failed: {exc}") from exc
    finally:
        close = getattr(layers, "close", None)
        if close is not None:
            close()
    return anomalies


def resolve_guest_path(root: Path, guest_path: str) -> Path:
    """Map an absolute guest path into ``root``, following symlinks as the guest would."""
    pending = [part for part in PurePosixPath(guest_path).parts if part != "/"]
    resolved: list[str] = []
    hops = 0
    while pending:
        part = pending.pop(0)
        if part in {"", "."}:
            continue
        if part == "..":
            if resolved:
                resolved.pop()
            continue
        candidate = root.joinpath(*resolved, part)
        if candidate.is_symlink():
            hops += 1
            if hops > _MAX_SYMLINK_HOPS:
                raise ExtractionError(f"Too many symlink levels resolving {guest_path}")
            target = PurePosixPath(os.readlink(candidate))
            if target.is_absolute():
                resolved = []
            pending = [p for p in target.parts if p != "/"] + pending
            continue
        resolved.append(part)
    return root.joinpath(*resolved)
