"""Image reference (or archive) in, bootable artifact directory out."""

from __future__ import annotations

import json
import logging
import os
import tempfile
from collections.abc import Sequence
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from pathlib import Path

from . import archive, registry
from .errors import PackagingError
from .image import ImageSource
from .initgen import EXISTING_INIT, INIT_ENTRYPOINT_PATH, synthesize
from .packager import ROOTFS_NAME, RootfsImage, package
from .permissions import force_rmtree
from .rootfs import assemble
from .runtime_paths import artifacts_dir, busybox_cache_path, get_app_dir
from .tools import HostTools

logger = logging.getLogger(__name__)

ARTIFACT_METADATA_NAME = "image.json"
ARTIFACT_SCHEMA_VERSION = 1


@dataclass(frozen=True)
class Artifact:
    directory: Path
    name: str
    rootfs: RootfsImage
    init_program: str

    @property
    def metadata_path(self) -> Path:
        return self.directory / ARTIFACT_METADATA_NAME


def open_source(source: str) -> ImageSource:
    """A saved archive when ``source`` names one, otherwise a registry pull."""
    if archive.looks_like_archive(source):
        return archive.load(source)
    return registry.pull(source)


def _write_metadata(artifact: Artifact, source: str, image: ImageSource) -> None:
    metadata = {
        "schema": ARTIFACT_SCHEMA_VERSION,
        "created_at": datetime.now(timezone.utc).isoformat(),
        "name": artifact.name,
        "source": source,
        "rootfs": ROOTFS_NAME,
        "block_count": artifact.rootfs.block_count,
        "init": artifact.init_program,
        "layers": [layer.digest for layer in image.layers],
        "config": image.config.to_json(),
    }
    artifact.metadata_path.write_text(json.dumps(metadata, indent=2) + "\n", encoding="utf-8")


def _publish(staging_dir: Path, artifact_dir: Path) -> None:
    """Move a finished build into place, replacing any previous artifact."""
    staging_dir.chmod(0o755)
    if not artifact_dir.exists():
        os.replace(staging_dir, artifact_dir)
        return
    retired = Path(tempfile.mkdtemp(prefix=f".{artifact_dir.name}-old-", dir=artifact_dir.parent))
    os.replace(artifact_dir, retired)
    try:
        os.replace(staging_dir, artifact_dir)
    except OSError:
        os.replace(retired, artifact_dir)
        raise
    force_rmtree(retired)


def build(
    source: str,
    output_dir: str | Path | None = None,
    *,
    size: str | None = None,
    entrypoint: Sequence[str] | None = None,
    app_dir: str | Path | None = None,
    tools: HostTools | None = None,
) -> Artifact:
    """Convert ``source`` into ``<output_dir>/<name>/rootfs.ext4``.

    The artifact is assembled in a hidden sibling directory and only moved
    into place once complete, so a failed build leaves any earlier artifact
    of the same name untouched and never a partial one.
    """
    resolved_app_dir = get_app_dir(app_dir)
    output_root = Path(output_dir) if output_dir is not None else artifacts_dir(resolved_app_dir)

    with open_source(source) as image:
        artifact_dir = output_root / image.name
        with tempfile.TemporaryDirectory(prefix="fcvm-build-") as temp_dir:
            work_dir = Path(temp_dir)
            rootfs_dir = work_dir / "rootfs"
            build_tools = tools or HostTools(fakeroot_state=work_dir / "fakeroot.state")
            staging_dir: Path | None = None
            try:
                anomalies = assemble(
                    image.iter_layer_streams(), rootfs_dir, tools=build_tools, restore=False
                )
                init_path = synthesize(
                    rootfs_dir,
                    image.config,
                    entrypoint,
                    busybox_cache=busybox_cache_path(resolved_app_dir),
                )
                anomalies.restore()

                output_root.mkdir(parents=True, exist_ok=True)
                staging_dir = Path(tempfile.mkdtemp(prefix=f".{image.name}-", dir=output_root))
                rootfs = package(rootfs_dir, staging_dir / ROOTFS_NAME, size, tools=build_tools)
                init_program = INIT_ENTRYPOINT_PATH if init_path else EXISTING_INIT
                _write_metadata(
                    Artifact(staging_dir, image.name, rootfs, init_program), source, image
                )
                _publish(staging_dir, artifact_dir)
                artifact = Artifact(
                    directory=artifact_dir,
                    name=image.name,
                    rootfs=replace(rootfs, path=artifact_dir / ROOTFS_NAME),
                    init_program=init_program,
                )
            except BaseException as exc:
                if staging_dir is not None:
                    force_rmtree(staging_dir)
                if isinstance(exc, OSError):
                    raise PackagingError(f"Writing artifact {artifact_dir} failed: {exc}") from exc
                raise
            finally:
                force_rmtree(rootfs_dir)

    logger.info("built %s in %s", artifact.name, artifact.directory)
    return artifact
