"""Turn an assembled tree into a sized ext4 image."""

from __future__ import annotations

import logging
import math
import subprocess
from dataclasses import dataclass
from pathlib import Path

from .errors import PackagingError
from .tools import HostTools

logger = logging.getLogger(__name__)

ROOTFS_NAME = "rootfs.ext4"
SIZE_HEADROOM = 1.2
_MIN_SIZE_MIB = 8


@dataclass(frozen=True)
class RootfsImage:
    path: Path
    block_count: int | None
    minimized: bool


def auto_size_mib(usage_kib: int) -> int:
    """Build-time size: observed usage plus 20%, rounded up to whole MiB."""
    return max(_MIN_SIZE_MIB, math.ceil(usage_kib * SIZE_HEADROOM / 1024))


def _minimize(image: Path, tools: HostTools) -> int:
    result = tools.check(image)
    if result.used_blocks is None:
        raise PackagingError(f"Could not read block usage from e2fsck for {image}.")
    try:
        tools.resize(image, result.used_blocks)
        return result.used_blocks
    except subprocess.CalledProcessError as exc:
        # metadata overhead can put the real minimum a little above "used"
        logger.warning(
            "resize to %d blocks refused (%s); shrinking to resize2fs minimum",
            result.used_blocks,
            (exc.stderr or "").strip() or exc,
        )
    tools.shrink_to_minimum(image)
    return tools.check(image).total_blocks or result.used_blocks


def package(
    source_dir: Path,
    image_path: Path,
    requested_size: str | None = None,
    *,
    tools: HostTools,
) -> RootfsImage:
    """Build ``image_path`` from ``source_dir``.

    Without ``requested_size`` the image is built with headroom and then shrunk
    to the block count e2fsck reports as used.  A failed build leaves no file.
    """
    image_path.parent.mkdir(parents=True, exist_ok=True)
    try:
        if requested_size:
            logger.info("building %s (%s)", image_path, requested_size)
            tools.make_ext4(source_dir, image_path, requested_size)
            return RootfsImage(path=image_path, block_count=None, minimized=False)

        usage_kib = tools.disk_usage_kib(source_dir)
        size_mib = auto_size_mib(usage_kib)
        logger.info("building %s (%d KiB used, %d MiB image)", image_path, usage_kib, size_mib)
        tools.make_ext4(source_dir, image_path, f"{size_mib}M")
        blocks = _minimize(image_path, tools)
        logger.info("minimized %s to %d blocks", image_path, blocks)
        return RootfsImage(path=image_path, block_count=blocks, minimized=True)
    except subprocess.CalledProcessError as exc:
        image_path.unlink(missing_ok=True)
        detail = (exc.stderr or "").strip() if isinstance(exc.stderr, str) else ""
        raise PackagingError(f"Building {image_path} failed: {detail or exc}") from exc
    except (OSError, ValueError, IndexError) as exc:
        image_path.unlink(missing_ok=True)
        raise PackagingError(f"Building {image_path} failed: {exc}") from exc
    except PackagingError:
        image_path.unlink(missing_ok=True)
        raise
