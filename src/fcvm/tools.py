"""Thin wrappers around the host tools the pipeline shells out to.

``tar`` under ``fakeroot`` extracts layers, e2fsprogs builds, checks and
resizes ext4 images, and e2tools edits an image without mounting it.  All
commands go through ``runner`` so tests can record them instead.
"""

from __future__ import annotations

import logging
import re
import shlex
import shutil
import subprocess
import tempfile
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path
from typing import BinaryIO

from .errors import ExtractionError

logger = logging.getLogger(__name__)

_CHUNK_SIZE = 1 << 20
_FSCK_BLOCKS_RE = re.compile(r"(\d+)/(\d+) blocks")

# e2fsck exit codes 1 and 2 mean "errors corrected"
FSCK_OK_MASK = 0b11


@dataclass(frozen=True)
class FsckResult:
    returncode: int
    used_blocks: int | None
    total_blocks: int | None
    output: str


def parse_fsck_output(output: str) -> tuple[int | None, int | None]:
    """Return ``(used, total)`` from an e2fsck summary line."""
    matches = _FSCK_BLOCKS_RE.findall(output)
    if not matches:
        return None, None
    used, total = matches[-1]
    return int(used), int(total)


class HostTools:
    def __init__(
        self,
        *,
        runner: Callable[..., subprocess.CompletedProcess] = subprocess.run,
        popen: Callable[..., subprocess.Popen] = subprocess.Popen,
        fakeroot_state: Path | None = None,
    ):
        self.runner = runner
        self.popen = popen
        self.fakeroot_state = fakeroot_state

    def run(self, args: list[str], *, check: bool = True) -> subprocess.CompletedProcess:
        logger.debug("run: %s", shlex.join(args))
        return self.runner(args, capture_output=True, check=check, text=True)

    def _fakeroot(self, args: list[str], *, save: bool) -> list[str]:
        if self.fakeroot_state is None:
            return args
        command = ["fakeroot"]
        if self.fakeroot_state.exists():
            command.extend(["-i", str(self.fakeroot_state)])
        if save:
            command.extend(["-s", str(self.fakeroot_state)])
        return [*command, "--", *args]

    def extract(self, stream: BinaryIO, destination: Path) -> list[str]:
        """Pipe an uncompressed tar stream into ``tar -x``; returns member names."""
        args = self._fakeroot(
            [
                "tar",
                "-x",
                "-v",
                "--numeric-owner",
                "--same-permissions",
                "--quoting-style=literal",
                "-C",
                str(destination),
                "-f",
                "-",
            ],
            save=True,
        )
        logger.debug("run: %s", shlex.join(args))
        with tempfile.TemporaryFile() as listing, tempfile.TemporaryFile() as errors:
            process = self.popen(args, stdin=subprocess.PIPE, stdout=listing, stderr=errors)
            if process.stdin is None:
                process.kill()
                process.wait()
                raise ExtractionError("tar was started without a stdin pipe.")
            try:
                shutil.copyfileobj(stream, process.stdin, _CHUNK_SIZE)
            except BrokenPipeError:
                # tar stops reading at the end-of-archive marker
                pass
            except BaseException:
                process.kill()
                raise
            finally:
                try:
                    process.stdin.close()
                except BrokenPipeError:
                    pass
                returncode = process.wait()

            errors.seek(0)
            stderr = errors.read().decode("utf-8", errors="replace")
            if returncode != 0:
                raise subprocess.CalledProcessError(returncode, args, stderr=stderr)
            listing.seek(0)
            names = listing.read().decode("utf-8", errors="surrogateescape").splitlines()
        return [name for name in names if name]

    def disk_usage_kib(self, path: Path) -> int:
        completed = self.run(["du", "-s", "-k", str(path)])
        return int(completed.stdout.split()[0])

    def make_ext4(self, source_dir: Path, image: Path, size: str) -> None:
        self.run(
            self._fakeroot(
                [
                    "mkfs.ext4",
                    "-F",
                    "-q",
                    "-L",
                    "rootfs",
                    "-E",
                    "root_owner=0:0",
                    "-d",
                    str(source_dir),
                    str(image),
                    size,
                ],
                save=False,
            )
        )

    def check(self, image: Path) -> FsckResult:
        """Run a non-interactive ``e2fsck``; uncorrectable errors raise."""
        args = ["e2fsck", "-f", "-y", str(image)]
        completed = self.run(args, check=False)
        output = f"{completed.stdout}\n{completed.stderr}"
        if completed.returncode & ~FSCK_OK_MASK:
            raise subprocess.CalledProcessError(
                completed.returncode, args, output=completed.stdout, stderr=completed.stderr
            )
        used, total = parse_fsck_output(output)
        return FsckResult(
            returncode=completed.returncode,
            used_blocks=used,
            total_blocks=total,
            output=output,
        )

    def resize(self, image: Path, size: str | int) -> None:
        self.run(["resize2fs", str(image), str(size)])

    def shrink_to_minimum(self, image: Path) -> None:
        self.run(["resize2fs", "-M", str(image)])

    def list_dir(self, image: Path, guest_dir: str) -> list[str]:
        completed = self.run(["e2ls", f"{image}:{guest_dir}"], check=False)
        if completed.returncode != 0:
            return []
        return completed.stdout.split()

    def make_dir(self, image: Path, guest_dir: str, *, mode: int = 0o755) -> None:
        self.run(
            ["e2mkdir", "-O", "0", "-G", "0", "-P", f"{mode:o}", f"{image}:{guest_dir}"],
            check=False,
        )

    def copy_in(self, image: Path, local_path: Path, guest_path: str, *, mode: int = 0o644) -> None:
        self.run(
            [
                "e2cp",
                "-O",
                "0",
                "-G",
                "0",
                "-P",
                f"{mode:o}",
                str(local_path),
                f"{image}:{guest_path}",
            ]
        )
