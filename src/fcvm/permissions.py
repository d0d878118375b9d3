"""Permission fixes for trees unpacked by an unprivileged user.

Layers routinely ship directories without the owner write bit (``/proc``,
``/sys``, ``/usr/share/empty``) and files without the owner read bit
(``/etc/shadow``, ``/etc/gshadow``).  A non-root process cannot apply the next
layer into such a directory, nor can ``mkfs.ext4 -d`` read such a file, so both
are opened up while layers are applied.  Directories are put back afterwards;
readability fixes are kept.
"""

from __future__ import annotations

import logging
import os
import re
import shutil
import stat
import sys
from dataclasses import dataclass, field
from pathlib import Path

logger = logging.getLogger(__name__)

SHADOW_BACKUP_RE = re.compile(r"^g?shadow-$")

_DIR_ACCESS = stat.S_IRUSR | stat.S_IWUSR | stat.S_IXUSR


@dataclass
class PermissionAnomalySet:
    unwritable_dirs: dict[Path, int] = field(default_factory=dict)
    unreadable_files: dict[Path, int] = field(default_factory=dict)
    removed_backups: list[Path] = field(default_factory=list)

    def __len__(self) -> int:
        return len(self.unwritable_dirs) + len(self.unreadable_files) + len(self.removed_backups)

    def merge(self, other: "PermissionAnomalySet") -> None:
        # a later layer re-shipping a directory sets its final mode
        self.unwritable_dirs.update(other.unwritable_dirs)
        for path, mode in other.unreadable_files.items():
            self.unreadable_files.setdefault(path, mode)
        self.removed_backups.extend(other.removed_backups)

    def restore(self) -> int:
        """Put directory modes back; returns how many were restored."""
        restored = 0
        for path in sorted(self.unwritable_dirs, reverse=True):
            mode = self.unwritable_dirs[path]
            if path.is_symlink() or not path.is_dir():
                continue
            path.chmod(stat.S_IMODE(mode))
            restored += 1
        self.unwritable_dirs.clear()
        return restored


def _fix_directory(path: Path, anomalies: PermissionAnomalySet) -> None:
    mode = path.lstat().st_mode
    if mode & _DIR_ACCESS == _DIR_ACCESS:
        return
    path.chmod(stat.S_IMODE(mode) | _DIR_ACCESS)
    anomalies.unwritable_dirs[path] = mode


def normalize(root: Path) -> PermissionAnomalySet:
    """Make every directory under ``root`` writable and every file readable."""
    anomalies = PermissionAnomalySet()
    _fix_directory(root, anomalies)
    for current, dirnames, filenames in os.walk(root):
        base = Path(current)
        for name in dirnames:
            path = base / name
            if path.is_symlink():
                continue
            _fix_directory(path, anomalies)
        for name in filenames:
            path = base / name
            mode = path.lstat().st_mode
            if not stat.S_ISREG(mode) or mode & stat.S_IRUSR:
                continue
            if SHADOW_BACKUP_RE.match(name):
                path.unlink()
                anomalies.removed_backups.append(path)
                continue
            path.chmod(stat.S_IMODE(mode) | stat.S_IRUSR)
            anomalies.unreadable_files[path] = mode

    if anomalies:
        logger.debug(
            "normalized %s: %d dirs, %d files, %d shadow backups removed",
            root,
            len(anomalies.unwritable_dirs),
            len(anomalies.unreadable_files),
            len(anomalies.removed_backups),
        )
    return anomalies


def _reset_and_retry(func, path, _exc) -> None:
    parent = os.path.dirname(path)
    try:
        os.chmod(parent, stat.S_IMODE(os.lstat(parent).st_mode) | _DIR_ACCESS)
        if not os.path.islink(path) and os.path.isdir(path):
            os.chmod(path, stat.S_IMODE(os.lstat(path).st_mode) | _DIR_ACCESS)
    except OSError:
        pass
    func(path)


def force_rmtree(path: Path) -> None:
    """Remove ``path`` even when it contains unwritable directories."""
    if not path.exists() and not path.is_symlink():
        return
    if sys.version_info >= (3, 12):
        shutil.rmtree(path, onexc=_reset_and_retry)
    else:
        shutil.rmtree(path, onerror=_reset_and_retry)
