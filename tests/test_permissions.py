from __future__ import annotations

import stat
from pathlib import Path

from fcvm.permissions import force_rmtree, normalize


def _mode(path: Path) -> int:
    return stat.S_IMODE(path.lstat().st_mode)


def _tree(root: Path) -> Path:
    (root / "etc").mkdir(parents=True)
    (root / "usr" / "share" / "empty").mkdir(parents=True)
    for name in ("shadow", "shadow-", "gshadow-", "passwd"):
        (root / "etc" / name).write_text(name, encoding="utf-8")
    (root / "etc" / "shadow").chmod(0o000)
    (root / "etc" / "shadow-").chmod(0o000)
    (root / "etc" / "gshadow-").chmod(0o000)
    (root / "usr" / "share" / "empty").chmod(0o555)
    return root


def test_normalize_opens_directories_and_files(tmp_path: Path) -> None:
    root = _tree(tmp_path / "rootfs")

    anomalies = normalize(root)

    empty = root / "usr" / "share" / "empty"
    assert anomalies.unwritable_dirs == {empty: stat.S_IFDIR | 0o555}
    assert _mode(empty) & 0o700 == 0o700
    assert _mode(root / "etc" / "shadow") & stat.S_IRUSR
    assert not (root / "etc" / "shadow-").exists()
    assert not (root / "etc" / "gshadow-").exists()
    assert sorted(path.name for path in anomalies.removed_backups) == ["gshadow-", "shadow-"]
    assert (root / "etc" / "passwd").exists()


def test_normalize_is_idempotent(tmp_path: Path) -> None:
    root = _tree(tmp_path / "rootfs")
    normalize(root)

    assert len(normalize(root)) == 0


def test_restore_puts_directory_modes_back(tmp_path: Path) -> None:
    root = _tree(tmp_path / "rootfs")
    anomalies = normalize(root)

    assert anomalies.restore() == 1
    assert _mode(root / "usr" / "share" / "empty") == 0o555
    # readability fixes are permanent
    assert _mode(root / "etc" / "shadow") & stat.S_IRUSR
    assert not anomalies.unwritable_dirs


def test_merge_keeps_latest_directory_mode(tmp_path: Path) -> None:
    root = tmp_path / "rootfs"
    target = root / "opt"
    target.mkdir(parents=True)
    target.chmod(0o500)
    first = normalize(root)
    target.chmod(0o555)
    first.merge(normalize(root))

    first.restore()
    assert _mode(target) == 0o555


def test_force_rmtree_removes_read_only_trees(tmp_path: Path) -> None:
    root = tmp_path / "rootfs"
    locked = root / "a" / "b"
    locked.mkdir(parents=True)
    (locked / "file").write_text("x", encoding="utf-8")
    locked.chmod(0o500)
    (root / "a").chmod(0o500)

    force_rmtree(root)

    assert not root.exists()
    force_rmtree(root)
