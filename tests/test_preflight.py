from __future__ import annotations

from pathlib import Path

import pytest

import fcvm.preflight as preflight
from fcvm.errors import ValidationError
from fcvm.runtime_paths import kernel_image_path


def _forwarding(tmp_path: Path, value: str) -> Path:
    path = tmp_path / "ip_forward"
    path.write_text(value + "\n", encoding="utf-8")
    return path


def test_check_host_reports_missing_tools(monkeypatch, tmp_path: Path) -> None:
    app_dir = tmp_path / "runtime"
    monkeypatch.setattr(preflight.shutil, "which", lambda name: None)

    result = preflight.check_host(app_dir, ip_forward_file=_forwarding(tmp_path, "1"))

    assert not result.ok
    assert not result.build_ready
    assert "fakeroot" in result.missing_build_executables
    assert "firecracker" in result.missing_launch_executables
    assert not result.kernel_present


def test_check_host_ok_when_everything_exists(monkeypatch, tmp_path: Path) -> None:
    app_dir = tmp_path / "runtime"
    kernel = kernel_image_path(app_dir)
    kernel.parent.mkdir(parents=True)
    kernel.touch()
    monkeypatch.setattr(preflight.shutil, "which", lambda name: f"/usr/bin/{name}")

    result = preflight.check_host(app_dir, ip_forward_file=_forwarding(tmp_path, "1"))

    assert result.ok
    assert not result.missing_build_executables
    assert not result.missing_launch_executables


def test_disabled_forwarding_blocks_launch_only(monkeypatch, tmp_path: Path) -> None:
    app_dir = tmp_path / "runtime"
    kernel = kernel_image_path(app_dir)
    kernel.parent.mkdir(parents=True)
    kernel.touch()
    monkeypatch.setattr(preflight.shutil, "which", lambda name: f"/usr/bin/{name}")

    result = preflight.check_host(app_dir, ip_forward_file=_forwarding(tmp_path, "0"))

    assert result.build_ready
    assert not result.launch_ready
    assert "ip_forward" in preflight.describe(result)


def test_assert_host_ready_lists_missing_kernel(monkeypatch, tmp_path: Path) -> None:
    app_dir = tmp_path / "runtime"
    monkeypatch.setattr(preflight.shutil, "which", lambda name: None)

    with pytest.raises(ValidationError, match="Kernel image not found"):
        preflight.assert_host_ready(app_dir)
