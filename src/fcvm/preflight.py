"""Host preflight checks."""

from __future__ import annotations

import shutil
from dataclasses import dataclass
from pathlib import Path

from .errors import ValidationError
from .runtime_paths import get_app_dir, kernel_image_path

BUILD_EXECUTABLES = ("fakeroot", "tar", "du", "mkfs.ext4", "e2fsck", "resize2fs")
LAUNCH_EXECUTABLES = ("firecracker", "ip", "iptables", "e2fsck", "resize2fs", "e2ls", "e2mkdir", "e2cp")
IP_FORWARD_FILE = Path("/proc/sys/net/ipv4/ip_forward")


def _missing(names: tuple[str, ...]) -> list[str]:
    return [name for name in names if shutil.which(name) is None]


@dataclass(frozen=True)
class HostCheckResult:
    app_dir: Path
    kernel_image: Path
    missing_build_executables: list[str]
    missing_launch_executables: list[str]
    kernel_present: bool
    ip_forwarding: bool | None

    @property
    def build_ready(self) -> bool:
        return not self.missing_build_executables

    @property
    def launch_ready(self) -> bool:
        return (
            not self.missing_launch_executables
            and self.kernel_present
            and self.ip_forwarding is not False
        )

    @property
    def ok(self) -> bool:
        return self.build_ready and self.launch_ready


def _read_ip_forwarding(path: Path) -> bool | None:
    try:
        return path.read_text(encoding="utf-8").strip() == "1"
    except OSError:
        return None


def check_host(
    app_dir: str | Path | None = None,
    *,
    ip_forward_file: Path = IP_FORWARD_FILE,
) -> HostCheckResult:
    """Check that the tools for building and launching are present."""
    resolved_app_dir = get_app_dir(app_dir)
    kernel = kernel_image_path(resolved_app_dir)
    return HostCheckResult(
        app_dir=resolved_app_dir,
        kernel_image=kernel,
        missing_build_executables=_missing(BUILD_EXECUTABLES),
        missing_launch_executables=_missing(LAUNCH_EXECUTABLES),
        kernel_present=kernel.is_file(),
        ip_forwarding=_read_ip_forwarding(ip_forward_file),
    )


def describe(result: HostCheckResult) -> str:
    lines: list[str] = []
    if result.missing_build_executables:
        lines.append("Missing executables for `fcvm build`:")
        for name in result.missing_build_executables:
            lines.append(f"- {name}")
        lines.append("")

    if result.missing_launch_executables:
        lines.append("Missing executables for `fcvm launch`:")
        for name in result.missing_launch_executables:
            lines.append(f"- {name}")
        lines.append("")

    if not result.kernel_present:
        lines.append(f"Kernel image not found: {result.kernel_image}")
        lines.append("Place an uncompressed vmlinux there or set FC_KERNEL_IMAGE.")
        lines.append("")

    if result.ip_forwarding is False:
        lines.append("IPv4 forwarding is disabled (sysctl net.ipv4.ip_forward=1).")
        lines.append("")
    return "\n".join(lines).rstrip()


def assert_host_ready(app_dir: str | Path | None = None) -> None:
    """Raise ValidationError when the host cannot build and launch guests."""
    result = check_host(app_dir)
    if result.ok:
        return
    raise ValidationError("fcvm host is not ready.\n\n" + describe(result))
