"""Generate the guest init program from the image's Docker config."""

from __future__ import annotations

import logging
import os
import shlex
import shutil
import tempfile
import urllib.error
import urllib.request
from collections.abc import Sequence
from pathlib import Path

from .errors import FetchError, PackagingError
from .image import ImageConfig
from .rootfs import resolve_guest_path

logger = logging.getLogger(__name__)

INIT_ENTRYPOINT_PATH = "/sbin/init-entrypoint"
EXISTING_INIT = "/sbin/init"
GUEST_ENV_FILE = "/etc/profile.d/01-container-env-vars.sh"
INIT_ARGS_VAR = "INIT_ARGS"
UID_VAR = "FC_UID"
DEFAULT_PATH = "/usr/local/sbin:/usr/local/bin:/usr/sbin:/usr/bin:/sbin:/bin"

REQUIRED_EXECUTABLES = ("sh", "hostname", "cat", "mount", "chmod", "chpst")
EXECUTABLE_DIRS = ("/bin", "/sbin", "/usr/bin", "/usr/sbin")
BUSYBOX_URL = "https://busybox.net/downloads/binaries/1.35.0-x86_64-linux-musl/busybox"
BUSYBOX_GUEST_NAME = "fcvm-busybox"
_DOWNLOAD_TIMEOUT_S = 120


def dquote(value: str) -> str:
    """Double-quote ``value`` for POSIX sh."""
    escaped = (
        value.replace("\\", "\\\\").replace('"', '\\"').replace("$", "\\$").replace("`", "\\`")
    )
    return f'"{escaped}"'


def export_line(entry: str) -> str:
    return f"export {dquote(entry)}"


def uses_existing_init(config: ImageConfig) -> bool:
    """True when the image boots its own ``/sbin/init``."""
    command = config.entrypoint or config.cmd
    return tuple(command) == (EXISTING_INIT,)


def _quoted(words: Sequence[str]) -> str:
    return " ".join(shlex.quote(word) for word in words)


def render_argv_snippet(config: ImageConfig) -> str:
    """Shell that leaves the effective argument vector in ``"$@"``."""
    if not config.entrypoint:
        return "\n".join(
            [
                f'if [ -n "${{{INIT_ARGS_VAR}:-}}" ]; then',
                f'    eval "set -- ${INIT_ARGS_VAR}"',
                "else",
                f"    set -- {_quoted(config.cmd)}".rstrip(),
                "fi",
            ]
        )
    return "\n".join(
        [
            f"set -- {_quoted([*config.entrypoint, *config.cmd])}",
            f'if [ -n "${{{INIT_ARGS_VAR}:-}}" ]; then',
            f'    eval "set -- \\"\\$@\\" ${INIT_ARGS_VAR}"',
            "fi",
        ]
    )


def render_init_script(config: ImageConfig) -> str:
    lines = [
        "#!/bin/sh",
        "# Generated by fcvm: reproduces the image's ENTRYPOINT/CMD/ENV/WORKDIR as PID 1.",
        export_line(f"PATH={DEFAULT_PATH}"),
    ]
    lines.extend(export_line(entry) for entry in config.env)
    lines.extend(
        [
            f"if [ -f {GUEST_ENV_FILE} ]; then",
            f"    . {GUEST_ENV_FILE}",
            "fi",
            "if [ -d /proc ]; then",
            "    mount -t proc proc /proc",
            "fi",
            "if [ -d /tmp ]; then",
            "    chmod 1777 /tmp",
            "fi",
            "if [ -f /etc/hostname ]; then",
            '    hostname "$(cat /etc/hostname)"',
            "fi",
            f"cd {shlex.quote(config.working_dir or '/')} || exit 1",
            render_argv_snippet(config),
            'if [ "$#" -eq 0 ]; then',
            '    echo "init-entrypoint: no command to run" >&2',
            "    exit 1",
            "fi",
            f'if [ "${{{UID_VAR}:-0}}" = "0" ]; then',
            '    exec "$@"',
            "fi",
            f'exec chpst -u "${{{UID_VAR}}}:${{{UID_VAR}}}" "$@"',
        ]
    )
    return "\n".join(lines) + "\n"


def ensure_busybox(cache_path: Path, *, url: str = BUSYBOX_URL) -> Path:
    """Download a static busybox once; later calls reuse the cached copy."""
    if cache_path.is_file():
        return cache_path

    cache_path.parent.mkdir(parents=True, exist_ok=True)
    logger.info("downloading static busybox: %s", url)
    request = urllib.request.Request(url, headers={"User-Agent": "fcvm/0.1"})
    fd, temp_name = tempfile.mkstemp(dir=cache_path.parent, prefix=".busybox-")
    try:
        with os.fdopen(fd, "wb") as handle:
            with urllib.request.urlopen(request, timeout=_DOWNLOAD_TIMEOUT_S) as response:
                shutil.copyfileobj(response, handle)
        os.chmod(temp_name, 0o755)
        os.replace(temp_name, cache_path)
    except (urllib.error.URLError, OSError) as exc:
        Path(temp_name).unlink(missing_ok=True)
        raise FetchError(f"Failed to download busybox from {url}: {exc}") from exc
    return cache_path


def missing_executables(root: Path) -> list[str]:
    missing = []
    for name in REQUIRED_EXECUTABLES:
        if not any(
            resolve_guest_path(root, f"{directory}/{name}").is_file()
            for directory in EXECUTABLE_DIRS
        ):
            missing.append(name)
    return missing


def install_missing_executables(root: Path, busybox_cache: Path) -> list[str]:
    """Link busybox applets into ``/bin`` for any required tool the image lacks."""
    missing = missing_executables(root)
    if not missing:
        return []

    busybox = ensure_busybox(busybox_cache)
    bin_dir = resolve_guest_path(root, "/bin")
    bin_dir.mkdir(parents=True, exist_ok=True)
    helper = bin_dir / BUSYBOX_GUEST_NAME
    shutil.copyfile(busybox, helper)
    helper.chmod(0o755)
    for name in missing:
        link = bin_dir / name
        if link.is_symlink() or link.exists():
            link.unlink()
        link.symlink_to(BUSYBOX_GUEST_NAME)
    logger.info("installed busybox applets: %s", ", ".join(missing))
    return missing


def synthesize(
    root: Path,
    config: ImageConfig,
    entrypoint_override: Sequence[str] | None = None,
    *,
    busybox_cache: Path,
) -> Path | None:
    """Write ``/sbin/init-entrypoint`` into ``root``.

    Returns the host path of the generated program, or ``None`` when the image
    boots its own ``/sbin/init``.
    """
    if entrypoint_override is not None:
        config = config.with_entrypoint(entrypoint_override)

    if uses_existing_init(config):
        logger.info("image runs %s itself; no init program generated", EXISTING_INIT)
        return None

    try:
        install_missing_executables(root, busybox_cache)
        target = resolve_guest_path(root, INIT_ENTRYPOINT_PATH)
        target.parent.mkdir(parents=True, exist_ok=True)
        if target.is_symlink():
            target.unlink()
        target.write_text(render_init_script(config), encoding="utf-8")
        target.chmod(0o755)
    except OSError as exc:
        raise PackagingError(f"Failed to write init program: {exc}") from exc
    logger.info("generated %s", INIT_ENTRYPOINT_PATH)
    return target
