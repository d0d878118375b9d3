"""Runtime path helpers for fcvm."""

from __future__ import annotations

import os
from pathlib import Path

APP_DIR_ENV = "FC_HOME"
APP_DIR_NAME = "fcvm"


def get_app_dir(app_dir: str | Path | None = None) -> Path:
    """Return fcvm app data directory.

    Priority order:
    1) explicit ``app_dir`` argument
    2) ``FC_HOME`` environment variable
    3) XDG data directory
    """
    if app_dir is not None:
        return Path(app_dir).expanduser().resolve()

    override = os.environ.get(APP_DIR_ENV)
    if override:
        return Path(override).expanduser().resolve()

    xdg_data_home = os.environ.get("XDG_DATA_HOME")
    if xdg_data_home:
        return (Path(xdg_data_home).expanduser() / APP_DIR_NAME).resolve()
    return (Path.home() / ".local" / "share" / APP_DIR_NAME).resolve()


def images_dir(app_dir: str | Path | None = None) -> Path:
    return get_app_dir(app_dir) / "images"


def cache_dir(app_dir: str | Path | None = None) -> Path:
    return get_app_dir(app_dir) / "cache"


def artifacts_dir(app_dir: str | Path | None = None) -> Path:
    return get_app_dir(app_dir) / "artifacts"


def run_dir(instance_id: str, app_dir: str | Path | None = None) -> Path:
    return get_app_dir(app_dir) / "run" / instance_id


def kernel_image_path(app_dir: str | Path | None = None) -> Path:
    return images_dir(app_dir) / "vmlinux"


def busybox_cache_path(app_dir: str | Path | None = None) -> Path:
    return cache_dir(app_dir) / "busybox"
