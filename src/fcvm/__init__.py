"""fcvm package."""

from .errors import FcvmError
from .launch import LaunchSettings, Launcher, launch
from .pipeline import Artifact, build
from .preflight import assert_host_ready, check_host
from .runtime_paths import get_app_dir

__all__ = [
    "Artifact",
    "FcvmError",
    "LaunchSettings",
    "Launcher",
    "assert_host_ready",
    "build",
    "check_host",
    "get_app_dir",
    "launch",
]
