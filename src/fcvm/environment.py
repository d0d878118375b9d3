"""Decide which launcher environment variables are delivered to the guest.

Every variable is forwarded except process/session bookkeeping (``DENYLIST``)
and the launcher's own settings.  Wrapping a name in double underscores
(``__PATH__=/opt/bin``) forwards it as ``PATH`` even when the bare name is
denied.  The ``FC_`` prefix and the variables the generated init reads
(``RESERVED_NAMES``) never reach the guest from the host, wrapped or not.
"""

from __future__ import annotations

import logging
import re
import shlex
from collections.abc import Mapping, Sequence

from .initgen import INIT_ARGS_VAR, UID_VAR, export_line

logger = logging.getLogger(__name__)

RESERVED_PREFIX = "FC_"
RESERVED_NAMES = frozenset({INIT_ARGS_VAR, UID_VAR})
DENYLIST = frozenset({"HOME", "HOSTNAME", "OLDPWD", "PATH", "PWD", "SHLVL", "TERM", "_"})
_NAME_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")


def guest_variable_name(name: str) -> str | None:
    """Name to export in the guest, or ``None`` when ``name`` stays on the host."""
    wrapped = len(name) > 4 and name.startswith("__") and name.endswith("__")
    guest_name = name[2:-2] if wrapped else name
    if guest_name.startswith(RESERVED_PREFIX) or guest_name in RESERVED_NAMES:
        return None
    if not wrapped and guest_name in DENYLIST:
        return None
    return guest_name


def infer_guest_environment(environ: Mapping[str, str]) -> dict[str, str]:
    variables: dict[str, str] = {}
    for name, value in environ.items():
        guest_name = guest_variable_name(name)
        if guest_name is None:
            continue
        if not _NAME_RE.match(guest_name):
            logger.warning("skipping environment variable with unusable name: %r", name)
            continue
        if "\n" in value or "\0" in value:
            logger.warning("skipping multi-line environment variable: %s", name)
            continue
        variables[guest_name] = value
    return variables


def render_env_file(
    variables: Mapping[str, str],
    *,
    uid: int,
    init_args: Sequence[str] = (),
) -> str:
    """Contents of the profile.d file the generated init sources."""
    lines = [export_line(f"{name}={value}") for name, value in variables.items()]
    lines.append(export_line(f"{UID_VAR}={uid}"))
    if init_args:
        lines.append(export_line(f"{INIT_ARGS_VAR}={shlex.join(init_args)}"))
    return "\n".join(lines) + "\n"
