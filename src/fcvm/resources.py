"""Infer guest vCPU and memory sizing from the launcher's cgroup limits."""

from __future__ import annotations

import logging
import math
from pathlib import Path

logger = logging.getLogger(__name__)

DEFAULT_CGROUP_ROOT = Path("/sys/fs/cgroup")
DEFAULT_VCPU_COUNT = 2
DEFAULT_MEM_SIZE_MIB = 2048

# cgroup v1 reports "no limit" as the largest page-aligned int64
CGROUP_V1_UNLIMITED = 9223372036854771712
_MIB = 1024 * 1024


def _read_text(path: Path) -> str | None:
    try:
        return path.read_text(encoding="utf-8").strip()
    except OSError:
        return None


def _first_existing(*paths: Path) -> str | None:
    for path in paths:
        text = _read_text(path)
        if text is not None:
            return text
    return None


def cgroup_cpu_limit(cgroup_root: Path = DEFAULT_CGROUP_ROOT) -> int | None:
    """CPU quota divided by period, rounded up; ``None`` when unlimited."""
    cpu_max = _read_text(cgroup_root / "cpu.max")
    if cpu_max is not None:
        fields = cpu_max.split()
        if len(fields) != 2 or fields[0] == "max":
            return None
        quota, period = fields
    else:
        quota = _first_existing(
            cgroup_root / "cpu" / "cpu.cfs_quota_us",
            cgroup_root / "cpu,cpuacct" / "cpu.cfs_quota_us",
        )
        period = _first_existing(
            cgroup_root / "cpu" / "cpu.cfs_period_us",
            cgroup_root / "cpu,cpuacct" / "cpu.cfs_period_us",
        )
        if quota is None or period is None:
            return None

    try:
        quota_us, period_us = int(quota), int(period)
    except ValueError:
        logger.warning("ignoring unparseable cgroup cpu limit: %r/%r", quota, period)
        return None
    if quota_us <= 0 or period_us <= 0:
        return None
    return math.ceil(quota_us / period_us)


def cgroup_memory_limit_mib(cgroup_root: Path = DEFAULT_CGROUP_ROOT) -> int | None:
    """Memory limit in MiB; ``None`` when unlimited."""
    raw = _first_existing(
        cgroup_root / "memory.max",
        cgroup_root / "memory" / "memory.limit_in_bytes",
    )
    if raw is None or raw == "max":
        return None
    try:
        limit = int(raw)
    except ValueError:
        logger.warning("ignoring unparseable cgroup memory limit: %r", raw)
        return None
    if limit <= 0 or limit >= CGROUP_V1_UNLIMITED:
        return None
    return limit // _MIB


def resolve_vcpu_count(override: int | None, cgroup_root: Path = DEFAULT_CGROUP_ROOT) -> int:
    if override is not None:
        return override
    inferred = cgroup_cpu_limit(cgroup_root)
    if inferred is not None:
        return inferred
    return DEFAULT_VCPU_COUNT


def resolve_mem_size_mib(override: int | None, cgroup_root: Path = DEFAULT_CGROUP_ROOT) -> int:
    if override is not None:
        return override
    inferred = cgroup_memory_limit_mib(cgroup_root)
    if inferred:
        return inferred
    return DEFAULT_MEM_SIZE_MIB
