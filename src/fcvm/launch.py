"""Boot a built artifact as a Firecracker microVM.

A launch walks ``validate -> resize -> boot config -> network -> hypervisor``.
Validation failures leave the host untouched, resize problems are logged and
ignored, and network state is torn down however the launch ends, including
when the launcher receives SIGTERM or SIGHUP.
"""

from __future__ import annotations

import contextlib
import json
import logging
import os
import re
import shutil
import signal
import subprocess
import tempfile
import threading
import uuid
from collections.abc import Callable, Iterator, Mapping, Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from .environment import infer_guest_environment, render_env_file
from .errors import LaunchError, ValidationError
from .initgen import GUEST_ENV_FILE, INIT_ENTRYPOINT_PATH
from .network import GuestAddress, HostNetwork, allocate_address
from .packager import ROOTFS_NAME
from .permissions import force_rmtree
from .pipeline import ARTIFACT_METADATA_NAME
from .resources import DEFAULT_CGROUP_ROOT, resolve_mem_size_mib, resolve_vcpu_count
from .runtime_paths import kernel_image_path, run_dir
from .tools import HostTools

logger = logging.getLogger(__name__)

HYPERVISOR = "firecracker"
VM_CONFIG_NAME = "vm-config.json"
BASE_BOOT_ARGS = (
    "console=ttyS0",
    "noapic",
    "reboot=k",
    "panic=1",
    "pci=off",
    "random.trust_cpu=on",
    "i8042.noaux",
    "i8042.nomux",
    "i8042.nopnp",
    "i8042.dumbkbd",
    "tsc=reliable",
    "ipv6.disable=1",
)
# distributions differ in where /sbin lives; the generated init may be behind any of these
INIT_CANDIDATES = (
    INIT_ENTRYPOINT_PATH,
    "/usr/sbin/init-entrypoint",
    "/usr/bin/init-entrypoint",
)
IP_FORWARD_PATH = Path("sys/net/ipv4/ip_forward")
HOST_RESOLV_CONF = Path("/etc/resolv.conf")

_TRUE_VALUES = {"1", "true", "yes", "on"}
_FALSE_VALUES = {"", "0", "false", "no", "off"}
_RESIZE_SIZE_RE = re.compile(r"^[1-9][0-9]*[KMGTs]?$")
TERMINATION_SIGNALS = (signal.SIGTERM, signal.SIGHUP)


@contextlib.contextmanager
def exit_on_termination(signums: Sequence[int] = TERMINATION_SIGNALS) -> Iterator[None]:
    """Turn termination signals into ``SystemExit`` so ``with``/``finally`` blocks unwind."""
    if threading.current_thread() is not threading.main_thread():
        yield
        return

    def _exit(signum, frame):
        logger.warning("received signal %d, shutting down", signum)
        # later signals must not interrupt teardown
        for pending in signums:
            signal.signal(pending, signal.SIG_IGN)
        raise SystemExit(128 + signum)

    previous = {signum: signal.signal(signum, _exit) for signum in signums}
    try:
        yield
    finally:
        for signum, handler in previous.items():
            signal.signal(signum, handler)


def _parse_int(environ: Mapping[str, str], name: str, *, minimum: int) -> int | None:
    raw = environ.get(name, "").strip()
    if not raw:
        return None
    try:
        value = int(raw)
    except ValueError as exc:
        raise ValidationError(f"{name} must be an integer, got {raw!r}.") from exc
    if value < minimum:
        raise ValidationError(f"{name} must be >= {minimum}, got {value}.")
    return value


def _parse_bool(environ: Mapping[str, str], name: str) -> bool:
    raw = environ.get(name, "").strip().lower()
    if raw in _TRUE_VALUES:
        return True
    if raw in _FALSE_VALUES:
        return False
    raise ValidationError(f"{name} must be a boolean (true/false), got {raw!r}.")


@dataclass(frozen=True)
class LaunchSettings:
    """Launch knobs, read from ``FC_*`` environment variables."""

    kernel_loglevel: int = 0
    kernel_bootargs: str = ""
    ephemeral_storage: str | None = None
    vcpu_count: int | None = None
    mem_size_mib: int | None = None
    ht_enabled: bool = False
    uid: int = 0
    kernel_image: Path | None = None
    guest_ip: str | None = None
    uplink: str | None = None

    @classmethod
    def from_environ(cls, environ: Mapping[str, str] | None = None) -> "LaunchSettings":
        env = os.environ if environ is None else environ

        loglevel = _parse_int(env, "FC_KERNEL_LOGLEVEL", minimum=0)
        if loglevel is not None and loglevel > 7:
            raise ValidationError(f"FC_KERNEL_LOGLEVEL must be between 0 and 7, got {loglevel}.")

        storage = env.get("FC_EPHEMERAL_STORAGE")
        if storage is not None:
            storage = storage.strip()
            if storage != "0" and not _RESIZE_SIZE_RE.match(storage):
                raise ValidationError(
                    "FC_EPHEMERAL_STORAGE must be 0 or a resize2fs size such as 2G, "
                    f"got {storage!r}."
                )

        kernel = env.get("FC_KERNEL_IMAGE", "").strip()
        return cls(
            kernel_loglevel=loglevel or 0,
            kernel_bootargs=env.get("FC_KERNEL_BOOTARGS", "").strip(),
            ephemeral_storage=storage,
            vcpu_count=_parse_int(env, "FC_VCPU_COUNT", minimum=1),
            mem_size_mib=_parse_int(env, "FC_MEM_SIZE", minimum=1),
            ht_enabled=_parse_bool(env, "FC_HT_ENABLED"),
            uid=_parse_int(env, "FC_UID", minimum=0) or 0,
            kernel_image=Path(kernel).expanduser() if kernel else None,
            guest_ip=env.get("FC_GUEST_IP", "").strip() or None,
            uplink=env.get("FC_UPLINK", "").strip() or None,
        )


@dataclass(frozen=True)
class BootConfig:
    boot_args: str
    vcpu_count: int
    mem_size_mib: int
    ht_enabled: bool
    init_path: str | None
    init_args: tuple[str, ...]


def build_boot_args(
    *,
    loglevel: int,
    init_path: str | None = None,
    address: GuestAddress | None = None,
    extra: str = "",
) -> str:
    args = [*BASE_BOOT_ARGS, f"loglevel={loglevel}"]
    if init_path:
        args.append(f"init={init_path}")
    if address is not None:
        args.append(address.kernel_ip_arg())
    if extra:
        args.append(extra)
    return " ".join(args)


def build_vm_config(
    *,
    kernel: Path,
    rootfs: Path,
    boot: BootConfig,
    address: GuestAddress,
    tap: str,
) -> dict[str, Any]:
    """Firecracker ``--config-file`` document."""
    return {
        "boot-source": {
            "kernel_image_path": str(kernel),
            "boot_args": boot.boot_args,
        },
        "drives": [
            {
                "drive_id": "rootfs",
                "path_on_host": str(rootfs),
                "is_root_device": True,
                "is_read_only": False,
            }
        ],
        "network-interfaces": [
            {
                "iface_id": "eth0",
                "guest_mac": address.mac,
                "host_dev_name": tap,
            }
        ],
        "machine-config": {
            "vcpu_count": boot.vcpu_count,
            "mem_size_mib": boot.mem_size_mib,
            "ht_enabled": boot.ht_enabled,
        },
    }


class Launcher:
    """Runs one guest from an artifact directory produced by ``fcvm build``."""

    def __init__(
        self,
        artifact_dir: str | Path,
        *,
        settings: LaunchSettings | None = None,
        environ: Mapping[str, str] | None = None,
        app_dir: str | Path | None = None,
        tools: HostTools | None = None,
        cgroup_root: Path = DEFAULT_CGROUP_ROOT,
        proc_root: Path = Path("/proc"),
        runner: Callable[..., subprocess.CompletedProcess] = subprocess.run,
        network_factory: Callable[..., HostNetwork] = HostNetwork,
        instance_id: str | None = None,
    ):
        self.environ = dict(os.environ if environ is None else environ)
        self.settings = settings or LaunchSettings.from_environ(self.environ)
        self.artifact_dir = Path(artifact_dir).expanduser().resolve()
        self.rootfs = self.artifact_dir / ROOTFS_NAME
        self.kernel = self.settings.kernel_image or kernel_image_path(app_dir)
        self.app_dir = app_dir
        self.runner = runner
        self.tools = tools or HostTools(runner=runner)
        self.cgroup_root = cgroup_root
        self.proc_root = proc_root
        self.network_factory = network_factory
        self.instance_id = instance_id or uuid.uuid4().hex

    def validate(self) -> None:
        """Fail before any host state changes when the launch cannot work."""
        if not self.kernel.is_file():
            raise ValidationError(f"Kernel image not found: {self.kernel}")
        if not self.rootfs.is_file():
            raise ValidationError(f"Rootfs image not found: {self.rootfs}")
        forward = self.proc_root / IP_FORWARD_PATH
        try:
            enabled = forward.read_text(encoding="utf-8").strip() == "1"
        except OSError as exc:
            raise ValidationError(f"Cannot read {forward}: {exc}") from exc
        if not enabled:
            raise ValidationError(
                "IPv4 forwarding is disabled on the host; enable it with "
                "`sysctl -w net.ipv4.ip_forward=1`."
            )

    def resize(self) -> bool:
        """Apply the ephemeral storage policy; returns whether the image was resized."""
        storage = self.settings.ephemeral_storage
        if storage == "0":
            logger.info("ephemeral storage resize disabled")
            return False
        try:
            result = self.tools.check(self.rootfs)
            if storage is None:
                if not result.used_blocks:
                    logger.warning("could not read used block count from e2fsck; keeping size")
                    return False
                target: str | int = result.used_blocks * 2
            else:
                target = storage
            self.tools.resize(self.rootfs, target)
        except (subprocess.CalledProcessError, OSError) as exc:
            logger.warning("resize of %s failed, booting with its current size: %s", self.rootfs, exc)
            return False
        logger.info("resized %s to %s", self.rootfs, target)
        return True

    def find_init(self) -> str | None:
        for candidate in INIT_CANDIDATES:
            directory, _, name = candidate.rpartition("/")
            if name in self.tools.list_dir(self.rootfs, directory):
                return candidate
        return None

    def compute_boot_config(
        self, args: Sequence[str] = (), address: GuestAddress | None = None
    ) -> BootConfig:
        init_path = self.find_init()
        if init_path is None and args:
            logger.warning("image boots its own /sbin/init; ignoring launch arguments %s", list(args))
        return BootConfig(
            boot_args=build_boot_args(
                loglevel=self.settings.kernel_loglevel,
                init_path=init_path,
                address=address,
                extra=self.settings.kernel_bootargs,
            ),
            vcpu_count=resolve_vcpu_count(self.settings.vcpu_count, self.cgroup_root),
            mem_size_mib=resolve_mem_size_mib(self.settings.mem_size_mib, self.cgroup_root),
            ht_enabled=self.settings.ht_enabled,
            init_path=init_path,
            init_args=tuple(args) if init_path else (),
        )

    def _guest_hostname(self) -> str:
        metadata_path = self.artifact_dir / ARTIFACT_METADATA_NAME
        try:
            metadata = json.loads(metadata_path.read_text(encoding="utf-8"))
            name = metadata.get("name") if isinstance(metadata, dict) else None
        except (OSError, ValueError):
            name = None
        return name or f"fcvm-{self.instance_id[:8]}"

    def inject_guest_files(self, boot: BootConfig) -> None:
        """Write the runtime env file (and best-effort hostname/resolv.conf) into the image."""
        variables = infer_guest_environment(self.environ)
        contents = render_env_file(variables, uid=self.settings.uid, init_args=boot.init_args)
        with tempfile.TemporaryDirectory(prefix="fcvm-inject-") as tmp:
            staging = Path(tmp)
            env_file = staging / "env.sh"
            env_file.write_text(contents, encoding="utf-8")
            guest_dir = GUEST_ENV_FILE.rpartition("/")[0]
            try:
                self.tools.make_dir(self.rootfs, guest_dir)
                self.tools.copy_in(self.rootfs, env_file, GUEST_ENV_FILE, mode=0o644)
            except (subprocess.CalledProcessError, OSError) as exc:
                raise LaunchError(f"Failed to write {GUEST_ENV_FILE} into {self.rootfs}: {exc}") from exc

            hostname = staging / "hostname"
            hostname.write_text(self._guest_hostname() + "\n", encoding="utf-8")
            extras = [(hostname, "/etc/hostname")]
            if HOST_RESOLV_CONF.is_file():
                extras.append((HOST_RESOLV_CONF, "/etc/resolv.conf"))
            for local_path, guest_path in extras:
                try:
                    self.tools.copy_in(self.rootfs, local_path, guest_path)
                except (subprocess.CalledProcessError, OSError) as exc:
                    logger.warning("could not write %s into the guest: %s", guest_path, exc)

    def _run_hypervisor(self, config_path: Path) -> int:
        binary = shutil.which(HYPERVISOR, path=self.environ.get("PATH"))
        if binary is None:
            raise LaunchError(f"{HYPERVISOR} was not found on PATH.")
        args = [binary, "--no-api", "--config-file", str(config_path)]
        logger.info("starting %s", " ".join(args))
        try:
            completed = self.runner(args, check=False, env={"PATH": os.defpath})
        except OSError as exc:
            raise LaunchError(f"Failed to start {HYPERVISOR}: {exc}") from exc
        return completed.returncode

    def run(self, args: Sequence[str] = ()) -> int:
        """Boot the guest and block until it exits; returns the hypervisor's status."""
        self.validate()
        address = allocate_address(self.settings.guest_ip)
        self.resize()
        boot = self.compute_boot_config(args, address)
        self.inject_guest_files(boot)

        state_dir = run_dir(self.instance_id, self.app_dir)
        with exit_on_termination():
            try:
                with self.network_factory(
                    self.instance_id, address, uplink=self.settings.uplink, runner=self.runner
                ) as network:
                    config = build_vm_config(
                        kernel=self.kernel,
                        rootfs=self.rootfs,
                        boot=boot,
                        address=address,
                        tap=network.tap,
                    )
                    config_path = state_dir / VM_CONFIG_NAME
                    try:
                        state_dir.mkdir(parents=True, exist_ok=True)
                        config_path.write_text(json.dumps(config, indent=2) + "\n", encoding="utf-8")
                    except OSError as exc:
                        raise LaunchError(f"Failed to write {config_path}: {exc}") from exc
                    returncode = self._run_hypervisor(config_path)
            finally:
                force_rmtree(state_dir)
        if returncode != 0:
            logger.warning("%s exited with status %d", HYPERVISOR, returncode)
        return returncode


def launch(artifact_dir: str | Path, args: Sequence[str] = (), **kwargs: Any) -> int:
    return Launcher(artifact_dir, **kwargs).run(args)
