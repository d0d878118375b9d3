from __future__ import annotations

import importlib
import json
import os
import shutil
import signal
import subprocess
from pathlib import Path

import pytest

from fcvm.errors import LaunchError, ValidationError
from fcvm.image import ImageConfig
from fcvm.initgen import render_argv_snippet
from fcvm.network import allocate_address
from fcvm.tools import FsckResult

launch = importlib.import_module("fcvm.launch")


class FakeTools:
    def __init__(self, *, used_blocks: int | None = 1000, init_dir: str | None = "/sbin",
                 fail_fsck: bool = False) -> None:
        self.used_blocks = used_blocks
        self.init_dir = init_dir
        self.fail_fsck = fail_fsck
        self.calls: list[tuple] = []
        self.copied: dict[str, str] = {}

    def check(self, image: Path) -> FsckResult:
        self.calls.append(("check", image))
        if self.fail_fsck:
            raise subprocess.CalledProcessError(8, ["e2fsck"], stderr="bad superblock")
        return FsckResult(0, self.used_blocks, 4096, "")

    def resize(self, image: Path, size) -> None:
        self.calls.append(("resize", image, size))

    def list_dir(self, image: Path, guest_dir: str) -> list[str]:
        self.calls.append(("list_dir", guest_dir))
        return ["init-entrypoint"] if guest_dir == self.init_dir else []

    def make_dir(self, image: Path, guest_dir: str, *, mode: int = 0o755) -> None:
        self.calls.append(("make_dir", guest_dir))

    def copy_in(self, image: Path, local_path: Path, guest_path: str, *, mode: int = 0o644) -> None:
        self.calls.append(("copy_in", guest_path))
        self.copied[guest_path] = local_path.read_text(encoding="utf-8")


class FakeNetwork:
    instances: list["FakeNetwork"] = []

    def __init__(self, instance_id, address, *, uplink=None, runner=None) -> None:
        self.tap = f"fc-{instance_id[:8]}"
        self.address = address
        self.uplink = uplink
        self.entered = False
        self.exited = False
        FakeNetwork.instances.append(self)

    def __enter__(self) -> "FakeNetwork":
        self.entered = True
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.exited = True


class HypervisorRunner:
    def __init__(self, returncode: int = 0) -> None:
        self.returncode = returncode
        self.calls: list[tuple[list[str], dict]] = []
        self.config: dict | None = None

    def __call__(self, args, **kwargs):
        self.calls.append((list(args), kwargs))
        self.config = json.loads(Path(args[-1]).read_text(encoding="utf-8"))
        return subprocess.CompletedProcess(args, self.returncode)


@pytest.fixture
def host(tmp_path: Path, monkeypatch) -> dict:
    artifact = tmp_path / "artifact"
    artifact.mkdir()
    (artifact / "rootfs.ext4").write_bytes(b"ext4")
    (artifact / "image.json").write_text(json.dumps({"name": "hello-world-latest-fc"}), encoding="utf-8")
    kernel = tmp_path / "vmlinux"
    kernel.write_bytes(b"kernel")
    proc = tmp_path / "proc"
    (proc / "sys" / "net" / "ipv4").mkdir(parents=True)
    (proc / "sys" / "net" / "ipv4" / "ip_forward").write_text("1\n", encoding="utf-8")
    resolv = tmp_path / "resolv.conf"
    resolv.write_text("nameserver 1.1.1.1\n", encoding="utf-8")
    monkeypatch.setattr(launch, "HOST_RESOLV_CONF", resolv)
    monkeypatch.setattr(launch.shutil, "which", lambda name, path=None: f"/usr/bin/{name}")
    FakeNetwork.instances = []
    return {
        "artifact": artifact,
        "kernel": kernel,
        "proc": proc,
        "app_dir": tmp_path / "app",
        "cgroup": tmp_path / "cgroup",
    }


def _launcher(host: dict, environ: dict[str, str] | None = None, **kwargs) -> launch.Launcher:
    env = {"FC_KERNEL_IMAGE": str(host["kernel"]), "FC_GUEST_IP": "172.16.3.2", "FC_UPLINK": "eth0"}
    env.update(environ or {})
    kwargs.setdefault("tools", FakeTools())
    kwargs.setdefault("network_factory", FakeNetwork)
    return launch.Launcher(
        host["artifact"],
        environ=env,
        app_dir=host["app_dir"],
        cgroup_root=host["cgroup"],
        proc_root=host["proc"],
        instance_id="0123456789abcdef",
        **kwargs,
    )


def test_settings_defaults() -> None:
    settings = launch.LaunchSettings.from_environ({})
    assert settings == launch.LaunchSettings()
    assert settings.ephemeral_storage is None
    assert not settings.ht_enabled


def test_settings_parse_overrides() -> None:
    settings = launch.LaunchSettings.from_environ(
        {
            "FC_KERNEL_LOGLEVEL": "7",
            "FC_KERNEL_BOOTARGS": "quiet",
            "FC_EPHEMERAL_STORAGE": "2G",
            "FC_VCPU_COUNT": "1",
            "FC_MEM_SIZE": "512",
            "FC_HT_ENABLED": "true",
            "FC_UID": "1000",
        }
    )
    assert settings.kernel_loglevel == 7
    assert settings.kernel_bootargs == "quiet"
    assert settings.ephemeral_storage == "2G"
    assert settings.vcpu_count == 1
    assert settings.mem_size_mib == 512
    assert settings.ht_enabled
    assert settings.uid == 1000


@pytest.mark.parametrize(
    ("name", "value"),
    [
        ("FC_VCPU_COUNT", "two"),
        ("FC_VCPU_COUNT", "0"),
        ("FC_MEM_SIZE", "-1"),
        ("FC_HT_ENABLED", "maybe"),
        ("FC_EPHEMERAL_STORAGE", "lots"),
        ("FC_KERNEL_LOGLEVEL", "9"),
    ],
)
def test_settings_reject_malformed_values(name: str, value: str) -> None:
    with pytest.raises(ValidationError, match=name):
        launch.LaunchSettings.from_environ({name: value})


def test_boot_args_order() -> None:
    address = allocate_address("172.16.3.2")
    args = launch.build_boot_args(
        loglevel=3, init_path="/sbin/init-entrypoint", address=address, extra="quiet foo=bar"
    )
    words = args.split()
    assert words[0] == "console=ttyS0"
    for flag in ("noapic", "panic=1", "pci=off", "random.trust_cpu=on", "tsc=reliable", "ipv6.disable=1"):
        assert flag in words
    assert words.index("loglevel=3") < words.index("init=/sbin/init-entrypoint")
    assert args.endswith("quiet foo=bar")


def test_vm_config_document(host: dict) -> None:
    address = allocate_address("172.16.3.2")
    boot = launch.BootConfig("console=ttyS0", 2, 1024, False, None, ())
    config = launch.build_vm_config(
        kernel=host["kernel"], rootfs=Path("/a/rootfs.ext4"), boot=boot, address=address, tap="fc-1"
    )
    assert config["boot-source"] == {"kernel_image_path": str(host["kernel"]), "boot_args": "console=ttyS0"}
    assert config["drives"][0]["is_root_device"] is True
    assert config["drives"][0]["is_read_only"] is False
    assert config["network-interfaces"][0] == {
        "iface_id": "eth0",
        "guest_mac": address.mac,
        "host_dev_name": "fc-1",
    }
    assert config["machine-config"] == {"vcpu_count": 2, "mem_size_mib": 1024, "ht_enabled": False}


def test_validate_missing_kernel_touches_nothing(host: dict) -> None:
    host["kernel"].unlink()
    launcher = _launcher(host)

    with pytest.raises(ValidationError, match="Kernel image"):
        launcher.run()
    assert FakeNetwork.instances == []
    assert launcher.tools.calls == []


def test_validate_requires_ip_forwarding(host: dict) -> None:
    (host["proc"] / "sys" / "net" / "ipv4" / "ip_forward").write_text("0\n", encoding="utf-8")
    launcher = _launcher(host)

    with pytest.raises(ValidationError, match="forwarding"):
        launcher.run()
    assert FakeNetwork.instances == []


def test_resize_doubles_used_blocks_by_default(host: dict) -> None:
    launcher = _launcher(host)
    assert launcher.resize()
    assert ("resize", launcher.rootfs, 2000) in launcher.tools.calls


def test_resize_explicit_size(host: dict) -> None:
    launcher = _launcher(host, {"FC_EPHEMERAL_STORAGE": "4G"})
    launcher.resize()
    assert ("resize", launcher.rootfs, "4G") in launcher.tools.calls


def test_resize_zero_skips_everything(host: dict) -> None:
    launcher = _launcher(host, {"FC_EPHEMERAL_STORAGE": "0"})
    assert not launcher.resize()
    assert launcher.tools.calls == []


def test_resize_failure_is_not_fatal(host: dict) -> None:
    launcher = _launcher(host, tools=FakeTools(fail_fsck=True))
    assert not launcher.resize()


def test_boot_config_points_at_generated_init(host: dict) -> None:
    launcher = _launcher(host, {"FC_VCPU_COUNT": "1"}, tools=FakeTools(init_dir="/usr/bin"))
    boot = launcher.compute_boot_config(["a", "b c"], allocate_address("172.16.3.2"))

    assert boot.init_path == "/usr/bin/init-entrypoint"
    assert "init=/usr/bin/init-entrypoint" in boot.boot_args
    assert "ip=172.16.3.2::172.16.3.1:255.255.255.0::eth0:off" in boot.boot_args
    assert boot.init_args == ("a", "b c")
    assert boot.vcpu_count == 1


def test_boot_config_without_generated_init(host: dict) -> None:
    launcher = _launcher(host, tools=FakeTools(init_dir=None))
    boot = launcher.compute_boot_config(["ignored"])

    assert boot.init_path is None
    assert "init=" not in boot.boot_args
    assert boot.init_args == ()


def test_inject_guest_files_writes_env_file(host: dict) -> None:
    launcher = _launcher(host, {"GREETING": "hi there", "PATH": "/host/bin", "FC_UID": "1000"})
    boot = launcher.compute_boot_config(["it's", "two words"])
    launcher.inject_guest_files(boot)

    env_file = launcher.tools.copied["/etc/profile.d/01-container-env-vars.sh"]
    lines = env_file.splitlines()
    assert 'export "GREETING=hi there"' in lines
    assert 'export "FC_UID=1000"' in lines
    assert not any("/host/bin" in line for line in lines)
    assert any(line.startswith('export "INIT_ARGS=') for line in lines)
    assert launcher.tools.copied["/etc/hostname"] == "hello-world-latest-fc\n"
    assert launcher.tools.copied["/etc/resolv.conf"] == "nameserver 1.1.1.1\n"
    assert ("make_dir", "/etc/profile.d") in launcher.tools.calls


def test_run_boots_and_cleans_up(host: dict) -> None:
    runner = HypervisorRunner(returncode=3)
    launcher = _launcher(host, {"SECRET": "guest-only"}, runner=runner)

    assert launcher.run(["--port", "80"]) == 3

    (args, kwargs), = runner.calls
    assert args[:3] == ["/usr/bin/firecracker", "--no-api", "--config-file"]
    assert "SECRET" not in kwargs["env"]
    assert set(kwargs["env"]) == {"PATH"}
    assert runner.config["network-interfaces"][0]["host_dev_name"] == "fc-01234567"
    assert runner.config["drives"][0]["path_on_host"] == str(launcher.rootfs)
    network, = FakeNetwork.instances
    assert network.entered and network.exited
    assert network.uplink == "eth0"
    assert not Path(args[-1]).exists()


def test_run_tears_down_network_when_hypervisor_is_missing(host: dict, monkeypatch) -> None:
    monkeypatch.setattr(launch.shutil, "which", lambda name, path=None: None)
    launcher = _launcher(host, runner=HypervisorRunner())

    with pytest.raises(LaunchError, match="firecracker"):
        launcher.run()
    network, = FakeNetwork.instances
    assert network.exited


@pytest.mark.skipif(shutil.which("sh") is None, reason="needs a POSIX shell")
def test_injected_init_args_resplit_in_guest_shell(host: dict) -> None:
    launcher = _launcher(host, tools=FakeTools())
    boot = launcher.compute_boot_config(["it's", "two words", "$HOME"])
    launcher.inject_guest_files(boot)
    env_file = launcher.tools.copied["/etc/profile.d/01-container-env-vars.sh"]

    snippet = render_argv_snippet(ImageConfig(cmd=("/bin/true",)))
    script = f'{env_file}\n{snippet}\nprintf "%s\\n" "$@"\n'
    completed = subprocess.run(
        ["sh", "-c", script], capture_output=True, check=True, env={"PATH": "/usr/bin:/bin"}, text=True
    )

    assert completed.stdout.splitlines() == ["it's", "two words", "$HOME"]


class TerminatedRunner(HypervisorRunner):
    """Delivers SIGTERM to this process while the hypervisor would be running."""

    def __call__(self, args, **kwargs):
        completed = super().__call__(args, **kwargs)
        os.kill(os.getpid(), signal.SIGTERM)
        return completed


def test_sigterm_during_run_still_tears_down_network(host: dict) -> None:
    previous = signal.getsignal(signal.SIGTERM)
    launcher = _launcher(host, runner=TerminatedRunner())

    with pytest.raises(SystemExit) as excinfo:
        launcher.run()

    assert excinfo.value.code == 128 + signal.SIGTERM
    network, = FakeNetwork.instances
    assert network.exited
    assert not (host["app_dir"] / "run" / "0123456789abcdef").exists()
    assert signal.getsignal(signal.SIGTERM) is previous


def test_host_init_args_are_not_forwarded(host: dict) -> None:
    launcher = _launcher(host, {"INIT_ARGS": "$(reboot)", "__FC_UID__": "0"}, tools=FakeTools())
    launcher.inject_guest_files(launcher.compute_boot_config([]))
    env_file = launcher.tools.copied["/etc/profile.d/01-container-env-vars.sh"]

    assert "INIT_ARGS" not in env_file
    assert env_file.count("FC_UID=") == 1
