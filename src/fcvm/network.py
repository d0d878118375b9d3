"""Per-guest host networking: a tap device plus NAT/port-forward rules."""

from __future__ import annotations

import ipaddress
import logging
import random
import shlex
import subprocess
from collections.abc import Callable
from dataclasses import dataclass

from .errors import NetworkSetupError

logger = logging.getLogger(__name__)

GUEST_SUPERNET = ipaddress.ip_network("172.16.0.0/12")
GUEST_PREFIX_LENGTH = 24
GUEST_NETMASK = "255.255.255.0"
GUEST_HOST_OFFSET = 2
DEFAULT_UPLINK = "eth0"
GUEST_IFACE = "eth0"
_TAP_PREFIX = "fc-"


@dataclass(frozen=True)
class GuestAddress:
    guest_ip: str
    gateway_ip: str
    mac: str

    def kernel_ip_arg(self) -> str:
        """``ip=`` boot argument configuring the guest NIC statically."""
        return f"ip={self.guest_ip}::{self.gateway_ip}:{GUEST_NETMASK}::{GUEST_IFACE}:off"


def guest_mac(guest_ip: str) -> str:
    """Locally administered MAC carrying the guest IPv4 address."""
    octets = ipaddress.IPv4Address(guest_ip).packed
    return ":".join(f"{value:02x}" for value in (0x06, 0x00, *octets))


def allocate_address(fixed_ip: str | None = None, *, rng: random.Random | None = None) -> GuestAddress:
    """Fixed or pseudo-random guest address; the gateway is host 1 of its /24."""
    if fixed_ip:
        try:
            guest = ipaddress.IPv4Address(fixed_ip)
        except ValueError as exc:
            raise NetworkSetupError(f"Invalid guest IP: {fixed_ip!r}") from exc
    else:
        chooser = rng or random.SystemRandom()
        subnets = GUEST_SUPERNET.num_addresses >> (32 - GUEST_PREFIX_LENGTH)
        base = GUEST_SUPERNET.network_address + (chooser.randrange(subnets) << 8)
        guest = base + GUEST_HOST_OFFSET

    subnet = ipaddress.ip_network(f"{guest}/{GUEST_PREFIX_LENGTH}", strict=False)
    gateway = subnet.network_address + 1
    if guest in {subnet.network_address, gateway, subnet.broadcast_address}:
        raise NetworkSetupError(f"Guest IP {guest} collides with the network, gateway or broadcast address.")
    return GuestAddress(guest_ip=str(guest), gateway_ip=str(gateway), mac=guest_mac(str(guest)))


def tap_device_name(instance_id: str) -> str:
    # interface names are limited to 15 characters
    return f"{_TAP_PREFIX}{instance_id[:8]}"


def detect_uplink(runner: Callable[..., subprocess.CompletedProcess] = subprocess.run) -> str:
    try:
        completed = runner(
            ["ip", "route", "show", "default"], capture_output=True, check=True, text=True
        )
    except (subprocess.CalledProcessError, OSError):
        return DEFAULT_UPLINK
    fields = completed.stdout.split()
    if "dev" in fields and fields.index("dev") + 1 < len(fields):
        return fields[fields.index("dev") + 1]
    return DEFAULT_UPLINK


class HostNetwork:
    """Tap device and iptables rules owned by one guest.

    Use as a context manager: everything installed by ``__enter__`` is removed
    on exit, and a partial setup is rolled back before the error propagates.
    """

    def __init__(
        self,
        instance_id: str,
        address: GuestAddress,
        *,
        uplink: str | None = None,
        runner: Callable[..., subprocess.CompletedProcess] = subprocess.run,
    ):
        self.instance_id = instance_id
        self.address = address
        self.tap = tap_device_name(instance_id)
        self.comment = f"fcvm:{instance_id}"
        self.runner = runner
        self.uplink = uplink or detect_uplink(runner)
        self._undo: list[list[str]] = []

    def rules(self) -> list[tuple[str, str, list[str]]]:
        """``(table, chain, rule)`` triples, in installation order."""
        return [
            ("nat", "POSTROUTING", ["-o", self.uplink, "-j", "MASQUERADE"]),
            (
                "filter",
                "FORWARD",
                ["-m", "conntrack", "--ctstate", "RELATED,ESTABLISHED", "-j", "ACCEPT"],
            ),
            ("filter", "FORWARD", ["-i", self.tap, "-o", self.uplink, "-j", "ACCEPT"]),
            (
                "nat",
                "PREROUTING",
                ["-i", self.uplink, "-j", "DNAT", "--to-destination", self.address.guest_ip],
            ),
        ]

    def _run(self, args: list[str]) -> None:
        logger.debug("run: %s", shlex.join(args))
        self.runner(args, capture_output=True, check=True, text=True)

    def _step(self, args: list[str], undo: list[str]) -> None:
        self._run(args)
        self._undo.append(undo)

    def setup(self) -> None:
        gateway_cidr = f"{self.address.gateway_ip}/{GUEST_PREFIX_LENGTH}"
        try:
            self._step(
                ["ip", "tuntap", "add", "dev", self.tap, "mode", "tap"],
                ["ip", "link", "del", self.tap],
            )
            self._run(["ip", "addr", "add", gateway_cidr, "dev", self.tap])
            self._run(["ip", "link", "set", "dev", self.tap, "up"])
            for table, chain, rule in self.rules():
                tagged = [*rule, "-m", "comment", "--comment", self.comment]
                self._step(
                    ["iptables", "-t", table, "-A", chain, *tagged],
                    ["iptables", "-t", table, "-D", chain, *tagged],
                )
        except subprocess.CalledProcessError as exc:
            self.teardown()
            detail = (exc.stderr or "").strip() if isinstance(exc.stderr, str) else ""
            raise NetworkSetupError(f"{shlex.join(exc.cmd)} failed: {detail or exc}") from exc
        except OSError as exc:
            self.teardown()
            raise NetworkSetupError(f"Host network setup failed: {exc}") from exc
        logger.info(
            "network ready: %s (%s) -> guest %s via %s",
            self.tap,
            self.uplink,
            self.address.guest_ip,
            self.address.gateway_ip,
        )

    def teardown(self) -> None:
        while self._undo:
            args = self._undo.pop()
            try:
                self._run(args)
            except (subprocess.CalledProcessError, OSError) as exc:
                logger.warning("teardown step failed: %s (%s)", shlex.join(args), exc)

    def __enter__(self) -> "HostNetwork":
        self.setup()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.teardown()
        return None
