"""Shared test fixtures and a scripted VBoxManage stand-in."""

from __future__ import annotations

from contextlib import contextmanager
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional, Tuple

import pytest

from vboxnode.exceptions import CommandError, MachineNotFoundError
from vboxnode.models import DriverConfig
from vboxnode.vbm import VBoxManager


def _value(args: Tuple[str, ...], flag: str) -> str:
    return args[args.index(flag) + 1]


def hostonly_block(name: str, ip: str, netmask: str, dhcp: str = "Disabled") -> str:
    return (
        f"Name:            {name}\n"
        "GUID:            786f6276-656e-4074-8000-0a0027000000\n"
        f"DHCP:            {dhcp}\n"
        f"IPAddress:       {ip}\n"
        f"NetworkMask:     {netmask}\n"
        "IPV6Address:\n"
        "IPV6NetworkMaskPrefixLength: 0\n"
        "HardwareAddress: 0a:00:27:00:00:00\n"
        "MediumType:      Ethernet\n"
        "Status:          Up\n"
        f"VBoxNetworkName: HostInterfaceNetworking-{name}\n"
        "\n"
    )


def dhcp_block(netname: str, ip: str, netmask: str, lower: str, upper: str, enabled: str = "Yes") -> str:
    return (
        f"NetworkName:    {netname}\n"
        f"IP:             {ip}\n"
        f"NetworkMask:    {netmask}\n"
        f"lowerIPAddress: {lower}\n"
        f"upperIPAddress: {upper}\n"
        f"Enabled:        {enabled}\n"
        "\n"
    )


class CountingWriter:
    """Binary sink that only remembers how much was written."""

    def __init__(self) -> None:
        self.count = 0
        self.head = b""

    def write(self, data: bytes) -> int:
        if len(self.head) < 512:
            self.head += data[: 512 - len(self.head)]
        self.count += len(data)
        return len(data)


class FakeVBoxManager(VBoxManager):
    """Record VBoxManage invocations and answer them from scripted state.

    ``state`` is the VMState token reported by ``showvminfo``. Entries queued in
    ``state_sequence`` are consumed one per ``showvminfo`` call. ``transitions``
    maps a lifecycle action to the state it leaves behind (a list queues a
    sequence instead).
    """

    def __init__(self, state: str = "poweroff", exists: bool = True) -> None:
        self.calls: List[Tuple[str, ...]] = []
        self.state = state
        self.state_sequence: List[str] = []
        self.exists = exists
        self.version = "6.1.38r153438"
        self.hostonlyifs = ""
        self.dhcpservers = ""
        self.machine_readable: Dict[str, str] = {}
        self.failures: Dict[Tuple[str, ...], CommandError] = {}
        self.transitions: Dict[str, Any] = {
            "startvm": "running",
            "resume": "running",
            "acpipowerbutton": "poweroff",
            "poweroff": "poweroff",
            "reset": "running",
        }
        self.basefolders: Dict[str, Path] = {}
        self.vm_log_text = "VirtualBox VM starting\n"
        self.streamed: List[Tuple[Tuple[str, ...], CountingWriter]] = []

    # -- helpers for assertions -------------------------------------------

    def commands(self, name: str) -> List[Tuple[str, ...]]:
        return [call for call in self.calls if call[0] == name]

    def find(self, *prefix: str) -> Optional[Tuple[str, ...]]:
        for call in self.calls:
            if call[: len(prefix)] == prefix:
                return call
        return None

    def _transition(self, action: str) -> None:
        target = self.transitions.get(action)
        if target is None:
            return
        if isinstance(target, str):
            self.state = target
        else:
            self.state_sequence = list(target)

    # -- VBoxManager ------------------------------------------------------

    def run_captured(self, *args: str) -> Tuple[str, str]:
        self.calls.append(tuple(args))
        for prefix, exc in self.failures.items():
            if tuple(args[: len(prefix)]) == prefix:
                raise exc

        cmd = args[0]
        if cmd == "--version":
            return self.version + "\n", ""
        if cmd == "showvminfo":
            name = args[1]
            if name in self.machine_readable:
                return self.machine_readable[name], ""
            if not self.exists:
                stderr = f"VBoxManage: error: Could not find a registered machine named '{name}'\n"
                raise MachineNotFoundError(["VBoxManage", *args], stderr=stderr, returncode=1)
            if self.state_sequence:
                self.state = self.state_sequence.pop(0)
            return f'name="{name}"\nVMState="{self.state}"\n', ""
        if cmd == "list":
            return (self.hostonlyifs if args[1] == "hostonlyifs" else self.dhcpservers), ""
        if cmd == "hostonlyif" and args[1] == "create":
            return "0%...10%...100%\nInterface 'vboxnet0' was successfully created\n", ""
        if cmd == "hostonlyif" and args[1] == "ipconfig" and "--ip" in args:
            self.hostonlyifs += hostonly_block(args[2], _value(args, "--ip"), _value(args, "--netmask"))
        elif cmd == "dhcpserver" and args[1] == "add":
            self.dhcpservers += dhcp_block(
                _value(args, "--netname"),
                _value(args, "--ip"),
                _value(args, "--netmask"),
                _value(args, "--lowerip"),
                _value(args, "--upperip"),
            )
        elif cmd == "createvm":
            self.basefolders[_value(args, "--name")] = Path(_value(args, "--basefolder"))
            self.exists = True
        elif cmd == "startvm":
            self._write_log(args[1])
            self._transition("startvm")
        elif cmd == "controlvm":
            self._transition(args[2])
        elif cmd == "unregistervm":
            self.exists = False
        return "", ""

    def _write_log(self, name: str) -> None:
        base = self.basefolders.get(name)
        if base is None:
            return
        log_path = base / name / "Logs" / "VBox.log"
        log_path.parent.mkdir(parents=True, exist_ok=True)
        log_path.write_text(self.vm_log_text)

    @contextmanager
    def stream_stdin(self, *args: str) -> Iterator[CountingWriter]:
        self.calls.append(tuple(args))
        writer = CountingWriter()
        yield writer
        self.streamed.append((tuple(args), writer))


@pytest.fixture
def fake_vbox() -> FakeVBoxManager:
    return FakeVBoxManager()


@pytest.fixture
def driver_config(tmp_path) -> DriverConfig:
    """A DriverConfig rooted in tmp_path with a local seed image."""
    seed = tmp_path / "seed" / "boot2docker.iso"
    seed.parent.mkdir()
    seed.write_bytes(b"ISO" * 100)
    return DriverConfig(
        store_path=tmp_path / "store",
        seed_url=str(seed),
        ssh_wait_attempts=3,
        ip_wait_attempts=3,
        stop_poll_attempts=5,
        remove_settle_delay=0.0,
    )


@pytest.fixture
def mock_env(monkeypatch):
    """Helper to set environment variables for tests."""

    def _set(**kwargs):
        for key, value in kwargs.items():
            if value is None:
                monkeypatch.delenv(key, raising=False)
            else:
                monkeypatch.setenv(key, str(value))

    return _set


# All environment variables that parse_env() reads; cleared for a clean slate.
_PARSE_ENV_VARS = [
    "VBOXNODE_STORAGE_PATH",
    "VBOXMANAGE",
    "VIRTUALBOX_MEMORY_SIZE",
    "VIRTUALBOX_CPU_COUNT",
    "VIRTUALBOX_DISK_SIZE",
    "VIRTUALBOX_BOOT2DOCKER_URL",
    "VIRTUALBOX_BOOT2DOCKER_IMPORT_VM",
    "VIRTUALBOX_HOSTONLY_CIDR",
    "VIRTUALBOX_HOSTONLY_NIC_TYPE",
    "VIRTUALBOX_HOSTONLY_NIC_PROMISC",
    "VIRTUALBOX_HOST_DNS_RESOLVER",
    "VIRTUALBOX_NO_SHARE",
    "VIRTUALBOX_DNS_PROXY",
    "VIRTUALBOX_NO_VTX_CHECK",
    "VBOXNODE_SSH_WAIT_ATTEMPTS",
    "VBOXNODE_SSH_WAIT_INTERVAL",
    "VBOXNODE_IP_WAIT_ATTEMPTS",
    "VBOXNODE_IP_WAIT_INTERVAL",
    "VBOXNODE_STOP_POLL_INTERVAL",
    "VBOXNODE_STOP_POLL_ATTEMPTS",
    "VBOXNODE_REMOVE_SETTLE_DELAY",
    "VBOXNODE_PORT_ATTEMPTS",
    "MACHINE_DEBUG",
]


@pytest.fixture
def clean_env(monkeypatch):
    """Clear all environment variables that parse_env() reads."""
    for key in _PARSE_ENV_VARS:
        monkeypatch.delenv(key, raising=False)
