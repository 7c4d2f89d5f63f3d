"""NAT port forwarding for vboxnode."""

from __future__ import annotations

import socket
import time
from typing import Callable

from vboxnode.constants import DEFAULT_PORT_ATTEMPTS
from vboxnode.exceptions import CommandError, PortAllocationFailedError
from vboxnode.utils import log
from vboxnode.vbm import VBoxManager

_BACKOFF_STEP = 0.1


def get_available_tcp_port(
    preferred: int = 0,
    attempts: int = DEFAULT_PORT_ATTEMPTS,
    sleep: Callable[[float], None] = time.sleep,
) -> int:
    """Return a free TCP port on 127.0.0.1, trying ``preferred`` first.

    The probe socket is closed before returning, so the port is only free at
    the time of the check; whoever binds it next (VirtualBox) can still lose it.
    """
    port = preferred
    for attempt in range(attempts):
        try:
            with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
                sock.bind(("127.0.0.1", port))
                sock.listen(1)
                bound = sock.getsockname()[1]
        except OSError as exc:
            log("DEBUG", f"Port {port} unavailable: {exc}")
            bound = 0
        if bound:
            return bound
        # Throw away the hint and let the OS choose.
        port = 0
        sleep(_BACKOFF_STEP * (attempt + 1))
    raise PortAllocationFailedError()


def set_port_forwarding(
    vbox: VBoxManager,
    machine_name: str,
    interface_num: int,
    rule_name: str,
    protocol: str,
    guest_port: int,
    desired_host_port: int,
    attempts: int = DEFAULT_PORT_ATTEMPTS,
    sleep: Callable[[float], None] = time.sleep,
) -> int:
    """Install ``rule_name`` mapping a free host port to ``guest_port``; return the host port."""
    host_port = get_available_tcp_port(desired_host_port, attempts=attempts, sleep=sleep)
    if desired_host_port and host_port != desired_host_port:
        log(
            "DEBUG",
            f"NAT forwarding host port for guest port {guest_port} ({rule_name}) "
            f"changed from {desired_host_port} to {host_port}",
        )
    flag = f"--natpf{interface_num}"
    try:
        vbox.vbm("modifyvm", machine_name, flag, "delete", rule_name)
    except CommandError:
        log("DEBUG", f"No existing {rule_name} forwarding rule on {machine_name}")
    vbox.vbm(
        "modifyvm", machine_name,
        flag, f"{rule_name},{protocol},127.0.0.1,{host_port},,{guest_port}",
    )
    return host_port
