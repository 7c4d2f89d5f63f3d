"""Parsers for VBoxManage and guest output.

Grammars handled here:

* ``showvminfo --machinereadable``: one ``key=value`` per line, where either
  side may be double-quoted (``"SATA-1-0"="/path/disk.vmdk"``, ``cpus=2``).
* ``list hostonlyifs`` / ``list dhcpservers``: blocks of ``Key:   value``
  lines separated by blank lines.
* ``ip addr show dev eth1`` in the guest: the first ``inet <ip>/<prefix> ...``
  line carries the host-only address.
"""

from __future__ import annotations

from pathlib import Path
from typing import Dict, List

from vboxnode.constants import (
    RE_COLON_LINE,
    RE_MACHINE_READABLE_LINE,
    RE_VM_STATE,
    VTX_DISABLED_MARKERS,
)
from vboxnode.exceptions import NodeError
from vboxnode.models import VMState

VM_STATE_TOKENS = {
    "running": VMState.RUNNING,
    "paused": VMState.PAUSED,
    "saved": VMState.SAVED,
    "poweroff": VMState.STOPPED,
    "aborted": VMState.STOPPED,
}


def parse_machine_readable(output: str) -> Dict[str, str]:
    values: Dict[str, str] = {}
    for line in output.splitlines():
        line = line.strip()
        if not line:
            continue
        match = RE_MACHINE_READABLE_LINE.match(line)
        if match is None:
            continue
        key = match.group(1) if match.group(1) is not None else match.group(2)
        value = match.group(3) if match.group(3) is not None else match.group(4)
        values[key] = value
    return values


def parse_vm_state(output: str) -> VMState:
    """Map the ``VMState="<token>"`` field; unknown or missing tokens are UNKNOWN."""
    match = RE_VM_STATE.search(output)
    if match is None:
        return VMState.UNKNOWN
    return VM_STATE_TOKENS.get(match.group(1), VMState.UNKNOWN)


def parse_colon_blocks(output: str) -> List[Dict[str, str]]:
    blocks: List[Dict[str, str]] = []
    current: Dict[str, str] = {}
    for line in output.splitlines():
        if not line.strip():
            if current:
                blocks.append(current)
                current = {}
            continue
        match = RE_COLON_LINE.match(line.strip())
        if match is None:
            continue
        current[match.group(1)] = match.group(2).strip()
    if current:
        blocks.append(current)
    return blocks


def parse_inet_address(output: str) -> str:
    # inet 192.168.99.100/24 brd 192.168.99.255 scope global eth1
    for line in output.splitlines():
        fields = line.split()
        if len(fields) >= 2 and fields[0] == "inet":
            return fields[1].split("/", 1)[0]
    raise NodeError(f"No IP address found {output}")


def vm_log_reports_vtx_disabled(log_path: Path) -> bool:
    """Scan a VBox.log for the messages VirtualBox prints when VT-x is unusable.

    A missing or unreadable log raises ``OSError``.
    """
    log_text = log_path.read_text(errors="replace")
    return any(marker in line for line in log_text.splitlines() for marker in VTX_DISABLED_MARKERS)
