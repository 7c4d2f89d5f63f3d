"""Host-only network management for vboxnode."""

from __future__ import annotations

import ipaddress
import random
from typing import Callable, Dict, Optional, Tuple

from vboxnode.constants import (
    DHCP_LEASE_HIGH,
    DHCP_LEASE_LOW,
    DHCP_NETWORK_PREFIX,
    DHCP_PICK_ATTEMPTS,
    DHCP_SERVER_SPAN,
    RE_HOSTONLY_CREATED,
)
from vboxnode.exceptions import (
    ConfigError,
    NetworkIsNetworkAddressError,
    NodeError,
    RandomIPGenerationFailedError,
)
from vboxnode.models import DHCPServer, HostOnlyNetwork
from vboxnode.status import parse_colon_blocks
from vboxnode.utils import log
from vboxnode.vbm import VBoxManager

IPv4Address = ipaddress.IPv4Address
IPv4Network = ipaddress.IPv4Network

# VirtualBox briefly reports this mask for a freshly created interface.
_TRANSIENT_MASK = IPv4Address("15.0.0.0")


def parse_and_validate_cidr(cidr: str) -> Tuple[IPv4Address, IPv4Network]:
    """Split ``192.168.99.1/24`` into host address and network.

    The host address must not be the network address itself.
    """
    try:
        interface = ipaddress.IPv4Interface(cidr.strip())
    except ValueError as exc:
        raise ConfigError(f"Invalid host-only CIDR '{cidr}': {exc}") from exc
    if interface.ip == interface.network.network_address:
        raise NetworkIsNetworkAddressError(cidr)
    return interface.ip, interface.network


def pick_random_dhcp_address(
    host_ip: IPv4Address,
    randint: Callable[[int, int], int] = random.randint,
) -> IPv4Address:
    """Pick a DHCP server address among the first addresses of the host's /24.

    Gives up after a handful of draws that all land on the host address.
    """
    octets = host_ip.packed
    for _ in range(DHCP_PICK_ATTEMPTS):
        last = randint(0, DHCP_SERVER_SPAN - 1)
        if last != octets[3]:
            return IPv4Address(bytes(octets[:3]) + bytes([last]))
    raise RandomIPGenerationFailedError()


def dhcp_lease_range(network: IPv4Network) -> Tuple[IPv4Address, IPv4Address]:
    base = network.network_address.packed[:3]
    return (
        IPv4Address(bytes(base) + bytes([DHCP_LEASE_LOW])),
        IPv4Address(bytes(base) + bytes([DHCP_LEASE_HIGH])),
    )


def _interface(ip: str, mask: str) -> Optional[ipaddress.IPv4Interface]:
    if not ip:
        return None
    try:
        return ipaddress.IPv4Interface(f"{ip}/{mask}" if mask else ip)
    except ValueError:
        # Masks VirtualBox reports mid-configuration are not always contiguous.
        return ipaddress.IPv4Interface(ip)


def list_host_only_networks(vbox: VBoxManager) -> Dict[str, HostOnlyNetwork]:
    networks: Dict[str, HostOnlyNetwork] = {}
    for block in parse_colon_blocks(vbox.run("list", "hostonlyifs")):
        net = HostOnlyNetwork(
            name=block.get("Name", ""),
            guid=block.get("GUID", ""),
            dhcp=block.get("DHCP", "Disabled") != "Disabled",
            ipv4=_interface(block.get("IPAddress", ""), block.get("NetworkMask", "")),
            netmask=block.get("NetworkMask", ""),
            hw_addr=block.get("HardwareAddress", ""),
            medium=block.get("MediumType", ""),
            status=block.get("Status", ""),
            network_name=block.get("VBoxNetworkName", ""),
        )
        if net.name:
            networks[net.name] = net
    return networks


def list_dhcp_servers(vbox: VBoxManager) -> Dict[str, DHCPServer]:
    servers: Dict[str, DHCPServer] = {}
    for block in parse_colon_blocks(vbox.run("list", "dhcpservers")):
        name = block.get("NetworkName", "")
        if not name:
            continue
        lower = block.get("lowerIPAddress", "")
        upper = block.get("upperIPAddress", "")
        servers[name] = DHCPServer(
            network_name=name,
            ipv4=_interface(block.get("IP", ""), block.get("NetworkMask", "")),
            lower_ip=IPv4Address(lower) if lower else None,
            upper_ip=IPv4Address(upper) if upper else None,
            enabled=block.get("Enabled", "") == "Yes",
        )
    return servers


def find_host_only_network(
    networks: Dict[str, HostOnlyNetwork],
    host_ip: IPv4Address,
    netmask: IPv4Address,
) -> Optional[HostOnlyNetwork]:
    for net in networks.values():
        if net.ipv4 is None or net.ipv4.ip != host_ip:
            continue
        if net.netmask and net.netmask == str(_TRANSIENT_MASK):
            return net
        if net.ipv4.netmask == netmask:
            return net
    return None


def create_host_only_adapter(vbox: VBoxManager) -> HostOnlyNetwork:
    output = vbox.run("hostonlyif", "create")
    match = RE_HOSTONLY_CREATED.search(output)
    if match is None:
        raise NodeError(f"failed to create hostonly adapter: {output.strip()}")
    return HostOnlyNetwork(name=match.group(1))


def save_host_only_network(vbox: VBoxManager, net: HostOnlyNetwork) -> None:
    if net.ipv4 is not None:
        vbox.vbm(
            "hostonlyif", "ipconfig", net.name,
            "--ip", str(net.ipv4.ip),
            "--netmask", str(net.ipv4.netmask),
        )
    if net.dhcp:
        vbox.vbm("hostonlyif", "ipconfig", net.name, "--dhcp")


def add_host_only_dhcp(vbox: VBoxManager, ifname: str, server: DHCPServer) -> None:
    name = DHCP_NETWORK_PREFIX + ifname
    if server.ipv4 is None:
        raise NodeError(f"DHCP server for {name} has no address")
    # Some hosts (macOS) attach a default server to a new interface, so
    # update it in place when it already exists.
    command = "modify" if name in list_dhcp_servers(vbox) else "add"
    args = [
        "dhcpserver", command,
        "--netname", name,
        "--ip", str(server.ipv4.ip),
        "--netmask", str(server.ipv4.netmask),
        "--lowerip", str(server.lower_ip),
        "--upperip", str(server.upper_ip),
        "--enable" if server.enabled else "--disable",
    ]
    vbox.vbm(*args)


def get_or_create_host_only_network(
    vbox: VBoxManager,
    host_ip: IPv4Address,
    netmask: IPv4Address,
    dhcp_ip: IPv4Address,
    lease_low: IPv4Address,
    lease_high: IPv4Address,
) -> HostOnlyNetwork:
    """Return the host-only network for ``host_ip``/``netmask``, creating it if needed.

    Safe to call repeatedly; an existing matching network is reused untouched.
    Networks are shared between nodes and nothing serializes two callers
    creating the same subnet at once.
    """
    existing = find_host_only_network(list_host_only_networks(vbox), host_ip, netmask)
    if existing is not None:
        log("DEBUG", f"Reusing host-only network {existing.name}")
        return existing

    log("INFO", f"Creating host-only network for {host_ip}/{netmask}")
    net = create_host_only_adapter(vbox)
    net.ipv4 = ipaddress.IPv4Interface(f"{host_ip}/{netmask}")
    save_host_only_network(vbox, net)
    add_host_only_dhcp(
        vbox,
        net.name,
        DHCPServer(
            ipv4=ipaddress.IPv4Interface(f"{dhcp_ip}/{netmask}"),
            lower_ip=lease_low,
            upper_ip=lease_high,
            enabled=True,
        ),
    )
    return net


def setup_host_only_network(
    vbox: VBoxManager,
    machine_name: str,
    cidr: str,
    nic_type: str,
    promisc_mode: str,
    randint: Callable[[int, int], int] = random.randint,
) -> HostOnlyNetwork:
    """Make sure the host-only network exists and wire it to NIC 2 of the VM."""
    host_ip, network = parse_and_validate_cidr(cidr)
    dhcp_ip = pick_random_dhcp_address(host_ip, randint=randint)
    lease_low, lease_high = dhcp_lease_range(network)
    log("DEBUG", f"using {dhcp_ip} for dhcp address")

    net = get_or_create_host_only_network(
        vbox,
        host_ip,
        network.netmask,
        dhcp_ip,
        lease_low,
        lease_high,
    )
    vbox.vbm(
        "modifyvm", machine_name,
        "--nic2", "hostonly",
        "--nictype2", nic_type,
        "--nicpromisc2", promisc_mode,
        "--hostonlyadapter2", net.name,
        "--cableconnected2", "on",
    )
    return net
