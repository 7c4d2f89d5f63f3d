"""Data models for vboxnode."""

from __future__ import annotations

import enum
import ipaddress
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Any, Dict, Optional

from vboxnode.constants import (
    DEFAULT_CPU,
    DEFAULT_DISK_SIZE_MB,
    DEFAULT_HOSTONLY_CIDR,
    DEFAULT_HOSTONLY_NIC_TYPE,
    DEFAULT_HOSTONLY_PROMISC_MODE,
    DEFAULT_IP_WAIT_ATTEMPTS,
    DEFAULT_IP_WAIT_INTERVAL,
    DEFAULT_MEMORY_MB,
    DEFAULT_PORT_ATTEMPTS,
    DEFAULT_REMOVE_SETTLE_DELAY,
    DEFAULT_SEED_URL,
    DEFAULT_SSH_USER,
    DEFAULT_SSH_WAIT_ATTEMPTS,
    DEFAULT_SSH_WAIT_INTERVAL,
    DEFAULT_STOP_POLL_ATTEMPTS,
    DEFAULT_STOP_POLL_INTERVAL,
    DEFAULT_STORE_PATH,
    VBOXMANAGE_CMD,
)


class VMState(enum.Enum):
    NOT_EXIST = "NotExist"
    STOPPED = "Stopped"
    RUNNING = "Running"
    PAUSED = "Paused"
    SAVED = "Saved"
    ERROR = "Error"
    UNKNOWN = "Unknown"


@dataclass(frozen=True)
class DriverConfig:
    """Process-wide defaults, built once at startup and handed to every driver."""

    store_path: Path = Path(DEFAULT_STORE_PATH).expanduser()
    vboxmanage: str = VBOXMANAGE_CMD
    cpu: int = DEFAULT_CPU
    memory_mb: int = DEFAULT_MEMORY_MB
    disk_size_mb: int = DEFAULT_DISK_SIZE_MB
    seed_url: str = DEFAULT_SEED_URL
    import_vm: str = ""
    host_dns_resolver: bool = False
    host_only_cidr: str = DEFAULT_HOSTONLY_CIDR
    host_only_nic_type: str = DEFAULT_HOSTONLY_NIC_TYPE
    host_only_promisc_mode: str = DEFAULT_HOSTONLY_PROMISC_MODE
    no_share: bool = False
    dns_proxy: bool = False
    no_vtx_check: bool = False
    ssh_wait_attempts: int = DEFAULT_SSH_WAIT_ATTEMPTS
    ssh_wait_interval: float = DEFAULT_SSH_WAIT_INTERVAL
    ip_wait_attempts: int = DEFAULT_IP_WAIT_ATTEMPTS
    ip_wait_interval: float = DEFAULT_IP_WAIT_INTERVAL
    stop_poll_interval: float = DEFAULT_STOP_POLL_INTERVAL
    stop_poll_attempts: int = DEFAULT_STOP_POLL_ATTEMPTS
    remove_settle_delay: float = DEFAULT_REMOVE_SETTLE_DELAY
    port_attempts: int = DEFAULT_PORT_ATTEMPTS
    debug: bool = False


@dataclass
class NodeSpec:
    name: str
    store_path: Path
    cpu: int = DEFAULT_CPU
    memory_mb: int = DEFAULT_MEMORY_MB
    disk_size_mb: int = DEFAULT_DISK_SIZE_MB
    seed_url: str = DEFAULT_SEED_URL
    import_vm: str = ""
    host_dns_resolver: bool = False
    host_only_cidr: str = DEFAULT_HOSTONLY_CIDR
    host_only_nic_type: str = DEFAULT_HOSTONLY_NIC_TYPE
    host_only_promisc_mode: str = DEFAULT_HOSTONLY_PROMISC_MODE
    no_share: bool = False
    dns_proxy: bool = False
    no_vtx_check: bool = False
    ssh_user: str = DEFAULT_SSH_USER
    ssh_port: int = 0
    ip_address: str = ""

    @classmethod
    def from_config(cls, name: str, cfg: DriverConfig) -> "NodeSpec":
        return cls(
            name=name,
            store_path=cfg.store_path,
            cpu=cfg.cpu,
            memory_mb=cfg.memory_mb,
            disk_size_mb=cfg.disk_size_mb,
            seed_url=cfg.seed_url,
            import_vm=cfg.import_vm,
            host_dns_resolver=cfg.host_dns_resolver,
            host_only_cidr=cfg.host_only_cidr,
            host_only_nic_type=cfg.host_only_nic_type,
            host_only_promisc_mode=cfg.host_only_promisc_mode,
            no_share=cfg.no_share,
            dns_proxy=cfg.dns_proxy,
            no_vtx_check=cfg.no_vtx_check,
        )

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["store_path"] = str(self.store_path)
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "NodeSpec":
        known = {k: v for k, v in data.items() if k in cls.__dataclass_fields__}
        known["store_path"] = Path(known["store_path"])
        return cls(**known)


@dataclass
class HostOnlyNetwork:
    name: str = ""
    guid: str = ""
    dhcp: bool = False
    ipv4: Optional[ipaddress.IPv4Interface] = None
    netmask: str = ""
    hw_addr: str = ""
    medium: str = ""
    status: str = ""
    network_name: str = ""


@dataclass
class DHCPServer:
    network_name: str = ""
    ipv4: Optional[ipaddress.IPv4Interface] = None
    lower_ip: Optional[ipaddress.IPv4Address] = None
    upper_ip: Optional[ipaddress.IPv4Address] = None
    enabled: bool = False


@dataclass
class DiskInfo:
    path: str = ""
    uuid: str = ""


@dataclass
class VMInfo:
    cpus: int = 0
    memory_mb: int = 0
