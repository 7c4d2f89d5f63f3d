"""Configuration loading and environment variable parsing for vboxnode."""

from __future__ import annotations

from pathlib import Path
from typing import Any, Dict, Mapping, Optional

try:
    import yaml  # type: ignore
except ImportError as exc:  # pragma: no cover
    raise SystemExit("PyYAML is required but not installed") from exc

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
    DEFAULT_SSH_WAIT_ATTEMPTS,
    DEFAULT_SSH_WAIT_INTERVAL,
    DEFAULT_STOP_POLL_ATTEMPTS,
    DEFAULT_STOP_POLL_INTERVAL,
    DEFAULT_STORE_PATH,
    NODE_CONFIG_NAME,
    SUPPORTED_NIC_TYPES,
    SUPPORTED_PROMISC_MODES,
    VBOXMANAGE_CMD,
)
from vboxnode.exceptions import ConfigError
from vboxnode.models import DriverConfig, NodeSpec
from vboxnode.network import parse_and_validate_cidr
from vboxnode.utils import (
    ensure_directory,
    get_env,
    get_env_bool,
    parse_float_env,
    parse_int_env,
)

# Option name -> (NodeSpec field, type). Option names follow the CLI flags.
NODE_OPTIONS = {
    "memory": ("memory_mb", int),
    "cpu-count": ("cpu", int),
    "disk-size": ("disk_size_mb", int),
    "boot2docker-url": ("seed_url", str),
    "import-boot2docker-vm": ("import_vm", str),
    "host-dns-resolver": ("host_dns_resolver", bool),
    "hostonly-cidr": ("host_only_cidr", str),
    "hostonly-nictype": ("host_only_nic_type", str),
    "hostonly-nicpromisc": ("host_only_promisc_mode", str),
    "no-share": ("no_share", bool),
    "dns-proxy": ("dns_proxy", bool),
    "no-vtx-check": ("no_vtx_check", bool),
}


def validate_nic_type(value: str) -> str:
    if value not in SUPPORTED_NIC_TYPES:
        supported = ", ".join(sorted(SUPPORTED_NIC_TYPES))
        raise ConfigError(f"Unsupported host-only NIC type '{value}'. Supported: {supported}")
    return value


def validate_promisc_mode(value: str) -> str:
    value = value.strip().lower()
    if value not in SUPPORTED_PROMISC_MODES:
        supported = ", ".join(sorted(SUPPORTED_PROMISC_MODES))
        raise ConfigError(f"Unsupported promiscuous mode '{value}'. Supported: {supported}")
    return value


def parse_env() -> DriverConfig:
    store_path = Path(get_env("VBOXNODE_STORAGE_PATH", DEFAULT_STORE_PATH) or DEFAULT_STORE_PATH).expanduser()

    memory_mb = parse_int_env("VIRTUALBOX_MEMORY_SIZE", str(DEFAULT_MEMORY_MB))
    # -1 (or anything below 1) means "every host core"
    cpu = parse_int_env("VIRTUALBOX_CPU_COUNT", str(DEFAULT_CPU), min_val=-(2**31))
    disk_size_mb = parse_int_env("VIRTUALBOX_DISK_SIZE", str(DEFAULT_DISK_SIZE_MB))

    seed_url = (get_env("VIRTUALBOX_BOOT2DOCKER_URL") or "").strip() or DEFAULT_SEED_URL
    import_vm = (get_env("VIRTUALBOX_BOOT2DOCKER_IMPORT_VM") or "").strip()

    host_only_cidr = (get_env("VIRTUALBOX_HOSTONLY_CIDR") or "").strip() or DEFAULT_HOSTONLY_CIDR
    parse_and_validate_cidr(host_only_cidr)
    nic_type = validate_nic_type(
        (get_env("VIRTUALBOX_HOSTONLY_NIC_TYPE") or "").strip() or DEFAULT_HOSTONLY_NIC_TYPE
    )
    promisc_mode = validate_promisc_mode(
        get_env("VIRTUALBOX_HOSTONLY_NIC_PROMISC") or DEFAULT_HOSTONLY_PROMISC_MODE
    )

    return DriverConfig(
        store_path=store_path,
        vboxmanage=(get_env("VBOXMANAGE") or "").strip() or VBOXMANAGE_CMD,
        cpu=cpu,
        memory_mb=memory_mb,
        disk_size_mb=disk_size_mb,
        seed_url=seed_url,
        import_vm=import_vm,
        host_dns_resolver=get_env_bool("VIRTUALBOX_HOST_DNS_RESOLVER", False),
        host_only_cidr=host_only_cidr,
        host_only_nic_type=nic_type,
        host_only_promisc_mode=promisc_mode,
        no_share=get_env_bool("VIRTUALBOX_NO_SHARE", False),
        dns_proxy=get_env_bool("VIRTUALBOX_DNS_PROXY", False),
        no_vtx_check=get_env_bool("VIRTUALBOX_NO_VTX_CHECK", False),
        ssh_wait_attempts=parse_int_env("VBOXNODE_SSH_WAIT_ATTEMPTS", str(DEFAULT_SSH_WAIT_ATTEMPTS)),
        ssh_wait_interval=parse_float_env("VBOXNODE_SSH_WAIT_INTERVAL", str(DEFAULT_SSH_WAIT_INTERVAL)),
        ip_wait_attempts=parse_int_env("VBOXNODE_IP_WAIT_ATTEMPTS", str(DEFAULT_IP_WAIT_ATTEMPTS)),
        ip_wait_interval=parse_float_env("VBOXNODE_IP_WAIT_INTERVAL", str(DEFAULT_IP_WAIT_INTERVAL)),
        stop_poll_interval=parse_float_env("VBOXNODE_STOP_POLL_INTERVAL", str(DEFAULT_STOP_POLL_INTERVAL)),
        stop_poll_attempts=parse_int_env("VBOXNODE_STOP_POLL_ATTEMPTS", str(DEFAULT_STOP_POLL_ATTEMPTS)),
        remove_settle_delay=parse_float_env("VBOXNODE_REMOVE_SETTLE_DELAY", str(DEFAULT_REMOVE_SETTLE_DELAY)),
        port_attempts=parse_int_env("VBOXNODE_PORT_ATTEMPTS", str(DEFAULT_PORT_ATTEMPTS)),
        debug=bool(get_env("MACHINE_DEBUG")),
    )


def _coerce(option: str, kind: type, value: Any) -> Any:
    if kind is bool:
        if isinstance(value, bool):
            return value
        return str(value).strip().lower() in {"1", "true", "yes", "on"}
    if kind is int:
        try:
            return int(value)
        except (TypeError, ValueError):
            raise ConfigError(f"{option} must be an integer (got '{value}')")
    return str(value)


def apply_options(spec: NodeSpec, options: Mapping[str, Any]) -> None:
    """Copy recognized options onto ``spec``, validating every value first."""
    updates: Dict[str, Any] = {}
    for option, value in options.items():
        if option not in NODE_OPTIONS:
            raise ConfigError(f"Unknown option '{option}'")
        field_name, kind = NODE_OPTIONS[option]
        updates[field_name] = _coerce(option, kind, value)

    if "memory_mb" in updates and updates["memory_mb"] < 1:
        raise ConfigError(f"memory must be >= 1 (got {updates['memory_mb']})")
    if "disk_size_mb" in updates and updates["disk_size_mb"] < 1:
        raise ConfigError(f"disk-size must be >= 1 (got {updates['disk_size_mb']})")
    if "host_only_cidr" in updates:
        parse_and_validate_cidr(updates["host_only_cidr"])
    if "host_only_nic_type" in updates:
        validate_nic_type(updates["host_only_nic_type"])
    if "host_only_promisc_mode" in updates:
        updates["host_only_promisc_mode"] = validate_promisc_mode(updates["host_only_promisc_mode"])

    for field_name, value in updates.items():
        setattr(spec, field_name, value)


def node_config_path(node_dir: Path) -> Path:
    return node_dir / NODE_CONFIG_NAME


def load_node_spec(node_dir: Path) -> Optional[NodeSpec]:
    path = node_config_path(node_dir)
    if not path.exists():
        return None
    data = yaml.safe_load(path.read_text()) or {}
    if not isinstance(data, dict) or "name" not in data:
        raise ConfigError(f"Malformed node config: {path}")
    data.setdefault("store_path", str(node_dir.parent.parent))
    return NodeSpec.from_dict(data)


def save_node_spec(node_dir: Path, spec: NodeSpec) -> None:
    ensure_directory(node_dir)
    path = node_config_path(node_dir)
    tmp = path.with_suffix(".tmp")
    tmp.write_text(yaml.safe_dump(spec.to_dict(), default_flow_style=False, sort_keys=True))
    tmp.replace(path)
