"""Defaults, patterns and store layout names for vboxnode."""

from __future__ import annotations

import os
import re

TRUTHY = {"1", "true", "yes", "on"}
_LOG_VERBOSE = os.environ.get("LOG_VERBOSE", "").lower() in TRUTHY

DRIVER_NAME = "virtualbox"
VBOXMANAGE_CMD = "VBoxManage"

DEFAULT_CPU = 1
DEFAULT_MEMORY_MB = 1024
DEFAULT_DISK_SIZE_MB = 20000
DEFAULT_SEED_URL = "https://github.com/boot2docker/boot2docker/releases/latest/download/boot2docker.iso"
DEFAULT_HOSTONLY_CIDR = "192.168.99.1/24"
DEFAULT_HOSTONLY_NIC_TYPE = "82540EM"
DEFAULT_HOSTONLY_PROMISC_MODE = "deny"
DEFAULT_SSH_USER = "docker"
DEFAULT_STORE_PATH = "~/.vboxnode"

MAX_CPUS = 32

SUPPORTED_NIC_TYPES = {"Am79C970A", "Am79C973", "82540EM", "82543GC", "82545EM", "virtio"}
SUPPORTED_PROMISC_MODES = {"deny", "allow-vms", "allow-all"}

# Polling defaults; every one of them can be overridden through DriverConfig.
DEFAULT_SSH_WAIT_ATTEMPTS = 60
DEFAULT_SSH_WAIT_INTERVAL = 3.0
DEFAULT_IP_WAIT_ATTEMPTS = 5
DEFAULT_IP_WAIT_INTERVAL = 4.0
DEFAULT_STOP_POLL_INTERVAL = 1.0
DEFAULT_STOP_POLL_ATTEMPTS = 300
DEFAULT_REMOVE_SETTLE_DELAY = 1.0
DEFAULT_PORT_ATTEMPTS = 10

SSH_GUEST_PORT = 22
SSH_RULE_NAME = "ssh"
DOCKER_PORT = 2376

# Store layout: <store>/machines/<name>/..., <store>/cache/<iso>
MACHINES_DIR_NAME = "machines"
CACHE_DIR_NAME = "cache"
SEED_ISO_NAME = "boot2docker.iso"
DISK_NAME = "disk.vmdk"
SSH_KEY_NAME = "id_rsa"
NODE_CONFIG_NAME = "config.yaml"
TEMPLATE_SSH_KEY = "~/.ssh/id_boot2docker"

STORAGE_CONTROLLER = "SATA"
DHCP_NETWORK_PREFIX = "HostInterfaceNetworking-"

# Host-only DHCP lease range within the /24 and the window the server
# address is drawn from.
DHCP_LEASE_LOW = 100
DHCP_LEASE_HIGH = 254
DHCP_SERVER_SPAN = 25
DHCP_PICK_ATTEMPTS = 5

ZERO_FILL_BLOCK = 32 << 10

# Seed archive magic understood by the boot2docker automount script.
SEED_MAGIC = "boot2docker, please format-me"

RE_MACHINE_NOT_FOUND = re.compile(r"Could not find a registered machine named '(.+)'")
RE_VM_STATE = re.compile(r'(?m)^VMState="(\w+)"')
RE_MACHINE_READABLE_LINE = re.compile(r'^(?:"(.+)"|(.+?))=(?:"(.*)"|(.*))$')
RE_COLON_LINE = re.compile(r"^(.+?):\s+(.*)$")
RE_HOSTONLY_CREATED = re.compile(r"Interface '(.+)' was successfully created")

VTX_DISABLED_MARKERS = (
    "VT-x is disabled",
    "the host CPU does NOT support HW virtualization",
    "VERR_VMX_UNABLE_TO_START_VM",
)

# name -> host path of the default shared folder, per host platform
SHARE_FOLDERS = {
    "darwin": ("Users", "/Users"),
    "linux": ("hosthome", "/home"),
    "win32": ("c/Users", "C:\\Users"),
}
