"""VM lifecycle management for vboxnode."""

from __future__ import annotations

import random
import threading
import time
from pathlib import Path
from typing import Any, Callable, Mapping, Optional

from vboxnode.config import apply_options, load_node_spec, save_node_spec
from vboxnode.constants import (
    CACHE_DIR_NAME,
    DISK_NAME,
    DOCKER_PORT,
    DRIVER_NAME,
    MACHINES_DIR_NAME,
    SEED_ISO_NAME,
    SSH_GUEST_PORT,
    SSH_KEY_NAME,
    SSH_RULE_NAME,
    STORAGE_CONTROLLER,
    TEMPLATE_SSH_KEY,
)
from vboxnode.disk import generate_disk_image, get_vm_disk_info, get_vm_info
from vboxnode.exceptions import (
    CommandError,
    HostNotRunningError,
    IPWaitTimeoutError,
    MachineNotFoundError,
    NodeError,
    StopTimeoutError,
    ToolUnavailableError,
    VirtualizationRequiredError,
)
from vboxnode.models import DriverConfig, NodeSpec, VMState
from vboxnode.network import list_host_only_networks, setup_host_only_network
from vboxnode.ports import set_port_forwarding
from vboxnode.ssh import SSHClient, generate_ssh_key
from vboxnode.status import parse_inet_address, parse_vm_state, vm_log_reports_vtx_disabled
from vboxnode.utils import (
    check_cancelled,
    copy_file,
    ensure_directory,
    fetch_file,
    get_share_drive_and_name,
    host_virtualization_disabled,
    log,
    normalize_cpu_count,
    wait_for,
)
from vboxnode.vbm import VBoxCmdManager, VBoxManager, check_vboxmanage_version


def _on_off(flag: bool) -> str:
    return "on" if flag else "off"


class NodeDriver:
    """Drive one VirtualBox VM through create/start/stop/restart/kill/remove.

    Nothing about the VM's state is cached: every decision re-reads
    ``showvminfo``. The one cached value is ``spec.ip_address``, refreshed after
    each successful start/restart and cleared on stop.
    """

    def __init__(
        self,
        spec: NodeSpec,
        cfg: DriverConfig,
        vbox: Optional[VBoxManager] = None,
        *,
        sleep: Callable[[float], None] = time.sleep,
        cancel: Optional[threading.Event] = None,
        ssh_runner: Optional[Callable[[str], str]] = None,
        randint: Callable[[int, int], int] = random.randint,
        persist: bool = True,
    ) -> None:
        self.spec = spec
        self.cfg = cfg
        self.vbox = vbox if vbox is not None else VBoxCmdManager(cfg.vboxmanage, debug=cfg.debug)
        self._sleep = sleep
        self.cancel = cancel
        self._ssh_runner = ssh_runner
        self._randint = randint
        self.persist = persist

    @classmethod
    def load(cls, name: str, cfg: DriverConfig, **kwargs: Any) -> "NodeDriver":
        """Return a driver for ``name``, restoring its saved spec when there is one."""
        node_dir = cfg.store_path / MACHINES_DIR_NAME / name
        spec = load_node_spec(node_dir) or NodeSpec.from_config(name, cfg)
        return cls(spec, cfg, **kwargs)

    # -- store layout -----------------------------------------------------

    @property
    def name(self) -> str:
        return self.spec.name

    @property
    def machine_dir(self) -> Path:
        return Path(self.spec.store_path) / MACHINES_DIR_NAME / self.name

    def resolve_store_path(self, filename: str) -> Path:
        return self.machine_dir / filename

    @property
    def disk_path(self) -> Path:
        return self.resolve_store_path(DISK_NAME)

    @property
    def ssh_key_path(self) -> Path:
        return self.resolve_store_path(SSH_KEY_NAME)

    @property
    def public_key_path(self) -> Path:
        return self.resolve_store_path(SSH_KEY_NAME + ".pub")

    @property
    def seed_iso_path(self) -> Path:
        return self.resolve_store_path(SEED_ISO_NAME)

    @property
    def cached_iso_path(self) -> Path:
        return Path(self.spec.store_path) / CACHE_DIR_NAME / SEED_ISO_NAME

    @property
    def vm_log_path(self) -> Path:
        # createvm --basefolder <machine_dir> puts the VM in <machine_dir>/<name>/
        return self.resolve_store_path(self.name) / "Logs" / "VBox.log"

    def save(self) -> None:
        if self.persist:
            save_node_spec(self.machine_dir, self.spec)

    # -- configuration and endpoints --------------------------------------

    def driver_name(self) -> str:
        return DRIVER_NAME

    def set_config_from_options(self, options: Mapping[str, Any]) -> None:
        apply_options(self.spec, options)

    def get_ssh_hostname(self) -> str:
        return "127.0.0.1"

    def get_ssh_port(self) -> int:
        return self.spec.ssh_port

    def get_ssh_username(self) -> str:
        return self.spec.ssh_user

    def get_url(self) -> str:
        ip = self.get_ip()
        if not ip:
            return ""
        return f"tcp://{ip}:{DOCKER_PORT}"

    def _run_ssh(self, command: str) -> str:
        if self._ssh_runner is not None:
            return self._ssh_runner(command)
        client = SSHClient(
            host=self.get_ssh_hostname(),
            port=self.get_ssh_port(),
            user=self.get_ssh_username(),
            key_path=self.ssh_key_path,
        )
        return client.run(command)

    # -- creation ---------------------------------------------------------

    def pre_create_check(self) -> None:
        """Fail before any side effect when the host cannot run the node."""
        version = self.vbox.run("--version").strip()
        check_vboxmanage_version(version)

        if not self.spec.no_vtx_check and host_virtualization_disabled():
            raise VirtualizationRequiredError()

        # Fetch the seed now so a failed download cannot leave a half-created machine.
        self._update_iso_cache()

        list_host_only_networks(self.vbox)

    def _update_iso_cache(self) -> None:
        cached = self.cached_iso_path
        if cached.exists() and cached.stat().st_size > 0:
            log("INFO", f"Using cached seed image: {cached}")
            return
        fetch_file(self.spec.seed_url, cached, label="Downloading seed image")

    def _copy_iso_to_machine_dir(self) -> None:
        self._update_iso_cache()
        copy_file(self.cached_iso_path, self.seed_iso_path)

    def _import_template(self) -> None:
        template = self.spec.import_vm
        try:
            self.vbox.vbm("controlvm", template, "poweroff")
        except CommandError:
            log("DEBUG", f"Template VM {template} was not running")

        disk = get_vm_disk_info(self.vbox, template)
        if not disk.path or not Path(disk.path).exists():
            raise NodeError(f"Disk of template VM {template} not found: {disk.path or '<none>'}")
        self.vbox.vbm("clonehd", disk.path, str(self.disk_path))

        log("DEBUG", "Importing VM settings...")
        info = get_vm_info(self.vbox, template)
        self.spec.cpu = info.cpus
        self.spec.memory_mb = info.memory_mb

        log("DEBUG", "Importing SSH key...")
        copy_file(Path(TEMPLATE_SSH_KEY).expanduser(), self.ssh_key_path)

    def create(self) -> None:
        check_cancelled(self.cancel)
        ensure_directory(self.machine_dir)
        self._copy_iso_to_machine_dir()

        log("INFO", "Creating VirtualBox VM...")
        if self.spec.import_vm:
            self._import_template()
        else:
            log("INFO", "Creating SSH key...")
            generate_ssh_key(self.ssh_key_path)
            log("DEBUG", "Creating disk image...")
            generate_disk_image(self.vbox, self.public_key_path, self.disk_path, self.spec.disk_size_mb)

        self.vbox.vbm(
            "createvm",
            "--basefolder", str(self.machine_dir),
            "--name", self.name,
            "--register",
        )

        cpus = normalize_cpu_count(self.spec.cpu)
        log("DEBUG", f"VM CPUS: {cpus}")
        log("DEBUG", f"VM Memory: {self.spec.memory_mb}")

        self.vbox.vbm(
            "modifyvm", self.name,
            "--firmware", "bios",
            "--bioslogofadein", "off",
            "--bioslogofadeout", "off",
            "--bioslogodisplaytime", "0",
            "--biosbootmenu", "disabled",
            "--ostype", "Linux26_64",
            "--cpus", str(cpus),
            "--memory", str(self.spec.memory_mb),
            "--acpi", "on",
            "--ioapic", "on",
            "--rtcuseutc", "on",
            "--natdnshostresolver1", _on_off(self.spec.host_dns_resolver),
            "--natdnsproxy1", _on_off(self.spec.dns_proxy),
            "--cpuhotplug", "off",
            "--pae", "on",
            "--hpet", "on",
            "--hwvirtex", "on",
            "--nestedpaging", "on",
            "--largepages", "on",
            "--vtxvpid", "on",
            "--accelerate3d", "off",
            "--boot1", "dvd",
        )

        self.vbox.vbm(
            "modifyvm", self.name,
            "--nic1", "nat",
            "--nictype1", "82540EM",
            "--cableconnected1", "on",
        )

        self._setup_host_only_network()

        self.vbox.vbm(
            "storagectl", self.name,
            "--name", STORAGE_CONTROLLER,
            "--add", "sata",
            "--hostiocache", "on",
        )
        self.vbox.vbm(
            "storageattach", self.name,
            "--storagectl", STORAGE_CONTROLLER,
            "--port", "0",
            "--device", "0",
            "--type", "dvddrive",
            "--medium", str(self.seed_iso_path),
        )
        self.vbox.vbm(
            "storageattach", self.name,
            "--storagectl", STORAGE_CONTROLLER,
            "--port", "1",
            "--device", "0",
            "--type", "hdd",
            "--medium", str(self.disk_path),
        )

        # let VBoxService do its automounting when the guest runs it
        self.vbox.vbm("guestproperty", "set", self.name, "/VirtualBox/GuestAdd/SharedFolders/MountPrefix", "/")
        self.vbox.vbm("guestproperty", "set", self.name, "/VirtualBox/GuestAdd/SharedFolders/MountDir", "/")

        self._setup_shared_folder()
        self.save()

        self.start()

    def _setup_host_only_network(self) -> None:
        setup_host_only_network(
            self.vbox,
            self.name,
            self.spec.host_only_cidr,
            self.spec.host_only_nic_type,
            self.spec.host_only_promisc_mode,
            randint=self._randint,
        )

    def _setup_shared_folder(self) -> None:
        share_name, share_dir = get_share_drive_and_name()
        if not share_dir or self.spec.no_share:
            return
        if not Path(share_dir).exists():
            log("DEBUG", f"Share folder {share_dir} does not exist; skipping")
            return
        log("DEBUG", "setting up shareDir")
        # VirtualBox mishandles share names starting with "/"
        share_name = share_name or share_dir.lstrip("/")
        self.vbox.vbm(
            "sharedfolder", "add", self.name,
            "--name", share_name,
            "--hostpath", share_dir,
            "--automount",
        )
        self.vbox.vbm(
            "setextradata", self.name,
            f"VBoxInternal2/SharedFoldersEnableSymlinksCreate/{share_name}", "1",
        )

    # -- state transitions ------------------------------------------------

    def get_state(self) -> VMState:
        """Query VirtualBox for the VM state.

        Raises ``MachineNotFoundError`` when VirtualBox has no such VM, so
        callers can tell "gone" apart from a failing query.
        """
        stdout, _ = self.vbox.run_captured("showvminfo", self.name, "--machinereadable")
        return parse_vm_state(stdout)

    def start(self) -> None:
        check_cancelled(self.cancel)
        state = self.get_state()

        if state == VMState.STOPPED:
            # Recreate the host-only network if it went missing while stopped.
            self._setup_host_only_network()

        if state in (VMState.STOPPED, VMState.SAVED):
            self.spec.ssh_port = set_port_forwarding(
                self.vbox,
                self.name,
                1,
                SSH_RULE_NAME,
                "tcp",
                SSH_GUEST_PORT,
                self.spec.ssh_port,
                attempts=self.cfg.port_attempts,
                sleep=self._sleep,
            )
            self.save()
            self.vbox.vbm("startvm", self.name, "--type", "headless")
            log("INFO", "Starting VM...")
        elif state == VMState.PAUSED:
            self.vbox.vbm("controlvm", self.name, "resume", "--type", "headless")
            log("INFO", "Resuming VM...")
        else:
            log("WARN", f"VM not in restartable state ({state.value})")

        self._check_vtx_in_vm()
        self._wait_for_ip()
        log("SUCCESS", f"VM {self.name} is running at {self.spec.ip_address}")

    def _check_vtx_in_vm(self) -> None:
        log("DEBUG", f"Checking vm logs: {self.vm_log_path}")
        try:
            disabled = vm_log_reports_vtx_disabled(self.vm_log_path)
        except OSError as exc:
            raise NodeError(f"Checking if hardware virtualization is enabled failed: {exc}") from exc
        if disabled:
            raise VirtualizationRequiredError()

    def _ssh_available(self) -> bool:
        try:
            self._run_ssh("exit 0")
        except ToolUnavailableError:
            raise
        except NodeError as exc:
            log("DEBUG", f"SSH not available yet: {exc}")
            return False
        return True

    def _host_only_ip_available(self) -> bool:
        try:
            ip = self.get_ip()
        except ToolUnavailableError:
            raise
        except NodeError as exc:
            log("DEBUG", f"ERROR getting IP: {exc}")
            return False
        if not ip:
            log("DEBUG", "No error getting the IP, but it was still empty")
            return False
        log("DEBUG", f"IP is {ip}")
        return True

    def _wait_for_ip(self) -> None:
        log("INFO", "Waiting for SSH to be available...")
        if not wait_for(
            self._ssh_available,
            self.cfg.ssh_wait_attempts,
            self.cfg.ssh_wait_interval,
            sleep=self._sleep,
            cancel=self.cancel,
        ):
            raise IPWaitTimeoutError(
                f"Too many retries waiting for SSH to be available ({self.cfg.ssh_wait_attempts} attempts)"
            )

        log("INFO", "Waiting for an IP on the host-only network...")
        if not wait_for(
            self._host_only_ip_available,
            self.cfg.ip_wait_attempts,
            self.cfg.ip_wait_interval,
            sleep=self._sleep,
            cancel=self.cancel,
        ):
            raise IPWaitTimeoutError(
                f"Maximum number of retries ({self.cfg.ip_wait_attempts}) exceeded waiting for a host-only IP"
            )

        self.spec.ip_address = self.get_ip()
        self.save()

    def stop(self) -> None:
        check_cancelled(self.cancel)
        if self.get_state() == VMState.PAUSED:
            # controlvm cannot power off a paused VM
            self.vbox.vbm("controlvm", self.name, "resume")
            log("INFO", "Resuming VM...")

        log("INFO", "Stopping VM...")
        self.vbox.vbm("controlvm", self.name, "acpipowerbutton")
        if not wait_for(
            lambda: self.get_state() != VMState.RUNNING,
            self.cfg.stop_poll_attempts,
            self.cfg.stop_poll_interval,
            sleep=self._sleep,
            cancel=self.cancel,
        ):
            raise StopTimeoutError(
                f"VM {self.name} still running after {self.cfg.stop_poll_attempts} checks; use kill to force it off"
            )

        self.spec.ip_address = ""
        self.save()
        log("SUCCESS", f"VM {self.name} stopped")

    def restart(self) -> None:
        check_cancelled(self.cancel)
        log("INFO", "Restarting VM...")
        self.vbox.vbm("controlvm", self.name, "reset")
        self.spec.ip_address = ""
        self._wait_for_ip()

    def kill(self) -> None:
        self.vbox.vbm("controlvm", self.name, "poweroff")
        self.spec.ip_address = ""

    def remove(self) -> None:
        try:
            state = self.get_state()
        except MachineNotFoundError:
            log("INFO", "machine does not exist, assuming it has been removed already")
            return

        if state == VMState.RUNNING:
            self.stop()
        elif state != VMState.STOPPED:
            self.kill()

        # VirtualBox does not release its locks immediately after a stop.
        check_cancelled(self.cancel)
        self._sleep(self.cfg.remove_settle_delay)
        self.vbox.vbm("unregistervm", "--delete", self.name)
        log("SUCCESS", f"VM {self.name} removed")

    def get_ip(self) -> str:
        # The host-only address comes from DHCP, so only a running guest has one.
        if self.get_state() != VMState.RUNNING:
            raise HostNotRunningError(self.name)
        output = self._run_ssh("ip addr show dev eth1")
        return parse_inet_address(output)
