"""CLI entry points for vboxnode."""

from __future__ import annotations

import argparse
import dataclasses
import shutil
import signal
import threading
from typing import Any, Dict, List, Optional

from vboxnode.config import NODE_OPTIONS, load_node_spec, parse_env
from vboxnode.constants import MACHINES_DIR_NAME
from vboxnode.exceptions import MachineNotFoundError, NodeError
from vboxnode.models import DriverConfig, NodeSpec, VMState
from vboxnode.utils import log
from vboxnode.vm import NodeDriver


def show_config(spec: NodeSpec) -> None:
    """Print the resolved node configuration."""
    for field in dataclasses.fields(spec):
        print(f"  {field.name}: {getattr(spec, field.name)}")


def _add_create_options(parser: argparse.ArgumentParser) -> None:
    for option, (field_name, kind) in NODE_OPTIONS.items():
        dest = option.replace("-", "_")
        if kind is bool:
            parser.add_argument(f"--{option}", dest=dest, action="store_true", default=None)
        else:
            parser.add_argument(f"--{option}", dest=dest, type=kind, default=None, metavar=field_name.upper())


def _collect_options(args: argparse.Namespace) -> Dict[str, Any]:
    options: Dict[str, Any] = {}
    for option in NODE_OPTIONS:
        value = getattr(args, option.replace("-", "_"), None)
        if value is not None:
            options[option] = value
    return options


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="vboxnode: VirtualBox-backed Docker hosts")
    sub = parser.add_subparsers(dest="command", required=True)

    create = sub.add_parser("create", help="Create and start a node")
    create.add_argument("name")
    _add_create_options(create)

    for command, help_text in (
        ("start", "Start a stopped, saved or paused node"),
        ("stop", "Gracefully stop a node"),
        ("restart", "Reset a node and wait for it to come back"),
        ("kill", "Power a node off immediately"),
        ("rm", "Remove a node and its files"),
        ("status", "Print the node state"),
        ("ip", "Print the node's host-only IP address"),
        ("url", "Print the Docker endpoint URL of the node"),
        ("show-config", "Print the stored node configuration"),
    ):
        cmd = sub.add_parser(command, help=help_text)
        cmd.add_argument("name")
    return parser


def _install_signal_handlers(cancel: threading.Event) -> None:
    def _cancel(signum, frame):
        log("WARN", f"Received signal {signum}; cancelling")
        cancel.set()

    signal.signal(signal.SIGINT, _cancel)
    signal.signal(signal.SIGTERM, _cancel)


def _create(name: str, cfg: DriverConfig, options: Dict[str, Any], cancel: threading.Event) -> None:
    node_dir = cfg.store_path / MACHINES_DIR_NAME / name
    if load_node_spec(node_dir) is not None:
        raise NodeError(f"Node {name} already exists")
    driver = NodeDriver(NodeSpec.from_config(name, cfg), cfg, cancel=cancel)
    driver.set_config_from_options(options)
    driver.pre_create_check()
    driver.create()
    log("SUCCESS", f"Node {name} is ready: {driver.get_url()}")


def _status(driver: NodeDriver) -> VMState:
    try:
        return driver.get_state()
    except MachineNotFoundError:
        return VMState.NOT_EXIST


def _remove(driver: NodeDriver) -> None:
    driver.remove()
    if driver.machine_dir.exists():
        shutil.rmtree(driver.machine_dir)
    log("SUCCESS", f"Node {driver.name} removed")


def run_command(args: argparse.Namespace, cfg: DriverConfig, cancel: threading.Event) -> int:
    if args.command == "create":
        _create(args.name, cfg, _collect_options(args), cancel)
        return 0

    driver = NodeDriver.load(args.name, cfg, cancel=cancel)
    if args.command == "start":
        driver.start()
    elif args.command == "stop":
        driver.stop()
    elif args.command == "restart":
        driver.restart()
    elif args.command == "kill":
        driver.kill()
        driver.save()
    elif args.command == "rm":
        _remove(driver)
    elif args.command == "status":
        print(_status(driver).value)
    elif args.command == "ip":
        print(driver.get_ip())
    elif args.command == "url":
        print(driver.get_url())
    elif args.command == "show-config":
        show_config(driver.spec)
    return 0


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    try:
        cfg = parse_env()
    except NodeError as exc:
        log("ERROR", str(exc))
        return 1

    cancel = threading.Event()
    _install_signal_handlers(cancel)

    try:
        return run_command(args, cfg, cancel)
    except NodeError as exc:
        log("ERROR", str(exc))
        return 1
    except Exception as exc:
        log("ERROR", f"Unexpected error: {exc}")
        import traceback

        traceback.print_exc()
        return 1
