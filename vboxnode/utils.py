"""Utility functions for vboxnode."""

from __future__ import annotations

import os
import shutil
import subprocess
import sys
import tempfile
import threading
import time
from pathlib import Path
from typing import Callable, Optional, Set, Tuple
from urllib.error import HTTPError, URLError
from urllib.parse import urlparse
from urllib.request import Request, urlopen

from vboxnode.constants import _LOG_VERBOSE, MAX_CPUS, SHARE_FOLDERS, TRUTHY
from vboxnode.exceptions import ConfigError, NodeError, OperationCancelledError


def log(level: str, message: str) -> None:
    """Lightweight structured logging compatible with existing colour expectation."""
    if level == "DEBUG" and not _LOG_VERBOSE:
        return
    colours = {
        "INFO": "\033[0;34m",
        "WARN": "\033[1;33m",
        "ERROR": "\033[0;31m",
        "SUCCESS": "\033[0;32m",
        "DEBUG": "\033[0;90m",
    }
    colour = colours.get(level, "")
    reset = "\033[0m" if colour else ""
    print(f"{colour}[{level}]{reset} {message}", flush=True)


def get_env(name: str, default: Optional[str] = None) -> Optional[str]:
    return os.environ.get(name, default)


def get_env_bool(name: str, default: bool = False) -> bool:
    raw = os.environ.get(name)
    if raw is None:
        return default
    return raw.lower() in TRUTHY


def parse_int_env(name: str, default: str, min_val: int = 1, max_val: Optional[int] = None) -> int:
    raw = get_env(name, default)
    assert raw is not None
    try:
        value = int(raw)
    except ValueError:
        raise ConfigError(f"{name} must be an integer (got '{raw}')")
    if value < min_val:
        raise ConfigError(f"{name} must be >= {min_val} (got {value})")
    if max_val is not None and value > max_val:
        raise ConfigError(f"{name} must be <= {max_val} (got {value})")
    return value


def parse_float_env(name: str, default: str, min_val: float = 0.0) -> float:
    raw = get_env(name, default)
    assert raw is not None
    try:
        value = float(raw)
    except ValueError:
        raise ConfigError(f"{name} must be a number (got '{raw}')")
    if value < min_val:
        raise ConfigError(f"{name} must be >= {min_val} (got {value})")
    return value


def ensure_directory(path: Path) -> None:
    path.mkdir(parents=True, exist_ok=True)


def host_cpu_count() -> int:
    return os.cpu_count() or 1


def normalize_cpu_count(requested: int, host_cores: Optional[int] = None) -> int:
    """Map the configured CPU count onto what gets passed to ``modifyvm --cpus``.

    Values below 1 mean "every host core". The result never exceeds MAX_CPUS.
    """
    cpus = requested
    if cpus < 1:
        cpus = host_cores if host_cores is not None else host_cpu_count()
    # TODO: reject 0 explicitly once callers stop relying on it meaning "all cores".
    if cpus > MAX_CPUS:
        cpus = MAX_CPUS
    return max(cpus, 1)


def get_cpu_flags(cpuinfo: Path = Path("/proc/cpuinfo")) -> Set[str]:
    """Return the CPU feature flags advertised by the Linux kernel."""
    flags: Set[str] = set()
    try:
        with open(cpuinfo) as f:
            for line in f:
                if line.startswith("flags"):
                    flags.update(line.split(":", 1)[1].split())
                    break
    except OSError:
        pass
    return flags


def host_virtualization_disabled() -> bool:
    """Best-effort check for VT-x/AMD-v on the host."""
    if sys.platform.startswith("linux"):
        flags = get_cpu_flags()
        return not ({"vmx", "svm"} & flags)
    if sys.platform == "darwin":
        try:
            result = subprocess.run(
                ["sysctl", "-n", "machdep.cpu.features"],
                capture_output=True,
                text=True,
                check=False,
            )
        except OSError:
            return False
        return "VMX" not in result.stdout
    # No reliable probe elsewhere; let VirtualBox report it from the VM log.
    return False


def get_share_drive_and_name(platform: Optional[str] = None) -> Tuple[str, str]:
    platform = platform or sys.platform
    for prefix, share in SHARE_FOLDERS.items():
        if platform.startswith(prefix):
            return share
    return "", ""


def check_cancelled(cancel: Optional[threading.Event]) -> None:
    if cancel is not None and cancel.is_set():
        raise OperationCancelledError("Operation cancelled")


def wait_for(
    condition: Callable[[], bool],
    attempts: int,
    interval: float,
    sleep: Callable[[float], None] = time.sleep,
    cancel: Optional[threading.Event] = None,
) -> bool:
    """Poll ``condition`` up to ``attempts`` times, sleeping ``interval`` between tries."""
    for _ in range(attempts):
        check_cancelled(cancel)
        if condition():
            return True
        sleep(interval)
    check_cancelled(cancel)
    return False


def copy_file(source: Path, destination: Path) -> None:
    ensure_directory(destination.parent)
    shutil.copyfile(source, destination)
    shutil.copymode(source, destination)


def fetch_file(source: str, destination: Path, label: str = "Downloading") -> None:
    """Materialize ``source`` (URL, file:// URL or local path) at ``destination``."""
    parsed = urlparse(source)
    if parsed.scheme in ("http", "https"):
        download_file(source, destination, label=label)
        return
    local = Path(parsed.path if parsed.scheme == "file" else source).expanduser()
    if not local.exists():
        raise NodeError(f"Seed image not found: {local}")
    log("INFO", f"Copying {local} to {destination}")
    copy_file(local, destination)


def download_file(url: str, destination: Path, label: str = "Downloading") -> None:
    """Download a file with a progress line using Python urllib."""
    log("INFO", f"{label}: {url}")
    req = Request(url, headers={"User-Agent": "vboxnode/1.0"})
    try:
        response = urlopen(req, timeout=60)
    except HTTPError as exc:
        raise NodeError(f"HTTP error downloading {url}: {exc.code} {exc.reason}")
    except URLError as exc:
        raise NodeError(f"Failed to download {url}: {exc.reason}")

    total = response.headers.get("Content-Length")
    total_bytes = int(total) if total else None
    downloaded = 0
    start_time = time.time()

    ensure_directory(destination.parent)
    with tempfile.NamedTemporaryFile(delete=False, dir=destination.parent) as tmp:
        tmp_path = Path(tmp.name)
        try:
            chunk_size = 1024 * 256  # 256 KiB
            while True:
                chunk = response.read(chunk_size)
                if not chunk:
                    break
                tmp.write(chunk)
                downloaded += len(chunk)
                downloaded_mb = downloaded / (1024 * 1024)
                if total_bytes:
                    pct = downloaded * 100 / total_bytes
                    print(f"\r  {pct:5.1f}% {downloaded_mb:.1f} MiB", end="", flush=True)
                else:
                    print(f"\r  {downloaded_mb:.1f} MiB downloaded", end="", flush=True)
            print(flush=True)
            tmp.flush()
            tmp_path.replace(destination)
            elapsed = time.time() - start_time
            log("SUCCESS", f"Downloaded {downloaded / (1024 * 1024):.1f} MiB in {elapsed:.1f}s")
        except Exception:
            if tmp_path.exists():
                tmp_path.unlink(missing_ok=True)
            raise
