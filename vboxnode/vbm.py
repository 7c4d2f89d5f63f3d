"""VBoxManage command execution for vboxnode."""

from __future__ import annotations

import os
import re
import shutil
import subprocess
import sys
import tempfile
from contextlib import contextmanager, suppress
from pathlib import Path
from typing import BinaryIO, Iterator, List, Optional, Tuple

from vboxnode.constants import RE_MACHINE_NOT_FOUND, VBOXMANAGE_CMD
from vboxnode.exceptions import (
    CommandError,
    MachineNotFoundError,
    ToolUnavailableError,
    UnsupportedVersionError,
)
from vboxnode.utils import log

_VERSION_RE = re.compile(r"^(\d+)\.(\d+)")


class VBoxManager:
    """What the driver needs from the hypervisor control tool.

    ``VBoxCmdManager`` shells out to VBoxManage; tests substitute a scripted
    fake that implements ``run_captured`` and ``stream_stdin``.
    """

    def run_captured(self, *args: str) -> Tuple[str, str]:
        """Run one command and return ``(stdout, stderr)``; raise on failure."""
        raise NotImplementedError

    def stream_stdin(self, *args: str):
        """Context manager yielding a binary stdin writer for one command.

        Leaving the block closes stdin and waits for the process.
        """
        raise NotImplementedError

    def run(self, *args: str) -> str:
        stdout, _ = self.run_captured(*args)
        return stdout

    def vbm(self, *args: str) -> None:
        self.run_captured(*args)


def detect_vboxmanage_cmd(override: Optional[str] = None) -> str:
    if override:
        return override
    found = shutil.which(VBOXMANAGE_CMD)
    if found:
        return found
    if sys.platform == "win32":
        for env_name in ("VBOX_INSTALL_PATH", "VBOX_MSI_INSTALL_PATH"):
            install_dir = os.environ.get(env_name)
            if install_dir:
                candidate = Path(install_dir) / "VBoxManage.exe"
                if candidate.exists():
                    return str(candidate)
    return VBOXMANAGE_CMD


def _raise_for_stderr(cmd: List[str], stdout: str, stderr: str, returncode: int) -> None:
    # VBoxManage sometimes exits 0 after a fatal "error:" line
    # (e.g. "VBoxManage: error: VT-x is not available").
    if returncode == 0 and "error:" not in stderr:
        return
    if RE_MACHINE_NOT_FOUND.search(stderr):
        raise MachineNotFoundError(cmd, stderr=stderr, stdout=stdout, returncode=returncode)
    raise CommandError(cmd, stderr=stderr, stdout=stdout, returncode=returncode)


class VBoxCmdManager(VBoxManager):
    def __init__(self, command: Optional[str] = None, debug: bool = False) -> None:
        self.command = detect_vboxmanage_cmd(command)
        self.debug = debug

    def _not_found(self, exc: OSError) -> ToolUnavailableError:
        return ToolUnavailableError(
            f"{self.command} not found. Make sure VirtualBox is installed and VBoxManage is in the path ({exc})"
        )

    def run_captured(self, *args: str) -> Tuple[str, str]:
        cmd = [self.command, *args]
        log("DEBUG", f"Running: {' '.join(cmd)}")
        try:
            result = subprocess.run(cmd, capture_output=True, text=True, check=False)
        except (FileNotFoundError, PermissionError) as exc:
            raise self._not_found(exc) from exc
        log("DEBUG", f"STDOUT:\n{{\n{result.stdout}}}")
        log("DEBUG", f"STDERR:\n{{\n{result.stderr}}}")
        _raise_for_stderr(cmd, result.stdout, result.stderr, result.returncode)
        return result.stdout, result.stderr

    @contextmanager
    def stream_stdin(self, *args: str) -> Iterator[BinaryIO]:
        cmd = [self.command, *args]
        log("DEBUG", f"Running: {' '.join(cmd)}")
        with tempfile.TemporaryFile() as errfile:
            try:
                proc = subprocess.Popen(
                    cmd,
                    stdin=subprocess.PIPE,
                    stdout=None if self.debug else subprocess.DEVNULL,
                    stderr=None if self.debug else errfile,
                )
            except (FileNotFoundError, PermissionError) as exc:
                raise self._not_found(exc) from exc
            stdin = proc.stdin
            broken_pipe: Optional[BrokenPipeError] = None
            try:
                yield stdin
                # The converter won't exit until stdin is closed.
                stdin.close()
            except BrokenPipeError as exc:
                # The tool exited before reading everything; its stderr says why.
                broken_pipe = exc
                with suppress(BrokenPipeError):
                    stdin.close()
            except BaseException:
                proc.kill()
                proc.wait()
                raise
            returncode = proc.wait()
            errfile.seek(0)
            stderr = errfile.read().decode("utf-8", errors="replace")
            log("DEBUG", f"STDERR:\n{{\n{stderr}}}")
            _raise_for_stderr(cmd, "", stderr, returncode)
            if broken_pipe is not None:
                raise CommandError(cmd, stderr=stderr, returncode=returncode) from broken_pipe


def parse_version(version: str) -> Tuple[int, int]:
    match = _VERSION_RE.match(version.strip())
    if not match:
        raise ValueError(f"unparseable version {version!r}")
    return int(match.group(1)), int(match.group(2))


def check_vboxmanage_version(version: str) -> None:
    try:
        major, minor = parse_version(version)
    except ValueError:
        major, minor = 0, 0
    if major < 4 or (major == 4 and minor <= 2):
        raise UnsupportedVersionError(
            "We support Virtualbox starting with version 5. "
            f"Your VirtualBox install is {version!r}. Please upgrade at https://www.virtualbox.org"
        )
    if major < 5:
        log(
            "WARN",
            f"You are using version {version} of VirtualBox. If you encounter issues, "
            "you might want to upgrade to version 5 at https://www.virtualbox.org",
        )
