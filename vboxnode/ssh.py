"""SSH key generation and guest command execution for vboxnode."""

from __future__ import annotations

import shutil
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import List

from vboxnode.exceptions import NodeError, ToolUnavailableError
from vboxnode.utils import ensure_directory, log

SSH_OPTIONS = [
    "-F", "/dev/null",
    "-o", "ConnectionAttempts=3",
    "-o", "ConnectTimeout=10",
    "-o", "ControlMaster=no",
    "-o", "ControlPath=none",
    "-o", "LogLevel=quiet",
    "-o", "PasswordAuthentication=no",
    "-o", "ServerAliveInterval=60",
    "-o", "StrictHostKeyChecking=no",
    "-o", "UserKnownHostsFile=/dev/null",
    "-o", "IdentitiesOnly=yes",
]


def generate_ssh_key(key_path: Path) -> None:
    """Create an RSA keypair at ``key_path`` / ``key_path.pub`` with ssh-keygen."""
    ssh_keygen = shutil.which("ssh-keygen")
    if not ssh_keygen:
        raise ToolUnavailableError("ssh-keygen not available")
    ensure_directory(key_path.parent)
    for stale in (key_path, key_path.with_name(key_path.name + ".pub")):
        stale.unlink(missing_ok=True)
    result = subprocess.run(
        [ssh_keygen, "-t", "rsa", "-b", "2048", "-N", "", "-q", "-f", str(key_path)],
        capture_output=True,
        text=True,
        check=False,
    )
    if result.returncode != 0:
        raise NodeError(f"ssh-keygen failed: {result.stderr.strip() or result.stdout.strip()}")
    key_path.chmod(0o600)


@dataclass
class SSHClient:
    host: str
    port: int
    user: str
    key_path: Path
    timeout: float = 30.0

    def command(self, remote_command: str) -> List[str]:
        return [
            "ssh",
            *SSH_OPTIONS,
            "-i", str(self.key_path),
            "-p", str(self.port),
            f"{self.user}@{self.host}",
            remote_command,
        ]

    def run(self, remote_command: str) -> str:
        cmd = self.command(remote_command)
        log("DEBUG", f"Running: {' '.join(cmd)}")
        try:
            result = subprocess.run(cmd, capture_output=True, text=True, timeout=self.timeout, check=False)
        except FileNotFoundError as exc:
            raise ToolUnavailableError("ssh client not available") from exc
        except subprocess.TimeoutExpired as exc:
            raise NodeError(f"ssh command timed out after {self.timeout}s: {remote_command}") from exc
        log("DEBUG", f"SSH returned: {result.stdout}\nEND SSH")
        if result.returncode != 0:
            raise NodeError(
                f"ssh command '{remote_command}' failed with status {result.returncode}: {result.stderr.strip()}"
            )
        return result.stdout
