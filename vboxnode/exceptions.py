"""Custom exceptions for vboxnode."""

from typing import Optional, Sequence


class NodeError(RuntimeError):
    """Raised on unrecoverable configuration or runtime errors."""


class ConfigError(NodeError):
    """An option value cannot be used."""


class ToolUnavailableError(NodeError):
    """VBoxManage could not be found or executed."""


class UnsupportedVersionError(NodeError):
    """The installed VirtualBox is too old."""


class CommandError(NodeError):
    """A VBoxManage invocation failed."""

    def __init__(
        self,
        args: Sequence[str],
        stderr: str = "",
        stdout: str = "",
        returncode: Optional[int] = None,
    ) -> None:
        self.cmd_args = list(args)
        self.stderr = stderr
        self.stdout = stdout
        self.returncode = returncode
        detail = stderr.strip() or f"exit status {returncode}"
        super().__init__(f"{' '.join(self.cmd_args)} failed: {detail}")


class MachineNotFoundError(CommandError):
    """VirtualBox has no registered machine with the requested name."""


class VirtualizationRequiredError(NodeError):
    def __init__(self, message: str = "") -> None:
        super().__init__(
            message
            or "This computer doesn't have VT-X/AMD-v enabled. Enabling it in the BIOS is mandatory"
        )


class NetworkIsNetworkAddressError(NodeError):
    def __init__(self, cidr: str) -> None:
        super().__init__(f"host-only cidr must be specified with a host address, not a network address (got {cidr})")


class RandomIPGenerationFailedError(NodeError):
    def __init__(self) -> None:
        super().__init__("unable to generate random IP")


class PortAllocationFailedError(NodeError):
    def __init__(self) -> None:
        super().__init__("unable to allocate tcp port")


class HostNotRunningError(NodeError):
    def __init__(self, name: str) -> None:
        super().__init__(f"Host is not running: {name}")


class IPWaitTimeoutError(NodeError):
    """SSH or the host-only address did not come up in time."""


class StopTimeoutError(NodeError):
    """The VM kept reporting running after an ACPI shutdown request."""


class OperationCancelledError(NodeError):
    """A blocking wait was interrupted by the caller's cancel signal."""
