"""vboxnode package."""

__all__ = [
    "cli",
    "config",
    "constants",
    "disk",
    "exceptions",
    "models",
    "network",
    "ports",
    "ssh",
    "status",
    "utils",
    "vbm",
    "vm",
]
