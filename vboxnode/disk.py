"""Disk image construction for vboxnode."""

from __future__ import annotations

import io
import tarfile
import time
from pathlib import Path
from typing import BinaryIO

from vboxnode.constants import SEED_MAGIC, ZERO_FILL_BLOCK
from vboxnode.exceptions import NodeError
from vboxnode.models import DiskInfo, VMInfo
from vboxnode.status import parse_machine_readable
from vboxnode.utils import log
from vboxnode.vbm import VBoxManager


def _add_bytes(tar: tarfile.TarFile, name: str, payload: bytes, mode: int = 0o644) -> None:
    info = tarfile.TarInfo(name)
    info.size = len(payload)
    info.mode = mode
    info.mtime = int(time.time())
    tar.addfile(info, io.BytesIO(payload))


def make_seed_archive(public_key_path: Path) -> io.BytesIO:
    """Build the tar payload the guest formats its data disk from.

    The magic entry must come first: the guest's automount script looks for
    it at offset 0 of the raw disk before partitioning.
    """
    try:
        public_key = public_key_path.read_bytes()
    except OSError as exc:
        raise NodeError(f"Cannot read SSH public key {public_key_path}: {exc}") from exc

    buf = io.BytesIO()
    with tarfile.open(fileobj=buf, mode="w", format=tarfile.USTAR_FORMAT) as tar:
        _add_bytes(tar, SEED_MAGIC, SEED_MAGIC.encode("utf-8"))
        ssh_dir = tarfile.TarInfo(".ssh")
        ssh_dir.type = tarfile.DIRTYPE
        ssh_dir.mode = 0o700
        ssh_dir.mtime = int(time.time())
        tar.addfile(ssh_dir)
        _add_bytes(tar, ".ssh/authorized_keys", public_key)
        _add_bytes(tar, ".ssh/authorized_keys2", public_key)
    buf.seek(0)
    return buf


def zero_fill(writer: BinaryIO, count: int) -> None:
    zeros = bytes(ZERO_FILL_BLOCK)
    while count > 0:
        chunk = zeros if count > ZERO_FILL_BLOCK else zeros[:count]
        writer.write(chunk)
        count -= len(chunk)


def create_disk_image(vbox: VBoxManager, dest: Path, size_mb: int, reader: BinaryIO) -> int:
    """Convert ``reader`` (a raw image) into a VMDK at ``dest`` of exactly ``size_mb``.

    VBoxManage needs the byte count it is promised up front to match what it
    receives on stdin (Windows builds fail otherwise), so short input is
    padded with zeros. Returns the number of bytes written.
    """
    size_bytes = size_mb << 20
    written = 0
    with vbox.stream_stdin("convertfromraw", "stdin", str(dest), str(size_bytes), "--format", "VMDK") as stdin:
        log("DEBUG", "Copying to stdin")
        while True:
            chunk = reader.read(ZERO_FILL_BLOCK)
            if not chunk:
                break
            stdin.write(chunk)
            written += len(chunk)
        left = size_bytes - written
        if left > 0:
            log("DEBUG", "Filling zeroes")
            zero_fill(stdin, left)
            written += left
        log("DEBUG", "Closing STDIN")
    return written


def generate_disk_image(vbox: VBoxManager, public_key_path: Path, dest: Path, size_mb: int) -> None:
    log("DEBUG", f"Creating {size_mb} MB hard disk image...")
    seed = make_seed_archive(public_key_path)
    create_disk_image(vbox, dest, size_mb, seed)


def get_vm_disk_info(vbox: VBoxManager, name: str) -> DiskInfo:
    values = parse_machine_readable(vbox.run("showvminfo", name, "--machinereadable"))
    return DiskInfo(path=values.get("SATA-1-0", ""), uuid=values.get("SATA-ImageUUID-1-0", ""))


def get_vm_info(vbox: VBoxManager, name: str) -> VMInfo:
    values = parse_machine_readable(vbox.run("showvminfo", name, "--machinereadable"))
    try:
        return VMInfo(cpus=int(values.get("cpus", "0")), memory_mb=int(values.get("memory", "0")))
    except ValueError as exc:
        raise NodeError(f"Unexpected VM settings for {name}: {exc}") from exc
