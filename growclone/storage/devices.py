"""Block device queries using blockdev and lsblk.

This module answers the geometry questions the planner needs and nothing
else: it never writes to a device.

Queries:
    - total_sectors(): device size in logical sectors (blockdev --getsize64 / --getss)
    - sector_size(): logical sector size (blockdev --getss)
    - label_type(): current partition-table type (lsblk PTTYPE)
    - resolve_disk(): the whole-disk node a partition node belongs to (lsblk PKNAME)
    - probe_partition(): filesystem type, labels, type id and size of a partition

Naming:
    Partition nodes of disks whose name ends in a digit (nvme0n1, mmcblk0,
    loop0) use a "p" separator: /dev/nvme0n1p2. Others append the number:
    /dev/sda2.
"""

from __future__ import annotations

import json
import os
import re
import subprocess
import time
from dataclasses import dataclass
from typing import Optional

from growclone.domain.models import DiskGeometry, LabelType
from growclone.logging import LoggerFactory

log = LoggerFactory.for_system()

_PARTITION_SUFFIX = re.compile(r"^(?P<disk>.*?\d)p(?P<number>\d+)$")
_PLAIN_SUFFIX = re.compile(r"^(?P<disk>.*?\D)(?P<number>\d+)$")


def run_command(command, check=True, log_output=True, log_command=True, input_text=None):
    if log_command:
        log.debug(f"Running command: {' '.join(command)}")
    try:
        result = subprocess.run(
            command, check=check, text=True, capture_output=True, input=input_text
        )
    except subprocess.CalledProcessError as error:
        log.debug(f"Command failed: {' '.join(command)}")
        if error.stdout:
            log.debug(f"stdout: {error.stdout.strip()}")
        if error.stderr:
            log.debug(f"stderr: {error.stderr.strip()}")
        raise
    if result.stdout and (log_output or result.returncode != 0):
        log.trace(f"stdout: {result.stdout.strip()}")
    if result.stderr and (log_output or result.returncode != 0):
        log.debug(f"stderr: {result.stderr.strip()}")
    if log_command:
        log.debug(f"Command completed with return code {result.returncode}")
    return result


def human_size(size_bytes):
    if size_bytes is None:
        return "0B"
    size = float(size_bytes)
    for unit in ["B", "KB", "MB", "GB", "TB"]:
        if size < 1024.0:
            return f"{size:.1f}{unit}"
        size /= 1024.0
    return f"{size:.1f}PB"


def resolve_device_node(device: str) -> str:
    """Convert a device name or path to a /dev node path."""
    return device if device.startswith("/dev/") else f"/dev/{device}"


def partition_node(disk: str, number: int) -> str:
    """Build the node path of partition ``number`` on ``disk``."""
    disk_node = resolve_device_node(disk)
    if disk_node[-1].isdigit():
        return f"{disk_node}p{number}"
    return f"{disk_node}{number}"


def split_partition_node(node: str) -> tuple[str, Optional[int]]:
    """Split a partition node into (disk node, number).

    Whole-disk nodes return (node, None). Name-based only; resolve_disk()
    asks the kernel first.
    """
    node = resolve_device_node(node)
    name = os.path.basename(node)
    if name.startswith(("nvme", "mmcblk", "loop", "nbd")):
        match = _PARTITION_SUFFIX.match(node)
        if match:
            return match.group("disk"), int(match.group("number"))
        return node, None
    match = _PLAIN_SUFFIX.match(node)
    if match:
        return match.group("disk"), int(match.group("number"))
    return node, None


@dataclass(frozen=True)
class PartitionProbe:
    """What the kernel and blkid report about one partition node."""

    fstype: str = ""
    label: str = ""
    partlabel: str = ""
    parttype: str = ""
    size_bytes: int = 0


class DeviceInfo:
    """Device-info service: read-only geometry and identity queries.

    Query failures raise RuntimeError, like the other storage adapters.
    """

    def _blockdev(self, flag: str, device: str) -> int:
        node = resolve_device_node(device)
        command = ["blockdev", flag, node]
        try:
            result = run_command(command, check=False)
        except OSError as error:
            raise RuntimeError(f"Command failed ({' '.join(command)}): {error}") from error
        if result.returncode != 0:
            detail = (result.stderr or "").strip() or f"exit status {result.returncode}"
            raise RuntimeError(f"Command failed ({' '.join(command)}): {detail}")
        try:
            return int(result.stdout.strip())
        except ValueError as error:
            raise RuntimeError(
                f"Unexpected output from {' '.join(command)}: {result.stdout.strip()!r}"
            ) from error

    def total_sectors(self, device: str) -> int:
        return self.size_bytes(device) // self.sector_size(device)

    def sector_size(self, device: str) -> int:
        return self._blockdev("--getss", device)

    def size_bytes(self, device: str) -> int:
        return self._blockdev("--getsize64", device)

    def label_type(self, device: str) -> LabelType:
        node = resolve_device_node(device)
        result = run_command(
            ["lsblk", "-J", "-d", "-o", "NAME,PTTYPE", node], check=False
        )
        if result.returncode != 0:
            return LabelType.UNKNOWN
        try:
            devices = json.loads(result.stdout).get("blockdevices", [])
        except json.JSONDecodeError:
            return LabelType.UNKNOWN
        if not devices:
            return LabelType.UNKNOWN
        return LabelType.parse(devices[0].get("pttype"))

    def geometry(self, device: str) -> DiskGeometry:
        """Geometry of ``device`` with the reserve of its current label."""
        node = resolve_device_node(device)
        return DiskGeometry.for_label(
            self.total_sectors(node), self.sector_size(node), self.label_type(node)
        )

    def resolve_disk(self, device: str) -> str:
        """Return the whole-disk node ``device`` lives on (itself for a disk)."""
        node = os.path.realpath(resolve_device_node(device))
        result = run_command(["lsblk", "-n", "-d", "-o", "PKNAME", node], check=False)
        parent = result.stdout.strip() if result.returncode == 0 else ""
        if parent:
            return resolve_device_node(parent.splitlines()[0].strip())
        if result.returncode == 0:
            return node
        disk, _number = split_partition_node(node)
        return disk

    def partition_node(self, disk: str, number: int) -> str:
        return partition_node(disk, number)

    def partition_size_bytes(self, partition: str) -> int:
        return self.size_bytes(partition)

    def is_mounted(self, device: str) -> bool:
        return bool(self.mountpoints(device))

    def is_partition(self, device: str) -> bool:
        node = resolve_device_node(device)
        result = run_command(["lsblk", "-n", "-d", "-o", "TYPE", node], check=False)
        if result.returncode == 0 and result.stdout.strip():
            return result.stdout.strip().splitlines()[0].strip() == "part"
        return split_partition_node(node)[1] is not None

    def probe_partition(self, device: str) -> PartitionProbe:
        node = resolve_device_node(device)
        result = run_command(
            [
                "lsblk",
                "-J",
                "-b",
                "-d",
                "-o",
                "NAME,FSTYPE,LABEL,PARTLABEL,PARTTYPE,SIZE",
                node,
            ],
            check=False,
        )
        if result.returncode != 0:
            return PartitionProbe()
        try:
            devices = json.loads(result.stdout).get("blockdevices", [])
        except json.JSONDecodeError:
            return PartitionProbe()
        if not devices:
            return PartitionProbe()
        entry = devices[0]
        return PartitionProbe(
            fstype=(entry.get("fstype") or "").lower(),
            label=entry.get("label") or "",
            partlabel=entry.get("partlabel") or "",
            parttype=(entry.get("parttype") or "").lower(),
            size_bytes=int(entry.get("size") or 0),
        )

    def mountpoints(self, device: str) -> list[str]:
        """Active mountpoints of ``device`` and all of its partitions."""
        node = resolve_device_node(device)
        result = run_command(["lsblk", "-n", "-l", "-o", "MOUNTPOINT", node], check=False)
        if result.returncode != 0:
            return []
        return [line.strip() for line in result.stdout.splitlines() if line.strip()]

    def wait_for_nodes(self, nodes: list[str], timeout_seconds: float) -> list[str]:
        """Poll until every node exists; return the ones still missing."""
        deadline = time.monotonic() + timeout_seconds
        missing = [node for node in nodes if not os.path.exists(node)]
        while missing and time.monotonic() < deadline:
            time.sleep(0.5)
            missing = [node for node in missing if not os.path.exists(node)]
        return missing
