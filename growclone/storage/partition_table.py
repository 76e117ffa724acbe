"""Partition table operations.

This module handles partition table manipulation including:
- Reading and parsing partition tables (parted machine-readable output)
- Writing a fresh label and creating partitions at exact sector ranges
- Assigning partition type codes (sgdisk for GPT, sfdisk for MBR)
- Resizing a single table entry
- Dumping the table for backup (sfdisk --dump)
- Making the kernel re-read the table and waiting for the new nodes
"""
from __future__ import annotations

import re
import shutil
import subprocess
from dataclasses import dataclass
from typing import Optional

from growclone.domain.models import LabelType, Partition
from growclone.logging import LoggerFactory
from growclone.storage import devices
from growclone.storage.devices import DeviceInfo, partition_node, resolve_device_node

log = LoggerFactory.for_system()

# parted mkpart accepts these filesystem-type hints; anything else is omitted
PARTED_FS_TYPES = {
    "btrfs",
    "ext2",
    "ext3",
    "ext4",
    "fat16",
    "fat32",
    "hfs+",
    "linux-swap",
    "ntfs",
    "xfs",
}
_FS_ALIASES = {"vfat": "fat32", "fat": "fat32", "swap": "linux-swap"}


@dataclass(frozen=True)
class PartitionTable:
    """A device's partition table as reported by parted."""

    device: str
    total_sectors: int
    logical_sector_size: int
    label_type: LabelType
    model: str
    partitions: tuple[Partition, ...]


def format_command_failure(summary: str, command: list[str], result: subprocess.CompletedProcess) -> str:
    """Format a command failure message."""
    stderr = " ".join((result.stderr or "").strip().split())
    stdout = " ".join((result.stdout or "").strip().split())
    details = []
    if stderr:
        details.append(f"stderr: {stderr}")
    if stdout:
        details.append(f"stdout: {stdout}")
    if details:
        return f"{summary} ({' '.join(command)}): {' | '.join(details)}"
    return f"{summary} ({' '.join(command)})"


def normalize_parted_fs(fs_hint: Optional[str]) -> Optional[str]:
    """Map a filesystem hint to a parted mkpart fs-type, or None."""
    if not fs_hint:
        return None
    normalized = fs_hint.strip().lower()
    normalized = _FS_ALIASES.get(normalized, normalized)
    if normalized in PARTED_FS_TYPES:
        return normalized
    return None


def _parse_sector(value: str) -> int:
    match = re.match(r"^(\d+)s?$", value.strip())
    if not match:
        raise ValueError(f"Unexpected parted sector value: {value!r}")
    return int(match.group(1))


def parse_parted_machine_output(contents: str) -> PartitionTable:
    """Parse ``parted -ms <dev> unit s print`` output.

    Device line:    path:size:transport:logical:physical:label:model;
    Partition line: number:start:end:size:fs:name:flags;
    """
    device_fields: Optional[list[str]] = None
    partitions: list[Partition] = []
    for line in contents.splitlines():
        stripped = line.strip().rstrip(";")
        if not stripped or stripped in {"BYT", "CHS", "CYL"}:
            continue
        fields = stripped.split(":")
        if stripped.startswith("/"):
            device_fields = fields
            continue
        if not fields[0].isdigit() or len(fields) < 4:
            continue
        fields += [""] * (7 - len(fields))
        flags = frozenset(
            flag.strip().lower() for flag in fields[6].split(",") if flag.strip()
        )
        partitions.append(
            Partition(
                number=int(fields[0]),
                start_sector=_parse_sector(fields[1]),
                end_sector=_parse_sector(fields[2]),
                filesystem_hint=fields[4].strip().lower(),
                name=fields[5].strip(),
                flags=flags,
            )
        )
    if device_fields is None or len(device_fields) < 6:
        raise RuntimeError("parted output does not contain a device line")
    device_fields += [""] * (7 - len(device_fields))
    return PartitionTable(
        device=device_fields[0],
        total_sectors=_parse_sector(device_fields[1]),
        logical_sector_size=int(device_fields[3] or 512),
        label_type=LabelType.parse(device_fields[5]),
        model=device_fields[6].strip(),
        partitions=tuple(sorted(partitions, key=lambda part: part.number)),
    )


def mkpart_command(
    device: str, partition: Partition, label_type: LabelType
) -> list[str]:
    """Build the parted command that creates ``partition`` on ``device``."""
    command = ["parted", "-s", resolve_device_node(device), "unit", "s", "mkpart"]
    if label_type is LabelType.GPT:
        name = partition.name or "primary"
        # parted re-tokenizes its arguments; names with spaces need quoting
        command.append(f'"{name}"' if re.search(r"\s", name) else name)
    else:
        command.append("primary")
    fs_type = normalize_parted_fs(partition.filesystem_hint)
    if fs_type:
        command.append(fs_type)
    command.extend([f"{partition.start_sector}s", f"{partition.end_sector}s"])
    return command


class PartitionTableService:
    """Partition-table service: reads and rewrites tables with parted and friends."""

    def __init__(self, device_info: Optional[DeviceInfo] = None):
        self.device_info = device_info or DeviceInfo()

    def _run(self, command: list[str], summary: str, input_text: Optional[str] = None):
        tool_path = shutil.which(command[0])
        if not tool_path:
            raise RuntimeError(f"{command[0]} not found")
        command = [tool_path, *command[1:]]
        result = devices.run_command(command, check=False, input_text=input_text)
        if result.returncode != 0:
            raise RuntimeError(format_command_failure(summary, command, result))
        return result

    def read(self, device: str) -> PartitionTable:
        node = resolve_device_node(device)
        result = self._run(
            ["parted", "-ms", node, "unit", "s", "print"], "parted print failed"
        )
        table = parse_parted_machine_output(result.stdout)
        log.debug(
            f"Read {len(table.partitions)} partitions from {node} "
            f"({table.label_type.value}, {table.total_sectors} sectors)"
        )
        return table

    def write_label(self, device: str, label_type: LabelType) -> None:
        if label_type is LabelType.UNKNOWN:
            raise RuntimeError("Refusing to write an unknown label type")
        node = resolve_device_node(device)
        self._run(["parted", "-s", node, "mklabel", label_type.value], "parted mklabel failed")
        log.info(f"Wrote {label_type.value} label to {node}")

    def create_partition(
        self, device: str, partition: Partition, label_type: LabelType
    ) -> None:
        self._run(mkpart_command(device, partition, label_type), "parted mkpart failed")
        log.debug(
            f"Created partition {partition.number} "
            f"({partition.start_sector}s - {partition.end_sector}s)"
        )

    def set_type_code(
        self, device: str, number: int, code: str, label_type: LabelType
    ) -> None:
        node = resolve_device_node(device)
        if label_type is LabelType.GPT:
            self._run(
                ["sgdisk", f"--typecode={number}:{code}", node], "sgdisk typecode failed"
            )
        else:
            self._run(
                ["sfdisk", "--part-type", node, str(number), code],
                "sfdisk part-type failed",
            )

    def set_flag(self, device: str, number: int, flag: str) -> None:
        node = resolve_device_node(device)
        self._run(
            ["parted", "-s", node, "set", str(number), flag, "on"], "parted set failed"
        )

    def resize_entry(self, device: str, number: int, new_end: int) -> None:
        node = resolve_device_node(device)
        self._run(
            ["parted", "-s", node, "unit", "s", "resizepart", str(number), f"{new_end}s"],
            "parted resizepart failed",
        )
        log.info(f"Resized table entry {number} on {node} to end at {new_end}s")

    def dump(self, device: str) -> str:
        node = resolve_device_node(device)
        return self._run(["sfdisk", "--dump", node], "sfdisk dump failed").stdout

    def reprobe(self, device: str, numbers, timeout_seconds: float) -> None:
        """Make the kernel re-read the table and wait for the partition nodes.

        partprobe and udevadm settle are best-effort; missing nodes after the
        timeout raise RuntimeError.
        """
        node = resolve_device_node(device)
        for command in (
            ["partprobe", node],
            ["udevadm", "settle", f"--timeout={int(timeout_seconds)}"],
        ):
            try:
                self._run(command, f"{command[0]} failed")
            except RuntimeError as error:
                log.warning(str(error))
        expected = [partition_node(node, number) for number in numbers]
        missing = self.device_info.wait_for_nodes(expected, timeout_seconds)
        if missing:
            raise RuntimeError(
                f"Partition nodes did not appear after {timeout_seconds}s: "
                f"{', '.join(missing)}"
            )
