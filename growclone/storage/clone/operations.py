"""Partition copy operations: filesystem-aware clone, raw copy, boot format."""

from __future__ import annotations

import shutil
from pathlib import Path
from typing import Optional

from growclone.logging import LoggerFactory
from growclone.storage.devices import resolve_device_node

from .command_runners import run_checked_command, run_checked_with_streaming_progress

log = LoggerFactory.for_clone(job_id="-")

NTFSCLONE = "ntfsclone"
BOOT_MKFS_TOOLS = {
    "vfat": ["mkfs.vfat", "-F", "32"],
    "fat32": ["mkfs.vfat", "-F", "32"],
    "fat16": ["mkfs.vfat", "-F", "16"],
}


def clone_available() -> bool:
    """Whether the filesystem-aware clone tool is installed."""
    return shutil.which(NTFSCLONE) is not None


def clone_ntfs(dst: str, src: str) -> None:
    """Clone an NTFS partition with ntfsclone (copies used clusters only).

    ntfsclone refuses destinations smaller than the source volume; callers
    check capacity first so the failure never happens mid-copy.
    """
    ntfsclone_path = shutil.which(NTFSCLONE)
    if not ntfsclone_path:
        raise RuntimeError("ntfsclone not found")
    src_node = resolve_device_node(src)
    dst_node = resolve_device_node(dst)
    run_checked_with_streaming_progress(
        [ntfsclone_path, "--overwrite", dst_node, src_node],
        title=f"ntfsclone {src_node}",
    )
    log.debug(f"NTFS volume cloned from {src_node} to {dst_node}")


def clone_dd(
    src: str,
    dst: str,
    offset: int = 0,
    length: Optional[int] = None,
    title: str = "dd",
) -> None:
    """Copy ``length`` bytes starting at ``offset`` from src to the start of dst."""
    dd_path = shutil.which("dd")
    if not dd_path:
        raise RuntimeError("dd not found")
    src_node = resolve_device_node(src)
    dst_node = resolve_device_node(dst)
    command = [
        dd_path,
        f"if={src_node}",
        f"of={dst_node}",
        "bs=4M",
        "status=progress",
        "conv=fsync",
    ]
    input_flags = []
    if offset:
        input_flags.append("skip_bytes")
        command.append(f"skip={offset}")
    if length is not None:
        input_flags.append("count_bytes")
        command.append(f"count={length}")
    if input_flags:
        command.append(f"iflag={','.join(input_flags)}")
    run_checked_with_streaming_progress(command, total_bytes=length, title=title)


def copy_leading_region(
    device: str, output_path: Path, sectors: int, sector_size: int = 512
) -> Path:
    """Save the first ``sectors`` sectors of ``device`` to ``output_path``."""
    dd_path = shutil.which("dd")
    if not dd_path:
        raise RuntimeError("dd not found")
    run_checked_command(
        [
            dd_path,
            f"if={resolve_device_node(device)}",
            f"of={output_path}",
            f"bs={sector_size}",
            f"count={sectors}",
        ]
    )
    return output_path


def format_boot(partition: str, fstype: str = "vfat", label: Optional[str] = None) -> None:
    """Create an empty boot (EFI system) filesystem."""
    command = BOOT_MKFS_TOOLS.get(fstype.lower())
    if command is None:
        raise RuntimeError(f"Unsupported boot filesystem type: {fstype}")
    tool_path = shutil.which(command[0])
    if not tool_path:
        raise RuntimeError(f"{command[0]} not found")
    args = [tool_path, *command[1:]]
    if label:
        # FAT labels are at most 11 characters
        args.extend(["-n", label[:11]])
    args.append(resolve_device_node(partition))
    run_checked_command(args)
    log.debug(f"Formatted {partition} as {fstype}")
