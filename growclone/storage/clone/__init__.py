"""Partition copy operations and the command runners they use.

Main Functions:
    - clone_ntfs(): Filesystem-aware NTFS clone (ntfsclone)
    - clone_available(): Whether ntfsclone is installed
    - clone_dd(): Raw byte-range copy with progress tracking
    - copy_leading_region(): Save the first sectors of a device (backup)
    - format_boot(): Create an empty FAT boot filesystem

Command Execution:
    - run_checked_command(): Run command and check result
    - run_checked_with_streaming_progress(): Run with progress tracking
"""

from .command_runners import (
    format_eta,
    run_checked_command,
    run_checked_with_streaming_progress,
)
from .operations import (
    clone_available,
    clone_dd,
    clone_ntfs,
    copy_leading_region,
    format_boot,
)


class CloneService:
    """Clone, raw-copy and format operations behind one injectable object."""

    def clone_available(self) -> bool:
        return clone_available()

    def clone(self, dst: str, src: str) -> None:
        clone_ntfs(dst, src)

    def raw_copy(self, dst: str, src: str, offset: int = 0, length=None) -> None:
        clone_dd(src, dst, offset=offset, length=length, title=f"dd {src}")

    def copy_leading_region(self, device, output_path, sectors, sector_size=512):
        return copy_leading_region(device, output_path, sectors, sector_size)

    def format_boot(self, partition: str, fstype: str = "vfat", label=None) -> None:
        format_boot(partition, fstype, label)


__all__ = [
    "CloneService",
    "clone_available",
    "clone_dd",
    "clone_ntfs",
    "copy_leading_region",
    "format_boot",
    "format_eta",
    "run_checked_command",
    "run_checked_with_streaming_progress",
]
