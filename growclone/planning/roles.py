"""Partition role classification.

The classifier is a heuristic over what parted and lsblk report. Decision
order: filesystem type, label text, partition type identifier, size.
An EFI System type identifier (or the esp flag) always wins.
"""

from __future__ import annotations

import re
from typing import Iterable, Optional

from growclone.domain.models import GIB, Partition, Role
from growclone.logging import LoggerFactory
from growclone.storage.devices import DeviceInfo, PartitionProbe, partition_node

log = LoggerFactory.for_plan()

EFI_SYSTEM_GUID = "c12a7328-f81f-11d2-ba4b-00a0c93ec93b"
MICROSOFT_RESERVED_GUID = "e3c9e316-0b5c-4db8-817d-f92df00215ae"
EFI_MBR_IDS = {"ef", "0xef"}

FAT_FSTYPES = {"vfat", "fat", "fat12", "fat16", "fat32", "msdos"}
BOOT_WORDS = frozenset({"efi", "esp", "boot", "system"})
RESERVED_WORDS = frozenset({"reserved", "msr", "msftres"})


def _label_role(texts: Iterable[str]) -> Optional[Role]:
    """Match whole words only; "System Reserved" is reserved, not boot."""
    for text in texts:
        words = set(re.findall(r"[a-z0-9]+", text.lower()))
        if words & RESERVED_WORDS:
            return Role.RESERVED
        if words & BOOT_WORDS:
            return Role.SYSTEM_BOOT
    return None


class RoleClassifier:
    """Infers the semantic role of each partition."""

    def __init__(
        self,
        device_info: Optional[DeviceInfo] = None,
        growable_fstype: str = "ntfs",
        sector_size: int = 512,
    ):
        self.device_info = device_info or DeviceInfo()
        self.growable_fstype = growable_fstype.lower()
        self.sector_size = sector_size

    def classify(
        self, partition: Partition, probe: Optional[PartitionProbe] = None
    ) -> Role:
        probe = probe or PartitionProbe()
        type_id = (probe.parttype or partition.type_id).lower()

        if type_id == EFI_SYSTEM_GUID or type_id in EFI_MBR_IDS or "esp" in partition.flags:
            return Role.SYSTEM_BOOT

        fstype = (probe.fstype or partition.filesystem_hint).lower()
        if fstype in FAT_FSTYPES:
            return Role.SYSTEM_BOOT
        if fstype == self.growable_fstype:
            return Role.GROWABLE_FILESYSTEM

        role = _label_role(
            text for text in (partition.name, probe.label, probe.partlabel) if text
        )
        if role is not None:
            return role

        if type_id == MICROSOFT_RESERVED_GUID or "msftres" in partition.flags:
            return Role.RESERVED

        size_bytes = probe.size_bytes or partition.size_bytes(self.sector_size)
        if size_bytes <= GIB:
            return Role.RESERVED
        return Role.OTHER

    def classify_device(self, node: str, partition: Partition) -> Role:
        """Classify ``partition`` using what the kernel reports for ``node``."""
        probe = self.device_info.probe_partition(node)
        return self.classify(partition, probe)

    def classify_partitions(
        self, partitions: Iterable[Partition], disk: str
    ) -> tuple[Partition, ...]:
        """Return the partitions with their role set."""
        classified = []
        for partition in partitions:
            role = self.classify_device(partition_node(disk, partition.number), partition)
            log.debug(f"p{partition.number}: {role.value}")
            classified.append(partition.with_role(role))
        return tuple(classified)
