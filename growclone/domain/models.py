"""Domain model for grow-and-clone planning.

Every value here is immutable: partitions are read from the source once,
planned partitions are constructed once, and the run-wide PlanningContext is
replaced (never mutated) as each step adds its result.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from enum import Enum
from pathlib import Path
from typing import Optional

from growclone.storage.exceptions import EstimationError

GIB = 1024**3
GPT_ENTRY_ARRAY_BYTES = 128 * 128
MBR_MAX_SECTORS = 2**32


def ceil_div(numerator: int, denominator: int) -> int:
    return -(-numerator // denominator)


# ==============================================================================
# Partition Table Domain
# ==============================================================================


class LabelType(Enum):
    """Partition-table format."""

    MSDOS = "msdos"
    GPT = "gpt"
    UNKNOWN = "unknown"

    @classmethod
    def parse(cls, value: Optional[str]) -> LabelType:
        """Accept parted, lsblk and sfdisk spellings."""
        if not value:
            return cls.UNKNOWN
        normalized = value.strip().lower()
        if normalized in {"msdos", "dos", "mbr"}:
            return cls.MSDOS
        if normalized == "gpt":
            return cls.GPT
        return cls.UNKNOWN

    def reserved_trailing_sectors(self, sector_size: int) -> int:
        """Sectors the label keeps free at the end of the disk."""
        if self is LabelType.GPT:
            # backup entry array plus backup header
            return ceil_div(GPT_ENTRY_ARRAY_BYTES, sector_size) + 1
        return 0


class Role(Enum):
    """Semantic purpose of a partition.

    OTHER is a real outcome, not an error: the classifier is heuristic and
    every consumer must handle it.
    """

    SYSTEM_BOOT = "system-boot"
    RESERVED = "reserved"
    GROWABLE_FILESYSTEM = "growable"
    OTHER = "other"


@dataclass(frozen=True)
class Partition:
    """One entry of a partition table."""

    number: int
    start_sector: int
    end_sector: int  # inclusive
    filesystem_hint: str = ""
    name: str = ""
    flags: frozenset[str] = field(default_factory=frozenset)
    role: Role = Role.OTHER
    type_id: str = ""

    def __post_init__(self) -> None:
        if self.start_sector > self.end_sector:
            raise ValueError(
                f"Partition {self.number} start {self.start_sector} "
                f"is after its end {self.end_sector}"
            )

    @property
    def size_sectors(self) -> int:
        return self.end_sector - self.start_sector + 1

    def size_bytes(self, sector_size: int) -> int:
        return self.size_sectors * sector_size

    def overlaps(self, other: Partition) -> bool:
        return (
            self.start_sector <= other.end_sector
            and other.start_sector <= self.end_sector
        )

    def with_role(self, role: Role) -> Partition:
        return replace(self, role=role)

    def with_range(self, start_sector: int, end_sector: int) -> Partition:
        return replace(self, start_sector=start_sector, end_sector=end_sector)


@dataclass(frozen=True)
class DiskGeometry:
    """Physical/logical shape of a device."""

    total_sectors: int
    sector_size_bytes: int
    label_type: LabelType = LabelType.UNKNOWN
    reserved_trailing_sectors: int = 0

    def __post_init__(self) -> None:
        if self.total_sectors <= self.reserved_trailing_sectors:
            raise ValueError(
                f"Disk of {self.total_sectors} sectors cannot keep "
                f"{self.reserved_trailing_sectors} trailing sectors reserved"
            )

    @classmethod
    def for_label(
        cls, total_sectors: int, sector_size_bytes: int, label_type: LabelType
    ) -> DiskGeometry:
        return cls(
            total_sectors=total_sectors,
            sector_size_bytes=sector_size_bytes,
            label_type=label_type,
            reserved_trailing_sectors=label_type.reserved_trailing_sectors(
                sector_size_bytes
            ),
        )

    def relabeled(self, label_type: LabelType) -> DiskGeometry:
        return DiskGeometry.for_label(
            self.total_sectors, self.sector_size_bytes, label_type
        )

    @property
    def usable_last_sector(self) -> int:
        return self.total_sectors - 1 - self.reserved_trailing_sectors

    @property
    def size_bytes(self) -> int:
        return self.total_sectors * self.sector_size_bytes


# ==============================================================================
# Estimation Domain
# ==============================================================================


class EstimateSource(Enum):
    """How a SizeEstimate was obtained."""

    PARSED_DIAGNOSTIC = "parsed-diagnostic"
    LARGEST_TOKEN = "largest-token"
    MEASURED_USED_SPACE = "measured-used-space"


@dataclass(frozen=True)
class SizeEstimate:
    """Required space for the growable filesystem, plus the safety margin."""

    required_bytes: int
    source: EstimateSource
    partition: str = ""

    def __post_init__(self) -> None:
        if self.required_bytes <= 0:
            raise EstimationError(
                self.partition or "(unknown partition)",
                f"estimate of {self.required_bytes} bytes is not positive",
            )

    @property
    def margin_bytes(self) -> int:
        """max(5% of required, 1 GiB), rounded up to whole bytes."""
        return max(ceil_div(self.required_bytes * 5, 100), GIB)

    @property
    def total_bytes(self) -> int:
        return self.required_bytes + self.margin_bytes

    @property
    def recommended_gb(self) -> int:
        return ceil_div(self.total_bytes, GIB)


# ==============================================================================
# Layout Plan Domain
# ==============================================================================


@dataclass(frozen=True)
class LayoutPlan:
    """The destination partition table a run intends to create."""

    partitions: tuple[Partition, ...]
    label_type: LabelType
    growable_index: int
    geometry: DiskGeometry
    target_bytes: int
    minimum_bytes: int = 0
    # intermediate numbers of the calculation, for the plan report
    figures: dict[str, int] = field(default_factory=dict, compare=False)

    @property
    def growable(self) -> Partition:
        return self.partitions[self.growable_index]

    @property
    def trailing(self) -> tuple[Partition, ...]:
        return self.partitions[self.growable_index + 1 :]

    @property
    def last_used_sector(self) -> int:
        return max(part.end_sector for part in self.partitions)

    def growable_bytes(self) -> int:
        return self.growable.size_bytes(self.geometry.sector_size_bytes)


# ==============================================================================
# Run Domain
# ==============================================================================


class RunMode(Enum):
    """What a run is asked to do."""

    CALC_ONLY = "calc-only"  # print the recommended size and exit
    AUTO = "auto"  # size from the estimate, then recreate
    RECREATE = "recreate"  # recreate layout and clone (explicit size wins)


@dataclass(frozen=True)
class RunOptions:
    """Everything the command line and settings decide for one run."""

    mode: RunMode = RunMode.RECREATE
    size_gb: Optional[float] = None
    fill: bool = False
    reserve_gb: float = 1
    main_part: Optional[int] = None
    label_override: Optional[LabelType] = None
    dry_run: bool = False
    auto_confirm: bool = False
    backup_dir: Path = Path(".")
    backup_leading_sectors: int = 2048
    alignment_sectors: int = 2048
    guard_sectors: int = 2048
    reprobe_timeout_seconds: float = 10.0
    growable_fstype: str = "ntfs"
    boot_fstype: str = "vfat"

    @property
    def explicit_size_bytes(self) -> Optional[int]:
        if self.size_gb is None:
            return None
        return int(self.size_gb * GIB)

    @property
    def reserve_bytes(self) -> int:
        return int(self.reserve_gb * GIB)

    @property
    def needs_estimate(self) -> bool:
        return self.mode in (RunMode.CALC_ONLY, RunMode.AUTO) or self.size_gb is None


@dataclass(frozen=True)
class PlanningContext:
    """Run-wide planning state, populated step by step and never mutated.

    Each step returns a new context via dataclasses.replace.
    """

    source_device: str
    source_disk: str
    dest_device: str
    options: RunOptions
    source_geometry: Optional[DiskGeometry] = None
    source_partitions: tuple[Partition, ...] = ()
    growable_index: Optional[int] = None
    estimate: Optional[SizeEstimate] = None
    dest_geometry: Optional[DiskGeometry] = None

    def evolve(self, **changes) -> PlanningContext:
        return replace(self, **changes)

    @property
    def growable_source(self) -> Optional[Partition]:
        if self.growable_index is None:
            return None
        return self.source_partitions[self.growable_index]
