"""Destination partition layout planning.

The planner keeps every partition before the growable one where it is,
gives the growable partition its new size, and packs the partitions after
it into a block at the end of the destination:

    [leading, unchanged][growable ......][guard][trailing, packed][reserve]

All positions are in logical sectors, ends inclusive. Trailing starts are
aligned to ``alignment`` sectors and their sizes never change.
"""

from __future__ import annotations

from dataclasses import replace
from typing import Optional, Sequence

from growclone.domain.models import (
    MBR_MAX_SECTORS,
    DiskGeometry,
    LabelType,
    LayoutPlan,
    Partition,
    Role,
    SizeEstimate,
    ceil_div,
)
from growclone.logging import EventLogger, LoggerFactory
from growclone.storage.exceptions import PlanningError

log = LoggerFactory.for_plan()

MSDOS_MAX_PRIMARY = 4


def align_up(sector: int, alignment: int) -> int:
    return ceil_div(sector, alignment) * alignment


def align_down(sector: int, alignment: int) -> int:
    return (sector // alignment) * alignment


def select_growable_index(
    partitions: Sequence[Partition],
    growable_fstype: str = "ntfs",
    main_part: Optional[int] = None,
    source_partition_number: Optional[int] = None,
) -> int:
    """Pick the partition that receives the new size.

    Precedence: explicit partition number, the partition given as the
    source path, the largest partition of ``growable_fstype``, the largest
    partition overall.
    """
    if not partitions:
        raise PlanningError("Source device has no partitions")
    for requested in (main_part, source_partition_number):
        if requested is None:
            continue
        for index, partition in enumerate(partitions):
            if partition.number == requested:
                return index
        raise PlanningError(
            "Requested growable partition does not exist", partition_number=requested
        )
    candidates = [
        index
        for index, partition in enumerate(partitions)
        if partition.filesystem_hint == growable_fstype
    ] or list(range(len(partitions)))
    return max(candidates, key=lambda index: partitions[index].size_sectors)


class PartitionLayoutPlanner:
    """Computes the destination partition table."""

    def __init__(self, alignment: int = 2048, guard: int = 2048):
        if alignment <= 0:
            raise ValueError("alignment must be positive")
        if guard < 0:
            raise ValueError("guard must not be negative")
        self.alignment = alignment
        self.guard = guard

    @staticmethod
    def choose_label_type(
        total_sectors: int,
        source_label: LabelType = LabelType.UNKNOWN,
        label_override: Optional[LabelType] = None,
    ) -> LabelType:
        if label_override is not None and label_override is not LabelType.UNKNOWN:
            return label_override
        if source_label is not LabelType.UNKNOWN:
            return source_label
        if total_sectors > MBR_MAX_SECTORS:
            return LabelType.GPT
        return LabelType.MSDOS

    def plan(
        self,
        source_partitions: Sequence[Partition],
        growable_index: int,
        dest_geometry: DiskGeometry,
        size_estimate: Optional[SizeEstimate] = None,
        *,
        source_label: LabelType = LabelType.UNKNOWN,
        label_override: Optional[LabelType] = None,
        target_bytes: Optional[int] = None,
        fill: bool = False,
        reserve_bytes: int = 0,
    ) -> LayoutPlan:
        """Plan the destination table.

        ``target_bytes`` defaults to the estimate's total (required plus
        margin). With ``fill`` the growable partition takes everything up
        to the trailing block minus ``reserve_bytes``; an explicit
        ``target_bytes`` takes precedence over ``fill``.

        Raises:
            PlanningError: If the layout does not fit the destination
        """
        if not 0 <= growable_index < len(source_partitions):
            raise PlanningError(f"Growable index {growable_index} is out of range")
        if target_bytes is None and not fill:
            if size_estimate is None:
                raise PlanningError("A target size or a size estimate is required")
            target_bytes = size_estimate.total_bytes

        label_type = self.choose_label_type(
            dest_geometry.total_sectors, source_label, label_override
        )
        geometry = dest_geometry.relabeled(label_type)
        sector_size = geometry.sector_size_bytes
        usable_last = geometry.usable_last_sector
        figures: dict[str, int] = {
            "sector_size": sector_size,
            "total_sectors": geometry.total_sectors,
            "reserved_trailing_sectors": geometry.reserved_trailing_sectors,
            "usable_last_sector": usable_last,
            "alignment": self.alignment,
            "guard": self.guard,
        }

        leading = list(source_partitions[:growable_index])
        source_growable = source_partitions[growable_index]
        trailing = self._pack_trailing(
            source_partitions[growable_index + 1 :], usable_last, figures
        )

        start = source_growable.start_sector
        if trailing:
            block_end = trailing[0].start_sector - 1
            bound = trailing[0].start_sector - self.guard - 1
        else:
            block_end = usable_last
            bound = usable_last
        if fill and target_bytes is None:
            reserve_sectors = ceil_div(reserve_bytes, sector_size)
            candidate_end = block_end - reserve_sectors
            figures["reserve_sectors"] = reserve_sectors
        else:
            needed = ceil_div(target_bytes, sector_size)
            candidate_end = start + needed - 1
            figures["needed_sectors"] = needed
        end = min(candidate_end, bound)
        figures.update(candidate_end=candidate_end, growable_bound=bound, growable_end=end)

        if end < start:
            raise PlanningError(
                "Growable partition would end before it starts",
                partition_number=source_growable.number,
                sectors={"start": start, "end": end},
            )
        minimum_bytes = size_estimate.total_bytes if size_estimate else sector_size
        growable = source_growable.with_range(start, end).with_role(
            Role.GROWABLE_FILESYSTEM
        )
        if growable.size_bytes(sector_size) < minimum_bytes:
            raise PlanningError(
                f"Growable partition would be smaller than the required "
                f"{minimum_bytes} bytes",
                partition_number=source_growable.number,
                sectors={
                    "start": start,
                    "end": end,
                    "needed": ceil_div(minimum_bytes, sector_size),
                },
            )

        planned = []
        for index, partition in enumerate([*leading, growable, *trailing]):
            if index != growable_index and partition.role is Role.GROWABLE_FILESYSTEM:
                partition = partition.with_role(Role.OTHER)
            # parted numbers new partitions in creation order
            planned.append(replace(partition, number=index + 1))

        plan = LayoutPlan(
            partitions=tuple(planned),
            label_type=label_type,
            growable_index=growable_index,
            geometry=geometry,
            target_bytes=(
                target_bytes
                if target_bytes is not None
                else growable.size_bytes(sector_size)
            ),
            minimum_bytes=minimum_bytes,
            figures=figures,
        )
        self.validate(plan)
        for partition in plan.partitions:
            EventLogger.log_plan_partition(
                log,
                partition.number,
                partition.start_sector,
                partition.end_sector,
                partition.role.value,
            )
        return plan

    def _pack_trailing(
        self,
        partitions: Sequence[Partition],
        usable_last: int,
        figures: dict[str, int],
    ) -> list[Partition]:
        """Lay out the trailing partitions in a block ending at usable_last."""
        if not partitions:
            return []
        # span of the packed block when laid out from an aligned origin
        cursor = 0
        for partition in partitions:
            cursor = align_up(cursor, self.alignment) + partition.size_sectors
        span = cursor
        block_start = align_down(usable_last + 1 - span, self.alignment)
        figures.update(trailing_span=span, trailing_block_start=block_start)
        if block_start < 0:
            raise PlanningError(
                "Trailing partitions do not fit on the destination",
                partition_number=partitions[0].number,
                sectors={"span": span, "usable_last": usable_last},
            )

        packed = []
        cursor = block_start
        for partition in partitions:
            start = align_up(cursor, self.alignment)
            end = start + partition.size_sectors - 1
            if end > usable_last:
                raise PlanningError(
                    "Trailing partition would end beyond the usable area",
                    partition_number=partition.number,
                    sectors={"start": start, "end": end, "usable_last": usable_last},
                )
            packed.append(partition.with_range(start, end))
            cursor = end + 1
        return packed

    def validate(self, plan: LayoutPlan) -> None:
        """Check ordering, overlap, capacity and label limits."""
        usable_last = plan.geometry.usable_last_sector
        previous: Optional[Partition] = None
        for partition in plan.partitions:
            if previous is not None:
                if partition.start_sector <= previous.start_sector:
                    raise PlanningError(
                        "Partition starts are not increasing",
                        partition_number=partition.number,
                        sectors={
                            "start": partition.start_sector,
                            "previous_start": previous.start_sector,
                        },
                    )
                if partition.overlaps(previous):
                    raise PlanningError(
                        f"Partition overlaps partition {previous.number}",
                        partition_number=partition.number,
                        sectors={
                            "start": partition.start_sector,
                            "previous_end": previous.end_sector,
                        },
                    )
            if partition.end_sector > usable_last:
                raise PlanningError(
                    "Partition ends beyond the usable area",
                    partition_number=partition.number,
                    sectors={"end": partition.end_sector, "usable_last": usable_last},
                )
            if plan.label_type is LabelType.MSDOS and partition.end_sector > MBR_MAX_SECTORS - 1:
                raise PlanningError(
                    "Partition ends beyond the MBR addressing limit; use a GPT label",
                    partition_number=partition.number,
                    sectors={"end": partition.end_sector, "limit": MBR_MAX_SECTORS - 1},
                )
            previous = partition
        if plan.label_type is LabelType.MSDOS and len(plan.partitions) > MSDOS_MAX_PRIMARY:
            raise PlanningError(
                f"An msdos label holds at most {MSDOS_MAX_PRIMARY} primary partitions, "
                f"the plan has {len(plan.partitions)}; use a GPT label"
            )
