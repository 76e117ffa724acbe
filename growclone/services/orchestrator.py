"""Grow-and-clone run as an explicit state machine.

    START -> READ_SOURCE -> ESTIMATE_SIZE -> CLASSIFY_ROLES -> COMPUTE_LAYOUT
    -> VALIDATE_SAFETY -> PRESENT_PLAN -> AWAIT_CONFIRMATION
    -> BACKUP_DESTINATION -> WRITE_LABEL -> CREATE_PARTITIONS
    -> ASSIGN_TYPE_CODES -> REPROBE -> PER_PARTITION_ACTIONS
    -> RESIZE_GROWABLE_ENTRY -> RESIZE_GROWABLE_FILESYSTEM -> DONE

Terminal states besides DONE: PLANNED (calc-only, dry-run) and ABORTED.

Steps marked best-effort log a warning and continue on failure. Any other
failure after WRITE_LABEL is raised as ExecutionError naming the backups.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from functools import partial
from pathlib import Path
from typing import Callable, Optional

from growclone.domain.models import (
    DiskGeometry,
    LabelType,
    LayoutPlan,
    Partition,
    PlanningContext,
    Role,
    RunMode,
    RunOptions,
    SizeEstimate,
)
from growclone.logging import EventLogger, LoggerFactory, operation_context
from growclone.planning.estimator import SizeEstimator, recommend_size_gb
from growclone.planning.layout import PartitionLayoutPlanner, select_growable_index
from growclone.planning.report import boot_flag, describe_actions, format_plan_report
from growclone.planning.roles import RoleClassifier
from growclone.storage.clone import CloneService
from growclone.storage.devices import DeviceInfo, partition_node, split_partition_node
from growclone.storage.exceptions import (
    ConfirmationDeclinedError,
    DeviceError,
    ExecutionError,
    PlanningError,
    StorageError,
)
from growclone.storage.partition_table import PartitionTableService
from growclone.storage.resize import ResizeService
from growclone.storage.validation import SafetyValidator


class CloneState(Enum):
    START = "start"
    READ_SOURCE = "read-source"
    ESTIMATE_SIZE = "estimate-size"
    CLASSIFY_ROLES = "classify-roles"
    COMPUTE_LAYOUT = "compute-layout"
    VALIDATE_SAFETY = "validate-safety"
    PRESENT_PLAN = "present-plan"
    AWAIT_CONFIRMATION = "await-confirmation"
    BACKUP_DESTINATION = "backup-destination"
    WRITE_LABEL = "write-label"
    CREATE_PARTITIONS = "create-partitions"
    ASSIGN_TYPE_CODES = "assign-type-codes"
    REPROBE = "reprobe"
    PER_PARTITION_ACTIONS = "per-partition-actions"
    RESIZE_GROWABLE_ENTRY = "resize-growable-entry"
    RESIZE_GROWABLE_FILESYSTEM = "resize-growable-filesystem"
    DONE = "done"
    PLANNED = "planned"
    ABORTED = "aborted"


GPT_TYPE_CODES = {
    Role.SYSTEM_BOOT: "EF00",
    Role.RESERVED: "0C01",
    Role.GROWABLE_FILESYSTEM: "0700",
    Role.OTHER: "8300",
}
MBR_TYPE_CODES = {
    Role.SYSTEM_BOOT: "ef",
    Role.RESERVED: "83",
    Role.GROWABLE_FILESYSTEM: "07",
    Role.OTHER: "83",
}


def type_code_for(partition: Partition, label_type: LabelType) -> str:
    """Type code for ``partition``: its own type id when it fits the label."""
    type_id = partition.type_id.lower()
    if label_type is LabelType.GPT:
        if "-" in type_id:
            return type_id
        if partition.role is Role.OTHER and partition.filesystem_hint == "ntfs":
            return "0700"
        return GPT_TYPE_CODES[partition.role]
    if type_id and "-" not in type_id:
        return type_id[2:] if type_id.startswith("0x") else type_id
    if partition.role is Role.OTHER and partition.filesystem_hint == "ntfs":
        return "07"
    return MBR_TYPE_CODES[partition.role]


@dataclass
class RunResult:
    """Outcome of a run: final state, visited states and what was computed."""

    state: CloneState
    states: list[CloneState] = field(default_factory=list)
    plan: Optional[LayoutPlan] = None
    estimate: Optional[SizeEstimate] = None
    recommended_gb: Optional[int] = None
    backup_files: list[str] = field(default_factory=list)
    report: str = ""


class CloneOrchestrator:
    """Sequences estimation, planning, validation and the destructive steps."""

    def __init__(
        self,
        options: RunOptions,
        *,
        device_info: Optional[DeviceInfo] = None,
        partition_table: Optional[PartitionTableService] = None,
        estimator: Optional[SizeEstimator] = None,
        classifier: Optional[RoleClassifier] = None,
        planner: Optional[PartitionLayoutPlanner] = None,
        validator: Optional[SafetyValidator] = None,
        clone_service: Optional[CloneService] = None,
        resize_service: Optional[ResizeService] = None,
        confirmer: Optional[Callable[[str], bool]] = None,
        presenter: Optional[Callable[[str], None]] = None,
        job_id: Optional[str] = None,
    ):
        self.options = options
        self.device_info = device_info or DeviceInfo()
        self.partition_table = partition_table or PartitionTableService(self.device_info)
        self.resize_service = resize_service or ResizeService()
        self.estimator = estimator or SizeEstimator(self.resize_service, self.device_info)
        self.classifier = classifier or RoleClassifier(
            self.device_info, growable_fstype=options.growable_fstype
        )
        self.planner = planner or PartitionLayoutPlanner(
            alignment=options.alignment_sectors, guard=options.guard_sectors
        )
        self.validator = validator or SafetyValidator(
            self.device_info, confirmer=confirmer, auto_confirm=options.auto_confirm
        )
        self.clone_service = clone_service or CloneService()
        self.presenter = presenter
        self.log = LoggerFactory.for_clone(job_id)
        self.states: list[CloneState] = []
        self.dest_device = ""
        self.backup_files: list[str] = []

    # ------------------------------------------------------------------
    # State bookkeeping
    # ------------------------------------------------------------------

    @property
    def state(self) -> Optional[CloneState]:
        return self.states[-1] if self.states else None

    def _enter(self, state: CloneState) -> None:
        previous = self.state
        self.states.append(state)
        EventLogger.log_state_transition(
            self.log, previous.value if previous else "-", state.value
        )

    def _result(self, state: CloneState, **kwargs) -> RunResult:
        self._enter(state)
        return RunResult(
            state=state,
            states=list(self.states),
            backup_files=list(self.backup_files),
            **kwargs,
        )

    def _destructive(self, step: CloneState, action, device: Optional[str] = None):
        """Run a fatal step after WRITE_LABEL began; failures become ExecutionError."""
        try:
            return action()
        except (RuntimeError, OSError) as error:
            raise ExecutionError(
                step.value, str(error), device=device, backup_files=self.backup_files
            ) from error

    def _best_effort(self, step: CloneState, action) -> bool:
        try:
            action()
        except (RuntimeError, OSError) as error:
            self.log.warning(f"{step.value} failed, continuing: {error}")
            return False
        return True

    # ------------------------------------------------------------------
    # Run
    # ------------------------------------------------------------------

    def run(self, source_device: str, dest_device: str) -> RunResult:
        """Execute the run. Declined confirmations return an ABORTED result.

        Raises:
            StorageError: Any estimation, planning, safety or execution failure
        """
        self.states = []
        self.backup_files = []
        self.dest_device = dest_device
        self._enter(CloneState.START)
        try:
            return self._run(source_device, dest_device)
        except ConfirmationDeclinedError as error:
            self.log.warning(str(error))
            return self._result(CloneState.ABORTED)
        except StorageError:
            self._enter(CloneState.ABORTED)
            raise

    def _run(self, source_device: str, dest_device: str) -> RunResult:
        options = self.options

        self._enter(CloneState.READ_SOURCE)
        context = self._read_source(source_device, dest_device)

        if options.needs_estimate:
            self._enter(CloneState.ESTIMATE_SIZE)
            growable = context.growable_source
            estimate = self.estimator.estimate(
                partition_node(context.source_disk, growable.number)
            )
            context = context.evolve(estimate=estimate)
            if options.mode is RunMode.CALC_ONLY:
                recommended = self._recommend(context)
                self.log.info(f"Recommended size: {recommended} GB")
                return self._result(
                    CloneState.PLANNED, estimate=estimate, recommended_gb=recommended
                )

        self._enter(CloneState.CLASSIFY_ROLES)
        context = context.evolve(
            source_partitions=self.classifier.classify_partitions(
                context.source_partitions, context.source_disk
            )
        )

        self._enter(CloneState.COMPUTE_LAYOUT)
        context, plan = self._compute_layout(context)

        self._enter(CloneState.VALIDATE_SAFETY)
        source_growable = context.growable_source
        try:
            self.validator.validate(
                source_device,
                dest_device,
                plan,
                source_growable.size_bytes(context.source_geometry.sector_size_bytes),
            )
        except StorageError:
            # a dry run still shows the plan it refused
            if options.dry_run:
                self._present(format_plan_report(plan, context))
            raise

        self._enter(CloneState.PRESENT_PLAN)
        report = format_plan_report(plan, context)
        self._present(report)
        if options.dry_run:
            self.log.info("Dry run: no changes made")
            return self._result(
                CloneState.PLANNED, plan=plan, estimate=context.estimate, report=report
            )

        self._enter(CloneState.AWAIT_CONFIRMATION)
        self.validator.require_confirmation(
            "plan",
            f"Recreate the partition table on {dest_device} and clone "
            f"{context.source_disk} onto it? ALL DATA ON {dest_device} WILL BE LOST.",
        )

        self._enter(CloneState.BACKUP_DESTINATION)
        self._backup_destination(dest_device, plan)

        steps = "\n".join(f"  {line}" for line in describe_actions(plan, context))
        self.validator.require_confirmation(
            "write",
            f"The following steps will now run on {dest_device}:\n{steps}\nExecute them?",
        )

        self._execute(context, plan)
        return self._result(
            CloneState.DONE, plan=plan, estimate=context.estimate, report=report
        )

    def _present(self, report: str) -> None:
        if self.presenter is not None:
            self.presenter(report)
            return
        for line in report.splitlines():
            self.log.info(line)

    # ------------------------------------------------------------------
    # Planning steps
    # ------------------------------------------------------------------

    def _read_source(self, source_device: str, dest_device: str) -> PlanningContext:
        try:
            source_disk = self.device_info.resolve_disk(source_device)
            source_partition_number = None
            if self.device_info.is_partition(source_device):
                source_partition_number = split_partition_node(source_device)[1]
            table = self.partition_table.read(source_disk)
        except (RuntimeError, OSError) as error:
            raise DeviceError(f"Unable to read {source_device}: {error}") from error
        geometry = DiskGeometry.for_label(
            table.total_sectors, table.logical_sector_size, table.label_type
        )
        growable_index = select_growable_index(
            table.partitions,
            growable_fstype=self.options.growable_fstype,
            main_part=self.options.main_part,
            source_partition_number=source_partition_number,
        )
        growable = table.partitions[growable_index]
        self.log.info(
            f"Source {source_disk}: {len(table.partitions)} partitions, "
            f"{table.label_type.value}, growable partition {growable.number}"
        )
        return PlanningContext(
            source_device=source_device,
            source_disk=source_disk,
            dest_device=dest_device,
            options=self.options,
            source_geometry=geometry,
            source_partitions=table.partitions,
            growable_index=growable_index,
        )

    def _dest_geometry(self, context: PlanningContext) -> DiskGeometry:
        try:
            return self.device_info.geometry(context.dest_device)
        except (RuntimeError, OSError) as error:
            raise DeviceError(
                f"Unable to read {context.dest_device}: {error}"
            ) from error

    def _recommend(self, context: PlanningContext) -> int:
        dest = self._dest_geometry(context)
        growable = context.growable_source
        return recommend_size_gb(
            context.estimate,
            dest.size_bytes,
            growable.start_sector * dest.sector_size_bytes,
            fill=self.options.fill,
            reserve_bytes=self.options.reserve_bytes,
        )

    def _compute_layout(self, context: PlanningContext):
        options = self.options
        dest_geometry = self._dest_geometry(context)
        if dest_geometry.sector_size_bytes != context.source_geometry.sector_size_bytes:
            raise PlanningError(
                f"Logical sector sizes differ: source "
                f"{context.source_geometry.sector_size_bytes}, destination "
                f"{dest_geometry.sector_size_bytes}"
            )
        target_bytes = None
        if options.mode is RunMode.RECREATE and options.explicit_size_bytes is not None:
            target_bytes = options.explicit_size_bytes
        plan = self.planner.plan(
            context.source_partitions,
            context.growable_index,
            dest_geometry,
            context.estimate,
            source_label=context.source_geometry.label_type,
            label_override=options.label_override,
            target_bytes=target_bytes,
            fill=options.fill,
            reserve_bytes=options.reserve_bytes,
        )
        return context.evolve(dest_geometry=plan.geometry), plan

    # ------------------------------------------------------------------
    # Destructive steps
    # ------------------------------------------------------------------

    def _backup_destination(self, dest_device: str, plan: LayoutPlan) -> None:
        backup_dir = Path(self.options.backup_dir)
        name = Path(dest_device).name
        table_backup = backup_dir / f"{name}.partitions.sfdisk"
        leading_backup = backup_dir / f"{name}.mbr.bin"

        def save_table():
            backup_dir.mkdir(parents=True, exist_ok=True)
            table_backup.write_text(self.partition_table.dump(dest_device))
            self.backup_files.append(str(table_backup))

        def save_leading():
            backup_dir.mkdir(parents=True, exist_ok=True)
            self.clone_service.copy_leading_region(
                dest_device,
                leading_backup,
                self.options.backup_leading_sectors,
                plan.geometry.sector_size_bytes,
            )
            self.backup_files.append(str(leading_backup))

        self._best_effort(CloneState.BACKUP_DESTINATION, save_table)
        self._best_effort(CloneState.BACKUP_DESTINATION, save_leading)

    def _execute(self, context: PlanningContext, plan: LayoutPlan) -> None:
        dest = context.dest_device
        label_type = plan.label_type

        self._enter(CloneState.WRITE_LABEL)
        self._destructive(
            CloneState.WRITE_LABEL,
            lambda: self.partition_table.write_label(dest, label_type),
            dest,
        )

        self._enter(CloneState.CREATE_PARTITIONS)
        for partition in plan.partitions:
            self._destructive(
                CloneState.CREATE_PARTITIONS,
                lambda partition=partition: self.partition_table.create_partition(
                    dest, partition, label_type
                ),
                dest,
            )

        self._enter(CloneState.ASSIGN_TYPE_CODES)
        for partition in plan.partitions:
            self._best_effort(
                CloneState.ASSIGN_TYPE_CODES,
                lambda partition=partition: self.partition_table.set_type_code(
                    dest, partition.number, type_code_for(partition, label_type), label_type
                ),
            )

        self._enter(CloneState.REPROBE)
        self._destructive(
            CloneState.REPROBE,
            lambda: self.partition_table.reprobe(
                dest,
                [partition.number for partition in plan.partitions],
                self.options.reprobe_timeout_seconds,
            ),
            dest,
        )

        self._enter(CloneState.PER_PARTITION_ACTIONS)
        actions = {
            Role.SYSTEM_BOOT: self._format_boot,
            Role.RESERVED: self._leave_unformatted,
            Role.GROWABLE_FILESYSTEM: self._clone_growable,
            Role.OTHER: self._raw_copy,
        }
        for index, partition in enumerate(plan.partitions):
            source = context.source_partitions[index]
            source_node = partition_node(context.source_disk, source.number)
            dest_node = partition_node(dest, partition.number)
            self.log.info(
                f"p{partition.number} ({partition.role.value}): {source_node} -> {dest_node}"
            )
            self._destructive(
                CloneState.PER_PARTITION_ACTIONS,
                partial(
                    actions[partition.role], plan, partition, source_node, dest_node
                ),
                dest_node,
            )

        growable = plan.growable
        growable_node = partition_node(dest, growable.number)

        self._enter(CloneState.RESIZE_GROWABLE_ENTRY)
        self._destructive(
            CloneState.RESIZE_GROWABLE_ENTRY,
            lambda: self._resize_growable_entry(dest, growable),
            dest,
        )

        self._enter(CloneState.RESIZE_GROWABLE_FILESYSTEM)
        self._best_effort(
            CloneState.RESIZE_GROWABLE_FILESYSTEM,
            lambda: self.resize_service.resize(growable_node),
        )

    def _format_boot(self, plan, partition, source_node, dest_node) -> None:
        self.clone_service.format_boot(dest_node, self.options.boot_fstype)
        self.partition_table.set_flag(
            self.dest_device, partition.number, boot_flag(plan.label_type)
        )

    def _leave_unformatted(self, plan, partition, source_node, dest_node) -> None:
        self.log.info(f"Leaving {dest_node} unformatted")

    def _clone_growable(self, plan, partition, source_node, dest_node) -> None:
        source_bytes = self.device_info.partition_size_bytes(source_node)
        dest_bytes = self.device_info.partition_size_bytes(dest_node)
        self.validator.validate_clone_capacity(
            source_node, source_bytes, dest_node, dest_bytes
        )
        with operation_context("clone", source=source_node, target=dest_node):
            if self.clone_service.clone_available():
                self.clone_service.clone(dest_node, source_node)
            else:
                self.log.warning("ntfsclone not available, falling back to dd")
                self.clone_service.raw_copy(dest_node, source_node, length=source_bytes)

    def _raw_copy(self, plan, partition, source_node, dest_node) -> None:
        length = partition.size_bytes(plan.geometry.sector_size_bytes)
        with operation_context("dd", source=source_node, target=dest_node):
            self.clone_service.raw_copy(dest_node, source_node, length=length)

    def _resize_growable_entry(self, dest: str, growable: Partition) -> None:
        table = self.partition_table.read(dest)
        entry = next(
            (part for part in table.partitions if part.number == growable.number), None
        )
        if entry is None:
            raise RuntimeError(f"Partition {growable.number} missing from {dest}")
        if entry.end_sector == growable.end_sector:
            self.log.info(
                f"Partition {growable.number} already ends at {growable.end_sector}s"
            )
            return
        self.partition_table.resize_entry(dest, growable.number, growable.end_sector)
