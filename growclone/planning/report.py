"""Human-readable rendering of a layout plan and the steps that apply it."""

from __future__ import annotations

from growclone.domain.models import GIB, LabelType, LayoutPlan, PlanningContext, Role
from growclone.storage.devices import human_size, partition_node
from growclone.storage.partition_table import mkpart_command

ACTION_DESCRIPTIONS = {
    Role.SYSTEM_BOOT: "format {dest} as {boot_fstype} and set the {flag} flag",
    Role.RESERVED: "leave {dest} unformatted",
    Role.GROWABLE_FILESYSTEM: (
        "clone {source} -> {dest} with ntfsclone --overwrite (dd if unavailable)"
    ),
    Role.OTHER: "copy {source} -> {dest} with dd",
}


def boot_flag(label_type: LabelType) -> str:
    return "esp" if label_type is LabelType.GPT else "boot"


def describe_actions(plan: LayoutPlan, context: PlanningContext) -> list[str]:
    """One line per destructive step of the run, in execution order."""
    dest = context.dest_device
    lines = [f"write a new {plan.label_type.value} label to {dest}"]
    lines.extend(
        " ".join(mkpart_command(dest, partition, plan.label_type))
        for partition in plan.partitions
    )
    for index, partition in enumerate(plan.partitions):
        source = context.source_partitions[index]
        lines.append(
            ACTION_DESCRIPTIONS[partition.role].format(
                source=partition_node(context.source_disk, source.number),
                dest=partition_node(dest, partition.number),
                boot_fstype=context.options.boot_fstype,
                flag=boot_flag(plan.label_type),
            )
        )
    growable_node = partition_node(dest, plan.growable.number)
    lines.append(f"resize table entry {plan.growable.number} to end at {plan.growable.end_sector}s")
    lines.append(f"grow the NTFS filesystem on {growable_node} (ntfsresize)")
    return lines


def format_plan_report(plan: LayoutPlan, context: PlanningContext) -> str:
    """Render the plan with every number that went into it."""
    sector_size = plan.geometry.sector_size_bytes
    lines = [
        f"Source:      {context.source_device} (disk {context.source_disk})",
        f"Destination: {context.dest_device} "
        f"({plan.geometry.total_sectors} sectors, {human_size(plan.geometry.size_bytes)})",
        f"Label:       {plan.label_type.value}",
    ]
    estimate = context.estimate
    if estimate is not None:
        lines.extend(
            [
                f"Required:    {estimate.required_bytes} bytes ({estimate.source.value})",
                f"Margin:      {estimate.margin_bytes} bytes",
                f"Total:       {estimate.total_bytes} bytes "
                f"(recommended {estimate.recommended_gb} GB)",
            ]
        )
    lines.append(f"Target:      {plan.target_bytes} bytes ({plan.target_bytes / GIB:.2f} GiB)")
    lines.append("")
    lines.append("Calculation:")
    for key, value in plan.figures.items():
        lines.append(f"  {key:<26} {value}")
    lines.append("")
    lines.append(f"{'#':>3} {'start':>14} {'end':>14} {'size':>10}  role")
    for partition in plan.partitions:
        marker = "*" if partition is plan.growable else " "
        lines.append(
            f"{partition.number:>3} {partition.start_sector:>14} "
            f"{partition.end_sector:>14} "
            f"{human_size(partition.size_bytes(sector_size)):>10} "
            f"{marker}{partition.role.value}"
        )
    lines.append("")
    lines.append("Steps:")
    lines.extend(f"  {line}" for line in describe_actions(plan, context))
    return "\n".join(lines)
