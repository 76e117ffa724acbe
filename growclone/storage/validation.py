"""Safety validation before destructive operations.

This module provides the checks that must pass before the destination is
touched:
- Validates source != destination, by path and by underlying disk
- Checks the destination can hold the planned layout
- Checks the planned growable partition can receive the source filesystem
- Verifies the destination is unmounted
- Asks for operator confirmation at each gate

All validation functions raise specific exceptions from the exceptions module
rather than returning boolean values, making error handling more explicit.

Example:
    from growclone.storage.validation import SafetyValidator

    validator = SafetyValidator(DeviceInfo())
    try:
        validator.validate("/dev/sda", "/dev/sdb", plan, source_growable_bytes)
        # Safe to proceed with clone
    except SourceDestinationSameError:
        # Handle error
        pass
"""

from __future__ import annotations

import os
import re
from typing import Callable, Optional

from growclone.domain.models import LayoutPlan
from growclone.logging import LoggerFactory

from .devices import DeviceInfo, resolve_device_node
from .exceptions import (
    CloneCapacityError,
    ConfirmationDeclinedError,
    DeviceBusyError,
    DeviceError,
    InsufficientSpaceError,
    SourceDestinationSameError,
)

log = LoggerFactory.for_system()

Confirmer = Callable[[str], bool]


def get_base_device(name: str) -> str:
    """Strip the partition suffix from a device name.

    e.g. sda1 -> sda, nvme0n1p1 -> nvme0n1, mmcblk0 stays as is
    """
    name = os.path.basename(name)
    if name.startswith(("nvme", "mmcblk", "loop")):
        match = re.match(r"^(.*\d)p\d+$", name)
        return match.group(1) if match else name
    base = name.rstrip("0123456789")
    return base if base else name


class SafetyValidator:
    """Pre-destructive invariants and confirmation gates."""

    def __init__(
        self,
        device_info: Optional[DeviceInfo] = None,
        confirmer: Optional[Confirmer] = None,
        auto_confirm: bool = False,
    ):
        self.device_info = device_info or DeviceInfo()
        self.confirmer = confirmer
        self.auto_confirm = auto_confirm

    def validate(
        self,
        source_device: str,
        dest_device: str,
        plan: LayoutPlan,
        source_growable_bytes: int,
    ) -> None:
        """Perform all validations required before the destination is written.

        Raises:
            SourceDestinationSameError: Source and destination are one device
            InsufficientSpaceError: Destination cannot hold the plan
            CloneCapacityError: Planned growable partition is too small
            DeviceBusyError: Destination is mounted
        """
        self.validate_devices_different(source_device, dest_device)
        self.validate_capacity(dest_device, plan)
        self.validate_clone_capacity(
            source_device,
            source_growable_bytes,
            dest_device,
            plan.growable_bytes(),
        )
        self.validate_device_unmounted(dest_device)
        log.debug(f"Safety checks passed for {source_device} -> {dest_device}")

    def validate_devices_different(self, source: str, destination: str) -> None:
        """Validate that source and destination devices are different.

        Compares resolved paths first, then the disks they live on, so a
        partition of the destination disk is rejected as a source.
        """
        source_path = os.path.realpath(resolve_device_node(source))
        dest_path = os.path.realpath(resolve_device_node(destination))
        if source_path == dest_path:
            raise SourceDestinationSameError(source_path, dest_path)

        source_disk = self._disk_of(source_path)
        dest_disk = self._disk_of(dest_path)
        if source_disk == dest_disk:
            raise SourceDestinationSameError(source_disk, dest_disk)

    def _disk_of(self, path: str) -> str:
        try:
            return os.path.realpath(self.device_info.resolve_disk(path))
        except (OSError, RuntimeError) as error:
            log.debug(f"Disk lookup failed for {path}: {error}; using name")
            return f"/dev/{get_base_device(path)}"

    def validate_capacity(self, dest_device: str, plan: LayoutPlan) -> None:
        try:
            total_sectors = self.device_info.total_sectors(dest_device)
        except (RuntimeError, OSError) as error:
            raise DeviceError(f"Unable to read the size of {dest_device}: {error}") from error
        if total_sectors <= plan.last_used_sector:
            raise InsufficientSpaceError(
                dest_device, total_sectors, plan.last_used_sector + 1
            )

    def validate_clone_capacity(
        self,
        source_name: str,
        source_bytes: int,
        dest_name: str,
        dest_bytes: int,
    ) -> None:
        if dest_bytes < source_bytes:
            raise CloneCapacityError(source_name, source_bytes, dest_name, dest_bytes)

    def validate_device_unmounted(self, device: str) -> None:
        try:
            mountpoints = self.device_info.mountpoints(device)
        except (RuntimeError, OSError) as error:
            raise DeviceError(f"Unable to list mountpoints of {device}: {error}") from error
        if mountpoints:
            raise DeviceBusyError(device, f"mounted at {', '.join(mountpoints)}")

    def require_confirmation(self, gate: str, prompt: str) -> None:
        """Ask the operator to confirm; raise ConfirmationDeclinedError on no."""
        if self.auto_confirm:
            log.info(f"Auto-confirmed: {gate}")
            return
        if self.confirmer is None or not self.confirmer(prompt):
            raise ConfirmationDeclinedError(gate)
        log.info(f"Confirmed: {gate}")
