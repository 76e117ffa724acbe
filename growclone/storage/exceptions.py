"""Custom exceptions for estimation, planning and clone operations.

This module defines a hierarchy of exceptions so the command line can map
every failure to a specific exit status and message, and so each failure
carries enough context (device, partition number, sectors) to reproduce the
calculation that produced it.

Exception Hierarchy:
    StorageError (base)
        ├── DeviceError
        │   ├── DeviceNotFoundError
        │   └── DeviceBusyError
        ├── EstimationError
        ├── PlanningError
        ├── SafetyError
        │   ├── SourceDestinationSameError
        │   ├── InsufficientSpaceError
        │   ├── CloneCapacityError
        │   └── ConfirmationDeclinedError
        └── ExecutionError

Usage:
    from growclone.storage.exceptions import SourceDestinationSameError

    if source_disk == destination_disk:
        raise SourceDestinationSameError(source_disk, destination_disk)
"""

from __future__ import annotations

from typing import Iterable, Optional


class StorageError(Exception):
    """Base exception for all growclone failures."""


class DeviceError(StorageError):
    """Base exception for device-related errors."""


class DeviceNotFoundError(DeviceError):
    """Device was not found or does not exist."""

    def __init__(self, device_name: str):
        self.device_name = device_name
        super().__init__(f"Device not found: {device_name}")


class DeviceBusyError(DeviceError):
    """Device is currently in use or mounted."""

    def __init__(self, device_name: str, reason: str = ""):
        self.device_name = device_name
        self.reason = reason
        msg = f"Device {device_name} is busy"
        if reason:
            msg += f": {reason}"
        super().__init__(msg)


class EstimationError(StorageError):
    """No estimation strategy produced a usable byte count."""

    def __init__(self, partition: str, reason: str = ""):
        self.partition = partition
        self.reason = reason
        msg = f"Unable to estimate required size for {partition}"
        if reason:
            msg += f": {reason}"
        super().__init__(msg)


class PlanningError(StorageError):
    """The destination geometry cannot hold the requested layout."""

    def __init__(
        self,
        message: str,
        partition_number: Optional[int] = None,
        sectors: Optional[dict[str, int]] = None,
    ):
        self.partition_number = partition_number
        self.sectors = dict(sectors or {})
        details = []
        if partition_number is not None:
            details.append(f"partition {partition_number}")
        details.extend(f"{key}={value}" for key, value in self.sectors.items())
        if details:
            message = f"{message} ({', '.join(details)})"
        super().__init__(message)


class SafetyError(StorageError):
    """A pre-destructive invariant failed. Never bypassed by auto-confirm."""


class SourceDestinationSameError(SafetyError):
    """Source and destination resolve to the same device or disk."""

    def __init__(self, source_name: str, destination_name: str):
        self.source_name = source_name
        self.destination_name = destination_name
        super().__init__(
            f"Source and destination cannot be the same device: "
            f"{source_name} == {destination_name}"
        )


class InsufficientSpaceError(SafetyError):
    """Destination device is too small for the planned layout."""

    def __init__(
        self,
        destination_name: str,
        destination_sectors: int,
        required_sectors: int,
    ):
        self.destination_name = destination_name
        self.destination_sectors = destination_sectors
        self.required_sectors = required_sectors
        super().__init__(
            f"Destination {destination_name} ({destination_sectors} sectors) "
            f"is too small for the plan (needs {required_sectors} sectors)"
        )


class CloneCapacityError(SafetyError):
    """Destination partition is smaller than the source partition it receives."""

    def __init__(
        self,
        source_name: str,
        source_size: int,
        destination_name: str,
        destination_size: int,
    ):
        self.source_name = source_name
        self.source_size = source_size
        self.destination_name = destination_name
        self.destination_size = destination_size
        super().__init__(
            f"Destination partition {destination_name} ({destination_size} bytes) "
            f"is smaller than source partition {source_name} ({source_size} bytes); "
            f"refusing to clone"
        )


class ConfirmationDeclinedError(SafetyError):
    """The operator declined a confirmation gate."""

    def __init__(self, gate: str):
        self.gate = gate
        super().__init__(f"Confirmation declined: {gate}")


class ExecutionError(StorageError):
    """An external step failed after destructive work began."""

    def __init__(
        self,
        step: str,
        message: str,
        device: str = None,
        backup_files: Iterable[str] = (),
    ):
        self.step = step
        self.device = device
        self.backup_files = list(backup_files)
        msg = f"{step} failed"
        if device:
            msg += f" on {device}"
        msg += f": {message}"
        if self.backup_files:
            msg += f" (restore from: {', '.join(self.backup_files)})"
        super().__init__(msg)
