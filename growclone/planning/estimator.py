"""Required-size estimation for the growable NTFS filesystem.

Strategies, in order:
    1. The minimum ntfsresize suggests ("You might resize at <n> bytes ...")
    2. The largest number anywhere in the ntfsresize report
    3. Used space measured on a read-only mount of the partition

parse_resize_diagnostic() is pure; SizeEstimator wires it to the services.
"""

from __future__ import annotations

import re
from typing import Optional

from growclone.domain.models import GIB, EstimateSource, SizeEstimate
from growclone.logging import LoggerFactory
from growclone.storage.devices import DeviceInfo
from growclone.storage.exceptions import EstimationError
from growclone.storage.mount import ReadOnlyMounter
from growclone.storage.resize import ResizeService

log = LoggerFactory.for_estimate()

_MINIMUM_LINE = re.compile(
    r"you might resize at|you might resize|estimated minimum|minimum", re.IGNORECASE
)
_BYTES_TOKEN = re.compile(r"(\d+)\s*bytes\b", re.IGNORECASE)
_UNIT_TOKEN = re.compile(
    r"(\d+(?:\.\d+)?)\s*"
    r"(kbytes|kbyte|kb|k|mbytes|mbyte|mb|m|gbytes|gbyte|gb|g|sectors|sector)\b",
    re.IGNORECASE,
)
# standalone integers only: skips version strings and percentages
_NUMBER_TOKEN = re.compile(r"(?<![\w.])\d+(?!\w|\.\d)")

_UNIT_FACTORS = {
    "k": 1024,
    "kb": 1024,
    "kbyte": 1024,
    "kbytes": 1024,
    "m": 1024**2,
    "mb": 1024**2,
    "mbyte": 1024**2,
    "mbytes": 1024**2,
    "g": GIB,
    "gb": GIB,
    "gbyte": GIB,
    "gbytes": GIB,
}


def _minimum_line_bytes(line: str, sector_size: int) -> Optional[int]:
    bytes_match = _BYTES_TOKEN.search(line)
    if bytes_match:
        return int(bytes_match.group(1))
    unit_match = _UNIT_TOKEN.search(line)
    if not unit_match:
        return None
    value = float(unit_match.group(1))
    unit = unit_match.group(2).lower()
    if unit.startswith("sector"):
        return int(value * sector_size)
    return int(value * _UNIT_FACTORS[unit])


def parse_resize_diagnostic(
    text: str, sector_size: int = 512
) -> Optional[tuple[int, EstimateSource]]:
    """Extract the required byte count from an ``ntfsresize --info`` report.

    Returns (bytes, source) or None when the report is unusable.
    """
    if not text or not text.strip():
        return None
    for line in text.splitlines():
        if _MINIMUM_LINE.search(line):
            required = _minimum_line_bytes(line, sector_size)
            if required:
                return required, EstimateSource.PARSED_DIAGNOSTIC
            break
    tokens = [int(token) for token in _NUMBER_TOKEN.findall(text)]
    if not tokens:
        return None
    largest = max(tokens)
    if largest <= 0:
        return None
    if largest < GIB:
        # too small to be a byte count of a real volume: sectors
        largest *= sector_size
    return largest, EstimateSource.LARGEST_TOKEN


def recommend_size_gb(
    estimate: Optional[SizeEstimate],
    dest_bytes: int,
    growable_start_bytes: int = 0,
    fill: bool = False,
    reserve_bytes: int = GIB,
) -> int:
    """Whole-GiB size to give the growable partition on the destination."""
    capacity_gb = dest_bytes // GIB
    if fill:
        available = dest_bytes - growable_start_bytes - reserve_bytes
        return max(1, min(available // GIB, capacity_gb))
    if estimate is None:
        raise ValueError("A size estimate is required unless filling the disk")
    return min(estimate.recommended_gb, capacity_gb)


class SizeEstimator:
    """Turns a partition into a SizeEstimate using the strategies above."""

    def __init__(
        self,
        resize_service: Optional[ResizeService] = None,
        device_info: Optional[DeviceInfo] = None,
        mounter: Optional[ReadOnlyMounter] = None,
    ):
        self.resize_service = resize_service or ResizeService()
        self.device_info = device_info or DeviceInfo()
        self.mounter = mounter or ReadOnlyMounter()

    def estimate(self, partition: str) -> SizeEstimate:
        """Estimate the space the filesystem on ``partition`` needs.

        Raises:
            EstimationError: If no strategy yields a positive byte count
        """
        try:
            sector_size = self.device_info.sector_size(partition)
        except (RuntimeError, OSError) as error:
            raise EstimationError(partition, str(error)) from error
        report = self.resize_service.info(partition)
        parsed = parse_resize_diagnostic(report, sector_size)
        if parsed is not None:
            required, source = parsed
            log.info(f"{partition}: {required} bytes required ({source.value})")
            return SizeEstimate(required, source, partition)

        log.warning(f"{partition}: ntfsresize report unusable, measuring used space")
        try:
            used = self.mounter.used_bytes(partition)
        except (RuntimeError, OSError) as error:
            raise EstimationError(partition, str(error)) from error
        if used <= 0:
            raise EstimationError(partition, "measured used space is zero")
        log.info(f"{partition}: {used} bytes used (measured)")
        return SizeEstimate(used, EstimateSource.MEASURED_USED_SPACE, partition)
