"""
Pytest configuration and shared fixtures for growclone tests.

This module provides common fixtures and in-memory service doubles used
across all test modules. No test touches a real device.
"""

from pathlib import Path
from typing import Dict, List, Optional
from unittest.mock import Mock

import pytest

from growclone.config import settings
from growclone.domain.models import (
    GIB,
    DiskGeometry,
    EstimateSource,
    LabelType,
    Partition,
    SizeEstimate,
)
from growclone.storage.devices import PartitionProbe, split_partition_node
from growclone.storage.partition_table import PartitionTable

SECTOR = 512
# 256 GB and 1 TB destinations, as sold (decimal)
DISK_256GB_SECTORS = 256 * 10**9 // SECTOR
DISK_1TB_SECTORS = 10**12 // SECTOR


# ==============================================================================
# Partition Table Fixtures
# ==============================================================================


@pytest.fixture
def parted_gpt_output() -> str:
    """`parted -ms /dev/sda unit s print` for a small Windows disk."""
    return (
        "BYT;\n"
        "/dev/sda:500000000s:scsi:512:4096:gpt:ATA Samsung SSD 860:;\n"
        "1:2048s:206847s:204800s:fat32:EFI system partition:boot, esp;\n"
        "2:206848s:126035967s:125829120s:ntfs:Basic data partition:msftdata;\n"
        "3:126038016s:126070783s:32768s::Microsoft reserved partition:msftres;\n"
    )


@pytest.fixture
def parted_msdos_output() -> str:
    """`parted -ms /dev/sdb unit s print` for an MBR disk."""
    return (
        "BYT;\n"
        "/dev/sdb:62521344s:usb:512:512:msdos:SanDisk Ultra:;\n"
        "1:2048s:1050623s:1048576s:ntfs::boot;\n"
        "2:1050624s:62519295s:61468672s:ntfs::;\n"
    )


@pytest.fixture
def source_partitions() -> tuple:
    """Boot (100 MiB), growable NTFS (60 GiB), reserved (16 MiB)."""
    return (
        Partition(1, 2048, 206847, "fat32", "EFI system partition", frozenset({"boot", "esp"})),
        Partition(2, 206848, 126035967, "ntfs", "Basic data partition", frozenset({"msftdata"})),
        Partition(3, 126038016, 126070783, "", "Microsoft reserved partition", frozenset({"msftres"})),
    )


@pytest.fixture
def dest_geometry_256gb() -> DiskGeometry:
    return DiskGeometry.for_label(DISK_256GB_SECTORS, SECTOR, LabelType.GPT)


@pytest.fixture
def dest_geometry_1tb() -> DiskGeometry:
    return DiskGeometry.for_label(DISK_1TB_SECTORS, SECTOR, LabelType.GPT)


@pytest.fixture
def estimate_45gib() -> SizeEstimate:
    return SizeEstimate(45 * GIB, EstimateSource.PARSED_DIAGNOSTIC, "/dev/sda2")


# ==============================================================================
# ntfsresize Samples
# ==============================================================================


@pytest.fixture
def ntfsresize_info_output() -> str:
    """Real `ntfsresize --info --force` output for a 256 GB volume."""
    return (
        "ntfsresize v2017.3.23AR.3 (libntfs-3g)\n"
        "Device name        : /dev/sda2\n"
        "NTFS volume version: 3.1\n"
        "Cluster size       : 4096 bytes\n"
        "Current volume size: 255953203712 bytes (255954 MB)\n"
        "Current device size: 255953207296 bytes (255954 MB)\n"
        "Checking filesystem consistency ...\n"
        "100.00 percent completed\n"
        "Accounting clusters ...\n"
        "Space in use       : 86528 MB (33.8%)\n"
        "Collecting resizing constraints ...\n"
        "You might resize at 86527160320 bytes or 86528 MB (freeing 169426 MB).\n"
        "Please make a test run using both the -n and -s options before real resizing!\n"
    )


@pytest.fixture
def ntfsresize_error_output() -> str:
    """ntfsresize refusing a volume that Windows left hibernated."""
    return (
        "ntfsresize v2017.3.23AR.3 (libntfs-3g)\n"
        "The disk contains an unclean file system (0, 0).\n"
        "Metadata kept in Windows cache, refused to mount.\n"
        "Falling back to read-only mount because the NTFS partition is in an\n"
        "unsafe state. Please resume and shutdown Windows fully (no hibernation\n"
        "or fast restarting.)\n"
    )


# ==============================================================================
# Service Doubles
# ==============================================================================


class FakePartitionTableService:
    """In-memory partition-table service; records every mutation."""

    def __init__(self, tables: Dict[str, PartitionTable]):
        self.tables = dict(tables)
        self.calls: List[tuple] = []
        self.created: Dict[str, List[Partition]] = {}
        self.fail_on: Optional[str] = None

    def _record(self, name, *args):
        self.calls.append((name, *args))
        if self.fail_on == name:
            raise RuntimeError(f"{name} exploded")

    def read(self, device):
        if device in self.created:
            base = self.tables.get(device)
            return PartitionTable(
                device=device,
                total_sectors=base.total_sectors if base else 0,
                logical_sector_size=SECTOR,
                label_type=LabelType.GPT,
                model="",
                partitions=tuple(self.created[device]),
            )
        if device not in self.tables:
            raise RuntimeError(f"parted print failed ({device})")
        return self.tables[device]

    def write_label(self, device, label_type):
        self._record("write_label", device, label_type)
        self.created[device] = []

    def create_partition(self, device, partition, label_type):
        self._record("create_partition", device, partition.number)
        self.created.setdefault(device, []).append(partition)

    def set_type_code(self, device, number, code, label_type):
        self._record("set_type_code", device, number, code)

    def set_flag(self, device, number, flag):
        self._record("set_flag", device, number, flag)

    def resize_entry(self, device, number, new_end):
        self._record("resize_entry", device, number, new_end)

    def dump(self, device):
        self._record("dump", device)
        return f"label: gpt\ndevice: {device}\n"

    def reprobe(self, device, numbers, timeout_seconds):
        self._record("reprobe", device, tuple(numbers))


class FakeDeviceInfo:
    """Device-info double answering from the fake partition tables."""

    def __init__(self, partition_table: FakePartitionTableService, geometries: Dict[str, DiskGeometry]):
        self.partition_table = partition_table
        self.geometries = geometries
        self.mounted: Dict[str, List[str]] = {}
        self.disks: Dict[str, str] = {}

    def resolve_disk(self, device):
        if device in self.disks:
            return self.disks[device]
        return split_partition_node(device)[0]

    def is_partition(self, device):
        return split_partition_node(device)[1] is not None

    def geometry(self, device):
        return self.geometries[device]

    def total_sectors(self, device):
        return self.geometries[device].total_sectors

    def sector_size(self, device):
        disk, _ = split_partition_node(device)
        return self.geometries[disk].sector_size_bytes

    def mountpoints(self, device):
        return self.mounted.get(device, [])

    def probe_partition(self, device):
        return PartitionProbe()

    def partition_size_bytes(self, node):
        disk, number = split_partition_node(node)
        for partition in self.partition_table.read(disk).partitions:
            if partition.number == number:
                return partition.size_bytes(SECTOR)
        raise RuntimeError(f"No such partition: {node}")


class FakeCloneService:
    def __init__(self, available: bool = True):
        self.available = available
        self.calls: List[tuple] = []

    def clone_available(self):
        return self.available

    def clone(self, dst, src):
        self.calls.append(("clone", dst, src))

    def raw_copy(self, dst, src, offset=0, length=None):
        self.calls.append(("raw_copy", dst, src, length))

    def copy_leading_region(self, device, output_path, sectors, sector_size=512):
        self.calls.append(("copy_leading_region", device, sectors))
        Path(output_path).write_bytes(b"\0" * 16)
        return output_path

    def format_boot(self, partition, fstype="vfat", label=None):
        self.calls.append(("format_boot", partition, fstype))


@pytest.fixture
def source_table(source_partitions) -> PartitionTable:
    return PartitionTable(
        device="/dev/sda",
        total_sectors=500000000,
        logical_sector_size=SECTOR,
        label_type=LabelType.GPT,
        model="ATA Samsung SSD 860",
        partitions=source_partitions,
    )


@pytest.fixture
def fake_partition_table(source_table) -> FakePartitionTableService:
    return FakePartitionTableService({"/dev/sda": source_table})


@pytest.fixture
def fake_device_info(fake_partition_table, dest_geometry_256gb) -> FakeDeviceInfo:
    return FakeDeviceInfo(
        fake_partition_table,
        {
            "/dev/sda": DiskGeometry.for_label(500000000, SECTOR, LabelType.GPT),
            "/dev/sdb": dest_geometry_256gb,
        },
    )


@pytest.fixture
def fake_clone_service() -> FakeCloneService:
    return FakeCloneService()


@pytest.fixture
def fake_estimator(estimate_45gib) -> Mock:
    estimator = Mock()
    estimator.estimate.return_value = estimate_45gib
    return estimator


@pytest.fixture
def fake_resize_service() -> Mock:
    return Mock()


# ==============================================================================
# Subprocess Fixtures
# ==============================================================================


@pytest.fixture
def mock_subprocess_run(mocker):
    """
    Fixture providing a mock for subprocess.run.

    Returns:
        Mock object for subprocess.run
    """
    return mocker.patch("subprocess.run")


@pytest.fixture
def completed():
    """Factory for subprocess.CompletedProcess-like results."""

    def make(returncode=0, stdout="", stderr=""):
        return Mock(returncode=returncode, stdout=stdout, stderr=stderr)

    return make


# ==============================================================================
# Settings Fixtures
# ==============================================================================


@pytest.fixture
def temp_settings_file(tmp_path, mocker) -> Path:
    """Point the settings store at a temporary file."""
    path = tmp_path / "settings.json"
    mocker.patch.object(settings, "SETTINGS_PATH", path)
    return path


@pytest.fixture(autouse=True)
def reset_settings():
    """Every test starts from the default settings."""
    settings.settings_store.values = dict(settings.DEFAULT_SETTINGS)
    yield
    settings.settings_store.values = dict(settings.DEFAULT_SETTINGS)
