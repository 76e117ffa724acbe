"""Tests for block device queries."""

import json
import subprocess

import pytest

from growclone.domain.models import LabelType
from growclone.storage import devices
from growclone.storage.devices import (
    DeviceInfo,
    PartitionProbe,
    human_size,
    partition_node,
    resolve_device_node,
    split_partition_node,
)


@pytest.fixture
def run_command(mocker, completed):
    return mocker.patch("growclone.storage.devices.run_command", return_value=completed())


class TestNodeNames:
    """Test device node naming helpers."""

    def test_resolve_device_node(self):
        assert resolve_device_node("sda") == "/dev/sda"
        assert resolve_device_node("/dev/sda") == "/dev/sda"

    @pytest.mark.parametrize(
        "disk,number,expected",
        [
            ("/dev/sda", 2, "/dev/sda2"),
            ("sdb", 1, "/dev/sdb1"),
            ("/dev/nvme0n1", 3, "/dev/nvme0n1p3"),
            ("/dev/mmcblk0", 1, "/dev/mmcblk0p1"),
            ("/dev/loop7", 1, "/dev/loop7p1"),
        ],
    )
    def test_partition_node(self, disk, number, expected):
        assert partition_node(disk, number) == expected

    @pytest.mark.parametrize(
        "node,expected",
        [
            ("/dev/sda2", ("/dev/sda", 2)),
            ("/dev/sda", ("/dev/sda", None)),
            ("/dev/nvme0n1p3", ("/dev/nvme0n1", 3)),
            ("/dev/nvme0n1", ("/dev/nvme0n1", None)),
            ("mmcblk0p1", ("/dev/mmcblk0", 1)),
            ("/dev/sdab12", ("/dev/sdab", 12)),
        ],
    )
    def test_split_partition_node(self, node, expected):
        assert split_partition_node(node) == expected


class TestHumanSize:
    def test_units(self):
        assert human_size(None) == "0B"
        assert human_size(512) == "512.0B"
        assert human_size(1536) == "1.5KB"
        assert human_size(256 * 10**9) == "238.4GB"


class TestRunCommand:
    """Test the subprocess wrapper."""

    def test_runs_with_captured_text(self, mock_subprocess_run, completed):
        mock_subprocess_run.return_value = completed(stdout="ok\n")
        result = devices.run_command(["lsblk"], check=False)
        assert result.stdout == "ok\n"
        mock_subprocess_run.assert_called_once_with(
            ["lsblk"], check=False, text=True, capture_output=True, input=None
        )

    def test_input_forwarded(self, mock_subprocess_run, completed):
        mock_subprocess_run.return_value = completed()
        devices.run_command(["ntfsresize", "/dev/sdb2"], input_text="y\n")
        assert mock_subprocess_run.call_args.kwargs["input"] == "y\n"

    def test_called_process_error_reraised(self, mock_subprocess_run):
        mock_subprocess_run.side_effect = subprocess.CalledProcessError(
            1, ["blockdev"], output="", stderr="No such device"
        )
        with pytest.raises(subprocess.CalledProcessError):
            devices.run_command(["blockdev", "--getss", "/dev/sdz"])


class TestDeviceInfoGeometry:
    """Test size and label queries."""

    def test_sector_size(self, run_command, completed):
        run_command.return_value = completed(stdout="4096\n")
        assert DeviceInfo().sector_size("sdb") == 4096
        run_command.assert_called_once_with(["blockdev", "--getss", "/dev/sdb"], check=False)

    def test_total_sectors(self, run_command, completed):
        run_command.side_effect = [completed(stdout="256000000000\n"), completed(stdout="512\n")]
        assert DeviceInfo().total_sectors("/dev/sdb") == 500000000

    def test_blockdev_failure_raises_runtime_error(self, run_command, completed):
        run_command.return_value = completed(
            returncode=1, stderr="blockdev: cannot open /dev/sdz\n"
        )
        with pytest.raises(RuntimeError, match="cannot open /dev/sdz"):
            DeviceInfo().size_bytes("sdz")

    def test_missing_blockdev_raises_runtime_error(self, run_command):
        run_command.side_effect = FileNotFoundError(2, "No such file or directory", "blockdev")
        with pytest.raises(RuntimeError, match="blockdev --getss"):
            DeviceInfo().sector_size("/dev/sdb")

    def test_unexpected_blockdev_output(self, run_command, completed):
        run_command.return_value = completed(stdout="\n")
        with pytest.raises(RuntimeError, match="Unexpected output"):
            DeviceInfo().sector_size("/dev/sdb")

    def test_label_type(self, run_command, completed):
        payload = {"blockdevices": [{"name": "sdb", "pttype": "dos"}]}
        run_command.return_value = completed(stdout=json.dumps(payload))
        assert DeviceInfo().label_type("/dev/sdb") is LabelType.MSDOS

    def test_label_type_unknown_on_failure(self, run_command, completed):
        run_command.return_value = completed(returncode=1)
        assert DeviceInfo().label_type("/dev/sdb") is LabelType.UNKNOWN

    def test_label_type_unknown_on_bad_json(self, run_command, completed):
        run_command.return_value = completed(stdout="not json")
        assert DeviceInfo().label_type("/dev/sdb") is LabelType.UNKNOWN

    def test_geometry_reserves_gpt_tail(self, mocker):
        info = DeviceInfo()
        mocker.patch.object(info, "total_sectors", return_value=500000000)
        mocker.patch.object(info, "sector_size", return_value=512)
        mocker.patch.object(info, "label_type", return_value=LabelType.GPT)
        geometry = info.geometry("/dev/sdb")
        assert geometry.usable_last_sector == 499999966


class TestDeviceInfoIdentity:
    """Test disk resolution and partition probing."""

    def test_resolve_disk_from_parent(self, run_command, completed):
        run_command.return_value = completed(stdout="nvme0n1\n")
        assert DeviceInfo().resolve_disk("/dev/nvme0n1p2") == "/dev/nvme0n1"

    def test_resolve_disk_for_whole_disk(self, run_command, completed):
        run_command.return_value = completed(stdout="\n")
        assert DeviceInfo().resolve_disk("/dev/sdb") == "/dev/sdb"

    def test_resolve_disk_falls_back_to_name(self, run_command, completed):
        run_command.return_value = completed(returncode=32)
        assert DeviceInfo().resolve_disk("/dev/sdc4") == "/dev/sdc"

    def test_is_partition(self, run_command, completed):
        run_command.return_value = completed(stdout="part\n")
        assert DeviceInfo().is_partition("/dev/sda1")
        run_command.return_value = completed(stdout="disk\n")
        assert not DeviceInfo().is_partition("/dev/sda")

    def test_probe_partition(self, run_command, completed):
        payload = {
            "blockdevices": [
                {
                    "name": "sda1",
                    "fstype": "VFAT",
                    "label": "SYSTEM",
                    "partlabel": "EFI system partition",
                    "parttype": "C12A7328-F81F-11D2-BA4B-00A0C93EC93B",
                    "size": 104857600,
                }
            ]
        }
        run_command.return_value = completed(stdout=json.dumps(payload))
        assert DeviceInfo().probe_partition("/dev/sda1") == PartitionProbe(
            fstype="vfat",
            label="SYSTEM",
            partlabel="EFI system partition",
            parttype="c12a7328-f81f-11d2-ba4b-00a0c93ec93b",
            size_bytes=104857600,
        )

    def test_probe_partition_nulls(self, run_command, completed):
        payload = {"blockdevices": [{"name": "sda3", "fstype": None, "size": None}]}
        run_command.return_value = completed(stdout=json.dumps(payload))
        assert DeviceInfo().probe_partition("/dev/sda3") == PartitionProbe()

    def test_mountpoints(self, run_command, completed):
        run_command.return_value = completed(stdout="\n/media/usb\n\n/media/data\n")
        info = DeviceInfo()
        assert info.mountpoints("/dev/sdb") == ["/media/usb", "/media/data"]
        assert info.is_mounted("/dev/sdb")

    def test_not_mounted(self, run_command, completed):
        run_command.return_value = completed(stdout="\n\n")
        assert not DeviceInfo().is_mounted("/dev/sdb")


class TestWaitForNodes:
    def test_existing_nodes(self, tmp_path):
        node = tmp_path / "sdb1"
        node.touch()
        assert DeviceInfo().wait_for_nodes([str(node)], 0) == []

    def test_missing_nodes_reported(self, tmp_path, mocker):
        mocker.patch("growclone.storage.devices.time.sleep")
        missing = str(tmp_path / "sdb9")
        assert DeviceInfo().wait_for_nodes([missing], 0) == [missing]
