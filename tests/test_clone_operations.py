"""Tests for partition copy operations."""
from pathlib import Path
from unittest.mock import patch

import pytest

from growclone.storage.clone import CloneService
from growclone.storage.clone.operations import (
    clone_available,
    clone_dd,
    clone_ntfs,
    copy_leading_region,
    format_boot,
)

MODULE = "growclone.storage.clone.operations"


def which_in_sbin(name):
    return f"/usr/sbin/{name}"


class TestCloneNtfs:
    """Tests for the filesystem-aware clone."""

    @patch(f"{MODULE}.shutil.which", return_value="/usr/bin/ntfsclone")
    def test_available(self, _mock_which):
        assert clone_available()

    @patch(f"{MODULE}.shutil.which", return_value=None)
    def test_not_available(self, _mock_which):
        assert not clone_available()

    @patch(f"{MODULE}.run_checked_with_streaming_progress")
    @patch(f"{MODULE}.shutil.which", return_value="/usr/bin/ntfsclone")
    def test_command(self, _mock_which, mock_run):
        clone_ntfs("sdb2", "/dev/sda2")

        command = mock_run.call_args.args[0]
        assert command == ["/usr/bin/ntfsclone", "--overwrite", "/dev/sdb2", "/dev/sda2"]
        assert mock_run.call_args.kwargs["title"] == "ntfsclone /dev/sda2"

    @patch(f"{MODULE}.run_checked_with_streaming_progress")
    @patch(f"{MODULE}.shutil.which", return_value=None)
    def test_missing_tool(self, _mock_which, mock_run):
        with pytest.raises(RuntimeError, match="ntfsclone not found"):
            clone_ntfs("/dev/sdb2", "/dev/sda2")
        mock_run.assert_not_called()


class TestCloneDd:
    """Tests for raw byte-range copies."""

    @patch(f"{MODULE}.run_checked_with_streaming_progress")
    @patch(f"{MODULE}.shutil.which", return_value="/bin/dd")
    def test_whole_partition(self, _mock_which, mock_run):
        clone_dd("/dev/sda3", "/dev/sdb3")

        assert mock_run.call_args.args[0] == [
            "/bin/dd",
            "if=/dev/sda3",
            "of=/dev/sdb3",
            "bs=4M",
            "status=progress",
            "conv=fsync",
        ]
        assert mock_run.call_args.kwargs["total_bytes"] is None

    @patch(f"{MODULE}.run_checked_with_streaming_progress")
    @patch(f"{MODULE}.shutil.which", return_value="/bin/dd")
    def test_byte_range(self, _mock_which, mock_run):
        clone_dd("/dev/sda3", "/dev/sdb3", offset=4096, length=16777216)

        command = mock_run.call_args.args[0]
        assert command[-3:] == ["skip=4096", "count=16777216", "iflag=skip_bytes,count_bytes"]
        assert mock_run.call_args.kwargs["total_bytes"] == 16777216

    @patch(f"{MODULE}.run_checked_with_streaming_progress")
    @patch(f"{MODULE}.shutil.which", return_value="/bin/dd")
    def test_length_only(self, _mock_which, mock_run):
        clone_dd("/dev/sda3", "/dev/sdb3", length=512)
        command = mock_run.call_args.args[0]
        assert command[-2:] == ["count=512", "iflag=count_bytes"]

    @patch(f"{MODULE}.shutil.which", return_value=None)
    def test_missing_tool(self, _mock_which):
        with pytest.raises(RuntimeError, match="dd not found"):
            clone_dd("/dev/sda3", "/dev/sdb3")


class TestCopyLeadingRegion:
    @patch(f"{MODULE}.run_checked_command")
    @patch(f"{MODULE}.shutil.which", return_value="/bin/dd")
    def test_command(self, _mock_which, mock_run, tmp_path):
        output = tmp_path / "sdb.lead.bin"

        result = copy_leading_region("sdb", output, 2048)

        assert result == output
        mock_run.assert_called_once_with(
            ["/bin/dd", "if=/dev/sdb", f"of={output}", "bs=512", "count=2048"]
        )


class TestFormatBoot:
    """Tests for boot filesystem creation."""

    @patch(f"{MODULE}.run_checked_command")
    @patch(f"{MODULE}.shutil.which", side_effect=which_in_sbin)
    def test_fat32_with_label(self, _mock_which, mock_run):
        format_boot("/dev/sdb1", "vfat", label="EFI system partition")

        mock_run.assert_called_once_with(
            ["/usr/sbin/mkfs.vfat", "-F", "32", "-n", "EFI system ", "/dev/sdb1"]
        )

    @patch(f"{MODULE}.run_checked_command")
    @patch(f"{MODULE}.shutil.which", side_effect=which_in_sbin)
    def test_fat16_without_label(self, _mock_which, mock_run):
        format_boot("sdb1", "FAT16")
        mock_run.assert_called_once_with(["/usr/sbin/mkfs.vfat", "-F", "16", "/dev/sdb1"])

    def test_unsupported_type(self):
        with pytest.raises(RuntimeError, match="Unsupported boot filesystem"):
            format_boot("/dev/sdb1", "ext4")

    @patch(f"{MODULE}.shutil.which", return_value=None)
    def test_missing_tool(self, _mock_which):
        with pytest.raises(RuntimeError, match="mkfs.vfat not found"):
            format_boot("/dev/sdb1")


class TestCloneService:
    """CloneService delegates to the module functions."""

    @patch("growclone.storage.clone.clone_ntfs")
    def test_clone(self, mock_clone):
        CloneService().clone("/dev/sdb2", "/dev/sda2")
        mock_clone.assert_called_once_with("/dev/sdb2", "/dev/sda2")

    @patch("growclone.storage.clone.clone_dd")
    def test_raw_copy_swaps_to_source_first(self, mock_dd):
        CloneService().raw_copy("/dev/sdb3", "/dev/sda3", length=1024)
        mock_dd.assert_called_once_with(
            "/dev/sda3", "/dev/sdb3", offset=0, length=1024, title="dd /dev/sda3"
        )

    @patch("growclone.storage.clone.format_boot")
    def test_format_boot(self, mock_format):
        CloneService().format_boot("/dev/sdb1", "vfat", "SYSTEM")
        mock_format.assert_called_once_with("/dev/sdb1", "vfat", "SYSTEM")

    @patch("growclone.storage.clone.copy_leading_region")
    def test_copy_leading_region(self, mock_copy):
        CloneService().copy_leading_region("/dev/sdb", Path("x.bin"), 2048)
        mock_copy.assert_called_once_with("/dev/sdb", Path("x.bin"), 2048, 512)
