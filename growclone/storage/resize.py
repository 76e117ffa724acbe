"""NTFS resize service backed by ntfsresize."""

from __future__ import annotations

import shutil

from growclone.logging import LoggerFactory
from growclone.storage import devices
from growclone.storage.clone.command_runners import run_checked_command
from growclone.storage.devices import resolve_device_node

log = LoggerFactory.for_system()

NTFSRESIZE = "ntfsresize"


class ResizeService:
    """Query and grow NTFS volumes."""

    def available(self) -> bool:
        return shutil.which(NTFSRESIZE) is not None

    def info(self, partition: str) -> str:
        """Return the diagnostic report of ``ntfsresize --info``.

        Never raises on a non-zero exit: ntfsresize reports a usable minimum
        even when it refuses the volume. Returns "" when the tool is missing.
        """
        tool_path = shutil.which(NTFSRESIZE)
        if not tool_path:
            log.warning("ntfsresize not found; size diagnostics unavailable")
            return ""
        result = devices.run_command(
            [tool_path, "--info", "--force", resolve_device_node(partition)],
            check=False,
        )
        if result.returncode != 0:
            log.debug(f"ntfsresize --info exited with {result.returncode}")
        return "\n".join(
            text for text in (result.stdout or "", result.stderr or "") if text
        )

    def resize(self, partition: str) -> None:
        """Grow the NTFS volume to fill its partition entry."""
        tool_path = shutil.which(NTFSRESIZE)
        if not tool_path:
            raise RuntimeError("ntfsresize not found")
        # ntfsresize asks "Are you sure you want to proceed (y/[n])?"
        run_checked_command(
            [tool_path, "--force", resolve_device_node(partition)], input_text="y\n"
        )
        log.info(f"Resized NTFS filesystem on {partition}")
