"""Read-only mounting for used-space measurement.

Functions:
    - mount_read_only(): Context manager mounting a partition read-only in a
      temporary directory; unmounts and removes the directory on exit
    - measure_used_bytes(): Bytes used under a directory (du -s --block-size=1)

The partition is never mounted writable.
"""

from __future__ import annotations

import os
import subprocess
import tempfile
from contextlib import contextmanager
from typing import Iterator

from growclone.logging import LoggerFactory
from growclone.storage.devices import resolve_device_node

log = LoggerFactory.for_system()


@contextmanager
def mount_read_only(partition: str) -> Iterator[str]:
    """Mount ``partition`` read-only and yield the mount directory.

    Raises:
        RuntimeError: If the mount fails (e.g. the partition is in use)
    """
    node = resolve_device_node(partition)
    mount_dir = tempfile.mkdtemp(prefix="growclone-")
    try:
        try:
            subprocess.run(
                ["mount", "-o", "ro", node, mount_dir],
                check=True,
                capture_output=True,
                text=True,
            )
        except subprocess.CalledProcessError as e:
            raise RuntimeError(
                f"Failed to mount {node} read-only at {mount_dir}: {e.stderr.strip()}"
            ) from e
        except OSError as e:
            raise RuntimeError(f"Failed to mount {node}: {e}") from e
        log.debug(f"Mounted {node} read-only at {mount_dir}")
        try:
            yield mount_dir
        finally:
            try:
                subprocess.run(
                    ["umount", mount_dir], check=True, capture_output=True, text=True
                )
            except subprocess.CalledProcessError as e:
                log.warning(f"Failed to unmount {mount_dir}: {e.stderr.strip()}")
            except OSError as e:
                log.warning(f"Failed to unmount {mount_dir}: {e}")
    finally:
        try:
            os.rmdir(mount_dir)
        except OSError as e:
            log.warning(f"Failed to remove {mount_dir}: {e}")


def measure_used_bytes(path: str) -> int:
    """Return the bytes used under ``path``."""
    try:
        result = subprocess.run(
            ["du", "-s", "--block-size=1", path],
            check=True,
            capture_output=True,
            text=True,
        )
    except subprocess.CalledProcessError as e:
        raise RuntimeError(f"Failed to measure {path}: {e.stderr.strip()}") from e
    except OSError as e:
        raise RuntimeError(f"Failed to measure {path}: {e}") from e
    try:
        return int(result.stdout.split()[0])
    except (IndexError, ValueError) as e:
        raise RuntimeError(f"Unexpected du output for {path}: {result.stdout!r}") from e


class ReadOnlyMounter:
    """Mount-and-measure service used by the size estimator."""

    def used_bytes(self, partition: str) -> int:
        with mount_read_only(partition) as mount_dir:
            return measure_used_bytes(mount_dir)
