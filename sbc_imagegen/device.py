"""Block devices and mount points on the build host.

This module handles:
- Attaching image files to loop devices (with partition scanning)
- Partition device naming (/dev/loop0 -> /dev/loop0p1)
- Mounting and unmounting with guaranteed release
- Inspecting /proc/mounts for leftover mounts below a directory

Every context manager here releases what it acquired on all exit paths,
including when the body raises. A release failure while another error
is propagating is logged so the original error reaches the caller.
"""

from __future__ import annotations

import logging
import os
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from pathlib import Path

from sbc_imagegen.runner import CommandError, CommandRunner

logger = logging.getLogger(__name__)


def partition_path(device: str, number: int) -> str:
    """Return the path of partition `number` on a whole device.

    Devices whose name ends in a digit (loop0, mmcblk0, nvme0n1) take a
    'p' separator; others (sda) do not.
    """
    separator = "p" if device[-1].isdigit() else ""
    return f"{device}{separator}{number}"


def _decode_mount_field(value: str) -> str:
    # /proc/mounts escapes space, tab, newline and backslash as octal.
    for escaped, char in (
        ("\\040", " "),
        ("\\011", "\t"),
        ("\\012", "\n"),
        ("\\134", "\\"),
    ):
        value = value.replace(escaped, char)
    return value


def get_mount_points_under(
    directory: Path, mounts_file: str = "/proc/mounts"
) -> list[str]:
    """List mount points at or below `directory`.

    Returns:
        Mount points, in the order they appear in the mount table.
    """
    base = os.path.realpath(directory)
    mount_points: list[str] = []
    try:
        with open(mounts_file) as f:
            for line in f:
                parts = line.split()
                if len(parts) < 2:
                    continue
                mount_point = _decode_mount_field(parts[1])
                if mount_point == base or mount_point.startswith(base + os.sep):
                    mount_points.append(mount_point)
    except OSError:
        logger.warning("Could not read %s, skipping mount check", mounts_file)
    return mount_points


def _release(action: Callable[[], None], what: str, *, failing: bool) -> None:
    if not failing:
        action()
        return
    try:
        action()
    except CommandError as e:
        logger.error("Cleanup failed to release %s: %s", what, e)


@contextmanager
def loop_device(runner: CommandRunner, image: Path) -> Iterator[str]:
    """Attach `image` to a free loop device with partition scanning.

    Yields:
        The loop device path (e.g. /dev/loop0).
    """
    device = runner.output(["losetup", "--find", "--show", "--partscan", image])
    logger.info("Attached %s to %s", image, device)

    def detach() -> None:
        runner.run(["losetup", "--detach", device])
        logger.info("Detached %s", device)

    try:
        yield device
    except BaseException:
        _release(detach, device, failing=True)
        raise
    _release(detach, device, failing=False)


@contextmanager
def mounted(
    runner: CommandRunner,
    source: str | Path,
    target: Path,
    *,
    fstype: str | None = None,
    options: str | None = None,
) -> Iterator[Path]:
    """Mount `source` on `target` for the duration of the block.

    The target directory is created if needed.
    """
    target.mkdir(parents=True, exist_ok=True)
    cmd: list[str | os.PathLike[str]] = ["mount"]
    if fstype:
        cmd += ["-t", fstype]
    if options:
        cmd += ["-o", options]
    cmd += [source, target]
    runner.run(cmd)

    def unmount() -> None:
        runner.run(["umount", target])

    try:
        yield target
    except BaseException:
        _release(unmount, str(target), failing=True)
        raise
    _release(unmount, str(target), failing=False)


__all__ = [
    "get_mount_points_under",
    "loop_device",
    "mounted",
    "partition_path",
]
