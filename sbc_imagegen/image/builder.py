"""Disk image builder.

This module handles:
- Sizing the image from the prepared root filesystem tree
- Creating and partitioning the image file
- Formatting the boot (FAT32) and root (ext4) partitions through a loop device
- Copying the tree into both partitions with rsync
- Writing a raw bootloader into the reserved region when the board needs one

Loop devices, mounts and temporary directories are released on every exit
path. An image file created by a failed build is removed; an existing
target is never touched.
"""

from __future__ import annotations

import logging
import os
import tempfile
from contextlib import ExitStack
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path

from sbc_imagegen.boards.schema import BoardSchema
from sbc_imagegen.device import (
    get_mount_points_under,
    loop_device,
    mounted,
    partition_path,
)
from sbc_imagegen.image.layout import (
    SECTOR_SIZE,
    ImageLayout,
    compute_layout,
    tree_size,
)
from sbc_imagegen.runner import CommandRunner

logger = logging.getLogger(__name__)

REQUIRED_TOOLS = [
    "sfdisk",
    "losetup",
    "mkfs.vfat",
    "mkfs.ext4",
    "mount",
    "umount",
    "rsync",
    "sync",
    "dd",
]

BOOT_LABEL = "BOOT"
ROOT_LABEL = "root"

# Kernel filesystems left empty in the copied tree.
RSYNC_ROOT_EXCLUDES = ["/proc/*", "/sys/*"]


class ImageBuildError(Exception):
    """Base exception for image build errors."""

    def __init__(self, message: str, code: str) -> None:
        super().__init__(message)
        self.message = message
        self.code = code


class TargetExistsError(ImageBuildError):
    """Target image path already exists."""

    def __init__(self, target: Path) -> None:
        super().__init__(
            f"Target already exists: {target}. Refusing to overwrite it.",
            code="target_exists",
        )
        self.target = target


class SourceTreeError(ImageBuildError):
    """Source tree is missing or unusable."""

    def __init__(self, message: str) -> None:
        super().__init__(message, code="invalid_source_tree")


@dataclass
class ImageResult:
    """Result of an image build.

    Attributes:
        image_path: Path of the created image file.
        layout: Partition layout written to the image.
        tree_bytes: Size of the source tree the layout was computed from.
        started_at: Build start time.
        finished_at: Build finish time.
    """

    image_path: Path
    layout: ImageLayout
    tree_bytes: int
    started_at: datetime
    finished_at: datetime


def _validate_source(source: Path, board: BoardSchema) -> None:
    if not source.is_dir():
        raise SourceTreeError(f"Source tree not found: {source}")
    if not (source / "etc").is_dir():
        raise SourceTreeError(f"Source tree has no etc/ directory: {source}")
    leftover = get_mount_points_under(source)
    if leftover:
        raise SourceTreeError(
            f"Source tree has mounted filesystems: {', '.join(leftover)}. "
            "Unmount them before building."
        )
    if board.bootloader is not None:
        blob = source / board.bootloader.path.lstrip("/")
        if not blob.is_file():
            raise SourceTreeError(f"Bootloader not found in source tree: {blob}")


def create_image_file(target: Path, size_bytes: int) -> None:
    """Create a sparse file of exactly `size_bytes` bytes.

    Raises:
        TargetExistsError: If the path exists (checked atomically).
    """
    try:
        with open(target, "xb") as f:
            f.truncate(size_bytes)
    except FileExistsError:
        raise TargetExistsError(target) from None


def _remove_dirs(*paths: Path) -> None:
    for path in paths:
        try:
            path.rmdir()
        except FileNotFoundError:
            pass
        except OSError as e:
            logger.warning("Could not remove %s: %s", path, e)


def write_bootloader(
    runner: CommandRunner,
    blob: Path,
    device: str,
    offset: int,
    layout: ImageLayout,
) -> None:
    """Write a raw bootloader blob at `offset` bytes on `device`.

    Raises:
        ImageBuildError: If the blob would overlap the boot partition.
    """
    end = offset + blob.stat().st_size
    limit = layout.boot_start * SECTOR_SIZE
    if end > limit:
        raise ImageBuildError(
            f"Bootloader {blob} ends at byte {end}, past the reserved region "
            f"({limit} bytes)",
            code="bootloader_too_large",
        )
    runner.run(
        [
            "dd",
            f"if={blob}",
            f"of={device}",
            "bs=4096",
            f"seek={offset}",
            "oflag=seek_bytes",
            "conv=notrunc,fsync",
        ]
    )


def _populate(
    runner: CommandRunner,
    stack: ExitStack,
    source: Path,
    target: Path,
    board: BoardSchema,
    layout: ImageLayout,
    tmp_dir: Path | None,
) -> None:
    runner.run(["sfdisk", target], input=layout.to_sfdisk_script())

    device = stack.enter_context(loop_device(runner, target))
    boot_device = partition_path(device, 1)
    root_device = partition_path(device, 2)

    runner.run(["mkfs.vfat", "-F", "32", "-n", BOOT_LABEL, boot_device])
    runner.run(["mkfs.ext4", "-F", "-q", "-L", ROOT_LABEL, root_device])

    workdir = Path(tempfile.mkdtemp(prefix="sbc-imagegen-", dir=tmp_dir))
    root_mnt = workdir / "root"
    boot_mnt = workdir / "boot"
    # Registered before the mounts so it runs after they are released.
    stack.callback(_remove_dirs, root_mnt, boot_mnt, workdir)

    stack.enter_context(mounted(runner, root_device, root_mnt, fstype="ext4"))
    stack.enter_context(mounted(runner, boot_device, boot_mnt, fstype="vfat"))

    boot_dir = board.boot_mountpoint
    excludes = [*RSYNC_ROOT_EXCLUDES, f"{boot_dir}/*"]
    runner.run(
        [
            "rsync",
            "-aHAX",
            "--numeric-ids",
            *[f"--exclude={pattern}" for pattern in excludes],
            f"{source}/",
            f"{root_mnt}/",
        ]
    )
    source_boot = source / boot_dir.lstrip("/")
    if source_boot.is_dir():
        # FAT32 has no owners, permissions or symlinks.
        runner.run(
            [
                "rsync",
                "-rtL",
                "--modify-window=2",
                f"{source_boot}/",
                f"{boot_mnt}/",
            ]
        )
    else:
        logger.warning("No %s in source tree, boot partition left empty", boot_dir)

    if board.bootloader is not None:
        blob = source / board.bootloader.path.lstrip("/")
        write_bootloader(runner, blob, device, board.bootloader.offset, layout)

    runner.run(["sync"])


def build_image(
    source: Path,
    target: Path,
    board: BoardSchema,
    *,
    runner: CommandRunner,
    tmp_dir: Path | None = None,
) -> ImageResult:
    """Build a partitioned disk image from a prepared root filesystem tree.

    Args:
        source: Root filesystem tree built by the rootfs builder.
        target: Image file to create. Must not exist.
        board: Board profile (boot mount point, raw bootloader).
        runner: Command runner for external tools.
        tmp_dir: Parent directory for temporary mount points.

    Returns:
        ImageResult describing the created image.

    Raises:
        TargetExistsError: If the target path already exists.
        SourceTreeError: If the source tree is unusable.
        CommandError: If an external command fails.
    """
    if os.path.lexists(target):
        raise TargetExistsError(target)
    source = source.resolve()
    _validate_source(source, board)

    started_at = datetime.now(timezone.utc)
    tree_bytes = tree_size(source)
    layout = compute_layout(tree_bytes)
    logger.info(
        "Image %s: %d sectors (reserved %d, boot %d, root %d) for %d bytes of tree",
        target,
        layout.total_sectors,
        layout.reserved_sectors,
        layout.boot_sectors,
        layout.root_sectors,
        tree_bytes,
    )

    create_image_file(target, layout.total_bytes)
    try:
        with ExitStack() as stack:
            _populate(runner, stack, source, target, board, layout, tmp_dir)
    except BaseException:
        logger.error("Image build failed, removing %s", target)
        target.unlink(missing_ok=True)
        raise

    finished_at = datetime.now(timezone.utc)
    logger.info(
        "Image ready: %s (%.1fs)", target, (finished_at - started_at).total_seconds()
    )
    return ImageResult(
        image_path=target,
        layout=layout,
        tree_bytes=tree_bytes,
        started_at=started_at,
        finished_at=finished_at,
    )


__all__ = [
    "ImageBuildError",
    "ImageResult",
    "REQUIRED_TOOLS",
    "SourceTreeError",
    "TargetExistsError",
    "build_image",
    "create_image_file",
    "write_bootloader",
]
