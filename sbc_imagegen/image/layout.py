"""Disk image layout and sector math.

The image is a DOS-partitioned disk:

    | reserved (1 MiB) | boot, FAT32 (100 MiB) | root, ext4 (tree + 25%) |

All sizes are in 512-byte sectors. The reserved region holds the
partition table and, on boards that need one, a raw bootloader.
"""

from __future__ import annotations

import logging
import os
import stat
from dataclasses import dataclass
from pathlib import Path

logger = logging.getLogger(__name__)

SECTOR_SIZE = 512
MIB_SECTORS = 1024 * 1024 // SECTOR_SIZE

RESERVED_SECTORS = MIB_SECTORS
BOOT_SECTORS = 100 * MIB_SECTORS

# Root partition headroom over the source tree size, as a fraction
# (numerator, denominator) to keep the math exact.
ROOT_OVERHEAD = (5, 4)

BOOT_PARTITION_TYPE = "c"
ROOT_PARTITION_TYPE = "83"


@dataclass(frozen=True)
class ImageLayout:
    """Partition layout of a disk image.

    Attributes:
        reserved_sectors: Sectors before the first partition.
        boot_sectors: Size of the FAT32 boot partition.
        root_sectors: Size of the ext4 root partition.
    """

    reserved_sectors: int
    boot_sectors: int
    root_sectors: int

    @property
    def boot_start(self) -> int:
        return self.reserved_sectors

    @property
    def root_start(self) -> int:
        return self.boot_start + self.boot_sectors

    @property
    def total_sectors(self) -> int:
        return self.reserved_sectors + self.boot_sectors + self.root_sectors

    @property
    def total_bytes(self) -> int:
        return self.total_sectors * SECTOR_SIZE

    def to_sfdisk_script(self) -> str:
        """Render the layout as sfdisk input."""
        return (
            "label: dos\n"
            "unit: sectors\n"
            "\n"
            f"start={self.boot_start}, size={self.boot_sectors}, "
            f"type={BOOT_PARTITION_TYPE}, bootable\n"
            f"start={self.root_start}, size={self.root_sectors}, "
            f"type={ROOT_PARTITION_TYPE}\n"
        )


def root_sectors_for(tree_bytes: int) -> int:
    """Return ceil(tree_bytes * 1.25 / 512) using integer arithmetic."""
    if tree_bytes < 0:
        raise ValueError(f"tree size must not be negative, got {tree_bytes}")
    numerator, denominator = ROOT_OVERHEAD
    return -(-tree_bytes * numerator // (denominator * SECTOR_SIZE))


def compute_layout(tree_bytes: int) -> ImageLayout:
    """Compute the image layout for a source tree of `tree_bytes` bytes."""
    layout = ImageLayout(
        reserved_sectors=RESERVED_SECTORS,
        boot_sectors=BOOT_SECTORS,
        root_sectors=root_sectors_for(tree_bytes),
    )
    logger.debug(
        "Layout for %d bytes: reserved=%d boot=%d root=%d total=%d sectors",
        tree_bytes,
        layout.reserved_sectors,
        layout.boot_sectors,
        layout.root_sectors,
        layout.total_sectors,
    )
    return layout


def tree_size(root: Path) -> int:
    """Return the apparent size in bytes of everything below `root`.

    Symlinks are not followed; hard-linked files are counted once.
    """
    total = 0
    seen: set[tuple[int, int]] = set()
    for dirpath, dirnames, filenames in os.walk(root):
        for name in dirnames + filenames:
            st = os.lstat(os.path.join(dirpath, name))
            if st.st_nlink > 1 and not stat.S_ISDIR(st.st_mode):
                key = (st.st_dev, st.st_ino)
                if key in seen:
                    continue
                seen.add(key)
            total += st.st_size
    return total


__all__ = [
    "BOOT_SECTORS",
    "ImageLayout",
    "RESERVED_SECTORS",
    "SECTOR_SIZE",
    "compute_layout",
    "root_sectors_for",
    "tree_size",
]
