"""Disk image building.

This module handles:
- Sector math for the reserved + boot + root layout
- Creating, partitioning and formatting the image through a loop device
- Copying a prepared root filesystem tree into the image
"""

from sbc_imagegen.image.builder import (
    ImageBuildError,
    ImageResult,
    SourceTreeError,
    TargetExistsError,
    build_image,
)
from sbc_imagegen.image.layout import (
    BOOT_SECTORS,
    RESERVED_SECTORS,
    SECTOR_SIZE,
    ImageLayout,
    compute_layout,
    root_sectors_for,
    tree_size,
)

__all__ = [
    # Layout
    "BOOT_SECTORS",
    "ImageLayout",
    "RESERVED_SECTORS",
    "SECTOR_SIZE",
    "compute_layout",
    "root_sectors_for",
    "tree_size",
    # Builder
    "ImageBuildError",
    "ImageResult",
    "SourceTreeError",
    "TargetExistsError",
    "build_image",
]
