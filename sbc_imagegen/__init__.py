"""SBC Image Generator - Debian root filesystems and SD card images for boards.

This package bootstraps Debian root filesystems for single-board computers,
embeds a one-time first-boot script, and packages finished trees into
partitioned disk images ready to be written to an SD card.
"""

__version__ = "0.1.0"
__all__ = ["__version__"]
