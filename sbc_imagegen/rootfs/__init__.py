"""Root filesystem building.

This module handles:
- Debootstrapping a Debian base system for the board's architecture
- Provisioning it in a chroot (packages, configuration, SSH key)
- Embedding the first-boot script
"""

from sbc_imagegen.rootfs.builder import (
    RootfsBuildError,
    RootfsResult,
    build_rootfs,
    install_firstboot,
)

__all__ = [
    "RootfsBuildError",
    "RootfsResult",
    "build_rootfs",
    "install_firstboot",
]
