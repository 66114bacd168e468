"""Configuration files written into the root filesystem.

Each render function returns the exact file content; the byte-for-byte
output is what the board's bootloader, kernel and init expect, so changes
here change the images.
"""

from __future__ import annotations

import logging
from pathlib import Path

from sbc_imagegen.boards.schema import BoardSchema
from sbc_imagegen.firstboot import INVOCATION

logger = logging.getLogger(__name__)

DEFAULT_FILE_MODE = 0o644
DEFAULT_DIR_MODE = 0o755


def render_fstab(board: BoardSchema) -> str:
    """Render /etc/fstab for the two-partition layout."""
    return (
        "# <file system>\t<mount point>\t<type>\t<options>\t<dump>\t<pass>\n"
        "proc\t/proc\tproc\tdefaults\t0\t0\n"
        f"{board.root_device}\t/\text4\tdefaults,noatime\t0\t1\n"
        f"{board.boot_device}\t{board.boot_mountpoint}\tvfat\tdefaults\t0\t2\n"
    )


def render_sources_list(mirror: str, release: str, components: list[str]) -> str:
    """Render /etc/apt/sources.list with the release, updates and security."""
    mirror = mirror.rstrip("/")
    comps = " ".join(components)
    return (
        f"deb {mirror} {release} {comps}\n"
        f"deb {mirror} {release}-updates {comps}\n"
        f"deb http://security.debian.org/debian-security {release}-security {comps}\n"
    )


def render_interface(interface: str) -> str:
    """Render /etc/network/interfaces.d/<interface> for DHCP.

    ifupdown already configures the loopback interface in
    /etc/network/interfaces, which sources this directory.
    """
    return (
        f"auto {interface}\n"
        f"allow-hotplug {interface}\n"
        f"iface {interface} inet dhcp\n"
    )


def render_hostname(hostname: str) -> str:
    return f"{hostname}\n"


def render_hosts(hostname: str) -> str:
    """Render /etc/hosts mapping the hostname to 127.0.1.1."""
    return (
        "127.0.0.1\tlocalhost\n"
        f"127.0.1.1\t{hostname}\n"
        "\n"
        "::1\t\tlocalhost ip6-localhost ip6-loopback\n"
        "ff02::1\t\tip6-allnodes\n"
        "ff02::2\t\tip6-allrouters\n"
    )


def render_rc_local() -> str:
    """Render /etc/rc.local that runs the first-boot script once."""
    return (
        "#!/bin/sh -e\n"
        "#\n"
        "# rc.local\n"
        "#\n"
        "# This script is executed at the end of each multiuser runlevel.\n"
        "\n"
        f"{INVOCATION}\n"
        "\n"
        "exit 0\n"
    )


def render_policy_rc_d() -> str:
    """Render a policy-rc.d that forbids starting services in the chroot."""
    return "#!/bin/sh\nexit 101\n"


def write_file(root: Path, destination: str, content: str, mode: int | None = None) -> Path:
    """Write a file into the tree rooted at `root`.

    Args:
        root: Root of the filesystem tree.
        destination: Absolute path inside the tree.
        content: File content.
        mode: File mode (default 0644).

    Returns:
        Host path of the written file.
    """
    dest = root / destination.lstrip("/")
    dest.parent.mkdir(parents=True, exist_ok=True, mode=DEFAULT_DIR_MODE)
    # Replace symlinks (e.g. a chroot's resolv.conf) instead of writing through.
    if dest.is_symlink():
        dest.unlink()
    dest.write_text(content)
    dest.chmod(DEFAULT_FILE_MODE if mode is None else mode)
    logger.debug("Wrote %s", dest)
    return dest


__all__ = [
    "render_fstab",
    "render_hostname",
    "render_hosts",
    "render_interface",
    "render_policy_rc_d",
    "render_rc_local",
    "render_sources_list",
    "write_file",
]
