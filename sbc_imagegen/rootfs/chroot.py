"""Chroot preparation for provisioning a foreign-architecture tree.

Inside `prepared_chroot()` the tree has the host's DNS configuration,
the kernel filesystems (/proc, /sys, /dev, /dev/pts) mounted, and a
policy-rc.d that stops package maintainer scripts from starting daemons.
Everything is undone on exit, also when provisioning fails.
"""

from __future__ import annotations

import logging
import os
import shutil
from collections.abc import Iterator, Sequence
from contextlib import ExitStack, contextmanager
from pathlib import Path

from sbc_imagegen.device import mounted
from sbc_imagegen.rootfs.files import render_policy_rc_d, write_file
from sbc_imagegen.runner import CommandResult, CommandRunner

logger = logging.getLogger(__name__)

POLICY_RC_D = "/usr/sbin/policy-rc.d"
RESOLV_CONF = "/etc/resolv.conf"
RESOLV_CONF_SAVED = "/etc/resolv.conf.sbc-imagegen"

CHROOT_ENV = {
    "DEBIAN_FRONTEND": "noninteractive",
    "DEBCONF_NONINTERACTIVE_SEEN": "true",
    "LC_ALL": "C",
    "LANGUAGE": "C",
    "LANG": "C",
}

# (source, relative target, fstype, options)
KERNEL_FILESYSTEMS = (
    ("proc", "proc", "proc", None),
    ("sysfs", "sys", "sysfs", None),
    ("/dev", "dev", None, "bind"),
    ("devpts", "dev/pts", "devpts", "gid=5,mode=620"),
)


def run_in_chroot(
    runner: CommandRunner,
    root: Path,
    cmd: Sequence[str],
    *,
    input: str | None = None,
) -> CommandResult:
    """Run a command inside the tree with a non-interactive environment."""
    return runner.run(["chroot", root, *cmd], input=input, env=CHROOT_ENV)


@contextmanager
def _host_resolv_conf(root: Path, host_resolv: Path) -> Iterator[None]:
    target = root / RESOLV_CONF.lstrip("/")
    saved = root / RESOLV_CONF_SAVED.lstrip("/")
    had_original = target.exists() or target.is_symlink()
    if had_original:
        os.replace(target, saved)
    target.parent.mkdir(parents=True, exist_ok=True)
    # Follow the host symlink (systemd-resolved) to copy real content.
    shutil.copyfile(host_resolv, target)
    try:
        yield
    finally:
        target.unlink(missing_ok=True)
        if had_original:
            os.replace(saved, target)


@contextmanager
def _policy_rc_d(root: Path) -> Iterator[None]:
    policy = write_file(root, POLICY_RC_D, render_policy_rc_d(), mode=0o755)
    try:
        yield
    finally:
        policy.unlink(missing_ok=True)


@contextmanager
def prepared_chroot(
    runner: CommandRunner,
    root: Path,
    host_resolv: Path = Path(RESOLV_CONF),
) -> Iterator[Path]:
    """Prepare `root` for running package tools in a chroot.

    Yields:
        The root path.
    """
    with ExitStack() as stack:
        stack.enter_context(_host_resolv_conf(root, host_resolv))
        stack.enter_context(_policy_rc_d(root))
        for source, relative, fstype, options in KERNEL_FILESYSTEMS:
            stack.enter_context(
                mounted(
                    runner,
                    source,
                    root / relative,
                    fstype=fstype,
                    options=options,
                )
            )
        logger.info("Chroot prepared at %s", root)
        yield root
    logger.info("Chroot released at %s", root)


__all__ = [
    "CHROOT_ENV",
    "POLICY_RC_D",
    "prepared_chroot",
    "run_in_chroot",
]
