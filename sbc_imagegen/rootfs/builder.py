"""Root filesystem builder.

This module handles:
- Bootstrapping a Debian base system for the board's architecture
- Installing board packages (bootloader, kernel, SSH) inside a chroot
- Writing fstab, apt sources, network, hostname and boot configuration
- Installing an SSH public key for root
- Embedding the first-boot script and its rc.local invocation

The finished tree is the input of the image builder.
"""

from __future__ import annotations

import logging
import platform
import shutil
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path

from sbc_imagegen import firstboot
from sbc_imagegen.boards.schema import BoardSchema
from sbc_imagegen.device import get_mount_points_under
from sbc_imagegen.rootfs.chroot import prepared_chroot, run_in_chroot
from sbc_imagegen.rootfs.files import (
    render_fstab,
    render_hostname,
    render_hosts,
    render_interface,
    render_rc_local,
    render_sources_list,
    write_file,
)
from sbc_imagegen.runner import CommandRunner

logger = logging.getLogger(__name__)

# Debian architecture names for `platform.machine()` values.
HOST_ARCHITECTURES = {
    "x86_64": "amd64",
    "amd64": "amd64",
    "i686": "i386",
    "i386": "i386",
    "aarch64": "arm64",
    "arm64": "arm64",
    "armv7l": "armhf",
    "armv6l": "armel",
}

SSH_KEY_PREFIXES = ("ssh-", "ecdsa-sha2-", "sk-ssh-", "sk-ecdsa-sha2-")

REQUIRED_TOOLS = ["chroot", "mount", "umount"]


class RootfsBuildError(Exception):
    """Raised when the root filesystem cannot be built."""

    def __init__(self, message: str, code: str = "rootfs_error") -> None:
        super().__init__(message)
        self.message = message
        self.code = code


@dataclass
class RootfsResult:
    """Result of a root filesystem build.

    Attributes:
        target: Root of the built tree.
        board_id: Board the tree was built for.
        release: Debian release.
        hostname: Configured hostname.
        debootstrapped: Whether a fresh base system was bootstrapped.
        written_files: Paths (inside the tree) written by the builder.
        started_at: Build start time.
        finished_at: Build finish time.
    """

    target: Path
    board_id: str
    release: str
    hostname: str
    debootstrapped: bool
    written_files: list[str] = field(default_factory=list)
    started_at: datetime | None = None
    finished_at: datetime | None = None


def host_architecture() -> str:
    """Return the Debian architecture of the build host."""
    machine = platform.machine()
    return HOST_ARCHITECTURES.get(machine, machine)


def debootstrap_tools(board: BoardSchema) -> list[str]:
    """Return the host tools needed to bootstrap for `board`."""
    if board.arch != host_architecture() and shutil.which("qemu-debootstrap"):
        return ["qemu-debootstrap"]
    return ["debootstrap"]


def compose_debootstrap_command(
    board: BoardSchema,
    release: str,
    target: Path,
    mirror: str,
    *,
    foreign: bool,
) -> list[str]:
    """Compose the debootstrap invocation.

    Args:
        board: Board profile.
        release: Debian release (e.g. 'bullseye').
        target: Directory to bootstrap into.
        mirror: Debian mirror URL.
        foreign: Use qemu-debootstrap for a foreign architecture.

    Returns:
        Command as list of strings suitable for subprocess.
    """
    tool = "qemu-debootstrap" if foreign else "debootstrap"
    return [
        tool,
        f"--arch={board.arch}",
        f"--components={','.join(board.components)}",
        release,
        str(target),
        mirror,
    ]


def validate_ssh_public_key(text: str) -> str:
    """Validate and normalize an SSH public key file's content.

    Raises:
        RootfsBuildError: If a line does not look like a public key.
    """
    keys = [line.strip() for line in text.splitlines() if line.strip()]
    if not keys:
        raise RootfsBuildError("SSH key file is empty", code="invalid_ssh_key")
    for key in keys:
        if key.startswith("#"):
            continue
        if not key.startswith(SSH_KEY_PREFIXES) or len(key.split()) < 2:
            raise RootfsBuildError(
                f"Not an SSH public key: {key[:40]}", code="invalid_ssh_key"
            )
    return "\n".join(keys) + "\n"


def add_rc_local_invocation(existing: str | None) -> str:
    """Return rc.local content that runs the first-boot script.

    An existing rc.local keeps its content; the invocation is inserted
    before its last ``exit`` line (or appended) unless already present.
    A file without a shebang gets ``#!/bin/sh -e`` so it stays executable.
    """
    if existing is None or not existing.strip():
        return render_rc_local()
    if firstboot.INVOCATION in existing:
        return existing
    lines = existing.splitlines(keepends=True)
    if not lines[0].startswith("#!"):
        lines.insert(0, "#!/bin/sh -e\n")
    if not lines[-1].endswith("\n"):
        lines[-1] += "\n"
    for index in range(len(lines) - 1, -1, -1):
        if lines[index].split()[:1] == ["exit"]:
            lines.insert(index, firstboot.INVOCATION + "\n")
            return "".join(lines)
    return "".join(lines) + firstboot.INVOCATION + "\n"


def firstboot_settings(board: BoardSchema) -> firstboot.FirstBootSettings:
    """Build the first-boot settings for `board`."""
    return firstboot.FirstBootSettings(
        root_device=board.root_device,
        ssh_key_types=list(board.ssh_key_types),
        services=list(board.restart_services),
        leds=[
            firstboot.Led(led.name, led.busy_trigger, led.idle_trigger)
            for led in board.leds
        ],
    )


def install_firstboot(root: Path, board: BoardSchema) -> list[str]:
    """Embed the first-boot script, its settings and the rc.local hook.

    Returns:
        Paths inside the tree that were written.
    """
    script = Path(firstboot.__file__).read_text()
    write_file(root, firstboot.SCRIPT_PATH, script, mode=0o755)
    write_file(
        root,
        firstboot.DEFAULTS_PATH,
        firstboot.render_defaults(firstboot_settings(board)),
    )
    rc_local = root / firstboot.RC_LOCAL_PATH.lstrip("/")
    existing = rc_local.read_text() if rc_local.exists() else None
    write_file(
        root, firstboot.RC_LOCAL_PATH, add_rc_local_invocation(existing), mode=0o755
    )
    logger.info("First-boot script installed at %s", firstboot.SCRIPT_PATH)
    return [firstboot.SCRIPT_PATH, firstboot.DEFAULTS_PATH, firstboot.RC_LOCAL_PATH]


def install_ssh_key(root: Path, key_text: str) -> str:
    """Install `key_text` as root's authorized_keys; returns the tree path."""
    ssh_dir = root / "root" / ".ssh"
    ssh_dir.mkdir(parents=True, exist_ok=True)
    ssh_dir.chmod(0o700)
    destination = "/root/.ssh/authorized_keys"
    write_file(root, destination, key_text, mode=0o600)
    return destination


def write_configuration(
    root: Path,
    board: BoardSchema,
    *,
    hostname: str,
    release: str,
    mirror: str,
) -> list[str]:
    """Write the system configuration files into the tree.

    Returns:
        Paths inside the tree that were written.
    """
    files: dict[str, tuple[str, int | None]] = {
        "/etc/fstab": (render_fstab(board), None),
        "/etc/apt/sources.list": (
            render_sources_list(mirror, release, board.components),
            None,
        ),
        f"/etc/network/interfaces.d/{board.network_interface}": (
            render_interface(board.network_interface),
            None,
        ),
        "/etc/hostname": (render_hostname(hostname), None),
        "/etc/hosts": (render_hosts(hostname), None),
    }
    if board.boot_config is not None:
        files[f"{board.boot_mountpoint}/config.txt"] = (board.boot_config, None)
    for spec in board.files:
        mode = int(spec.mode, 8) if spec.mode else None
        files[spec.destination] = (spec.content, mode)

    for destination, (content, mode) in files.items():
        write_file(root, destination, content, mode=mode)
    return list(files)


def _check_target(target: Path, debootstrap: bool) -> None:
    leftover = get_mount_points_under(target)
    if leftover:
        raise RootfsBuildError(
            f"Target has mounted filesystems: {', '.join(leftover)}. "
            "Unmount them before building.",
            code="target_mounted",
        )
    if debootstrap:
        if target.exists() and any(target.iterdir()):
            raise RootfsBuildError(
                f"Target directory is not empty: {target}. "
                "Use --no-debootstrap to provision an existing tree.",
                code="target_not_empty",
            )
    elif not (target / "etc" / "debian_version").is_file():
        raise RootfsBuildError(
            f"No Debian tree at {target} (missing etc/debian_version)",
            code="not_a_debian_tree",
        )


def build_rootfs(
    target: Path,
    board: BoardSchema,
    *,
    runner: CommandRunner,
    mirror: str,
    hostname: str | None = None,
    release: str | None = None,
    ssh_key: Path | None = None,
    debootstrap: bool = True,
) -> RootfsResult:
    """Build a provisioned root filesystem tree for `board`.

    Args:
        target: Directory to build the tree in.
        board: Board profile.
        runner: Command runner for external tools.
        mirror: Debian mirror URL.
        hostname: Hostname (default: the board id).
        release: Debian release (default: the board's default release).
        ssh_key: Optional public key file installed for root.
        debootstrap: Bootstrap a fresh base system first. When False, the
            target must already hold a Debian tree.

    Returns:
        RootfsResult describing the built tree.

    Raises:
        RootfsBuildError: If the target or inputs are unusable.
        CommandError: If an external command fails.
    """
    target = target.resolve()
    hostname = hostname or board.board_id
    release = release or board.default_release
    started_at = datetime.now(timezone.utc)

    key_text = validate_ssh_public_key(ssh_key.read_text()) if ssh_key else None
    _check_target(target, debootstrap)

    logger.info(
        "Building %s root filesystem (%s, %s) in %s",
        board.board_id,
        release,
        board.arch,
        target,
    )

    if debootstrap:
        target.mkdir(parents=True, exist_ok=True)
        foreign = debootstrap_tools(board) == ["qemu-debootstrap"]
        runner.run(
            compose_debootstrap_command(
                board, release, target, mirror, foreign=foreign
            )
        )

    written = write_configuration(
        target, board, hostname=hostname, release=release, mirror=mirror
    )

    with prepared_chroot(runner, target):
        run_in_chroot(runner, target, ["apt-get", "update"])
        run_in_chroot(
            runner,
            target,
            ["apt-get", "install", "-y", "--no-install-recommends", *board.packages],
        )
        run_in_chroot(runner, target, ["apt-get", "clean"])

    # Package installs may have replaced files the board profile owns.
    written = write_configuration(
        target, board, hostname=hostname, release=release, mirror=mirror
    )
    if key_text:
        written.append(install_ssh_key(target, key_text))
    written.extend(install_firstboot(target, board))

    finished_at = datetime.now(timezone.utc)
    logger.info(
        "Root filesystem ready in %s (%.1fs)",
        target,
        (finished_at - started_at).total_seconds(),
    )
    return RootfsResult(
        target=target,
        board_id=board.board_id,
        release=release,
        hostname=hostname,
        debootstrapped=debootstrap,
        written_files=written,
        started_at=started_at,
        finished_at=finished_at,
    )


__all__ = [
    "REQUIRED_TOOLS",
    "RootfsBuildError",
    "RootfsResult",
    "add_rc_local_invocation",
    "build_rootfs",
    "compose_debootstrap_command",
    "debootstrap_tools",
    "firstboot_settings",
    "host_architecture",
    "install_firstboot",
    "install_ssh_key",
    "validate_ssh_public_key",
    "write_configuration",
]
