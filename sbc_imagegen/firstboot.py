#!/usr/bin/python3
"""One-time first-boot setup for images built by sbc-imagegen.

This module is installed verbatim as /etc/rc.firstboot and runs on the
device from /etc/rc.local at its first power-up. It finishes the
host-specific setup a shared image cannot carry:

1. Signal start on the status LEDs
2. Regenerate SSH host keys
3. Grow the root partition and filesystem to fill the card
4. Regenerate the D-Bus / systemd machine id
5. Rebuild the initramfs
6. Restart networking services in order
7. Remove itself and its rc.local invocation
8. Switch the LEDs to their steady-state triggers

Any failing step aborts the run before step 7, so the next boot retries
from the beginning. Steps 1-6 are therefore safe to repeat. Once step 7
has run, invoking the script again does nothing.

The device has the Debian python3 package and none of the build host's
libraries: import nothing outside the standard library here.
"""

from __future__ import annotations

import argparse
import logging
import os
import re
import shlex
import subprocess
import sys
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from pathlib import Path

SCRIPT_PATH = "/etc/rc.firstboot"
DEFAULTS_PATH = "/etc/default/rc.firstboot"
RC_LOCAL_PATH = "/etc/rc.local"
LOG_PATH = "/var/log/rc.firstboot.log"

# Line added to /etc/rc.local; removed again by deactivate().
INVOCATION = f"[ -x {SCRIPT_PATH} ] && {SCRIPT_PATH} || true"

SSH_SERVICE = "ssh"

# Partitions are aligned to 1 MiB; less free space than that is not worth
# growing into.
ALIGNMENT_SECTORS = 2048

logger = logging.getLogger("rc.firstboot")


class FirstBootError(Exception):
    """A first-boot step failed."""

    def __init__(self, step: str, message: str) -> None:
        super().__init__(f"{step}: {message}")
        self.step = step
        self.message = message


@dataclass
class Led:
    """Status LED with its busy and idle triggers."""

    name: str
    busy_trigger: str = "timer"
    idle_trigger: str = "none"


@dataclass
class FirstBootSettings:
    """Settings read from /etc/default/rc.firstboot.

    Attributes:
        root_device: Root partition (e.g. /dev/mmcblk0p2). Looked up in
            /proc/mounts when not set.
        ssh_key_types: Host key types passed to ssh-keygen -t.
        services: Services restarted, in this order, at the end.
        leds: Status LEDs.
    """

    root_device: str | None = None
    ssh_key_types: list[str] = field(
        default_factory=lambda: ["rsa", "dsa", "ecdsa", "ed25519"]
    )
    services: list[str] = field(default_factory=lambda: ["networking", "ssh"])
    leds: list[Led] = field(default_factory=list)


def parse_defaults(text: str) -> FirstBootSettings:
    """Parse a shell-style KEY="value" defaults file.

    Recognized keys: ROOT_DEVICE, SSH_KEY_TYPES, SERVICES and LEDS, where
    LEDS is a list of ``name=busy,idle`` words. Unknown keys are ignored.
    """
    values: dict[str, str] = {}
    for raw_line in text.splitlines():
        line = raw_line.strip()
        if not line or line.startswith("#") or "=" not in line:
            continue
        key, _, value = line.partition("=")
        words = shlex.split(value)
        values[key.strip()] = " ".join(words)

    settings = FirstBootSettings()
    if values.get("ROOT_DEVICE"):
        settings.root_device = values["ROOT_DEVICE"]
    if "SSH_KEY_TYPES" in values:
        settings.ssh_key_types = values["SSH_KEY_TYPES"].split()
    if "SERVICES" in values:
        settings.services = values["SERVICES"].split()
    for word in values.get("LEDS", "").split():
        name, _, triggers = word.rpartition("=")
        busy, _, idle = triggers.partition(",")
        if name and busy:
            settings.leds.append(Led(name, busy, idle or "none"))
    return settings


def render_defaults(settings: FirstBootSettings) -> str:
    """Render settings in the format read by parse_defaults()."""
    leds = " ".join(
        f"{led.name}={led.busy_trigger},{led.idle_trigger}" for led in settings.leds
    )
    lines = [
        "# Settings for /etc/rc.firstboot, removed together with it.",
        f"ROOT_DEVICE={shlex.quote(settings.root_device or '')}",
        f"SSH_KEY_TYPES={shlex.quote(' '.join(settings.ssh_key_types))}",
        f"SERVICES={shlex.quote(' '.join(settings.services))}",
        f"LEDS={shlex.quote(leds)}",
    ]
    return "\n".join(lines) + "\n"


_PARTITION_PATTERNS = (
    # /dev/mmcblk0p2, /dev/nvme0n1p2, /dev/loop0p2
    re.compile(r"^(?P<disk>/dev/(?:mmcblk\d+|nvme\d+n\d+|loop\d+))p(?P<num>\d+)$"),
    # /dev/sda2, /dev/vdb1
    re.compile(r"^(?P<disk>/dev/[shv]d[a-z]+)(?P<num>\d+)$"),
)


def split_partition(device: str) -> tuple[str, int]:
    """Split a partition path into its disk and partition number.

    Raises:
        ValueError: If the path is not a recognizable partition.
    """
    for pattern in _PARTITION_PATTERNS:
        match = pattern.match(device)
        if match:
            return match.group("disk"), int(match.group("num"))
    raise ValueError(f"Not a partition device: {device}")


def find_root_device(mounts_text: str) -> str:
    """Return the device mounted at / according to /proc/mounts content.

    Raises:
        ValueError: If / is not mounted from a real /dev node.
    """
    for line in mounts_text.splitlines():
        parts = line.split()
        if len(parts) >= 2 and parts[1] == "/" and parts[0].startswith("/dev/"):
            if parts[0] != "/dev/root":
                return parts[0]
    raise ValueError("Cannot determine the root partition from /proc/mounts")


def _run_command(cmd: Sequence[str], input: str | None = None) -> None:
    result = subprocess.run(
        list(cmd),
        input=input,
        capture_output=True,
        text=True,
        check=False,
    )
    output = (result.stdout + result.stderr).strip()
    if output:
        logger.debug("%s: %s", cmd[0], output)
    if result.returncode != 0:
        raise subprocess.CalledProcessError(
            result.returncode, list(cmd), result.stdout, result.stderr
        )


class FirstBoot:
    """First-boot orchestrator.

    Args:
        settings: Parsed first-boot settings.
        root: Filesystem root the files live under (``/`` on the device).
        run: Callable executing a command; raises on failure.
    """

    def __init__(
        self,
        settings: FirstBootSettings,
        root: str | os.PathLike[str] = "/",
        run: Callable[..., None] | None = None,
    ) -> None:
        self.settings = settings
        self.root = Path(root)
        self._run = run or _run_command

    def path(self, device_path: str) -> Path:
        """Map an absolute device path below the configured root."""
        return self.root / device_path.lstrip("/")

    def run(self, step: str, *cmd: str, input: str | None = None) -> None:
        logger.info("Running: %s", shlex.join(cmd))
        try:
            self._run(list(cmd), input=input)
        except (subprocess.CalledProcessError, OSError) as e:
            raise FirstBootError(step, f"{shlex.join(cmd)} failed: {e}") from e

    def is_pending(self) -> bool:
        """Whether first-boot setup still has to run."""
        return self.path(SCRIPT_PATH).exists()

    # Steps

    def _set_led_triggers(self, busy: bool) -> None:
        for led in self.settings.leds:
            trigger = led.busy_trigger if busy else led.idle_trigger
            trigger_path = self.path(f"/sys/class/leds/{led.name}/trigger")
            try:
                trigger_path.write_text(f"{trigger}\n")
            except OSError as e:
                logger.warning("Cannot set LED %s to %s: %s", led.name, trigger, e)

    def signal_start(self) -> None:
        self._set_led_triggers(busy=True)

    def regenerate_ssh_host_keys(self) -> None:
        step = "ssh host keys"
        self.run(step, "systemctl", "stop", SSH_SERVICE)
        for key in sorted(self.path("/etc/ssh").glob("ssh_host_*")):
            key.unlink()
        for key_type in self.settings.ssh_key_types:
            self.run(
                step,
                "ssh-keygen", "-q", "-N", "", "-t", key_type,
                "-f", str(self.path(f"/etc/ssh/ssh_host_{key_type}_key")),
            )
        self.run(step, "systemctl", "start", SSH_SERVICE)

    def _read_sectors(self, sysfs_path: str) -> int:
        return int(self.path(sysfs_path).read_text().strip())

    def partition_has_free_space(self, device: str) -> bool:
        """Whether unallocated space follows the given partition."""
        disk, _ = split_partition(device)
        disk_name = Path(disk).name
        part_name = Path(device).name
        disk_size = self._read_sectors(f"/sys/class/block/{disk_name}/size")
        start = self._read_sectors(f"/sys/class/block/{part_name}/start")
        size = self._read_sectors(f"/sys/class/block/{part_name}/size")
        free = disk_size - (start + size)
        logger.info("%s: %d sectors unallocated after %s", disk, free, device)
        return free >= ALIGNMENT_SECTORS

    def expand_root_filesystem(self) -> None:
        step = "expand root"
        device = self.settings.root_device
        if not device:
            try:
                device = find_root_device(self.path("/proc/mounts").read_text())
            except (OSError, ValueError) as e:
                raise FirstBootError(step, str(e)) from e
        try:
            disk, number = split_partition(device)
            needs_growing = self.partition_has_free_space(device)
        except (OSError, ValueError) as e:
            raise FirstBootError(step, str(e)) from e

        if needs_growing:
            # Keep the start sector, extend to the end of the disk.
            self.run(
                step,
                "sfdisk", "--no-reread", "--no-tell-kernel", "-N", str(number), disk,
                input=",+\n",
            )
            self.run(step, "partx", "-u", "--nr", str(number), disk)
        else:
            logger.info("%s already fills %s", device, disk)
        self.run(step, "resize2fs", device)

    def regenerate_machine_id(self) -> None:
        step = "machine id"
        etc_id = self.path("/etc/machine-id")
        dbus_id = self.path("/var/lib/dbus/machine-id")
        for id_file in (dbus_id, etc_id):
            if id_file.exists() or id_file.is_symlink():
                id_file.unlink()
        self.run(step, "dbus-uuidgen", f"--ensure={etc_id}")
        dbus_id.parent.mkdir(parents=True, exist_ok=True)
        dbus_id.symlink_to("/etc/machine-id")

    def rebuild_initramfs(self) -> None:
        self.run("initramfs", "update-initramfs", "-u")

    def restart_services(self) -> None:
        for service in self.settings.services:
            self.run("restart services", "systemctl", "restart", service)

    def deactivate(self) -> None:
        """Remove the rc.local invocation, then the script and its settings."""
        rc_local = self.path(RC_LOCAL_PATH)
        if rc_local.exists():
            lines = rc_local.read_text().splitlines(keepends=True)
            kept = [line for line in lines if SCRIPT_PATH not in line]
            if kept != lines:
                tmp = rc_local.with_name(rc_local.name + ".firstboot-tmp")
                tmp.write_text("".join(kept))
                tmp.chmod(rc_local.stat().st_mode & 0o7777)
                os.replace(tmp, rc_local)
        self.path(DEFAULTS_PATH).unlink(missing_ok=True)
        self.path(SCRIPT_PATH).unlink(missing_ok=True)

    def signal_done(self) -> None:
        self._set_led_triggers(busy=False)

    def steps(self) -> list[tuple[str, Callable[[], None]]]:
        return [
            ("signal start", self.signal_start),
            ("regenerate ssh host keys", self.regenerate_ssh_host_keys),
            ("expand root filesystem", self.expand_root_filesystem),
            ("regenerate machine id", self.regenerate_machine_id),
            ("rebuild initramfs", self.rebuild_initramfs),
            ("restart services", self.restart_services),
            ("deactivate", self.deactivate),
            ("signal done", self.signal_done),
        ]

    def execute(self) -> bool:
        """Run all steps once.

        Returns:
            True if setup ran, False if it had already completed.

        Raises:
            FirstBootError: If a step failed. The script stays in place.
        """
        if not self.is_pending():
            logger.info("%s is gone, first boot setup already done", SCRIPT_PATH)
            return False
        for name, step in self.steps():
            logger.info("First boot: %s", name)
            try:
                step()
            except OSError as e:
                raise FirstBootError(name, str(e)) from e
        logger.info("First boot setup complete")
        return True


def load_settings(root: Path) -> FirstBootSettings:
    defaults = root / DEFAULTS_PATH.lstrip("/")
    if defaults.exists():
        return parse_defaults(defaults.read_text())
    return FirstBootSettings()


def _setup_logging(root: Path) -> None:
    handlers: list[logging.Handler] = [logging.StreamHandler(sys.stderr)]
    log_file = root / LOG_PATH.lstrip("/")
    if log_file.parent.is_dir():
        handlers.append(logging.FileHandler(log_file))
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s rc.firstboot %(levelname)s %(message)s",
        handlers=handlers,
    )


def main(argv: Sequence[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="One-time first boot setup")
    parser.add_argument(
        "--root", default="/", help="filesystem root (default: /)"
    )
    args = parser.parse_args(argv)
    root = Path(args.root)

    _setup_logging(root)
    try:
        settings = load_settings(root)
    except (OSError, ValueError) as e:
        logger.error("Cannot read %s, retrying on next boot: %s", DEFAULTS_PATH, e)
        return 1
    try:
        FirstBoot(settings, root=root).execute()
    except FirstBootError as e:
        logger.error("First boot setup failed, retrying on next boot: %s", e)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
