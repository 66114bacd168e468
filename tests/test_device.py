"""Tests for device.py loop devices and mounts."""

import logging
from pathlib import Path

import pytest
from conftest import FakeRunner

from sbc_imagegen.device import (
    get_mount_points_under,
    loop_device,
    mounted,
    partition_path,
)
from sbc_imagegen.runner import CommandError


class TestPartitionPath:
    """Tests for partition_path."""

    @pytest.mark.parametrize(
        ("device", "number", "expected"),
        [
            ("/dev/loop0", 1, "/dev/loop0p1"),
            ("/dev/mmcblk0", 2, "/dev/mmcblk0p2"),
            ("/dev/nvme0n1", 1, "/dev/nvme0n1p1"),
            ("/dev/sda", 2, "/dev/sda2"),
        ],
    )
    def test_partition_path(self, device: str, number: int, expected: str) -> None:
        """Digit-terminated devices take a 'p' separator."""
        assert partition_path(device, number) == expected


class TestMountPoints:
    """Tests for get_mount_points_under."""

    def test_finds_nested_mounts(self, tmp_path: Path) -> None:
        """Mounts at and below the directory are listed."""
        target = tmp_path / "my rootfs"
        target.mkdir()
        escaped = str(target).replace(" ", "\\040")
        mounts = tmp_path / "mounts"
        mounts.write_text(
            "/dev/sda1 / ext4 rw 0 0\n"
            f"proc {escaped}/proc proc rw 0 0\n"
            f"/dev {escaped}/dev none rw,bind 0 0\n"
            f"tmpfs {escaped}-other tmpfs rw 0 0\n"
        )

        found = get_mount_points_under(target, mounts_file=str(mounts))

        assert found == [f"{target}/proc", f"{target}/dev"]

    def test_unreadable_mount_table(self, tmp_path: Path) -> None:
        """A missing mount table yields no mounts."""
        assert get_mount_points_under(tmp_path, str(tmp_path / "missing")) == []


class TestLoopDevice:
    """Tests for loop_device."""

    def test_attach_and_detach(self, tmp_path: Path) -> None:
        """The image is attached with partition scanning and detached after."""
        runner = FakeRunner(outputs={"losetup": "/dev/loop3\n"})
        image = tmp_path / "x.img"

        with loop_device(runner, image) as device:
            assert device == "/dev/loop3"

        assert runner.commands == [
            ["losetup", "--find", "--show", "--partscan", str(image)],
            ["losetup", "--detach", "/dev/loop3"],
        ]

    def test_detached_when_body_raises(self, tmp_path: Path) -> None:
        """The device is released on errors too."""
        runner = FakeRunner(outputs={"losetup": "/dev/loop3"})

        with pytest.raises(RuntimeError):
            with loop_device(runner, tmp_path / "x.img"):
                raise RuntimeError("mkfs exploded")

        assert runner.commands[-1] == ["losetup", "--detach", "/dev/loop3"]


class TestMounted:
    """Tests for mounted."""

    def test_mount_options(self, tmp_path: Path) -> None:
        """Type and options are passed to mount; target is created."""
        runner = FakeRunner()
        target = tmp_path / "mnt" / "dev"

        with mounted(runner, "/dev", target, options="bind"):
            assert target.is_dir()

        assert runner.commands == [
            ["mount", "-o", "bind", "/dev", str(target)],
            ["umount", str(target)],
        ]

    def test_unmount_failure_raises_on_success_path(self, tmp_path: Path) -> None:
        """A failing unmount after a successful body is an error."""
        runner = FakeRunner(fail_on="umount")

        with pytest.raises(CommandError):
            with mounted(runner, "/dev/loop0p2", tmp_path / "root", fstype="ext4"):
                pass

    def test_unmount_failure_logged_while_unwinding(
        self, tmp_path: Path, caplog
    ) -> None:
        """The body's error wins over a failing unmount."""
        runner = FakeRunner(fail_on="umount")

        with caplog.at_level(logging.ERROR, logger="sbc_imagegen.device"):
            with pytest.raises(RuntimeError, match="rsync died"):
                with mounted(runner, "/dev/loop0p2", tmp_path / "root"):
                    raise RuntimeError("rsync died")

        assert "Cleanup failed" in caplog.text
