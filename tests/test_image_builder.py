"""Tests for the disk image builder.

Partitioning, loop devices, formatting and copying go through
FakeRunner. The image file itself is created for real (sparse).
"""

from pathlib import Path
from unittest.mock import patch

import pytest
from conftest import FakeRunner

from sbc_imagegen.boards.schema import BoardSchema
from sbc_imagegen.image.builder import (
    ImageBuildError,
    SourceTreeError,
    TargetExistsError,
    build_image,
    create_image_file,
    write_bootloader,
)
from sbc_imagegen.image.layout import compute_layout, tree_size
from sbc_imagegen.runner import CommandError

LOOP = "/dev/loop7"


@pytest.fixture
def runner() -> FakeRunner:
    return FakeRunner(outputs={"losetup": f"{LOOP}\n"})


@pytest.fixture
def source_tree(tmp_path: Path) -> Path:
    """A small prepared root filesystem."""
    root = tmp_path / "rootfs"
    (root / "etc").mkdir(parents=True)
    (root / "etc" / "hostname").write_text("rpi2\n")
    (root / "boot" / "firmware").mkdir(parents=True)
    (root / "boot" / "firmware" / "config.txt").write_text("enable_uart=1\n")
    (root / "proc").mkdir()
    return root


@pytest.fixture
def work_tmp(tmp_path: Path) -> Path:
    path = tmp_path / "work"
    path.mkdir()
    return path


def _commands(runner: FakeRunner, program: str) -> list[list[str]]:
    return [c for c in runner.commands if c[0] == program]


class TestBuildImage:
    """Tests for a successful build_image."""

    def test_image_created_with_layout(
        self, source_tree, tmp_path, rpi2: BoardSchema, runner, work_tmp
    ) -> None:
        """The image file has exactly the computed size."""
        target = tmp_path / "out.img"
        layout = compute_layout(tree_size(source_tree))

        result = build_image(
            source_tree, target, rpi2, runner=runner, tmp_dir=work_tmp
        )

        assert result.image_path == target
        assert result.layout == layout
        assert target.stat().st_size == layout.total_bytes
        sfdisk_index = runner.programs.index("sfdisk")
        assert runner.inputs[sfdisk_index] == layout.to_sfdisk_script()

    def test_partitions_formatted(
        self, source_tree, tmp_path, rpi2, runner, work_tmp
    ) -> None:
        """Boot is FAT32 labelled BOOT, root is ext4 labelled root."""
        build_image(
            source_tree, tmp_path / "out.img", rpi2, runner=runner, tmp_dir=work_tmp
        )

        assert _commands(runner, "mkfs.vfat") == [
            ["mkfs.vfat", "-F", "32", "-n", "BOOT", f"{LOOP}p1"]
        ]
        assert _commands(runner, "mkfs.ext4") == [
            ["mkfs.ext4", "-F", "-q", "-L", "root", f"{LOOP}p2"]
        ]

    def test_tree_copied_into_partitions(
        self, source_tree, tmp_path, rpi2, runner, work_tmp
    ) -> None:
        """Root gets the tree minus the boot dir; boot gets the boot dir."""
        build_image(
            source_tree, tmp_path / "out.img", rpi2, runner=runner, tmp_dir=work_tmp
        )

        root_copy, boot_copy = _commands(runner, "rsync")
        assert "-aHAX" in root_copy
        assert "--numeric-ids" in root_copy
        assert "--exclude=/proc/*" in root_copy
        assert "--exclude=/boot/firmware/*" in root_copy
        assert root_copy[-2] == f"{source_tree.resolve()}/"
        assert boot_copy[-2] == f"{source_tree.resolve()}/boot/firmware/"
        assert runner.programs[-4] == "sync"

    def test_everything_released(
        self, source_tree, tmp_path, rpi2, runner, work_tmp
    ) -> None:
        """Mounts and the loop device are released in reverse order."""
        build_image(
            source_tree, tmp_path / "out.img", rpi2, runner=runner, tmp_dir=work_tmp
        )

        tail = runner.commands[-3:]
        assert tail[0][0] == "umount"
        assert tail[0][1].endswith("boot")
        assert tail[1][0] == "umount"
        assert tail[1][1].endswith("root")
        assert tail[2] == ["losetup", "--detach", LOOP]
        assert list(work_tmp.iterdir()) == []

    def test_bootloader_written(
        self, source_tree, tmp_path, cubieboard5: BoardSchema, runner, work_tmp
    ) -> None:
        """Boards with a raw bootloader get it written at its offset."""
        blob = source_tree / cubieboard5.bootloader.path.lstrip("/")
        blob.parent.mkdir(parents=True)
        blob.write_bytes(b"\0" * 4096)

        build_image(
            source_tree,
            tmp_path / "out.img",
            cubieboard5,
            runner=runner,
            tmp_dir=work_tmp,
        )

        (dd,) = _commands(runner, "dd")
        assert f"if={blob}" in dd
        assert f"of={LOOP}" in dd
        assert "seek=8192" in dd
        assert "oflag=seek_bytes" in dd
        assert "conv=notrunc,fsync" in dd


class TestBuildImageRefusals:
    """Tests for inputs that are refused before anything is done."""

    def test_existing_target_untouched(
        self, source_tree, tmp_path, rpi2, runner
    ) -> None:
        """An existing target is never overwritten."""
        target = tmp_path / "precious.img"
        target.write_bytes(b"do not touch")

        with pytest.raises(TargetExistsError) as exc_info:
            build_image(source_tree, target, rpi2, runner=runner)

        assert exc_info.value.code == "target_exists"
        assert target.read_bytes() == b"do not touch"
        assert runner.commands == []

    def test_dangling_symlink_target_refused(
        self, source_tree, tmp_path, rpi2, runner
    ) -> None:
        """A dangling symlink at the target path also counts as existing."""
        target = tmp_path / "link.img"
        target.symlink_to(tmp_path / "nowhere.img")

        with pytest.raises(TargetExistsError):
            build_image(source_tree, target, rpi2, runner=runner)
        assert not (tmp_path / "nowhere.img").exists()

    def test_missing_source(self, tmp_path, rpi2, runner) -> None:
        """A missing source tree is reported."""
        with pytest.raises(SourceTreeError) as exc_info:
            build_image(tmp_path / "nope", tmp_path / "out.img", rpi2, runner=runner)
        assert exc_info.value.code == "invalid_source_tree"
        assert not (tmp_path / "out.img").exists()

    def test_mounted_source_refused(
        self, source_tree, tmp_path, rpi2, runner
    ) -> None:
        """Filesystems still mounted in the tree would be measured and copied."""
        proc = str(source_tree / "proc")
        with patch(
            "sbc_imagegen.image.builder.get_mount_points_under", return_value=[proc]
        ), patch("sbc_imagegen.image.builder.tree_size") as mock_size:
            with pytest.raises(SourceTreeError, match="mounted"):
                build_image(source_tree, tmp_path / "out.img", rpi2, runner=runner)

        mock_size.assert_not_called()
        assert not (tmp_path / "out.img").exists()
        assert runner.commands == []

    def test_missing_bootloader(
        self, source_tree, tmp_path, cubieboard5, runner
    ) -> None:
        """A board needing a raw bootloader needs it in the tree."""
        with pytest.raises(SourceTreeError, match="Bootloader"):
            build_image(source_tree, tmp_path / "out.img", cubieboard5, runner=runner)
        assert runner.commands == []


class TestBuildImageFailures:
    """Tests for cleanup after failed builds."""

    def test_mkfs_failure_detaches_and_removes_image(
        self, source_tree, tmp_path, rpi2, work_tmp
    ) -> None:
        """The loop device is detached and the partial image removed."""
        runner = FakeRunner(fail_on="mkfs.ext4", outputs={"losetup": LOOP})
        target = tmp_path / "out.img"

        with pytest.raises(CommandError):
            build_image(source_tree, target, rpi2, runner=runner, tmp_dir=work_tmp)

        assert runner.commands[-1] == ["losetup", "--detach", LOOP]
        assert "mount" not in runner.programs
        assert not target.exists()

    def test_rsync_failure_unmounts(
        self, source_tree, tmp_path, rpi2, work_tmp
    ) -> None:
        """Both partitions are unmounted before the loop device is detached."""
        runner = FakeRunner(fail_on="rsync", outputs={"losetup": LOOP})
        target = tmp_path / "out.img"

        with pytest.raises(CommandError):
            build_image(source_tree, target, rpi2, runner=runner, tmp_dir=work_tmp)

        assert runner.programs[-3:] == ["umount", "umount", "losetup"]
        assert list(work_tmp.iterdir()) == []
        assert not target.exists()

    def test_unmount_failure_keeps_original_error(
        self, source_tree, tmp_path, rpi2, work_tmp
    ) -> None:
        """A failing release does not mask the error that caused it."""

        class FailingRunner(FakeRunner):
            def run(self, cmd, **kwargs):
                if cmd[0] == "umount":
                    self.commands.append([str(c) for c in cmd])
                    raise CommandError("target is busy")
                return super().run(cmd, **kwargs)

        runner = FailingRunner(fail_on="rsync", outputs={"losetup": LOOP})

        with pytest.raises(CommandError, match="rsync"):
            build_image(
                source_tree, tmp_path / "out.img", rpi2, runner=runner, tmp_dir=work_tmp
            )

        assert runner.commands[-1] == ["losetup", "--detach", LOOP]


class TestImageHelpers:
    """Tests for create_image_file and write_bootloader."""

    def test_create_image_file(self, tmp_path: Path) -> None:
        """The file is created with the exact size."""
        target = tmp_path / "x.img"
        create_image_file(target, 3 * 512)
        assert target.stat().st_size == 1536

    def test_create_image_file_refuses_existing(self, tmp_path: Path) -> None:
        """Creation is exclusive."""
        target = tmp_path / "x.img"
        target.write_bytes(b"data")
        with pytest.raises(TargetExistsError):
            create_image_file(target, 512)
        assert target.read_bytes() == b"data"

    def test_bootloader_overlapping_boot_rejected(self, tmp_path: Path) -> None:
        """A blob reaching into the boot partition is refused."""
        blob = tmp_path / "u-boot.bin"
        blob.write_bytes(b"\0" * (1024 * 1024))
        runner = FakeRunner()

        with pytest.raises(ImageBuildError) as exc_info:
            write_bootloader(runner, blob, LOOP, 8192, compute_layout(0))

        assert exc_info.value.code == "bootloader_too_large"
        assert runner.commands == []

    def test_bootloader_fits(self, tmp_path: Path) -> None:
        """A blob ending exactly at the boot partition is allowed."""
        blob = tmp_path / "u-boot.bin"
        blob.write_bytes(b"\0" * (1024 * 1024 - 8192))
        runner = FakeRunner()

        write_bootloader(runner, blob, LOOP, 8192, compute_layout(0))

        assert runner.programs == ["dd"]
