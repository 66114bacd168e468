"""Shared fixtures for sbc_imagegen tests."""

import os
import shlex
from pathlib import Path

import pytest

from sbc_imagegen.boards import load_builtin_board
from sbc_imagegen.boards.schema import BoardSchema
from sbc_imagegen.runner import CommandError, CommandResult


class FakeRunner:
    """Stand-in for CommandRunner that records commands instead of running them.

    Args:
        fail_on: Program name whose invocation raises CommandError. For
            chroot invocations the program run inside the chroot matches.
        outputs: Captured stdout per program name.
    """

    def __init__(
        self,
        fail_on: str | None = None,
        outputs: dict[str, str] | None = None,
    ) -> None:
        self.fail_on = fail_on
        self.outputs = outputs or {}
        self.commands: list[list[str]] = []
        self.inputs: list[str | None] = []
        self.envs: list[dict[str, str] | None] = []

    def _matches(self, args: list[str]) -> bool:
        if self.fail_on is None:
            return False
        if args[0] == "chroot" and len(args) > 2:
            return args[2] == self.fail_on
        return args[0] == self.fail_on

    def run(self, cmd, *, input=None, env=None, cwd=None, capture=False):
        args = [os.fspath(c) for c in cmd]
        self.commands.append(args)
        self.inputs.append(input)
        self.envs.append(env)
        if self._matches(args):
            raise CommandError(
                f"Command failed with exit code 1: {shlex.join(args)}", exit_code=1
            )
        return CommandResult(
            command=shlex.join(args),
            exit_code=0,
            stdout=self.outputs.get(args[0], ""),
        )

    def output(self, cmd, **kwargs) -> str:
        return self.run(cmd, capture=True, **kwargs).stdout.strip()

    @property
    def programs(self) -> list[str]:
        """First word of every recorded command."""
        return [args[0] for args in self.commands]


@pytest.fixture
def fake_runner() -> FakeRunner:
    """A FakeRunner that succeeds for every command."""
    return FakeRunner(outputs={"losetup": "/dev/loop7\n"})


@pytest.fixture
def rpi2() -> BoardSchema:
    """The built-in Raspberry Pi 2 profile."""
    return load_builtin_board("rpi2")


@pytest.fixture
def cubieboard5() -> BoardSchema:
    """The built-in Cubietruck Plus profile."""
    return load_builtin_board("cubieboard5")


@pytest.fixture
def host_resolv(tmp_path: Path) -> Path:
    """A resolv.conf standing in for the build host's."""
    path = tmp_path / "host-resolv.conf"
    path.write_text("nameserver 192.0.2.53\n")
    return path
