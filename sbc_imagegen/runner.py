"""Command runner for external system tools.

This module handles:
- Executing external tools (debootstrap, sfdisk, losetup, mkfs, rsync, ...)
- Capturing stdout/stderr to a per-build log file
- Enforcing command timeouts
- Host preconditions (superuser privilege, required tools on PATH)

Every failing command raises CommandError. There are no retries; callers
rely on context managers for cleanup.
"""

from __future__ import annotations

import logging
import os
import shlex
import shutil
import subprocess
from collections.abc import Sequence
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path

logger = logging.getLogger(__name__)


class CommandError(Exception):
    """Raised when an external command fails."""

    def __init__(
        self,
        message: str,
        exit_code: int | None = None,
        code: str = "command_failed",
    ) -> None:
        super().__init__(message)
        self.message = message
        self.exit_code = exit_code
        self.code = code


class RootRequiredError(Exception):
    """Raised when an operation needs superuser privilege."""

    def __init__(self) -> None:
        super().__init__("This command must be run as root")
        self.code = "root_required"


class MissingToolError(Exception):
    """Raised when required host tools are not installed."""

    def __init__(self, tools: list[str]) -> None:
        super().__init__(f"Required tools not found on PATH: {', '.join(tools)}")
        self.tools = tools
        self.code = "missing_tool"


@dataclass
class CommandResult:
    """Result of a command execution.

    Attributes:
        command: The command that was executed (shell-quoted).
        exit_code: Process exit code.
        stdout: Captured standard output (only when capture was requested).
    """

    command: str
    exit_code: int
    stdout: str = ""


class CommandRunner:
    """Run external commands, logging their output to a build log.

    Args:
        log_path: File that receives command headers and output. When not
            set, output is captured and forwarded to the module logger.
        timeout: Per-command timeout in seconds (None = no timeout).
    """

    def __init__(self, log_path: Path | None = None, timeout: int | None = None):
        self.log_path = log_path
        self.timeout = timeout
        if log_path is not None:
            log_path.parent.mkdir(parents=True, exist_ok=True)

    def _write_log(self, text: str) -> None:
        if self.log_path is None:
            return
        with self.log_path.open("a") as log_file:
            log_file.write(text)

    def run(
        self,
        cmd: Sequence[str | os.PathLike[str]],
        *,
        input: str | None = None,
        env: dict[str, str] | None = None,
        cwd: Path | None = None,
        capture: bool = False,
    ) -> CommandResult:
        """Execute a command and raise if it fails.

        Args:
            cmd: Command and arguments.
            input: Optional text fed to the command's stdin.
            env: Extra environment variables merged over os.environ.
            cwd: Working directory.
            capture: Return stdout in the result instead of logging it.

        Returns:
            CommandResult of the successful command.

        Raises:
            CommandError: If the command cannot start, times out, or exits
                non-zero.
        """
        args = [os.fspath(c) for c in cmd]
        cmd_str = shlex.join(args)
        logger.info("Running: %s", cmd_str)

        run_env: dict[str, str] | None = None
        if env:
            run_env = dict(os.environ)
            run_env.update(env)

        self._write_log(
            f"# Command: {cmd_str}\n"
            f"# Started: {datetime.now(timezone.utc).isoformat()}\n"
        )

        try:
            if self.log_path is not None and not capture:
                with self.log_path.open("a") as log_file:
                    result = subprocess.run(
                        args,
                        input=input,
                        cwd=cwd,
                        env=run_env,
                        stdout=log_file,
                        stderr=subprocess.STDOUT,
                        text=True,
                        timeout=self.timeout,
                        check=False,
                    )
                stdout = ""
            else:
                result = subprocess.run(
                    args,
                    input=input,
                    cwd=cwd,
                    env=run_env,
                    capture_output=True,
                    text=True,
                    timeout=self.timeout,
                    check=False,
                )
                stdout = result.stdout
                if result.stderr:
                    self._write_log(result.stderr)
                    logger.debug("%s stderr: %s", args[0], result.stderr.strip())
        except subprocess.TimeoutExpired as e:
            self._write_log(f"\n# TIMEOUT after {self.timeout} seconds\n")
            raise CommandError(
                f"Command timed out after {self.timeout} seconds: {cmd_str}",
                exit_code=-1,
                code="command_timeout",
            ) from e
        except OSError as e:
            raise CommandError(
                f"Failed to execute {args[0]}: {e}",
                code="execution_error",
            ) from e

        self._write_log(f"# Exit code: {result.returncode}\n\n")

        if result.returncode != 0:
            hint = f" See log: {self.log_path}" if self.log_path else ""
            raise CommandError(
                f"Command failed with exit code {result.returncode}: {cmd_str}.{hint}",
                exit_code=result.returncode,
            )

        return CommandResult(command=cmd_str, exit_code=0, stdout=stdout)

    def output(self, cmd: Sequence[str | os.PathLike[str]], **kwargs) -> str:
        """Execute a command and return its stripped standard output."""
        return self.run(cmd, capture=True, **kwargs).stdout.strip()


def require_root() -> None:
    """Ensure the current process has superuser privilege.

    Raises:
        RootRequiredError: If the effective user is not root.
    """
    if os.geteuid() != 0:
        raise RootRequiredError()


def check_tools(tools: Sequence[str]) -> None:
    """Ensure every tool in `tools` is available on PATH.

    Raises:
        MissingToolError: Listing every missing tool.
    """
    missing = [tool for tool in tools if shutil.which(tool) is None]
    if missing:
        raise MissingToolError(missing)


def build_log_path(log_dir: Path, kind: str) -> Path:
    """Return a fresh log file path for a build of the given kind."""
    stamp = datetime.now(timezone.utc).strftime("%Y%m%dT%H%M%SZ")
    return log_dir / f"{kind}-{stamp}.log"


__all__ = [
    "CommandError",
    "CommandResult",
    "CommandRunner",
    "MissingToolError",
    "RootRequiredError",
    "build_log_path",
    "check_tools",
    "require_root",
]
