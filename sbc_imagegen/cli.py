"""Thin CLI wrapper for sbc_imagegen.

This module provides the command-line interface using Typer.
All business logic is delegated to core modules.
"""

import json
import logging
import sys
from pathlib import Path
from typing import Annotated, NoReturn

import click
import typer
from pydantic import ValidationError
from rich.console import Console
from rich.logging import RichHandler
from rich.markup import escape

from sbc_imagegen import __version__
from sbc_imagegen.config import Settings, get_settings, print_settings_json
from sbc_imagegen.runner import (
    CommandError,
    CommandRunner,
    MissingToolError,
    RootRequiredError,
    build_log_path,
    check_tools,
    require_root,
)

app = typer.Typer(
    name="sbc-imagegen",
    help="SBC Image Generator - Debian root filesystems and SD card images",
    no_args_is_help=True,
)
console = Console()
err_console = Console(stderr=True)

# Exit status for invalid invocations (click's default is 2).
USAGE_EXIT_CODE = 1


def version_callback(value: bool) -> None:
    """Print version and exit."""
    if value:
        console.print(f"sbc-imagegen version {__version__}")
        raise typer.Exit()


def configure_logging(level: str) -> None:
    """Send log records to stderr through rich."""
    logging.basicConfig(
        level=level,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=err_console, show_path=False)],
        force=True,
    )


def fail(message: str) -> NoReturn:
    """Report a single error on stderr and exit with status 1."""
    err_console.print(f"[red]Error: {escape(message)}[/red]")
    raise typer.Exit(code=1)


def _history_factory(settings: Settings):
    if not settings.record_history:
        return None
    from sbc_imagegen.db import create_all_tables, get_engine, get_session_factory

    engine = get_engine(settings.db_url)
    create_all_tables(engine)
    return get_session_factory(engine)


@app.callback()
def main(
    version: Annotated[
        bool | None,
        typer.Option(
            "--version",
            "-V",
            help="Show version and exit",
            callback=version_callback,
            is_eager=True,
        ),
    ] = None,
    verbose: Annotated[
        bool,
        typer.Option("--verbose", "-v", help="Enable debug logging"),
    ] = False,
) -> None:
    """SBC Image Generator - Debian root filesystems and SD card images."""
    configure_logging("DEBUG" if verbose else get_settings().log_level)


@app.command()
def config(
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output as JSON"),
    ] = False,
) -> None:
    """Show effective configuration."""
    settings = get_settings()
    if json_output:
        typer.echo(print_settings_json(settings))
    else:
        tmp_dir_display = (
            str(settings.tmp_dir) if settings.tmp_dir else "(system default)"
        )
        timeout_display = (
            str(settings.command_timeout) if settings.command_timeout else "(none)"
        )
        console.print("[bold]Effective Configuration:[/bold]")
        console.print()
        console.print("[bold]Paths:[/bold]")
        console.print(f"  Log directory:       {settings.log_dir}")
        console.print(f"  Database URL:        {settings.db_url}")
        console.print(f"  Temp directory:      {tmp_dir_display}")
        console.print()
        console.print("[bold]Debian:[/bold]")
        console.print(f"  Mirror:              {settings.mirror}")
        console.print()
        console.print("[bold]Operational:[/bold]")
        console.print(f"  Record history:      {settings.record_history}")
        console.print(f"  Log level:           {settings.log_level}")
        console.print(f"  Command timeout:     {timeout_display}")


boards_app = typer.Typer(help="Inspect board profiles")
app.add_typer(boards_app, name="boards")


@boards_app.command("list")
def boards_list(
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output as JSON"),
    ] = False,
) -> None:
    """List built-in board profiles."""
    from sbc_imagegen.boards import list_builtin_boards, load_builtin_board

    boards = [load_builtin_board(board_id) for board_id in list_builtin_boards()]

    if json_output:
        output = [
            {
                "board_id": b.board_id,
                "name": b.name,
                "arch": b.arch,
                "default_release": b.default_release,
            }
            for b in boards
        ]
        typer.echo(json.dumps(output, indent=2))
        return

    console.print(f"[bold]Found {len(boards)} board(s):[/bold]")
    console.print()
    for b in boards:
        console.print(f"  [green]{b.board_id}[/green]")
        console.print(f"    Name: {b.name}")
        console.print(f"    Architecture: {b.arch}")
        console.print(f"    Default release: {b.default_release}")
        console.print(f"    Boot partition: {b.boot_mountpoint}")
        console.print()


@boards_app.command("show")
def boards_show(
    board: Annotated[str, typer.Argument(help="Board id or path to a YAML profile")],
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output as JSON"),
    ] = False,
) -> None:
    """Show a board profile."""
    from sbc_imagegen.boards import (
        BoardNotFoundError,
        board_to_yaml_string,
        resolve_board,
    )

    try:
        profile = resolve_board(board)
    except (BoardNotFoundError, ValidationError, ValueError) as e:
        fail(str(e))

    if json_output:
        typer.echo(profile.model_dump_json(indent=2, exclude_none=True))
    else:
        typer.echo(board_to_yaml_string(profile), nl=False)


@app.command()
def rootfs(
    target: Annotated[Path, typer.Argument(help="Directory to build the tree in")],
    board: Annotated[
        str,
        typer.Option("--board", "-b", help="Board id or path to a YAML profile"),
    ] = "rpi2",
    hostname: Annotated[
        str | None,
        typer.Option("--hostname", "-H", help="Hostname (default: board id)"),
    ] = None,
    ssh_key: Annotated[
        Path | None,
        typer.Option(
            "--ssh-key",
            "-k",
            help="Public key installed in /root/.ssh/authorized_keys",
            exists=True,
            dir_okay=False,
            readable=True,
        ),
    ] = None,
    release: Annotated[
        str | None,
        typer.Option("--release", "-r", help="Debian release (default: board's)"),
    ] = None,
    mirror: Annotated[
        str | None,
        typer.Option("--mirror", "-m", help="Debian mirror (default: from config)"),
    ] = None,
    no_debootstrap: Annotated[
        bool,
        typer.Option(
            "--no-debootstrap", help="Provision an existing tree without bootstrapping"
        ),
    ] = False,
) -> None:
    """Build a provisioned Debian root filesystem for a board.

    Bootstraps a base system, installs bootloader, kernel and SSH in a
    chroot, writes the system configuration and embeds the first-boot
    script. Must be run as root.
    """
    from sbc_imagegen.boards import BoardNotFoundError, resolve_board
    from sbc_imagegen.records import recorded_build
    from sbc_imagegen.rootfs.builder import (
        REQUIRED_TOOLS,
        RootfsBuildError,
        build_rootfs,
        debootstrap_tools,
    )
    from sbc_imagegen.types import BuildKind

    settings = get_settings()

    try:
        profile = resolve_board(board)
        require_root()
        tools = list(REQUIRED_TOOLS)
        if not no_debootstrap:
            tools += debootstrap_tools(profile)
        check_tools(tools)
    except (
        BoardNotFoundError,
        ValidationError,
        ValueError,
        RootRequiredError,
        MissingToolError,
    ) as e:
        fail(str(e))

    log_path = build_log_path(settings.log_dir, "rootfs")
    runner = CommandRunner(log_path=log_path, timeout=settings.command_timeout)
    effective_release = release or profile.default_release
    effective_hostname = hostname or profile.board_id

    try:
        with recorded_build(
            _history_factory(settings),
            BuildKind.ROOTFS,
            profile.board_id,
            str(target),
            hostname=effective_hostname,
            release=effective_release,
            log_path=str(log_path),
        ):
            result = build_rootfs(
                target,
                profile,
                runner=runner,
                mirror=mirror or settings.mirror,
                hostname=effective_hostname,
                release=effective_release,
                ssh_key=ssh_key,
                debootstrap=not no_debootstrap,
            )
    except (RootfsBuildError, CommandError, OSError, ValueError) as e:
        fail(f"{e} (log: {log_path})")

    console.print("[green]✓ Root filesystem ready[/green]")
    console.print(f"  Tree: {result.target}")
    console.print(f"  Board: {result.board_id}")
    console.print(f"  Release: {result.release}")
    console.print(f"  Hostname: {result.hostname}")
    console.print(f"  Log: {log_path}")


@app.command()
def image(
    source: Annotated[Path, typer.Argument(help="Prepared root filesystem tree")],
    target: Annotated[Path, typer.Argument(help="Image file to create")],
    board: Annotated[
        str,
        typer.Option("--board", "-b", help="Board id or path to a YAML profile"),
    ] = "rpi2",
) -> None:
    """Build a partitioned SD card image from a root filesystem tree.

    Creates a DOS-partitioned image with a 100 MiB FAT32 boot partition
    and an ext4 root partition sized to the tree plus 25%. The target
    must not exist. Must be run as root.
    """
    from sbc_imagegen.boards import BoardNotFoundError, resolve_board
    from sbc_imagegen.image.builder import (
        REQUIRED_TOOLS,
        ImageBuildError,
        build_image,
    )
    from sbc_imagegen.records import recorded_build
    from sbc_imagegen.types import BuildKind

    settings = get_settings()

    try:
        profile = resolve_board(board)
        require_root()
        check_tools(REQUIRED_TOOLS)
    except (
        BoardNotFoundError,
        ValidationError,
        ValueError,
        RootRequiredError,
        MissingToolError,
    ) as e:
        fail(str(e))

    log_path = build_log_path(settings.log_dir, "image")
    runner = CommandRunner(log_path=log_path, timeout=settings.command_timeout)

    try:
        with recorded_build(
            _history_factory(settings),
            BuildKind.IMAGE,
            profile.board_id,
            str(target),
            source_path=str(source),
            log_path=str(log_path),
        ):
            result = build_image(
                source,
                target,
                profile,
                runner=runner,
                tmp_dir=settings.tmp_dir,
            )
    except (ImageBuildError, CommandError, OSError) as e:
        fail(f"{e} (log: {log_path})")

    layout = result.layout
    console.print("[green]✓ Image ready[/green]")
    console.print(f"  Image: {result.image_path}")
    console.print(f"  Size: {layout.total_bytes} bytes ({layout.total_sectors} sectors)")
    console.print(f"  Boot: start={layout.boot_start} size={layout.boot_sectors}")
    console.print(f"  Root: start={layout.root_start} size={layout.root_sectors}")
    console.print(f"  Log: {log_path}")


@app.command()
def history(
    kind: Annotated[
        str | None,
        typer.Option("--kind", "-k", help="Filter by kind (rootfs, image)"),
    ] = None,
    status: Annotated[
        str | None,
        typer.Option(
            "--status", "-s", help="Filter by status (pending/running/succeeded/failed)"
        ),
    ] = None,
    board: Annotated[
        str | None,
        typer.Option("--board", "-b", help="Filter by board id"),
    ] = None,
    limit: Annotated[
        int,
        typer.Option("--limit", "-l", help="Maximum number of records to return"),
    ] = 100,
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output as JSON"),
    ] = False,
) -> None:
    """List recorded builds, newest first."""
    from sbc_imagegen.db import (
        create_all_tables,
        get_engine,
        get_session,
        get_session_factory,
    )
    from sbc_imagegen.records import list_build_records
    from sbc_imagegen.types import BuildKind, BuildStatus

    try:
        kind_filter = BuildKind(kind) if kind else None
    except ValueError:
        fail(f"Invalid kind: {kind}. Valid values: rootfs, image")
    try:
        status_filter = BuildStatus(status) if status else None
    except ValueError:
        fail(
            f"Invalid status: {status}. "
            "Valid values: pending, running, succeeded, failed"
        )

    engine = get_engine(get_settings().db_url)
    create_all_tables(engine)
    factory = get_session_factory(engine)

    with get_session(factory) as session:
        records = list_build_records(
            session,
            kind=kind_filter,
            status=status_filter,
            board_id=board,
            limit=limit,
        )

        if json_output:
            typer.echo(json.dumps([r.to_dict() for r in records], indent=2))
            return

        if not records:
            console.print("[yellow]No builds recorded[/yellow]")
            return

        console.print(f"[bold]Found {len(records)} build(s):[/bold]")
        console.print()
        for r in records:
            status_color = {
                "succeeded": "green",
                "failed": "red",
                "running": "blue",
                "pending": "yellow",
            }.get(r.status, "white")
            console.print(
                f"  [{status_color}]{r.kind} #{r.id}[/{status_color}] {r.status}"
            )
            console.print(f"    Board: {r.board_id}")
            console.print(f"    Target: {r.target_path}")
            if r.source_path:
                console.print(f"    Source: {r.source_path}")
            console.print(
                f"    Requested: {r.requested_at.isoformat() if r.requested_at else 'N/A'}"
            )
            if r.error_message:
                console.print(f"    Error: {r.error_message}")
            console.print()


def run() -> None:
    """Console-script entry point.

    Invalid invocations print usage and exit with status 1.
    """
    command = typer.main.get_command(app)
    try:
        exit_code = command.main(prog_name="sbc-imagegen", standalone_mode=False)
    except click.UsageError as e:
        e.show()
        sys.exit(USAGE_EXIT_CODE)
    except click.ClickException as e:
        e.show()
        sys.exit(e.exit_code)
    except click.Abort:
        err_console.print("[yellow]Aborted[/yellow]")
        sys.exit(1)
    sys.exit(exit_code if isinstance(exit_code, int) else 0)


if __name__ == "__main__":
    run()
