"""Board profile loading.

Profiles are YAML mappings validated against BoardSchema. Built-in
profiles are looked up by id in the package data directory; any other
argument is treated as a path to a YAML file.
"""

from importlib import resources
from pathlib import Path
from typing import Any

import yaml

from sbc_imagegen.boards.schema import BoardSchema


class BoardNotFoundError(Exception):
    """Board id is not built in and is not a readable profile file."""

    def __init__(self, board: str) -> None:
        super().__init__(
            f"Unknown board: {board}. Use a built-in board id "
            f"({', '.join(list_builtin_boards())}) or a path to a YAML profile."
        )
        self.board = board
        self.code = "board_not_found"


def load_yaml(path: Path) -> dict[str, Any]:
    """Load a YAML file and return its contents as a dict.

    Raises:
        FileNotFoundError: If the file does not exist.
        yaml.YAMLError: If the file is not valid YAML.
        ValueError: If the document is not a mapping.
    """
    with open(path, encoding="utf-8") as f:
        data = yaml.safe_load(f)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValueError(f"Expected a YAML mapping, got {type(data).__name__}")
    return data


def load_board_file(path: Path) -> BoardSchema:
    """Load and validate a board profile from a YAML file.

    Raises:
        pydantic.ValidationError: If data does not match the schema.
    """
    return BoardSchema.model_validate(load_yaml(path))


def _builtin_dir() -> Any:
    return resources.files("sbc_imagegen.boards").joinpath("data")


def list_builtin_boards() -> list[str]:
    """Return the ids of the built-in board profiles, sorted."""
    return sorted(
        entry.name.removesuffix(".yaml")
        for entry in _builtin_dir().iterdir()
        if entry.name.endswith(".yaml")
    )


def load_builtin_board(board_id: str) -> BoardSchema:
    """Load a built-in board profile by id.

    Raises:
        BoardNotFoundError: If no built-in profile has this id.
    """
    entry = _builtin_dir().joinpath(f"{board_id}.yaml")
    if not entry.is_file():
        raise BoardNotFoundError(board_id)
    data = yaml.safe_load(entry.read_text(encoding="utf-8"))
    return BoardSchema.model_validate(data)


def resolve_board(board: str) -> BoardSchema:
    """Resolve a board argument to a profile.

    Args:
        board: Built-in board id (e.g. 'rpi2') or path to a YAML profile.

    Returns:
        Validated BoardSchema.

    Raises:
        BoardNotFoundError: If the board is neither built in nor a file.
    """
    if board in list_builtin_boards():
        return load_builtin_board(board)
    path = Path(board)
    if path.suffix in (".yaml", ".yml") and path.is_file():
        return load_board_file(path)
    raise BoardNotFoundError(board)


def board_to_yaml_string(board: BoardSchema) -> str:
    """Render a board profile as YAML."""
    return yaml.safe_dump(
        board.model_dump(exclude_none=True),
        default_flow_style=False,
        sort_keys=False,
        allow_unicode=True,
    )


__all__ = [
    "BoardNotFoundError",
    "board_to_yaml_string",
    "list_builtin_boards",
    "load_board_file",
    "load_builtin_board",
    "load_yaml",
    "resolve_board",
]
