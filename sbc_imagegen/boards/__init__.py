"""Board profiles.

This module handles:
- Pydantic schema for board profiles
- Loading built-in profiles (rpi2, cubieboard5) and YAML profile files
"""

from sbc_imagegen.boards.io import (
    BoardNotFoundError,
    board_to_yaml_string,
    list_builtin_boards,
    load_board_file,
    load_builtin_board,
    resolve_board,
)
from sbc_imagegen.boards.schema import (
    BoardSchema,
    BootloaderSchema,
    FileSpecSchema,
    LedSchema,
)

__all__ = [
    # Schema
    "BoardSchema",
    "BootloaderSchema",
    "FileSpecSchema",
    "LedSchema",
    # IO
    "BoardNotFoundError",
    "board_to_yaml_string",
    "list_builtin_boards",
    "load_board_file",
    "load_builtin_board",
    "resolve_board",
]
