"""Shared type definitions for sbc_imagegen.

This module contains enums shared across subpackages to avoid
circular imports.
"""

from enum import Enum


class BuildKind(str, Enum):
    """Kind of build recorded in the history."""

    ROOTFS = "rootfs"
    IMAGE = "image"


class BuildStatus(str, Enum):
    """Status of a build operation."""

    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


__all__ = [
    "BuildKind",
    "BuildStatus",
]
