"""Build history.

This module handles:
- The BuildRecord ORM model
- Recording rootfs and image builds and listing them
"""

from sbc_imagegen.records.models import BuildRecord
from sbc_imagegen.records.service import (
    list_build_records,
    recorded_build,
    start_build_record,
)

__all__ = [
    "BuildRecord",
    "list_build_records",
    "recorded_build",
    "start_build_record",
]
