"""Pydantic models for board profile validation.

A board profile describes everything that differs between supported
single-board computers: Debian architecture, packages, device nodes,
boot partition contents, raw bootloader placement and status LEDs.
Built-in profiles ship as YAML in ``sbc_imagegen/boards/data``.
"""

import re
from typing import Annotated, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator

BOARD_ID_PATTERN = re.compile(r"^[a-z0-9][a-z0-9_\-]*$")

SSH_KEY_TYPES = ("rsa", "dsa", "ecdsa", "ed25519")

DEFAULT_SSH_KEY_TYPES = list(SSH_KEY_TYPES)


class FileSpecSchema(BaseModel):
    """Schema for a file written into the root filesystem.

    Attributes:
        destination: Path inside the root filesystem (must start with /).
        content: File content.
        mode: Optional file mode (octal string, e.g., '0644').
    """

    model_config = ConfigDict(extra="forbid")

    destination: str = Field(description="Destination path in the tree")
    content: str = Field(description="File content")
    mode: str | None = Field(default=None, description="File mode (e.g., '0644')")

    @field_validator("destination")
    @classmethod
    def validate_destination(cls, v: str) -> str:
        """Validate destination starts with /."""
        if not v.startswith("/"):
            raise ValueError("destination must start with '/'")
        return v

    @field_validator("mode")
    @classmethod
    def validate_mode(cls, v: str | None) -> str | None:
        """Validate mode is a valid octal string."""
        if v is None:
            return v
        if not re.match(r"^0?[0-7]{3,4}$", v):
            raise ValueError(
                f"mode must be a valid octal string (e.g., '0644'), got '{v}'"
            )
        return v


class BootloaderSchema(BaseModel):
    """Raw bootloader blob written outside any partition.

    Attributes:
        path: Path of the blob inside the root filesystem.
        offset: Byte offset on the disk where the blob is written.
    """

    model_config = ConfigDict(extra="forbid")

    path: str = Field(description="Blob path inside the tree")
    offset: int = Field(ge=0, lt=1024 * 1024, description="Byte offset on disk")


class LedSchema(BaseModel):
    """Status LED driven by the first-boot script.

    Attributes:
        name: LED name under /sys/class/leds.
        busy_trigger: Trigger while first-boot setup runs.
        idle_trigger: Trigger restored once setup completed.
    """

    model_config = ConfigDict(extra="forbid")

    name: str
    busy_trigger: str = "timer"
    idle_trigger: str = "none"


class BoardSchema(BaseModel):
    """Complete board profile.

    Attributes:
        board_id: Stable identifier used on the command line.
        name: Human-readable board name.
        description: Optional longer description.
        arch: Debian architecture of the root filesystem.
        default_release: Debian release used when none is given.
        components: Apt archive components.
        packages: Packages installed on top of the base system.
        boot_mountpoint: Where the boot partition is mounted on the device.
        boot_device: Block device of the boot partition on the device.
        root_device: Block device of the root partition on the device.
        network_interface: Wired interface configured for DHCP.
        boot_config: Content of config.txt on the boot partition, if any.
        files: Additional files written into the tree.
        bootloader: Raw bootloader blob, if the board needs one.
        leds: Status LEDs driven by the first-boot script.
        ssh_key_types: SSH host key types generated on first boot.
        restart_services: Services restarted, in order, after first boot.
    """

    model_config = ConfigDict(extra="forbid")

    board_id: Annotated[str, Field(min_length=1, max_length=64)]
    name: Annotated[str, Field(min_length=1, max_length=255)]
    description: str | None = None

    arch: Literal["armel", "armhf", "arm64"]
    default_release: Annotated[str, Field(min_length=1, max_length=50)]
    components: list[str] = Field(default_factory=lambda: ["main"])
    packages: list[str] = Field(default_factory=list)

    boot_mountpoint: str = "/boot/firmware"
    boot_device: str = "/dev/mmcblk0p1"
    root_device: str = "/dev/mmcblk0p2"
    network_interface: str = "eth0"

    boot_config: str | None = None
    files: list[FileSpecSchema] = Field(default_factory=list)
    bootloader: BootloaderSchema | None = None

    leds: list[LedSchema] = Field(default_factory=list)
    ssh_key_types: list[str] = Field(
        default_factory=lambda: list(DEFAULT_SSH_KEY_TYPES)
    )
    restart_services: list[str] = Field(
        default_factory=lambda: ["networking", "ssh"]
    )

    @field_validator("board_id")
    @classmethod
    def validate_board_id(cls, v: str) -> str:
        """Validate board_id format."""
        if not BOARD_ID_PATTERN.match(v):
            raise ValueError(
                "board_id must be lowercase alphanumerics, '-' or '_', got "
                f"'{v}'"
            )
        return v

    @field_validator("boot_mountpoint")
    @classmethod
    def validate_boot_mountpoint(cls, v: str) -> str:
        """Validate boot mount point is absolute and not the root."""
        if not v.startswith("/") or v.rstrip("/") == "":
            raise ValueError("boot_mountpoint must be an absolute path below /")
        return v.rstrip("/")

    @field_validator("ssh_key_types")
    @classmethod
    def validate_ssh_key_types(cls, v: list[str]) -> list[str]:
        """Validate SSH host key types are known to ssh-keygen."""
        unknown = [t for t in v if t not in SSH_KEY_TYPES]
        if unknown:
            raise ValueError(f"unsupported ssh key types: {', '.join(unknown)}")
        if not v:
            raise ValueError("at least one ssh key type is required")
        return v


__all__ = [
    "BOARD_ID_PATTERN",
    "BoardSchema",
    "BootloaderSchema",
    "DEFAULT_SSH_KEY_TYPES",
    "FileSpecSchema",
    "LedSchema",
    "SSH_KEY_TYPES",
]
