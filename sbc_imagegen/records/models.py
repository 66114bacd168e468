"""Build history ORM models.

This module defines the BuildRecord model: one row per root filesystem
or image build, with its inputs, outcome and log location.
"""

from datetime import datetime

from sqlalchemy import DateTime, Index, Integer, String, Text, func
from sqlalchemy.orm import Mapped, mapped_column

from sbc_imagegen.db import Base
from sbc_imagegen.types import BuildStatus


class BuildRecord(Base):
    """ORM model for build execution records.

    Attributes:
        id: Primary key.
        kind: Build kind (rootfs, image).
        board_id: Board profile the build used.
        target_path: Tree directory or image file produced.
        source_path: Source tree (image builds only).
        hostname: Configured hostname (rootfs builds only).
        release: Debian release (rootfs builds only).
        status: Build status (pending, running, succeeded, failed).
        requested_at: Timestamp when the build was requested.
        started_at: Timestamp when the build started.
        finished_at: Timestamp when the build finished.
        log_path: Path to the command log file.
        error_type: Type of error if the build failed.
        error_message: Error message if the build failed.
    """

    __tablename__ = "build_records"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)

    kind: Mapped[str] = mapped_column(String(20), nullable=False, index=True)
    board_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    target_path: Mapped[str] = mapped_column(String(500), nullable=False)
    source_path: Mapped[str | None] = mapped_column(String(500), nullable=True)
    hostname: Mapped[str | None] = mapped_column(String(255), nullable=True)
    release: Mapped[str | None] = mapped_column(String(50), nullable=True)

    # Status and timing
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=BuildStatus.PENDING.value, index=True
    )
    requested_at: Mapped[datetime] = mapped_column(
        DateTime, nullable=False, server_default=func.now()
    )
    started_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    finished_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)

    # Logging and errors
    log_path: Mapped[str | None] = mapped_column(String(500), nullable=True)
    error_type: Mapped[str | None] = mapped_column(String(100), nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)

    __table_args__ = (Index("ix_build_records_kind_status", "kind", "status"),)

    def __repr__(self) -> str:
        """Return string representation of BuildRecord."""
        return (
            f"<BuildRecord(id={self.id}, kind='{self.kind}', "
            f"board_id='{self.board_id}', status='{self.status}')>"
        )

    def mark_running(self) -> None:
        """Mark this build as running."""
        self.status = BuildStatus.RUNNING.value
        self.started_at = datetime.now()

    def mark_succeeded(self) -> None:
        """Mark this build as succeeded."""
        self.status = BuildStatus.SUCCEEDED.value
        self.finished_at = datetime.now()

    def mark_failed(
        self, error_type: str | None = None, message: str | None = None
    ) -> None:
        """Mark this build as failed.

        Args:
            error_type: Type/category of the error.
            message: Error message details.
        """
        self.status = BuildStatus.FAILED.value
        self.finished_at = datetime.now()
        if error_type:
            self.error_type = error_type
        if message:
            self.error_message = message

    def to_dict(self) -> dict[str, object]:
        """Serialize for JSON output."""
        return {
            "id": self.id,
            "kind": self.kind,
            "board_id": self.board_id,
            "target_path": self.target_path,
            "source_path": self.source_path,
            "hostname": self.hostname,
            "release": self.release,
            "status": self.status,
            "requested_at": self.requested_at.isoformat()
            if self.requested_at
            else None,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "log_path": self.log_path,
            "error_type": self.error_type,
            "error_message": self.error_message,
        }


__all__ = ["BuildRecord"]
