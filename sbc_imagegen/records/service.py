"""Build history service.

Records each root filesystem and image build: created as running when
the build starts and finished as succeeded or failed. Records are
committed at both points so an interrupted build still leaves a trace.
"""

from __future__ import annotations

import logging
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import datetime

from sqlalchemy import select
from sqlalchemy.orm import Session, sessionmaker

from sbc_imagegen.records.models import BuildRecord
from sbc_imagegen.types import BuildKind, BuildStatus

logger = logging.getLogger(__name__)


def start_build_record(
    session: Session,
    kind: BuildKind,
    board_id: str,
    target_path: str,
    *,
    source_path: str | None = None,
    hostname: str | None = None,
    release: str | None = None,
    log_path: str | None = None,
) -> BuildRecord:
    """Create a running build record and flush it to get an id."""
    record = BuildRecord(
        kind=kind.value,
        board_id=board_id,
        target_path=target_path,
        source_path=source_path,
        hostname=hostname,
        release=release,
        log_path=log_path,
        requested_at=datetime.now(),
    )
    record.mark_running()
    session.add(record)
    session.flush()
    logger.debug("Started build record %s", record)
    return record


def list_build_records(
    session: Session,
    *,
    kind: BuildKind | None = None,
    status: BuildStatus | None = None,
    board_id: str | None = None,
    limit: int = 100,
) -> list[BuildRecord]:
    """List build records, newest first, with optional filters."""
    stmt = select(BuildRecord)
    if kind is not None:
        stmt = stmt.where(BuildRecord.kind == kind.value)
    if status is not None:
        stmt = stmt.where(BuildRecord.status == status.value)
    if board_id is not None:
        stmt = stmt.where(BuildRecord.board_id == board_id)
    stmt = stmt.order_by(BuildRecord.id.desc()).limit(limit)
    return list(session.execute(stmt).scalars().all())


@contextmanager
def recorded_build(
    session_factory: sessionmaker[Session] | None,
    kind: BuildKind,
    board_id: str,
    target_path: str,
    **fields: str | None,
) -> Iterator[BuildRecord | None]:
    """Record a build around the body of a with block.

    Yields None when `session_factory` is None (history disabled). If
    the body raises, the record is marked failed and the error re-raised.
    """
    if session_factory is None:
        yield None
        return

    with session_factory() as session:
        record = start_build_record(session, kind, board_id, target_path, **fields)
        session.commit()
        try:
            yield record
        except BaseException as e:
            record.mark_failed(type(e).__name__, str(e) or None)
            session.commit()
            raise
        record.mark_succeeded()
        session.commit()


__all__ = [
    "list_build_records",
    "recorded_build",
    "start_build_record",
]
