from __future__ import annotations

from collections.abc import Callable
from datetime import datetime
from typing import Any, TypeVar

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.models import (
    EVENT_IDEMPOTENCY_CONSTRAINT,
    OPEN_SESSION_INDEX,
    QR_REPLAY_CONSTRAINT,
    AttendanceEvent,
    AttendanceSession,
    QrReplayRecord,
    SessionStatus,
    Site,
    ValidationDecision,
)

T = TypeVar("T")

UNIQUE_VIOLATION_SQLSTATE = "23505"


class ConstraintViolation(Exception):
    """A unique constraint rejected a write. Another request got there first."""

    def __init__(self, constraint: str) -> None:
        super().__init__(constraint)
        self.constraint = constraint


def is_unique_violation(exc: IntegrityError) -> bool:
    orig = exc.orig
    sqlstate = getattr(orig, "sqlstate", None) or getattr(orig, "pgcode", None)
    if sqlstate:
        return str(sqlstate) == UNIQUE_VIOLATION_SQLSTATE
    # sqlite has no SQLSTATE, only the message
    return "UNIQUE CONSTRAINT FAILED" in str(orig).upper()


def _flush_unique(db: Session, constraint: str) -> None:
    try:
        db.flush()
    except IntegrityError as exc:
        if is_unique_violation(exc):
            raise ConstraintViolation(constraint) from exc
        raise


def run_atomically(db: Session, fn: Callable[[], T]) -> T:
    """Run ``fn`` and commit, or roll back everything it wrote."""
    try:
        result = fn()
        db.commit()
    except IntegrityError as exc:
        db.rollback()
        if is_unique_violation(exc):
            raise ConstraintViolation("commit") from exc
        raise
    except Exception:
        db.rollback()
        raise
    return result


def find_site(db: Session, site_id: str) -> Site | None:
    return db.scalar(
        select(Site).where(
            Site.id == site_id,
            Site.is_active.is_(True),
        )
    )


def list_sites(db: Session) -> list[Site]:
    return list(
        db.scalars(
            select(Site)
            .where(Site.is_active.is_(True))
            .order_by(Site.name.asc(), Site.id.asc())
        ).all()
    )


def find_event_by_idempotency_key(
    db: Session,
    *,
    technician_id: str,
    client_event_id: str,
) -> AttendanceEvent | None:
    return db.scalar(
        select(AttendanceEvent).where(
            AttendanceEvent.technician_id == technician_id,
            AttendanceEvent.client_event_id == client_event_id,
        )
    )


def create_event(db: Session, fields: dict[str, Any]) -> AttendanceEvent:
    event = AttendanceEvent(**fields)
    db.add(event)
    _flush_unique(db, EVENT_IDEMPOTENCY_CONSTRAINT)
    return event


def list_recent_events(
    db: Session,
    *,
    limit: int,
    technician_id: str | None = None,
    site_id: str | None = None,
    decision: ValidationDecision | None = None,
) -> list[AttendanceEvent]:
    stmt = select(AttendanceEvent)
    if technician_id:
        stmt = stmt.where(AttendanceEvent.technician_id == technician_id)
    if site_id:
        stmt = stmt.where(AttendanceEvent.site_id == site_id)
    if decision is not None:
        stmt = stmt.where(AttendanceEvent.decision == decision)
    stmt = stmt.order_by(AttendanceEvent.occurred_at_server.desc(), AttendanceEvent.id.desc()).limit(limit)
    return list(db.scalars(stmt).all())


def find_open_session(db: Session, technician_id: str) -> AttendanceSession | None:
    return db.scalar(
        select(AttendanceSession)
        .where(
            AttendanceSession.technician_id == technician_id,
            AttendanceSession.status == SessionStatus.OPEN,
        )
        .order_by(AttendanceSession.started_at.desc(), AttendanceSession.id.desc())
        .limit(1)
    )


def create_open_session(
    db: Session,
    *,
    technician_id: str,
    site_id: str,
    check_in_event_id: str,
    started_at: datetime,
) -> AttendanceSession:
    session_row = AttendanceSession(
        technician_id=technician_id,
        site_id=site_id,
        check_in_event_id=check_in_event_id,
        started_at=started_at,
        status=SessionStatus.OPEN,
    )
    db.add(session_row)
    _flush_unique(db, OPEN_SESSION_INDEX)
    return session_row


def close_session(
    db: Session,
    *,
    session_id: str,
    check_out_event_id: str,
    ended_at: datetime,
) -> bool:
    """Close the session if it is still OPEN. Returns False when nothing was updated."""
    result = db.execute(
        update(AttendanceSession)
        .where(
            AttendanceSession.id == session_id,
            AttendanceSession.status == SessionStatus.OPEN,
        )
        .values(
            status=SessionStatus.CLOSED,
            check_out_event_id=check_out_event_id,
            ended_at=ended_at,
        )
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


def create_replay_record(
    db: Session,
    *,
    site_id: str,
    nonce: str,
    issued_at: datetime,
    expires_at: datetime,
    seen_by: str,
) -> QrReplayRecord:
    record = QrReplayRecord(
        site_id=site_id,
        nonce=nonce,
        issued_at=issued_at,
        expires_at=expires_at,
        seen_by_technician_id=seen_by,
    )
    db.add(record)
    _flush_unique(db, QR_REPLAY_CONSTRAINT)
    return record


def link_accepted_event(db: Session, *, record: QrReplayRecord, event_id: str) -> None:
    record.accepted_event_id = event_id
    db.flush()
