from __future__ import annotations

from datetime import datetime

from sqlalchemy.orm import Session

from app.models import AttendanceSession
from app.services import attendance_store
from app.services.attendance_store import ConstraintViolation


class OpenSessionConflict(Exception):
    def __init__(self, technician_id: str | None = None, session_id: str | None = None) -> None:
        super().__init__("open session changed concurrently")
        self.technician_id = technician_id
        self.session_id = session_id


def find_open_session(db: Session, technician_id: str) -> AttendanceSession | None:
    return attendance_store.find_open_session(db, technician_id)


def open_session(
    db: Session,
    *,
    technician_id: str,
    site_id: str,
    check_in_event_id: str,
    started_at: datetime,
) -> AttendanceSession:
    try:
        return attendance_store.create_open_session(
            db,
            technician_id=technician_id,
            site_id=site_id,
            check_in_event_id=check_in_event_id,
            started_at=started_at,
        )
    except ConstraintViolation as exc:
        raise OpenSessionConflict(technician_id=technician_id) from exc


def close_session(
    db: Session,
    *,
    session_id: str,
    check_out_event_id: str,
    ended_at: datetime,
) -> None:
    closed = attendance_store.close_session(
        db,
        session_id=session_id,
        check_out_event_id=check_out_event_id,
        ended_at=ended_at,
    )
    if not closed:
        raise OpenSessionConflict(session_id=session_id)
