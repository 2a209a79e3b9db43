from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass

from sqlalchemy.orm import Session

from app.models import AttendanceEvent
from app.services import attendance_store
from app.services.attendance_store import ConstraintViolation

logger = logging.getLogger("app.attendance")


@dataclass(frozen=True, slots=True)
class AttendanceOutcome:
    event: AttendanceEvent
    idempotent_replay: bool = False


def resolve_existing_event(db: Session, technician_id: str, client_event_id: str) -> AttendanceEvent | None:
    return attendance_store.find_event_by_idempotency_key(
        db,
        technician_id=technician_id,
        client_event_id=client_event_id,
    )


def run_idempotent(
    db: Session,
    technician_id: str,
    client_event_id: str,
    action: Callable[[], AttendanceEvent],
) -> AttendanceOutcome:
    """Run ``action`` at most once per ``(technician_id, client_event_id)``.

    A stored event for the key is returned as is. When ``action`` loses the
    insert race on the key, the winner's event is returned instead.
    """
    existing = resolve_existing_event(db, technician_id, client_event_id)
    if existing is not None:
        logger.info(
            "attendance_idempotent_replay",
            extra={
                "technician_id": technician_id,
                "client_event_id": client_event_id,
                "event_id": existing.id,
            },
        )
        return AttendanceOutcome(event=existing, idempotent_replay=True)

    try:
        return AttendanceOutcome(event=action())
    except ConstraintViolation:
        db.rollback()
        canonical = resolve_existing_event(db, technician_id, client_event_id)
        if canonical is None:
            raise
        logger.info(
            "attendance_idempotency_conflict_recovered",
            extra={
                "technician_id": technician_id,
                "client_event_id": client_event_id,
                "event_id": canonical.id,
            },
        )
        return AttendanceOutcome(event=canonical, idempotent_replay=True)
