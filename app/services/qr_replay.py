from __future__ import annotations

from datetime import datetime, timedelta

from sqlalchemy.orm import Session

from app.models import QrReplayRecord
from app.services import attendance_store
from app.services.attendance_store import ConstraintViolation

QR_CLOCK_SKEW_DEFAULT = timedelta(minutes=2)


class QrReplayDetected(Exception):
    def __init__(self, site_id: str, nonce: str) -> None:
        super().__init__(f"QR nonce already used for site {site_id}")
        self.site_id = site_id
        self.nonce = nonce


def is_qr_expired(expires_at: datetime, now: datetime, clock_skew: timedelta = QR_CLOCK_SKEW_DEFAULT) -> bool:
    return now > expires_at + clock_skew


def guard_qr_nonce(
    db: Session,
    *,
    site_id: str,
    nonce: str,
    issued_at: datetime,
    expires_at: datetime,
    seen_by: str,
) -> QrReplayRecord:
    """Claim ``(site_id, nonce)`` inside the caller's transaction.

    The unique constraint decides the winner. There is no prior lookup, so two
    concurrent claims cannot both succeed.
    """
    try:
        return attendance_store.create_replay_record(
            db,
            site_id=site_id,
            nonce=nonce,
            issued_at=issued_at,
            expires_at=expires_at,
            seen_by=seen_by,
        )
    except ConstraintViolation as exc:
        raise QrReplayDetected(site_id, nonce) from exc


def link_accepted_event(db: Session, record: QrReplayRecord, event_id: str) -> None:
    attendance_store.link_accepted_event(db, record=record, event_id=event_id)
