from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import Any

from sqlalchemy.orm import Session

from app.errors import site_not_found
from app.models import (
    AttendanceEvent,
    AttendanceSession,
    EventType,
    RejectReason,
    Site,
    ValidationDecision,
)
from app.schemas import CheckInRequest, CheckOutRequest
from app.services import attendance_store, qr_replay, sessions
from app.services.attendance_store import run_atomically
from app.services.idempotency import AttendanceOutcome, run_idempotent
from app.services.location import GeofenceDecision, evaluate_geofence
from app.services.qr_replay import QR_CLOCK_SKEW_DEFAULT, QrReplayDetected, is_qr_expired
from app.services.sessions import OpenSessionConflict

logger = logging.getLogger("app.attendance")


def _normalize_ts(ts_utc: datetime | None) -> datetime:
    if ts_utc is None:
        return datetime.now(timezone.utc)

    if ts_utc.tzinfo is None:
        return ts_utc.replace(tzinfo=timezone.utc)

    return ts_utc.astimezone(timezone.utc)


def _clean_selfie_key(value: str | None) -> str | None:
    cleaned = (value or "").strip()
    return cleaned or None


def _require_site(db: Session, site_id: str) -> Site:
    site = attendance_store.find_site(db, site_id)
    if site is None:
        raise site_not_found(site_id)
    return site


def _evaluate_site_geofence(site: Site, payload: CheckOutRequest) -> GeofenceDecision:
    return evaluate_geofence(
        site.latitude,
        site.longitude,
        site.radius_meters,
        payload.lat,
        payload.lng,
        strict=site.strict_out_of_range,
    )


def _base_event_fields(
    *,
    technician_id: str,
    payload: CheckOutRequest,
    event_type: EventType,
    now_utc: datetime,
) -> dict[str, Any]:
    fields: dict[str, Any] = {
        "technician_id": technician_id,
        "site_id": str(payload.site_id),
        "device_id": str(payload.device_id) if payload.device_id is not None else None,
        "client_event_id": str(payload.client_event_id),
        "event_type": event_type,
        "selfie_object_key": _clean_selfie_key(payload.selfie_object_key),
        "lat": payload.lat,
        "lng": payload.lng,
        "accuracy_meters": payload.accuracy_meters,
        "captured_at_client": _normalize_ts(payload.captured_at_client),
        "occurred_at_server": now_utc,
    }
    if isinstance(payload, CheckInRequest):
        fields.update(
            qr_payload_hash=payload.qr_payload_hash,
            qr_nonce=payload.qr_nonce,
            qr_issued_at=_normalize_ts(payload.qr_issued_at),
            qr_expires_at=_normalize_ts(payload.qr_expires_at),
        )
    return fields


def _log_decision(event: AttendanceEvent, geofence: GeofenceDecision | None = None) -> None:
    logger.info(
        "attendance_decision",
        extra={
            "technician_id": event.technician_id,
            "site_id": event.site_id,
            "event_id": event.id,
            "event_type": event.event_type.value,
            "decision": event.decision.value,
            "range_status": event.range_status.value if event.range_status else None,
            "reject_reason": event.reject_reason.value if event.reject_reason else None,
            "distance_m": round(geofence.distance_m, 2) if geofence is not None else None,
        },
    )


def _record_rejection(db: Session, fields: dict[str, Any], reason: RejectReason) -> AttendanceEvent:
    rejected = {
        **fields,
        "decision": ValidationDecision.REJECTED,
        "range_status": None,
        "reject_reason": reason,
    }
    event = run_atomically(db, lambda: attendance_store.create_event(db, rejected))
    _log_decision(event)
    return event


def _write_checkin(
    db: Session,
    *,
    fields: dict[str, Any],
    geofence: GeofenceDecision,
) -> AttendanceEvent:
    replay_record = qr_replay.guard_qr_nonce(
        db,
        site_id=fields["site_id"],
        nonce=fields["qr_nonce"],
        issued_at=fields["qr_issued_at"],
        expires_at=fields["qr_expires_at"],
        seen_by=fields["technician_id"],
    )
    event = attendance_store.create_event(
        db,
        {
            **fields,
            "decision": geofence.decision,
            "range_status": geofence.range_status,
            "reject_reason": geofence.reject_reason,
        },
    )
    if geofence.decision == ValidationDecision.ACCEPTED:
        sessions.open_session(
            db,
            technician_id=fields["technician_id"],
            site_id=fields["site_id"],
            check_in_event_id=event.id,
            started_at=fields["occurred_at_server"],
        )
        qr_replay.link_accepted_event(db, replay_record, event.id)
    return event


def _process_checkin(
    db: Session,
    *,
    technician_id: str,
    payload: CheckInRequest,
    qr_clock_skew: timedelta,
    now_utc: datetime,
) -> AttendanceEvent:
    site = _require_site(db, str(payload.site_id))
    fields = _base_event_fields(
        technician_id=technician_id,
        payload=payload,
        event_type=EventType.CHECK_IN,
        now_utc=now_utc,
    )

    if fields["selfie_object_key"] is None:
        return _record_rejection(db, fields, RejectReason.MISSING_SELFIE)

    if is_qr_expired(fields["qr_expires_at"], now_utc, qr_clock_skew):
        return _record_rejection(db, fields, RejectReason.INVALID_QR)

    if sessions.find_open_session(db, technician_id) is not None:
        return _record_rejection(db, fields, RejectReason.INVALID_SESSION)

    geofence = _evaluate_site_geofence(site, payload)
    try:
        event = run_atomically(db, lambda: _write_checkin(db, fields=fields, geofence=geofence))
    except QrReplayDetected:
        logger.warning(
            "attendance_replay_detected",
            extra={
                "technician_id": technician_id,
                "site_id": fields["site_id"],
                "client_event_id": fields["client_event_id"],
            },
        )
        return _record_rejection(db, fields, RejectReason.REPLAY)
    except OpenSessionConflict:
        logger.warning(
            "attendance_session_conflict",
            extra={
                "technician_id": technician_id,
                "event_type": EventType.CHECK_IN.value,
                "client_event_id": fields["client_event_id"],
            },
        )
        return _record_rejection(db, fields, RejectReason.INVALID_SESSION)

    _log_decision(event, geofence)
    return event


def create_checkin_event(
    db: Session,
    *,
    technician_id: str,
    payload: CheckInRequest,
    qr_clock_skew: timedelta = QR_CLOCK_SKEW_DEFAULT,
    now_utc: datetime | None = None,
) -> AttendanceOutcome:
    """Validate and store a check-in, opening a session when it is accepted.

    Rejections are returned as stored REJECTED events. A repeated
    ``client_event_id`` returns the event stored the first time.
    """
    reference_ts = _normalize_ts(now_utc)
    return run_idempotent(
        db,
        technician_id,
        str(payload.client_event_id),
        lambda: _process_checkin(
            db,
            technician_id=technician_id,
            payload=payload,
            qr_clock_skew=qr_clock_skew,
            now_utc=reference_ts,
        ),
    )


def _write_checkout(
    db: Session,
    *,
    fields: dict[str, Any],
    geofence: GeofenceDecision,
    session_id: str,
) -> AttendanceEvent:
    event = attendance_store.create_event(
        db,
        {
            **fields,
            "decision": geofence.decision,
            "range_status": geofence.range_status,
            "reject_reason": geofence.reject_reason,
        },
    )
    if geofence.decision == ValidationDecision.ACCEPTED:
        sessions.close_session(
            db,
            session_id=session_id,
            check_out_event_id=event.id,
            ended_at=fields["occurred_at_server"],
        )
    return event


def _process_checkout(
    db: Session,
    *,
    technician_id: str,
    payload: CheckOutRequest,
    now_utc: datetime,
) -> AttendanceEvent:
    site = _require_site(db, str(payload.site_id))
    fields = _base_event_fields(
        technician_id=technician_id,
        payload=payload,
        event_type=EventType.CHECK_OUT,
        now_utc=now_utc,
    )

    if fields["selfie_object_key"] is None:
        return _record_rejection(db, fields, RejectReason.MISSING_SELFIE)

    open_session_row = sessions.find_open_session(db, technician_id)
    if open_session_row is None:
        return _record_rejection(db, fields, RejectReason.INVALID_SESSION)
    session_id = open_session_row.id

    geofence = _evaluate_site_geofence(site, payload)
    try:
        event = run_atomically(
            db,
            lambda: _write_checkout(db, fields=fields, geofence=geofence, session_id=session_id),
        )
    except OpenSessionConflict:
        logger.warning(
            "attendance_session_conflict",
            extra={
                "technician_id": technician_id,
                "event_type": EventType.CHECK_OUT.value,
                "session_id": session_id,
                "client_event_id": fields["client_event_id"],
            },
        )
        return _record_rejection(db, fields, RejectReason.INVALID_SESSION)

    _log_decision(event, geofence)
    return event


def create_checkout_event(
    db: Session,
    *,
    technician_id: str,
    payload: CheckOutRequest,
    now_utc: datetime | None = None,
) -> AttendanceOutcome:
    reference_ts = _normalize_ts(now_utc)
    return run_idempotent(
        db,
        technician_id,
        str(payload.client_event_id),
        lambda: _process_checkout(
            db,
            technician_id=technician_id,
            payload=payload,
            now_utc=reference_ts,
        ),
    )


def get_open_session_for_technician(db: Session, technician_id: str) -> AttendanceSession | None:
    return sessions.find_open_session(db, technician_id)


def list_recent_attendance_events(
    db: Session,
    *,
    limit: int,
    technician_id: str | None = None,
    site_id: str | None = None,
    decision: ValidationDecision | None = None,
) -> list[AttendanceEvent]:
    return attendance_store.list_recent_events(
        db,
        limit=limit,
        technician_id=technician_id,
        site_id=site_id,
        decision=decision,
    )
