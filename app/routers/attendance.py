from fastapi import APIRouter, Depends, Query, Request, Response, status
from sqlalchemy.orm import Session

from app.db import get_db
from app.models import ValidationDecision
from app.schemas import (
    AttendanceEventRead,
    AttendanceSessionRead,
    CheckInRequest,
    CheckOutRequest,
)
from app.security import Principal, require_attendance_viewer, require_technician
from app.services.attendance import (
    AttendanceOutcome,
    create_checkin_event,
    create_checkout_event,
    get_open_session_for_technician,
    list_recent_attendance_events,
)
from app.settings import get_qr_clock_skew, get_settings

router = APIRouter(tags=["attendance"])
IDEMPOTENT_REPLAY_HEADER = "X-Idempotent-Replay"


def _apply_outcome(request: Request, response: Response, outcome: AttendanceOutcome) -> AttendanceEventRead:
    event = AttendanceEventRead.model_validate(outcome.event)
    request.state.technician_id = event.technician_id
    request.state.event_id = event.id
    request.state.decision = event.decision.value
    request.state.reject_reason = event.reject_reason.value if event.reject_reason else None
    request.state.idempotent_replay = outcome.idempotent_replay
    if outcome.idempotent_replay:
        response.headers[IDEMPOTENT_REPLAY_HEADER] = "true"
    return event


@router.post(
    "/attendance/check-in",
    response_model=AttendanceEventRead,
    status_code=status.HTTP_201_CREATED,
)
def check_in(
    payload: CheckInRequest,
    request: Request,
    response: Response,
    principal: Principal = Depends(require_technician),
    db: Session = Depends(get_db),
) -> AttendanceEventRead:
    outcome = create_checkin_event(
        db,
        technician_id=principal.subject,
        payload=payload,
        qr_clock_skew=get_qr_clock_skew(),
    )
    return _apply_outcome(request, response, outcome)


@router.post(
    "/attendance/check-out",
    response_model=AttendanceEventRead,
    status_code=status.HTTP_201_CREATED,
)
def check_out(
    payload: CheckOutRequest,
    request: Request,
    response: Response,
    principal: Principal = Depends(require_technician),
    db: Session = Depends(get_db),
) -> AttendanceEventRead:
    outcome = create_checkout_event(
        db,
        technician_id=principal.subject,
        payload=payload,
    )
    return _apply_outcome(request, response, outcome)


@router.get("/attendance/session", response_model=AttendanceSessionRead | None)
def current_session(
    request: Request,
    principal: Principal = Depends(require_technician),
    db: Session = Depends(get_db),
) -> AttendanceSessionRead | None:
    request.state.technician_id = principal.subject
    session_row = get_open_session_for_technician(db, principal.subject)
    if session_row is None:
        return None
    return AttendanceSessionRead.model_validate(session_row)


@router.get("/attendance", response_model=list[AttendanceEventRead])
def list_attendance_events(
    technician_id: str | None = Query(default=None, max_length=64),
    site_id: str | None = Query(default=None, max_length=36),
    decision: ValidationDecision | None = Query(default=None),
    limit: int | None = Query(default=None, ge=1, le=500),
    _principal: Principal = Depends(require_attendance_viewer),
    db: Session = Depends(get_db),
) -> list[AttendanceEventRead]:
    events = list_recent_attendance_events(
        db,
        limit=limit or get_settings().recent_events_limit,
        technician_id=technician_id,
        site_id=site_id,
        decision=decision,
    )
    return [AttendanceEventRead.model_validate(item) for item in events]
