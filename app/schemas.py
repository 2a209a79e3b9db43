from datetime import datetime, timezone
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from app.models import EventType, RangeStatus, RejectReason, SessionStatus, ValidationDecision


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class CheckOutRequest(BaseModel):
    site_id: UUID
    client_event_id: UUID
    device_id: UUID | None = None
    selfie_object_key: str | None = Field(default=None, max_length=512)
    lat: float = Field(ge=-90, le=90)
    lng: float = Field(ge=-180, le=180)
    accuracy_meters: float = Field(ge=0)
    captured_at_client: datetime

    @field_validator("captured_at_client")
    @classmethod
    def _normalize_captured_at(cls, value: datetime) -> datetime:
        return _as_utc(value)


class CheckInRequest(CheckOutRequest):
    qr_payload_hash: str = Field(min_length=1, max_length=128)
    qr_nonce: str = Field(min_length=1, max_length=128)
    qr_issued_at: datetime
    qr_expires_at: datetime

    @field_validator("qr_issued_at", "qr_expires_at")
    @classmethod
    def _normalize_qr_window(cls, value: datetime) -> datetime:
        return _as_utc(value)

    @model_validator(mode="after")
    def _validate_qr_window(self) -> "CheckInRequest":
        if self.qr_expires_at < self.qr_issued_at:
            raise ValueError("qr_expires_at must not be earlier than qr_issued_at.")
        return self


class AttendanceEventRead(BaseModel):
    id: str
    technician_id: str
    site_id: str
    device_id: str | None = None
    client_event_id: str
    event_type: EventType
    decision: ValidationDecision
    range_status: RangeStatus | None = None
    reject_reason: RejectReason | None = None
    selfie_object_key: str | None = None
    qr_payload_hash: str | None = None
    qr_nonce: str | None = None
    qr_issued_at: datetime | None = None
    qr_expires_at: datetime | None = None
    lat: float
    lng: float
    accuracy_meters: float
    captured_at_client: datetime
    occurred_at_server: datetime
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class AttendanceSessionRead(BaseModel):
    id: str
    technician_id: str
    site_id: str
    check_in_event_id: str
    check_out_event_id: str | None = None
    started_at: datetime
    ended_at: datetime | None = None
    status: SessionStatus

    model_config = ConfigDict(from_attributes=True)


class SiteRead(BaseModel):
    id: str
    name: str
    latitude: float
    longitude: float
    radius_meters: int
    strict_out_of_range: bool

    model_config = ConfigDict(from_attributes=True)
