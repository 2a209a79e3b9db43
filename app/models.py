from __future__ import annotations

import enum
from datetime import datetime, timezone
from uuid import uuid4

from sqlalchemy import (
    Boolean,
    DateTime,
    Enum,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    UniqueConstraint,
    text,
)
from sqlalchemy.orm import Mapped, mapped_column

from app.db import Base

EVENT_IDEMPOTENCY_CONSTRAINT = "uq_attendance_events_technician_client_event"
QR_REPLAY_CONSTRAINT = "uq_qr_replay_records_site_nonce"
OPEN_SESSION_INDEX = "uq_attendance_sessions_open_technician"


def _new_id() -> str:
    return str(uuid4())


class EventType(str, enum.Enum):
    CHECK_IN = "CHECK_IN"
    CHECK_OUT = "CHECK_OUT"


class ValidationDecision(str, enum.Enum):
    ACCEPTED = "ACCEPTED"
    REJECTED = "REJECTED"


class RangeStatus(str, enum.Enum):
    IN_RANGE = "IN_RANGE"
    OUT_OF_RANGE = "OUT_OF_RANGE"


class RejectReason(str, enum.Enum):
    MISSING_SELFIE = "MISSING_SELFIE"
    INVALID_QR = "INVALID_QR"
    INVALID_SESSION = "INVALID_SESSION"
    OUT_OF_RANGE = "OUT_OF_RANGE"
    REPLAY = "REPLAY"


class SessionStatus(str, enum.Enum):
    OPEN = "OPEN"
    CLOSED = "CLOSED"


class Site(Base):
    __tablename__ = "sites"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    latitude: Mapped[float] = mapped_column(Float, nullable=False)
    longitude: Mapped[float] = mapped_column(Float, nullable=False)
    radius_meters: Mapped[int] = mapped_column(Integer, nullable=False, default=100, server_default=text("100"))
    strict_out_of_range: Mapped[bool] = mapped_column(
        Boolean,
        nullable=False,
        default=False,
        server_default=text("false"),
    )
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True, server_default=text("true"))
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=text("CURRENT_TIMESTAMP"),
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=text("CURRENT_TIMESTAMP"),
        onupdate=lambda: datetime.now(timezone.utc),
    )


class AttendanceEvent(Base):
    __tablename__ = "attendance_events"
    __table_args__ = (
        UniqueConstraint("technician_id", "client_event_id", name=EVENT_IDEMPOTENCY_CONSTRAINT),
        Index("ix_attendance_events_occurred_at_server", "occurred_at_server"),
        Index("ix_attendance_events_site_id", "site_id"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    technician_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    site_id: Mapped[str] = mapped_column(ForeignKey("sites.id", ondelete="RESTRICT"), nullable=False)
    device_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    client_event_id: Mapped[str] = mapped_column(String(64), nullable=False)
    event_type: Mapped[EventType] = mapped_column(
        Enum(EventType, name="attendance_event_type"),
        nullable=False,
    )
    decision: Mapped[ValidationDecision] = mapped_column(
        Enum(ValidationDecision, name="attendance_validation_decision"),
        nullable=False,
    )
    range_status: Mapped[RangeStatus | None] = mapped_column(
        Enum(RangeStatus, name="attendance_range_status"),
        nullable=True,
    )
    reject_reason: Mapped[RejectReason | None] = mapped_column(
        Enum(RejectReason, name="attendance_reject_reason"),
        nullable=True,
    )
    selfie_object_key: Mapped[str | None] = mapped_column(String(512), nullable=True)
    qr_payload_hash: Mapped[str | None] = mapped_column(String(128), nullable=True)
    qr_nonce: Mapped[str | None] = mapped_column(String(128), nullable=True)
    qr_issued_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    qr_expires_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    lat: Mapped[float] = mapped_column(Float, nullable=False)
    lng: Mapped[float] = mapped_column(Float, nullable=False)
    accuracy_meters: Mapped[float] = mapped_column(Float, nullable=False)
    captured_at_client: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    occurred_at_server: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=text("CURRENT_TIMESTAMP"),
    )


class AttendanceSession(Base):
    __tablename__ = "attendance_sessions"
    __table_args__ = (
        Index(
            OPEN_SESSION_INDEX,
            "technician_id",
            unique=True,
            postgresql_where=text("status = 'OPEN'"),
            sqlite_where=text("status = 'OPEN'"),
        ),
        Index("ix_attendance_sessions_technician_started", "technician_id", "started_at"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    technician_id: Mapped[str] = mapped_column(String(64), nullable=False)
    site_id: Mapped[str] = mapped_column(ForeignKey("sites.id", ondelete="RESTRICT"), nullable=False)
    check_in_event_id: Mapped[str] = mapped_column(
        ForeignKey("attendance_events.id", ondelete="RESTRICT"),
        nullable=False,
        unique=True,
    )
    check_out_event_id: Mapped[str | None] = mapped_column(
        ForeignKey("attendance_events.id", ondelete="RESTRICT"),
        nullable=True,
        unique=True,
    )
    started_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    ended_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    status: Mapped[SessionStatus] = mapped_column(
        Enum(SessionStatus, name="attendance_session_status"),
        nullable=False,
        default=SessionStatus.OPEN,
        server_default=text("'OPEN'"),
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=text("CURRENT_TIMESTAMP"),
        onupdate=lambda: datetime.now(timezone.utc),
    )


class QrReplayRecord(Base):
    __tablename__ = "qr_replay_records"
    __table_args__ = (UniqueConstraint("site_id", "nonce", name=QR_REPLAY_CONSTRAINT),)

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    site_id: Mapped[str] = mapped_column(ForeignKey("sites.id", ondelete="RESTRICT"), nullable=False)
    nonce: Mapped[str] = mapped_column(String(128), nullable=False)
    issued_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    seen_by_technician_id: Mapped[str] = mapped_column(String(64), nullable=False)
    accepted_event_id: Mapped[str | None] = mapped_column(
        ForeignKey("attendance_events.id", ondelete="SET NULL"),
        nullable=True,
        unique=True,
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=text("CURRENT_TIMESTAMP"),
    )
