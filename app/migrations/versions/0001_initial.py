"""Initial technician attendance schema

Revision ID: 0001_initial
Revises:
Create Date: 2026-10-19 00:00:00
"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = "0001_initial"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

attendance_event_type = postgresql.ENUM(
    "CHECK_IN",
    "CHECK_OUT",
    name="attendance_event_type",
    create_type=False,
)
attendance_validation_decision = postgresql.ENUM(
    "ACCEPTED",
    "REJECTED",
    name="attendance_validation_decision",
    create_type=False,
)
attendance_range_status = postgresql.ENUM(
    "IN_RANGE",
    "OUT_OF_RANGE",
    name="attendance_range_status",
    create_type=False,
)
attendance_reject_reason = postgresql.ENUM(
    "MISSING_SELFIE",
    "INVALID_QR",
    "INVALID_SESSION",
    "OUT_OF_RANGE",
    "REPLAY",
    name="attendance_reject_reason",
    create_type=False,
)
attendance_session_status = postgresql.ENUM(
    "OPEN",
    "CLOSED",
    name="attendance_session_status",
    create_type=False,
)

ENUMS = (
    attendance_event_type,
    attendance_validation_decision,
    attendance_range_status,
    attendance_reject_reason,
    attendance_session_status,
)


def upgrade() -> None:
    bind = op.get_bind()
    for enum_type in ENUMS:
        enum_type.create(bind, checkfirst=True)

    op.create_table(
        "sites",
        sa.Column("id", sa.String(length=36), primary_key=True, nullable=False),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("latitude", sa.Float(), nullable=False),
        sa.Column("longitude", sa.Float(), nullable=False),
        sa.Column("radius_meters", sa.Integer(), nullable=False, server_default=sa.text("100")),
        sa.Column("strict_out_of_range", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.text("CURRENT_TIMESTAMP"),
        ),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.text("CURRENT_TIMESTAMP"),
        ),
    )

    op.create_table(
        "attendance_events",
        sa.Column("id", sa.String(length=36), primary_key=True, nullable=False),
        sa.Column("technician_id", sa.String(length=64), nullable=False),
        sa.Column("site_id", sa.String(length=36), nullable=False),
        sa.Column("device_id", sa.String(length=64), nullable=True),
        sa.Column("client_event_id", sa.String(length=64), nullable=False),
        sa.Column("event_type", attendance_event_type, nullable=False),
        sa.Column("decision", attendance_validation_decision, nullable=False),
        sa.Column("range_status", attendance_range_status, nullable=True),
        sa.Column("reject_reason", attendance_reject_reason, nullable=True),
        sa.Column("selfie_object_key", sa.String(length=512), nullable=True),
        sa.Column("qr_payload_hash", sa.String(length=128), nullable=True),
        sa.Column("qr_nonce", sa.String(length=128), nullable=True),
        sa.Column("qr_issued_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("qr_expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("lat", sa.Float(), nullable=False),
        sa.Column("lng", sa.Float(), nullable=False),
        sa.Column("accuracy_meters", sa.Float(), nullable=False),
        sa.Column("captured_at_client", sa.DateTime(timezone=True), nullable=False),
        sa.Column("occurred_at_server", sa.DateTime(timezone=True), nullable=False),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.text("CURRENT_TIMESTAMP"),
        ),
        sa.ForeignKeyConstraint(["site_id"], ["sites.id"], ondelete="RESTRICT"),
        sa.UniqueConstraint(
            "technician_id",
            "client_event_id",
            name="uq_attendance_events_technician_client_event",
        ),
    )
    op.create_index("ix_attendance_events_technician_id", "attendance_events", ["technician_id"], unique=False)
    op.create_index("ix_attendance_events_site_id", "attendance_events", ["site_id"], unique=False)
    op.create_index(
        "ix_attendance_events_occurred_at_server",
        "attendance_events",
        ["occurred_at_server"],
        unique=False,
    )

    op.create_table(
        "attendance_sessions",
        sa.Column("id", sa.String(length=36), primary_key=True, nullable=False),
        sa.Column("technician_id", sa.String(length=64), nullable=False),
        sa.Column("site_id", sa.String(length=36), nullable=False),
        sa.Column("check_in_event_id", sa.String(length=36), nullable=False),
        sa.Column("check_out_event_id", sa.String(length=36), nullable=True),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("ended_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("status", attendance_session_status, nullable=False, server_default=sa.text("'OPEN'")),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.text("CURRENT_TIMESTAMP"),
        ),
        sa.ForeignKeyConstraint(["site_id"], ["sites.id"], ondelete="RESTRICT"),
        sa.ForeignKeyConstraint(["check_in_event_id"], ["attendance_events.id"], ondelete="RESTRICT"),
        sa.ForeignKeyConstraint(["check_out_event_id"], ["attendance_events.id"], ondelete="RESTRICT"),
        sa.UniqueConstraint("check_in_event_id", name="uq_attendance_sessions_check_in_event_id"),
        sa.UniqueConstraint("check_out_event_id", name="uq_attendance_sessions_check_out_event_id"),
    )
    op.create_index(
        "uq_attendance_sessions_open_technician",
        "attendance_sessions",
        ["technician_id"],
        unique=True,
        postgresql_where=sa.text("status = 'OPEN'"),
    )
    op.create_index(
        "ix_attendance_sessions_technician_started",
        "attendance_sessions",
        ["technician_id", "started_at"],
        unique=False,
    )

    op.create_table(
        "qr_replay_records",
        sa.Column("id", sa.String(length=36), primary_key=True, nullable=False),
        sa.Column("site_id", sa.String(length=36), nullable=False),
        sa.Column("nonce", sa.String(length=128), nullable=False),
        sa.Column("issued_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("seen_by_technician_id", sa.String(length=64), nullable=False),
        sa.Column("accepted_event_id", sa.String(length=36), nullable=True),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.text("CURRENT_TIMESTAMP"),
        ),
        sa.ForeignKeyConstraint(["site_id"], ["sites.id"], ondelete="RESTRICT"),
        sa.ForeignKeyConstraint(["accepted_event_id"], ["attendance_events.id"], ondelete="SET NULL"),
        sa.UniqueConstraint("site_id", "nonce", name="uq_qr_replay_records_site_nonce"),
        sa.UniqueConstraint("accepted_event_id", name="uq_qr_replay_records_accepted_event_id"),
    )


def downgrade() -> None:
    op.drop_table("qr_replay_records")
    op.drop_index("ix_attendance_sessions_technician_started", table_name="attendance_sessions")
    op.drop_index("uq_attendance_sessions_open_technician", table_name="attendance_sessions")
    op.drop_table("attendance_sessions")
    op.drop_index("ix_attendance_events_occurred_at_server", table_name="attendance_events")
    op.drop_index("ix_attendance_events_site_id", table_name="attendance_events")
    op.drop_index("ix_attendance_events_technician_id", table_name="attendance_events")
    op.drop_table("attendance_events")
    op.drop_table("sites")

    bind = op.get_bind()
    for enum_type in reversed(ENUMS):
        enum_type.drop(bind, checkfirst=True)
