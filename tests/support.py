from __future__ import annotations

from collections.abc import Generator
from datetime import datetime, timedelta, timezone
from typing import Any
from uuid import uuid4

from jose import jwt
from sqlalchemy import create_engine, event, func, select
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from app import models  # noqa: F401
from app.db import Base
from app.models import Site
from app.schemas import CheckInRequest, CheckOutRequest

NOW = datetime(2026, 3, 2, 8, 30, tzinfo=timezone.utc)
TEST_JWT_SECRET = "test-secret"
TEST_JWT_ISSUER = "technician-attendance"
TEST_JWT_AUDIENCE = "technician-attendance-api"


def make_sqlite_engine() -> Engine:
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    _install_transaction_recipe(engine, begin_sql="BEGIN")
    Base.metadata.create_all(engine)
    return engine


def make_file_sqlite_engine(path: str) -> Engine:
    """File-backed engine with one connection per thread.

    ``BEGIN IMMEDIATE`` makes concurrent writers wait on the database lock
    instead of failing on lock upgrade.
    """
    engine = create_engine(
        f"sqlite:///{path}",
        connect_args={"check_same_thread": False, "timeout": 30},
        pool_size=10,
        max_overflow=10,
    )
    _install_transaction_recipe(engine, begin_sql="BEGIN IMMEDIATE")
    Base.metadata.create_all(engine)
    return engine


def _install_transaction_recipe(engine: Engine, *, begin_sql: str) -> None:
    @event.listens_for(engine, "connect")
    def _on_connect(dbapi_connection, _connection_record):  # type: ignore[no-untyped-def]
        # let SQLAlchemy own BEGIN/COMMIT so rollbacks cover every statement
        dbapi_connection.isolation_level = None
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    @event.listens_for(engine, "begin")
    def _on_begin(conn):  # type: ignore[no-untyped-def]
        conn.exec_driver_sql(begin_sql)


def make_session_factory(engine: Engine) -> sessionmaker[Session]:
    return sessionmaker(bind=engine, autoflush=False, expire_on_commit=True)


def override_get_db(session_factory: sessionmaker[Session]):
    def _override() -> Generator[Session, None, None]:
        db = session_factory()
        try:
            yield db
        finally:
            db.close()

    return _override


def add_site(
    db: Session,
    *,
    latitude: float = -6.2,
    longitude: float = 106.8,
    radius_meters: int = 100,
    strict_out_of_range: bool = False,
    name: str = "Depot",
    is_active: bool = True,
) -> str:
    site_id = str(uuid4())
    site = Site(
        id=site_id,
        name=name,
        latitude=latitude,
        longitude=longitude,
        radius_meters=radius_meters,
        strict_out_of_range=strict_out_of_range,
        is_active=is_active,
    )
    db.add(site)
    db.commit()
    return site_id


def checkin_payload(site_id: str, **overrides: Any) -> CheckInRequest:
    values: dict[str, Any] = {
        "site_id": site_id,
        "client_event_id": str(uuid4()),
        "qr_payload_hash": "sha256:5f2c",
        "qr_nonce": uuid4().hex,
        "qr_issued_at": NOW - timedelta(minutes=1),
        "qr_expires_at": NOW + timedelta(minutes=4),
        "selfie_object_key": "selfies/tech-1/in.jpg",
        "lat": -6.2,
        "lng": 106.8,
        "accuracy_meters": 8.0,
        "captured_at_client": NOW - timedelta(seconds=5),
    }
    values.update(overrides)
    return CheckInRequest.model_validate(values)


def checkout_payload(site_id: str, **overrides: Any) -> CheckOutRequest:
    values: dict[str, Any] = {
        "site_id": site_id,
        "client_event_id": str(uuid4()),
        "selfie_object_key": "selfies/tech-1/out.jpg",
        "lat": -6.2,
        "lng": 106.8,
        "accuracy_meters": 8.0,
        "captured_at_client": NOW - timedelta(seconds=5),
    }
    values.update(overrides)
    return CheckOutRequest.model_validate(values)


def as_json(payload: CheckOutRequest) -> dict[str, Any]:
    return payload.model_dump(mode="json")


def count_rows(db: Session, model: type, *criteria: Any) -> int:
    stmt = select(func.count()).select_from(model)
    if criteria:
        stmt = stmt.where(*criteria)
    return int(db.scalar(stmt) or 0)


def make_token(
    *,
    sub: str = "tech-1",
    role: str = "TECHNICIAN",
    secret: str = TEST_JWT_SECRET,
    issuer: str = TEST_JWT_ISSUER,
    audience: str = TEST_JWT_AUDIENCE,
    expires_in: timedelta = timedelta(minutes=15),
) -> str:
    now = datetime.now(timezone.utc)
    claims = {
        "sub": sub,
        "role": role,
        "iss": issuer,
        "aud": audience,
        "iat": int(now.timestamp()),
        "exp": int((now + expires_in).timestamp()),
    }
    return jwt.encode(claims, secret, algorithm="HS256")
