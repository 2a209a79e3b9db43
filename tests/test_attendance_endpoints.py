from __future__ import annotations

import os
import unittest
from datetime import datetime, timedelta, timezone
from unittest.mock import patch

from fastapi.testclient import TestClient
from sqlalchemy.exc import DataError, OperationalError

from app.db import get_db
from app.main import app
from app.models import AttendanceEvent, QrReplayRecord
from app.services.attendance_store import ConstraintViolation
from app.settings import get_settings
from tests.support import (
    TEST_JWT_SECRET,
    add_site,
    as_json,
    checkin_payload,
    checkout_payload,
    count_rows,
    make_session_factory,
    make_sqlite_engine,
    make_token,
    override_get_db,
)


def _fresh_checkin_json(site_id: str, **overrides) -> dict:  # type: ignore[no-untyped-def]
    now = datetime.now(timezone.utc)
    values = {
        "qr_issued_at": now - timedelta(minutes=1),
        "qr_expires_at": now + timedelta(minutes=4),
    }
    values.update(overrides)
    return as_json(checkin_payload(site_id, **values))


class AttendanceEndpointTests(unittest.TestCase):
    def setUp(self) -> None:
        self.env_patch = patch.dict(os.environ, {"JWT_SECRET": TEST_JWT_SECRET}, clear=False)
        self.env_patch.start()
        get_settings.cache_clear()

        self.engine = make_sqlite_engine()
        self.session_factory = make_session_factory(self.engine)
        with self.session_factory() as db:
            self.site_id = add_site(db)
        app.dependency_overrides[get_db] = override_get_db(self.session_factory)
        self.client = TestClient(app)

    def tearDown(self) -> None:
        app.dependency_overrides.clear()
        self.engine.dispose()
        self.env_patch.stop()
        get_settings.cache_clear()

    def _auth(self, **claims) -> dict[str, str]:  # type: ignore[no-untyped-def]
        return {"Authorization": f"Bearer {make_token(**claims)}"}

    def test_checkin_created(self) -> None:
        response = self.client.post(
            "/attendance/check-in",
            json=_fresh_checkin_json(self.site_id),
            headers=self._auth(),
        )

        self.assertEqual(response.status_code, 201)
        body = response.json()
        self.assertEqual(body["technician_id"], "tech-1")
        self.assertEqual(body["event_type"], "CHECK_IN")
        self.assertEqual(body["decision"], "ACCEPTED")
        self.assertEqual(body["range_status"], "IN_RANGE")
        self.assertIsNone(body["reject_reason"])
        self.assertIn("X-Request-Id", response.headers)
        self.assertNotIn("X-Idempotent-Replay", response.headers)

    def test_repeated_checkin_returns_same_event(self) -> None:
        payload = _fresh_checkin_json(self.site_id)
        first = self.client.post("/attendance/check-in", json=payload, headers=self._auth())
        second = self.client.post("/attendance/check-in", json=payload, headers=self._auth())

        self.assertEqual(first.status_code, 201)
        self.assertEqual(second.status_code, 201)
        self.assertEqual(first.json()["id"], second.json()["id"])
        self.assertEqual(second.headers.get("X-Idempotent-Replay"), "true")

    def test_rejection_is_returned_as_created_event(self) -> None:
        response = self.client.post(
            "/attendance/check-in",
            json=_fresh_checkin_json(self.site_id, selfie_object_key=None),
            headers=self._auth(),
        )

        self.assertEqual(response.status_code, 201)
        self.assertEqual(response.json()["decision"], "REJECTED")
        self.assertEqual(response.json()["reject_reason"], "MISSING_SELFIE")

    def test_unknown_site_returns_error_envelope(self) -> None:
        response = self.client.post(
            "/attendance/check-in",
            json=_fresh_checkin_json("0b6f3a8e-5a51-4a57-9a0e-5f3e2f1c7d21"),
            headers={**self._auth(), "X-Request-Id": "req-404"},
        )

        self.assertEqual(response.status_code, 404)
        error = response.json()["error"]
        self.assertEqual(error["code"], "SITE_NOT_FOUND")
        self.assertEqual(error["request_id"], "req-404")

    def test_invalid_coordinates_are_validation_errors(self) -> None:
        payload = _fresh_checkin_json(self.site_id)
        payload["lat"] = 120.0
        response = self.client.post("/attendance/check-in", json=payload, headers=self._auth())

        self.assertEqual(response.status_code, 422)
        self.assertEqual(response.json()["error"]["code"], "VALIDATION_ERROR")

    def test_qr_window_inverted_is_validation_error(self) -> None:
        now = datetime.now(timezone.utc)
        payload = _fresh_checkin_json(self.site_id)
        payload["qr_issued_at"] = now.isoformat()
        payload["qr_expires_at"] = (now - timedelta(minutes=1)).isoformat()
        response = self.client.post("/attendance/check-in", json=payload, headers=self._auth())
        self.assertEqual(response.status_code, 422)

    def test_non_uuid_client_event_id_is_validation_error(self) -> None:
        payload = _fresh_checkin_json(self.site_id)
        payload["client_event_id"] = "not-a-uuid"
        response = self.client.post("/attendance/check-in", json=payload, headers=self._auth())
        self.assertEqual(response.status_code, 422)

    def test_missing_token_is_unauthorized(self) -> None:
        response = self.client.post("/attendance/check-in", json=_fresh_checkin_json(self.site_id))

        self.assertEqual(response.status_code, 401)
        self.assertEqual(response.json()["error"]["code"], "INVALID_TOKEN")

    def test_token_with_wrong_audience_is_unauthorized(self) -> None:
        response = self.client.post(
            "/attendance/check-in",
            json=_fresh_checkin_json(self.site_id),
            headers=self._auth(audience="someone-else"),
        )
        self.assertEqual(response.status_code, 401)

    def test_expired_token_is_unauthorized(self) -> None:
        response = self.client.post(
            "/attendance/check-in",
            json=_fresh_checkin_json(self.site_id),
            headers=self._auth(expires_in=timedelta(minutes=-5)),
        )
        self.assertEqual(response.status_code, 401)

    def test_admin_cannot_check_in(self) -> None:
        response = self.client.post(
            "/attendance/check-in",
            json=_fresh_checkin_json(self.site_id),
            headers=self._auth(sub="admin-1", role="ADMIN"),
        )

        self.assertEqual(response.status_code, 403)
        self.assertEqual(response.json()["error"]["code"], "FORBIDDEN")

    def test_unknown_role_is_forbidden(self) -> None:
        response = self.client.get("/sites", headers=self._auth(role="GUEST"))
        self.assertEqual(response.status_code, 403)

    def test_checkout_and_current_session(self) -> None:
        self.client.post("/attendance/check-in", json=_fresh_checkin_json(self.site_id), headers=self._auth())

        session_response = self.client.get("/attendance/session", headers=self._auth())
        self.assertEqual(session_response.status_code, 200)
        self.assertEqual(session_response.json()["status"], "OPEN")

        checkout_response = self.client.post(
            "/attendance/check-out",
            json=as_json(checkout_payload(self.site_id)),
            headers=self._auth(),
        )
        self.assertEqual(checkout_response.status_code, 201)
        self.assertEqual(checkout_response.json()["decision"], "ACCEPTED")
        self.assertEqual(checkout_response.json()["event_type"], "CHECK_OUT")

        session_response = self.client.get("/attendance/session", headers=self._auth())
        self.assertEqual(session_response.status_code, 200)
        self.assertIsNone(session_response.json())

    def test_orphan_checkout_is_rejected(self) -> None:
        response = self.client.post(
            "/attendance/check-out",
            json=as_json(checkout_payload(self.site_id)),
            headers=self._auth(),
        )
        self.assertEqual(response.status_code, 201)
        self.assertEqual(response.json()["reject_reason"], "INVALID_SESSION")

    def test_supervisor_lists_recent_events(self) -> None:
        self.client.post("/attendance/check-in", json=_fresh_checkin_json(self.site_id), headers=self._auth())
        self.client.post(
            "/attendance/check-in",
            json=_fresh_checkin_json(self.site_id, selfie_object_key=None),
            headers=self._auth(sub="tech-2"),
        )

        response = self.client.get("/attendance", headers=self._auth(sub="sup-1", role="SUPERVISOR"))
        self.assertEqual(response.status_code, 200)
        self.assertEqual(len(response.json()), 2)

        rejected = self.client.get(
            "/attendance",
            params={"decision": "REJECTED"},
            headers=self._auth(sub="sup-1", role="SUPERVISOR"),
        )
        self.assertEqual([item["technician_id"] for item in rejected.json()], ["tech-2"])

        limited = self.client.get(
            "/attendance",
            params={"limit": 1},
            headers=self._auth(sub="admin-1", role="ADMIN"),
        )
        self.assertEqual(len(limited.json()), 1)

    def test_technician_cannot_list_events(self) -> None:
        response = self.client.get("/attendance", headers=self._auth())
        self.assertEqual(response.status_code, 403)

    def test_sites_listed_for_any_role(self) -> None:
        with self.session_factory() as db:
            add_site(db, name="Annex")
            add_site(db, name="Zeta yard", is_active=False)

        response = self.client.get("/sites", headers=self._auth(role="SUPERVISOR"))
        self.assertEqual(response.status_code, 200)
        self.assertEqual([item["name"] for item in response.json()], ["Annex", "Depot"])

    def test_overlong_subject_is_unauthorized(self) -> None:
        response = self.client.post(
            "/attendance/check-in",
            json=_fresh_checkin_json(self.site_id),
            headers=self._auth(sub="t" * 65),
        )

        self.assertEqual(response.status_code, 401)
        self.assertEqual(response.json()["error"]["code"], "INVALID_TOKEN")
        with self.session_factory() as db:
            self.assertEqual(count_rows(db, AttendanceEvent), 0)

    def test_subject_at_column_width_is_accepted(self) -> None:
        response = self.client.post(
            "/attendance/check-in",
            json=_fresh_checkin_json(self.site_id),
            headers=self._auth(sub="t" * 64),
        )
        self.assertEqual(response.status_code, 201)

    def test_store_outage_returns_503(self) -> None:
        fault = OperationalError("INSERT INTO attendance_events", {}, Exception("server closed the connection"))
        with patch("app.services.attendance_store.create_event", side_effect=fault):
            response = self.client.post(
                "/attendance/check-in",
                json=_fresh_checkin_json(self.site_id),
                headers={**self._auth(), "X-Request-Id": "req-503"},
            )

        self.assertEqual(response.status_code, 503)
        self.assertEqual(response.headers.get("Retry-After"), "1")
        error = response.json()["error"]
        self.assertEqual(error["code"], "STORE_UNAVAILABLE")
        self.assertEqual(error["request_id"], "req-503")
        with self.session_factory() as db:
            self.assertEqual(count_rows(db, QrReplayRecord), 0)

    def test_data_error_is_not_reported_as_retryable(self) -> None:
        client = TestClient(app, raise_server_exceptions=False)
        fault = DataError("INSERT INTO attendance_events", {}, Exception("value too long"))
        with patch("app.services.attendance_store.create_event", side_effect=fault):
            response = client.post(
                "/attendance/check-in",
                json=_fresh_checkin_json(self.site_id),
                headers=self._auth(),
            )

        self.assertEqual(response.status_code, 500)
        self.assertNotIn("Retry-After", response.headers)
        self.assertEqual(response.json()["error"]["code"], "INTERNAL_ERROR")

    def test_unresolved_conflict_returns_409(self) -> None:
        conflict = ConstraintViolation("uq_attendance_events_technician_client_event")
        with (
            patch("app.services.idempotency.resolve_existing_event", return_value=None),
            patch("app.services.attendance_store.create_event", side_effect=conflict),
        ):
            response = self.client.post(
                "/attendance/check-in",
                json=_fresh_checkin_json(self.site_id),
                headers={**self._auth(), "X-Request-Id": "req-409"},
            )

        self.assertEqual(response.status_code, 409)
        self.assertNotIn("Retry-After", response.headers)
        error = response.json()["error"]
        self.assertEqual(error["code"], "ATTENDANCE_CONFLICT")
        self.assertEqual(error["request_id"], "req-409")
        self.assertNotIn("Retry", error["message"])

    def test_health_reports_schema_guard_not_run(self) -> None:
        response = self.client.get("/health")
        self.assertEqual(response.status_code, 200)
        body = response.json()
        self.assertIn(body["status"], {"ok", "degraded"})
        self.assertIn("schema_guard", body)


if __name__ == "__main__":
    unittest.main()
