#!/usr/bin/env python
from __future__ import annotations

import json
import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from sqlalchemy import create_engine, inspect, text
from sqlalchemy.engine import Connection

ROOT_DIR = Path(__file__).resolve().parents[1]
if str(ROOT_DIR) not in sys.path:
    sys.path.insert(0, str(ROOT_DIR))

from app.settings import get_settings

EXPECTED_HEAD = "0001_initial"
SAMPLE_LIMIT = 20

INVARIANT_QUERIES: dict[str, str] = {
    "multiple_open_sessions_per_technician": """
        select technician_id, count(*)
        from attendance_sessions
        where status = 'OPEN'
        group by technician_id
        having count(*) > 1
        limit :limit
    """,
    "accepted_checkin_without_session": """
        select e.id
        from attendance_events e
        left join attendance_sessions s on s.check_in_event_id = e.id
        where e.event_type = 'CHECK_IN'
          and e.decision = 'ACCEPTED'
          and s.id is null
        limit :limit
    """,
    "closed_session_without_checkout": """
        select id
        from attendance_sessions
        where status = 'CLOSED'
          and (check_out_event_id is null or ended_at is null)
        limit :limit
    """,
    "replay_record_linked_to_non_accepted_event": """
        select r.id
        from qr_replay_records r
        join attendance_events e on e.id = r.accepted_event_id
        where e.decision <> 'ACCEPTED'
        limit :limit
    """,
}

REQUIRED_TABLES = ("sites", "attendance_events", "attendance_sessions", "qr_replay_records")


def run_checks(conn: Connection) -> list[dict[str, Any]]:
    checks: list[dict[str, Any]] = []

    def add(name: str, status: str, details: dict[str, Any]) -> None:
        checks.append(
            {
                "name": name,
                "status": status,
                "details": details,
            }
        )

    tables = set(inspect(conn).get_table_names())

    current_versions: list[str] = []
    if "alembic_version" in tables:
        current_versions = [
            row[0]
            for row in conn.execute(text("select version_num from alembic_version")).fetchall()
        ]
    add("alembic_version", "ok" if current_versions else "fail", {"current": current_versions})
    add(
        "migration_up_to_date",
        "ok" if EXPECTED_HEAD in current_versions else "warn",
        {"expected_head": EXPECTED_HEAD, "current": current_versions},
    )

    missing_tables = [table for table in REQUIRED_TABLES if table not in tables]
    add("missing_tables", "fail" if missing_tables else "ok", {"tables": missing_tables})
    if missing_tables:
        return checks

    for name, query in INVARIANT_QUERIES.items():
        rows = conn.execute(text(query), {"limit": SAMPLE_LIMIT}).fetchall()
        add(
            name,
            "fail" if rows else "ok",
            {"sample": [list(row) if len(row) > 1 else row[0] for row in rows]},
        )

    return checks


def run(database_url: str | None = None) -> dict[str, Any]:
    url = database_url or get_settings().database_url
    engine = create_engine(url)
    try:
        with engine.connect() as conn:
            checks = run_checks(conn)
    finally:
        engine.dispose()

    return {
        "generated_at_utc": datetime.now(timezone.utc).isoformat(),
        "ok": all(item["status"] != "fail" for item in checks),
        "checks": checks,
    }


if __name__ == "__main__":
    report = run()
    print(json.dumps(report, ensure_ascii=False, indent=2))
    sys.exit(0 if report["ok"] else 1)
