from __future__ import annotations

import json
import os
import sqlite3
from typing import Any

from .runtime import ServiceState, ServiceStatus, utc_now
from .settings import settings


def _resolve_db_path() -> str:
    """Return a file path usable by sqlite.

    If the configured path is an existing directory (Docker creates one when
    a bind-mounted file is missing), the DB file is placed inside it.
    """

    p = os.path.abspath(settings.db_path)

    if os.path.isdir(p):
        p = os.path.join(p, "stackctl.db")

    parent = os.path.dirname(p)
    if parent and not os.path.exists(parent):
        os.makedirs(parent, exist_ok=True)

    return p


def connect() -> sqlite3.Connection:
    conn = sqlite3.connect(_resolve_db_path(), check_same_thread=False, timeout=10)
    conn.row_factory = sqlite3.Row
    return conn


def init_db() -> None:
    """Create tables if they do not exist."""
    with connect() as conn:
        conn.executescript(
            """
            CREATE TABLE IF NOT EXISTS service_status (
              project TEXT NOT NULL,
              name TEXT NOT NULL,
              state TEXT NOT NULL, -- pending|starting|healthy|unhealthy|stopped|failed
              message TEXT NOT NULL DEFAULT '',
              consecutive_failures INTEGER NOT NULL DEFAULT 0,
              restart_count INTEGER NOT NULL DEFAULT 0,
              latency_ms REAL,
              updated_at TEXT NOT NULL,
              PRIMARY KEY (project, name)
            );

            CREATE TABLE IF NOT EXISTS start_orders (
              id INTEGER PRIMARY KEY AUTOINCREMENT,
              project TEXT NOT NULL,
              services TEXT NOT NULL, -- JSON list, in start order
              created_at TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS events (
              id INTEGER PRIMARY KEY AUTOINCREMENT,
              ts TEXT NOT NULL,
              level TEXT NOT NULL,
              service_name TEXT,
              message TEXT NOT NULL
            );

            CREATE INDEX IF NOT EXISTS idx_events_ts ON events(ts);
            CREATE INDEX IF NOT EXISTS idx_start_orders_project ON start_orders(project);
            """
        )


def log_event(level: str, message: str, service_name: str | None = None) -> None:
    with connect() as conn:
        conn.execute(
            "INSERT INTO events (ts, level, service_name, message) VALUES (?, ?, ?, ?)",
            (utc_now(), level.upper(), service_name, message),
        )


def latest_events(limit: int = 100, service_name: str | None = None) -> list[dict[str, Any]]:
    with connect() as conn:
        if service_name:
            rows = conn.execute(
                "SELECT * FROM events WHERE service_name=? ORDER BY id DESC LIMIT ?", (service_name, limit)
            ).fetchall()
        else:
            rows = conn.execute("SELECT * FROM events ORDER BY id DESC LIMIT ?", (limit,)).fetchall()
        return [dict(r) for r in rows]


def save_status(project: str, st: ServiceStatus) -> None:
    with connect() as conn:
        conn.execute(
            """
            INSERT INTO service_status (project, name, state, message, consecutive_failures, restart_count, latency_ms, updated_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(project, name) DO UPDATE SET
              state=excluded.state,
              message=excluded.message,
              consecutive_failures=excluded.consecutive_failures,
              restart_count=excluded.restart_count,
              latency_ms=excluded.latency_ms,
              updated_at=excluded.updated_at
            """,
            (
                project,
                st.name,
                st.state.value,
                st.message,
                st.consecutive_failures,
                st.restart_count,
                st.latency_ms,
                st.updated_at or utc_now(),
            ),
        )


def load_statuses(project: str) -> dict[str, ServiceStatus]:
    with connect() as conn:
        rows = conn.execute("SELECT * FROM service_status WHERE project=? ORDER BY name", (project,)).fetchall()
    out: dict[str, ServiceStatus] = {}
    for r in rows:
        out[r["name"]] = ServiceStatus(
            name=r["name"],
            state=ServiceState(r["state"]),
            message=r["message"],
            consecutive_failures=r["consecutive_failures"],
            restart_count=r["restart_count"],
            latency_ms=r["latency_ms"],
            updated_at=r["updated_at"],
        )
    return out


def record_start_order(project: str, services: list[str]) -> None:
    with connect() as conn:
        conn.execute(
            "INSERT INTO start_orders (project, services, created_at) VALUES (?, ?, ?)",
            (project, json.dumps(services), utc_now()),
        )


def last_start_order(project: str) -> list[str] | None:
    with connect() as conn:
        row = conn.execute(
            "SELECT services FROM start_orders WHERE project=? ORDER BY id DESC LIMIT 1", (project,)
        ).fetchone()
    return json.loads(row["services"]) if row else None
