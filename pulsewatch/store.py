from __future__ import annotations

import json
import sqlite3
import threading
import time
from datetime import datetime
from pathlib import Path
from typing import Any, Protocol

from pulsewatch.models import CheckResult, Incident, Monitor


SCHEMA_VERSION = 1
LATEST_CHECK_TTL_SECONDS = 86400
DEFAULT_CHECK_LIMIT = 100


class Store(Protocol):
    def list_active_monitors(self) -> list[Monitor]: ...

    def get_monitor(self, monitor_id: str) -> Monitor | None: ...

    def upsert_monitor(self, monitor: Monitor) -> None: ...

    def find_open_incident(self, monitor_id: str) -> Incident | None: ...

    def insert_incident(self, monitor_id: str, started_at: datetime) -> Incident | None: ...

    def resolve_incident(self, incident_id: int, resolved_at: datetime, duration_seconds: int) -> None: ...

    def list_incidents(self, monitor_id: str) -> list[Incident]: ...

    def save_check_result(self, result: CheckResult) -> None: ...

    def list_checks(self, monitor_id: str, *, limit: int = DEFAULT_CHECK_LIMIT) -> list[CheckResult]: ...

    def cache_latest_check(
        self, monitor_id: str, result: CheckResult, *, ttl_seconds: int = LATEST_CHECK_TTL_SECONDS
    ) -> None: ...

    def get_latest_check(self, monitor_id: str) -> CheckResult | None: ...


def _json_dumps(obj: Any) -> str:
    return json.dumps(obj, ensure_ascii=False, sort_keys=True)


def _connect(path: str) -> sqlite3.Connection:
    p = str(path or "").strip()
    if not p:
        raise ValueError("Missing db_path")
    if p != ":memory:":
        Path(p).parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(p, timeout=30, isolation_level=None, check_same_thread=False)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA busy_timeout = 5000;")
    # Best-effort: WAL improves concurrency for a single-host service.
    try:
        conn.execute("PRAGMA journal_mode = WAL;")
    except sqlite3.DatabaseError:
        pass
    return conn


def _apply_v1(conn: sqlite3.Connection) -> None:
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS monitors (
          id TEXT PRIMARY KEY,
          name TEXT NOT NULL,
          url TEXT NOT NULL,
          check_type TEXT NOT NULL DEFAULT 'http',
          method TEXT NOT NULL DEFAULT 'GET',
          timeout_seconds REAL NOT NULL DEFAULT 30,
          expected_status_codes TEXT NOT NULL DEFAULT '200,201,204,301,302',
          keyword TEXT,
          forbidden_keyword TEXT,
          offline_threshold_minutes REAL NOT NULL DEFAULT 3,
          target_servers TEXT,
          webhook_url TEXT,
          webhook_content_type TEXT NOT NULL DEFAULT 'application/json',
          webhook_headers TEXT,
          webhook_body TEXT,
          webhook_username TEXT,
          is_active INTEGER NOT NULL DEFAULT 1
        );
        """
    )
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS monitor_checks (
          id INTEGER PRIMARY KEY AUTOINCREMENT,
          monitor_id TEXT NOT NULL,
          status TEXT NOT NULL,
          response_time INTEGER NOT NULL,
          status_code INTEGER NOT NULL,
          error_message TEXT NOT NULL DEFAULT '',
          checked_at TEXT NOT NULL
        );
        """
    )
    conn.execute(
        "CREATE INDEX IF NOT EXISTS idx_monitor_checks_monitor ON monitor_checks (monitor_id, checked_at);"
    )
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS incidents (
          id INTEGER PRIMARY KEY AUTOINCREMENT,
          monitor_id TEXT NOT NULL,
          started_at TEXT NOT NULL,
          resolved_at TEXT,
          duration_seconds INTEGER
        );
        """
    )
    # At most one unresolved incident per monitor.
    conn.execute(
        "CREATE UNIQUE INDEX IF NOT EXISTS idx_incidents_one_open ON incidents (monitor_id) WHERE resolved_at IS NULL;"
    )
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS latest_checks (
          monitor_id TEXT PRIMARY KEY,
          payload TEXT NOT NULL,
          expires_at_ts REAL NOT NULL
        );
        """
    )


class SqliteStore:
    """Durable store backed by a single sqlite file."""

    def __init__(self, db_path: str) -> None:
        self.db_path = db_path
        self._conn = _connect(db_path)
        self._lock = threading.Lock()
        self._ensure_schema()

    def close(self) -> None:
        self._conn.close()

    def _ensure_schema(self) -> None:
        with self._lock:
            conn = self._conn
            conn.execute("CREATE TABLE IF NOT EXISTS schema_meta (k TEXT PRIMARY KEY, v TEXT NOT NULL);")
            row = conn.execute("SELECT v FROM schema_meta WHERE k='version'").fetchone()
            cur = int(row["v"]) if row and row["v"] else 0
            if cur >= SCHEMA_VERSION:
                return
            if cur == 0:
                _apply_v1(conn)
                conn.execute(
                    "INSERT OR REPLACE INTO schema_meta (k, v) VALUES ('version', ?)", (str(SCHEMA_VERSION),)
                )
                return
            raise RuntimeError(f"Unsupported schema version upgrade path cur={cur} target={SCHEMA_VERSION}")

    def list_active_monitors(self) -> list[Monitor]:
        with self._lock:
            rows = self._conn.execute("SELECT * FROM monitors WHERE is_active = 1 ORDER BY id").fetchall()
        return [Monitor.from_row(r) for r in rows]

    def get_monitor(self, monitor_id: str) -> Monitor | None:
        with self._lock:
            row = self._conn.execute("SELECT * FROM monitors WHERE id = ?", (monitor_id,)).fetchone()
        return Monitor.from_row(row) if row else None

    def upsert_monitor(self, monitor: Monitor) -> None:
        row = monitor.to_row()
        cols = list(row.keys())
        updates = ", ".join(f"{c}=excluded.{c}" for c in cols if c != "id")
        sql = (
            f"INSERT INTO monitors ({', '.join(cols)}) VALUES ({', '.join('?' for _ in cols)}) "
            f"ON CONFLICT(id) DO UPDATE SET {updates}"
        )
        with self._lock:
            self._conn.execute(sql, [row[c] for c in cols])

    def find_open_incident(self, monitor_id: str) -> Incident | None:
        with self._lock:
            row = self._conn.execute(
                "SELECT * FROM incidents WHERE monitor_id = ? AND resolved_at IS NULL ORDER BY id LIMIT 1",
                (monitor_id,),
            ).fetchone()
        return Incident.from_row(row) if row else None

    def insert_incident(self, monitor_id: str, started_at: datetime) -> Incident | None:
        """Returns None when the monitor already has an open incident."""
        with self._lock:
            try:
                cur = self._conn.execute(
                    "INSERT INTO incidents (monitor_id, started_at) VALUES (?, ?)",
                    (monitor_id, started_at.isoformat()),
                )
            except sqlite3.IntegrityError:
                return None
            return Incident(id=int(cur.lastrowid), monitor_id=monitor_id, started_at=started_at)

    def resolve_incident(self, incident_id: int, resolved_at: datetime, duration_seconds: int) -> None:
        with self._lock:
            self._conn.execute(
                "UPDATE incidents SET resolved_at = ?, duration_seconds = ? WHERE id = ? AND resolved_at IS NULL",
                (resolved_at.isoformat(), int(duration_seconds), int(incident_id)),
            )

    def list_incidents(self, monitor_id: str) -> list[Incident]:
        with self._lock:
            rows = self._conn.execute(
                "SELECT * FROM incidents WHERE monitor_id = ? ORDER BY id", (monitor_id,)
            ).fetchall()
        return [Incident.from_row(r) for r in rows]

    def save_check_result(self, result: CheckResult) -> None:
        d = result.to_dict()
        with self._lock:
            self._conn.execute(
                """
                INSERT INTO monitor_checks (monitor_id, status, response_time, status_code, error_message, checked_at)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (
                    d["monitor_id"],
                    d["status"],
                    d["response_time"],
                    d["status_code"],
                    d["error_message"],
                    d["checked_at"],
                ),
            )

    def list_checks(self, monitor_id: str, *, limit: int = DEFAULT_CHECK_LIMIT) -> list[CheckResult]:
        with self._lock:
            rows = self._conn.execute(
                "SELECT * FROM monitor_checks WHERE monitor_id = ? ORDER BY checked_at DESC, id DESC LIMIT ?",
                (monitor_id, max(1, int(limit))),
            ).fetchall()
        return [CheckResult.from_dict(r) for r in rows]

    def cache_latest_check(
        self, monitor_id: str, result: CheckResult, *, ttl_seconds: int = LATEST_CHECK_TTL_SECONDS
    ) -> None:
        expires_at_ts = time.time() + max(0, int(ttl_seconds))
        with self._lock:
            self._conn.execute(
                "INSERT OR REPLACE INTO latest_checks (monitor_id, payload, expires_at_ts) VALUES (?, ?, ?)",
                (monitor_id, _json_dumps(result.to_dict()), expires_at_ts),
            )

    def get_latest_check(self, monitor_id: str) -> CheckResult | None:
        with self._lock:
            row = self._conn.execute(
                "SELECT payload, expires_at_ts FROM latest_checks WHERE monitor_id = ?", (monitor_id,)
            ).fetchone()
        if not row or float(row["expires_at_ts"]) <= time.time():
            return None
        return CheckResult.from_dict(json.loads(row["payload"]))


class MemoryStore:
    """In-process store with the same contract as SqliteStore; nothing survives a restart."""

    def __init__(self, monitors: list[Monitor] | None = None) -> None:
        self._lock = threading.Lock()
        self.monitors: dict[str, Monitor] = {m.id: m for m in (monitors or [])}
        self.incidents: list[Incident] = []
        self.checks: list[CheckResult] = []
        self.latest: dict[str, tuple[CheckResult, float]] = {}

    def list_active_monitors(self) -> list[Monitor]:
        with self._lock:
            return [m for _id, m in sorted(self.monitors.items()) if m.is_active]

    def get_monitor(self, monitor_id: str) -> Monitor | None:
        with self._lock:
            return self.monitors.get(monitor_id)

    def upsert_monitor(self, monitor: Monitor) -> None:
        with self._lock:
            self.monitors[monitor.id] = monitor

    def find_open_incident(self, monitor_id: str) -> Incident | None:
        with self._lock:
            return self._open_incident(monitor_id)

    def _open_incident(self, monitor_id: str) -> Incident | None:
        for incident in self.incidents:
            if incident.monitor_id == monitor_id and incident.is_open:
                return incident
        return None

    def insert_incident(self, monitor_id: str, started_at: datetime) -> Incident | None:
        with self._lock:
            if self._open_incident(monitor_id) is not None:
                return None
            incident = Incident(id=len(self.incidents) + 1, monitor_id=monitor_id, started_at=started_at)
            self.incidents.append(incident)
            return incident

    def resolve_incident(self, incident_id: int, resolved_at: datetime, duration_seconds: int) -> None:
        with self._lock:
            for idx, incident in enumerate(self.incidents):
                if incident.id == incident_id and incident.is_open:
                    self.incidents[idx] = Incident(
                        id=incident.id,
                        monitor_id=incident.monitor_id,
                        started_at=incident.started_at,
                        resolved_at=resolved_at,
                        duration_seconds=int(duration_seconds),
                    )
                    return

    def list_incidents(self, monitor_id: str) -> list[Incident]:
        with self._lock:
            return [i for i in self.incidents if i.monitor_id == monitor_id]

    def save_check_result(self, result: CheckResult) -> None:
        with self._lock:
            self.checks.append(result)

    def list_checks(self, monitor_id: str, *, limit: int = DEFAULT_CHECK_LIMIT) -> list[CheckResult]:
        with self._lock:
            items = [c for c in self.checks if c.monitor_id == monitor_id]
        items.sort(key=lambda c: c.checked_at, reverse=True)
        return items[: max(1, int(limit))]

    def cache_latest_check(
        self, monitor_id: str, result: CheckResult, *, ttl_seconds: int = LATEST_CHECK_TTL_SECONDS
    ) -> None:
        with self._lock:
            self.latest[monitor_id] = (result, time.time() + max(0, int(ttl_seconds)))

    def get_latest_check(self, monitor_id: str) -> CheckResult | None:
        with self._lock:
            item = self.latest.get(monitor_id)
        if item is None or item[1] <= time.time():
            return None
        return item[0]
