from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any


DEFAULT_EXPECTED_STATUS_CODES = "200,201,204,301,302"
DEFAULT_TIMEOUT_SECONDS = 30.0
DEFAULT_OFFLINE_THRESHOLD_MINUTES = 3.0

STATUS_UP = "up"
STATUS_DOWN = "down"

TRANSITION_DOWN = "down"
TRANSITION_RECOVERED = "recovered"


class CheckType(str, Enum):
    HTTP = "http"
    TCP = "tcp"
    STATUS_API = "status-api"

    @classmethod
    def parse(cls, value: Any) -> "CheckType":
        s = str(value or "").strip().lower().replace("_", "-")
        for member in cls:
            if member.value == s:
                return member
        return cls.HTTP


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def parse_timestamp(value: Any) -> datetime | None:
    """
    Accepts datetimes, unix timestamps (seconds or milliseconds) and ISO-8601 strings.
    Naive values are taken as UTC.
    """
    if value is None:
        return None
    if isinstance(value, datetime):
        dt = value
    elif isinstance(value, (int, float)):
        ts = float(value)
        if ts > 1e12:
            ts = ts / 1000.0
        dt = datetime.fromtimestamp(ts, tz=timezone.utc)
    else:
        s = str(value).strip()
        if not s:
            return None
        try:
            return parse_timestamp(float(s))
        except ValueError:
            pass
        if s.endswith("Z"):
            s = s[:-1] + "+00:00"
        dt = datetime.fromisoformat(s)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def _optional_str(value: Any) -> str | None:
    if value is None:
        return None
    s = str(value).strip()
    return s or None


@dataclass(frozen=True)
class Monitor:
    id: str
    name: str
    url: str
    check_type: CheckType = CheckType.HTTP
    method: str = "GET"
    timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS
    expected_status_codes: str = DEFAULT_EXPECTED_STATUS_CODES
    keyword: str | None = None
    forbidden_keyword: str | None = None
    offline_threshold_minutes: float = DEFAULT_OFFLINE_THRESHOLD_MINUTES
    # Comma-separated server names for the status-api check; empty means "all servers".
    target_servers: str | None = None
    webhook_url: str | None = None
    webhook_content_type: str = "application/json"
    # Stored as JSON text, decoded only when a notification is rendered.
    webhook_headers: str | None = None
    webhook_body: str | None = None
    webhook_username: str | None = None
    is_active: bool = True

    @classmethod
    def from_row(cls, row: Any) -> "Monitor":
        data = dict(row)
        timeout = data.get("timeout_seconds")
        threshold = data.get("offline_threshold_minutes")
        return cls(
            id=str(data["id"]),
            name=str(data.get("name") or data["id"]),
            url=str(data.get("url") or ""),
            check_type=CheckType.parse(data.get("check_type")),
            method=str(data.get("method") or "GET").upper(),
            timeout_seconds=float(timeout) if timeout else DEFAULT_TIMEOUT_SECONDS,
            expected_status_codes=str(data.get("expected_status_codes") or DEFAULT_EXPECTED_STATUS_CODES),
            keyword=_optional_str(data.get("keyword")),
            forbidden_keyword=_optional_str(data.get("forbidden_keyword")),
            offline_threshold_minutes=float(threshold) if threshold else DEFAULT_OFFLINE_THRESHOLD_MINUTES,
            target_servers=_optional_str(data.get("target_servers")),
            webhook_url=_optional_str(data.get("webhook_url")),
            webhook_content_type=str(data.get("webhook_content_type") or "application/json"),
            webhook_headers=_optional_str(data.get("webhook_headers")),
            webhook_body=_optional_str(data.get("webhook_body")),
            webhook_username=_optional_str(data.get("webhook_username")),
            is_active=bool(data.get("is_active", True)),
        )

    def to_row(self) -> dict[str, Any]:
        row = asdict(self)
        row["check_type"] = self.check_type.value
        row["is_active"] = 1 if self.is_active else 0
        return row


@dataclass(frozen=True)
class CheckResult:
    monitor_id: str
    status: str
    response_time: int
    status_code: int = 0
    error_message: str = ""
    checked_at: datetime = field(default_factory=utc_now)

    @property
    def is_up(self) -> bool:
        return self.status == STATUS_UP

    def to_dict(self) -> dict[str, Any]:
        return {
            "monitor_id": self.monitor_id,
            "status": self.status,
            "response_time": int(self.response_time),
            "status_code": int(self.status_code),
            "error_message": self.error_message,
            "checked_at": self.checked_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: Any) -> "CheckResult":
        d = dict(data)
        return cls(
            monitor_id=str(d["monitor_id"]),
            status=str(d.get("status") or STATUS_DOWN),
            response_time=int(d.get("response_time") or 0),
            status_code=int(d.get("status_code") or 0),
            error_message=str(d.get("error_message") or ""),
            checked_at=parse_timestamp(d.get("checked_at")) or utc_now(),
        )


@dataclass(frozen=True)
class ProbeOutcome:
    """Verdict of a single strategy probe, before timing is attached."""

    ok: bool
    status_code: int = 0
    error: str = ""


@dataclass(frozen=True)
class Incident:
    id: int
    monitor_id: str
    started_at: datetime
    resolved_at: datetime | None = None
    duration_seconds: int | None = None

    @property
    def is_open(self) -> bool:
        return self.resolved_at is None

    @classmethod
    def from_row(cls, row: Any) -> "Incident":
        d = dict(row)
        duration = d.get("duration_seconds")
        return cls(
            id=int(d["id"]),
            monitor_id=str(d["monitor_id"]),
            started_at=parse_timestamp(d["started_at"]) or utc_now(),
            resolved_at=parse_timestamp(d.get("resolved_at")),
            duration_seconds=int(duration) if duration is not None else None,
        )


@dataclass(frozen=True)
class MonitorStats:
    total_checks: int
    uptime_percentage: float
    average_response_time: float
