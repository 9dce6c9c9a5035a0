from __future__ import annotations

from datetime import datetime
from typing import Any, Callable

import httpx
import structlog

from pulsewatch.check_http import timeout_message
from pulsewatch.models import (
    DEFAULT_OFFLINE_THRESHOLD_MINUTES,
    CheckType,
    Monitor,
    ProbeOutcome,
    parse_timestamp,
    utc_now,
)


logger = structlog.get_logger(__name__)


# Expected response shape:
# {"status": "success", "message": "...",
#  "data": [{"uuid": "...", "name": "n1", "region": "HK", "updated_at": "..."}]}


def parse_target_servers(raw: str | None) -> set[str]:
    return {part.strip() for part in str(raw or "").split(",") if part.strip()}


def find_offline_servers(
    servers: list[Any],
    *,
    now: datetime,
    threshold_minutes: float,
    targets: set[str] | None = None,
) -> list[str]:
    """Descriptors like "HKn1(5分钟)" for every server whose last update is older than the threshold."""
    threshold_ms = float(threshold_minutes) * 60_000.0
    offline: list[str] = []
    for server in servers:
        if not isinstance(server, dict):
            continue
        name = str(server.get("name") or "")
        if targets and name not in targets:
            continue
        try:
            updated_at = parse_timestamp(server.get("updated_at"))
        except ValueError:
            updated_at = None
        if updated_at is None:
            logger.debug("Status API server without usable updated_at", server=name)
            continue
        elapsed_ms = (now - updated_at).total_seconds() * 1000.0
        if elapsed_ms > threshold_ms:
            minutes = int(elapsed_ms // 60_000)
            region = str(server.get("region") or "")
            offline.append(f"{region}{name}({minutes}分钟)")
    return offline


class StatusApiCheck:
    check_type = CheckType.STATUS_API

    def __init__(self, clock: Callable[[], datetime] = utc_now) -> None:
        self._clock = clock

    async def probe(self, monitor: Monitor, client: httpx.AsyncClient) -> ProbeOutcome:
        try:
            resp = await client.get(monitor.url, timeout=monitor.timeout_seconds, follow_redirects=True)
        except httpx.TimeoutException:
            return ProbeOutcome(ok=False, error=timeout_message(monitor.timeout_seconds))
        except httpx.RequestError as e:
            return ProbeOutcome(ok=False, error=f"请求失败: {type(e).__name__}: {e}")

        try:
            data = resp.json()
        except ValueError:
            data = None
        if not isinstance(data, dict):
            data = {}

        message = str(data.get("message") or "").strip()
        if not resp.is_success or data.get("status") != "success":
            detail = message or f"HTTP {resp.status_code}"
            return ProbeOutcome(ok=False, status_code=resp.status_code, error=f"状态接口异常: {detail}")

        servers = data.get("data")
        if not isinstance(servers, list):
            servers = []

        threshold = monitor.offline_threshold_minutes or DEFAULT_OFFLINE_THRESHOLD_MINUTES
        offline = find_offline_servers(
            servers,
            now=self._clock(),
            threshold_minutes=threshold,
            targets=parse_target_servers(monitor.target_servers),
        )
        if offline:
            return ProbeOutcome(ok=False, status_code=resp.status_code, error=f"服务器离线: {', '.join(offline)}")
        return ProbeOutcome(ok=True, status_code=resp.status_code)
