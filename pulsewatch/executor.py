from __future__ import annotations

import asyncio
import time
from datetime import datetime
from typing import Callable, Mapping, Protocol

import httpx
import structlog

from pulsewatch.check_http import HttpCheck, timeout_message
from pulsewatch.check_status_api import StatusApiCheck
from pulsewatch.check_tcp import TcpCheck
from pulsewatch.models import (
    DEFAULT_TIMEOUT_SECONDS,
    STATUS_DOWN,
    STATUS_UP,
    CheckResult,
    CheckType,
    Monitor,
    ProbeOutcome,
    utc_now,
)


logger = structlog.get_logger(__name__)

# Strategies time out on their own first; the hard ceiling only catches probes that ignore it.
TIMEOUT_GRACE_SECONDS = 0.5


class Strategy(Protocol):
    check_type: CheckType

    async def probe(self, monitor: Monitor, client: httpx.AsyncClient) -> ProbeOutcome: ...


def default_strategies() -> dict[CheckType, Strategy]:
    return {
        CheckType.HTTP: HttpCheck(),
        CheckType.TCP: TcpCheck(),
        CheckType.STATUS_API: StatusApiCheck(),
    }


def select_strategy(monitor: Monitor, strategies: Mapping[CheckType, Strategy]) -> Strategy:
    strategy = strategies.get(monitor.check_type)
    if strategy is None:
        strategy = strategies[CheckType.HTTP]
    return strategy


async def execute(
    monitor: Monitor,
    client: httpx.AsyncClient,
    *,
    strategies: Mapping[CheckType, Strategy] | None = None,
    clock: Callable[[], datetime] = utc_now,
) -> CheckResult:
    """
    Run one probe for `monitor` and normalise it into a CheckResult.

    The monitor's timeout (plus a short grace period) is a hard ceiling: the in-flight
    probe is cancelled when it expires. Strategy exceptions become a down result
    carrying the exception message; this function does not raise.
    """
    if strategies is None:
        strategies = default_strategies()
    timeout = float(monitor.timeout_seconds or DEFAULT_TIMEOUT_SECONDS)

    started = time.perf_counter()
    try:
        strategy = select_strategy(monitor, strategies)
        outcome = await asyncio.wait_for(strategy.probe(monitor, client), timeout=timeout + TIMEOUT_GRACE_SECONDS)
    except asyncio.TimeoutError:
        outcome = ProbeOutcome(ok=False, error=timeout_message(timeout))
    except Exception as e:
        logger.debug("Probe raised", monitor_id=monitor.id, error=f"{type(e).__name__}: {e}")
        outcome = ProbeOutcome(ok=False, error=str(e) or type(e).__name__)
    elapsed_ms = int(round((time.perf_counter() - started) * 1000.0))

    result = CheckResult(
        monitor_id=monitor.id,
        status=STATUS_UP if outcome.ok else STATUS_DOWN,
        response_time=elapsed_ms,
        status_code=int(outcome.status_code or 0),
        error_message="" if outcome.ok else (outcome.error or "检查失败"),
        checked_at=clock(),
    )
    logger.debug(
        "Probe finished",
        monitor_id=monitor.id,
        check_type=monitor.check_type.value,
        status=result.status,
        status_code=result.status_code,
        response_time=result.response_time,
        error=result.error_message or None,
    )
    return result
