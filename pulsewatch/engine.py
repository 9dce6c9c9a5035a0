from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Mapping

import httpx
import structlog

from pulsewatch.config import EngineConfig
from pulsewatch.executor import Strategy, default_strategies, execute
from pulsewatch.incidents import Transition, apply_check_result
from pulsewatch.models import STATUS_UP, TRANSITION_DOWN, CheckResult, CheckType, Monitor, MonitorStats, utc_now
from pulsewatch.stats import compute_stats
from pulsewatch.store import Store
from pulsewatch.webhook import build_delivery, notify, send_delivery


logger = structlog.get_logger(__name__)


class MonitorNotFoundError(LookupError):
    pass


class WebhookNotConfiguredError(ValueError):
    pass


@dataclass(frozen=True)
class TickSummary:
    checked: int = 0
    up: int = 0
    down: int = 0
    failed: int = 0


class Engine:
    """
    Drives the per-monitor pipeline: probe -> persist -> incident state -> webhook.

    Monitors run concurrently up to `config.check_concurrency`; a per-monitor lock keeps
    two pipelines for the same monitor (e.g. a tick and a manual check) from interleaving
    their incident bookkeeping.
    """

    def __init__(
        self,
        store: Store,
        config: EngineConfig | None = None,
        *,
        strategies: Mapping[CheckType, Strategy] | None = None,
        client: httpx.AsyncClient | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.store = store
        self.config = config or EngineConfig()
        self.strategies = dict(strategies) if strategies is not None else default_strategies()
        self._client = client
        self._clock = clock
        self._locks: dict[str, asyncio.Lock] = {}

    def _lock_for(self, monitor_id: str) -> asyncio.Lock:
        lock = self._locks.get(monitor_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[monitor_id] = lock
        return lock

    def _new_client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(headers={"User-Agent": self.config.user_agent})

    async def run_tick(self) -> TickSummary:
        """Check every active monitor once. Never raises because of a single monitor."""
        try:
            monitors = self.store.list_active_monitors()
        except Exception:
            logger.exception("Failed to list active monitors")
            return TickSummary(failed=1)

        if not monitors:
            return TickSummary()

        semaphore = asyncio.Semaphore(max(1, int(self.config.check_concurrency)))

        async def _guarded(client: httpx.AsyncClient, monitor: Monitor) -> CheckResult | None:
            async with semaphore:
                try:
                    return await self._process(client, monitor)
                except Exception:
                    logger.exception("Monitor pipeline failed", monitor_id=monitor.id)
                    return None

        if self._client is not None:
            results = await asyncio.gather(*(_guarded(self._client, m) for m in monitors))
        else:
            async with self._new_client() as client:
                results = await asyncio.gather(*(_guarded(client, m) for m in monitors))

        summary = TickSummary(
            checked=sum(1 for r in results if r is not None),
            up=sum(1 for r in results if r is not None and r.status == STATUS_UP),
            down=sum(1 for r in results if r is not None and r.status != STATUS_UP),
            failed=sum(1 for r in results if r is None),
        )
        logger.info(
            "Tick finished",
            checked=summary.checked,
            up=summary.up,
            down=summary.down,
            failed=summary.failed,
        )
        return summary

    async def check_one(self, monitor_id: str) -> CheckResult:
        """Run the full pipeline for a single monitor on demand."""
        monitor = self.get_monitor(monitor_id)
        if self._client is not None:
            return await self._process(self._client, monitor)
        async with self._new_client() as client:
            return await self._process(client, monitor)

    async def test_webhook(self, monitor_id: str) -> bool:
        """
        Send a down-type notification built from a synthetic healthy result.

        Unlike tick notifications, a malformed stored template raises WebhookTemplateError
        here so the caller can show it.
        """
        monitor = self.get_monitor(monitor_id)
        if not monitor.webhook_url:
            raise WebhookNotConfiguredError(f"Monitor {monitor_id} has no webhook URL configured")

        check = CheckResult(
            monitor_id=monitor.id,
            status=STATUS_UP,
            response_time=123,
            status_code=200,
            error_message="",
            checked_at=self._clock(),
        )
        delivery = build_delivery(monitor, check, TRANSITION_DOWN)
        if delivery is None:
            raise WebhookNotConfiguredError(f"Monitor {monitor_id} has no webhook URL configured")

        timeout = self.config.webhook_timeout_seconds
        if self._client is not None:
            return await send_delivery(self._client, delivery, timeout=timeout, monitor_id=monitor.id)
        async with self._new_client() as client:
            return await send_delivery(client, delivery, timeout=timeout, monitor_id=monitor.id)

    def stats(self, monitor_id: str) -> MonitorStats:
        self.get_monitor(monitor_id)
        return compute_stats(self.store.list_checks(monitor_id, limit=self.config.stats_max_checks))

    def get_monitor(self, monitor_id: str) -> Monitor:
        monitor = self.store.get_monitor(monitor_id)
        if monitor is None:
            raise MonitorNotFoundError(f"Monitor not found: {monitor_id}")
        return monitor

    async def _process(self, client: httpx.AsyncClient, monitor: Monitor) -> CheckResult:
        async with self._lock_for(monitor.id):
            result = await execute(monitor, client, strategies=self.strategies, clock=self._clock)
            self._persist(monitor, result)

            transition: Transition | None
            try:
                transition = apply_check_result(self.store, monitor, result, now=self._clock())
            except Exception:
                logger.exception("Incident bookkeeping failed", monitor_id=monitor.id)
                return result

            if transition is not None:
                await notify(
                    client,
                    monitor,
                    transition.check,
                    transition.kind,
                    timeout=self.config.webhook_timeout_seconds,
                )
            return result

    def _persist(self, monitor: Monitor, result: CheckResult) -> None:
        try:
            self.store.save_check_result(result)
        except Exception:
            logger.exception("Failed to save check result", monitor_id=monitor.id)
        try:
            self.store.cache_latest_check(monitor.id, result, ttl_seconds=self.config.latest_check_ttl_seconds)
        except Exception:
            logger.exception("Failed to cache latest check", monitor_id=monitor.id)


def seed_monitors(store: Store, config: EngineConfig) -> int:
    """Write the monitors declared in the config into the store; returns how many."""
    count = 0
    for entry in config.monitors:
        store.upsert_monitor(entry.to_monitor())
        count += 1
    return count
