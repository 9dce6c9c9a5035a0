from __future__ import annotations

import json
from datetime import datetime, timedelta, timezone
from pathlib import Path

import httpx
import pytest

from pulsewatch.config import EngineConfig
from pulsewatch.engine import Engine, MonitorNotFoundError, WebhookNotConfiguredError
from pulsewatch.models import CheckResult, Monitor
from pulsewatch.store import MemoryStore, SqliteStore
from pulsewatch.webhook import WebhookTemplateError


class _Clock:
    def __init__(self) -> None:
        self.now = datetime(2026, 9, 1, 0, 0, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now = self.now + timedelta(seconds=seconds)


class _FakeInternet:
    """Routes probe hosts to scripted statuses and records webhook deliveries."""

    def __init__(self) -> None:
        self.status_by_host: dict[str, int] = {}
        self.webhooks: list[dict] = []
        self.webhook_headers: list[httpx.Headers] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        host = request.url.host
        if host == "hooks.test":
            self.webhooks.append(json.loads(request.content.decode("utf-8")))
            self.webhook_headers.append(request.headers)
            return httpx.Response(200)
        status = self.status_by_host.get(host)
        if status is None:
            raise httpx.ConnectError("Name or service not known", request=request)
        return httpx.Response(status, text="all systems nominal")


def _monitor(monitor_id: str, **kwargs) -> Monitor:
    return Monitor(
        id=monitor_id,
        name=monitor_id.upper(),
        url=f"https://{monitor_id}.test/health",
        webhook_url="https://hooks.test/notify",
        timeout_seconds=5.0,
        **kwargs,
    )


@pytest.fixture
def internet() -> _FakeInternet:
    return _FakeInternet()


@pytest.fixture
def clock() -> _Clock:
    return _Clock()


def _engine(store, internet: _FakeInternet, clock: _Clock, **config) -> tuple[Engine, httpx.AsyncClient]:
    client = httpx.AsyncClient(transport=httpx.MockTransport(internet))
    return Engine(store, EngineConfig(**config), client=client, clock=clock), client


@pytest.mark.asyncio
async def test_consecutive_failing_ticks_notify_once(internet: _FakeInternet, clock: _Clock) -> None:
    store = MemoryStore([_monitor("api")])
    engine, client = _engine(store, internet, clock)
    internet.status_by_host["api.test"] = 503
    async with client:
        first = await engine.run_tick()
        clock.advance(60)
        second = await engine.run_tick()

    assert first.down == 1 and second.down == 1
    assert len(store.list_incidents("api")) == 1
    assert len(internet.webhooks) == 1
    payload = internet.webhooks[0]
    assert payload["status"] == "down"
    assert payload["status_code"] == 503
    assert payload["error"] == "状态码 503 不在预期列表中"
    assert len(store.list_checks("api")) == 2


@pytest.mark.asyncio
async def test_recovery_resolves_incident_and_notifies(internet: _FakeInternet, clock: _Clock) -> None:
    store = MemoryStore([_monitor("api")])
    engine, client = _engine(store, internet, clock)
    async with client:
        internet.status_by_host["api.test"] = 500
        await engine.run_tick()
        clock.advance(125)
        internet.status_by_host["api.test"] = 200
        summary = await engine.run_tick()
        recovered_at = clock.now
        clock.advance(60)
        await engine.run_tick()

    assert summary.up == 1
    (incident,) = store.list_incidents("api")
    assert incident.duration_seconds == 125
    assert [w["status"] for w in internet.webhooks] == ["down", "recovered"]
    recovered = internet.webhooks[1]
    assert recovered["response_time"] == 0
    assert recovered["status_code"] == 200
    assert recovered["timestamp"] == recovered_at.isoformat()
    assert recovered["message"] == "✅ API is back UP!"


@pytest.mark.asyncio
async def test_one_monitor_failure_does_not_block_others(
    internet: _FakeInternet, clock: _Clock, monkeypatch: pytest.MonkeyPatch
) -> None:
    import pulsewatch.engine as engine_module

    real_execute = engine_module.execute

    async def flaky_execute(monitor, client, **kwargs):
        if monitor.id == "bad":
            raise RuntimeError("unexpected")
        return await real_execute(monitor, client, **kwargs)

    monkeypatch.setattr(engine_module, "execute", flaky_execute)

    store = MemoryStore([_monitor("bad"), _monitor("good")])
    engine, client = _engine(store, internet, clock, check_concurrency=1)
    internet.status_by_host["good.test"] = 502
    async with client:
        summary = await engine.run_tick()

    assert summary.failed == 1
    assert summary.checked == 1
    assert summary.down == 1
    assert len(store.list_incidents("good")) == 1
    assert [w["monitor"] for w in internet.webhooks] == ["GOOD"]


class _BrokenIncidentStore(MemoryStore):
    def find_open_incident(self, monitor_id: str):
        if monitor_id == "bad":
            raise RuntimeError("database is locked")
        return super().find_open_incident(monitor_id)

    def save_check_result(self, result: CheckResult) -> None:
        if result.monitor_id == "bad":
            raise RuntimeError("disk full")
        super().save_check_result(result)


@pytest.mark.asyncio
async def test_storage_errors_are_logged_and_tick_continues(internet: _FakeInternet, clock: _Clock) -> None:
    store = _BrokenIncidentStore([_monitor("bad"), _monitor("good")])
    engine, client = _engine(store, internet, clock)
    async with client:
        summary = await engine.run_tick()

    assert summary.checked == 2
    assert summary.failed == 0
    assert store.list_checks("bad") == []
    assert store.get_latest_check("bad") is not None
    assert len(store.list_incidents("good")) == 1
    assert [w["monitor"] for w in internet.webhooks] == ["GOOD"]


@pytest.mark.asyncio
async def test_inactive_monitors_are_skipped(internet: _FakeInternet, clock: _Clock) -> None:
    store = MemoryStore([_monitor("api", is_active=False)])
    engine, client = _engine(store, internet, clock)
    async with client:
        summary = await engine.run_tick()
    assert summary.checked == 0
    assert store.list_checks("api") == []


@pytest.mark.asyncio
async def test_check_one_runs_pipeline_and_caches_latest(internet: _FakeInternet, clock: _Clock) -> None:
    store = MemoryStore([_monitor("api", keyword="nominal")])
    engine, client = _engine(store, internet, clock)
    internet.status_by_host["api.test"] = 200
    async with client:
        result = await engine.check_one("api")
        with pytest.raises(MonitorNotFoundError):
            await engine.check_one("missing")

    assert result.status == "up"
    assert result.checked_at == clock.now
    assert store.get_latest_check("api") == result
    assert store.list_checks("api") == [result]
    assert internet.webhooks == []


@pytest.mark.asyncio
async def test_test_webhook_always_sends_down_template(internet: _FakeInternet, clock: _Clock) -> None:
    body = json.dumps({"text": "{{monitor_name}} {{status}} {{response_time}}ms {{status_code}}"})
    store = MemoryStore(
        [
            _monitor("api", webhook_body=body, webhook_username="robot"),
            Monitor(id="quiet", name="Quiet", url="https://quiet.test"),
            _monitor("broken", webhook_body="{nope"),
        ]
    )
    engine, client = _engine(store, internet, clock)
    async with client:
        assert await engine.test_webhook("api") is True
        with pytest.raises(WebhookNotConfiguredError):
            await engine.test_webhook("quiet")
        with pytest.raises(WebhookTemplateError):
            await engine.test_webhook("broken")
        with pytest.raises(MonitorNotFoundError):
            await engine.test_webhook("missing")

    assert internet.webhooks == [{"text": "API down 123ms 200"}]
    assert internet.webhook_headers[0]["Authorization"].startswith("Basic ")
    assert store.list_incidents("api") == []


@pytest.mark.asyncio
async def test_engine_with_sqlite_store(internet: _FakeInternet, clock: _Clock, tmp_path: Path) -> None:
    store = SqliteStore(str(tmp_path / "engine.db"))
    store.upsert_monitor(_monitor("api"))
    store.upsert_monitor(_monitor("web"))
    engine, client = _engine(store, internet, clock, check_concurrency=2)
    internet.status_by_host["api.test"] = 200
    try:
        async with client:
            summary = await engine.run_tick()
            clock.advance(30)
            await engine.run_tick()

        assert summary.up == 1
        assert summary.down == 1
        web_checks = store.list_checks("web")
        assert len(web_checks) == 2
        assert web_checks[0].error_message.startswith("请求失败: ConnectError")
        assert store.find_open_incident("web") is not None
        assert store.find_open_incident("api") is None
        assert len(internet.webhooks) == 1

        stats = engine.stats("api")
        assert stats.total_checks == 2
        assert stats.uptime_percentage == 100.0
        with pytest.raises(MonitorNotFoundError):
            engine.stats("missing")
    finally:
        store.close()
