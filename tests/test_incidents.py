from __future__ import annotations

import random
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

from pulsewatch.incidents import apply_check_result, incident_duration_seconds
from pulsewatch.models import CheckResult, Monitor
from pulsewatch.store import MemoryStore, SqliteStore


T0 = datetime(2026, 5, 1, 8, 0, 0, tzinfo=timezone.utc)
MONITOR = Monitor(id="api", name="API", url="https://api.test")


@pytest.fixture(params=["memory", "sqlite"])
def store(request, tmp_path: Path):
    if request.param == "memory":
        yield MemoryStore([MONITOR])
        return
    s = SqliteStore(str(tmp_path / "incidents.db"))
    s.upsert_monitor(MONITOR)
    try:
        yield s
    finally:
        s.close()


def _check(status: str, at: datetime, error: str = "") -> CheckResult:
    return CheckResult(
        monitor_id=MONITOR.id,
        status=status,
        response_time=42,
        status_code=200 if status == "up" else 503,
        error_message=error,
        checked_at=at,
    )


def _open_count(store) -> int:
    return sum(1 for i in store.list_incidents(MONITOR.id) if i.is_open)


def test_duration_is_whole_seconds_and_never_negative() -> None:
    assert incident_duration_seconds(T0, T0 + timedelta(seconds=90, milliseconds=900)) == 90
    assert incident_duration_seconds(T0, T0 - timedelta(seconds=5)) == 0


def test_consecutive_downs_open_one_incident_and_one_transition(store) -> None:
    first = apply_check_result(store, MONITOR, _check("down", T0, "状态码 503 不在预期列表中"), now=T0)
    second = apply_check_result(store, MONITOR, _check("down", T0 + timedelta(minutes=1)), now=T0 + timedelta(minutes=1))

    assert first is not None
    assert first.kind == "down"
    assert first.check.error_message == "状态码 503 不在预期列表中"
    assert first.incident.started_at == T0
    assert second is None

    incidents = store.list_incidents(MONITOR.id)
    assert len(incidents) == 1
    assert incidents[0].is_open


def test_down_then_up_resolves_with_duration(store) -> None:
    apply_check_result(store, MONITOR, _check("down", T0), now=T0)
    t_up = T0 + timedelta(minutes=3, seconds=7)
    transition = apply_check_result(store, MONITOR, _check("up", t_up), now=t_up)

    assert transition is not None
    assert transition.kind == "recovered"
    assert transition.check.status == "up"
    assert transition.check.response_time == 0
    assert transition.check.status_code == 200
    assert transition.check.checked_at == t_up
    assert transition.incident.duration_seconds == 187

    assert store.find_open_incident(MONITOR.id) is None
    (incident,) = store.list_incidents(MONITOR.id)
    assert incident.resolved_at == t_up
    assert incident.duration_seconds == 187


def test_up_without_open_incident_is_noop(store) -> None:
    assert apply_check_result(store, MONITOR, _check("up", T0), now=T0) is None
    assert apply_check_result(store, MONITOR, _check("up", T0), now=T0) is None
    assert store.list_incidents(MONITOR.id) == []


def test_outage_after_recovery_opens_new_incident(store) -> None:
    apply_check_result(store, MONITOR, _check("down", T0), now=T0)
    apply_check_result(store, MONITOR, _check("up", T0 + timedelta(minutes=1)), now=T0 + timedelta(minutes=1))
    again = apply_check_result(store, MONITOR, _check("down", T0 + timedelta(minutes=2)), now=T0 + timedelta(minutes=2))
    assert again is not None
    assert again.kind == "down"
    assert len(store.list_incidents(MONITOR.id)) == 2
    assert _open_count(store) == 1


def test_random_sequences_keep_at_most_one_open_incident(store) -> None:
    rng = random.Random(1234)
    now = T0
    expected_open = False
    down_transitions = 0
    recovered_transitions = 0
    for _ in range(200):
        now = now + timedelta(seconds=30)
        status = rng.choice(["up", "down"])
        transition = apply_check_result(store, MONITOR, _check(status, now), now=now)
        if status == "down" and not expected_open:
            assert transition is not None and transition.kind == "down"
            down_transitions += 1
            expected_open = True
        elif status == "up" and expected_open:
            assert transition is not None and transition.kind == "recovered"
            recovered_transitions += 1
            expected_open = False
        else:
            assert transition is None
        assert _open_count(store) == (1 if expected_open else 0)

    assert len(store.list_incidents(MONITOR.id)) == down_transitions
    assert recovered_transitions in {down_transitions, down_transitions - 1}


def test_store_refuses_second_open_incident(store) -> None:
    assert store.insert_incident(MONITOR.id, T0) is not None
    assert store.insert_incident(MONITOR.id, T0 + timedelta(seconds=1)) is None
    assert _open_count(store) == 1
