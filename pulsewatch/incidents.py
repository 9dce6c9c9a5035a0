from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime

import structlog

from pulsewatch.models import STATUS_UP, TRANSITION_DOWN, TRANSITION_RECOVERED, CheckResult, Incident, Monitor
from pulsewatch.store import Store


logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class Transition:
    kind: str
    check: CheckResult
    incident: Incident


def incident_duration_seconds(started_at: datetime, resolved_at: datetime) -> int:
    return max(0, int((resolved_at - started_at).total_seconds()))


def apply_check_result(store: Store, monitor: Monitor, result: CheckResult, *, now: datetime) -> Transition | None:
    """
    Advance the per-monitor incident state with one check result.

    no-open-incident --down--> open-incident   (returns a "down" transition)
    open-incident    --up-->   no-open-incident (returns a "recovered" transition)

    Every other combination is a no-op and returns None, so a run of failing checks
    produces a single incident and a single notification. The incident write happens
    here, before the caller sends any notification.
    """
    if result.status == STATUS_UP:
        return _resolve_open_incident(store, monitor, now=now)
    return _open_incident(store, monitor, result, now=now)


def _open_incident(store: Store, monitor: Monitor, result: CheckResult, *, now: datetime) -> Transition | None:
    if store.find_open_incident(monitor.id) is not None:
        return None
    incident = store.insert_incident(monitor.id, now)
    if incident is None:
        # Lost a race against another writer; that writer owns the notification.
        return None
    logger.info("Incident opened", monitor_id=monitor.id, incident_id=incident.id, error=result.error_message)
    return Transition(kind=TRANSITION_DOWN, check=result, incident=incident)


def _resolve_open_incident(store: Store, monitor: Monitor, *, now: datetime) -> Transition | None:
    incident = store.find_open_incident(monitor.id)
    if incident is None:
        return None

    duration = incident_duration_seconds(incident.started_at, now)
    store.resolve_incident(incident.id, now, duration)
    logger.info("Incident resolved", monitor_id=monitor.id, incident_id=incident.id, duration_seconds=duration)

    recovered_check = CheckResult(
        monitor_id=monitor.id,
        status=STATUS_UP,
        response_time=0,
        status_code=200,
        error_message="",
        checked_at=now,
    )
    resolved = Incident(
        id=incident.id,
        monitor_id=incident.monitor_id,
        started_at=incident.started_at,
        resolved_at=now,
        duration_seconds=duration,
    )
    return Transition(kind=TRANSITION_RECOVERED, check=recovered_check, incident=resolved)
