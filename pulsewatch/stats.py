from __future__ import annotations

from typing import Iterable

from pulsewatch.models import CheckResult, MonitorStats


def compute_stats(checks: Iterable[CheckResult]) -> MonitorStats:
    items = list(checks)
    total = len(items)
    if total <= 0:
        return MonitorStats(total_checks=0, uptime_percentage=0.0, average_response_time=0.0)
    up_count = sum(1 for c in items if c.is_up)
    avg = sum(float(c.response_time) for c in items) / float(total)
    return MonitorStats(
        total_checks=total,
        uptime_percentage=(up_count / float(total)) * 100.0,
        average_response_time=avg,
    )
