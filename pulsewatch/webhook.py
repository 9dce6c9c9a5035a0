from __future__ import annotations

import base64
import json
import re
from dataclasses import dataclass
from typing import Any

import httpx
import structlog

from pulsewatch.models import TRANSITION_DOWN, CheckResult, Monitor


logger = structlog.get_logger(__name__)

DEFAULT_WEBHOOK_TIMEOUT_SECONDS = 10.0


class WebhookTemplateError(ValueError):
    """Stored webhook body/header JSON could not be used."""


@dataclass(frozen=True)
class WebhookDelivery:
    url: str
    headers: dict[str, str]
    payload: Any

    def encoded_body(self) -> bytes:
        return json.dumps(self.payload, ensure_ascii=False).encode("utf-8")


def build_variables(monitor: Monitor, check: CheckResult, transition: str) -> dict[str, str]:
    return {
        "monitor_name": monitor.name,
        "monitor_url": monitor.url,
        "status": transition,
        "error": check.error_message,
        "timestamp": check.checked_at.isoformat(),
        "response_time": str(check.response_time),
        "status_code": str(check.status_code),
    }


def replace_variables(template: str, variables: dict[str, str]) -> str:
    """Replace every `{{name}}` occurrence; placeholders without a variable stay as they are."""
    result = template
    for key, value in variables.items():
        result = re.sub(re.escape("{{" + key + "}}"), lambda _m, v=str(value): v, result)
    return result


def render_template(node: Any, variables: dict[str, str]) -> Any:
    """Return a copy of a JSON tree with placeholders substituted in every string leaf."""
    if isinstance(node, str):
        return replace_variables(node, variables)
    if isinstance(node, dict):
        return {key: render_template(value, variables) for key, value in node.items()}
    if isinstance(node, list):
        return [render_template(item, variables) for item in node]
    return node


def default_payload(monitor: Monitor, check: CheckResult, transition: str) -> dict[str, Any]:
    if transition == TRANSITION_DOWN:
        message = f"🚨 {monitor.name} is DOWN! {check.error_message}"
    else:
        message = f"✅ {monitor.name} is back UP!"
    return {
        "monitor": monitor.name,
        "url": monitor.url,
        "status": transition,
        "timestamp": check.checked_at.isoformat(),
        "response_time": check.response_time,
        "status_code": check.status_code,
        "error": check.error_message,
        "message": message,
    }


def _load_json(raw: str, *, what: str) -> Any:
    try:
        return json.loads(raw)
    except ValueError as exc:
        raise WebhookTemplateError(f"Invalid webhook {what} JSON: {exc}") from exc


def build_headers(monitor: Monitor) -> dict[str, str]:
    headers = {"Content-Type": monitor.webhook_content_type or "application/json"}
    if monitor.webhook_headers:
        custom = _load_json(monitor.webhook_headers, what="headers")
        if not isinstance(custom, dict):
            raise WebhookTemplateError("Webhook headers must be a JSON object")
        headers.update({str(k): v if isinstance(v, str) else json.dumps(v) for k, v in custom.items()})
    if monitor.webhook_username:
        # Username-only basic auth: the password part is always empty.
        token = base64.b64encode(f"{monitor.webhook_username}:".encode("utf-8")).decode("ascii")
        headers["Authorization"] = f"Basic {token}"
    return headers


def build_delivery(monitor: Monitor, check: CheckResult, transition: str) -> WebhookDelivery | None:
    """None when the monitor has no webhook URL. Raises WebhookTemplateError on bad stored JSON."""
    if not monitor.webhook_url:
        return None

    if monitor.webhook_body:
        template = _load_json(monitor.webhook_body, what="body")
        payload = render_template(template, build_variables(monitor, check, transition))
    else:
        payload = default_payload(monitor, check, transition)

    return WebhookDelivery(url=monitor.webhook_url, headers=build_headers(monitor), payload=payload)


async def send_delivery(
    client: httpx.AsyncClient,
    delivery: WebhookDelivery,
    *,
    timeout: float = DEFAULT_WEBHOOK_TIMEOUT_SECONDS,
    monitor_id: str | None = None,
) -> bool:
    """POST once. Failures are logged and reported as False, never raised."""
    try:
        resp = await client.post(
            delivery.url,
            headers=delivery.headers,
            content=delivery.encoded_body(),
            timeout=timeout,
        )
    except Exception as e:
        logger.warning("Failed to send webhook", monitor_id=monitor_id, error=f"{type(e).__name__}: {e}")
        return False
    if not resp.is_success:
        logger.warning(
            "Webhook endpoint rejected notification",
            monitor_id=monitor_id,
            status_code=resp.status_code,
        )
        return False
    return True


async def notify(
    client: httpx.AsyncClient,
    monitor: Monitor,
    check: CheckResult,
    transition: str,
    *,
    timeout: float = DEFAULT_WEBHOOK_TIMEOUT_SECONDS,
) -> bool:
    """Best-effort notification for one transition; returns whether it was delivered."""
    try:
        delivery = build_delivery(monitor, check, transition)
    except WebhookTemplateError as e:
        logger.warning("Webhook not sent", monitor_id=monitor.id, transition=transition, error=str(e))
        return False
    if delivery is None:
        return False
    delivered = await send_delivery(client, delivery, timeout=timeout, monitor_id=monitor.id)
    logger.info("Webhook notification", monitor_id=monitor.id, transition=transition, delivered=delivered)
    return delivered
