from __future__ import annotations

import httpx

from pulsewatch.models import DEFAULT_EXPECTED_STATUS_CODES, CheckType, Monitor, ProbeOutcome


def parse_status_codes(raw: str | None) -> set[int]:
    """
    "200, 201,204" -> {200, 201, 204}. Tokens that are not integers are ignored;
    an empty result falls back to the default accepted set.
    """
    codes: set[int] = set()
    for part in str(raw or "").split(","):
        token = part.strip()
        if not token:
            continue
        try:
            codes.add(int(token))
        except ValueError:
            continue
    if not codes:
        return parse_status_codes(DEFAULT_EXPECTED_STATUS_CODES)
    return codes


def timeout_message(seconds: float) -> str:
    return f"超时 ({format_seconds(seconds)}s)"


def format_seconds(seconds: float) -> str:
    value = float(seconds)
    return str(int(value)) if value.is_integer() else f"{value:g}"


def apply_keyword_policy(monitor: Monitor, body: str) -> ProbeOutcome | None:
    """
    Returns a failing outcome when the body violates the keyword policy, else None.
    The forbidden keyword is checked first and wins over the required keyword.
    """
    if monitor.forbidden_keyword:
        if monitor.forbidden_keyword in body:
            return ProbeOutcome(ok=False, error=f"检测到禁止关键词: {monitor.forbidden_keyword}")
        return None
    if monitor.keyword and monitor.keyword not in body:
        return ProbeOutcome(ok=False, error=f"未找到关键词: {monitor.keyword}")
    return None


class HttpCheck:
    check_type = CheckType.HTTP

    async def probe(self, monitor: Monitor, client: httpx.AsyncClient) -> ProbeOutcome:
        method = (monitor.method or "GET").upper()
        request = client.build_request(method, monitor.url, timeout=monitor.timeout_seconds)
        try:
            resp = await client.send(request, stream=True, follow_redirects=True)
        except httpx.TimeoutException:
            return ProbeOutcome(ok=False, error=timeout_message(monitor.timeout_seconds))
        except httpx.RequestError as e:
            return ProbeOutcome(ok=False, error=f"请求失败: {type(e).__name__}: {e}")

        try:
            status_code = resp.status_code
            if status_code not in parse_status_codes(monitor.expected_status_codes):
                return ProbeOutcome(
                    ok=False,
                    status_code=status_code,
                    error=f"状态码 {status_code} 不在预期列表中",
                )

            if not (monitor.keyword or monitor.forbidden_keyword):
                return ProbeOutcome(ok=True, status_code=status_code)

            body = ""
            if method != "HEAD":
                try:
                    await resp.aread()
                except httpx.TimeoutException:
                    return ProbeOutcome(
                        ok=False,
                        status_code=status_code,
                        error=timeout_message(monitor.timeout_seconds),
                    )
                body = resp.text or ""

            violation = apply_keyword_policy(monitor, body)
            if violation is not None:
                return ProbeOutcome(ok=False, status_code=status_code, error=violation.error)
            return ProbeOutcome(ok=True, status_code=status_code)
        finally:
            await resp.aclose()
