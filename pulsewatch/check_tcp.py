from __future__ import annotations

import ssl
from urllib.parse import urlsplit

import httpx

from pulsewatch.check_http import format_seconds
from pulsewatch.models import CheckType, Monitor, ProbeOutcome


CONNECTION_FAILED = "连接失败"


def parse_target(target: str) -> tuple[str, str, int]:
    """
    "example.com:8443" -> ("https", "example.com", 8443)
    "http://10.0.0.1" -> ("http", "10.0.0.1", 80)

    A target without a scheme is treated as https.
    """
    s = (target or "").strip()
    if not s:
        raise ValueError("Missing tcp target")
    if "://" not in s:
        s = f"https://{s}"
    parts = urlsplit(s)
    scheme = (parts.scheme or "https").lower()
    host = parts.hostname
    if not host:
        raise ValueError(f"Invalid tcp target: {target!r}")
    port = parts.port or (80 if scheme == "http" else 443)
    return scheme, host, port


def _caused_by_tls(exc: BaseException) -> bool:
    seen: set[int] = set()
    cur: BaseException | None = exc
    while cur is not None and id(cur) not in seen:
        if isinstance(cur, ssl.SSLError):
            return True
        seen.add(id(cur))
        cur = cur.__cause__ or cur.__context__
    return False


class TcpCheck:
    """
    Port reachability approximated with a HEAD request.

    A connect timeout or refused/unreachable connection means the port is closed.
    Anything that fails after the handshake (TLS errors, protocol garbage, odd
    status codes) is taken as proof that something is listening. This heuristic
    can report "up" for a port whose service is broken.
    """

    check_type = CheckType.TCP

    async def probe(self, monitor: Monitor, client: httpx.AsyncClient) -> ProbeOutcome:
        scheme, host, port = parse_target(monitor.url)
        if ":" in host:
            host = f"[{host}]"
        url = f"{scheme}://{host}:{port}/"
        try:
            resp = await client.head(url, timeout=monitor.timeout_seconds, follow_redirects=False)
        except httpx.TimeoutException:
            return ProbeOutcome(ok=False, error=f"连接超时 ({format_seconds(monitor.timeout_seconds)}s)")
        except httpx.ConnectError as e:
            if _caused_by_tls(e):
                return ProbeOutcome(ok=True)
            return ProbeOutcome(ok=False, error=CONNECTION_FAILED)
        except (httpx.HTTPError, ssl.SSLError):
            return ProbeOutcome(ok=True)
        return ProbeOutcome(ok=True, status_code=resp.status_code)
