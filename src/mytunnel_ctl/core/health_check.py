"""HTTPS requests *through* the local proxy endpoints.

An endpoint counts as working when an HTTPS request to a public URL
succeeds through it. HTTPS forces the HTTP proxy into CONNECT mode, which
is what the tunnel client's HTTP inbound implements.

Both proxy kinds go through the same requests call; only the proxy URL
scheme differs. Redirects are not followed, so a 3xx from the target is
reported as-is and counts as success.

Certificate verification of the *target* is switched off: hosts without a
CA bundle would otherwise fail for reasons unrelated to the tunnel.
"""

from __future__ import annotations

from dataclasses import dataclass
import http.client
import logging
import time
import warnings

import requests

from mytunnel_ctl.core.config import ProxyEndpointConfig

logger = logging.getLogger(__name__)

DEFAULT_TEST_URL = "https://example.com/"
USER_AGENT = "mytunnel-ctl/1.0"
CONNECT_TIMEOUT_S = 10.0
MAX_TIME_S = 20.0


@dataclass(frozen=True, slots=True)
class ProxyHealthResult:
    ok: bool
    checked_url: str
    status_code: int | None
    latency_ms: int | None
    error: str | None


def _result(url: str, status: int | None, started: float, max_time_s: float) -> ProxyHealthResult:
    elapsed = time.monotonic() - started
    latency_ms = int(elapsed * 1000)
    if elapsed > max_time_s:
        return ProxyHealthResult(
            ok=False,
            checked_url=url,
            status_code=status,
            latency_ms=latency_ms,
            error=f"request exceeded {max_time_s:g}s",
        )
    ok = status is not None and 200 <= status < 400
    return ProxyHealthResult(
        ok=ok,
        checked_url=url,
        status_code=status,
        latency_ms=latency_ms,
        error=None if ok else f"HTTP {status}",
    )


def _get_via_proxy(
    proxy_url: str,
    *,
    url: str,
    connect_timeout_s: float,
    max_time_s: float,
) -> ProxyHealthResult:
    started = time.monotonic()
    try:
        with warnings.catch_warnings():
            warnings.simplefilter("ignore")
            response = requests.get(
                url,
                proxies={"http": proxy_url, "https": proxy_url},
                headers={"User-Agent": USER_AGENT},
                timeout=(connect_timeout_s, max_time_s),
                verify=False,
                allow_redirects=False,
            )
        response.close()
    except (requests.RequestException, http.client.HTTPException) as exc:
        # A proxy answering with something that is not HTTP surfaces as HTTPException.
        logger.info("Request via %s failed: %s", proxy_url, exc)
        return ProxyHealthResult(
            ok=False,
            checked_url=url,
            status_code=None,
            latency_ms=None,
            error=str(exc) or type(exc).__name__,
        )
    return _result(url, response.status_code, started, max_time_s)


def check_http_proxy(
    proxy_host: str,
    proxy_port: int,
    *,
    url: str = DEFAULT_TEST_URL,
    connect_timeout_s: float = CONNECT_TIMEOUT_S,
    max_time_s: float = MAX_TIME_S,
) -> ProxyHealthResult:
    return _get_via_proxy(
        f"http://{proxy_host}:{proxy_port}",
        url=url,
        connect_timeout_s=connect_timeout_s,
        max_time_s=max_time_s,
    )


def check_socks5_proxy(
    proxy_host: str,
    proxy_port: int,
    *,
    url: str = DEFAULT_TEST_URL,
    connect_timeout_s: float = CONNECT_TIMEOUT_S,
    max_time_s: float = MAX_TIME_S,
) -> ProxyHealthResult:
    # socks5h: the proxy resolves the target name, as `curl --socks5-hostname` would.
    return _get_via_proxy(
        f"socks5h://{proxy_host}:{proxy_port}",
        url=url,
        connect_timeout_s=connect_timeout_s,
        max_time_s=max_time_s,
    )


def check_endpoint(endpoint: ProxyEndpointConfig, *, url: str = DEFAULT_TEST_URL) -> ProxyHealthResult:
    logger.info("Checking %s proxy at %s with %s", endpoint.label, endpoint.bind_address, url)
    if endpoint.kind == "socks5":
        return check_socks5_proxy(endpoint.host, endpoint.port, url=url)
    return check_http_proxy(endpoint.host, endpoint.port, url=url)
