"""Client for the tunnel server's local status API.

Endpoints (all GET, JSON):
- `/`            liveness
- `/stats`       aggregate counters
- `/connections` `{"count": N, "connections": [...]}`

Decoding is lenient: unknown fields are ignored and missing or
malformed fields fall back to 0 / "" rather than failing the whole view.
"""

from __future__ import annotations

from dataclasses import dataclass
import json
import logging
import math
from typing import Any, Final
import urllib.error
import urllib.request

from mytunnel_ctl.core.errors import APIUnavailableError, StatusAPIError

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_S: Final[float] = 2.0
SHORT_ID_LEN: Final[int] = 16


@dataclass(frozen=True, slots=True)
class ServerStats:
    connections_total: int = 0
    connections_active: int = 0
    connections_failed: int = 0
    bytes_received: int = 0
    bytes_sent: int = 0


@dataclass(frozen=True, slots=True)
class ConnectionRecord:
    id: str
    client_address: str
    duration_seconds: float
    bytes_received: int
    bytes_sent: int
    active_streams: int

    @property
    def short_id(self) -> str:
        return self.id[:SHORT_ID_LEN]


def _as_float(value: Any) -> float:
    try:
        number = float(value)
    except (TypeError, ValueError, OverflowError):
        return 0.0
    # JSON allows 1e400 and Infinity, neither fits a counter.
    return number if math.isfinite(number) else 0.0


def _as_int(value: Any) -> int:
    if isinstance(value, bool):
        return int(value)
    return int(_as_float(value))


def _as_str(value: Any) -> str:
    return value if isinstance(value, str) else ""


def parse_stats(payload: Any) -> ServerStats:
    if not isinstance(payload, dict):
        payload = {}
    return ServerStats(
        connections_total=_as_int(payload.get("connections_total")),
        connections_active=_as_int(payload.get("connections_active")),
        connections_failed=_as_int(payload.get("connections_failed")),
        bytes_received=_as_int(payload.get("bytes_received")),
        bytes_sent=_as_int(payload.get("bytes_sent")),
    )


def parse_connection(item: dict[str, Any]) -> ConnectionRecord:
    return ConnectionRecord(
        id=_as_str(item.get("id")),
        client_address=_as_str(item.get("client_addr")),
        duration_seconds=_as_float(item.get("duration_secs")),
        bytes_received=_as_int(item.get("bytes_rx")),
        bytes_sent=_as_int(item.get("bytes_tx")),
        active_streams=_as_int(item.get("active_streams")),
    )


def parse_connections(payload: Any) -> tuple[int, list[ConnectionRecord]]:
    if not isinstance(payload, dict):
        return 0, []
    items = payload.get("connections")
    records = [parse_connection(item) for item in items if isinstance(item, dict)] if isinstance(items, list) else []
    # A missing count means nobody is connected.
    return _as_int(payload.get("count")), records


class StatusAPIClient:
    def __init__(self, base_url: str, *, timeout_s: float = DEFAULT_TIMEOUT_S) -> None:
        self._base_url = base_url.rstrip("/")
        self._timeout_s = timeout_s

    @property
    def base_url(self) -> str:
        return self._base_url

    def ping(self) -> bool:
        request = urllib.request.Request(f"{self._base_url}/", method="GET")
        try:
            with urllib.request.urlopen(request, timeout=self._timeout_s) as response:
                status = int(response.status)
        except (urllib.error.URLError, TimeoutError, OSError) as exc:
            logger.info("Status API liveness check failed: %s", exc)
            return False
        return 200 <= status < 300

    def ensure_available(self) -> None:
        if not self.ping():
            address = self._base_url.removeprefix("http://")
            raise APIUnavailableError(
                f"status API not reachable at {self._base_url}",
                user_message=f"Cannot connect to API at {address}",
                hint="Make sure the mytunnel service is running with metrics enabled (mytunnel-ctl status).",
            )

    def _get_json(self, path: str) -> Any:
        url = f"{self._base_url}{path}"
        request = urllib.request.Request(url, headers={"Accept": "application/json"}, method="GET")
        try:
            with urllib.request.urlopen(request, timeout=self._timeout_s) as response:
                body = response.read().decode("utf-8", errors="replace")
        except urllib.error.HTTPError as exc:
            raise StatusAPIError(
                f"GET {url} returned HTTP {exc.code}",
                user_message=f"Status API returned HTTP {exc.code} for {path}",
            ) from exc
        except (urllib.error.URLError, TimeoutError, OSError) as exc:
            raise StatusAPIError(
                f"GET {url} failed: {exc}",
                user_message=f"Failed to fetch {path} from the status API: {exc}",
            ) from exc

        if not body.strip():
            raise StatusAPIError(
                f"GET {url} returned an empty body",
                user_message=f"Failed to fetch {path}: empty response",
            )
        try:
            return json.loads(body)
        except json.JSONDecodeError as exc:
            raise StatusAPIError(
                f"GET {url} returned invalid JSON: {exc}",
                user_message=f"Failed to parse {path} response from the status API",
            ) from exc

    def get_stats(self) -> ServerStats:
        return parse_stats(self._get_json("/stats"))

    def get_connections(self) -> tuple[int, list[ConnectionRecord]]:
        return parse_connections(self._get_json("/connections"))
