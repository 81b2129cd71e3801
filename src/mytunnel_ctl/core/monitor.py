"""Connected-users views: the one-shot `users` listing and the live monitor.

The monitor holds no resources between frames (no sockets kept open, no
child processes), so stopping it is just leaving the loop; Ctrl+C is the
only way out.
"""

from __future__ import annotations

from datetime import datetime
import logging
import time
from typing import Callable, Sequence

from rich.console import Console
from rich.table import Table

from mytunnel_ctl.core.errors import StatusAPIError
from mytunnel_ctl.core.humanize import format_bytes, format_duration
from mytunnel_ctl.core.status_api import ConnectionRecord, ServerStats, StatusAPIClient

logger = logging.getLogger(__name__)

REFRESH_INTERVAL_S = 2.0
NO_USERS = "No users currently connected"


def build_users_table(records: Sequence[ConnectionRecord]) -> Table:
    table = Table(show_lines=False, header_style="cyan")
    table.add_column("ID", min_width=16, no_wrap=True)
    table.add_column("CLIENT IP", min_width=21, no_wrap=True)
    table.add_column("DURATION", min_width=8, justify="right")
    table.add_column("RX", min_width=10, justify="right")
    table.add_column("TX", min_width=10, justify="right")
    table.add_column("STREAMS", min_width=7, justify="right")
    for record in records:
        table.add_row(
            record.short_id,
            record.client_address,
            format_duration(record.duration_seconds),
            format_bytes(record.bytes_received),
            format_bytes(record.bytes_sent),
            str(record.active_streams),
        )
    return table


def render_stats(console: Console, stats: ServerStats) -> None:
    console.print("[cyan]Server Statistics:[/cyan]")
    console.print(f"  Total Connections:  [green]{stats.connections_total}[/green]")
    console.print(f"  Active Connections: [green]{stats.connections_active}[/green]")
    console.print(f"  Failed Connections: [yellow]{stats.connections_failed}[/yellow]")
    console.print(f"  Total RX:           [green]{format_bytes(stats.bytes_received)}[/green]")
    console.print(f"  Total TX:           [green]{format_bytes(stats.bytes_sent)}[/green]")
    console.print()


def render_users(console: Console, count: int, records: Sequence[ConnectionRecord]) -> None:
    if count == 0:
        console.print(f"  [yellow]{NO_USERS}[/yellow]")
        return
    console.print(build_users_table(records))


def show_users(client: StatusAPIClient, console: Console) -> int:
    client.ensure_available()
    count, records = client.get_connections()
    if count == 0:
        console.print(f"[yellow]{NO_USERS}[/yellow]")
        return 0

    console.print(f"[green]Active Connections: {count}[/green]")
    console.print()
    console.print(build_users_table(records))
    return 0


class LiveMonitor:
    def __init__(
        self,
        client: StatusAPIClient,
        console: Console,
        *,
        interval_s: float = REFRESH_INTERVAL_S,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], datetime] = datetime.now,
    ) -> None:
        self._client = client
        self._console = console
        self._interval_s = interval_s
        self._sleep = sleep
        self._clock = clock

    def render_frame(self) -> None:
        console = self._console
        console.clear()
        console.rule("[bold blue]MyTunnel Live Monitor")
        console.print(f"[yellow]Press Ctrl+C to exit | Refresh: {self._interval_s:g}s[/yellow]")
        console.print()

        try:
            render_stats(console, self._client.get_stats())
        except StatusAPIError as exc:
            logger.info("Skipping stats block: %s", exc)

        try:
            count, records = self._client.get_connections()
        except StatusAPIError as exc:
            logger.info("Connections fetch failed: %s", exc)
            console.print(f"  [red]{exc.user_message}[/red]")
        else:
            console.print(f"[cyan]Connected Users ({count}):[/cyan]")
            console.print()
            render_users(console, count, records)

        console.print()
        console.rule(style="blue")
        console.print(f"Last updated: {self._clock():%Y-%m-%d %H:%M:%S}")

    def run(self, *, max_frames: int | None = None) -> None:
        """Refresh until interrupted (or `max_frames` frames have been drawn)."""
        self._client.ensure_available()
        frames = 0
        while max_frames is None or frames < max_frames:
            self.render_frame()
            frames += 1
            if max_frames is not None and frames >= max_frames:
                break
            self._sleep(self._interval_s)
