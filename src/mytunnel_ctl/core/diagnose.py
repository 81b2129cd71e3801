"""`diagnose`: a broad, read-only environment report.

Unlike the test suite, nothing here has a pass/fail verdict; every probe is
best effort and missing tools just shorten the report.
"""

from __future__ import annotations

from datetime import datetime
import logging
from pathlib import Path
import platform
import shutil
import socket
import subprocess
from typing import Callable

from mytunnel_ctl.core.config import AppSettings, ClientConfig
from mytunnel_ctl.core.console import Reporter
from mytunnel_ctl.core.errors import AppError
from mytunnel_ctl.core.net_probe import TcpProbeResult, tcp_connect
from mytunnel_ctl.core.process_manager import ensure_port_available
from mytunnel_ctl.core.resolver import resolve_host

logger = logging.getLogger(__name__)

_UDP_NOTES = (
    "QUIC uses UDP (not TCP) for transport",
    "Some networks block or throttle UDP",
    "Corporate firewalls may block non-standard ports",
    "Try port 443 if other ports are blocked",
)


def _capture(cmd: list[str], *, timeout_s: float = 10.0) -> str:
    if shutil.which(cmd[0]) is None:
        return ""
    try:
        result = subprocess.run(cmd, check=False, capture_output=True, text=True, timeout=timeout_s)
    except (OSError, subprocess.TimeoutExpired) as exc:
        logger.debug("%s failed: %s", cmd, exc)
        return ""
    return result.stdout or ""


class Diagnoser:
    def __init__(
        self,
        settings: AppSettings,
        reporter: Reporter,
        *,
        capture: Callable[[list[str]], str] = _capture,
        tcp: Callable[..., TcpProbeResult] = tcp_connect,
        port_check: Callable[[str, int], None] = ensure_port_available,
        system: Callable[[], str] = platform.system,
        now: Callable[[], datetime] = datetime.now,
    ) -> None:
        self._settings = settings
        self._out = reporter
        self._capture = capture
        self._tcp = tcp
        self._port_check = port_check
        self._system = system
        self._now = now

    @property
    def is_macos(self) -> bool:
        return self._system() == "Darwin"

    def run(self) -> int:
        out = self._out
        out.section("Comprehensive Diagnostics")
        self._system_info()
        config = self._configuration()
        self._client_binary()
        if config is not None:
            try:
                self._connectivity(config)
            except AppError as exc:
                out.warning(exc.user_message)
            self._common_issues(config)
        out.section("Diagnostics Complete")
        out.info("Run 'mytunnel-ctl test' for full connectivity tests")
        return 0

    def _system_info(self) -> None:
        out = self._out
        out.line("System Information:", style="cyan")
        out.line(f"  Platform: {self._system()} {platform.release()}")
        out.line(f"  Hostname: {socket.gethostname()}")
        out.line(f"  Date: {self._now():%Y-%m-%d %H:%M:%S}")
        out.line()
        out.line("Network Interfaces:", style="cyan")
        if self.is_macos:
            interfaces = self._capture(["ifconfig"])
        else:
            interfaces = self._capture(["ip", "-brief", "addr"]) or self._capture(["ifconfig"])
        out.block("\n".join(interfaces.splitlines()[:20]) or "(unavailable)")
        out.line()

    def _configuration(self) -> ClientConfig | None:
        out = self._out
        out.line("Configuration:", style="cyan")
        try:
            config = ClientConfig.load(self._settings.config_path)
        except AppError as exc:
            out.warning(exc.user_message)
            out.line()
            return None
        out.success(f"Config file exists: {self._settings.config_path}")
        out.line(f"  Server: {config.get_str('server.address') or '(not set)'}")
        out.line()
        return config

    def _client_binary(self) -> None:
        out = self._out
        out.line("Client Binary:", style="cyan")
        binary = Path(self._settings.client_binary)
        if binary.is_file():
            out.success(f"Binary exists: {binary}")
            out.line(f"  Size: {binary.stat().st_size} bytes")
            version = self._capture([str(binary.resolve()), "--version"]).strip()
            if version:
                out.line(f"  Version: {version.splitlines()[0]}")
        else:
            out.warning("Binary not found - run 'mytunnel-ctl build'")
        out.line()

    def _connectivity(self, config: ClientConfig) -> None:
        out = self._out
        host, port = config.server_host, config.server_port
        out.line("Server Connectivity:", style="cyan")
        out.line(f"  Host: {host}")
        out.line(f"  Port: {port}")
        try:
            resolved = resolve_host(host)
        except AppError as exc:
            out.line(f"  DNS: {exc.user_message}")
        else:
            out.line(f"  DNS: {resolved.addresses[0] if resolved.ok else 'resolution failed'}")
        out.line()

        out.line("Latency:", style="cyan")
        out.step(f"Measuring latency to {host}...")
        wait_flag = "-t" if self.is_macos else "-W"
        ping = self._capture(["ping", "-c", "3", wait_flag, "5", host])
        if ping:
            out.block("\n".join(ping.strip().splitlines()[-3:]))
        else:
            for attempt in range(1, 4):
                probe = self._tcp(host, port, timeout_s=5.0)
                result = f"{probe.latency_ms}ms" if probe.ok else f"failed ({probe.error})"
                out.line(f"  TCP connect #{attempt}: {result}")
        out.line()

        out.line("UDP/QUIC Notes:", style="cyan")
        for note in _UDP_NOTES:
            out.bullet(note)
        out.line()

    def _common_issues(self, config: ClientConfig) -> None:
        out = self._out
        out.line("Common Issues:", style="cyan")
        for endpoint in config.proxy_endpoints():
            try:
                self._port_check(endpoint.host, endpoint.port)
            except AppError:
                out.warning(f"Port {endpoint.port} is already in use")
            except OSError as exc:
                logger.debug("Port check for %s skipped: %s", endpoint.bind_address, exc)

        if self.is_macos:
            state = self._capture(["/usr/libexec/ApplicationFirewall/socketfilterfw", "--getglobalstate"])
            if "enabled" in state:
                out.info("macOS Firewall is enabled")
        else:
            if "Status: active" in self._capture(["ufw", "status"]):
                out.info("UFW firewall is active")
            if "running" in self._capture(["firewall-cmd", "--state"]):
                out.info("firewalld is running")
