"""End-to-end check of the local SOCKS5/HTTP proxy endpoints.

If a proxy is already listening on a configured bind address, the running
instance is tested as-is and never touched. Otherwise the client binary is
started in the background for the duration of the test and stopped again
before returning, whatever happened in between.

The pre-flight "port already in use" check and the spawn are not atomic:
another process can grab a port in between. The check only warns.
"""

from __future__ import annotations

from dataclasses import dataclass
import logging
import os
from pathlib import Path
import tempfile
from typing import Callable

from mytunnel_ctl.core.config import AppSettings, ClientConfig, ProxyEndpointConfig
from mytunnel_ctl.core.console import Reporter
from mytunnel_ctl.core.errors import AppError, ProcessStartTimeoutError, ProxyRequestFailedError
from mytunnel_ctl.core.health_check import DEFAULT_TEST_URL, ProxyHealthResult, check_endpoint
from mytunnel_ctl.core.process_manager import (
    CoreBinary,
    ManagedProcess,
    ProcessState,
    ProcessSupervisor,
    SubprocessSupervisor,
    ensure_port_available,
    find_client_binary,
)
from mytunnel_ctl.core.readiness import (
    ALREADY_RUNNING_POLICY,
    STARTUP_POLICY,
    PollOutcome,
    RetryPolicy,
    poll_ready,
)
from mytunnel_ctl.core.storage import tail_lines

logger = logging.getLogger(__name__)

LOG_TAIL_LINES = 50


@dataclass(frozen=True, slots=True)
class EndpointResult:
    endpoint: ProxyEndpointConfig
    health: ProxyHealthResult
    error: ProxyRequestFailedError | None = None

    @property
    def ok(self) -> bool:
        return self.health.ok


@dataclass(frozen=True, slots=True)
class ProxyTestReport:
    spawned: bool
    results: tuple[EndpointResult, ...]

    @property
    def ok(self) -> bool:
        return all(r.ok for r in self.results)


def _default_log_path() -> Path:
    fd, name = tempfile.mkstemp(prefix="mytunnel-client.", suffix=".log")
    os.close(fd)
    return Path(name)


class ProxyFunctionalTester:
    def __init__(
        self,
        settings: AppSettings,
        config: ClientConfig,
        reporter: Reporter,
        *,
        supervisor: ProcessSupervisor | None = None,
        poll: Callable[..., PollOutcome] = poll_ready,
        check: Callable[[ProxyEndpointConfig], ProxyHealthResult] = check_endpoint,
        port_check: Callable[[str, int], None] = ensure_port_available,
        find_binary: Callable[[str], CoreBinary] = find_client_binary,
        log_path_factory: Callable[[], Path] = _default_log_path,
        detect_policy: RetryPolicy = ALREADY_RUNNING_POLICY,
        startup_policy: RetryPolicy = STARTUP_POLICY,
    ) -> None:
        self._settings = settings
        self._config = config
        self._out = reporter
        self._supervisor = supervisor or SubprocessSupervisor()
        self._poll = poll
        self._check = check
        self._port_check = port_check
        self._find_binary = find_binary
        self._log_path_factory = log_path_factory
        self._detect_policy = detect_policy
        self._startup_policy = startup_policy

    def run(self) -> ProxyTestReport:
        out = self._out
        endpoints = self._config.proxy_endpoints()
        for endpoint in endpoints:
            out.info(f"{endpoint.label + ':':<8} {endpoint.bind_address} (enabled: {str(endpoint.enabled).lower()})")

        enabled = [e for e in endpoints if e.enabled]
        if not enabled:
            out.warning("No proxy endpoints are enabled (proxy.socks5_enabled / proxy.http_enabled)")
            return ProxyTestReport(spawned=False, results=())

        # Any configured port, enabled or not, counts as "client already running".
        all_addresses = [(e.host, e.port) for e in endpoints]
        if self._poll(all_addresses, self._detect_policy) is PollOutcome.READY:
            out.info("Detected running proxy on configured ports")
            return ProxyTestReport(spawned=False, results=self._test_endpoints(enabled))

        binary = self._find_binary(self._settings.client_binary)
        proc: ManagedProcess | None = None
        keep_log = False
        try:
            out.step("Starting client in background...")
            self._warn_ports_in_use(endpoints)
            log_path = self._log_path_factory()
            proc = self._supervisor.start(
                [binary.path, "run", "-c", str(self._settings.config_path)],
                log_path,
            )
            outcome = self._poll(
                [(e.host, e.port) for e in enabled],
                self._startup_policy,
                process_alive=lambda: self._supervisor.is_alive(proc),
            )
            if outcome is not PollOutcome.READY:
                keep_log = True
                proc.state = ProcessState.FAILED if outcome is PollOutcome.PROCESS_EXITED else ProcessState.TIMED_OUT
                raise self._startup_failure(proc, endpoints)

            proc.state = ProcessState.READY
            out.success(f"Client started (PID: {proc.pid})")
            return ProxyTestReport(spawned=True, results=self._test_endpoints(enabled))
        finally:
            if proc is not None:
                out.step("Stopping test client...")
                self._supervisor.terminate(proc)
                out.info("Client stopped")
                if not keep_log:
                    proc.log_path.unlink(missing_ok=True)

    def _warn_ports_in_use(self, endpoints: list[ProxyEndpointConfig]) -> None:
        for endpoint in endpoints:
            try:
                self._port_check(endpoint.host, endpoint.port)
            except AppError as exc:
                self._out.warning(f"{exc.user_message} ({endpoint.label} bind may fail)")
            except OSError as exc:
                logger.debug("Port pre-flight for %s skipped: %s", endpoint.bind_address, exc)

    def _startup_failure(self, proc: ManagedProcess, endpoints: list[ProxyEndpointConfig]) -> ProcessStartTimeoutError:
        out = self._out
        if proc.state is ProcessState.FAILED:
            out.error(f"Client failed to start (exited with code {proc.returncode})")
        else:
            out.error(f"Client failed to start (no proxy port ready after {self._startup_policy.max_attempts} attempts)")
        out.info(f"Last startup log lines ({proc.log_path}):")
        out.block("\n".join(tail_lines(proc.log_path, LOG_TAIL_LINES)) or "(log is empty)")
        ports = "/".join(str(e.port) for e in endpoints)
        return ProcessStartTimeoutError(
            f"client pid={proc.pid} did not become ready: {proc.state.value}",
            user_message="Client failed to start; proxy tests were not run.",
            hint=f"Run 'mytunnel-ctl test-quic' to confirm server connectivity, and check local ports {ports} are free.",
        )

    def _test_endpoints(self, enabled: list[ProxyEndpointConfig]) -> tuple[EndpointResult, ...]:
        out = self._out
        results: list[EndpointResult] = []
        for endpoint in enabled:
            out.line()
            out.step(f"Testing {endpoint.label} proxy...")
            health = self._check(endpoint)
            error: ProxyRequestFailedError | None = None
            if health.ok:
                out.success(f"{endpoint.label} proxy working (HTTP {health.status_code}, {health.latency_ms}ms)")
            else:
                error = self._request_failure(endpoint, health)
                out.error(error.user_message)
                out.info(f"URL: {health.checked_url or DEFAULT_TEST_URL}")
                out.info(f"HTTP code: {health.status_code if health.status_code is not None else '000'}")
                out.info(f"Error: {health.error}")
                out.info(error.hint or "")
            results.append(EndpointResult(endpoint=endpoint, health=health, error=error))
        return tuple(results)

    def _request_failure(self, endpoint: ProxyEndpointConfig, health: ProxyHealthResult) -> ProxyRequestFailedError:
        logger.info("%s proxy at %s failed: %s", endpoint.label, endpoint.bind_address, health.error)
        return ProxyRequestFailedError(
            f"{endpoint.kind} proxy {endpoint.bind_address} failed: {health.error}",
            user_message=f"{endpoint.label} proxy test failed",
            hint=f"Check the client log and that {endpoint.bind_address} is the configured {endpoint.label} bind.",
        )
