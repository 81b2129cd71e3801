"""Connectivity test suite: DNS → TCP port → TLS-over-TCP → QUIC handshake.

The tunnel runs over QUIC (UDP). The QUIC handshake, performed by the client
binary's own `test-connection` command, is the authoritative check. DNS is
also required. The TCP and TLS-over-TCP stages are informational: a
QUIC-only server legitimately fails both, so they never decide the verdict.
"""

from __future__ import annotations

from dataclasses import dataclass, field
import enum
import logging
from pathlib import Path
import time
from typing import Callable, Iterable, Sequence

from mytunnel_ctl.core.config import AppSettings, ClientConfig
from mytunnel_ctl.core.console import Reporter
from mytunnel_ctl.core.errors import (
    AppError,
    CertificateError,
    CertificateExpiredError,
    CertificateInvalidError,
    HandshakeFailedError,
    HostUnreachableError,
    PortUnreachableError,
    ToolUnavailableError,
)
from mytunnel_ctl.core.net_probe import TcpProbeResult, TlsInspection, inspect_tls_certificate, tcp_connect
from mytunnel_ctl.core.process_manager import (
    CoreBinary,
    SelfTestResult,
    find_client_binary,
    run_self_test,
)
from mytunnel_ctl.core.resolver import DEFAULT_LOOKUPS, DnsLookup, resolve_host

logger = logging.getLogger(__name__)

PORT_TIMEOUT_S = 5.0
TLS_TIMEOUT_S = 10.0
CERT_WARN_DAYS = 30


class Requiredness(enum.Enum):
    REQUIRED = "required"
    OPTIONAL = "optional"


class Result(enum.Enum):
    PASS = "pass"
    FAIL = "fail"


@dataclass(frozen=True, slots=True)
class TestOutcome:
    __test__ = False

    name: str
    requiredness: Requiredness
    result: Result
    detail: str
    hint: str | None = None
    error: AppError | None = None

    @property
    def passed(self) -> bool:
        return self.result is Result.PASS

    @property
    def required(self) -> bool:
        return self.requiredness is Requiredness.REQUIRED


@dataclass(frozen=True, slots=True)
class SuiteReport:
    outcomes: tuple[TestOutcome, ...]

    @property
    def required_run(self) -> int:
        return sum(1 for o in self.outcomes if o.required)

    @property
    def required_passed(self) -> int:
        return sum(1 for o in self.outcomes if o.required and o.passed)

    @property
    def optional_run(self) -> int:
        return sum(1 for o in self.outcomes if not o.required)

    @property
    def optional_passed(self) -> int:
        return sum(1 for o in self.outcomes if not o.required and o.passed)

    @property
    def verdict(self) -> Result:
        if all(o.passed for o in self.outcomes if o.required):
            return Result.PASS
        return Result.FAIL

    @property
    def ok(self) -> bool:
        return self.verdict is Result.PASS


@dataclass(slots=True)
class DiagnosticsContext:
    settings: AppSettings
    config: ClientConfig
    reporter: Reporter
    lookups: Sequence[DnsLookup] = DEFAULT_LOOKUPS
    tcp_connect: Callable[..., TcpProbeResult] = tcp_connect
    inspect_tls: Callable[..., TlsInspection] = inspect_tls_certificate
    find_binary: Callable[[str], CoreBinary] = find_client_binary
    self_test: Callable[[CoreBinary, Path], SelfTestResult] = run_self_test
    now: Callable[[], float] = field(default=time.time)


def _outcome(
    name: str,
    requiredness: Requiredness,
    passed: bool,
    detail: str,
    hint: str | None = None,
    error: AppError | None = None,
) -> TestOutcome:
    return TestOutcome(
        name=name,
        requiredness=requiredness,
        result=Result.PASS if passed else Result.FAIL,
        detail=detail,
        hint=hint or (error.hint if error is not None else None),
        error=error,
    )


def check_dns(ctx: DiagnosticsContext) -> TestOutcome:
    name, req = "DNS Resolution", Requiredness.REQUIRED
    out = ctx.reporter
    host = ctx.config.server_host
    out.info(f"Host: {host}")

    try:
        resolved = resolve_host(host, lookups=ctx.lookups)
    except ToolUnavailableError as exc:
        out.error(exc.user_message)
        return _outcome(name, req, False, exc.user_message, error=exc)

    if resolved.literal:
        out.success("Host is an IP address - DNS resolution not needed")
        out.info(f"IP: {host}")
        return _outcome(name, req, True, f"{host} is an IP literal")

    out.step(f"Resolving hostname using {resolved.mechanism}...")
    if resolved.ok:
        for address in resolved.addresses:
            out.line(f"  {address}")
        out.success("DNS resolution successful")
        out.info(f"Resolved to: {resolved.addresses[0]}")
        return _outcome(name, req, True, f"{host} -> {', '.join(resolved.addresses)} ({resolved.mechanism})")

    error = HostUnreachableError(
        f"{host} did not resolve ({resolved.mechanism})",
        user_message="DNS resolution failed",
        hint="Check if the hostname is correct",
    )
    out.error(error.user_message)
    out.info(error.hint)
    return _outcome(name, req, False, str(error), error=error)


def check_port(ctx: DiagnosticsContext) -> TestOutcome:
    name, req = "TCP Port Reachability", Requiredness.OPTIONAL
    out = ctx.reporter
    host, port = ctx.config.server_host, ctx.config.server_port
    out.info(f"Testing TCP connect to: {host}:{port}")
    out.info("Note: MyTunnel uses QUIC over UDP; TCP port checks may fail even when QUIC works.")

    tcp = ctx.tcp_connect(host, port, timeout_s=PORT_TIMEOUT_S)
    if tcp.ok:
        out.success(f"Port {port} is reachable")
        out.info(f"TCP connect time: ~{tcp.latency_ms}ms")
        return _outcome(name, req, True, f"{host}:{port} accepted TCP in {tcp.latency_ms}ms")

    out.warning(f"TCP port {port} is not reachable ({tcp.error})")
    out.info("This is expected if the server is QUIC-only (UDP) and does not accept TCP on this port.")
    out.info("If you expect TCP/HTTPS on this port, possible causes:")
    for cause in ("Server is not running", "Firewall blocking TCP", "Wrong port number"):
        out.bullet(cause)
    detail = f"{host}:{port} unreachable over TCP: {tcp.error}"
    if tcp.host_unreachable:
        error: AppError = HostUnreachableError(detail, user_message=f"Host {host} is unreachable")
    else:
        error = PortUnreachableError(detail, user_message=f"TCP port {port} is not reachable")
    return _outcome(name, req, False, detail, error=error)


def check_tls(ctx: DiagnosticsContext) -> TestOutcome:
    name, req = "TLS-over-TCP Certificate", Requiredness.OPTIONAL
    out = ctx.reporter
    cfg = ctx.config
    host, port = cfg.server_host, cfg.server_port

    out.info("Note: This uses TLS-over-TCP. QUIC uses TLS 1.3 inside UDP.")
    if cfg.insecure:
        out.warning("Insecure mode enabled - certificate verification is disabled")
        out.info("TLS test will still check if server presents a certificate")
    out.info(f"Testing: {host}:{port} (SNI {cfg.server_name})")

    inspection = ctx.inspect_tls(host, port, server_name=cfg.server_name, timeout_s=TLS_TIMEOUT_S)
    if not inspection.presented:
        out.warning(f"Could not establish TLS-over-TCP connection ({inspection.error})")
        out.info("This is expected for QUIC-only servers. QUIC handshake test is the authoritative check.")
        missing = CertificateError(
            f"no certificate from {host}:{port}: {inspection.error}",
            user_message="Could not establish TLS-over-TCP connection",
        )
        return _outcome(name, req, False, f"no certificate: {inspection.error}", error=missing)

    out.success("Server presented a certificate")
    detail = "certificate presented"
    # Recorded on a passing outcome too.
    error: CertificateError | None = None
    cert = inspection.certificate
    if cert is None:
        out.info("Certificate details unavailable (install openssl to decode unverified certificates)")
    else:
        out.line("Certificate Details:", style="cyan")
        out.line(f"  subject={cert.subject}")
        out.line(f"  issuer={cert.issuer}")
        out.line(f"  notBefore={cert.not_before}")
        out.line(f"  notAfter={cert.not_after}")
        days_left = cert.days_left(ctx.now())
        if days_left is not None:
            if days_left < 0:
                out.error("Certificate has EXPIRED!")
                detail = f"certificate expired {-days_left} days ago"
                error = CertificateExpiredError(
                    f"certificate for {cfg.server_name} expired {-days_left} days ago (notAfter={cert.not_after})",
                    user_message="Certificate has expired",
                )
            elif days_left < CERT_WARN_DAYS:
                out.warning(f"Certificate expires in {days_left} days")
                detail = f"certificate expires in {days_left} days"
            else:
                out.success(f"Certificate valid for {days_left} days")
                detail = f"certificate valid for {days_left} days"

    if inspection.verified:
        out.success("Certificate chain verified successfully")
    else:
        out.warning(f"Certificate verification: {inspection.verify_detail}")
        if cfg.insecure:
            out.info("This is expected since insecure mode is enabled")
        detail += f"; verification {inspection.verify_detail}"
        if error is None:
            error = CertificateInvalidError(
                f"certificate for {cfg.server_name} did not verify: {inspection.verify_detail}",
                user_message="Certificate verification failed",
            )
    return _outcome(name, req, True, detail, error=error)


_QUIC_CAUSES = (
    "Server not running or unreachable",
    "UDP traffic blocked by firewall",
    "Certificate issues (try insecure mode for testing)",
    "QUIC protocol blocked by network",
)


def check_quic(ctx: DiagnosticsContext) -> TestOutcome:
    name, req = "QUIC Handshake", Requiredness.REQUIRED
    out = ctx.reporter
    cfg = ctx.config
    try:
        binary = ctx.find_binary(ctx.settings.client_binary)
    except AppError as exc:
        out.error(exc.user_message)
        if exc.hint:
            out.info(exc.hint)
        return _outcome(name, req, False, exc.user_message, error=exc)

    out.info(f"Server:{cfg.server_host}:{cfg.server_port}")
    out.step("Testing QUIC handshake...")
    try:
        result = ctx.self_test(binary, ctx.settings.config_path)
    except AppError as exc:
        out.error(exc.user_message)
        return _outcome(name, req, False, exc.user_message, "Run 'test-quic' again after checking the server.", exc)

    if result.output:
        out.block(result.output)
    if result.ok:
        out.success("QUIC connection test passed!")
        return _outcome(name, req, True, "client self-test exited 0")

    out.error("QUIC connection test failed")
    out.info("Possible causes:")
    for cause in _QUIC_CAUSES:
        out.bullet(cause)
    error = HandshakeFailedError(
        f"client self-test exited {result.returncode}",
        user_message="QUIC connection test failed",
        hint="Ensure UDP is allowed to the server/port.",
    )
    return _outcome(name, req, False, str(error), error=error)


@dataclass(frozen=True, slots=True)
class Stage:
    key: str
    title: str
    run: Callable[[DiagnosticsContext], TestOutcome]
    requiredness: Requiredness


STAGES: tuple[Stage, ...] = (
    Stage("dns", "DNS Resolution", check_dns, Requiredness.REQUIRED),
    Stage("port", "TCP Port Reachability", check_port, Requiredness.OPTIONAL),
    Stage("tls", "TLS-over-TCP Certificate", check_tls, Requiredness.OPTIONAL),
    Stage("quic", "QUIC Handshake", check_quic, Requiredness.REQUIRED),
)


def stage_by_key(key: str) -> Stage:
    for stage in STAGES:
        if stage.key == key:
            return stage
    raise KeyError(key)


def print_counts(out: Reporter, report: SuiteReport) -> None:
    out.line(f"Required tests passed: {report.required_passed}/{report.required_run}")
    out.line(f"Optional tests passed:  {report.optional_passed}/{report.optional_run}")


def run_stage(ctx: DiagnosticsContext, stage: Stage) -> TestOutcome:
    """Run one stage on its own (the `test-dns`, `test-port`, ... commands)."""
    ctx.reporter.section(f"{stage.title} Test ({stage.requiredness.value})")
    outcome = stage.run(ctx)
    logger.info("Stage %s: %s (%s)", stage.key, outcome.result.value, outcome.detail)
    ctx.reporter.line()
    print_counts(ctx.reporter, SuiteReport(outcomes=(outcome,)))
    return outcome


def run_suite(ctx: DiagnosticsContext, stages: Iterable[Stage] = STAGES) -> SuiteReport:
    out = ctx.reporter
    out.section("Full Connectivity Test Suite")
    stages = list(stages)
    outcomes: list[TestOutcome] = []
    for index, stage in enumerate(stages, 1):
        out.line()
        out.heading(f"[{index}/{len(stages)}] {stage.title} ({stage.requiredness.value})")
        outcome = stage.run(ctx)
        logger.info("Stage %s: %s (%s)", stage.key, outcome.result.value, outcome.detail)
        outcomes.append(outcome)

    report = SuiteReport(outcomes=tuple(outcomes))
    out.section("Test Summary")
    for outcome in report.outcomes:
        mark = "PASS" if outcome.passed else "FAIL"
        out.line(f"  [{mark}] {outcome.name} ({outcome.requiredness.value}): {outcome.detail}")
    out.line()
    print_counts(out, report)
    out.line()

    if report.ok:
        out.success("Connectivity OK: QUIC connectivity is working (the authoritative MyTunnel check).")
        if report.optional_passed < report.optional_run:
            out.warning("Some optional TCP/TLS checks failed. This is normal for QUIC-only servers.")
        out.info("Next: mytunnel-ctl test-proxy")
        return report

    for outcome in report.outcomes:
        if outcome.required and not outcome.passed:
            out.error(f"{outcome.name} failed: {outcome.detail}")
    out.info("Troubleshooting tips:")
    out.bullet("Ensure UDP is allowed to the server/port (QUIC uses UDP)")
    out.bullet("Check server is running and listening on the configured port")
    out.bullet("If using self-signed certs, set server.insecure = true (dev only)")
    return report
