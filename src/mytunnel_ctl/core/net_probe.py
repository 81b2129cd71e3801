"""Network probes against the tunnel server and local proxy ports.

The tunnel itself runs over QUIC (UDP), so nothing here talks the real
transport. These probes answer narrower questions:
- does anything accept a TCP connection on host:port?
- if it speaks TLS over TCP, which certificate does it present?
"""

from __future__ import annotations

from dataclasses import dataclass
import errno
import logging
import shutil
import socket
import ssl
import subprocess
import time

logger = logging.getLogger(__name__)

_HOST_UNREACHABLE_ERRNOS = {errno.EHOSTUNREACH, errno.ENETUNREACH}

_NAME_ABBREVIATIONS: dict[str, str] = {
    "commonName": "CN",
    "organizationName": "O",
    "organizationalUnitName": "OU",
    "countryName": "C",
    "stateOrProvinceName": "ST",
    "localityName": "L",
}


@dataclass(frozen=True, slots=True)
class TcpProbeResult:
    ok: bool
    latency_ms: int | None
    error: str | None
    host_unreachable: bool = False


@dataclass(frozen=True, slots=True)
class CertificateInfo:
    subject: str
    issuer: str
    not_before: str
    not_after: str

    @property
    def expires_at(self) -> float | None:
        try:
            return float(ssl.cert_time_to_seconds(self.not_after))
        except (ValueError, TypeError):
            return None

    def days_left(self, now: float | None = None) -> int | None:
        expires_at = self.expires_at
        if expires_at is None:
            return None
        now = time.time() if now is None else now
        return int((expires_at - now) // 86400)


@dataclass(frozen=True, slots=True)
class TlsInspection:
    presented: bool
    certificate: CertificateInfo | None
    verified: bool
    verify_detail: str | None
    handshake_ms: int | None
    error: str | None


def tcp_probe(host: str, port: int, timeout_s: float = 1.0) -> bool:
    try:
        with socket.create_connection((host, port), timeout=timeout_s):
            return True
    except OSError:
        return False


def tcp_connect(host: str, port: int, *, timeout_s: float = 5.0) -> TcpProbeResult:
    host = (host or "").strip()
    if not host or not isinstance(port, int) or port <= 0:
        return TcpProbeResult(ok=False, latency_ms=None, error="Missing host/port")

    started = time.monotonic()
    try:
        with socket.create_connection((host, port), timeout=timeout_s):
            latency_ms = int((time.monotonic() - started) * 1000)
    except socket.timeout:
        return TcpProbeResult(ok=False, latency_ms=None, error=f"timed out after {timeout_s:g}s")
    except socket.gaierror as exc:
        return TcpProbeResult(ok=False, latency_ms=None, error=str(exc), host_unreachable=True)
    except OSError as exc:
        unreachable = exc.errno in _HOST_UNREACHABLE_ERRNOS
        return TcpProbeResult(ok=False, latency_ms=None, error=str(exc), host_unreachable=unreachable)
    return TcpProbeResult(ok=True, latency_ms=latency_ms, error=None)


def _format_name(name: tuple) -> str:
    parts: list[str] = []
    for rdn in name or ():
        for key, value in rdn:
            parts.append(f"{_NAME_ABBREVIATIONS.get(key, key)}={value}")
    return ", ".join(parts)


def certificate_from_peercert(cert: dict) -> CertificateInfo:
    return CertificateInfo(
        subject=_format_name(cert.get("subject", ())),
        issuer=_format_name(cert.get("issuer", ())),
        not_before=str(cert.get("notBefore", "")),
        not_after=str(cert.get("notAfter", "")),
    )


def parse_openssl_x509_text(text: str) -> CertificateInfo | None:
    fields: dict[str, str] = {}
    for line in text.splitlines():
        key, sep, value = line.partition("=")
        if sep:
            fields[key.strip()] = value.strip()
    if not fields:
        return None
    return CertificateInfo(
        subject=fields.get("subject", ""),
        issuer=fields.get("issuer", ""),
        not_before=fields.get("notBefore", ""),
        not_after=fields.get("notAfter", ""),
    )


def _decode_der_with_openssl(der: bytes, *, timeout_s: float = 5.0) -> CertificateInfo | None:
    # Unverified peer certificates are only available in DER form.
    openssl = shutil.which("openssl")
    if not openssl or not der:
        return None
    try:
        result = subprocess.run(
            [openssl, "x509", "-noout", "-subject", "-issuer", "-startdate", "-enddate"],
            input=ssl.DER_cert_to_PEM_cert(der),
            check=False,
            capture_output=True,
            text=True,
            timeout=timeout_s,
        )
    except (OSError, subprocess.TimeoutExpired) as exc:
        logger.debug("openssl x509 decode failed: %s", exc)
        return None
    if result.returncode != 0:
        return None
    return parse_openssl_x509_text(result.stdout)


def _handshake(
    host: str,
    port: int,
    server_name: str,
    context: ssl.SSLContext,
    timeout_s: float,
) -> tuple[dict, bytes, int]:
    started = time.monotonic()
    with socket.create_connection((host, port), timeout=timeout_s) as sock:
        sock.settimeout(timeout_s)
        with context.wrap_socket(sock, server_hostname=server_name) as ssock:
            ssock.do_handshake()
            elapsed_ms = int((time.monotonic() - started) * 1000)
            return ssock.getpeercert() or {}, ssock.getpeercert(binary_form=True) or b"", elapsed_ms


def inspect_tls_certificate(
    host: str,
    port: int,
    *,
    server_name: str | None = None,
    timeout_s: float = 10.0,
) -> TlsInspection:
    """Handshake TLS-over-TCP and report the certificate plus chain verification.

    A verifying handshake is tried first. If only verification fails, a second
    unverified handshake fetches the certificate so it can still be shown.
    """
    server_name = (server_name or "").strip() or host

    try:
        cert, _, elapsed_ms = _handshake(host, port, server_name, ssl.create_default_context(), timeout_s)
    except ssl.SSLCertVerificationError as exc:
        verify_detail = f"{exc.verify_code} ({exc.verify_message})"
        logger.info("TLS verification failed for %s:%s: %s", host, port, verify_detail)
    except (OSError, ssl.SSLError) as exc:
        return TlsInspection(
            presented=False,
            certificate=None,
            verified=False,
            verify_detail=None,
            handshake_ms=None,
            error=str(exc) or type(exc).__name__,
        )
    else:
        return TlsInspection(
            presented=True,
            certificate=certificate_from_peercert(cert),
            verified=True,
            verify_detail="0 (ok)",
            handshake_ms=elapsed_ms,
            error=None,
        )

    insecure = ssl.create_default_context()
    insecure.check_hostname = False
    insecure.verify_mode = ssl.CERT_NONE
    try:
        _, der, elapsed_ms = _handshake(host, port, server_name, insecure, timeout_s)
    except (OSError, ssl.SSLError) as exc:
        return TlsInspection(
            presented=False,
            certificate=None,
            verified=False,
            verify_detail=verify_detail,
            handshake_ms=None,
            error=str(exc) or type(exc).__name__,
        )

    return TlsInspection(
        presented=bool(der),
        certificate=_decode_der_with_openssl(der),
        verified=False,
        verify_detail=verify_detail,
        handshake_ms=elapsed_ms,
        error=None if der else "No certificate received from server",
    )
