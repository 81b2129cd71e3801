"""Resolve the server hostname.

Several interchangeable lookup mechanisms are tried in order and the first
one that is *available* answers; an empty answer from it is a failure (the
remaining mechanisms are not consulted). dnspython is first; the classic
command-line tools follow for hosts where no resolver configuration can be
loaded from /etc/resolv.conf.
"""

from __future__ import annotations

from dataclasses import dataclass
import logging
import shutil
import subprocess
from typing import Callable, Protocol, Sequence

import dns.exception
import dns.resolver

from mytunnel_ctl.core.config import is_ip_literal
from mytunnel_ctl.core.errors import ToolUnavailableError

logger = logging.getLogger(__name__)


class DnsLookup(Protocol):
    name: str

    def available(self) -> bool: ...

    def lookup(self, host: str, *, timeout_s: float) -> list[str]: ...


@dataclass(frozen=True, slots=True)
class ResolveResult:
    host: str
    addresses: tuple[str, ...]
    mechanism: str | None
    literal: bool

    @property
    def ok(self) -> bool:
        return bool(self.addresses)


class DnspythonLookup:
    name = "dnspython"

    def available(self) -> bool:
        try:
            dns.resolver.Resolver()
        except dns.resolver.NoResolverConfiguration:
            return False
        return True

    def lookup(self, host: str, *, timeout_s: float) -> list[str]:
        addresses: list[str] = []
        try:
            resolver = dns.resolver.Resolver()
            resolver.lifetime = timeout_s
            for rdtype in ("A", "AAAA"):
                try:
                    answer = resolver.resolve(host, rdtype)
                except (dns.resolver.NXDOMAIN, dns.resolver.NoAnswer, dns.resolver.NoNameservers):
                    continue
                except dns.exception.Timeout:
                    logger.info("dnspython timed out resolving %s %s", host, rdtype)
                    continue
                addresses.extend(rr.to_text() for rr in answer)
        except dns.exception.DNSException as exc:
            # Malformed names (label too long, empty label) end up here.
            logger.info("dnspython could not resolve %r: %s", host, exc)
        return addresses


def _parse_dig(output: str) -> list[str]:
    # `dig +short` also prints CNAME targets; keep only addresses.
    return [line.strip() for line in output.splitlines() if is_ip_literal(line.strip())]


def _parse_host(output: str) -> list[str]:
    return [
        line.split()[-1]
        for line in output.splitlines()
        if " has address " in line or " has IPv6 address " in line
    ]


def _parse_nslookup(output: str) -> list[str]:
    addresses: list[str] = []
    seen_name = False
    for line in output.splitlines():
        line = line.strip()
        if line.startswith("Name:"):
            seen_name = True
            continue
        if seen_name and line.startswith("Address:"):
            candidate = line.split(":", 1)[1].strip()
            if is_ip_literal(candidate):
                addresses.append(candidate)
    return addresses


def _parse_getent(output: str) -> list[str]:
    return [line.split()[0] for line in output.splitlines() if line.strip()]


class CommandLookup:
    def __init__(
        self,
        name: str,
        argv: Callable[[str], list[str]],
        parse: Callable[[str], list[str]],
    ) -> None:
        self.name = name
        self._argv = argv
        self._parse = parse

    def available(self) -> bool:
        return shutil.which(self.name) is not None

    def lookup(self, host: str, *, timeout_s: float) -> list[str]:
        cmd = self._argv(host)
        logger.info("Running DNS lookup: %s", cmd)
        try:
            result = subprocess.run(
                cmd,
                check=False,
                capture_output=True,
                text=True,
                timeout=timeout_s,
            )
        except subprocess.TimeoutExpired:
            logger.info("%s timed out after %ss", self.name, timeout_s)
            return []
        except OSError as exc:
            logger.info("%s failed to run: %s", self.name, exc)
            return []
        return self._parse(result.stdout or "")


DEFAULT_LOOKUPS: tuple[DnsLookup, ...] = (
    DnspythonLookup(),
    CommandLookup("dig", lambda host: ["dig", "+short", host], _parse_dig),
    CommandLookup("host", lambda host: ["host", host], _parse_host),
    CommandLookup("nslookup", lambda host: ["nslookup", host], _parse_nslookup),
    CommandLookup("getent", lambda host: ["getent", "hosts", host], _parse_getent),
)


def resolve_host(
    host: str,
    *,
    lookups: Sequence[DnsLookup] = DEFAULT_LOOKUPS,
    timeout_s: float = 5.0,
) -> ResolveResult:
    host = (host or "").strip()
    if is_ip_literal(host):
        return ResolveResult(host=host, addresses=(host.strip("[]"),), mechanism=None, literal=True)

    for mechanism in lookups:
        if not mechanism.available():
            continue
        addresses = [addr for addr in mechanism.lookup(host, timeout_s=timeout_s) if addr]
        # Preserve order, drop duplicates (A records repeated across tools).
        unique = tuple(dict.fromkeys(addresses))
        return ResolveResult(host=host, addresses=unique, mechanism=mechanism.name, literal=False)

    raise ToolUnavailableError(
        "no DNS lookup mechanism available",
        user_message="No DNS lookup tool found (dnspython resolver config, dig, host, nslookup, getent).",
        hint="Install dnsutils/bind-utils, or make sure /etc/resolv.conf exists.",
    )
