"""Command table and argument parsing.

Every subcommand is a handler `(settings, reporter, args) -> int` registered
in `COMMANDS`; `main()` only parses arguments, builds the settings and
dispatches. Exit status is 0 on success and 1 on failure.
"""

from __future__ import annotations

import argparse
import logging
from typing import Callable, Sequence

from mytunnel_ctl import __version__
from mytunnel_ctl.core.config import AppSettings, ClientConfig, build_settings
from mytunnel_ctl.core.console import Reporter
from mytunnel_ctl.core.diagnose import Diagnoser
from mytunnel_ctl.core.diagnostics import DiagnosticsContext, run_stage, run_suite, stage_by_key
from mytunnel_ctl.core.errors import AppError
from mytunnel_ctl.core.monitor import LiveMonitor, show_users
from mytunnel_ctl.core.process_manager import check_config_syntax, find_client_binary
from mytunnel_ctl.core.proxy_test import ProxyFunctionalTester
from mytunnel_ctl.core.service import ServiceManager
from mytunnel_ctl.core.status_api import StatusAPIClient

logger = logging.getLogger(__name__)

Handler = Callable[[AppSettings, Reporter, argparse.Namespace], int]


def _context(settings: AppSettings, reporter: Reporter) -> DiagnosticsContext:
    config = ClientConfig.load(settings.config_path)
    return DiagnosticsContext(settings=settings, config=config, reporter=reporter)


def cmd_test(settings: AppSettings, reporter: Reporter, args: argparse.Namespace) -> int:
    report = run_suite(_context(settings, reporter))
    return 0 if report.ok else 1


def _single_stage(key: str) -> Handler:
    def handler(settings: AppSettings, reporter: Reporter, args: argparse.Namespace) -> int:
        outcome = run_stage(_context(settings, reporter), stage_by_key(key))
        return 0 if outcome.passed else 1

    handler.__name__ = f"cmd_test_{key}"
    return handler


def cmd_test_proxy(settings: AppSettings, reporter: Reporter, args: argparse.Namespace) -> int:
    reporter.section("Proxy Functional Test")
    config = ClientConfig.load(settings.config_path)
    report = ProxyFunctionalTester(settings, config, reporter).run()
    reporter.line()
    if report.ok:
        reporter.success("All enabled proxy tests passed")
        return 0
    reporter.error("Some proxy tests failed")
    return 1


def cmd_config(settings: AppSettings, reporter: Reporter, args: argparse.Namespace) -> int:
    reporter.section("Client Configuration")
    config = ClientConfig.load(settings.config_path)
    reporter.info(f"Config file: {settings.config_path}")
    reporter.line()
    reporter.line("Current Settings:", style="cyan")
    lines = [
        line.rstrip()
        for line in settings.config_path.read_text(encoding="utf-8").splitlines()
        if line.strip() and not line.lstrip().startswith("#")
    ]
    reporter.block("\n".join(lines))

    reporter.line()
    reporter.line("Effective Values:", style="cyan")
    effective = [
        ("server.address", config.server_address),
        ("server.server_name", config.server_name),
        ("server.insecure", str(config.insecure).lower()),
    ]
    for endpoint in config.proxy_endpoints():
        effective.append((f"proxy.{endpoint.kind}_bind", endpoint.bind_address))
        effective.append((f"proxy.{endpoint.kind}_enabled", str(endpoint.enabled).lower()))
    for key, value in effective:
        reporter.line(f"  {key:<20} = {value}")

    try:
        binary = find_client_binary(settings.client_binary)
    except AppError as exc:
        logger.debug("Skipping config syntax check: %s", exc)
        return 0
    reporter.line()
    if check_config_syntax(binary, settings.config_path):
        reporter.success("Configuration syntax is valid")
        return 0
    reporter.error("Configuration was rejected by the client")
    return 1


def cmd_diagnose(settings: AppSettings, reporter: Reporter, args: argparse.Namespace) -> int:
    return Diagnoser(settings, reporter).run()


def cmd_users(settings: AppSettings, reporter: Reporter, args: argparse.Namespace) -> int:
    reporter.section("Connected Users")
    return show_users(StatusAPIClient(settings.api_base_url), reporter.console)


def cmd_monitor(settings: AppSettings, reporter: Reporter, args: argparse.Namespace) -> int:
    monitor = LiveMonitor(StatusAPIClient(settings.api_base_url), reporter.console)
    try:
        monitor.run()
    except KeyboardInterrupt:
        reporter.line()
        reporter.info("Monitor stopped")
    return 0


def _service(action: str) -> Handler:
    def handler(settings: AppSettings, reporter: Reporter, args: argparse.Namespace) -> int:
        manager = ServiceManager(settings, reporter)
        if action == "logs":
            return manager.logs(args.lines)
        return getattr(manager, action)()

    handler.__name__ = f"cmd_{action}"
    return handler


COMMANDS: dict[str, Handler] = {
    "test": cmd_test,
    "test-dns": _single_stage("dns"),
    "test-port": _single_stage("port"),
    "test-tls": _single_stage("tls"),
    "test-quic": _single_stage("quic"),
    "test-proxy": cmd_test_proxy,
    "config": cmd_config,
    "diagnose": cmd_diagnose,
    "users": cmd_users,
    "monitor": cmd_monitor,
    "build": _service("build"),
    "install": _service("install"),
    "start": _service("start"),
    "stop": _service("stop"),
    "restart": _service("restart"),
    "status": _service("status"),
    "logs": _service("logs"),
}

_HELP = {
    "test": "Run the full connectivity test suite",
    "test-dns": "Test DNS resolution of the server host",
    "test-port": "Test TCP reachability of the server port (informational)",
    "test-tls": "Inspect the TLS-over-TCP certificate (informational)",
    "test-quic": "Run the client's QUIC handshake self-test",
    "test-proxy": "Test the local SOCKS5/HTTP proxy endpoints end to end",
    "config": "Show the client configuration and check its syntax",
    "diagnose": "Print a comprehensive diagnostics report",
    "users": "Show currently connected users",
    "monitor": "Live monitor of server stats and users (Ctrl+C to exit)",
    "build": "Build the release binary with cargo",
    "install": "Install the server binary and systemd unit (root)",
    "start": "Start the service (root)",
    "stop": "Stop the service (root)",
    "restart": "Restart the service (root)",
    "status": "Show installation and service status",
    "logs": "Follow the service journal",
}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="mytunnel-ctl", description="MyTunnel diagnostics and service control")
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument("--config", help="client config file (default: client-config.toml)")
    parser.add_argument("--client-binary", help="path to the tunnel client binary")
    parser.add_argument("--api", help="status API address host:port (default: 127.0.0.1:9091)")
    parser.add_argument("-y", "--yes", action="store_true", help="answer yes to confirmation prompts")
    parser.add_argument("-v", "--verbose", action="store_true", help="show debug logging on the console")

    sub = parser.add_subparsers(dest="command", metavar="COMMAND")
    sub.required = True
    for name in COMMANDS:
        command = sub.add_parser(name, help=_HELP.get(name))
        if name == "logs":
            command.add_argument("lines", nargs="?", type=int, default=100, help="lines of history (default: 100)")
    return parser


def parse_args(argv: Sequence[str] | None = None) -> argparse.Namespace:
    return build_parser().parse_args(argv)


def run(args: argparse.Namespace, *, reporter: Reporter | None = None) -> int:
    settings = build_settings(
        config_path=args.config,
        client_binary=args.client_binary,
        api_addr=args.api,
        assume_yes=args.yes,
        verbose=args.verbose,
    )
    reporter = reporter or Reporter()
    handler = COMMANDS[args.command]
    logger.debug("Dispatching %s with config=%s", args.command, settings.config_path)
    try:
        return handler(settings, reporter, args)
    except AppError as exc:
        logger.info("%s failed: %s", args.command, exc)
        reporter.error(exc.user_message)
        if exc.hint:
            reporter.info(exc.hint)
        return 1
