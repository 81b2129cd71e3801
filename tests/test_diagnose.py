from __future__ import annotations

from datetime import datetime
from pathlib import Path

from mytunnel_ctl.core.config import AppSettings
from mytunnel_ctl.core.diagnose import Diagnoser
from mytunnel_ctl.core.errors import PortInUseError
from mytunnel_ctl.core.net_probe import TcpProbeResult


def _settings(tmp_path: Path, config_text: str | None) -> AppSettings:
    config_path = tmp_path / "client-config.toml"
    if config_text is not None:
        config_path.write_text(config_text, encoding="utf-8")
    return AppSettings(config_path=config_path, client_binary=str(tmp_path / "mytunnel-client"))


def _diagnoser(settings, reporter, outputs: dict[str, str], tcp_calls: list, busy_ports=()):  # noqa: ANN001
    def capture(cmd: list[str]) -> str:
        return outputs.get(cmd[0], "")

    def tcp(host, port, *, timeout_s):  # noqa: ANN001
        tcp_calls.append((host, port))
        return TcpProbeResult(ok=True, latency_ms=31, error=None)

    def port_check(host: str, port: int) -> None:
        if port in busy_ports:
            raise PortInUseError("busy", user_message="busy")

    return Diagnoser(
        settings,
        reporter,
        capture=capture,
        tcp=tcp,
        port_check=port_check,
        system=lambda: "Linux",
        now=lambda: datetime(2024, 6, 1, 9, 0, 0),
    )


def test_missing_config_still_exits_zero(tmp_path, reporter) -> None:
    settings = _settings(tmp_path, None)
    assert _diagnoser(settings, reporter, {}, []).run() == 0
    text = reporter.text
    assert "Configuration not found" in text
    assert "Binary not found" in text
    assert "Date: 2024-06-01 09:00:00" in text


def test_full_report_with_tcp_latency_fallback(tmp_path, reporter) -> None:
    settings = _settings(tmp_path, '[server]\naddress = "203.0.113.7:4433"\n')
    tcp_calls: list = []
    outputs = {"ip": "lo UNKNOWN 127.0.0.1/8\neth0 UP 192.0.2.10/24\n", "ufw": "Status: active\n"}
    code = _diagnoser(settings, reporter, outputs, tcp_calls, busy_ports={1080}).run()

    assert code == 0
    text = reporter.text
    assert "eth0 UP 192.0.2.10/24" in text
    assert "Server: 203.0.113.7:4433" in text
    assert "DNS: 203.0.113.7" in text
    assert tcp_calls == [("203.0.113.7", 4433)] * 3
    assert "TCP connect #3: 31ms" in text
    assert "QUIC uses UDP" in text
    assert "Port 1080 is already in use" in text
    assert "Port 8080 is already in use" not in text
    assert "UFW firewall is active" in text


def test_ping_output_is_used_when_available(tmp_path, reporter) -> None:
    settings = _settings(tmp_path, '[server]\naddress = "203.0.113.7:4433"\n')
    ping = (
        "PING 203.0.113.7 (203.0.113.7) 56(84) bytes of data.\n"
        "\n"
        "--- 203.0.113.7 ping statistics ---\n"
        "3 packets transmitted, 3 received, 0% packet loss, time 2003ms\n"
        "rtt min/avg/max/mdev = 10.1/11.2/12.3/0.9 ms\n"
    )
    tcp_calls: list = []
    assert _diagnoser(settings, reporter, {"ping": ping}, tcp_calls).run() == 0
    assert tcp_calls == []
    assert "rtt min/avg/max/mdev" in reporter.text


def test_client_binary_details(tmp_path, reporter) -> None:
    settings = _settings(tmp_path, None)
    binary = Path(settings.client_binary)
    binary.write_bytes(b"#!/bin/sh\n")
    outputs = {str(binary.resolve()): "mytunnel-client 1.0.8\n"}
    assert _diagnoser(settings, reporter, outputs, []).run() == 0
    text = reporter.text
    assert "Binary exists" in text
    assert "Size: 10 bytes" in text
    assert "Version: mytunnel-client 1.0.8" in text
