from __future__ import annotations

from pathlib import Path
import subprocess

import pytest

from mytunnel_ctl.core.config import AppSettings
from mytunnel_ctl.core.errors import BinaryMissingError, PermissionDeniedError, ServiceCommandError
from mytunnel_ctl.core.service import ServiceManager


class FakeSystemctl:
    def __init__(self, *, active: str = "active", fail: set[str] | None = None) -> None:
        self.active = active
        self.fail = fail or set()
        self.calls: list[list[str]] = []

    def __call__(self, cmd: list[str], **_kwargs) -> subprocess.CompletedProcess[str]:  # noqa: ANN003
        self.calls.append(list(cmd))
        verb = cmd[1] if len(cmd) > 1 else ""
        if verb in self.fail:
            return subprocess.CompletedProcess(cmd, 1, stdout="", stderr=f"{verb} failed")
        if verb == "is-active":
            return subprocess.CompletedProcess(cmd, 0, stdout=f"{self.active}\n", stderr="")
        if verb == "is-enabled":
            return subprocess.CompletedProcess(cmd, 0, stdout="enabled\n", stderr="")
        if verb == "status":
            return subprocess.CompletedProcess(cmd, 0, stdout="mytunnel.service - MyTunnel\n", stderr="")
        return subprocess.CompletedProcess(cmd, 0, stdout="", stderr="")


def _settings(tmp_path: Path, *, assume_yes: bool = False) -> AppSettings:
    return AppSettings(
        config_path=tmp_path / "client-config.toml",
        client_binary="/opt/mytunnel-client",
        server_binary=str(tmp_path / "target" / "mytunnel-server"),
        install_path=tmp_path / "bin" / "mytunnel-server",
        server_config_dir=tmp_path / "etc" / "mytunnel",
        unit_file=tmp_path / "mytunnel.service",
        systemd_dir=tmp_path / "systemd",
        assume_yes=assume_yes,
    )


def _manager(settings, reporter, run, *, root=True, confirm=True, attached=None):  # noqa: ANN001
    return ServiceManager(
        settings,
        reporter,
        run=run,
        run_attached=attached or (lambda cmd: 0),
        sleep=lambda _s: None,
        is_root=lambda: root,
        confirm=lambda _msg: confirm,
    )


def test_start_requires_root(tmp_path, reporter) -> None:
    run = FakeSystemctl()
    with pytest.raises(PermissionDeniedError) as excinfo:
        _manager(_settings(tmp_path), reporter, run, root=False).start()
    assert "sudo" in (excinfo.value.hint or "")
    assert run.calls == []


def test_start_verifies_active(tmp_path, reporter) -> None:
    run = FakeSystemctl()
    assert _manager(_settings(tmp_path), reporter, run).start() == 0
    assert ["systemctl", "start", "mytunnel"] in run.calls
    assert ["systemctl", "is-active", "mytunnel"] in run.calls
    assert "Service started successfully!" in reporter.text


def test_restart_failure_returns_1(tmp_path, reporter) -> None:
    run = FakeSystemctl(fail={"restart"})
    assert _manager(_settings(tmp_path), reporter, run).restart() == 1
    assert "restart failed" in reporter.text


def test_stop_when_not_running(tmp_path, reporter) -> None:
    run = FakeSystemctl(active="inactive")
    assert _manager(_settings(tmp_path), reporter, run).stop() == 0
    assert ["systemctl", "stop", "mytunnel"] not in run.calls


def test_stop_declined(tmp_path, reporter) -> None:
    run = FakeSystemctl()
    assert _manager(_settings(tmp_path), reporter, run, confirm=False).stop() == 1
    assert ["systemctl", "stop", "mytunnel"] not in run.calls


def test_stop_with_assume_yes_skips_prompt(tmp_path, reporter) -> None:
    run = FakeSystemctl()
    manager = _manager(_settings(tmp_path, assume_yes=True), reporter, run, confirm=False)
    assert manager.stop() == 0
    assert ["systemctl", "stop", "mytunnel"] in run.calls


def test_install_without_built_binary(tmp_path, reporter) -> None:
    with pytest.raises(BinaryMissingError):
        _manager(_settings(tmp_path), reporter, FakeSystemctl()).install()


def test_install_copies_and_enables(tmp_path, reporter) -> None:
    settings = _settings(tmp_path)
    binary = Path(settings.server_binary)
    binary.parent.mkdir(parents=True)
    binary.write_bytes(b"\x7fELF")
    settings.install_path.parent.mkdir(parents=True)
    settings.unit_file.write_text("[Unit]\nDescription=MyTunnel\n", encoding="utf-8")
    settings.systemd_dir.mkdir()

    run = FakeSystemctl()
    assert _manager(settings, reporter, run).install() == 0
    assert settings.install_path.read_bytes() == b"\x7fELF"
    assert settings.server_config_dir.is_dir()
    assert (settings.systemd_dir / "mytunnel.service").is_file()
    assert ["systemctl", "daemon-reload"] in run.calls
    assert ["systemctl", "enable", "mytunnel"] in run.calls


def test_status_without_unit(tmp_path, reporter) -> None:
    run = FakeSystemctl()
    assert _manager(_settings(tmp_path), reporter, run, root=False).status() == 0
    assert "Installed: No" in reporter.text
    assert run.calls == []


def test_logs_follows_journal(tmp_path, reporter) -> None:
    attached: list[list[str]] = []

    def run_attached(cmd: list[str]) -> int:
        attached.append(cmd)
        raise KeyboardInterrupt

    manager = _manager(_settings(tmp_path), reporter, FakeSystemctl(), attached=run_attached)
    assert manager.logs(20) == 0
    assert attached == [["journalctl", "-u", "mytunnel", "-f", "-n", "20", "--no-pager"]]


def test_logs_unknown_unit(tmp_path, reporter) -> None:
    run = FakeSystemctl(fail={"list-unit-files"})
    with pytest.raises(ServiceCommandError):
        _manager(_settings(tmp_path), reporter, run).logs()
