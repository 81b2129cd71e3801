"""Build and systemd lifecycle commands for the tunnel server.

These are thin wrappers around `cargo`, `systemctl` and `journalctl`; all
the real work happens in those tools. Commands that change system state
need root and say so up front instead of failing halfway.
"""

from __future__ import annotations

import contextlib
import logging
import os
from pathlib import Path
import shutil
import stat
import subprocess
import time
from typing import Callable

import questionary

from mytunnel_ctl.core.config import AppSettings
from mytunnel_ctl.core.console import Reporter
from mytunnel_ctl.core.errors import BinaryMissingError, PermissionDeniedError, ServiceCommandError, ToolUnavailableError

logger = logging.getLogger(__name__)

SERVER_CONFIG_FILE = "config.toml"
EXAMPLE_CONFIG_FILE = Path("config.example.toml")


def _run(cmd: list[str], *, timeout_s: float = 15.0) -> subprocess.CompletedProcess[str]:
    logger.info("Running command: %s", cmd)
    try:
        return subprocess.run(
            cmd,
            check=False,
            capture_output=True,
            text=True,
            timeout=timeout_s,
        )
    except subprocess.TimeoutExpired as exc:
        raise ServiceCommandError(
            f"Command timed out: {cmd}",
            user_message=f"Timed out running: {' '.join(cmd)}",
        ) from exc
    except OSError as exc:
        raise ServiceCommandError(
            f"Command failed: {cmd}: {exc}",
            user_message=f"Failed to run {cmd[0]}: {exc}",
        ) from exc


def _run_attached(cmd: list[str]) -> int:
    """Run with the terminal attached (build output, log follow)."""
    logger.info("Running attached command: %s", cmd)
    try:
        return subprocess.run(cmd, check=False).returncode
    except OSError as exc:
        raise ServiceCommandError(
            f"Command failed: {cmd}: {exc}",
            user_message=f"Failed to run {cmd[0]}: {exc}",
        ) from exc


def _ask_confirm(message: str) -> bool:
    # ask() returns None when the prompt is interrupted.
    return bool(questionary.confirm(message, default=False).ask())


class ServiceManager:
    def __init__(
        self,
        settings: AppSettings,
        reporter: Reporter,
        *,
        run: Callable[..., subprocess.CompletedProcess[str]] = _run,
        run_attached: Callable[[list[str]], int] = _run_attached,
        sleep: Callable[[float], None] = time.sleep,
        is_root: Callable[[], bool] | None = None,
        confirm: Callable[[str], bool] | None = None,
    ) -> None:
        self._settings = settings
        self._out = reporter
        self._run = run
        self._run_attached = run_attached
        self._sleep = sleep
        self._is_root = is_root or (lambda: hasattr(os, "geteuid") and os.geteuid() == 0)
        self._confirm = confirm or _ask_confirm

    @property
    def unit_name(self) -> str:
        return f"{self._settings.service_name}.service"

    @property
    def unit_path(self) -> Path:
        return self._settings.systemd_dir / self.unit_name

    @property
    def server_config_path(self) -> Path:
        return self._settings.server_config_dir / SERVER_CONFIG_FILE

    def _require_root(self, action: str) -> None:
        if not self._is_root():
            raise PermissionDeniedError(
                f"{action} requires root",
                user_message=f"'{action}' must be run as root.",
                hint=f"Re-run with sudo: sudo mytunnel-ctl {action}",
            )

    def _approved(self, message: str) -> bool:
        if self._settings.assume_yes:
            return True
        return self._confirm(message)

    def _systemctl(self, *args: str) -> subprocess.CompletedProcess[str]:
        return self._run(["systemctl", *args])

    def is_active(self) -> str:
        return (self._systemctl("is-active", self._settings.service_name).stdout or "").strip() or "unknown"

    def is_enabled(self) -> str:
        return (self._systemctl("is-enabled", self._settings.service_name).stdout or "").strip() or "unknown"

    def build(self) -> int:
        out = self._out
        if shutil.which("cargo") is None:
            raise ToolUnavailableError(
                "cargo not found",
                user_message="Cargo is not installed.",
                hint="Install Rust from https://rustup.rs",
            )
        version = self._run(["cargo", "--version"]).stdout.strip()
        out.info(f"Cargo version: {version}")
        out.step("Building release binary...")
        if self._run_attached(["cargo", "build", "--release"]) != 0:
            out.error("Build failed!")
            return 1
        out.success("Build successful!")
        binary = Path(self._settings.server_binary)
        if binary.is_file():
            out.info(f"Binary: {binary} ({binary.stat().st_size} bytes)")
        return 0

    def install(self) -> int:
        out = self._out
        s = self._settings
        self._require_root("install")
        source = Path(s.server_binary)
        if not source.is_file():
            raise BinaryMissingError(
                f"server binary missing: {source}",
                user_message=f"Binary not found at {source}",
                hint="Run 'mytunnel-ctl build' first.",
            )

        out.line("Installation Summary:", style="cyan")
        out.line(f"  Binary:  {source} -> {s.install_path}")
        out.line(f"  Config:  {self.server_config_path}")
        out.line(f"  Service: {self.unit_path}")
        if not self._approved("Proceed with installation?"):
            out.warning("Installation cancelled")
            return 1

        out.step(f"[1/5] Copying binary to {s.install_path}...")
        shutil.copy2(source, s.install_path)
        s.install_path.chmod(s.install_path.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)

        out.step(f"[2/5] Creating config directory {s.server_config_dir}...")
        s.server_config_dir.mkdir(parents=True, exist_ok=True)

        if self.server_config_path.exists():
            out.step("[3/5] Configuration already exists, skipping...")
        elif EXAMPLE_CONFIG_FILE.is_file():
            out.step("[3/5] Copying default configuration...")
            shutil.copy2(EXAMPLE_CONFIG_FILE, self.server_config_path)
        else:
            out.warning(f"[3/5] {EXAMPLE_CONFIG_FILE} not found, skipping config copy")

        out.step("[4/5] Installing systemd service...")
        if s.unit_file.is_file():
            shutil.copy2(s.unit_file, self.unit_path)
            self._systemctl("daemon-reload")
        else:
            out.warning(f"{s.unit_file} not found, skipping service install")

        out.step("[5/5] Enabling service...")
        self._systemctl("enable", s.service_name)
        out.success("Installation complete!")
        out.info(f"Next: edit {self.server_config_path}, then 'mytunnel-ctl start'")
        return 0

    def _start_like(self, verb: str) -> int:
        out = self._out
        self._require_root(verb)
        result = self._systemctl(verb, self._settings.service_name)
        if result.returncode != 0:
            out.error(f"Failed to {verb} service: {(result.stderr or '').strip()}")
            return 1
        self._sleep(1.0)
        if self.is_active() == "active":
            out.success(f"Service {verb}ed successfully!")
            return 0
        out.warning(f"Service may have failed to {verb}. Check status:")
        out.block(self._systemctl("status", self._settings.service_name, "--no-pager", "-l").stdout or "")
        return 0

    def start(self) -> int:
        return self._start_like("start")

    def restart(self) -> int:
        return self._start_like("restart")

    def stop(self) -> int:
        out = self._out
        self._require_root("stop")
        if self.is_active() != "active":
            out.warning("Service is not running")
            return 0
        if not self._approved(f"Stop the {self._settings.service_name} service?"):
            return 1
        result = self._systemctl("stop", self._settings.service_name)
        if result.returncode != 0:
            out.error("Failed to stop service")
            return 1
        out.success("Service stopped")
        return 0

    def status(self) -> int:
        out = self._out
        s = self._settings
        out.line("Binary:", style="cyan")
        if s.install_path.is_file():
            out.line(f"  Installed: Yes ({s.install_path}, {s.install_path.stat().st_size} bytes)")
        else:
            out.line("  Installed: No")
        out.line("Configuration:", style="cyan")
        out.line(f"  Exists: {'Yes' if self.server_config_path.is_file() else 'No'} ({self.server_config_path})")
        out.line("Service:", style="cyan")
        if not self.unit_path.is_file():
            out.line("  Installed: No")
            return 0
        active = self.is_active()
        out.line(f"  Status: {'Running' if active == 'active' else 'Stopped' if active == 'inactive' else active}")
        out.line(f"  Enabled: {'Yes' if self.is_enabled() == 'enabled' else 'No'}")
        out.line("Service Details:", style="cyan")
        out.block(self._systemctl("status", s.service_name, "--no-pager", "-l").stdout or "(service not found)")
        return 0

    def logs(self, lines: int = 100) -> int:
        out = self._out
        name = self._settings.service_name
        if self._systemctl("list-unit-files", self.unit_name).returncode != 0:
            raise ServiceCommandError(
                f"{self.unit_name} not found",
                user_message=f"{name} service not found",
                hint="Run 'mytunnel-ctl install' first.",
            )
        out.info(f"Showing last {lines} lines, then following live logs (Ctrl+C to exit)")
        with contextlib.suppress(KeyboardInterrupt):
            self._run_attached(["journalctl", "-u", name, "-f", "-n", str(lines), "--no-pager"])
        return 0
