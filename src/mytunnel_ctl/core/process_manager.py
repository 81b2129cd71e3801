"""Manage the tunnel client process.

Two uses:
- Run the client's built-in `test-connection` self-test and collect its
  exit status and output.
- Start the client in the background for proxy tests, capture its output
  to a log file, and make sure it is gone again afterwards.

`ProcessSupervisor` is the seam tests replace with a fake; the real
implementation wraps `subprocess.Popen`.
"""

from __future__ import annotations

from dataclasses import dataclass, field
import enum
import errno
import logging
import os
from pathlib import Path
import shutil
import socket
import subprocess
from typing import IO, Protocol, Sequence

from mytunnel_ctl.core.errors import (
    BinaryMissingError,
    HandshakeFailedError,
    PermissionDeniedError,
    PortInUseError,
)

logger = logging.getLogger(__name__)

DEFAULT_GRACE_S = 5.0


@dataclass(frozen=True, slots=True)
class CoreBinary:
    name: str
    path: str


class ProcessState(enum.Enum):
    STARTING = "starting"
    READY = "ready"
    FAILED = "failed"
    TIMED_OUT = "timedOut"
    STOPPED = "stopped"

    @property
    def terminal(self) -> bool:
        return self in {ProcessState.FAILED, ProcessState.TIMED_OUT, ProcessState.STOPPED}


@dataclass(slots=True)
class ManagedProcess:
    pid: int
    log_path: Path
    command: tuple[str, ...]
    state: ProcessState = ProcessState.STARTING
    returncode: int | None = None
    handle: object | None = field(default=None, repr=False, compare=False)


class ProcessSupervisor(Protocol):
    def start(self, command: Sequence[str], log_path: Path) -> ManagedProcess: ...

    def is_alive(self, proc: ManagedProcess) -> bool: ...

    def terminate(self, proc: ManagedProcess, *, grace_s: float = DEFAULT_GRACE_S) -> int | None: ...


@dataclass(frozen=True, slots=True)
class SelfTestResult:
    returncode: int
    output: str

    @property
    def ok(self) -> bool:
        return self.returncode == 0


def find_client_binary(path: str) -> CoreBinary:
    candidate = Path(path)
    if candidate.is_file():
        if not os.access(candidate, os.X_OK):
            raise PermissionDeniedError(
                f"client binary not executable: {candidate}",
                user_message=f"Client binary is not executable: {candidate}",
                hint=f"chmod +x {candidate}",
            )
        return CoreBinary(name=candidate.name, path=str(candidate))

    found = shutil.which(path)
    if not found:
        raise BinaryMissingError(
            f"client binary not found: {path}",
            user_message=f"Client binary not found: {path}",
            hint="Build it first (`mytunnel-ctl build`) or pass --client-binary PATH.",
        )
    return CoreBinary(name=Path(found).name, path=found)


def ensure_port_available(host: str, port: int) -> None:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        try:
            sock.bind((host, port))
        except OSError as exc:
            if exc.errno in {errno.EADDRINUSE, 48}:  # 48 is macOS EADDRINUSE
                raise PortInUseError(
                    f"Port {port} in use on {host}",
                    user_message=f"Local port {port} is already in use on {host}.",
                ) from exc
            if exc.errno == errno.EACCES:
                raise PermissionDeniedError(
                    f"Permission denied binding {host}:{port}",
                    user_message=f"Permission denied binding {host}:{port}.",
                ) from exc
            raise


def run_self_test(binary: CoreBinary, config_path: Path, *, timeout_s: float = 30) -> SelfTestResult:
    cmd = [binary.path, "test-connection", "-c", str(config_path)]
    logger.info("Running client self-test: %s", cmd)
    try:
        result = subprocess.run(
            cmd,
            check=False,
            capture_output=True,
            text=True,
            timeout=timeout_s,
        )
    except FileNotFoundError as exc:
        raise BinaryMissingError(
            f"{binary.name} binary missing: {binary.path}",
            user_message=f"{binary.name} binary not found: {binary.path}",
        ) from exc
    except PermissionError as exc:
        raise PermissionDeniedError(
            f"{binary.name} not executable: {binary.path}",
            user_message=f"{binary.name} binary is not executable: {binary.path}",
        ) from exc
    except subprocess.TimeoutExpired as exc:
        raise HandshakeFailedError(
            f"self-test timed out after {timeout_s}s",
            user_message=f"QUIC self-test did not finish within {int(timeout_s)}s.",
        ) from exc

    output = "\n".join(part.strip() for part in (result.stdout, result.stderr) if part and part.strip())
    logger.info("Self-test finished with returncode=%s", result.returncode)
    return SelfTestResult(returncode=result.returncode, output=output)


def check_config_syntax(binary: CoreBinary, config_path: Path, *, timeout_s: float = 10) -> bool:
    """Let the client parse the config without connecting (`test-connection --help`)."""
    cmd = [binary.path, "test-connection", "-c", str(config_path), "--help"]
    logger.info("Checking config syntax: %s", cmd)
    try:
        result = subprocess.run(
            cmd,
            check=False,
            capture_output=True,
            text=True,
            timeout=timeout_s,
        )
    except (OSError, subprocess.TimeoutExpired) as exc:
        logger.info("Config syntax check could not run: %s", exc)
        return False
    return result.returncode == 0


class SubprocessSupervisor:
    def start(self, command: Sequence[str], log_path: Path) -> ManagedProcess:
        log_path.parent.mkdir(parents=True, exist_ok=True)
        log_handle: IO[str] = log_path.open("a", encoding="utf-8")
        cmd = list(command)
        try:
            popen = subprocess.Popen(
                cmd,
                stdin=subprocess.DEVNULL,
                stdout=log_handle,
                stderr=subprocess.STDOUT,
                start_new_session=True,
            )
        except FileNotFoundError as exc:
            log_handle.close()
            raise BinaryMissingError(
                f"binary missing: {cmd[0]}",
                user_message=f"Client binary not found: {cmd[0]}",
            ) from exc
        except PermissionError as exc:
            log_handle.close()
            raise PermissionDeniedError(
                f"not executable: {cmd[0]}",
                user_message=f"Client binary is not executable: {cmd[0]}",
            ) from exc

        logger.info("Started %s pid=%s log=%s", cmd[0], popen.pid, log_path)
        return ManagedProcess(
            pid=popen.pid,
            log_path=log_path,
            command=tuple(cmd),
            handle=(popen, log_handle),
        )

    def is_alive(self, proc: ManagedProcess) -> bool:
        popen, _ = proc.handle  # type: ignore[misc]
        code = popen.poll()
        if code is not None:
            proc.returncode = code
        return code is None

    def terminate(self, proc: ManagedProcess, *, grace_s: float = DEFAULT_GRACE_S) -> int | None:
        popen, log_handle = proc.handle  # type: ignore[misc]
        try:
            if popen.poll() is None:
                popen.terminate()
                try:
                    popen.wait(timeout=grace_s)
                except subprocess.TimeoutExpired:
                    logger.warning("pid=%s ignored SIGTERM for %.1fs; killing", proc.pid, grace_s)
                    popen.kill()
                    popen.wait(timeout=grace_s)
        finally:
            log_handle.close()
            proc.returncode = popen.returncode
            if not proc.state.terminal:
                proc.state = ProcessState.STOPPED
            logger.info("Stopped pid=%s with returncode=%s", proc.pid, popen.returncode)
        return proc.returncode
