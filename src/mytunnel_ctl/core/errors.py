"""Error types.

Every error carries two messages: the first positional argument is for logs,
`user_message` is what the operator sees on the terminal. `hint` is an
optional next step ("run X", "check Y") printed after the message.
"""

from __future__ import annotations


class AppError(Exception):
    def __init__(self, message: str, *, user_message: str | None = None, hint: str | None = None) -> None:
        super().__init__(message)
        self.user_message = user_message or message
        self.hint = hint


class ConfigMissingError(AppError):
    pass


class ConfigKeyMissingError(AppError):
    pass


class ToolUnavailableError(AppError):
    pass


class BinaryMissingError(AppError):
    pass


class PermissionDeniedError(AppError):
    pass


class PortInUseError(AppError):
    pass


class HostUnreachableError(AppError):
    pass


class PortUnreachableError(AppError):
    pass


class CertificateError(AppError):
    pass


class CertificateExpiredError(CertificateError):
    pass


class CertificateInvalidError(CertificateError):
    pass


class HandshakeFailedError(AppError):
    pass


class ProcessStartTimeoutError(AppError):
    pass


class ProxyRequestFailedError(AppError):
    pass


class APIUnavailableError(AppError):
    pass


class StatusAPIError(AppError):
    pass


class ServiceCommandError(AppError):
    pass
