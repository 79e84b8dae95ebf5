from __future__ import annotations

from enum import Enum


class ErrorKind(str, Enum):
    TRANSIENT = "transient"
    PERMANENT = "permanent"
    VALIDATION = "validation"
    UNEXPECTED = "unexpected"


class NonceMonitorError(Exception):
    pass


class SourceError(NonceMonitorError):
    """
    Failure while reading a nonce from one of the two upstream sources.

    `retryable` decides whether the SU Router retry loop will try again.
    """

    def __init__(
        self,
        message: str,
        *,
        kind: ErrorKind,
        retryable: bool = False,
        status_code: int | None = None,
    ) -> None:
        super().__init__(message)
        self.kind = kind
        self.retryable = bool(retryable)
        self.status_code = status_code


class RetryExhaustedError(SourceError):
    def __init__(self, last_error: BaseException, *, attempts: int, message: str | None = None) -> None:
        super().__init__(
            message or f"{last_error} (after {int(attempts)} attempts)",
            kind=ErrorKind.TRANSIENT,
            retryable=False,
            status_code=getattr(last_error, "status_code", None),
        )
        self.attempts = int(attempts)
        self.last_error = last_error


class SinkDeliveryError(NonceMonitorError):
    def __init__(self, sink: str, message: str, *, status_code: int | None = None) -> None:
        super().__init__(f"{sink}: {message}")
        self.sink = sink
        self.status_code = status_code


class ConfigError(NonceMonitorError):
    pass


def classify_status_code(status_code: int) -> tuple[ErrorKind, bool]:
    code = int(status_code)
    if code == 429 or 500 <= code <= 599:
        return ErrorKind.TRANSIENT, True
    return ErrorKind.PERMANENT, False
