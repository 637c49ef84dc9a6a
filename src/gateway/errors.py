from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Sequence

import httpx


class ErrorKind(str, Enum):
    CONFIGURATION = "configuration_error"
    TIMEOUT = "timeout"
    TRANSPORT = "transport_error"
    PROTOCOL = "protocol_error"


class GatewayError(Exception):
    kind: ErrorKind = ErrorKind.TRANSPORT


class ConfigurationError(GatewayError):
    """Raised when the gateway cannot run at all, e.g. no credentials configured."""

    kind = ErrorKind.CONFIGURATION


class AttemptTimeoutError(GatewayError):
    kind = ErrorKind.TIMEOUT

    def __init__(self, message: str, *, timeout_s: float, idle: bool = False) -> None:
        super().__init__(message)
        self.timeout_s = timeout_s
        self.idle = idle


class TransportError(GatewayError):
    kind = ErrorKind.TRANSPORT

    def __init__(self, message: str, *, status: int | None = None) -> None:
        super().__init__(message)
        self.status = status


class ProtocolError(GatewayError):
    kind = ErrorKind.PROTOCOL


class CancelledByCaller(Exception):
    """Control-flow signal raised once the caller's cancellation token is set."""


@dataclass(frozen=True, slots=True)
class CredentialFailure:
    index: int
    credential: str
    kind: ErrorKind
    message: str

    def describe(self) -> str:
        return f"{self.credential}: {self.kind.value}: {self.message}"


class ExhaustedError(GatewayError):
    """Every credential failed; carries one entry per credential."""

    def __init__(self, failures: Sequence[CredentialFailure]) -> None:
        self.failures: tuple[CredentialFailure, ...] = tuple(failures)
        detail = " | ".join(failure.describe() for failure in self.failures)
        super().__init__(f"all credentials failed: {detail or 'no attempts recorded'}")

    @property
    def kind(self) -> ErrorKind:  # type: ignore[override]
        if self.failures:
            return self.failures[-1].kind
        return ErrorKind.TRANSPORT


def http_status_error_details(response: httpx.Response) -> tuple[int, str]:
    status = response.status_code
    message: str | None = None
    try:
        payload = response.json()
    except ValueError:
        payload = None
    if isinstance(payload, dict):
        error_field = payload.get("error")
        if isinstance(error_field, dict):
            error_message = error_field.get("message")
            if isinstance(error_message, str) and error_message:
                message = error_message
        elif isinstance(error_field, str) and error_field:
            message = error_field
        if message is None:
            nested_message = payload.get("message")
            if isinstance(nested_message, str) and nested_message:
                message = nested_message
    if message is None:
        text = response.text
        if text:
            message = text
    if message is None:
        message = response.reason_phrase or "upstream error"
    return status, message
