"""
Flask-Passkey-Ceremony Errors
=============================
Typed failures shared by the storage adapters, the session cache, the
protocol engine and the ceremony orchestrator.

Every failure carries a stable code (for logs) and a stable client message
(for responses). The underlying exception is kept as ``cause`` and is never
sent to the client.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional, Tuple


class ErrorKind(str, Enum):
    INPUT_VALIDATION = "input_validation"
    NOT_FOUND = "not_found"
    DECODE_FAILURE = "decode_failure"
    STORE_FAILURE = "store_failure"
    CACHE_FAILURE = "cache_failure"
    PROTOCOL_VERIFICATION_FAILURE = "protocol_verification_failure"
    UNEXPECTED = "unexpected"


class CeremonyError(Exception):
    """A typed ceremony failure."""

    def __init__(self, kind: ErrorKind, code: str, message: str, cause: Optional[BaseException] = None):
        super().__init__(f"{code}: {message}")
        self.kind = kind
        self.code = code
        self.message = message
        self.cause = cause

    def __repr__(self):
        return f"CeremonyError({self.kind.value!r}, {self.code!r})"


def input_error(code, message, cause=None):
    return CeremonyError(ErrorKind.INPUT_VALIDATION, code, message, cause)


def not_found(code, message, cause=None):
    return CeremonyError(ErrorKind.NOT_FOUND, code, message, cause)


def decode_error(code, message, cause=None):
    return CeremonyError(ErrorKind.DECODE_FAILURE, code, message, cause)


def store_error(code, message, cause=None):
    return CeremonyError(ErrorKind.STORE_FAILURE, code, message, cause)


def cache_error(code, message, cause=None):
    return CeremonyError(ErrorKind.CACHE_FAILURE, code, message, cause)


def verification_error(code, message, cause=None):
    return CeremonyError(ErrorKind.PROTOCOL_VERIFICATION_FAILURE, code, message, cause)


def unexpected_error(cause=None, code="UNEXPECTED_ERROR"):
    return CeremonyError(ErrorKind.UNEXPECTED, code, "Internal server error", cause)


def username_invalid(cause=None):
    return input_error("USERNAME_VALIDATION_ERROR", "Invalid username type", cause)


def displayname_invalid(cause=None):
    return input_error("DISPLAYNAME_VALIDATION_ERROR", "Invalid displayname type", cause)


def credential_data_invalid(cause=None):
    return input_error("CREDENTIAL_DATA_INVALID_ERROR", "Invalid credential data", cause)


def user_not_found(cause=None):
    return not_found("USER_NOT_FOUND_ERROR", "User not found", cause)


def credential_not_found(cause=None):
    # Same client message as user_not_found: don't reveal enrollment state
    return not_found("CREDENTIAL_NOT_FOUND_ERROR", "User not found", cause)


def session_not_found(cause=None):
    return not_found("SESSION_NOT_FOUND_ERROR", "Session not found", cause)


@dataclass(frozen=True)
class CeremonyResult:
    """Outcome of one orchestrator call: exactly one of ``value`` / ``error``."""

    value: Any = None
    error: Optional[CeremonyError] = None

    @property
    def ok(self) -> bool:
        return self.error is None

    @classmethod
    def success(cls, value: Any) -> "CeremonyResult":
        return cls(value=value)

    @classmethod
    def failure(cls, error: CeremonyError) -> "CeremonyResult":
        return cls(error=error)


_STATUS_BY_KIND = {
    ErrorKind.INPUT_VALIDATION: 400,
    ErrorKind.NOT_FOUND: 404,
    ErrorKind.PROTOCOL_VERIFICATION_FAILURE: 400,
    ErrorKind.DECODE_FAILURE: 500,
    ErrorKind.STORE_FAILURE: 500,
    ErrorKind.CACHE_FAILURE: 500,
    ErrorKind.UNEXPECTED: 500,
}


def http_status_for(error: Optional[CeremonyError]) -> int:
    if error is None:
        return 500
    return _STATUS_BY_KIND.get(error.kind, 500)


def error_response(error: Optional[CeremonyError]) -> Tuple[Dict[str, str], int]:
    """Client-safe JSON body and status code for a failure."""
    if error is None:
        return {"error": "Internal server error"}, 500
    return {"error": error.message}, http_status_for(error)
