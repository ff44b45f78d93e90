"""Error taxonomy shared by the ASR service and the gateway.

Provider failures are classified once, where the HTTP status or SDK exception
is first seen, into a typed error carrying a :class:`ProviderErrorKind`.
Everything downstream (retry decisions, user-facing mapping) branches on the
type and kind, never on message text.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Optional

RETRYABLE_STATUS_CODES = frozenset({408, 429, 500, 502, 503, 504})


class TranscriptionError(Exception):
    """Base class for every error raised by the transcription engine."""

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message
        self.chunk_index: Optional[int] = None
        self.attempt: Optional[int] = None

    def with_context(self, *, chunk_index: int | None = None, attempt: int | None = None):
        if chunk_index is not None:
            self.chunk_index = chunk_index
        if attempt is not None:
            self.attempt = attempt
        return self

    def __str__(self) -> str:
        parts = []
        if self.chunk_index is not None:
            parts.append(f"chunk={self.chunk_index}")
        if self.attempt is not None:
            parts.append(f"attempt={self.attempt}")
        if not parts:
            return self.message
        return f"{self.message} ({', '.join(parts)})"


class ConfigurationError(TranscriptionError):
    pass


class ValidationError(TranscriptionError):
    def __init__(self, message: str, status_code: int = 400):
        super().__init__(message)
        self.status_code = status_code


class TranscriptionCancelled(TranscriptionError):
    def __init__(self, message: str = "Transcription cancelled"):
        super().__init__(message)


class ProviderErrorKind(str, Enum):
    network = "network"
    timeout = "timeout"
    rate_limited = "rate_limited"
    server_error = "server_error"
    client_error = "client_error"
    unknown = "unknown"


class ProviderError(TranscriptionError):
    retryable = False

    def __init__(
        self,
        message: str,
        kind: ProviderErrorKind = ProviderErrorKind.unknown,
        status_code: int | None = None,
    ):
        super().__init__(message)
        self.kind = kind
        self.status_code = status_code


class FormatRejectedError(ProviderError):
    """The provider refused the requested ``response_format``."""

    def __init__(self, message: str, status_code: int | None = 400):
        super().__init__(message, ProviderErrorKind.client_error, status_code)


class TransientProviderError(ProviderError):
    retryable = True


class ProviderTimeoutError(TransientProviderError):
    def __init__(self, message: str):
        super().__init__(message, ProviderErrorKind.timeout, None)


class FatalProviderError(ProviderError):
    pass


class ReconciliationError(TranscriptionError):
    def __init__(self, message: str, cause: Exception | None = None):
        super().__init__(message)
        self.cause = cause


def mentions_response_format(detail: str) -> bool:
    return "response_format" in (detail or "").lower()


def classify_http_status(status_code: int, detail: str = "") -> ProviderError:
    """Build the typed error for a non-2xx provider response."""
    message = f"{status_code} {detail}".strip()
    if status_code == 400 and mentions_response_format(detail):
        return FormatRejectedError(message, status_code)
    if status_code in RETRYABLE_STATUS_CODES:
        if status_code == 429:
            kind = ProviderErrorKind.rate_limited
        elif status_code == 408:
            kind = ProviderErrorKind.timeout
        else:
            kind = ProviderErrorKind.server_error
        return TransientProviderError(message, kind, status_code)
    if 400 <= status_code < 500:
        return FatalProviderError(message, ProviderErrorKind.client_error, status_code)
    if status_code >= 500:
        return FatalProviderError(message, ProviderErrorKind.server_error, status_code)
    return FatalProviderError(message, ProviderErrorKind.unknown, status_code)


# --- User-facing mapping ---

@dataclass(frozen=True)
class UserError:
    category: str
    message: str
    status_code: int


def to_user_error(exc: BaseException) -> UserError:
    """Map any engine error to a small, stable set of user-facing categories."""
    if isinstance(exc, ReconciliationError) and exc.cause is not None:
        return to_user_error(exc.cause)

    if isinstance(exc, ConfigurationError):
        return UserError(
            "configuration",
            "Server configuration error. The transcription provider is not properly configured.",
            500,
        )
    if isinstance(exc, ValidationError):
        return UserError("validation", exc.message, exc.status_code)
    if isinstance(exc, TranscriptionCancelled):
        return UserError("unknown", exc.message, 499)
    if isinstance(exc, ProviderError):
        if exc.kind == ProviderErrorKind.rate_limited:
            return UserError("rate_limit", "Rate limit exceeded. Please wait a moment and try again.", 429)
        if exc.kind in (ProviderErrorKind.network, ProviderErrorKind.timeout):
            return UserError(
                "network",
                "Network error occurred. Please check your connection and try again.",
                503,
            )
        if exc.kind == ProviderErrorKind.server_error:
            return UserError(
                "server_unavailable",
                "The transcription service is temporarily unavailable. Please try again later.",
                503,
            )
        if exc.kind == ProviderErrorKind.client_error:
            if exc.status_code in (401, 403):
                return UserError(
                    "configuration",
                    "Authentication failed. Please check API configuration.",
                    500,
                )
            return UserError("validation", f"Invalid request: {exc.message}", 400)
    if isinstance(exc, TranscriptionError):
        return UserError("unknown", f"Transcription failed: {exc.message}", 500)
    return UserError("unknown", "An unknown error occurred during transcription.", 500)
