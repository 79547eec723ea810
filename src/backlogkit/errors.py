"""Error taxonomy & redaction.

Three failure classes matter to callers:

- ``AuthenticationError``: the OAuth2 exchange failed. Fatal to the session
  and always raised.
- ``TransientConflictError``: a mutation was rejected with a ``Deadlock...``
  message. Recovered by the one-shot retry in :mod:`backlogkit.retry`.
- ``RemoteError``: any other unsuccessful response. Data operations log it and
  return ``None`` rather than raising; ``BacklogResponse.unwrap`` raises it for
  callers that prefer exceptions.

``classify_error`` / ``classify_response`` map failures onto short category
strings for structured logs, and ``redact`` strips credentials from text
before it is logged.
"""

from __future__ import annotations

import re
from collections.abc import Sequence
from dataclasses import dataclass
from typing import Any

import requests

from .models import BacklogError, BacklogResponse
from .retry import is_transient_conflict


class BacklogKitError(RuntimeError):
    pass


class AuthenticationError(BacklogKitError):
    """Raised when the OAuth2 authorization or token exchange fails."""


class RemoteError(BacklogKitError):
    def __init__(
        self,
        message: str,
        *,
        errors: Sequence[BacklogError] = (),
        status: int | None = None,
    ):
        super().__init__(message)
        self.errors = tuple(errors)
        self.status = status


class TransientConflictError(RemoteError):
    pass


_SENSITIVE_PATTERNS: list[re.Pattern[str]] = [
    re.compile(r"(?i)(bearer\s+)[A-Za-z0-9\-._~+/]+=*"),
    re.compile(
        r"(?i)(\"?(?:access_token|refresh_token|client_secret)\"?\s*[:=]\s*\"?)[^\"&\s,}]+"
    ),
]

_REDACTION_PLACEHOLDER = "<redacted>"


@dataclass
class ErrorInfo:
    category: str
    message: str
    original_type: str
    transient: bool = False
    details: dict[str, Any] | None = None


def redact(text: str) -> str:
    """Mask bearer tokens and OAuth secrets, keeping the surrounding key names."""
    if not text:
        return text
    redacted = text
    for pat in _SENSITIVE_PATTERNS:
        redacted = pat.sub(rf"\g<1>{_REDACTION_PLACEHOLDER}", redacted)
    return redacted


def response_error(response: BacklogResponse[Any]) -> RemoteError:
    """Build the exception describing a failed response."""
    message = ", ".join(response.messages) or "Backlog request failed"
    if any(is_transient_conflict(e) for e in response.errors):
        return TransientConflictError(message, errors=response.errors, status=response.status_code)
    return RemoteError(message, errors=response.errors, status=response.status_code)


def classify_error(exc: BaseException) -> ErrorInfo:
    msg = str(exc) if exc else ""
    name = exc.__class__.__name__
    if isinstance(exc, AuthenticationError):
        return ErrorInfo("auth", redact(msg), name)
    if isinstance(exc, TransientConflictError):
        return ErrorInfo("backlog.deadlock", redact(msg), name, transient=True)
    if isinstance(exc, RemoteError):
        details = {"status": exc.status} if exc.status is not None else None
        return ErrorInfo("remote", redact(msg), name, details=details)
    if isinstance(exc, (requests.Timeout, requests.ConnectionError)):
        return ErrorInfo("network", redact(msg), name, transient=True)
    return ErrorInfo("generic", redact(msg), name)


def classify_response(response: BacklogResponse[Any]) -> ErrorInfo:
    return classify_error(response_error(response))


__all__ = [
    "AuthenticationError",
    "BacklogKitError",
    "ErrorInfo",
    "RemoteError",
    "TransientConflictError",
    "classify_error",
    "classify_response",
    "redact",
    "response_error",
]
