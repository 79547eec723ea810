"""One-shot retry policy for Backlog mutations.

Backlog occasionally rejects concurrent writers with an error whose message
starts with ``Deadlock``. Such a response is retried exactly once with the
identical request; any other failure, and any failure of the retry itself, is
final. No backoff, jitter or configurable budget.

``is_transient_conflict`` is the only place that knows how a conflict is
recognised.
"""

from __future__ import annotations

from collections.abc import Callable
from typing import TypeVar

from .logging import StructuredLogger, get_logger
from .models import BacklogError, BacklogResponse

T = TypeVar("T")

DEADLOCK_PREFIX = "Deadlock"


def is_transient_conflict(error: BacklogError | str) -> bool:
    message = error.message if isinstance(error, BacklogError) else error
    return message.startswith(DEADLOCK_PREFIX)


def check_is_retry(response: BacklogResponse[T]) -> bool:
    return not response.is_success and any(is_transient_conflict(e) for e in response.errors)


def run_with_retry(
    send: Callable[[], BacklogResponse[T]],
    *,
    operation: str = "request",
    logger: StructuredLogger | None = None,
) -> BacklogResponse[T]:
    """Call ``send`` and repeat it once if the first response is a transient conflict."""
    response = send()
    if check_is_retry(response):
        (logger or get_logger()).warning(
            f"transient conflict on {operation}, retrying once",
            operation=operation,
            error=", ".join(response.messages),
        )
        response = send()
    return response


__all__ = ["DEADLOCK_PREFIX", "check_is_retry", "is_transient_conflict", "run_with_retry"]
