"""Bounded retry with candidate fallback for flaky provider calls."""

import time
from collections.abc import Callable, Sequence
from typing import Generic, NamedTuple, TypeVar

import httpx
import structlog

from heatline.errors import FallbackExhaustedError

log = structlog.get_logger()

C = TypeVar("C")
T = TypeVar("T")

DEFAULT_MAX_ATTEMPTS = 3
DEFAULT_BACKOFF_SECONDS = 0.8


class FallbackResult(NamedTuple, Generic[C, T]):
    value: T
    candidate: C
    attempt: int
    attempts: list[dict[str, object]]


def error_status(error: BaseException) -> int | None:
    if isinstance(error, httpx.HTTPStatusError):
        return error.response.status_code
    status = getattr(error, "status_code", None)
    return status if isinstance(status, int) else None


def is_retryable_error(error: BaseException) -> bool:
    """Server errors, timeouts and dropped connections are worth retrying."""
    status = error_status(error)
    if status is not None:
        return status >= 500
    return isinstance(error, httpx.TimeoutException | httpx.NetworkError | httpx.RemoteProtocolError)


def describe_error(error: BaseException) -> str:
    status = error_status(error)
    return f"{type(error).__name__} status={status if status is not None else 'n/a'} message={error}"


def call_with_fallback(
    candidates: Sequence[C],
    fn: Callable[[C], T],
    *,
    max_attempts: int = DEFAULT_MAX_ATTEMPTS,
    backoff_seconds: float = DEFAULT_BACKOFF_SECONDS,
    retryable: Callable[[BaseException], bool] = is_retryable_error,
    sleep: Callable[[float], None] = time.sleep,
    label: str = "operation",
) -> FallbackResult[C, T]:
    """Call ``fn`` with each candidate in order until one succeeds.

    A candidate is retried up to ``max_attempts`` times, sleeping
    ``backoff_seconds * attempt`` between tries, but only while the error is
    retryable; any other error moves on to the next candidate.

    Raises:
        FallbackExhaustedError: when every candidate failed
    """
    attempts: list[dict[str, object]] = []
    last_error: BaseException | None = None

    for candidate in candidates:
        for attempt in range(1, max_attempts + 1):
            try:
                value = fn(candidate)
            except Exception as e:
                last_error = e
                can_retry = retryable(e) and attempt < max_attempts
                attempts.append(
                    {
                        "candidate": candidate,
                        "attempt": attempt,
                        "error": describe_error(e),
                        "retryable": retryable(e),
                    }
                )
                log.warning(
                    "fallback_attempt_failed",
                    label=label,
                    candidate=candidate,
                    attempt=attempt,
                    will_retry=can_retry,
                    error=str(e),
                )
                if not can_retry:
                    break
                sleep(backoff_seconds * attempt)
                continue

            attempts.append({"candidate": candidate, "attempt": attempt, "error": None, "retryable": False})
            return FallbackResult(value, candidate, attempt, attempts)

    detail = describe_error(last_error) if last_error else "no candidates"
    raise FallbackExhaustedError(f"{label} failed after {len(attempts)} attempts. {detail}", attempts)
