"""
Retry classification and exponential backoff.

is_retryable() decides whether an error is worth another attempt. It is an
ordered list of small predicates, each of which recognizes one error shape
and returns a verdict, or None to pass. The first verdict wins; errors no
predicate recognizes are not retried.

run_with_retry() drives an operation with tenacity, waiting 2**attempt
seconds between attempts. The wait goes through the caller's CancelContext,
so a command timeout interrupts it.
"""
from __future__ import annotations

import errno
import logging
from typing import Callable, Iterator, List, Optional, TypeVar

import httpx
from tenacity import RetryCallState, Retrying, retry_if_exception, stop_after_attempt, wait_exponential

from .cancel import CancelContext
from .errors import IntegrityError, OperationCancelled, RegistryError

__all__ = ["is_retryable", "PREDICATES", "run_with_retry", "NON_RETRYABLE_CODES"]

logger = logging.getLogger(__name__)

T = TypeVar("T")

Verdict = Optional[bool]

# Registry error codes where another attempt cannot help: the credentials are
# wrong or the thing genuinely does not exist.
NON_RETRYABLE_CODES = frozenset({"UNAUTHORIZED", "NAME_UNKNOWN", "MANIFEST_UNKNOWN"})


def _cause_chain(err: BaseException) -> Iterator[BaseException]:
    seen = set()
    current: Optional[BaseException] = err
    while current is not None and id(current) not in seen:
        seen.add(id(current))
        yield current
        current = current.__cause__ or current.__context__


def _caller_cancelled(err: BaseException) -> Verdict:
    if isinstance(err, OperationCancelled):
        return False
    return None


def _integrity(err: BaseException) -> Verdict:
    if isinstance(err, IntegrityError):
        return False
    return None


def _aggregate(err: BaseException) -> Verdict:
    # One permanent cause poisons the whole attempt.
    if isinstance(err, BaseExceptionGroup):
        return all(is_retryable(e) for e in err.exceptions)
    return None


def _registry_code(err: BaseException) -> Verdict:
    if isinstance(err, RegistryError):
        return err.code not in NON_RETRYABLE_CODES
    return None


def _http_status(err: BaseException) -> Verdict:
    if isinstance(err, httpx.HTTPStatusError):
        return err.response.status_code != 401
    return None


def _is_refused(err: BaseException) -> bool:
    if isinstance(err, ConnectionRefusedError):
        return True
    return isinstance(err, OSError) and err.errno == errno.ECONNREFUSED


def _connection(err: BaseException) -> Verdict:
    # "connection refused" means nothing is listening; treat it as permanent.
    if isinstance(err, (httpx.TransportError, ConnectionError)) or _is_refused(err):
        return not any(_is_refused(e) for e in _cause_chain(err))
    return None


def _wrapped(err: BaseException) -> Verdict:
    if err.__cause__ is not None:
        return is_retryable(err.__cause__)
    return None


PREDICATES: List[Callable[[BaseException], Verdict]] = [
    _caller_cancelled,
    _integrity,
    _aggregate,
    _registry_code,
    _http_status,
    _connection,
    _wrapped,
]


def is_retryable(err: BaseException) -> bool:
    """
    Decide whether an operation that failed with `err` should be retried.

    Unknown error shapes are not retried: an operation that might hang
    forever must not be repeated blindly.
    """
    for predicate in PREDICATES:
        verdict = predicate(err)
        if verdict is not None:
            return verdict
    return False


class _WaitInterrupted(Exception):
    pass


def run_with_retry(
    ctx: Optional[CancelContext],
    operation: Callable[[], T],
    max_attempts: int,
    *,
    description: str = "operation",
    logger: Optional[logging.Logger] = None,
) -> T:
    """
    Run `operation`, retrying retryable failures with exponential backoff.

    Args:
        ctx: Cancellation context; a wait interrupted by it ends the retries
        operation: Zero-argument callable
        max_attempts: Number of retries after the first attempt (0 = no retry)
        description: Used in log messages
        logger: Logger for retry warnings (defaults to this module's logger)

    Returns:
        Whatever `operation` returns

    Raises:
        The operation's last error. If the context fires during a wait, the
        error that caused the wait is raised, not a cancellation error.
    """
    if max_attempts < 0:
        raise ValueError(f"max_attempts must be non-negative, got {max_attempts}")
    ctx = ctx or CancelContext.background()
    log = logger if logger is not None else logging.getLogger(__name__)
    pending: List[BaseException] = []

    def _before_sleep(state: RetryCallState) -> None:
        exc = state.outcome.exception()
        pending[:] = [exc]
        log.warning(
            f"Failed {description} (attempt {state.attempt_number}/{max_attempts + 1}), "
            f"retrying in {state.next_action.sleep:.0f}s: {exc}"
        )

    def _sleep(seconds: float) -> None:
        if ctx.wait(seconds):
            raise _WaitInterrupted()

    retrying = Retrying(
        stop=stop_after_attempt(max_attempts + 1),
        # multiplier * 2**(n-1) for the n-th attempt: 1s, 2s, 4s, ...
        wait=wait_exponential(multiplier=1, exp_base=2, min=0, max=float("inf")),
        retry=retry_if_exception(is_retryable),
        before_sleep=_before_sleep,
        sleep=_sleep,
        reraise=True,
    )
    try:
        return retrying(operation)
    except _WaitInterrupted:
        raise pending[0] from None
