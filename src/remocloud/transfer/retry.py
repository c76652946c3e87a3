"""Per-call-site retry policies with exponential backoff and jitter.

Each network call site (session restarts, the direct PUT, REST calls,
image transforms) owns a :class:`RetryPolicy`.  :func:`call_with_retry`
drives ``tenacity.AsyncRetrying`` with a predicate and wait derived from
the policy, so the retry ceiling, the retryable kinds, and the delay curve
are all decided in one place.

Delay for attempt ``n`` (0-based count of retries already made)::

    min(base_delay * backoff_factor ** n, max_delay)   +/- 25% jitter
"""

from __future__ import annotations

import asyncio
import logging
import random
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, TypeVar

from tenacity import AsyncRetrying, RetryCallState

from remocloud.transfer.errors import ErrorKind, TransferError

logger = logging.getLogger(__name__)

T = TypeVar("T")

JITTER_RATIO = 0.25

# RATE_LIMITED is retried at most once regardless of the policy ceiling.
RATE_LIMIT_MAX_RETRIES = 1

SleepFn = Callable[[float], Awaitable[None]]
RetryCallback = Callable[[int, TransferError, float], None]


@dataclass(frozen=True)
class RetryPolicy:
    """Retry settings for one call site.

    Attributes:
        name: Call-site label used in logs.
        max_retries: Retries allowed after the initial attempt.
        base_delay_ms: Delay before the first retry.
        max_delay_ms: Upper bound of the unjittered delay.
        backoff_factor: Multiplier applied per attempt.
        jitter: Whether to perturb delays by up to +/-25%.
        retryable_kinds: Error kinds this call site retries.
    """

    name: str
    max_retries: int
    base_delay_ms: float
    max_delay_ms: float
    backoff_factor: float = 2.0
    jitter: bool = True
    retryable_kinds: frozenset[ErrorKind] = field(default_factory=frozenset)

    def __post_init__(self) -> None:
        if self.max_retries < 0:
            raise ValueError("max_retries must be >= 0")
        if self.base_delay_ms < 0 or self.max_delay_ms < 0:
            raise ValueError("delays must be >= 0")
        if self.backoff_factor < 1:
            raise ValueError("backoff_factor must be >= 1")


UPLOAD_POLICY = RetryPolicy(
    name="upload",
    max_retries=3,
    base_delay_ms=1000,
    max_delay_ms=10000,
    backoff_factor=2,
    jitter=True,
    retryable_kinds=frozenset({ErrorKind.SIGNED_URL_EXPIRED}),
)

DIRECT_POLICY = RetryPolicy(
    name="direct",
    max_retries=2,
    base_delay_ms=2000,
    max_delay_ms=10000,
    backoff_factor=2,
    jitter=True,
    retryable_kinds=frozenset(
        {
            ErrorKind.NETWORK,
            ErrorKind.TIMEOUT,
            ErrorKind.STORAGE,
            ErrorKind.UPLOAD_FAILED,
            ErrorKind.INTERNAL,
        }
    ),
)

API_POLICY = RetryPolicy(
    name="api",
    max_retries=3,
    base_delay_ms=500,
    max_delay_ms=5000,
    backoff_factor=1.5,
    jitter=True,
    retryable_kinds=frozenset(
        {
            ErrorKind.NETWORK,
            ErrorKind.TIMEOUT,
            ErrorKind.STORAGE,
            ErrorKind.DATABASE,
            ErrorKind.INTERNAL,
            ErrorKind.UPLOAD_FAILED,
            ErrorKind.RATE_LIMITED,
        }
    ),
)

TRANSFORM_POLICY = RetryPolicy(
    name="transform",
    max_retries=2,
    base_delay_ms=2000,
    max_delay_ms=8000,
    backoff_factor=2,
    jitter=False,
    retryable_kinds=frozenset(
        {
            ErrorKind.NETWORK,
            ErrorKind.TIMEOUT,
            ErrorKind.TRANSFORM_FAILED,
            ErrorKind.STORAGE,
            ErrorKind.RATE_LIMITED,
        }
    ),
)


def should_retry(kind: ErrorKind, attempt: int, policy: RetryPolicy) -> bool:
    """Return True when a failure of *kind* after *attempt* retries may retry."""
    if kind not in policy.retryable_kinds:
        return False
    if kind is ErrorKind.RATE_LIMITED and attempt >= RATE_LIMIT_MAX_RETRIES:
        return False
    return attempt < policy.max_retries


def base_delay_for(attempt: int, policy: RetryPolicy) -> float:
    """Unjittered delay in milliseconds for retry number *attempt*."""
    delay = policy.base_delay_ms * (policy.backoff_factor ** attempt)
    return min(delay, policy.max_delay_ms)


def delay_for(
    attempt: int,
    policy: RetryPolicy,
    rng: Callable[[], float] = random.random,
) -> float:
    """Delay in milliseconds before retry number *attempt*.

    Always within ``[0, policy.max_delay_ms]``.
    """
    delay = base_delay_for(attempt, policy)
    if policy.jitter:
        delay += delay * JITTER_RATIO * (rng() * 2 - 1)
    return min(max(0.0, delay), policy.max_delay_ms)


class _PolicyPredicate:
    """tenacity ``retry=`` callable backed by :func:`should_retry`."""

    def __init__(self, policy: RetryPolicy) -> None:
        self._policy = policy

    def __call__(self, retry_state: RetryCallState) -> bool:
        outcome = retry_state.outcome
        if outcome is None or not outcome.failed:
            return False
        exc = outcome.exception()
        if not isinstance(exc, TransferError):
            return False
        return should_retry(exc.kind, retry_state.attempt_number - 1, self._policy)


class _PolicyWait:
    """tenacity ``wait=`` callable returning seconds."""

    def __init__(self, policy: RetryPolicy) -> None:
        self._policy = policy

    def __call__(self, retry_state: RetryCallState) -> float:
        exc = retry_state.outcome.exception() if retry_state.outcome else None
        if (
            isinstance(exc, TransferError)
            and exc.kind is ErrorKind.RATE_LIMITED
            and exc.retry_after is not None
        ):
            return exc.retry_after
        return delay_for(retry_state.attempt_number - 1, self._policy) / 1000.0


async def call_with_retry(
    operation: Callable[[], Awaitable[T]],
    policy: RetryPolicy,
    *,
    context: dict[str, Any] | None = None,
    sleep: SleepFn = asyncio.sleep,
    on_retry: RetryCallback | None = None,
) -> T:
    """Run *operation* until it succeeds or *policy* refuses another attempt.

    Args:
        operation: Zero-argument coroutine factory; called once per attempt.
        policy: Retry policy of the call site.
        context: Extra details attached to the terminal error and log lines.
        sleep: Awaitable sleep (injected by tests).
        on_retry: Called as ``on_retry(retry_number, error, delay_seconds)``
            before each backoff sleep.

    Returns:
        The operation's result.

    Raises:
        TransferError: The last error once retries are exhausted or the
            error is not retryable for this call site.  Exhausted errors
            have ``retryable`` cleared.
    """
    ctx = dict(context or {})

    def _before_sleep(retry_state: RetryCallState) -> None:
        exc = retry_state.outcome.exception()  # type: ignore[union-attr]
        delay = retry_state.next_action.sleep if retry_state.next_action else 0.0
        logger.warning(
            "Retrying %s (%d/%d) in %.0fms after %s: %s %s",
            policy.name,
            retry_state.attempt_number,
            policy.max_retries,
            delay * 1000,
            getattr(exc, "kind", type(exc).__name__),
            exc,
            ctx,
        )
        if on_retry is not None and isinstance(exc, TransferError):
            on_retry(retry_state.attempt_number, exc, delay)

    attempts = 0
    try:
        async for attempt in AsyncRetrying(
            retry=_PolicyPredicate(policy),
            wait=_PolicyWait(policy),
            sleep=sleep,
            before_sleep=_before_sleep,
            reraise=True,
        ):
            with attempt:
                attempts = attempt.retry_state.attempt_number
                return await operation()
    except TransferError as exc:
        exc.details.setdefault("attempts", attempts)
        exc.details.setdefault("call_site", policy.name)
        for key, value in ctx.items():
            exc.details.setdefault(key, value)
        if exc.kind in policy.retryable_kinds:
            logger.error(
                "%s failed after %d attempt(s): %s", policy.name, attempts, exc
            )
            exc.retryable = False
        raise
    raise AssertionError("unreachable")  # pragma: no cover
