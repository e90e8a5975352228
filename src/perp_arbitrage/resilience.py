"""
Resilience Primitives

Bounded retry with exponential backoff for venue-mutating calls, and
poll-until-settled for effects that only become visible some time after
the call returns (mined transactions, exchange settlement).
"""

import asyncio
import logging
from typing import Any, Awaitable, Callable, Optional, Protocol, runtime_checkable

from tenacity import (
    AsyncRetrying,
    RetryCallState,
    RetryError,
    stop_after_attempt,
    wait_exponential,
)

logger = logging.getLogger("perp_arb.resilience")

DEFAULT_MAX_ATTEMPTS = 3
DEFAULT_BASE_DELAY = 10.0
DEFAULT_POLL_INTERVAL = 5.0
DEFAULT_POLL_THRESHOLD = 1e-9

SleepFn = Callable[[float], Awaitable[Any]]


class RetryExhaustedError(Exception):
    """Raised when an operation failed on every allowed attempt."""

    def __init__(self, operation_name: str, attempts: int, last_error: Optional[BaseException]):
        self.operation_name = operation_name
        self.attempts = attempts
        self.last_error = last_error
        super().__init__(
            f"operation '{operation_name}' failed after {attempts} attempts: {last_error!r}"
        )


class ConfirmationFailedError(Exception):
    """Raised when a pending confirmation settles with a failure status."""


class PollTimeoutError(Exception):
    """Raised when poll_until does not converge within its timeout."""


@runtime_checkable
class PendingConfirmation(Protocol):
    """Result of a submitted operation that settles asynchronously."""

    def wait(self) -> Awaitable[Any]:
        ...


async def _await_confirmation(operation_name: str, pending: PendingConfirmation) -> Any:
    receipt = await pending.wait()
    if not getattr(receipt, "status", None):
        raise ConfirmationFailedError(f"{operation_name}: confirmation reported failure")
    return receipt


def _log_before_sleep(operation_name: str, max_attempts: int) -> Callable[[RetryCallState], None]:
    def _before_sleep(retry_state: RetryCallState) -> None:
        error = retry_state.outcome.exception() if retry_state.outcome else None
        remaining = max_attempts + 1 - retry_state.attempt_number
        logger.warning(
            "Operation %s failed (attempt %d, %d remaining): %s. Retrying in %.1fs",
            operation_name,
            retry_state.attempt_number,
            remaining,
            error,
            retry_state.next_action.sleep if retry_state.next_action else 0.0,
        )

    return _before_sleep


async def retry_with_backoff(
    operation_name: str,
    operation: Callable[[], Awaitable[Any]],
    max_attempts: int = DEFAULT_MAX_ATTEMPTS,
    base_delay: float = DEFAULT_BASE_DELAY,
    sleep: SleepFn = asyncio.sleep,
) -> Any:
    """
    Run an operation, retrying failures with exponential backoff.

    The operation is invoked at most ``max_attempts + 1`` times. After the
    n-th failure (0-based) the wrapper waits ``base_delay * 2**n`` seconds.
    If the operation returns a PendingConfirmation, its ``wait()`` is
    awaited and a receipt with a falsy ``status`` counts as a failure.

    Args:
        operation_name: Name used in log lines and errors
        operation: Zero-argument coroutine function to execute
        max_attempts: Number of retries after the first attempt
        base_delay: Delay in seconds before the first retry
        sleep: Awaitable sleep function (injectable for tests)

    Returns:
        The operation result, or the confirmation receipt if it returned
        a PendingConfirmation.

    Raises:
        RetryExhaustedError: If every attempt failed.
    """
    logger.info("exec: %s", operation_name)

    retrying = AsyncRetrying(
        stop=stop_after_attempt(max_attempts + 1),
        wait=wait_exponential(multiplier=base_delay, exp_base=2, min=0),
        before_sleep=_log_before_sleep(operation_name, max_attempts),
        sleep=sleep,
        reraise=False,
    )

    try:
        async for attempt in retrying:
            with attempt:
                result = await operation()
                if isinstance(result, PendingConfirmation):
                    result = await _await_confirmation(operation_name, result)
    except RetryError as e:
        last_error = e.last_attempt.exception()
        logger.error(
            "Operation %s exhausted %d attempts: %s",
            operation_name,
            e.last_attempt.attempt_number,
            last_error,
        )
        raise RetryExhaustedError(
            operation_name, e.last_attempt.attempt_number, last_error
        ) from last_error

    return result


async def poll_until(
    probe: Callable[[], Awaitable[float]],
    poll_interval: float = DEFAULT_POLL_INTERVAL,
    threshold: float = DEFAULT_POLL_THRESHOLD,
    timeout: Optional[float] = None,
    sleep: SleepFn = asyncio.sleep,
    description: str = "condition",
) -> float:
    """
    Poll a probe until the value it reports drops below a threshold.

    The probe returns the remaining gap (e.g. distance between the target
    and the observed position). There is no attempt limit; pass
    ``timeout`` to bound the wait.

    Args:
        probe: Coroutine function returning the current gap
        poll_interval: Seconds between probes
        threshold: Gap below which the condition is considered met
        timeout: Optional bound in seconds on the whole wait
        sleep: Awaitable sleep function (injectable for tests)
        description: Label used in log lines

    Returns:
        The final probe value.

    Raises:
        PollTimeoutError: If ``timeout`` elapsed before convergence.
    """

    async def _poll() -> float:
        value = await probe()
        polls = 1
        # NaN never converges
        while not value < threshold:
            logger.info("poll %s #%d: %s", description, polls, value)
            await sleep(poll_interval)
            value = await probe()
            polls += 1
        logger.debug("%s settled after %d polls (%s)", description, polls, value)
        return value

    if timeout is None:
        return await _poll()

    try:
        return await asyncio.wait_for(_poll(), timeout=timeout)
    except asyncio.TimeoutError as e:
        raise PollTimeoutError(
            f"{description} did not settle within {timeout:.1f}s"
        ) from e
