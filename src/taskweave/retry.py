"""Task-level retry handling for taskweave.

A task with ``retries: N`` may be invoked up to N+1 times on a host. An
attempt is accepted when the module succeeded and, if the task has an
``until`` condition, the condition holds for that attempt's result.
Unreachable results are never retried: the host is gone for the rest of
the play.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable

from .types import ModuleResult

logger = logging.getLogger(__name__)


@dataclass
class RetryConfig:
    """Configuration for retry behavior of one task.

    Attributes:
        max_attempts: Number of retries after the first attempt (0 = no retries)
        initial_delay: Delay before the first retry in seconds
        max_delay: Maximum delay between retries (caps backoff)
        backoff_factor: Multiplier applied per retry (1.0 = fixed delay)
    """

    max_attempts: int = 0
    initial_delay: float = 0.0
    max_delay: float = 60.0
    backoff_factor: float = 1.0

    @classmethod
    def from_task(cls, task: Any) -> "RetryConfig":
        """Build the retry configuration declared on a task."""
        return cls(max_attempts=task.retries, initial_delay=task.delay)

    def get_delay(self, attempt: int) -> float:
        """Calculate the delay after a given attempt number (1-based).

        Example:
            >>> RetryConfig(max_attempts=3, initial_delay=1.0, backoff_factor=2.0).get_delay(3)
            4.0
        """
        if attempt <= 1:
            return min(self.initial_delay, self.max_delay)
        delay = self.initial_delay * (self.backoff_factor ** (attempt - 1))
        return max(0.0, min(delay, self.max_delay))


@dataclass
class RetryState:
    """Tracks retry state for a single task instance on a single host.

    Attributes:
        host_name: Name of the host
        attempts: Number of attempts made
        last_error_message: Error message of the last rejected attempt
        succeeded: Whether an attempt was eventually accepted
        gave_up: Whether retries were exhausted without success
    """

    host_name: str
    attempts: int = 0
    last_error_message: str = ""
    succeeded: bool = False
    gave_up: bool = False


async def retry_task(
    invoke: Callable[[], Awaitable[ModuleResult]],
    config: RetryConfig,
    accept: Callable[[ModuleResult], bool] | None = None,
    host_name: str = "",
    on_retry: Callable[[int, str, float], None] | None = None,
) -> tuple[ModuleResult, RetryState]:
    """Invoke a module until an attempt is accepted or retries run out.

    Args:
        invoke: Callable returning a coroutine that performs one attempt
        config: Retry configuration
        accept: Predicate deciding whether an attempt's result is final;
            defaults to ``result.success``
        host_name: Host name for logging/tracking
        on_retry: Called with (attempt, error, delay) before each retry

    Returns:
        Tuple of (last result, retry_state)
    """
    accept = accept or (lambda r: r.success)
    state = RetryState(host_name=host_name)
    max_total_attempts = config.max_attempts + 1

    for attempt in range(1, max_total_attempts + 1):
        state.attempts = attempt
        result = await invoke()

        if result.unreachable:
            state.last_error_message = result.error or ""
            return result, state

        if accept(result):
            state.succeeded = True
            return result, state

        state.last_error_message = result.error or "condition not met"
        if attempt < max_total_attempts:
            delay = config.get_delay(attempt)
            logger.info(
                f"Retry {attempt}/{config.max_attempts} for {host_name}: "
                f"{state.last_error_message} - waiting {delay:.1f}s"
            )
            if on_retry:
                on_retry(attempt, state.last_error_message, delay)
            await asyncio.sleep(delay)
            continue

        state.gave_up = config.max_attempts > 0
        return result, state

    raise AssertionError("unreachable")  # loop always returns
