"""Bounded exponential-backoff retry for provider mutations."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional, TypeVar

from .errors import is_transient

logger = logging.getLogger(__name__)

T = TypeVar("T")

Sleep = Callable[[float], Awaitable[None]]

DEFAULT_MAX_ATTEMPTS = 3
DEFAULT_BASE_DELAY_SECONDS = 5.0
MAX_DELAY_SECONDS = 30.0


def backoff_delay(attempt: int, base_delay: float, max_delay: float = MAX_DELAY_SECONDS) -> float:
    """Delay before retrying after the zero-based `attempt` failed."""
    return min(base_delay * (2**attempt), max_delay)


async def with_retry(
    op: Callable[[], Awaitable[T]],
    max_attempts: int = DEFAULT_MAX_ATTEMPTS,
    *,
    base_delay: float = DEFAULT_BASE_DELAY_SECONDS,
    max_delay: float = MAX_DELAY_SECONDS,
    sleep: Optional[Sleep] = None,
    label: str = "operation",
) -> T:
    """Await `op()` until it succeeds, retrying transient failures.

    Errors that are not transient propagate on the first failure. After
    `max_attempts` transient failures the last error is raised.
    """
    if max_attempts < 1:
        raise ValueError("max_attempts must be at least 1")
    sleep = sleep or asyncio.sleep

    for attempt in range(max_attempts):
        try:
            return await op()
        except Exception as e:
            if not is_transient(e) or attempt == max_attempts - 1:
                raise
            delay = backoff_delay(attempt, base_delay, max_delay)
            logger.warning(
                f"{label} failed, retrying in {delay:g}s ({attempt + 1}/{max_attempts}): {e}"
            )
            await sleep(delay)

    raise RuntimeError(f"{label} did not run")


@dataclass(frozen=True)
class RetryPolicy:
    """Retry parameters applied to every mutating provider call."""

    max_attempts: int = DEFAULT_MAX_ATTEMPTS
    base_delay: float = DEFAULT_BASE_DELAY_SECONDS
    max_delay: float = MAX_DELAY_SECONDS

    async def run(
        self,
        op: Callable[[], Awaitable[T]],
        *,
        sleep: Optional[Sleep] = None,
        label: str = "operation",
    ) -> T:
        return await with_retry(
            op,
            self.max_attempts,
            base_delay=self.base_delay,
            max_delay=self.max_delay,
            sleep=sleep,
            label=label,
        )
