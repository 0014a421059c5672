from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, TypeVar

from .logging import log_event

T = TypeVar("T")

DEFAULT_INITIAL_DELAY_SECONDS = 1.0
DEFAULT_MAX_DELAY_SECONDS = 30.0


class RetryPolicy:
    """Bounded retry with capped exponential backoff.

    ``retries`` counts additional attempts: ``retries=0`` runs the operation
    exactly once. The policy keeps no per-call state, so the same instance can
    wrap operations that themselves retry through it.
    """

    def __init__(
        self,
        *,
        initial_delay_seconds: float = DEFAULT_INITIAL_DELAY_SECONDS,
        max_delay_seconds: float = DEFAULT_MAX_DELAY_SECONDS,
        logger: logging.Logger | None = None,
    ) -> None:
        self._initial_delay_seconds = max(0.0, float(initial_delay_seconds))
        self._max_delay_seconds = max(self._initial_delay_seconds, float(max_delay_seconds))
        self._logger = logger

    def backoff_seconds(self, attempt: int) -> float:
        return min(self._max_delay_seconds, self._initial_delay_seconds * (2 ** max(0, attempt)))

    async def run(
        self,
        operation: Callable[[], Awaitable[T]],
        *,
        retries: int,
        event: str = "retry",
        give_up_on: tuple[type[BaseException], ...] = (),
        **fields: object,
    ) -> T:
        max_attempts = max(0, int(retries)) + 1
        for attempt in range(max_attempts):
            try:
                return await operation()
            except asyncio.CancelledError:
                raise
            except Exception as error:
                if give_up_on and isinstance(error, give_up_on):
                    raise
                if attempt + 1 >= max_attempts:
                    raise

                delay_seconds = self.backoff_seconds(attempt)
                if self._logger is not None:
                    log_event(
                        self._logger,
                        level="warning",
                        event=event,
                        message="Operation failed; retrying",
                        attempt=attempt + 1,
                        max_attempts=max_attempts,
                        backoff_seconds=round(delay_seconds, 3),
                        error=str(error),
                        **fields,
                    )
                await asyncio.sleep(delay_seconds)

        raise RuntimeError("unreachable")  # pragma: no cover


async def retry_with_backoff(
    operation: Callable[[], Awaitable[T]],
    retries: int = 5,
    *,
    initial_delay_seconds: float = DEFAULT_INITIAL_DELAY_SECONDS,
    max_delay_seconds: float = DEFAULT_MAX_DELAY_SECONDS,
    give_up_on: tuple[type[BaseException], ...] = (),
) -> T:
    policy = RetryPolicy(
        initial_delay_seconds=initial_delay_seconds,
        max_delay_seconds=max_delay_seconds,
    )
    return await policy.run(operation, retries=retries, give_up_on=give_up_on)
