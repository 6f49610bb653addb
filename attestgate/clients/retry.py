"""
AttestGate — Retry Policy

One bounded retry policy object shared by every client that talks to the
network (ledger RPC, data-availability layer). Call sites never hand-roll
their own loops.

Only the exception types named in ``retry_on`` are retried. Logical
failures (a negative verdict, a ledger rejection) are never in that set.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, TypeVar

import structlog

from attestgate.errors import TransientNetworkError

if TYPE_CHECKING:
    from attestgate.config import RetryConfig

logger = structlog.get_logger()

T = TypeVar("T")


@dataclass(frozen=True)
class RetryPolicy:
    """Bounded exponential back-off: interval, interval*backoff, ... capped at max_interval_s."""

    max_attempts: int = 3
    interval_s: float = 1.0
    backoff: float = 2.0
    max_interval_s: float = 30.0
    sleep: Callable[[float], Awaitable[None]] = field(default=asyncio.sleep, compare=False, repr=False)

    @classmethod
    def from_config(cls, config: RetryConfig) -> RetryPolicy:
        return cls(
            max_attempts=max(config.max_attempts, 1),
            interval_s=config.interval_s,
            backoff=config.backoff,
            max_interval_s=config.max_interval_s,
        )

    @classmethod
    def none(cls) -> RetryPolicy:
        return cls(max_attempts=1, interval_s=0.0)

    def delays(self) -> list[float]:
        """The sleeps taken between attempts (one fewer than max_attempts)."""
        out: list[float] = []
        delay = self.interval_s
        for _ in range(self.max_attempts - 1):
            out.append(min(delay, self.max_interval_s))
            delay *= self.backoff
        return out

    async def run(
        self,
        fn: Callable[[], Awaitable[T]],
        *,
        operation: str,
        retry_on: tuple[type[BaseException], ...] = (TransientNetworkError,),
    ) -> T:
        """
        Await ``fn()`` until it succeeds or attempts run out.

        The last retryable exception is re-raised unchanged. Anything not in
        ``retry_on`` propagates on the first occurrence.
        """
        delays = self.delays()
        attempt = 0
        while True:
            attempt += 1
            try:
                return await fn()
            except retry_on as exc:
                if attempt >= self.max_attempts:
                    logger.warning(
                        "retry_exhausted",
                        operation=operation,
                        attempts=attempt,
                        error=str(exc),
                    )
                    raise
                delay = delays[attempt - 1]
                logger.info(
                    "retry_scheduled",
                    operation=operation,
                    attempt=attempt,
                    max_attempts=self.max_attempts,
                    retry_in=delay,
                    error=str(exc),
                )
                await self.sleep(delay)
