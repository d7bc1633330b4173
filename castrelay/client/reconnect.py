from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from typing import TypeVar

from loguru import logger

T = TypeVar("T")


class ReconnectExhausted(Exception):
    def __init__(self, name: str, attempts: int):
        super().__init__(f"{name}: gave up after {attempts} attempt(s)")
        self.name = name
        self.attempts = attempts


class ReconnectPolicy:
    """Fixed-delay retry schedule shared by the discovery channel and the relay socket.

    Args:
        name: label used in logs
        delay: seconds between attempts
        max_attempts: None retries forever
        on_exhausted: awaited once when the attempt budget runs out
    """

    def __init__(
        self,
        name: str,
        *,
        delay: float,
        max_attempts: int | None = None,
        on_exhausted: Callable[[], Awaitable[None]] | None = None,
    ):
        self.name = name
        self.delay = delay
        self.max_attempts = max_attempts
        self.on_exhausted = on_exhausted
        self.attempts = 0

    @classmethod
    def bounded(cls, name: str, *, attempts: int, delay: float, **kwargs) -> "ReconnectPolicy":
        return cls(name, delay=delay, max_attempts=attempts, **kwargs)

    @classmethod
    def unbounded(cls, name: str, *, delay: float, **kwargs) -> "ReconnectPolicy":
        return cls(name, delay=delay, max_attempts=None, **kwargs)

    @property
    def exhausted(self) -> bool:
        return self.max_attempts is not None and self.attempts >= self.max_attempts

    def next_delay(self) -> float | None:
        """Consume one attempt. Returns None once the budget is spent."""
        if self.exhausted:
            return None
        self.attempts += 1
        return self.delay

    def reset(self) -> None:
        self.attempts = 0

    async def run(
        self,
        connect: Callable[[], Awaitable[T]],
        *,
        retry_on: tuple[type[Exception], ...] = (Exception,),
    ) -> T:
        """Call `connect` until it succeeds, sleeping `delay` before each retry.

        Exceptions outside `retry_on` propagate immediately.

        Raises:
            ReconnectExhausted: the attempt budget ran out
        """
        while True:
            delay = self.next_delay()
            if delay is None:
                logger.warning(f"{self.name}: reconnect exhausted after {self.attempts} attempt(s)")
                if self.on_exhausted is not None:
                    await self.on_exhausted()
                raise ReconnectExhausted(self.name, self.attempts)

            limit = self.max_attempts if self.max_attempts is not None else "unbounded"
            logger.info(f"{self.name}: reconnecting in {delay:g}s (attempt {self.attempts} of {limit})")
            await asyncio.sleep(delay)
            try:
                result = await connect()
            except retry_on as e:
                logger.warning(f"{self.name}: reconnect attempt {self.attempts} failed: {e}")
                continue

            logger.info(f"{self.name}: reconnected after {self.attempts} attempt(s)")
            self.reset()
            return result
