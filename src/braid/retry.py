"""Bounded exponential backoff for transient remote failures."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass
from typing import Any, TypeVar

from braid.errors import RetryExhaustedError, TransientRemoteError

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 3
    base_delay: float = 0.5
    max_delay: float = 8.0

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            msg = "max_attempts must be at least 1"
            raise ValueError(msg)
        if self.base_delay < 0 or self.max_delay < 0:
            msg = "retry delays must not be negative"
            raise ValueError(msg)

    @classmethod
    def from_config(cls, retry: Mapping[str, Any] | None) -> RetryPolicy:
        if not retry:
            return cls()
        return cls(
            max_attempts=int(retry.get("max_attempts", cls.max_attempts)),
            base_delay=float(retry.get("base_delay", cls.base_delay)),
            max_delay=float(retry.get("max_delay", cls.max_delay)),
        )

    def delay_for(self, attempt: int) -> float:
        """Delay after failed *attempt* (1-based): base * 2^(attempt-1), capped."""
        return min(self.max_delay, self.base_delay * (2 ** (attempt - 1)))


async def with_retry(
    operation: Callable[[], Awaitable[T]],
    policy: RetryPolicy,
    *,
    what: str,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
) -> T:
    """Await *operation*, retrying ``TransientRemoteError`` up to ``policy.max_attempts`` times.

    Permanent errors propagate immediately. When every attempt fails,
    ``RetryExhaustedError`` is raised from the last transient error.
    """
    attempt = 0
    while True:
        attempt += 1
        try:
            return await operation()
        except RetryExhaustedError:
            raise
        except TransientRemoteError as exc:
            if attempt >= policy.max_attempts:
                msg = f"{what}: gave up after {attempt} attempts: {exc}"
                raise RetryExhaustedError(msg, attempts=attempt, status_code=exc.status_code) from exc
            delay = policy.delay_for(attempt)
            logger.warning("%s failed (attempt %d/%d), retrying in %.2fs: %s", what, attempt, policy.max_attempts, delay, exc)
            await sleep(delay)
