"""Bounded polling with a fixed cooperative delay."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Awaitable, Callable, Generic, Optional, TypeVar

from backend.core.config import settings

T = TypeVar("T")


@dataclass(frozen=True)
class PollPolicy:
    max_attempts: int
    delay_seconds: float

    @classmethod
    def from_settings(cls) -> "PollPolicy":
        return cls(
            max_attempts=max(1, settings.SRI_POLL_MAX_ATTEMPTS),
            delay_seconds=max(0, settings.SRI_POLL_DELAY_MS) / 1000.0,
        )


@dataclass(frozen=True)
class PollOutcome(Generic[T]):
    result: Optional[T]
    attempts: int

    @property
    def exhausted(self) -> bool:
        return self.result is None


async def poll_until(
    probe: Callable[[int], Awaitable[Optional[T]]],
    policy: PollPolicy,
    *,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> PollOutcome[T]:
    """Call ``probe(attempt)`` until it returns a value or attempts run out.

    ``probe`` returns ``None`` to keep polling. The delay is applied between
    attempts, never after the last one.
    """

    for attempt in range(1, policy.max_attempts + 1):
        result = await probe(attempt)
        if result is not None:
            return PollOutcome(result=result, attempts=attempt)
        if attempt < policy.max_attempts and policy.delay_seconds > 0:
            await sleep(policy.delay_seconds)
    return PollOutcome(result=None, attempts=policy.max_attempts)
