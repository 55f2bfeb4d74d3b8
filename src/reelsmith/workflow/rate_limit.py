"""Serializing gateway to the quota-constrained video-understanding AI."""

from __future__ import annotations

import asyncio
import time
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass, field
from typing import TypeVar

from ..exceptions import ConfigurationError
from ..utils.logging import get_logger
from .models import Platform
from .retry import ErrorDisposition, RetryPolicy, Sleeper, run_with_retry

__all__ = [
    "PLATFORM_PROFILES",
    "PlatformProfile",
    "RateLimitedDispatcher",
]

LOGGER = get_logger(__name__)

T = TypeVar("T")


@dataclass(slots=True, frozen=True)
class PlatformProfile:
    """Static throttling record for one hosting tier."""

    name: str
    min_interval: float
    max_attempts: int
    initial_wait: float
    max_wait: float

    def retry_policy(self) -> RetryPolicy:
        return RetryPolicy(
            max_attempts=self.max_attempts,
            base_delay=self.initial_wait,
            backoff_multiplier=2.0,
            max_delay=self.max_wait,
            retry_on=frozenset({ErrorDisposition.RETRY_LONG}),
            honor_retry_after=True,
        )


PLATFORM_PROFILES: dict[str, PlatformProfile] = {
    Platform.AI_STUDIO.value: PlatformProfile(
        name=Platform.AI_STUDIO.value,
        min_interval=10.0,
        max_attempts=60,
        initial_wait=10.0,
        max_wait=60.0,
    ),
    Platform.VERTEX.value: PlatformProfile(
        name=Platform.VERTEX.value,
        min_interval=1.0,
        max_attempts=4,
        initial_wait=8.0,
        max_wait=45.0,
    ),
}


@dataclass(slots=True)
class _PlatformQueue:
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    last_start: float | None = None
    dispatched: int = 0


class RateLimitedDispatcher:
    """Runs calls one at a time per platform, spaced by the platform's minimum interval.

    Each platform key owns a FIFO lock held for the whole call, including quota backoff,
    so at most one call per platform is in flight. Quota-exceeded errors are retried with
    the platform's long backoff; any other error propagates unchanged to the caller.
    """

    def __init__(
        self,
        profiles: Mapping[str, PlatformProfile] | None = None,
        *,
        default_timeout: float | None = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Sleeper = asyncio.sleep,
    ) -> None:
        self._profiles = dict(profiles or PLATFORM_PROFILES)
        self._queues: dict[str, _PlatformQueue] = {}
        self._default_timeout = default_timeout
        self._clock = clock
        self._sleep = sleep

    def profile_for(self, platform: str | Platform) -> PlatformProfile:
        key = platform.value if isinstance(platform, Platform) else platform
        try:
            return self._profiles[key]
        except KeyError as exc:
            raise ConfigurationError(f"No rate-limit profile for platform '{key}'.") from exc

    async def execute(
        self,
        operation: Callable[[], Awaitable[T]],
        *,
        platform: str | Platform,
        label: str = "request",
        timeout: float | None = None,
    ) -> T:
        """Dispatch ``operation`` through the platform queue and return its result."""
        profile = self.profile_for(platform)
        queue = self._queues.setdefault(profile.name, _PlatformQueue())
        call_timeout = timeout if timeout is not None else self._default_timeout

        async def _attempt() -> T:
            await self._wait_for_slot(profile, queue)
            queue.last_start = self._clock()
            queue.dispatched += 1
            if call_timeout is None:
                return await operation()
            return await asyncio.wait_for(operation(), timeout=call_timeout)

        async with queue.lock:
            return await run_with_retry(
                _attempt,
                profile.retry_policy(),
                label=f"{profile.name}:{label}",
                sleep=self._sleep,
            )

    def dispatched(self, platform: str | Platform) -> int:
        """Number of dispatch starts (including quota retries) for the platform."""
        queue = self._queues.get(self.profile_for(platform).name)
        return queue.dispatched if queue else 0

    async def _wait_for_slot(self, profile: PlatformProfile, queue: _PlatformQueue) -> None:
        if queue.last_start is None:
            return
        elapsed = self._clock() - queue.last_start
        remaining = profile.min_interval - elapsed
        if remaining > 0:
            LOGGER.debug("%s: waiting %.2fs for the minimum dispatch interval", profile.name, remaining)
            await self._sleep(remaining)
