"""Connection quality probe with a short-lived cache."""

import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Awaitable, Callable, Optional

logger = logging.getLogger(__name__)


class SpeedClass(str, Enum):
    FAST = "fast"
    MEDIUM = "medium"
    SLOW = "slow"


@dataclass(frozen=True)
class ConnectionProbeCache:
    speed_class: SpeedClass
    measured_at: float  # clock() reading, not wall time


class ConnectionProber:
    """Classifies the round-trip time of one liveness request.

    Failures and timeouts classify as ``SLOW`` so a bad probe can only
    make the upload plan more conservative. The cache belongs to this
    instance; pass ``clock`` to control time in tests.
    """

    def __init__(
        self,
        ping: Callable[[float], Awaitable[None]],
        timeout: float = 3.0,
        ttl: float = 60.0,
        fast_threshold_ms: float = 300.0,
        medium_threshold_ms: float = 1000.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._ping = ping
        self._timeout = timeout
        self._ttl = ttl
        self._fast_threshold_ms = fast_threshold_ms
        self._medium_threshold_ms = medium_threshold_ms
        self._clock = clock
        self._cache: Optional[ConnectionProbeCache] = None

    @property
    def cached(self) -> Optional[ConnectionProbeCache]:
        """The cached measurement while fresh, otherwise None."""
        if self._cache is None:
            return None
        if self._clock() - self._cache.measured_at >= self._ttl:
            return None
        return self._cache

    def classify(self, elapsed_ms: float) -> SpeedClass:
        if elapsed_ms < self._fast_threshold_ms:
            return SpeedClass.FAST
        if elapsed_ms < self._medium_threshold_ms:
            return SpeedClass.MEDIUM
        return SpeedClass.SLOW

    async def measure(self) -> SpeedClass:
        cached = self.cached
        if cached is not None:
            return cached.speed_class

        started = self._clock()
        try:
            await self._ping(self._timeout)
        except Exception as e:
            logger.info(f"Connection probe failed, assuming slow connection: {e!r}")
            speed = SpeedClass.SLOW
        else:
            speed = self.classify((self._clock() - started) * 1000)

        self._cache = ConnectionProbeCache(speed_class=speed, measured_at=self._clock())
        logger.debug(f"Connection probe: {speed.value}")
        return speed

    def invalidate(self) -> None:
        self._cache = None
