# apps/workers/limiter.py
#
# Per adapter-class pacing + circuit breaking, and the metered-API budget.
#
#   AdaptivePacer   delay = min(max_delay, base_delay * 2**failures)
#                   wait() blocks until now - last_request >= delay
#   CircuitBreaker  closed --N failures--> open --reset_timeout--> half_open
#                   half_open: one probe; ok -> closed, fail -> open
#   GuardRegistry   lazily builds one (pacer, breaker) per adapter class.
#                   Owned by the process (Engine), never persisted.
#   QuotaMeter      daily unit budget in redis (INCRBY + EXPIRE), plus the
#                   units this run consumed.

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Awaitable, Callable, Dict, Optional

from redis import Redis
from redis.exceptions import RedisError

from apps.workers.config import EngineSettings
from apps.workers.errors import QuotaExhausted
from apps.workers.models import CircuitState

log = logging.getLogger("subfeed.limiter")

Clock = Callable[[], float]
Sleep = Callable[[float], Awaitable[None]]

CLOSED = "closed"
OPEN = "open"
HALF_OPEN = "half_open"


class AdaptivePacer:
    """
    Courtesy gap between two calls to the same adapter class.

    Failures double the gap (bounded by max_delay), each success walks it back
    one step toward base_delay.
    """

    def __init__(
        self,
        base_delay: float,
        max_delay: float,
        clock: Clock = time.monotonic,
        sleep: Optional[Sleep] = None,
    ):
        self.base_delay = max(0.0, float(base_delay))
        self.max_delay = max(self.base_delay, float(max_delay))
        self.failure_count = 0
        self.last_request: Optional[float] = None
        self._clock = clock
        self._sleep = sleep or asyncio.sleep
        self._lock = asyncio.Lock()

    @property
    def delay(self) -> float:
        if self.base_delay <= 0:
            return 0.0
        # cap the exponent so 2**n never gets silly
        return min(self.max_delay, self.base_delay * (2 ** min(self.failure_count, 16)))

    async def wait(self) -> float:
        """Block until the gap has passed, then stamp. Returns seconds slept."""
        async with self._lock:
            slept = 0.0
            if self.last_request is not None:
                remaining = (self.last_request + self.delay) - self._clock()
                if remaining > 0:
                    await self._sleep(remaining)
                    slept = remaining
            self.last_request = self._clock()
            return slept

    def record_success(self) -> None:
        if self.failure_count > 0:
            self.failure_count -= 1

    def record_failure(self) -> None:
        self.failure_count += 1


class CircuitBreaker:
    def __init__(self, failure_threshold: int, reset_timeout: float, clock: Clock = time.monotonic):
        self.failure_threshold = max(1, int(failure_threshold))
        self.reset_timeout = float(reset_timeout)
        self.state = CLOSED
        self.consecutive_failures = 0
        self.opened_at: Optional[float] = None
        self._probe_in_flight = False
        self._clock = clock

    def is_open(self) -> bool:
        """Peek without transitioning: True while calls would be short-circuited."""
        if self.state == OPEN:
            return not self._cooled_down()
        if self.state == HALF_OPEN:
            return self._probe_in_flight
        return False

    def allow(self) -> bool:
        """Ask permission for one call. May move open -> half_open."""
        if self.state == CLOSED:
            return True
        if self.state == OPEN:
            if not self._cooled_down():
                return False
            self.state = HALF_OPEN
            self._probe_in_flight = False
        # half_open: exactly one probe
        if self._probe_in_flight:
            return False
        self._probe_in_flight = True
        return True

    def record_success(self) -> None:
        self.state = CLOSED
        self.consecutive_failures = 0
        self.opened_at = None
        self._probe_in_flight = False

    def record_failure(self) -> None:
        if self.state == HALF_OPEN:
            self._trip()
            return
        self.consecutive_failures += 1
        if self.state == CLOSED and self.consecutive_failures >= self.failure_threshold:
            self._trip()

    def release_probe(self) -> None:
        """Probe finished without a verdict (e.g. quota); let the next call probe."""
        self._probe_in_flight = False

    def snapshot(self) -> CircuitState:
        return CircuitState(
            state=self.state,
            consecutive_failures=self.consecutive_failures,
            opened_at=self.opened_at,
        )

    def _trip(self) -> None:
        self.state = OPEN
        self.opened_at = self._clock()
        self._probe_in_flight = False

    def _cooled_down(self) -> bool:
        return self.opened_at is None or (self._clock() - self.opened_at) >= self.reset_timeout


@dataclass
class Guard:
    name: str
    pacer: AdaptivePacer
    breaker: CircuitBreaker

    def record_success(self) -> None:
        self.pacer.record_success()
        self.breaker.record_success()

    def record_failure(self) -> None:
        was = self.breaker.state
        self.pacer.record_failure()
        self.breaker.record_failure()
        if self.breaker.state == OPEN and was != OPEN:
            log.warning("circuit open adapter=%s failures=%d", self.name, self.breaker.consecutive_failures)


class GuardRegistry:
    """One Guard per adapter class, created on first use."""

    def __init__(
        self,
        settings: EngineSettings,
        clock: Clock = time.monotonic,
        sleep: Optional[Sleep] = None,
    ):
        self._settings = settings
        self._clock = clock
        self._sleep = sleep
        self._guards: Dict[str, Guard] = {}

    def get(self, name: str) -> Guard:
        guard = self._guards.get(name)
        if guard is None:
            rule = self._settings.rule_for(name)
            guard = Guard(
                name=name,
                pacer=AdaptivePacer(rule.base_delay, rule.max_delay, clock=self._clock, sleep=self._sleep),
                breaker=CircuitBreaker(rule.failure_threshold, rule.reset_timeout, clock=self._clock),
            )
            self._guards[name] = guard
        return guard

    def snapshot(self) -> Dict[str, dict]:
        return {name: g.breaker.snapshot().to_wire() for name, g in sorted(self._guards.items())}


class QuotaMeter:
    """
    Daily unit budget for the metered API.

    Units are charged before the call is made, at the real per-call cost, so
    `consumed` is what this process actually spent (not an estimate).
    """

    def __init__(self, conn: Redis, daily_budget: int, key_prefix: str = "quota:units"):
        self._conn = conn
        self.daily_budget = int(daily_budget)
        self.key_prefix = key_prefix
        self.consumed = 0

    def _key(self) -> str:
        return f"{self.key_prefix}:{datetime.now(timezone.utc).strftime('%Y-%m-%d')}"

    def used_today(self) -> int:
        try:
            return int(self._conn.get(self._key()) or 0)
        except RedisError as e:
            log.warning("quota read failed: %r", e)
            return 0

    def remaining(self) -> int:
        return max(0, self.daily_budget - self.used_today())

    def can_afford(self, units: int) -> bool:
        return self.remaining() >= units

    def charge(self, units: int) -> None:
        if units <= 0:
            return
        if not self.can_afford(units):
            raise QuotaExhausted(f"daily quota spent ({self.daily_budget} units)", adapter="youtube_api")
        key = self._key()
        try:
            n = self._conn.incrby(key, units)
            if n == units:
                self._conn.expire(key, 2 * 24 * 3600)
        except RedisError as e:
            # budget bookkeeping is best effort; the call itself may proceed
            log.warning("quota write failed: %r", e)
        self.consumed += units

    def reset_run(self) -> int:
        spent, self.consumed = self.consumed, 0
        return spent
