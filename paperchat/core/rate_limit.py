"""
Per-tier request budgets for outbound Gemini calls.

A fixed window per tier: the counter resets wholesale once the window
elapses, so bursts at a window boundary are possible.  The analysis
pipeline adds its own pause between batches on top of this.
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass, replace
from typing import Callable, Dict, Optional

from paperchat.core.config import DEFAULT_TIER, RATE_LIMIT_SAFETY_MARGIN_MS, TIER_LIMITS

logger = logging.getLogger(__name__)


@dataclass
class TierLimit:
    requests: int
    per_minutes: float
    delay_between_chunks_ms: int

    @property
    def window_ms(self) -> float:
        return self.per_minutes * 60_000


@dataclass
class RateBudget:
    window_start: float          # ms
    request_count: int
    limit: int
    window_duration_ms: float
    inter_batch_delay_ms: int


def load_tier_limits(table: Optional[Dict[str, dict]] = None) -> Dict[str, TierLimit]:
    table = table or TIER_LIMITS
    return {name: TierLimit(**values) for name, values in table.items()}


class TierRateLimiter:
    """Blocking, thread-safe fixed-window limiter keyed by tier name."""

    def __init__(
        self,
        limits: Optional[Dict[str, TierLimit]] = None,
        safety_margin_ms: int = RATE_LIMIT_SAFETY_MARGIN_MS,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.limits = limits or load_tier_limits()
        self.safety_margin_ms = safety_margin_ms
        self._clock = clock
        self._sleep = sleep
        self._budgets: Dict[str, RateBudget] = {}
        self._locks: Dict[str, threading.Lock] = {}
        self._registry_lock = threading.Lock()

    def _now_ms(self) -> float:
        return self._clock() * 1000.0

    def _resolve(self, tier: str) -> str:
        if tier in self.limits:
            return tier
        fallback = DEFAULT_TIER if DEFAULT_TIER in self.limits else next(iter(self.limits))
        logger.warning("Unknown tier %r; using %r limits", tier, fallback)
        return fallback

    def _state(self, tier: str) -> tuple[RateBudget, threading.Lock]:
        with self._registry_lock:
            if tier not in self._budgets:
                limit = self.limits[tier]
                self._budgets[tier] = RateBudget(
                    window_start=self._now_ms(),
                    request_count=0,
                    limit=limit.requests,
                    window_duration_ms=limit.window_ms,
                    inter_batch_delay_ms=limit.delay_between_chunks_ms,
                )
                self._locks[tier] = threading.Lock()
            return self._budgets[tier], self._locks[tier]

    def acquire(self, tier: str) -> None:
        """Block until *tier* has a free slot, then take it."""
        tier = self._resolve(tier)
        budget, lock = self._state(tier)

        # The wait happens under the tier lock: callers queue up behind it and
        # none of them can read the count before the reset lands.
        with lock:
            now = self._now_ms()
            if now - budget.window_start > budget.window_duration_ms:
                budget.window_start = now
                budget.request_count = 0

            if budget.request_count >= budget.limit:
                remaining_ms = budget.window_duration_ms - (now - budget.window_start)
                wait_s = max(remaining_ms, 0) / 1000.0 + self.safety_margin_ms / 1000.0
                logger.info(
                    "[rate-limit] %s tier exhausted (%d/%d); sleeping %.1fs",
                    tier, budget.request_count, budget.limit, wait_s,
                )
                self._sleep(wait_s)
                budget.window_start = self._now_ms()
                budget.request_count = 0

            budget.request_count += 1

    def delay_for(self, tier: str) -> float:
        """Pause between analysis batches for *tier*, in seconds."""
        return self.limits[self._resolve(tier)].delay_between_chunks_ms / 1000.0

    def snapshot(self, tier: str) -> RateBudget:
        tier = self._resolve(tier)
        budget, lock = self._state(tier)
        with lock:
            return replace(budget)
