"""
Threshold Evaluator & Intervention Rate Limiter

Decides whether a bucket of same-type events is bad enough to act on.

CRITICAL CONSTRAINTS:
- RATE CAP FIRST: When the hourly cap is reached, nothing fires
- WINDOWED: window_ms == 0 means every supplied event counts
- RATE NEEDS A WINDOW: Rate thresholds are skipped without window_ms
- PURE DECISION: The evaluator never emits events or runs actions
"""

import logging
import time
from dataclasses import dataclass, asdict
from datetime import datetime, timedelta
from typing import Optional, Dict, Any, List, Callable

from .config import ThresholdConfig
from .event_model import Event, parse_timestamp, utc_now
from .event_stream import EventSource

logger = logging.getLogger("thresholds")

HOUR_MS = 3_600_000


# -----------------------------------------------------------------------------
# Intervention Rate Limiter
# -----------------------------------------------------------------------------
class InterventionRateLimiter:
    """
    Hourly intervention counter.

    The counter resets once a full window of wall-clock time has passed
    since the last reset.
    """

    def __init__(
        self,
        max_per_hour: int,
        window_ms: int = HOUR_MS,
        clock: Optional[Callable[[], float]] = None,
    ):
        self.max_per_hour = max_per_hour
        self._window_ms = window_ms
        self._clock = clock or time.time
        self._count = 0
        self._window_started = self._clock()

    def _maybe_reset(self) -> None:
        now = self._clock()
        if (now - self._window_started) * 1000 >= self._window_ms:
            if self._count:
                logger.debug(f"Hourly intervention counter reset (was {self._count})")
            self._count = 0
            self._window_started = now

    @property
    def count(self) -> int:
        self._maybe_reset()
        return self._count

    def is_exhausted(self) -> bool:
        self._maybe_reset()
        return self._count >= self.max_per_hour

    def record(self) -> int:
        self._maybe_reset()
        self._count += 1
        return self._count

    def reset(self) -> None:
        self._count = 0
        self._window_started = self._clock()


# -----------------------------------------------------------------------------
# Threshold Decision
# -----------------------------------------------------------------------------
@dataclass(frozen=True)
class ThresholdDecision:
    """
    Outcome of evaluating one event type.

    rate_limited is True when the rule would have fired but the hourly cap
    was already reached; exceeded is then False.
    """
    event_type: str
    exceeded: bool
    rate_limited: bool = False
    matched_count: int = 0
    observed_rate: Optional[float] = None
    reason: str = "below_threshold"

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def filter_by_window(
    events: List[Event],
    window_ms: int,
    now: Optional[datetime] = None,
) -> List[Event]:
    """Events no older than window_ms; every event when window_ms is 0."""
    if not window_ms:
        return list(events)
    cutoff = (now or utc_now()) - timedelta(milliseconds=window_ms)
    return [e for e in events if parse_timestamp(e.timestamp) >= cutoff]


# -----------------------------------------------------------------------------
# Threshold Evaluator
# -----------------------------------------------------------------------------
class ThresholdEvaluator:
    """Count and rate thresholds, gated by the hourly rate limiter."""

    def __init__(
        self,
        event_source: EventSource,
        rate_limiter: InterventionRateLimiter,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self._events = event_source
        self._limiter = rate_limiter
        self._clock = clock or utc_now

    def evaluate(
        self,
        event_type: str,
        events: List[Event],
        threshold: ThresholdConfig,
    ) -> ThresholdDecision:
        now = self._clock()
        relevant = [
            e for e in filter_by_window(events, threshold.window_ms, now)
            if e.type == event_type
        ]

        fired_by = None
        observed_rate = None

        if threshold.count is not None and len(relevant) >= threshold.count:
            fired_by = "count"

        if fired_by is None and threshold.rate is not None and threshold.window_ms > 0:
            window_start = now - timedelta(milliseconds=threshold.window_ms)
            all_in_window = self._events.get_by_time_range(window_start, now)
            if all_in_window:
                observed_rate = len(relevant) / len(all_in_window)
                if observed_rate >= threshold.rate:
                    fired_by = "rate"

        if fired_by is None:
            return ThresholdDecision(
                event_type=event_type,
                exceeded=False,
                matched_count=len(relevant),
                observed_rate=observed_rate,
            )

        if self._limiter.is_exhausted():
            logger.warning(
                f"Threshold for {event_type} reached ({fired_by}) but the hourly "
                f"intervention cap of {self._limiter.max_per_hour} is exhausted"
            )
            return ThresholdDecision(
                event_type=event_type,
                exceeded=False,
                rate_limited=True,
                matched_count=len(relevant),
                observed_rate=observed_rate,
                reason="rate_limited",
            )

        logger.info(
            f"Threshold exceeded for {event_type}: {len(relevant)} event(s) by {fired_by}"
        )
        return ThresholdDecision(
            event_type=event_type,
            exceeded=True,
            matched_count=len(relevant),
            observed_rate=observed_rate,
            reason=fired_by,
        )
