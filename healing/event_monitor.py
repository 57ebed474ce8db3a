"""
Event Monitor - Proactive Self-Healing Loop

Polls the event source on a fixed interval, groups new warn/error/critical
events by type, and for each type whose threshold fires: classifies the
issue, applies the confidence / approval / rate gates, runs the executor
and records the outcome.

CRITICAL CONSTRAINTS:
- CURSOR ALWAYS ADVANCES: Even a poll with zero events moves the cursor
- SEQUENTIAL BUCKETS: Interventions within one poll never overlap
- LOOP NEVER DIES: A failing bucket is logged and reported as
  intervention:error; polling continues
- BOUNDED: At most max_interventions_per_hour interventions per hour
- STOP IS SOFT: stop() cancels the timer; an in-flight poll completes
"""

import asyncio
import dataclasses
import logging
import time
from datetime import datetime
from pathlib import Path
from typing import Optional, Dict, Any, List, Callable

from .action_executor import ActionExecutor, InterventionResult
from .config import MonitoringConfig, ThresholdConfig, TUNING_DIR
from .event_model import (
    Event,
    EventFilter,
    EventSeverity,
    InterventionEvent,
    MONITORED_SEVERITIES,
    group_by_type,
    parse_timestamp,
    utc_now,
)
from .event_stream import EventSource
from .intervention_tracker import InterventionMetricsTracker, InterventionRecord
from .issue_classifier import IssueClassifier
from .state_store import StateStore
from .strategies import StrategyContext
from .thresholds import InterventionRateLimiter, ThresholdEvaluator

logger = logging.getLogger("event_monitor")


# -----------------------------------------------------------------------------
# Event Monitor Service
# -----------------------------------------------------------------------------
class EventMonitorService:
    """
    Drives the monitor -> classifier -> executor loop.

    States: stopped -> running (start) -> stopped (stop). start() is a
    no-op when already running or when monitoring is disabled.
    """

    def __init__(
        self,
        event_source: EventSource,
        executor: ActionExecutor,
        config: Optional[MonitoringConfig] = None,
        classifier: Optional[IssueClassifier] = None,
        tracker: Optional[InterventionMetricsTracker] = None,
        clock: Optional[Callable[[], datetime]] = None,
        rate_limiter: Optional[InterventionRateLimiter] = None,
    ):
        self._source = event_source
        self._executor = executor
        self._config = config or MonitoringConfig()
        self._classifier = classifier or IssueClassifier()
        self._tracker = tracker
        self._clock = clock or utc_now
        self._limiter = rate_limiter or InterventionRateLimiter(
            self._config.max_interventions_per_hour
        )
        self._evaluator = ThresholdEvaluator(event_source, self._limiter, clock=self._clock)

        self._running = False
        self._task: Optional[asyncio.Task] = None
        self._wake: Optional[asyncio.Event] = None
        self._cursor: Optional[str] = None
        self._last_poll_at: Optional[str] = None
        self._poll_count = 0

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def config(self) -> MonitoringConfig:
        return self._config

    @property
    def executor(self) -> ActionExecutor:
        return self._executor

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    def start(self) -> bool:
        """Start polling (immediately, then every interval). Needs a running loop."""
        if self._running:
            logger.warning("Event monitor already running")
            return False

        if not self._config.enabled:
            logger.info("Event monitoring disabled in config")
            return False

        self._running = True
        self._wake = asyncio.Event()
        self._task = asyncio.create_task(self._run())
        logger.info(
            f"Event monitor started, polling every {self._config.polling_interval_ms}ms"
        )
        return True

    def stop(self) -> None:
        """Stop polling; an in-flight poll is allowed to finish."""
        if not self._running:
            return

        self._running = False
        if self._wake is not None:
            self._wake.set()
        logger.info("Event monitor stopped")

    async def wait_closed(self) -> None:
        """Wait for the polling task to exit after stop()."""
        if self._task is not None:
            await self._task

    async def _run(self) -> None:
        # Each loop owns its wake event; a restart sets the old one.
        wake = self._wake
        while self._running and not wake.is_set():
            try:
                await self.poll_once()
            except Exception as e:
                logger.error(f"Event monitor poll failed: {e}")

            if wake.is_set():
                break
            try:
                await asyncio.wait_for(wake.wait(), timeout=self._config.polling_interval_ms / 1000)
            except asyncio.TimeoutError:
                pass

    # -------------------------------------------------------------------------
    # Polling
    # -------------------------------------------------------------------------

    async def poll_once(self) -> List[InterventionResult]:
        """One poll cycle; returns the interventions it executed."""
        events = self._source.poll(EventFilter(
            severity=MONITORED_SEVERITIES,
            since=self._cursor,
        ))
        self._cursor = self._source.get_last_event_id()
        self._last_poll_at = self._clock().isoformat()
        self._poll_count += 1

        results: List[InterventionResult] = []
        if not events:
            return results

        logger.debug(f"Polled {len(events)} event(s)")

        for event_type, bucket in group_by_type(events).items():
            threshold = self._config.thresholds.get(event_type)
            if threshold is None:
                continue

            try:
                decision = self._evaluator.evaluate(event_type, bucket, threshold)
                if decision.rate_limited:
                    self._emit_rate_limited(event_type)
                    continue
                if not decision.exceeded:
                    continue

                result = await self._handle_threshold_exceeded(event_type, bucket, threshold)
                if result is not None:
                    results.append(result)
            except Exception as e:
                logger.error(f"Error handling threshold exceeded for {event_type}: {e}")
                self._source.emit(
                    InterventionEvent.ERROR.value,
                    {"eventType": event_type, "error": str(e)},
                    severity=EventSeverity.ERROR.value,
                )

        return results

    async def _handle_threshold_exceeded(
        self,
        event_type: str,
        events: List[Event],
        threshold: ThresholdConfig,
    ) -> Optional[InterventionResult]:
        classification = self._classifier.classify(event_type, events)
        logger.info(
            f"Classified {event_type} as {classification.issue_type} "
            f"(confidence {classification.confidence:.2f})"
        )

        if classification.confidence < threshold.confidence:
            logger.warning(
                f"Confidence {classification.confidence:.2f} below threshold "
                f"{threshold.confidence:.2f} for {event_type}, skipping auto-action"
            )
            return None

        # auto_execute lists event types cleared to run without approval
        needs_approval = (
            event_type in self._config.require_approval
            and not threshold.auto_action
            and event_type not in self._config.auto_execute
        )
        if needs_approval:
            logger.info(f"Approval required for {event_type}, logging for manual intervention")
            self._source.emit(
                InterventionEvent.APPROVAL_REQUIRED.value,
                {
                    "eventType": event_type,
                    "classification": classification.to_dict(),
                    "threshold": threshold.to_dict(),
                },
                severity=EventSeverity.WARN.value,
            )
            return None

        if self._limiter.is_exhausted():
            self._emit_rate_limited(event_type)
            return None

        self._limiter.record()
        self._source.emit(
            InterventionEvent.TRIGGERED.value,
            {
                "eventType": event_type,
                "issueType": classification.issue_type,
                "confidence": classification.confidence,
                "strategy": classification.suggested_action,
            },
            severity=EventSeverity.INFO.value,
        )

        started = time.monotonic()
        result = await self._executor.execute(event_type, classification, events)
        duration_ms = (time.monotonic() - started) * 1000

        self._source.emit(
            (InterventionEvent.SUCCESSFUL if result.success else InterventionEvent.FAILED).value,
            {
                "interventionId": result.intervention_id,
                "issueType": classification.issue_type,
                "eventType": event_type,
                "action": result.action,
                "fixApplied": result.fix_applied,
                "durationMs": duration_ms,
            },
            severity=(EventSeverity.INFO if result.success else EventSeverity.ERROR).value,
        )

        if result.rollback_required and self._config.track_rollbacks:
            self._source.emit(
                InterventionEvent.ROLLED_BACK.value,
                {
                    "interventionId": result.intervention_id,
                    "issueType": classification.issue_type,
                    "eventType": event_type,
                    "error": result.error,
                },
                severity=EventSeverity.WARN.value,
            )

        if self._tracker is not None and self._config.track_interventions:
            self._record(event_type, classification.confidence, events, result, duration_ms)

        if result.success:
            logger.info(f"Intervention {result.intervention_id} succeeded ({result.action})")
        else:
            logger.warning(
                f"Intervention {result.intervention_id} failed ({result.action}): {result.error}"
            )
        return result

    def _record(
        self,
        event_type: str,
        confidence: float,
        events: List[Event],
        result: InterventionResult,
        duration_ms: float,
    ) -> None:
        detection_ms = 0.0
        if events:
            first_seen = parse_timestamp(events[0].timestamp)
            detection_ms = max(0.0, (self._clock() - first_seen).total_seconds() * 1000)

        self._tracker.record_intervention(InterventionRecord(
            intervention_id=result.intervention_id,
            timestamp=self._clock().isoformat(),
            event_type=event_type,
            issue_type=result.issue_type,
            strategy=result.action,
            confidence=confidence,
            success=result.success,
            fix_applied=result.fix_applied,
            rollback_required=result.rollback_required,
            error=result.error,
            detection_time_ms=detection_ms,
            fix_time_ms=duration_ms,
        ))
        self._tracker.record_threshold_exceeded(event_type)
        if result.success and result.fix_applied:
            self._tracker.record_issue_prevented(event_type)

    def _emit_rate_limited(self, event_type: str) -> None:
        logger.warning(f"Rate limit exceeded, skipping intervention for {event_type}")
        self._source.emit(
            InterventionEvent.RATE_LIMITED.value,
            {
                "eventType": event_type,
                "interventionCount": self._limiter.count,
                "maxInterventionsPerHour": self._limiter.max_per_hour,
            },
            severity=EventSeverity.WARN.value,
        )

    # -------------------------------------------------------------------------
    # Status & Configuration
    # -------------------------------------------------------------------------

    def get_status(self) -> Dict[str, Any]:
        return {
            "is_running": self._running,
            "enabled": self._config.enabled,
            "last_poll_cursor": self._cursor,
            "last_poll_at": self._last_poll_at,
            "poll_count": self._poll_count,
            "interventions_this_hour": self._limiter.count,
            "max_interventions_per_hour": self._limiter.max_per_hour,
            "pending_effectiveness_checks": self._executor.pending_checks,
        }

    def update_config(self, **changes) -> MonitoringConfig:
        """
        Replace configuration fields at runtime.

        Enabling starts the monitor, disabling stops it, and an interval
        change restarts a running monitor.
        """
        previous = self._config
        self._config = dataclasses.replace(previous, **changes)
        self._limiter.max_per_hour = self._config.max_interventions_per_hour
        self._executor.effectiveness_grace_seconds = self._config.effectiveness_grace_seconds
        self._executor.regression_event_threshold = self._config.regression_event_threshold

        if previous.enabled != self._config.enabled:
            if self._config.enabled:
                self.start()
            else:
                self.stop()
        elif (
            self._running
            and previous.polling_interval_ms != self._config.polling_interval_ms
        ):
            self.stop()
            self.start()

        logger.info(f"Event monitor config updated: {sorted(changes)}")
        return self._config


def create_event_monitor(
    event_source: EventSource,
    state_store: StateStore,
    config: Optional[MonitoringConfig] = None,
    tracker: Optional[InterventionMetricsTracker] = None,
    tuning_dir: Optional[Path] = None,
) -> EventMonitorService:
    """Wire a monitor with the default classifier, executor and strategies."""
    config = config or MonitoringConfig()
    context = StrategyContext(
        event_source=event_source,
        state_store=state_store,
        tuning_dir=Path(tuning_dir) if tuning_dir else TUNING_DIR,
    )
    executor = ActionExecutor(
        context,
        effectiveness_grace_seconds=config.effectiveness_grace_seconds,
        regression_event_threshold=config.regression_event_threshold,
    )
    return EventMonitorService(
        event_source,
        executor,
        config=config,
        tracker=tracker,
    )


logger.info("Event Monitor module loaded")
