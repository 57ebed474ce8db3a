"""
Action Executor - Strategy Dispatch & Effectiveness Feedback

Runs the strategy registered for a classified issue and, when a fix was
applied, checks later whether the same problem came back.

CRITICAL CONSTRAINTS:
- NEVER RAISES: Every outcome, including strategy crashes, is an InterventionResult
- MISSING STRATEGY IS NON-FATAL: Reported as action="none"
- DETACHED FEEDBACK: The effectiveness check runs as a background task
  owned by the executor and can be cancelled at shutdown
- FEEDBACK ONLY FOR APPLIED FIXES: No check when nothing changed
"""

import asyncio
import logging
import secrets
import time
from dataclasses import dataclass, asdict
from typing import Optional, Dict, Any, List, Set

from .config import DEFAULT_EFFECTIVENESS_GRACE_SECONDS, DEFAULT_REGRESSION_EVENT_THRESHOLD
from .event_model import Event, EventFilter, EventSeverity, InterventionEvent
from .issue_classifier import IssueClassification
from .strategies import StrategyContext, StrategyRegistry, build_default_strategies

logger = logging.getLogger("action_executor")

REGRESSION_POLL_LIMIT = 10


# -----------------------------------------------------------------------------
# Intervention Result (Immutable)
# -----------------------------------------------------------------------------
@dataclass(frozen=True)
class InterventionResult:
    """Outcome of one intervention attempt."""
    success: bool
    intervention_id: str
    issue_type: str
    event_type: str
    action: str
    fix_applied: bool = False
    rollback_required: bool = False
    error: Optional[str] = None
    duration_ms: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def generate_intervention_id() -> str:
    return f"int-{int(time.time() * 1000)}-{secrets.token_hex(4)}"


# -----------------------------------------------------------------------------
# Action Executor
# -----------------------------------------------------------------------------
class ActionExecutor:
    """
    Dispatches classified issues to strategies.

    The strategy registry is built on first use unless one is supplied.
    """

    def __init__(
        self,
        context: StrategyContext,
        registry: Optional[StrategyRegistry] = None,
        effectiveness_grace_seconds: float = DEFAULT_EFFECTIVENESS_GRACE_SECONDS,
        regression_event_threshold: int = DEFAULT_REGRESSION_EVENT_THRESHOLD,
    ):
        self._context = context
        self._registry = registry
        self.effectiveness_grace_seconds = effectiveness_grace_seconds
        self.regression_event_threshold = regression_event_threshold
        self._checks: Set[asyncio.Task] = set()

    @property
    def registry(self) -> StrategyRegistry:
        if self._registry is None:
            self._registry = build_default_strategies(self._context)
            logger.info(f"Initialized {len(self._registry)} action strategies")
        return self._registry

    async def execute(
        self,
        event_type: str,
        classification: IssueClassification,
        events: List[Event],
    ) -> InterventionResult:
        intervention_id = generate_intervention_id()
        started = time.monotonic()

        strategy = None
        try:
            strategy = self.registry.get(classification.issue_type)
            if strategy is None:
                logger.warning(f"No strategy found for issue type: {classification.issue_type}")
                return InterventionResult(
                    success=False,
                    intervention_id=intervention_id,
                    issue_type=classification.issue_type,
                    event_type=event_type,
                    action="none",
                    error=f"No strategy found for issue type: {classification.issue_type}",
                )

            logger.info(
                f"Executing {strategy.name} for {classification.issue_type} "
                f"(intervention {intervention_id})"
            )
            outcome = await strategy.execute(classification, events)
            # Recurrences are counted from here on
            cursor = self._context.event_source.get_last_event_id()
        except Exception as e:
            name = strategy.name if strategy is not None else "lookup"
            logger.error(f"Strategy {name} failed for {classification.issue_type}: {e}")
            return InterventionResult(
                success=False,
                intervention_id=intervention_id,
                issue_type=classification.issue_type,
                event_type=event_type,
                action="error",
                error=str(e),
                duration_ms=(time.monotonic() - started) * 1000,
            )

        result = InterventionResult(
            success=outcome.success,
            intervention_id=intervention_id,
            issue_type=classification.issue_type,
            event_type=event_type,
            action=strategy.name,
            fix_applied=outcome.fix_applied,
            rollback_required=outcome.rollback_required,
            error=outcome.error,
            duration_ms=(time.monotonic() - started) * 1000,
        )

        if result.success and result.fix_applied:
            self._schedule_effectiveness_check(result, cursor)

        return result

    # -------------------------------------------------------------------------
    # Effectiveness Feedback
    # -------------------------------------------------------------------------

    def _schedule_effectiveness_check(self, result: InterventionResult, since: Optional[str]) -> None:
        task = asyncio.create_task(self._check_effectiveness(result, since))
        self._checks.add(task)
        task.add_done_callback(self._checks.discard)

    async def _check_effectiveness(self, result: InterventionResult, since: Optional[str]) -> None:
        """Re-poll the same event type after the grace period."""
        try:
            await asyncio.sleep(self.effectiveness_grace_seconds)

            source = self._context.event_source
            recurrences = source.poll(EventFilter(
                types=(result.event_type,),
                since=since,
                limit=REGRESSION_POLL_LIMIT,
            ))

            if len(recurrences) >= self.regression_event_threshold:
                logger.warning(
                    f"Intervention {result.intervention_id} may not have been effective: "
                    f"{len(recurrences)} {result.event_type} event(s) after fix"
                )
                source.emit(
                    InterventionEvent.POSSIBLE_REGRESSION.value,
                    {
                        "interventionId": result.intervention_id,
                        "issueType": result.issue_type,
                        "eventType": result.event_type,
                        "eventsAfterIntervention": len(recurrences),
                    },
                    severity=EventSeverity.WARN.value,
                )
            else:
                logger.info(f"Intervention {result.intervention_id} appears effective")
        except asyncio.CancelledError:
            logger.debug(f"Effectiveness check for {result.intervention_id} cancelled")
            raise
        except Exception as e:
            logger.error(f"Effectiveness check for {result.intervention_id} failed: {e}")

    @property
    def pending_checks(self) -> int:
        return sum(1 for task in self._checks if not task.done())

    async def wait_for_checks(self) -> None:
        """Wait for every scheduled effectiveness check to finish."""
        while self._checks:
            await asyncio.gather(*list(self._checks), return_exceptions=True)

    async def shutdown(self, cancel: bool = True) -> None:
        """Cancel (or drain) outstanding effectiveness checks."""
        if cancel:
            for task in list(self._checks):
                task.cancel()
        await self.wait_for_checks()
        logger.info("Action executor shut down")
