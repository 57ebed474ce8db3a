"""
Issue Classifier - Rule-Based Event Classification

Turns a bucket of same-type events into an IssueClassification: what kind
of problem it is, how sure we are, how bad it is, and which remediation
should handle it.

CRITICAL CONSTRAINTS:
- DETERMINISTIC: Same events always produce the same classification
- PREFIX DISPATCH: The event type prefix selects the classification rule
- NO SIDE EFFECTS: Classification never emits events or touches state
- FALLBACK: Unrecognized types become "unknown-issue" at low confidence
"""

import logging
from dataclasses import dataclass, field, asdict
from enum import Enum
from typing import Optional, Dict, Any, List, Callable, Tuple

from .event_model import Event, IssueSeverity

logger = logging.getLogger("issue_classifier")


# -----------------------------------------------------------------------------
# Issue Category Enum (LOCKED)
# -----------------------------------------------------------------------------
class IssueCategory(str, Enum):
    JSON_PARSING = "json-parsing"
    TASK_EXECUTION = "task-execution"
    BOUNDARY_ENFORCEMENT = "boundary-enforcement"
    VALIDATION = "validation"
    CONTRIBUTION_MODE = "contribution-mode"
    IPC = "ipc"
    AGENT = "agent"
    HEALTH = "health"
    OTHER = "other"


CONTRIBUTION_ISSUE_EVENT = "contribution:issue_detected"

# Contribution-mode sub-kinds that always classify as critical
CRITICAL_CONTRIBUTION_ISSUES = frozenset({
    "boundary-violations",
    "change:unauthorized",
    "task-dependency-deadlock",
})
HIGH_CONTRIBUTION_ISSUES = frozenset({
    "code-generation-degradation",
    "ai-provider-instability",
})
MEDIUM_CONTRIBUTION_ISSUES = frozenset({
    "context-window-inefficiency",
    "validation-gate-over-blocking",
    "pattern-learning-inefficacy",
})

# Diagnostic fields copied from contribution events into the context
CONTRIBUTION_DIAGNOSTIC_FIELDS: Tuple[str, ...] = (
    "degradationRate",
    "successRateTrend",
    "efficiencyRatio",
    "missingFileRate",
    "blockedTasks",
    "circularDependencies",
    "avgWaitTime",
    "successRate",
    "immediateFailureRate",
    "falsePositiveRate",
    "blockedValidChanges",
    "errorRate",
    "timeoutRate",
    "qualityTrend",
    "stalledPhases",
    "avgProgressRate",
    "stallDuration",
    "matchToApplicationRate",
    "applicationSuccessRate",
    "recurringPatternRate",
    "validationTimeTrend",
    "inconsistencyRate",
    "memoryUsageTrend",
    "diskUsageTrend",
    "filteredFileRate",
    "violationRate",
)


# -----------------------------------------------------------------------------
# Issue Classification (Immutable)
# -----------------------------------------------------------------------------
@dataclass(frozen=True)
class IssueClassification:
    """Result of classifying a bucket of events."""
    issue_type: str
    category: str
    confidence: float
    severity: str
    pattern: str
    suggested_action: str
    context: Dict[str, Any] = field(default_factory=dict)

    def __post_init__(self):
        if not 0.0 <= self.confidence <= 1.0:
            raise ValueError(f"Confidence must be between 0 and 1, got {self.confidence}")
        if self.severity not in {s.value for s in IssueSeverity}:
            raise ValueError(f"Invalid severity: {self.severity}")

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def most_common(values: List[str]) -> Optional[str]:
    """Majority vote; ties resolve to the value seen first."""
    counts: Dict[str, int] = {}
    for value in values:
        counts[value] = counts.get(value, 0) + 1

    best = None
    best_count = 0
    for value, count in counts.items():
        if count > best_count:
            best, best_count = value, count
    return best


def _string_field(event: Event, key: str) -> Optional[str]:
    value = event.data.get(key)
    return value if isinstance(value, str) and value else None


def _task_id(event: Event) -> Optional[str]:
    return event.task_id or _string_field(event, "taskId")


def _unique(values) -> List[Any]:
    seen = []
    for value in values:
        if value and value not in seen:
            seen.append(value)
    return seen


# -----------------------------------------------------------------------------
# Issue Classifier
# -----------------------------------------------------------------------------
class IssueClassifier:
    """
    Classifies event buckets by event-type prefix.

    Rules are checked in order; `contribution:issue_detected` is matched
    exactly, every other rule by prefix.
    """

    def __init__(self):
        self._rules: List[Tuple[Callable[[str], bool], Callable[[List[Event]], IssueClassification]]] = [
            (lambda t: t.startswith("json:"), self._classify_json_parsing),
            (lambda t: t.startswith("task:"), self._classify_task_execution),
            (lambda t: t.startswith(("file:", "change:")), self._classify_boundary_enforcement),
            (lambda t: t.startswith("validation:"), self._classify_validation),
            (lambda t: t == CONTRIBUTION_ISSUE_EVENT, self._classify_contribution_mode),
            (lambda t: t.startswith("ipc:"), self._classify_ipc),
            (lambda t: t.startswith("agent:"), self._classify_agent),
            (lambda t: t.startswith("health:"), self._classify_health),
        ]

    def classify(self, event_type: str, events: List[Event]) -> IssueClassification:
        for matches, rule in self._rules:
            if matches(event_type):
                classification = rule(events)
                break
        else:
            classification = self._classify_generic(events)

        logger.debug(
            f"Classified {len(events)} {event_type} event(s) as {classification.issue_type} "
            f"(confidence={classification.confidence:.2f}, severity={classification.severity})"
        )
        return classification

    # -------------------------------------------------------------------------
    # Rules
    # -------------------------------------------------------------------------

    def _classify_json_parsing(self, events: List[Event]) -> IssueClassification:
        failures = [e for e in events if e.type == "json:parse_failed"]
        retries = [e for e in events if e.type == "json:parse_retry"]
        ai_fallback = [
            e for e in events
            if e.type in ("json:ai_fallback_success", "json:ai_fallback_failed")
        ]

        total_attempts = len(failures) + len(retries)
        confidence = 0.85
        if retries:
            confidence = 0.75
        if ai_fallback:
            confidence = 0.65

        reason = most_common([r for r in (_string_field(e, "reason") for e in failures) if r])

        return IssueClassification(
            issue_type="json-parsing-failure",
            category=IssueCategory.JSON_PARSING.value,
            confidence=confidence,
            severity=(IssueSeverity.HIGH if total_attempts >= 5 else IssueSeverity.MEDIUM).value,
            pattern=f"JSON parsing failures ({total_attempts} attempts, {reason or 'unknown reason'})",
            suggested_action="enhance-json-parser",
            context={
                "totalAttempts": total_attempts,
                "failureCount": len(failures),
                "retryCount": len(retries),
                "aiFallbackCount": len(ai_fallback),
                "mostCommonReason": reason,
            },
        )

    def _classify_task_execution(self, events: List[Event]) -> IssueClassification:
        blocked = [e for e in events if e.type == "task:blocked"]
        failed = [e for e in events if e.type == "task:failed"]
        task_ids = _unique(_task_id(e) for e in events)

        reasons = []
        for event in blocked + failed:
            reason = _string_field(event, "reason") or _string_field(event, "error")
            if reason:
                reasons.append(reason)
        reason = most_common(reasons)

        has_retry_pattern = any(
            isinstance(e.data.get("retryCount"), (int, float)) and e.data["retryCount"] > 0
            for e in events
        )
        confidence = 0.80 if len(task_ids) == 1 else 0.70
        if has_retry_pattern:
            confidence = 0.75

        label = "Blocked" if blocked else "Failed"
        return IssueClassification(
            issue_type="task-blocked" if blocked else "task-failed",
            category=IssueCategory.TASK_EXECUTION.value,
            confidence=confidence,
            severity=IssueSeverity.HIGH.value,
            pattern=f"{label} task(s) ({len(task_ids)} unique, {reason or 'unknown reason'})",
            suggested_action="unblock-task",
            context={
                "blockedCount": len(blocked),
                "failedCount": len(failed),
                "taskIds": task_ids,
                "mostCommonReason": reason,
                "hasRetryPattern": has_retry_pattern,
            },
        )

    def _classify_boundary_enforcement(self, events: List[Event]) -> IssueClassification:
        filtered = [e for e in events if e.type == "file:filtered"]
        violations = [e for e in events if e.type == "file:boundary_violation"]
        unauthorized = [e for e in events if e.type == "change:unauthorized"]

        if violations or unauthorized:
            return IssueClassification(
                issue_type="boundary-violation",
                category=IssueCategory.BOUNDARY_ENFORCEMENT.value,
                confidence=0.90,
                severity=IssueSeverity.CRITICAL.value,
                pattern=(
                    f"Boundary violations detected ({len(violations)} violations, "
                    f"{len(unauthorized)} unauthorized)"
                ),
                suggested_action="enhance-boundary-enforcement",
                context={
                    "violationCount": len(violations),
                    "unauthorizedCount": len(unauthorized),
                    "targetModules": _unique(e.target_module for e in events),
                },
            )

        modules = _unique(e.target_module for e in events)
        return IssueClassification(
            issue_type="excessive-file-filtering",
            category=IssueCategory.BOUNDARY_ENFORCEMENT.value,
            confidence=0.75 if len(modules) > 1 else 0.70,
            severity=(IssueSeverity.HIGH if len(filtered) >= 10 else IssueSeverity.MEDIUM).value,
            pattern=f"Excessive file filtering ({len(filtered)} files, {len(modules)} modules)",
            suggested_action="enhance-boundary-warnings",
            context={
                "filteredCount": len(filtered),
                "targetModules": modules,
                "hasMultipleModules": len(modules) > 1,
            },
        )

    def _classify_validation(self, events: List[Event]) -> IssueClassification:
        failed = [e for e in events if e.type == "validation:failed"]
        suggestions = [e for e in events if e.type == "validation:error_with_suggestion"]
        category = most_common([c for c in (_string_field(e, "category") for e in failed) if c])

        return IssueClassification(
            issue_type="validation-failure",
            category=IssueCategory.VALIDATION.value,
            confidence=0.75 if suggestions else 0.70,
            severity=IssueSeverity.MEDIUM.value,
            pattern=f"Validation failures ({len(failed)} failures, {category or 'various categories'})",
            suggested_action="enhance-validation-gates",
            context={
                "failureCount": len(failed),
                "suggestionCount": len(suggestions),
                "mostCommonCategory": category,
            },
        )

    def _classify_contribution_mode(self, events: List[Event]) -> IssueClassification:
        issue_types: List[str] = []
        diagnostics: Dict[str, Any] = {}

        for event in events:
            kind = _string_field(event, "issueType")
            if not kind:
                continue
            if kind not in issue_types:
                issue_types.append(kind)
            for key in CONTRIBUTION_DIAGNOSTIC_FIELDS:
                if event.data.get(key) is not None:
                    diagnostics[key] = event.data[key]

        primary = issue_types[0] if issue_types else "unknown"

        confidence = 0.75 if len(issue_types) > 1 else 0.85
        if primary in CRITICAL_CONTRIBUTION_ISSUES:
            confidence = 0.90
            severity = IssueSeverity.CRITICAL
        elif primary in HIGH_CONTRIBUTION_ISSUES:
            severity = IssueSeverity.HIGH
        elif primary in MEDIUM_CONTRIBUTION_ISSUES:
            severity = IssueSeverity.MEDIUM
        else:
            severity = IssueSeverity.HIGH

        return IssueClassification(
            issue_type=CONTRIBUTION_ISSUE_EVENT,
            category=IssueCategory.CONTRIBUTION_MODE.value,
            confidence=confidence,
            severity=severity.value,
            pattern=f"Contribution mode issue: {primary} ({len(issue_types)} types detected)",
            suggested_action=f"fix-{primary}",
            context={
                "issueTypes": issue_types,
                "primaryIssueType": primary,
                **diagnostics,
            },
        )

    def _classify_ipc(self, events: List[Event]) -> IssueClassification:
        failed = [e for e in events if e.type == "ipc:connection_failed"]
        retries = [e for e in events if e.type == "ipc:connection_retry"]
        consistent = len(failed) >= 3

        return IssueClassification(
            issue_type="ipc-connection-failure",
            category=IssueCategory.IPC.value,
            confidence=0.85 if consistent else 0.70,
            severity=IssueSeverity.HIGH.value,
            pattern=f"IPC connection failures ({len(failed)} failures, {len(retries)} retries)",
            suggested_action="enhance-ipc-connection",
            context={
                "failureCount": len(failed),
                "retryCount": len(retries),
                "hasRetryPattern": bool(retries),
                "isConsistent": consistent,
            },
        )

    def _classify_agent(self, events: List[Event]) -> IssueClassification:
        errors = [e for e in events if e.type == "agent:error"]
        return IssueClassification(
            issue_type="agent-error",
            category=IssueCategory.AGENT.value,
            confidence=0.60,
            severity=IssueSeverity.MEDIUM.value,
            pattern=f"Agent errors ({len(errors)} errors)",
            suggested_action="enhance-error-handling",
            context={"errorCount": len(errors)},
        )

    def _classify_health(self, events: List[Event]) -> IssueClassification:
        failed = [e for e in events if e.type == "health:check_failed"]
        return IssueClassification(
            issue_type="health-check-failure",
            category=IssueCategory.HEALTH.value,
            confidence=0.50,
            severity=IssueSeverity.HIGH.value,
            pattern=f"Health check failures ({len(failed)} failures)",
            suggested_action="investigate-site-health",
            context={"failureCount": len(failed)},
        )

    def _classify_generic(self, events: List[Event]) -> IssueClassification:
        return IssueClassification(
            issue_type="unknown-issue",
            category=IssueCategory.OTHER.value,
            confidence=0.50,
            severity=IssueSeverity.MEDIUM.value,
            pattern=f"Unknown issue pattern ({len(events)} events)",
            suggested_action="analyze-pattern",
            context={
                "eventCount": len(events),
                "eventTypes": _unique(e.type for e in events),
            },
        )


logger.info("Issue Classifier module loaded")
