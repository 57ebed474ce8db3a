"""
Issue Classifier Tests

Tests proving:
1. PREFIX DISPATCH: Each event family maps to its issue type and action
2. CONFIDENCE: Retry, fallback and uniqueness signals adjust confidence
3. SEVERITY: Volume and sub-kind drive severity
4. FALLBACK: Unknown types classify as unknown-issue
"""

import pytest

from healing.issue_classifier import (
    CONTRIBUTION_ISSUE_EVENT,
    IssueClassification,
    IssueClassifier,
    most_common,
)

from tests.conftest import make_event


@pytest.fixture
def classifier():
    return IssueClassifier()


# =============================================================================
# Section 1: JSON Parsing
# =============================================================================

class TestJsonParsing:

    def test_repeated_failures(self, classifier):
        events = [
            make_event("json:parse_failed", {"reason": "bad control character"})
            for _ in range(3)
        ]

        result = classifier.classify("json:parse_failed", events)

        assert result.issue_type == "json-parsing-failure"
        assert result.category == "json-parsing"
        assert result.confidence == 0.85
        assert result.severity == "medium"
        assert result.suggested_action == "enhance-json-parser"
        assert result.context["mostCommonReason"] == "bad control character"
        assert result.context["totalAttempts"] == 3

    def test_retries_lower_confidence(self, classifier):
        events = [make_event("json:parse_failed"), make_event("json:parse_retry")]
        assert classifier.classify("json:parse_failed", events).confidence == 0.75

    def test_ai_fallback_lowers_confidence_further(self, classifier):
        events = [
            make_event("json:parse_failed"),
            make_event("json:parse_retry"),
            make_event("json:ai_fallback_failed"),
        ]
        assert classifier.classify("json:parse_failed", events).confidence == 0.65

    def test_five_attempts_is_high_severity(self, classifier):
        events = [make_event("json:parse_failed") for _ in range(3)]
        events += [make_event("json:parse_retry") for _ in range(2)]
        assert classifier.classify("json:parse_failed", events).severity == "high"


# =============================================================================
# Section 2: Task Execution
# =============================================================================

class TestTaskExecution:

    def test_single_blocked_task(self, classifier):
        events = [make_event("task:blocked", {"taskId": "t-42", "reason": "missing dependency"})]

        result = classifier.classify("task:blocked", events)

        assert result.issue_type == "task-blocked"
        assert result.context["taskIds"] == ["t-42"]
        assert result.context["mostCommonReason"] == "missing dependency"
        assert result.confidence == 0.80
        assert result.severity == "high"
        assert result.suggested_action == "unblock-task"

    def test_failed_tasks_across_many_ids(self, classifier):
        events = [
            make_event("task:failed", {"error": "boom"}, task_id="t-1"),
            make_event("task:failed", {"error": "boom"}, task_id="t-2"),
        ]

        result = classifier.classify("task:failed", events)

        assert result.issue_type == "task-failed"
        assert result.confidence == 0.70
        assert result.context["taskIds"] == ["t-1", "t-2"]
        assert result.context["mostCommonReason"] == "boom"

    def test_retry_pattern(self, classifier):
        events = [make_event("task:blocked", {"retryCount": 2}, task_id="t-1")]

        result = classifier.classify("task:blocked", events)

        assert result.confidence == 0.75
        assert result.context["hasRetryPattern"] is True


# =============================================================================
# Section 3: Boundary Enforcement
# =============================================================================

class TestBoundaryEnforcement:

    def test_violation_is_critical(self, classifier):
        events = [make_event("file:boundary_violation", target_module="core")]

        result = classifier.classify("file:boundary_violation", events)

        assert result.issue_type == "boundary-violation"
        assert result.confidence == 0.90
        assert result.severity == "critical"
        assert result.suggested_action == "enhance-boundary-enforcement"

    def test_unauthorized_change_routes_to_boundary(self, classifier):
        result = classifier.classify("change:unauthorized", [make_event("change:unauthorized")])

        assert result.issue_type == "boundary-violation"
        assert result.context["unauthorizedCount"] == 1

    def test_filtering_across_modules(self, classifier):
        events = [
            make_event("file:filtered", severity="warn", target_module="core"),
            make_event("file:filtered", severity="warn", target_module="ui"),
        ]

        result = classifier.classify("file:filtered", events)

        assert result.issue_type == "excessive-file-filtering"
        assert result.confidence == 0.75
        assert result.severity == "medium"
        assert result.context["targetModules"] == ["core", "ui"]

    def test_heavy_filtering_in_one_module(self, classifier):
        events = [make_event("file:filtered", target_module="core") for _ in range(10)]

        result = classifier.classify("file:filtered", events)

        assert result.confidence == 0.70
        assert result.severity == "high"


# =============================================================================
# Section 4: Validation, IPC, Agent, Health
# =============================================================================

class TestOtherFamilies:

    def test_validation_failures(self, classifier):
        events = [
            make_event("validation:failed", {"category": "syntax"}),
            make_event("validation:failed", {"category": "syntax"}),
            make_event("validation:error_with_suggestion"),
        ]

        result = classifier.classify("validation:failed", events)

        assert result.issue_type == "validation-failure"
        assert result.confidence == 0.75
        assert result.context["mostCommonCategory"] == "syntax"

    def test_consistent_ipc_failures(self, classifier):
        events = [make_event("ipc:connection_failed") for _ in range(3)]

        result = classifier.classify("ipc:connection_failed", events)

        assert result.issue_type == "ipc-connection-failure"
        assert result.confidence == 0.85
        assert result.context["isConsistent"] is True

    def test_sporadic_ipc_failures(self, classifier):
        events = [make_event("ipc:connection_failed"), make_event("ipc:connection_retry")]

        result = classifier.classify("ipc:connection_failed", events)

        assert result.confidence == 0.70
        assert result.context["hasRetryPattern"] is True

    def test_agent_errors(self, classifier):
        result = classifier.classify("agent:error", [make_event("agent:error")])
        assert (result.issue_type, result.confidence) == ("agent-error", 0.60)

    def test_health_failures(self, classifier):
        result = classifier.classify("health:check_failed", [make_event("health:check_failed")])
        assert result.issue_type == "health-check-failure"
        assert result.suggested_action == "investigate-site-health"

    def test_unknown_type_falls_back(self, classifier):
        events = [make_event("mystery:event"), make_event("mystery:event")]

        result = classifier.classify("mystery:event", events)

        assert result.issue_type == "unknown-issue"
        assert result.confidence == 0.50
        assert result.context == {"eventCount": 2, "eventTypes": ["mystery:event"]}


# =============================================================================
# Section 5: Contribution Mode
# =============================================================================

class TestContributionMode:

    def test_critical_kind(self, classifier):
        events = [make_event(CONTRIBUTION_ISSUE_EVENT, {
            "issueType": "task-dependency-deadlock",
            "blockedTasks": ["t-1", "t-2"],
            "circularDependencies": 1,
        })]

        result = classifier.classify(CONTRIBUTION_ISSUE_EVENT, events)

        assert result.issue_type == CONTRIBUTION_ISSUE_EVENT
        assert result.confidence == 0.90
        assert result.severity == "critical"
        assert result.suggested_action == "fix-task-dependency-deadlock"
        assert result.context["blockedTasks"] == ["t-1", "t-2"]
        assert result.context["primaryIssueType"] == "task-dependency-deadlock"

    def test_multiple_kinds_lower_confidence(self, classifier):
        events = [
            make_event(CONTRIBUTION_ISSUE_EVENT, {"issueType": "context-window-inefficiency"}),
            make_event(CONTRIBUTION_ISSUE_EVENT, {"issueType": "ai-provider-instability"}),
        ]

        result = classifier.classify(CONTRIBUTION_ISSUE_EVENT, events)

        assert result.confidence == 0.75
        assert result.severity == "medium"
        assert result.context["issueTypes"] == [
            "context-window-inefficiency",
            "ai-provider-instability",
        ]

    def test_high_kind(self, classifier):
        events = [make_event(CONTRIBUTION_ISSUE_EVENT, {"issueType": "code-generation-degradation"})]
        result = classifier.classify(CONTRIBUTION_ISSUE_EVENT, events)
        assert (result.confidence, result.severity) == (0.85, "high")

    def test_missing_kind_is_unknown(self, classifier):
        result = classifier.classify(CONTRIBUTION_ISSUE_EVENT, [make_event(CONTRIBUTION_ISSUE_EVENT)])
        assert result.context["primaryIssueType"] == "unknown"
        assert result.suggested_action == "fix-unknown"

    def test_other_contribution_events_are_generic(self, classifier):
        result = classifier.classify("contribution:other", [make_event("contribution:other")])
        assert result.issue_type == "unknown-issue"


# =============================================================================
# Section 6: Helpers
# =============================================================================

class TestHelpers:

    def test_most_common_ties_resolve_to_first_seen(self):
        assert most_common(["b", "a", "a", "b"]) == "b"
        assert most_common([]) is None

    def test_classification_rejects_bad_confidence(self):
        with pytest.raises(ValueError):
            IssueClassification(
                issue_type="x", category="other", confidence=1.5,
                severity="low", pattern="", suggested_action="none",
            )

    def test_deterministic(self, classifier):
        events = [make_event("json:parse_failed", {"reason": "r"})]
        assert classifier.classify("json:parse_failed", events) == classifier.classify(
            "json:parse_failed", events
        )
