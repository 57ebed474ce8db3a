"""
Action Executor Tests

Tests proving:
1. NEVER RAISES: Missing strategies and strategy crashes become results
2. DISPATCH: The registered strategy's outcome is reported faithfully
3. FEEDBACK: Applied fixes are re-checked and regressions emitted
4. OWNED TASKS: Pending checks can be cancelled at shutdown
"""

from healing.action_executor import ActionExecutor, generate_intervention_id
from healing.event_model import EventFilter, InterventionEvent
from healing.issue_classifier import IssueClassifier
from healing.strategies import ActionStrategy, StrategyRegistry, StrategyResult

from tests.conftest import async_test, make_event


class ExplodingStrategy(ActionStrategy):
    name = "explode"
    issue_type = "json-parsing-failure"

    async def execute(self, classification, events):
        raise RuntimeError("strategy crashed")


class StaticStrategy(ActionStrategy):
    name = "static"
    issue_type = "json-parsing-failure"

    def __init__(self, context, result):
        super().__init__(context)
        self.result = result
        self.calls = 0

    async def execute(self, classification, events):
        self.calls += 1
        return self.result


def _registry(*strategies):
    registry = StrategyRegistry()
    for strategy in strategies:
        registry.register(strategy)
    return registry


def _json_issue(reason="bad control character"):
    events = [make_event("json:parse_failed", {"reason": reason}) for _ in range(3)]
    return IssueClassifier().classify("json:parse_failed", events), events


def _regressions(stream):
    return stream.poll(EventFilter(types=(InterventionEvent.POSSIBLE_REGRESSION.value,)))


# =============================================================================
# Section 1: Dispatch Tests
# =============================================================================

class TestDispatch:

    @async_test
    async def test_missing_strategy_reports_none(self, strategy_context):
        executor = ActionExecutor(strategy_context, registry=StrategyRegistry())
        classification, events = _json_issue()

        result = await executor.execute("json:parse_failed", classification, events)

        assert result.success is False
        assert result.action == "none"
        assert result.error == "No strategy found for issue type: json-parsing-failure"
        assert result.intervention_id.startswith("int-")

    @async_test
    async def test_strategy_exception_reports_error(self, strategy_context):
        executor = ActionExecutor(
            strategy_context, registry=_registry(ExplodingStrategy(strategy_context))
        )
        classification, events = _json_issue()

        result = await executor.execute("json:parse_failed", classification, events)

        assert result.success is False
        assert result.action == "error"
        assert result.error == "strategy crashed"

    @async_test
    async def test_outcome_is_reported(self, strategy_context):
        strategy = StaticStrategy(
            strategy_context, StrategyResult(success=False, rollback_required=True, error="nope")
        )
        executor = ActionExecutor(strategy_context, registry=_registry(strategy))
        classification, events = _json_issue()

        result = await executor.execute("json:parse_failed", classification, events)

        assert strategy.calls == 1
        assert result.action == "static"
        assert result.rollback_required is True
        assert result.error == "nope"
        assert result.event_type == "json:parse_failed"
        assert executor.pending_checks == 0

    @async_test
    async def test_default_registry_built_lazily(self, strategy_context, tuning_dir):
        executor = ActionExecutor(strategy_context, effectiveness_grace_seconds=0)
        classification, events = _json_issue()

        result = await executor.execute("json:parse_failed", classification, events)
        await executor.shutdown()

        assert result.success is True
        assert result.fix_applied is True
        assert result.action == "enhance-json-parser"
        assert len(executor.registry) == 6

    @async_test
    async def test_registry_build_failure_reports_error(self, strategy_context, monkeypatch):
        def broken_build(context):
            raise RuntimeError("registry unavailable")

        monkeypatch.setattr("healing.action_executor.build_default_strategies", broken_build)
        executor = ActionExecutor(strategy_context)
        classification, events = _json_issue()

        result = await executor.execute("json:parse_failed", classification, events)

        assert result.success is False
        assert result.action == "error"
        assert result.error == "registry unavailable"
        assert executor.pending_checks == 0

    @async_test
    async def test_cursor_failure_reports_error(self, strategy_context, stream, monkeypatch):
        def broken_cursor():
            raise OSError("event log unreadable")

        monkeypatch.setattr(stream, "get_last_event_id", broken_cursor)
        strategy = StaticStrategy(strategy_context, StrategyResult(success=True, fix_applied=True))
        executor = ActionExecutor(
            strategy_context, registry=_registry(strategy), effectiveness_grace_seconds=0
        )
        classification, events = _json_issue()

        result = await executor.execute("json:parse_failed", classification, events)

        assert strategy.calls == 1
        assert result.success is False
        assert result.action == "error"
        assert result.error == "event log unreadable"
        assert executor.pending_checks == 0

    def test_intervention_ids_are_unique(self):
        assert generate_intervention_id() != generate_intervention_id()


# =============================================================================
# Section 2: Effectiveness Feedback Tests
# =============================================================================

class TestEffectivenessCheck:

    @async_test
    async def test_recurrence_emits_possible_regression(self, strategy_context, stream):
        strategy = StaticStrategy(strategy_context, StrategyResult(success=True, fix_applied=True))
        executor = ActionExecutor(
            strategy_context,
            registry=_registry(strategy),
            effectiveness_grace_seconds=0,
        )
        stream.emit("json:parse_failed", severity="error")
        classification, events = _json_issue()

        result = await executor.execute("json:parse_failed", classification, events)
        assert executor.pending_checks == 1
        for _ in range(3):
            stream.emit("json:parse_failed", severity="error")
        await executor.wait_for_checks()

        regressions = _regressions(stream)
        assert len(regressions) == 1
        assert regressions[0].severity == "warn"
        assert regressions[0].data == {
            "interventionId": result.intervention_id,
            "issueType": "json-parsing-failure",
            "eventType": "json:parse_failed",
            "eventsAfterIntervention": 3,
        }

    @async_test
    async def test_events_before_the_fix_are_not_counted(self, strategy_context, stream):
        strategy = StaticStrategy(strategy_context, StrategyResult(success=True, fix_applied=True))
        executor = ActionExecutor(
            strategy_context, registry=_registry(strategy), effectiveness_grace_seconds=0
        )
        for _ in range(5):
            stream.emit("json:parse_failed", severity="error")
        classification, events = _json_issue()

        await executor.execute("json:parse_failed", classification, events)
        stream.emit("json:parse_failed", severity="error")
        await executor.wait_for_checks()

        assert _regressions(stream) == []

    @async_test
    async def test_no_check_without_applied_fix(self, strategy_context, stream):
        strategy = StaticStrategy(strategy_context, StrategyResult(success=True, fix_applied=False))
        executor = ActionExecutor(
            strategy_context, registry=_registry(strategy), effectiveness_grace_seconds=0
        )
        classification, events = _json_issue()

        await executor.execute("json:parse_failed", classification, events)

        assert executor.pending_checks == 0

    @async_test
    async def test_custom_regression_threshold(self, strategy_context, stream):
        strategy = StaticStrategy(strategy_context, StrategyResult(success=True, fix_applied=True))
        executor = ActionExecutor(
            strategy_context,
            registry=_registry(strategy),
            effectiveness_grace_seconds=0,
            regression_event_threshold=1,
        )
        classification, events = _json_issue()

        await executor.execute("json:parse_failed", classification, events)
        stream.emit("json:parse_failed", severity="error")
        await executor.wait_for_checks()

        assert len(_regressions(stream)) == 1

    @async_test
    async def test_shutdown_cancels_pending_checks(self, strategy_context, stream):
        strategy = StaticStrategy(strategy_context, StrategyResult(success=True, fix_applied=True))
        executor = ActionExecutor(
            strategy_context, registry=_registry(strategy), effectiveness_grace_seconds=60
        )
        classification, events = _json_issue()

        await executor.execute("json:parse_failed", classification, events)
        assert executor.pending_checks == 1

        await executor.shutdown()

        assert executor.pending_checks == 0
        assert _regressions(stream) == []
