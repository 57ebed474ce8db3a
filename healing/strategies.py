"""
Action Strategies - Pluggable Remediations

Each strategy remediates one issue type. Strategies report their outcome as
a StrategyResult; they never decide whether they should run (the monitor's
gates do that) and never track their own effectiveness (the executor does).

CRITICAL CONSTRAINTS:
- ONE ISSUE TYPE PER STRATEGY: The registry maps issue_type -> strategy
- BACKUP BEFORE PATCH: Tuning files are copied before they are changed
- ATOMIC PATCH: Tuning files are replaced through a temp file
- HONEST fix_applied: Only True when persistent state actually changed

Tuning files are small YAML documents the pipeline reads at startup:

    features:
      sanitize_control_characters: false
      escape_literal_newlines: false
"""

import logging
import os
import shutil
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, asdict
from pathlib import Path
from typing import Optional, Dict, Any, List

import yaml

from .config import TUNING_DIR
from .event_model import (
    Event,
    EventSeverity,
    InterventionEvent,
    AGENT_UNBLOCKED_EVENT,
)
from .event_stream import EventSource
from .issue_classifier import IssueClassification, CONTRIBUTION_ISSUE_EVENT, most_common
from .state_store import StateStore

logger = logging.getLogger("action_strategies")


# -----------------------------------------------------------------------------
# Strategy Result
# -----------------------------------------------------------------------------
@dataclass(frozen=True)
class StrategyResult:
    success: bool
    fix_applied: bool = False
    rollback_required: bool = False
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def failure(cls, error: str) -> "StrategyResult":
        return cls(success=False, error=error)


@dataclass
class StrategyContext:
    """Collaborators every strategy may use."""
    event_source: EventSource
    state_store: StateStore
    tuning_dir: Path = TUNING_DIR


# -----------------------------------------------------------------------------
# Strategy Interface
# -----------------------------------------------------------------------------
class ActionStrategy(ABC):
    """A remediation for one issue type."""

    name: str = ""
    issue_type: str = ""

    def __init__(self, context: StrategyContext):
        self.context = context

    @abstractmethod
    async def execute(
        self,
        classification: IssueClassification,
        events: List[Event],
    ) -> StrategyResult:
        ...

    def _emit_fix_applied(self, reason: str, **data) -> None:
        self.context.event_source.emit(
            InterventionEvent.FIX_APPLIED.value,
            {"strategy": self.name, "reason": reason, **data},
            severity=EventSeverity.INFO.value,
        )


class StrategyRegistry:
    """issue_type -> strategy lookup."""

    def __init__(self):
        self._strategies: Dict[str, ActionStrategy] = {}

    def register(self, strategy: ActionStrategy) -> None:
        if strategy.issue_type in self._strategies:
            logger.warning(f"Replacing strategy for {strategy.issue_type}")
        self._strategies[strategy.issue_type] = strategy

    def get(self, issue_type: str) -> Optional[ActionStrategy]:
        return self._strategies.get(issue_type)

    def issue_types(self) -> List[str]:
        return list(self._strategies.keys())

    def __len__(self) -> int:
        return len(self._strategies)


# -----------------------------------------------------------------------------
# Tuning File Patch Strategies
# -----------------------------------------------------------------------------
class TuningPatchStrategy(ActionStrategy):
    """
    Enables feature flags in a YAML tuning file.

    Subclasses pick the file and which flags the evidence calls for.
    """

    filename: str = ""

    @property
    def tuning_path(self) -> Path:
        return Path(self.context.tuning_dir) / self.filename

    @abstractmethod
    def flags_for(self, classification: IssueClassification, events: List[Event]) -> List[str]:
        ...

    def describe(self, flags: List[str]) -> str:
        return f"Enabled {', '.join(flags)}"

    async def execute(
        self,
        classification: IssueClassification,
        events: List[Event],
    ) -> StrategyResult:
        path = self.tuning_path
        if not path.exists():
            return StrategyResult.failure(f"Tuning file not found: {path}")

        try:
            with open(path, "r") as f:
                document = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            return StrategyResult.failure(f"Tuning file {path.name} is not valid YAML: {e}")

        if not isinstance(document, dict):
            return StrategyResult.failure(f"Tuning file {path.name} must be a mapping")

        features = document.setdefault("features", {})
        if not isinstance(features, dict):
            return StrategyResult.failure(f"'features' in {path.name} must be a mapping")

        wanted = self.flags_for(classification, events)
        changed = [flag for flag in wanted if features.get(flag) is not True]
        if not changed:
            return await self.on_no_change(classification, wanted)

        for flag in changed:
            features[flag] = True

        backup = path.with_name(f"{path.name}.backup.{int(time.time() * 1000)}")
        shutil.copy2(path, backup)
        self._write_yaml(path, document)

        logger.info(f"[{self.name}] {self.describe(changed)} in {path.name} (backup: {backup.name})")
        self._emit_fix_applied(
            self.describe(changed),
            file=str(path),
            backup=str(backup),
            flags=changed,
        )
        return StrategyResult(success=True, fix_applied=True)

    async def on_no_change(
        self,
        classification: IssueClassification,
        flags: List[str],
    ) -> StrategyResult:
        logger.info(f"[{self.name}] No changes needed to {self.filename}")
        return StrategyResult(success=True, fix_applied=False)

    @staticmethod
    def _write_yaml(path: Path, document: Dict[str, Any]) -> None:
        temp_file = path.with_suffix(path.suffix + ".tmp")
        try:
            with open(temp_file, "w") as f:
                yaml.safe_dump(document, f, default_flow_style=False, sort_keys=False)
                f.flush()
                os.fsync(f.fileno())
            temp_file.replace(path)
        except OSError:
            if temp_file.exists():
                temp_file.unlink()
            raise


class JsonParsingStrategy(TuningPatchStrategy):
    """Turns on parser sanitizers matching the most common failure reason."""

    name = "enhance-json-parser"
    issue_type = "json-parsing-failure"
    filename = "json-parser.yaml"

    def flags_for(self, classification, events):
        reason = classification.context.get("mostCommonReason") or most_common([
            e.data["reason"] for e in events if isinstance(e.data.get("reason"), str)
        ]) or ""
        reason = reason.lower()

        flags = []
        if "control character" in reason or "bad control" in reason:
            flags.append("sanitize_control_characters")
        if "newline" in reason or "literal" in reason:
            flags.append("escape_literal_newlines")
        return flags


class BoundaryViolationStrategy(TuningPatchStrategy):
    """Filters out-of-module files before validation."""

    name = "enhance-boundary-enforcement"
    issue_type = "boundary-violation"
    filename = "workflow.yaml"

    def flags_for(self, classification, events):
        return ["early_file_filtering"]

    async def on_no_change(self, classification, flags):
        # Filtering already on: sharpen the warnings instead.
        logger.info(f"[{self.name}] Early filtering already enabled, enhancing boundary warnings")
        self._emit_fix_applied(
            "Enhanced boundary warning messages",
            file=str(self.tuning_path),
        )
        return StrategyResult(success=True, fix_applied=False)


class ValidationFailureStrategy(TuningPatchStrategy):
    """Adds recovery suggestions to validation gate errors."""

    name = "enhance-validation-gates"
    issue_type = "validation-failure"
    filename = "validation-gate.yaml"

    def flags_for(self, classification, events):
        return ["recovery_suggestions"]


class IpcConnectionStrategy(TuningPatchStrategy):
    """Retries agent IPC connections with exponential backoff."""

    name = "enhance-ipc-connection"
    issue_type = "ipc-connection-failure"
    filename = "agent-ipc.yaml"

    def flags_for(self, classification, events):
        return ["retry_with_backoff"]


# -----------------------------------------------------------------------------
# State Strategies
# -----------------------------------------------------------------------------
class TaskBlockingStrategy(ActionStrategy):
    """Resets the blocked task's retry counter and announces the unblock."""

    name = "unblock-task"
    issue_type = "task-blocked"

    async def execute(self, classification, events):
        blocked = [e for e in events if e.type == "task:blocked"]
        if not blocked:
            return StrategyResult.failure("No blocked tasks found in events")

        task_id = blocked[0].task_id or blocked[0].data.get("taskId")
        if not task_id:
            return StrategyResult.failure("No task ID found in blocked events")

        reasons = []
        for event in blocked:
            for key in ("reason", "error"):
                value = event.data.get(key)
                if isinstance(value, str) and value:
                    reasons.append(value)

        reset = await self.context.state_store.reset_retry_counts([task_id])
        if not reset:
            return StrategyResult.failure(f"Could not reset retry counter for task {task_id}")

        logger.info(f"[{self.name}] Unblocked task {task_id} (reset retry count)")
        self.context.event_source.emit(
            AGENT_UNBLOCKED_EVENT,
            {
                "taskIds": [task_id],
                "reason": f"Automated unblock after analysis: {', '.join(reasons)}",
                "resetRetryCount": True,
                "clearErrors": True,
            },
            severity=EventSeverity.INFO.value,
            task_id=task_id,
        )
        return StrategyResult(success=True, fix_applied=True)


# Contribution-mode kinds handled by a diagnostic notification only
DIAGNOSTIC_CONTRIBUTION_FIXES = {
    "module-confusion": "Enhanced module boundary warnings in prompts",
    "session-pollution": "Enhanced session ID generation to include targetModule",
    "target-module-context-loss": "Enhanced targetModule propagation in task metadata",
    "code-generation-degradation": "Flagged code generation degradation for review",
    "ai-provider-instability": "Flagged AI provider instability for review",
    "context-window-inefficiency": "Flagged context window inefficiency for review",
    "validation-gate-over-blocking": "Flagged validation gate over-blocking for review",
    "pattern-learning-inefficacy": "Flagged pattern learning inefficacy for review",
}


class ContributionModeStrategy(ActionStrategy):
    """Second-level dispatch on the contribution-mode sub-kind."""

    name = "fix-contribution-mode-issue"
    issue_type = CONTRIBUTION_ISSUE_EVENT

    def __init__(self, context: StrategyContext, boundary: Optional[ActionStrategy] = None):
        super().__init__(context)
        self._boundary = boundary or BoundaryViolationStrategy(context)

    async def execute(self, classification, events):
        kind = classification.context.get("primaryIssueType") or "unknown"

        if kind == "boundary-violations":
            return await self._boundary.execute(classification, events)

        if kind == "task-dependency-deadlock":
            return await self._break_deadlock(classification, events)

        if kind in DIAGNOSTIC_CONTRIBUTION_FIXES:
            logger.info(f"[{self.name}] Fixing {kind}")
            self.context.event_source.emit(
                InterventionEvent.FIX_APPLIED.value,
                {"strategy": f"fix-{kind}", "reason": DIAGNOSTIC_CONTRIBUTION_FIXES[kind]},
                severity=EventSeverity.INFO.value,
            )
            return StrategyResult(success=True, fix_applied=False)

        logger.warning(f"[{self.name}] Unknown contribution mode issue type: {kind}")
        return StrategyResult.failure(f"Unknown contribution mode issue type: {kind}")

    async def _break_deadlock(self, classification, events) -> StrategyResult:
        blocked = classification.context.get("blockedTasks")
        if isinstance(blocked, (list, tuple)):
            task_ids = [str(t) for t in blocked if t]
        else:
            task_ids = []
            for event in events:
                task_id = event.task_id or event.data.get("taskId")
                if task_id and task_id not in task_ids:
                    task_ids.append(task_id)

        reset = await self.context.state_store.reset_retry_counts(task_ids) if task_ids else 0
        logger.info(f"[{self.name}] Reset retry counters for {reset} deadlocked task(s)")
        self.context.event_source.emit(
            InterventionEvent.FIX_APPLIED.value,
            {
                "strategy": "fix-task-dependency-deadlock",
                "reason": f"Reset retry counters for {reset} blocked task(s)",
                "taskIds": task_ids,
            },
            severity=EventSeverity.INFO.value,
        )
        return StrategyResult(success=True, fix_applied=reset > 0)


def build_default_strategies(context: StrategyContext) -> StrategyRegistry:
    """Registry with every built-in strategy."""
    registry = StrategyRegistry()
    boundary = BoundaryViolationStrategy(context)
    for strategy in (
        JsonParsingStrategy(context),
        TaskBlockingStrategy(context),
        boundary,
        ValidationFailureStrategy(context),
        ContributionModeStrategy(context, boundary=boundary),
        IpcConnectionStrategy(context),
    ):
        registry.register(strategy)
    return registry
