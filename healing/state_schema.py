"""
State Schema - Persisted Document Models

This module defines the schemas of the two documents the pipeline shares
on disk (execution state and metrics), their default contents, and the
validation entry point used by the state store.

CRITICAL CONSTRAINTS:
- STRICT EXECUTION STATE: Known nested fields are validated strictly
- LOOSE METRICS: Metrics only need their structural sections
- NON-NEGATIVE RETRIES: retryCounts values are >= 0
- NO RAISE ON HOT PATH: validate_document() returns a ValidationResult
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Optional, Dict, Any, List, Union

from pydantic import BaseModel, ConfigDict, Field, NonNegativeInt, ValidationError

logger = logging.getLogger("state_schema")

SCHEMA_VERSION = "1.0"


# -----------------------------------------------------------------------------
# Document Kinds
# -----------------------------------------------------------------------------
class DocumentKind(str, Enum):
    """Persisted documents managed by the state store."""
    EXECUTION_STATE = "execution-state"
    METRICS = "metrics"

    @property
    def filename(self) -> str:
        return f"{self.value}.json"


# -----------------------------------------------------------------------------
# Locked Enums
# -----------------------------------------------------------------------------
class WorkflowState(str, Enum):
    """Workflow states of the pipeline's active context."""
    IDLE = "idle"
    FETCHING_TASK = "fetching-task"
    EXECUTING_AI = "executing-ai"
    APPLYING_CHANGES = "applying-changes"
    AWAITING_APPROVAL = "awaiting-approval"
    RUNNING_POST_APPLY_HOOKS = "running-post-apply-hooks"
    RUNNING_PRE_TEST_HOOKS = "running-pre-test-hooks"
    RUNNING_TESTS = "running-tests"
    ANALYZING_LOGS = "analyzing-logs"
    MARKING_DONE = "marking-done"
    CREATING_FIX_TASK = "creating-fix-task"


class PrdStatus(str, Enum):
    """Status of a PRD, PRD set or phase."""
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"
    BLOCKED = "blocked"


# -----------------------------------------------------------------------------
# Execution State Models
# -----------------------------------------------------------------------------
class _Strict(BaseModel):
    model_config = ConfigDict(extra="forbid", use_enum_values=True)


class ActiveContext(_Strict):
    prdSetId: Optional[str] = None
    prdId: Optional[str] = None
    phaseId: Optional[int] = None
    taskId: Optional[str] = None
    workflowState: WorkflowState = WorkflowState.IDLE
    startedAt: Optional[str] = None


class FileCreationTracking(_Strict):
    requested: List[str] = Field(default_factory=list)
    created: List[str] = Field(default_factory=list)
    missing: List[str] = Field(default_factory=list)
    wrongLocation: List[str] = Field(default_factory=list)


class InvestigationTracking(_Strict):
    requested: bool = False
    skipped: bool = False
    created: NonNegativeInt = 0


class PhaseState(_Strict):
    phaseId: int
    status: PrdStatus
    startTime: Optional[str] = None
    endTime: Optional[str] = None
    completedTasks: NonNegativeInt = 0
    totalTasks: NonNegativeInt = 0


class CurrentTask(_Strict):
    id: str
    status: str
    startedAt: Optional[str] = None


class PRDState(_Strict):
    prdId: str
    prdSetId: Optional[str] = None
    status: PrdStatus
    createdAt: Optional[str] = None
    updatedAt: Optional[str] = None
    startTime: Optional[str] = None
    endTime: Optional[str] = None
    cancelledAt: Optional[str] = None
    completedPhases: List[int] = Field(default_factory=list)
    currentPhase: Optional[int] = None
    currentTask: Optional[CurrentTask] = None
    phases: Dict[int, PhaseState] = Field(default_factory=dict)
    retryCounts: Dict[str, NonNegativeInt] = Field(default_factory=dict)


class PRDSetState(_Strict):
    setId: str
    status: PrdStatus
    createdAt: Optional[str] = None
    updatedAt: Optional[str] = None
    startTime: Optional[str] = None
    endTime: Optional[str] = None
    cancelledAt: Optional[str] = None
    prds: List[str] = Field(default_factory=list)
    completedPhases: List[str] = Field(default_factory=list)
    currentPhase: Optional[int] = None


class ContributionState(_Strict):
    fileCreation: Dict[str, FileCreationTracking] = Field(default_factory=dict)
    investigationTasks: Dict[str, InvestigationTracking] = Field(default_factory=dict)


class ContributionModeState(_Strict):
    active: bool = False
    activatedAt: Optional[str] = None
    prdPath: Optional[str] = None


class SessionResponse(_Strict):
    text: Optional[str] = None
    raw: Optional[Any] = None


class SessionHistoryEntry(_Strict):
    requestId: Optional[str] = None
    prompt: Optional[str] = None
    response: Optional[SessionResponse] = None
    timestamp: str
    success: Optional[bool] = None


class SessionContext(_Strict):
    prdId: Optional[str] = None
    taskIds: List[str] = Field(default_factory=list)


class SessionState(_Strict):
    sessionId: str
    createdAt: str
    lastUsed: str
    context: SessionContext = Field(default_factory=SessionContext)
    history: List[SessionHistoryEntry] = Field(default_factory=list)


class ExecutionState(BaseModel):
    """
    Unified execution state of the pipeline.

    Unknown top-level fields are carried through untouched so documents
    written by newer pipeline versions survive a round trip.
    """
    model_config = ConfigDict(extra="allow", use_enum_values=True)

    version: Union[int, float, str] = SCHEMA_VERSION
    updatedAt: str
    active: ActiveContext
    prdSets: Dict[str, PRDSetState] = Field(default_factory=dict)
    prds: Dict[str, PRDState] = Field(default_factory=dict)
    contribution: ContributionState = Field(default_factory=ContributionState)
    contributionMode: ContributionModeState = Field(default_factory=ContributionModeState)
    sessions: Dict[str, SessionState] = Field(default_factory=dict)
    # Retry counters for tasks no PRD tracks
    retryCounts: Dict[str, NonNegativeInt] = Field(default_factory=dict)


# -----------------------------------------------------------------------------
# Metrics Model (Loose)
# -----------------------------------------------------------------------------
class MetricsDocument(BaseModel):
    """Hierarchical metrics; only the top-level sections are checked."""
    model_config = ConfigDict(extra="allow")

    version: Union[int, float, str] = SCHEMA_VERSION
    updatedAt: str
    runs: List[Any] = Field(default_factory=list)
    prdSets: Dict[str, Any] = Field(default_factory=dict)
    prds: Dict[str, Any] = Field(default_factory=dict)
    phases: Dict[str, Any] = Field(default_factory=dict)
    features: Dict[str, Any] = Field(default_factory=dict)
    parallel: Dict[str, Any] = Field(default_factory=lambda: {"executions": []})
    schema_: Dict[str, Any] = Field(
        default_factory=lambda: {"operations": [], "metrics": {}},
        alias="schema",
    )
    insights: Dict[str, Any] = Field(default_factory=dict)
    summary: Dict[str, Any] = Field(default_factory=dict)


_MODELS = {
    DocumentKind.EXECUTION_STATE: ExecutionState,
    DocumentKind.METRICS: MetricsDocument,
}


# -----------------------------------------------------------------------------
# Errors & Results
# -----------------------------------------------------------------------------
class DocumentValidationError(Exception):
    """Document failed schema validation; carries structured details."""
    def __init__(self, code: str, message: str, details: Dict[str, Any] = None):
        self.code = code
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "error": True,
            "code": self.code,
            "message": self.message,
            "details": self.details,
        }


@dataclass(frozen=True)
class ValidationResult:
    """Outcome of validating a document: either a document or an error."""
    ok: bool
    document: Optional[Dict[str, Any]] = None
    error: Optional[DocumentValidationError] = None


# -----------------------------------------------------------------------------
# Validation & Defaults
# -----------------------------------------------------------------------------
def now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def validate_document(kind: DocumentKind, data: Any) -> ValidationResult:
    """
    Validate raw data against the schema of `kind`.

    Returns the normalized JSON-compatible document on success.
    """
    if not isinstance(data, dict):
        return ValidationResult(
            ok=False,
            error=DocumentValidationError(
                code="NOT_AN_OBJECT",
                message=f"{kind.value} must be a JSON object, got {type(data).__name__}",
                details={"kind": kind.value},
            ),
        )

    model = _MODELS[DocumentKind(kind)]
    try:
        parsed = model.model_validate(data)
    except ValidationError as e:
        return ValidationResult(
            ok=False,
            error=DocumentValidationError(
                code="SCHEMA_VIOLATION",
                message=f"{kind.value} failed validation with {e.error_count()} error(s)",
                details={
                    "kind": kind.value,
                    "errors": [
                        {"loc": ".".join(str(p) for p in err["loc"]), "msg": err["msg"]}
                        for err in e.errors()
                    ],
                },
            ),
        )

    return ValidationResult(
        ok=True,
        document=parsed.model_dump(mode="json", by_alias=True, exclude_none=True),
    )


def default_execution_state() -> Dict[str, Any]:
    """A fresh execution state: idle, empty maps, contribution mode off."""
    return {
        "version": SCHEMA_VERSION,
        "updatedAt": now_iso(),
        "active": {"workflowState": WorkflowState.IDLE.value},
        "prdSets": {},
        "prds": {},
        "contribution": {"fileCreation": {}, "investigationTasks": {}},
        "contributionMode": {"active": False},
        "sessions": {},
        "retryCounts": {},
    }


def default_metrics() -> Dict[str, Any]:
    """A fresh metrics document with every section present and empty."""
    return {
        "version": SCHEMA_VERSION,
        "updatedAt": now_iso(),
        "runs": [],
        "prdSets": {},
        "prds": {},
        "phases": {},
        "features": {},
        "parallel": {"executions": []},
        "schema": {"operations": [], "metrics": {}},
        "insights": {
            "efficiency": {},
            "trends": {},
            "bottlenecks": {},
            "quality": {},
            "resources": {},
        },
        "summary": {},
    }


def default_document(kind: DocumentKind) -> Dict[str, Any]:
    if DocumentKind(kind) == DocumentKind.EXECUTION_STATE:
        return default_execution_state()
    return default_metrics()
