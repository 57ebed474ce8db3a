"""
Event Model & Severity Enums

This module defines the data structures shared by the self-healing loop:
operational events, the filters used to query them, and the names of the
events the loop itself emits.

CRITICAL CONSTRAINTS:
- IMMUTABLE: Events are frozen once created
- MONOTONIC IDS: event_id doubles as the poll cursor
- UTC ONLY: All timestamps are ISO-8601 UTC
"""

from dataclasses import dataclass, field, asdict
from datetime import datetime, timezone
from enum import Enum
from typing import Optional, Dict, Any, List, Tuple


# -----------------------------------------------------------------------------
# Event Severity Enum (LOCKED)
# -----------------------------------------------------------------------------
class EventSeverity(str, Enum):
    """
    Severity of an operational event.

    This enum is LOCKED - the monitor polls WARN and above.
    """
    INFO = "info"
    WARN = "warn"
    ERROR = "error"
    CRITICAL = "critical"


# Severities the monitor pulls on every poll cycle
MONITORED_SEVERITIES: Tuple[str, ...] = (
    EventSeverity.WARN.value,
    EventSeverity.ERROR.value,
    EventSeverity.CRITICAL.value,
)


# -----------------------------------------------------------------------------
# Issue Severity Enum (LOCKED)
# -----------------------------------------------------------------------------
class IssueSeverity(str, Enum):
    """Severity assigned to a classified issue."""
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


# -----------------------------------------------------------------------------
# Intervention Event Types
# -----------------------------------------------------------------------------
class InterventionEvent(str, Enum):
    """Events emitted by the monitor and executor about interventions."""
    TRIGGERED = "intervention:triggered"
    SUCCESSFUL = "intervention:successful"
    FAILED = "intervention:failed"
    ROLLED_BACK = "intervention:rolled_back"
    ERROR = "intervention:error"
    RATE_LIMITED = "intervention:rate_limited"
    APPROVAL_REQUIRED = "intervention:approval_required"
    POSSIBLE_REGRESSION = "intervention:possible_regression"
    FIX_APPLIED = "intervention:fix_applied"


AGENT_UNBLOCKED_EVENT = "contribution:agent_unblocked"


def utc_now() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def parse_timestamp(value: str) -> datetime:
    """Parse an ISO-8601 timestamp; naive values are taken as UTC."""
    parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


# -----------------------------------------------------------------------------
# Event (Immutable)
# -----------------------------------------------------------------------------
@dataclass(frozen=True)
class Event:
    """
    A single operational event.

    event_id is "evt-<ms>-<counter>" and increases monotonically within
    one event stream, so it can be used as a poll cursor.
    """
    event_id: str
    type: str
    timestamp: str
    severity: str
    data: Dict[str, Any] = field(default_factory=dict)
    task_id: Optional[str] = None
    prd_id: Optional[str] = None
    phase_id: Optional[int] = None
    target_module: Optional[str] = None

    def __post_init__(self):
        valid = {s.value for s in EventSeverity}
        if self.severity not in valid:
            raise ValueError(f"Invalid severity: {self.severity}")

    @property
    def occurred_at(self) -> datetime:
        return parse_timestamp(self.timestamp)

    @property
    def category(self) -> str:
        """Prefix of the event type ("json" for "json:parse_failed")."""
        return self.type.split(":", 1)[0]

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Event":
        return cls(
            event_id=data["event_id"],
            type=data["type"],
            timestamp=data["timestamp"],
            severity=data["severity"],
            data=dict(data.get("data") or {}),
            task_id=data.get("task_id"),
            prd_id=data.get("prd_id"),
            phase_id=data.get("phase_id"),
            target_module=data.get("target_module"),
        )


# -----------------------------------------------------------------------------
# Event Filter
# -----------------------------------------------------------------------------
@dataclass(frozen=True)
class EventFilter:
    """
    Query filter for an event source.

    since is an event_id; only events strictly after it are returned.
    limit keeps the most recent N matches.
    """
    types: Optional[Tuple[str, ...]] = None
    severity: Optional[Tuple[str, ...]] = None
    since: Optional[str] = None
    task_id: Optional[str] = None
    prd_id: Optional[str] = None
    limit: Optional[int] = None

    def matches(self, event: Event) -> bool:
        if self.types and event.type not in self.types:
            return False
        if self.severity and event.severity not in self.severity:
            return False
        if self.task_id and event.task_id != self.task_id:
            return False
        if self.prd_id and event.prd_id != self.prd_id:
            return False
        return True


def group_by_type(events: List[Event]) -> Dict[str, List[Event]]:
    """Group events by type, preserving first-seen order of the types."""
    grouped: Dict[str, List[Event]] = {}
    for event in events:
        grouped.setdefault(event.type, []).append(event)
    return grouped
