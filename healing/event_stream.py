"""
Event Stream - In-Memory Event Source

This module provides the event query interface consumed by the monitor,
the executor and the strategies, plus a bounded in-memory implementation.

CRITICAL CONSTRAINTS:
- BOUNDED: At most MAX_BUFFERED_EVENTS are retained (oldest dropped)
- ORDERED: Events are kept in emission order
- CURSOR: poll(since=...) returns only events after the given event_id
- LISTENERS NEVER BREAK EMIT: a failing listener is logged and skipped
"""

import itertools
import logging
import threading
from datetime import datetime
from typing import Optional, Dict, Any, List, Callable, Protocol

from .event_model import (
    Event,
    EventFilter,
    EventSeverity,
    MONITORED_SEVERITIES,
    parse_timestamp,
    utc_now,
)

logger = logging.getLogger("event_stream")


# -----------------------------------------------------------------------------
# Configuration
# -----------------------------------------------------------------------------
MAX_BUFFERED_EVENTS = 1000

EventListener = Callable[[Event], None]


# -----------------------------------------------------------------------------
# Event Source Interface
# -----------------------------------------------------------------------------
class EventSource(Protocol):
    """Query interface the self-healing loop depends on."""

    def poll(self, event_filter: Optional[EventFilter] = None) -> List[Event]:
        ...

    def get_by_time_range(
        self,
        start: datetime,
        end: Optional[datetime] = None,
    ) -> List[Event]:
        ...

    def get_last_event_id(self) -> Optional[str]:
        ...

    def emit(
        self,
        event_type: str,
        data: Optional[Dict[str, Any]] = None,
        severity: str = EventSeverity.INFO.value,
        task_id: Optional[str] = None,
        prd_id: Optional[str] = None,
        phase_id: Optional[int] = None,
        target_module: Optional[str] = None,
    ) -> Event:
        ...


# -----------------------------------------------------------------------------
# In-Memory Event Stream
# -----------------------------------------------------------------------------
class EventStream:
    """
    Bounded, thread-safe, in-memory event buffer.

    Event ids are "evt-<ms>-<counter>"; the counter restarts on clear().
    """

    def __init__(
        self,
        max_events: int = MAX_BUFFERED_EVENTS,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self._max_events = max_events
        self._clock = clock or utc_now
        self._events: List[Event] = []
        self._counter = itertools.count(1)
        self._listeners: List[EventListener] = []
        self._lock = threading.Lock()

    # -------------------------------------------------------------------------
    # WRITE Operations
    # -------------------------------------------------------------------------

    def emit(
        self,
        event_type: str,
        data: Optional[Dict[str, Any]] = None,
        severity: str = EventSeverity.INFO.value,
        task_id: Optional[str] = None,
        prd_id: Optional[str] = None,
        phase_id: Optional[int] = None,
        target_module: Optional[str] = None,
    ) -> Event:
        """Append an event and notify listeners."""
        if isinstance(severity, EventSeverity):
            severity = severity.value

        now = self._clock()
        with self._lock:
            event = Event(
                event_id=f"evt-{int(now.timestamp() * 1000)}-{next(self._counter)}",
                type=event_type,
                timestamp=now.isoformat(),
                severity=severity,
                data=dict(data or {}),
                task_id=task_id,
                prd_id=prd_id,
                phase_id=phase_id,
                target_module=target_module,
            )
            self._events.append(event)
            if len(self._events) > self._max_events:
                self._events = self._events[-self._max_events:]
            listeners = list(self._listeners)

        for listener in listeners:
            try:
                listener(event)
            except Exception as e:
                logger.error(f"Event listener failed for {event.type}: {e}")

        return event

    def add_listener(self, listener: EventListener) -> Callable[[], None]:
        """Register a listener; returns a callable that removes it."""
        with self._lock:
            self._listeners.append(listener)

        def remove():
            with self._lock:
                if listener in self._listeners:
                    self._listeners.remove(listener)

        return remove

    def clear(self) -> None:
        with self._lock:
            self._events = []
            self._counter = itertools.count(1)

    # -------------------------------------------------------------------------
    # READ Operations
    # -------------------------------------------------------------------------

    def poll(self, event_filter: Optional[EventFilter] = None) -> List[Event]:
        """
        Return buffered events matching the filter.

        An unknown `since` cursor (for example one trimmed from the buffer)
        is ignored and the whole buffer is considered.
        """
        event_filter = event_filter or EventFilter()
        with self._lock:
            events = list(self._events)

        if event_filter.since:
            for index, event in enumerate(events):
                if event.event_id == event_filter.since:
                    events = events[index + 1:]
                    break

        result = [e for e in events if event_filter.matches(e)]

        if event_filter.limit and event_filter.limit > 0:
            result = result[-event_filter.limit:]
        return result

    def get_by_time_range(
        self,
        start: datetime,
        end: Optional[datetime] = None,
    ) -> List[Event]:
        """Events whose timestamp falls in [start, end]; end defaults to now."""
        end = end or self._clock()
        with self._lock:
            events = list(self._events)
        return [e for e in events if start <= parse_timestamp(e.timestamp) <= end]

    def get_last_event_id(self) -> Optional[str]:
        with self._lock:
            if not self._events:
                return None
            return self._events[-1].event_id

    def get_latest(self, count: int = 10) -> List[Event]:
        with self._lock:
            return list(self._events[-count:])

    def get_issues(self) -> List[Event]:
        """Events at warn severity or above."""
        with self._lock:
            return [e for e in self._events if e.severity in MONITORED_SEVERITIES]

    def count(self) -> int:
        with self._lock:
            return len(self._events)

    def get_analytics(self) -> Dict[str, Any]:
        """Counts by type, severity and PRD over the buffered events."""
        by_type: Dict[str, int] = {}
        by_severity: Dict[str, int] = {}
        by_prd: Dict[str, int] = {}

        with self._lock:
            events = list(self._events)

        for event in events:
            by_type[event.type] = by_type.get(event.type, 0) + 1
            by_severity[event.severity] = by_severity.get(event.severity, 0) + 1
            if event.prd_id:
                by_prd[event.prd_id] = by_prd.get(event.prd_id, 0) + 1

        return {
            "total_events": len(events),
            "issue_count": sum(1 for e in events if e.severity in MONITORED_SEVERITIES),
            "by_type": by_type,
            "by_severity": by_severity,
            "by_prd_id": by_prd,
            "json_parse_failures": by_type.get("json:parse_failed", 0),
            "json_parse_successes": by_type.get("json:parse_success", 0),
            "file_filtered_count": by_type.get("file:filtered", 0),
        }
