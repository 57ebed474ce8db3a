"""
Pytest configuration for the self-healing loop tests.

This module provides:
1. Async test support without pytest-asyncio
2. Common fixtures (state store, event stream, tuning files)
3. Event construction helpers
"""

import asyncio
import functools
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Dict, Optional

import pytest
import yaml

from healing.config import StoreConfig
from healing.event_model import Event
from healing.event_stream import EventStream
from healing.state_store import StateStore
from healing.strategies import StrategyContext


# -----------------------------------------------------------------------------
# Async Test Support
# -----------------------------------------------------------------------------
def async_test(func):
    """
    Decorator to run async tests without pytest-asyncio.

    Usage:
        @async_test
        async def test_something(self):
            result = await some_async_function()
            assert result is not None
    """
    @functools.wraps(func)
    def wrapper(*args, **kwargs):
        return asyncio.run(func(*args, **kwargs))
    return wrapper


# -----------------------------------------------------------------------------
# Event Helpers
# -----------------------------------------------------------------------------
BASE_TIME = datetime(2026, 1, 15, 12, 0, 0, tzinfo=timezone.utc)

_event_counter = 0


def make_event(
    event_type: str,
    data: Optional[Dict[str, Any]] = None,
    severity: str = "error",
    at: Optional[datetime] = None,
    task_id: Optional[str] = None,
    target_module: Optional[str] = None,
) -> Event:
    """Build a standalone event with a controllable timestamp."""
    global _event_counter
    _event_counter += 1
    at = at or BASE_TIME
    return Event(
        event_id=f"evt-{int(at.timestamp() * 1000)}-{_event_counter}",
        type=event_type,
        timestamp=at.isoformat(),
        severity=severity,
        data=dict(data or {}),
        task_id=task_id,
        target_module=target_module,
    )


class FakeClock:
    """Settable clock returning aware UTC datetimes."""

    def __init__(self, start: datetime = BASE_TIME):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


# -----------------------------------------------------------------------------
# Common Fixtures
# -----------------------------------------------------------------------------
FAST_STORE_CONFIG = StoreConfig(
    lock_timeout_ms=200,
    lock_retry_ms=10,
    stale_lock_ms=30000,
    read_attempts=3,
    read_backoff_ms=5,
)


@pytest.fixture
def state_dir(tmp_path) -> Path:
    path = tmp_path / ".devloop"
    path.mkdir()
    return path


@pytest.fixture
def store(state_dir) -> StateStore:
    """A state store with short lock and retry timings."""
    return StateStore(state_dir, config=FAST_STORE_CONFIG)


@pytest.fixture
def stream() -> EventStream:
    return EventStream()


@pytest.fixture
def tuning_dir(tmp_path) -> Path:
    """Tuning files with every feature flag off."""
    path = tmp_path / "tuning"
    path.mkdir()
    files = {
        "json-parser.yaml": ["sanitize_control_characters", "escape_literal_newlines"],
        "workflow.yaml": ["early_file_filtering"],
        "validation-gate.yaml": ["recovery_suggestions"],
        "agent-ipc.yaml": ["retry_with_backoff"],
    }
    for filename, flags in files.items():
        with open(path / filename, "w") as f:
            yaml.safe_dump({"features": {flag: False for flag in flags}}, f)
    return path


@pytest.fixture
def strategy_context(stream, store, tuning_dir) -> StrategyContext:
    return StrategyContext(event_source=stream, state_store=store, tuning_dir=tuning_dir)


async def seed_active_prd(store: StateStore, retry_counts: Dict[str, int]) -> None:
    """Write an execution state with an active, running PRD."""
    await store.initialize()

    def mutate(draft):
        draft["active"].update({"prdId": "prd-1", "workflowState": "executing-ai"})
        draft["prds"]["prd-1"] = {
            "prdId": "prd-1",
            "status": "running",
            "retryCounts": dict(retry_counts),
        }

    assert await store.update_execution_state(mutate)


# -----------------------------------------------------------------------------
# Session Configuration
# -----------------------------------------------------------------------------
def pytest_configure(config):
    """Configure pytest session."""
    config.addinivalue_line(
        "markers", "asyncio: mark test as async (custom implementation)"
    )
