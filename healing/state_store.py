"""
State Store - Concurrency-Safe Persistence

This module persists the execution-state and metrics documents that the
whole pipeline reads and writes concurrently.

CRITICAL CONSTRAINTS:
- COPY-ON-WRITE: Mutations run against a deep copy, never the live document
- VALIDATE BEFORE WRITE: An invalid document is never persisted
- ATOMIC: Writes go to a temp file in the same directory, then os.replace
- SERIALIZED: One in-process queue per file plus an advisory lock file
- NEVER CORRUPT ON READ: Invalid content falls back to the default document

Read protocol: read + validate, retrying on validation failure with linear
backoff; after the last attempt the kind's default document is returned.

Write protocol:
1. Wait for the per-file in-process queue
2. Take <file>.lock (O_CREAT|O_EXCL, "<pid>-<ms>"), removing stale locks;
   on timeout log a warning and proceed without it
3. Write .<name>.<pid>.<ms>.<rand>.tmp, fsync, read back, os.replace
"""

import asyncio
import copy
import json
import logging
import os
import secrets
import time
from datetime import datetime, timedelta
from pathlib import Path
from typing import Optional, Dict, Any, Callable, List

import psutil

from .config import STATE_DIR, StoreConfig
from .state_schema import (
    DocumentKind,
    ValidationResult,
    DocumentValidationError,
    WorkflowState,
    default_document,
    now_iso,
    validate_document,
)
from .event_model import parse_timestamp

logger = logging.getLogger("state_store")

Mutation = Callable[[Dict[str, Any]], Optional[Dict[str, Any]]]

METRIC_LEVELS = ("prdSet", "prd", "phase", "run")


def _now_ms() -> int:
    return int(time.time() * 1000)


def apply_mutation(current: Dict[str, Any], mutation: Mutation) -> Dict[str, Any]:
    """
    Clone-or-apply: run `mutation` on a deep copy of `current`.

    If the callback returns a dict it becomes the new document, otherwise
    the mutated copy is used. `current` is never touched.
    """
    draft = copy.deepcopy(current)
    returned = mutation(draft)
    if returned is not None:
        if not isinstance(returned, dict):
            raise TypeError(f"Mutation must return a dict or None, got {type(returned).__name__}")
        return returned
    return draft


def next_timestamp(previous: Optional[str]) -> str:
    """An ISO timestamp strictly later than `previous`."""
    now = datetime.fromisoformat(now_iso())
    if previous:
        try:
            prior = parse_timestamp(previous)
        except ValueError:
            prior = None
        if prior is not None and now <= prior:
            now = prior + timedelta(microseconds=1)
    return now.isoformat()


# -----------------------------------------------------------------------------
# State Store
# -----------------------------------------------------------------------------
class StateStore:
    """
    Shared persisted state for the pipeline.

    All operations are coroutines; the file reads and writes they perform
    are the suspension points of the self-healing loop.
    """

    def __init__(self, state_dir: Optional[Path] = None, config: Optional[StoreConfig] = None):
        self._state_dir = Path(state_dir) if state_dir else STATE_DIR
        self._config = config or StoreConfig()
        self._queues: Dict[Path, asyncio.Lock] = {}

    @property
    def state_dir(self) -> Path:
        return self._state_dir

    def path_for(self, kind: DocumentKind) -> Path:
        return self._state_dir / DocumentKind(kind).filename

    def lock_path_for(self, kind: DocumentKind) -> Path:
        target = self.path_for(kind)
        return target.with_name(target.name + ".lock")

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    async def initialize(self) -> None:
        """Create the state directory and any missing document with defaults."""
        self._state_dir.mkdir(parents=True, exist_ok=True)
        self._sweep_orphaned_temp_files()

        for kind in DocumentKind:
            if not self.path_for(kind).exists():
                await self.write(kind, default_document(kind))
                logger.info(f"Initialized {kind.filename} in {self._state_dir}")

    def _sweep_orphaned_temp_files(self) -> int:
        """Remove temp files abandoned by crashed writers."""
        cutoff = time.time() - self._config.stale_lock_ms / 1000
        removed = 0
        for kind in DocumentKind:
            for tmp in self._state_dir.glob(f".{kind.filename}.*.tmp"):
                try:
                    if tmp.stat().st_mtime < cutoff:
                        tmp.unlink()
                        removed += 1
                except FileNotFoundError:
                    continue
        if removed:
            logger.info(f"Removed {removed} orphaned temp file(s) from {self._state_dir}")
        return removed

    # -------------------------------------------------------------------------
    # READ Operations
    # -------------------------------------------------------------------------

    async def read(self, kind: DocumentKind) -> Dict[str, Any]:
        """
        Read and validate a document.

        A missing file yields the default document. Validation failures are
        retried with linear backoff, then fall back to the default. Other
        I/O errors propagate.
        """
        kind = DocumentKind(kind)
        path = self.path_for(kind)
        attempts = max(1, self._config.read_attempts)
        result: Optional[ValidationResult] = None

        for attempt in range(1, attempts + 1):
            try:
                raw = path.read_text()
            except FileNotFoundError:
                return default_document(kind)

            result = self._parse(kind, raw)
            if result.ok:
                return result.document

            if attempt < attempts:
                logger.debug(
                    f"{kind.filename} failed validation (attempt {attempt}/{attempts}), retrying"
                )
                await asyncio.sleep(self._config.read_backoff_ms * attempt / 1000)

        logger.warning(
            f"{kind.filename} failed validation after {attempts} attempts, "
            f"returning default document: {result.error.message}"
        )
        return default_document(kind)

    @staticmethod
    def _parse(kind: DocumentKind, raw: str) -> ValidationResult:
        try:
            data = json.loads(raw)
        except json.JSONDecodeError as e:
            return ValidationResult(
                ok=False,
                error=DocumentValidationError(
                    code="INVALID_JSON",
                    message=f"{kind.filename} is not valid JSON: {e.msg}",
                    details={"kind": kind.value, "position": e.pos},
                ),
            )
        return validate_document(kind, data)

    # -------------------------------------------------------------------------
    # WRITE Operations
    # -------------------------------------------------------------------------

    async def update(self, kind: DocumentKind, mutation: Mutation) -> bool:
        """
        Read-modify-write a document under the file's queue and lock.

        Returns False (and writes nothing) when the mutated document fails
        validation.
        """
        kind = DocumentKind(kind)
        async with self._queue_for(kind):
            acquired = await self._acquire_file_lock(kind)
            try:
                current = await self.read(kind)
                updated = apply_mutation(current, mutation)
                return self._validate_and_write(kind, updated, current.get("updatedAt"))
            finally:
                if acquired:
                    self._release_file_lock(kind, acquired)

    async def write(self, kind: DocumentKind, document: Dict[str, Any]) -> bool:
        """Validated overwrite of a whole document."""
        kind = DocumentKind(kind)
        async with self._queue_for(kind):
            acquired = await self._acquire_file_lock(kind)
            try:
                previous = document.get("updatedAt")
                if self.path_for(kind).exists():
                    previous = (await self.read(kind)).get("updatedAt")
                return self._validate_and_write(kind, copy.deepcopy(document), previous)
            finally:
                if acquired:
                    self._release_file_lock(kind, acquired)

    def _validate_and_write(
        self,
        kind: DocumentKind,
        document: Dict[str, Any],
        previous_updated_at: Optional[str],
    ) -> bool:
        document["updatedAt"] = next_timestamp(previous_updated_at)
        result = validate_document(kind, document)
        if not result.ok:
            logger.error(
                f"Refusing to write invalid {kind.filename}: {result.error.message} "
                f"{result.error.details.get('errors', [])}"
            )
            return False

        self._write_atomic(self.path_for(kind), result.document)
        return True

    def _write_atomic(self, target: Path, document: Dict[str, Any]) -> None:
        """Temp file in the target's directory, fsync, verify, os.replace."""
        target.parent.mkdir(parents=True, exist_ok=True)
        temp_file = target.with_name(
            f".{target.name}.{os.getpid()}.{_now_ms()}.{secrets.token_hex(3)}.tmp"
        )
        try:
            with open(temp_file, "w") as f:
                json.dump(document, f, indent=2)
                f.flush()
                os.fsync(f.fileno())

            verified = json.loads(temp_file.read_text())
            if not isinstance(verified, dict):
                raise ValueError(f"Temp file {temp_file.name} did not round-trip as an object")

            os.replace(temp_file, target)
        except Exception:
            try:
                temp_file.unlink()
            except FileNotFoundError:
                pass
            raise

    # -------------------------------------------------------------------------
    # Locking
    # -------------------------------------------------------------------------

    def _queue_for(self, kind: DocumentKind) -> asyncio.Lock:
        path = self.path_for(kind)
        if path not in self._queues:
            self._queues[path] = asyncio.Lock()
        return self._queues[path]

    async def _acquire_file_lock(self, kind: DocumentKind) -> Optional[str]:
        """
        Create the advisory lock file.

        Returns the token written into the lock, or None when the lock could
        not be taken before the timeout.
        """
        lock_path = self.lock_path_for(kind)
        lock_path.parent.mkdir(parents=True, exist_ok=True)
        deadline = time.monotonic() + self._config.lock_timeout_ms / 1000

        while True:
            token = f"{os.getpid()}-{_now_ms()}"
            try:
                fd = os.open(str(lock_path), os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
            except FileExistsError:
                if self._is_stale_lock(lock_path):
                    logger.warning(f"Removing stale lock {lock_path.name}")
                    try:
                        lock_path.unlink()
                    except FileNotFoundError:
                        pass
                    continue

                if time.monotonic() >= deadline:
                    logger.warning(
                        f"Could not acquire {lock_path.name} within "
                        f"{self._config.lock_timeout_ms}ms, proceeding without it"
                    )
                    return None

                await asyncio.sleep(self._config.lock_retry_ms / 1000)
                continue

            with os.fdopen(fd, "w") as f:
                f.write(token)
            return token

    def _is_stale_lock(self, lock_path: Path) -> bool:
        """
        A lock is stale when it is older than the stale age or its owner
        process no longer exists.
        """
        try:
            content = lock_path.read_text().strip()
        except FileNotFoundError:
            return False

        pid_part, _, ts_part = content.partition("-")
        try:
            pid = int(pid_part)
            created_ms = int(ts_part)
        except ValueError:
            try:
                created_ms = int(lock_path.stat().st_mtime * 1000)
            except FileNotFoundError:
                return False
            pid = None

        if _now_ms() - created_ms > self._config.stale_lock_ms:
            return True
        if pid is not None and pid != os.getpid() and not psutil.pid_exists(pid):
            return True
        return False

    def _release_file_lock(self, kind: DocumentKind, token: str) -> None:
        """Remove the lock file if it still carries our token."""
        lock_path = self.lock_path_for(kind)
        try:
            if lock_path.read_text().strip() == token:
                lock_path.unlink()
        except FileNotFoundError:
            pass

    # -------------------------------------------------------------------------
    # Execution State Convenience
    # -------------------------------------------------------------------------

    async def get_execution_state(self) -> Dict[str, Any]:
        return await self.read(DocumentKind.EXECUTION_STATE)

    async def update_execution_state(self, mutation: Mutation) -> bool:
        return await self.update(DocumentKind.EXECUTION_STATE, mutation)

    async def get_active_context(self) -> Dict[str, Any]:
        state = await self.get_execution_state()
        return state["active"]

    async def set_active_context(self, **fields) -> bool:
        def mutate(draft):
            draft["active"].update(fields)
        return await self.update_execution_state(mutate)

    async def get_active_prd_set(self) -> Optional[Dict[str, Any]]:
        state = await self.get_execution_state()
        set_id = state["active"].get("prdSetId")
        if not set_id:
            return None
        return state["prdSets"].get(set_id)

    async def get_active_prd(self) -> Optional[Dict[str, Any]]:
        state = await self.get_execution_state()
        prd_id = state["active"].get("prdId")
        if not prd_id:
            return None
        return state["prds"].get(prd_id)

    async def update_task_status(self, task_id: str, status: str) -> bool:
        """Update the active PRD's current task and, if valid, the workflow state."""
        workflow_states = {s.value for s in WorkflowState}

        def mutate(draft):
            active = draft["active"]
            if active.get("taskId") == task_id and status in workflow_states:
                active["workflowState"] = status
            prd = draft["prds"].get(active.get("prdId") or "")
            if prd and (prd.get("currentTask") or {}).get("id") == task_id:
                prd["currentTask"]["status"] = status

        return await self.update_execution_state(mutate)

    @staticmethod
    def _retry_counts_for(draft: Dict[str, Any]) -> Dict[str, int]:
        """The active PRD's counters, or the top-level map without one."""
        prd = draft["prds"].get(draft["active"].get("prdId") or "")
        if prd is not None:
            return prd.setdefault("retryCounts", {})
        return draft.setdefault("retryCounts", {})

    async def increment_retry_count(self, task_id: str) -> bool:
        """Increment a task's retry counter on the active PRD (or top level)."""
        def mutate(draft):
            counts = self._retry_counts_for(draft)
            counts[task_id] = counts.get(task_id, 0) + 1

        return await self.update_execution_state(mutate)

    async def reset_retry_counts(self, task_ids: List[str]) -> int:
        """
        Reset retry counters to 0 for the given tasks.

        Every PRD tracking one of the tasks is reset, as is the top-level
        map. A task tracked nowhere is recorded as 0 on the active PRD, or
        on the top-level map when no PRD is active. Returns the number of
        tasks reset (0 when the update was rejected).
        """
        def mutate(draft):
            top_level = draft.setdefault("retryCounts", {})
            for task_id in task_ids:
                found = False
                for prd in draft["prds"].values():
                    counts = prd.setdefault("retryCounts", {})
                    if task_id in counts:
                        counts[task_id] = 0
                        found = True
                if task_id in top_level:
                    top_level[task_id] = 0
                    found = True
                if not found:
                    self._retry_counts_for(draft)[task_id] = 0

        if not task_ids or not await self.update_execution_state(mutate):
            return 0
        return len(set(task_ids))

    async def get_or_create_session(
        self,
        session_id: str,
        prd_id: Optional[str] = None,
    ) -> Optional[Dict[str, Any]]:
        """
        Return a session, creating it on first reference.

        Returns None when the session could not be written.
        """
        def mutate(draft):
            now = now_iso()
            session = draft["sessions"].get(session_id)
            if session is None:
                context = {"taskIds": []}
                if prd_id:
                    context["prdId"] = prd_id
                draft["sessions"][session_id] = {
                    "sessionId": session_id,
                    "createdAt": now,
                    "lastUsed": now,
                    "context": context,
                    "history": [],
                }
            else:
                session["lastUsed"] = now

        if not await self.update_execution_state(mutate):
            logger.warning(f"Could not create or touch session {session_id}")
            return None
        state = await self.get_execution_state()
        return state["sessions"].get(session_id)

    async def append_session_history(self, session_id: str, entry: Dict[str, Any]) -> bool:
        """Append a history entry; the session is created if it does not exist."""
        def mutate(draft):
            now = now_iso()
            session = draft["sessions"].setdefault(session_id, {
                "sessionId": session_id,
                "createdAt": now,
                "lastUsed": now,
                "context": {"taskIds": []},
                "history": [],
            })
            record = dict(entry)
            record.setdefault("timestamp", now)
            session["history"].append(record)
            session["lastUsed"] = now

        return await self.update_execution_state(mutate)

    async def clear_execution_state(self) -> None:
        """Replace the execution state with a fresh default document."""
        await self.write(DocumentKind.EXECUTION_STATE, default_document(DocumentKind.EXECUTION_STATE))
        logger.info("Execution state cleared")

    # -------------------------------------------------------------------------
    # Metrics Convenience
    # -------------------------------------------------------------------------

    async def get_metrics(self) -> Dict[str, Any]:
        return await self.read(DocumentKind.METRICS)

    async def update_metrics(self, mutation: Mutation) -> bool:
        return await self.update(DocumentKind.METRICS, mutation)

    async def record_metrics(self, level: str, metric_id: str, metrics: Dict[str, Any]) -> bool:
        """
        Record metrics at a hierarchy level.

        For level "phase" the id is "<prdId>:<phaseId>"; level "run" appends
        a timestamped entry and ignores the id.
        """
        if level not in METRIC_LEVELS:
            raise ValueError(f"Unknown metrics level: {level}")

        def mutate(draft):
            if level == "prdSet":
                draft.setdefault("prdSets", {})[metric_id] = metrics
            elif level == "prd":
                draft.setdefault("prds", {})[metric_id] = metrics
            elif level == "phase":
                prd_id, _, phase_id = metric_id.partition(":")
                draft.setdefault("phases", {}).setdefault(prd_id, {})[phase_id] = metrics
            else:
                draft.setdefault("runs", []).append({**metrics, "timestamp": now_iso()})

        return await self.update_metrics(mutate)


logger.info("State store module loaded")
