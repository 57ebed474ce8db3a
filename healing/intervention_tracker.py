"""
Intervention Metrics Tracker - Durable Intervention History

Records every intervention the executor performs and keeps aggregate
effectiveness metrics so operators can see which remediations work.

CRITICAL CONSTRAINTS:
- APPEND-ONLY RECORDS: Intervention records are never edited in place
- FSYNC: Each record append is durable
- ATOMIC SNAPSHOT: The aggregate metrics file is replaced, never rewritten in place
- OBSERVATION ONLY: Tracking failures are logged, never raised into the loop
"""

import json
import logging
import os
import threading
from dataclasses import dataclass, asdict
from pathlib import Path
from typing import Optional, Dict, Any, List

from .config import STATE_DIR
from .state_schema import now_iso

logger = logging.getLogger("intervention_tracker")


# -----------------------------------------------------------------------------
# Configuration
# -----------------------------------------------------------------------------
RECORDS_FILENAME = "intervention-records.jsonl"
METRICS_FILENAME = "intervention-metrics.json"

PATTERN_ANALYSIS_EVERY = 10
EFFECTIVENESS_TARGET = 0.7


# -----------------------------------------------------------------------------
# Intervention Record (Immutable)
# -----------------------------------------------------------------------------
@dataclass(frozen=True)
class InterventionRecord:
    """One executed intervention, as persisted."""
    intervention_id: str
    timestamp: str
    event_type: str
    issue_type: str
    strategy: str
    confidence: float
    success: bool
    fix_applied: bool
    rollback_required: bool
    detection_time_ms: float
    fix_time_ms: float
    error: Optional[str] = None
    validation_time_ms: Optional[float] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "InterventionRecord":
        return cls(
            intervention_id=data["intervention_id"],
            timestamp=data["timestamp"],
            event_type=data["event_type"],
            issue_type=data["issue_type"],
            strategy=data["strategy"],
            confidence=data.get("confidence", 0.0),
            success=data["success"],
            fix_applied=data.get("fix_applied", False),
            rollback_required=data.get("rollback_required", False),
            detection_time_ms=data.get("detection_time_ms", 0.0),
            fix_time_ms=data.get("fix_time_ms", 0.0),
            error=data.get("error"),
            validation_time_ms=data.get("validation_time_ms"),
        )


def default_intervention_metrics() -> Dict[str, Any]:
    return {
        "totalInterventions": 0,
        "successfulInterventions": 0,
        "failedInterventions": 0,
        "rolledBackInterventions": 0,
        "successRate": 0.0,
        "byIssueType": {},
        "byEventType": {},
        "timing": {
            "avgDetectionTimeMs": 0.0,
            "avgFixTimeMs": 0.0,
            "avgValidationTimeMs": 0.0,
            "totalTimeMs": 0.0,
        },
        "thresholds": {
            "exceededCount": 0,
            "preventedCount": 0,
            "falsePositives": 0,
        },
        "patterns": {
            "mostEffectiveStrategies": [],
            "leastEffectiveStrategies": [],
            "commonFailureModes": [],
        },
        "updatedAt": now_iso(),
    }


def _running_average(average: float, count: int, value: float) -> float:
    """Fold `value` into an average over `count` samples (value included)."""
    if count <= 0:
        return 0.0
    return (average * (count - 1) + value) / count


# -----------------------------------------------------------------------------
# Intervention Metrics Tracker
# -----------------------------------------------------------------------------
class InterventionMetricsTracker:
    """Append-only intervention log plus aggregate metrics snapshot."""

    def __init__(self, state_dir: Optional[Path] = None):
        state_dir = Path(state_dir) if state_dir else STATE_DIR
        self._records_file = state_dir / RECORDS_FILENAME
        self._metrics_file = state_dir / METRICS_FILENAME
        self._lock = threading.Lock()
        self._records: List[InterventionRecord] = self._load_records()
        self._metrics = self._load_metrics()

    # -------------------------------------------------------------------------
    # WRITE Operations
    # -------------------------------------------------------------------------

    def record_intervention(self, record: InterventionRecord) -> None:
        with self._lock:
            self._records.append(record)
            self._append_record(record)

            m = self._metrics
            m["totalInterventions"] += 1
            if record.success:
                m["successfulInterventions"] += 1
            else:
                m["failedInterventions"] += 1
            if record.rollback_required:
                m["rolledBackInterventions"] += 1
            m["successRate"] = m["successfulInterventions"] / m["totalInterventions"]

            issue = m["byIssueType"].setdefault(record.issue_type, {
                "count": 0,
                "successful": 0,
                "failed": 0,
                "rolledBack": 0,
                "avgFixTimeMs": 0.0,
                "effectiveness": 0.0,
            })
            issue["count"] += 1
            if record.success:
                issue["successful"] += 1
            else:
                issue["failed"] += 1
            if record.rollback_required:
                issue["rolledBack"] += 1
            issue["avgFixTimeMs"] = _running_average(
                issue["avgFixTimeMs"], issue["count"], record.fix_time_ms
            )
            issue["effectiveness"] = self._effectiveness(issue)

            by_event = m["byEventType"].setdefault(record.event_type, {
                "interventions": 0,
                "preventedIssues": 0,
                "avgPreventionTimeMs": 0.0,
            })
            by_event["interventions"] += 1
            if record.success and record.fix_applied:
                by_event["preventedIssues"] += 1
                if record.validation_time_ms:
                    by_event["avgPreventionTimeMs"] = _running_average(
                        by_event["avgPreventionTimeMs"],
                        by_event["preventedIssues"],
                        record.validation_time_ms,
                    )

            total = m["totalInterventions"]
            timing = m["timing"]
            timing["avgDetectionTimeMs"] = _running_average(
                timing["avgDetectionTimeMs"], total, record.detection_time_ms
            )
            timing["avgFixTimeMs"] = _running_average(timing["avgFixTimeMs"], total, record.fix_time_ms)
            if record.validation_time_ms:
                timing["avgValidationTimeMs"] = _running_average(
                    timing["avgValidationTimeMs"], total, record.validation_time_ms
                )
            timing["totalTimeMs"] += (
                record.detection_time_ms + record.fix_time_ms + (record.validation_time_ms or 0)
            )

            if total % PATTERN_ANALYSIS_EVERY == 0:
                self._analyze_patterns()

            self._save_metrics()

        logger.debug(
            f"Recorded intervention {record.intervention_id} "
            f"({record.issue_type}, success={record.success})"
        )

    def record_threshold_exceeded(self, event_type: str) -> None:
        with self._lock:
            self._metrics["thresholds"]["exceededCount"] += 1
            self._save_metrics()

    def record_issue_prevented(self, event_type: str) -> None:
        with self._lock:
            self._metrics["thresholds"]["preventedCount"] += 1
            self._save_metrics()

    def record_false_positive(self, intervention_id: str) -> bool:
        """
        Mark an intervention as a false positive.

        Its success is moved to the failure column. Returns False when the
        intervention is unknown (the counter is still incremented).
        """
        with self._lock:
            self._metrics["thresholds"]["falsePositives"] += 1
            record = next(
                (r for r in self._records if r.intervention_id == intervention_id), None
            )
            if record is not None and record.success:
                m = self._metrics
                m["successfulInterventions"] -= 1
                m["failedInterventions"] += 1
                m["successRate"] = (
                    m["successfulInterventions"] / m["totalInterventions"]
                    if m["totalInterventions"] else 0.0
                )
                issue = m["byIssueType"].get(record.issue_type)
                if issue:
                    issue["successful"] -= 1
                    issue["failed"] += 1
                    issue["effectiveness"] = self._effectiveness(issue)
            self._save_metrics()
            return record is not None

    def clear(self) -> None:
        with self._lock:
            self._records = []
            self._metrics = default_intervention_metrics()
            try:
                self._records_file.unlink()
            except FileNotFoundError:
                pass
            self._save_metrics()

    # -------------------------------------------------------------------------
    # READ Operations
    # -------------------------------------------------------------------------

    def get_metrics(self) -> Dict[str, Any]:
        with self._lock:
            return json.loads(json.dumps(self._metrics))

    def get_records(self, limit: Optional[int] = None) -> List[InterventionRecord]:
        """Most recent first."""
        with self._lock:
            records = list(reversed(self._records))
        return records[:limit] if limit else records

    def get_issue_type_metrics(self, issue_type: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            metrics = self._metrics["byIssueType"].get(issue_type)
            return dict(metrics) if metrics else None

    def get_effectiveness_analysis(self) -> Dict[str, Any]:
        with self._lock:
            needing_improvement = sorted(
                (
                    {"issueType": issue_type, "effectiveness": metrics["effectiveness"]}
                    for issue_type, metrics in self._metrics["byIssueType"].items()
                    if metrics["effectiveness"] < EFFECTIVENESS_TARGET
                ),
                key=lambda item: item["effectiveness"],
            )
            return {
                "overallSuccessRate": self._metrics["successRate"],
                "mostEffectiveStrategies": list(self._metrics["patterns"]["mostEffectiveStrategies"]),
                "leastEffectiveStrategies": list(self._metrics["patterns"]["leastEffectiveStrategies"]),
                "issueTypesNeedingImprovement": needing_improvement,
            }

    # -------------------------------------------------------------------------
    # Internal
    # -------------------------------------------------------------------------

    @staticmethod
    def _effectiveness(issue: Dict[str, Any]) -> float:
        total = issue["successful"] + issue["failed"] + issue["rolledBack"]
        return issue["successful"] / total if total else 0.0

    def _analyze_patterns(self) -> None:
        stats: Dict[str, Dict[str, int]] = {}
        for record in self._records:
            entry = stats.setdefault(record.strategy, {"successful": 0, "total": 0})
            entry["total"] += 1
            if record.success:
                entry["successful"] += 1

        ranked = sorted(
            (
                {"strategy": name, "successRate": s["successful"] / s["total"]}
                for name, s in stats.items()
            ),
            key=lambda item: item["successRate"],
            reverse=True,
        )

        failure_modes: Dict[tuple, int] = {}
        for record in self._records:
            if not record.success and record.error:
                key = (record.issue_type, record.error)
                failure_modes[key] = failure_modes.get(key, 0) + 1

        patterns = self._metrics["patterns"]
        patterns["mostEffectiveStrategies"] = ranked[:5]
        patterns["leastEffectiveStrategies"] = list(reversed(ranked[-5:]))
        patterns["commonFailureModes"] = [
            {"issueType": issue_type, "failureReason": reason, "count": count}
            for (issue_type, reason), count in sorted(
                failure_modes.items(), key=lambda item: item[1], reverse=True
            )[:10]
        ]

    def _append_record(self, record: InterventionRecord) -> None:
        try:
            self._records_file.parent.mkdir(parents=True, exist_ok=True)
            with open(self._records_file, "a") as f:
                f.write(json.dumps(record.to_dict()) + "\n")
                f.flush()
                os.fsync(f.fileno())
        except OSError as e:
            logger.error(f"Intervention record persistence failed: {e}")

    def _save_metrics(self) -> None:
        self._metrics["updatedAt"] = now_iso()
        temp_file = self._metrics_file.with_suffix(".tmp")
        try:
            self._metrics_file.parent.mkdir(parents=True, exist_ok=True)
            with open(temp_file, "w") as f:
                json.dump(self._metrics, f, indent=2)
            temp_file.replace(self._metrics_file)
        except OSError as e:
            logger.error(f"Failed to save intervention metrics to {self._metrics_file}: {e}")

    def _load_records(self) -> List[InterventionRecord]:
        if not self._records_file.exists():
            return []
        records = []
        with open(self._records_file, "r") as f:
            for line_num, line in enumerate(f, 1):
                line = line.strip()
                if not line:
                    continue
                try:
                    records.append(InterventionRecord.from_dict(json.loads(line)))
                except (json.JSONDecodeError, KeyError, TypeError) as e:
                    logger.warning(f"Invalid intervention record at line {line_num}: {e}")
        return records

    def _load_metrics(self) -> Dict[str, Any]:
        metrics = default_intervention_metrics()
        if not self._metrics_file.exists():
            return metrics
        try:
            with open(self._metrics_file, "r") as f:
                metrics.update(json.load(f))
        except (OSError, json.JSONDecodeError) as e:
            logger.warning(
                f"Failed to load intervention metrics from {self._metrics_file}, using defaults: {e}"
            )
            return default_intervention_metrics()
        return metrics
