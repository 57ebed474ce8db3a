"""
Self-Healing Configuration

Configuration for the state store and the event monitor. Values come from
module constants, environment overrides and an optional YAML file whose
`eventMonitoring` section uses the pipeline's camelCase keys.

Example YAML:

    eventMonitoring:
      enabled: true
      pollingInterval: 5000
      thresholds:
        "json:parse_failed":
          count: 3
          windowMs: 60000
          autoAction: true
          confidence: 0.7
      actions:
        requireApproval: ["file:boundary_violation"]
        autoExecute: ["json:parse_failed"]
        maxInterventionsPerHour: 10
"""

import logging
import os
from dataclasses import dataclass, field, asdict
from pathlib import Path
from typing import Optional, Dict, Any, Tuple

import yaml

logger = logging.getLogger("healing_config")


# -----------------------------------------------------------------------------
# Configuration Defaults
# -----------------------------------------------------------------------------
STATE_DIR = Path(os.getenv("DEVLOOP_STATE_DIR", ".devloop"))
TUNING_DIR = Path(os.getenv("HEALING_TUNING_DIR", str(STATE_DIR / "tuning")))

LOCK_TIMEOUT_MS = 5000
LOCK_RETRY_MS = 50
STALE_LOCK_MS = 30000
READ_ATTEMPTS = 3
READ_BACKOFF_MS = 50

DEFAULT_POLLING_INTERVAL_MS = 5000
DEFAULT_MAX_INTERVENTIONS_PER_HOUR = 10
DEFAULT_EFFECTIVENESS_GRACE_SECONDS = 30.0
DEFAULT_REGRESSION_EVENT_THRESHOLD = 3


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


def _env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    if value is None:
        return default
    try:
        return int(value)
    except ValueError:
        logger.warning(f"Ignoring non-integer {name}={value!r}")
        return default


# -----------------------------------------------------------------------------
# Store Configuration
# -----------------------------------------------------------------------------
@dataclass
class StoreConfig:
    """Timing knobs for the state store's locking and read retries."""
    lock_timeout_ms: int = LOCK_TIMEOUT_MS
    lock_retry_ms: int = LOCK_RETRY_MS
    stale_lock_ms: int = STALE_LOCK_MS
    read_attempts: int = READ_ATTEMPTS
    read_backoff_ms: int = READ_BACKOFF_MS


# -----------------------------------------------------------------------------
# Threshold Configuration
# -----------------------------------------------------------------------------
@dataclass(frozen=True)
class ThresholdConfig:
    """
    Firing rule for one event type.

    window_ms == 0 means "all buffered events"; rate only applies when a
    window is set.
    """
    count: Optional[int] = None
    rate: Optional[float] = None
    window_ms: int = 0
    auto_action: bool = True
    confidence: float = 0.5

    def __post_init__(self):
        if self.count is not None and self.count < 1:
            raise ValueError(f"count must be >= 1, got {self.count}")
        if self.rate is not None and not 0.0 <= self.rate <= 1.0:
            raise ValueError(f"rate must be between 0 and 1, got {self.rate}")
        if self.window_ms < 0:
            raise ValueError(f"window_ms must be >= 0, got {self.window_ms}")
        if not 0.0 <= self.confidence <= 1.0:
            raise ValueError(f"confidence must be between 0 and 1, got {self.confidence}")

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ThresholdConfig":
        return cls(
            count=data.get("count"),
            rate=data.get("rate"),
            window_ms=int(data.get("windowMs", data.get("window_ms", 0)) or 0),
            auto_action=bool(data.get("autoAction", data.get("auto_action", True))),
            confidence=float(data.get("confidence", 0.5)),
        )


# -----------------------------------------------------------------------------
# Monitoring Configuration
# -----------------------------------------------------------------------------
@dataclass
class MonitoringConfig:
    """Behaviour of the event monitor and the executor it drives."""
    enabled: bool = False
    polling_interval_ms: int = DEFAULT_POLLING_INTERVAL_MS
    thresholds: Dict[str, ThresholdConfig] = field(default_factory=dict)
    require_approval: Tuple[str, ...] = ()
    auto_execute: Tuple[str, ...] = ()
    max_interventions_per_hour: int = DEFAULT_MAX_INTERVENTIONS_PER_HOUR
    track_interventions: bool = True
    track_success_rate: bool = True
    track_rollbacks: bool = True
    effectiveness_grace_seconds: float = DEFAULT_EFFECTIVENESS_GRACE_SECONDS
    regression_event_threshold: int = DEFAULT_REGRESSION_EVENT_THRESHOLD

    def to_dict(self) -> Dict[str, Any]:
        result = asdict(self)
        result["thresholds"] = {k: v.to_dict() for k, v in self.thresholds.items()}
        result["require_approval"] = list(self.require_approval)
        result["auto_execute"] = list(self.auto_execute)
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "MonitoringConfig":
        """Build from the camelCase `eventMonitoring` mapping."""
        actions = data.get("actions") or {}
        metrics = data.get("metrics") or {}
        effectiveness = data.get("effectiveness") or {}
        thresholds = {
            event_type: ThresholdConfig.from_dict(rule or {})
            for event_type, rule in (data.get("thresholds") or {}).items()
        }
        return cls(
            enabled=bool(data.get("enabled", False)),
            polling_interval_ms=int(data.get("pollingInterval", DEFAULT_POLLING_INTERVAL_MS)),
            thresholds=thresholds,
            require_approval=tuple(actions.get("requireApproval") or ()),
            auto_execute=tuple(actions.get("autoExecute") or ()),
            max_interventions_per_hour=int(
                actions.get("maxInterventionsPerHour", DEFAULT_MAX_INTERVENTIONS_PER_HOUR)
            ),
            track_interventions=bool(metrics.get("trackInterventions", True)),
            track_success_rate=bool(metrics.get("trackSuccessRate", True)),
            track_rollbacks=bool(metrics.get("trackRollbacks", True)),
            effectiveness_grace_seconds=float(
                effectiveness.get("graceSeconds", DEFAULT_EFFECTIVENESS_GRACE_SECONDS)
            ),
            regression_event_threshold=int(
                effectiveness.get("regressionEventThreshold", DEFAULT_REGRESSION_EVENT_THRESHOLD)
            ),
        )

    def apply_env_overrides(self) -> "MonitoringConfig":
        """Overlay EVENT_MONITOR_* environment variables in place."""
        self.enabled = _env_bool("EVENT_MONITOR_ENABLED", self.enabled)
        self.polling_interval_ms = _env_int(
            "EVENT_MONITOR_POLL_INTERVAL_MS", self.polling_interval_ms
        )
        self.max_interventions_per_hour = _env_int(
            "EVENT_MONITOR_MAX_INTERVENTIONS_PER_HOUR", self.max_interventions_per_hour
        )
        return self


def load_monitoring_config(path: Optional[Path] = None) -> MonitoringConfig:
    """
    Load monitoring configuration from a YAML file.

    A missing file or a file without an `eventMonitoring` section yields
    the defaults. Environment overrides are applied last.
    """
    data: Dict[str, Any] = {}
    if path is not None and Path(path).exists():
        with open(path, "r") as f:
            loaded = yaml.safe_load(f) or {}
        if not isinstance(loaded, dict):
            raise ValueError(f"Monitoring config {path} must be a mapping")
        data = loaded.get("eventMonitoring") or {}
        logger.info(f"Loaded monitoring config from {path}")
    elif path is not None:
        logger.debug(f"Monitoring config {path} not found, using defaults")

    return MonitoringConfig.from_dict(data).apply_env_overrides()
