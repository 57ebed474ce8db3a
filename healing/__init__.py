"""
Self-Healing Control Loop for the autonomous build pipeline.

This package watches the pipeline's operational event stream, decides when
a recurring problem warrants automatic correction, classifies it, runs a
remediation and follows up on whether the remediation worked. It also owns
the concurrency-safe persisted state (execution state and metrics) that the
rest of the pipeline reads and writes.

Components:
- event_model / event_stream: events, filters and the in-memory event source
- state_schema / state_store: validated documents with atomic, locked writes
- thresholds: count / rate thresholds and the hourly intervention cap
- issue_classifier: rule-based classification by event-type prefix
- strategies / action_executor: pluggable remediations and effectiveness checks
- intervention_tracker: durable intervention history and effectiveness metrics
- event_monitor: the polling orchestrator that ties it all together

Typical wiring (inside a running asyncio loop):

    from healing.config import load_monitoring_config
    from healing.event_monitor import create_event_monitor
    from healing.event_stream import EventStream
    from healing.intervention_tracker import InterventionMetricsTracker
    from healing.state_store import StateStore

    store = StateStore(state_dir)
    await store.initialize()
    stream = EventStream()
    monitor = create_event_monitor(
        stream,
        store,
        config=load_monitoring_config(config_path),
        tracker=InterventionMetricsTracker(state_dir),
    )
    monitor.start()
"""

__version__ = "0.1.0"
