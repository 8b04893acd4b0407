"""
In-process metrics for the InvoiceFlow API.

Counters live for the life of the process and are exposed at GET /metrics.
"""
import threading
from collections import Counter, deque
from datetime import datetime, timezone
from typing import Any, Dict

RESPONSE_SAMPLE_SIZE = 1000


class _Registry:
    def __init__(self):
        self.started_at = datetime.now(timezone.utc)
        self.endpoints: Counter = Counter()
        self.statuses: Counter = Counter()
        self.errors: Counter = Counter()
        self.error_paths: Counter = Counter()
        self.transitions: Counter = Counter()
        self.conflicts = 0
        self.durations: deque = deque(maxlen=RESPONSE_SAMPLE_SIZE)


_lock = threading.Lock()
_registry = _Registry()


def record_request(method: str, path: str, status_code: int, duration_ms: float):
    with _lock:
        _registry.endpoints[f"{method} {path}"] += 1
        _registry.statuses[f"status_{status_code}"] += 1
        _registry.durations.append(duration_ms)


def record_error(error_type: str, path: str = ""):
    """Count an error by type; CONFLICT errors also bump the conflict counter."""
    with _lock:
        _registry.errors[error_type] += 1
        if path:
            _registry.error_paths[f"{error_type}:{path}"] += 1
        if error_type == "CONFLICT":
            _registry.conflicts += 1


def record_transition(stage: str, action: str, new_status: str):
    with _lock:
        _registry.transitions[f"{stage}:{action}:{new_status}"] += 1


def _percentile(samples, fraction: float) -> float:
    # Too few samples make the tail meaningless.
    if len(samples) < 20:
        return 0
    return sorted(samples)[int(len(samples) * fraction)]


def get_metrics() -> Dict[str, Any]:
    with _lock:
        durations = list(_registry.durations)
        endpoints = dict(_registry.endpoints)
        statuses = dict(_registry.statuses)
        errors = dict(_registry.errors)
        error_paths = dict(_registry.error_paths)
        transitions = dict(_registry.transitions)
        conflicts = _registry.conflicts
        started_at = _registry.started_at

    uptime = datetime.now(timezone.utc) - started_at
    average = sum(durations) / len(durations) if durations else 0

    return {
        "uptime_seconds": int(uptime.total_seconds()),
        "requests": {
            "total": sum(endpoints.values()),
            "by_endpoint": endpoints,
            "by_status": statuses,
        },
        "errors": {
            "total": sum(errors.values()),
            "by_type": {**errors, **error_paths},
        },
        "transitions": {
            "total": sum(transitions.values()),
            "by_stage_action_status": transitions,
            "conflicts": conflicts,
        },
        "performance": {
            "avg_response_time_ms": round(average, 2),
            "p95_response_time_ms": round(_percentile(durations, 0.95), 2),
        },
    }


def reset_metrics():
    """Start counting from zero (used by tests)."""
    global _registry
    with _lock:
        _registry = _Registry()
