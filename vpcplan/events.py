"""
Run event log (``logs.ndjson``).

One JSON object per line: ``{"ts": ..., "type": ..., "data": {...}}``. The log
is append-only and is the source of truth for a run's status, including runs
that died before writing a report.
"""

import json
from collections import Counter
from datetime import datetime
from typing import Any, Dict, Iterator, List, Optional

from .state import get_run_dir


class EventTypes:
    PLAN_BUILT = "PLAN_BUILT"
    APPLY_START = "APPLY_START"
    RESOURCE_REUSED = "RESOURCE_REUSED"
    RESOURCE_CREATED = "RESOURCE_CREATED"
    RETRY = "RETRY"
    RESOURCE_FAILED = "RESOURCE_FAILED"
    APPLY_DONE = "APPLY_DONE"
    APPLY_FAILED = "APPLY_FAILED"
    APPLY_CANCELLED = "APPLY_CANCELLED"
    DESTROY_START = "DESTROY_START"
    RESOURCE_DELETED = "RESOURCE_DELETED"
    DESTROY_DONE = "DESTROY_DONE"
    DESTROY_FAILED = "DESTROY_FAILED"
    DESTROY_CANCELLED = "DESTROY_CANCELLED"


STATUS_BY_EVENT = {
    EventTypes.PLAN_BUILT: "planned",
    EventTypes.APPLY_START: "applying",
    EventTypes.RESOURCE_REUSED: "applying",
    EventTypes.RESOURCE_CREATED: "applying",
    EventTypes.RETRY: "applying",
    EventTypes.RESOURCE_FAILED: "failed",
    EventTypes.APPLY_DONE: "applied",
    EventTypes.APPLY_FAILED: "failed",
    EventTypes.APPLY_CANCELLED: "cancelled",
    EventTypes.DESTROY_START: "destroying",
    EventTypes.RESOURCE_DELETED: "destroying",
    EventTypes.DESTROY_DONE: "destroyed",
    EventTypes.DESTROY_FAILED: "failed",
    EventTypes.DESTROY_CANCELLED: "cancelled",
}


def _log_path(run_id: str):
    return get_run_dir(run_id) / "logs.ndjson"


def emit_event(run_id: str, event_type: str, data: Dict[str, Any]) -> None:
    """
    Append an event to the run's log.

    Args:
        run_id: Run ID
        event_type: One of EventTypes
        data: Event payload; non-JSON values are stringified
    """
    event = {"ts": datetime.now().isoformat(), "type": event_type, "data": data}
    with open(_log_path(run_id), "a") as f:
        f.write(json.dumps(event, default=str) + "\n")
        f.flush()


def iter_events(run_id: str) -> Iterator[Dict[str, Any]]:
    """Yield events in write order, skipping truncated or malformed lines."""
    path = _log_path(run_id)
    if not path.exists():
        return

    with open(path, "r") as f:
        for line in f:
            line = line.strip()
            if not line:
                continue
            try:
                yield json.loads(line)
            except json.JSONDecodeError:
                continue


def read_events(run_id: str) -> List[Dict[str, Any]]:
    return list(iter_events(run_id))


def get_last_event(run_id: str) -> Optional[Dict[str, Any]]:
    last = None
    for last in iter_events(run_id):
        pass
    return last


def get_status_from_events(run_id: str) -> str:
    """
    Determine run status from its last event.

    Returns:
        Status string, "unknown" for an empty or unrecognised log
    """
    last_event = get_last_event(run_id)
    if not last_event:
        return "unknown"
    return STATUS_BY_EVENT.get(last_event.get("type", ""), "unknown")


def count_events(run_id: str) -> Dict[str, int]:
    """Number of events of each type in the run's log."""
    return dict(Counter(event.get("type", "") for event in iter_events(run_id)))
