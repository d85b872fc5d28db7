"""Typed event channel scoped to one run controller."""

from __future__ import annotations

import copy
import logging
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Set, Tuple

logger = logging.getLogger("council.events")


class EventType(str, Enum):
    RUN_STARTED = "run.started"
    RUN_PAUSED = "run.paused"
    RUN_RESUMED = "run.resumed"
    RUN_COMPLETED = "run.completed"
    RUN_FAILED = "run.failed"
    RUN_ABORTED = "run.aborted"
    PHASE_STARTED = "phase.started"
    PHASE_STAGE = "phase.stage"
    PHASE_COMPLETED = "phase.completed"
    ACTION_STARTED = "action.started"
    ACTION_RETRY = "action.retry"
    ACTION_COMPLETED = "action.completed"
    ACTION_FAILED = "action.failed"
    ACTION_SKIPPED = "action.skipped"
    GAVEL_REQUESTED = "gavel.requested"
    GAVEL_RESOLVED = "gavel.resolved"
    PIPELINE_EVENT = "pipeline.event"
    VARIABLE_CONFLICT = "variable.conflict"
    DELIVERY_COMPLETED = "delivery.completed"
    DELIVERY_EMPTY = "delivery.empty"
    DELIVERY_FAILED = "delivery.failed"
    MODE_CHANGED = "mode.changed"


TERMINAL_EVENTS = (EventType.RUN_COMPLETED, EventType.RUN_FAILED, EventType.RUN_ABORTED)


@dataclass(frozen=True)
class RunEvent:
    type: EventType
    run_id: Optional[str]
    payload: Mapping[str, Any] = field(default_factory=dict)
    timestamp: str = field(default_factory=lambda: datetime.utcnow().isoformat())

    def to_dict(self) -> Dict[str, Any]:
        return {
            "timestamp": self.timestamp,
            "event": self.type.value,
            "run_id": self.run_id,
            **copy.deepcopy(dict(self.payload)),
        }


Subscriber = Callable[[RunEvent], None]


class EventChannel:
    """Publishes run lifecycle events to read-only subscribers.

    Each subscriber gets its own deep copy of the payload, so a subscriber
    cannot alter engine state or what other subscribers see. Subscriber
    exceptions are logged and never reach the engine.
    """

    def __init__(self) -> None:
        self._subscribers: List[Tuple[Subscriber, Optional[Set[EventType]]]] = []

    def subscribe(self, callback: Subscriber, types: Optional[Iterable[EventType]] = None) -> Callable[[], None]:
        entry = (callback, set(types) if types is not None else None)
        self._subscribers.append(entry)

        def unsubscribe() -> None:
            if entry in self._subscribers:
                self._subscribers.remove(entry)

        return unsubscribe

    def emit(self, event_type: EventType, run_id: Optional[str] = None, **payload: Any) -> RunEvent:
        event = RunEvent(type=event_type, run_id=run_id, payload=copy.deepcopy(payload))
        for callback, types in list(self._subscribers):
            if types is not None and event_type not in types:
                continue
            delivered = RunEvent(
                type=event.type,
                run_id=event.run_id,
                payload=copy.deepcopy(dict(event.payload)),
                timestamp=event.timestamp,
            )
            try:
                callback(delivered)
            except Exception:
                logger.exception("Event subscriber failed on %s", event_type.value)
        return event
