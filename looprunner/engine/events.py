"""Progress events and the event bus observers subscribe to."""

import threading
import time
from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Deque, Dict, List, Optional

from ..logger import get_logger

_log = get_logger(__name__)


class EventType(Enum):
    STARTED = "started"                        # task entered its loop
    ITERATION_STARTED = "iteration_started"
    ITERATION_COMPLETED = "iteration_completed"
    TASK_COMPLETED = "task_completed"
    TASK_FAILED = "task_failed"
    TASK_SKIPPED = "task_skipped"              # workflow step with a failed dependency
    LOOP_ERROR = "loop_error"                  # executor raised
    HALTED = "halted"                          # shared gate closed (fail-fast / budget)
    FINISHED = "finished"                      # a parallel/workflow run returned


@dataclass
class OrchestratorEvent:
    type: EventType
    task_id: str = ""
    label: str = ""
    iteration: int = 0
    cost_usd: float = 0.0
    message: str = ""
    data: Dict[str, Any] = field(default_factory=dict)
    timestamp: float = field(default_factory=time.time)


Subscriber = Callable[[OrchestratorEvent], None]

_MAX_HISTORY = 500


class EventBus:
    """Thread-safe fan-out of events to subscribers.

    Subscribers run on the publishing thread. A subscriber that raises is
    logged and does not affect the publisher or other subscribers.
    """

    def __init__(self, max_history: int = _MAX_HISTORY):
        self._subscribers: List[Subscriber] = []
        self._history: Deque[OrchestratorEvent] = deque(maxlen=max_history)
        self._lock = threading.Lock()

    def subscribe(self, callback: Subscriber) -> None:
        with self._lock:
            self._subscribers.append(callback)

    def unsubscribe(self, callback: Subscriber) -> None:
        with self._lock:
            if callback in self._subscribers:
                self._subscribers.remove(callback)

    def publish(self, event: OrchestratorEvent) -> None:
        with self._lock:
            self._history.append(event)
            subscribers = list(self._subscribers)
        for callback in subscribers:
            try:
                callback(event)
            except Exception:
                _log.exception("Event subscriber failed on %s", event.type.value)

    def emit(self, etype: EventType, task_id: str = "", label: str = "",
             **kwargs) -> OrchestratorEvent:
        event = OrchestratorEvent(type=etype, task_id=task_id, label=label, **kwargs)
        self.publish(event)
        return event

    def get_history(self, etype: Optional[EventType] = None) -> List[OrchestratorEvent]:
        with self._lock:
            events = list(self._history)
        if etype is not None:
            events = [e for e in events if e.type is etype]
        return events
