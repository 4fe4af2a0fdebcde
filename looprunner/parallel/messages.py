"""Message types and message bus between the coordinator and task workers."""

import queue
import threading
import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional


class MessageType(Enum):
    TASK_ASSIGNED = "task_assigned"      # coordinator → worker
    TASK_COMPLETE = "task_complete"      # worker → coordinator
    TASK_FAILED = "task_failed"          # worker → coordinator
    TASK_HALTED = "task_halted"          # worker → coordinator (gate closed mid-task)
    SHUTDOWN = "shutdown"                # coordinator → all workers


@dataclass
class WorkerMessage:
    type: MessageType
    sender: str               # "coordinator" or worker name
    recipient: str            # worker name or "coordinator"
    task_id: str = ""
    payload: Any = None       # Assignment going out, LoopResult coming back
    timestamp: float = field(default_factory=time.time)
    msg_id: str = field(default_factory=lambda: uuid.uuid4().hex[:12])


class MessageBus:
    """Thread-safe message bus backed by queue.Queue per recipient."""

    def __init__(self):
        self._coordinator_inbox: "queue.Queue[WorkerMessage]" = queue.Queue()
        self._worker_inboxes: Dict[str, "queue.Queue[WorkerMessage]"] = {}
        self._lock = threading.Lock()

    def register_worker(self, name: str) -> None:
        with self._lock:
            self._worker_inboxes.setdefault(name, queue.Queue())

    def unregister_worker(self, name: str) -> None:
        with self._lock:
            self._worker_inboxes.pop(name, None)

    def send_to_coordinator(self, msg: WorkerMessage) -> None:
        self._coordinator_inbox.put(msg)

    def send_to_worker(self, msg: WorkerMessage) -> bool:
        with self._lock:
            inbox = self._worker_inboxes.get(msg.recipient)
        if inbox is None:
            return False
        inbox.put(msg)
        return True

    def broadcast_to_workers(self, msg: WorkerMessage) -> None:
        with self._lock:
            inboxes = list(self._worker_inboxes.values())
        for inbox in inboxes:
            inbox.put(msg)

    def coordinator_recv(self, timeout: float = 30.0) -> Optional[WorkerMessage]:
        try:
            return self._coordinator_inbox.get(timeout=timeout)
        except queue.Empty:
            return None

    def worker_recv(self, name: str, timeout: float = 30.0) -> Optional[WorkerMessage]:
        with self._lock:
            inbox = self._worker_inboxes.get(name)
        if not inbox:
            return None
        try:
            return inbox.get(timeout=timeout)
        except queue.Empty:
            return None
