"""TaskWorker: long-lived worker thread that runs one task loop at a time."""

import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from ..config import LoopConfig
from ..engine.context import OrchestratorContext
from ..engine.controller import IterationController
from ..executor.base import AgentExecutor
from ..logger import get_logger
from ..models import LoopResult, LoopStatus, Task
from ..state.snapshots import TaskSnapshot
from .messages import MessageBus, MessageType, WorkerMessage

_log = get_logger(__name__)


@dataclass
class Assignment:
    task: Task
    loop_config: LoopConfig
    working_dir: Optional[Path] = None
    resume_state: Optional[TaskSnapshot] = None


_RESULT_MESSAGES = {
    LoopStatus.COMPLETED: MessageType.TASK_COMPLETE,
    LoopStatus.HALTED: MessageType.TASK_HALTED,
}


class TaskWorker(threading.Thread):
    """Daemon thread: blocks on its inbox and drives assigned tasks."""

    def __init__(self, name: str, bus: MessageBus, context: OrchestratorContext,
                 executor: AgentExecutor, fail_fast: bool = False):
        super().__init__(name=f"looprunner-{name}", daemon=True)
        self.worker_name = name
        self.bus = bus
        self.context = context
        self.executor = executor
        self.fail_fast = fail_fast
        self._shutdown = threading.Event()
        # Registered before start() so no assignment can be lost.
        self.bus.register_worker(self.worker_name)

    def run(self):
        try:
            while not self._shutdown.is_set():
                msg = self.bus.worker_recv(self.worker_name, timeout=1.0)
                if msg is None:
                    continue
                if msg.type == MessageType.SHUTDOWN:
                    break
                if msg.type == MessageType.TASK_ASSIGNED:
                    self._handle_task(msg.payload)
        finally:
            self.bus.unregister_worker(self.worker_name)

    def _handle_task(self, assignment: Assignment):
        task = assignment.task
        controller = IterationController(
            self.context, self.executor,
            working_dir=assignment.working_dir,
            fail_fast=self.fail_fast,
        )
        try:
            result = controller.run(task, assignment.loop_config, resume_state=assignment.resume_state)
        except Exception as e:
            _log.exception("Worker %s: task %s crashed", self.worker_name, task.label)
            result = LoopResult(task_id=task.id, status=LoopStatus.ERROR, iteration=0,
                                error=f"{type(e).__name__}: {e}", budget_usd=task.budget_usd)

        self.bus.send_to_coordinator(WorkerMessage(
            type=_RESULT_MESSAGES.get(result.status, MessageType.TASK_FAILED),
            sender=self.worker_name,
            recipient="coordinator",
            task_id=task.id,
            payload=result,
        ))

    def request_shutdown(self):
        self._shutdown.set()
