"""TaskBoard: thread-safe task state machine for one parallel run."""

import threading
from enum import Enum
from typing import Dict, List, Optional

from ..errors import InvalidTransitionError
from ..models import LoopResult, Task, TaskStatus
from ..state.snapshots import StepStatus
from ..workflow.scheduler import DagScheduler


class BoardState(Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    INTERRUPTED = "interrupted"
    SKIPPED = "skipped"


_TERMINAL_STATES = frozenset({
    BoardState.COMPLETED, BoardState.FAILED, BoardState.INTERRUPTED, BoardState.SKIPPED,
})

_TRANSITIONS = {
    BoardState.PENDING: {BoardState.RUNNING, BoardState.SKIPPED},
    BoardState.RUNNING: {BoardState.COMPLETED, BoardState.FAILED, BoardState.INTERRUPTED},
}


class TaskBoard:
    """Tracks every task of a run and which worker holds it.

    With a ``DagScheduler`` the board is keyed to workflow steps by task name:
    readiness comes from the scheduler and failures skip dependents.
    """

    def __init__(self, scheduler: Optional[DagScheduler] = None):
        self.scheduler = scheduler
        self._tasks: Dict[str, Task] = {}
        self._states: Dict[str, BoardState] = {}
        self._results: Dict[str, LoopResult] = {}
        self._assignments: Dict[str, str] = {}    # task_id → worker name
        self._by_step: Dict[str, str] = {}         # step name → task_id
        self._unreported: List[Task] = []          # skipped during readiness checks
        self._lock = threading.RLock()

    # ── Task management ───────────────────────────────────────

    def add_tasks(self, tasks: List[Task]) -> None:
        with self._lock:
            for task in tasks:
                self._tasks[task.id] = task
                self._states[task.id] = BoardState.PENDING
                if self.scheduler is not None:
                    self._by_step[task.name] = task.id

    def get_task(self, task_id: str) -> Optional[Task]:
        with self._lock:
            return self._tasks.get(task_id)

    # ── State transitions ─────────────────────────────────────

    def _set(self, task_id: str, state: BoardState) -> None:
        current = self._states[task_id]
        if state not in _TRANSITIONS.get(current, set()):
            raise InvalidTransitionError(f"task {task_id[:8]}", current.value, state.value)
        self._states[task_id] = state

    def start(self, task_id: str, worker: str) -> None:
        with self._lock:
            self._set(task_id, BoardState.RUNNING)
            self._assignments[task_id] = worker
            if self.scheduler is not None:
                self.scheduler.mark_started(self._tasks[task_id].name)

    def finish(self, task_id: str, result: LoopResult) -> List[Task]:
        """Record a task's result. Returns tasks skipped as a consequence."""
        with self._lock:
            self._results[task_id] = result
            self._assignments.pop(task_id, None)
            task = self._tasks[task_id]
            if result.succeeded:
                self._set(task_id, BoardState.COMPLETED)
                if self.scheduler is not None:
                    self.scheduler.mark_completed(task.name)
                return []
            if result.task_status is TaskStatus.INTERRUPTED:
                self._set(task_id, BoardState.INTERRUPTED)
                if self.scheduler is not None:
                    self.scheduler.mark_interrupted(task.name)
                return []
            self._set(task_id, BoardState.FAILED)
            if self.scheduler is None:
                return []
            return self._skip_steps(self.scheduler.mark_failed(task.name))

    def _skip_steps(self, names: List[str]) -> List[Task]:
        skipped = []
        for name in names:
            tid = self._by_step.get(name)
            if tid is not None and self._states[tid] is BoardState.PENDING:
                self._set(tid, BoardState.SKIPPED)
                skipped.append(self._tasks[tid])
        return skipped

    # ── Queries ───────────────────────────────────────────────

    def get_assignable(self) -> List[Task]:
        """Pending tasks that may start now, in submission order."""
        with self._lock:
            if self.scheduler is None:
                return [t for tid, t in self._tasks.items() if self._states[tid] is BoardState.PENDING]
            ready = set(self.scheduler.get_ready_steps())
            # Steps the scheduler skipped while computing readiness.
            self._unreported.extend(self._skip_steps([
                name for name, tid in self._by_step.items()
                if self._states[tid] is BoardState.PENDING
                and self.scheduler.status(name) is StepStatus.SKIPPED
            ]))
            return [
                t for tid, t in self._tasks.items()
                if self._states[tid] is BoardState.PENDING and t.name in ready
            ]

    def take_skipped(self) -> List[Task]:
        """Tasks skipped by ``get_assignable`` since the last call."""
        with self._lock:
            skipped, self._unreported = self._unreported, []
            return skipped

    def get_state(self, task_id: str) -> Optional[BoardState]:
        with self._lock:
            return self._states.get(task_id)

    def get_result(self, task_id: str) -> Optional[LoopResult]:
        with self._lock:
            return self._results.get(task_id)

    def get_assignment(self, task_id: str) -> Optional[str]:
        with self._lock:
            return self._assignments.get(task_id)

    def all_resolved(self) -> bool:
        with self._lock:
            return all(s in _TERMINAL_STATES for s in self._states.values()) if self._states else True
