"""ParallelExecutor: bounded worker pool over a set of tasks.

The caller's thread runs the event loop: it dispatches ready tasks to idle
workers, processes results posted on the message bus and stops dispatching
once the shared gate closes (fail-fast or global budget). Workers always
finish their in-flight iteration; the loop returns only after every
dispatched task has reported back.
"""

import time
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Set

from ..config import LoopConfig, ParallelConfig
from ..engine.context import HaltReason, OrchestratorContext
from ..engine.events import EventType
from ..executor.base import AgentExecutor
from ..logger import get_logger
from ..models import LoopResult, LoopStatus, Task, TaskStatus
from ..state.snapshots import TaskSnapshot
from ..workflow.scheduler import DagScheduler
from .board import BoardState, TaskBoard
from .messages import MessageBus, MessageType, WorkerMessage
from .worker import Assignment, TaskWorker
from .workspace import WorkspaceManager

_log = get_logger(__name__)

# Called on the coordinator thread for every task state change.
TransitionHook = Callable[[Task, BoardState, Optional[LoopResult]], None]


@dataclass
class ParallelResult:
    results: Dict[str, LoopResult] = field(default_factory=dict)   # task_id → result
    skipped: List[str] = field(default_factory=list)               # task ids
    not_started: List[str] = field(default_factory=list)           # task ids never dispatched
    total_cost_usd: float = 0.0
    halted_early: bool = False
    halt_reason: Optional[str] = None
    elapsed_seconds: float = 0.0

    @property
    def succeeded(self) -> int:
        return sum(1 for r in self.results.values() if r.succeeded)

    @property
    def failed(self) -> int:
        return sum(1 for r in self.results.values() if r.task_status is TaskStatus.FAILED)

    @property
    def interrupted(self) -> int:
        return sum(1 for r in self.results.values() if r.status is LoopStatus.HALTED)

    @property
    def all_succeeded(self) -> bool:
        return (not self.skipped and not self.not_started
                and all(r.succeeded for r in self.results.values()))


class ParallelExecutor:
    """Run tasks on at most ``worker_count`` concurrent workers."""

    def __init__(self, context: OrchestratorContext, executor: AgentExecutor,
                 workspaces: Optional[WorkspaceManager] = None,
                 message_timeout: float = 1.0, shutdown_timeout: float = 10.0):
        self.context = context
        self.executor = executor
        self.workspaces = workspaces
        self.message_timeout = message_timeout
        self.shutdown_timeout = shutdown_timeout

    def run(self, tasks: List[Task], config: ParallelConfig,
            loop_config: Optional[LoopConfig] = None,
            scheduler: Optional[DagScheduler] = None,
            resume_states: Optional[Dict[str, TaskSnapshot]] = None,
            on_transition: Optional[TransitionHook] = None,
            spent_usd: float = 0.0) -> ParallelResult:
        """Run ``tasks``; with a scheduler, tasks are steps keyed by ``task.name``.

        ``spent_usd`` seeds the shared counter (cost already spent by a resumed run).
        """
        run = _Run(
            context=self.context.for_run(config.global_budget_usd, spent_usd),
            executor=self.executor,
            workspaces=self.workspaces,
            config=config,
            loop_config=loop_config or self.context.config.loop,
            scheduler=scheduler,
            resume_states=resume_states or {},
            on_transition=on_transition,
            message_timeout=self.message_timeout,
            shutdown_timeout=self.shutdown_timeout,
        )
        return run.execute(tasks)


class _Run:
    """State of one ``ParallelExecutor.run`` call."""

    def __init__(self, context: OrchestratorContext, executor: AgentExecutor,
                 workspaces: Optional[WorkspaceManager], config: ParallelConfig,
                 loop_config: LoopConfig, scheduler: Optional[DagScheduler],
                 resume_states: Dict[str, TaskSnapshot],
                 on_transition: Optional[TransitionHook],
                 message_timeout: float, shutdown_timeout: float):
        self.context = context
        self.executor = executor
        self.workspaces = workspaces
        self.config = config
        self.loop_config = loop_config
        self.resume_states = resume_states
        self.on_transition = on_transition
        self.message_timeout = message_timeout
        self.shutdown_timeout = shutdown_timeout
        self.bus = MessageBus()
        self.board = TaskBoard(scheduler)
        self._workers: Dict[str, TaskWorker] = {}
        self._busy_workers: Set[str] = set()
        self._order: List[str] = []

    # ── Lifecycle ─────────────────────────────────────────────

    def execute(self, tasks: List[Task]) -> ParallelResult:
        started = time.monotonic()
        self.board.add_tasks(tasks)
        self._order = [t.id for t in tasks]
        self._start_workers(min(self.config.worker_count, max(len(tasks), 1)))
        try:
            self._event_loop()
        finally:
            self._shutdown_workers()
        result = self._collect(time.monotonic() - started)
        self.context.events.emit(
            EventType.FINISHED, cost_usd=result.total_cost_usd,
            message=result.halt_reason or "",
            data={"succeeded": result.succeeded, "failed": result.failed,
                  "interrupted": result.interrupted, "halted_early": result.halted_early},
        )
        return result

    def _start_workers(self, count: int):
        for i in range(count):
            name = f"worker-{i}"
            worker = TaskWorker(name, self.bus, self.context, self.executor,
                                fail_fast=self.config.fail_fast)
            worker.start()
            self._workers[name] = worker

    def _shutdown_workers(self):
        self.bus.broadcast_to_workers(WorkerMessage(
            type=MessageType.SHUTDOWN, sender="coordinator", recipient="all",
        ))
        for w in self._workers.values():
            w.request_shutdown()
        for w in self._workers.values():
            w.join(timeout=self.shutdown_timeout)
            if w.is_alive():
                _log.warning("Worker %s did not shut down within timeout", w.worker_name)

    # ── Event loop ────────────────────────────────────────────

    def _event_loop(self):
        self._dispatch_ready_tasks()
        while self._busy_workers:
            msg = self.bus.coordinator_recv(timeout=self.message_timeout)
            if msg is None:
                continue
            if msg.type in (MessageType.TASK_COMPLETE, MessageType.TASK_FAILED,
                            MessageType.TASK_HALTED):
                self._on_task_finished(msg)
            self._dispatch_ready_tasks()

    def _idle_workers(self) -> List[str]:
        return [name for name in self._workers if name not in self._busy_workers]

    def _dispatch_ready_tasks(self):
        ready = self.board.get_assignable()
        self._report_skipped(self.board.take_skipped(), "a dependency did not complete")
        for task in ready:
            if self.context.gate.check() is not None:
                return
            idle = self._idle_workers()
            if not idle:
                return
            worker = idle[0]
            try:
                working_dir = self.workspaces.acquire(task) if self.workspaces else None
            except OSError as e:
                self._fail_undispatched(task, f"Cannot prepare workspace: {e}")
                continue
            self._busy_workers.add(worker)
            self.board.start(task.id, worker)
            self._notify(task, BoardState.RUNNING, None)
            self.bus.send_to_worker(WorkerMessage(
                type=MessageType.TASK_ASSIGNED,
                sender="coordinator",
                recipient=worker,
                task_id=task.id,
                payload=Assignment(
                    task=task,
                    loop_config=self.loop_config,
                    working_dir=working_dir,
                    resume_state=self.resume_states.get(task.id),
                ),
            ))

    def _fail_undispatched(self, task: Task, error: str):
        _log.error("Task %s not started: %s", task.label, error)
        self.board.start(task.id, "coordinator")
        self._busy_workers.add("coordinator")
        self._on_task_finished(WorkerMessage(
            type=MessageType.TASK_FAILED, sender="coordinator", recipient="coordinator",
            task_id=task.id,
            payload=LoopResult(task_id=task.id, status=LoopStatus.ERROR, iteration=0,
                               error=error, budget_usd=task.budget_usd),
        ))

    def _on_task_finished(self, msg: WorkerMessage):
        self._busy_workers.discard(msg.sender)
        result: LoopResult = msg.payload
        task = self.board.get_task(msg.task_id)
        if task is None:
            _log.warning("Result for unknown task %s ignored", msg.task_id)
            return

        if msg.type == MessageType.TASK_FAILED and self.config.fail_fast:
            self.context.gate.halt(HaltReason.TASK_FAILED)

        skipped = self.board.finish(task.id, result)
        if self.workspaces:
            self.workspaces.release(task.id)
        self._notify(task, self.board.get_state(task.id), result)
        self._report_skipped(skipped, f"dependency '{task.label}' did not complete")

    def _report_skipped(self, tasks: List[Task], message: str):
        for task in tasks:
            self.context.events.emit(EventType.TASK_SKIPPED, task.id, task.label, message=message)
            self._notify(task, BoardState.SKIPPED, None)

    def _notify(self, task: Task, state: BoardState, result: Optional[LoopResult]):
        if self.on_transition is None:
            return
        try:
            self.on_transition(task, state, result)
        except Exception:
            _log.exception("Transition hook failed for task %s", task.label)

    # ── Results ───────────────────────────────────────────────

    def _collect(self, elapsed: float) -> ParallelResult:
        result = ParallelResult(elapsed_seconds=elapsed)
        for task_id in self._order:
            state = self.board.get_state(task_id)
            loop_result = self.board.get_result(task_id)
            if loop_result is not None:
                result.results[task_id] = loop_result
            elif state is BoardState.SKIPPED:
                result.skipped.append(task_id)
            elif state is BoardState.PENDING:
                result.not_started.append(task_id)
        result.total_cost_usd = sum(r.cost_usd for r in result.results.values())
        reason = self.context.gate.reason
        if reason is not None:
            result.halted_early = True
            result.halt_reason = reason.value
        return result
