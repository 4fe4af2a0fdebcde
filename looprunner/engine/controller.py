"""Iteration Controller: drive one task through repeated executor calls.

The loop is an explicit state machine::

    Idle -> Running -> AwaitingExecutor -> Running -> ... -> terminal

Terminal states are Completed, Failed, BudgetExceeded, MaxIterationsReached
and Halted (shared dispatch gate closed). Before every dispatch the
controller checks, in order: the shared gate, the task budget (cost accrued
through the previous iteration), and the iteration cap. An iteration that
has been dispatched always runs to completion.
"""

import time
from enum import Enum
from pathlib import Path
from typing import Dict, Optional, Set

from ..config import LoopConfig
from ..errors import AgentExecutionError, InvalidTransitionError
from ..executor.base import AgentExecutor, AgentRequest, AgentResponse
from ..logger import get_logger
from ..models import IterationRecord, LoopResult, LoopStatus, Task, TaskStatus
from ..state.snapshots import TaskSnapshot
from .context import HaltReason, OrchestratorContext
from .events import EventType

_log = get_logger(__name__)

# Tail of the previous output carried into a prompt when there is no token
CARRY_OVER_CHARS = 2000

COMPLETION_INSTRUCTIONS = """\
When the task is fully complete, output exactly this marker on its own line:
{marker}
Do not output the marker until all of the work is done and verified."""

CONTINUE_PROMPT = """\
Continue working on the task. If it is now fully complete, output {marker}."""


class LoopState(Enum):
    IDLE = "idle"
    RUNNING = "running"
    AWAITING_EXECUTOR = "awaiting_executor"
    COMPLETED = "completed"
    FAILED = "failed"
    BUDGET_EXCEEDED = "budget_exceeded"
    MAX_ITERATIONS_REACHED = "max_iterations_reached"
    HALTED = "halted"


_TRANSITIONS: Dict[LoopState, Set[LoopState]] = {
    LoopState.IDLE: {LoopState.RUNNING},
    LoopState.RUNNING: {
        LoopState.AWAITING_EXECUTOR,
        LoopState.BUDGET_EXCEEDED,
        LoopState.MAX_ITERATIONS_REACHED,
        LoopState.HALTED,
    },
    LoopState.AWAITING_EXECUTOR: {LoopState.RUNNING, LoopState.COMPLETED, LoopState.FAILED},
    LoopState.COMPLETED: set(),
    LoopState.FAILED: set(),
    LoopState.BUDGET_EXCEEDED: set(),
    LoopState.MAX_ITERATIONS_REACHED: set(),
    LoopState.HALTED: set(),
}

_TERMINAL_STATUS = {
    LoopState.COMPLETED: LoopStatus.COMPLETED,
    LoopState.FAILED: LoopStatus.ERROR,
    LoopState.BUDGET_EXCEEDED: LoopStatus.BUDGET_EXCEEDED,
    LoopState.MAX_ITERATIONS_REACHED: LoopStatus.MAX_ITERATIONS_REACHED,
    LoopState.HALTED: LoopStatus.HALTED,
}


def build_prompt(task_prompt: str, iteration: int, loop_config: LoopConfig,
                 continuation_token: Optional[str], last_output: Optional[str]) -> str:
    """Prompt for the given iteration number."""
    marker = loop_config.completion.display_marker
    if iteration <= 1 or (not continuation_token and not last_output):
        return f"{task_prompt}\n\n{COMPLETION_INSTRUCTIONS.format(marker=marker)}"
    if continuation_token:
        return CONTINUE_PROMPT.format(marker=marker)
    tail = last_output[-CARRY_OVER_CHARS:]
    return (
        f"{task_prompt}\n\n"
        f"Output from the previous iteration (last {len(tail)} characters):\n{tail}\n\n"
        f"{CONTINUE_PROMPT.format(marker=marker)}"
    )


class IterationController:
    """Run one task to a terminal outcome. One ``run`` at a time per instance."""

    def __init__(self, context: OrchestratorContext, executor: AgentExecutor,
                 working_dir: Optional[Path] = None, fail_fast: bool = False):
        self.context = context
        self.executor = executor
        self.working_dir = working_dir
        self.fail_fast = fail_fast
        self.state = LoopState.IDLE
        self.snapshot_failures = 0

    # ── State machine ──

    def _transition(self, to_state: LoopState) -> None:
        if to_state not in _TRANSITIONS[self.state]:
            raise InvalidTransitionError("iteration loop", self.state.value, to_state.value)
        self.state = to_state

    # ── Persistence ──

    def _persist(self, snapshot: TaskSnapshot) -> None:
        try:
            self.context.store.save_task(snapshot)
        except (OSError, TypeError, ValueError) as e:
            # Durability caveat: resume of this task may start from an older snapshot.
            self.snapshot_failures += 1
            _log.warning("Snapshot write failed for task %s: %s", snapshot.short_id, e)

    def _new_snapshot(self, task: Task) -> TaskSnapshot:
        return TaskSnapshot(
            id=task.id,
            prompt=task.prompt,
            model=task.model,
            max_iterations=task.max_iterations,
            budget_usd=task.budget_usd,
            name=task.name,
            workflow_id=task.workflow_id,
            working_dir=str(self.working_dir) if self.working_dir else None,
        )

    # ── Main loop ──

    def run(self, task: Task, loop_config: Optional[LoopConfig] = None,
            resume_state: Optional[TaskSnapshot] = None) -> LoopResult:
        """Drive ``task`` until completion, budget, cap, error or halt.

        With ``resume_state`` the loop re-enters at ``iteration + 1`` with the
        saved cost, usage, continuation token and history.
        """
        loop_config = loop_config or self.context.config.loop
        events = self.context.events
        gate = self.context.gate
        started = time.monotonic()

        self.state = LoopState.IDLE
        self.snapshot_failures = 0
        snapshot = resume_state if resume_state is not None else self._new_snapshot(task)
        snapshot.max_iterations = task.max_iterations
        snapshot.budget_usd = task.budget_usd
        snapshot.error = None
        if self.working_dir and not snapshot.working_dir:
            snapshot.working_dir = str(self.working_dir)

        self._transition(LoopState.RUNNING)
        task.status = TaskStatus.RUNNING
        snapshot.status = TaskStatus.RUNNING
        self._persist(snapshot)
        events.emit(EventType.STARTED, task.id, task.label, iteration=snapshot.iteration,
                    cost_usd=snapshot.cost_usd, data={"resumed": resume_state is not None})
        _log.info("Task %s started at iteration %d", task.label, snapshot.iteration + 1)

        error: Optional[str] = None
        halt_reason: Optional[HaltReason] = None

        while self.state is LoopState.RUNNING:
            halt_reason = gate.check()
            if halt_reason is not None:
                self._transition(LoopState.HALTED)
                break
            if task.budget_usd is not None and snapshot.cost_usd >= task.budget_usd:
                self._transition(LoopState.BUDGET_EXCEEDED)
                break
            if snapshot.iteration >= task.max_iterations:
                self._transition(LoopState.MAX_ITERATIONS_REACHED)
                break

            snapshot.iteration += 1
            iteration = snapshot.iteration
            token = snapshot.continuation_token if loop_config.context_carry_over else None
            request = AgentRequest(
                prompt=build_prompt(task.prompt, iteration, loop_config, token, snapshot.last_output),
                model=task.model,
                allowed_tools=loop_config.tools_policy,
                continuation_token=token,
                working_dir=self.working_dir,
                skip_permissions=loop_config.skip_permissions,
            )

            self._transition(LoopState.AWAITING_EXECUTOR)
            events.emit(EventType.ITERATION_STARTED, task.id, task.label, iteration=iteration,
                        cost_usd=snapshot.cost_usd)
            _log.debug("Task %s: dispatching iteration %d", task.label, iteration)

            try:
                response = self.executor.execute(request)
            except AgentExecutionError as e:
                error = str(e)
            except Exception as e:
                error = f"{type(e).__name__}: {e}"

            if error is not None:
                _log.error("Task %s: executor failed on iteration %d: %s", task.label, iteration, error)
                events.emit(EventType.LOOP_ERROR, task.id, task.label, iteration=iteration,
                            cost_usd=snapshot.cost_usd, message=error)
                self._transition(LoopState.FAILED)
                break

            self._record_iteration(task, snapshot, response)
            events.emit(EventType.ITERATION_COMPLETED, task.id, task.label, iteration=iteration,
                        cost_usd=snapshot.cost_usd,
                        data={"iteration_cost_usd": snapshot.history[-1].cost_usd})

            if not response.success:
                error = response.error or "agent reported failure"
                _log.error("Task %s: agent reported failure on iteration %d: %s",
                           task.label, iteration, error)
                self._transition(LoopState.FAILED)
                break

            if loop_config.completion.is_complete(response.text_output):
                self._transition(LoopState.COMPLETED)
                break

            self._transition(LoopState.RUNNING)
            if loop_config.iteration_delay > 0:
                time.sleep(loop_config.iteration_delay)

        return self._finish(task, snapshot, error, halt_reason, started)

    def _record_iteration(self, task: Task, snapshot: TaskSnapshot, response: AgentResponse) -> None:
        usage = response.token_usage
        cost = response.cost_usd
        if cost is None:
            cost = self.context.prices.cost_for(task.model, usage)
        # Single serialized mutation of the shared counter per iteration.
        self.context.budget.record(cost)

        snapshot.cost_usd += cost
        snapshot.usage.add(usage)
        snapshot.last_output = response.text_output
        if response.continuation_token:
            snapshot.continuation_token = response.continuation_token
        snapshot.history.append(
            IterationRecord.create(snapshot.iteration, cost, usage, response.text_output)
        )
        self._persist(snapshot)

    def _finish(self, task: Task, snapshot: TaskSnapshot, error: Optional[str],
                halt_reason: Optional[HaltReason], started: float) -> LoopResult:
        status = _TERMINAL_STATUS[self.state]
        if status is LoopStatus.BUDGET_EXCEEDED:
            error = f"Budget exceeded: ${snapshot.cost_usd:.4f} of ${task.budget_usd:.4f}"
        elif status is LoopStatus.MAX_ITERATIONS_REACHED:
            error = f"Max iterations reached ({snapshot.iteration}) without completion"

        task_status = status.to_task_status()
        if task_status is TaskStatus.FAILED and self.fail_fast:
            # Close the gate before the failure becomes visible to anyone else.
            self.context.gate.halt(HaltReason.TASK_FAILED)

        task.status = task_status
        snapshot.status = task_status
        snapshot.error = error
        self._persist(snapshot)

        result = LoopResult(
            task_id=task.id,
            status=status,
            iteration=snapshot.iteration,
            cost_usd=snapshot.cost_usd,
            usage=snapshot.usage,
            output=snapshot.last_output,
            error=error,
            budget_usd=task.budget_usd,
            halt_reason=halt_reason.value if halt_reason else None,
            snapshot_failures=self.snapshot_failures,
            elapsed_seconds=time.monotonic() - started,
        )

        events = self.context.events
        if status is LoopStatus.COMPLETED:
            events.emit(EventType.TASK_COMPLETED, task.id, task.label, iteration=result.iteration,
                        cost_usd=result.cost_usd)
        elif status is LoopStatus.HALTED:
            events.emit(EventType.HALTED, task.id, task.label, iteration=result.iteration,
                        cost_usd=result.cost_usd, message=result.halt_reason or "")
        else:
            events.emit(EventType.TASK_FAILED, task.id, task.label, iteration=result.iteration,
                        cost_usd=result.cost_usd, message=error or status.value)
        _log.info("Task %s finished: %s after %d iteration(s), $%.4f",
                  task.label, status.value, result.iteration, result.cost_usd)
        return result
