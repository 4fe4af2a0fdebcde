"""WorkflowRunner: execute and resume workflows over the Parallel Executor."""

import dataclasses
import uuid
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from ..config import CompletionStrategy, LoopConfig, ParallelConfig
from ..engine.context import OrchestratorContext
from ..errors import ConfigurationError, NotResumableError
from ..executor.base import AgentExecutor
from ..logger import get_logger
from ..models import LoopResult, LoopStatus, Task
from ..parallel.board import BoardState
from ..parallel.coordinator import ParallelExecutor, ParallelResult
from ..parallel.workspace import WorkspaceManager
from ..state.snapshots import StepRecord, StepStatus, WorkflowSnapshot, WorkflowStatus
from .definition import WorkflowDefinition
from .scheduler import DagScheduler

_log = get_logger(__name__)


@dataclass
class WorkflowResult:
    workflow_id: str
    name: str
    status: WorkflowStatus
    steps: Dict[str, StepRecord] = field(default_factory=dict)
    results: Dict[str, LoopResult] = field(default_factory=dict)   # step name → this attempt's result
    total_cost_usd: float = 0.0
    halted_early: bool = False
    halt_reason: Optional[str] = None
    error: Optional[str] = None

    @property
    def short_id(self) -> str:
        return self.workflow_id[:8]

    @property
    def succeeded(self) -> bool:
        return self.status is WorkflowStatus.COMPLETED

    @property
    def executed_steps(self) -> List[str]:
        return list(self.results)


class WorkflowRunner:
    """Validate, order and run workflow steps; persist the snapshot on every transition."""

    def __init__(self, context: OrchestratorContext, executor: AgentExecutor,
                 workspaces: Optional[WorkspaceManager] = None):
        self.context = context
        self.parallel = ParallelExecutor(context, executor, workspaces)

    # ── Entry points ──────────────────────────────────────────

    def run(self, definition: WorkflowDefinition) -> WorkflowResult:
        """Validate the whole workflow, then execute it.

        Structural errors raise before any step starts.
        """
        scheduler = DagScheduler.from_definition(definition)
        for step in definition.steps:
            definition.step_prompt(step)

        snapshot = WorkflowSnapshot(
            id=str(uuid.uuid4()),
            name=definition.name,
            definition=definition.to_dict(),
            steps={
                s.name: StepRecord(model=definition.step_model(s)) for s in definition.steps
            },
            status=WorkflowStatus.RUNNING,
            source_path=definition.source_path,
        )
        self._persist(snapshot)
        _log.info("Workflow %s (%s) started with %d step(s)",
                  definition.name, snapshot.short_id, len(definition.steps))
        return self._execute(definition, scheduler, snapshot, scheduler.topological_order())

    def resume(self, snapshot: WorkflowSnapshot, from_step: Optional[str] = None) -> WorkflowResult:
        """Re-run every non-Completed step in scope; Completed steps are never re-executed.

        ``from_step`` limits the scope to that step and the steps after it
        in topological order.
        """
        if snapshot.status is WorkflowStatus.COMPLETED:
            raise NotResumableError(snapshot.id, snapshot.status.value)

        definition = WorkflowDefinition.from_dict(snapshot.definition, source_path=snapshot.source_path)
        scheduler = DagScheduler.from_definition(definition)
        order = scheduler.topological_order()
        if from_step is not None:
            if from_step not in order:
                raise ConfigurationError(f"Workflow '{snapshot.name}' has no step '{from_step}'")
            order = order[order.index(from_step):]

        for name in scheduler.step_names:
            snapshot.steps.setdefault(name, StepRecord(model=definition.step_model(definition.get_step(name))))
        to_run = [n for n in order if snapshot.steps[n].status is not StepStatus.COMPLETED]
        for name in to_run:
            definition.step_prompt(definition.get_step(name))

        snapshot.rearm(to_run)
        snapshot.status = WorkflowStatus.RUNNING
        snapshot.error = None
        scheduler.restore({name: rec.status for name, rec in snapshot.steps.items()})
        self._persist(snapshot)
        _log.info("Resuming workflow %s: %s", snapshot.short_id, ", ".join(to_run) or "nothing to run")
        return self._execute(definition, scheduler, snapshot, to_run)

    # ── Execution ─────────────────────────────────────────────

    def _persist(self, snapshot: WorkflowSnapshot) -> None:
        try:
            self.context.store.save_workflow(snapshot)
        except (OSError, TypeError, ValueError) as e:
            _log.warning("Workflow snapshot write failed for %s: %s", snapshot.short_id, e)

    def _configs(self, definition: WorkflowDefinition):
        settings = definition.global_settings
        base = self.context.config
        loop_config: LoopConfig = dataclasses.replace(
            base.loop, completion=CompletionStrategy.marker(settings.completion_promise)
        )
        parallel_config = ParallelConfig(
            worker_count=settings.max_parallel_workers,
            global_budget_usd=settings.budget_usd,
            fail_fast=settings.fail_fast,
            isolate_workspaces=base.parallel.isolate_workspaces,
        )
        return loop_config, parallel_config

    def _execute(self, definition: WorkflowDefinition, scheduler: DagScheduler,
                 snapshot: WorkflowSnapshot, names: List[str]) -> WorkflowResult:
        tasks = []
        for name in names:
            step = definition.get_step(name)
            tasks.append(Task(
                prompt=definition.step_prompt(step),
                model=definition.step_model(step),
                max_iterations=definition.step_max_iterations(step),
                budget_usd=step.budget_usd,
                name=step.name,
                workflow_id=snapshot.id,
            ))

        def on_transition(task: Task, state: BoardState, result: Optional[LoopResult]):
            self._record_transition(scheduler, snapshot, task, state, result)

        loop_config, parallel_config = self._configs(definition)
        outcome = self.parallel.run(
            tasks, parallel_config,
            loop_config=loop_config,
            scheduler=scheduler,
            on_transition=on_transition,
            spent_usd=snapshot.total_cost_usd,
        )
        return self._finish(snapshot, tasks, outcome)

    def _record_transition(self, scheduler: DagScheduler, snapshot: WorkflowSnapshot,
                           task: Task, state: BoardState, result: Optional[LoopResult]):
        name = task.name
        record = snapshot.steps[name]
        if state is BoardState.RUNNING:
            snapshot.transition_step(name, StepStatus.RUNNING)
            record.task_id = task.id
            snapshot.current_group = max(snapshot.current_group, scheduler.group_of(name))
        elif state is BoardState.SKIPPED:
            snapshot.transition_step(name, StepStatus.SKIPPED)
            record.error = "skipped: a dependency did not complete"
        elif result is not None:
            record.cost_usd += result.cost_usd
            record.iterations += result.iteration
            if state is BoardState.COMPLETED:
                snapshot.transition_step(name, StepStatus.COMPLETED)
            else:
                snapshot.transition_step(name, StepStatus.FAILED)
                if result.status is LoopStatus.HALTED:
                    record.error = f"interrupted: {result.halt_reason}"
                else:
                    record.error = result.error or result.status.value
        self._persist(snapshot)

    def _finish(self, snapshot: WorkflowSnapshot, tasks: List[Task],
                outcome: ParallelResult) -> WorkflowResult:
        results = {t.name: outcome.results[t.id] for t in tasks if t.id in outcome.results}
        statuses = [rec.status for rec in snapshot.steps.values()]
        if all(s is StepStatus.COMPLETED for s in statuses):
            status = WorkflowStatus.COMPLETED
        elif outcome.halted_early:
            status = WorkflowStatus.INTERRUPTED
        else:
            status = WorkflowStatus.FAILED

        first_error = next((rec.error for rec in snapshot.steps.values()
                            if rec.status is StepStatus.FAILED and rec.error), None)
        if status is not WorkflowStatus.COMPLETED and first_error is None:
            pending = [n for n, rec in snapshot.steps.items() if rec.status is StepStatus.PENDING]
            if pending:
                first_error = f"steps not run: {', '.join(pending)}"
        snapshot.status = status
        snapshot.error = None if status is WorkflowStatus.COMPLETED else first_error
        self._persist(snapshot)
        _log.info("Workflow %s finished: %s ($%.4f)", snapshot.short_id, status.value,
                  snapshot.total_cost_usd)

        return WorkflowResult(
            workflow_id=snapshot.id,
            name=snapshot.name,
            status=status,
            steps=dict(snapshot.steps),
            results=results,
            total_cost_usd=snapshot.total_cost_usd,
            halted_early=outcome.halted_early,
            halt_reason=outcome.halt_reason,
            error=snapshot.error,
        )
