"""Orchestrator: the operational surface used by the CLI and by library callers."""

from enum import IntEnum
from pathlib import Path
from typing import List, Optional, Sequence, Union

from .config import Config, ParallelConfig
from .engine.context import HaltReason, OrchestratorContext
from .engine.controller import IterationController
from .engine.events import EventBus
from .errors import (
    AmbiguousResumeIdError,
    ConfigurationError,
    NotFoundError,
)
from .executor import build_executor
from .executor.base import AgentExecutor
from .logger import get_logger
from .models import LoopResult, LoopStatus, Task
from .parallel.coordinator import ParallelExecutor, ParallelResult
from .parallel.workspace import WorkspaceManager
from .pricing import PriceTable
from .resume import ResumeService
from .state.snapshots import WorkflowStatus
from .state.store import Snapshot, StateStore
from .workflow.definition import WorkflowDefinition
from .workflow.runner import WorkflowResult, WorkflowRunner
from .workflow.scheduler import DagScheduler, ValidationResult

_log = get_logger(__name__)


class ExitCode(IntEnum):
    OK = 0
    FAILED = 1
    MAX_ITERATIONS = 2
    BUDGET_EXCEEDED = 3
    INTERRUPTED = 4
    INVALID = 5
    NOT_FOUND = 6


_LOOP_EXIT = {
    LoopStatus.COMPLETED: ExitCode.OK,
    LoopStatus.ERROR: ExitCode.FAILED,
    LoopStatus.MAX_ITERATIONS_REACHED: ExitCode.MAX_ITERATIONS,
    LoopStatus.BUDGET_EXCEEDED: ExitCode.BUDGET_EXCEEDED,
    LoopStatus.HALTED: ExitCode.INTERRUPTED,
}

# Worst first
_SEVERITY = [
    ExitCode.FAILED, ExitCode.BUDGET_EXCEEDED, ExitCode.MAX_ITERATIONS,
    ExitCode.INTERRUPTED, ExitCode.OK,
]


def _worst(codes) -> ExitCode:
    codes = set(codes)
    for code in _SEVERITY:
        if code in codes:
            return code
    return ExitCode.OK


def exit_code_for(result: Union[LoopResult, ParallelResult, WorkflowResult, ValidationResult]) -> ExitCode:
    """Exit code reflecting the worst status observed."""
    if isinstance(result, LoopResult):
        return _LOOP_EXIT[result.status]
    if isinstance(result, ValidationResult):
        return ExitCode.OK if result.valid else ExitCode.INVALID
    if isinstance(result, ParallelResult):
        codes = [_LOOP_EXIT[r.status] for r in result.results.values()]
        if result.halt_reason == HaltReason.BUDGET_EXCEEDED.value:
            codes.append(ExitCode.BUDGET_EXCEEDED)
        elif result.not_started or result.skipped:
            codes.append(ExitCode.INTERRUPTED)
        return _worst(codes)
    if result.status is WorkflowStatus.COMPLETED:
        return ExitCode.OK
    codes = [_LOOP_EXIT[r.status] for r in result.results.values()]
    if result.halt_reason == HaltReason.BUDGET_EXCEEDED.value:
        codes.append(ExitCode.BUDGET_EXCEEDED)
    codes.append(ExitCode.INTERRUPTED if result.status is WorkflowStatus.INTERRUPTED else ExitCode.FAILED)
    return _worst(codes)


def exit_code_for_error(error: Exception) -> ExitCode:
    if isinstance(error, (NotFoundError, AmbiguousResumeIdError)):
        return ExitCode.NOT_FOUND
    if isinstance(error, ConfigurationError):
        return ExitCode.INVALID
    return ExitCode.FAILED


class Orchestrator:
    """Build the shared context once and expose run / parallel / workflow / resume."""

    def __init__(self, config: Config, executor: Optional[AgentExecutor] = None,
                 prices: Optional[PriceTable] = None, store: Optional[StateStore] = None,
                 events: Optional[EventBus] = None):
        self.config = config
        self.context = OrchestratorContext.create(config, prices=prices, store=store, events=events)
        self.executor = executor or build_executor(config)

    @property
    def events(self) -> EventBus:
        return self.context.events

    @property
    def store(self) -> StateStore:
        return self.context.store

    @property
    def project_root(self) -> Path:
        return Path(self.config.project_root or ".").resolve()

    def _workspaces(self, parallel_config: ParallelConfig) -> WorkspaceManager:
        return WorkspaceManager(
            self.project_root,
            self.config.state_path / "workspaces",
            isolate=parallel_config.isolate_workspaces,
            exclude=[self.config.state_path],
        )

    def new_task(self, prompt: str, model: Optional[str] = None,
                 max_iterations: Optional[int] = None, budget_usd: Optional[float] = None,
                 name: Optional[str] = None) -> Task:
        """Task with config defaults for anything not given."""
        return Task(
            prompt=prompt,
            model=model or self.config.model,
            max_iterations=max_iterations or self.config.max_iterations,
            budget_usd=budget_usd if budget_usd is not None else self.config.budget_usd,
            name=name,
        )

    # ── Operations ────────────────────────────────────────────

    def run(self, task: Task) -> LoopResult:
        controller = IterationController(self.context.for_run(), self.executor,
                                         working_dir=self.project_root)
        return controller.run(task, self.config.loop)

    def parallel(self, tasks: Sequence[Task],
                 parallel_config: Optional[ParallelConfig] = None) -> ParallelResult:
        parallel_config = parallel_config or self.config.parallel
        executor = ParallelExecutor(self.context, self.executor, self._workspaces(parallel_config))
        return executor.run(list(tasks), parallel_config, loop_config=self.config.loop)

    def workflow_run(self, workflow: Union[WorkflowDefinition, str, Path]) -> WorkflowResult:
        definition = self.load_workflow(workflow)
        runner = WorkflowRunner(self.context, self.executor, self._workspaces(self.config.parallel))
        return runner.run(definition)

    def workflow_validate(self, workflow: Union[WorkflowDefinition, str, Path]) -> ValidationResult:
        try:
            definition = self.load_workflow(workflow)
        except ConfigurationError as e:
            return ValidationResult(valid=False, errors=[str(e)])
        return DagScheduler.validate(definition)

    def resume(self, identifier: str, from_step: Optional[str] = None,
               max_iterations: Optional[int] = None) -> Union[LoopResult, WorkflowResult]:
        service = ResumeService(self.context, self.executor, self._workspaces(self.config.parallel))
        return service.resume(identifier, from_step=from_step, max_iterations=max_iterations)

    def list_resumable(self) -> List[Snapshot]:
        return self.store.list_resumable()

    def list_history(self, limit: int = 10) -> List[Snapshot]:
        return self.store.list_history(limit)

    def purge(self, retention_days: Optional[int] = None) -> List[str]:
        days = self.config.retention_days if retention_days is None else retention_days
        if days < 0:
            raise ConfigurationError(f"retention-days: must be >= 0, got {days}")
        purged = self.store.purge(days)
        self._workspaces(self.config.parallel).cleanup(purged)
        return purged

    @staticmethod
    def load_workflow(workflow: Union[WorkflowDefinition, str, Path]) -> WorkflowDefinition:
        if isinstance(workflow, WorkflowDefinition):
            return workflow
        return WorkflowDefinition.load(workflow)
