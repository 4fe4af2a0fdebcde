"""Resume interrupted or failed tasks and workflows from their snapshots."""

from pathlib import Path
from typing import List, Optional, Union

from .engine.context import OrchestratorContext
from .engine.controller import IterationController
from .errors import NotResumableError
from .executor.base import AgentExecutor
from .logger import get_logger
from .models import LoopResult, Task, TaskStatus
from .parallel.workspace import WorkspaceManager
from .state.snapshots import TaskSnapshot, WorkflowSnapshot
from .state.store import Snapshot
from .workflow.runner import WorkflowResult, WorkflowRunner

_log = get_logger(__name__)


class ResumeService:
    def __init__(self, context: OrchestratorContext, executor: AgentExecutor,
                 workspaces: Optional[WorkspaceManager] = None):
        self.context = context
        self.executor = executor
        self.workspaces = workspaces

    def list_resumable(self) -> List[Snapshot]:
        return self.context.store.list_resumable()

    def resume(self, identifier: str, from_step: Optional[str] = None,
               max_iterations: Optional[int] = None) -> Union[LoopResult, WorkflowResult]:
        """Resume a task or workflow by exact id or unambiguous prefix.

        A workflow step's task id resumes its workflow from that step.
        """
        snapshot = self.context.store.load(identifier)
        if isinstance(snapshot, WorkflowSnapshot):
            return self.resume_workflow(snapshot, from_step)
        if snapshot.workflow_id:
            workflow = self.context.store.load_workflow(snapshot.workflow_id)
            return self.resume_workflow(workflow, from_step or snapshot.name)
        return self.resume_task(snapshot, max_iterations)

    def resume_task(self, snapshot: TaskSnapshot, max_iterations: Optional[int] = None) -> LoopResult:
        if snapshot.status is TaskStatus.COMPLETED:
            raise NotResumableError(snapshot.id, snapshot.status.value)

        task = Task(
            prompt=snapshot.prompt,
            model=snapshot.model,
            max_iterations=max_iterations or snapshot.max_iterations,
            budget_usd=snapshot.budget_usd,
            id=snapshot.id,
            name=snapshot.name,
        )
        working_dir = Path(snapshot.working_dir) if snapshot.working_dir else None
        if working_dir is not None and not working_dir.is_dir():
            _log.warning("Working directory %s no longer exists; using the current directory",
                         working_dir)
            working_dir = None

        _log.info("Resuming task %s at iteration %d ($%.4f spent)",
                  snapshot.short_id, snapshot.iteration + 1, snapshot.cost_usd)
        controller = IterationController(self.context.for_run(), self.executor, working_dir=working_dir)
        return controller.run(task, self.context.config.loop, resume_state=snapshot)

    def resume_workflow(self, snapshot: WorkflowSnapshot, from_step: Optional[str] = None) -> WorkflowResult:
        runner = WorkflowRunner(self.context, self.executor, self.workspaces)
        return runner.resume(snapshot, from_step=from_step)
