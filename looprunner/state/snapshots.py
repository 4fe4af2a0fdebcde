"""Persisted snapshot documents for tasks and workflows."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from ..errors import InvalidTransitionError
from ..models import IterationRecord, TaskStatus, TokenUsage, utc_now

TASK_KIND = "task"
WORKFLOW_KIND = "workflow"


def _ts(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _parse_ts(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


@dataclass
class TaskSnapshot:
    """Durable state of one task, rewritten after every iteration and transition."""

    id: str
    prompt: str
    model: str
    max_iterations: int
    budget_usd: Optional[float] = None
    status: TaskStatus = TaskStatus.PENDING
    iteration: int = 0
    cost_usd: float = 0.0
    usage: TokenUsage = field(default_factory=TokenUsage)
    continuation_token: Optional[str] = None
    name: Optional[str] = None
    workflow_id: Optional[str] = None
    working_dir: Optional[str] = None
    last_output: Optional[str] = None
    error: Optional[str] = None
    history: List[IterationRecord] = field(default_factory=list)
    created_at: datetime = field(default_factory=utc_now)
    updated_at: datetime = field(default_factory=utc_now)

    kind = TASK_KIND

    @property
    def short_id(self) -> str:
        return self.id[:8]

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    @property
    def can_resume(self) -> bool:
        return self.status.is_resumable

    def touch(self) -> None:
        self.updated_at = utc_now()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "kind": TASK_KIND,
            "name": self.name,
            "workflow_id": self.workflow_id,
            "prompt": self.prompt,
            "model": self.model,
            "status": self.status.value,
            "iteration": self.iteration,
            "max_iterations": self.max_iterations,
            "cost_usd": self.cost_usd,
            "budget_usd": self.budget_usd,
            "token_usage": self.usage.to_dict(),
            "continuation_token": self.continuation_token,
            "working_dir": self.working_dir,
            "last_output": self.last_output,
            "error": self.error,
            "created_at": _ts(self.created_at),
            "updated_at": _ts(self.updated_at),
            "history": [r.to_dict() for r in self.history],
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "TaskSnapshot":
        return cls(
            id=data["id"],
            name=data.get("name"),
            workflow_id=data.get("workflow_id"),
            prompt=data.get("prompt", ""),
            model=data.get("model", "sonnet"),
            status=TaskStatus(data["status"]),
            iteration=int(data.get("iteration", 0)),
            max_iterations=int(data["max_iterations"]),
            cost_usd=float(data.get("cost_usd", 0.0)),
            budget_usd=data.get("budget_usd"),
            usage=TokenUsage.from_dict(data.get("token_usage")),
            continuation_token=data.get("continuation_token"),
            working_dir=data.get("working_dir"),
            last_output=data.get("last_output"),
            error=data.get("error"),
            created_at=_parse_ts(data.get("created_at")) or utc_now(),
            updated_at=_parse_ts(data.get("updated_at")) or utc_now(),
            history=[IterationRecord.from_dict(r) for r in data.get("history", [])],
        )


class StepStatus(Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"

    @property
    def is_terminal(self) -> bool:
        return self in (StepStatus.COMPLETED, StepStatus.FAILED, StepStatus.SKIPPED)

    def can_transition_to(self, other: "StepStatus") -> bool:
        return other in _STEP_TRANSITIONS[self]


# Monotonic within one execution attempt: no backward transitions.
_STEP_TRANSITIONS = {
    StepStatus.PENDING: {StepStatus.RUNNING, StepStatus.SKIPPED},
    StepStatus.RUNNING: {StepStatus.COMPLETED, StepStatus.FAILED},
    StepStatus.COMPLETED: set(),
    StepStatus.FAILED: set(),
    StepStatus.SKIPPED: set(),
}


class WorkflowStatus(Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    INTERRUPTED = "interrupted"

    @property
    def is_terminal(self) -> bool:
        return self in (WorkflowStatus.COMPLETED, WorkflowStatus.FAILED)

    @property
    def is_resumable(self) -> bool:
        return self in (WorkflowStatus.RUNNING, WorkflowStatus.FAILED, WorkflowStatus.INTERRUPTED)


@dataclass
class StepRecord:
    status: StepStatus = StepStatus.PENDING
    model: str = "sonnet"
    cost_usd: float = 0.0
    iterations: int = 0
    error: Optional[str] = None
    task_id: Optional[str] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": self.status.value,
            "model": self.model,
            "cost_usd": self.cost_usd,
            "iterations": self.iterations,
            "error": self.error,
            "task_id": self.task_id,
            "started_at": _ts(self.started_at),
            "completed_at": _ts(self.completed_at),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "StepRecord":
        return cls(
            status=StepStatus(data.get("status", "pending")),
            model=data.get("model", "sonnet"),
            cost_usd=float(data.get("cost_usd", 0.0)),
            iterations=int(data.get("iterations", 0)),
            error=data.get("error"),
            task_id=data.get("task_id"),
            started_at=_parse_ts(data.get("started_at")),
            completed_at=_parse_ts(data.get("completed_at")),
        )


@dataclass
class WorkflowSnapshot:
    """Durable state of one workflow run."""

    id: str
    name: str
    definition: Dict[str, Any]
    steps: Dict[str, StepRecord]
    status: WorkflowStatus = WorkflowStatus.PENDING
    current_group: int = 0
    source_path: Optional[str] = None
    error: Optional[str] = None
    created_at: datetime = field(default_factory=utc_now)
    updated_at: datetime = field(default_factory=utc_now)

    kind = WORKFLOW_KIND

    @property
    def short_id(self) -> str:
        return self.id[:8]

    @property
    def total_cost_usd(self) -> float:
        return sum(s.cost_usd for s in self.steps.values())

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    @property
    def can_resume(self) -> bool:
        return self.status.is_resumable

    def touch(self) -> None:
        self.updated_at = utc_now()

    def transition_step(self, name: str, status: StepStatus) -> StepRecord:
        """Move a step forward; backward transitions raise."""
        record = self.steps[name]
        if status is record.status:
            return record
        if not record.status.can_transition_to(status):
            raise InvalidTransitionError(f"step {name}", record.status.value, status.value)
        record.status = status
        now = utc_now()
        if status is StepStatus.RUNNING:
            record.started_at = now
        elif status in (StepStatus.COMPLETED, StepStatus.FAILED):
            record.completed_at = now
        self.touch()
        return record

    def rearm(self, names) -> None:
        """Reset non-completed steps to Pending for a new execution attempt."""
        for name in names:
            record = self.steps[name]
            if record.status is StepStatus.COMPLETED:
                continue
            record.status = StepStatus.PENDING
            record.error = None
            record.started_at = None
            record.completed_at = None
        self.touch()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "kind": WORKFLOW_KIND,
            "name": self.name,
            "status": self.status.value,
            "current_group": self.current_group,
            "total_cost_usd": self.total_cost_usd,
            "source_path": self.source_path,
            "error": self.error,
            "created_at": _ts(self.created_at),
            "updated_at": _ts(self.updated_at),
            "steps": {name: rec.to_dict() for name, rec in self.steps.items()},
            "definition": self.definition,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "WorkflowSnapshot":
        return cls(
            id=data["id"],
            name=data.get("name", ""),
            definition=data["definition"],
            steps={name: StepRecord.from_dict(rec) for name, rec in data.get("steps", {}).items()},
            status=WorkflowStatus(data["status"]),
            current_group=int(data.get("current_group", 0)),
            source_path=data.get("source_path"),
            error=data.get("error"),
            created_at=_parse_ts(data.get("created_at")) or utc_now(),
            updated_at=_parse_ts(data.get("updated_at")) or utc_now(),
        )
