"""Core data types: tasks, iteration records and loop results."""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional

from .errors import (
    AgentExecutionError,
    BudgetExceededError,
    MaxIterationsReachedError,
    OrchestratorError,
)

# Iteration output kept in history records
OUTPUT_EXCERPT_CHARS = 500


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def new_task_id() -> str:
    return str(uuid.uuid4())


class TaskStatus(Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    INTERRUPTED = "interrupted"

    @property
    def is_terminal(self) -> bool:
        return self in (TaskStatus.COMPLETED, TaskStatus.FAILED)

    @property
    def is_resumable(self) -> bool:
        return self in (TaskStatus.RUNNING, TaskStatus.INTERRUPTED, TaskStatus.FAILED)


class LoopStatus(Enum):
    COMPLETED = "completed"
    MAX_ITERATIONS_REACHED = "max_iterations_reached"
    BUDGET_EXCEEDED = "budget_exceeded"
    ERROR = "error"
    HALTED = "halted"               # stopped by a shared gate (fail-fast / global budget)

    def to_task_status(self) -> TaskStatus:
        if self is LoopStatus.COMPLETED:
            return TaskStatus.COMPLETED
        if self is LoopStatus.HALTED:
            return TaskStatus.INTERRUPTED
        return TaskStatus.FAILED


@dataclass
class TokenUsage:
    input: int = 0
    output: int = 0
    cache_write: int = 0
    cache_read: int = 0

    @property
    def total(self) -> int:
        return self.input + self.output + self.cache_write + self.cache_read

    def add(self, other: "TokenUsage") -> None:
        self.input += other.input
        self.output += other.output
        self.cache_write += other.cache_write
        self.cache_read += other.cache_read

    def to_dict(self) -> Dict[str, int]:
        return {
            "input": self.input,
            "output": self.output,
            "cache_write": self.cache_write,
            "cache_read": self.cache_read,
        }

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "TokenUsage":
        data = data or {}
        return cls(
            input=int(data.get("input", 0)),
            output=int(data.get("output", 0)),
            cache_write=int(data.get("cache_write", 0)),
            cache_read=int(data.get("cache_read", 0)),
        )


@dataclass(frozen=True)
class IterationRecord:
    """One completed request/response cycle. Appended once, never mutated."""

    iteration_number: int
    cost_usd: float
    token_usage: TokenUsage
    timestamp_utc: datetime
    output_excerpt: str

    @classmethod
    def create(cls, iteration: int, cost_usd: float, usage: TokenUsage, output: str) -> "IterationRecord":
        excerpt = output if len(output) <= OUTPUT_EXCERPT_CHARS else output[-OUTPUT_EXCERPT_CHARS:]
        return cls(
            iteration_number=iteration,
            cost_usd=cost_usd,
            token_usage=usage,
            timestamp_utc=utc_now(),
            output_excerpt=excerpt,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "iteration": self.iteration_number,
            "cost_usd": self.cost_usd,
            "token_usage": self.token_usage.to_dict(),
            "timestamp": self.timestamp_utc.isoformat(),
            "output_excerpt": self.output_excerpt,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "IterationRecord":
        return cls(
            iteration_number=int(data["iteration"]),
            cost_usd=float(data.get("cost_usd", 0.0)),
            token_usage=TokenUsage.from_dict(data.get("token_usage")),
            timestamp_utc=datetime.fromisoformat(data["timestamp"]),
            output_excerpt=data.get("output_excerpt", ""),
        )


@dataclass
class Task:
    """A single unit of iterative work.

    ``status`` is only changed by the Iteration Controller driving the task.
    """

    prompt: str
    model: str = "sonnet"
    max_iterations: int = 50
    budget_usd: Optional[float] = None
    id: str = field(default_factory=new_task_id)
    name: Optional[str] = None
    workflow_id: Optional[str] = None   # set for workflow steps
    status: TaskStatus = TaskStatus.PENDING

    @property
    def short_id(self) -> str:
        return self.id[:8]

    @property
    def label(self) -> str:
        return self.name or self.short_id


@dataclass
class LoopResult:
    """Outcome of driving one task through the Iteration Controller."""

    task_id: str
    status: LoopStatus
    iteration: int
    cost_usd: float = 0.0
    usage: TokenUsage = field(default_factory=TokenUsage)
    output: Optional[str] = None
    error: Optional[str] = None
    budget_usd: Optional[float] = None
    halt_reason: Optional[str] = None
    snapshot_failures: int = 0
    elapsed_seconds: float = 0.0

    @property
    def succeeded(self) -> bool:
        return self.status is LoopStatus.COMPLETED

    @property
    def task_status(self) -> TaskStatus:
        return self.status.to_task_status()

    def raise_for_status(self) -> None:
        """Raise the matching error for any non-completed outcome."""
        if self.status is LoopStatus.COMPLETED:
            return
        if self.status is LoopStatus.MAX_ITERATIONS_REACHED:
            raise MaxIterationsReachedError(self.iteration)
        if self.status is LoopStatus.BUDGET_EXCEEDED:
            raise BudgetExceededError(self.cost_usd, self.budget_usd or 0.0)
        if self.status is LoopStatus.ERROR:
            raise AgentExecutionError(self.error or "agent execution failed")
        raise OrchestratorError(f"Task {self.task_id} halted: {self.halt_reason or 'unknown'}")
