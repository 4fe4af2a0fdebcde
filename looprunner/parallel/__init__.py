"""Bounded-concurrency execution of independent tasks or workflow steps."""

from .board import BoardState, TaskBoard
from .coordinator import ParallelExecutor, ParallelResult
from .messages import MessageBus, MessageType, WorkerMessage
from .worker import Assignment, TaskWorker
from .workspace import WorkspaceManager

__all__ = [
    "BoardState", "TaskBoard", "ParallelExecutor", "ParallelResult",
    "MessageBus", "MessageType", "WorkerMessage", "Assignment", "TaskWorker",
    "WorkspaceManager",
]
