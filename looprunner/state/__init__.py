"""Persistent snapshots and the state store."""

from .snapshots import (
    TASK_KIND,
    WORKFLOW_KIND,
    StepRecord,
    StepStatus,
    TaskSnapshot,
    WorkflowSnapshot,
    WorkflowStatus,
)
from .store import StateStore, atomic_write_json

__all__ = [
    "TASK_KIND", "WORKFLOW_KIND", "StepRecord", "StepStatus", "TaskSnapshot",
    "WorkflowSnapshot", "WorkflowStatus", "StateStore", "atomic_write_json",
]
