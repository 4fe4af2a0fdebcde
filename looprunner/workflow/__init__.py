"""Workflow definitions and dependency scheduling."""

from .definition import GlobalSettings, WorkflowDefinition, WorkflowStep
from .scheduler import DagScheduler, ValidationResult

__all__ = [
    "GlobalSettings", "WorkflowDefinition", "WorkflowStep", "DagScheduler", "ValidationResult",
]
