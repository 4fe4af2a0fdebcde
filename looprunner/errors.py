"""Structured error types for the orchestrator."""

from typing import List, Optional


class OrchestratorError(Exception):
    """Base error for all orchestration operations."""
    pass


class ConfigurationError(OrchestratorError):
    """Malformed configuration or workflow definition."""
    pass


class CircularDependencyError(ConfigurationError):
    """Raised when workflow step dependencies form a cycle."""

    def __init__(self, cycle: List[str]):
        self.cycle = list(cycle)
        super().__init__(f"Circular dependency: {' -> '.join(self.cycle)}")


class BudgetExceededError(OrchestratorError):
    """Raised when accumulated cost reaches the configured budget."""

    def __init__(self, spent: float, limit: float):
        self.spent = spent
        self.limit = limit
        super().__init__(f"Budget exceeded: ${spent:.4f} of ${limit:.4f}")


class MaxIterationsReachedError(OrchestratorError):
    """Raised when a task hits its iteration cap without completing."""

    def __init__(self, iteration: int):
        self.iteration = iteration
        super().__init__(f"Max iterations reached ({iteration}) without completion")


class AgentExecutionError(OrchestratorError):
    """Agent executor transport or process failure."""


class AmbiguousResumeIdError(OrchestratorError):
    """Raised when an id prefix matches more than one snapshot."""

    def __init__(self, prefix: str, matches: List[str]):
        self.prefix = prefix
        self.matches = sorted(matches)
        super().__init__(
            f"Ambiguous id '{prefix}' matches: {', '.join(self.matches)}"
        )


class NotFoundError(OrchestratorError):
    """Raised when no snapshot matches an id or prefix."""

    def __init__(self, identifier: str):
        self.identifier = identifier
        super().__init__(f"No task or workflow found for '{identifier}'")


class SnapshotCorruptionError(OrchestratorError):
    """Raised when a state file is unreadable or missing required fields."""

    def __init__(self, path, reason: str):
        self.path = path
        self.reason = reason
        super().__init__(f"Corrupt snapshot {path}: {reason}")


class NotResumableError(OrchestratorError):
    """Raised when resuming an entity whose status does not allow it."""

    def __init__(self, entity_id: str, status: str):
        self.entity_id = entity_id
        self.status = status
        super().__init__(f"{entity_id} is {status} and cannot be resumed")


class InvalidTransitionError(OrchestratorError):
    """Raised on a state-machine transition the table does not allow."""

    def __init__(self, entity: str, from_state, to_state, detail: Optional[str] = None):
        self.entity = entity
        self.from_state = from_state
        self.to_state = to_state
        msg = f"{entity}: invalid transition {from_state} -> {to_state}"
        if detail:
            msg += f" ({detail})"
        super().__init__(msg)
