"""Iteration engine: controller, shared run context and progress events."""

from .context import CostBudget, DispatchGate, HaltReason, OrchestratorContext
from .controller import IterationController, LoopState, build_prompt
from .events import EventBus, EventType, OrchestratorEvent

__all__ = [
    "CostBudget", "DispatchGate", "HaltReason", "OrchestratorContext",
    "IterationController", "LoopState", "build_prompt",
    "EventBus", "EventType", "OrchestratorEvent",
]
