"""Shared run context: cost counter, dispatch gate and injected collaborators."""

import threading
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional

from ..config import Config
from ..logger import get_logger
from ..pricing import PriceTable
from ..state.store import StateStore
from .events import EventBus

_log = get_logger(__name__)


class HaltReason(Enum):
    BUDGET_EXCEEDED = "budget_exceeded"
    TASK_FAILED = "task_failed"


class CostBudget:
    """Running cost shared by every task of one run.

    ``record`` is the single mutation point; it is called once per completed
    iteration.
    """

    def __init__(self, limit_usd: Optional[float] = None, initial_usd: float = 0.0):
        self.limit_usd = limit_usd
        self._spent = initial_usd
        self._iterations = 0
        self._lock = threading.Lock()

    def record(self, cost_usd: float) -> float:
        with self._lock:
            self._spent += cost_usd
            self._iterations += 1
            return self._spent

    @property
    def spent(self) -> float:
        with self._lock:
            return self._spent

    @property
    def iterations(self) -> int:
        with self._lock:
            return self._iterations

    def is_exceeded(self) -> bool:
        if self.limit_usd is None:
            return False
        with self._lock:
            return self._spent >= self.limit_usd


class DispatchGate:
    """Once halted, no new task or iteration is dispatched."""

    def __init__(self, budget: Optional[CostBudget] = None):
        self.budget = budget
        self._reason: Optional[HaltReason] = None
        self._lock = threading.Lock()

    def halt(self, reason: HaltReason) -> bool:
        """Close the gate. Returns True if this call closed it."""
        with self._lock:
            if self._reason is not None:
                return False
            self._reason = reason
        _log.warning("Dispatch halted: %s", reason.value)
        return True

    @property
    def reason(self) -> Optional[HaltReason]:
        with self._lock:
            return self._reason

    @property
    def halted(self) -> bool:
        return self.reason is not None

    def check(self) -> Optional[HaltReason]:
        """Dispatch check made before every task and every iteration."""
        if self.budget is not None and self.budget.is_exceeded():
            self.halt(HaltReason.BUDGET_EXCEEDED)
        return self.reason


@dataclass
class OrchestratorContext:
    """Everything a run shares, passed explicitly to each component."""

    config: Config
    prices: PriceTable
    store: StateStore
    events: EventBus = field(default_factory=EventBus)
    budget: CostBudget = field(default_factory=CostBudget)
    gate: Optional[DispatchGate] = None

    def __post_init__(self):
        if self.gate is None:
            self.gate = DispatchGate(self.budget)

    @classmethod
    def create(cls, config: Config, prices: Optional[PriceTable] = None,
               store: Optional[StateStore] = None, events: Optional[EventBus] = None,
               global_budget_usd: Optional[float] = None) -> "OrchestratorContext":
        return cls(
            config=config,
            prices=prices or PriceTable.from_config(config.pricing),
            store=store or StateStore(config.state_path),
            events=events or EventBus(),
            budget=CostBudget(global_budget_usd),
        )

    def for_run(self, global_budget_usd: Optional[float] = None,
                spent_usd: float = 0.0) -> "OrchestratorContext":
        """Fresh counter and gate for a new run, sharing the other collaborators."""
        return OrchestratorContext(
            config=self.config,
            prices=self.prices,
            store=self.store,
            events=self.events,
            budget=CostBudget(global_budget_usd, spent_usd),
        )
