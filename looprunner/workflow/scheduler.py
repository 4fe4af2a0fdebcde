"""DagScheduler: dependency validation, ordering and readiness for workflow steps.

Steps are addressed internally by their declaration index; names are only
used at the API boundary.
"""

import heapq
import threading
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Sequence, Set

from ..errors import CircularDependencyError, ConfigurationError, InvalidTransitionError
from ..logger import get_logger
from ..state.snapshots import StepStatus
from .definition import WorkflowDefinition, WorkflowStep

_log = get_logger(__name__)

_WHITE, _GRAY, _BLACK = 0, 1, 2


@dataclass
class ValidationResult:
    valid: bool
    errors: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)
    groups: List[List[str]] = field(default_factory=list)
    order: List[str] = field(default_factory=list)
    cycle: Optional[List[str]] = None


class DagScheduler:
    """Dependency graph over workflow steps plus per-step run status.

    Construction validates the graph: duplicate names and unknown
    dependencies raise ``ConfigurationError``, cycles raise
    ``CircularDependencyError``.
    """

    def __init__(self, steps: Sequence[WorkflowStep]):
        self._steps: List[WorkflowStep] = list(steps)
        self._index: Dict[str, int] = {}
        for i, step in enumerate(self._steps):
            if step.name in self._index:
                raise ConfigurationError(f"Duplicate step name: {step.name}")
            self._index[step.name] = i

        self._deps: List[List[int]] = []
        self._dependents: List[List[int]] = [[] for _ in self._steps]
        for i, step in enumerate(self._steps):
            deps: List[int] = []
            for dep in step.depends_on:
                if dep not in self._index:
                    raise ConfigurationError(
                        f"Step '{step.name}' depends on unknown step '{dep}'"
                    )
                j = self._index[dep]
                if j not in deps:
                    deps.append(j)
                    self._dependents[j].append(i)
            self._deps.append(deps)

        self._check_cycles()
        self._status: List[StepStatus] = [StepStatus.PENDING] * len(self._steps)
        self._interrupted: Set[int] = set()
        self._lock = threading.RLock()

    @classmethod
    def from_definition(cls, definition: WorkflowDefinition) -> "DagScheduler":
        return cls(definition.steps)

    @classmethod
    def validate(cls, definition: WorkflowDefinition) -> ValidationResult:
        """Check a definition without raising; nothing is executed."""
        # A step whose prompt cannot be resolved would be rejected by a run.
        errors: List[str] = []
        for step in definition.steps:
            try:
                definition.step_prompt(step)
            except ConfigurationError as e:
                errors.append(str(e))
        warnings: List[str] = []
        try:
            scheduler = cls.from_definition(definition)
        except CircularDependencyError as e:
            return ValidationResult(valid=False, errors=[str(e)] + errors, cycle=e.cycle)
        except ConfigurationError as e:
            return ValidationResult(valid=False, errors=[str(e)] + errors)

        groups = scheduler.get_execution_groups()
        depth = {name: k for k, group in enumerate(groups) for name in group}
        for step in definition.steps:
            if step.parallel_group is not None and step.parallel_group != depth[step.name]:
                warnings.append(
                    f"Step '{step.name}' declares parallel-group {step.parallel_group} "
                    f"but its dependencies place it in group {depth[step.name]}; "
                    f"dependencies decide execution order"
                )
        return ValidationResult(
            valid=not errors,
            errors=errors,
            warnings=warnings,
            groups=groups,
            order=scheduler.topological_order(),
        )

    # ── Graph structure ───────────────────────────────────────

    def _check_cycles(self) -> None:
        color = [_WHITE] * len(self._steps)
        path: List[int] = []

        def visit(i: int) -> None:
            color[i] = _GRAY
            path.append(i)
            for j in self._deps[i]:
                if color[j] == _GRAY:
                    cycle = path[path.index(j):] + [j]
                    raise CircularDependencyError([self._steps[k].name for k in cycle])
                if color[j] == _WHITE:
                    visit(j)
            path.pop()
            color[i] = _BLACK

        for i in range(len(self._steps)):
            if color[i] == _WHITE:
                visit(i)

    @property
    def step_names(self) -> List[str]:
        return [s.name for s in self._steps]

    def get_step(self, name: str) -> WorkflowStep:
        return self._steps[self._index[name]]

    def topological_order(self) -> List[str]:
        """Dependencies first; ties broken by declaration order."""
        remaining = [len(d) for d in self._deps]
        ready = [i for i, n in enumerate(remaining) if n == 0]
        heapq.heapify(ready)
        order: List[int] = []
        while ready:
            i = heapq.heappop(ready)
            order.append(i)
            for k in self._dependents[i]:
                remaining[k] -= 1
                if remaining[k] == 0:
                    heapq.heappush(ready, k)
        return [self._steps[i].name for i in order]

    def get_execution_groups(self) -> List[List[str]]:
        """Group k holds steps whose dependencies all lie in groups 0..k-1."""
        depth = [0] * len(self._steps)
        for name in self.topological_order():
            i = self._index[name]
            if self._deps[i]:
                depth[i] = 1 + max(depth[j] for j in self._deps[i])
        groups: List[List[str]] = [[] for _ in range(max(depth, default=-1) + 1)]
        for i, d in enumerate(depth):
            groups[d].append(self._steps[i].name)
        return groups

    def group_of(self, name: str) -> int:
        for k, group in enumerate(self.get_execution_groups()):
            if name in group:
                return k
        raise KeyError(name)

    def downstream_of(self, name: str) -> List[str]:
        """All transitive dependents, in topological order."""
        seen = set()
        stack = [self._index[name]]
        while stack:
            for k in self._dependents[stack.pop()]:
                if k not in seen:
                    seen.add(k)
                    stack.append(k)
        return [n for n in self.topological_order() if self._index[n] in seen]

    # ── Run status ────────────────────────────────────────────

    def status(self, name: str) -> StepStatus:
        with self._lock:
            return self._status[self._index[name]]

    def restore(self, statuses: Dict[str, StepStatus]) -> None:
        """Load statuses from a snapshot (before any step of this attempt starts)."""
        with self._lock:
            self._interrupted.clear()
            for name, status in statuses.items():
                if name in self._index:
                    self._status[self._index[name]] = status

    def _set(self, name: str, status: StepStatus) -> None:
        i = self._index[name]
        current = self._status[i]
        if current is status:
            return
        if not current.can_transition_to(status):
            raise InvalidTransitionError(f"step {name}", current.value, status.value)
        self._status[i] = status

    def get_ready_steps(self, completed: Optional[Iterable[str]] = None) -> List[str]:
        """Pending steps whose dependencies are all in ``completed``.

        ``completed`` defaults to the steps recorded Completed here. Pending
        steps downstream of a Failed or Skipped step are marked Skipped and
        never returned.
        """
        with self._lock:
            self._propagate_skips()
            done = set(completed) if completed is not None else {
                s.name for i, s in enumerate(self._steps) if self._status[i] is StepStatus.COMPLETED
            }
            return [
                s.name for i, s in enumerate(self._steps)
                if self._status[i] is StepStatus.PENDING and s.name not in done
                and all(self._steps[j].name in done for j in self._deps[i])
            ]

    def _blocks_dependents(self, j: int) -> bool:
        if self._status[j] is StepStatus.SKIPPED:
            return True
        return self._status[j] is StepStatus.FAILED and j not in self._interrupted

    def _propagate_skips(self) -> List[str]:
        skipped: List[str] = []
        for name in self.topological_order():
            i = self._index[name]
            if self._status[i] is not StepStatus.PENDING:
                continue
            if any(self._blocks_dependents(j) for j in self._deps[i]):
                self._status[i] = StepStatus.SKIPPED
                skipped.append(name)
        return skipped

    def mark_started(self, name: str) -> None:
        with self._lock:
            self._set(name, StepStatus.RUNNING)

    def mark_completed(self, name: str) -> None:
        with self._lock:
            self._set(name, StepStatus.COMPLETED)

    def mark_failed(self, name: str) -> List[str]:
        """Mark a step Failed and skip its pending dependents. Returns skipped names."""
        with self._lock:
            self._set(name, StepStatus.FAILED)
            skipped = self._propagate_skips()
        if skipped:
            _log.info("Step '%s' failed; skipping %s", name, ", ".join(skipped))
        return skipped

    def mark_interrupted(self, name: str) -> None:
        """A halted step ends this attempt as Failed; dependents stay Pending."""
        with self._lock:
            self._set(name, StepStatus.FAILED)
            self._interrupted.add(self._index[name])

    def is_complete(self) -> bool:
        with self._lock:
            return all(s.is_terminal for s in self._status)
