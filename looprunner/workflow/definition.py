"""Workflow definitions loaded from YAML.

Keys may be written in kebab-case or snake_case (``depends-on`` and
``depends_on`` are the same key)::

    name: Full Stack Development
    global:
      default-model: sonnet
      max-parallel-workers: 4
      budget-usd: 20.0
      completion-promise: COMPLETE
    steps:
      - name: Project Setup
        prompt: Initialize project with TypeScript
        model: haiku
        max-iterations: 10
      - name: Backend API
        prompt: Implement REST API
        depends-on: [Project Setup]
"""

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple, Union

import yaml

from ..config import DEFAULT_COMPLETION_MARKER, _coerce_bool, _coerce_float, _coerce_int
from ..errors import ConfigurationError


def _normalize_keys(data: Dict[str, Any]) -> Dict[str, Any]:
    return {str(k).replace("-", "_"): v for k, v in data.items()}


def promise_marker(promise: str) -> str:
    """``COMPLETE`` -> ``<promise>COMPLETE</promise>``; full markers pass through."""
    promise = promise.strip()
    if promise.startswith("<"):
        return promise
    return f"<promise>{promise}</promise>"


@dataclass(frozen=True)
class GlobalSettings:
    default_model: str = "sonnet"
    max_parallel_workers: int = 4
    completion_promise: str = DEFAULT_COMPLETION_MARKER
    budget_usd: Optional[float] = None
    max_iterations: int = 50
    fail_fast: bool = False

    @classmethod
    def from_dict(cls, data: Optional[dict]) -> "GlobalSettings":
        if not data:
            return cls()
        if not isinstance(data, dict):
            raise ConfigurationError("global: must be a mapping")
        d = _normalize_keys(data)
        return cls(
            default_model=str(d.get("default_model", "sonnet")),
            max_parallel_workers=_coerce_int(
                "global.max-parallel-workers", d.get("max_parallel_workers", 4), min_value=1
            ),
            completion_promise=promise_marker(str(d.get("completion_promise", DEFAULT_COMPLETION_MARKER))),
            budget_usd=_coerce_float("global.budget-usd", d.get("budget_usd")),
            max_iterations=_coerce_int("global.max-iterations", d.get("max_iterations", 50), min_value=1),
            fail_fast=_coerce_bool("global.fail-fast", d.get("fail_fast", False)),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "default-model": self.default_model,
            "max-parallel-workers": self.max_parallel_workers,
            "completion-promise": self.completion_promise,
            "budget-usd": self.budget_usd,
            "max-iterations": self.max_iterations,
            "fail-fast": self.fail_fast,
        }


@dataclass(frozen=True)
class WorkflowStep:
    name: str
    prompt: Optional[str] = None
    spec: Optional[str] = None                # path to a file holding the prompt
    model: Optional[str] = None
    depends_on: Tuple[str, ...] = ()
    parallel_group: Optional[int] = None      # advisory only
    max_iterations: Optional[int] = None
    budget_usd: Optional[float] = None

    @classmethod
    def from_dict(cls, data: Any, index: int) -> "WorkflowStep":
        if not isinstance(data, dict):
            raise ConfigurationError(f"steps[{index}]: must be a mapping")
        d = _normalize_keys(data)
        name = d.get("name")
        if not name or not str(name).strip():
            raise ConfigurationError(f"steps[{index}]: name is required")
        name = str(name).strip()

        deps = d.get("depends_on") or []
        if isinstance(deps, str):
            deps = [deps]
        if not isinstance(deps, list):
            raise ConfigurationError(f"step '{name}': depends-on must be a list of step names")

        group = d.get("parallel_group")
        max_iter = d.get("max_iterations")
        return cls(
            name=name,
            prompt=d.get("prompt"),
            spec=d.get("spec"),
            model=d.get("model"),
            depends_on=tuple(str(dep).strip() for dep in deps),
            parallel_group=_coerce_int(f"step '{name}'.parallel-group", group) if group is not None else None,
            max_iterations=(
                _coerce_int(f"step '{name}'.max-iterations", max_iter, min_value=1)
                if max_iter is not None else None
            ),
            budget_usd=_coerce_float(f"step '{name}'.budget-usd", d.get("budget_usd")),
        )

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"name": self.name}
        for key, value in (
            ("prompt", self.prompt),
            ("spec", self.spec),
            ("model", self.model),
            ("parallel-group", self.parallel_group),
            ("max-iterations", self.max_iterations),
            ("budget-usd", self.budget_usd),
        ):
            if value is not None:
                data[key] = value
        if self.depends_on:
            data["depends-on"] = list(self.depends_on)
        return data


@dataclass(frozen=True)
class WorkflowDefinition:
    """Immutable once loaded."""

    name: str
    steps: Tuple[WorkflowStep, ...]
    global_settings: GlobalSettings = field(default_factory=GlobalSettings)
    source_path: Optional[str] = None

    @classmethod
    def load(cls, path: Union[str, Path]) -> "WorkflowDefinition":
        path = Path(path)
        try:
            text = path.read_text(encoding="utf-8")
        except OSError as e:
            raise ConfigurationError(f"Cannot read workflow file {path}: {e}")
        return cls.parse(text, source_path=str(path.resolve()))

    @classmethod
    def parse(cls, text: str, source_path: Optional[str] = None) -> "WorkflowDefinition":
        try:
            data = yaml.safe_load(text)
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Invalid workflow YAML: {e}")
        if not isinstance(data, dict):
            raise ConfigurationError("Workflow file must be a mapping with 'name' and 'steps'")
        return cls.from_dict(data, source_path=source_path)

    @classmethod
    def from_dict(cls, data: Dict[str, Any], source_path: Optional[str] = None) -> "WorkflowDefinition":
        name = data.get("name")
        if not name:
            raise ConfigurationError("Workflow: name is required")
        raw_steps = data.get("steps")
        if not isinstance(raw_steps, list) or not raw_steps:
            raise ConfigurationError(f"Workflow '{name}': at least one step is required")
        return cls(
            name=str(name),
            steps=tuple(WorkflowStep.from_dict(s, i) for i, s in enumerate(raw_steps)),
            global_settings=GlobalSettings.from_dict(data.get("global")),
            source_path=source_path or data.get("source_path"),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "global": self.global_settings.to_dict(),
            "steps": [s.to_dict() for s in self.steps],
        }

    @property
    def step_names(self) -> List[str]:
        return [s.name for s in self.steps]

    def get_step(self, name: str) -> WorkflowStep:
        for step in self.steps:
            if step.name == name:
                return step
        raise KeyError(name)

    # ── Effective per-step settings ──

    def step_model(self, step: WorkflowStep) -> str:
        return step.model or self.global_settings.default_model

    def step_max_iterations(self, step: WorkflowStep) -> int:
        return step.max_iterations or self.global_settings.max_iterations

    def step_prompt(self, step: WorkflowStep) -> str:
        """Inline prompt, or the contents of the referenced spec file."""
        if step.prompt:
            return step.prompt
        if step.spec:
            spec_path = Path(step.spec).expanduser()
            if not spec_path.is_absolute() and self.source_path:
                spec_path = Path(self.source_path).parent / spec_path
            try:
                return spec_path.read_text(encoding="utf-8")
            except OSError as e:
                raise ConfigurationError(f"step '{step.name}': cannot read spec {spec_path}: {e}")
        raise ConfigurationError(f"step '{step.name}': has neither prompt nor spec")
