"""
Configuration: project-level orchestration settings.

Loading priority:
  1. Project dir .looprunner.yml
  2. Global ~/.looprunner/config.yml

``.env`` files (global, then project) are loaded first without overriding the
process environment; ``LOOPRUNNER_*`` variables are applied last.
"""

import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

import yaml
from dotenv import load_dotenv

from .errors import ConfigurationError
from .logger import get_logger

_log = get_logger(__name__)

CONFIG_DIR = Path.home() / ".looprunner"
CONFIG_FILE = CONFIG_DIR / "config.yml"
PROJECT_CONFIG_NAME = ".looprunner.yml"
STATE_DIR_NAME = ".looprunner"

DEFAULT_COMPLETION_MARKER = "<promise>COMPLETE</promise>"
EXECUTOR_KINDS = {"claude-cli", "litellm"}
COMPLETION_KINDS = {"marker", "any-of", "regex"}
READONLY_TOOLS = "Read,Grep,Glob"


# ── Value coercion ──


def _coerce_int(key: str, value: Any, min_value: int = 0) -> int:
    try:
        parsed = int(value)
    except (TypeError, ValueError):
        raise ConfigurationError(f"{key}: must be an integer, got {value!r}")
    if parsed < min_value:
        raise ConfigurationError(f"{key}: must be >= {min_value}, got {parsed}")
    return parsed


def _coerce_float(key: str, value: Any, allow_none: bool = True) -> Optional[float]:
    if value is None and allow_none:
        return None
    try:
        parsed = float(value)
    except (TypeError, ValueError):
        raise ConfigurationError(f"{key}: must be a number, got {value!r}")
    if parsed < 0:
        raise ConfigurationError(f"{key}: must be non-negative, got {parsed}")
    return parsed


def _coerce_bool(key: str, value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        val_lower = value.strip().lower()
        if val_lower in ("1", "true", "yes", "on"):
            return True
        if val_lower in ("0", "false", "no", "off"):
            return False
    raise ConfigurationError(f"{key}: must be true/false, yes/no, on/off, or 1/0")


# ── Loop / parallel sections ──


@dataclass
class CompletionStrategy:
    """How iteration output is checked for task completion."""

    kind: str = "marker"
    patterns: List[str] = field(default_factory=lambda: [DEFAULT_COMPLETION_MARKER])

    def __post_init__(self):
        if self.kind not in COMPLETION_KINDS:
            raise ConfigurationError(
                f"completion: kind must be one of {', '.join(sorted(COMPLETION_KINDS))}"
            )
        if not self.patterns:
            raise ConfigurationError("completion: at least one pattern is required")
        self._regex = None
        if self.kind == "regex":
            try:
                self._regex = re.compile(self.patterns[0])
            except re.error as e:
                raise ConfigurationError(f"completion: invalid regex: {e}")

    @classmethod
    def marker(cls, marker: str = DEFAULT_COMPLETION_MARKER) -> "CompletionStrategy":
        return cls(kind="marker", patterns=[marker])

    @property
    def display_marker(self) -> str:
        return self.patterns[0]

    def is_complete(self, output: str) -> bool:
        if self.kind == "regex":
            return bool(self._regex.search(output))
        if self.kind == "any-of":
            return any(p in output for p in self.patterns)
        return self.patterns[0] in output


@dataclass
class LoopConfig:
    """Per-task iteration settings shared by every task of a run."""

    completion: CompletionStrategy = field(default_factory=CompletionStrategy)
    iteration_delay: float = 0.0
    context_carry_over: bool = True
    allowed_tools: Optional[str] = None
    skip_permissions: bool = False
    readonly: bool = False

    @property
    def tools_policy(self) -> Optional[str]:
        """Allowed-tools policy passed to the agent executor."""
        if self.readonly:
            return READONLY_TOOLS
        return self.allowed_tools

    @classmethod
    def from_dict(cls, data: Optional[dict]) -> "LoopConfig":
        """Parse a LoopConfig from the top-level YAML keys."""
        if not data:
            return cls()

        completion = data.get("completion")
        if isinstance(completion, dict):
            kind = completion.get("kind", "marker")
            patterns = completion.get("patterns") or [completion.get("pattern", DEFAULT_COMPLETION_MARKER)]
            strategy = CompletionStrategy(kind=kind, patterns=[str(p) for p in patterns])
        else:
            strategy = CompletionStrategy.marker(
                str(data.get("completion-marker", DEFAULT_COMPLETION_MARKER))
            )

        return cls(
            completion=strategy,
            iteration_delay=_coerce_float("iteration-delay", data.get("iteration-delay", 0.0), allow_none=False),
            context_carry_over=_coerce_bool("context-carry-over", data.get("context-carry-over", True)),
            allowed_tools=data.get("allowed-tools"),
            skip_permissions=_coerce_bool("skip-permissions", data.get("skip-permissions", False)),
            readonly=_coerce_bool("readonly", data.get("readonly", False)),
        )


@dataclass
class ParallelConfig:
    """Configuration for a bounded-concurrency run.

    Parsed from the ``parallel:`` section of ``.looprunner.yml``.
    """

    worker_count: int = 3
    global_budget_usd: Optional[float] = None
    fail_fast: bool = False
    isolate_workspaces: bool = False

    def __post_init__(self):
        if self.worker_count < 1:
            raise ConfigurationError(f"workers: must be >= 1, got {self.worker_count}")

    @classmethod
    def from_dict(cls, data: Optional[dict]) -> "ParallelConfig":
        if not data:
            return cls()
        return cls(
            worker_count=_coerce_int("parallel.workers", data.get("workers", 3), min_value=1),
            global_budget_usd=_coerce_float("parallel.budget-usd", data.get("budget-usd")),
            fail_fast=_coerce_bool("parallel.fail-fast", data.get("fail-fast", False)),
            isolate_workspaces=_coerce_bool(
                "parallel.isolate-workspaces", data.get("isolate-workspaces", False)
            ),
        )


# ── Top-level config ──


@dataclass
class Config:
    model: str = "sonnet"
    max_iterations: int = 50
    budget_usd: Optional[float] = None
    executor: str = "claude-cli"
    claude_binary: str = "claude"
    state_dir: Optional[str] = None
    retention_days: int = 30
    verbose: bool = False
    log_file: Union[str, bool, None] = None  # False disables the file log
    loop: LoopConfig = field(default_factory=LoopConfig)
    parallel: ParallelConfig = field(default_factory=ParallelConfig)
    pricing: Dict[str, Dict[str, float]] = field(default_factory=dict)
    project_root: Optional[str] = None
    _config_source: str = ""

    @classmethod
    def load(cls, project_dir: str = ".") -> "Config":
        config = cls()
        project_path = Path(project_dir).resolve()

        for env_path in [CONFIG_DIR / ".env", project_path / ".env"]:
            if env_path.exists():
                load_dotenv(env_path, override=False)

        for candidate in [project_path / PROJECT_CONFIG_NAME, CONFIG_FILE]:
            if candidate.exists():
                config._load_yaml(candidate)
                config._config_source = str(candidate)
                _log.debug("Loaded config from %s", candidate)
                break

        config._apply_env()
        config.project_root = str(project_path)
        if not config.state_dir:
            config.state_dir = str(project_path / STATE_DIR_NAME)
        return config

    @classmethod
    def from_dict(cls, data: Optional[dict]) -> "Config":
        config = cls()
        config._apply_dict(data or {})
        return config

    @property
    def config_source(self) -> str:
        return self._config_source

    @property
    def state_path(self) -> Path:
        if self.state_dir:
            return Path(self.state_dir).expanduser()
        return Path(self.project_root or ".") / STATE_DIR_NAME

    def _load_yaml(self, filepath: Path):
        try:
            with open(filepath, encoding="utf-8") as f:
                data = yaml.safe_load(f) or {}
        except (OSError, yaml.YAMLError) as e:
            raise ConfigurationError(f"Cannot read {filepath}: {e}")
        if not isinstance(data, dict):
            raise ConfigurationError(f"{filepath}: top level must be a mapping")
        self._apply_dict(data)

    def _apply_dict(self, data: dict):
        self.model = str(data.get("model", self.model))
        self.max_iterations = _coerce_int(
            "max-iterations", data.get("max-iterations", self.max_iterations), min_value=1
        )
        self.budget_usd = _coerce_float("budget-usd", data.get("budget-usd", self.budget_usd))
        self.executor = self._normalize_executor(data.get("executor", self.executor))
        self.claude_binary = str(data.get("claude-binary", self.claude_binary))
        self.state_dir = data.get("state-dir", self.state_dir)
        self.retention_days = _coerce_int(
            "retention-days", data.get("retention-days", self.retention_days)
        )
        self.verbose = _coerce_bool("verbose", data.get("verbose", self.verbose))
        self.log_file = data.get("log-file", self.log_file)
        self.loop = LoopConfig.from_dict(data)
        self.parallel = ParallelConfig.from_dict(data.get("parallel"))
        self.pricing = self._parse_pricing(data.get("pricing"))

    @staticmethod
    def _normalize_executor(value: Any) -> str:
        kind = str(value or "").strip().lower()
        if kind not in EXECUTOR_KINDS:
            raise ConfigurationError(
                f"executor: must be one of {', '.join(sorted(EXECUTOR_KINDS))}"
            )
        return kind

    @staticmethod
    def _parse_pricing(raw: Any) -> Dict[str, Dict[str, float]]:
        if not raw:
            return {}
        if not isinstance(raw, dict):
            raise ConfigurationError("pricing: must map model names to prices")
        parsed: Dict[str, Dict[str, float]] = {}
        for model, prices in raw.items():
            if not isinstance(prices, dict):
                raise ConfigurationError(f"pricing.{model}: must be a mapping")
            parsed[str(model)] = {
                key.replace("-", "_"): _coerce_float(f"pricing.{model}.{key}", value, allow_none=False)
                for key, value in prices.items()
            }
        return parsed

    def _apply_env(self):
        env_map = {
            "LOOPRUNNER_MODEL": ("model", str),
            "LOOPRUNNER_MAX_ITERATIONS": (
                "max_iterations", lambda v: _coerce_int("LOOPRUNNER_MAX_ITERATIONS", v, min_value=1),
            ),
            "LOOPRUNNER_BUDGET": ("budget_usd", lambda v: _coerce_float("LOOPRUNNER_BUDGET", v)),
            "LOOPRUNNER_STATE_DIR": ("state_dir", str),
            "LOOPRUNNER_EXECUTOR": ("executor", self._normalize_executor),
            "LOOPRUNNER_VERBOSE": ("verbose", lambda v: v.lower() in ("true", "1")),
        }
        for env_var, (attr, conv) in env_map.items():
            val = os.environ.get(env_var)
            if val:
                setattr(self, attr, conv(val))

        workers = os.environ.get("LOOPRUNNER_WORKERS")
        if workers:
            self.parallel.worker_count = _coerce_int("LOOPRUNNER_WORKERS", workers, min_value=1)
