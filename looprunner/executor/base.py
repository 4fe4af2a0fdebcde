"""Agent executor interface: one unit of work per call."""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional, Protocol, runtime_checkable

from ..models import TokenUsage


@dataclass
class AgentRequest:
    """Inputs for a single agent invocation."""

    prompt: str
    model: str
    allowed_tools: Optional[str] = None
    continuation_token: Optional[str] = None
    working_dir: Optional[Path] = None
    skip_permissions: bool = False


@dataclass
class AgentResponse:
    """Outcome of a single agent invocation.

    ``cost_usd`` is ``None`` when the executor cannot report cost; the
    controller then prices ``token_usage`` with the injected price table.
    """

    text_output: str
    continuation_token: Optional[str] = None
    token_usage: TokenUsage = field(default_factory=TokenUsage)
    cost_usd: Optional[float] = None
    success: bool = True
    error: Optional[str] = None


@runtime_checkable
class AgentExecutor(Protocol):
    """Protocol implemented by agent executors.

    ``execute`` may block for an unbounded time. Transport or process failures
    raise ``AgentExecutionError``; an agent that ran but reported failure
    returns ``success=False``.
    """

    def execute(self, request: AgentRequest) -> AgentResponse:
        ...
