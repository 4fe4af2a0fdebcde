"""Agent executors."""

from .base import AgentExecutor, AgentRequest, AgentResponse
from .claude_cli import ClaudeCliExecutor
from .litellm_executor import LiteLLMExecutor


def build_executor(config) -> AgentExecutor:
    """Create the executor named by ``config.executor``."""
    if config.executor == "litellm":
        return LiteLLMExecutor(transcript_dir=config.state_path / "transcripts")
    return ClaudeCliExecutor(binary=config.claude_binary)


__all__ = [
    "AgentExecutor", "AgentRequest", "AgentResponse",
    "ClaudeCliExecutor", "LiteLLMExecutor", "build_executor",
]
