"""Subprocess executor for agent CLIs speaking the stream-json protocol."""

import json
import os
import subprocess
from typing import Any, Dict, List, Optional, Tuple

from ..errors import AgentExecutionError
from ..logger import get_logger
from ..models import TokenUsage
from ..pricing import resolve_model
from .base import AgentRequest, AgentResponse

_log = get_logger(__name__)


class ClaudeCliExecutor:
    """Run one agent turn as ``<binary> --output-format stream-json ... -p <prompt>``.

    The CLI session id doubles as the continuation token: it is passed back
    with ``--resume`` so the next iteration continues the same conversation.
    """

    def __init__(self, binary: str = "claude", extra_args: Optional[List[str]] = None):
        self.binary = binary
        self.extra_args = list(extra_args or [])

    def build_args(self, request: AgentRequest) -> List[str]:
        # The prompt must be the last argument.
        args = [
            self.binary,
            "--output-format", "stream-json",
            "--verbose",
            "--model", resolve_model(request.model),
        ]
        if request.continuation_token:
            args += ["--resume", request.continuation_token]
        if request.skip_permissions:
            args.append("--dangerously-skip-permissions")
        if request.allowed_tools:
            args += ["--allowedTools", request.allowed_tools]
        args += self.extra_args
        args += ["-p", request.prompt]
        return args

    def execute(self, request: AgentRequest) -> AgentResponse:
        args = self.build_args(request)
        cwd = str(request.working_dir) if request.working_dir else None
        _log.debug("Executing %s (cwd=%s, resume=%s)", args[0], cwd, request.continuation_token)

        try:
            proc = subprocess.Popen(
                args,
                cwd=cwd,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                text=True,
                encoding="utf-8",
                errors="replace",
                env=os.environ.copy(),
            )
        except FileNotFoundError as e:
            raise AgentExecutionError(f"Agent CLI not found: {self.binary}") from e
        except OSError as e:
            raise AgentExecutionError(f"Agent CLI failed to start: {e}") from e

        stdout, stderr = proc.communicate()
        return self.parse_stream(stdout, stderr, proc.returncode)

    def parse_stream(self, stdout: str, stderr: str, returncode: int) -> AgentResponse:
        """Fold stream-json lines into a single response."""
        text_parts: List[str] = []
        session_id: Optional[str] = None
        result_event: Optional[Dict[str, Any]] = None

        for line in stdout.splitlines():
            line = line.strip()
            if not line.startswith("{"):
                continue
            try:
                event = json.loads(line)
            except json.JSONDecodeError:
                _log.debug("Skipping malformed stream line: %s", line[:120])
                continue
            session_id = event.get("session_id") or session_id
            etype = event.get("type")
            if etype == "assistant":
                text = _assistant_text(event.get("message"))
                if text:
                    text_parts.append(text)
            elif etype == "result":
                result_event = event

        if result_event is None:
            brief = (stderr or "").strip()[-300:] or f"exit code {returncode}"
            raise AgentExecutionError(f"Agent CLI produced no result: {brief}")

        usage, cost = _result_usage(result_event)
        output = "\n".join(text_parts)
        final = result_event.get("result")
        if isinstance(final, str) and final and final not in output:
            output = f"{output}\n{final}" if output else final

        is_error = bool(result_event.get("is_error")) or returncode != 0
        return AgentResponse(
            text_output=output,
            continuation_token=session_id,
            token_usage=usage,
            cost_usd=cost,
            success=not is_error,
            error=(final or stderr.strip() or f"exit code {returncode}") if is_error else None,
        )


def _assistant_text(message: Any) -> str:
    if isinstance(message, str):
        return message
    if not isinstance(message, dict):
        return ""
    parts = []
    for block in message.get("content") or []:
        if isinstance(block, dict) and block.get("type") == "text":
            parts.append(block.get("text", ""))
    return "".join(parts)


def _result_usage(event: Dict[str, Any]) -> Tuple[TokenUsage, Optional[float]]:
    raw = event.get("usage") or {}
    usage = TokenUsage(
        input=int(raw.get("input_tokens", 0) or 0),
        output=int(raw.get("output_tokens", 0) or 0),
        cache_write=int(raw.get("cache_creation_input_tokens", 0) or 0),
        cache_read=int(raw.get("cache_read_input_tokens", 0) or 0),
    )
    cost = event.get("total_cost_usd")
    return usage, float(cost) if cost is not None else None
