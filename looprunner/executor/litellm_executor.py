"""API executor via litellm.

The continuation token is the id of a transcript file kept under
``<state_dir>/transcripts``; each iteration reloads it, appends the new
prompt and the model's reply, and writes it back.
"""

import json
import uuid
from pathlib import Path
from typing import Any, Dict, List, Optional

import litellm

from ..errors import AgentExecutionError
from ..logger import get_logger
from ..models import TokenUsage
from ..pricing import resolve_model
from ..state.store import atomic_write_json
from .base import AgentRequest, AgentResponse

litellm.suppress_debug_info = True

_log = get_logger(__name__)

SYSTEM_PROMPT = """\
You are an autonomous agent working through a task over several iterations.
Each message continues the same task. Report progress concisely and, when the
task is fully done, follow the completion instructions you were given.
"""


class LiteLLMExecutor:
    """Run one iteration as a chat completion.

    Cost is left as ``None`` so the controller prices the reported usage with
    its price table.
    """

    def __init__(self, transcript_dir: Path, temperature: float = 0.0,
                 max_tokens: int = 4096, api_base: Optional[str] = None,
                 api_key: Optional[str] = None):
        self.transcript_dir = Path(transcript_dir)
        self.temperature = temperature
        self.max_tokens = max_tokens
        self.api_base = api_base
        self.api_key = api_key

    # ── Transcripts ──

    def _transcript_path(self, token: str) -> Path:
        safe = "".join(c if c.isalnum() or c in "-_" else "_" for c in token)
        return self.transcript_dir / f"{safe}.json"

    def load_transcript(self, token: Optional[str]) -> List[Dict[str, Any]]:
        if not token:
            return []
        path = self._transcript_path(token)
        if not path.exists():
            _log.warning("Transcript %s not found; starting a fresh conversation", token)
            return []
        try:
            with open(path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            _log.warning("Cannot read transcript %s: %s", path, e)
            return []
        return list(data.get("messages", []))

    def save_transcript(self, token: str, model: str, messages: List[Dict[str, Any]]):
        atomic_write_json(self._transcript_path(token), {
            "token": token,
            "model": model,
            "messages": messages,
        })

    # ── Execution ──

    def execute(self, request: AgentRequest) -> AgentResponse:
        model = resolve_model(request.model)
        token = request.continuation_token or uuid.uuid4().hex
        history = self.load_transcript(request.continuation_token)
        if not history:
            history = [{"role": "system", "content": SYSTEM_PROMPT}]
        messages = history + [{"role": "user", "content": request.prompt}]

        kwargs: Dict[str, Any] = {
            "model": model, "messages": list(messages),
            "temperature": self.temperature, "max_tokens": self.max_tokens,
        }
        if self.api_base:
            kwargs["api_base"] = self.api_base
        if self.api_key:
            kwargs["api_key"] = self.api_key

        try:
            response = litellm.completion(**kwargs)
        except litellm.exceptions.AuthenticationError as e:
            raise AgentExecutionError(f"Auth failed. Check API key.\n{e}") from e
        except litellm.exceptions.APIConnectionError as e:
            raise AgentExecutionError(
                f"Cannot connect: model={model}, base={self.api_base or 'default'}\n{e}"
            ) from e
        except Exception as e:
            raise AgentExecutionError(f"LLM error: {type(e).__name__}: {e}") from e

        content = response.choices[0].message.content or ""
        usage = TokenUsage()
        if getattr(response, "usage", None):
            usage = TokenUsage(
                input=int(response.usage.prompt_tokens or 0),
                output=int(response.usage.completion_tokens or 0),
            )

        messages.append({"role": "assistant", "content": content})
        try:
            self.save_transcript(token, model, messages)
        except OSError as e:
            _log.warning("Cannot save transcript %s: %s", token, e)

        return AgentResponse(
            text_output=content,
            continuation_token=token,
            token_usage=usage,
            cost_usd=None,
            success=True,
        )
