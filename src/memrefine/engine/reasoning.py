"""Reasoning loops: the external process that drives a refinement session.

A loop receives the session briefing and a bound ``RefinementTool`` and
calls tool actions one at a time until it calls ``complete`` or gives up.
Tests use scripted loops; production wires an OpenAI-compatible
chat-completions model with function calling.
"""

from __future__ import annotations

import asyncio
import json
import logging
import re
from typing import Any
from typing import Protocol
from typing import runtime_checkable
from urllib.error import HTTPError
from urllib.error import URLError
from urllib.request import Request
from urllib.request import urlopen

from memrefine.config import LLMConfig
from memrefine.engine.tool import RefinementTool
from memrefine.engine.tool import TOOL_DESCRIPTION
from memrefine.engine.tool import TOOL_NAME
from memrefine.engine.tool import TOOL_PARAMETERS

logger = logging.getLogger(__name__)

_CONSENT_RE = re.compile(r"^\W*yes\b", re.IGNORECASE)


@runtime_checkable
class ReasoningLoop(Protocol):
    """Protocol for session drivers."""

    async def consents(self, prompt: str) -> bool: ...

    async def run(self, briefing: str, tool: RefinementTool) -> None: ...


class ReasoningError(Exception):
    """Raised by reasoning loops when the provider call fails."""


class NoopReasoningLoop:
    """Deterministic loop that consents and completes without changes."""

    async def consents(self, prompt: str) -> bool:
        del prompt
        return True

    async def run(self, briefing: str, tool: RefinementTool) -> None:
        del briefing
        await tool.execute("complete", {"summary": "No changes needed."})


class OpenAICompatibleReasoningLoop:
    """Chat-completions loop exposing ``refine_memory`` as a function tool."""

    def __init__(
        self,
        *,
        model: str,
        api_key: str,
        base_url: str = "https://api.openai.com/v1",
        temperature: float = 0.2,
        max_tokens: int = 4096,
        timeout_seconds: float = 30.0,
        max_turns: int = 20,
    ) -> None:
        self._model = model
        self._api_key = api_key
        self._base_url = base_url.rstrip("/")
        self._temperature = temperature
        self._max_tokens = max_tokens
        self._timeout_seconds = timeout_seconds
        self._max_turns = max_turns

    async def consents(self, prompt: str) -> bool:
        message = await self._chat([{"role": "user", "content": prompt}])
        answer = str(message.get("content") or "").strip()
        consented = bool(_CONSENT_RE.match(answer))
        logger.info(
            "[Refinement] consent: %s (%s)",
            "YES" if consented else "NO",
            answer[:200],
        )
        return consented

    async def run(self, briefing: str, tool: RefinementTool) -> None:
        messages: list[dict[str, Any]] = [{"role": "user", "content": briefing}]
        for turn in range(1, self._max_turns + 1):
            message = await self._chat(messages, with_tools=True)
            messages.append(message)
            calls = message.get("tool_calls") or []
            if not calls:
                logger.info(
                    "[Refinement] session %s: model stopped calling tools at turn %d",
                    tool.session_id,
                    turn,
                )
                return
            for call in calls:
                result = await self._dispatch(tool, call)
                messages.append(
                    {
                        "role": "tool",
                        "tool_call_id": call.get("id", ""),
                        "content": json.dumps(result),
                    }
                )
            if tool.completed:
                return
        logger.warning(
            "[Refinement] session %s: turn budget of %d exhausted without complete",
            tool.session_id,
            self._max_turns,
        )

    @staticmethod
    async def _dispatch(tool: RefinementTool, call: dict) -> dict:
        function = call.get("function") or {}
        if function.get("name") != TOOL_NAME:
            return {"type": "error", "error": f"Unknown tool {function.get('name')!r}"}
        try:
            arguments = json.loads(function.get("arguments") or "{}")
        except json.JSONDecodeError:
            return {"type": "error", "error": "Tool arguments must be a JSON object"}
        if not isinstance(arguments, dict):
            return {"type": "error", "error": "Tool arguments must be a JSON object"}
        action = str(arguments.pop("action", ""))
        return await tool.execute(action, arguments)

    async def _chat(
        self, messages: list[dict[str, Any]], *, with_tools: bool = False
    ) -> dict:
        payload: dict[str, Any] = {
            "model": self._model,
            "messages": messages,
            "temperature": self._temperature,
            "max_tokens": self._max_tokens,
        }
        if with_tools:
            payload["tools"] = [
                {
                    "type": "function",
                    "function": {
                        "name": TOOL_NAME,
                        "description": TOOL_DESCRIPTION,
                        "parameters": TOOL_PARAMETERS,
                    },
                }
            ]
        return await asyncio.to_thread(self._chat_sync, payload)

    def _chat_sync(self, payload: dict[str, Any]) -> dict:
        request = Request(
            url=f"{self._base_url}/chat/completions",
            data=json.dumps(payload).encode("utf-8"),
            headers={
                "Authorization": f"Bearer {self._api_key}",
                "Content-Type": "application/json",
            },
            method="POST",
        )
        try:
            with urlopen(request, timeout=self._timeout_seconds) as response:
                raw = response.read().decode("utf-8")
        except HTTPError as exc:
            detail = exc.read().decode("utf-8", errors="replace")
            raise ReasoningError(f"provider HTTP {exc.code}: {detail[:200]}") from exc
        except URLError as exc:
            raise ReasoningError(f"provider network error: {exc.reason}") from exc
        except OSError as exc:
            raise ReasoningError(f"provider IO error: {exc}") from exc

        try:
            message = json.loads(raw)["choices"][0]["message"]
        except (KeyError, IndexError, TypeError, ValueError) as exc:
            raise ReasoningError("provider response missing choices[0].message") from exc
        if not isinstance(message, dict):
            raise ReasoningError("provider message must be an object")
        return message


def build_reasoning_loop(config: LLMConfig) -> ReasoningLoop:
    """Create a concrete loop from ``LLMConfig``."""

    provider = config.provider.strip().lower()
    if provider == "openai":
        if not config.api_key:
            raise ValueError("llm_config.api_key is required when provider='openai'")
        return OpenAICompatibleReasoningLoop(
            model=config.model,
            api_key=config.api_key,
            base_url=config.base_url,
            temperature=config.temperature,
            max_tokens=config.max_tokens,
            timeout_seconds=config.timeout_seconds,
            max_turns=config.max_turns,
        )
    if provider == "noop":
        return NoopReasoningLoop()
    raise ValueError(
        f"Unsupported llm_config.provider '{config.provider}'. "
        "Supported providers: openai, noop."
    )
