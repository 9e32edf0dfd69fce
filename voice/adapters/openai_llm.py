"""
OpenAI chat generator — streaming chat completions over server-sent events.

Yields one GeneratedToken per content delta, then a single empty final
token once the stream is done.
"""
from __future__ import annotations

import json
import structlog
from typing import Any, AsyncIterator, Optional

import httpx
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from config.settings import LLMConfig
from models.schemas import ChatTurn, ConversationHistory, GeneratedToken, Role
from voice.adapters import resolve_api_key
from voice.errors import ProviderError

logger = structlog.get_logger()


def parse_sse_line(line: str) -> Optional[str]:
    """
    Extract the content delta from one SSE line.
    Returns None for non-data lines, empty deltas and the [DONE] marker.
    """
    if not line.startswith("data:"):
        return None
    data = line[len("data:"):].strip()
    if not data or data == "[DONE]":
        return None
    chunk = json.loads(data)
    choices = chunk.get("choices") or []
    if not choices:
        return None
    return (choices[0].get("delta") or {}).get("content") or None


class OpenAIChatGenerator:
    """Generation collaborator backed by the chat completions API."""

    def __init__(self, config: LLMConfig = None, client: httpx.AsyncClient = None):
        self.config = config or LLMConfig()
        self._client = client

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            api_key = resolve_api_key(self.config.api_key, "OPENAI_API_KEY")
            self._client = httpx.AsyncClient(
                base_url=self.config.base_url,
                headers={"Authorization": f"Bearer {api_key}"},
                timeout=httpx.Timeout(30.0, connect=10.0),
            )
        return self._client

    async def aclose(self) -> None:
        if self._client is not None and not self._client.is_closed:
            await self._client.aclose()

    def _build_messages(self, history: ConversationHistory) -> list[dict[str, str]]:
        turns = list(history)
        if self.config.system_prompt and not (turns and turns[0].role == Role.SYSTEM):
            turns.insert(0, ChatTurn(role=Role.SYSTEM, content=self.config.system_prompt))
        return [t.to_message() for t in turns]

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=0.5, max=5),
        retry=retry_if_exception_type(httpx.TransportError),
        reraise=True,
    )
    async def _open_stream(self, payload: dict[str, Any]) -> httpx.Response:
        client = await self._get_client()
        request = client.build_request("POST", "/chat/completions", json=payload)
        response = await client.send(request, stream=True)
        if response.status_code >= 400:
            body = await response.aread()
            await response.aclose()
            raise ProviderError("openai_chat", body.decode(errors="replace")[:200], response.status_code)
        return response

    async def generate(self, history: ConversationHistory) -> AsyncIterator[GeneratedToken]:
        payload = {
            "model": self.config.model,
            "messages": self._build_messages(history),
            "stream": True,
            "temperature": self.config.temperature,
            "max_tokens": self.config.max_tokens,
        }
        response = await self._open_stream(payload)
        deltas = 0
        try:
            async for line in response.aiter_lines():
                content = parse_sse_line(line)
                if content:
                    deltas += 1
                    yield GeneratedToken(token=content)
        finally:
            await response.aclose()

        logger.debug("chat_stream_finished", model=self.config.model, deltas=deltas)
        yield GeneratedToken(token="", is_final=True)
