"""
OpenAI speech synthesizer — sentence-buffered streaming synthesis.

Text units are buffered until a natural break so each request carries a
speakable phrase:
- END_OF_TEXT flushes whatever is buffered
- at least ``min_flush_chars`` characters ending in . ! ? , (or holding
  a sentence boundary ". ")
- ``max_buffer_chars`` characters regardless of punctuation

Each flush becomes one raw PCM AudioUnit; the stream ends with one empty
final unit.
"""
from __future__ import annotations

import re
import structlog
from typing import AsyncIterator, Optional

import httpx
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from config.settings import TTSConfig
from models.schemas import AudioUnit, TextUnit, is_end_of_text
from utils.streams import AsyncIterableLike, to_async_iterable
from voice.adapters import resolve_api_key
from voice.errors import ProviderError

logger = structlog.get_logger()

PHRASE_ENDINGS = (".", "!", "?", ",")


def clean_text_for_speech(text: str) -> str:
    """Collapse paragraph breaks into sentence pauses and normalise whitespace."""
    text = re.sub(r"\n{2,}", ". ", text)
    text = text.replace("\n", " ")
    text = re.sub(r"\s+", " ", text)
    return text.strip()


class SentenceBuffer:
    """Accumulates streamed text and releases speakable phrases."""

    def __init__(self, min_flush_chars: int = 30, max_buffer_chars: int = 80):
        self.min_flush_chars = min_flush_chars
        self.max_buffer_chars = max_buffer_chars
        self._buffer = ""

    @property
    def pending(self) -> str:
        return self._buffer

    def _ready(self) -> bool:
        buf = self._buffer
        if len(buf) >= self.max_buffer_chars:
            return True
        return len(buf) >= self.min_flush_chars and (buf.endswith(PHRASE_ENDINGS) or ". " in buf)

    def push(self, part: str) -> Optional[str]:
        self._buffer += part
        if not self._ready():
            return None
        return self.flush()

    def flush(self) -> Optional[str]:
        text = clean_text_for_speech(self._buffer)
        self._buffer = ""
        return text or None


class OpenAISpeechSynthesizer:
    """Synthesis collaborator backed by the audio speech API (raw PCM)."""

    def __init__(self, config: TTSConfig = None, client: httpx.AsyncClient = None):
        self.config = config or TTSConfig()
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

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=0.5, max=5),
        retry=retry_if_exception_type(httpx.TransportError),
        reraise=True,
    )
    async def _speak(self, text: str) -> bytes:
        client = await self._get_client()
        response = await client.post("/audio/speech", json={
            "model": self.config.model,
            "input": text,
            "voice": self.config.voice,
            "response_format": "pcm",
        })
        if response.status_code >= 400:
            raise ProviderError("openai_speech", response.text[:200], response.status_code)
        return response.content

    async def synthesize(self, text_units: AsyncIterableLike[TextUnit]) -> AsyncIterator[AudioUnit]:
        buffer = SentenceBuffer(self.config.min_flush_chars, self.config.max_buffer_chars)
        phrases = 0

        async for unit in to_async_iterable(text_units):
            end = is_end_of_text(unit)
            phrase = buffer.flush() if end else buffer.push(unit)
            if phrase:
                phrases += 1
                logger.debug("speech_phrase", chars=len(phrase))
                yield AudioUnit(
                    payload=await self._speak(phrase),
                    sample_rate=self.config.sample_rate,
                )
            if end:
                break
        else:
            leftover = buffer.flush()
            if leftover:
                phrases += 1
                yield AudioUnit(
                    payload=await self._speak(leftover),
                    sample_rate=self.config.sample_rate,
                )

        logger.debug("speech_stream_finished", phrases=phrases)
        yield AudioUnit.final(self.config.sample_rate)
