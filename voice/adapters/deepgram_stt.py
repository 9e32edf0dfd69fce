"""
Live Deepgram transcription over a websocket.

Audio frames are forwarded from the (cancellable) source by a sender
task; when the source ends a CloseStream message asks Deepgram to flush
its final results and close, which ends the fragment stream.
"""
from __future__ import annotations

import asyncio
import json
import structlog
from typing import Any, AsyncIterator, Optional
from urllib.parse import urlencode

from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential
from websockets.asyncio.client import ClientConnection, connect
from websockets.exceptions import ConnectionClosedError

from config.settings import STTConfig
from models.schemas import TranscriptFragment
from utils.streams import AsyncIterableLike, to_async_iterable
from voice.adapters import resolve_api_key
from voice.errors import ProviderError

logger = structlog.get_logger()

CLOSE_STREAM = json.dumps({"type": "CloseStream"})


def parse_results_message(raw: Any) -> Optional[TranscriptFragment]:
    """Map a Deepgram ``Results`` message to a fragment; None for anything else."""
    if isinstance(raw, bytes):
        raw = raw.decode()
    message = json.loads(raw)
    if message.get("type", "Results") != "Results":
        return None
    alternatives = (message.get("channel") or {}).get("alternatives") or []
    if not alternatives:
        return None
    alt = alternatives[0]
    transcript = alt.get("transcript") or ""
    if not transcript.strip():
        return None
    words = alt.get("words") or []
    return TranscriptFragment(
        text=transcript,
        is_final=bool(message.get("is_final")),
        start_offset=words[0].get("start", 0.0) if words else 0.0,
        end_offset=words[-1].get("end", 0.0) if words else 0.0,
    )


class DeepgramTranscriber:
    """Transcription collaborator backed by Deepgram's streaming API."""

    def __init__(self, config: STTConfig = None, connector=connect):
        self.config = config or STTConfig()
        self._connect = connector

    def build_url(self) -> str:
        params = {
            "model": self.config.model,
            "language": self.config.language,
            "encoding": self.config.encoding,
            "sample_rate": self.config.sample_rate,
            "channels": self.config.channels,
            "endpointing": self.config.endpointing_ms,
            "interim_results": "true",
            "smart_format": "true",
            "punctuate": "true",
            "vad_events": "true",
        }
        return f"{self.config.url}?{urlencode(params)}"

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=0.5, max=5),
        retry=retry_if_exception_type(OSError),
        reraise=True,
    )
    async def _open(self) -> ClientConnection:
        api_key = resolve_api_key(self.config.api_key, "DEEPGRAM_API_KEY")
        return await self._connect(
            self.build_url(),
            additional_headers={"Authorization": f"Token {api_key}"},
        )

    async def _send_audio(self, ws: ClientConnection, audio: AsyncIterableLike[bytes]) -> None:
        frames = 0
        try:
            async for chunk in to_async_iterable(audio):
                await ws.send(chunk)
                frames += 1
            await ws.send(CLOSE_STREAM)
        except Exception:
            # Unblock the receive loop; the failure is re-raised from transcribe()
            await ws.close()
            raise
        logger.debug("deepgram_audio_sent", frames=frames)

    async def transcribe(self, audio: AsyncIterableLike[bytes]) -> AsyncIterator[TranscriptFragment]:
        ws = await self._open()
        sender = asyncio.create_task(self._send_audio(ws, audio), name="deepgram_sender")
        logger.info("deepgram_connected", model=self.config.model)
        try:
            async for message in ws:
                fragment = parse_results_message(message)
                if fragment is not None:
                    yield fragment
        except ConnectionClosedError as e:
            raise ProviderError("deepgram", f"connection closed: {e}") from e
        finally:
            if not sender.done():
                sender.cancel()
            await asyncio.wait({sender})
            await ws.close()

        if not sender.cancelled() and sender.exception() is not None:
            raise ProviderError("deepgram", f"audio sender failed: {sender.exception()}")
