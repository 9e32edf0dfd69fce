"""
Voice Providers — collaborator contracts and the backend factory.

The engine talks to three streaming collaborators:

  TranscriptionProvider   audio bytes   → TranscriptFragment stream
  GenerationProvider      chat history  → GeneratedToken stream, ending with
                                          exactly one is_final marker
  SynthesisProvider       text units    → AudioUnit stream, ending with
                                          exactly one empty is_final unit

Any object with the matching async-generator method satisfies the
contract; tests use scripted fakes, production uses the adapters in
``voice.adapters`` built by ``create_providers``.
"""
from __future__ import annotations

import structlog
from dataclasses import dataclass
from typing import AsyncIterator, Protocol, runtime_checkable

from dotenv import load_dotenv

from config.settings import Settings, get_settings
from models.schemas import AudioUnit, ConversationHistory, GeneratedToken, TextUnit, TranscriptFragment
from utils.streams import AsyncIterableLike

logger = structlog.get_logger()


@runtime_checkable
class TranscriptionProvider(Protocol):
    def transcribe(self, audio: AsyncIterableLike[bytes]) -> AsyncIterator[TranscriptFragment]:
        ...


@runtime_checkable
class GenerationProvider(Protocol):
    def generate(self, history: ConversationHistory) -> AsyncIterator[GeneratedToken]:
        ...


@runtime_checkable
class SynthesisProvider(Protocol):
    def synthesize(self, text_units: AsyncIterableLike[TextUnit]) -> AsyncIterator[AudioUnit]:
        ...


@dataclass
class ProviderSet:
    transcriber: TranscriptionProvider
    generator: GenerationProvider
    synthesizer: SynthesisProvider

    async def aclose(self) -> None:
        for provider in (self.transcriber, self.generator, self.synthesizer):
            close = getattr(provider, "aclose", None)
            if close is not None:
                await close()


def create_providers(settings: Settings = None) -> ProviderSet:
    """Build the configured backend adapters."""
    from voice.adapters.deepgram_stt import DeepgramTranscriber
    from voice.adapters.openai_llm import OpenAIChatGenerator
    from voice.adapters.openai_tts import OpenAISpeechSynthesizer

    load_dotenv()
    settings = settings or get_settings()

    builders = {
        ("stt", "deepgram"): lambda: DeepgramTranscriber(settings.stt),
        ("llm", "openai"): lambda: OpenAIChatGenerator(settings.llm),
        ("tts", "openai"): lambda: OpenAISpeechSynthesizer(settings.tts),
    }

    built = {}
    for kind, provider in (
        ("stt", settings.stt.provider),
        ("llm", settings.llm.provider),
        ("tts", settings.tts.provider),
    ):
        builder = builders.get((kind, provider))
        if builder is None:
            raise ValueError(f"Unsupported {kind} provider: {provider}")
        built[kind] = builder()

    logger.info(
        "providers_created",
        stt=settings.stt.provider,
        llm=settings.llm.provider,
        tts=settings.tts.provider,
    )
    return ProviderSet(
        transcriber=built["stt"],
        generator=built["llm"],
        synthesizer=built["tts"],
    )
