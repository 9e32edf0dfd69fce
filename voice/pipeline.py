"""
Turn Pipeline — one cancellable generation → synthesis run.

Chains the stages of a single turn as pull-driven async streams:

    history + utterance
      → generator.generate()          GeneratedToken stream
      → _tag_tokens()                 TimedToken capture, token events,
                                      final token → END_OF_TEXT
      → synthesizer.synthesize()      AudioUnit stream → audio events

Pulling one audio unit drives as much generation as the synthesizer
needs, so speech starts before the answer is complete. Every stage
reads its upstream through the turn's cancellation scope; once the scope
is cancelled nothing further is forwarded and the result is marked
incomplete so the controller does not commit it.
"""
from __future__ import annotations

import time
import structlog
from contextlib import aclosing
from dataclasses import dataclass, field
from typing import AsyncIterator, Callable, Optional

from models.schemas import (
    AudioUnit,
    ChatTurn,
    ConversationHistory,
    END_OF_TEXT,
    GeneratedToken,
    Role,
    TextUnit,
    TimedToken,
    TurnMetrics,
)
from voice.cancellation import CancellationScope
from voice.events import EngineEvents
from voice.latency import Milestone, TurnMetricsRecorder
from voice.providers import GenerationProvider, SynthesisProvider

logger = structlog.get_logger()


@dataclass
class TurnResult:
    """Outcome of one pipeline execution."""
    utterance: str
    completed: bool
    metrics: TurnMetrics
    tokens: list[TimedToken] = field(default_factory=list)
    audio_units: int = 0

    @property
    def assistant_text(self) -> str:
        return "".join(t.token for t in self.tokens)


class TurnPipeline:
    """Runs the generation and synthesis stages for one admitted utterance."""

    def __init__(
        self,
        generator: GenerationProvider,
        synthesizer: SynthesisProvider,
        scope: CancellationScope,
        events: EngineEvents,
        recorder: TurnMetricsRecorder,
        on_first_audio: Optional[Callable[[], None]] = None,
        clock: Callable[[], float] = time.monotonic,
        emit_partial_metrics: bool = False,
    ):
        self.generator = generator
        self.synthesizer = synthesizer
        self.scope = scope
        self.events = events
        self.recorder = recorder
        self._on_first_audio = on_first_audio
        self._clock = clock
        self._emit_partial_metrics = emit_partial_metrics
        self._tokens: list[TimedToken] = []
        self._audio_units = 0

    async def execute(self, utterance: str, history: ConversationHistory) -> TurnResult:
        """Run the turn to completion or cancellation. History is not mutated."""
        messages = list(history) + [ChatTurn(role=Role.USER, content=utterance)]
        self.recorder.mark(Milestone.STT_COMPLETE)

        text_units = self._tag_tokens(self.generator.generate(messages))
        completed = False

        async with aclosing(text_units):
            audio_stream = self.scope.iterate(self.synthesizer.synthesize(text_units))
            async with aclosing(audio_stream) as audio:
                async for unit in audio:
                    if self.scope.cancelled:
                        break
                    self._forward_audio(unit)
                    if unit.is_final:
                        completed = True
                        break

        if not completed and not self.scope.cancelled:
            logger.warning("synthesis_ended_without_final_unit", audio_units=self._audio_units)
            self.recorder.mark(Milestone.FULL_TTS)
            completed = True

        return TurnResult(
            utterance=utterance,
            completed=completed and not self.scope.cancelled,
            metrics=self.recorder.snapshot(),
            tokens=list(self._tokens),
            audio_units=self._audio_units,
        )

    def _forward_audio(self, unit: AudioUnit) -> None:
        first = self._audio_units == 0
        self._audio_units += 1
        if unit.is_final:
            self.recorder.mark(Milestone.FULL_TTS)
        if first:
            self.recorder.mark(Milestone.FIRST_TOKEN)
            if self._on_first_audio is not None:
                self._on_first_audio()
            if self._emit_partial_metrics:
                self.events.turn_metrics(self.recorder.snapshot())
        self.events.audio_produced(unit)

    async def _tag_tokens(self, tokens: AsyncIterator[GeneratedToken]) -> AsyncIterator[TextUnit]:
        """Timestamp each token, report it, and translate the stream into text units."""
        async with aclosing(self.scope.iterate(tokens)) as stream:
            async for token in stream:
                timed = TimedToken(
                    token=token.token,
                    is_final=token.is_final,
                    captured_at=self._clock(),
                )
                self._tokens.append(timed)

                if not token.is_final or token.token:
                    self.recorder.mark(Milestone.FIRST_TOKEN, at=timed.captured_at)
                    self.events.token_produced(token.token)

                if token.is_final:
                    self.recorder.mark(Milestone.FULL_ANSWER, at=timed.captured_at)
                    if token.token:
                        yield token.token
                    yield END_OF_TEXT
                    return

                yield token.token

        if not self.scope.cancelled:
            logger.warning("generation_ended_without_final_token", tokens=len(self._tokens))
            self.recorder.mark(Milestone.FULL_ANSWER)
            yield END_OF_TEXT
