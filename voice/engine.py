"""
Conversation Engine — half-duplex turn controller.

Owns the session: engine state, conversation history, the cancellation
scope and the event fan-out. One control flow drives everything:

  transcription stream → TranscriptAggregator → InputGate
      → TurnPipeline (generation → synthesis) → audio events

State machine:

  IDLE ──reset()/run()──▶ LISTENING ◀─────────────────────┐
  LISTENING ──admitted utterance──▶ PROCESSING            │
  PROCESSING ──first audio──▶ SPEAKING                    │
  PROCESSING/SPEAKING ──final audio──▶ COOLDOWN ──────────┘
  any ──abort()──▶ ABORTED ──reset()──▶ LISTENING

The assistant "occupies" the turn for the whole PROCESSING + SPEAKING
span; the gate rejects every candidate while it does (no barge-in).
Cooldown does not block the loop: fragments keep flowing and the gate
rejects candidates until the quiet period has elapsed.

Two scopes are in play. The session scope covers the listening loop and
only ``abort()`` cancels it. The engine scope parents every turn; ``reset()``
replaces it, which retires the in-flight turn while the loop keeps going.
"""
from __future__ import annotations

import asyncio
import time
import structlog
from contextlib import aclosing
from typing import Any, Callable, Iterable, Optional

from config.settings import EngineSettings, Settings, get_settings
from models.schemas import (
    ChatTurn,
    ConversationHistory,
    EngineState,
    OCCUPIED_STATES,
    Role,
)
from utils.streams import AsyncIterableLike
from voice.aggregator import TranscriptAggregator
from voice.cancellation import CancellationScope
from voice.errors import EngineBusyError, TurnInProgressError
from voice.events import EngineEvents, EngineObserver
from voice.gate import GateConfig, InputGate
from voice.latency import TurnMetricsRecorder
from voice.pipeline import TurnPipeline, TurnResult
from voice.providers import (
    GenerationProvider,
    SynthesisProvider,
    TranscriptionProvider,
    create_providers,
)

logger = structlog.get_logger()


class ConversationEngine:
    """
    Walkie-talkie conversation controller.

    Commands: ``run(audio)``, ``abort()``, ``reset()``. ``abort()`` may be
    called at any time, including from an observer or a signal handler; it
    only flips flags and cancels the scope.
    """

    def __init__(
        self,
        transcriber: TranscriptionProvider,
        generator: GenerationProvider,
        synthesizer: SynthesisProvider,
        config: EngineSettings = None,
        observers: Iterable[EngineObserver] = (),
        clock: Callable[[], float] = time.monotonic,
    ):
        self.transcriber = transcriber
        self.generator = generator
        self.synthesizer = synthesizer
        self.config = config or EngineSettings()
        self.gate = InputGate(GateConfig.from_settings(self.config))
        self.events = EngineEvents()
        for observer in observers:
            self.events.subscribe(observer)
        self._clock = clock

        # Session state
        self._state: EngineState = EngineState.IDLE
        self._aborted: bool = False
        self._occupied: bool = False
        self._running: bool = False
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._session: CancellationScope = self._new_scope()
        self._scope: CancellationScope = self._new_scope()
        self._turn_scope: Optional[CancellationScope] = None
        self._last_turn_end: Optional[float] = None
        self._turn_count: int = 0
        self._history: ConversationHistory = self._seed_history()

    def _new_scope(self) -> CancellationScope:
        return CancellationScope.create(poll_interval=self.config.poll_interval_ms / 1000.0)

    def _seed_history(self) -> ConversationHistory:
        if self.config.system_prompt:
            return [ChatTurn(role=Role.SYSTEM, content=self.config.system_prompt)]
        return []

    # ── State access ──────────────────────────────────────────

    @property
    def state(self) -> EngineState:
        return self._state

    @property
    def occupied(self) -> bool:
        """True while the assistant holds the turn (thinking or talking)."""
        return self._occupied

    @property
    def aborted(self) -> bool:
        return self._aborted

    @property
    def running(self) -> bool:
        return self._running

    @property
    def history(self) -> ConversationHistory:
        return list(self._history)

    @property
    def last_turn_end(self) -> Optional[float]:
        return self._last_turn_end

    @property
    def turn_count(self) -> int:
        return self._turn_count

    @property
    def scope(self) -> CancellationScope:
        return self._scope

    def subscribe(self, observer: EngineObserver) -> EngineObserver:
        return self.events.subscribe(observer)

    def _set_state(self, state: EngineState) -> None:
        if state == self._state:
            return
        previous = self._state
        self._state = state
        logger.debug("engine_state_changed", from_state=previous.value, to_state=state.value)
        self.events.state_changed(state)

    # ── Commands ──────────────────────────────────────────────

    def abort(self) -> None:
        """
        Stop the current turn and the listening loop. Never blocks.

        Safe from another thread: the flags and scopes flip at once, while the
        ``state_changed`` notification is handed to the engine's loop.
        """
        self._aborted = True
        self._session.cancel("abort")
        self._scope.cancel("abort")
        logger.info("engine_aborted", state=self._state.value, occupied=self._occupied)

        loop = self._loop
        if loop is None or loop.is_closed():
            self._enter_aborted()
            return
        try:
            running = asyncio.get_running_loop()
        except RuntimeError:
            running = None
        if running is loop:
            self._enter_aborted()
        else:
            loop.call_soon_threadsafe(self._enter_aborted)

    def _enter_aborted(self) -> None:
        # A reset() may have landed before a cross-thread notification ran
        if self._aborted:
            self._set_state(EngineState.ABORTED)

    def reset(self) -> None:
        """
        Retire the in-flight turn and start over with a fresh turn scope,
        clearing the abort and processing flags. A running listening loop
        keeps going. Conversation history is kept.
        """
        self._scope.cancel("reset")
        self._scope = self._new_scope()
        self._aborted = False
        self._turn_scope = None
        if self._occupied:
            self._occupied = False
            self.events.occupancy_changed(False)
        logger.info("engine_reset", scope=self._scope.scope_id, history=len(self._history))
        self._set_state(EngineState.LISTENING)

    def clear_history(self) -> None:
        """Discard the conversation so far (the system turn, if any, is kept)."""
        if self._occupied:
            raise TurnInProgressError("cannot clear history while a turn is in progress")
        self._history = self._seed_history()

    async def run(self, audio_source: AsyncIterableLike[bytes]) -> None:
        """
        Listen on ``audio_source`` until it ends or the engine is aborted.

        Stage failures propagate to the caller, except after ``abort()``,
        or from a turn that ``reset()`` retired, where they are the expected
        consequence of cancellation.
        """
        if self._running:
            raise EngineBusyError("engine is already running a session")
        self._running = True
        self._loop = asyncio.get_running_loop()
        self.reset()
        session = self._session = self._new_scope()

        def on_fragment(text: str) -> None:
            if not session.cancelled:
                self.events.transcript_update(text)

        aggregator = TranscriptAggregator(on_fragment=on_fragment)
        fragments = session.iterate(self.transcriber.transcribe(session.iterate(audio_source)))
        logger.info("engine_session_started", scope=session.scope_id)

        try:
            async with aclosing(fragments), aclosing(aggregator.candidates(fragments)) as candidates:
                async for candidate in candidates:
                    if self._aborted or session.cancelled:
                        logger.info("transcription_loop_stopped", reason=session.reason or "abort")
                        break
                    # reset() swaps the engine scope mid-session; read it per candidate
                    await self._handle(candidate, self._scope)
        except Exception as e:
            if self._aborted or session.cancelled:
                logger.info("engine_error_suppressed", error=str(e), reason=session.reason)
                return
            logger.error("engine_error", error=str(e), exc_info=True)
            raise
        finally:
            self._running = False
            session.cancel("session_ended")
            if not self._aborted:
                self._set_state(EngineState.IDLE)
            logger.info("engine_session_ended", scope=session.scope_id, turns=self._turn_count)

    async def handle_utterance(self, text: str) -> bool:
        """
        Offer one finalized utterance to the gate; run a turn if admitted.
        Returns whether the utterance was admitted.
        """
        return await self._handle(text, self._scope)

    # ── Turn lifecycle ────────────────────────────────────────

    async def _handle(self, text: str, scope: CancellationScope) -> bool:
        decision = self.gate.evaluate(
            text,
            state=self._state,
            last_turn_end=self._last_turn_end,
            now=self._clock(),
            aborted=self._aborted or scope.cancelled,
            occupied=self._occupied,
        )
        if not decision:
            return False
        await self._run_turn(decision.text, scope)
        return True

    async def _run_turn(self, utterance: str, scope: CancellationScope) -> None:
        turn_scope = self._begin_turn(scope)
        recorder = TurnMetricsRecorder(t0=self._clock(), clock=self._clock)
        pipeline = TurnPipeline(
            self.generator,
            self.synthesizer,
            turn_scope,
            self.events,
            recorder,
            on_first_audio=lambda: self._on_first_audio(turn_scope),
            clock=self._clock,
            emit_partial_metrics=self.config.emit_partial_metrics,
        )
        logger.info("turn_started", turn=self._turn_count + 1, utterance=utterance[:80])

        try:
            result = await pipeline.execute(utterance, self._history)
            if result.completed and self._turn_scope is turn_scope and not turn_scope.cancelled:
                self._complete_turn(result)
            else:
                logger.info(
                    "turn_abandoned",
                    reason=turn_scope.reason or "incomplete",
                    tokens=len(result.tokens),
                    audio_units=result.audio_units,
                )
        except Exception as e:
            if not turn_scope.cancelled:
                raise
            # Torn down by abort() or reset(); the stage error is fallout
            logger.info("turn_error_suppressed", error=str(e), reason=turn_scope.reason)
        finally:
            turn_scope.cancel("turn_retired")
            self._end_turn(turn_scope)

    def _begin_turn(self, scope: CancellationScope) -> CancellationScope:
        if self._occupied or self._turn_scope is not None:
            raise TurnInProgressError("a turn is already in progress")
        turn_scope = scope.child()
        self._turn_scope = turn_scope
        self._occupied = True
        self.events.occupancy_changed(True)
        if self.config.speaking_on_first_audio:
            self._set_state(EngineState.PROCESSING)
        else:
            self._set_state(EngineState.SPEAKING)
        return turn_scope

    def _on_first_audio(self, turn_scope: CancellationScope) -> None:
        if self._turn_scope is turn_scope and self._state == EngineState.PROCESSING:
            self._set_state(EngineState.SPEAKING)

    def _complete_turn(self, result: TurnResult) -> None:
        self._history.append(ChatTurn(role=Role.USER, content=result.utterance))
        self._history.append(ChatTurn(role=Role.ASSISTANT, content=result.assistant_text))
        self._turn_count += 1
        self._last_turn_end = self._clock()
        self._set_state(EngineState.COOLDOWN)
        self.events.turn_metrics(result.metrics)
        logger.info(
            "turn_completed",
            turn=self._turn_count,
            answer_chars=len(result.assistant_text),
            audio_units=result.audio_units,
            **result.metrics.to_dict(),
        )

    def _end_turn(self, turn_scope: CancellationScope) -> None:
        if self._turn_scope is not turn_scope:
            # Retired by reset(); the fresh scope owns the state now
            return
        self._turn_scope = None
        if self._occupied:
            self._occupied = False
            self.events.occupancy_changed(False)
        if self._aborted:
            return
        if self._state in OCCUPIED_STATES or self._state == EngineState.COOLDOWN:
            self._set_state(EngineState.LISTENING)

    def to_dict(self) -> dict[str, Any]:
        return {
            "state": self._state.value,
            "occupied": self._occupied,
            "aborted": self._aborted,
            "running": self._running,
            "turns": self._turn_count,
            "history_length": len(self._history),
            "last_turn_end": self._last_turn_end,
        }


def create_engine(
    settings: Settings = None,
    observers: Iterable[EngineObserver] = (),
) -> ConversationEngine:
    """Create a ConversationEngine wired to the configured backends."""
    settings = settings or get_settings()
    providers = create_providers(settings)
    return ConversationEngine(
        transcriber=providers.transcriber,
        generator=providers.generator,
        synthesizer=providers.synthesizer,
        config=settings.engine,
        observers=observers,
    )
