"""
Observer interface and in-order event fan-out for the engine.

Observers receive read-only notifications synchronously, in production
order, from the engine's single control flow. They must return quickly;
there is no backpressure channel back into the engine. Calling
``engine.abort()`` or ``engine.reset()`` from a handler is allowed and is
how observers steer the engine.
"""
from __future__ import annotations

import structlog
from typing import Any, Callable, Optional

from models.schemas import AudioUnit, EngineState, TurnMetrics

logger = structlog.get_logger()


class EngineObserver:
    """Base observer. Override the hooks you care about."""

    def on_transcript_update(self, text: str) -> None:
        pass

    def on_token_produced(self, text: str) -> None:
        pass

    def on_audio_produced(self, unit: AudioUnit) -> None:
        pass

    def on_turn_metrics(self, metrics: TurnMetrics) -> None:
        pass

    def on_occupancy_changed(self, occupied: bool) -> None:
        pass

    def on_state_changed(self, state: EngineState) -> None:
        pass


class CallbackObserver(EngineObserver):
    """Adapts plain callables to the observer interface.

        engine.subscribe(CallbackObserver(audio_produced=speaker.write))
    """

    def __init__(
        self,
        transcript_update: Optional[Callable[[str], Any]] = None,
        token_produced: Optional[Callable[[str], Any]] = None,
        audio_produced: Optional[Callable[[AudioUnit], Any]] = None,
        turn_metrics: Optional[Callable[[TurnMetrics], Any]] = None,
        occupancy_changed: Optional[Callable[[bool], Any]] = None,
        state_changed: Optional[Callable[[EngineState], Any]] = None,
    ):
        self._callbacks = {
            "transcript_update": transcript_update,
            "token_produced": token_produced,
            "audio_produced": audio_produced,
            "turn_metrics": turn_metrics,
            "occupancy_changed": occupancy_changed,
            "state_changed": state_changed,
        }

    def _call(self, name: str, arg: Any) -> None:
        callback = self._callbacks.get(name)
        if callback is not None:
            callback(arg)

    def on_transcript_update(self, text: str) -> None:
        self._call("transcript_update", text)

    def on_token_produced(self, text: str) -> None:
        self._call("token_produced", text)

    def on_audio_produced(self, unit: AudioUnit) -> None:
        self._call("audio_produced", unit)

    def on_turn_metrics(self, metrics: TurnMetrics) -> None:
        self._call("turn_metrics", metrics)

    def on_occupancy_changed(self, occupied: bool) -> None:
        self._call("occupancy_changed", occupied)

    def on_state_changed(self, state: EngineState) -> None:
        self._call("state_changed", state)


class EngineEvents:
    """Fans each event out to every subscribed observer, in subscription order."""

    def __init__(self):
        self._observers: list[EngineObserver] = []

    def subscribe(self, observer: EngineObserver) -> EngineObserver:
        self._observers.append(observer)
        return observer

    def unsubscribe(self, observer: EngineObserver) -> None:
        if observer in self._observers:
            self._observers.remove(observer)

    @property
    def observers(self) -> list[EngineObserver]:
        return list(self._observers)

    def _dispatch(self, hook: str, arg: Any) -> None:
        for observer in list(self._observers):
            try:
                getattr(observer, hook)(arg)
            except Exception as e:
                logger.error(
                    "observer_failed",
                    hook=hook,
                    observer=type(observer).__name__,
                    error=str(e),
                    exc_info=True,
                )

    def transcript_update(self, text: str) -> None:
        self._dispatch("on_transcript_update", text)

    def token_produced(self, text: str) -> None:
        self._dispatch("on_token_produced", text)

    def audio_produced(self, unit: AudioUnit) -> None:
        self._dispatch("on_audio_produced", unit)

    def turn_metrics(self, metrics: TurnMetrics) -> None:
        self._dispatch("on_turn_metrics", metrics)

    def occupancy_changed(self, occupied: bool) -> None:
        self._dispatch("on_occupancy_changed", occupied)

    def state_changed(self, state: EngineState) -> None:
        self._dispatch("on_state_changed", state)
