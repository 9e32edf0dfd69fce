"""Shared test fixtures for the conversation engine."""
import pytest

from config.settings import EngineSettings
from voice.engine import ConversationEngine

from tests.fakes import EchoSynthesizer, EventRecorder, FakeClock, ScriptedGenerator, ScriptedTranscriber


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def recorder() -> EventRecorder:
    return EventRecorder()


@pytest.fixture
def generator() -> ScriptedGenerator:
    return ScriptedGenerator()


@pytest.fixture
def synthesizer() -> EchoSynthesizer:
    return EchoSynthesizer()


@pytest.fixture
def make_engine(generator, synthesizer, recorder):
    """Factory: engine over a scripted transcript, sharing the default fakes."""
    def _make(script, config: EngineSettings = None, clock=None, hold_open=False, **overrides):
        kwargs = {
            "transcriber": ScriptedTranscriber(script, hold_open=hold_open),
            "generator": overrides.pop("generator", generator),
            "synthesizer": overrides.pop("synthesizer", synthesizer),
            "config": config or EngineSettings(poll_interval_ms=10),
            "observers": [recorder],
        }
        if clock is not None:
            kwargs["clock"] = clock
        return ConversationEngine(**kwargs)
    return _make


@pytest.fixture
def audio_source():
    return [b"\x00\x01" * 160 for _ in range(3)]
