"""Tests for the input gate and the transcript aggregator."""
import pytest

from config.settings import EngineSettings
from models.schemas import EngineState, TranscriptFragment
from voice.aggregator import TranscriptAggregator, pick_candidate
from voice.gate import (
    GateConfig,
    GateVerdict,
    InputGate,
    compile_noise_patterns,
    is_noise,
)


@pytest.fixture
def gate():
    return InputGate(GateConfig(min_text_length=3, cooldown_ms=1000))


# ══════════════════════════════════════════════════════════════
#  INPUT GATE
# ══════════════════════════════════════════════════════════════

class TestInputGate:

    def test_admits_plain_utterance(self, gate):
        decision = gate.evaluate("what time is it", EngineState.LISTENING, None, now=10.0)
        assert decision.admitted
        assert decision
        assert decision.text == "what time is it"

    def test_admitted_text_is_trimmed(self, gate):
        decision = gate.evaluate("   hello there \n", EngineState.LISTENING, None, now=10.0)
        assert decision.text == "hello there"

    @pytest.mark.parametrize("text", ["", "  ", "hi", " a  "])
    def test_too_short(self, gate, text):
        decision = gate.evaluate(text, EngineState.LISTENING, None, now=10.0)
        assert decision.verdict == GateVerdict.TOO_SHORT
        assert not decision

    def test_min_length_boundary(self, gate):
        assert gate.evaluate("yes", EngineState.LISTENING, None, now=10.0).admitted

    @pytest.mark.parametrize("state", [EngineState.PROCESSING, EngineState.SPEAKING])
    def test_rejects_while_occupied(self, gate, state):
        decision = gate.evaluate("hello world", state, None, now=10.0)
        assert decision.verdict == GateVerdict.OCCUPIED

    def test_occupancy_flag_overrides_state(self, gate):
        held = gate.evaluate("hello world", EngineState.LISTENING, None, now=10.0, occupied=True)
        released = gate.evaluate("hello world", EngineState.SPEAKING, None, now=10.0, occupied=False)
        assert held.verdict == GateVerdict.OCCUPIED
        assert released.admitted

    def test_rejects_when_aborted(self, gate):
        assert gate.evaluate("hello world", EngineState.LISTENING, None, 10.0, aborted=True).verdict \
            == GateVerdict.ABORTED
        assert gate.evaluate("hello world", EngineState.ABORTED, None, 10.0).verdict \
            == GateVerdict.ABORTED

    def test_cooldown_boundary(self, gate):
        last = 50.0
        inside = gate.evaluate("hello world", EngineState.COOLDOWN, last, now=last + 0.999)
        outside = gate.evaluate("hello world", EngineState.LISTENING, last, now=last + 1.001)
        assert inside.verdict == GateVerdict.COOLDOWN
        assert outside.admitted

    def test_no_cooldown_before_first_turn(self, gate):
        assert gate.evaluate("hello world", EngineState.LISTENING, None, now=0.0).admitted

    def test_zero_cooldown(self):
        gate = InputGate(GateConfig(cooldown_ms=0))
        assert gate.evaluate("hello world", EngineState.LISTENING, 5.0, now=5.0).admitted

    @pytest.mark.parametrize("text", ["hmm", "Hmm", "...", "?!", "thank you", "Thanks", " .,;: "])
    def test_noise_rejected(self, gate, text):
        decision = gate.evaluate(text, EngineState.LISTENING, None, now=10.0)
        assert decision.verdict in (GateVerdict.NOISE, GateVerdict.TOO_SHORT)
        assert not decision

    def test_noise_needs_whole_match(self, gate):
        assert gate.evaluate("thanks a lot for that", EngineState.LISTENING, None, 10.0).admitted
        assert gate.evaluate("hmm let me think", EngineState.LISTENING, None, 10.0).admitted

    def test_checks_short_before_occupied(self, gate):
        decision = gate.evaluate("hi", EngineState.SPEAKING, None, now=10.0)
        assert decision.verdict == GateVerdict.TOO_SHORT

    def test_from_settings(self):
        settings = EngineSettings(min_text_length=5, cooldown_ms=250, noise_patterns=[r"^okay$"])
        gate = InputGate(GateConfig.from_settings(settings))
        assert gate.cooldown_s == 0.25
        assert gate.evaluate("okay", EngineState.LISTENING, None, 1.0).verdict == GateVerdict.TOO_SHORT
        assert gate.evaluate("Okay!", EngineState.LISTENING, None, 1.0).admitted
        assert gate.evaluate(" okay ", EngineState.LISTENING, None, 1.0).verdict == GateVerdict.TOO_SHORT


class TestNoisePatterns:

    def test_case_insensitive(self):
        patterns = compile_noise_patterns([r"^(uh|um)$"])
        assert is_noise("UM", patterns)
        assert is_noise(" uh ", patterns)
        assert not is_noise("umbrella", patterns)

    def test_empty_pattern_list(self):
        assert not is_noise("hmm", [])


# ══════════════════════════════════════════════════════════════
#  TRANSCRIPT AGGREGATOR
# ══════════════════════════════════════════════════════════════

def _frag(text, final=False):
    return TranscriptFragment(text=text, is_final=final)


class TestTranscriptAggregator:

    def test_pick_longer(self):
        assert pick_candidate("hello", "hello world") == "hello world"
        assert pick_candidate("hello world", "hello") == "hello world"

    def test_final_wins_tie(self):
        assert pick_candidate("Hello.", "hello,") == "Hello."

    def test_interim_returns_nothing(self):
        agg = TranscriptAggregator()
        assert agg.feed(_frag("hel")) is None
        assert agg.running_text == "hel"

    def test_running_text_longer_than_final(self):
        agg = TranscriptAggregator()
        agg.feed(_frag("uh so what is the time"))
        assert agg.feed(_frag("what is the time", final=True)) == "uh so what is the time"
        assert agg.running_text == ""

    def test_final_longer_than_running(self):
        agg = TranscriptAggregator()
        agg.feed(_frag("what"))
        assert agg.feed(_frag("what is the time", final=True)) == "what is the time"

    def test_resets_between_utterances(self):
        agg = TranscriptAggregator()
        agg.feed(_frag("a very long interim reading"))
        agg.feed(_frag("short", final=True))
        assert agg.feed(_frag("next", final=True)) == "next"

    def test_callback_sees_every_fragment(self):
        seen = []
        agg = TranscriptAggregator(on_fragment=seen.append)
        agg.feed(_frag("he"))
        agg.feed(_frag("hello", final=True))
        assert seen == ["he", "hello"]

    def test_flush(self):
        agg = TranscriptAggregator()
        agg.feed(_frag("left over"))
        assert agg.flush() == "left over"
        assert agg.flush() is None

    def test_flush_ignores_blank(self):
        agg = TranscriptAggregator()
        agg.feed(_frag("   "))
        assert agg.flush() is None

    @pytest.mark.asyncio
    async def test_candidates_stream(self):
        agg = TranscriptAggregator()
        fragments = [
            _frag("he"), _frag("hello there", final=True),
            _frag("how"), _frag("how are"),
        ]
        out = [c async for c in agg.candidates(fragments)]
        assert out == ["hello there", "how are"]
