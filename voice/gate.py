"""
Input Gate — decides whether a finalized utterance may open a turn.

Pure policy: given the candidate text, the engine state and the time the
last turn ended, returns a verdict. Nothing here mutates engine state.

A candidate is discarded when:
- the engine is aborted for this turn
- the trimmed text is shorter than the minimum length
- the assistant still occupies the turn (no barge-in)
- the cooldown after the last turn has not elapsed
- the text is pure noise: a lone filler, punctuation, "thanks"
"""
from __future__ import annotations

import re
import structlog
from enum import Enum
from typing import Optional
from dataclasses import dataclass, field

from config.settings import DEFAULT_NOISE_PATTERNS, EngineSettings
from models.schemas import EngineState, OCCUPIED_STATES

logger = structlog.get_logger()


class GateVerdict(str, Enum):
    ADMIT = "admit"
    ABORTED = "aborted"
    TOO_SHORT = "too_short"
    OCCUPIED = "occupied"
    COOLDOWN = "cooldown"
    NOISE = "noise"


@dataclass
class GateConfig:
    min_text_length: int = 3
    cooldown_ms: int = 1000
    noise_patterns: list[str] = field(default_factory=lambda: list(DEFAULT_NOISE_PATTERNS))

    @classmethod
    def from_settings(cls, settings: EngineSettings) -> "GateConfig":
        return cls(
            min_text_length=settings.min_text_length,
            cooldown_ms=settings.cooldown_ms,
            noise_patterns=list(settings.noise_patterns),
        )


@dataclass(frozen=True)
class GateDecision:
    verdict: GateVerdict
    text: str = ""

    @property
    def admitted(self) -> bool:
        return self.verdict == GateVerdict.ADMIT

    def __bool__(self) -> bool:
        return self.admitted


def compile_noise_patterns(patterns: list[str]) -> list[re.Pattern]:
    return [re.compile(p, re.IGNORECASE) for p in patterns]


def is_noise(text: str, patterns: list[re.Pattern]) -> bool:
    """True when the whole trimmed text matches one of the noise patterns."""
    trimmed = text.strip()
    return any(p.fullmatch(trimmed) for p in patterns)


class InputGate:
    """Admit/reject policy for finalized utterances."""

    def __init__(self, config: GateConfig = None):
        self.config = config or GateConfig()
        self._noise = compile_noise_patterns(self.config.noise_patterns)

    @property
    def cooldown_s(self) -> float:
        return self.config.cooldown_ms / 1000.0

    def evaluate(
        self,
        text: str,
        state: EngineState,
        last_turn_end: Optional[float],
        now: float,
        aborted: bool = False,
        occupied: Optional[bool] = None,
    ) -> GateDecision:
        """
        Decide on one candidate. ``last_turn_end`` and ``now`` are monotonic
        seconds; ``None`` means no turn has completed yet.

        ``occupied`` is the engine's occupancy flag. When omitted it is
        derived from ``state``.
        """
        trimmed = text.strip()

        if aborted or state == EngineState.ABORTED:
            return self._reject(GateVerdict.ABORTED, trimmed)

        if len(trimmed) < self.config.min_text_length:
            return self._reject(GateVerdict.TOO_SHORT, trimmed)

        if occupied is None:
            occupied = state in OCCUPIED_STATES
        if occupied:
            return self._reject(GateVerdict.OCCUPIED, trimmed)

        if last_turn_end is not None and (now - last_turn_end) < self.cooldown_s:
            return self._reject(GateVerdict.COOLDOWN, trimmed)

        if is_noise(trimmed, self._noise):
            return self._reject(GateVerdict.NOISE, trimmed)

        return GateDecision(GateVerdict.ADMIT, trimmed)

    def _reject(self, verdict: GateVerdict, text: str) -> GateDecision:
        logger.debug("utterance_rejected", reason=verdict.value, text=text[:80])
        return GateDecision(verdict, text)
