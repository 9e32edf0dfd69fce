"""
Latency Tracker — per-turn milestone capture and rolling aggregates.

Every turn is measured against its own t0 (the moment the utterance was
admitted) with four milestones:
- stt_complete: utterance handed to the generation stage
- first_token:  first generated token (or first audio, if earlier)
- full_answer:  generation stream finished
- full_tts:     synthesis stream finished

Completed turns feed rolling per-milestone percentiles (p50, p90, p99)
and a latency budget with violation logging.
"""
from __future__ import annotations

import time
import structlog
from collections import deque
from typing import Any, Callable, Optional
from dataclasses import dataclass
from enum import Enum

from config.settings import LatencyConfig
from models.schemas import TurnMetrics
from voice.events import EngineObserver

logger = structlog.get_logger()


class Milestone(str, Enum):
    """Turn milestones, in the order they fire."""
    STT_COMPLETE = "stt_complete"
    FIRST_TOKEN = "first_token"
    FULL_ANSWER = "full_answer"
    FULL_TTS = "full_tts"

    @property
    def field_name(self) -> str:
        return f"{self.value}_ms"


@dataclass
class LatencyBudget:
    """
    Latency budget per milestone, relative to t0. When a milestone exceeds
    its budget the tracker records a violation.
    """
    stt_complete_ms: int = 250
    first_token_ms: int = 700
    full_answer_ms: int = 3000
    full_tts_ms: int = 5000

    @classmethod
    def from_config(cls, config: LatencyConfig) -> "LatencyBudget":
        return cls(
            stt_complete_ms=config.stt_complete_ms,
            first_token_ms=config.first_token_ms,
            full_answer_ms=config.full_answer_ms,
            full_tts_ms=config.full_tts_ms,
        )

    def budget_for(self, milestone: Milestone) -> int:
        return getattr(self, milestone.field_name)


# ══════════════════════════════════════════════════════════════
#  PER-TURN RECORDER
# ══════════════════════════════════════════════════════════════

class TurnMetricsRecorder:
    """
    Captures the milestones of a single turn.

    Each milestone is set once; later marks are ignored, so a snapshot
    never moves backwards.
    """

    def __init__(self, t0: float, clock: Callable[[], float] = time.monotonic):
        self.t0 = t0
        self._clock = clock
        self._marks: dict[Milestone, float] = {}

    def mark(self, milestone: Milestone, at: Optional[float] = None) -> bool:
        """Record a milestone. Returns False if it was already captured."""
        if milestone in self._marks:
            return False
        self._marks[milestone] = self._clock() if at is None else at
        return True

    def has(self, milestone: Milestone) -> bool:
        return milestone in self._marks

    def elapsed_ms(self, milestone: Milestone) -> Optional[float]:
        at = self._marks.get(milestone)
        if at is None:
            return None
        return max(0.0, (at - self.t0) * 1000)

    def snapshot(self) -> TurnMetrics:
        return TurnMetrics(**{m.field_name: self.elapsed_ms(m) for m in Milestone})


# ══════════════════════════════════════════════════════════════
#  ROLLING AGGREGATES
# ══════════════════════════════════════════════════════════════

REPORTED_PERCENTILES = (50, 90, 99)


class MilestoneTracker:
    """
    Rolling view of one milestone across turns.

    Percentiles come from the last ``window_size`` turns; count, average,
    extremes and the over-budget tally cover every turn seen.
    """

    def __init__(self, milestone: Milestone, budget_ms: Optional[float] = None, window_size: int = 200):
        self.milestone = milestone
        self.budget_ms = budget_ms
        self._window: deque[float] = deque(maxlen=window_size)
        self._count = 0
        self._total = 0.0
        self._min: Optional[float] = None
        self._max: Optional[float] = None
        self.over_budget = 0

    def record(self, elapsed_ms: float) -> bool:
        """Add one turn's value. Returns True when it ran past the budget."""
        self._window.append(elapsed_ms)
        self._count += 1
        self._total += elapsed_ms
        self._min = elapsed_ms if self._min is None else min(self._min, elapsed_ms)
        self._max = elapsed_ms if self._max is None else max(self._max, elapsed_ms)
        exceeded = self.budget_ms is not None and elapsed_ms > self.budget_ms
        if exceeded:
            self.over_budget += 1
        return exceeded

    def percentile(self, pct: float) -> float:
        """Nearest-rank percentile over the window; 0.0 before any turn."""
        return self._pick(sorted(self._window), pct)

    @staticmethod
    def _pick(ordered: list[float], pct: float) -> float:
        if not ordered:
            return 0.0
        return ordered[min(int(len(ordered) * pct / 100), len(ordered) - 1)]

    @property
    def count(self) -> int:
        return self._count

    @property
    def avg_ms(self) -> float:
        return self._total / self._count if self._count else 0.0

    @property
    def min_ms(self) -> float:
        return self._min or 0.0

    @property
    def max_ms(self) -> float:
        return self._max or 0.0

    @property
    def p50_ms(self) -> float:
        return self.percentile(50)

    @property
    def p90_ms(self) -> float:
        return self.percentile(90)

    @property
    def p99_ms(self) -> float:
        return self.percentile(99)

    def to_dict(self) -> dict[str, Any]:
        ordered = sorted(self._window)
        stats: dict[str, Any] = {
            "milestone": self.milestone.value,
            "count": self._count,
            "avg_ms": round(self.avg_ms, 1),
            "min_ms": round(self.min_ms, 1),
            "max_ms": round(self.max_ms, 1),
            "over_budget": self.over_budget,
        }
        stats.update({f"p{p}_ms": round(self._pick(ordered, p), 1) for p in REPORTED_PERCENTILES})
        return stats


class LatencyObserver(EngineObserver):
    """
    Engine observer that aggregates completed-turn metrics.

    Partial snapshots (full_tts not yet known) are ignored so each turn is
    counted exactly once.
    """

    def __init__(self, budget: LatencyBudget = None, window_size: int = 200):
        self.budget = budget or LatencyBudget()
        self._trackers: dict[Milestone, MilestoneTracker] = {
            m: MilestoneTracker(m, self.budget.budget_for(m), window_size) for m in Milestone
        }
        self._turn_count: int = 0
        self._violations: list[dict[str, Any]] = []

    def on_turn_metrics(self, metrics: TurnMetrics) -> None:
        if metrics.full_tts_ms is None:
            return
        self.record_turn(metrics)

    def record_turn(self, metrics: TurnMetrics) -> None:
        self._turn_count += 1
        for milestone in Milestone:
            value = getattr(metrics, milestone.field_name)
            if value is None:
                continue
            tracker = self._trackers[milestone]
            if tracker.record(value):
                budget = tracker.budget_ms
                violation = {
                    "milestone": milestone.value,
                    "duration_ms": round(value, 1),
                    "budget_ms": budget,
                    "overage_ms": round(value - budget, 1),
                    "turn": self._turn_count,
                }
                self._violations.append(violation)
                logger.warning("latency_budget_exceeded", **violation)

    @property
    def turns(self) -> int:
        return self._turn_count

    @property
    def violations(self) -> list[dict[str, Any]]:
        return self._violations

    def tracker_for(self, milestone: Milestone) -> MilestoneTracker:
        return self._trackers[milestone]

    def is_within_budget(self, milestone: Milestone) -> bool:
        """Check if the milestone's p90 is within budget."""
        tracker = self._trackers[milestone]
        return tracker.p90_ms <= tracker.budget_ms

    def get_optimization_hints(self) -> list[dict[str, Any]]:
        """Milestones whose average runs well past budget, with a suggestion."""
        suggestions = {
            Milestone.FIRST_TOKEN: "Use a faster generation model or shorten the history",
            Milestone.FULL_ANSWER: "Lower max_tokens for spoken replies",
            Milestone.FULL_TTS: "Lower the synthesis flush threshold or use a faster voice model",
        }
        hints = []
        for milestone, suggestion in suggestions.items():
            tracker = self._trackers[milestone]
            if tracker.count == 0:
                continue
            budget = self.budget.budget_for(milestone)
            if tracker.avg_ms > budget * 1.5:
                hints.append({
                    "milestone": milestone.value,
                    "reason": f"{milestone.value} avg {tracker.avg_ms:.0f}ms exceeds budget {budget}ms",
                    "suggestion": suggestion,
                })
        return hints

    def get_all_stats(self) -> dict[str, Any]:
        stats: dict[str, Any] = {}
        for milestone, tracker in self._trackers.items():
            if tracker.count > 0:
                stats[milestone.value] = tracker.to_dict()
        stats["turns"] = self._turn_count
        stats["violations"] = len(self._violations)
        stats["budget"] = {m.value: self.budget.budget_for(m) for m in Milestone}
        return stats
