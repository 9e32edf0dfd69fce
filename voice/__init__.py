"""
Voice Subsystem — half-duplex conversation engine.

Modules:
- cancellation: revocable scope threaded through every stage
- gate: admit/reject policy for finalized utterances
- aggregator: interim/final transcript merging
- pipeline: generation → synthesis streaming for one turn
- engine: the turn-taking state machine and session owner
- events: observer interface and fan-out
- latency: per-turn milestones and rolling aggregates
- monitoring: periodic metrics publishing and health
- providers: collaborator contracts and backend factory
"""
from voice.cancellation import CancellationScope
from voice.gate import InputGate, GateConfig, GateDecision, GateVerdict, is_noise
from voice.aggregator import TranscriptAggregator, pick_candidate
from voice.events import EngineObserver, CallbackObserver, EngineEvents
from voice.latency import (
    Milestone, LatencyBudget, TurnMetricsRecorder, MilestoneTracker, LatencyObserver,
)
from voice.providers import (
    TranscriptionProvider, GenerationProvider, SynthesisProvider,
    ProviderSet, create_providers,
)
from voice.pipeline import TurnPipeline, TurnResult
from voice.engine import ConversationEngine, create_engine
from voice.monitoring import VoiceMetricsPublisher
from voice.errors import (
    ConversationEngineError, TurnInProgressError, EngineBusyError, ProviderError,
)

__all__ = [
    "CancellationScope",
    "InputGate", "GateConfig", "GateDecision", "GateVerdict", "is_noise",
    "TranscriptAggregator", "pick_candidate",
    "EngineObserver", "CallbackObserver", "EngineEvents",
    "Milestone", "LatencyBudget", "TurnMetricsRecorder", "MilestoneTracker", "LatencyObserver",
    "TranscriptionProvider", "GenerationProvider", "SynthesisProvider",
    "ProviderSet", "create_providers",
    "TurnPipeline", "TurnResult",
    "ConversationEngine", "create_engine",
    "VoiceMetricsPublisher",
    "ConversationEngineError", "TurnInProgressError", "EngineBusyError", "ProviderError",
]
