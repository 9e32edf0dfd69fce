"""
Core data models for the conversation engine.
These are the universal types shared across all modules.
"""
from __future__ import annotations

from enum import Enum
from typing import Optional, Union

from pydantic import BaseModel


# ──────────────────────────────────────────────────────────────
#  Enums
# ──────────────────────────────────────────────────────────────

class Role(str, Enum):
    SYSTEM = "system"
    USER = "user"
    ASSISTANT = "assistant"


class EngineState(str, Enum):
    """Lifecycle state of a single conversation engine."""
    IDLE = "idle"
    LISTENING = "listening"
    PROCESSING = "processing"     # generation running, nothing audible yet
    SPEAKING = "speaking"         # synthesis producing audio
    COOLDOWN = "cooldown"
    ABORTED = "aborted"


OCCUPIED_STATES = frozenset({EngineState.PROCESSING, EngineState.SPEAKING})


# ──────────────────────────────────────────────────────────────
#  Conversation history
# ──────────────────────────────────────────────────────────────

class ChatTurn(BaseModel):
    """One entry of the conversation history fed to the generation stage."""
    role: Role
    content: str

    def to_message(self) -> dict[str, str]:
        return {"role": self.role.value, "content": self.content}


ConversationHistory = list[ChatTurn]


# ──────────────────────────────────────────────────────────────
#  Stage units
# ──────────────────────────────────────────────────────────────

class TranscriptFragment(BaseModel):
    """Interim or final transcription result."""
    text: str
    is_final: bool = False
    start_offset: Optional[float] = None      # seconds into the audio stream
    end_offset: Optional[float] = None


class GeneratedToken(BaseModel):
    """A unit of generated text. ``is_final`` marks the end of the stream."""
    token: str
    is_final: bool = False


class TimedToken(GeneratedToken):
    """Generated token plus the monotonic time it was observed."""
    captured_at: float


class AudioUnit(BaseModel):
    """Raw 16-bit little-endian PCM. The final unit carries no payload."""
    payload: bytes = b""
    sample_rate: int = 24000
    is_final: bool = False

    @classmethod
    def final(cls, sample_rate: int = 24000) -> "AudioUnit":
        return cls(payload=b"", sample_rate=sample_rate, is_final=True)


class _EndOfText:
    """Flush marker handed to the synthesis stage after the last token."""
    _instance: Optional["_EndOfText"] = None

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "END_OF_TEXT"

    def __bool__(self) -> bool:
        return False


END_OF_TEXT = _EndOfText()

TextUnit = Union[str, _EndOfText]


def is_end_of_text(unit: TextUnit) -> bool:
    return unit is END_OF_TEXT


# ──────────────────────────────────────────────────────────────
#  Metrics
# ──────────────────────────────────────────────────────────────

class TurnMetrics(BaseModel):
    """
    Latency milestones for one turn, in milliseconds relative to t0.
    A field stays ``None`` until its milestone fires.
    """
    stt_complete_ms: Optional[float] = None
    first_token_ms: Optional[float] = None
    full_answer_ms: Optional[float] = None
    full_tts_ms: Optional[float] = None

    @property
    def complete(self) -> bool:
        return None not in (
            self.stt_complete_ms, self.first_token_ms,
            self.full_answer_ms, self.full_tts_ms,
        )

    def to_dict(self) -> dict[str, Optional[float]]:
        return {
            k: (round(v, 1) if v is not None else None)
            for k, v in self.model_dump().items()
        }
