"""
Transcript Aggregator — one finalized utterance per turn.

Interim fragments only update the running best-effort text. When a final
fragment arrives the candidate is whichever of the final text and the
running text is longer: backends often trim filler on the final pass, and
the longer reading is the safer one to answer. Trailing interim text left
when the stream ends is flushed as a last candidate.
"""
from __future__ import annotations

import structlog
from typing import AsyncIterator, Callable, Optional

from models.schemas import TranscriptFragment
from utils.streams import AsyncIterableLike, to_async_iterable

logger = structlog.get_logger()


def pick_candidate(final_text: str, running_text: str) -> str:
    """Longer of the two readings; the final fragment wins ties."""
    return max(final_text, running_text, key=len)


class TranscriptAggregator:
    """Merges interim and final fragments into finalized utterances."""

    def __init__(self, on_fragment: Optional[Callable[[str], None]] = None):
        self._on_fragment = on_fragment
        self._running_text = ""

    @property
    def running_text(self) -> str:
        return self._running_text

    def clear(self) -> None:
        self._running_text = ""

    def feed(self, fragment: TranscriptFragment) -> Optional[str]:
        """Consume one fragment; return a candidate if it closes an utterance."""
        if self._on_fragment is not None:
            self._on_fragment(fragment.text)

        if not fragment.is_final:
            self._running_text = fragment.text
            return None

        candidate = pick_candidate(fragment.text, self._running_text)
        self._running_text = ""
        return candidate

    def flush(self) -> Optional[str]:
        """End of stream: hand back leftover interim text, if any."""
        leftover = self._running_text
        self._running_text = ""
        if leftover.strip():
            logger.debug("transcript_flushed_at_stream_end", chars=len(leftover))
            return leftover
        return None

    async def candidates(
        self, fragments: AsyncIterableLike[TranscriptFragment]
    ) -> AsyncIterator[str]:
        """Yield finalized utterances from a fragment stream."""
        async for fragment in to_async_iterable(fragments):
            candidate = self.feed(fragment)
            if candidate is not None:
                yield candidate

        leftover = self.flush()
        if leftover is not None:
            yield leftover
