"""Per-turn transcript buffering for the speaking session."""

from __future__ import annotations

import enum
import time
from dataclasses import dataclass
from typing import Callable, Dict, List, Tuple


class Speaker(str, enum.Enum):
    CANDIDATE = "candidate"
    EXAMINER = "examiner"


@dataclass(frozen=True)
class TranscriptEntry:
    """One committed turn of the conversation."""

    role: Speaker
    text: str
    timestamp: float


COMMIT_ORDER = (Speaker.CANDIDATE, Speaker.EXAMINER)


class TranscriptAccumulator:
    """Buffers transcription fragments per side and commits whole turns."""

    def __init__(self, *, now: Callable[[], float] = time.time) -> None:
        self._now = now
        self._pending: Dict[Speaker, str] = {speaker: "" for speaker in COMMIT_ORDER}
        self._entries: List[TranscriptEntry] = []

    @property
    def entries(self) -> Tuple[TranscriptEntry, ...]:
        return tuple(self._entries)

    def pending(self, side: Speaker) -> str:
        return self._pending[Speaker(side)]

    def append_fragment(self, side: Speaker, text: str) -> None:
        if not text:
            return
        side = Speaker(side)
        self._pending[side] += text

    def commit_turn(self) -> List[TranscriptEntry]:
        """Commit every side whose pending text is not blank."""

        committed = []
        for side in COMMIT_ORDER:
            if self._pending[side].strip():
                committed.append(self._commit(side))
        return committed

    def drain_final(self) -> List[TranscriptEntry]:
        """Commit whatever is pending, even without a turn-completion marker."""

        committed = []
        for side in COMMIT_ORDER:
            if self._pending[side]:
                committed.append(self._commit(side))
        return committed

    def _commit(self, side: Speaker) -> TranscriptEntry:
        entry = TranscriptEntry(role=side, text=self._pending[side], timestamp=self._now())
        self._entries.append(entry)
        self._pending[side] = ""
        return entry
