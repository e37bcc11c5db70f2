"""Mixes candidate microphone audio and examiner playback into a WAV recording."""

from __future__ import annotations

import enum
import logging
import uuid
import wave
from pathlib import Path
from typing import List, Optional, Tuple

import numpy as np

from .codec import AudioBuffer, encode, resample

LOGGER = logging.getLogger(__name__)

WRITE_BLOCK_SECONDS = 1


class RecorderState(enum.Enum):
    RECORDING = "recording"
    FINALIZED = "finalized"
    DISCARDED = "discarded"


class SessionRecorder:
    """Collects both sides of the conversation on a single timeline.

    Microphone frames are appended back to back from the capture clock.
    Examiner buffers are placed at the start time the playback scheduler
    gave them. Both tracks are summed and saturated at finalise time.
    """

    def __init__(self, directory: Path, *, sample_rate: int = 24_000) -> None:
        if sample_rate <= 0:
            raise ValueError("sample_rate must be positive")
        self.directory = directory
        self.sample_rate = sample_rate
        self.state = RecorderState.RECORDING
        self._mic_chunks: List[np.ndarray] = []
        self._mic_frames = 0
        self._examiner: List[Tuple[int, np.ndarray]] = []
        self.path: Optional[Path] = None

    @property
    def duration(self) -> float:
        return self._end_frame() / self.sample_rate

    def _end_frame(self) -> int:
        end = self._mic_frames
        for start, samples in self._examiner:
            end = max(end, start + len(samples))
        return end

    def add_microphone(self, samples: np.ndarray, sample_rate: int) -> None:
        if self.state is not RecorderState.RECORDING:
            return
        chunk = resample(samples, sample_rate, self.sample_rate)
        self._mic_chunks.append(chunk)
        self._mic_frames += len(chunk)

    def add_playback(self, buffer: AudioBuffer, start_time: float) -> None:
        if self.state is not RecorderState.RECORDING:
            return
        samples = resample(buffer.mono(), buffer.sample_rate, self.sample_rate)
        start = max(0, int(round(start_time * self.sample_rate)))
        self._examiner.append((start, samples))

    def finalize(self) -> Optional[str]:
        """Write the mixed recording and return its ``file://`` URI.

        Returns ``None`` when nothing was recorded.
        """

        if self.state is RecorderState.FINALIZED:
            return self.path.resolve().as_uri() if self.path is not None else None
        if self.state is RecorderState.DISCARDED:
            return None
        self.state = RecorderState.FINALIZED

        total = self._end_frame()
        if total == 0:
            self._release()
            return None

        self.directory.mkdir(parents=True, exist_ok=True)
        self.path = self.directory / f"speaking_{uuid.uuid4().hex[:8]}.wav"
        with wave.open(str(self.path), "wb") as handle:
            handle.setnchannels(1)
            handle.setsampwidth(2)
            handle.setframerate(self.sample_rate)
            self._write_mix(handle, total)
        LOGGER.info("recording written to %s (%.1fs)", self.path, total / self.sample_rate)
        self._release()
        return self.path.resolve().as_uri()

    def _write_mix(self, handle: wave.Wave_write, total: int) -> None:
        """Sum both tracks one block at a time; only one block is ever held in memory."""

        block_frames = self.sample_rate * WRITE_BLOCK_SECONDS
        examiner = sorted(self._examiner, key=lambda item: item[0])
        first_pending = 0
        mic_index = 0
        mic_offset = 0
        for block_start in range(0, total, block_frames):
            block_end = min(block_start + block_frames, total)
            mix = np.zeros(block_end - block_start, dtype=np.float32)

            filled = 0
            while filled < len(mix) and mic_index < len(self._mic_chunks):
                chunk = self._mic_chunks[mic_index]
                count = min(len(chunk) - mic_offset, len(mix) - filled)
                mix[filled : filled + count] += chunk[mic_offset : mic_offset + count]
                filled += count
                mic_offset += count
                if mic_offset >= len(chunk):
                    mic_index += 1
                    mic_offset = 0

            for start, samples in examiner[first_pending:]:
                if start >= block_end:
                    break
                lo = max(start, block_start)
                hi = min(start + len(samples), block_end)
                if hi > lo:
                    mix[lo - block_start : hi - block_start] += samples[lo - start : hi - start]
            # Buffers are start-ordered, so the finished prefix never needs revisiting.
            while first_pending < len(examiner):
                start, samples = examiner[first_pending]
                if start + len(samples) > block_end:
                    break
                first_pending += 1

            handle.writeframes(encode(mix))

    def discard(self) -> None:
        if self.state is not RecorderState.RECORDING:
            return
        self.state = RecorderState.DISCARDED
        self._release()

    def _release(self) -> None:
        self._mic_chunks.clear()
        self._examiner.clear()
        self._mic_frames = 0
