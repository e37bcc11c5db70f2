"""16-bit PCM codec for the live session wire format."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Sequence, Union

import numpy as np

BYTES_PER_SAMPLE = 2
PCM_SCALE = 32768.0
INT16_MIN = -32768
INT16_MAX = 32767

SampleInput = Union[Sequence[float], np.ndarray]


class InvalidFrameLength(ValueError):
    """Raised when a PCM payload does not hold a whole number of frames."""

    def __init__(self, length: int, channels: int) -> None:
        super().__init__(
            f"PCM payload of {length} bytes is not a multiple of {BYTES_PER_SAMPLE * channels}"
        )
        self.length = length
        self.channels = channels


@dataclass(frozen=True)
class AudioBuffer:
    """Decoded float audio laid out as ``(channels, frames)``."""

    samples: np.ndarray
    sample_rate: int

    def __post_init__(self) -> None:
        if self.sample_rate <= 0:
            raise ValueError("sample_rate must be positive")
        if self.samples.ndim != 2:
            raise ValueError("samples must be a (channels, frames) array")

    @property
    def channel_count(self) -> int:
        return int(self.samples.shape[0])

    @property
    def frame_count(self) -> int:
        return int(self.samples.shape[1])

    @property
    def duration(self) -> float:
        return self.frame_count / self.sample_rate

    def mono(self) -> np.ndarray:
        if self.channel_count == 1:
            return self.samples[0]
        return self.samples.mean(axis=0).astype(np.float32)


def encode(samples: SampleInput) -> bytes:
    """Convert float samples in [-1, 1] to little-endian int16 PCM.

    Out-of-range input saturates at the int16 bounds instead of wrapping.
    """

    values = np.asarray(samples, dtype=np.float32).reshape(-1)
    if values.size == 0:
        return b""
    scaled = np.clip(values, -1.0, 1.0) * np.float32(PCM_SCALE)
    np.round(scaled, out=scaled)
    np.clip(scaled, INT16_MIN, INT16_MAX, out=scaled)
    pcm = scaled.astype("<i2")
    return pcm.tobytes()


def decode(data: bytes, sample_rate: int, channels: int = 1) -> AudioBuffer:
    """Inverse of :func:`encode`; de-interleaves ``channels`` and normalises by 32768."""

    if channels <= 0:
        raise ValueError("channels must be positive")
    if len(data) % (BYTES_PER_SAMPLE * channels) != 0:
        raise InvalidFrameLength(len(data), channels)
    pcm = np.frombuffer(data, dtype="<i2")
    frames = pcm.reshape(-1, channels).T
    samples = (frames.astype(np.float32) / PCM_SCALE).astype(np.float32)
    return AudioBuffer(samples=np.ascontiguousarray(samples), sample_rate=sample_rate)


def resample(samples: np.ndarray, src_rate: int, target_rate: int) -> np.ndarray:
    """Linear-interpolation resampler for mono float audio."""

    if src_rate <= 0 or target_rate <= 0:
        raise ValueError("sample rates must be positive")
    samples = np.asarray(samples, dtype=np.float32).reshape(-1)
    if src_rate == target_rate or samples.size == 0:
        return samples

    ratio = src_rate / target_rate
    target_length = max(1, int(round(samples.size * target_rate / src_rate)))
    positions = np.arange(target_length, dtype=np.float64) * ratio
    source_index = np.arange(samples.size, dtype=np.float64)
    return np.interp(positions, source_index, samples).astype(np.float32)
