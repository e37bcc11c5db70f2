"""Microphone capture and speaker playback contexts backed by sounddevice.

PortAudio runs the stream callbacks on its own threads. Capture frames are
handed to the asyncio loop with ``call_soon_threadsafe`` so that everything
downstream of the microphone runs on the loop thread. Playback reads from a
small lock-protected schedule that the loop thread fills.
"""

from __future__ import annotations

import asyncio
import enum
import logging
import threading
from collections import deque
from typing import Any, AsyncIterator, Deque, Optional, Protocol, Tuple

import numpy as np

from .codec import AudioBuffer

LOGGER = logging.getLogger(__name__)

DEFAULT_CAPTURE_BLOCK = 4096


class PermissionDenied(RuntimeError):
    """Raised when the microphone cannot be opened."""


class ResourceState(enum.Enum):
    OPEN = "open"
    CLOSED = "closed"


class CaptureContext(Protocol):
    sample_rate: int
    state: ResourceState

    def frames(self) -> AsyncIterator[np.ndarray]:  # pragma: no cover - structural
        ...

    def close(self) -> None:  # pragma: no cover - structural
        ...


class PlaybackContext(Protocol):
    sample_rate: int
    state: ResourceState

    @property
    def current_time(self) -> float:  # pragma: no cover - structural
        ...

    def schedule(self, buffer: AudioBuffer, start_time: float) -> None:  # pragma: no cover - structural
        ...

    def close(self) -> None:  # pragma: no cover - structural
        ...


class AudioDevices(Protocol):
    """Factory for the two audio contexts a session owns."""

    def open_capture(
        self,
        *,
        sample_rate: int,
        block_size: int,
        loop: asyncio.AbstractEventLoop,
    ) -> CaptureContext:  # pragma: no cover - structural
        ...

    def open_playback(self, *, sample_rate: int) -> PlaybackContext:  # pragma: no cover - structural
        ...


def _load_sounddevice() -> Any:
    try:
        import sounddevice
    except (ImportError, OSError) as exc:  # pragma: no cover - import guard
        raise ImportError(
            "sounddevice with a working PortAudio is required for live audio. "
            "Install it with `uv pip install sounddevice`."
        ) from exc
    return sounddevice


class SoundDeviceCapture:
    """Mono float32 microphone stream feeding an asyncio queue."""

    def __init__(
        self,
        sd: Any,
        *,
        sample_rate: int,
        block_size: int,
        loop: asyncio.AbstractEventLoop,
        device: Optional[Any] = None,
    ) -> None:
        self.sample_rate = sample_rate
        self._loop = loop
        self._queue: asyncio.Queue[Optional[np.ndarray]] = asyncio.Queue()
        self.state = ResourceState.CLOSED
        try:
            self._stream = sd.InputStream(
                samplerate=sample_rate,
                blocksize=block_size,
                device=device,
                channels=1,
                dtype="float32",
                callback=self._callback,
            )
            self._stream.start()
        except (sd.PortAudioError, ValueError) as exc:
            raise PermissionDenied(f"Microphone unavailable: {exc}") from exc
        self.state = ResourceState.OPEN

    def _callback(self, indata, frames, time_info, status) -> None:
        if status:
            LOGGER.debug("capture status: %s", status)
        if self.state is not ResourceState.OPEN:
            return
        self._loop.call_soon_threadsafe(self._queue.put_nowait, indata[:, 0].copy())

    async def frames(self) -> AsyncIterator[np.ndarray]:
        while True:
            samples = await self._queue.get()
            if samples is None:
                return
            yield samples

    def close(self) -> None:
        if self.state is ResourceState.CLOSED:
            return
        self.state = ResourceState.CLOSED
        self._stream.stop()
        self._stream.close()
        # Queued after any frames the callback already posted, so they drain first.
        self._loop.call_soon(self._queue.put_nowait, None)


class SoundDevicePlayback:
    """Mono float32 output stream that plays buffers at absolute stream times."""

    def __init__(
        self,
        sd: Any,
        *,
        sample_rate: int,
        device: Optional[Any] = None,
    ) -> None:
        self.sample_rate = sample_rate
        self._lock = threading.Lock()
        self._pending: Deque[Tuple[int, np.ndarray]] = deque()
        self._frames_rendered = 0
        self.state = ResourceState.CLOSED
        self._stream = sd.OutputStream(
            samplerate=sample_rate,
            device=device,
            channels=1,
            dtype="float32",
            callback=self._callback,
        )
        self._stream.start()
        self.state = ResourceState.OPEN

    @property
    def current_time(self) -> float:
        with self._lock:
            return self._frames_rendered / self.sample_rate

    def schedule(self, buffer: AudioBuffer, start_time: float) -> None:
        if self.state is not ResourceState.OPEN:
            return
        samples = buffer.mono()
        if buffer.sample_rate != self.sample_rate:
            raise ValueError(
                f"buffer rate {buffer.sample_rate} does not match playback rate {self.sample_rate}"
            )
        start_frame = int(round(start_time * self.sample_rate))
        with self._lock:
            # The callback may have rendered past start_time since the caller read the clock.
            start_frame = max(start_frame, self._frames_rendered)
            self._pending.append((start_frame, samples))

    def _callback(self, outdata, frames, time_info, status) -> None:
        if status:
            LOGGER.debug("playback status: %s", status)
        block = np.zeros(frames, dtype=np.float32)
        with self._lock:
            block_start = self._frames_rendered
            block_end = block_start + frames
            while self._pending:
                start, samples = self._pending[0]
                if start >= block_end:
                    break
                offset = max(0, block_start - start)
                if offset >= len(samples):
                    self._pending.popleft()
                    continue
                dest = max(0, start - block_start)
                count = min(len(samples) - offset, frames - dest)
                block[dest : dest + count] = samples[offset : offset + count]
                if offset + count >= len(samples):
                    self._pending.popleft()
                else:
                    break
            self._frames_rendered = block_end
        outdata[:, 0] = block

    def close(self) -> None:
        if self.state is ResourceState.CLOSED:
            return
        self.state = ResourceState.CLOSED
        self._stream.stop()
        self._stream.close()
        with self._lock:
            self._pending.clear()


class SoundDeviceBackend:
    """:class:`AudioDevices` implementation for the local sound card."""

    def __init__(
        self,
        *,
        input_device: Optional[Any] = None,
        output_device: Optional[Any] = None,
    ) -> None:
        self._sd = _load_sounddevice()
        self.input_device = input_device
        self.output_device = output_device

    def open_capture(
        self,
        *,
        sample_rate: int,
        block_size: int = DEFAULT_CAPTURE_BLOCK,
        loop: asyncio.AbstractEventLoop,
    ) -> SoundDeviceCapture:
        return SoundDeviceCapture(
            self._sd,
            sample_rate=sample_rate,
            block_size=block_size,
            loop=loop,
            device=self.input_device,
        )

    def open_playback(self, *, sample_rate: int) -> SoundDevicePlayback:
        return SoundDevicePlayback(self._sd, sample_rate=sample_rate, device=self.output_device)
