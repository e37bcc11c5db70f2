"""Gapless scheduling of examiner audio buffers."""

from __future__ import annotations

import logging
from typing import Any, Callable, Optional, Protocol

from .codec import AudioBuffer

LOGGER = logging.getLogger(__name__)

DEFAULT_SPEAKING_TOLERANCE = 0.1
MIN_RECHECK_DELAY = 0.02


class PlaybackSink(Protocol):
    """Output device that plays buffers at absolute times on its own clock."""

    @property
    def current_time(self) -> float:  # pragma: no cover - structural
        ...

    def schedule(self, buffer: AudioBuffer, start_time: float) -> None:  # pragma: no cover - structural
        ...


TimerFactory = Callable[[float, Callable[[], None]], Any]


class PlaybackScheduler:
    """Queue decoded buffers back to back and track whether the examiner is speaking.

    Each buffer starts at ``max(sink clock, cursor)`` so late arrivals queue
    behind the previous buffer instead of overlapping it. The speaking flag
    clears once the sink clock reaches the cursor (within ``tolerance``
    seconds) and no newer buffer has pushed the cursor out.

    ``call_later`` is usually ``loop.call_later``; without it the owner must
    call :meth:`refresh` itself.
    """

    def __init__(
        self,
        sink: PlaybackSink,
        *,
        tolerance: float = DEFAULT_SPEAKING_TOLERANCE,
        call_later: Optional[TimerFactory] = None,
        on_speaking_change: Optional[Callable[[bool], None]] = None,
    ) -> None:
        if tolerance < 0:
            raise ValueError("tolerance must be non-negative")
        self.sink = sink
        self.tolerance = tolerance
        self._call_later = call_later
        self._on_speaking_change = on_speaking_change
        self._cursor = 0.0
        self._speaking = False
        self._timer: Any = None

    @property
    def cursor(self) -> float:
        return self._cursor

    @property
    def speaking(self) -> bool:
        return self._speaking

    def enqueue(self, buffer: AudioBuffer) -> float:
        """Schedule ``buffer`` and return the time it starts playing."""

        start = max(self.sink.current_time, self._cursor)
        self.sink.schedule(buffer, start)
        self._cursor = start + buffer.duration
        self._set_speaking(True)
        self._arm(self._cursor - self.sink.current_time)
        return start

    def refresh(self) -> bool:
        """Re-evaluate the speaking flag against the sink clock."""

        self._timer = None
        if not self._speaking:
            return False
        remaining = self._cursor - self.sink.current_time
        if remaining <= self.tolerance:
            self._set_speaking(False)
        else:
            # Device clocks advance per block, so the end can be observed late.
            self._arm(max(remaining - self.tolerance, MIN_RECHECK_DELAY))
        return self._speaking

    def reset(self) -> None:
        self._cancel_timer()
        self._cursor = 0.0
        self._set_speaking(False)

    def _arm(self, delay: float) -> None:
        if self._call_later is None:
            return
        self._cancel_timer()
        self._timer = self._call_later(max(0.0, delay), self.refresh)

    def _cancel_timer(self) -> None:
        if self._timer is not None:
            cancel = getattr(self._timer, "cancel", None)
            if cancel is not None:
                cancel()
            self._timer = None

    def _set_speaking(self, speaking: bool) -> None:
        if speaking == self._speaking:
            return
        self._speaking = speaking
        LOGGER.debug("examiner speaking=%s cursor=%.3f", speaking, self._cursor)
        if self._on_speaking_change is not None:
            self._on_speaking_change(speaking)
