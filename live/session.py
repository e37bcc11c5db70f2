"""Transport-neutral view of a live, bidirectional examiner session."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Dict, Mapping, Protocol, Sequence, Union


PHASE_TOOL_NAME = "setExamPart"


class ConnectionFailed(RuntimeError):
    """Raised when the remote live session cannot be opened."""


@dataclass(frozen=True)
class InboundAudio:
    """Raw 16-bit PCM spoken by the examiner."""

    data: bytes
    mime_type: str = "audio/pcm;rate=24000"


@dataclass(frozen=True)
class Transcription:
    """A transcription fragment; ``is_input`` marks the candidate's side."""

    text: str
    is_input: bool


@dataclass(frozen=True)
class TurnComplete:
    """The examiner finished its turn."""


@dataclass(frozen=True)
class ControlCall:
    """A tool call issued by the examiner that must be acknowledged."""

    call_id: str
    name: str
    args: Mapping[str, Any] = field(default_factory=dict)


LiveEvent = Union[InboundAudio, Transcription, TurnComplete, ControlCall]


class RemoteSession(Protocol):
    async def send_audio(self, pcm: bytes, *, sample_rate: int) -> None:  # pragma: no cover - structural
        ...

    async def send_text(self, text: str) -> None:  # pragma: no cover - structural
        ...

    async def send_tool_response(
        self, call_id: str, name: str, response: Dict[str, Any]
    ) -> None:  # pragma: no cover - structural
        ...

    def events(self) -> AsyncIterator[LiveEvent]:  # pragma: no cover - structural
        ...

    async def close(self) -> None:  # pragma: no cover - structural
        ...


class LiveConnector(Protocol):
    """Opens :class:`RemoteSession` instances; raises :class:`ConnectionFailed`."""

    async def connect(
        self, system_instruction: str, phases: Sequence[str]
    ) -> RemoteSession:  # pragma: no cover - structural
        ...
