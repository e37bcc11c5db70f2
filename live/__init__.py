"""Live examiner session clients."""

from .session import (
    ConnectionFailed,
    ControlCall,
    InboundAudio,
    LiveConnector,
    LiveEvent,
    PHASE_TOOL_NAME,
    RemoteSession,
    Transcription,
    TurnComplete,
)

__all__ = [
    "ConnectionFailed",
    "ControlCall",
    "InboundAudio",
    "LiveConnector",
    "LiveEvent",
    "PHASE_TOOL_NAME",
    "RemoteSession",
    "Transcription",
    "TurnComplete",
]
