"""Session controller package: exam lifecycle, transcript log, prompts and settings."""

from .prompts import ExamTopics, build_system_instruction, pick_topics
from .session_controller import (
    ExamPhase,
    InvalidTransition,
    Session,
    SessionBusy,
    SessionController,
    SessionControllerConfig,
    SessionNotActive,
    SessionState,
)
from .transcript import Speaker, TranscriptAccumulator, TranscriptEntry

__all__ = [
    "ExamPhase",
    "ExamTopics",
    "InvalidTransition",
    "Session",
    "SessionBusy",
    "SessionController",
    "SessionControllerConfig",
    "SessionNotActive",
    "SessionState",
    "Speaker",
    "TranscriptAccumulator",
    "TranscriptEntry",
    "build_system_instruction",
    "pick_topics",
]
