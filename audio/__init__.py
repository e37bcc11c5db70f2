"""Audio codec, playback scheduling, device contexts and session recording."""

from .codec import AudioBuffer, InvalidFrameLength, decode, encode, resample
from .devices import (
    AudioDevices,
    CaptureContext,
    PermissionDenied,
    PlaybackContext,
    ResourceState,
    SoundDeviceBackend,
)
from .playback import PlaybackScheduler, PlaybackSink
from .recorder import RecorderState, SessionRecorder

__all__ = [
    "AudioBuffer",
    "AudioDevices",
    "CaptureContext",
    "InvalidFrameLength",
    "PermissionDenied",
    "PlaybackContext",
    "PlaybackScheduler",
    "PlaybackSink",
    "RecorderState",
    "ResourceState",
    "SessionRecorder",
    "SoundDeviceBackend",
    "decode",
    "encode",
    "resample",
]
