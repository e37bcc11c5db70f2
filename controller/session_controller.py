"""Session controller that runs one live speaking exam against a remote examiner."""

from __future__ import annotations

import asyncio
import enum
import json
import logging
import random
import shutil
import tempfile
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Tuple, Union

from audio import (
    AudioBuffer,
    AudioDevices,
    CaptureContext,
    InvalidFrameLength,
    PlaybackContext,
    PlaybackScheduler,
    SessionRecorder,
    decode,
    encode,
    resample,
)
from evaluation import EvaluationClient, EvaluationFailed, ScoreReport
from live import (
    PHASE_TOOL_NAME,
    ConnectionFailed,
    ControlCall,
    InboundAudio,
    LiveConnector,
    RemoteSession,
    Transcription,
    TurnComplete,
)

from .prompts import READY_SIGNAL, ExamTopics, build_system_instruction, pick_topics
from .transcript import Speaker, TranscriptAccumulator, TranscriptEntry

LOGGER = logging.getLogger("session_controller")
if not LOGGER.handlers:
    handler = logging.StreamHandler()
    handler.setFormatter(logging.Formatter("%(message)s"))
    LOGGER.addHandler(handler)
LOGGER.setLevel(logging.INFO)

Listener = Callable[[Dict[str, Any]], None]


class SessionState(str, enum.Enum):
    IDLE = "idle"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    CLOSING = "closing"


ALLOWED_TRANSITIONS = {
    SessionState.IDLE: {SessionState.CONNECTING},
    SessionState.CONNECTING: {SessionState.CONNECTED, SessionState.CLOSING, SessionState.IDLE},
    SessionState.CONNECTED: {SessionState.CLOSING},
    SessionState.CLOSING: {SessionState.IDLE},
}


class ExamPhase(str, enum.Enum):
    INTRO = "INTRO"
    PART_1 = "PART_1"
    PART_2 = "PART_2"
    PART_3 = "PART_3"
    FINISHED = "FINISHED"

    @property
    def order(self) -> int:
        return list(ExamPhase).index(self)

    @property
    def notice(self) -> str:
        if self is ExamPhase.FINISHED:
            return "Test completed"
        return f"Starting {self.value.replace('_', ' ')}"


class SessionBusy(RuntimeError):
    """Raised when a session is started while another one is active."""


class SessionNotActive(RuntimeError):
    """Raised when an operation needs a session that does not exist."""


class InvalidTransition(RuntimeError):
    """Raised when the lifecycle would move along an edge it does not have."""


@dataclass(frozen=True)
class SessionControllerConfig:
    """Configuration knobs for the speaking session."""

    capture_sample_rate: int = 16_000
    playback_sample_rate: int = 24_000
    inbound_channels: int = 1
    capture_block_size: int = 4096
    speaking_tolerance: float = 0.1
    capture_flush_timeout: float = 2.0
    ready_signal: str = READY_SIGNAL
    part1_topic: Optional[str] = None
    part2_topic: Optional[str] = None
    recording_dir: Optional[Path] = None
    log_path: Optional[Path] = None

    def __post_init__(self) -> None:
        if self.capture_sample_rate <= 0 or self.playback_sample_rate <= 0:
            raise ValueError("sample rates must be positive")
        if self.inbound_channels <= 0:
            raise ValueError("inbound_channels must be positive")
        if self.capture_block_size <= 0:
            raise ValueError("capture_block_size must be positive")
        if self.speaking_tolerance < 0:
            raise ValueError("speaking_tolerance must be non-negative")
        if self.capture_flush_timeout <= 0:
            raise ValueError("capture_flush_timeout must be positive")
        if self.recording_dir is not None:
            object.__setattr__(self, "recording_dir", Path(self.recording_dir).expanduser())
        if self.log_path is not None:
            object.__setattr__(self, "log_path", Path(self.log_path).expanduser())


@dataclass(eq=False)
class Session:
    """Everything one exam owns; released exactly once by the controller."""

    session_id: str
    topics: ExamTopics
    transcript: TranscriptAccumulator
    phase: ExamPhase = ExamPhase.INTRO
    connected_at: Optional[float] = None
    capture: Optional[CaptureContext] = None
    playback: Optional[PlaybackContext] = None
    scheduler: Optional[PlaybackScheduler] = None
    recorder: Optional[SessionRecorder] = None
    remote: Optional[RemoteSession] = None
    remote_open: bool = False
    pump_task: Optional[asyncio.Task] = None
    receive_task: Optional[asyncio.Task] = None
    aborted: bool = False
    released: bool = False
    recording_uri: Optional[str] = None
    dropped_frames: int = 0
    send_failures: int = 0
    notices: List[str] = field(default_factory=list)


class SessionController:
    """Drives one speaking exam at a time.

    ``start`` acquires the microphone, the speaker and the remote examiner;
    ``finish`` releases them in a fixed order and scores the transcript;
    ``abort`` releases them without scoring. Remote events are consumed by
    a receive loop and microphone frames by a capture pump, both running as
    tasks on the caller's event loop.
    """

    def __init__(
        self,
        *,
        connector: LiveConnector,
        devices: AudioDevices,
        evaluator: EvaluationClient,
        config: SessionControllerConfig,
        clock: Callable[[], float] = time.monotonic,
        now: Callable[[], float] = time.time,
        rng: Optional[random.Random] = None,
    ) -> None:
        self.connector = connector
        self.devices = devices
        self.evaluator = evaluator
        self.config = config
        self._clock = clock
        self._now = now
        self._rng = rng or random.Random()

        self.state = SessionState.IDLE
        self._session: Optional[Session] = None
        self._connect_task: Optional[asyncio.Task] = None
        self._last_session_id: Optional[str] = None
        self._last_transcript: Tuple[TranscriptEntry, ...] = ()
        self._last_recording_uri: Optional[str] = None
        self._listeners: List[Listener] = []
        self._temp_dir: Optional[Path] = None

        self._log_path = config.log_path
        self._log_file = None
        if self._log_path is not None:
            self._log_path.parent.mkdir(parents=True, exist_ok=True)
            self._log_file = self._log_path.open("a", encoding="utf-8")

    # ------------------------------------------------------------------
    # Public API

    @property
    def session(self) -> Optional[Session]:
        return self._session

    @property
    def phase(self) -> Optional[ExamPhase]:
        return self._session.phase if self._session is not None else None

    @property
    def examiner_speaking(self) -> bool:
        session = self._session
        return bool(session is not None and session.scheduler is not None and session.scheduler.speaking)

    @property
    def elapsed_seconds(self) -> int:
        session = self._session
        if session is None or session.connected_at is None:
            return 0
        return int(self._clock() - session.connected_at)

    @property
    def transcript(self) -> Tuple[TranscriptEntry, ...]:
        """Live log while a session runs, otherwise the log of the last finished one."""

        if self._session is not None:
            return self._session.transcript.entries
        return self._last_transcript

    @property
    def last_recording_uri(self) -> Optional[str]:
        return self._last_recording_uri

    def add_listener(self, listener: Listener) -> None:
        self._listeners.append(listener)

    def close(self) -> None:
        """Release the log file and the recording directory.

        Call after ``finish`` or ``abort``; recording URIs handed out earlier
        stop resolving once this returns.
        """

        if self._log_file is not None:
            self._log_file.close()
            self._log_file = None
        if self._temp_dir is not None:
            shutil.rmtree(self._temp_dir, ignore_errors=True)
            self._temp_dir = None

    async def start(self) -> None:
        if self.state is not SessionState.IDLE:
            raise SessionBusy(f"A session is already {self.state.value}; abort it before starting another")

        topics = pick_topics(
            self._rng,
            part1_topic=self.config.part1_topic,
            part2_topic=self.config.part2_topic,
        )
        session = Session(
            session_id=uuid.uuid4().hex[:8],
            topics=topics,
            transcript=TranscriptAccumulator(now=self._now),
        )
        self._session = session
        self._last_session_id = None
        self._last_transcript = ()
        self._last_recording_uri = None
        self._transition(
            SessionState.CONNECTING,
            reason="start",
            part1_topic=topics.part1_topic,
            part2_topic=topics.part2_topic,
        )

        self._connect_task = asyncio.create_task(self._connect(session))
        try:
            await self._connect_task
        except asyncio.CancelledError:
            if session.aborted:
                return
            await self._release(session, keep_recording=False)
            if not session.aborted:
                self._go_idle(reason="start.cancelled")
            raise
        except Exception as exc:
            if session.aborted:
                # abort() owns the teardown of this session.
                return
            await self._release(session, keep_recording=False)
            if session.aborted:
                return
            self._go_idle(reason="start.failed", error=str(exc), error_type=exc.__class__.__name__)
            raise
        finally:
            self._connect_task = None

        if session.aborted:
            return
        session.connected_at = self._clock()
        self._transition(SessionState.CONNECTED, reason="remote.open")
        session.pump_task = asyncio.create_task(self._pump_capture(session))
        session.receive_task = asyncio.create_task(self._receive_loop(session))

    async def finish(self) -> ScoreReport:
        """Tear the session down, score the transcript and attach the recording."""

        session = self._session
        if session is None or self.state is not SessionState.CONNECTED:
            raise SessionNotActive("No connected session to finish")

        self._transition(SessionState.CLOSING, reason="finish", phase=session.phase.value)
        try:
            await self._release(session, keep_recording=True)
            drained = session.transcript.drain_final()
            self._last_session_id = session.session_id
            self._last_transcript = session.transcript.entries
            self._last_recording_uri = session.recording_uri
            self._record(
                "transcript.final",
                entries=len(self._last_transcript),
                drained=len(drained),
                recording=self._last_recording_uri,
            )
            report = await self._evaluate(self._last_transcript)
        finally:
            self._go_idle(reason="finish.complete", elapsed_s=self._elapsed(session))
        return report.with_recording(self._last_recording_uri)

    async def retry_evaluation(self) -> ScoreReport:
        """Score the transcript kept from the last finished session again."""

        if self.state is not SessionState.IDLE:
            raise SessionBusy("Cannot re-run evaluation while a session is active")
        if self._last_session_id is None:
            raise SessionNotActive("No finished session to evaluate")
        report = await self._evaluate(self._last_transcript)
        return report.with_recording(self._last_recording_uri)

    async def abort(self) -> None:
        """Release everything without scoring; safe to call at any time."""

        session = self._session
        if session is None or self.state in (SessionState.IDLE, SessionState.CLOSING):
            return

        session.aborted = True
        self._transition(SessionState.CLOSING, reason="abort")
        connect_task = self._connect_task
        if connect_task is not None and not connect_task.done():
            connect_task.cancel()
            await asyncio.wait({connect_task})
        try:
            await self._release(session, keep_recording=False)
        finally:
            self._go_idle(reason="abort.complete", elapsed_s=self._elapsed(session))

    def on_control_signal(self, phase: Union[ExamPhase, str]) -> bool:
        session = self._connected_session()
        if session is None:
            return False
        return self._apply_phase(session, ExamPhase(phase))

    def on_inbound_audio(self, data: bytes, *, mime_type: Optional[str] = None) -> Optional[float]:
        """Play one examiner frame; returns its scheduled start or ``None`` if dropped."""

        session = self._connected_session()
        if session is None:
            return None
        return self._play_inbound(session, data, mime_type)

    def on_transcript_fragment(self, side: Union[Speaker, str], text: str) -> None:
        session = self._connected_session()
        if session is None:
            return
        session.transcript.append_fragment(Speaker(side), text)

    def on_turn_complete(self) -> List[TranscriptEntry]:
        session = self._connected_session()
        if session is None:
            return []
        return self._commit_turn(session)

    # ------------------------------------------------------------------
    # Lifecycle helpers

    async def _connect(self, session: Session) -> None:
        loop = asyncio.get_running_loop()
        session.capture = self.devices.open_capture(
            sample_rate=self.config.capture_sample_rate,
            block_size=self.config.capture_block_size,
            loop=loop,
        )
        session.playback = self.devices.open_playback(sample_rate=self.config.playback_sample_rate)
        session.scheduler = PlaybackScheduler(
            session.playback,
            tolerance=self.config.speaking_tolerance,
            call_later=loop.call_later,
            on_speaking_change=self._on_speaking_change,
        )
        session.recorder = SessionRecorder(
            self._recording_directory(),
            sample_rate=self.config.playback_sample_rate,
        )
        self._record("devices.open", capture_rate=session.capture.sample_rate, playback_rate=session.playback.sample_rate)

        instruction = build_system_instruction(session.topics, tool_name=PHASE_TOOL_NAME)
        try:
            session.remote = await self.connector.connect(instruction, [phase.value for phase in ExamPhase])
        except ConnectionFailed:
            raise
        except Exception as exc:
            raise ConnectionFailed(f"Could not open the examiner session: {exc}") from exc
        session.remote_open = True

        try:
            await session.remote.send_text(self.config.ready_signal)
        except Exception as exc:
            raise ConnectionFailed(f"Examiner session rejected the ready signal: {exc}") from exc

    async def _release(self, session: Session, *, keep_recording: bool) -> None:
        if session.released:
            return
        session.released = True

        # Remote side first so no more examiner audio arrives.
        receive_task = session.receive_task
        if receive_task is not None and not receive_task.done():
            receive_task.cancel()
            await asyncio.wait({receive_task})
        if session.remote is not None and session.remote_open:
            session.remote_open = False
            try:
                await session.remote.close()
            except Exception as exc:
                self._record("remote.error", stage="close", error=str(exc), error_type=exc.__class__.__name__)

        if session.capture is not None:
            session.capture.close()
        pump_task = session.pump_task
        if pump_task is not None:
            done, _ = await asyncio.wait({pump_task}, timeout=self.config.capture_flush_timeout)
            if not done:
                pump_task.cancel()
                await asyncio.wait({pump_task})
                self._record("capture.flush_timeout", timeout_s=self.config.capture_flush_timeout)
            elif not pump_task.cancelled() and pump_task.exception() is not None:
                exc = pump_task.exception()
                self._record("capture.error", error=str(exc), error_type=exc.__class__.__name__)

        if session.recorder is not None:
            if keep_recording:
                session.recording_uri = await asyncio.to_thread(session.recorder.finalize)
            else:
                session.recorder.discard()

        if session.scheduler is not None:
            session.scheduler.reset()
        if session.playback is not None:
            session.playback.close()
        self._record(
            "devices.closed",
            dropped_frames=session.dropped_frames,
            send_failures=session.send_failures,
        )

    async def _evaluate(self, entries: Tuple[TranscriptEntry, ...]) -> ScoreReport:
        started = self._clock()
        self._record("evaluation", stage="start", entries=len(entries))
        try:
            report = await asyncio.to_thread(self.evaluator.evaluate, entries)
        except EvaluationFailed as exc:
            self._record("evaluation", stage="failed", error=str(exc))
            raise
        except Exception as exc:
            self._record("evaluation", stage="failed", error=str(exc), error_type=exc.__class__.__name__)
            raise EvaluationFailed(f"Evaluation failed: {exc}") from exc
        self._record(
            "evaluation",
            stage="complete",
            overall_band=report.overall_band,
            latency_ms=int((self._clock() - started) * 1000),
        )
        return report

    # ------------------------------------------------------------------
    # Streaming tasks

    async def _pump_capture(self, session: Session) -> None:
        capture = session.capture
        async for samples in capture.frames():
            if session.recorder is not None:
                session.recorder.add_microphone(samples, capture.sample_rate)
            if not session.remote_open:
                continue
            try:
                await session.remote.send_audio(encode(samples), sample_rate=capture.sample_rate)
            except Exception as exc:
                session.send_failures += 1
                if session.send_failures == 1:
                    LOGGER.warning("Failed to stream microphone audio: %s", exc)

    async def _receive_loop(self, session: Session) -> None:
        try:
            async for event in session.remote.events():
                if isinstance(event, ControlCall):
                    await self._handle_control_call(session, event)
                elif isinstance(event, InboundAudio):
                    self._play_inbound(session, event.data, event.mime_type)
                elif isinstance(event, Transcription):
                    side = Speaker.CANDIDATE if event.is_input else Speaker.EXAMINER
                    session.transcript.append_fragment(side, event.text)
                elif isinstance(event, TurnComplete):
                    self._commit_turn(session)
        except Exception as exc:
            self._record("remote.error", stage="receive", error=str(exc), error_type=exc.__class__.__name__)
            return
        self._record("remote.closed")

    async def _handle_control_call(self, session: Session, call: ControlCall) -> None:
        if call.name != PHASE_TOOL_NAME:
            await self._acknowledge(session, call, {"error": f"unknown tool {call.name}"})
            self._record("control.ignored", tool=call.name)
            return
        raw = call.args.get("part")
        try:
            phase = ExamPhase(raw)
        except ValueError:
            await self._acknowledge(session, call, {"error": f"unknown part {raw!r}"})
            self._record("control.ignored", tool=call.name, part=raw)
            return
        await self._acknowledge(session, call, {"result": "ok"})
        self._apply_phase(session, phase)

    async def _acknowledge(self, session: Session, call: ControlCall, response: Dict[str, Any]) -> None:
        try:
            await session.remote.send_tool_response(call.call_id, call.name, response)
        except Exception as exc:
            self._record("remote.error", stage="tool_response", call_id=call.call_id, error=str(exc))

    # ------------------------------------------------------------------
    # Event handling

    def _apply_phase(self, session: Session, phase: ExamPhase) -> bool:
        current = session.phase
        if phase is current:
            return False
        if phase.order < current.order:
            self._record("phase.ignored", phase=phase.value, current=current.value)
            return False
        session.phase = phase
        session.notices.append(phase.notice)
        self._record("phase", phase=phase.value, previous=current.value, notice=phase.notice)
        return True

    def _play_inbound(self, session: Session, data: bytes, mime_type: Optional[str]) -> Optional[float]:
        if session.scheduler is None:
            return None
        rate = self._infer_sample_rate(mime_type) or self.config.playback_sample_rate
        try:
            buffer = decode(data, rate, self.config.inbound_channels)
        except InvalidFrameLength as exc:
            session.dropped_frames += 1
            LOGGER.warning("Dropping examiner frame: %s", exc)
            self._record("audio.dropped", length=exc.length, channels=exc.channels)
            return None

        target_rate = self.config.playback_sample_rate
        if buffer.sample_rate != target_rate or buffer.channel_count != 1:
            mono = resample(buffer.mono(), buffer.sample_rate, target_rate)
            buffer = AudioBuffer(samples=mono.reshape(1, -1), sample_rate=target_rate)

        start = session.scheduler.enqueue(buffer)
        if session.recorder is not None:
            session.recorder.add_playback(buffer, start)
        return start

    def _commit_turn(self, session: Session) -> List[TranscriptEntry]:
        committed = session.transcript.commit_turn()
        for entry in committed:
            self._record("turn", role=entry.role.value, text_preview=self._truncate(entry.text))
        return committed

    def _on_speaking_change(self, speaking: bool) -> None:
        self._record("examiner.speaking", speaking=speaking)

    def _connected_session(self) -> Optional[Session]:
        if self.state is not SessionState.CONNECTED:
            return None
        return self._session

    def _recording_directory(self) -> Path:
        if self.config.recording_dir is not None:
            return self.config.recording_dir
        if self._temp_dir is None:
            self._temp_dir = Path(tempfile.mkdtemp(prefix="speaking_examiner_"))
        return self._temp_dir

    def _elapsed(self, session: Session) -> Optional[float]:
        if session.connected_at is None:
            return None
        return round(self._clock() - session.connected_at, 3)

    # ------------------------------------------------------------------
    # Logging

    def _transition(self, state: SessionState, **metadata: Any) -> None:
        if state not in ALLOWED_TRANSITIONS[self.state]:
            raise InvalidTransition(f"{self.state.value} -> {state.value}")
        self.state = state
        self._emit({"state": state.value, **metadata})

    def _go_idle(self, **metadata: Any) -> None:
        self._transition(SessionState.IDLE, **metadata)
        self._session = None

    def _record(self, event: str, **metadata: Any) -> None:
        self._emit({"event": event, **metadata})

    def _emit(self, metadata: Dict[str, Any]) -> None:
        payload: Dict[str, Any] = {"ts": datetime.now(timezone.utc).isoformat()}
        if self._session is not None:
            payload["session"] = self._session.session_id
        payload.update(metadata)
        line = json.dumps(payload, ensure_ascii=False, default=str)
        LOGGER.info(line)
        if self._log_file is not None:
            self._log_file.write(line + "\n")
            self._log_file.flush()
        for listener in list(self._listeners):
            try:
                listener(payload)
            except Exception:
                LOGGER.exception("session listener failed")

    @staticmethod
    def _truncate(text: str, *, limit: int = 120) -> str:
        text = text.strip()
        if len(text) <= limit:
            return text
        return text[: limit - 3] + "..."

    @staticmethod
    def _infer_sample_rate(mime_type: Optional[str]) -> Optional[int]:
        if not mime_type:
            return None
        for part in mime_type.split(";"):
            key, _, value = part.strip().partition("=")
            if key.lower() == "rate" and value:
                try:
                    rate = int(value)
                except ValueError:
                    return None
                return rate if rate > 0 else None
        return None
