"""Tests for the speaking session controller."""
import asyncio
from pathlib import Path
from urllib.parse import urlparse
from urllib.request import url2pathname

import numpy as np
import pytest

from audio import PermissionDenied, ResourceState, encode
from controller import (
    ExamPhase,
    InvalidTransition,
    SessionBusy,
    SessionController,
    SessionControllerConfig,
    SessionNotActive,
    SessionState,
    Speaker,
)
from controller.prompts import READY_SIGNAL
from evaluation import EvaluationFailed
from live import PHASE_TOOL_NAME, ConnectionFailed, ControlCall, InboundAudio, Transcription, TurnComplete

from conftest import FakeDevices, settle


def states(events):
    return [event["state"] for event in events if "state" in event]


def uri_to_path(uri: str) -> Path:
    return Path(url2pathname(urlparse(uri).path))


def examiner_frame(samples: int, value: float = 0.25) -> bytes:
    return encode(np.full(samples, value, dtype=np.float32))


@pytest.mark.asyncio
async def test_start_connects_and_sends_ready_signal(controller, connector, devices, events):
    """Start opens both devices, the remote session, and sends the ready text."""
    await controller.start()

    assert controller.state is SessionState.CONNECTED
    assert controller.phase is ExamPhase.INTRO
    assert connector.remote.sent_text == [READY_SIGNAL]
    instruction, phases = connector.calls[0]
    assert phases == ["INTRO", "PART_1", "PART_2", "PART_3", "FINISHED"]
    assert "Hometown" in instruction
    assert "Describe a memorable journey you have taken." in instruction
    assert PHASE_TOOL_NAME in instruction
    assert devices.captures[0].sample_rate == 16_000
    assert devices.playbacks[0].sample_rate == 24_000
    assert states(events) == ["connecting", "connected"]

    await controller.abort()


@pytest.mark.asyncio
async def test_start_while_active_is_rejected(controller):
    await controller.start()

    with pytest.raises(SessionBusy):
        await controller.start()
    assert controller.state is SessionState.CONNECTED

    await controller.abort()


@pytest.mark.asyncio
async def test_permission_denied_returns_to_idle(connector, evaluator, controller_config, journal):
    """A denied microphone fails start and leaves nothing open."""
    denied = SessionController(
        connector=connector,
        devices=FakeDevices(journal, deny=True),
        evaluator=evaluator,
        config=controller_config,
    )
    seen = []
    denied.add_listener(seen.append)

    with pytest.raises(PermissionDenied):
        await denied.start()

    assert denied.state is SessionState.IDLE
    assert denied.session is None
    assert connector.calls == []
    assert states(seen) == ["connecting", "idle"]
    denied.close()


@pytest.mark.asyncio
async def test_connection_failure_releases_devices(controller, connector, devices):
    connector.error = ConnectionFailed("socket closed")

    with pytest.raises(ConnectionFailed):
        await controller.start()

    assert controller.state is SessionState.IDLE
    assert devices.captures[0].state is ResourceState.CLOSED
    assert devices.playbacks[0].state is ResourceState.CLOSED


@pytest.mark.asyncio
async def test_unexpected_connector_error_is_wrapped(controller, connector, devices):
    connector.error = OSError("network unreachable")

    with pytest.raises(ConnectionFailed) as excinfo:
        await controller.start()

    assert isinstance(excinfo.value.__cause__, OSError)
    assert controller.state is SessionState.IDLE
    assert devices.playbacks[0].state is ResourceState.CLOSED


@pytest.mark.asyncio
async def test_abort_during_start_is_clean(controller, connector, devices, events):
    """Abort cancels an in-flight connect; start returns quietly."""
    connector.gate = asyncio.Event()
    start_task = asyncio.create_task(controller.start())
    await settle()
    assert controller.state is SessionState.CONNECTING

    await controller.abort()
    await start_task

    assert start_task.exception() is None
    assert controller.state is SessionState.IDLE
    assert connector.remote is None
    assert all(capture.state is ResourceState.CLOSED for capture in devices.captures)
    assert all(playback.state is ResourceState.CLOSED for playback in devices.playbacks)
    assert states(events) == ["connecting", "closing", "idle"]

    await controller.abort()
    assert states(events) == ["connecting", "closing", "idle"]


@pytest.mark.asyncio
async def test_abort_when_idle_is_noop(controller, events):
    await controller.abort()

    assert controller.state is SessionState.IDLE
    assert events == []


@pytest.mark.asyncio
async def test_control_calls_are_acknowledged_before_phase_change(controller, connector, journal, events):
    await controller.start()
    remote = connector.remote
    controller.add_listener(lambda payload: payload.get("event") == "phase" and journal.append(payload["phase"]))

    remote.push(ControlCall(call_id="1", name=PHASE_TOOL_NAME, args={"part": "PART_1"}))
    remote.push(ControlCall(call_id="2", name=PHASE_TOOL_NAME, args={"part": "PART_3"}))
    remote.push(ControlCall(call_id="3", name=PHASE_TOOL_NAME, args={"part": "PART_2"}))
    await settle()

    assert [response for _, _, response in remote.tool_responses] == [{"result": "ok"}] * 3
    assert journal[journal.index("ack:1") + 1] == "PART_1"
    assert journal[journal.index("ack:2") + 1] == "PART_3"
    # Moving backwards is acknowledged but ignored.
    assert controller.phase is ExamPhase.PART_3
    assert [event["notice"] for event in events if event.get("event") == "phase"] == [
        "Starting PART 1",
        "Starting PART 3",
    ]

    await controller.abort()


@pytest.mark.asyncio
async def test_unknown_part_is_acknowledged_with_error(controller, connector):
    await controller.start()
    remote = connector.remote

    remote.push(ControlCall(call_id="9", name=PHASE_TOOL_NAME, args={"part": "PART_9"}))
    await settle()

    call_id, name, response = remote.tool_responses[0]
    assert (call_id, name) == ("9", PHASE_TOOL_NAME)
    assert "error" in response
    assert controller.phase is ExamPhase.INTRO

    await controller.abort()


@pytest.mark.asyncio
async def test_finished_phase_does_not_end_session(controller):
    await controller.start()

    assert controller.on_control_signal("FINISHED") is True
    assert controller.phase is ExamPhase.FINISHED
    assert controller.state is SessionState.CONNECTED
    assert controller.session.notices == ["Test completed"]

    await controller.abort()


@pytest.mark.asyncio
async def test_inbound_audio_is_scheduled_back_to_back(controller, connector, devices):
    await controller.start()
    connector.remote.push(InboundAudio(data=examiner_frame(2400)))
    connector.remote.push(InboundAudio(data=examiner_frame(4800)))
    await settle()

    starts = [start for _, start in devices.playbacks[0].scheduled]
    assert starts == pytest.approx([0.0, 0.1])
    assert controller.examiner_speaking is True

    await controller.abort()


@pytest.mark.asyncio
async def test_malformed_frame_is_dropped(controller, devices, events):
    await controller.start()

    assert controller.on_inbound_audio(b"\x00\x01\x02") is None
    assert controller.on_inbound_audio(examiner_frame(240)) == pytest.approx(0.0)

    assert controller.session.dropped_frames == 1
    assert len(devices.playbacks[0].scheduled) == 1
    assert any(event.get("event") == "audio.dropped" for event in events)
    assert controller.state is SessionState.CONNECTED

    await controller.abort()


@pytest.mark.asyncio
async def test_inbound_audio_follows_mime_rate(controller, devices):
    await controller.start()

    controller.on_inbound_audio(examiner_frame(1600), mime_type="audio/pcm;rate=16000")

    buffer, _ = devices.playbacks[0].scheduled[0]
    assert buffer.sample_rate == 24_000
    assert buffer.frame_count == 2400

    await controller.abort()


class ClockedPlayback:
    """Playback whose clock follows the event loop, like a device running in real time."""

    def __init__(self, sample_rate):
        self.sample_rate = sample_rate
        self.state = ResourceState.OPEN
        self._opened = asyncio.get_running_loop().time()

    @property
    def current_time(self):
        return asyncio.get_running_loop().time() - self._opened

    def schedule(self, buffer, start_time):
        pass

    def close(self):
        self.state = ResourceState.CLOSED


@pytest.mark.asyncio
async def test_examiner_speaking_clears_after_playback(controller, devices, connector, events):
    """A 2400-sample 24 kHz frame turns speaking on, then off once played."""
    devices.open_playback = lambda *, sample_rate: ClockedPlayback(sample_rate)
    await controller.start()

    connector.remote.push(InboundAudio(data=examiner_frame(2400)))
    await settle()
    assert controller.examiner_speaking is True

    await asyncio.sleep(0.1 + controller.config.speaking_tolerance)
    assert controller.examiner_speaking is False
    assert [event["speaking"] for event in events if event.get("event") == "examiner.speaking"] == [True, False]

    await controller.abort()


@pytest.mark.asyncio
async def test_finish_tears_down_in_order_and_scores(controller, connector, devices, evaluator, journal):
    await controller.start()
    remote = connector.remote
    capture = devices.captures[0]

    remote.push(Transcription(text="Good morning. ", is_input=False))
    remote.push(Transcription(text="Can you tell me your name?", is_input=False))
    remote.push(TurnComplete())
    remote.push(InboundAudio(data=examiner_frame(2400)))
    capture.push(np.full(1600, 0.1, dtype=np.float32))
    await settle()
    remote.push(Transcription(text="My name is ", is_input=True))
    remote.push(Transcription(text="Ana", is_input=True))
    await settle()
    capture.push(np.full(1600, -0.1, dtype=np.float32))

    report = await controller.finish()

    assert journal.index("remote.close") < journal.index("capture.close")
    assert journal.index("capture.close") < journal.index("playback.close")
    assert journal.index("playback.close") < journal.index("evaluate")
    assert controller.state is SessionState.IDLE
    assert controller.session is None

    entries = evaluator.calls[0]
    assert [(entry.role, entry.text) for entry in entries] == [
        (Speaker.EXAMINER, "Good morning. Can you tell me your name?"),
        (Speaker.CANDIDATE, "My name is Ana"),
    ]
    assert controller.transcript == entries
    assert remote.sent_audio
    assert all(rate == 16_000 for _, rate in remote.sent_audio)

    assert report.overall_band == 6.5
    assert report.recording_uri is not None
    assert report.recording_uri.startswith("file://")
    recording = uri_to_path(report.recording_uri)
    assert recording.exists()
    assert recording.parent == controller.config.recording_dir.resolve()
    assert controller.last_recording_uri == report.recording_uri


@pytest.mark.asyncio
async def test_finish_without_session_raises(controller):
    with pytest.raises(SessionNotActive):
        await controller.finish()


@pytest.mark.asyncio
async def test_evaluation_failure_returns_idle_and_retry_succeeds(controller, connector, evaluator):
    await controller.start()
    connector.remote.push(Transcription(text="I like travelling", is_input=True))
    await settle()
    evaluator.failures = 1

    with pytest.raises(EvaluationFailed):
        await controller.finish()

    assert controller.state is SessionState.IDLE
    report = await controller.retry_evaluation()

    assert report.overall_band == 6.5
    assert evaluator.calls[0] == evaluator.calls[1]
    assert evaluator.calls[1][0].text == "I like travelling"


@pytest.mark.asyncio
async def test_unexpected_evaluator_error_becomes_evaluation_failed(controller, evaluator):
    await controller.start()

    def explode(entries):
        raise KeyError("overallBand")

    evaluator.evaluate = explode

    with pytest.raises(EvaluationFailed):
        await controller.finish()
    assert controller.state is SessionState.IDLE


@pytest.mark.asyncio
async def test_retry_without_finished_session_raises(controller):
    with pytest.raises(SessionNotActive):
        await controller.retry_evaluation()


@pytest.mark.asyncio
async def test_abort_discards_recording(controller, connector, devices, evaluator):
    await controller.start()
    connector.remote.push(InboundAudio(data=examiner_frame(2400)))
    devices.captures[0].push(np.full(1600, 0.2, dtype=np.float32))
    await settle()

    await controller.abort()

    assert evaluator.calls == []
    assert connector.remote.closed is True
    assert controller.last_recording_uri is None
    recordings = controller.config.recording_dir
    assert not recordings.exists() or list(recordings.iterdir()) == []


@pytest.mark.asyncio
async def test_close_removes_temporary_recordings(connector, devices, evaluator):
    controller = SessionController(
        connector=connector,
        devices=devices,
        evaluator=evaluator,
        config=SessionControllerConfig(),
    )
    await controller.start()
    devices.captures[0].push(np.full(1600, 0.2, dtype=np.float32))
    await settle()

    report = await controller.finish()
    recording = uri_to_path(report.recording_uri)
    assert recording.exists()

    controller.close()
    assert not recording.exists()


@pytest.mark.asyncio
async def test_events_are_written_to_log_file(connector, devices, evaluator, tmp_path):
    log_path = tmp_path / "logs" / "session.jsonl"
    controller = SessionController(
        connector=connector,
        devices=devices,
        evaluator=evaluator,
        config=SessionControllerConfig(log_path=log_path, recording_dir=tmp_path),
    )
    await controller.start()
    await controller.abort()
    controller.close()

    lines = log_path.read_text(encoding="utf-8").splitlines()
    assert '"state": "connecting"' in lines[0]
    assert '"state": "idle"' in lines[-1]


def test_transition_table_rejects_unknown_edges(controller):
    with pytest.raises(InvalidTransition):
        controller._transition(SessionState.CONNECTED)
    with pytest.raises(InvalidTransition):
        controller._transition(SessionState.CLOSING)
    assert controller.state is SessionState.IDLE
