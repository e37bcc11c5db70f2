"""Shared fakes for the speaking examiner tests."""
import asyncio
from typing import Any, Dict, List, Optional

import numpy as np
import pytest

from audio import AudioBuffer, PermissionDenied, ResourceState
from controller import SessionController, SessionControllerConfig
from evaluation import CriterionScore, EvaluationFailed, ScoreReport


class FakeCapture:
    def __init__(self, sample_rate: int, journal: List[str]) -> None:
        self.sample_rate = sample_rate
        self.state = ResourceState.OPEN
        self.close_calls = 0
        self._journal = journal
        self._queue: asyncio.Queue = asyncio.Queue()

    def push(self, samples: np.ndarray) -> None:
        self._queue.put_nowait(np.asarray(samples, dtype=np.float32))

    async def frames(self):
        while True:
            samples = await self._queue.get()
            if samples is None:
                return
            yield samples

    def close(self) -> None:
        self.close_calls += 1
        if self.state is ResourceState.CLOSED:
            return
        self.state = ResourceState.CLOSED
        self._journal.append("capture.close")
        self._queue.put_nowait(None)


class FakePlayback:
    def __init__(self, sample_rate: int, journal: List[str]) -> None:
        self.sample_rate = sample_rate
        self.state = ResourceState.OPEN
        self.time = 0.0
        self.scheduled: List[tuple] = []
        self._journal = journal

    @property
    def current_time(self) -> float:
        return self.time

    def schedule(self, buffer: AudioBuffer, start_time: float) -> None:
        self.scheduled.append((buffer, start_time))

    def close(self) -> None:
        if self.state is ResourceState.CLOSED:
            return
        self.state = ResourceState.CLOSED
        self._journal.append("playback.close")


class FakeDevices:
    def __init__(self, journal: List[str], *, deny: bool = False) -> None:
        self.deny = deny
        self.captures: List[FakeCapture] = []
        self.playbacks: List[FakePlayback] = []
        self._journal = journal

    def open_capture(self, *, sample_rate: int, block_size: int, loop) -> FakeCapture:
        if self.deny:
            raise PermissionDenied("Microphone unavailable: denied")
        capture = FakeCapture(sample_rate, self._journal)
        self.captures.append(capture)
        return capture

    def open_playback(self, *, sample_rate: int) -> FakePlayback:
        playback = FakePlayback(sample_rate, self._journal)
        self.playbacks.append(playback)
        return playback


class FakeRemote:
    def __init__(self, journal: List[str]) -> None:
        self.sent_audio: List[tuple] = []
        self.sent_text: List[str] = []
        self.tool_responses: List[tuple] = []
        self.closed = False
        self._journal = journal
        self._events: asyncio.Queue = asyncio.Queue()

    def push(self, event: Any) -> None:
        self._events.put_nowait(event)

    async def send_audio(self, pcm: bytes, *, sample_rate: int) -> None:
        self.sent_audio.append((pcm, sample_rate))

    async def send_text(self, text: str) -> None:
        self.sent_text.append(text)

    async def send_tool_response(self, call_id: str, name: str, response: Dict[str, Any]) -> None:
        self.tool_responses.append((call_id, name, response))
        self._journal.append(f"ack:{call_id}")

    async def events(self):
        while True:
            event = await self._events.get()
            if event is None:
                return
            yield event

    async def close(self) -> None:
        self.closed = True
        self._journal.append("remote.close")
        self._events.put_nowait(None)


class FakeConnector:
    def __init__(self, journal: List[str]) -> None:
        self.calls: List[tuple] = []
        self.remote: Optional[FakeRemote] = None
        self.gate: Optional[asyncio.Event] = None
        self.error: Optional[Exception] = None
        self._journal = journal

    async def connect(self, system_instruction: str, phases) -> FakeRemote:
        self.calls.append((system_instruction, list(phases)))
        if self.gate is not None:
            await self.gate.wait()
        if self.error is not None:
            raise self.error
        self.remote = FakeRemote(self._journal)
        return self.remote


def make_report(band: float = 6.5) -> ScoreReport:
    return ScoreReport(
        overall_band=band,
        criteria_scores=(CriterionScore(name="Fluency and Coherence", score=band, description="Steady"),),
        feedback_text="**Good** effort.",
    )


class FakeEvaluator:
    def __init__(self, journal: List[str]) -> None:
        self.calls: List[tuple] = []
        self.failures = 0
        self._journal = journal

    def evaluate(self, entries) -> ScoreReport:
        self.calls.append(tuple(entries))
        self._journal.append("evaluate")
        if self.failures:
            self.failures -= 1
            raise EvaluationFailed("Evaluation request failed with 503: overloaded")
        return make_report()


async def settle(rounds: int = 10) -> None:
    for _ in range(rounds):
        await asyncio.sleep(0)


@pytest.fixture
def journal() -> List[str]:
    return []


@pytest.fixture
def devices(journal):
    return FakeDevices(journal)


@pytest.fixture
def connector(journal):
    return FakeConnector(journal)


@pytest.fixture
def evaluator(journal):
    return FakeEvaluator(journal)


@pytest.fixture
def controller_config(tmp_path):
    return SessionControllerConfig(
        part1_topic="Hometown",
        part2_topic="Describe a memorable journey you have taken.",
        recording_dir=tmp_path / "recordings",
    )


@pytest.fixture
def controller(connector, devices, evaluator, controller_config):
    instance = SessionController(
        connector=connector,
        devices=devices,
        evaluator=evaluator,
        config=controller_config,
    )
    yield instance
    instance.close()


@pytest.fixture
def events(controller) -> List[Dict[str, Any]]:
    captured: List[Dict[str, Any]] = []
    controller.add_listener(captured.append)
    return captured

