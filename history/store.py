"""Bounded, newest-first JSON history of scored attempts."""

from __future__ import annotations

import enum
import json
import logging
import os
import time
import uuid
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any, Callable, Dict, List, Mapping

from evaluation.report import ScoreReport

LOGGER = logging.getLogger(__name__)

DEFAULT_CAPACITY = 50


class StorageWriteFailed(RuntimeError):
    """Raised when the history file cannot be written."""


class ExamMode(str, enum.Enum):
    WRITING_TASK_1 = "WRITING_TASK_1"
    WRITING_TASK_2 = "WRITING_TASK_2"
    SPEAKING = "SPEAKING"
    PRACTICE = "PRACTICE"


@dataclass(frozen=True)
class HistoryConfig:
    path: Path = field(default_factory=lambda: Path.home() / ".speaking_examiner" / "history.json")
    capacity: int = DEFAULT_CAPACITY

    def __post_init__(self) -> None:
        if self.capacity <= 0:
            raise ValueError("capacity must be positive")
        object.__setattr__(self, "path", Path(self.path).expanduser())


@dataclass(frozen=True)
class HistoryItem:
    id: str
    date: float
    mode: ExamMode
    score: float
    result: ScoreReport

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "date": self.date,
            "mode": self.mode.value,
            "score": self.score,
            "result": self.result.to_dict(),
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "HistoryItem":
        return cls(
            id=str(data["id"]),
            date=float(data["date"]),
            mode=ExamMode(data["mode"]),
            score=float(data["score"]),
            result=ScoreReport.from_dict(data["result"]),
        )


class HistoryStore:
    """Keeps the ``capacity`` most recent results; the oldest are evicted first.

    Recording URIs are stripped on save since they only live as long as the
    process that produced them.
    """

    def __init__(self, config: HistoryConfig, *, now: Callable[[], float] = time.time) -> None:
        self.config = config
        self._now = now

    @property
    def path(self) -> Path:
        return self.config.path

    def load(self) -> List[HistoryItem]:
        if not self.path.exists():
            return []
        try:
            with self.path.open("r", encoding="utf-8") as handle:
                raw = json.load(handle)
            return [HistoryItem.from_dict(item) for item in raw]
        except (OSError, ValueError, KeyError, TypeError) as exc:
            LOGGER.error("Failed to load history from %s: %s", self.path, exc)
            return []

    def save(self, mode: ExamMode, report: ScoreReport) -> List[HistoryItem]:
        """Prepend ``report`` and return the updated history.

        A failed write is logged and the previously stored history is returned.
        """

        history = self.load()
        stamp = self._now()
        item = HistoryItem(
            id=f"{int(stamp * 1000)}{uuid.uuid4().hex[:8]}",
            date=stamp,
            mode=ExamMode(mode),
            score=report.overall_band,
            result=replace(report, recording_uri=None, date=stamp),
        )
        updated = [item, *history][: self.config.capacity]
        try:
            self._write(updated)
        except StorageWriteFailed as exc:
            LOGGER.warning("History not saved: %s", exc)
            return history
        return updated

    def clear(self) -> None:
        self.path.unlink(missing_ok=True)

    def _write(self, items: List[HistoryItem]) -> None:
        tmp_path = self.path.with_name(self.path.name + ".tmp")
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with tmp_path.open("w", encoding="utf-8") as handle:
                json.dump([item.to_dict() for item in items], handle, ensure_ascii=False)
            os.replace(tmp_path, self.path)
        except OSError as exc:
            raise StorageWriteFailed(f"could not write {self.path}: {exc}") from exc
