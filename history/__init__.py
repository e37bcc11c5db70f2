"""Local history of scored attempts."""

from .store import (
    ExamMode,
    HistoryConfig,
    HistoryItem,
    HistoryStore,
    StorageWriteFailed,
)

__all__ = [
    "ExamMode",
    "HistoryConfig",
    "HistoryItem",
    "HistoryStore",
    "StorageWriteFailed",
]
