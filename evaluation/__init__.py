"""Speaking evaluation clients and the score report model."""

from typing import TYPE_CHECKING, Protocol, Sequence

from .report import (
    Correction,
    CriterionScore,
    EvaluationFailed,
    PronunciationTip,
    ScoreReport,
    snap_band,
)

if TYPE_CHECKING:  # pragma: no cover
    from controller.transcript import TranscriptEntry


class EvaluationClient(Protocol):
    """Protocol shared by evaluation backends."""

    def evaluate(self, entries: Sequence["TranscriptEntry"]) -> ScoreReport:  # pragma: no cover - structural
        ...


__all__ = [
    "Correction",
    "CriterionScore",
    "EvaluationClient",
    "EvaluationFailed",
    "PronunciationTip",
    "ScoreReport",
    "snap_band",
]
