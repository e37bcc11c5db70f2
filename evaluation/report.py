"""Score report returned by speaking evaluation."""

from __future__ import annotations

import math
from dataclasses import dataclass, field, replace
from typing import Any, Dict, List, Mapping, Optional, Tuple

MAX_BAND = 9.0


class EvaluationFailed(RuntimeError):
    """Raised when the transcript could not be scored."""


@dataclass(frozen=True)
class CriterionScore:
    name: str
    score: float
    description: str


@dataclass(frozen=True)
class Correction:
    original: str
    correction: str
    explanation: str


@dataclass(frozen=True)
class PronunciationTip:
    word: str
    ipa: str
    error: str
    tip: str


def snap_band(value: float) -> float:
    """Clamp to 0-9 and round to the nearest half band."""

    if math.isnan(value):
        raise ValueError("band score is not a number")
    clamped = min(max(value, 0.0), MAX_BAND)
    return math.floor(clamped * 2 + 0.5) / 2


@dataclass(frozen=True)
class ScoreReport:
    """Structured examiner feedback for one attempt."""

    overall_band: float
    criteria_scores: Tuple[CriterionScore, ...]
    feedback_text: str
    corrections: Tuple[Correction, ...] = ()
    pronunciation_tips: Optional[Tuple[PronunciationTip, ...]] = None
    model_answer: Optional[str] = None
    recording_uri: Optional[str] = None
    date: Optional[float] = None

    def with_recording(self, uri: Optional[str]) -> "ScoreReport":
        return replace(self, recording_uri=uri)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "ScoreReport":
        """Build a report from the camelCase wire shape."""

        if not isinstance(data, Mapping):
            raise ValueError("report payload must be an object")
        if "overallBand" not in data:
            raise ValueError("report is missing a numeric overallBand")
        band = snap_band(_number(data["overallBand"], "overallBand"))

        criteria = tuple(
            CriterionScore(
                name=str(item.get("name", "")),
                score=_number(item.get("score", 0.0), "criteriaScores.score"),
                description=str(item.get("description", "")),
            )
            for item in _as_list(data.get("criteriaScores"))
        )
        corrections = tuple(
            Correction(
                original=str(item.get("original", "")),
                correction=str(item.get("correction", "")),
                explanation=str(item.get("explanation", "")),
            )
            for item in _as_list(data.get("corrections"))
        )
        tips: Optional[Tuple[PronunciationTip, ...]] = None
        if data.get("pronunciationTips") is not None:
            tips = tuple(
                PronunciationTip(
                    word=str(item.get("word", "")),
                    ipa=str(item.get("ipa", "")),
                    error=str(item.get("error", "")),
                    tip=str(item.get("tip", "")),
                )
                for item in _as_list(data.get("pronunciationTips"))
            )
        model_answer = data.get("modelAnswer")
        date = data.get("date")
        return cls(
            overall_band=band,
            criteria_scores=criteria,
            feedback_text=str(data.get("feedbackText", "")),
            corrections=corrections,
            pronunciation_tips=tips,
            model_answer=str(model_answer) if model_answer is not None else None,
            recording_uri=data.get("recordingUrl"),
            date=_number(date, "date") if date is not None else None,
        )

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "overallBand": self.overall_band,
            "criteriaScores": [
                {"name": c.name, "score": c.score, "description": c.description}
                for c in self.criteria_scores
            ],
            "feedbackText": self.feedback_text,
            "corrections": [
                {"original": c.original, "correction": c.correction, "explanation": c.explanation}
                for c in self.corrections
            ],
        }
        if self.pronunciation_tips is not None:
            payload["pronunciationTips"] = [
                {"word": t.word, "ipa": t.ipa, "error": t.error, "tip": t.tip}
                for t in self.pronunciation_tips
            ]
        if self.model_answer is not None:
            payload["modelAnswer"] = self.model_answer
        if self.recording_uri is not None:
            payload["recordingUrl"] = self.recording_uri
        if self.date is not None:
            payload["date"] = self.date
        return payload


def _number(value: Any, name: str) -> float:
    if isinstance(value, bool):
        raise ValueError(f"{name} must be a number, got {value!r}")
    try:
        return float(value)
    except (TypeError, ValueError) as exc:
        raise ValueError(f"{name} must be a number, got {value!r}") from exc


def _as_list(value: Any) -> List[Mapping[str, Any]]:
    if value is None:
        return []
    if not isinstance(value, list):
        raise ValueError(f"expected a list, got {type(value).__name__}")
    return [item for item in value if isinstance(item, Mapping)]
