"""Speaking evaluation via the Gemini ``generateContent`` REST endpoint."""

from __future__ import annotations

import json
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Dict, Sequence

try:
    import requests
except ImportError as exc:  # pragma: no cover - import guard
    raise ImportError(
        "The requests package is required for the evaluation client. Install it with `uv pip install requests`."
    ) from exc

from .report import EvaluationFailed, ScoreReport

if TYPE_CHECKING:  # pragma: no cover
    from controller.transcript import TranscriptEntry


SPEAKING_PROMPT_TEMPLATE = """Act as a senior IELTS Examiner. Evaluate this speaking test transcript.

Transcript:
{transcript}

Provide feedback in JSON format:
{{
  "overallBand": number,
  "criteriaScores": [
    {{ "name": "Fluency & Coherence", "score": number, "description": "string" }},
    {{ "name": "Lexical Resource", "score": number, "description": "string" }},
    {{ "name": "Grammatical Range & Accuracy", "score": number, "description": "string" }},
    {{ "name": "Pronunciation", "score": number, "description": "Assume standard clear pronunciation unless indicated by text stumbling (e.g. 'um', 'uh'). Mark neutral if unknown." }}
  ],
  "feedbackText": "Detailed feedback summary in Markdown.",
  "corrections": [
    {{ "original": "phrase used", "correction": "better phrase", "explanation": "reason" }}
  ],
  "pronunciationTips": [
    {{ "word": "word or phrase from transcript", "ipa": "IPA transcription", "error": "Specific error (e.g. Silent 'b' pronounced, Wrong stress)", "tip": "How to fix it" }}
  ],
  "modelAnswer": "Pick one specific question from the transcript and provide a Band 9.0 answer for it."
}}
"""


def format_transcript(entries: Sequence["TranscriptEntry"]) -> str:
    return "\n".join(f"{entry.role.value.upper()}: {entry.text}" for entry in entries)


@dataclass(frozen=True)
class EvaluatorConfig:
    """Configuration for :class:`GeminiEvaluator`."""

    api_key: str = ""
    base_url: str = "https://generativelanguage.googleapis.com/v1beta"
    model: str = "gemini-3-pro-preview"
    timeout: float = 120.0
    prompt_template: str = SPEAKING_PROMPT_TEMPLATE

    def __post_init__(self) -> None:
        if not self.base_url:
            raise ValueError("base_url must be provided")
        if not self.model:
            raise ValueError("model must be provided")
        if self.timeout <= 0:
            raise ValueError("timeout must be positive")
        object.__setattr__(self, "base_url", self.base_url.rstrip("/"))


class GeminiEvaluator:
    """Scores a finished speaking transcript with a single JSON-mode request."""

    def __init__(self, config: EvaluatorConfig) -> None:
        self.config = config
        self._session = requests.Session()

    def evaluate(self, entries: Sequence["TranscriptEntry"]) -> ScoreReport:
        """Return the score report for ``entries``; raise :class:`EvaluationFailed` otherwise."""

        payload = self._build_payload(entries)
        try:
            response = self._session.post(
                f"{self.config.base_url}/models/{self.config.model}:generateContent",
                json=payload,
                headers={"x-goog-api-key": self.config.api_key},
                timeout=self.config.timeout,
            )
        except requests.RequestException as exc:
            raise EvaluationFailed(f"Evaluation request failed: {exc}") from exc
        if response.status_code != 200:
            raise EvaluationFailed(
                f"Evaluation request failed with {response.status_code}: {response.text.strip()[:400]}"
            )
        try:
            data: Dict[str, Any] = response.json()
        except ValueError as exc:
            raise EvaluationFailed("Evaluation response was not JSON") from exc

        content = self._extract_content(data)
        if not content:
            raise EvaluationFailed("Evaluation response did not include any content")
        try:
            return ScoreReport.from_dict(json.loads(content))
        except (ValueError, TypeError) as exc:
            raise EvaluationFailed(f"Evaluation response was malformed: {exc}") from exc

    def close(self) -> None:
        """Close the underlying HTTP session."""

        self._session.close()

    def _build_payload(self, entries: Sequence["TranscriptEntry"]) -> Dict[str, Any]:
        prompt = self.config.prompt_template.format(transcript=format_transcript(entries))
        return {
            "contents": [{"role": "user", "parts": [{"text": prompt}]}],
            "generationConfig": {"responseMimeType": "application/json"},
        }

    def _extract_content(self, data: Dict[str, Any]) -> str:
        candidates = data.get("candidates")
        if isinstance(candidates, list) and candidates:
            candidate = candidates[0]
            if isinstance(candidate, dict):
                content = candidate.get("content")
                if isinstance(content, dict):
                    parts = content.get("parts")
                    if isinstance(parts, list):
                        texts = [
                            part["text"]
                            for part in parts
                            if isinstance(part, dict) and isinstance(part.get("text"), str)
                        ]
                        return "".join(texts)
        return ""

    def __enter__(self) -> "GeminiEvaluator":  # pragma: no cover - convenience
        return self

    def __exit__(self, exc_type, exc, tb) -> None:  # pragma: no cover - convenience
        self.close()
