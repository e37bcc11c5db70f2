"""Gemini Live API client for the examiner session."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, AsyncIterator, Dict, Optional, Sequence

try:
    from google import genai
    from google.genai import types
except ImportError as exc:  # pragma: no cover - import guard
    raise ImportError(
        "The google-genai package is required for the live examiner. Install it with `uv pip install google-genai`."
    ) from exc

from .session import (
    ConnectionFailed,
    ControlCall,
    PHASE_TOOL_NAME,
    InboundAudio,
    LiveEvent,
    Transcription,
    TurnComplete,
)

LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True)
class LiveConfig:
    """Connection settings for the Gemini Live examiner."""

    api_key: str = ""
    model: str = "gemini-2.5-flash-native-audio-preview-09-2025"
    voice: str = "Kore"

    def __post_init__(self) -> None:
        if not self.model:
            raise ValueError("model must be provided")
        if not self.voice:
            raise ValueError("voice must be provided")


def build_phase_tool(phases: Sequence[str]) -> types.Tool:
    declaration = types.FunctionDeclaration(
        name=PHASE_TOOL_NAME,
        description=(
            "Updates the current section of the IELTS speaking exam. "
            "MUST be called when transitioning between parts."
        ),
        parameters=types.Schema(
            type=types.Type.OBJECT,
            properties={
                "part": types.Schema(
                    type=types.Type.STRING,
                    description="The exam part identifier.",
                    enum=list(phases),
                )
            },
            required=["part"],
        ),
    )
    return types.Tool(function_declarations=[declaration])


class GeminiLiveSession:
    """One open Gemini Live connection, adapted to :class:`live.session.RemoteSession`."""

    def __init__(self, context: Any, session: Any) -> None:
        self._context = context
        self._session = session
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    async def send_audio(self, pcm: bytes, *, sample_rate: int) -> None:
        if self._closed:
            return
        await self._session.send_realtime_input(
            audio=types.Blob(data=pcm, mime_type=f"audio/pcm;rate={sample_rate}")
        )

    async def send_text(self, text: str) -> None:
        if self._closed:
            return
        await self._session.send_realtime_input(text=text)

    async def send_tool_response(self, call_id: str, name: str, response: Dict[str, Any]) -> None:
        if self._closed:
            return
        await self._session.send_tool_response(
            function_responses=[types.FunctionResponse(id=call_id, name=name, response=response)]
        )

    async def events(self) -> AsyncIterator[LiveEvent]:
        # receive() stops at each turn boundary, so keep re-entering it.
        while not self._closed:
            async for message in self._session.receive():
                if self._closed:
                    return
                for event in self._translate(message):
                    yield event

    def _translate(self, message: Any) -> Sequence[LiveEvent]:
        events = []
        tool_call = getattr(message, "tool_call", None)
        if tool_call is not None and tool_call.function_calls:
            for call in tool_call.function_calls:
                events.append(ControlCall(call_id=call.id or "", name=call.name or "", args=dict(call.args or {})))

        server_content = getattr(message, "server_content", None)
        if server_content is None:
            return events

        if server_content.input_transcription is not None and server_content.input_transcription.text:
            events.append(Transcription(text=server_content.input_transcription.text, is_input=True))
        if server_content.output_transcription is not None and server_content.output_transcription.text:
            events.append(Transcription(text=server_content.output_transcription.text, is_input=False))

        if server_content.model_turn is not None:
            for part in server_content.model_turn.parts or ():
                if part.inline_data is not None and part.inline_data.data:
                    events.append(
                        InboundAudio(
                            data=part.inline_data.data,
                            mime_type=part.inline_data.mime_type or InboundAudio.mime_type,
                        )
                    )

        if server_content.turn_complete:
            events.append(TurnComplete())
        return events

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        await self._context.__aexit__(None, None, None)


class GeminiLiveConnector:
    """Opens examiner sessions against the Gemini Live API."""

    def __init__(self, config: LiveConfig, *, client: Optional[Any] = None) -> None:
        self.config = config
        if client is None:
            if not config.api_key:
                raise ValueError("api_key must be provided for the Gemini Live connector")
            client = genai.Client(api_key=config.api_key)
        self._client = client

    def build_connect_config(self, system_instruction: str, phases: Sequence[str]) -> types.LiveConnectConfig:
        return types.LiveConnectConfig(
            response_modalities=[types.Modality.AUDIO],
            input_audio_transcription=types.AudioTranscriptionConfig(),
            output_audio_transcription=types.AudioTranscriptionConfig(),
            speech_config=types.SpeechConfig(
                voice_config=types.VoiceConfig(
                    prebuilt_voice_config=types.PrebuiltVoiceConfig(voice_name=self.config.voice)
                )
            ),
            tools=[build_phase_tool(phases)],
            system_instruction=types.Content(parts=[types.Part(text=system_instruction)]),
        )

    async def connect(self, system_instruction: str, phases: Sequence[str]) -> GeminiLiveSession:
        context = self._client.aio.live.connect(
            model=self.config.model,
            config=self.build_connect_config(system_instruction, phases),
        )
        try:
            session = await context.__aenter__()
        except Exception as exc:
            raise ConnectionFailed(f"Gemini Live connection failed: {exc}") from exc
        LOGGER.info("live session connected model=%s voice=%s", self.config.model, self.config.voice)
        return GeminiLiveSession(context, session)
