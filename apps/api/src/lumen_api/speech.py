from __future__ import annotations

from typing import Protocol

import httpx

from lumen_api.config import Settings
from lumen_api.errors import LumenError
from lumen_api.llm import LLMClient, LLMClientError

TRANSLATOR_PROMPT = (
    "You are a professional translator. Translate the text accurately while "
    "preserving the meaning and tone. Reply with the translation only."
)


class SpeechClientError(LumenError):
    pass


class Transcriber(Protocol):
    def transcribe(
        self, audio: bytes, *, filename: str, media_type: str, language: str | None = None
    ) -> str: ...


class Translator(Protocol):
    def translate(self, text: str, target_language: str) -> str: ...


class OpenAICompatibleTranscriber:
    def __init__(
        self,
        *,
        base_url: str,
        model: str,
        api_key: str | None = None,
        timeout_seconds: float = 120.0,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._model = model
        self._api_key = api_key
        self._timeout_seconds = timeout_seconds

    def transcribe(
        self, audio: bytes, *, filename: str, media_type: str, language: str | None = None
    ) -> str:
        data = {"model": self._model}
        if language and language != "auto":
            data["language"] = language

        headers = {"Authorization": f"Bearer {self._api_key}"} if self._api_key else {}
        try:
            response = httpx.post(
                f"{self._base_url}/audio/transcriptions",
                data=data,
                files={"file": (filename, audio, media_type or "application/octet-stream")},
                headers=headers,
                timeout=self._timeout_seconds,
            )
            response.raise_for_status()
            payload = response.json()
        except (httpx.HTTPError, ValueError) as exc:
            raise SpeechClientError(f"Transcription failed: {exc}") from exc

        text = payload.get("text") if isinstance(payload, dict) else None
        if not isinstance(text, str):
            raise SpeechClientError("Invalid transcription payload: missing text")
        return text.strip()


class LLMTranslator:
    """Text-to-text translation through the chat completion capability."""

    def __init__(self, llm_client: LLMClient) -> None:
        self._llm_client = llm_client

    def translate(self, text: str, target_language: str) -> str:
        if not text.strip():
            return ""
        try:
            result = self._llm_client.complete(
                system_prompt=TRANSLATOR_PROMPT,
                user_prompt=f"Translate the following text to {target_language}:\n\n{text}",
            )
        except LLMClientError as exc:
            raise SpeechClientError(f"Translation failed: {exc}") from exc
        return result.answer


def build_transcriber(settings: Settings) -> Transcriber:
    return OpenAICompatibleTranscriber(
        base_url=settings.llm_base_url,
        model=settings.speech_model,
        api_key=settings.llm_api_key,
        timeout_seconds=max(settings.llm_timeout_seconds, 120.0),
    )
