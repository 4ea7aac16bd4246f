from __future__ import annotations

from dataclasses import dataclass
from typing import Protocol

import httpx

from lumen_api.config import Settings
from lumen_api.errors import LumenError


class LLMClientError(LumenError):
    pass


@dataclass(frozen=True)
class ChatResult:
    answer: str
    model: str
    used_fallback: bool


class LLMClient(Protocol):
    def complete(self, *, system_prompt: str | None, user_prompt: str) -> ChatResult: ...


class OpenAICompatibleChatClient:
    def __init__(
        self,
        *,
        base_url: str,
        default_model: str,
        fallback_model: str,
        api_key: str | None = None,
        timeout_seconds: float = 30.0,
        temperature: float = 0.7,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._default_model = default_model
        self._fallback_model = fallback_model
        self._api_key = api_key
        self._timeout_seconds = timeout_seconds
        self._temperature = temperature

    def complete(self, *, system_prompt: str | None, user_prompt: str) -> ChatResult:
        for model, used_fallback in self._model_candidates():
            try:
                content = self._chat_completion(
                    model=model, system_prompt=system_prompt, user_prompt=user_prompt
                )
            except (httpx.HTTPError, ValueError) as exc:
                if used_fallback or not self._has_fallback():
                    raise LLMClientError(str(exc)) from exc
                continue

            return ChatResult(answer=content, model=model, used_fallback=used_fallback)

        raise LLMClientError("No model candidates configured")

    def _has_fallback(self) -> bool:
        return bool(self._fallback_model) and self._fallback_model != self._default_model

    def _model_candidates(self) -> list[tuple[str, bool]]:
        candidates: list[tuple[str, bool]] = [(self._default_model, False)]
        if self._has_fallback():
            candidates.append((self._fallback_model, True))
        return candidates

    def _chat_completion(self, *, model: str, system_prompt: str | None, user_prompt: str) -> str:
        messages: list[dict[str, str]] = []
        if system_prompt:
            messages.append({"role": "system", "content": system_prompt})
        messages.append({"role": "user", "content": user_prompt})

        headers = {"Authorization": f"Bearer {self._api_key}"} if self._api_key else {}
        response = httpx.post(
            f"{self._base_url}/chat/completions",
            json={"model": model, "messages": messages, "temperature": self._temperature},
            headers=headers,
            timeout=self._timeout_seconds,
        )
        response.raise_for_status()

        payload = response.json()
        choices = payload.get("choices")
        if not isinstance(choices, list) or not choices:
            raise ValueError("Invalid chat completion payload: missing choices")

        message = choices[0].get("message") if isinstance(choices[0], dict) else None
        content = message.get("content") if isinstance(message, dict) else None
        if not isinstance(content, str) or not content.strip():
            raise ValueError("Invalid chat completion payload: missing assistant content")

        return content.strip()


def build_llm_client(settings: Settings) -> LLMClient:
    return OpenAICompatibleChatClient(
        base_url=settings.llm_base_url,
        default_model=settings.llm_model,
        fallback_model=settings.llm_fallback_model,
        api_key=settings.llm_api_key,
        timeout_seconds=settings.llm_timeout_seconds,
    )
