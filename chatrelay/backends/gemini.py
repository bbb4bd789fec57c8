"""Google Generative Language API backend."""

from __future__ import annotations

from typing import Any, AsyncIterator

from chatrelay.backends.stream_utils import _flatten_text
from chatrelay.backends.transport import HttpBackend, _as_mapping
from chatrelay.core.errors import BackendUnavailableError
from chatrelay.core.models import ConversationHistory, MediaPart, Role
from chatrelay.util.logger import logger


_GEMINI_ROLES = {Role.USER: "user", Role.ASSISTANT: "model"}


def _to_gemini_part(part: Any) -> dict[str, Any]:
    if isinstance(part, MediaPart):
        if not part.content_type or part.content_type.endswith("/*"):
            raise BackendUnavailableError(
                f"backend_unsupported_media: gemini requires a concrete mime type for {part.url}, got {part.content_type}"
            )
        return {"fileData": {"fileUri": part.url, "mimeType": part.content_type}}
    return {"text": part.value}


def to_gemini_request(history: ConversationHistory, prompt: str) -> dict[str, Any]:
    """System turns become ``systemInstruction``; the rest map to ``contents``."""

    contents: list[dict[str, Any]] = []
    system_parts: list[dict[str, Any]] = []
    for message in history:
        parts = [_to_gemini_part(part) for part in message.content]
        if message.role is Role.SYSTEM:
            system_parts.extend(parts)
            continue
        contents.append({"role": _GEMINI_ROLES[message.role], "parts": parts})
    if prompt:
        contents.append({"role": "user", "parts": [{"text": prompt}]})

    request: dict[str, Any] = {"contents": contents}
    if system_parts:
        request["systemInstruction"] = {"parts": system_parts}
    return request


def _extract_candidate_text(event: dict[str, Any]) -> str:
    candidates = event.get("candidates")
    if not isinstance(candidates, list) or not candidates:
        return ""
    return _flatten_text(_as_mapping(candidates[0]).get("content"))


class GeminiBackend(HttpBackend):
    name = "gemini"

    def _headers(self) -> dict[str, str]:
        headers = super()._headers()
        if self.api_key:
            headers["x-goog-api-key"] = self.api_key
        return headers

    def _model_url(self, method: str) -> str:
        return f"{self.base_url}/models/{self.model}:{method}"

    async def generate(self, history: ConversationHistory, prompt: str) -> str:
        body = await self._post_json(self._model_url("generateContent"), to_gemini_request(history, prompt))
        text = _extract_candidate_text(body)
        logger.debug("gemini generate done chars=%d", len(text))
        return text

    async def generate_stream(self, history: ConversationHistory, prompt: str) -> AsyncIterator[str]:
        events = self._stream_events(
            f"{self._model_url('streamGenerateContent')}?alt=sse",
            to_gemini_request(history, prompt),
        )
        try:
            async for event in events:
                yield _extract_candidate_text(event)
        finally:
            await events.aclose()
