"""OpenAI-compatible ``/chat/completions`` backend."""

from __future__ import annotations

from typing import Any, AsyncIterator

from chatrelay.backends.stream_utils import _flatten_text
from chatrelay.backends.transport import HttpBackend, _as_mapping
from chatrelay.core.errors import BackendUnavailableError
from chatrelay.core.models import CanonicalMessage, ConversationHistory, MediaPart, TextPart
from chatrelay.util.logger import logger


def _to_openai_image(part: MediaPart) -> dict[str, Any]:
    # untyped media is sent as an image
    if part.content_type is not None and not part.content_type.startswith("image/"):
        raise BackendUnavailableError(
            f"backend_unsupported_media: openai backend accepts image parts only, got {part.content_type} for {part.url}"
        )
    return {"type": "image_url", "image_url": {"url": part.url}}


def _to_openai_content(message: CanonicalMessage) -> str | list[dict[str, Any]]:
    if all(isinstance(part, TextPart) for part in message.content):
        return message.text()
    parts: list[dict[str, Any]] = []
    for part in message.content:
        if isinstance(part, MediaPart):
            parts.append(_to_openai_image(part))
        else:
            parts.append({"type": "text", "text": part.value})
    return parts


def to_openai_messages(history: ConversationHistory, prompt: str) -> list[dict[str, Any]]:
    messages = [{"role": message.role.value, "content": _to_openai_content(message)} for message in history]
    if prompt:
        messages.append({"role": "user", "content": prompt})
    return messages


def _extract_delta_text(event: dict[str, Any]) -> str:
    choices = event.get("choices")
    if not isinstance(choices, list) or not choices:
        return ""
    first = _as_mapping(choices[0])
    return _flatten_text(_as_mapping(first.get("delta")).get("content"))


class OpenAICompatBackend(HttpBackend):
    name = "openai"

    def _headers(self) -> dict[str, str]:
        headers = super()._headers()
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    def _payload(self, history: ConversationHistory, prompt: str, *, stream: bool) -> dict[str, Any]:
        return {
            "model": self.model,
            "messages": to_openai_messages(history, prompt),
            "stream": stream,
        }

    async def generate(self, history: ConversationHistory, prompt: str) -> str:
        body = await self._post_json(f"{self.base_url}/chat/completions", self._payload(history, prompt, stream=False))
        choices = body.get("choices")
        if not isinstance(choices, list) or not choices:
            raise BackendUnavailableError("backend_invalid_response: no choices")
        text = _flatten_text(_as_mapping(_as_mapping(choices[0]).get("message")).get("content"))
        logger.debug("openai generate done chars=%d", len(text))
        return text

    async def generate_stream(self, history: ConversationHistory, prompt: str) -> AsyncIterator[str]:
        events = self._stream_events(f"{self.base_url}/chat/completions", self._payload(history, prompt, stream=True))
        try:
            async for event in events:
                yield _extract_delta_text(event)
        finally:
            await events.aclose()
