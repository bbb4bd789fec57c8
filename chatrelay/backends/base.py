"""Generation backend interface."""

from __future__ import annotations

from typing import AsyncIterator, Protocol

from chatrelay.core.models import ConversationHistory


class GenerationBackend(Protocol):
    name: str

    async def generate(self, history: ConversationHistory, prompt: str) -> str:
        """Return the full completion for the history in one response."""

    def generate_stream(self, history: ConversationHistory, prompt: str) -> AsyncIterator[str]:
        """Yield text chunks in the order the backend produces them."""

    async def aclose(self) -> None:
        """Release pooled connections."""
