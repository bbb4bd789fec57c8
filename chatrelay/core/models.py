"""Canonical conversation models."""

from __future__ import annotations

from enum import Enum
from typing import Annotated, Literal, Union

from pydantic import BaseModel, Field


class Role(str, Enum):
    USER = "user"
    ASSISTANT = "assistant"
    SYSTEM = "system"


class TextPart(BaseModel):
    kind: Literal["text"] = "text"
    value: str


class MediaPart(BaseModel):
    kind: Literal["media"] = "media"
    url: str
    content_type: str | None = None


ContentPart = Annotated[Union[TextPart, MediaPart], Field(discriminator="kind")]


class CanonicalMessage(BaseModel):
    role: Role
    content: list[ContentPart] = Field(min_length=1)

    def text(self) -> str:
        return "".join(part.value for part in self.content if isinstance(part, TextPart))


ConversationHistory = list[CanonicalMessage]
