"""Client history -> canonical message mapping."""

from __future__ import annotations

from collections.abc import Mapping
from typing import Any

from chatrelay.config.settings import settings
from chatrelay.core.errors import MalformedHistoryError
from chatrelay.core.models import CanonicalMessage, ContentPart, ConversationHistory, MediaPart, Role, TextPart
from chatrelay.util.logger import logger


_ROLE_VALUES = {role.value: role for role in Role}


def parse_role_aliases(raw: str) -> dict[str, Role]:
    aliases: dict[str, Role] = {}
    for item in raw.split(","):
        candidate = item.strip()
        if not candidate:
            continue
        alias, sep, target = candidate.partition(":")
        role = _ROLE_VALUES.get(target.strip())
        if not sep or not alias.strip() or role is None:
            logger.warning("ignore invalid role alias: %s", candidate)
            continue
        aliases[alias.strip()] = role
    return aliases


def _resolve_role(raw_role: Any, index: int, aliases: Mapping[str, Role]) -> Role:
    if not isinstance(raw_role, str):
        raise MalformedHistoryError(index, "role must be a string")
    role = _ROLE_VALUES.get(raw_role) or aliases.get(raw_role)
    if role is None:
        raise MalformedHistoryError(index, f"unknown role {raw_role!r}")
    return role


def _part_kind(part: Mapping[str, Any]) -> str | None:
    kind = part.get("kind", part.get("type"))
    return kind if isinstance(kind, str) else None


def _media_part(url: Any, content_type: Any, index: int) -> MediaPart:
    if not isinstance(url, str) or not url.strip():
        raise MalformedHistoryError(index, "media part requires a url")
    if content_type is not None and not isinstance(content_type, str):
        raise MalformedHistoryError(index, "media content type must be a string")
    return MediaPart(url=url, content_type=content_type)


def _resolve_part(part: Any, index: int) -> ContentPart:
    if isinstance(part, str):
        return TextPart(value=part)
    if not isinstance(part, Mapping):
        raise MalformedHistoryError(index, f"unsupported content part type {type(part).__name__}")

    kind = _part_kind(part)
    if kind == "text" or (kind is None and "text" in part):
        value = part.get("text", part.get("value"))
        if not isinstance(value, str):
            raise MalformedHistoryError(index, "text part requires a string value")
        return TextPart(value=value)

    if kind == "media":
        return _media_part(part.get("url"), part.get("content_type", part.get("contentType")), index)

    if kind == "image_url":
        image = part.get("image_url")
        url = image.get("url") if isinstance(image, Mapping) else image
        return _media_part(url, None, index)

    if kind is None and isinstance(part.get("media"), Mapping):
        media = part["media"]
        return _media_part(media.get("url"), media.get("contentType", media.get("content_type")), index)

    raise MalformedHistoryError(index, f"unrecognized content part kind {kind!r}")


def _resolve_content(raw_content: Any, index: int) -> list[ContentPart]:
    if raw_content is None:
        raise MalformedHistoryError(index, "content is required")
    if isinstance(raw_content, (str, Mapping)):
        return [_resolve_part(raw_content, index)]
    if isinstance(raw_content, list):
        if not raw_content:
            raise MalformedHistoryError(index, "content has no parts")
        return [_resolve_part(part, index) for part in raw_content]
    raise MalformedHistoryError(index, f"unsupported content type {type(raw_content).__name__}")


def normalize_history(
    raw_history: list[Any],
    *,
    role_aliases: Mapping[str, Role] | None = None,
) -> ConversationHistory:
    """Validate client history and return it as canonical messages.

    Raises MalformedHistoryError naming the first offending index; entries are
    never dropped or coerced.
    """

    aliases = parse_role_aliases(settings.role_aliases) if role_aliases is None else role_aliases
    messages: ConversationHistory = []
    for index, entry in enumerate(raw_history):
        if not isinstance(entry, Mapping):
            raise MalformedHistoryError(index, "entry must be an object")
        role = _resolve_role(entry.get("role"), index, aliases)
        content = _resolve_content(entry.get("content"), index)
        messages.append(CanonicalMessage(role=role, content=content))
    logger.debug("history normalized entries=%d", len(messages))
    return messages
