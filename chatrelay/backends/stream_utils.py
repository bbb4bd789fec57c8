"""
SSE line parsing and chunk text extraction shared by the HTTP backends.
"""

from __future__ import annotations

import json
from typing import Any


def _extract_sse_data_payload(line: str | bytes) -> str | None:
    if not line:
        return None
    if isinstance(line, bytes):
        line = line.decode("utf-8", errors="replace")
    stripped = line.strip()
    if not stripped.startswith("data:"):
        return None
    return stripped[5:].strip()


def _flatten_text(value: Any) -> str:
    if isinstance(value, str):
        return value
    if isinstance(value, list):
        return "".join(_flatten_text(item) for item in value)
    if isinstance(value, dict):
        if isinstance(value.get("text"), str):
            return value["text"]
        for key in ("content", "parts"):
            if key in value:
                text = _flatten_text(value[key])
                if text:
                    return text
    return ""


def _decode_json_or_text(body: bytes) -> dict[str, Any] | str:
    text = body.decode("utf-8", errors="replace")
    if not text:
        return ""
    try:
        parsed = json.loads(text)
        if isinstance(parsed, dict):
            return parsed
        return text
    except json.JSONDecodeError:
        return text


def _safe_error_detail(payload: dict[str, Any] | str) -> str:
    if isinstance(payload, str):
        return payload[:600]
    error = payload.get("error", payload)
    if isinstance(error, str):
        return error[:600]
    if isinstance(error, dict) and isinstance(error.get("message"), str):
        return error["message"][:600]
    return json.dumps(payload, ensure_ascii=False)[:600]
