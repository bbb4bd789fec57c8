"""Chat routes: streamed relay and buffered completion."""

from __future__ import annotations

import json
import logging
import uuid
from typing import Any

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse, StreamingResponse
from starlette.types import Receive, Scope, Send

from chatrelay.backends import create_backend
from chatrelay.config.settings import settings
from chatrelay.core.errors import BackendUnavailableError, MalformedHistoryError
from chatrelay.core.relay import RelayStream, StreamRelay
from chatrelay.util.logger import logger


router = APIRouter()
_relay: StreamRelay | None = None


def _get_relay() -> StreamRelay:
    global _relay
    if _relay is None:
        _relay = StreamRelay(create_backend(), default_prompt=settings.default_prompt)
    return _relay


async def close_chat_backend() -> None:
    global _relay
    if _relay is not None:
        await _relay.backend.aclose()
        _relay = None


def _request_id(request: Request) -> str:
    return (request.headers.get("x-request-id") or "").strip() or uuid.uuid4().hex


def _log_request_if_debug(payload: dict[str, Any], request_id: str, route: str) -> None:
    if not logger.isEnabledFor(logging.DEBUG):
        return
    if settings.log_full_request_body:
        logger.debug("incoming request route=%s request_id=%s body=%s", route, request_id, json.dumps(payload, ensure_ascii=False)[:4000])
        return
    history = payload.get("history")
    logger.debug(
        "incoming request route=%s request_id=%s history_entries=%s",
        route,
        request_id,
        len(history) if isinstance(history, list) else "n/a",
    )


def _error_response(status_code: int, reason: str, detail: str, **extra: Any) -> JSONResponse:
    detail_text = (detail or reason).strip() or reason
    return JSONResponse(
        status_code=status_code,
        content={
            "error": {
                "message": detail_text,
                "type": "chatrelay_error",
                "code": reason,
            },
            "error_code": reason,
            "detail": detail_text,
            **extra,
        },
    )


def _validate_chat_payload(payload: dict[str, Any]) -> tuple[list[Any] | None, str | None, JSONResponse | None]:
    history = payload.get("history")
    if not isinstance(history, list):
        return None, None, _error_response(400, "history_required", "History is required")
    prompt = payload.get("prompt")
    if prompt is not None and not isinstance(prompt, str):
        return None, None, _error_response(400, "invalid_prompt", "prompt must be a string")
    return history, prompt, None


class RelayStreamingResponse(StreamingResponse):
    """Streams a relay and closes it however the transport ends the response."""

    def __init__(self, stream: RelayStream, **kwargs: Any) -> None:
        super().__init__(stream, **kwargs)
        self.relay_stream = stream

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        try:
            await super().__call__(scope, receive, send)
        finally:
            # runs on completion and on any client disconnect
            await self.relay_stream.aclose()


def _build_streaming_response(stream: RelayStream) -> RelayStreamingResponse:
    return RelayStreamingResponse(
        stream,
        media_type="text/plain; charset=utf-8",
        headers={
            "Cache-Control": "no-cache",
            "X-Accel-Buffering": "no",
        },
    )


@router.post("/chat")
async def chat_stream(payload: dict, request: Request):
    request_id = _request_id(request)
    _log_request_if_debug(payload, request_id, "/api/chat")
    history, prompt, error = _validate_chat_payload(payload)
    if error is not None:
        return error

    try:
        stream: RelayStream = _get_relay().open(history, prompt, request_id=request_id)
    except MalformedHistoryError as exc:
        return _error_response(400, "malformed_history", str(exc), index=exc.index)

    try:
        await stream.prime()
    except BackendUnavailableError as exc:
        return _error_response(502, "backend_unavailable", str(exc))

    logger.info("chat stream started request_id=%s", request_id)
    return _build_streaming_response(stream)


@router.post("/chat/complete")
async def chat_complete(payload: dict, request: Request):
    request_id = _request_id(request)
    _log_request_if_debug(payload, request_id, "/api/chat/complete")
    history, prompt, error = _validate_chat_payload(payload)
    if error is not None:
        return error

    try:
        message = await _get_relay().complete(history, prompt, request_id=request_id)
    except MalformedHistoryError as exc:
        return _error_response(400, "malformed_history", str(exc), index=exc.index)
    except BackendUnavailableError as exc:
        return _error_response(502, "backend_unavailable", str(exc))
    return JSONResponse(content={"message": message})
