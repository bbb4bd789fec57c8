"""
Pooled httpx client and JSON / SSE forwarding shared by the HTTP backends.
"""

from __future__ import annotations

import json
from threading import Lock
from typing import Any, AsyncGenerator, Mapping

import httpx

from chatrelay.backends.stream_utils import (
    _decode_json_or_text,
    _extract_sse_data_payload,
    _safe_error_detail,
)
from chatrelay.core.errors import BackendStreamInterruptedError, BackendUnavailableError
from chatrelay.util.logger import logger


class HttpBackend:
    """Base for backends reached over HTTP; owns one lazily created client."""

    name = "http"

    def __init__(
        self,
        *,
        base_url: str,
        api_key: str = "",
        model: str,
        timeout_seconds: float = 60.0,
        max_connections: int = 100,
        max_keepalive_connections: int = 20,
    ) -> None:
        self.base_url = base_url.strip().rstrip("/")
        self.api_key = api_key.strip()
        self.model = model
        self.timeout_seconds = float(timeout_seconds)
        self.max_connections = max(10, int(max_connections))
        self.max_keepalive_connections = max(5, int(max_keepalive_connections))
        self._client: httpx.AsyncClient | None = None
        self._client_lock = Lock()

    def _http_limits(self) -> httpx.Limits:
        return httpx.Limits(
            max_connections=self.max_connections,
            max_keepalive_connections=self.max_keepalive_connections,
        )

    def _http_timeout(self) -> httpx.Timeout:
        timeout = self.timeout_seconds
        return httpx.Timeout(connect=timeout, read=timeout, write=timeout, pool=timeout)

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is not None:
            return self._client
        with self._client_lock:
            if self._client is None:
                self._client = httpx.AsyncClient(
                    http2=False,
                    timeout=self._http_timeout(),
                    limits=self._http_limits(),
                )
        return self._client

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    def _headers(self) -> dict[str, str]:
        return {"Content-Type": "application/json"}

    async def _post_json(self, url: str, payload: dict[str, Any]) -> dict[str, Any]:
        body = json.dumps(payload, ensure_ascii=False).encode("utf-8")
        logger.debug("backend post start backend=%s url=%s payload_bytes=%d", self.name, url, len(body))
        client = self._get_client()
        try:
            response = await client.post(url=url, content=body, headers=self._headers())
        except httpx.HTTPError as exc:
            detail = (str(exc) or "").strip() or "connection_failed_or_timeout"
            logger.warning("backend post http_error backend=%s url=%s error=%s", self.name, url, detail)
            raise BackendUnavailableError(f"backend_unreachable: {detail}") from exc

        parsed = _decode_json_or_text(response.content)
        logger.debug("backend post done backend=%s status=%s", self.name, response.status_code)
        if response.status_code >= 400:
            raise BackendUnavailableError(f"backend_http_error:{response.status_code}:{_safe_error_detail(parsed)}")
        if not isinstance(parsed, dict):
            raise BackendUnavailableError("backend_invalid_response: expected a JSON object")
        return parsed

    async def _stream_events(self, url: str, payload: dict[str, Any]) -> AsyncGenerator[dict[str, Any], None]:
        """Yield each decoded SSE ``data:`` event until ``[DONE]`` or EOF."""

        body = json.dumps(payload, ensure_ascii=False).encode("utf-8")
        logger.debug("backend stream start backend=%s url=%s payload_bytes=%d", self.name, url, len(body))
        client = self._get_client()
        opened = False
        try:
            async with client.stream("POST", url=url, content=body, headers=self._headers()) as resp:
                logger.debug("backend stream connected backend=%s status=%s", self.name, resp.status_code)
                if resp.status_code >= 400:
                    detail = _safe_error_detail(_decode_json_or_text(await resp.aread()))
                    raise BackendUnavailableError(f"backend_http_error:{resp.status_code}:{detail}")
                opened = True
                async for line in resp.aiter_lines():
                    data = _extract_sse_data_payload(line)
                    if data is None:
                        continue
                    if data == "[DONE]":
                        return
                    yield _decode_stream_event(data)
        except httpx.HTTPError as exc:
            detail = (str(exc) or "").strip() or "connection_failed_or_timeout"
            logger.warning("backend stream http_error backend=%s url=%s error=%s", self.name, url, detail)
            if opened:
                raise BackendStreamInterruptedError(f"backend_stream_interrupted: {detail}") from exc
            raise BackendUnavailableError(f"backend_unreachable: {detail}") from exc


def _decode_stream_event(data: str) -> dict[str, Any]:
    try:
        event = json.loads(data)
    except json.JSONDecodeError as exc:
        raise BackendStreamInterruptedError(f"backend_malformed_chunk: {data[:200]}") from exc
    if not isinstance(event, dict):
        raise BackendStreamInterruptedError(f"backend_malformed_chunk: {data[:200]}")
    if event.get("error"):
        raise BackendStreamInterruptedError(f"backend_stream_error: {_safe_error_detail(event)}")
    return event


def _as_mapping(value: Any) -> Mapping[str, Any]:
    return value if isinstance(value, Mapping) else {}
