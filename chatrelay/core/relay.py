"""Backend token stream -> outbound byte stream relay."""

from __future__ import annotations

import asyncio
import uuid
from enum import Enum
from typing import Any, AsyncGenerator, AsyncIterator

from chatrelay.backends.base import GenerationBackend
from chatrelay.core.errors import (
    BackendStreamInterruptedError,
    BackendUnavailableError,
    MalformedHistoryError,
)
from chatrelay.core.models import ConversationHistory
from chatrelay.core.normalizer import normalize_history
from chatrelay.observability.logging import log_event
from chatrelay.observability.metrics import emit_counter
from chatrelay.util.logger import get_logger


logger = get_logger("relay")


class RelayState(str, Enum):
    IDLE = "idle"
    NORMALIZING = "normalizing"
    BACKEND_CALL_OPEN = "backend_call_open"
    STREAMING = "streaming"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


_TERMINAL_STATES = frozenset({RelayState.COMPLETED, RelayState.FAILED, RelayState.CANCELLED})


class RelayStream:
    """One request's path from normalized history to outbound bytes.

    Iterating the stream pulls exactly one backend chunk per outbound chunk, so
    a slow consumer stalls the backend read instead of growing a buffer.
    Closing the iterator (or cancelling the task driving it) closes the
    backend stream.
    """

    def __init__(self, backend: GenerationBackend, prompt: str, request_id: str) -> None:
        self.backend = backend
        self.prompt = prompt
        self.request_id = request_id
        self.state = RelayState.IDLE
        self.transitions: list[RelayState] = [RelayState.IDLE]
        self.history: ConversationHistory = []
        self.chunks_forwarded = 0
        self.bytes_forwarded = 0
        self.error: Exception | None = None
        self._upstream: AsyncIterator[str] | None = None
        self._first_chunk: str | None = None
        self._exhausted = False
        self._released = False
        self._iterator: AsyncGenerator[bytes, None] | None = None

    def _transition(self, new_state: RelayState) -> None:
        if self.state in _TERMINAL_STATES:
            return
        logger.debug("relay transition request_id=%s %s -> %s", self.request_id, self.state.value, new_state.value)
        self.state = new_state
        self.transitions.append(new_state)
        if new_state in _TERMINAL_STATES:
            emit_counter("relay_stream_total", labels={"outcome": new_state.value})
            log_event(
                "relay_stream_closed",
                request_id=self.request_id,
                outcome=new_state.value,
                chunks=self.chunks_forwarded,
                bytes=self.bytes_forwarded,
            )

    def normalize(self, raw_history: list[Any]) -> None:
        self._transition(RelayState.NORMALIZING)
        try:
            self.history = normalize_history(raw_history)
        except MalformedHistoryError as exc:
            self.error = exc
            logger.warning("relay rejected history request_id=%s error=%s", self.request_id, exc)
            self._transition(RelayState.FAILED)
            raise

    def _open_backend(self) -> AsyncIterator[str]:
        if self._upstream is None:
            self._transition(RelayState.BACKEND_CALL_OPEN)
            self._upstream = aiter(self.backend.generate_stream(self.history, self.prompt))
        return self._upstream

    def _fail(self, exc: Exception) -> Exception:
        if self.bytes_forwarded == 0 and not isinstance(exc, BackendUnavailableError):
            wrapped: Exception = BackendUnavailableError(f"backend_unavailable: {exc}")
        elif self.bytes_forwarded > 0 and not isinstance(exc, BackendStreamInterruptedError):
            wrapped = BackendStreamInterruptedError(f"backend_stream_interrupted: {exc}")
        else:
            wrapped = exc
        self.error = wrapped
        logger.error(
            "relay backend failure request_id=%s bytes_forwarded=%d error=%s",
            self.request_id,
            self.bytes_forwarded,
            wrapped,
        )
        self._transition(RelayState.FAILED)
        return wrapped

    async def _release(self) -> None:
        if self._released:
            return
        self._released = True
        upstream = self._upstream
        aclose = getattr(upstream, "aclose", None)
        if aclose is None:
            return
        try:
            await aclose()
        except Exception as exc:
            logger.warning("relay backend release failed request_id=%s error=%s", self.request_id, exc)

    async def prime(self) -> None:
        """Open the backend call and wait for the first non-empty chunk.

        Failures here surface as BackendUnavailableError before any byte is
        sent, so the transport can still answer with an error status.
        """

        upstream = self._open_backend()
        try:
            while True:
                chunk = await anext(upstream)
                if chunk:
                    self._first_chunk = chunk
                    return
        except StopAsyncIteration:
            self._exhausted = True
        except asyncio.CancelledError:
            self._transition(RelayState.CANCELLED)
            await self._release()
            raise
        except Exception as exc:
            failure = self._fail(exc)
            await self._release()
            if failure is exc:
                raise
            raise failure from exc

    def _emit(self, chunk: str) -> bytes:
        data = chunk.encode("utf-8")
        if self.state is not RelayState.STREAMING:
            self._transition(RelayState.STREAMING)
        self.chunks_forwarded += 1
        self.bytes_forwarded += len(data)
        return data

    async def _iterate(self) -> AsyncGenerator[bytes, None]:
        upstream = self._open_backend()
        try:
            if self._first_chunk is not None:
                first, self._first_chunk = self._first_chunk, None
                yield self._emit(first)
            if not self._exhausted:
                async for chunk in upstream:
                    if not chunk:
                        continue
                    yield self._emit(chunk)
        except (asyncio.CancelledError, GeneratorExit):
            logger.info(
                "relay cancelled by caller request_id=%s chunks_forwarded=%d",
                self.request_id,
                self.chunks_forwarded,
            )
            self._transition(RelayState.CANCELLED)
            raise
        except Exception as exc:
            failure = self._fail(exc)
            if failure is exc:
                raise
            raise failure from exc
        else:
            self._transition(RelayState.COMPLETED)
        finally:
            await self._release()

    def __aiter__(self) -> AsyncGenerator[bytes, None]:
        if self._iterator is not None:
            raise RuntimeError("relay stream can only be consumed once")
        if self.state in _TERMINAL_STATES:
            raise RuntimeError(f"relay stream already {self.state.value}")
        self._iterator = self._iterate()
        return self._iterator

    async def aclose(self) -> None:
        """Release the backend call; a no-op once the stream has finished."""

        if self._iterator is not None:
            await self._iterator.aclose()
        if self.state not in _TERMINAL_STATES and self.state is not RelayState.IDLE:
            self._transition(RelayState.CANCELLED)
        await self._release()


class StreamRelay:
    def __init__(self, backend: GenerationBackend, *, default_prompt: str = "") -> None:
        self.backend = backend
        self.default_prompt = default_prompt

    def _prompt(self, prompt: str | None) -> str:
        return self.default_prompt if prompt is None else prompt

    def open(self, raw_history: list[Any], prompt: str | None = None, *, request_id: str | None = None) -> RelayStream:
        """Normalize the history and return a stream that has not touched the backend yet."""

        stream = RelayStream(self.backend, self._prompt(prompt), request_id or uuid.uuid4().hex)
        stream.normalize(raw_history)
        logger.info(
            "relay stream opened request_id=%s messages=%d backend=%s",
            stream.request_id,
            len(stream.history),
            getattr(self.backend, "name", type(self.backend).__name__),
        )
        return stream

    async def complete(self, raw_history: list[Any], prompt: str | None = None, *, request_id: str | None = None) -> str:
        """Buffered generation for callers that want the whole answer at once."""

        request_id = request_id or uuid.uuid4().hex
        history = normalize_history(raw_history)
        try:
            text = await self.backend.generate(history, self._prompt(prompt))
        except BackendUnavailableError:
            raise
        except Exception as exc:
            logger.error("relay buffered generation failed request_id=%s error=%s", request_id, exc)
            raise BackendUnavailableError(f"backend_unavailable: {exc}") from exc
        logger.info("relay buffered generation done request_id=%s chars=%d", request_id, len(text))
        return text
