import asyncio

import pytest

from chatrelay.core.errors import (
    BackendStreamInterruptedError,
    BackendUnavailableError,
    MalformedHistoryError,
)
from chatrelay.core.relay import RelayState, StreamRelay


class FakeBackend:
    name = "fake"

    def __init__(self, chunks: list[str], *, fail_after: bool = False, fail_on_open: bool = False) -> None:
        self.chunks = chunks
        self.fail_after = fail_after
        self.fail_on_open = fail_on_open
        self.stream_calls = 0
        self.generate_calls = 0
        self.chunks_requested = 0
        self.stop_requested = False
        self.seen_history = None
        self.seen_prompt = None

    async def generate(self, history, prompt):
        self.generate_calls += 1
        self.seen_history = history
        self.seen_prompt = prompt
        return "".join(self.chunks)

    async def generate_stream(self, history, prompt):
        self.stream_calls += 1
        self.seen_history = history
        self.seen_prompt = prompt
        if self.fail_on_open:
            raise ConnectionError("connection refused")
        try:
            for chunk in self.chunks:
                self.chunks_requested += 1
                await asyncio.sleep(0)
                yield chunk
            if self.fail_after:
                raise RuntimeError("backend dropped the connection")
        finally:
            self.stop_requested = True

    async def aclose(self):
        return None


class EndlessBackend(FakeBackend):
    async def generate_stream(self, history, prompt):
        self.stream_calls += 1
        try:
            while True:
                self.chunks_requested += 1
                await asyncio.sleep(0)
                yield f"tok{self.chunks_requested} "
        finally:
            self.stop_requested = True


async def _collect(stream) -> list[bytes]:
    out: list[bytes] = []
    async for chunk in stream:
        out.append(chunk)
    return out


def test_relay_forwards_chunks_in_emission_order():
    backend = FakeBackend(["Hel", "lo", ", ", "world"])
    relay = StreamRelay(backend, default_prompt="Continue the conversation.")

    async def run_case():
        stream = relay.open([{"role": "user", "content": "hi"}])
        return stream, await _collect(stream)

    stream, out = asyncio.run(run_case())
    assert out == [b"Hel", b"lo", b", ", b"world"]
    assert b"".join(out).decode("utf-8") == "Hello, world"
    assert stream.state is RelayState.COMPLETED
    assert stream.transitions == [
        RelayState.IDLE,
        RelayState.NORMALIZING,
        RelayState.BACKEND_CALL_OPEN,
        RelayState.STREAMING,
        RelayState.COMPLETED,
    ]
    assert backend.stream_calls == 1
    assert backend.seen_prompt == "Continue the conversation."


def test_relay_skips_empty_chunks_and_encodes_utf8():
    backend = FakeBackend(["", "Olá", "", " 世界", ""])
    relay = StreamRelay(backend)

    async def run_case():
        stream = relay.open([{"role": "user", "content": "hi"}])
        await stream.prime()
        return await _collect(stream)

    out = asyncio.run(run_case())
    assert out == ["Olá".encode("utf-8"), " 世界".encode("utf-8")]


def test_relay_rejects_unknown_role_without_calling_backend():
    backend = FakeBackend(["never"])
    relay = StreamRelay(backend)
    history = [
        {"role": "user", "content": "hi"},
        {"role": "assistant", "content": "hello"},
        {"role": "moderator", "content": "??"},
    ]

    with pytest.raises(MalformedHistoryError) as exc_info:
        relay.open(history)

    assert exc_info.value.index == 2
    assert backend.stream_calls == 0
    assert backend.generate_calls == 0


def test_relay_partial_output_then_interrupted_error():
    backend = FakeBackend(["Par", "tial"], fail_after=True)
    relay = StreamRelay(backend)
    received: list[bytes] = []

    async def run_case():
        stream = relay.open([{"role": "user", "content": "hi"}])
        await stream.prime()
        with pytest.raises(BackendStreamInterruptedError):
            async for chunk in stream:
                received.append(chunk)
        return stream

    stream = asyncio.run(run_case())
    assert b"".join(received) == b"Partial"
    assert stream.state is RelayState.FAILED
    assert isinstance(stream.error, BackendStreamInterruptedError)
    assert stream.bytes_forwarded == len(b"Partial")


def test_relay_prime_fails_fast_when_backend_unavailable():
    backend = FakeBackend([], fail_on_open=True)
    relay = StreamRelay(backend)

    async def run_case():
        stream = relay.open([{"role": "user", "content": "hi"}])
        with pytest.raises(BackendUnavailableError):
            await stream.prime()
        return stream

    stream = asyncio.run(run_case())
    assert stream.state is RelayState.FAILED
    assert stream.bytes_forwarded == 0
    assert backend.stream_calls == 1


def test_relay_failure_before_first_byte_is_unavailable_not_interrupted():
    backend = FakeBackend(["", ""], fail_after=True)
    relay = StreamRelay(backend)

    async def run_case():
        stream = relay.open([{"role": "user", "content": "hi"}])
        with pytest.raises(BackendUnavailableError):
            await _collect(stream)
        return stream

    stream = asyncio.run(run_case())
    assert stream.state is RelayState.FAILED


def test_relay_cancel_after_first_chunk_stops_backend():
    backend = EndlessBackend([])
    relay = StreamRelay(backend)

    async def run_case():
        stream = relay.open([{"role": "user", "content": "hi"}])
        iterator = stream.__aiter__()
        first = await iterator.__anext__()
        requested_at_cancel = backend.chunks_requested
        await asyncio.wait_for(stream.aclose(), timeout=1.0)
        return stream, first, requested_at_cancel

    stream, first, requested_at_cancel = asyncio.run(run_case())
    assert first == b"tok1 "
    assert backend.stop_requested is True
    assert backend.chunks_requested == requested_at_cancel == 1
    assert stream.state is RelayState.CANCELLED
    assert stream.error is None


def test_relay_task_cancellation_releases_backend():
    backend = EndlessBackend([])
    relay = StreamRelay(backend)

    async def consume(stream, first_seen: asyncio.Event):
        async for _chunk in stream:
            first_seen.set()
            await asyncio.sleep(10)

    async def run_case():
        stream = relay.open([{"role": "user", "content": "hi"}])
        first_seen = asyncio.Event()
        task = asyncio.create_task(consume(stream, first_seen))
        await asyncio.wait_for(first_seen.wait(), timeout=1.0)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task
        await asyncio.wait_for(stream.aclose(), timeout=1.0)
        return stream

    stream = asyncio.run(run_case())
    assert backend.stop_requested is True
    assert backend.chunks_requested == 1
    assert stream.state is RelayState.CANCELLED


def test_relay_does_not_read_ahead_of_consumer():
    backend = EndlessBackend([])
    relay = StreamRelay(backend)

    async def run_case():
        stream = relay.open([])
        iterator = stream.__aiter__()
        await iterator.__anext__()
        await iterator.__anext__()
        await asyncio.sleep(0.05)
        requested = backend.chunks_requested
        await stream.aclose()
        return requested

    assert asyncio.run(run_case()) == 2


def test_relay_empty_history_still_calls_backend():
    backend = FakeBackend(["Hi there"])
    relay = StreamRelay(backend, default_prompt="Continue the conversation.")

    async def run_case():
        stream = relay.open([])
        await stream.prime()
        return stream, await _collect(stream)

    stream, out = asyncio.run(run_case())
    assert stream.history == []
    assert out == [b"Hi there"]
    assert stream.state is RelayState.COMPLETED
    assert backend.stream_calls == 1
    assert backend.seen_history == []


def test_relay_backend_without_output_completes_cleanly():
    backend = FakeBackend([])
    relay = StreamRelay(backend)

    async def run_case():
        stream = relay.open([{"role": "user", "content": "hi"}])
        await stream.prime()
        return stream, await _collect(stream)

    stream, out = asyncio.run(run_case())
    assert out == []
    assert stream.state is RelayState.COMPLETED


def test_relay_stream_cannot_be_consumed_twice():
    backend = FakeBackend(["a"])
    relay = StreamRelay(backend)

    async def run_case():
        stream = relay.open([{"role": "user", "content": "hi"}])
        await _collect(stream)
        with pytest.raises(RuntimeError):
            stream.__aiter__()

    asyncio.run(run_case())


def test_relay_prompt_override_is_forwarded():
    backend = FakeBackend(["ok"])
    relay = StreamRelay(backend, default_prompt="Continue the conversation.")

    async def run_case():
        stream = relay.open([{"role": "user", "content": "hi"}], prompt="Answer in French.")
        await _collect(stream)

    asyncio.run(run_case())
    assert backend.seen_prompt == "Answer in French."


@pytest.mark.asyncio
async def test_relay_complete_uses_buffered_generate():
    backend = FakeBackend(["Hello", ", world"])
    relay = StreamRelay(backend, default_prompt="Continue the conversation.")

    text = await relay.complete([{"role": "user", "content": "hi"}])

    assert text == "Hello, world"
    assert backend.generate_calls == 1
    assert backend.stream_calls == 0


@pytest.mark.asyncio
async def test_relay_complete_maps_backend_errors():
    class BrokenBackend(FakeBackend):
        async def generate(self, history, prompt):
            raise RuntimeError("boom")

    relay = StreamRelay(BrokenBackend([]))

    with pytest.raises(BackendUnavailableError):
        await relay.complete([{"role": "user", "content": "hi"}])
