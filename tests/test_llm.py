from types import SimpleNamespace

import anyio
import httpx
import pytest
from openai import APIConnectionError, APIStatusError

from chatrelay.errors import Cancelled, CapabilityUnavailable, UpstreamError
from chatrelay.llm import ChatModelClient


def chunk(content=None, choices=True):
    if not choices:
        return SimpleNamespace(choices=[])
    return SimpleNamespace(choices=[SimpleNamespace(delta=SimpleNamespace(content=content))])


class FakeStream:
    def __init__(self, chunks, stall=False):
        self.chunks = list(chunks)
        self.stall = stall
        self.reads = 0
        self.closed = False

    def __aiter__(self):
        return self

    async def __anext__(self):
        if self.stall:
            await anyio.sleep(10)
        if not self.chunks:
            raise StopAsyncIteration
        self.reads += 1
        return self.chunks.pop(0)

    async def close(self):
        self.closed = True


class FakeCompletions:
    def __init__(self, result=None, error=None):
        self.result = result
        self.error = error
        self.calls = []

    async def create(self, **kwargs):
        self.calls.append(kwargs)
        if self.error is not None:
            raise self.error
        return self.result


def make_client(metrics, completions, idle_timeout=5.0):
    fake_openai = SimpleNamespace(chat=SimpleNamespace(completions=completions))
    return ChatModelClient(metrics=metrics, api_key=None, model="test-model", idle_timeout=idle_timeout, client=fake_openai)


def status_error(status=500, text="provider exploded"):
    request = httpx.Request("POST", "https://llm.example/v1/chat/completions")
    response = httpx.Response(status, text=text, request=request)
    return APIStatusError("error", response=response, body=None)


async def collect(iterator):
    return [token async for token in iterator]


@pytest.mark.anyio
async def test_stream_yields_tokens_and_skips_empty_chunks(metrics):
    stream = FakeStream([chunk("Sa"), chunk(choices=False), chunk(None), chunk("lom"), SimpleNamespace(choices=[SimpleNamespace(delta=None)])])
    completions = FakeCompletions(result=stream)
    client = make_client(metrics, completions)

    tokens = await collect(client.stream_completion([{"role": "user", "content": "hi"}], system_instruction="be brief"))

    assert tokens == ["Sa", "lom"]
    assert stream.closed
    call = completions.calls[0]
    assert call["stream"] is True
    assert call["model"] == "test-model"
    assert call["messages"][0] == {"role": "system", "content": "be brief"}
    assert metrics.counters["success.generate_response"] == 1


@pytest.mark.anyio
async def test_messages_are_sent_as_given_without_instruction(metrics):
    completions = FakeCompletions(result=FakeStream([]))
    messages = [{"role": "system", "content": "sys"}, {"role": "user", "content": "hi"}]
    await collect(make_client(metrics, completions).stream_completion(messages))
    assert completions.calls[0]["messages"] == messages


@pytest.mark.anyio
async def test_cancel_stops_before_next_read_and_closes_upstream(metrics):
    stream = FakeStream([chunk(str(index)) for index in range(10)])
    client = make_client(metrics, FakeCompletions(result=stream))
    cancel = anyio.Event()

    received = []
    with pytest.raises(Cancelled):
        async for token in client.stream_completion([], cancel=cancel):
            received.append(token)
            if len(received) == 3:
                cancel.set()

    assert received == ["0", "1", "2"]
    assert stream.reads == 3
    assert stream.closed


@pytest.mark.anyio
async def test_status_error_becomes_upstream_error(metrics):
    client = make_client(metrics, FakeCompletions(error=status_error(429, "slow down")))

    with pytest.raises(UpstreamError) as excinfo:
        await collect(client.stream_completion([]))

    assert excinfo.value.status == 429
    assert excinfo.value.body == "slow down"
    assert metrics.counters["errors.generate_response"] == 1


@pytest.mark.anyio
async def test_connection_error_becomes_upstream_error(metrics):
    request = httpx.Request("POST", "https://llm.example/v1/chat/completions")
    client = make_client(metrics, FakeCompletions(error=APIConnectionError(request=request)))

    with pytest.raises(UpstreamError) as excinfo:
        await client.complete([])
    assert excinfo.value.status is None


@pytest.mark.anyio
async def test_idle_stream_times_out(metrics):
    stream = FakeStream([chunk("never")], stall=True)
    client = make_client(metrics, FakeCompletions(result=stream), idle_timeout=0.05)

    with pytest.raises(UpstreamError):
        await collect(client.stream_completion([]))
    assert stream.closed


@pytest.mark.anyio
async def test_complete_tolerates_missing_fields(metrics):
    empty = SimpleNamespace(choices=[])
    assert await make_client(metrics, FakeCompletions(result=empty)).complete([]) == ""

    answer = SimpleNamespace(choices=[SimpleNamespace(message=SimpleNamespace(content="Plov Recipe"))])
    assert await make_client(metrics, FakeCompletions(result=answer)).complete([]) == "Plov Recipe"


@pytest.mark.anyio
async def test_missing_key_is_capability_unavailable(metrics):
    client = ChatModelClient(metrics=metrics, api_key=None)
    assert not client.available
    with pytest.raises(CapabilityUnavailable):
        await client.complete([])
    with pytest.raises(CapabilityUnavailable):
        await collect(client.stream_completion([]))
