from __future__ import annotations

import json
from types import SimpleNamespace

import httpx
import pytest

from livecode.agent.model import (
    OpenAIChatStream,
    TextEndpointStream,
    create_model_stream,
)
from livecode.agent.prompt import build_model_messages
from livecode.config import Settings
from livecode.errors import ModelStreamError
from livecode.types import Message


class _FakeStream:
    def __init__(self, deltas: list[str | None]) -> None:
        self.deltas = deltas
        self.closed = False

    def __aiter__(self):
        return self._events()

    async def _events(self):
        for delta in self.deltas:
            yield SimpleNamespace(choices=[SimpleNamespace(delta=SimpleNamespace(content=delta))])
        yield SimpleNamespace(choices=[])

    async def close(self) -> None:
        self.closed = True


class _FakeCompletions:
    def __init__(self, stream: _FakeStream) -> None:
        self.stream = stream
        self.kwargs: dict = {}

    async def create(self, **kwargs):
        self.kwargs = kwargs
        return self.stream


def test_model_messages_start_with_instructions_and_carry_images() -> None:
    history = [
        Message(role="user", content="make this", images=["AAAA"]),
        Message(role="assistant", content=""),
        Message(role="system", content="✅ Wrote 1 file(s): my-app/src/App.tsx"),
    ]

    rendered = build_model_messages(history)

    assert rendered[0]["role"] == "system"
    assert "---filename:" in rendered[0]["content"]
    user = rendered[1]
    assert user["content"][0] == {"type": "text", "text": "make this"}
    assert user["content"][1]["image_url"]["url"] == "data:image/png;base64,AAAA"
    assert [m["role"] for m in rendered] == ["system", "user", "system"]


@pytest.mark.asyncio
async def test_openai_stream_yields_text_deltas() -> None:
    fake = _FakeStream(["Hel", None, "lo"])
    completions = _FakeCompletions(fake)
    client = SimpleNamespace(chat=SimpleNamespace(completions=completions))
    stream = OpenAIChatStream(client, "openai/gpt-4.1")

    out = [d async for d in stream([Message(role="user", content="hi")])]

    assert out == ["Hel", "lo"]
    assert completions.kwargs["stream"] is True
    assert completions.kwargs["model"] == "openai/gpt-4.1"
    assert fake.closed


@pytest.mark.asyncio
async def test_text_endpoint_streams_raw_bytes() -> None:
    seen: list[dict] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(json.loads(request.content))
        return httpx.Response(200, content="héllo".encode())

    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    stream = TextEndpointStream("http://model.test/stream", client=client, model="llama3")

    data = b"".join([d async for d in stream([Message(role="user", content="hi")])])

    assert data.decode() == "héllo"
    assert seen[0] == {"messages": [{"role": "user", "content": "hi"}], "model": "llama3"}
    await stream.aclose()


@pytest.mark.asyncio
async def test_text_endpoint_http_error_is_model_stream_error() -> None:
    client = httpx.AsyncClient(transport=httpx.MockTransport(lambda r: httpx.Response(502)))
    stream = TextEndpointStream("http://model.test/stream", client=client)

    with pytest.raises(ModelStreamError):
        async for _ in stream([Message(role="user", content="hi")]):
            pass
    await stream.aclose()


def test_factory_prefers_text_endpoint_when_configured() -> None:
    text = create_model_stream(Settings(model_stream_url="http://model.test/stream"))
    chat = create_model_stream(Settings(api_key="test-key"), model="openai/gpt-5")

    assert isinstance(text, TextEndpointStream)
    assert isinstance(chat, OpenAIChatStream)
    assert chat.model == "openai/gpt-5"
