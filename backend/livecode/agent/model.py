import logging
from collections.abc import AsyncIterator
from typing import Protocol

import httpx
import openai
from openai import AsyncOpenAI

from livecode.agent.prompt import build_model_messages
from livecode.config import Settings
from livecode.errors import ModelStreamError
from livecode.types import Message


logger = logging.getLogger("livecode.agent.model")


class ModelStream(Protocol):
    """Opens one streamed response for a conversation history.

    Fragments may be ``str`` deltas or raw ``bytes`` (possibly split inside a
    UTF-8 sequence).
    """

    def __call__(self, history: list[Message]) -> AsyncIterator[bytes | str]: ...


class OpenAIChatStream:
    """Chat completions over an OpenAI-compatible endpoint (AI Gateway or OpenAI)."""

    def __init__(self, client: AsyncOpenAI, model: str) -> None:
        self.client = client
        self.model = model

    async def __call__(self, history: list[Message]) -> AsyncIterator[str]:
        messages = build_model_messages(history)
        logger.info("opening chat stream model=%s messages=%d", self.model, len(messages))
        try:
            stream = await self.client.chat.completions.create(
                model=self.model,
                messages=messages,
                stream=True,
            )
        except openai.OpenAIError as e:
            raise ModelStreamError(f"Could not open model stream: {e}") from e

        try:
            async for event in stream:
                if not event.choices:
                    continue
                delta = event.choices[0].delta
                text = getattr(delta, "content", None)
                if text:
                    yield text
        except openai.OpenAIError as e:
            raise ModelStreamError(f"Model stream interrupted: {e}") from e
        finally:
            await stream.close()


class TextEndpointStream:
    """POSTs the conversation to an endpoint that streams plain text back."""

    def __init__(
        self,
        url: str,
        client: httpx.AsyncClient | None = None,
        model: str | None = None,
        timeout: float = 60.0,
    ) -> None:
        self.url = url
        self.model = model
        self.client = client or httpx.AsyncClient(timeout=timeout)

    async def __call__(self, history: list[Message]) -> AsyncIterator[bytes]:
        payload = {
            "messages": [
                {"role": m.role, "content": m.content}
                for m in history
                if m.role != "assistant" or m.content
            ],
            "model": self.model,
        }
        logger.info("opening text stream url=%s messages=%d", self.url, len(payload["messages"]))
        try:
            async with self.client.stream("POST", self.url, json=payload) as resp:
                resp.raise_for_status()
                async for data in resp.aiter_bytes():
                    if data:
                        yield data
        except httpx.HTTPError as e:
            raise ModelStreamError(f"Model stream failed: {e}") from e

    async def aclose(self) -> None:
        await self.client.aclose()


def create_model_stream(settings: Settings, model: str | None = None) -> ModelStream:
    """Pick the raw text endpoint when configured, otherwise chat completions."""
    selected = model or settings.model
    if settings.model_stream_url:
        return TextEndpointStream(settings.model_stream_url, model=selected)
    client = AsyncOpenAI(api_key=settings.api_key, base_url=settings.base_url)
    return OpenAIChatStream(client, selected)
