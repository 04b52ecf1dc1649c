from __future__ import annotations

import asyncio
from types import SimpleNamespace

import pytest

openai = pytest.importorskip("openai")
httpx = pytest.importorskip("httpx")

from cueline.services.backend.base import (  # noqa: E402
    BackendConnectionClosed,
    BackendError,
    KeySpecificError,
    TransientBackendError,
)
from cueline.services.backend.openai_client import OpenAIBackendSession  # noqa: E402


def _chunk(content):
    return SimpleNamespace(choices=[SimpleNamespace(delta=SimpleNamespace(content=content))])


class DummyCompletions:
    def __init__(self, chunks=(), error=None) -> None:
        self.chunks = list(chunks)
        self.error = error
        self.calls: list[dict] = []

    async def create(self, **kwargs):
        self.calls.append(kwargs)
        if self.error is not None:
            raise self.error

        async def stream():
            for chunk in self.chunks:
                yield chunk

        return stream()


class DummyClient:
    def __init__(self, completions: DummyCompletions) -> None:
        self.chat = SimpleNamespace(completions=completions)
        self.closed = False

    async def close(self) -> None:
        self.closed = True


def _make_session(completions: DummyCompletions) -> tuple[OpenAIBackendSession, DummyClient]:
    client = DummyClient(completions)
    return OpenAIBackendSession(client, "test-model", None, "en-US"), client


async def _collect(session: OpenAIBackendSession, prompt: str) -> list[str]:
    return [delta async for delta in session.stream(prompt)]


def test_stream_yields_non_empty_deltas():
    completions = DummyCompletions([_chunk("Hel"), _chunk(None), SimpleNamespace(choices=[]), _chunk("lo")])
    session, _ = _make_session(completions)

    assert asyncio.run(_collect(session, "Say hello")) == ["Hel", "lo"]

    call = completions.calls[0]
    assert call["model"] == "test-model"
    assert call["stream"] is True
    assert call["messages"][0]["role"] == "system"
    assert "en-US" in call["messages"][0]["content"]
    assert call["messages"][1]["content"] == [{"type": "text", "text": "Say hello"}]


def test_images_attach_to_next_request_only():
    completions = DummyCompletions([_chunk("ok")])
    session, _ = _make_session(completions)

    async def scenario():
        await session.send_image(b"img", "image/png")
        await _collect(session, "Describe the diagram")
        await _collect(session, "Again")

    asyncio.run(scenario())

    first, second = (call["messages"][1]["content"] for call in completions.calls)
    assert first[1]["image_url"]["url"] == "data:image/png;base64,aW1n"
    assert len(second) == 1


def _request():
    return httpx.Request("POST", "https://api.openai.com/v1/chat/completions")


@pytest.mark.parametrize(
    "error, expected",
    [
        (
            lambda: openai.RateLimitError("slow down", response=httpx.Response(429, request=_request()), body=None),
            KeySpecificError,
        ),
        (lambda: openai.APIConnectionError(request=_request()), TransientBackendError),
        (lambda: openai.OpenAIError("boom"), BackendError),
    ],
)
def test_errors_are_mapped_to_backend_taxonomy(error, expected):
    session, _ = _make_session(DummyCompletions(error=error()))

    with pytest.raises(expected):
        asyncio.run(_collect(session, "hi"))


def test_closed_session_refuses_to_stream():
    session, client = _make_session(DummyCompletions())

    asyncio.run(session.close())

    assert client.closed
    assert session.closed
    with pytest.raises(BackendConnectionClosed):
        asyncio.run(_collect(session, "hi"))
