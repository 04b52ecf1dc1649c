"""Offline generation backend that echoes questions back in small chunks."""

from __future__ import annotations

import asyncio
from typing import AsyncIterator, Callable, List, Optional

from .base import BackendConnectionClosed, BackendSession, GenerationBackend


def _default_reply(prompt: str) -> str:
    last_line = prompt.strip().splitlines()[-1] if prompt.strip() else ""
    return f"Dummy answer for: {last_line}. Replace with a real generation backend."


class DummyBackendSession(BackendSession):
    def __init__(
        self,
        reply: Callable[[str], str],
        chunk_words: int = 4,
        delay: float = 0.0,
    ) -> None:
        self._reply = reply
        self.chunk_words = max(1, chunk_words)
        self.delay = delay
        self.prompts: List[str] = []
        self.images: List[bytes] = []
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    async def stream(self, prompt: str) -> AsyncIterator[str]:
        if self._closed:
            raise BackendConnectionClosed("dummy session is closed")
        self.prompts.append(prompt)
        words = self._reply(prompt).split(" ")
        for start in range(0, len(words), self.chunk_words):
            if self.delay:
                await asyncio.sleep(self.delay)
            chunk = " ".join(words[start : start + self.chunk_words])
            yield chunk if start == 0 else f" {chunk}"

    async def send_image(self, data: bytes, mime_type: str = "image/jpeg") -> None:
        self.images.append(data)

    async def close(self) -> None:
        self._closed = True


class DummyBackend(GenerationBackend):
    name = "dummy"

    def __init__(
        self,
        reply: Optional[Callable[[str], str]] = None,
        chunk_words: int = 4,
        delay: float = 0.0,
    ) -> None:
        self.reply = reply or _default_reply
        self.chunk_words = chunk_words
        self.delay = delay
        self.sessions: List[DummyBackendSession] = []

    async def connect(
        self,
        api_key: Optional[str],
        system_prompt: Optional[str] = None,
        language: str = "en-US",
    ) -> BackendSession:
        session = DummyBackendSession(self.reply, chunk_words=self.chunk_words, delay=self.delay)
        self.sessions.append(session)
        return session


__all__ = ["DummyBackend", "DummyBackendSession"]
