"""Generation backend abstractions and failure taxonomy."""

from __future__ import annotations

import abc
from typing import AsyncIterator, Optional


class BackendError(RuntimeError):
    """Base class for failures reported by a generation backend."""


class KeySpecificError(BackendError):
    """Authentication, quota or rate-limit failure tied to the active API key."""


class TransientBackendError(BackendError):
    """Network or server failure that is worth retrying with the same key."""


class BackendConnectionClosed(BackendError):
    """The live connection dropped and must be re-established."""


class BackendSession(abc.ABC):
    """One live connection to a generation backend."""

    @property
    @abc.abstractmethod
    def closed(self) -> bool:
        raise NotImplementedError

    @abc.abstractmethod
    def stream(self, prompt: str) -> AsyncIterator[str]:
        """Send ``prompt`` and yield answer text deltas in production order."""

        raise NotImplementedError

    async def send_image(self, data: bytes, mime_type: str = "image/jpeg") -> None:
        """Attach an image to the next request."""

        raise BackendError(f"{type(self).__name__} does not accept images")

    async def send_audio(self, data: bytes) -> None:
        """Forward an encoded audio chunk; backends without audio input ignore it."""

        return None

    @abc.abstractmethod
    async def close(self) -> None:
        raise NotImplementedError


class GenerationBackend(abc.ABC):
    """Factory for live sessions against a generation service."""

    name: str = "backend"

    @abc.abstractmethod
    async def connect(
        self,
        api_key: Optional[str],
        system_prompt: Optional[str] = None,
        language: str = "en-US",
    ) -> BackendSession:
        raise NotImplementedError


__all__ = [
    "BackendConnectionClosed",
    "BackendError",
    "BackendSession",
    "GenerationBackend",
    "KeySpecificError",
    "TransientBackendError",
]
