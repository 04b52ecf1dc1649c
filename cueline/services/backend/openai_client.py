"""OpenAI powered streaming generation backend."""

from __future__ import annotations

import base64
from typing import Any, AsyncIterator, Dict, List, Optional

from ...config import get_settings
from ...logging import get_logger
from .base import (
    BackendConnectionClosed,
    BackendError,
    BackendSession,
    GenerationBackend,
    KeySpecificError,
    TransientBackendError,
)

LOGGER = get_logger(__name__)


class OpenAIBackendSession(BackendSession):
    def __init__(self, client: Any, model: str, system_prompt: Optional[str], language: str) -> None:
        import openai  # type: ignore

        self.client = client
        self.model = model
        self.system_prompt = system_prompt
        self.language = language
        self._openai = openai
        self._pending_images: List[Dict[str, Any]] = []
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def _messages(self, prompt: str) -> List[Dict[str, Any]]:
        messages: List[Dict[str, Any]] = []
        system = self.system_prompt or "You are assisting a candidate during a live technical interview."
        messages.append({"role": "system", "content": f"{system}\nRespond in {self.language}."})
        content: List[Dict[str, Any]] = [{"type": "text", "text": prompt}]
        content.extend(self._pending_images)
        self._pending_images = []
        messages.append({"role": "user", "content": content})
        return messages

    async def stream(self, prompt: str) -> AsyncIterator[str]:
        if self._closed:
            raise BackendConnectionClosed("OpenAI session is closed")
        LOGGER.info("Requesting OpenAI completion with model %s", self.model)
        openai = self._openai
        try:
            response = await self.client.chat.completions.create(
                model=self.model,
                messages=self._messages(prompt),
                stream=True,
            )
            async for chunk in response:
                if not chunk.choices:
                    continue
                delta = chunk.choices[0].delta.content
                if delta:
                    yield delta
        except (openai.AuthenticationError, openai.PermissionDeniedError, openai.RateLimitError) as exc:
            raise KeySpecificError(str(exc)) from exc
        except (openai.APIConnectionError, openai.InternalServerError) as exc:
            raise TransientBackendError(str(exc)) from exc
        except openai.OpenAIError as exc:
            raise BackendError(str(exc)) from exc

    async def send_image(self, data: bytes, mime_type: str = "image/jpeg") -> None:
        encoded = base64.b64encode(data).decode("ascii")
        self._pending_images.append(
            {"type": "image_url", "image_url": {"url": f"data:{mime_type};base64,{encoded}"}}
        )

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        await self.client.close()


class OpenAIBackend(GenerationBackend):
    name = "openai"

    def __init__(self, model: Optional[str] = None) -> None:
        settings = get_settings()
        self.model = model or settings.openai_model
        try:
            from openai import AsyncOpenAI, OpenAIError  # type: ignore
        except ImportError as exc:  # pragma: no cover - runtime dependency guard
            raise RuntimeError("openai package is required for OpenAIBackend") from exc
        self._client_cls = AsyncOpenAI
        self._openai_error_cls = OpenAIError

    async def connect(
        self,
        api_key: Optional[str],
        system_prompt: Optional[str] = None,
        language: str = "en-US",
    ) -> BackendSession:
        client_kwargs = {}
        if api_key:
            client_kwargs["api_key"] = api_key
        try:
            client = self._client_cls(**client_kwargs)
        except self._openai_error_cls as exc:
            message = str(exc)
            if "api_key" in message.lower():
                raise KeySpecificError(
                    "OpenAI API key not configured. Set CUELINE_OPENAI_API_KEYS "
                    "or run `cueline settings --set openai_api_keys=...`."
                ) from exc
            raise BackendError(f"Failed to initialise OpenAI client: {message}") from exc
        return OpenAIBackendSession(client, self.model, system_prompt, language)


__all__ = ["OpenAIBackend", "OpenAIBackendSession"]
