"""Factories for runtime service selection."""

from __future__ import annotations

from typing import Optional

from .backend.base import GenerationBackend
from .backend.dummy import DummyBackend


class ServiceConfigurationError(ValueError):
    """Raised when an unknown backend is requested."""


def _normalise(name: Optional[str]) -> str:
    if not name:
        return "dummy"
    return name.strip().lower()


def resolve_generation_backend(name: Optional[str], model: Optional[str] = None) -> GenerationBackend:
    backend = _normalise(name)
    if backend in {"", "dummy", "offline"}:
        return DummyBackend()
    if backend == "openai":
        from .backend.openai_client import OpenAIBackend

        return OpenAIBackend(model=model)
    raise ServiceConfigurationError(f"Unknown generation backend: {name}")


__all__ = ["ServiceConfigurationError", "resolve_generation_backend"]
