"""Generation backends."""

from .base import (
    BackendConnectionClosed,
    BackendError,
    BackendSession,
    GenerationBackend,
    KeySpecificError,
    TransientBackendError,
)
from .dummy import DummyBackend

__all__ = [
    "BackendConnectionClosed",
    "BackendError",
    "BackendSession",
    "DummyBackend",
    "GenerationBackend",
    "KeySpecificError",
    "TransientBackendError",
]
