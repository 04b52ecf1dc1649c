"""API key rotation for generation backends."""

from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Optional, Set

from ..logging import get_logger
from .backend.base import KeySpecificError

LOGGER = get_logger(__name__)

KEY_ERROR_PATTERNS = (
    "api key",
    "authentication",
    "unauthorized",
    "forbidden",
    "quota",
    "rate limit",
    "billing",
    "invalid key",
    "key not found",
)


class NoApiKeyError(RuntimeError):
    """Raised when no usable API key remains."""


def is_key_specific_error(error: BaseException) -> bool:
    if isinstance(error, KeySpecificError):
        return True
    message = str(error).lower()
    code = str(getattr(error, "code", "") or "").lower()
    return any(pattern in message or pattern in code for pattern in KEY_ERROR_PATTERNS)


def parse_keys(raw: Optional[str]) -> List[str]:
    if not raw:
        return []
    return [key.strip() for key in raw.split(",") if key.strip()]


@dataclass
class KeyUsage:
    requests: int = 0
    failures: int = 0
    last_used: Optional[float] = None
    last_failure: Optional[float] = None


class ApiKeyRing:
    """Ordered API keys with a failed set; failures rotate to the next usable key.

    An empty ring is valid and yields ``None`` so backends can fall back to
    their own credential discovery.
    """

    def __init__(self, keys: Iterable[str] = ()) -> None:
        self.keys: List[str] = [key.strip() for key in keys if key and key.strip()]
        self.index = 0
        self.failed: Set[int] = set()
        self.usage: Dict[int, KeyUsage] = {index: KeyUsage() for index in range(len(self.keys))}

    def __len__(self) -> int:
        return len(self.keys)

    @property
    def exhausted(self) -> bool:
        return bool(self.keys) and len(self.failed) >= len(self.keys)

    def current(self) -> Optional[str]:
        if not self.keys:
            return None
        for offset in range(len(self.keys)):
            candidate = (self.index + offset) % len(self.keys)
            if candidate not in self.failed:
                self.index = candidate
                return self.keys[candidate]
        raise NoApiKeyError(f"All {len(self.keys)} API keys have failed")

    def mark_failed(self, error: Optional[BaseException] = None) -> bool:
        """Fail the current key and advance; returns whether a usable key remains."""

        if not self.keys:
            return False
        usage = self.usage[self.index]
        usage.failures += 1
        usage.last_failure = time.time()
        self.failed.add(self.index)
        LOGGER.warning("API key %d/%d failed: %s", self.index + 1, len(self.keys), error or "unknown error")
        self.index = (self.index + 1) % len(self.keys)
        if self.exhausted:
            LOGGER.error("All API keys have failed")
            return False
        LOGGER.info("Rotating to API key %d/%d", self.current_position(), len(self.keys))
        return True

    def mark_succeeded(self) -> None:
        if not self.keys:
            return
        usage = self.usage[self.index]
        usage.requests += 1
        usage.last_used = time.time()
        self.failed.discard(self.index)

    def reset_failures(self) -> None:
        self.failed.clear()

    def current_position(self) -> int:
        try:
            self.current()
        except NoApiKeyError:
            pass
        return self.index + 1

    def summary(self) -> Dict[str, Any]:
        return {
            "total_keys": len(self.keys),
            "current_key": self.index + 1 if self.keys else None,
            "failed_keys": sorted(index + 1 for index in self.failed),
            "available_keys": len(self.keys) - len(self.failed),
            "usage": [
                {
                    "key": index + 1,
                    "current": index == self.index,
                    "failed": index in self.failed,
                    "requests": usage.requests,
                    "failures": usage.failures,
                }
                for index, usage in self.usage.items()
            ],
        }


__all__ = ["ApiKeyRing", "KeyUsage", "NoApiKeyError", "is_key_specific_error", "parse_keys"]
