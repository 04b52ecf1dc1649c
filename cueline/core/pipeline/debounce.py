"""Adaptive debounce: coalesce transcription fragments before dispatch."""

from __future__ import annotations

import asyncio
import time
from collections import deque
from dataclasses import dataclass
from typing import Any, Callable, Deque, Dict, Optional

from ...config import Settings
from ...logging import get_logger
from ...utils.text import compile_phrases, matched_phrases, word_count
from .completeness import MAX_BUFFER_CHARS, MAX_BUFFER_WORDS, is_semantically_complete

LOGGER = get_logger(__name__)

TECHNICAL_KEYWORDS = compile_phrases(
    [
        "algorithm",
        "complexity",
        "data structure",
        "optimization",
        "scale",
        "design",
        "architecture",
        "database",
        "system",
        "performance",
        "implement",
        "code",
        "function",
        "class",
        "method",
        "api",
        "big o",
        "time complexity",
        "space complexity",
        "leetcode",
        "sorting",
        "searching",
        "tree",
        "graph",
        "array",
        "linked list",
    ],
    plurals=True,
)
CLARIFICATION_PATTERNS = compile_phrases(
    [
        "what do you mean",
        "can you clarify",
        "could you explain",
        "i don't understand",
        "sorry, what",
        "can you repeat",
        "what exactly",
        "clarify that",
        "elaborate on",
    ]
)
FOLLOW_UP_PATTERNS = compile_phrases(
    [
        "also",
        "additionally",
        "furthermore",
        "moreover",
        "and another",
        "follow up",
        "next question",
        "building on that",
        "related to",
    ]
)
LONG_EXPLANATION_PATTERNS = compile_phrases(
    [
        "so let's say",
        "for example",
        "given a string",
        "you are given",
        "the problem is",
        "problem statement",
        "algorithm",
        "complexity",
        "time complexity",
        "space complexity",
        "approach",
        "solution",
        "implement",
        "write a function",
        "coding problem",
        "leetcode",
    ]
)
CONTEXT_WORDS = compile_phrases(["this", "that", "it", "they", "those", "previous", "earlier"])

FAST_PAUSE_MS = 200.0
NORMAL_PAUSE_MS = 500.0
LONG_SPEECH_WORDS = 100
DECISION_LOG_SIZE = 50


@dataclass
class DebounceConfig:
    base_seconds: float = 8.0
    min_seconds: float = 2.0
    medium_seconds: float = 4.0
    long_seconds: float = 12.0
    fallback_seconds: float = 5.0
    adaptive_enabled: bool = True
    warmup_seconds: float = 300.0
    warmup_padding_seconds: float = 1.0
    complexity_seconds: float = 2.0
    max_buffer_words: int = MAX_BUFFER_WORDS
    max_buffer_chars: int = MAX_BUFFER_CHARS
    sample_rate: int = 24_000
    frame_size: int = 480

    @classmethod
    def from_settings(cls, settings: Settings) -> "DebounceConfig":
        return cls(
            base_seconds=settings.debounce_base_seconds,
            min_seconds=settings.debounce_min_seconds,
            medium_seconds=settings.debounce_medium_seconds,
            long_seconds=settings.debounce_long_seconds,
            fallback_seconds=settings.debounce_fallback_seconds,
            adaptive_enabled=settings.adaptive_debounce_enabled,
            warmup_seconds=settings.warmup_seconds,
            max_buffer_words=settings.max_buffer_words,
            max_buffer_chars=settings.max_buffer_chars,
            sample_rate=settings.sample_rate,
            frame_size=settings.frame_size,
        )


@dataclass(frozen=True)
class DebounceDecision:
    timestamp: float
    preview: str
    delay: float
    complete: bool
    complexity: float = 0.0
    context_type: str = "technical"
    vad_delay: Optional[float] = None
    warmup: bool = False


class AdaptiveDelayCalculator:
    """Pick a debounce delay from text completeness, complexity and speaking pace."""

    def __init__(self, config: Optional[DebounceConfig] = None, clock: Callable[[], float] = time.time) -> None:
        self.config = config or DebounceConfig()
        self._clock = clock
        self._session_start = clock()
        self._decisions: Deque[DebounceDecision] = deque(maxlen=DECISION_LOG_SIZE)
        self._total_decisions = 0
        self.current_delay = self.config.base_seconds

    def reset(self) -> None:
        self._session_start = self._clock()
        self._decisions.clear()
        self._total_decisions = 0
        self.current_delay = self.config.base_seconds

    def is_warmup(self, now: Optional[float] = None) -> bool:
        now = self._clock() if now is None else now
        return now - self._session_start < self.config.warmup_seconds

    def compute(self, text: str, avg_pause_frames: Optional[float] = None) -> float:
        """Return the delay in seconds to wait before flushing ``text``."""

        config = self.config
        if not text or not text.strip():
            return config.base_seconds

        now = self._clock()
        if is_semantically_complete(text, config.max_buffer_words, config.max_buffer_chars):
            delay = self.quick_delay(text)
            self._record(DebounceDecision(timestamp=now, preview=text[:100], delay=delay, complete=True))
            return delay

        complexity = self.complexity(text)
        context_type = self.context_type(text)
        vad_delay = self.vad_delay(avg_pause_frames)
        warmup = self.is_warmup(now)

        delay = vad_delay
        if word_count(text) > LONG_SPEECH_WORDS or self.is_long_explanation(text):
            delay = max(delay, config.long_seconds)
        if context_type == "clarification":
            delay = min(delay, config.min_seconds + 0.5)
        elif context_type == "followup":
            delay = min(delay, config.medium_seconds)
        elif context_type == "technical_deep":
            delay = max(delay, config.medium_seconds + 1.0)
        delay += complexity * config.complexity_seconds
        if warmup:
            delay += config.warmup_padding_seconds
        delay = self._bound(delay)

        self._record(
            DebounceDecision(
                timestamp=now,
                preview=text[:100],
                delay=delay,
                complete=False,
                complexity=complexity,
                context_type=context_type,
                vad_delay=vad_delay,
                warmup=warmup,
            )
        )
        return delay

    def quick_delay(self, text: str) -> float:
        config = self.config
        category = self.categorize(text)
        if category == "clarification":
            return config.min_seconds
        if category == "simple":
            return config.min_seconds + 0.5
        if category == "complex":
            return config.medium_seconds + 1.0
        return config.medium_seconds

    @staticmethod
    def categorize(text: str) -> str:
        if matched_phrases(CLARIFICATION_PATTERNS, text):
            return "clarification"
        if len(matched_phrases(TECHNICAL_KEYWORDS, text)) >= 2:
            return "technical"
        if word_count(text) > 15 or text.count("?") > 1:
            return "complex"
        return "simple"

    @staticmethod
    def complexity(text: str) -> float:
        score = len(matched_phrases(TECHNICAL_KEYWORDS, text)) * 0.3
        count = word_count(text)
        if count > 20:
            score += 0.4
        elif count > 10:
            score += 0.2
        if text.count("?") > 1:
            score += 0.3
        if matched_phrases(CONTEXT_WORDS, text):
            score += 0.2
        return min(1.0, score)

    @staticmethod
    def context_type(text: str) -> str:
        if matched_phrases(CLARIFICATION_PATTERNS, text):
            return "clarification"
        if matched_phrases(FOLLOW_UP_PATTERNS, text):
            return "followup"
        if len(matched_phrases(TECHNICAL_KEYWORDS, text)) >= 2:
            return "technical_deep"
        return "technical"

    def vad_delay(self, avg_pause_frames: Optional[float]) -> float:
        config = self.config
        if not avg_pause_frames:
            return config.medium_seconds
        pause_ms = avg_pause_frames * config.frame_size / config.sample_rate * 1000.0
        if pause_ms < FAST_PAUSE_MS:
            return config.min_seconds + 0.5
        if pause_ms < NORMAL_PAUSE_MS:
            return config.medium_seconds
        return config.medium_seconds + 1.5

    @staticmethod
    def is_long_explanation(text: str) -> bool:
        return len(matched_phrases(LONG_EXPLANATION_PATTERNS, text)) >= 2

    def metrics(self) -> Dict[str, Any]:
        recent = list(self._decisions)[-10:]
        average = sum(d.delay for d in recent) / len(recent) if recent else self.config.base_seconds
        return {
            "total_decisions": self._total_decisions,
            "average_delay": average,
            "current_delay": self.current_delay,
            "warmup": self.is_warmup(),
            "recent_decisions": recent,
        }

    def _bound(self, delay: float) -> float:
        return max(self.config.min_seconds, min(self.config.long_seconds, delay))

    def _record(self, decision: DebounceDecision) -> None:
        self.current_delay = decision.delay
        self._decisions.append(decision)
        self._total_decisions += 1


class DebounceTimer:
    """Pending fragment buffer guarded by a single replaceable asyncio deadline."""

    def __init__(
        self,
        on_fire: Callable[[str], None],
        calculator: Optional[AdaptiveDelayCalculator] = None,
        fallback_seconds: float = 5.0,
        loop: Optional[asyncio.AbstractEventLoop] = None,
    ) -> None:
        self._on_fire = on_fire
        self.calculator = calculator
        self.fallback_seconds = fallback_seconds
        self._loop = loop
        self._buffer = ""
        self._handle: Optional[asyncio.TimerHandle] = None
        self.last_delay: Optional[float] = None

    @property
    def pending_text(self) -> str:
        return self._buffer

    @property
    def active(self) -> bool:
        return self._handle is not None

    def push(self, fragment: str, avg_pause_frames: Optional[float] = None) -> float:
        """Append ``fragment`` and restart the deadline; returns the chosen delay."""

        if self._handle is not None:
            self._handle.cancel()
            self._handle = None

        fragment = fragment.strip()
        if fragment:
            self._buffer = f"{self._buffer} {fragment}".strip()

        delay = self._delay_for(self._buffer, avg_pause_frames)
        loop = self._loop or asyncio.get_running_loop()
        self._handle = loop.call_later(delay, self._fire)
        self.last_delay = delay
        return delay

    def cancel(self) -> None:
        if self._handle is not None:
            self._handle.cancel()
            self._handle = None
        self._buffer = ""

    def _delay_for(self, text: str, avg_pause_frames: Optional[float]) -> float:
        calculator = self.calculator
        if calculator is None or not calculator.config.adaptive_enabled:
            return self.fallback_seconds
        try:
            return calculator.compute(text, avg_pause_frames)
        except Exception as exc:  # pragma: no cover - any calculator failure falls back
            LOGGER.warning("Adaptive debounce failed (%s); using %.1fs fallback", exc, self.fallback_seconds)
            return self.fallback_seconds

    def _fire(self) -> None:
        self._handle = None
        text, self._buffer = self._buffer, ""
        if text:
            self._on_fire(text)


__all__ = [
    "AdaptiveDelayCalculator",
    "DebounceConfig",
    "DebounceDecision",
    "DebounceTimer",
]
