"""Request prioritisation, interruption policy and single in-flight exchange control."""

from __future__ import annotations

import asyncio
import time
import uuid
from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Deque, Dict, List, Optional, TypeVar

from ...config import Settings
from ...events import ContextHint, HintKind
from ...logging import get_logger
from ...utils.text import compile_phrases, matched_phrases, word_count
from .completeness import QUESTION_WORDS
from .context import InterviewPhase

LOGGER = get_logger(__name__)

T = TypeVar("T")


class Priority(str, Enum):
    URGENT = "urgent"
    HIGH = "high"
    NORMAL = "normal"
    LOW = "low"


INTERRUPTING_PRIORITIES = frozenset({Priority.URGENT, Priority.HIGH})
PRIORITY_WEIGHTS = {Priority.URGENT: 0.8, Priority.HIGH: 0.6, Priority.NORMAL: 0.3, Priority.LOW: 0.1}
DEFAULT_THRESHOLDS = {Priority.URGENT: 0.9, Priority.HIGH: 0.8, Priority.NORMAL: 0.6, Priority.LOW: 0.4}
PHASE_FACTORS = {InterviewPhase.WARMUP: 0.8, InterviewPhase.TECHNICAL: 1.2, InterviewPhase.CLOSING: 0.8}

URGENCY_INDICATORS = compile_phrases(
    [
        "wait",
        "hold on",
        "stop",
        "clarify",
        "explain",
        "what do you mean",
        "i don't understand",
        "sorry",
        "can you repeat",
        "slow down",
    ]
)
INTERRUPTION_WORDS = compile_phrases(["wait", "stop", "hold"])
TECHNICAL_KEYWORDS = compile_phrases(
    [
        "algorithm",
        "complexity",
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
        "sorting",
        "searching",
        "tree",
        "graph",
        "array",
        "linked list",
    ],
    plurals=True,
)

WORTHINESS_THRESHOLD = 0.7
CONSERVATIVE_MARGIN = 0.1
THRESHOLD_CAP = 0.9
LOOSEN_FACTOR = 0.95
TIGHTEN_FACTOR = 1.05
HIGH_SUCCESS_RATE = 0.8
LOW_SUCCESS_RATE = 0.6
OUTCOME_WINDOW = 20
LATENCY_WINDOW = 20


class ExchangeTimeoutError(RuntimeError):
    """Raised when an exchange exceeds the deadline for its priority."""

    def __init__(self, priority: Priority, timeout: float) -> None:
        super().__init__(f"{priority.value} exchange timed out after {timeout:.1f}s")
        self.priority = priority
        self.timeout = timeout


class ExchangeCancelledError(RuntimeError):
    """Raised when an exchange's cancellation token was triggered."""

    def __init__(self, reason: str) -> None:
        super().__init__(f"Exchange cancelled: {reason}")
        self.reason = reason


@dataclass
class PriorityConfig:
    timeouts: Dict[Priority, float] = field(
        default_factory=lambda: {
            Priority.URGENT: 15.0,
            Priority.HIGH: 25.0,
            Priority.NORMAL: 40.0,
            Priority.LOW: 60.0,
        }
    )
    thresholds: Dict[Priority, float] = field(default_factory=lambda: dict(DEFAULT_THRESHOLDS))
    interruption_enabled: bool = True

    @classmethod
    def from_settings(cls, settings: Settings) -> "PriorityConfig":
        return cls(
            timeouts={
                Priority.URGENT: settings.urgent_timeout_seconds,
                Priority.HIGH: settings.high_timeout_seconds,
                Priority.NORMAL: settings.normal_timeout_seconds,
                Priority.LOW: settings.low_timeout_seconds,
            }
        )


@dataclass(frozen=True)
class RequestAnalysis:
    priority: Priority
    type: str
    confidence: float
    urgency_score: float
    technical_score: float
    interruption_worthiness: float


class CancellationToken:
    """One-shot cancellation signal bound to the task running an exchange."""

    def __init__(self) -> None:
        self._cancelled = False
        self.reason: Optional[str] = None
        self._task: Optional[asyncio.Future] = None
        self._callbacks: List[Callable[[str], None]] = []

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def attach(self, task: asyncio.Future) -> None:
        self._task = task
        if self._cancelled:
            task.cancel()

    def add_callback(self, callback: Callable[[str], None]) -> None:
        self._callbacks.append(callback)

    def cancel(self, reason: str = "cancelled") -> bool:
        if self._cancelled:
            return False
        self._cancelled = True
        self.reason = reason

        task = self._task
        if task is not None and not task.done() and task is not _current_task():
            task.cancel()
        for callback in self._callbacks:
            try:
                callback(reason)
            except Exception:  # pragma: no cover - callbacks are user supplied
                LOGGER.exception("Cancellation callback failed")
        return True


def _current_task() -> Optional[asyncio.Future]:
    try:
        return asyncio.current_task()
    except RuntimeError:
        return None


@dataclass
class InFlightExchange:
    token: CancellationToken
    conversation_id: str
    started_at: float
    question: str
    analysis: RequestAnalysis
    interrupting: bool = False


class PriorityManager:
    """Scores ready questions and enforces the single in-flight exchange."""

    def __init__(self, config: Optional[PriorityConfig] = None, clock: Callable[[], float] = time.monotonic) -> None:
        self.config = config or PriorityConfig()
        self._clock = clock
        self.thresholds: Dict[Priority, float] = dict(self.config.thresholds)
        self.conservative = True
        self.phase = InterviewPhase.WARMUP
        self.current: Optional[InFlightExchange] = None
        self._outcomes: Deque[bool] = deque(maxlen=OUTCOME_WINDOW)
        self._latencies: Deque[float] = deque(maxlen=LATENCY_WINDOW)
        self._distribution: Dict[Priority, int] = {priority: 0 for priority in Priority}
        self._total_requests = 0
        self._successful_interruptions = 0
        self._failed_interruptions = 0

    # ------------------------------------------------------------------
    # Scoring
    # ------------------------------------------------------------------
    def analyze(self, text: str, hint: Optional[ContextHint] = None) -> RequestAnalysis:
        urgency = self.urgency_score(text)
        technical = self.technical_score(text)
        confidence = 0.5
        request_type = "general"
        hinted_priority: Optional[Priority] = None
        adjustment = 0.0

        if hint is not None:
            if hint.kind is HintKind.QUESTION:
                hinted_priority = Priority.HIGH
                request_type = "question"
                confidence = hint.confidence or 0.8
                adjustment = 0.3
            elif hint.kind is HintKind.CLARIFICATION:
                hinted_priority = Priority.URGENT
                request_type = "clarification"
                confidence = hint.confidence or 0.9
                urgency = max(urgency, 0.8)
                adjustment = 0.5
            elif hint.kind is HintKind.TECHNICAL_EXPLANATION:
                request_type = "technical"
                if hint.likely_incomplete:
                    hinted_priority = Priority.LOW
                    adjustment = -0.3
                else:
                    technical = max(technical, 0.7)

        priority = hinted_priority or self.priority_for(urgency, technical)
        worthiness = self.worthiness(priority, urgency, confidence) + adjustment
        return RequestAnalysis(
            priority=priority,
            type=request_type,
            confidence=confidence,
            urgency_score=urgency,
            technical_score=technical,
            interruption_worthiness=max(0.0, min(1.0, worthiness)),
        )

    @staticmethod
    def urgency_score(text: str) -> float:
        score = 0.3 * len(matched_phrases(URGENCY_INDICATORS, text))
        tokens = text.strip().lower().split()
        if "?" in text or (tokens and tokens[0].strip(",.!") in QUESTION_WORDS):
            score += 0.2
        if matched_phrases(INTERRUPTION_WORDS, text):
            score += 0.5
        return min(1.0, score)

    @staticmethod
    def technical_score(text: str) -> float:
        found = matched_phrases(TECHNICAL_KEYWORDS, text)
        score = 0.15 * len(found)
        if len(found) > 2:
            score += 0.2
        if word_count(text) > 15:
            score += 0.1
        return min(1.0, score)

    @staticmethod
    def priority_for(urgency: float, technical: float) -> Priority:
        if urgency > 0.7:
            return Priority.URGENT
        if urgency > 0.4 or technical > 0.6:
            return Priority.HIGH
        if technical > 0.3:
            return Priority.NORMAL
        return Priority.LOW

    def worthiness(self, priority: Priority, urgency: float, confidence: float) -> float:
        value = PRIORITY_WEIGHTS[priority] + urgency * 0.4 + confidence * 0.3
        return min(1.0, value * PHASE_FACTORS.get(self.phase, 1.0))

    def should_interrupt(self, analysis: RequestAnalysis) -> bool:
        if not self.config.interruption_enabled or self.current is None:
            return False
        if analysis.priority not in INTERRUPTING_PRIORITIES:
            return False
        threshold = self.thresholds[analysis.priority]
        if self.conservative:
            threshold += CONSERVATIVE_MARGIN
        return analysis.interruption_worthiness > WORTHINESS_THRESHOLD and analysis.confidence > threshold

    def timeout_for(self, priority: Priority) -> float:
        return self.config.timeouts.get(priority, self.config.timeouts[Priority.NORMAL])

    def set_phase(self, phase: InterviewPhase) -> None:
        self.phase = InterviewPhase(phase)
        self.conservative = self.phase is not InterviewPhase.TECHNICAL
        LOGGER.info("Priority manager phase %s (conservative=%s)", self.phase.value, self.conservative)

    # ------------------------------------------------------------------
    # Exchange lifecycle
    # ------------------------------------------------------------------
    def begin_exchange(
        self,
        question: str,
        analysis: RequestAnalysis,
        conversation_id: Optional[str] = None,
        interrupting: bool = False,
    ) -> InFlightExchange:
        """Cancel any live exchange, then register a fresh one."""

        previous = self.current
        if previous is not None:
            previous.token.cancel("interrupted" if interrupting else "superseded")
            LOGGER.info("Cancelled in-flight exchange %s", previous.conversation_id)

        exchange = InFlightExchange(
            token=CancellationToken(),
            conversation_id=conversation_id or uuid.uuid4().hex,
            started_at=self._clock(),
            question=question,
            analysis=analysis,
            interrupting=interrupting and previous is not None,
        )
        self.current = exchange
        self._total_requests += 1
        self._distribution[analysis.priority] += 1
        if exchange.interrupting:
            LOGGER.info("Interrupting for %s priority %s request", analysis.priority.value, analysis.type)
        return exchange

    def finish_exchange(self, exchange: InFlightExchange, success: bool) -> None:
        self._latencies.append(self._clock() - exchange.started_at)
        if exchange.interrupting:
            self.record_interruption(success)
        if self.current is exchange:
            self.current = None

    def cancel_current(self, reason: str) -> Optional[InFlightExchange]:
        exchange = self.current
        if exchange is not None:
            exchange.token.cancel(reason)
        return exchange

    async def execute(
        self,
        exchange: InFlightExchange,
        operation: Callable[[CancellationToken], Awaitable[T]],
    ) -> T:
        """Run ``operation`` for ``exchange`` under its priority deadline."""

        token = exchange.token
        priority = exchange.analysis.priority
        if token.cancelled:
            raise ExchangeCancelledError(token.reason or "cancelled")

        timeout = self.timeout_for(priority)
        task = asyncio.ensure_future(operation(token))
        token.attach(task)
        try:
            return await asyncio.wait_for(task, timeout)
        except asyncio.TimeoutError as exc:
            token.cancel("timeout")
            raise ExchangeTimeoutError(priority, timeout) from exc
        except asyncio.CancelledError:
            if token.cancelled:
                raise ExchangeCancelledError(token.reason or "cancelled") from None
            raise

    # ------------------------------------------------------------------
    # Adaptation and metrics
    # ------------------------------------------------------------------
    def record_interruption(self, success: bool) -> None:
        if success:
            self._successful_interruptions += 1
        else:
            self._failed_interruptions += 1
        self._outcomes.append(success)

        rate = sum(self._outcomes) / len(self._outcomes)
        if rate > HIGH_SUCCESS_RATE:
            self.conservative = False
            for priority in self.thresholds:
                self.thresholds[priority] *= LOOSEN_FACTOR
        elif rate < LOW_SUCCESS_RATE:
            self.conservative = True
            for priority in self.thresholds:
                self.thresholds[priority] = min(THRESHOLD_CAP, self.thresholds[priority] * TIGHTEN_FACTOR)
        LOGGER.info("Interruption success rate %.0f%%, conservative=%s", rate * 100, self.conservative)

    def metrics(self) -> Dict[str, Any]:
        latencies = list(self._latencies)
        interruptions = self._successful_interruptions + self._failed_interruptions
        return {
            "total_requests": self._total_requests,
            "priority_distribution": {priority.value: count for priority, count in self._distribution.items()},
            "average_latency": sum(latencies) / len(latencies) if latencies else 0.0,
            "recent_latencies": latencies,
            "successful_interruptions": self._successful_interruptions,
            "failed_interruptions": self._failed_interruptions,
            "interruption_success_rate": (
                self._successful_interruptions / interruptions if interruptions else 0.0
            ),
            "thresholds": {priority.value: value for priority, value in self.thresholds.items()},
            "conservative": self.conservative,
            "phase": self.phase.value,
        }

    def reset(self) -> None:
        self.cancel_current("session reset")
        self.current = None
        self.thresholds = dict(self.config.thresholds)
        self._outcomes.clear()
        self._latencies.clear()
        self._distribution = {priority: 0 for priority in Priority}
        self._total_requests = 0
        self._successful_interruptions = 0
        self._failed_interruptions = 0
        self.set_phase(InterviewPhase.WARMUP)


__all__ = [
    "CancellationToken",
    "ExchangeCancelledError",
    "ExchangeTimeoutError",
    "InFlightExchange",
    "Priority",
    "PriorityConfig",
    "PriorityManager",
    "RequestAnalysis",
]
