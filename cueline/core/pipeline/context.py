"""Interview phase tracking and context boundary decisions."""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

from ...data.models import ConversationTurn, TurnKind
from ...logging import get_logger
from ...utils.text import compile_phrases, matched_phrases
from .topics import TopicMatch, TopicRecord, TopicTracker, extract_topics

LOGGER = get_logger(__name__)


class InterviewPhase(str, Enum):
    WARMUP = "warmup"
    TECHNICAL = "technical"
    CLOSING = "closing"


PHASE_ORDER: Tuple[InterviewPhase, ...] = (
    InterviewPhase.WARMUP,
    InterviewPhase.TECHNICAL,
    InterviewPhase.CLOSING,
)


@dataclass(frozen=True)
class PhaseProfile:
    duration: float
    context_weight: float
    max_context_length: int
    prefix: str


PHASE_PROFILES: Dict[InterviewPhase, PhaseProfile] = {
    InterviewPhase.WARMUP: PhaseProfile(
        duration=5 * 60,
        context_weight=0.7,
        max_context_length=800,
        prefix="Interview warmup phase: Focus on getting to know the candidate and basic technical background.",
    ),
    InterviewPhase.TECHNICAL: PhaseProfile(
        duration=25 * 60,
        context_weight=1.0,
        max_context_length=1200,
        prefix="Technical interview phase: Deep dive into algorithms, system design, and problem-solving approaches.",
    ),
    InterviewPhase.CLOSING: PhaseProfile(
        duration=10 * 60,
        context_weight=0.8,
        max_context_length=600,
        prefix="Interview closing phase: Final questions, candidate questions, and wrap-up discussion.",
    ),
}


def _phase_offsets() -> Dict[InterviewPhase, float]:
    offsets: Dict[InterviewPhase, float] = {}
    elapsed = 0.0
    for phase in PHASE_ORDER:
        offsets[phase] = elapsed
        elapsed += PHASE_PROFILES[phase].duration
    return offsets


PHASE_OFFSETS = _phase_offsets()
TOPIC_ADVANCE_COUNT = 2
TOPIC_ADVANCE_WINDOW = 120.0


def next_phase(elapsed: float, recent_topic_count: int, current: InterviewPhase) -> InterviewPhase:
    """Return the phase after applying time and content triggers to ``current``.

    Elapsed time selects a phase on the warmup/technical/closing timeline.
    Two or more recently mentioned topic categories pull a warmup forward into
    the technical phase. Neither trigger ever moves backwards.
    """

    by_time = InterviewPhase.WARMUP
    for phase in PHASE_ORDER:
        if elapsed >= PHASE_OFFSETS[phase]:
            by_time = phase

    candidate = max(current, by_time, key=PHASE_ORDER.index)
    if candidate is InterviewPhase.WARMUP and recent_topic_count >= TOPIC_ADVANCE_COUNT:
        candidate = InterviewPhase.TECHNICAL
    return candidate


QUESTION_TYPE_PATTERNS: Tuple[Tuple[str, Any], ...] = (
    ("clarification", compile_phrases(["what do you mean", "can you explain", "clarify", "elaborate"])),
    ("follow_up", compile_phrases(["also", "additionally", "furthermore", "and", "what about"])),
    ("technical_deep", compile_phrases(["how would you", "implement", "design", "optimize", "scale"])),
    ("comparison", compile_phrases(["difference between", "compare", "versus", "vs", "better"])),
    ("definition", compile_phrases(["what is", "define", "explain", "describe"])),
    ("example", compile_phrases(["example", "instance", "demonstrate", "show me"])),
)
REFERENCE_PATTERNS = compile_phrases(
    [
        "that",
        "this",
        "it",
        "they",
        "those",
        "these",
        "previous",
        "earlier",
        "before",
        "above",
        "mentioned",
        "the algorithm",
        "the solution",
        "the approach",
        "the method",
    ]
)
COMPLEXITY_WEIGHTS = {
    "definition": 0.2,
    "example": 0.3,
    "clarification": 0.4,
    "comparison": 0.6,
    "follow_up": 0.7,
    "technical_deep": 1.0,
}
CONTEXT_TYPES = {"follow_up", "clarification", "comparison"}

FORCED_LENGTH_FACTOR = 1.5
PHASE_BOUNDARY_WINDOW = 30.0
IMPORTANT_WINDOW = 120.0
RECENT_CONTEXT_WINDOW = 180.0
RELEVANT_CONTEXT_WINDOW = 600.0
TECHNICAL_CLEANUP_AGE = 600.0
SNIPPET_CHARS = 100
RECENT_SECTION_CHARS = 300


class BoundaryKind(str, Enum):
    CONTINUE = "continue"
    NATURAL = "natural"
    FORCED = "forced"


@dataclass(frozen=True)
class QuestionAnalysis:
    text: str
    question_type: str
    topics: Tuple[TopicMatch, ...]
    references: Tuple[str, ...]
    complexity: float
    requires_context: bool

    @property
    def categories(self) -> List[str]:
        return [topic.category for topic in self.topics]


@dataclass(frozen=True)
class BoundaryDecision:
    kind: BoundaryKind
    reason: str
    context_weight: float
    preserved: Tuple[str, ...] = ()

    @property
    def create_boundary(self) -> bool:
        return self.kind is not BoundaryKind.CONTINUE


@dataclass(frozen=True)
class ContextPlan:
    decision: BoundaryDecision
    analysis: QuestionAnalysis
    phase: InterviewPhase
    context: str
    active_topics: Tuple[str, ...]


@dataclass(frozen=True)
class PhaseArchive:
    phase: InterviewPhase
    ended_at: float
    summary: str


@dataclass
class _Metrics:
    boundaries_created: int = 0
    avg_context_length: float = 0.0
    archived: List[PhaseArchive] = field(default_factory=list)


def _question_type(text: str) -> str:
    for name, patterns in QUESTION_TYPE_PATTERNS:
        if matched_phrases(patterns, text):
            return name
    return "general_question" if "?" in text else "statement"


def _mentions_any(text: str, keywords: Sequence[str]) -> bool:
    lowered = text.lower()
    return any(keyword.lower() in lowered for keyword in keywords)


class ContextBoundaryManager:
    """Decide per question whether prior context carries over, and what to keep."""

    def __init__(self, clock: Callable[[], float] = time.time) -> None:
        self._clock = clock
        self.topics = TopicTracker()
        self.critical_context: List[str] = []
        self._metrics = _Metrics()
        now = clock()
        self.session_started_at = now
        self.phase_started_at = now
        self.phase = InterviewPhase.WARMUP

    @property
    def profile(self) -> PhaseProfile:
        return PHASE_PROFILES[self.phase]

    # ------------------------------------------------------------------
    # Phase management
    # ------------------------------------------------------------------
    def update_phase(self, now: Optional[float] = None) -> Optional[Tuple[InterviewPhase, InterviewPhase]]:
        now = self._clock() if now is None else now
        target = next_phase(
            now - self.session_started_at,
            self.topics.recent_count(now, TOPIC_ADVANCE_WINDOW),
            self.phase,
        )
        if target is self.phase:
            return None
        previous = self.phase
        self._transition(target, now)
        return previous, target

    def set_phase(self, phase: InterviewPhase, now: Optional[float] = None) -> None:
        """Manually override the phase, re-basing the session clock to match it."""

        now = self._clock() if now is None else now
        phase = InterviewPhase(phase)
        self.session_started_at = now - PHASE_OFFSETS[phase]
        if phase is not self.phase:
            self._transition(phase, now)
            LOGGER.info("Interview phase manually set to %s", phase.value)

    def _transition(self, phase: InterviewPhase, now: float) -> None:
        previous = self.phase
        names = ", ".join(record.category for record in self.topics.active(now))
        self._metrics.archived.append(
            PhaseArchive(
                phase=previous,
                ended_at=now,
                summary=f"{previous.value} phase completed. Topics discussed: {names}",
            )
        )
        if phase is InterviewPhase.TECHNICAL:
            dropped = self.topics.drop_stale(now, TECHNICAL_CLEANUP_AGE)
            if dropped:
                LOGGER.info("Dropped stale topics on entering technical phase: %s", ", ".join(dropped))
        self.phase = phase
        self.phase_started_at = now
        LOGGER.info("Interview phase %s -> %s", previous.value, phase.value)

    # ------------------------------------------------------------------
    # Analysis and boundary evaluation
    # ------------------------------------------------------------------
    def analyze(self, text: str) -> QuestionAnalysis:
        topics = tuple(extract_topics(text))
        question_type = _question_type(text)
        references = tuple(matched_phrases(REFERENCE_PATTERNS, text))
        complexity = len(topics) * 0.3 + COMPLEXITY_WEIGHTS.get(question_type, 0.5) + len(references) * 0.2
        requires_context = (
            bool(references)
            or question_type in CONTEXT_TYPES
            or any(topic.category in self.topics for topic in topics)
        )
        return QuestionAnalysis(
            text=text.strip(),
            question_type=question_type,
            topics=topics,
            references=references,
            complexity=min(1.0, complexity),
            requires_context=requires_context,
        )

    def evaluate(
        self,
        analysis: QuestionAnalysis,
        history: Sequence[ConversationTurn],
        now: Optional[float] = None,
    ) -> BoundaryDecision:
        now = self._clock() if now is None else now
        weight = self.profile.context_weight
        forced = self._forced_reason(analysis, history, now)
        if forced:
            kind, reason = BoundaryKind.FORCED, forced
        else:
            natural = self._natural_reason(analysis, now)
            if not natural:
                return BoundaryDecision(kind=BoundaryKind.CONTINUE, reason="maintain_continuity", context_weight=weight)
            kind, reason = BoundaryKind.NATURAL, natural

        self._metrics.boundaries_created += 1
        LOGGER.info("Context boundary (%s): %s", kind.value, reason)
        return BoundaryDecision(
            kind=kind,
            reason=reason,
            context_weight=weight,
            preserved=tuple(self._preserve(analysis, history, now)),
        )

    def process(
        self,
        text: str,
        history: Sequence[ConversationTurn],
        now: Optional[float] = None,
    ) -> ContextPlan:
        """Run phase update, analysis, topic tracking and boundary evaluation for ``text``."""

        now = self._clock() if now is None else now
        self.update_phase(now)
        analysis = self.analyze(text)
        self.topics.record(analysis.topics, now)
        decision = self.evaluate(analysis, history, now)
        context = self.build_context(analysis, decision, history, now)
        metrics = self._metrics
        metrics.avg_context_length = (metrics.avg_context_length + len(context)) / 2
        return ContextPlan(
            decision=decision,
            analysis=analysis,
            phase=self.phase,
            context=context,
            active_topics=tuple(record.category for record in self.topics.active(now)),
        )

    def add_critical_context(self, text: str) -> None:
        text = text.strip()
        if text and text not in self.critical_context:
            self.critical_context.append(text)

    def _forced_reason(self, analysis: QuestionAnalysis, history: Sequence[ConversationTurn], now: float) -> str:
        total = sum(len(turn.question) for turn in history)
        limit = self.profile.max_context_length * FORCED_LENGTH_FACTOR
        if total > limit:
            return f"context length {total} exceeds {limit:.0f}"
        if analysis.topics:
            active = {record.category for record in self.topics.active(now)}
            if active and not active.intersection(analysis.categories):
                return "complete topic change"
        return ""

    def _natural_reason(self, analysis: QuestionAnalysis, now: float) -> str:
        if now - self.phase_started_at < PHASE_BOUNDARY_WINDOW:
            return "recent phase transition"
        if analysis.topics and not analysis.requires_context:
            return "new technical topic"
        if analysis.question_type == "definition":
            return "definition question"
        return ""

    def _preserve(self, analysis: QuestionAnalysis, history: Sequence[ConversationTurn], now: float) -> List[str]:
        preserved: List[str] = list(self.critical_context)
        if analysis.requires_context:
            for topic in analysis.topics:
                related = [turn for turn in history if not turn.is_summary and _mentions_any(turn.question, topic.keywords)]
                preserved.extend(turn.question for turn in related[-2:])
        important = [
            turn
            for turn in history
            if now - turn.timestamp < IMPORTANT_WINDOW and turn.kind in (TurnKind.QUESTION, TurnKind.CLARIFICATION)
        ]
        preserved.extend(turn.question for turn in important[-2:])

        unique: List[str] = []
        for item in preserved:
            if item and item not in unique:
                unique.append(item)
        return unique

    # ------------------------------------------------------------------
    # Context assembly
    # ------------------------------------------------------------------
    def build_context(
        self,
        analysis: QuestionAnalysis,
        decision: BoundaryDecision,
        history: Sequence[ConversationTurn],
        now: Optional[float] = None,
    ) -> str:
        now = self._clock() if now is None else now
        parts: List[str] = [self.profile.prefix]

        if decision.create_boundary and decision.preserved:
            snippets = [
                text if len(text) <= SNIPPET_CHARS else text[:SNIPPET_CHARS] + "..." for text in decision.preserved
            ]
            parts.append(f"Previous context: {' '.join(snippets)}")

        active = self.topics.active(now)
        if active:
            parts.append(f"Active technical topics: {self._describe_topics(active)}")

        recent = self._recent_turns(history, analysis, now)
        if recent:
            parts.append(f"Recent discussion: {' '.join(turn.question for turn in recent)}")

        return self._fit(parts, self.profile.max_context_length)

    @staticmethod
    def _describe_topics(records: Sequence[TopicRecord]) -> str:
        return "; ".join(f"{record.category} ({', '.join(record.keywords[:3])})" for record in records)

    def _recent_turns(
        self,
        history: Sequence[ConversationTurn],
        analysis: QuestionAnalysis,
        now: float,
    ) -> List[ConversationTurn]:
        selected = [turn for turn in history if now - turn.timestamp < RECENT_CONTEXT_WINDOW]
        if analysis.requires_context:
            for turn in history:
                if now - turn.timestamp < RELEVANT_CONTEXT_WINDOW and self._is_relevant(turn, analysis):
                    if turn not in selected:
                        selected.append(turn)
        selected.sort(key=lambda turn: turn.timestamp)
        return selected[-5:]

    @staticmethod
    def _is_relevant(turn: ConversationTurn, analysis: QuestionAnalysis) -> bool:
        if turn.kind is TurnKind.QUESTION:
            return True
        if any(_mentions_any(turn.question, topic.keywords) for topic in analysis.topics):
            return True
        return _mentions_any(turn.question, analysis.references)

    @staticmethod
    def _fit(parts: List[str], max_length: int) -> str:
        combined = "\n\n".join(parts)
        if len(combined) <= max_length:
            return combined

        kept: List[str] = []
        for prefix in ("Previous context:", "Active technical topics:", "Recent discussion:"):
            section = next((part for part in parts if part.startswith(prefix)), None)
            if section is None:
                continue
            current = len("\n\n".join(kept))
            if current + len(section) < max_length:
                kept.append(section)
        trimmed = [
            part[:RECENT_SECTION_CHARS] + "..."
            if part.startswith("Recent discussion:") and len(part) > RECENT_SECTION_CHARS
            else part
            for part in kept
        ]
        return "\n\n".join(trimmed)[:max_length]

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------
    def phase_info(self, now: Optional[float] = None) -> Dict[str, Any]:
        now = self._clock() if now is None else now
        return {
            "phase": self.phase.value,
            "phase_elapsed": now - self.phase_started_at,
            "session_elapsed": now - self.session_started_at,
            "max_context_length": self.profile.max_context_length,
            "context_weight": self.profile.context_weight,
        }

    def metrics(self, now: Optional[float] = None) -> Dict[str, Any]:
        now = self._clock() if now is None else now
        return {
            "current_phase": self.phase.value,
            "boundaries_created": self._metrics.boundaries_created,
            "topics_tracked": len(self.topics),
            "active_topics": len(self.topics.active(now)),
            "avg_context_length": self._metrics.avg_context_length,
            "archived_phases": [archive.summary for archive in self._metrics.archived],
        }

    def reset(self, now: Optional[float] = None) -> None:
        now = self._clock() if now is None else now
        self.topics.clear()
        self.critical_context = []
        self._metrics = _Metrics()
        self.session_started_at = now
        self.phase_started_at = now
        self.phase = InterviewPhase.WARMUP
        LOGGER.info("Context boundary state reset")


__all__ = [
    "BoundaryDecision",
    "BoundaryKind",
    "ContextBoundaryManager",
    "ContextPlan",
    "InterviewPhase",
    "PHASE_PROFILES",
    "PhaseProfile",
    "QuestionAnalysis",
    "next_phase",
]
