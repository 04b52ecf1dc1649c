"""Follow-up question classification for interview conversations."""

from __future__ import annotations

import time
from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Deque, Dict, List, Optional, Sequence, Set, Tuple

from ...data.models import ConversationTurn
from ...logging import get_logger
from ...utils.text import compile_phrases, matched_phrases, word_count
from .topics import TopicMatch, extract_topics

LOGGER = get_logger(__name__)

FOLLOW_UP_THRESHOLD = 0.6
TOPIC_CONTINUITY_BONUS = 0.2
ADJACENCY_BONUS = 0.3
NEW_TOPIC_PENALTY = 0.7
SHORT_REFERENCE_BONUS = 0.3
SHORT_REFERENCE_WORDS = 8
QUESTION_FOLLOW_UP_BONUS = 0.2
IMMEDIATE_SECONDS = 30.0
RELATED_SECONDS = 120.0
RECENT_TURNS = 3
FEEDBACK_SIZE = 50
ACTIVE_TOPIC_SECONDS = 5 * 60


class FollowUpType(str, Enum):
    INDEPENDENT = "independent"
    CLARIFICATION = "clarification"
    COMPARISON = "comparison"
    DIRECT_FOLLOW_UP = "direct_follow_up"
    TECHNICAL_DEEP_DIVE = "technical_deep_dive"
    CONTEXTUAL_REFERENCE = "contextual_reference"


class ThreadRelationship(str, Enum):
    IMMEDIATE_FOLLOW_UP = "immediate_follow_up"
    RELATED_TOPIC = "related_topic"
    TOPIC_CONTINUATION = "topic_continuation"


# Declaration order is the tie-break order for the resulting type.
PATTERN_CATEGORIES: Tuple[Tuple[FollowUpType, float, List[str]], ...] = (
    (
        FollowUpType.CLARIFICATION,
        0.9,
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
            "expand on",
            "could you elaborate",
            "can you be more specific",
        ],
    ),
    (
        FollowUpType.COMPARISON,
        0.7,
        [
            "difference between",
            "compare",
            "versus",
            "vs",
            "better than",
            "worse than",
            "pros and cons",
            "advantages",
            "disadvantages",
            "when would you use",
            "which is better",
            "why not use",
        ],
    ),
    (
        FollowUpType.DIRECT_FOLLOW_UP,
        0.8,
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
            "what about",
            "how about",
            "speaking of",
            "regarding",
        ],
    ),
    (
        FollowUpType.TECHNICAL_DEEP_DIVE,
        0.6,
        [
            "how would you implement",
            "what if we need to",
            "how do you handle",
            "what about edge cases",
            "how do you optimize",
            "what's the complexity",
            "how does this scale",
            "what are the trade-offs",
            "alternative approach",
            "different way to",
            "better solution",
            "more efficient",
            "how would you",
            "what if",
            "how to optimize",
            "edge cases",
            "optimization",
        ],
    ),
    (
        FollowUpType.CONTEXTUAL_REFERENCE,
        0.4,
        [
            "that",
            "this",
            "it",
            "they",
            "them",
            "these",
            "those",
            "the approach",
            "the algorithm",
            "the solution",
            "the method",
            "the code",
            "the implementation",
            "the example",
            "the answer",
            "what you said",
            "what you mentioned",
            "your solution",
        ],
    ),
)
_PATTERNS = [(kind, weight, compile_phrases(phrases)) for kind, weight, phrases in PATTERN_CATEGORIES]

NEW_TOPIC_STARTERS = (
    "can you explain",
    "what is",
    "tell me about",
    "how does",
    "explain the concept",
    "define",
    "describe",
)
ALGORITHM_NAMES = compile_phrases(
    [
        "merge sort",
        "quick sort",
        "heap sort",
        "bubble sort",
        "insertion sort",
        "selection sort",
        "counting sort",
        "breadth first search",
        "depth first search",
        "dijkstra",
        "floyd",
        "kruskal",
        "prim",
    ]
)

CONTEXT_PRIORITY = {
    FollowUpType.CLARIFICATION: "high",
    FollowUpType.DIRECT_FOLLOW_UP: "high",
    FollowUpType.TECHNICAL_DEEP_DIVE: "medium",
    FollowUpType.COMPARISON: "medium",
    FollowUpType.CONTEXTUAL_REFERENCE: "low",
}


@dataclass(frozen=True)
class ContextRecommendation:
    context_type: FollowUpType
    priority: str
    kind: Optional[str] = None
    content: Optional[str] = None
    reasoning: str = ""


@dataclass(frozen=True)
class FollowUpResult:
    is_follow_up: bool
    confidence: float
    type: FollowUpType
    patterns: Tuple[str, ...] = ()
    recommendation: Optional[ContextRecommendation] = None
    topics: Tuple[TopicMatch, ...] = ()
    relationship: Optional[ThreadRelationship] = None


@dataclass
class _ContextAnalysis:
    relationship: Optional[ThreadRelationship] = None
    continuity: bool = False
    related: Optional[ConversationTurn] = None


@dataclass
class _Metrics:
    total: int = 0
    follow_ups: int = 0
    injections: int = 0
    feedback: Deque[Dict[str, Any]] = field(default_factory=lambda: deque(maxlen=FEEDBACK_SIZE))


def introduces_new_topic(text: str) -> bool:
    """Definitional opener or an explicitly named algorithm."""

    lowered = text.strip().lower()
    if any(lowered.startswith(starter) for starter in NEW_TOPIC_STARTERS):
        return True
    return bool(matched_phrases(ALGORITHM_NAMES, lowered))


def _categories(topics: Sequence[TopicMatch]) -> Set[str]:
    return {topic.category for topic in topics}


class FollowUpClassifier:
    """Decide whether a question depends on the preceding exchange."""

    def __init__(self, clock: Callable[[], float] = time.time) -> None:
        self._clock = clock
        self._metrics = _Metrics()
        self.active_topics: Set[str] = set()
        self.last_question: Optional[Dict[str, Any]] = None

    def classify(self, text: str, history: Sequence[ConversationTurn] = ()) -> FollowUpResult:
        if not text or not text.strip():
            return FollowUpResult(is_follow_up=False, confidence=0.0, type=FollowUpType.INDEPENDENT)

        self._metrics.total += 1
        now = self._clock()
        turns = [turn for turn in history if not turn.is_summary and not turn.suppressed]
        topics = tuple(extract_topics(text))

        matches, score = self._pattern_scores(text)
        context = self._analyze_context(topics, turns, now)

        confidence = score
        if context.continuity:
            confidence += TOPIC_CONTINUITY_BONUS
        if context.relationship is ThreadRelationship.IMMEDIATE_FOLLOW_UP:
            confidence += ADJACENCY_BONUS

        matched_kinds = [kind for kind, found in matches.items() if found]
        if matched_kinds == [FollowUpType.CONTEXTUAL_REFERENCE] and introduces_new_topic(text):
            confidence -= NEW_TOPIC_PENALTY
        confidence = max(0.0, min(1.0, confidence))

        is_follow_up = confidence >= FOLLOW_UP_THRESHOLD
        follow_up_type = FollowUpType.INDEPENDENT
        if is_follow_up:
            follow_up_type = matched_kinds[0] if matched_kinds else FollowUpType.CONTEXTUAL_REFERENCE
            self._metrics.follow_ups += 1

        recommendation = self._recommend(follow_up_type, topics, turns) if is_follow_up else None
        self._remember(text, follow_up_type, confidence, topics, now)

        patterns: List[str] = []
        for found in matches.values():
            patterns.extend(found)
        LOGGER.debug("Follow-up classification %s (%.2f) for %r", follow_up_type.value, confidence, text[:60])
        return FollowUpResult(
            is_follow_up=is_follow_up,
            confidence=confidence,
            type=follow_up_type,
            patterns=tuple(patterns),
            recommendation=recommendation,
            topics=topics,
            relationship=context.relationship,
        )

    # ---- Internal helpers -------------------------------------------------
    @staticmethod
    def _pattern_scores(text: str) -> Tuple[Dict[FollowUpType, List[str]], float]:
        matches: Dict[FollowUpType, List[str]] = {}
        score = 0.0
        for kind, weight, patterns in _PATTERNS:
            found = matched_phrases(patterns, text)
            matches[kind] = found
            score += weight * len(found)

        if word_count(text) < SHORT_REFERENCE_WORDS and matches[FollowUpType.CONTEXTUAL_REFERENCE]:
            score += SHORT_REFERENCE_BONUS
        if "?" in text and matches[FollowUpType.DIRECT_FOLLOW_UP]:
            score += QUESTION_FOLLOW_UP_BONUS
        return matches, min(1.0, score)

    @staticmethod
    def _analyze_context(
        topics: Sequence[TopicMatch],
        turns: Sequence[ConversationTurn],
        now: float,
    ) -> _ContextAnalysis:
        current = _categories(topics)
        if not turns or not current:
            return _ContextAnalysis()

        for turn in turns[-RECENT_TURNS:]:
            if not current & _categories(extract_topics(turn.question)):
                continue
            age = now - turn.timestamp
            if age < IMMEDIATE_SECONDS:
                relationship = ThreadRelationship.IMMEDIATE_FOLLOW_UP
            elif age < RELATED_SECONDS:
                relationship = ThreadRelationship.RELATED_TOPIC
            else:
                relationship = ThreadRelationship.TOPIC_CONTINUATION
            return _ContextAnalysis(relationship=relationship, continuity=True, related=turn)
        return _ContextAnalysis()

    def _recommend(
        self,
        follow_up_type: FollowUpType,
        topics: Sequence[TopicMatch],
        turns: Sequence[ConversationTurn],
    ) -> ContextRecommendation:
        kind: Optional[str] = None
        content: Optional[str] = None
        reasoning = ""

        if follow_up_type is FollowUpType.CLARIFICATION:
            answered = [turn for turn in turns if turn.answer]
            if answered:
                kind, content = "previous_response", f"Previous answer: {answered[-1].answer[:300]}..."
            reasoning = "User is asking for clarification of previous response"
        elif follow_up_type is FollowUpType.TECHNICAL_DEEP_DIVE:
            current = _categories(topics)
            related = [turn for turn in turns if current & _categories(extract_topics(turn.question))][-2:]
            if related:
                lines = "\n".join(f"Q: {turn.question}" for turn in related)
                kind, content = "technical_thread", f"Related technical discussion:\n{lines}"
            reasoning = "User wants to explore technical details further"
        elif follow_up_type is FollowUpType.COMPARISON:
            lines = "\n".join(f"Previous: {turn.question}" for turn in turns[-3:])
            kind, content = "comparison_context", f"Context for comparison:\n{lines}"
            reasoning = "User is comparing current topic with previous discussion"
        elif follow_up_type is FollowUpType.DIRECT_FOLLOW_UP:
            if turns:
                kind, content = "immediate_context", f"Previous question: {turns[-1].question}"
            reasoning = "Direct follow-up question to previous topic"
        else:
            lines = "\n".join(f"[{index}] {turn.question}" for index, turn in enumerate(turns[-2:], start=1))
            kind, content = "reference_context", f"Recent context being referenced:\n{lines}"
            reasoning = "Question references previous content"

        self._metrics.injections += 1
        return ContextRecommendation(
            context_type=follow_up_type,
            priority=CONTEXT_PRIORITY.get(follow_up_type, "low"),
            kind=kind,
            content=content,
            reasoning=reasoning,
        )

    def _remember(
        self,
        text: str,
        follow_up_type: FollowUpType,
        confidence: float,
        topics: Sequence[TopicMatch],
        now: float,
    ) -> None:
        previous = self.last_question
        if previous is not None and now - previous["timestamp"] > ACTIVE_TOPIC_SECONDS:
            self.active_topics.clear()
        self.active_topics.update(_categories(topics))
        self.last_question = {
            "input": text,
            "type": follow_up_type,
            "confidence": confidence,
            "topics": [topic.category for topic in topics],
            "timestamp": now,
        }

    # ---- Feedback and metrics ---------------------------------------------
    def provide_feedback(self, was_accurate: bool, actual_type: Optional[FollowUpType] = None) -> None:
        self._metrics.feedback.append(
            {"was_accurate": was_accurate, "actual_type": actual_type, "timestamp": self._clock()}
        )

    def metrics(self) -> Dict[str, Any]:
        metrics = self._metrics
        feedback = list(metrics.feedback)
        accurate = sum(1 for item in feedback if item["was_accurate"])
        return {
            "total_classifications": metrics.total,
            "follow_up_detections": metrics.follow_ups,
            "context_injections": metrics.injections,
            "follow_up_rate": metrics.follow_ups / metrics.total if metrics.total else 0.0,
            "context_injection_rate": metrics.injections / metrics.follow_ups if metrics.follow_ups else 0.0,
            "feedback_accuracy": accurate / len(feedback) if feedback else None,
            "feedback_entries": len(feedback),
            "active_topics": sorted(self.active_topics),
            "last_question": self.last_question,
        }

    def reset_session(self) -> None:
        self._metrics = _Metrics()
        self.active_topics.clear()
        self.last_question = None
        LOGGER.info("Follow-up classifier reset for new session")


__all__ = [
    "ContextRecommendation",
    "FollowUpClassifier",
    "FollowUpResult",
    "FollowUpType",
    "ThreadRelationship",
    "introduces_new_topic",
]
