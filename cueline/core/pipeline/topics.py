"""Technical topic vocabulary and time-decayed topic tracking."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Sequence, Set, Tuple

from ...utils.text import compile_phrases, matched_phrases

TECHNICAL_TOPICS: Dict[str, Tuple[str, ...]] = {
    "algorithms": (
        "algorithm",
        "sorting",
        "searching",
        "tree",
        "graph",
        "dynamic programming",
        "recursion",
        "greedy",
    ),
    "data_structures": (
        "array",
        "linked list",
        "stack",
        "queue",
        "hash table",
        "heap",
        "trie",
        "set",
        "map",
    ),
    "system_design": (
        "scalability",
        "load balancer",
        "database",
        "microservices",
        "api",
        "cache",
        "cdn",
        "sharding",
    ),
    "programming": (
        "function",
        "class",
        "method",
        "variable",
        "loop",
        "condition",
        "inheritance",
        "polymorphism",
    ),
    "complexity": (
        "big o",
        "time complexity",
        "space complexity",
        "optimization",
        "performance",
        "efficiency",
    ),
    "architecture": (
        "design pattern",
        "mvc",
        "solid",
        "dependency injection",
        "singleton",
        "factory",
    ),
    "search_algorithms": (
        "binary search",
        "linear search",
        "interpolation search",
        "search",
        "searching",
    ),
}

_TOPIC_PATTERNS = {category: compile_phrases(keywords, plurals=True) for category, keywords in TECHNICAL_TOPICS.items()}

MENTION_WINDOW_SECONDS = 30 * 60
RECENT_WINDOW_SECONDS = 5 * 60
RECENT_WEIGHT = 1.0
SESSION_WEIGHT = 0.6
ACTIVE_THRESHOLD = 0.3
MAX_ACTIVE_TOPICS = 3


@dataclass(frozen=True)
class TopicMatch:
    category: str
    keywords: Tuple[str, ...]
    relevance: float


def extract_topics(text: str) -> List[TopicMatch]:
    """Return every topic category whose keywords appear in ``text``."""

    topics: List[TopicMatch] = []
    if not text:
        return topics
    for category, patterns in _TOPIC_PATTERNS.items():
        found = matched_phrases(patterns, text)
        if found:
            topics.append(
                TopicMatch(
                    category=category,
                    keywords=tuple(found),
                    relevance=len(found) / len(patterns),
                )
            )
    return topics


def topic_categories(text: str) -> Set[str]:
    return {topic.category for topic in extract_topics(text)}


@dataclass(frozen=True)
class TopicMention:
    timestamp: float
    relevance: float
    keywords: Tuple[str, ...]


@dataclass
class TopicRecord:
    category: str
    mentions: List[TopicMention] = field(default_factory=list)
    relevance_score: float = 0.0
    last_mentioned: float = 0.0
    keywords: List[str] = field(default_factory=list)


def topic_relevance(mentions: Sequence[TopicMention], now: float) -> float:
    """Sum of mention strength weighted by age, boosted by mention frequency."""

    score = 0.0
    counted = 0
    for mention in mentions:
        age = now - mention.timestamp
        if age > MENTION_WINDOW_SECONDS:
            continue
        weight = RECENT_WEIGHT if age < RECENT_WINDOW_SECONDS else SESSION_WEIGHT
        score += mention.relevance * weight
        counted += 1
    if counted == 0:
        return 0.0
    frequency_boost = min(counted / 5, 1.0)
    return score * (1 + frequency_boost)


class TopicTracker:
    """Per-category mention history used for phase and boundary decisions."""

    def __init__(self) -> None:
        self._records: Dict[str, TopicRecord] = {}

    def __contains__(self, category: object) -> bool:
        return category in self._records

    def __len__(self) -> int:
        return len(self._records)

    def records(self) -> List[TopicRecord]:
        return list(self._records.values())

    def get(self, category: str) -> Optional[TopicRecord]:
        return self._records.get(category)

    def record(self, matches: Iterable[TopicMatch], now: float) -> None:
        for match in matches:
            record = self._records.setdefault(match.category, TopicRecord(category=match.category))
            record.mentions.append(TopicMention(timestamp=now, relevance=match.relevance, keywords=match.keywords))
            record.last_mentioned = now
            for keyword in match.keywords:
                if keyword not in record.keywords:
                    record.keywords.append(keyword)
        self.prune(now)

    def prune(self, now: float) -> None:
        cutoff = now - MENTION_WINDOW_SECONDS
        for category in list(self._records):
            record = self._records[category]
            record.mentions = [mention for mention in record.mentions if mention.timestamp > cutoff]
            if not record.mentions:
                del self._records[category]
                continue
            record.relevance_score = topic_relevance(record.mentions, now)

    def active(self, now: float) -> List[TopicRecord]:
        """Top topics whose decayed relevance clears the activity threshold."""

        self.prune(now)
        candidates = [record for record in self._records.values() if record.relevance_score > ACTIVE_THRESHOLD]
        candidates.sort(key=lambda record: record.relevance_score, reverse=True)
        return candidates[:MAX_ACTIVE_TOPICS]

    def recent_count(self, now: float, window: float = 120.0) -> int:
        return sum(1 for record in self._records.values() if now - record.last_mentioned < window)

    def drop_stale(self, now: float, max_age: float) -> List[str]:
        dropped = [category for category, record in self._records.items() if now - record.last_mentioned > max_age]
        for category in dropped:
            del self._records[category]
        return dropped

    def clear(self) -> None:
        self._records.clear()


__all__ = [
    "TECHNICAL_TOPICS",
    "TopicMatch",
    "TopicMention",
    "TopicRecord",
    "TopicTracker",
    "extract_topics",
    "topic_categories",
    "topic_relevance",
]
