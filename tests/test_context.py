import pytest

from cueline.core.pipeline.context import (
    PHASE_PROFILES,
    BoundaryKind,
    ContextBoundaryManager,
    InterviewPhase,
    next_phase,
)
from cueline.core.pipeline.topics import extract_topics
from cueline.data.models import ConversationTurn


class FakeClock:
    def __init__(self, now: float = 0.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now


@pytest.fixture
def manager():
    return ContextBoundaryManager(clock=FakeClock())


@pytest.mark.parametrize(
    "elapsed, topics, current, expected",
    [
        (0, 0, InterviewPhase.WARMUP, InterviewPhase.WARMUP),
        (299, 1, InterviewPhase.WARMUP, InterviewPhase.WARMUP),
        (300, 0, InterviewPhase.WARMUP, InterviewPhase.TECHNICAL),
        (1800, 0, InterviewPhase.TECHNICAL, InterviewPhase.CLOSING),
        (10, 2, InterviewPhase.WARMUP, InterviewPhase.TECHNICAL),
        (10, 5, InterviewPhase.CLOSING, InterviewPhase.CLOSING),
        (400, 0, InterviewPhase.CLOSING, InterviewPhase.CLOSING),
    ],
)
def test_next_phase_moves_forward_only(elapsed, topics, current, expected):
    assert next_phase(elapsed, topics, current) is expected


@pytest.mark.parametrize(
    "text, question_type",
    [
        ("What do you mean by that?", "clarification"),
        ("How would you design a cache?", "technical_deep"),
        ("Define recursion", "definition"),
        ("Show me an example", "example"),
        ("Ready?", "general_question"),
        ("Hello there", "statement"),
    ],
)
def test_question_type(manager, text, question_type):
    assert manager.analyze(text).question_type == question_type


def test_new_topic_creates_natural_boundary(manager):
    plan = manager.process("What is binary search?", [], now=100.0)

    assert plan.decision.kind is BoundaryKind.NATURAL
    assert plan.decision.create_boundary
    assert plan.active_topics == ("search_algorithms",)
    assert plan.context.startswith(PHASE_PROFILES[InterviewPhase.WARMUP].prefix)


def test_unrelated_topic_forces_boundary(manager):
    manager.process("What is binary search?", [], now=100.0)

    plan = manager.process("How would you shard the database?", [], now=110.0)

    assert plan.decision.kind is BoundaryKind.FORCED
    assert plan.decision.reason == "complete topic change"


def test_long_history_forces_boundary_and_preserves_critical_context(manager):
    manager.add_critical_context("Candidate prefers Python")
    history = [
        ConversationTurn(timestamp=90.0, question="x" * 1300),
        ConversationTurn(timestamp=95.0, question="Can you go over it again?"),
    ]

    decision = manager.evaluate(manager.analyze("And then?"), history, now=100.0)

    assert decision.kind is BoundaryKind.FORCED
    assert decision.preserved[0] == "Candidate prefers Python"
    assert "Can you go over it again?" in decision.preserved


def test_reference_question_continues(manager):
    history = [ConversationTurn(timestamp=100.0, question="What is binary search?", answer="A search.")]
    manager.process("What is binary search?", [], now=100.0)

    plan = manager.process("Can you go over it again?", history, now=200.0)

    assert plan.decision.kind is BoundaryKind.CONTINUE
    assert not plan.decision.create_boundary
    assert plan.analysis.requires_context
    assert "Recent discussion: What is binary search?" in plan.context


def test_topics_pull_warmup_into_technical(manager):
    manager.topics.record(extract_topics("Compare a hash table and a binary search tree"), now=50.0)

    assert manager.update_phase(now=60.0) == (InterviewPhase.WARMUP, InterviewPhase.TECHNICAL)
    assert manager.phase is InterviewPhase.TECHNICAL
    assert manager.metrics(now=60.0)["archived_phases"][0].startswith("warmup phase completed")


def test_set_phase_rebases_session_clock(manager):
    manager.set_phase(InterviewPhase.CLOSING, now=100.0)

    assert manager.phase is InterviewPhase.CLOSING
    assert manager.session_started_at == 100.0 - 1800.0
    assert manager.update_phase(now=200.0) is None


def test_recent_phase_transition_is_natural_boundary(manager):
    manager.set_phase(InterviewPhase.TECHNICAL, now=100.0)

    decision = manager.evaluate(manager.analyze("Tell me more about it"), [], now=110.0)

    assert decision.kind is BoundaryKind.NATURAL
    assert decision.reason == "recent phase transition"


def test_context_fits_phase_limit(manager):
    history = [ConversationTurn(timestamp=100.0 + i, question="binary search " * 30) for i in range(5)]

    plan = manager.process("What about binary search on trees?", history, now=110.0)

    assert len(plan.context) <= PHASE_PROFILES[InterviewPhase.WARMUP].max_context_length


def test_reset_restores_warmup(manager):
    manager.set_phase(InterviewPhase.TECHNICAL, now=10.0)
    manager.add_critical_context("note")

    manager.reset(now=20.0)

    assert manager.phase is InterviewPhase.WARMUP
    assert manager.critical_context == []
    assert manager.phase_info(now=30.0)["phase_elapsed"] == 10.0
