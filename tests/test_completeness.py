import pytest

from cueline.core.pipeline.completeness import (
    hit_buffer_ceiling,
    is_complete_question,
    is_semantically_complete,
)


@pytest.mark.parametrize(
    "text",
    [
        "what is it?",
        "How would you design a cache",
        "Can you reverse a linked list",
        "define the term idempotent please",
    ],
)
def test_complete_questions(text):
    assert is_complete_question(text)


@pytest.mark.parametrize("text", ["", "?", "how are you", "tell me about your background"])
def test_incomplete_questions(text):
    assert not is_complete_question(text)


def test_terminal_punctuation_completes_statement():
    assert is_semantically_complete("Tell me about your last project.")
    assert not is_semantically_complete("Tell me about your last project and")


def test_buffer_ceiling_forces_completion():
    long_text = " ".join(["word"] * 40)

    assert is_semantically_complete(long_text)
    assert hit_buffer_ceiling(long_text)
    assert not hit_buffer_ceiling(long_text + "?")
    assert is_semantically_complete("x" * 200)


def test_whitespace_is_never_complete():
    assert not is_semantically_complete("   ")
    assert not hit_buffer_ceiling("   ")
