"""Bounded conversation history with summary collapsing."""

from __future__ import annotations

import time
from typing import Callable, Iterator, List, Optional

from ..utils.text import is_contained
from .models import ConversationTurn, TurnKind

SUMMARY_PREFIX = "Summary: "


class ConversationHistory:
    """Ordered turns whose length never exceeds ``max_turns``.

    When a new turn pushes the history past ``max_turns`` every turn except the
    newest ``preserve_turns`` is folded into a single summary turn kept at the
    front.
    """

    def __init__(
        self,
        max_turns: int = 25,
        preserve_turns: int = 10,
        summary_max_chars: int = 800,
        clock: Callable[[], float] = time.time,
    ) -> None:
        if preserve_turns >= max_turns:
            raise ValueError("preserve_turns must be smaller than max_turns")
        self.max_turns = max_turns
        self.preserve_turns = preserve_turns
        self.summary_max_chars = summary_max_chars
        self._clock = clock
        self._turns: List[ConversationTurn] = []

    def __len__(self) -> int:
        return len(self._turns)

    def __iter__(self) -> Iterator[ConversationTurn]:
        return iter(list(self._turns))

    @property
    def turns(self) -> List[ConversationTurn]:
        return list(self._turns)

    def append(self, turn: ConversationTurn) -> None:
        self._turns.append(turn)
        if len(self._turns) > self.max_turns:
            self._summarise()

    def clear(self) -> None:
        self._turns.clear()

    def is_duplicate(
        self,
        text: str,
        now: Optional[float] = None,
        window: float = 15.0,
        completed_only: bool = False,
    ) -> bool:
        """True when ``text`` overlaps a non-summary question asked within ``window`` seconds.

        With ``completed_only`` turns whose answer was cut short do not count.
        """

        now = self._clock() if now is None else now
        for turn in reversed(self._turns):
            if now - turn.timestamp > window:
                break
            if turn.is_summary or (completed_only and turn.interrupted):
                continue
            if is_contained(text, turn.question):
                return True
        return False

    def transcript(self) -> List[str]:
        """Questions suitable for replaying to a fresh backend session."""

        return [
            turn.question
            for turn in self._turns
            if not turn.suppressed and not turn.is_summary and turn.question.strip()
        ]

    def _summarise(self) -> None:
        cut = len(self._turns) - self.preserve_turns
        older, recent = self._turns[:cut], self._turns[cut:]
        aggregated = " ".join(
            turn.question[len(SUMMARY_PREFIX):] if turn.is_summary else turn.question for turn in older
        )
        summary = ConversationTurn(
            timestamp=self._clock(),
            question=f"{SUMMARY_PREFIX}{aggregated[: self.summary_max_chars]}",
            kind=TurnKind.SUMMARY,
        )
        self._turns = [summary, *recent]


__all__ = ["ConversationHistory", "SUMMARY_PREFIX"]
