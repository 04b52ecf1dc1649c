"""Data models used by cueline."""

from __future__ import annotations

import time
from dataclasses import dataclass
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field


class TurnKind(str, Enum):
    QUESTION = "question"
    CLARIFICATION = "clarification"
    STATEMENT = "statement"
    SUMMARY = "summary"


class TranscriptionFragment(BaseModel):
    text: str
    timestamp: float = Field(default_factory=time.time)
    is_final: bool = True


class ConversationTurn(BaseModel):
    """One question/answer exchange; immutable once created."""

    model_config = ConfigDict(frozen=True)

    timestamp: float
    question: str
    answer: str = ""
    suppressed: bool = False
    interrupted: bool = False
    kind: TurnKind = TurnKind.QUESTION

    @property
    def is_summary(self) -> bool:
        return self.kind is TurnKind.SUMMARY


@dataclass
class InterviewSession:
    id: str
    profile: str
    language: str
    created_at: float
    system_prompt: Optional[str] = None


__all__ = [
    "ConversationTurn",
    "InterviewSession",
    "TranscriptionFragment",
    "TurnKind",
]
