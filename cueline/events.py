"""Event types exchanged between the audio path, the orchestrator and listeners."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, ClassVar, Dict, List, Optional, Tuple, Union

from .logging import get_logger

LOGGER = get_logger(__name__)


class EventType(str, Enum):
    """All event types in the catalog."""

    AUDIO_CHUNK = "audio_chunk"
    VAD = "vad_event"
    SILENCE_THRESHOLD_UPDATED = "silence_threshold_updated"
    VISUALIZATION_SAMPLE = "visualization_sample"
    STATS_SAMPLE = "stats_sample"
    RESPONSE_STARTING = "response_starting"
    RESPONSE_UPDATE = "response_update"
    RESPONSE_COMPLETE = "response_complete"
    STATUS_UPDATE = "status_update"


class VadEventKind(str, Enum):
    SPEECH_START = "speech_start"
    SPEECH_END = "speech_end"


class HintKind(str, Enum):
    """Coarse interpretation of an utterance supplied ahead of text analysis."""

    QUESTION = "question"
    CLARIFICATION = "clarification"
    TECHNICAL_EXPLANATION = "technical_explanation"


@dataclass(frozen=True)
class ContextHint:
    kind: HintKind
    confidence: Optional[float] = None
    likely_incomplete: bool = False


@dataclass(frozen=True)
class AudioChunkEvent:
    type: ClassVar[EventType] = EventType.AUDIO_CHUNK

    data: str
    sample_count: int
    energy: float
    is_speaking: bool


@dataclass(frozen=True)
class VadEvent:
    type: ClassVar[EventType] = EventType.VAD

    kind: VadEventKind
    frame_index: int
    energy: float
    silence_frames: int
    avg_pause_frames: Optional[float] = None
    hint: Optional[ContextHint] = None


@dataclass(frozen=True)
class SilenceThresholdUpdated:
    type: ClassVar[EventType] = EventType.SILENCE_THRESHOLD_UPDATED

    silence_frames: int


@dataclass(frozen=True)
class VisualizationSample:
    type: ClassVar[EventType] = EventType.VISUALIZATION_SAMPLE

    energies: Tuple[float, ...]


@dataclass(frozen=True)
class StatsSample:
    type: ClassVar[EventType] = EventType.STATS_SAMPLE

    processed_frames: int
    is_speaking: bool
    silence_frames: int
    average_energy: float
    avg_pause_frames: Optional[float] = None


@dataclass(frozen=True)
class ResponseStarting:
    type: ClassVar[EventType] = EventType.RESPONSE_STARTING

    conversation_id: str
    question: str


@dataclass(frozen=True)
class ResponseUpdate:
    type: ClassVar[EventType] = EventType.RESPONSE_UPDATE

    conversation_id: str
    delta: str
    text: str


@dataclass(frozen=True)
class ResponseComplete:
    type: ClassVar[EventType] = EventType.RESPONSE_COMPLETE

    conversation_id: str
    text: str


@dataclass(frozen=True)
class StatusUpdate:
    type: ClassVar[EventType] = EventType.STATUS_UPDATE

    status: str
    message: str = ""
    terminal: bool = False
    details: Dict[str, object] = field(default_factory=dict)


Event = Union[
    AudioChunkEvent,
    VadEvent,
    SilenceThresholdUpdated,
    VisualizationSample,
    StatsSample,
    ResponseStarting,
    ResponseUpdate,
    ResponseComplete,
    StatusUpdate,
]
Listener = Callable[[Event], None]


class EventBus:
    """In-process observer registry keyed by event type."""

    def __init__(self) -> None:
        self._callbacks: Dict[str, List[Listener]] = {}

    def on(self, event_type: Union[EventType, str], callback: Listener) -> None:
        """Register a callback for ``event_type`` or ``"*"`` for every event."""

        self._callbacks.setdefault(_key(event_type), []).append(callback)

    def off(self, event_type: Union[EventType, str], callback: Listener) -> None:
        listeners = self._callbacks.get(_key(event_type), [])
        if callback in listeners:
            listeners.remove(callback)

    def emit(self, event: Event) -> None:
        for key in (event.type.value, "*"):
            for callback in list(self._callbacks.get(key, [])):
                try:
                    callback(event)
                except Exception:  # pragma: no cover - listeners should not break the pipeline
                    LOGGER.exception("Listener raised while handling %s", event.type.value)


def _key(event_type: Union[EventType, str]) -> str:
    return event_type.value if isinstance(event_type, EventType) else str(event_type)


__all__ = [
    "AudioChunkEvent",
    "ContextHint",
    "Event",
    "EventBus",
    "EventType",
    "HintKind",
    "Listener",
    "ResponseComplete",
    "ResponseStarting",
    "ResponseUpdate",
    "SilenceThresholdUpdated",
    "StatsSample",
    "StatusUpdate",
    "VadEvent",
    "VadEventKind",
    "VisualizationSample",
]
