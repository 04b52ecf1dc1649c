"""Frame-level voice activity detection with adaptive silence calibration."""

from __future__ import annotations

from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from typing import Deque, List, Optional

import numpy as np

from ...config import Settings
from ...events import (
    AudioChunkEvent,
    ContextHint,
    Event,
    HintKind,
    SilenceThresholdUpdated,
    StatsSample,
    VadEvent,
    VadEventKind,
    VisualizationSample,
)
from ...logging import get_logger
from ...utils.audio import encode_pcm16, frame_energy

LOGGER = get_logger(__name__)

QUESTION_SEGMENT_MS = 3000.0
CLARIFICATION_SEGMENT_MS = 5000.0
CONSISTENT_ENERGY_RATIO = 0.7


@dataclass
class VadConfig:
    sample_rate: int = 24_000
    frame_size: int = 480
    energy_threshold: float = 0.002
    speech_frames: int = 1
    silence_frames: int = 8
    min_silence_frames: int = 4
    max_silence_frames: int = 30
    pause_history_size: int = 20
    chunk_seconds: float = 0.5
    visualization_size: int = 128
    visualization_interval: int = 16
    stats_interval: float = 1.0

    @classmethod
    def from_settings(cls, settings: Settings) -> "VadConfig":
        return cls(
            sample_rate=settings.sample_rate,
            frame_size=settings.frame_size,
            energy_threshold=settings.energy_threshold,
            speech_frames=settings.speech_frames,
            silence_frames=settings.silence_frames,
            min_silence_frames=settings.min_silence_frames,
            max_silence_frames=settings.max_silence_frames,
            pause_history_size=settings.pause_history_size,
            chunk_seconds=settings.chunk_seconds,
            visualization_size=settings.visualization_size,
            visualization_interval=settings.visualization_interval,
            stats_interval=settings.stats_interval_seconds,
        )

    @property
    def chunk_samples(self) -> int:
        return max(int(round(self.sample_rate * self.chunk_seconds)), 1)

    def frames_to_ms(self, frames: float) -> float:
        return frames * self.frame_size / self.sample_rate * 1000.0


class SpeechMode(str, Enum):
    SPEECH = "speech"
    SILENCE = "silence"


@dataclass
class VadState:
    """Run-length state owned by a single segmenter."""

    silence_frames: int
    pause_history: Deque[int]
    mode: SpeechMode = SpeechMode.SILENCE
    speech_run: int = 0
    silence_run: int = 0


@dataclass(frozen=True)
class PauseData:
    avg_pause_frames: Optional[float]
    silence_frames: int
    samples: int
    last_pause_frames: Optional[int] = None


@dataclass
class _SegmentStats:
    frames: int = 0
    consistent_frames: int = 0
    energies: List[float] = field(default_factory=list)


class VadSegmenter:
    """Classify audio frames as speech or silence and emit boundary events.

    The segmenter is a plain synchronous object. It never blocks and shares no
    state with its consumers: every call to :meth:`process_frame` returns the
    list of events produced by that frame.
    """

    def __init__(self, config: Optional[VadConfig] = None) -> None:
        self.config = config or VadConfig()
        self._validate(self.config)
        initial = self._clamp_silence(self.config.silence_frames)
        self.state = VadState(
            silence_frames=initial,
            pause_history=deque(maxlen=self.config.pause_history_size),
        )
        self._energy_ring: Deque[float] = deque(maxlen=self.config.visualization_size)
        self._chunk_parts: List[np.ndarray] = []
        self._chunk_length = 0
        self._processed_frames = 0
        self._has_spoken = False
        self._pending_pause: Optional[int] = None
        self._last_pause: Optional[int] = None
        self._segment = _SegmentStats()

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------
    @property
    def processed_frames(self) -> int:
        return self._processed_frames

    @property
    def is_speaking(self) -> bool:
        return self.state.mode is SpeechMode.SPEECH

    def process_frame(self, samples: np.ndarray) -> List[Event]:
        frame = np.asarray(samples, dtype=np.float32).reshape(-1)
        self._processed_frames += 1
        if frame.size == 0:
            return []

        events: List[Event] = []
        energy = frame_energy(frame)
        self._energy_ring.append(energy)

        if energy > 0.0 and energy > self.config.energy_threshold:
            self._on_speech_frame(energy, events)
        else:
            self._on_silence_frame(energy, events)

        self._append_chunk(frame, events)

        if self._processed_frames % self.config.visualization_interval == 0:
            events.append(VisualizationSample(energies=tuple(self._energy_ring)))
        return events

    def reset(self) -> None:
        """Clear run counters, buffers and the visualization ring.

        The pause history and the adapted silence threshold are kept.
        """

        self.state.mode = SpeechMode.SILENCE
        self.state.speech_run = 0
        self.state.silence_run = 0
        self._energy_ring.clear()
        self._chunk_parts = []
        self._chunk_length = 0
        self._processed_frames = 0
        self._pending_pause = None
        self._segment = _SegmentStats()
        LOGGER.info("VAD state reset; keeping %d pause samples", len(self.state.pause_history))

    def update_parameters(
        self,
        energy_threshold: Optional[float] = None,
        speech_frames: Optional[int] = None,
        silence_frames: Optional[int] = None,
        chunk_seconds: Optional[float] = None,
    ) -> None:
        if energy_threshold is not None:
            if energy_threshold < 0:
                raise ValueError("energy_threshold must not be negative")
            self.config.energy_threshold = energy_threshold
        if speech_frames is not None:
            if speech_frames < 1:
                raise ValueError("speech_frames must be at least 1")
            self.config.speech_frames = speech_frames
        if silence_frames is not None:
            self.state.silence_frames = self._clamp_silence(silence_frames)
        if chunk_seconds is not None:
            if chunk_seconds <= 0:
                raise ValueError("chunk_seconds must be positive")
            self.config.chunk_seconds = chunk_seconds
        LOGGER.info(
            "VAD parameters: threshold=%s speech_frames=%s silence_frames=%s chunk=%.2fs",
            self.config.energy_threshold,
            self.config.speech_frames,
            self.state.silence_frames,
            self.config.chunk_seconds,
        )

    def pause_data(self) -> PauseData:
        history = self.state.pause_history
        average = float(np.mean(history)) if history else None
        return PauseData(
            avg_pause_frames=average,
            silence_frames=self.state.silence_frames,
            samples=len(history),
            last_pause_frames=self._last_pause,
        )

    def stats(self) -> StatsSample:
        ring = self._energy_ring
        return StatsSample(
            processed_frames=self._processed_frames,
            is_speaking=self.is_speaking,
            silence_frames=self.state.silence_frames,
            average_energy=float(np.mean(ring)) if ring else 0.0,
            avg_pause_frames=self.pause_data().avg_pause_frames,
        )

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------
    def _on_speech_frame(self, energy: float, events: List[Event]) -> None:
        state = self.state
        if state.speech_run == 0:
            self._pending_pause = state.silence_run
        state.speech_run += 1
        state.silence_run = 0

        if state.mode is SpeechMode.SPEECH:
            self._track_segment(energy)
            return
        if state.speech_run < self.config.speech_frames:
            return

        state.mode = SpeechMode.SPEECH
        self._segment = _SegmentStats()
        self._track_segment(energy)
        changed = self._record_pause()
        events.append(
            VadEvent(
                kind=VadEventKind.SPEECH_START,
                frame_index=self._processed_frames,
                energy=energy,
                silence_frames=state.silence_frames,
                avg_pause_frames=self.pause_data().avg_pause_frames,
            )
        )
        if changed:
            events.append(SilenceThresholdUpdated(silence_frames=state.silence_frames))

    def _on_silence_frame(self, energy: float, events: List[Event]) -> None:
        state = self.state
        state.silence_run += 1
        state.speech_run = 0
        if state.mode is not SpeechMode.SPEECH:
            return

        self._track_segment(energy)
        if state.silence_run < state.silence_frames:
            return

        state.mode = SpeechMode.SILENCE
        events.append(
            VadEvent(
                kind=VadEventKind.SPEECH_END,
                frame_index=self._processed_frames,
                energy=energy,
                silence_frames=state.silence_frames,
                avg_pause_frames=self.pause_data().avg_pause_frames,
                hint=self._segment_hint(),
            )
        )
        self._segment = _SegmentStats()

    def _record_pause(self) -> bool:
        pause = self._pending_pause
        self._pending_pause = None
        first_utterance = not self._has_spoken
        self._has_spoken = True
        if first_utterance or not pause:
            return False

        history = self.state.pause_history
        history.append(pause)
        self._last_pause = pause
        adaptive = self._clamp_silence(int(round(float(np.mean(history)))))
        if adaptive == self.state.silence_frames:
            return False
        LOGGER.info("Adaptive silence threshold %d -> %d frames", self.state.silence_frames, adaptive)
        self.state.silence_frames = adaptive
        return True

    def _track_segment(self, energy: float) -> None:
        segment = self._segment
        segment.frames += 1
        segment.energies.append(energy)
        if energy > self.config.energy_threshold * CONSISTENT_ENERGY_RATIO:
            segment.consistent_frames += 1

    def _segment_hint(self) -> Optional[ContextHint]:
        segment = self._segment
        if segment.frames == 0:
            return None
        duration_ms = self.config.frames_to_ms(segment.frames)
        if duration_ms < QUESTION_SEGMENT_MS:
            return ContextHint(kind=HintKind.QUESTION)
        if duration_ms < CLARIFICATION_SEGMENT_MS:
            return ContextHint(kind=HintKind.CLARIFICATION)
        if segment.consistent_frames > segment.frames * CONSISTENT_ENERGY_RATIO:
            return ContextHint(kind=HintKind.TECHNICAL_EXPLANATION)
        return None

    def _append_chunk(self, frame: np.ndarray, events: List[Event]) -> None:
        self._chunk_parts.append(frame)
        self._chunk_length += frame.shape[0]
        capacity = self.config.chunk_samples
        while self._chunk_length >= capacity:
            joined = np.concatenate(self._chunk_parts)
            chunk, rest = joined[:capacity], joined[capacity:]
            self._chunk_parts = [rest] if rest.size else []
            self._chunk_length = rest.shape[0]
            events.append(
                AudioChunkEvent(
                    data=encode_pcm16(chunk),
                    sample_count=int(chunk.shape[0]),
                    energy=frame_energy(chunk),
                    is_speaking=self.is_speaking,
                )
            )

    def _clamp_silence(self, frames: int) -> int:
        return max(self.config.min_silence_frames, min(self.config.max_silence_frames, frames))

    @staticmethod
    def _validate(config: VadConfig) -> None:
        if config.frame_size <= 0 or config.sample_rate <= 0:
            raise ValueError("frame_size and sample_rate must be positive")
        if config.min_silence_frames > config.max_silence_frames:
            raise ValueError("min_silence_frames must not exceed max_silence_frames")
        if config.speech_frames < 1:
            raise ValueError("speech_frames must be at least 1")
        if config.visualization_interval < 1:
            raise ValueError("visualization_interval must be at least 1")


__all__ = ["PauseData", "SpeechMode", "VadConfig", "VadSegmenter", "VadState"]
