"""Dedicated thread that runs the VAD segmenter off the orchestration loop."""

from __future__ import annotations

import queue
import threading
import time
from typing import Any, Callable, Dict, Iterable, Optional, Tuple

import numpy as np

from ...events import Event
from ...logging import get_logger
from .vad import VadSegmenter

LOGGER = get_logger(__name__)

_FRAME = "frame"
_RESET = "reset"
_PARAMS = "params"
_FLUSH = "flush"

Command = Tuple[str, Any]


class VadWorker:
    """Feed frames to a :class:`VadSegmenter` on its own thread.

    Producers only enqueue commands; the segmenter is touched exclusively by the
    worker thread and every produced event is handed to ``sink``. Callers that
    live on an asyncio loop typically pass a sink that forwards through
    ``loop.call_soon_threadsafe``.
    """

    def __init__(
        self,
        segmenter: VadSegmenter,
        sink: Callable[[Event], None],
        stats_interval: float = 1.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._segmenter = segmenter
        self._sink = sink
        self._stats_interval = stats_interval
        self._clock = clock
        self._queue: "queue.Queue[Command]" = queue.Queue()
        self._thread: Optional[threading.Thread] = None
        self._stop_event = threading.Event()
        self._last_stats = 0.0

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        if self.is_running:
            return
        self._stop_event.clear()
        self._last_stats = self._clock()
        self._thread = threading.Thread(target=self._run, name="cueline-vad", daemon=True)
        self._thread.start()
        LOGGER.info("VAD worker started")

    def submit(self, samples: np.ndarray) -> None:
        self._queue.put((_FRAME, samples))

    def submit_many(self, frames: Iterable[np.ndarray]) -> None:
        for frame in frames:
            self.submit(frame)

    def request_reset(self) -> None:
        self._queue.put((_RESET, None))

    def update_parameters(self, **parameters: Any) -> None:
        self._queue.put((_PARAMS, parameters))

    def flush(self, timeout: Optional[float] = None) -> bool:
        """Block until every command queued before this call was processed."""

        if not self.is_running:
            return False
        marker = threading.Event()
        self._queue.put((_FLUSH, marker))
        return marker.wait(timeout)

    def stop(self, timeout: float = 1.0) -> None:
        thread = self._thread
        if thread is None:
            return
        self._stop_event.set()
        thread.join(timeout=timeout)
        self._thread = None
        self._drain_queue()
        LOGGER.info("VAD worker stopped")

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------
    def _run(self) -> None:
        while not self._stop_event.is_set():
            try:
                command = self._queue.get(timeout=0.05)
            except queue.Empty:
                self._maybe_emit_stats()
                continue
            self._handle(command)
            self._maybe_emit_stats()

    def _handle(self, command: Command) -> None:
        kind, payload = command
        if kind == _FRAME:
            try:
                events = self._segmenter.process_frame(payload)
            except ValueError as exc:
                LOGGER.warning("Dropping malformed audio frame: %s", exc)
                return
            self._deliver(events)
        elif kind == _RESET:
            self._segmenter.reset()
        elif kind == _PARAMS:
            params: Dict[str, Any] = payload
            try:
                self._segmenter.update_parameters(**params)
            except ValueError as exc:
                LOGGER.warning("Rejected VAD parameter update %s: %s", params, exc)
        elif kind == _FLUSH:
            payload.set()

    def _maybe_emit_stats(self) -> None:
        now = self._clock()
        if now - self._last_stats < self._stats_interval:
            return
        self._last_stats = now
        self._deliver([self._segmenter.stats()])

    def _deliver(self, events: Iterable[Event]) -> None:
        for event in events:
            try:
                self._sink(event)
            except Exception:  # pragma: no cover - sinks should not stop the audio path
                LOGGER.exception("VAD event sink raised an exception")

    def _drain_queue(self) -> None:
        while not self._queue.empty():
            try:
                kind, payload = self._queue.get_nowait()
            except queue.Empty:
                break
            if kind == _FLUSH:
                payload.set()


__all__ = ["VadWorker"]
