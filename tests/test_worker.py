import itertools
import threading

import numpy as np

from cueline.core.audio.vad import VadConfig, VadSegmenter
from cueline.core.audio.worker import VadWorker
from cueline.events import StatsSample, VadEvent, VadEventKind


def _collecting_sink():
    events = []
    lock = threading.Lock()

    def sink(event):
        with lock:
            events.append(event)

    return events, sink


def test_worker_processes_frames_in_order():
    events, sink = _collecting_sink()
    worker = VadWorker(VadSegmenter(VadConfig(silence_frames=4)), sink, stats_interval=3600)
    worker.start()
    try:
        worker.submit_many([np.full(480, 0.1)] * 3 + [np.zeros(480)] * 4)
        assert worker.flush(timeout=2.0)
    finally:
        worker.stop()

    kinds = [event.kind for event in events if isinstance(event, VadEvent)]
    assert kinds == [VadEventKind.SPEECH_START, VadEventKind.SPEECH_END]
    assert not worker.is_running


def test_worker_applies_reset_and_parameter_updates():
    events, sink = _collecting_sink()
    segmenter = VadSegmenter()
    worker = VadWorker(segmenter, sink, stats_interval=3600)
    worker.start()
    try:
        worker.submit(np.full(480, 0.1))
        worker.request_reset()
        worker.update_parameters(energy_threshold=0.5)
        worker.update_parameters(speech_frames=0)
        assert worker.flush(timeout=2.0)
    finally:
        worker.stop()

    assert segmenter.processed_frames == 0
    assert segmenter.config.energy_threshold == 0.5
    assert segmenter.config.speech_frames == 1


def test_worker_emits_periodic_stats():
    events, sink = _collecting_sink()
    ticks = itertools.count()
    worker = VadWorker(VadSegmenter(), sink, stats_interval=1.0, clock=lambda: float(next(ticks)))
    worker.start()
    try:
        worker.submit(np.zeros(480))
        assert worker.flush(timeout=2.0)
    finally:
        worker.stop()

    assert any(isinstance(event, StatsSample) for event in events)


def test_flush_without_running_worker_returns_false():
    worker = VadWorker(VadSegmenter(), lambda event: None)

    assert worker.flush(timeout=0.1) is False
    worker.stop()
