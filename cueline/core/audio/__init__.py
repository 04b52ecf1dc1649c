"""Voice activity detection components."""

from .vad import PauseData, SpeechMode, VadConfig, VadSegmenter, VadState
from .worker import VadWorker

__all__ = ["PauseData", "SpeechMode", "VadConfig", "VadSegmenter", "VadState", "VadWorker"]
