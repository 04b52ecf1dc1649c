"""Audio processing utilities."""

from __future__ import annotations

import base64
import wave
from pathlib import Path
from typing import Iterator, Tuple

import numpy as np


def read_wave(path: Path) -> Tuple[np.ndarray, int]:
    with wave.open(str(path), "rb") as wf:
        frames = wf.readframes(wf.getnframes())
        channels = wf.getnchannels()
        sample_rate = wf.getframerate()
    data = np.frombuffer(frames, dtype=np.int16).astype(np.float32)
    if channels > 1:
        data = data.reshape(-1, channels)
    else:
        data = data.reshape(-1, 1)
    data /= 32767.0
    return data, sample_rate


def write_wave(path: Path, data: np.ndarray, sample_rate: int) -> None:
    if data.ndim == 1:
        data = data[:, np.newaxis]
    int16 = float_to_int16(data)
    with wave.open(str(path), "wb") as wf:
        wf.setnchannels(data.shape[1])
        wf.setsampwidth(2)
        wf.setframerate(sample_rate)
        wf.writeframes(int16.tobytes())


def ensure_mono(data: np.ndarray) -> np.ndarray:
    if data.ndim == 1 or data.shape[1] == 1:
        return data.reshape(-1, 1)
    return data.mean(axis=1, keepdims=True)


def resample(array: np.ndarray, sr: int, target_sr: int) -> np.ndarray:
    """Linearly resample a mono ``(n, 1)`` array to ``target_sr``."""

    if sr == target_sr:
        return array
    mono = array[:, 0]
    length = mono.shape[0]
    if length == 0:
        return mono.reshape(0, 1)
    target_length = max(int(round(length * target_sr / sr)), 1)
    if target_length == 1:
        return np.full((1, 1), mono[0], dtype=array.dtype)
    original_positions = np.linspace(0, length - 1, num=length)
    target_positions = np.linspace(0, length - 1, num=target_length)
    resampled = np.interp(target_positions, original_positions, mono).astype(array.dtype, copy=False)
    return resampled.reshape(-1, 1)


def frame_energy(samples: np.ndarray) -> float:
    """Root-mean-square energy of a frame; empty frames have zero energy."""

    flat = np.asarray(samples, dtype=np.float64).reshape(-1)
    if flat.size == 0:
        return 0.0
    return float(np.sqrt(np.mean(flat * flat)))


def float_to_int16(samples: np.ndarray) -> np.ndarray:
    clipped = np.clip(np.asarray(samples, dtype=np.float32), -1.0, 1.0)
    return np.round(clipped * 32767.0).astype(np.int16)


def encode_pcm16(samples: np.ndarray) -> str:
    """Quantise float samples to little-endian 16-bit PCM and base64 encode them."""

    pcm = float_to_int16(samples).astype("<i2", copy=False)
    return base64.b64encode(pcm.tobytes()).decode("ascii")


def decode_pcm16(payload: bytes) -> np.ndarray:
    """Turn raw little-endian 16-bit PCM bytes into float32 samples in ``[-1, 1]``."""

    if len(payload) % 2:
        raise ValueError("PCM payload must contain an even number of bytes")
    pcm = np.frombuffer(payload, dtype="<i2")
    return pcm.astype(np.float32) / 32767.0


def iter_frames(samples: np.ndarray, frame_size: int) -> Iterator[np.ndarray]:
    """Yield consecutive ``frame_size`` slices of a mono signal, dropping the ragged tail."""

    if frame_size <= 0:
        raise ValueError("frame_size must be a positive integer")
    flat = np.asarray(samples, dtype=np.float32).reshape(-1)
    for start in range(0, flat.shape[0] - frame_size + 1, frame_size):
        yield flat[start : start + frame_size]


__all__ = [
    "decode_pcm16",
    "encode_pcm16",
    "ensure_mono",
    "float_to_int16",
    "frame_energy",
    "iter_frames",
    "read_wave",
    "resample",
    "write_wave",
]
