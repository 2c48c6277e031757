"""Sample format helpers: mixdown, resampling, PCM16 and WAV conversion."""

from __future__ import annotations

import base64
import io
import math
import wave
from pathlib import Path

import numpy as np


def mixdown_to_mono_f32(samples: np.ndarray) -> np.ndarray:
    samples = np.asarray(samples)
    if samples.ndim == 1:
        mono = samples
    elif samples.ndim == 2:
        mono = samples.mean(axis=1)
    else:
        raise ValueError("samples must be 1D (mono) or 2D (frames, channels)")
    return np.asarray(mono, dtype=np.float32)


def resample_f32_linear(samples: np.ndarray, *, from_rate: int, to_rate: int) -> np.ndarray:
    if from_rate <= 0 or to_rate <= 0:
        raise ValueError("sample rates must be > 0")
    samples = np.asarray(samples, dtype=np.float32)
    if from_rate == to_rate or samples.size == 0:
        return samples

    src_len = int(samples.shape[0])
    dst_len = max(int(math.floor(src_len * (to_rate / from_rate))), 1)
    x_old = np.arange(src_len, dtype=np.float32)
    x_new = np.linspace(0.0, src_len - 1, num=dst_len, dtype=np.float32)
    return np.interp(x_new, x_old, samples).astype(np.float32)


def to_mono_16k(raw: np.ndarray, *, input_rate: int, target_rate: int = 16000) -> np.ndarray:
    """Convert a device buffer (frames or frames x channels) to mono float32."""
    mono = mixdown_to_mono_f32(raw)
    if input_rate != target_rate:
        mono = resample_f32_linear(mono, from_rate=input_rate, to_rate=target_rate)
    return mono


def float32_to_pcm16le_bytes(samples: np.ndarray) -> bytes:
    clipped = np.clip(np.asarray(samples, dtype=np.float32), -1.0, 1.0)
    return np.round(clipped * 32767.0).astype("<i2").tobytes()


def pcm16le_bytes_to_float32(data: bytes) -> np.ndarray:
    return np.frombuffer(data, dtype="<i2").astype(np.float32) / 32768.0


def samples_to_wav_base64(samples: np.ndarray, sample_rate: int = 16000) -> str:
    """Encode mono float32 samples as a base64 16-bit WAV string."""
    buf = io.BytesIO()
    with wave.open(buf, "wb") as wf:
        wf.setnchannels(1)
        wf.setsampwidth(2)
        wf.setframerate(sample_rate)
        wf.writeframes(float32_to_pcm16le_bytes(samples))
    return base64.b64encode(buf.getvalue()).decode("ascii")


def read_wav_f32(path: Path, *, target_rate: int = 16000) -> np.ndarray:
    """Read a 16-bit PCM WAV file as mono float32 at ``target_rate``."""
    with wave.open(str(path), "rb") as wf:
        if wf.getsampwidth() != 2:
            raise ValueError(f"{path}: only 16-bit PCM WAV is supported")
        channels = wf.getnchannels()
        rate = wf.getframerate()
        data = wf.readframes(wf.getnframes())

    samples = pcm16le_bytes_to_float32(data)
    if channels > 1:
        samples = samples.reshape(-1, channels)
    return to_mono_16k(samples, input_rate=rate, target_rate=target_rate)
