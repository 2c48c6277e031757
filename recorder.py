"""Audio frame sources: microphone capture and WAV file playback."""

from __future__ import annotations

import logging
import threading
import time
from pathlib import Path
from queue import Full, Queue
from typing import Any, Optional

import numpy as np

from audio_format import read_wav_f32, to_mono_16k
from models import SAMPLE_RATE, AudioFrame

try:
    import sounddevice as sd
except Exception:  # pragma: no cover
    sd = None  # type: ignore

logger = logging.getLogger(__name__)


class SoundDeviceRecorder:
    """Captures the default (or given) input device as mono 16 kHz float32.

    The device is opened at its native sample rate and channel count; the
    callback mixes down and resamples before enqueueing, and drops frames
    instead of blocking when the queue is full.
    """

    def __init__(
        self,
        device: Optional[int | str] = None,
        target_rate: int = SAMPLE_RATE,
        chunk_ms: int = 100,
    ) -> None:
        self.device = device
        self.target_rate = target_rate
        self.chunk_ms = chunk_ms
        self.input_rate = target_rate
        self._stream: Any = None
        self._running = False
        self._lock = threading.Lock()
        self.dropped_chunks = 0
        self._audio_queue: Queue[AudioFrame | None] | None = None

    def start(self, audio_queue: Queue[AudioFrame | None]) -> None:
        with self._lock:
            if self._running:
                return
            if sd is None:
                raise RuntimeError("sounddevice is not installed")
            self._audio_queue = audio_queue
            self.dropped_chunks = 0
            info = sd.query_devices(self.device, kind="input")
            self.input_rate = int(info.get("default_samplerate") or self.target_rate)
            channels = max(1, min(int(info.get("max_input_channels") or 1), 2))
            blocksize = int(self.input_rate * (self.chunk_ms / 1000.0))
            self._stream = sd.InputStream(
                device=self.device,
                samplerate=self.input_rate,
                channels=channels,
                dtype="float32",
                blocksize=blocksize,
                callback=self._on_audio,
            )
            self._stream.start()
            self._running = True
            logger.info("[MIC] Capturing at %d Hz x%d -> %d Hz mono", self.input_rate, channels, self.target_rate)

    def stop(self) -> None:
        with self._lock:
            if not self._running:
                return
            self._running = False
            if self._stream is not None:
                self._stream.stop()
                self._stream.close()
                self._stream = None
            if self.dropped_chunks:
                logger.warning("[MIC] Dropped %d audio chunks (queue full)", self.dropped_chunks)

    def _on_audio(self, indata: Any, frames: int, time_info: Any, status: Any) -> None:
        if not self._running or self._audio_queue is None:
            return
        if status:
            logger.debug("[MIC] Stream status: %s", status)
        samples = to_mono_16k(np.asarray(indata), input_rate=self.input_rate, target_rate=self.target_rate)
        frame = AudioFrame(
            samples=samples,
            sample_rate=self.target_rate,
            timestamp_ms=int(time.time() * 1000),
        )
        try:
            self._audio_queue.put_nowait(frame)
        except Full:
            self.dropped_chunks += 1


class WavFileSource:
    """Feeds a WAV file into the session as if it were being recorded."""

    def __init__(self, path: Path, chunk_ms: int = 100, realtime: bool = False) -> None:
        self.path = Path(path)
        self.chunk_ms = chunk_ms
        self.realtime = realtime
        self._samples = read_wav_f32(self.path, target_rate=SAMPLE_RATE)
        self._thread: Optional[threading.Thread] = None
        self._stop_event = threading.Event()
        self.finished = threading.Event()

    @property
    def duration_s(self) -> float:
        return self._samples.size / SAMPLE_RATE

    def start(self, audio_queue: Queue[AudioFrame | None]) -> None:
        if self._thread and self._thread.is_alive():
            return
        self._stop_event.clear()
        self.finished.clear()
        self._thread = threading.Thread(target=self._feed, args=(audio_queue,), daemon=True)
        self._thread.start()

    def stop(self) -> None:
        self._stop_event.set()
        if self._thread and self._thread.is_alive():
            self._thread.join()

    def _feed(self, audio_queue: Queue[AudioFrame | None]) -> None:
        chunk = int(SAMPLE_RATE * self.chunk_ms / 1000)
        for offset in range(0, self._samples.size, chunk):
            if self._stop_event.is_set():
                break
            audio_queue.put(
                AudioFrame(
                    samples=self._samples[offset : offset + chunk],
                    timestamp_ms=int(offset * 1000 / SAMPLE_RATE),
                )
            )
            if self.realtime:
                time.sleep(self.chunk_ms / 1000.0)
        self.finished.set()
