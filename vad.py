"""Voice activity segmentation.

``VoiceActivitySegmenter`` turns a continuous 16 kHz stream into discrete
``SpeechSegment``s.  Audio is scored window by window by a ``VadEngine``
(Silero via onnxruntime in production) and completed segments are queued so
the caller can pull them at its own pace::

    segmenter.accept_waveform(frame.samples)
    while segmenter.has_segment():
        handle(segmenter.pop_segment())

Timestamps are seconds since the last ``reset()``.
"""

from __future__ import annotations

import logging
from collections import deque
from pathlib import Path
from typing import Any, Optional

import numpy as np

from config import VadSettings
from errors import MODEL_LOAD_FAILED, MODEL_MISSING, InitializationError
from interfaces import VadEngine
from models import SpeechSegment
from ring_buffer import RingBufferF32

try:
    import onnxruntime as ort
except Exception:  # pragma: no cover
    ort = None  # type: ignore

logger = logging.getLogger(__name__)


class SileroVadEngine:
    """Streaming Silero VAD (v4 ``h``/``c`` or v5 ``state`` models)."""

    def __init__(self, model_path: Path, num_threads: int = 2) -> None:
        model_path = Path(model_path)
        if not model_path.exists():
            raise InitializationError(MODEL_MISSING, f"VAD model not found: {model_path}")
        if ort is None:
            raise InitializationError(MODEL_LOAD_FAILED, "onnxruntime is not installed")

        options = ort.SessionOptions()
        options.intra_op_num_threads = num_threads
        try:
            self._session: Any = ort.InferenceSession(
                str(model_path), sess_options=options, providers=["CPUExecutionProvider"]
            )
        except Exception as exc:
            raise InitializationError(MODEL_LOAD_FAILED, f"VAD model failed to load: {exc}") from exc

        self._configure_io()
        self._state: dict[str, np.ndarray] = {}
        self.reset()
        logger.info("[VAD] Silero model loaded: %s", model_path)

    def reset(self) -> None:
        self._state = {name: value.copy() for name, value in self._initial_state.items()}

    def speech_probability(self, samples: np.ndarray, *, sample_rate: int) -> float:
        if self._session is None:
            raise RuntimeError("VAD engine is closed")
        chunk = np.asarray(samples, dtype=np.float32).reshape(1, -1)
        feed: dict[str, Any] = {self._audio_input: chunk}
        if self._sr_input is not None:
            feed[self._sr_input] = np.asarray([sample_rate], dtype=np.int64)
        feed.update(self._state)

        outputs = dict(zip(self._output_names, self._session.run(None, feed)))
        for input_name, output_name in self._state_outputs.items():
            self._state[input_name] = np.asarray(outputs[output_name], dtype=np.float32)
        return float(np.asarray(outputs[self._prob_output]).reshape(-1)[0])

    def close(self) -> None:
        self._session = None

    def _configure_io(self) -> None:
        inputs = {i.name: i for i in self._session.get_inputs()}
        self._output_names = [o.name for o in self._session.get_outputs()]
        outputs = set(self._output_names)

        self._audio_input = "input" if "input" in inputs else "x"
        self._sr_input: Optional[str] = "sr" if "sr" in inputs else None
        self._prob_output = "output" if "output" in outputs else self._output_names[0]

        # v5 exposes a single recurrent ``state``; v4 splits it into h/c
        pairs = {"state": ("stateN", "state"), "h": ("hn", "h"), "c": ("cn", "c")}
        self._state_outputs: dict[str, str] = {}
        self._initial_state: dict[str, np.ndarray] = {}
        for name, candidates in pairs.items():
            if name not in inputs:
                continue
            out = next((c for c in candidates if c in outputs), None)
            if out is None:
                continue
            self._state_outputs[name] = out
            shape = [d if isinstance(d, int) and d > 0 else 1 for d in (inputs[name].shape or [])]
            self._initial_state[name] = np.zeros(tuple(shape) or (1,), dtype=np.float32)


class VoiceActivitySegmenter:
    def __init__(self, engine: VadEngine, settings: Optional[VadSettings] = None) -> None:
        self.settings = settings or VadSettings()
        self.settings.validate()
        self._engine = engine

        s = self.settings
        self._window = s.window_size
        self._min_speech_windows = max(1, int(round(s.min_speech_duration * s.sample_rate / s.window_size)))
        self._min_silence_windows = max(1, int(round(s.min_silence_duration * s.sample_rate / s.window_size)))
        self._max_speech_samples = int(s.max_speech_duration * s.sample_rate)

        self._ring = RingBufferF32(capacity_samples=int(s.buffer_size_seconds * s.sample_rate))
        self._segments: deque[SpeechSegment] = deque()
        self._pending = np.zeros((0,), dtype=np.float32)
        self._processed = 0
        self._speech_run = 0
        self._silence_run = 0
        self._in_speech = False
        self._speech_start = 0
        self._speech: list[np.ndarray] = []
        self._speech_len = 0

    @property
    def in_speech(self) -> bool:
        return self._in_speech

    def accept_waveform(self, samples: np.ndarray) -> None:
        samples = np.asarray(samples, dtype=np.float32).reshape(-1)
        if samples.size == 0:
            return
        self._pending = np.concatenate([self._pending, samples])
        offset = 0
        while self._pending.size - offset >= self._window:
            self._process_window(self._pending[offset : offset + self._window])
            offset += self._window
        self._pending = self._pending[offset:].copy()

    def has_segment(self) -> bool:
        return bool(self._segments)

    def pop_segment(self) -> Optional[SpeechSegment]:
        if not self._segments:
            return None
        return self._segments.popleft()

    def flush(self) -> None:
        if self._in_speech:
            if self._pending.size:
                self._speech.append(self._pending.copy())
                self._speech_len += self._pending.size
            self._close_segment()
            self._in_speech = False
        elif self._speech_run:
            logger.debug("[VAD] Dropping %d unconfirmed speech windows on flush", self._speech_run)
        self._processed += self._pending.size
        self._pending = np.zeros((0,), dtype=np.float32)
        self._speech_run = 0
        self._silence_run = 0

    def reset(self) -> None:
        self._engine.reset()
        self._ring.clear()
        self._segments.clear()
        self._pending = np.zeros((0,), dtype=np.float32)
        self._processed = 0
        self._speech_run = 0
        self._silence_run = 0
        self._in_speech = False
        self._speech_start = 0
        self._speech = []
        self._speech_len = 0

    def close(self) -> None:
        close = getattr(self._engine, "close", None)
        if close is not None:
            close()

    # ------------------------------------------------------------------
    # Internal
    # ------------------------------------------------------------------

    def _process_window(self, window: np.ndarray) -> None:
        prob = self._engine.speech_probability(window, sample_rate=self.settings.sample_rate)
        is_speech = prob >= self.settings.threshold
        self._ring.append(window)
        self._processed += window.size

        if not self._in_speech:
            if not is_speech:
                self._speech_run = 0
                return
            self._speech_run += 1
            if self._speech_run < self._min_speech_windows:
                return
            # back-date the segment to the first speech window
            onset = self._ring.get_last_samples(self._speech_run * self._window)
            self._in_speech = True
            self._silence_run = 0
            self._speech = [onset]
            self._speech_len = onset.size
            self._speech_start = self._processed - onset.size
            logger.debug("[VAD] Speech start at %.2fs (prob=%.2f)", self._speech_start / self.settings.sample_rate, prob)
            return

        self._speech.append(window.copy())
        self._speech_len += window.size

        if is_speech:
            self._silence_run = 0
        else:
            self._silence_run += 1
            if self._silence_run >= self._min_silence_windows:
                self._close_segment()
                self._in_speech = False
                self._speech_run = 0
                self._silence_run = 0
                return

        if self._speech_len >= self._max_speech_samples:
            self._close_segment()
            self._speech_start = self._processed
            self._speech = []
            self._speech_len = 0
            self._silence_run = 0

    def _close_segment(self) -> None:
        if self._speech_len == 0:
            return
        samples = np.concatenate(self._speech)
        rate = float(self.settings.sample_rate)
        start = self._speech_start / rate
        segment = SpeechSegment(samples=samples, start_time=start, end_time=start + samples.size / rate)
        self._segments.append(segment)
        self._speech = []
        self._speech_len = 0
        logger.debug("[VAD] Segment %.2fs-%.2fs queued", segment.start_time, segment.end_time)
