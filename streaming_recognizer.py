"""Streaming recognizer backed by a sherpa-onnx online Paraformer model.

The recognizer owns one decode stream at a time; after ``input_finished()``
the next ``reset()`` replaces it with a fresh one.  ``get_result`` always
returns the whole current hypothesis for the active utterance; callers
replace what they display with it instead of appending.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Optional

import numpy as np

from config import EndpointSettings
from errors import MODEL_LOAD_FAILED, MODEL_MISSING, InitializationError
from recognizer import normalize_spacing

try:
    import sherpa_onnx
except Exception:  # pragma: no cover
    sherpa_onnx = None  # type: ignore

logger = logging.getLogger(__name__)

# Silence appended on stop so audio shorter than the model lookahead decodes.
TAIL_PADDING_SECONDS = 0.3


class SherpaOnnxStreamingRecognizer:
    def __init__(
        self,
        encoder_path: Path,
        decoder_path: Path,
        tokens_path: Path,
        endpoint: Optional[EndpointSettings] = None,
        num_threads: int = 2,
        sample_rate: int = 16000,
    ) -> None:
        missing = [str(p) for p in (encoder_path, decoder_path, tokens_path) if not Path(p).exists()]
        if missing:
            raise InitializationError(MODEL_MISSING, f"model files not found: {', '.join(missing)}")
        if sherpa_onnx is None:
            raise InitializationError(MODEL_LOAD_FAILED, "sherpa-onnx is not installed")

        endpoint = endpoint or EndpointSettings()
        endpoint.validate()
        self.sample_rate = sample_rate
        try:
            self._recognizer: Any = sherpa_onnx.OnlineRecognizer.from_paraformer(
                tokens=str(tokens_path),
                encoder=str(encoder_path),
                decoder=str(decoder_path),
                num_threads=num_threads,
                sample_rate=sample_rate,
                feature_dim=80,
                decoding_method="greedy_search",
                enable_endpoint_detection=True,
                rule1_min_trailing_silence=endpoint.rule1_min_trailing_silence,
                rule2_min_trailing_silence=endpoint.rule2_min_trailing_silence,
                rule3_min_utterance_length=endpoint.rule3_min_utterance_length,
                provider="cpu",
            )
            self._stream: Any = self._recognizer.create_stream()
            self._finished = False
        except Exception as exc:
            raise InitializationError(MODEL_LOAD_FAILED, f"streaming model failed to load: {exc}") from exc
        logger.info("[STREAM] Paraformer streaming recognizer loaded: %s", encoder_path)

    def accept_waveform(self, samples: np.ndarray, sample_rate: int = 16000) -> None:
        samples = np.asarray(samples, dtype=np.float32).reshape(-1)
        if samples.size == 0 or self._stream is None:
            return
        self._stream.accept_waveform(sample_rate, samples)

    def is_ready(self) -> bool:
        if self._stream is None:
            return False
        return bool(self._recognizer.is_ready(self._stream))

    def decode(self) -> None:
        if self._stream is None:
            return
        self._recognizer.decode_stream(self._stream)

    def get_result(self) -> str:
        if self._stream is None:
            return ""
        result = self._recognizer.get_result(self._stream)
        # older wheels return a result object rather than a str
        text = result if isinstance(result, str) else getattr(result, "text", "")
        return normalize_spacing(text)

    def is_endpoint(self) -> bool:
        if self._stream is None:
            return False
        return bool(self._recognizer.is_endpoint(self._stream))

    def reset(self) -> None:
        if self._stream is None:
            return
        if self._finished:
            # a finished stream rejects further audio; start a new one
            self._stream = self._recognizer.create_stream()
            self._finished = False
            return
        self._recognizer.reset(self._stream)

    def input_finished(self) -> None:
        if self._stream is None:
            return
        self._stream.input_finished()
        self._finished = True

    def close(self) -> None:
        self._stream = None
        self._recognizer = None


def tail_padding(sample_rate: int = 16000) -> np.ndarray:
    return np.zeros(int(TAIL_PADDING_SECONDS * sample_rate), dtype=np.float32)
