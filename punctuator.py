"""Offline punctuation restoration with a sherpa-onnx CT-Transformer model."""

from __future__ import annotations

import logging
from pathlib import Path

from errors import MODEL_LOAD_FAILED, MODEL_MISSING, InitializationError

try:
    import sherpa_onnx
except Exception:  # pragma: no cover
    sherpa_onnx = None  # type: ignore

logger = logging.getLogger(__name__)


class SherpaOnnxPunctuator:
    def __init__(self, model_path: Path, num_threads: int = 2) -> None:
        if not Path(model_path).exists():
            raise InitializationError(MODEL_MISSING, f"punctuation model not found: {model_path}")
        if sherpa_onnx is None:
            raise InitializationError(MODEL_LOAD_FAILED, "sherpa-onnx is not installed")
        try:
            config = sherpa_onnx.OfflinePunctuationConfig(
                model=sherpa_onnx.OfflinePunctuationModelConfig(
                    ct_transformer=str(model_path),
                    num_threads=num_threads,
                    debug=False,
                    provider="cpu",
                )
            )
            self._punct = sherpa_onnx.OfflinePunctuation(config)
        except Exception as exc:
            raise InitializationError(MODEL_LOAD_FAILED, f"punctuation model failed to load: {exc}") from exc
        logger.info("[PUNCT] CT-Transformer loaded: %s", model_path)

    def add_punctuation(self, text: str) -> str:
        if not text or self._punct is None:
            return text
        try:
            return self._punct.add_punctuation(text)
        except Exception as exc:
            logger.warning("[PUNCT] Punctuation failed, keeping raw text: %s", exc)
            return text

    def close(self) -> None:
        self._punct = None
