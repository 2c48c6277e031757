"""One-shot segment recognizers.

Each call to ``transcribe`` decodes one complete ``SpeechSegment`` with a
fresh decode context.  Two backends are provided:

* ``SherpaOnnxSegmentRecognizer`` runs a local SenseVoice or Paraformer
  offline model through sherpa-onnx.
* ``DashscopeSegmentRecognizer`` sends the segment to DashScope
  ``qwen3-asr-flash`` as a base64 WAV and streams back the result.

Both return ``None`` for empty audio, empty text or a failed decode, so a
single bad segment never aborts a recording.
"""

from __future__ import annotations

import logging
import os
import re
from pathlib import Path
from typing import Optional

import numpy as np

from audio_format import samples_to_wav_base64
from errors import (
    ASR_PROTOCOL_ERROR,
    AUTH_FAILED,
    MODEL_LOAD_FAILED,
    MODEL_MISSING,
    NETWORK_ERROR,
    InitializationError,
)

try:
    import sherpa_onnx
except Exception:  # pragma: no cover
    sherpa_onnx = None  # type: ignore

try:
    import dashscope
except Exception:  # pragma: no cover
    dashscope = None  # type: ignore

logger = logging.getLogger(__name__)

_CONTROL_TOKEN_RE = re.compile(r"<\|[^|]*\|>")
_CJK_THEN_LATIN_RE = re.compile(r"([\u4e00-\u9fa5])\s+([A-Za-z0-9])")
_LATIN_THEN_CJK_RE = re.compile(r"([A-Za-z0-9])\s+([\u4e00-\u9fa5])")

OFFLINE_ENGINES = ("sense_voice", "paraformer")


def normalize_spacing(text: str) -> str:
    """Drop spaces the tokenizer puts between Chinese and Latin/digit runs."""
    text = _CJK_THEN_LATIN_RE.sub(r"\1\2", text)
    text = _LATIN_THEN_CJK_RE.sub(r"\1\2", text)
    return text.strip()


def clean_transcript(raw: Optional[str]) -> Optional[str]:
    """Strip ``<|tag|>`` control tokens and spacing artifacts; empty -> None."""
    if not raw:
        return None
    text = normalize_spacing(_CONTROL_TOKEN_RE.sub("", raw))
    return text or None


def _require_files(*paths: Path) -> None:
    missing = [str(p) for p in paths if not Path(p).exists()]
    if missing:
        raise InitializationError(MODEL_MISSING, f"model files not found: {', '.join(missing)}")


class SherpaOnnxSegmentRecognizer:
    def __init__(
        self,
        model_path: Path,
        tokens_path: Path,
        engine: str = "sense_voice",
        num_threads: int = 2,
        language: str = "auto",
        use_itn: bool = True,
        sample_rate: int = 16000,
    ) -> None:
        if engine not in OFFLINE_ENGINES:
            raise ValueError(f"unsupported offline engine: {engine}")
        _require_files(model_path, tokens_path)
        if sherpa_onnx is None:
            raise InitializationError(MODEL_LOAD_FAILED, "sherpa-onnx is not installed")

        self.engine = engine
        try:
            if engine == "sense_voice":
                self._recognizer = sherpa_onnx.OfflineRecognizer.from_sense_voice(
                    model=str(model_path),
                    tokens=str(tokens_path),
                    num_threads=num_threads,
                    sample_rate=sample_rate,
                    feature_dim=80,
                    decoding_method="greedy_search",
                    language=language,
                    use_itn=use_itn,
                    provider="cpu",
                )
            else:
                self._recognizer = sherpa_onnx.OfflineRecognizer.from_paraformer(
                    paraformer=str(model_path),
                    tokens=str(tokens_path),
                    num_threads=num_threads,
                    sample_rate=sample_rate,
                    feature_dim=80,
                    decoding_method="greedy_search",
                    provider="cpu",
                )
        except Exception as exc:
            raise InitializationError(MODEL_LOAD_FAILED, f"{engine} model failed to load: {exc}") from exc
        logger.info("[ASR] %s recognizer loaded: %s", engine, model_path)

    def transcribe(self, samples: np.ndarray, sample_rate: int = 16000) -> Optional[str]:
        if self._recognizer is None:
            raise RuntimeError("recognizer is closed")
        samples = np.asarray(samples, dtype=np.float32).reshape(-1)
        if samples.size == 0:
            return None
        try:
            stream = self._recognizer.create_stream()
            stream.accept_waveform(sample_rate, samples)
            self._recognizer.decode_stream(stream)
            raw = stream.result.text
        except Exception as exc:
            logger.warning("[ASR] %s decode failed: %s", self.engine, exc)
            return None
        return clean_transcript(raw)

    def close(self) -> None:
        self._recognizer = None


class DashscopeSegmentRecognizer:
    def __init__(
        self,
        api_key: str = "",
        model: str = "qwen3-asr-flash",
        request_timeout_s: float = 10.0,
    ) -> None:
        self._api_key = api_key or os.getenv("DASHSCOPE_API_KEY", "")
        if not self._api_key:
            raise InitializationError(AUTH_FAILED, "No API key configured")
        if dashscope is None:
            raise InitializationError(MODEL_LOAD_FAILED, "dashscope is not installed")
        self._model = model
        self._request_timeout_s = request_timeout_s

    def transcribe(self, samples: np.ndarray, sample_rate: int = 16000) -> Optional[str]:
        samples = np.asarray(samples, dtype=np.float32).reshape(-1)
        if samples.size == 0:
            return None
        wav_b64 = samples_to_wav_base64(samples, sample_rate)

        latest_text = ""
        try:
            response = dashscope.MultiModalConversation.call(
                api_key=self._api_key,
                model=self._model,
                messages=[
                    {"role": "system", "content": [{"text": ""}]},
                    {"role": "user", "content": [{"audio": wav_b64}]},
                ],
                result_format="message",
                asr_options={"enable_itn": False},
                stream=True,
                timeout=self._request_timeout_s,
            )
            for chunk in response:
                text = self._extract_text(chunk)
                if text:
                    latest_text = text
        except Exception as exc:
            code, retryable = classify_error(exc)
            logger.warning("[ASR] dashscope call failed (%s, retryable=%s): %s", code, retryable, exc)
            return None
        return clean_transcript(latest_text)

    def close(self) -> None:
        pass

    def _extract_text(self, chunk: object) -> str:
        """Pull text from a dashscope streaming chunk dict."""
        if isinstance(chunk, dict):
            output = chunk.get("output", {})
            choices = output.get("choices", [])
            if not choices:
                return ""
            message = choices[0].get("message", {})
            content = message.get("content", [])
            if not content:
                return ""
            value = content[0]
            if isinstance(value, dict):
                return str(value.get("text", ""))
        return ""


def classify_error(exc: Exception) -> tuple[str, bool]:
    """Map an SDK/network exception to an error code and retryability."""
    low = str(exc).lower()
    if "401" in low or "auth" in low or "api key" in low:
        return AUTH_FAILED, False
    if isinstance(exc, (ConnectionError, TimeoutError)) or any(
        word in low for word in ("timeout", "network", "connection")
    ):
        return NETWORK_ERROR, True
    return ASR_PROTOCOL_ERROR, True
