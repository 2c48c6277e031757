"""Protocol interfaces used by TranscriptionSession."""

from __future__ import annotations

from pathlib import Path
from queue import Queue
from typing import Optional, Protocol

import numpy as np

from config import EndpointSettings, VadSettings
from models import AudioFrame, SpeechSegment


class Recorder(Protocol):
    def start(self, audio_queue: Queue[AudioFrame | None]) -> None: ...

    def stop(self) -> None: ...


class VadEngine(Protocol):
    def speech_probability(self, samples: np.ndarray, *, sample_rate: int) -> float: ...

    def reset(self) -> None: ...


class Segmenter(Protocol):
    def accept_waveform(self, samples: np.ndarray) -> None: ...

    def has_segment(self) -> bool: ...

    def pop_segment(self) -> Optional[SpeechSegment]: ...

    def flush(self) -> None: ...

    def reset(self) -> None: ...


class SegmentRecognizer(Protocol):
    def transcribe(self, samples: np.ndarray, sample_rate: int = 16000) -> Optional[str]: ...


class StreamingRecognizer(Protocol):
    def accept_waveform(self, samples: np.ndarray, sample_rate: int = 16000) -> None: ...

    def is_ready(self) -> bool: ...

    def decode(self) -> None: ...

    def get_result(self) -> str: ...

    def is_endpoint(self) -> bool: ...

    def reset(self) -> None: ...

    def input_finished(self) -> None: ...


class Punctuator(Protocol):
    def add_punctuation(self, text: str) -> str: ...


class ConfigStore(Protocol):
    def get_model_id(self) -> str: ...

    def set_model_id(self, model_id: str) -> None: ...

    def get_merge_policy(self) -> str: ...

    def set_merge_policy(self, policy: str) -> None: ...

    def get_api_key(self) -> str: ...

    def set_api_key(self, key: str) -> None: ...

    def get_models_dir(self) -> Path: ...

    def get_vad_settings(self) -> VadSettings: ...

    def get_endpoint_settings(self) -> EndpointSettings: ...
