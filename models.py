"""Core data models for the transcription pipeline."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum

import numpy as np

SAMPLE_RATE = 16000


class SessionState(str, Enum):
    IDLE = "IDLE"
    RECORDING = "RECORDING"
    FINALIZING = "FINALIZING"
    ERROR = "ERROR"


class MergePolicy(str, Enum):
    PAUSE = "pause"
    OVERLAP = "overlap"
    DEFERRED = "deferred"


@dataclass
class AudioFrame:
    samples: np.ndarray
    sample_rate: int = SAMPLE_RATE
    timestamp_ms: int = 0


@dataclass
class SpeechSegment:
    samples: np.ndarray
    start_time: float
    end_time: float

    def __post_init__(self) -> None:
        if len(self.samples) == 0:
            raise ValueError("segment must contain samples")
        if self.end_time <= self.start_time:
            raise ValueError("segment end_time must be after start_time")

    @property
    def duration(self) -> float:
        return self.end_time - self.start_time


@dataclass
class RecognitionResult:
    text: str = ""

    @property
    def is_empty(self) -> bool:
        return not self.text.strip()
