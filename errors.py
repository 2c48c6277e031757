"""Shared error codes, user-facing messages and pipeline exceptions."""

from __future__ import annotations

MODEL_MISSING = "MODEL_MISSING"
MODEL_LOAD_FAILED = "MODEL_LOAD_FAILED"
AUDIO_DEVICE_ERROR = "AUDIO_DEVICE_ERROR"
DECODE_FAILED = "DECODE_FAILED"
NETWORK_ERROR = "NETWORK_ERROR"
AUTH_FAILED = "AUTH_FAILED"
ASR_PROTOCOL_ERROR = "ASR_PROTOCOL_ERROR"
SESSION_CANCELLED = "SESSION_CANCELLED"

ERROR_MESSAGES = {
    MODEL_MISSING: "Model files are missing, download the model first.",
    MODEL_LOAD_FAILED: "Model could not be loaded.",
    AUDIO_DEVICE_ERROR: "Microphone could not be opened.",
    DECODE_FAILED: "A speech segment could not be transcribed.",
    NETWORK_ERROR: "Network failed, please retry.",
    AUTH_FAILED: "API key is invalid.",
    ASR_PROTOCOL_ERROR: "ASR response format is invalid.",
    SESSION_CANCELLED: "Recording was cancelled.",
}


class PipelineError(Exception):
    def __init__(self, code: str, message: str = "") -> None:
        super().__init__(message or ERROR_MESSAGES.get(code, code))
        self.code = code
        self.message = message or ERROR_MESSAGES.get(code, code)


class InitializationError(PipelineError):
    """A model or resource could not be opened; the component is unusable."""
