"""Simple JSON-based config store and validated pipeline settings."""

from __future__ import annotations

import json
from dataclasses import asdict, dataclass, fields
from pathlib import Path
from typing import Any

DEFAULT_CONFIG_DIR = Path.home() / ".config" / "pushtalk"
DEFAULT_MODEL_ID = "paraformer"


@dataclass
class VadSettings:
    threshold: float = 0.5
    min_silence_duration: float = 0.5
    min_speech_duration: float = 0.1
    max_speech_duration: float = 15.0
    window_size: int = 512
    buffer_size_seconds: float = 5.0
    sample_rate: int = 16000

    def validate(self) -> None:
        if not (0.0 < self.threshold < 1.0):
            raise ValueError("threshold must be in 0.0..1.0")
        if self.min_silence_duration <= 0:
            raise ValueError("min_silence_duration must be > 0")
        if self.min_speech_duration < 0:
            raise ValueError("min_speech_duration must be >= 0")
        if self.max_speech_duration <= self.min_speech_duration:
            raise ValueError("max_speech_duration must be > min_speech_duration")
        if self.window_size <= 0:
            raise ValueError("window_size must be > 0")
        if self.buffer_size_seconds <= 0:
            raise ValueError("buffer_size_seconds must be > 0")
        if self.sample_rate not in (8000, 16000):
            raise ValueError("sample_rate must be 8000 or 16000")


@dataclass
class EndpointSettings:
    rule1_min_trailing_silence: float = 2.4
    rule2_min_trailing_silence: float = 1.2
    rule3_min_utterance_length: float = 20.0

    def validate(self) -> None:
        if self.rule1_min_trailing_silence <= 0:
            raise ValueError("rule1_min_trailing_silence must be > 0")
        if self.rule2_min_trailing_silence <= 0:
            raise ValueError("rule2_min_trailing_silence must be > 0")
        if self.rule3_min_utterance_length <= 0:
            raise ValueError("rule3_min_utterance_length must be > 0")


def _settings_from_dict(cls: type, data: Any) -> Any:
    if not isinstance(data, dict):
        return cls()
    known = {f.name for f in fields(cls)}
    return cls(**{k: v for k, v in data.items() if k in known})


class JsonConfigStore:
    def __init__(self, path: Path | None = None) -> None:
        self._path = path or DEFAULT_CONFIG_DIR / "config.json"
        self._path.parent.mkdir(parents=True, exist_ok=True)

    @property
    def path(self) -> Path:
        return self._path

    def get_model_id(self) -> str:
        data = self._read_all()
        return str(data.get("model_id", DEFAULT_MODEL_ID))

    def set_model_id(self, model_id: str) -> None:
        self._update(model_id=model_id)

    def get_merge_policy(self) -> str:
        data = self._read_all()
        return str(data.get("merge_policy", ""))

    def set_merge_policy(self, policy: str) -> None:
        self._update(merge_policy=policy)

    def get_api_key(self) -> str:
        data = self._read_all()
        return str(data.get("api_key", ""))

    def set_api_key(self, key: str) -> None:
        self._update(api_key=key)

    def get_models_dir(self) -> Path:
        data = self._read_all()
        value = data.get("models_dir")
        if value:
            return Path(str(value)).expanduser()
        return self._path.parent / "models"

    def set_models_dir(self, path: Path) -> None:
        self._update(models_dir=str(path))

    def get_vad_settings(self) -> VadSettings:
        settings = _settings_from_dict(VadSettings, self._read_all().get("vad"))
        settings.validate()
        return settings

    def set_vad_settings(self, settings: VadSettings) -> None:
        settings.validate()
        self._update(vad=asdict(settings))

    def get_endpoint_settings(self) -> EndpointSettings:
        settings = _settings_from_dict(EndpointSettings, self._read_all().get("endpoint"))
        settings.validate()
        return settings

    def set_endpoint_settings(self, settings: EndpointSettings) -> None:
        settings.validate()
        self._update(endpoint=asdict(settings))

    def _update(self, **values: Any) -> None:
        data = self._read_all()
        data.update(values)
        self._write_all(data)

    def _read_all(self) -> dict:
        if not self._path.exists():
            return {}
        try:
            data = json.loads(self._path.read_text(encoding="utf-8"))
        except (json.JSONDecodeError, OSError):
            return {}
        return data if isinstance(data, dict) else {}

    def _write_all(self, data: dict) -> None:
        self._path.write_text(json.dumps(data, ensure_ascii=False, indent=2), encoding="utf-8")
