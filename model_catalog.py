"""Known recognition backends and where their files live on disk."""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path

from errors import MODEL_MISSING, InitializationError
from models import MergePolicy

VAD_MODEL_FILE = "silero_vad.onnx"
PUNCTUATION_MODEL_DIR = "sherpa-onnx-punct-ct-transformer-zh-en-vocab272727-2024-04-12"
PUNCTUATION_MODEL_FILE = "model.onnx"


@dataclass(frozen=True)
class ModelType:
    id: str
    title: str
    engine: str
    needs_segmentation: bool
    directory: str = ""
    files: dict[str, str] = field(default_factory=dict)
    default_merge_policy: MergePolicy = MergePolicy.PAUSE

    @property
    def is_local(self) -> bool:
        return bool(self.files)


MODEL_TYPES: dict[str, ModelType] = {
    m.id: m
    for m in (
        ModelType(
            id="paraformer",
            title="Paraformer (zh, offline)",
            engine="paraformer",
            needs_segmentation=True,
            directory="sherpa-onnx-paraformer-zh-2024-03-09",
            files={"model": "model.int8.onnx", "tokens": "tokens.txt"},
            default_merge_policy=MergePolicy.PAUSE,
        ),
        ModelType(
            id="sensevoice-small",
            title="SenseVoice Small (zh/en/ja/ko/yue, offline)",
            engine="sense_voice",
            needs_segmentation=True,
            directory="sherpa-onnx-sense-voice-zh-en-ja-ko-yue-2024-07-17",
            files={"model": "model.int8.onnx", "tokens": "tokens.txt"},
            default_merge_policy=MergePolicy.OVERLAP,
        ),
        ModelType(
            id="streaming-paraformer",
            title="Paraformer (zh/en, streaming)",
            engine="online_paraformer",
            needs_segmentation=False,
            directory="sherpa-onnx-streaming-paraformer-bilingual-zh-en",
            files={
                "encoder": "encoder.int8.onnx",
                "decoder": "decoder.int8.onnx",
                "tokens": "tokens.txt",
            },
            default_merge_policy=MergePolicy.PAUSE,
        ),
        ModelType(
            id="qwen3-asr-flash",
            title="Qwen3 ASR Flash (DashScope cloud)",
            engine="dashscope",
            needs_segmentation=True,
            default_merge_policy=MergePolicy.OVERLAP,
        ),
    )
}


def get_model_type(model_id: str) -> ModelType:
    try:
        return MODEL_TYPES[model_id]
    except KeyError:
        known = ", ".join(sorted(MODEL_TYPES))
        raise ValueError(f"unknown model id {model_id!r} (known: {known})") from None


def model_directory(model: ModelType, models_dir: Path) -> Path:
    return Path(models_dir) / model.directory


def resolve_model_files(model: ModelType, models_dir: Path) -> dict[str, Path]:
    """Absolute paths of every file ``model`` needs; raises if any is missing."""
    base = model_directory(model, models_dir)
    paths = {role: base / name for role, name in model.files.items()}
    missing = [str(p) for p in paths.values() if not p.exists()]
    if missing:
        raise InitializationError(
            MODEL_MISSING, f"{model.id} is not downloaded, missing: {', '.join(missing)}"
        )
    return paths


def is_model_downloaded(model: ModelType, models_dir: Path) -> bool:
    if not model.is_local:
        return True
    try:
        resolve_model_files(model, models_dir)
    except InitializationError:
        return False
    return True


def vad_model_path(models_dir: Path) -> Path:
    return Path(models_dir) / VAD_MODEL_FILE


def punctuation_model_path(models_dir: Path) -> Path:
    return Path(models_dir) / PUNCTUATION_MODEL_DIR / PUNCTUATION_MODEL_FILE
