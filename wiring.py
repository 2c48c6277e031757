"""Builds a ready-to-record ``TranscriptionSession`` from configuration.

Every model is loaded eagerly so that a missing or broken file surfaces
here, before the first recording, as an ``InitializationError``.  To switch
backends the caller closes the current session and builds a new one.
"""

from __future__ import annotations

import logging
from typing import Optional

from accumulator import TextAccumulator
from interfaces import ConfigStore, Punctuator, Recorder
from model_catalog import (
    ModelType,
    get_model_type,
    punctuation_model_path,
    resolve_model_files,
    vad_model_path,
)
from models import MergePolicy
from punctuator import SherpaOnnxPunctuator
from recognizer import DashscopeSegmentRecognizer, SherpaOnnxSegmentRecognizer
from session_controller import (
    ErrorCallback,
    PartialCallback,
    StateCallback,
    TranscriptionSession,
)
from streaming_recognizer import SherpaOnnxStreamingRecognizer
from vad import SileroVadEngine, VoiceActivitySegmenter

logger = logging.getLogger(__name__)


def resolve_merge_policy(model: ModelType, configured: str = "") -> MergePolicy:
    if not configured:
        return model.default_merge_policy
    try:
        return MergePolicy(configured)
    except ValueError:
        known = ", ".join(p.value for p in MergePolicy)
        raise ValueError(f"unknown merge policy {configured!r} (known: {known})") from None


def create_segment_recognizer(model: ModelType, config_store: ConfigStore):
    if model.engine == "dashscope":
        return DashscopeSegmentRecognizer(api_key=config_store.get_api_key(), model=model.id)
    files = resolve_model_files(model, config_store.get_models_dir())
    return SherpaOnnxSegmentRecognizer(
        model_path=files["model"],
        tokens_path=files["tokens"],
        engine=model.engine,
    )


def create_streaming_recognizer(model: ModelType, config_store: ConfigStore) -> SherpaOnnxStreamingRecognizer:
    files = resolve_model_files(model, config_store.get_models_dir())
    return SherpaOnnxStreamingRecognizer(
        encoder_path=files["encoder"],
        decoder_path=files["decoder"],
        tokens_path=files["tokens"],
        endpoint=config_store.get_endpoint_settings(),
    )


def build_session(
    config_store: ConfigStore,
    recorder: Recorder,
    model_id: Optional[str] = None,
    merge_policy: Optional[str] = None,
    on_state_change: Optional[StateCallback] = None,
    on_partial: Optional[PartialCallback] = None,
    on_error: Optional[ErrorCallback] = None,
) -> TranscriptionSession:
    model = get_model_type(model_id or config_store.get_model_id())
    policy = resolve_merge_policy(model, merge_policy if merge_policy is not None else config_store.get_merge_policy())
    models_dir = config_store.get_models_dir()
    logger.info("Building session: model=%s policy=%s models_dir=%s", model.id, policy.value, models_dir)

    punctuator: Optional[Punctuator] = None
    if policy is MergePolicy.DEFERRED:
        punctuator = SherpaOnnxPunctuator(punctuation_model_path(models_dir))

    accumulator = TextAccumulator(policy=policy, punctuator=punctuator)

    if model.needs_segmentation:
        segmenter = VoiceActivitySegmenter(
            SileroVadEngine(vad_model_path(models_dir)),
            config_store.get_vad_settings(),
        )
        return TranscriptionSession(
            recorder=recorder,
            model=model,
            accumulator=accumulator,
            segmenter=segmenter,
            segment_recognizer=create_segment_recognizer(model, config_store),
            on_state_change=on_state_change,
            on_partial=on_partial,
            on_error=on_error,
        )

    return TranscriptionSession(
        recorder=recorder,
        model=model,
        accumulator=accumulator,
        streaming_recognizer=create_streaming_recognizer(model, config_store),
        on_state_change=on_state_change,
        on_partial=on_partial,
        on_error=on_error,
    )
