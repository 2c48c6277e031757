from __future__ import annotations

import threading
import time
from collections import deque
from queue import Queue

import numpy as np
import pytest

from accumulator import TextAccumulator
from errors import AUDIO_DEVICE_ERROR, DECODE_FAILED, SESSION_CANCELLED
from model_catalog import MODEL_TYPES
from models import AudioFrame, MergePolicy, SessionState, SpeechSegment
from session_controller import TranscriptionSession
from streaming_recognizer import TAIL_PADDING_SECONDS

SEGMENTED = MODEL_TYPES["paraformer"]
STREAMING = MODEL_TYPES["streaming-paraformer"]


def _segment(tag: int, start: float, end: float) -> SpeechSegment:
    n = int(round((end - start) * 16000))
    return SpeechSegment(samples=np.full((n,), float(tag), dtype=np.float32), start_time=start, end_time=end)


def _frame(n: int = 1600) -> AudioFrame:
    return AudioFrame(samples=np.zeros((n,), dtype=np.float32))


class FakeRecorder:
    def __init__(self, fail: bool = False) -> None:
        self.fail = fail
        self.start_calls = 0
        self.stopped = False
        self.queue: Queue[AudioFrame | None] | None = None

    def start(self, audio_queue: Queue[AudioFrame | None]) -> None:
        self.start_calls += 1
        if self.fail:
            raise RuntimeError("no microphone")
        self.queue = audio_queue

    def stop(self) -> None:
        self.stopped = True

    def push(self, count: int = 1) -> None:
        assert self.queue is not None
        for _ in range(count):
            self.queue.put(_frame())


class FakeSegmenter:
    """Releases one scripted segment per fed frame; ``trailing`` on flush."""

    def __init__(self, segments: list[SpeechSegment], trailing: SpeechSegment | None = None) -> None:
        self._script = list(segments)
        self._trailing = trailing
        self._ready: deque[SpeechSegment] = deque()
        self.reset_calls = 0
        self.flushed = False
        self.closed = False

    def accept_waveform(self, samples: np.ndarray) -> None:
        if self._script:
            self._ready.append(self._script.pop(0))

    def has_segment(self) -> bool:
        return bool(self._ready)

    def pop_segment(self) -> SpeechSegment | None:
        return self._ready.popleft() if self._ready else None

    def flush(self) -> None:
        self.flushed = True
        if self._trailing is not None:
            self._ready.append(self._trailing)

    def reset(self) -> None:
        self.reset_calls += 1

    def close(self) -> None:
        self.closed = True


class FakeSegmentRecognizer:
    """Maps the constant sample value of a segment to a transcript."""

    def __init__(self, texts: dict[int, str | None], fail_on: set[int] | None = None, delay_s: float = 0.0) -> None:
        self.texts = texts
        self.fail_on = fail_on or set()
        self.delay_s = delay_s
        self.calls: list[int] = []
        self.closed = False

    def transcribe(self, samples: np.ndarray, sample_rate: int = 16000) -> str | None:
        tag = int(samples[0])
        self.calls.append(tag)
        if self.delay_s and len(self.calls) == 1:
            time.sleep(self.delay_s)
        if tag in self.fail_on:
            raise RuntimeError(f"decoder crashed on {tag}")
        return self.texts.get(tag)

    def close(self) -> None:
        self.closed = True


class FakeStreamingRecognizer:
    """One scripted hypothesis per fed frame (None = unchanged)."""

    def __init__(self, results: list[str | None], endpoints: set[int] | None = None) -> None:
        self._script = list(results)
        self._endpoints = endpoints or set()
        self._pending: str | None = None
        self._current = ""
        self._feeds = -1
        self.accepted: list[int] = []
        self.input_finished_calls = 0
        self._finished = False
        self.reset_calls = 0
        self.closed = False

    def accept_waveform(self, samples: np.ndarray, sample_rate: int = 16000) -> None:
        if self._finished:
            raise RuntimeError("AcceptWaveform called after InputFinished() was called.")
        self.accepted.append(len(samples))
        self._feeds += 1
        if self._script:
            self._pending = self._script.pop(0)

    def is_ready(self) -> bool:
        return self._pending is not None

    def decode(self) -> None:
        self._current = self._pending or self._current
        self._pending = None

    def get_result(self) -> str:
        return self._current

    def is_endpoint(self) -> bool:
        return self._feeds in self._endpoints

    def reset(self) -> None:
        self._current = ""
        self._finished = False
        self.reset_calls += 1

    def input_finished(self) -> None:
        self._finished = True
        self.input_finished_calls += 1

    def close(self) -> None:
        self.closed = True


class FakePunctuator:
    def __init__(self) -> None:
        self.calls: list[str] = []
        self.closed = False

    def add_punctuation(self, text: str) -> str:
        self.calls.append(text)
        return text + "！"

    def close(self) -> None:
        self.closed = True


def _segmented_session(
    segments: list[SpeechSegment],
    texts: dict[int, str | None],
    policy: MergePolicy = MergePolicy.PAUSE,
    **kwargs,
) -> tuple[TranscriptionSession, FakeRecorder, FakeSegmenter, FakeSegmentRecognizer]:
    recorder = FakeRecorder()
    segmenter = FakeSegmenter(segments, trailing=kwargs.pop("trailing", None))
    recognizer = FakeSegmentRecognizer(
        texts, fail_on=kwargs.pop("fail_on", None), delay_s=kwargs.pop("delay_s", 0.0)
    )
    punctuator = kwargs.pop("punctuator", None)
    session = TranscriptionSession(
        recorder=recorder,
        model=SEGMENTED,
        accumulator=TextAccumulator(policy=policy, punctuator=punctuator),
        segmenter=segmenter,
        segment_recognizer=recognizer,
        finalize_timeout_s=kwargs.pop("finalize_timeout_s", 5.0),
        **kwargs,
    )
    return session, recorder, segmenter, recognizer


def _streaming_session(
    streaming: FakeStreamingRecognizer, **kwargs
) -> tuple[TranscriptionSession, FakeRecorder]:
    recorder = FakeRecorder()
    session = TranscriptionSession(
        recorder=recorder,
        model=STREAMING,
        accumulator=TextAccumulator(policy=MergePolicy.PAUSE),
        streaming_recognizer=streaming,
        finalize_timeout_s=5.0,
        **kwargs,
    )
    return session, recorder


# ---------------------------------------------------------------
# Segmented pipeline
# ---------------------------------------------------------------

def test_two_segments_merge_with_pause_punctuation() -> None:
    transitions: list[tuple[SessionState, SessionState]] = []
    results: list[str | None] = []
    session, recorder, segmenter, _ = _segmented_session(
        [_segment(1, 0.0, 1.0), _segment(2, 2.5, 3.2)],
        {1: "你好", 2: "世界"},
        on_state_change=lambda f, t: transitions.append((f, t)),
    )

    session.start_session()
    recorder.push(2)
    text = session.stop_session(callback=results.append)

    assert text == "你好。世界。"
    assert results == ["你好。世界。"]
    assert recorder.stopped is True
    assert segmenter.flushed is True
    assert segmenter.reset_calls == 1
    assert session.state == SessionState.IDLE
    assert transitions == [
        (SessionState.IDLE, SessionState.RECORDING),
        (SessionState.RECORDING, SessionState.FINALIZING),
        (SessionState.FINALIZING, SessionState.IDLE),
    ]


def test_short_pause_joins_with_comma_and_keeps_order() -> None:
    segments = [_segment(i, i * 1.0, i * 1.0 + 0.8) for i in range(1, 5)]
    session, recorder, _, recognizer = _segmented_session(
        segments, {1: "一", 2: "二", 3: "三", 4: "四"}, delay_s=0.1
    )

    session.start_session()
    recorder.push(4)
    text = session.stop_session()

    assert recognizer.calls == [1, 2, 3, 4]
    assert text == "一，二，三，四。"


def test_empty_session_reports_none() -> None:
    results: list[str | None] = []
    session, _, _, recognizer = _segmented_session([], {})

    session.start_session()
    text = session.stop_session(callback=results.append)

    assert text is None
    assert results == [None]
    assert recognizer.calls == []
    assert session.state == SessionState.IDLE


def test_stop_while_idle_calls_back_with_none() -> None:
    results: list[str | None] = []
    session, recorder, _, _ = _segmented_session([], {})

    assert session.stop_session(callback=results.append) is None
    assert results == [None]
    assert recorder.start_calls == 0


def test_start_while_recording_is_noop() -> None:
    session, recorder, segmenter, _ = _segmented_session([], {})

    session.start_session()
    session.start_session()
    assert recorder.start_calls == 1
    assert segmenter.reset_calls == 1

    session.stop_session()
    session.stop_session()
    assert session.state == SessionState.IDLE


def test_flush_recovers_trailing_speech() -> None:
    session, recorder, _, _ = _segmented_session(
        [_segment(1, 0.0, 1.0)],
        {1: "今天天气", 2: "很好"},
        trailing=_segment(2, 1.2, 1.5),
    )

    session.start_session()
    recorder.push()
    assert session.stop_session() == "今天天气，很好。"


def test_failed_segment_is_skipped_and_reported() -> None:
    errors: list[tuple[str, str]] = []
    session, recorder, _, recognizer = _segmented_session(
        [_segment(1, 0.0, 0.5), _segment(2, 0.6, 1.0), _segment(3, 1.1, 1.5)],
        {1: "甲", 3: "丙"},
        fail_on={2},
        on_error=lambda c, m: errors.append((c, m)),
    )

    session.start_session()
    recorder.push(3)
    text = session.stop_session()

    assert recognizer.calls == [1, 2, 3]
    assert text == "甲，丙。"
    assert [code for code, _ in errors] == [DECODE_FAILED]


def test_silent_segment_contributes_nothing() -> None:
    session, recorder, _, _ = _segmented_session(
        [_segment(1, 0.0, 0.5), _segment(2, 0.6, 1.0)],
        {1: None, 2: "好的"},
    )

    session.start_session()
    recorder.push(2)
    assert session.stop_session() == "好的。"


def test_partial_callback_receives_running_text() -> None:
    partials: list[str] = []
    session, recorder, _, _ = _segmented_session(
        [_segment(1, 0.0, 1.0), _segment(2, 1.2, 2.0)],
        {1: "今天", 2: "明天"},
        on_partial=partials.append,
    )

    session.start_session()
    recorder.push(2)
    session.stop_session()

    assert partials == ["今天", "今天，明天"]


def test_deferred_policy_punctuates_once_at_stop() -> None:
    punctuator = FakePunctuator()
    session, recorder, _, _ = _segmented_session(
        [_segment(1, 0.0, 1.0), _segment(2, 3.0, 4.0)],
        {1: "你好", 2: "世界"},
        policy=MergePolicy.DEFERRED,
        punctuator=punctuator,
    )

    session.start_session()
    recorder.push(2)
    text = session.stop_session()

    assert punctuator.calls == ["你好世界"]
    assert text == "你好世界！"


def test_new_session_starts_from_empty_text() -> None:
    session, recorder, _, _ = _segmented_session(
        [_segment(1, 0.0, 1.0), _segment(2, 0.0, 1.0)],
        {1: "第一次", 2: "第二次"},
    )

    session.start_session()
    recorder.push()
    assert session.stop_session() == "第一次。"

    session.start_session()
    recorder.push()
    assert session.stop_session() == "第二次。"


# ---------------------------------------------------------------
# Streaming pipeline
# ---------------------------------------------------------------

def test_streaming_results_replace_instead_of_append() -> None:
    partials: list[str] = []
    streaming = FakeStreamingRecognizer(["你好", "你好世界"])
    session, recorder = _streaming_session(streaming, on_partial=partials.append)

    session.start_session()
    recorder.push(2)
    text = session.stop_session()

    assert partials[:2] == ["你好", "你好世界"]
    assert all("你好你好" not in p for p in partials)
    assert text == "你好世界。"


def test_streaming_stop_pads_tail_and_finishes_input() -> None:
    streaming = FakeStreamingRecognizer(["测试"])
    session, recorder = _streaming_session(streaming)

    session.start_session()
    recorder.push()
    session.stop_session()

    assert streaming.accepted[-1] == int(TAIL_PADDING_SECONDS * 16000) == 4800
    assert streaming.input_finished_calls == 1


def test_streaming_endpoint_commits_utterance_and_resets() -> None:
    script: list[str | None] = ["今天", "今天天气"] + [None] * 12 + ["很好"]
    streaming = FakeStreamingRecognizer(script, endpoints={1})
    session, recorder = _streaming_session(streaming)

    session.start_session()
    resets_at_start = streaming.reset_calls
    recorder.push(len(script))
    text = session.stop_session()

    assert text == "今天天气。很好。"
    # one reset at the endpoint, one after the final flush
    assert streaming.reset_calls == resets_at_start + 2


def test_second_streaming_session_gets_a_fresh_stream() -> None:
    errors: list[tuple[str, str]] = []
    streaming = FakeStreamingRecognizer(["你好", None, "再见"])
    session, recorder = _streaming_session(streaming, on_error=lambda c, m: errors.append((c, m)))

    session.start_session()
    recorder.push()
    assert session.stop_session() == "你好。"

    session.start_session()
    recorder.push()
    assert session.stop_session() == "再见。"

    assert errors == []
    assert streaming.input_finished_calls == 2


def test_streaming_session_without_speech_returns_none() -> None:
    streaming = FakeStreamingRecognizer([None, None])
    session, recorder = _streaming_session(streaming)

    session.start_session()
    recorder.push(2)
    assert session.stop_session() is None


# ---------------------------------------------------------------
# Failure, cancel and teardown
# ---------------------------------------------------------------

def test_recorder_failure_reports_and_returns_to_idle() -> None:
    errors: list[tuple[str, str]] = []
    transitions: list[tuple[SessionState, SessionState]] = []
    segmenter = FakeSegmenter([])
    session = TranscriptionSession(
        recorder=FakeRecorder(fail=True),
        model=SEGMENTED,
        accumulator=TextAccumulator(),
        segmenter=segmenter,
        segment_recognizer=FakeSegmentRecognizer({}),
        finalize_timeout_s=5.0,
        on_error=lambda c, m: errors.append((c, m)),
        on_state_change=lambda f, t: transitions.append((f, t)),
    )

    session.start_session()

    assert session.state == SessionState.IDLE
    assert errors[0][0] == AUDIO_DEVICE_ERROR
    assert (SessionState.ERROR, SessionState.IDLE) in transitions
    assert segmenter.flushed is False


def test_cancel_session_discards_pending_audio() -> None:
    errors: list[tuple[str, str]] = []
    session, recorder, segmenter, _ = _segmented_session(
        [_segment(1, 0.0, 1.0)], {1: "不要"}, on_error=lambda c, m: errors.append((c, m))
    )

    session.start_session()
    assert session.state == SessionState.RECORDING
    recorder.push()
    session.cancel_session("test cancel")

    assert session.state == SessionState.IDLE
    assert recorder.stopped is True
    assert segmenter.flushed is False
    assert errors == [(SESSION_CANCELLED, "test cancel")]


def test_cancel_session_from_idle_is_noop() -> None:
    session, _, _, _ = _segmented_session([], {})
    session.cancel_session("noop")
    assert session.state == SessionState.IDLE


def test_close_releases_models_and_blocks_restart() -> None:
    punctuator = FakePunctuator()
    session, _, segmenter, recognizer = _segmented_session(
        [], {}, policy=MergePolicy.DEFERRED, punctuator=punctuator
    )

    session.start_session()
    session.close()

    assert session.state == SessionState.IDLE
    assert segmenter.closed and recognizer.closed and punctuator.closed
    with pytest.raises(RuntimeError, match="closed"):
        session.start_session()


def test_constructor_requires_matching_components() -> None:
    with pytest.raises(ValueError):
        TranscriptionSession(recorder=FakeRecorder(), model=SEGMENTED, accumulator=TextAccumulator())
    with pytest.raises(ValueError):
        TranscriptionSession(
            recorder=FakeRecorder(),
            model=STREAMING,
            accumulator=TextAccumulator(),
            segmenter=FakeSegmenter([]),
            segment_recognizer=FakeSegmentRecognizer({}),
        )


def test_stop_from_another_thread_delivers_single_callback() -> None:
    results: list[str | None] = []
    session, recorder, _, _ = _segmented_session([_segment(1, 0.0, 1.0)], {1: "好"})

    session.start_session()
    recorder.push()
    worker = threading.Thread(target=session.stop_session, kwargs={"callback": results.append})
    worker.start()
    worker.join(timeout=5.0)

    assert results == ["好。"]


def test_late_result_after_timeout_does_not_leak_into_next_session() -> None:
    errors: list[tuple[str, str]] = []
    partials: list[str] = []
    session, recorder, _, recognizer = _segmented_session(
        [_segment(1, 0.0, 1.0)],
        {1: "旧的"},
        delay_s=0.6,
        finalize_timeout_s=0.1,
        on_error=lambda c, m: errors.append((c, m)),
        on_partial=partials.append,
    )

    session.start_session()
    recorder.push()
    deadline = time.time() + 2.0
    while not recognizer.calls and time.time() < deadline:
        time.sleep(0.01)
    assert session.stop_session() is None
    assert [code for code, _ in errors] == [DECODE_FAILED]

    # waits for the abandoned worker before starting over
    session.start_session()
    assert recognizer.calls == [1]
    assert partials == []
    assert session.stop_session() is None
