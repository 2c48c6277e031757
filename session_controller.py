"""State-machine based transcription session.

A session moves IDLE -> RECORDING -> FINALIZING -> IDLE.  While recording,
three contexts cooperate:

* the recorder callback only enqueues ``AudioFrame``s;
* the pump thread consumes frames and either feeds the VAD segmenter
  (segmented models) or runs the streaming decode loop inline;
* the worker thread runs segment recognition and is the only writer of the
  ``TextAccumulator``.  Everything reaches it through one FIFO queue, so
  results merge in the order the audio was spoken.

``stop_session`` ends capture, lets the pump flush the segmenter (or pad and
drain the streaming decoder), waits for the worker to finalize the text and
only then reports the transcript.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from queue import Queue
from typing import Any, Callable, Optional

import numpy as np

from accumulator import TextAccumulator
from errors import AUDIO_DEVICE_ERROR, DECODE_FAILED, SESSION_CANCELLED
from interfaces import Recorder, SegmentRecognizer, Segmenter, StreamingRecognizer
from model_catalog import ModelType
from models import SAMPLE_RATE, AudioFrame, RecognitionResult, SessionState, SpeechSegment
from streaming_recognizer import tail_padding

logger = logging.getLogger(__name__)

StateCallback = Callable[[SessionState, SessionState], None]
PartialCallback = Callable[[str], None]
ErrorCallback = Callable[[str, str], None]
CompletionCallback = Callable[[Optional[str]], None]


@dataclass
class _Hypothesis:
    result: RecognitionResult
    start_time: float


@dataclass
class _Commit:
    result: RecognitionResult
    start_time: float
    end_time: float


_FINALIZE = object()


@dataclass
class _StreamCursor:
    """Pump-side bookkeeping for the utterance being decoded."""

    fed: int = 0
    text: str = ""
    started_at: int = 0
    changed_at: int = 0


class TranscriptionSession:
    def __init__(
        self,
        recorder: Recorder,
        model: ModelType,
        accumulator: TextAccumulator,
        segmenter: Optional[Segmenter] = None,
        segment_recognizer: Optional[SegmentRecognizer] = None,
        streaming_recognizer: Optional[StreamingRecognizer] = None,
        sample_rate: int = SAMPLE_RATE,
        queue_maxsize: int = 200,
        finalize_timeout_s: Optional[float] = None,
        on_state_change: Optional[StateCallback] = None,
        on_partial: Optional[PartialCallback] = None,
        on_error: Optional[ErrorCallback] = None,
    ) -> None:
        if model.needs_segmentation and (segmenter is None or segment_recognizer is None):
            raise ValueError(f"{model.id} needs a segmenter and a segment recognizer")
        if not model.needs_segmentation and streaming_recognizer is None:
            raise ValueError(f"{model.id} needs a streaming recognizer")

        self._recorder = recorder
        self._model = model
        self._accumulator = accumulator
        self._segmenter = segmenter
        self._segment_recognizer = segment_recognizer
        self._streaming = streaming_recognizer
        self._sample_rate = sample_rate
        self._queue_maxsize = queue_maxsize
        self._finalize_timeout_s = finalize_timeout_s
        self._on_state_change = on_state_change
        self._on_partial = on_partial
        self._on_error = on_error

        self._lock = threading.RLock()
        self._state = SessionState.IDLE
        self._session_id = 0
        self._closed = False
        self._audio_queue: Queue[AudioFrame | None] = Queue(maxsize=queue_maxsize)
        self._cancelled = threading.Event()
        self._pump_thread: Optional[threading.Thread] = None
        self._worker_thread: Optional[threading.Thread] = None
        self._final_text: Optional[str] = None

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def model(self) -> ModelType:
        return self._model

    def start_session(self) -> None:
        with self._lock:
            if self._closed:
                raise RuntimeError("session is closed")
            if self._state != SessionState.IDLE:
                return
            self._join_stale_threads()
            self._session_id += 1
            self._final_text = None
            self._accumulator.reset()
            if self._segmenter is not None:
                self._segmenter.reset()
            if self._streaming is not None:
                self._streaming.reset()

            self._audio_queue = Queue(maxsize=self._queue_maxsize)
            work_queue: Queue[Any] = Queue()
            self._cancelled = threading.Event()
            self._transition(SessionState.RECORDING)

            self._worker_thread = threading.Thread(
                target=self._work,
                args=(work_queue, self._cancelled),
                name=f"transcribe-worker-{self._session_id}",
                daemon=True,
            )
            self._pump_thread = threading.Thread(
                target=self._pump,
                args=(self._audio_queue, work_queue, self._cancelled),
                name=f"transcribe-pump-{self._session_id}",
                daemon=True,
            )
            self._worker_thread.start()
            self._pump_thread.start()
            logger.info("[SESSION] #%d started (model=%s)", self._session_id, self._model.id)
            try:
                self._recorder.start(self._audio_queue)
            except Exception as exc:
                self._fail(AUDIO_DEVICE_ERROR, f"start failed: {exc}")

    def stop_session(self, callback: Optional[CompletionCallback] = None) -> Optional[str]:
        """End the recording and return the final transcript (or None).

        Blocks until every queued segment has been recognized.  ``callback``
        is invoked exactly once with the same value.
        """
        with self._lock:
            recording = self._state == SessionState.RECORDING
            if recording:
                self._transition(SessionState.FINALIZING)
                self._safe_stop_recorder()
                self._audio_queue.put(None)
                pump, worker = self._pump_thread, self._worker_thread
                cancelled = self._cancelled

        if not recording:
            if callback:
                callback(None)
            return None

        finished = self._join(pump, worker)

        with self._lock:
            text: Optional[str] = None
            if not finished:
                cancelled.set()
                logger.warning("[SESSION] #%d finalize timed out", self._session_id)
                self._emit_error(DECODE_FAILED, "final result timeout")
            elif not cancelled.is_set():
                text = self._final_text
            self._final_text = None
            self._transition(SessionState.IDLE)
            logger.info("[SESSION] #%d finished (%d chars)", self._session_id, len(text or ""))

        if callback:
            callback(text)
        return text

    def cancel_session(self, reason: str) -> None:
        with self._lock:
            if self._state == SessionState.IDLE:
                return
            self._emit_error(SESSION_CANCELLED, reason)
            self._cancelled.set()
            if self._state != SessionState.RECORDING:
                # a concurrent stop_session owns the shutdown
                return
            self._safe_stop_recorder()
            self._audio_queue.put(None)
            pump, worker = self._pump_thread, self._worker_thread

        self._join(pump, worker)
        with self._lock:
            self._transition(SessionState.IDLE)

    def close(self) -> None:
        """Cancel any active recording and release every model handle."""
        if self._state != SessionState.IDLE:
            self.cancel_session("session closed")
        with self._lock:
            if self._closed:
                return
            self._closed = True
            for resource in (
                self._segmenter,
                self._segment_recognizer,
                self._streaming,
                self._accumulator.punctuator,
            ):
                close = getattr(resource, "close", None)
                if close is not None:
                    close()
            logger.info("[SESSION] closed (model=%s)", self._model.id)

    # ------------------------------------------------------------------
    # Pump thread: audio frames -> segments / hypotheses
    # ------------------------------------------------------------------

    def _pump(self, audio_queue: Queue, work_queue: Queue, cancelled: threading.Event) -> None:
        cursor = _StreamCursor()
        broken = False
        while True:
            frame = audio_queue.get()
            if frame is None:
                break
            if broken or cancelled.is_set():
                continue
            try:
                if self._model.needs_segmentation:
                    self._feed_segmenter(frame.samples, work_queue)
                else:
                    self._feed_streaming(frame.samples, work_queue, cursor)
            except Exception as exc:
                # keep draining frames so the recorder never blocks
                broken = True
                logger.exception("[SESSION] Audio pipeline failed")
                self._emit_error(DECODE_FAILED, str(exc))

        if not broken and not cancelled.is_set():
            try:
                if self._model.needs_segmentation:
                    self._segmenter.flush()  # type: ignore[union-attr]
                    self._drain_segments(work_queue)
                else:
                    self._finish_streaming(work_queue, cursor)
            except Exception as exc:
                logger.exception("[SESSION] Final flush failed")
                self._emit_error(DECODE_FAILED, str(exc))
        work_queue.put(_FINALIZE)

    def _feed_segmenter(self, samples: np.ndarray, work_queue: Queue) -> None:
        self._segmenter.accept_waveform(samples)  # type: ignore[union-attr]
        self._drain_segments(work_queue)

    def _drain_segments(self, work_queue: Queue) -> None:
        segmenter = self._segmenter
        while segmenter.has_segment():  # type: ignore[union-attr]
            segment = segmenter.pop_segment()  # type: ignore[union-attr]
            if segment is not None:
                work_queue.put(segment)

    def _feed_streaming(self, samples: np.ndarray, work_queue: Queue, cursor: _StreamCursor) -> None:
        streaming = self._streaming
        streaming.accept_waveform(samples, self._sample_rate)  # type: ignore[union-attr]
        cursor.fed += len(samples)
        self._decode_available(work_queue, cursor)
        if streaming.is_endpoint():  # type: ignore[union-attr]
            self._commit_utterance(work_queue, cursor)
            streaming.reset()  # type: ignore[union-attr]

    def _finish_streaming(self, work_queue: Queue, cursor: _StreamCursor) -> None:
        streaming = self._streaming
        streaming.accept_waveform(tail_padding(self._sample_rate), self._sample_rate)  # type: ignore[union-attr]
        streaming.input_finished()  # type: ignore[union-attr]
        self._decode_available(work_queue, cursor)
        self._commit_utterance(work_queue, cursor)
        streaming.reset()  # type: ignore[union-attr]

    def _decode_available(self, work_queue: Queue, cursor: _StreamCursor) -> None:
        streaming = self._streaming
        while streaming.is_ready():  # type: ignore[union-attr]
            streaming.decode()  # type: ignore[union-attr]
        text = streaming.get_result()  # type: ignore[union-attr]
        if text == cursor.text:
            return
        if not cursor.text:
            cursor.started_at = cursor.fed
        cursor.text = text
        cursor.changed_at = cursor.fed
        if text:
            work_queue.put(_Hypothesis(RecognitionResult(text), cursor.started_at / self._sample_rate))

    def _commit_utterance(self, work_queue: Queue, cursor: _StreamCursor) -> None:
        if cursor.text:
            rate = float(self._sample_rate)
            start = cursor.started_at / rate
            end = max(cursor.changed_at / rate, start + 1.0 / rate)
            work_queue.put(_Commit(RecognitionResult(cursor.text), start, end))
        cursor.text = ""

    # ------------------------------------------------------------------
    # Worker thread: recognition and accumulation
    # ------------------------------------------------------------------

    def _work(self, work_queue: Queue, cancelled: threading.Event) -> None:
        while True:
            item = work_queue.get()
            if item is _FINALIZE:
                break
            if cancelled.is_set():
                continue
            try:
                self._handle_work_item(item, cancelled)
            except Exception as exc:
                logger.exception("[SESSION] Recognition step failed")
                self._emit_error(DECODE_FAILED, str(exc))

        if not cancelled.is_set():
            self._final_text = self._accumulator.finalize()

    def _handle_work_item(self, item: Any, cancelled: threading.Event) -> None:
        if isinstance(item, SpeechSegment):
            self._recognize_segment(item, cancelled)
        elif isinstance(item, _Hypothesis):
            self._emit_partial(self._accumulator.preview(item.result.text, item.start_time))
        elif isinstance(item, _Commit):
            if not item.result.is_empty:
                self._emit_partial(
                    self._accumulator.append(item.result.text, item.start_time, item.end_time)
                )
        else:
            raise TypeError(f"Unknown work item: {type(item)}")

    def _recognize_segment(self, segment: SpeechSegment, cancelled: threading.Event) -> None:
        try:
            text = self._segment_recognizer.transcribe(segment.samples, self._sample_rate)  # type: ignore[union-attr]
        except Exception as exc:
            logger.warning(
                "[SESSION] Segment at %.2fs (%.2fs) failed: %s", segment.start_time, segment.duration, exc
            )
            self._emit_error(DECODE_FAILED, str(exc))
            return
        if cancelled.is_set():
            # stop gave up on this session while the segment was decoding
            logger.debug("[SESSION] Dropping late result for segment at %.2fs", segment.start_time)
            return
        if not text:
            logger.debug("[SESSION] Segment at %.2fs (%.2fs) had no speech", segment.start_time, segment.duration)
            return
        self._emit_partial(self._accumulator.append(text, segment.start_time, segment.end_time))

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _join_stale_threads(self) -> None:
        stale = [t for t in (self._pump_thread, self._worker_thread) if t is not None and t.is_alive()]
        if stale:
            logger.info("[SESSION] Waiting for %d thread(s) of session #%d to exit", len(stale), self._session_id)
        for thread in stale:
            thread.join()

    def _join(self, *threads: Optional[threading.Thread]) -> bool:
        for thread in threads:
            if thread is None:
                continue
            thread.join(timeout=self._finalize_timeout_s)
            if thread.is_alive():
                return False
        return True

    def _fail(self, code: str, message: str) -> None:
        self._transition(SessionState.ERROR)
        self._emit_error(code, message)
        self._cancelled.set()
        self._safe_stop_recorder()
        self._audio_queue.put(None)
        self._join(self._pump_thread, self._worker_thread)
        self._transition(SessionState.IDLE)

    def _emit_partial(self, text: str) -> None:
        if self._on_partial and text:
            self._on_partial(text)

    def _emit_error(self, code: str, message: str) -> None:
        if self._on_error:
            self._on_error(code, message)

    def _safe_stop_recorder(self) -> None:
        try:
            self._recorder.stop()
        except Exception:  # pragma: no cover
            logger.warning("[SESSION] Recorder stop failed", exc_info=True)

    def _transition(self, to_state: SessionState) -> None:
        from_state = self._state
        if from_state == to_state:
            return
        self._state = to_state
        logger.debug("[SESSION] State: %s -> %s", from_state.value, to_state.value)
        if self._on_state_change:
            self._on_state_change(from_state, to_state)
