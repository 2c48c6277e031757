"""Merge successive recognition results into one running transcript.

Three merge policies are supported, exactly one per session:

``PAUSE``
    Segments are joined with a mark chosen from the previous text's last
    character (question or exclamation particle) or from the silence between
    segments: one second or more is a sentence break, anything shorter a
    comma.
``OVERLAP``
    The longest suffix of the running text (up to ``max_overlap`` chars) that
    repeats at the start of the new text is dropped; otherwise the texts are
    concatenated and the backend's own punctuation is trusted.
``DEFERRED``
    Segments are concatenated raw and a ``Punctuator`` punctuates the whole
    transcript once, at ``finalize()``.

A ``TextAccumulator`` is not thread-safe; the session's recognition worker
is its only user.
"""

from __future__ import annotations

import logging
from typing import Optional

from interfaces import Punctuator
from models import MergePolicy

logger = logging.getLogger(__name__)

QUESTION_PARTICLES = frozenset("吗呢么")
EXCLAMATION_PARTICLES = frozenset("啊呀啦哇哦")
SENTENCE_END_MARKS = frozenset("。！？.!?…")
SOFT_MARKS = frozenset("，、,；;：:")
PUNCTUATION_MARKS = SENTENCE_END_MARKS | SOFT_MARKS

SENTENCE_PAUSE_S = 1.0
MAX_OVERLAP = 10


def pause_mark(previous: str, pause_s: float, sentence_pause_s: float = SENTENCE_PAUSE_S) -> str:
    """Punctuation to insert between ``previous`` and the next segment."""
    if not previous:
        return ""
    last = previous[-1]
    if last in PUNCTUATION_MARKS:
        return ""
    if last in QUESTION_PARTICLES:
        return "？"
    if last in EXCLAMATION_PARTICLES:
        return "！"
    if pause_s >= sentence_pause_s:
        return "。"
    return "，"


def overlap_length(previous: str, new_text: str, max_overlap: int = MAX_OVERLAP) -> int:
    for size in range(min(len(previous), len(new_text), max_overlap), 0, -1):
        if previous[-size:] == new_text[:size]:
            return size
    return 0


def merge_overlapping(previous: str, new_text: str, max_overlap: int = MAX_OVERLAP) -> str:
    return previous + new_text[overlap_length(previous, new_text, max_overlap) :]


def close_sentence(text: str) -> str:
    """Terminate ``text`` with a sentence-ending mark if it lacks one."""
    text = text.rstrip()
    if not text or text[-1] in SENTENCE_END_MARKS:
        return text
    text = text.rstrip("".join(SOFT_MARKS))
    if not text:
        return text
    if text[-1] in QUESTION_PARTICLES:
        return text + "？"
    return text + "。"


class TextAccumulator:
    def __init__(
        self,
        policy: MergePolicy = MergePolicy.PAUSE,
        punctuator: Optional[Punctuator] = None,
        sentence_pause_s: float = SENTENCE_PAUSE_S,
        max_overlap: int = MAX_OVERLAP,
    ) -> None:
        policy = MergePolicy(policy)
        if policy is MergePolicy.DEFERRED and punctuator is None:
            raise ValueError("deferred merge policy needs a punctuator")
        self.policy = policy
        self._punctuator = punctuator
        self._sentence_pause_s = sentence_pause_s
        self._max_overlap = max_overlap
        self._text = ""
        self._last_end: Optional[float] = None

    @property
    def text(self) -> str:
        return self._text

    @property
    def last_segment_end_time(self) -> Optional[float]:
        return self._last_end

    @property
    def punctuator(self) -> Optional[Punctuator]:
        return self._punctuator

    def reset(self) -> None:
        self._text = ""
        self._last_end = None

    def append(self, text: str, start_time: float, end_time: float) -> str:
        text = (text or "").strip()
        if not text:
            return self._text
        self._text = self._merge(text, start_time)
        self._last_end = end_time
        logger.debug("[MERGE] %s +%r -> %r", self.policy.value, text, self._text)
        return self._text

    def preview(self, text: str, start_time: float) -> str:
        """Running text with ``text`` merged in, without committing it."""
        text = (text or "").strip()
        if not text:
            return self._text
        return self._merge(text, start_time)

    def finalize(self) -> Optional[str]:
        text = self._text.strip()
        if not text:
            return None
        if self.policy is MergePolicy.DEFERRED:
            text = self._punctuator.add_punctuation(text).strip()  # type: ignore[union-attr]
        else:
            text = close_sentence(text)
        return text or None

    def _merge(self, text: str, start_time: float) -> str:
        if self.policy is MergePolicy.OVERLAP:
            return merge_overlapping(self._text, text, self._max_overlap)
        if self.policy is MergePolicy.DEFERRED:
            return self._text + text
        last = self._last_end
        pause = start_time - last if last is not None and last > 0 else 0.0
        return self._text + pause_mark(self._text, pause, self._sentence_pause_s) + text
