"""Fixed-capacity float32 ring buffer holding the most recent audio."""

from __future__ import annotations

import numpy as np


class RingBufferF32:
    def __init__(self, capacity_samples: int) -> None:
        if capacity_samples <= 0:
            raise ValueError("capacity_samples must be > 0")
        self.capacity_samples = capacity_samples
        self._buffer = np.zeros((capacity_samples,), dtype=np.float32)
        self._write_pos = 0
        self._size = 0

    def __len__(self) -> int:
        return self._size

    def clear(self) -> None:
        self._buffer.fill(0.0)
        self._write_pos = 0
        self._size = 0

    def append(self, samples: np.ndarray) -> None:
        samples = np.asarray(samples, dtype=np.float32).reshape(-1)
        if samples.size == 0:
            return
        if samples.size >= self.capacity_samples:
            self._buffer[:] = samples[-self.capacity_samples :]
            self._write_pos = 0
            self._size = self.capacity_samples
            return

        end = self._write_pos + samples.size
        if end <= self.capacity_samples:
            self._buffer[self._write_pos : end] = samples
        else:
            first = self.capacity_samples - self._write_pos
            self._buffer[self._write_pos :] = samples[:first]
            self._buffer[: end - self.capacity_samples] = samples[first:]

        self._write_pos = end % self.capacity_samples
        self._size = min(self._size + samples.size, self.capacity_samples)

    def get_last_samples(self, count: int) -> np.ndarray:
        count = min(max(count, 0), self._size)
        if count == 0:
            return np.zeros((0,), dtype=np.float32)

        start = (self._write_pos - count) % self.capacity_samples
        if start < self._write_pos:
            return self._buffer[start : self._write_pos].copy()
        return np.concatenate([self._buffer[start:], self._buffer[: self._write_pos]])
