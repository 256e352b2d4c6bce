# services/progress_aggregator.py
from typing import List


class ProgressAggregator:
    """Folds per-chunk progress into a single job percentage.

    A chunk's value never goes down, so the job value computed from them is
    non-decreasing for the lifetime of one attempt.
    """

    def __init__(self, chunk_count: int):
        if chunk_count <= 0:
            raise ValueError("chunk_count must be positive")
        self._values: List[int] = [0] * chunk_count

    @property
    def values(self) -> List[int]:
        return list(self._values)

    @property
    def progress(self) -> int:
        return sum(self._values) // len(self._values)

    @property
    def all_done(self) -> bool:
        return all(value == 100 for value in self._values)

    def update(self, index: int, percent: int) -> int:
        percent = max(0, min(100, int(percent)))
        if percent > self._values[index]:
            self._values[index] = percent
        return self.progress

    def complete(self, index: int) -> int:
        return self.update(index, 100)
