"""Fixed-capacity CPU history for the dashboard graph."""

from __future__ import annotations

from collections import deque

# Upper bound on history length regardless of terminal width.
HARD_CAP = 512


def history_capacity(columns: int, cap: int = HARD_CAP) -> int:
    """Graph width available in a terminal *columns* wide, within [1, cap].

    Two columns are taken by the graph box borders.
    """
    return max(1, min(columns - 2, cap))


class HistoryBuffer:
    """Ring buffer of the most recent values, oldest first.

    The capacity is fixed at construction; once full, each push evicts the
    oldest value.
    """

    def __init__(self, capacity: int) -> None:
        if capacity < 1:
            raise ValueError(f"capacity must be positive, got {capacity}")
        self._values: deque[float] = deque(maxlen=capacity)

    @property
    def capacity(self) -> int:
        maxlen = self._values.maxlen
        assert maxlen is not None
        return maxlen

    def push(self, value: float) -> None:
        self._values.append(value)

    def as_sequence(self) -> tuple[float, ...]:
        return tuple(self._values)

    def __len__(self) -> int:
        return len(self._values)
