from typing import Optional


class TurnSequencer:
    """Hands out turn indices for one call: 0, 1, 2, ... never reused."""

    def __init__(self) -> None:
        self._next = 0

    def next(self) -> int:
        index = self._next
        self._next += 1
        return index

    @property
    def current(self) -> Optional[int]:
        """Most recently issued index, or None before the first turn."""
        if self._next == 0:
            return None
        return self._next - 1
