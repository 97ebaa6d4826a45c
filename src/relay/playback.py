"""
Playback reorder buffer.

Synthesis for different replies finishes in any order, but the caller must
hear them in the order the turns were generated. Finished chunks are parked
here keyed by `(turn, sub_index)` and released only when every earlier key
has gone out:

- sub-indices of a turn are released in ascending order
- turn N+1 starts only after the final sub-index of turn N was released
- an interrupted turn is skipped: the cursor jumps to (N+1, 0) and any late
  chunk for N is dropped

There is no timeout. A chunk that never arrives blocks its successors until
the turn is invalidated or the call ends.
"""

from typing import Callable, Dict, List, Optional

import structlog

from src.relay.turn_types import AudioChunk, OrderKey

logger = structlog.get_logger(__name__)


class PlaybackBuffer:
    """Releases audio chunks strictly in order-key order."""

    def __init__(self, on_release: Optional[Callable[[AudioChunk], None]] = None):
        self._on_release = on_release
        self._pending: Dict[OrderKey, AudioChunk] = {}
        self._cursor = OrderKey(0, 0)
        self.released_count = 0
        self.discarded_count = 0

    @property
    def cursor(self) -> OrderKey:
        """Key of the next chunk that may be released."""
        return self._cursor

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    def submit(self, chunk: AudioChunk) -> List[AudioChunk]:
        """
        Park a finished chunk and release everything that is now in order.

        Returns the released chunks in release order. Each one has already
        been handed to `on_release` by the time this returns.
        """
        key = chunk.key

        if key < self._cursor:
            self.discarded_count += 1
            logger.debug(
                "Dropping stale audio chunk",
                turn=chunk.turn,
                sub_index=chunk.sub_index,
                cursor_turn=self._cursor.turn,
                cursor_sub_index=self._cursor.sub_index,
            )
            return []

        if key in self._pending:
            self.discarded_count += 1
            logger.warning(
                "Duplicate audio chunk ignored",
                turn=chunk.turn,
                sub_index=chunk.sub_index,
            )
            return []

        self._pending[key] = chunk
        released = self._release_ready()

        if not released:
            logger.debug(
                "Audio chunk held for ordering",
                turn=chunk.turn,
                sub_index=chunk.sub_index,
                cursor_turn=self._cursor.turn,
                cursor_sub_index=self._cursor.sub_index,
                pending=len(self._pending),
            )
        return released

    def invalidate(self, turn: int) -> List[AudioChunk]:
        """
        Skip the rest of `turn` after an interruption.

        The cursor moves to `(turn + 1, 0)` unless it is already past that
        turn, and every parked chunk for `turn` or earlier is dropped.
        """
        target = OrderKey(turn, 0).next_turn()
        if self._cursor < target:
            self._cursor = target

        stale = [key for key in self._pending if key < self._cursor]
        for key in stale:
            del self._pending[key]
        self.discarded_count += len(stale)

        logger.info(
            "Playback turn invalidated",
            turn=turn,
            cursor_turn=self._cursor.turn,
            dropped=len(stale),
        )
        return self._release_ready()

    def reset(self) -> None:
        """Discard all parked audio (call teardown)."""
        self.discarded_count += len(self._pending)
        self._pending.clear()

    def _release_ready(self) -> List[AudioChunk]:
        released: List[AudioChunk] = []
        while self._cursor in self._pending:
            chunk = self._pending.pop(self._cursor)
            self._cursor = self._cursor.successor(chunk.is_final)
            self.released_count += 1
            released.append(chunk)
            if self._on_release:
                self._on_release(chunk)
        return released
