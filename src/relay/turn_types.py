from __future__ import annotations

from dataclasses import dataclass
from typing import NamedTuple


class OrderKey(NamedTuple):
    """
    Playback position of a chunk: `(turn, sub_index)`.

    Tuple ordering gives the required playback order directly.
    """

    turn: int
    sub_index: int

    def successor(self, is_final: bool) -> "OrderKey":
        """Key that becomes eligible once this one has been released."""
        if is_final:
            return self.next_turn()
        return OrderKey(self.turn, self.sub_index + 1)

    def next_turn(self) -> "OrderKey":
        return OrderKey(self.turn + 1, 0)


@dataclass(frozen=True)
class Reply:
    """One (possibly partial) reply produced for a turn."""

    turn: int
    sub_index: int
    text: str
    is_final: bool = False

    @property
    def key(self) -> OrderKey:
        return OrderKey(self.turn, self.sub_index)


@dataclass(frozen=True)
class AudioChunk:
    """
    Synthesized audio for one reply.

    `payload` is opaque to the ordering core (Twilio-ready mu-law 8kHz in
    production). `label` is the unique mark name Twilio echoes back once the
    chunk has been played.
    """

    turn: int
    sub_index: int
    payload: bytes
    label: str
    is_final: bool = False

    @property
    def key(self) -> OrderKey:
        return OrderKey(self.turn, self.sub_index)
