"""
Barge-in detection.

Interim caller text is checked against playback state. The detector is
ARMED while any mark is outstanding (the caller may be hearing us) and IDLE
otherwise. An interruption fires only when ARMED and the caller text is
longer than a small threshold, so breaths and "ok"s do not cut the agent
off.

Cancel protocol, in order:
1. Twilio `clear` so audio already buffered at the edge is dropped
2. forget all outstanding marks (back to IDLE)
3. invalidate the latest issued turn in the playback buffer

Upstream LLM/TTS work for the interrupted turn is left running; the buffer
drops whatever it produces.
"""

from enum import Enum
from typing import TYPE_CHECKING

import structlog

from src.relay.marks import MarkTracker
from src.relay.playback import PlaybackBuffer
from src.relay.sequencer import TurnSequencer

if TYPE_CHECKING:
    from src.relay.twilio_protocol import TwilioGateway

logger = structlog.get_logger(__name__)

DEFAULT_MIN_INTERRUPTION_CHARS = 5


class DetectorState(str, Enum):
    IDLE = "idle"
    ARMED = "armed"


class InterruptionDetector:
    def __init__(
        self,
        *,
        marks: MarkTracker,
        buffer: PlaybackBuffer,
        sequencer: TurnSequencer,
        gateway: "TwilioGateway",
        min_chars: int = DEFAULT_MIN_INTERRUPTION_CHARS,
    ):
        self._marks = marks
        self._buffer = buffer
        self._sequencer = sequencer
        self._gateway = gateway
        self.min_chars = min_chars
        self.interruptions = 0

    @property
    def state(self) -> DetectorState:
        return DetectorState.ARMED if self._marks.is_armed() else DetectorState.IDLE

    def trigger(self, text: str) -> bool:
        """
        Offer live caller text. Returns True if playback was cancelled.
        """
        text = (text or "").strip()

        if self.state != DetectorState.ARMED:
            return False

        if len(text) <= self.min_chars:
            logger.debug(
                "Caller speech below interruption threshold",
                chars=len(text),
                min_chars=self.min_chars,
            )
            return False

        turn = self._sequencer.current
        outstanding = len(self._marks)

        self._gateway.send_clear()
        self._marks.clear()
        if turn is not None:
            self._buffer.invalidate(turn)

        self.interruptions += 1
        logger.info(
            "Barge-in interruption",
            turn=turn,
            outstanding_marks=outstanding,
            chars=len(text),
        )
        return True
