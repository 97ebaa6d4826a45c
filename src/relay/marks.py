from typing import List

import structlog

logger = structlog.get_logger(__name__)


class MarkTracker:
    """
    Marks sent to Twilio that have not been played back yet.

    Twilio echoes a mark once the audio queued before it has finished
    playing, so a non-empty tracker means the caller may still be hearing
    us. Acks can arrive in any order; removal is by label, first occurrence
    only, and unknown labels are ignored.
    """

    def __init__(self) -> None:
        self._outstanding: List[str] = []

    def record(self, label: str) -> None:
        self._outstanding.append(label)

    def acknowledge(self, label: str) -> bool:
        """Remove `label`. Returns False for unknown or already-cleared labels."""
        try:
            self._outstanding.remove(label)
        except ValueError:
            logger.debug("Ignoring unknown mark acknowledgment", mark_name=label)
            return False
        return True

    def is_armed(self) -> bool:
        return bool(self._outstanding)

    def clear(self) -> None:
        self._outstanding.clear()

    @property
    def outstanding(self) -> List[str]:
        return list(self._outstanding)

    def __len__(self) -> int:
        return len(self._outstanding)
