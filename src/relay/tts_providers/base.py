from __future__ import annotations

from abc import ABC, abstractmethod


class TTSProviderError(Exception):
    """Raised when a provider cannot produce audio for a text."""


class TTSProvider(ABC):
    name: str = "base"

    @abstractmethod
    async def synthesize(self, text: str) -> bytes:
        """Return Twilio-ready mu-law 8kHz audio for `text`."""
        raise NotImplementedError

    async def close(self) -> None:
        return None
