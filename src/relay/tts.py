from __future__ import annotations

import time
import uuid
from typing import Any, Callable, Optional

import structlog

from src.relay.config import get_config
from src.relay.tts_providers.base import TTSProvider
from src.relay.tts_providers.cartesia import CartesiaTTS
from src.relay.tts_providers.deepgram import DeepgramTTS
from src.relay.turn_types import AudioChunk, Reply

logger = structlog.get_logger(__name__)


def new_mark_label() -> str:
    return uuid.uuid4().hex


def create_provider(config: Optional[Any] = None) -> TTSProvider:
    """
    Build the configured TTS provider.

    - `deepgram`: Aura REST, mu-law straight from the API (default)
    - `cartesia`: streaming WebSocket TTS
    """
    config = config or get_config()
    tts = (config.tts_provider or "deepgram").strip().lower()

    if tts == "deepgram":
        return DeepgramTTS(config)
    if tts == "cartesia":
        return CartesiaTTS(config)

    raise ValueError(f"Unsupported TTS_PROVIDER: {config.tts_provider}")


class SpeechSynthesizer:
    """
    Per-call synthesis adapter: Reply in, AudioChunk out.

    Concurrent calls may finish in any order; each chunk keeps the turn,
    sub-index and finality of its reply and gets a fresh mark label.
    Provider errors propagate to the caller.
    """

    def __init__(
        self,
        provider: Optional[TTSProvider] = None,
        *,
        config: Optional[Any] = None,
        label_factory: Callable[[], str] = new_mark_label,
    ):
        self._provider = provider or create_provider(config)
        self._label_factory = label_factory

    @property
    def provider(self) -> TTSProvider:
        return self._provider

    async def synthesize(self, reply: Reply) -> AudioChunk:
        start_time = time.time()
        payload = await self._provider.synthesize(reply.text)

        chunk = AudioChunk(
            turn=reply.turn,
            sub_index=reply.sub_index,
            payload=payload,
            label=self._label_factory(),
            is_final=reply.is_final,
        )
        logger.debug(
            "Reply synthesized",
            provider=self._provider.name,
            turn=chunk.turn,
            sub_index=chunk.sub_index,
            audio_bytes=len(payload),
            total_ms=round((time.time() - start_time) * 1000, 2),
        )
        return chunk

    async def close(self) -> None:
        await self._provider.close()
