from __future__ import annotations

import time
from typing import Any, Optional

import httpx
import structlog

from src.relay.config import get_config
from src.relay.tts_providers.base import TTSProvider, TTSProviderError

logger = structlog.get_logger(__name__)

DEEPGRAM_SPEAK_URL = "https://api.deepgram.com/v1/speak"


class DeepgramTTS(TTSProvider):
    """
    Deepgram Aura text-to-speech over REST.

    Aura can return raw mu-law 8kHz, so the response body goes to Twilio
    untouched.
    """

    name = "deepgram"

    def __init__(self, config: Optional[Any] = None, client: Optional[httpx.AsyncClient] = None):
        self.config = config or get_config()
        self._client = client or httpx.AsyncClient(timeout=15.0)

    async def synthesize(self, text: str) -> bytes:
        if not text or not text.strip():
            return b""

        start_time = time.time()
        try:
            response = await self._client.post(
                DEEPGRAM_SPEAK_URL,
                params={
                    "model": self.config.deepgram_tts_model,
                    "encoding": "mulaw",
                    "sample_rate": 8000,
                    "container": "none",
                },
                headers={
                    "Authorization": f"Token {self.config.deepgram_api_key}",
                    "Content-Type": "application/json",
                },
                json={"text": text},
            )
        except httpx.RequestError as e:
            raise TTSProviderError(f"Deepgram TTS request failed: {e}") from e

        if response.status_code != 200:
            raise TTSProviderError(
                f"Deepgram TTS returned status {response.status_code}: {response.text[:200]}"
            )

        audio = response.content
        logger.debug(
            "Deepgram TTS done",
            characters=len(text),
            audio_bytes=len(audio),
            total_ms=round((time.time() - start_time) * 1000, 2),
        )
        return audio

    async def close(self) -> None:
        await self._client.aclose()
