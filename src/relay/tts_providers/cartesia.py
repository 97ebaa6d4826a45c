from __future__ import annotations

import base64
import json
import time
import uuid
from dataclasses import dataclass
from typing import Any, Optional

import structlog
import websockets

from src.relay.config import get_config
from src.relay.tts_providers.base import TTSProvider, TTSProviderError

logger = structlog.get_logger(__name__)

# Cartesia can emit mu-law at Twilio's native rate, no transcoding needed.
CARTESIA_SAMPLE_RATE = 8000
CARTESIA_WS_URL = "wss://api.cartesia.ai/tts/websocket"
CARTESIA_API_VERSION = "2024-06-10"


@dataclass
class CartesiaTTSMetrics:
    """Metrics for TTS performance."""

    total_requests: int = 0
    total_characters: int = 0
    total_audio_ms: float = 0.0
    avg_first_byte_ms: float = 0.0
    avg_total_ms: float = 0.0

    def record_synthesis(
        self,
        *,
        characters: int,
        audio_ms: float,
        first_byte_ms: float,
        total_ms: float,
    ) -> None:
        self.total_requests += 1
        self.total_characters += characters
        self.total_audio_ms += audio_ms

        # Running averages
        n = self.total_requests
        self.avg_first_byte_ms = (self.avg_first_byte_ms * (n - 1) + first_byte_ms) / n
        self.avg_total_ms = (self.avg_total_ms * (n - 1) + total_ms) / n


class CartesiaTTS(TTSProvider):
    """
    Cartesia TTS over the WebSocket API.

    Streams `pcm_mulaw` 8kHz and collects it into one payload per request.
    """

    name = "cartesia"

    def __init__(self, config: Optional[Any] = None):
        self.config = config or get_config()
        self._metrics = CartesiaTTSMetrics()

    @property
    def metrics(self) -> CartesiaTTSMetrics:
        return self._metrics

    def build_request(self, text: str) -> dict:
        return {
            "context_id": uuid.uuid4().hex,
            "model_id": self.config.cartesia_model_id,
            "transcript": text,
            "voice": {"mode": "id", "id": self.config.cartesia_voice_id},
            "output_format": {
                "container": "raw",
                "encoding": "pcm_mulaw",
                "sample_rate": CARTESIA_SAMPLE_RATE,
            },
            "continue": False,
        }

    async def synthesize(self, text: str) -> bytes:
        if not text or not text.strip():
            return b""

        start_time = time.time()
        first_byte_time: Optional[float] = None
        audio = bytearray()

        url = (
            f"{CARTESIA_WS_URL}?api_key={self.config.cartesia_api_key}"
            f"&cartesia_version={CARTESIA_API_VERSION}"
        )

        try:
            async with websockets.connect(url) as ws:
                await ws.send(json.dumps(self.build_request(text)))

                async for message in ws:
                    if isinstance(message, (bytes, bytearray)):
                        if first_byte_time is None:
                            first_byte_time = time.time()
                        audio.extend(message)
                        continue

                    try:
                        data = json.loads(message)
                    except json.JSONDecodeError:
                        logger.warning("Invalid JSON from Cartesia")
                        continue

                    msg_type = data.get("type", "")
                    if msg_type == "chunk":
                        audio_b64 = data.get("data")
                        if audio_b64:
                            if first_byte_time is None:
                                first_byte_time = time.time()
                            audio.extend(base64.b64decode(audio_b64))
                    elif msg_type == "done":
                        break
                    elif msg_type == "error":
                        raise TTSProviderError(f"Cartesia error: {data.get('message') or data}")

        except TTSProviderError:
            raise
        except Exception as e:
            raise TTSProviderError(f"Cartesia synthesis failed: {e}") from e

        end_time = time.time()
        if first_byte_time is None:
            first_byte_time = end_time

        self._metrics.record_synthesis(
            characters=len(text),
            audio_ms=len(audio) / 8.0,
            first_byte_ms=(first_byte_time - start_time) * 1000,
            total_ms=(end_time - start_time) * 1000,
        )
        return bytes(audio)
