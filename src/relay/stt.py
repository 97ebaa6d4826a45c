"""
Deepgram Speech-to-Text streaming client.

Twilio mu-law 8kHz is forwarded to Deepgram as-is (encoding=mulaw).

Two outputs:
- interim text while the caller is talking (drives barge-in detection)
- one final text per finished utterance: `is_final` fragments are stitched
  together until Deepgram reports `speech_final`, or flushed on
  `UtteranceEnd` when endpointing never fired
"""

import asyncio
import json
from typing import Optional, Callable, Awaitable, Any, List
from dataclasses import dataclass

import structlog
import websockets

from src.relay.config import get_config

logger = structlog.get_logger(__name__)

DEEPGRAM_LISTEN_URL = "wss://api.deepgram.com/v1/listen"


@dataclass
class STTMetrics:
    """Metrics for STT performance."""
    total_audio_bytes: int = 0
    interim_transcripts: int = 0
    final_utterances: int = 0


class DeepgramSTT:
    """
    Deepgram streaming STT client using raw WebSocket.
    """

    def __init__(
        self,
        on_interim: Optional[Callable[[str], Awaitable[None]]] = None,
        on_final: Optional[Callable[[str], Awaitable[None]]] = None,
        config: Optional[Any] = None,
    ):
        if config is None:
            config = get_config()

        self.config = config
        self._on_interim = on_interim
        self._on_final = on_final
        self._ws = None
        self._is_connected = False
        self._metrics = STTMetrics()
        self._final_parts: List[str] = []
        self._receive_task: Optional[asyncio.Task] = None

    @property
    def is_connected(self) -> bool:
        return self._is_connected

    @property
    def metrics(self) -> STTMetrics:
        return self._metrics

    def set_callbacks(
        self,
        *,
        on_interim: Optional[Callable[[str], Awaitable[None]]] = None,
        on_final: Optional[Callable[[str], Awaitable[None]]] = None,
    ) -> None:
        self._on_interim = on_interim
        self._on_final = on_final

    def build_url(self) -> str:
        return (
            f"{DEEPGRAM_LISTEN_URL}"
            f"?model={self.config.deepgram_stt_model}"
            f"&language={self.config.deepgram_language}"
            f"&encoding=mulaw"
            f"&sample_rate=8000"
            f"&channels=1"
            f"&punctuate=true"
            f"&smart_format=true"
            f"&interim_results=true"
            f"&vad_events=true"
            f"&endpointing={self.config.deepgram_endpointing_ms}"
            f"&utterance_end_ms={self.config.deepgram_utterance_end_ms}"
        )

    async def connect(self) -> bool:
        """Connect to Deepgram streaming API."""
        if self._is_connected:
            return True

        headers = {"Authorization": f"Token {self.config.deepgram_api_key}"}
        try:
            self._ws = await websockets.connect(
                self.build_url(),
                additional_headers=headers,
                open_timeout=10,
            )
        except Exception as e:
            logger.error(
                "Deepgram connection failed",
                error_type=type(e).__name__,
                error=str(e),
            )
            self._ws = None
            return False

        self._is_connected = True
        self._receive_task = asyncio.create_task(self._receive_loop())
        logger.info("Deepgram STT connected", model=self.config.deepgram_stt_model)
        return True

    async def disconnect(self) -> None:
        """Disconnect from Deepgram."""
        self._is_connected = False

        if self._receive_task:
            self._receive_task.cancel()
            try:
                await self._receive_task
            except asyncio.CancelledError:
                pass
            self._receive_task = None

        if self._ws:
            try:
                await self._ws.close()
            except Exception as e:
                logger.warning("Error closing Deepgram connection", error=str(e))

        self._ws = None
        logger.info("Deepgram STT disconnected", metrics=self._metrics.__dict__)

    async def send_audio(self, audio_bytes: bytes) -> None:
        """Send audio data to Deepgram."""
        if not self._is_connected or not self._ws:
            return

        try:
            self._metrics.total_audio_bytes += len(audio_bytes)
            await self._ws.send(audio_bytes)
        except Exception as e:
            logger.error("Failed to send audio to Deepgram", error=str(e))

    async def _receive_loop(self) -> None:
        """Receive and process messages from Deepgram."""
        try:
            async for message in self._ws:
                if not self._is_connected:
                    break

                try:
                    data = json.loads(message)
                except json.JSONDecodeError:
                    logger.warning("Invalid JSON from Deepgram")
                    continue

                try:
                    await self.handle_message(data)
                except Exception as e:
                    logger.error("Error processing Deepgram message", error=str(e))

        except websockets.exceptions.ConnectionClosed:
            logger.info("Deepgram connection closed")
        except asyncio.CancelledError:
            pass
        except Exception as e:
            logger.error("Deepgram receive loop error", error=str(e))
        finally:
            self._is_connected = False

    async def handle_message(self, data: dict) -> None:
        """Handle a decoded message from Deepgram."""
        msg_type = data.get("type", "")
        msg_type_norm = msg_type.lower() if isinstance(msg_type, str) else ""

        if msg_type_norm == "results":
            alternatives = (data.get("channel") or {}).get("alternatives") or []
            if not alternatives:
                return

            text = (alternatives[0].get("transcript") or "").strip()
            is_final = bool(data.get("is_final", False))
            speech_final = bool(data.get("speech_final", False))

            if not is_final:
                if text:
                    self._metrics.interim_transcripts += 1
                    logger.debug("STT interim", text=text[:50])
                    if self._on_interim:
                        await self._on_interim(text)
                return

            if text:
                self._final_parts.append(text)
            if speech_final:
                await self._emit_final()

        elif msg_type_norm in ("utteranceend", "utterance_end"):
            logger.debug("Utterance end detected")
            await self._emit_final()

        elif msg_type_norm in ("speechstarted", "speech_started"):
            logger.debug("STT speech started")

        elif msg_type_norm == "error":
            logger.error(
                "Deepgram error",
                error=data.get("message", "Unknown"),
                details=data,
            )

    async def _emit_final(self) -> None:
        text = " ".join(self._final_parts).strip()
        self._final_parts = []
        if not text:
            return

        self._metrics.final_utterances += 1
        logger.info("STT utterance", text=text[:80])
        if self._on_final:
            await self._on_final(text)
