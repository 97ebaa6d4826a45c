"""
Call recording through the Twilio REST API.

Recording starts once per call, before the greeting is generated. When it
does, the greeting turn opens with an announcement.
"""

import asyncio
from typing import Any, Optional

import structlog
from twilio.rest import Client as TwilioClient

from src.relay.config import get_config

logger = structlog.get_logger(__name__)

RECORDING_ANNOUNCEMENT = "This call will be recorded."


class CallRecorder:
    def __init__(self, config: Optional[Any] = None, client: Optional[TwilioClient] = None):
        self.config = config or get_config()
        self._client = client

    @property
    def enabled(self) -> bool:
        return bool(self.config.recording_enabled)

    def _get_client(self) -> TwilioClient:
        if self._client is None:
            self._client = TwilioClient(
                self.config.twilio_account_sid,
                self.config.twilio_auth_token,
            )
        return self._client

    async def start(self, call_sid: str) -> bool:
        """
        Start a dual-channel recording for `call_sid`.

        Returns True if a recording was created. Failures are logged and
        reported as False; the call carries on unrecorded.
        """
        if not self.enabled:
            return False
        if not call_sid:
            logger.warning("Cannot record call without a call SID")
            return False

        client = self._get_client()

        def _create() -> Any:
            return client.calls(call_sid).recordings.create(recording_channels="dual")

        try:
            recording = await asyncio.to_thread(_create)
        except Exception as e:
            logger.error(
                "Failed to start call recording",
                call_sid=call_sid,
                error_type=type(e).__name__,
                error=str(e),
            )
            return False

        logger.info("Call recording started", call_sid=call_sid, recording_sid=getattr(recording, "sid", None))
        return True
