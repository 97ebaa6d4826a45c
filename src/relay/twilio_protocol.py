"""
Twilio Media Streams WebSocket protocol.

Twilio sends JSON messages with events:
- connected: Initial connection
- start: Stream started, contains streamSid and callSid
- media: Audio data as base64 mu-law 8kHz
- mark: Playback marker acknowledgment
- dtmf: DTMF tone detected
- stop: Stream stopped

Outbound messages:
- media: Send audio as base64 mu-law 8kHz
- mark: Request playback acknowledgment
- clear: Clear buffered audio (for interruption)
"""

import asyncio
import base64
import binascii
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Awaitable, Dict, List, Optional, Union

import msgspec
import structlog

logger = structlog.get_logger(__name__)

# Create global msgspec encoder/decoder
decoder = msgspec.json.Decoder()
encoder = msgspec.json.Encoder()


class TwilioEventType(str, Enum):
    """Twilio WebSocket event types."""
    CONNECTED = "connected"
    START = "start"
    MEDIA = "media"
    MARK = "mark"
    DTMF = "dtmf"
    STOP = "stop"


@dataclass
class TwilioConnectedEvent:
    """Parsed Twilio connected event."""
    protocol: str = ""
    version: str = ""

    @classmethod
    def from_message(cls, message: Dict[str, Any]) -> "TwilioConnectedEvent":
        return cls(
            protocol=str(message.get("protocol", "")),
            version=str(message.get("version", "")),
        )


@dataclass
class TwilioStartEvent:
    """Parsed Twilio start event."""
    stream_sid: str
    call_sid: str
    account_sid: str = ""
    tracks: List[str] = field(default_factory=list)
    custom_parameters: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_message(cls, message: Dict[str, Any]) -> "TwilioStartEvent":
        """Parse from Twilio message."""
        start = message.get("start") or {}
        return cls(
            stream_sid=message.get("streamSid") or start.get("streamSid", ""),
            call_sid=start.get("callSid", ""),
            account_sid=start.get("accountSid", ""),
            tracks=start.get("tracks", []),
            custom_parameters=start.get("customParameters", {}),
        )


@dataclass
class TwilioMediaEvent:
    """Parsed Twilio media event."""
    stream_sid: str
    track: str
    chunk: int
    timestamp: str
    payload: bytes  # Decoded audio bytes (mu-law)

    @classmethod
    def from_message(cls, message: Dict[str, Any]) -> "TwilioMediaEvent":
        """Parse from Twilio message. Raises ValueError on a bad payload."""
        media = message.get("media") or {}
        payload_b64 = media.get("payload", "")

        try:
            payload = base64.b64decode(payload_b64, validate=True)
        except (binascii.Error, TypeError) as e:
            raise ValueError(f"Undecodable media payload: {e}")

        return cls(
            stream_sid=message.get("streamSid", ""),
            track=media.get("track", "inbound"),
            chunk=int(media.get("chunk", 0)),
            timestamp=str(media.get("timestamp", "")),
            payload=payload,
        )


@dataclass
class TwilioMarkEvent:
    """Parsed Twilio mark event."""
    stream_sid: str
    name: str

    @classmethod
    def from_message(cls, message: Dict[str, Any]) -> "TwilioMarkEvent":
        """Parse from Twilio message."""
        mark = message.get("mark") or {}
        return cls(
            stream_sid=message.get("streamSid", ""),
            name=mark.get("name", ""),
        )


@dataclass
class TwilioDTMFEvent:
    """Parsed Twilio DTMF event."""
    stream_sid: str
    digit: str

    @classmethod
    def from_message(cls, message: Dict[str, Any]) -> "TwilioDTMFEvent":
        """Parse from Twilio message."""
        dtmf = message.get("dtmf") or {}
        return cls(
            stream_sid=message.get("streamSid", ""),
            digit=dtmf.get("digit", ""),
        )


@dataclass
class TwilioStopEvent:
    """Parsed Twilio stop event."""
    stream_sid: str
    call_sid: str = ""

    @classmethod
    def from_message(cls, message: Dict[str, Any]) -> "TwilioStopEvent":
        stop = message.get("stop") or {}
        return cls(
            stream_sid=message.get("streamSid", ""),
            call_sid=stop.get("callSid", ""),
        )


TwilioEvent = Union[
    TwilioConnectedEvent,
    TwilioStartEvent,
    TwilioMediaEvent,
    TwilioMarkEvent,
    TwilioDTMFEvent,
    TwilioStopEvent,
]

_EVENT_PARSERS = {
    TwilioEventType.CONNECTED: TwilioConnectedEvent.from_message,
    TwilioEventType.START: TwilioStartEvent.from_message,
    TwilioEventType.MEDIA: TwilioMediaEvent.from_message,
    TwilioEventType.MARK: TwilioMarkEvent.from_message,
    TwilioEventType.DTMF: TwilioDTMFEvent.from_message,
    TwilioEventType.STOP: TwilioStopEvent.from_message,
}


def parse_twilio_message(raw_message: Union[str, bytes]) -> tuple[TwilioEventType, TwilioEvent]:
    """
    Parse a raw Twilio WebSocket message.

    Args:
        raw_message: Raw JSON string from Twilio

    Returns:
        Tuple of (event_type, parsed_event)

    Raises:
        ValueError: If message cannot be parsed
    """
    try:
        message = decoder.decode(raw_message.encode("utf-8") if isinstance(raw_message, str) else raw_message)
    except msgspec.DecodeError as e:
        raise ValueError(f"Invalid JSON: {e}")

    if not isinstance(message, dict):
        raise ValueError("Invalid message: expected a JSON object")

    event_type_str = message.get("event", "")

    try:
        event_type = TwilioEventType(event_type_str)
    except ValueError:
        raise ValueError(f"Unknown event type: {event_type_str}")

    try:
        event = _EVENT_PARSERS[event_type](message)
    except (AttributeError, TypeError) as e:
        raise ValueError(f"Malformed {event_type.value} event: {e}")

    return event_type, event


def create_media_message(stream_sid: str, audio_payload: bytes) -> str:
    """
    Create a Twilio media message.

    Args:
        stream_sid: The stream SID
        audio_payload: Raw mu-law audio bytes

    Returns:
        JSON string to send to Twilio
    """
    payload_b64 = base64.b64encode(audio_payload).decode("utf-8")

    message = {
        "event": "media",
        "streamSid": stream_sid,
        "media": {
            "payload": payload_b64
        }
    }

    return encoder.encode(message).decode("utf-8")


def create_mark_message(stream_sid: str, name: str) -> str:
    """
    Create a Twilio mark message.

    Twilio echoes the mark back once all audio queued before it has played.
    """
    message = {
        "event": "mark",
        "streamSid": stream_sid,
        "mark": {
            "name": name
        }
    }

    return encoder.encode(message).decode("utf-8")


def create_clear_message(stream_sid: str) -> str:
    """
    Create a Twilio clear message.

    This clears any buffered audio on Twilio's side, used for interruption.
    """
    message = {
        "event": "clear",
        "streamSid": stream_sid
    }

    return encoder.encode(message).decode("utf-8")


@dataclass(frozen=True)
class OutboundMessage:
    """Message waiting to be written to the Twilio socket."""

    message: str
    is_control: bool = False  # True for clear; media/mark frames may be dropped by a clear


class TwilioGateway:
    """
    Outbound half of a Media Streams connection.

    `send_audio` and `send_clear` only enqueue; a single writer task drains
    the queue, so frames reach the socket in exactly the order they were
    enqueued and callers never suspend mid-update.
    """

    def __init__(
        self,
        send_message: Callable[[str], Awaitable[None]],
        *,
        on_error: Optional[Callable[[Exception], None]] = None,
    ):
        self._send_message = send_message
        self._on_error = on_error
        self._queue: "asyncio.Queue[OutboundMessage]" = asyncio.Queue()
        self._writer_task: Optional[asyncio.Task] = None
        self._closed = False
        self.stream_sid = ""
        self.frames_sent = 0
        self.clears_sent = 0

    @property
    def is_closed(self) -> bool:
        return self._closed

    def bind(self, stream_sid: str) -> None:
        """Attach the stream SID from the start event and start writing."""
        self.stream_sid = stream_sid
        if self._writer_task is None and not self._closed:
            self._writer_task = asyncio.create_task(self._writer())

    def send_audio(self, payload: bytes, mark_label: str) -> None:
        """Queue a media frame followed by its mark."""
        if self._closed:
            return
        if not self.stream_sid:
            logger.warning("Dropping audio before stream start", mark_name=mark_label)
            return
        self._queue.put_nowait(OutboundMessage(create_media_message(self.stream_sid, payload)))
        self._queue.put_nowait(OutboundMessage(create_mark_message(self.stream_sid, mark_label)))

    def send_clear(self) -> None:
        """Drop any unwritten audio and queue a Twilio clear."""
        if self._closed or not self.stream_sid:
            return
        dropped = self._drop_queued()
        self._queue.put_nowait(OutboundMessage(create_clear_message(self.stream_sid), is_control=True))
        logger.info(
            "Clearing Twilio audio buffer",
            stream_sid=self.stream_sid,
            dropped_frames=dropped,
        )

    async def flush(self) -> None:
        """Wait until everything queued so far has been written."""
        if self._writer_task is None or self._closed:
            return
        await self._queue.join()

    async def close(self) -> None:
        """Stop writing. Anything still queued is discarded."""
        if self._closed:
            return
        self._closed = True
        self._drop_queued()

        task = self._writer_task
        self._writer_task = None
        if task and task is not asyncio.current_task() and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass

    def _drop_queued(self) -> int:
        dropped = 0
        while True:
            try:
                self._queue.get_nowait()
            except asyncio.QueueEmpty:
                return dropped
            self._queue.task_done()
            dropped += 1

    async def _writer(self) -> None:
        while not self._closed:
            outbound = await self._queue.get()
            try:
                await self._send_message(outbound.message)
                if outbound.is_control:
                    self.clears_sent += 1
                else:
                    self.frames_sent += 1
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(
                    "Failed to send WebSocket message",
                    stream_sid=self.stream_sid,
                    error_type=type(e).__name__,
                    error=str(e),
                )
                self._closed = True
                self._drop_queued()
                if self._on_error:
                    self._on_error(e)
                return
            finally:
                self._queue.task_done()
