"""Per-call session orchestration.

One session per Media Streams connection:
inbound Twilio mu-law -> STT -> (final utterance) turn index -> LLM replies ->
TTS chunks (any order) -> playback buffer (turn order) -> Twilio media + mark

Interim caller text goes to the interruption detector, which can clear
Twilio, drop outstanding marks and skip the rest of the current turn at any
time.

Everything that touches session state runs on the event loop without an
await between the steps of one update, so no locks are needed. LLM and TTS
requests run as background tasks; their results re-enter through
`PlaybackBuffer.submit`.
"""

import asyncio
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Optional, Set

import structlog

from src.relay.config import get_config
from src.relay.interruption import InterruptionDetector
from src.relay.llm import CompletionAdapter, create_llm
from src.relay.marks import MarkTracker
from src.relay.playback import PlaybackBuffer
from src.relay.recording import RECORDING_ANNOUNCEMENT, CallRecorder
from src.relay.sequencer import TurnSequencer
from src.relay.stt import DeepgramSTT
from src.relay.tts import SpeechSynthesizer
from src.relay.turn_types import AudioChunk, Reply
from src.relay.twilio_protocol import (
    TwilioEventType,
    TwilioGateway,
    TwilioMarkEvent,
    TwilioStartEvent,
    parse_twilio_message,
)

logger = structlog.get_logger(__name__)


class SessionState(str, Enum):
    WAITING = "waiting"  # socket open, no start event yet
    ACTIVE = "active"
    CLOSED = "closed"


@dataclass
class CallMetrics:
    """Metrics for an entire call."""
    call_sid: str = ""
    stream_sid: str = ""
    start_time: float = field(default_factory=time.time)
    end_time: float = 0.0
    turns: int = 0
    interruptions: int = 0
    released_chunks: int = 0
    discarded_chunks: int = 0
    completion_failures: int = 0
    synthesis_failures: int = 0
    malformed_messages: int = 0

    @property
    def duration_seconds(self) -> float:
        end = self.end_time if self.end_time > 0 else time.time()
        return end - self.start_time

    def to_dict(self) -> Dict[str, Any]:
        return {
            "call_sid": self.call_sid,
            "stream_sid": self.stream_sid,
            "duration_seconds": round(self.duration_seconds, 2),
            "turns": self.turns,
            "interruptions": self.interruptions,
            "released_chunks": self.released_chunks,
            "discarded_chunks": self.discarded_chunks,
            "completion_failures": self.completion_failures,
            "synthesis_failures": self.synthesis_failures,
            "malformed_messages": self.malformed_messages,
        }


class CallSession:
    """
    State and wiring for a single call.

    STT, completion, synthesis and recording are injected so tests can swap
    in doubles. The STT object must offer `set_callbacks`, `connect`,
    `send_audio` and `disconnect`; the completion object `complete` and
    `interrupt`.
    """

    def __init__(
        self,
        send_message: Callable[[str], Awaitable[None]],
        *,
        stt: Any,
        completion: CompletionAdapter,
        synthesizer: SpeechSynthesizer,
        recorder: Optional[CallRecorder] = None,
        config: Optional[Any] = None,
    ):
        self.config = config or get_config()
        self._state = SessionState.WAITING

        self._gateway = TwilioGateway(send_message, on_error=self._on_transport_error)
        self._sequencer = TurnSequencer()
        self._marks = MarkTracker()
        self._buffer = PlaybackBuffer(on_release=self._on_release)
        self._detector = InterruptionDetector(
            marks=self._marks,
            buffer=self._buffer,
            sequencer=self._sequencer,
            gateway=self._gateway,
            min_chars=self.config.interruption_min_chars,
        )

        self._stt = stt
        self._stt.set_callbacks(on_interim=self._on_interim, on_final=self._on_final)
        self._completion = completion
        self._synthesizer = synthesizer
        self._recorder = recorder

        self._tasks: Set[asyncio.Task] = set()
        self._stop_task: Optional[asyncio.Task] = None
        self._last_released_turn: Optional[int] = None
        self._metrics = CallMetrics()
        self.stream_sid = ""
        self.call_sid = ""

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def is_closed(self) -> bool:
        return self._state == SessionState.CLOSED

    @property
    def sequencer(self) -> TurnSequencer:
        return self._sequencer

    @property
    def buffer(self) -> PlaybackBuffer:
        return self._buffer

    @property
    def marks(self) -> MarkTracker:
        return self._marks

    @property
    def detector(self) -> InterruptionDetector:
        return self._detector

    @property
    def gateway(self) -> TwilioGateway:
        return self._gateway

    @property
    def metrics(self) -> CallMetrics:
        self._metrics.interruptions = self._detector.interruptions
        self._metrics.released_chunks = self._buffer.released_count
        self._metrics.discarded_chunks = self._buffer.discarded_count
        return self._metrics

    async def handle_message(self, raw_message: str) -> None:
        """
        Handle an incoming WebSocket message from Twilio.

        Undecodable frames are logged and dropped; they never end the call.
        """
        if self.is_closed:
            return

        try:
            event_type, event = parse_twilio_message(raw_message)
        except ValueError as e:
            self._metrics.malformed_messages += 1
            logger.warning("Failed to parse Twilio message", stream_sid=self.stream_sid, error=str(e))
            return

        if event_type == TwilioEventType.CONNECTED:
            logger.debug("Twilio connected")

        elif event_type == TwilioEventType.START:
            await self._handle_start(event)

        elif event_type == TwilioEventType.MEDIA:
            if self._state == SessionState.ACTIVE:
                await self._stt.send_audio(event.payload)

        elif event_type == TwilioEventType.MARK:
            self._handle_mark(event)

        elif event_type == TwilioEventType.DTMF:
            logger.info("DTMF received", call_sid=self.call_sid, digit=event.digit)

        elif event_type == TwilioEventType.STOP:
            logger.info("Twilio stream stopped", call_sid=self.call_sid, stream_sid=self.stream_sid)
            await self.stop()

    async def _handle_start(self, event: TwilioStartEvent) -> None:
        if self._state != SessionState.WAITING:
            logger.warning("Ignoring duplicate start event", stream_sid=event.stream_sid)
            return

        self._state = SessionState.ACTIVE
        self.stream_sid = event.stream_sid
        self.call_sid = event.call_sid
        self._metrics.stream_sid = event.stream_sid
        self._metrics.call_sid = event.call_sid
        self._gateway.bind(event.stream_sid)

        logger.info("Call started", call_sid=self.call_sid, stream_sid=self.stream_sid)

        # The greeting owns turn 0 even if the caller finishes an utterance
        # while the recording request is still in flight.
        greeting_turn = self._sequencer.next()
        self._metrics.turns += 1

        self._spawn(self._start_stt())
        self._spawn(self._run_greeting(greeting_turn))

    async def _start_stt(self) -> None:
        ok = await self._stt.connect()
        if ok:
            logger.info("STT ready", call_sid=self.call_sid)
        else:
            logger.error("STT failed to start", call_sid=self.call_sid)

    async def _run_greeting(self, turn: int) -> None:
        recorded = False
        if self._recorder is not None:
            recorded = await self._recorder.start(self.call_sid)

        texts = [self.config.greeting]
        if recorded:
            texts.insert(0, RECORDING_ANNOUNCEMENT)

        for sub_index, text in enumerate(texts):
            reply = Reply(turn=turn, sub_index=sub_index, text=text, is_final=sub_index == len(texts) - 1)
            self._spawn(self._synthesize(reply))

    def _handle_mark(self, event: TwilioMarkEvent) -> None:
        if not self._marks.acknowledge(event.name):
            return
        logger.debug("Twilio mark ack", mark_name=event.name, outstanding=len(self._marks))
        if not self._marks.is_armed():
            logger.debug("Playback drained", call_sid=self.call_sid)

    async def _on_interim(self, text: str) -> None:
        if self._state != SessionState.ACTIVE:
            return
        playing = self._last_released_turn
        if not self._detector.trigger(text):
            return

        # Both the reply being heard and the skipped one are cut short.
        cut = {self._sequencer.current, playing} - {None}
        for turn in sorted(cut):
            self._completion.interrupt(turn)

    async def _on_final(self, text: str) -> None:
        if self._state != SessionState.ACTIVE:
            return

        # Playback of this turn waits for every earlier turn to finish. A turn
        # that never produces audio therefore parks all later ones, and once
        # its marks have drained no barge-in can arm to skip it: the call
        # stays silent until hangup.
        turn = self._sequencer.next()
        self._metrics.turns += 1
        logger.info("Caller turn", call_sid=self.call_sid, turn=turn, text=text[:80])
        self._spawn(self._run_completion(text, turn))

    async def _run_completion(self, text: str, turn: int) -> None:
        try:
            async for reply in self._completion.complete(text, turn):
                if self.is_closed:
                    return
                self._spawn(self._synthesize(reply))
        except asyncio.CancelledError:
            raise
        except Exception as e:
            self._metrics.completion_failures += 1
            logger.error(
                "Completion failed",
                call_sid=self.call_sid,
                turn=turn,
                error_type=type(e).__name__,
                error=str(e),
            )

    async def _synthesize(self, reply: Reply) -> None:
        try:
            chunk = await self._synthesizer.synthesize(reply)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            self._metrics.synthesis_failures += 1
            logger.error(
                "Synthesis failed",
                call_sid=self.call_sid,
                turn=reply.turn,
                sub_index=reply.sub_index,
                error_type=type(e).__name__,
                error=str(e),
            )
            return

        if self.is_closed:
            return
        self._buffer.submit(chunk)

    def _on_release(self, chunk: AudioChunk) -> None:
        self._marks.record(chunk.label)
        self._last_released_turn = chunk.turn
        self._gateway.send_audio(chunk.payload, chunk.label)
        logger.debug(
            "Audio chunk released",
            turn=chunk.turn,
            sub_index=chunk.sub_index,
            mark_name=chunk.label,
        )

    def _on_transport_error(self, error: Exception) -> None:
        if self.is_closed or self._stop_task is not None:
            return
        logger.warning("Transport failed, ending session", call_sid=self.call_sid, error=str(error))
        self._stop_task = asyncio.create_task(self.stop())

    def _spawn(self, coro: Awaitable[None]) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def wait_idle(self) -> None:
        """Wait for background LLM/TTS work and queued writes to finish."""
        while True:
            pending = [t for t in self._tasks if not t.done()]
            if not pending:
                break
            await asyncio.gather(*pending, return_exceptions=True)
        await self._gateway.flush()

    async def stop(self) -> None:
        """Tear the session down. Safe to call more than once."""
        if self.is_closed:
            return
        self._state = SessionState.CLOSED

        current = asyncio.current_task()
        tasks = [t for t in self._tasks if t is not current and not t.done()]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

        await self._gateway.close()

        for name, closer in (("stt", self._stt.disconnect), ("tts", self._synthesizer.close)):
            try:
                await closer()
            except Exception as e:
                logger.warning("Error closing collaborator", component=name, error=str(e))

        self._buffer.reset()
        self._marks.clear()

        self._metrics.end_time = time.time()
        logger.info("Call session stopped", metrics=self.metrics.to_dict())


def create_session(
    send_message: Callable[[str], Awaitable[None]],
    config: Optional[Any] = None,
) -> CallSession:
    """
    Build a session wired to the real Deepgram / LLM / TTS / Twilio clients.

    Args:
        send_message: Function to send messages to the Twilio WebSocket
    """
    config = config or get_config()
    return CallSession(
        send_message,
        stt=DeepgramSTT(config=config),
        completion=CompletionAdapter(create_llm(config)),
        synthesizer=SpeechSynthesizer(config=config),
        recorder=CallRecorder(config),
        config=config,
    )
