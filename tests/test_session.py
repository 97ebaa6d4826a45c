"""
End-to-end tests for a call session with fake STT, LLM and TTS.
"""

import asyncio
import json
from typing import Dict, List, Tuple
from unittest.mock import AsyncMock

import pytest

from src.relay.config import get_config
from src.relay.recording import RECORDING_ANNOUNCEMENT
from src.relay.session import CallSession, SessionState
from src.relay.turn_types import AudioChunk, OrderKey, Reply


class FakeSTT:
    def __init__(self):
        self.on_interim = None
        self.on_final = None
        self.audio: List[bytes] = []
        self.connected = False
        self.disconnected = False

    def set_callbacks(self, *, on_interim=None, on_final=None):
        self.on_interim = on_interim
        self.on_final = on_final

    async def connect(self):
        self.connected = True
        return True

    async def send_audio(self, audio_bytes):
        self.audio.append(audio_bytes)

    async def disconnect(self):
        self.disconnected = True


class FakeCompletion:
    """Replies with a fixed script of sentences for every utterance."""

    def __init__(self, sentences: List[str]):
        self.sentences = sentences
        self.utterances: List[Tuple[str, int]] = []
        self.interrupted: List[int] = []

    async def complete(self, utterance, turn):
        self.utterances.append((utterance, turn))
        last = len(self.sentences) - 1
        for i, text in enumerate(self.sentences):
            yield Reply(turn=turn, sub_index=i, text=text, is_final=i == last)

    def interrupt(self, turn):
        self.interrupted.append(turn)


class FakeSynthesizer:
    """Labels chunks `turn-sub`; a reply waits on its gate if one is set."""

    def __init__(self):
        self.gates: Dict[Tuple[int, int], asyncio.Event] = {}
        self.texts: List[str] = []
        self.closed = False

    def gate(self, turn, sub_index) -> asyncio.Event:
        event = asyncio.Event()
        self.gates[(turn, sub_index)] = event
        return event

    async def synthesize(self, reply):
        self.texts.append(reply.text)
        gate = self.gates.get((reply.turn, reply.sub_index))
        if gate is not None:
            await gate.wait()
        return AudioChunk(
            turn=reply.turn,
            sub_index=reply.sub_index,
            payload=reply.text.encode(),
            label=f"{reply.turn}-{reply.sub_index}",
            is_final=reply.is_final,
        )

    async def close(self):
        self.closed = True


class FakeRecorder:
    def __init__(self, result: bool):
        self.result = result
        self.call_sids: List[str] = []

    async def start(self, call_sid):
        self.call_sids.append(call_sid)
        return self.result


def sent_events(send_message: AsyncMock):
    return [json.loads(call.args[0]) for call in send_message.await_args_list]


def sent_marks(send_message: AsyncMock):
    return [e["mark"]["name"] for e in sent_events(send_message) if e["event"] == "mark"]


@pytest.fixture
def stt():
    return FakeSTT()


@pytest.fixture
def synthesizer():
    return FakeSynthesizer()


@pytest.fixture
def send_message():
    return AsyncMock()


def make_session(send_message, stt, synthesizer, *, sentences=("Sure.",), recorder=None, completion=None):
    return CallSession(
        send_message,
        stt=stt,
        completion=completion or FakeCompletion(list(sentences)),
        synthesizer=synthesizer,
        recorder=recorder,
        config=get_config(),
    )


@pytest.mark.asyncio
async def test_start_plays_greeting_as_turn_zero(send_message, stt, synthesizer, twilio_start_message):
    session = make_session(send_message, stt, synthesizer)

    await session.handle_message(twilio_start_message)
    await session.wait_idle()

    assert session.state == SessionState.ACTIVE
    assert stt.connected
    assert synthesizer.texts == [get_config().greeting]

    events = sent_events(send_message)
    assert [e["event"] for e in events] == ["media", "mark"]
    assert all(e["streamSid"] == "MZ123456" for e in events)
    assert events[1]["mark"]["name"] == "0-0"
    assert session.marks.outstanding == ["0-0"]
    assert session.buffer.cursor == OrderKey(1, 0)

    await session.stop()


@pytest.mark.asyncio
async def test_recording_announcement_opens_greeting_turn(send_message, stt, synthesizer, twilio_start_message):
    recorder = FakeRecorder(result=True)
    session = make_session(send_message, stt, synthesizer, recorder=recorder)

    await session.handle_message(twilio_start_message)
    await session.wait_idle()

    assert recorder.call_sids == ["CA789012"]
    assert sorted(synthesizer.texts) == sorted([RECORDING_ANNOUNCEMENT, get_config().greeting])
    assert sent_marks(send_message) == ["0-0", "0-1"]
    assert session.buffer.cursor == OrderKey(1, 0)

    await session.stop()


@pytest.mark.asyncio
async def test_failed_recording_plays_plain_greeting(send_message, stt, synthesizer, twilio_start_message):
    session = make_session(send_message, stt, synthesizer, recorder=FakeRecorder(result=False))

    await session.handle_message(twilio_start_message)
    await session.wait_idle()

    assert synthesizer.texts == [get_config().greeting]
    assert sent_marks(send_message) == ["0-0"]

    await session.stop()


@pytest.mark.asyncio
async def test_replies_play_in_turn_order_despite_synthesis_order(
    send_message, stt, synthesizer, twilio_start_message
):
    session = make_session(send_message, stt, synthesizer, sentences=["One.", "Two.", "Three."])
    await session.handle_message(twilio_start_message)
    await session.wait_idle()

    gates = [synthesizer.gate(1, i) for i in range(3)]
    await stt.on_final("count to three")
    await asyncio.sleep(0.01)

    gates[2].set()
    gates[1].set()
    await asyncio.sleep(0.01)
    assert sent_marks(send_message) == ["0-0"]

    gates[0].set()
    await session.wait_idle()

    assert sent_marks(send_message) == ["0-0", "1-0", "1-1", "1-2"]
    payloads = [e["media"]["payload"] for e in sent_events(send_message) if e["event"] == "media"]
    assert len(payloads) == 4
    assert session.buffer.cursor == OrderKey(2, 0)

    await session.stop()


@pytest.mark.asyncio
async def test_barge_in_clears_and_discards_rest_of_turn(
    send_message, stt, synthesizer, twilio_start_message
):
    completion = FakeCompletion(["First part.", "Second part."])
    session = make_session(send_message, stt, synthesizer, completion=completion)
    await session.handle_message(twilio_start_message)
    await session.wait_idle()

    late = synthesizer.gate(1, 1)
    await stt.on_final("tell me everything")
    await asyncio.sleep(0.01)
    assert sent_marks(send_message) == ["0-0", "1-0"]

    await stt.on_interim("wait, actually never mind")

    late.set()
    await session.wait_idle()

    events = sent_events(send_message)
    assert events[-1]["event"] == "clear"
    assert "1-1" not in sent_marks(send_message)
    assert session.marks.outstanding == []
    assert session.buffer.cursor == OrderKey(2, 0)
    assert session.metrics.interruptions == 1
    assert session.metrics.discarded_chunks == 1
    assert completion.interrupted == [1]

    await session.stop()


@pytest.mark.asyncio
async def test_acknowledged_marks_disarm_interruption(
    send_message, stt, synthesizer, twilio_start_message, mark_message
):
    session = make_session(send_message, stt, synthesizer)
    await session.handle_message(twilio_start_message)
    await session.wait_idle()

    await session.handle_message(mark_message("0-0"))
    assert not session.marks.is_armed()

    await stt.on_interim("this is long enough to count")
    await session.wait_idle()

    assert "clear" not in [e["event"] for e in sent_events(send_message)]
    assert session.metrics.interruptions == 0

    await session.stop()


@pytest.mark.asyncio
async def test_malformed_frames_are_dropped(send_message, stt, synthesizer, twilio_start_message):
    session = make_session(send_message, stt, synthesizer)
    await session.handle_message(twilio_start_message)

    await session.handle_message("not json")
    await session.handle_message(json.dumps({"event": "media", "media": {"payload": "@@@"}}))

    assert session.state == SessionState.ACTIVE
    assert session.metrics.malformed_messages == 2

    await session.stop()


@pytest.mark.asyncio
async def test_media_is_forwarded_only_after_start(
    send_message, stt, synthesizer, twilio_start_message, twilio_media_message, sample_ulaw_audio
):
    session = make_session(send_message, stt, synthesizer)

    await session.handle_message(twilio_media_message)
    assert stt.audio == []

    await session.handle_message(twilio_start_message)
    await session.handle_message(twilio_media_message)
    assert stt.audio == [sample_ulaw_audio]

    await session.stop()


@pytest.mark.asyncio
async def test_duplicate_start_is_ignored(send_message, stt, synthesizer, twilio_start_message):
    session = make_session(send_message, stt, synthesizer)

    await session.handle_message(twilio_start_message)
    await session.handle_message(twilio_start_message)
    await session.wait_idle()

    assert session.sequencer.current == 0
    assert sent_marks(send_message) == ["0-0"]

    await session.stop()


@pytest.mark.asyncio
async def test_caller_turns_take_increasing_indices(send_message, stt, synthesizer, twilio_start_message):
    completion = FakeCompletion(["Okay."])
    session = CallSession(
        send_message,
        stt=stt,
        completion=completion,
        synthesizer=synthesizer,
        config=get_config(),
    )
    await session.handle_message(twilio_start_message)

    await stt.on_final("first")
    await stt.on_final("second")
    await session.wait_idle()

    assert completion.utterances == [("first", 1), ("second", 2)]
    assert session.metrics.turns == 3

    await session.stop()


@pytest.mark.asyncio
async def test_stop_event_tears_session_down(
    send_message, stt, synthesizer, twilio_start_message, twilio_stop_message, twilio_media_message
):
    session = make_session(send_message, stt, synthesizer)
    await session.handle_message(twilio_start_message)
    await session.wait_idle()

    await session.handle_message(twilio_stop_message)

    assert session.is_closed
    assert stt.disconnected
    assert synthesizer.closed
    assert session.buffer.pending_count == 0
    assert session.marks.outstanding == []
    assert session.gateway.is_closed

    await session.handle_message(twilio_media_message)
    assert stt.audio == []

    await session.stop()


@pytest.mark.asyncio
async def test_work_finishing_after_stop_is_not_sent(send_message, stt, synthesizer, twilio_start_message):
    gate = synthesizer.gate(0, 0)
    session = make_session(send_message, stt, synthesizer)
    await session.handle_message(twilio_start_message)
    await asyncio.sleep(0.01)

    await session.stop()
    gate.set()
    await asyncio.sleep(0.01)

    send_message.assert_not_awaited()


@pytest.mark.asyncio
async def test_socket_write_failure_ends_session(stt, synthesizer, twilio_start_message):
    send_message = AsyncMock(side_effect=RuntimeError("socket closed"))
    session = make_session(send_message, stt, synthesizer)

    await session.handle_message(twilio_start_message)
    for _ in range(50):
        if session.is_closed:
            break
        await asyncio.sleep(0.01)

    assert session.is_closed
    assert stt.disconnected


@pytest.mark.asyncio
async def test_synthesis_failure_is_counted_and_call_continues(
    send_message, stt, synthesizer, twilio_start_message
):
    synthesizer.synthesize = AsyncMock(side_effect=RuntimeError("tts down"))
    session = make_session(send_message, stt, synthesizer)

    await session.handle_message(twilio_start_message)
    await session.wait_idle()

    assert session.metrics.synthesis_failures == 1
    assert session.state == SessionState.ACTIVE
    send_message.assert_not_awaited()

    await session.stop()


class FailingCompletion(FakeCompletion):
    """Speaks one sentence for `failing_turn`, then raises."""

    def __init__(self, failing_turn: int):
        super().__init__(["Okay."])
        self.failing_turn = failing_turn

    async def complete(self, utterance, turn):
        if turn != self.failing_turn:
            async for reply in super().complete(utterance, turn):
                yield reply
            return
        self.utterances.append((utterance, turn))
        yield Reply(turn=turn, sub_index=0, text="Let me check.", is_final=False)
        raise RuntimeError("llm stream dropped")


@pytest.mark.asyncio
async def test_completion_failure_parks_later_turns_until_barge_in(
    send_message, stt, synthesizer, twilio_start_message, mark_message
):
    completion = FailingCompletion(failing_turn=1)
    session = make_session(send_message, stt, synthesizer, completion=completion)
    await session.handle_message(twilio_start_message)
    await session.wait_idle()
    await session.handle_message(mark_message("0-0"))

    await stt.on_final("what's my balance")
    await session.wait_idle()

    assert session.metrics.completion_failures == 1
    assert session.state == SessionState.ACTIVE
    assert sent_marks(send_message) == ["0-0", "1-0"]
    assert session.buffer.cursor == OrderKey(1, 1)

    await stt.on_final("hello?")
    await session.wait_idle()

    # Turn 2 is ready but waits behind the unfinished turn 1.
    assert session.buffer.pending_count == 1
    assert sent_marks(send_message) == ["0-0", "1-0"]

    # "1-0" is still unacknowledged, so caller speech interrupts.
    await stt.on_interim("are you still there")
    await session.wait_idle()

    assert session.metrics.interruptions == 1
    assert session.buffer.pending_count == 0
    assert session.buffer.cursor == OrderKey(3, 0)
    assert sent_events(send_message)[-1]["event"] == "clear"
    assert completion.interrupted == [1, 2]

    await stt.on_final("can you hear me")
    await session.wait_idle()

    assert sent_marks(send_message) == ["0-0", "1-0", "3-0"]
    assert session.buffer.cursor == OrderKey(4, 0)

    await session.stop()


@pytest.mark.asyncio
async def test_failed_session_does_not_disturb_another(
    stt, synthesizer, twilio_start_message, mark_message
):
    broken_send = AsyncMock(side_effect=RuntimeError("socket closed"))
    broken = make_session(broken_send, FakeSTT(), FakeSynthesizer())

    healthy_send = AsyncMock()
    healthy = make_session(healthy_send, stt, synthesizer)

    await broken.handle_message(twilio_start_message)
    await healthy.handle_message(twilio_start_message)
    for _ in range(50):
        if broken.is_closed:
            break
        await asyncio.sleep(0.01)
    await healthy.wait_idle()

    assert broken.is_closed
    assert healthy.state == SessionState.ACTIVE
    assert not healthy.gateway.is_closed
    assert healthy.sequencer.current == 0
    assert healthy.buffer.cursor == OrderKey(1, 0)
    assert healthy.marks.outstanding == ["0-0"]

    await healthy.handle_message(mark_message("0-0"))
    assert healthy.marks.outstanding == []

    await stt.on_final("what are your hours")
    await healthy.wait_idle()

    assert sent_marks(healthy_send) == ["0-0", "1-0"]
    assert healthy.sequencer.current == 1
    assert healthy.buffer.cursor == OrderKey(2, 0)
    assert healthy.marks.outstanding == ["1-0"]
    assert stt.connected and not stt.disconnected

    await healthy.stop()
