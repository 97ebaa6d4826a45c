"""
LLM completion with an OpenAI-compatible API (Groq by default).

Provides:
- Startup model validation
- Streaming response support
- Conversation history management
- Sentence-by-sentence replies tagged with the turn that asked for them
"""

import re
from typing import AsyncGenerator, List, Dict, Optional, Any, Set, Tuple
from dataclasses import dataclass, field
import time

import httpx
import structlog
from openai import AsyncOpenAI

from src.relay.config import get_config
from src.relay.turn_types import Reply

logger = structlog.get_logger(__name__)

GROQ_BASE_URL = "https://api.groq.com/openai/v1"

FALLBACK_REPLY = "I'm sorry, I'm having trouble right now. Could you please repeat that?"

# Appended to a stored reply the caller talked over.
INTERRUPTED_NOTE = "[the caller interrupted this reply]"

_SENTENCE_BOUNDARY_RE = re.compile(r"(?<=[.!?])\s+|\n+")


@dataclass
class ConversationTurn:
    """A single message in the conversation."""
    role: str  # "user" or "assistant"
    content: str
    turn: Optional[int] = None
    timestamp: float = field(default_factory=time.time)


class ConversationHistory:
    """
    Manages conversation history with a rolling window.

    A user message and its reply are stored together once the reply is
    complete, so overlapping turns never interleave.
    """

    def __init__(self, max_turns: int = 10):
        self.max_turns = max_turns
        self._turns: List[ConversationTurn] = []
        self._interrupted: Set[int] = set()

    def add_exchange(self, user: str, assistant: str, turn: Optional[int] = None) -> None:
        """Add a user message and the assistant reply to it."""
        if turn is not None and turn in self._interrupted:
            self._interrupted.discard(turn)
            assistant = f"{assistant} {INTERRUPTED_NOTE}"

        self._turns.append(ConversationTurn(role="user", content=user, turn=turn))
        self._turns.append(ConversationTurn(role="assistant", content=assistant, turn=turn))
        self._trim()

    def mark_interrupted(self, turn: int) -> None:
        """
        Note that the caller cut off the reply for `turn`.

        If the reply is not stored yet, the note is applied when it is.
        """
        for entry in reversed(self._turns):
            if entry.role == "assistant" and entry.turn == turn:
                if not entry.content.endswith(INTERRUPTED_NOTE):
                    entry.content = f"{entry.content} {INTERRUPTED_NOTE}"
                return
        self._interrupted.add(turn)

    def _trim(self) -> None:
        """Trim history to max turns."""
        # Keep pairs of turns (user + assistant)
        max_messages = self.max_turns * 2
        if len(self._turns) > max_messages:
            self._turns = self._turns[-max_messages:]

    def get_messages(self) -> List[Dict[str, str]]:
        """Get messages in OpenAI format."""
        return [
            {"role": turn.role, "content": turn.content}
            for turn in self._turns
        ]

    def __len__(self) -> int:
        return len(self._turns)


def get_system_prompt(config: Optional[Any] = None) -> str:
    """System prompt for the phone agent."""
    if config is None:
        config = get_config()

    return f"""You are {config.agent_name}, a friendly and helpful phone assistant for {config.company_name}.

PHONE CALL GUIDELINES:
- Be conversational and natural - you're on a phone call
- Keep responses concise (1-3 short sentences) - this is spoken audio
- Avoid lists, markdown, emojis and special characters
- If you don't understand something, ask for clarification
- Be patient with interruptions - they're normal in phone calls"""


async def validate_groq_model(api_key: str, model_name: str) -> bool:
    """
    Validate that the configured Groq model exists.

    Raises:
        SystemExit: If model doesn't exist or the API can't be reached
    """
    logger.info("Validating Groq model", model=model_name)

    async with httpx.AsyncClient() as client:
        try:
            response = await client.get(
                f"{GROQ_BASE_URL}/models",
                headers={"Authorization": f"Bearer {api_key}"},
                timeout=10.0,
            )
        except httpx.RequestError as e:
            logger.error("Failed to connect to Groq API", error=str(e))
            raise SystemExit(
                f"Failed to connect to Groq API: {e}\n"
                "Check your network connection and GROQ_API_KEY."
            )

    if response.status_code != 200:
        logger.error(
            "Failed to fetch Groq models",
            status_code=response.status_code,
            response=response.text[:200],
        )
        raise SystemExit(
            f"Failed to validate Groq model. API returned status {response.status_code}. "
            "Check your GROQ_API_KEY."
        )

    model_ids = [m.get("id") for m in response.json().get("data", [])]
    if model_name not in model_ids:
        available = ", ".join(sorted(str(m) for m in model_ids)[:10])
        logger.error(
            "Groq model not found",
            requested_model=model_name,
            available_models=available,
        )
        raise SystemExit(
            f"GROQ_MODEL '{model_name}' not found in available models.\n"
            f"Available models include: {available}\n"
            "Please update GROQ_MODEL in your .env file."
        )

    logger.info("Groq model validated successfully", model=model_name)
    return True


class ChatLLM:
    """
    Streaming chat client over the OpenAI-compatible API.

    Groq is reached through the OpenAI SDK with Groq's base URL.
    """

    def __init__(self, config: Optional[Any] = None, client: Optional[AsyncOpenAI] = None):
        if config is None:
            config = get_config()

        self.config = config
        if config.llm_provider == "openai":
            self.model = config.openai_model
            self._client = client or AsyncOpenAI(api_key=config.openai_api_key)
        else:
            self.model = config.groq_model
            self._client = client or AsyncOpenAI(
                api_key=config.groq_api_key,
                base_url=GROQ_BASE_URL,
            )

        self._history = ConversationHistory(max_turns=config.max_history_turns)

    @property
    def history(self) -> ConversationHistory:
        return self._history

    async def generate_streaming(
        self,
        user_message: str,
        turn: Optional[int] = None,
    ) -> AsyncGenerator[str, None]:
        """
        Generate a streaming response.

        Yields:
            Text chunks as they're generated. On failure a short spoken
            apology is yielded instead. The exchange is added to the
            history once the reply is complete.
        """
        messages = [{"role": "system", "content": get_system_prompt(self.config)}]
        messages.extend(self._history.get_messages())
        messages.append({"role": "user", "content": user_message})

        full_response = ""
        try:
            stream = await self._client.chat.completions.create(
                model=self.model,
                messages=messages,
                stream=True,
                max_tokens=self.config.llm_max_tokens,
                temperature=self.config.llm_temperature,
            )

            async for chunk in stream:
                if chunk.choices and chunk.choices[0].delta.content:
                    text = chunk.choices[0].delta.content
                    full_response += text
                    yield text

        except Exception as e:
            logger.error("LLM generation failed", error_type=type(e).__name__, error=str(e))
            if not full_response:
                full_response = FALLBACK_REPLY
                yield FALLBACK_REPLY

        self._history.add_exchange(user_message, full_response, turn=turn)


def create_llm(config: Optional[Any] = None) -> ChatLLM:
    return ChatLLM(config)


def split_complete_sentences(text: str) -> Tuple[List[str], str]:
    """
    Split off the sentences that are known to be complete.

    Returns the complete sentences and the unfinished remainder.
    """
    parts = _SENTENCE_BOUNDARY_RE.split(text)
    complete = [p.strip() for p in parts[:-1] if p and p.strip()]
    return complete, parts[-1]


class CompletionAdapter:
    """
    Turns one caller utterance into ordered Replies for a given turn.

    The newest complete sentence is held back until either another sentence
    completes or the stream ends, so the last Reply emitted for a turn can
    be marked `is_final`.
    """

    def __init__(self, llm: ChatLLM):
        self._llm = llm

    def interrupt(self, turn: int) -> None:
        """Record that the caller talked over the reply for `turn`."""
        self._llm.history.mark_interrupted(turn)

    async def complete(self, utterance: str, turn: int) -> AsyncGenerator[Reply, None]:
        sub_index = 0
        held: Optional[str] = None
        buffer = ""
        started_at = time.time()

        async for delta in self._llm.generate_streaming(utterance, turn=turn):
            buffer += delta
            sentences, buffer = split_complete_sentences(buffer)
            for sentence in sentences:
                if held is not None:
                    yield Reply(turn=turn, sub_index=sub_index, text=held, is_final=False)
                    sub_index += 1
                held = sentence

        pieces = [p for p in (held, buffer.strip()) if p]
        for i, piece in enumerate(pieces):
            yield Reply(turn=turn, sub_index=sub_index, text=piece, is_final=i == len(pieces) - 1)
            sub_index += 1

        if not pieces:
            # Nothing will be synthesized for this turn, so playback stays
            # parked on it until the caller interrupts or hangs up.
            logger.warning("LLM produced no reply text", turn=turn)
            return

        logger.info(
            "Completion finished",
            turn=turn,
            replies=sub_index,
            total_ms=round((time.time() - started_at) * 1000, 2),
        )
