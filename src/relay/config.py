"""
Configuration management for the voice relay.

Loads environment variables and provides a strongly-typed configuration object.
Validates required keys at startup.
"""

import os
from dataclasses import dataclass
from functools import lru_cache

from dotenv import load_dotenv
import structlog

load_dotenv()

logger = structlog.get_logger(__name__)

LLM_PROVIDERS = ("groq", "openai")
TTS_PROVIDERS = ("deepgram", "cartesia")


class ConfigError(Exception):
    """Raised when configuration is invalid or missing."""
    pass


@dataclass(frozen=True)
class Config:
    """Strongly-typed configuration object."""

    # Server
    public_host: str
    port: int = 7860
    log_level: str = "INFO"

    # Twilio
    twilio_account_sid: str = ""
    twilio_auth_token: str = ""
    recording_enabled: bool = False

    # Deepgram (STT)
    deepgram_api_key: str = ""
    deepgram_stt_model: str = "nova-2-phonecall"
    deepgram_language: str = "en-US"
    deepgram_utterance_end_ms: int = 1000
    deepgram_endpointing_ms: int = 250

    # TTS
    # - deepgram: Aura REST, mu-law 8kHz straight from the API
    # - cartesia: streaming WebSocket, pcm_mulaw 8kHz
    tts_provider: str = "deepgram"
    deepgram_tts_model: str = "aura-asteria-en"
    cartesia_api_key: str = ""
    cartesia_voice_id: str = "a0e99841-438c-4a64-b679-ae501e7d6091"
    cartesia_model_id: str = "sonic-english"

    # LLM (Groq by default, any OpenAI-compatible endpoint otherwise)
    llm_provider: str = "groq"
    groq_api_key: str = ""
    groq_model: str = "llama-3.3-70b-versatile"
    openai_api_key: str = ""
    openai_model: str = "gpt-4o-mini"
    llm_max_tokens: int = 256
    llm_temperature: float = 0.7

    # Agent settings
    agent_name: str = "Sam"
    company_name: str = "Acme Audio"
    greeting_text: str = ""
    max_history_turns: int = 10
    # Interim caller text must be longer than this (in characters) to barge in.
    interruption_min_chars: int = 5

    @property
    def ws_url(self) -> str:
        """Get the Media Streams WebSocket URL for Twilio."""
        return f"wss://{self.public_host}/connection"

    @property
    def greeting(self) -> str:
        if self.greeting_text:
            return self.greeting_text
        return f"Hi! Thanks for calling {self.company_name}, this is {self.agent_name}. How can I help you today?"

    def validate(self) -> None:
        """Validate that all required configuration is present."""
        missing = []

        if not self.public_host:
            missing.append("PUBLIC_HOST")
        if not self.deepgram_api_key:
            missing.append("DEEPGRAM_API_KEY")

        if self.llm_provider not in LLM_PROVIDERS:
            raise ConfigError(
                f"Invalid LLM_PROVIDER '{self.llm_provider}'. Expected 'groq' or 'openai'."
            )
        if self.tts_provider not in TTS_PROVIDERS:
            raise ConfigError(
                f"Invalid TTS_PROVIDER '{self.tts_provider}'. Expected 'deepgram' or 'cartesia'."
            )

        if self.llm_provider == "groq":
            if not self.groq_api_key:
                missing.append("GROQ_API_KEY")
            if not self.groq_model:
                missing.append("GROQ_MODEL")

        if self.llm_provider == "openai":
            if not self.openai_api_key:
                missing.append("OPENAI_API_KEY")
            if not self.openai_model:
                missing.append("OPENAI_MODEL")

        if self.tts_provider == "cartesia" and not self.cartesia_api_key:
            missing.append("CARTESIA_API_KEY")

        if self.recording_enabled:
            if not self.twilio_account_sid:
                missing.append("TWILIO_ACCOUNT_SID")
            if not self.twilio_auth_token:
                missing.append("TWILIO_AUTH_TOKEN")

        if self.interruption_min_chars < 0:
            raise ConfigError(
                f"INTERRUPTION_MIN_CHARS must be >= 0, got {self.interruption_min_chars}"
            )

        if missing:
            raise ConfigError(
                f"Missing required environment variables: {', '.join(missing)}\n"
                "Please check your .env file."
            )

    def log_config(self) -> None:
        """Log configuration (without secrets)."""
        logger.info(
            "Configuration loaded",
            public_host=self.public_host,
            port=self.port,
            log_level=self.log_level,
            deepgram_stt_model=self.deepgram_stt_model,
            deepgram_language=self.deepgram_language,
            tts_provider=self.tts_provider,
            llm_provider=self.llm_provider,
            llm_model=self.openai_model if self.llm_provider == "openai" else self.groq_model,
            recording_enabled=self.recording_enabled,
            agent_name=self.agent_name,
            interruption_min_chars=self.interruption_min_chars,
            twilio_sid_prefix=self.twilio_account_sid[:6] + "..." if self.twilio_account_sid else "NOT SET",
            deepgram_key_set=bool(self.deepgram_api_key),
            cartesia_key_set=bool(self.cartesia_api_key),
            groq_key_set=bool(self.groq_api_key),
            openai_key_set=bool(self.openai_api_key),
        )


def _get_bool(key: str, default: bool = False) -> bool:
    """Get a boolean from environment variable."""
    value = os.getenv(key, str(default)).lower()
    return value in ("true", "1", "yes", "on")


def _get_int(key: str, default: int) -> int:
    """Get an integer from environment variable."""
    try:
        return int(os.getenv(key, str(default)))
    except ValueError:
        return default


def _get_float(key: str, default: float) -> float:
    """Get a float from environment variable."""
    try:
        return float(os.getenv(key, str(default)))
    except ValueError:
        return default


@lru_cache(maxsize=1)
def get_config() -> Config:
    """
    Get the application configuration.

    Uses lru_cache to ensure we only load config once.
    """
    return Config(
        # Server
        public_host=os.getenv("PUBLIC_HOST", ""),
        port=_get_int("PORT", 7860),
        log_level=os.getenv("LOG_LEVEL", "INFO").upper(),

        # Twilio
        twilio_account_sid=os.getenv("TWILIO_ACCOUNT_SID", ""),
        twilio_auth_token=os.getenv("TWILIO_AUTH_TOKEN", ""),
        recording_enabled=_get_bool("RECORDING_ENABLED", False),

        # Deepgram
        deepgram_api_key=os.getenv("DEEPGRAM_API_KEY", ""),
        deepgram_stt_model=os.getenv("DEEPGRAM_STT_MODEL", "nova-2-phonecall"),
        deepgram_language=os.getenv("DEEPGRAM_LANGUAGE", "en-US"),
        deepgram_utterance_end_ms=_get_int("DEEPGRAM_UTTERANCE_END_MS", 1000),
        deepgram_endpointing_ms=_get_int("DEEPGRAM_ENDPOINTING_MS", 250),

        # TTS
        tts_provider=os.getenv("TTS_PROVIDER", "deepgram").strip().lower(),
        deepgram_tts_model=os.getenv("DEEPGRAM_TTS_MODEL", "aura-asteria-en"),
        cartesia_api_key=os.getenv("CARTESIA_API_KEY", ""),
        cartesia_voice_id=os.getenv("CARTESIA_VOICE_ID", "a0e99841-438c-4a64-b679-ae501e7d6091"),
        cartesia_model_id=os.getenv("CARTESIA_MODEL_ID", "sonic-english"),

        # LLM
        llm_provider=os.getenv("LLM_PROVIDER", "groq").strip().lower(),
        groq_api_key=os.getenv("GROQ_API_KEY", ""),
        groq_model=os.getenv("GROQ_MODEL", "llama-3.3-70b-versatile"),
        openai_api_key=os.getenv("OPENAI_API_KEY", ""),
        openai_model=os.getenv("OPENAI_MODEL", "gpt-4o-mini"),
        llm_max_tokens=_get_int("LLM_MAX_TOKENS", 256),
        llm_temperature=_get_float("LLM_TEMPERATURE", 0.7),

        # Agent settings
        agent_name=os.getenv("AGENT_NAME", "Sam"),
        company_name=os.getenv("COMPANY_NAME", "Acme Audio"),
        greeting_text=os.getenv("GREETING_TEXT", ""),
        max_history_turns=_get_int("MAX_HISTORY_TURNS", 10),
        interruption_min_chars=_get_int("INTERRUPTION_MIN_CHARS", 5),
    )


def init_config() -> Config:
    """
    Initialize and validate configuration.

    Call this at application startup to fail fast if config is invalid.
    """
    config = get_config()
    config.validate()
    config.log_config()
    return config
