"""
Configuration management for the appointment-booking voice agent.

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

VOICE_MODES = ("pipeline", "openai_realtime")
COMPLETION_MODES = ("structured", "heuristic")
TTS_PROVIDERS = ("deepgram", "cartesia")


class ConfigError(Exception):
    """Raised when configuration is invalid or missing."""
    pass


@dataclass(frozen=True)
class Config:
    """Strongly-typed configuration object."""

    # Server
    public_host: str
    port: int = 3000
    log_level: str = "INFO"

    # Voice mode
    # - pipeline: Deepgram STT -> OpenAI chat (JSON contract) -> TTS
    # - openai_realtime: OpenAI Realtime speech-to-speech
    voice_mode: str = "pipeline"
    completion_mode: str = "structured"

    # Twilio
    twilio_account_sid: str = ""
    twilio_auth_token: str = ""

    # Deepgram (STT + TTS)
    deepgram_api_key: str = ""
    deepgram_stt_model: str = "nova-2"
    deepgram_language: str = "en-US"
    deepgram_tts_model: str = "aura-asteria-en"
    deepgram_utterance_end_ms: int = 1000
    deepgram_endpointing_ms: int = 300

    # TTS provider
    tts_provider: str = "deepgram"
    cartesia_api_key: str = ""
    cartesia_voice_id: str = "a0e99841-438c-4a64-b679-ae501e7d6091"

    # OpenAI
    openai_api_key: str = ""
    openai_model: str = "gpt-4o"
    openai_realtime_model: str = "gpt-4o-realtime-preview-2024-12-17"
    openai_realtime_voice: str = "alloy"
    openai_realtime_temperature: float = 0.8

    # Business
    business_name: str = "our business"
    business_timezone: str = "America/New_York"
    business_greeting: str = ""
    business_notes: str = ""
    business_language: str = ""
    business_hours_json: str = ""
    appointment_duration_minutes: int = 30
    minimum_notice_hours: int = 2

    # Business directory: per-number business lookup and call records
    business_directory_json: str = ""
    directory_api_url: str = ""
    directory_api_key: str = ""

    # Booking collaborator
    booking_enabled: bool = True
    booking_api_url: str = ""
    booking_api_key: str = ""

    # Turn-taking and timeouts
    turn_silence_ms: int = 1500
    speech_final_ms: int = 500
    utterance_end_ms: int = 300
    dialogue_timeout_seconds: float = 10.0
    silence_reprompt_seconds: float = 8.0
    max_unproductive_turns: int = 3
    session_grace_seconds: float = 60.0
    completion_delay_seconds: float = 3.0
    outbound_pace_ms: int = 20

    @property
    def ws_url(self) -> str:
        """Get the Media Streams WebSocket URL for Twilio."""
        return f"wss://{self.public_host}/media-stream"

    @property
    def base_url(self) -> str:
        """Get the base HTTP URL."""
        return f"https://{self.public_host}"

    @property
    def is_realtime(self) -> bool:
        return self.voice_mode == "openai_realtime"

    def validate(self) -> None:
        """Validate that all required configuration is present."""
        missing = []

        if self.voice_mode not in VOICE_MODES:
            raise ConfigError(
                f"Invalid VOICE_MODE '{self.voice_mode}'. Expected one of: {', '.join(VOICE_MODES)}."
            )
        if self.completion_mode not in COMPLETION_MODES:
            raise ConfigError(
                f"Invalid COMPLETION_MODE '{self.completion_mode}'. "
                f"Expected one of: {', '.join(COMPLETION_MODES)}."
            )
        if self.tts_provider not in TTS_PROVIDERS:
            raise ConfigError(
                f"Invalid TTS_PROVIDER '{self.tts_provider}'. Expected one of: {', '.join(TTS_PROVIDERS)}."
            )

        if not self.public_host:
            missing.append("PUBLIC_HOST")
        if not self.openai_api_key:
            missing.append("OPENAI_API_KEY")

        if self.is_realtime:
            if not self.openai_realtime_model:
                missing.append("OPENAI_REALTIME_MODEL")
        else:
            if not self.deepgram_api_key:
                missing.append("DEEPGRAM_API_KEY")
            if not self.openai_model:
                missing.append("OPENAI_MODEL")
            if self.tts_provider == "cartesia" and not self.cartesia_api_key:
                missing.append("CARTESIA_API_KEY")

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
            voice_mode=self.voice_mode,
            completion_mode="heuristic" if self.is_realtime else self.completion_mode,
            tts_provider=self.tts_provider,
            llm_model=self.openai_realtime_model if self.is_realtime else self.openai_model,
            business_name=self.business_name,
            business_timezone=self.business_timezone,
            booking_enabled=self.booking_enabled,
            booking_backend="http" if self.booking_api_url else "memory",
            directory_backend="http" if self.directory_api_url else "memory",
            turn_silence_ms=self.turn_silence_ms,
            dialogue_timeout_seconds=self.dialogue_timeout_seconds,
            twilio_sid_prefix=self.twilio_account_sid[:6] + "..." if self.twilio_account_sid else "NOT SET",
            deepgram_key_set=bool(self.deepgram_api_key),
            cartesia_key_set=bool(self.cartesia_api_key),
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
    config = Config(
        # Server
        public_host=os.getenv("PUBLIC_HOST", ""),
        port=_get_int("PORT", 3000),
        log_level=os.getenv("LOG_LEVEL", "INFO").upper(),

        # Modes
        voice_mode=os.getenv("VOICE_MODE", "pipeline").strip().lower(),
        completion_mode=os.getenv("COMPLETION_MODE", "structured").strip().lower(),

        # Twilio
        twilio_account_sid=os.getenv("TWILIO_ACCOUNT_SID", ""),
        twilio_auth_token=os.getenv("TWILIO_AUTH_TOKEN", ""),

        # Deepgram
        deepgram_api_key=os.getenv("DEEPGRAM_API_KEY", ""),
        deepgram_stt_model=os.getenv("DEEPGRAM_STT_MODEL", "nova-2"),
        deepgram_language=os.getenv("DEEPGRAM_LANGUAGE", "en-US"),
        deepgram_tts_model=os.getenv("DEEPGRAM_TTS_MODEL", "aura-asteria-en"),
        deepgram_utterance_end_ms=_get_int("DEEPGRAM_UTTERANCE_END_MS", 1000),
        deepgram_endpointing_ms=_get_int("DEEPGRAM_ENDPOINTING_MS", 300),

        # TTS
        tts_provider=os.getenv("TTS_PROVIDER", "deepgram").strip().lower(),
        cartesia_api_key=os.getenv("CARTESIA_API_KEY", ""),
        cartesia_voice_id=os.getenv("CARTESIA_VOICE_ID", "a0e99841-438c-4a64-b679-ae501e7d6091"),

        # OpenAI
        openai_api_key=os.getenv("OPENAI_API_KEY", ""),
        openai_model=os.getenv("OPENAI_MODEL", "gpt-4o"),
        openai_realtime_model=os.getenv("OPENAI_REALTIME_MODEL", "gpt-4o-realtime-preview-2024-12-17"),
        openai_realtime_voice=os.getenv("OPENAI_REALTIME_VOICE", "alloy"),
        openai_realtime_temperature=_get_float("OPENAI_REALTIME_TEMPERATURE", 0.8),

        # Business
        business_name=os.getenv("BUSINESS_NAME", "our business"),
        business_timezone=os.getenv("BUSINESS_TIMEZONE", "America/New_York"),
        business_greeting=os.getenv("BUSINESS_GREETING", ""),
        business_notes=os.getenv("BUSINESS_NOTES", ""),
        business_language=os.getenv("BUSINESS_LANGUAGE", ""),
        business_hours_json=os.getenv("BUSINESS_HOURS_JSON", ""),
        appointment_duration_minutes=_get_int("APPOINTMENT_DURATION_MINUTES", 30),
        minimum_notice_hours=_get_int("MINIMUM_NOTICE_HOURS", 2),

        # Business directory
        business_directory_json=os.getenv("BUSINESS_DIRECTORY_JSON", ""),
        directory_api_url=os.getenv("DIRECTORY_API_URL", ""),
        directory_api_key=os.getenv("DIRECTORY_API_KEY", ""),

        # Booking
        booking_enabled=_get_bool("BOOKING_ENABLED", True),
        booking_api_url=os.getenv("BOOKING_API_URL", ""),
        booking_api_key=os.getenv("BOOKING_API_KEY", ""),

        # Turn-taking and timeouts
        turn_silence_ms=_get_int("TURN_SILENCE_MS", 1500),
        speech_final_ms=_get_int("SPEECH_FINAL_MS", 500),
        utterance_end_ms=_get_int("UTTERANCE_END_MS", 300),
        dialogue_timeout_seconds=_get_float("DIALOGUE_TIMEOUT_SECONDS", 10.0),
        silence_reprompt_seconds=_get_float("SILENCE_REPROMPT_SECONDS", 8.0),
        max_unproductive_turns=_get_int("MAX_UNPRODUCTIVE_TURNS", 3),
        session_grace_seconds=_get_float("SESSION_GRACE_SECONDS", 60.0),
        completion_delay_seconds=_get_float("COMPLETION_DELAY_SECONDS", 3.0),
        outbound_pace_ms=_get_int("OUTBOUND_PACE_MS", 20),
    )

    return config


def init_config() -> Config:
    """
    Initialize and validate configuration.

    Call this at application startup to fail fast if config is invalid.
    """
    config = get_config()
    config.validate()
    config.log_config()
    return config
