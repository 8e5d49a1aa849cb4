"""
Configuration management for the Twilio Voice Relay.

Loads environment variables and provides a strongly-typed configuration object.
Validates required keys at startup.
"""

import os
from dataclasses import dataclass, field
from functools import lru_cache
from typing import FrozenSet

from dotenv import load_dotenv
import structlog

load_dotenv()

logger = structlog.get_logger(__name__)


class ConfigError(Exception):
    """Raised when configuration is invalid or missing."""
    pass


@dataclass(frozen=True)
class Config:
    """Strongly-typed configuration object."""

    # Server
    public_host: str = ""
    port: int = 3000
    log_level: str = "INFO"

    # Call authorization
    caller_whitelist: FrozenSet[str] = field(default_factory=frozenset)
    twilio_auth_token: str = ""
    twilio_validate_signature: bool = False

    # OpenAI-compatible endpoints (STT + chat)
    openai_api_key: str = ""
    openai_base_url: str = "https://api.openai.com/v1"
    openai_chat_model: str = "gpt-4o"
    openai_stt_base_url: str = "https://api.openai.com/v1"
    openai_stt_model: str = "whisper-1"
    llm_gateway_agent_id: str = "main"

    # ElevenLabs (TTS)
    elevenlabs_api_key: str = ""
    elevenlabs_voice_id: str = ""
    elevenlabs_model_id: str = "eleven_turbo_v2"
    elevenlabs_output_format: str = "mp3_44100_128"

    # Agent settings
    agent_name: str = "Steve"
    greeting_text: str = ""
    system_prompt: str = ""

    # Turn-taking
    utterance_frames: int = 60
    greeting_delay_ms: int = 400
    cooldown_seconds: float = 2.0
    max_history_messages: int = 20
    provider_timeout_seconds: float = 15.0

    # Transcoding
    ffmpeg_path: str = "ffmpeg"
    audio_temp_dir: str = ""

    @property
    def greeting(self) -> str:
        """Greeting spoken when the stream opens."""
        return self.greeting_text or f"Hey, this is {self.agent_name}."

    def stream_url(self, request_host: str = "") -> str:
        """Get the media stream WebSocket URL for Twilio."""
        host = self.public_host or request_host
        return f"wss://{host}/twilio/stream"

    def is_caller_allowed(self, caller: str) -> bool:
        """An empty whitelist allows every caller."""
        if not self.caller_whitelist:
            return True
        return (caller or "").strip() in self.caller_whitelist

    def validate(self) -> None:
        """Validate that all required configuration is present."""
        missing = []

        if not self.openai_api_key:
            missing.append("OPENAI_API_KEY")
        if not self.elevenlabs_api_key:
            missing.append("ELEVENLABS_API_KEY")
        if not self.elevenlabs_voice_id:
            missing.append("ELEVENLABS_VOICE_ID")
        if self.twilio_validate_signature and not self.twilio_auth_token:
            missing.append("TWILIO_AUTH_TOKEN")

        if self.utterance_frames <= 0:
            raise ConfigError(
                f"Invalid UTTERANCE_FRAMES '{self.utterance_frames}'. Expected a positive integer."
            )
        if self.max_history_messages <= 0:
            raise ConfigError(
                f"Invalid MAX_HISTORY_MESSAGES '{self.max_history_messages}'. Expected a positive integer."
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
            public_host=self.public_host or "(request host)",
            port=self.port,
            log_level=self.log_level,
            caller_whitelist_size=len(self.caller_whitelist),
            twilio_validate_signature=self.twilio_validate_signature,
            openai_base_url=self.openai_base_url,
            openai_chat_model=self.openai_chat_model,
            openai_stt_model=self.openai_stt_model,
            elevenlabs_model_id=self.elevenlabs_model_id,
            elevenlabs_output_format=self.elevenlabs_output_format,
            agent_name=self.agent_name,
            utterance_frames=self.utterance_frames,
            cooldown_seconds=self.cooldown_seconds,
            max_history_messages=self.max_history_messages,
            provider_timeout_seconds=self.provider_timeout_seconds,
            openai_key_set=bool(self.openai_api_key),
            elevenlabs_key_set=bool(self.elevenlabs_api_key),
            elevenlabs_voice_set=bool(self.elevenlabs_voice_id),
        )


def clean_env_value(value: str, key: str = "") -> str:
    """
    Strip whitespace and an accidentally pasted `KEY=` prefix.

    Dashboards make it easy to paste `OPENAI_API_KEY=sk-...` as the value.
    """
    cleaned = (value or "").strip()
    if key and cleaned.startswith(key + "="):
        return cleaned[len(key) + 1:].strip()
    return cleaned


def _get_str(key: str, default: str = "") -> str:
    """Get a cleaned string from environment variable."""
    return clean_env_value(os.getenv(key, default), key) or default


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


def parse_whitelist(raw: str) -> FrozenSet[str]:
    """Parse a comma-separated caller whitelist."""
    return frozenset(item.strip() for item in (raw or "").split(",") if item.strip())


@lru_cache(maxsize=1)
def get_config() -> Config:
    """
    Get the application configuration.

    Uses lru_cache to ensure we only load config once.
    """
    config = Config(
        # Server
        public_host=_get_str("PUBLIC_HOST"),
        port=_get_int("PORT", 3000),
        log_level=os.getenv("LOG_LEVEL", "INFO").upper(),

        # Call authorization
        caller_whitelist=parse_whitelist(os.getenv("CALLER_WHITELIST", "")),
        twilio_auth_token=_get_str("TWILIO_AUTH_TOKEN"),
        twilio_validate_signature=_get_bool("TWILIO_VALIDATE_SIGNATURE", False),

        # OpenAI
        openai_api_key=_get_str("OPENAI_API_KEY"),
        openai_base_url=_get_str("OPENAI_BASE_URL", "https://api.openai.com/v1"),
        openai_chat_model=_get_str("OPENAI_CHAT_MODEL", "gpt-4o"),
        openai_stt_base_url=_get_str("OPENAI_STT_BASE_URL", "https://api.openai.com/v1"),
        openai_stt_model=_get_str("OPENAI_STT_MODEL", "whisper-1"),
        llm_gateway_agent_id=_get_str("LLM_GATEWAY_AGENT_ID", "main"),

        # ElevenLabs
        elevenlabs_api_key=_get_str("ELEVENLABS_API_KEY"),
        elevenlabs_voice_id=_get_str("ELEVENLABS_VOICE_ID"),
        elevenlabs_model_id=_get_str("ELEVENLABS_MODEL_ID", "eleven_turbo_v2"),
        elevenlabs_output_format=_get_str("ELEVENLABS_OUTPUT_FORMAT", "mp3_44100_128"),

        # Agent settings
        agent_name=_get_str("AGENT_NAME", "Steve"),
        greeting_text=os.getenv("GREETING_TEXT", "").strip(),
        system_prompt=os.getenv("SYSTEM_PROMPT", "").strip(),

        # Turn-taking
        utterance_frames=_get_int("UTTERANCE_FRAMES", 60),
        greeting_delay_ms=_get_int("GREETING_DELAY_MS", 400),
        cooldown_seconds=_get_float("COOLDOWN_SECONDS", 2.0),
        max_history_messages=_get_int("MAX_HISTORY_MESSAGES", 20),
        provider_timeout_seconds=_get_float("PROVIDER_TIMEOUT_SECONDS", 15.0),

        # Transcoding
        ffmpeg_path=_get_str("FFMPEG_PATH", "ffmpeg"),
        audio_temp_dir=_get_str("AUDIO_TEMP_DIR"),
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
