"""
Configuration management for the call relay.

Loads environment variables and provides a strongly-typed configuration object.
Validates required keys at startup.
"""

import os
from dataclasses import dataclass
from functools import lru_cache
from typing import Tuple

from dotenv import load_dotenv
import structlog

load_dotenv()

logger = structlog.get_logger(__name__)

SESSION_EXPIRY_POLICIES = ("end_call", "finish_turn")


class ConfigError(Exception):
    """Raised when configuration is invalid or missing."""
    pass


@dataclass(frozen=True)
class Config:
    """Strongly-typed configuration object."""

    # Server
    port: int = 8080
    log_level: str = "INFO"

    # OpenAI Realtime (speech-to-speech backend)
    openai_api_key: str = ""
    openai_realtime_model: str = "gpt-4o-realtime-preview-2024-12-17"
    openai_realtime_voice: str = "shimmer"
    openai_transcription_model: str = "whisper-1"
    openai_temperature: float = 0.7
    openai_max_output_tokens: int = 150

    # Steady-state caller speech detection (armed after the greeting)
    vad_threshold: float = 0.5
    vad_prefix_padding_ms: int = 300
    vad_silence_duration_ms: int = 700

    # Backend REST (scripts, transcripts, interest notifications)
    api_base_url: str = "https://zenix.group"
    backend_timeout_seconds: float = 10.0
    backend_max_retries: int = 3
    backend_retry_base_seconds: float = 0.5
    transcript_flush_interval_seconds: float = 30.0

    # ElevenLabs (external TTS). Both key and voice must be set to enable it.
    elevenlabs_api_key: str = ""
    elevenlabs_voice_id: str = ""
    elevenlabs_model_id: str = "eleven_turbo_v2_5"
    elevenlabs_streaming_latency: int = 4

    # Interest detection
    # - empty keyword tuples mean "use the built-in lists"
    interest_min_utterances: int = 2
    interest_min_words: int = 3
    interest_positive_keywords: Tuple[str, ...] = ()
    interest_negative_keywords: Tuple[str, ...] = ()

    # What to do when the backend reports session expiry: "end_call" | "finish_turn"
    session_expiry_policy: str = "end_call"

    @property
    def use_external_tts(self) -> bool:
        """True when AI audio is produced by ElevenLabs instead of the backend."""
        return bool(self.elevenlabs_api_key and self.elevenlabs_voice_id)

    @property
    def voice_provider(self) -> str:
        return "elevenlabs" if self.use_external_tts else "openai"

    @property
    def realtime_url(self) -> str:
        """Get the OpenAI Realtime WebSocket URL."""
        return f"wss://api.openai.com/v1/realtime?model={self.openai_realtime_model}"

    def validate(self) -> None:
        """Validate that all required configuration is present."""
        missing = []

        if not self.openai_api_key:
            missing.append("OPENAI_API_KEY")
        if not self.openai_realtime_model:
            missing.append("OPENAI_REALTIME_MODEL")
        if not self.api_base_url:
            missing.append("API_BASE_URL")

        if bool(self.elevenlabs_api_key) != bool(self.elevenlabs_voice_id):
            raise ConfigError(
                "ELEVENLABS_API_KEY and ELEVENLABS_VOICE_ID must be set together "
                "to enable ElevenLabs voice output."
            )

        if self.session_expiry_policy not in SESSION_EXPIRY_POLICIES:
            raise ConfigError(
                f"Invalid SESSION_EXPIRY_POLICY '{self.session_expiry_policy}'. "
                f"Expected one of: {', '.join(SESSION_EXPIRY_POLICIES)}."
            )

        if self.interest_min_words < 1 or self.interest_min_utterances < 0:
            raise ConfigError("INTEREST_MIN_WORDS must be >= 1 and INTEREST_MIN_UTTERANCES >= 0.")

        if missing:
            raise ConfigError(
                f"Missing required environment variables: {', '.join(missing)}\n"
                "Please check your .env file."
            )

    def log_config(self) -> None:
        """Log configuration (without secrets)."""
        logger.info(
            "Configuration loaded",
            port=self.port,
            log_level=self.log_level,
            realtime_model=self.openai_realtime_model,
            realtime_voice=self.openai_realtime_voice,
            voice_provider=self.voice_provider,
            elevenlabs_voice_id=self.elevenlabs_voice_id or None,
            api_base_url=self.api_base_url,
            vad_threshold=self.vad_threshold,
            vad_silence_duration_ms=self.vad_silence_duration_ms,
            transcript_flush_interval_seconds=self.transcript_flush_interval_seconds,
            interest_min_utterances=self.interest_min_utterances,
            interest_min_words=self.interest_min_words,
            session_expiry_policy=self.session_expiry_policy,
            openai_key_set=bool(self.openai_api_key),
            elevenlabs_key_set=bool(self.elevenlabs_api_key),
        )


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


def _get_list(key: str) -> Tuple[str, ...]:
    """Get a comma-separated list from environment variable."""
    raw = os.getenv(key, "")
    return tuple(item.strip().lower() for item in raw.split(",") if item.strip())


@lru_cache(maxsize=1)
def get_config() -> Config:
    """
    Get the application configuration.

    Uses lru_cache to ensure we only load config once.
    """
    return Config(
        # Server
        port=_get_int("PORT", 8080),
        log_level=os.getenv("LOG_LEVEL", "INFO").upper(),

        # OpenAI Realtime
        openai_api_key=os.getenv("OPENAI_API_KEY", ""),
        openai_realtime_model=os.getenv("OPENAI_REALTIME_MODEL", "gpt-4o-realtime-preview-2024-12-17"),
        openai_realtime_voice=os.getenv("OPENAI_REALTIME_VOICE", "shimmer"),
        openai_transcription_model=os.getenv("OPENAI_TRANSCRIPTION_MODEL", "whisper-1"),
        openai_temperature=_get_float("OPENAI_TEMPERATURE", 0.7),
        openai_max_output_tokens=_get_int("OPENAI_MAX_OUTPUT_TOKENS", 150),

        # VAD
        vad_threshold=_get_float("VAD_THRESHOLD", 0.5),
        vad_prefix_padding_ms=_get_int("VAD_PREFIX_PADDING_MS", 300),
        vad_silence_duration_ms=_get_int("VAD_SILENCE_DURATION_MS", 700),

        # Backend REST
        api_base_url=os.getenv("API_BASE_URL", "https://zenix.group").rstrip("/"),
        backend_timeout_seconds=_get_float("BACKEND_TIMEOUT_SECONDS", 10.0),
        backend_max_retries=_get_int("BACKEND_MAX_RETRIES", 3),
        backend_retry_base_seconds=_get_float("BACKEND_RETRY_BASE_SECONDS", 0.5),
        transcript_flush_interval_seconds=_get_float("TRANSCRIPT_FLUSH_INTERVAL_SECONDS", 30.0),

        # ElevenLabs
        elevenlabs_api_key=os.getenv("ELEVENLABS_API_KEY", ""),
        elevenlabs_voice_id=os.getenv("ELEVENLABS_VOICE_ID", ""),
        elevenlabs_model_id=os.getenv("ELEVENLABS_MODEL_ID", "eleven_turbo_v2_5"),
        elevenlabs_streaming_latency=_get_int("ELEVENLABS_STREAMING_LATENCY", 4),

        # Interest detection
        interest_min_utterances=_get_int("INTEREST_MIN_UTTERANCES", 2),
        interest_min_words=_get_int("INTEREST_MIN_WORDS", 3),
        interest_positive_keywords=_get_list("INTEREST_POSITIVE_KEYWORDS"),
        interest_negative_keywords=_get_list("INTEREST_NEGATIVE_KEYWORDS"),

        session_expiry_policy=os.getenv("SESSION_EXPIRY_POLICY", "end_call").strip().lower(),
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
