"""Configuration settings for the voice bot."""

import os
from pathlib import Path
from typing import Optional, Dict, Any, Union
from dataclasses import dataclass, asdict
import json
import structlog
from dotenv import load_dotenv
import threading


logger = structlog.get_logger()


DEFAULT_SYSTEM_PROMPT = """You are Dr. HealthAI, a compassionate and knowledgeable medical assistant bot. Your role is to:

1. Provide helpful medical information and health advice
2. Listen carefully to symptoms and concerns
3. Offer general guidance but always remind users to consult healthcare professionals for serious issues
4. Be empathetic, clear, and reassuring in your responses
5. Keep responses concise and conversational (2-3 sentences for voice responses)
6. Never diagnose or prescribe medication - only provide general information
7. Always prioritize patient safety and encourage professional medical consultation when needed

Remember: You are providing general health information, not medical diagnosis or treatment. Always recommend consulting with a qualified healthcare provider for personalized medical advice.

Respond in a warm, professional, and conversational tone suitable for voice interaction."""


@dataclass
class PersonaSettings:
    """What the bot says and how it sounds."""
    name: str = "Dr. HealthAI"
    system_prompt: str = DEFAULT_SYSTEM_PROMPT
    intro_message: str = (
        "Hello! I'm Dr. HealthAI, your medical assistant. How can I help you today? "
        "Feel free to describe any symptoms or health concerns you have."
    )
    speech_rate: float = 0.95
    apology: str = (
        "I'm sorry, I'm having trouble processing your request right now. "
        "Please try again."
    )
    apology_display: str = "Failed to get response from medical bot"
    config_apology: str = (
        "I'm sorry, but I'm not properly configured. Please check that the "
        "Gemini API key is set in the environment variables."
    )
    config_apology_display: str = (
        "API key not configured. Please add GEMINI_API_KEY to the environment"
    )
    microphone_denied_display: str = "Failed to access microphone. Please grant permission."
    capture_failed_display: str = "Speech recognition stopped working. Please start the call again."


@dataclass
class ChatSettings:
    """Chat backend settings."""
    provider: str = "http"  # http or gemini
    endpoint_url: str = "http://localhost:3000/api/chat"
    history_window: int = 10
    request_timeout: float = 30.0  # seconds
    config_error_marker: str = "API key"

    # Gemini
    gemini_model: str = "gemini-2.0-flash"
    gemini_temperature: float = 0.7
    gemini_max_tokens: int = 1024


@dataclass
class SpeechSettings:
    """Speech output settings."""
    engine: str = "elevenlabs"
    preferred_locale: str = "te-IN"
    voice_name_hint: str = "telugu"
    init_timeout: float = 5.0  # seconds
    ready_settle: float = 0.25  # seconds
    settle_delay: float = 0.15  # seconds
    speak_ready_timeout: float = 3.0  # seconds
    readiness_wait: float = 10.0  # seconds
    poll_interval: float = 0.1  # seconds

    # ElevenLabs
    elevenlabs_model_id: str = "eleven_flash_v2_5"
    elevenlabs_output_format: str = "mp3_22050_32"
    elevenlabs_stability: float = 0.5
    elevenlabs_similarity_boost: float = 0.8


@dataclass
class CaptureSettings:
    """Speech capture settings."""
    engine: str = "whisperkit"  # whisperkit or keyboard
    locale: str = "en-US"
    barge_in: bool = True
    min_utterance_chars: int = 3
    restart_backoff: float = 0.2  # seconds
    max_consecutive_errors: int = 5

    sample_rate: int = 16000
    channels: int = 1
    vad_aggressiveness: int = 3
    silence_duration_ms: int = 700

    # WhisperKit
    whisperkit_model: str = "large-v3_turbo"
    whisperkit_compute_units: str = "cpuAndNeuralEngine"
    whisperkit_path: str = "/opt/homebrew/bin/whisperkit-cli"


@dataclass
class MetricsSettings:
    """Metrics collection settings."""
    enabled: bool = True


@dataclass
class LoggingSettings:
    """Logging configuration settings."""
    level: str = "INFO"
    format: str = "json"
    file_enabled: bool = True
    file_rotation_mb: int = 10
    file_backup_count: int = 7


def _env_bool(value: str) -> bool:
    return value.strip().lower() in ("1", "true", "yes", "on")


class Settings:
    """Main settings class for the voice bot."""

    SECTIONS = ("persona", "chat", "speech", "capture", "metrics", "logging")

    def __init__(self, config_file: Optional[Union[str, Path]] = None):
        self.config_file = Path(config_file) if config_file else None
        self._lock = threading.RLock()
        self._env_loaded = False

        self.persona = PersonaSettings()
        self.chat = ChatSettings()
        self.speech = SpeechSettings()
        self.capture = CaptureSettings()
        self.metrics = MetricsSettings()
        self.logging = LoggingSettings()

        # Load .env file first
        self._load_env_file()

        if self.config_file and self.config_file.exists():
            self.load_from_file()

        # Environment wins over the config file
        self.load_from_env()

    def _load_env_file(self) -> None:
        """Load environment variables from .env file."""
        if not self._env_loaded:
            # Look for .env in current directory and parent directories
            current_dir = Path.cwd()
            for parent in [current_dir] + list(current_dir.parents):
                env_file = parent / ".env"
                if env_file.exists():
                    load_dotenv(env_file)
                    logger.debug("Loaded .env file", path=str(env_file))
                    break
            self._env_loaded = True

    def load_from_file(self) -> None:
        """Load settings from configuration file."""
        if not self.config_file or not self.config_file.exists():
            return

        try:
            with self._lock:
                with open(self.config_file, 'r') as f:
                    config = json.load(f)

                for section_name in self.SECTIONS:
                    if section_name not in config:
                        continue
                    section = getattr(self, section_name)
                    for key, value in config[section_name].items():
                        if hasattr(section, key):
                            setattr(section, key, value)
                        else:
                            logger.warning("Unknown setting ignored",
                                           section=section_name, key=key)

                logger.info("Loaded settings from file", file=str(self.config_file))

        except Exception as e:
            logger.error("Failed to load settings from file",
                         file=str(self.config_file),
                         error=str(e))

    def load_from_env(self) -> None:
        """Load settings from environment variables."""
        with self._lock:
            # Chat backend
            if os.getenv("CHAT_PROVIDER"):
                self.chat.provider = os.getenv("CHAT_PROVIDER")
            if os.getenv("CHAT_ENDPOINT_URL"):
                self.chat.endpoint_url = os.getenv("CHAT_ENDPOINT_URL")
            if os.getenv("CHAT_HISTORY_WINDOW"):
                self.chat.history_window = int(os.getenv("CHAT_HISTORY_WINDOW"))
            if os.getenv("CHAT_REQUEST_TIMEOUT"):
                self.chat.request_timeout = float(os.getenv("CHAT_REQUEST_TIMEOUT"))
            if os.getenv("GEMINI_MODEL"):
                self.chat.gemini_model = os.getenv("GEMINI_MODEL")

            # Speech output
            if os.getenv("SPEECH_ENGINE"):
                self.speech.engine = os.getenv("SPEECH_ENGINE")
            if os.getenv("SPEECH_PREFERRED_LOCALE"):
                self.speech.preferred_locale = os.getenv("SPEECH_PREFERRED_LOCALE")
            if os.getenv("SPEECH_SETTLE_DELAY"):
                self.speech.settle_delay = float(os.getenv("SPEECH_SETTLE_DELAY"))
            if os.getenv("ELEVENLABS_MODEL_ID"):
                self.speech.elevenlabs_model_id = os.getenv("ELEVENLABS_MODEL_ID")

            # Speech capture
            if os.getenv("CAPTURE_ENGINE"):
                self.capture.engine = os.getenv("CAPTURE_ENGINE")
            if os.getenv("CAPTURE_LOCALE"):
                self.capture.locale = os.getenv("CAPTURE_LOCALE")
            if os.getenv("CAPTURE_BARGE_IN"):
                self.capture.barge_in = _env_bool(os.getenv("CAPTURE_BARGE_IN"))
            if os.getenv("WHISPERKIT_MODEL"):
                self.capture.whisperkit_model = os.getenv("WHISPERKIT_MODEL")
            if os.getenv("WHISPERKIT_PATH"):
                self.capture.whisperkit_path = os.getenv("WHISPERKIT_PATH")

            # Metrics settings
            if os.getenv("METRICS_ENABLED"):
                self.metrics.enabled = _env_bool(os.getenv("METRICS_ENABLED"))

            # Logging settings
            if os.getenv("LOG_LEVEL"):
                self.logging.level = os.getenv("LOG_LEVEL")
            if os.getenv("LOG_FORMAT"):
                self.logging.format = os.getenv("LOG_FORMAT")
            if os.getenv("LOG_FILE_ENABLED"):
                self.logging.file_enabled = _env_bool(os.getenv("LOG_FILE_ENABLED"))

    def save_to_file(self, file_path: Optional[Union[str, Path]] = None) -> None:
        """Save current settings to file."""
        save_path = Path(file_path) if file_path else self.config_file
        if not save_path:
            raise ValueError("No file path provided")

        try:
            with self._lock:
                save_path.parent.mkdir(parents=True, exist_ok=True)

                with open(save_path, 'w') as f:
                    json.dump(self.to_dict(), f, indent=2, ensure_ascii=False)

                logger.info("Saved settings to file", file=str(save_path))

        except Exception as e:
            logger.error("Failed to save settings to file",
                         file=str(save_path), error=str(e))
            raise

    def get_provider_config(self, provider_type: str) -> Dict[str, Any]:
        """Get configuration for a specific provider."""
        if provider_type == "whisperkit":
            return {
                "locale": self.capture.locale,
                "model": self.capture.whisperkit_model,
                "compute_units": self.capture.whisperkit_compute_units,
                "whisperkit_path": self.capture.whisperkit_path,
                "sample_rate": self.capture.sample_rate,
                "channels": self.capture.channels,
                "vad_aggressiveness": self.capture.vad_aggressiveness,
                "silence_duration_ms": self.capture.silence_duration_ms,
            }
        elif provider_type == "keyboard":
            return {"locale": self.capture.locale}
        elif provider_type == "elevenlabs":
            return {
                "model_id": self.speech.elevenlabs_model_id,
                "output_format": self.speech.elevenlabs_output_format,
                "stability": self.speech.elevenlabs_stability,
                "similarity_boost": self.speech.elevenlabs_similarity_boost,
            }
        elif provider_type == "http":
            return {
                "endpoint_url": self.chat.endpoint_url,
                "timeout": self.chat.request_timeout,
                "config_error_marker": self.chat.config_error_marker,
            }
        elif provider_type == "gemini":
            return {
                "model_name": self.chat.gemini_model,
                "temperature": self.chat.gemini_temperature,
                "max_tokens": self.chat.gemini_max_tokens,
                "system_prompt": self.persona.system_prompt,
            }
        else:
            raise ValueError(f"Unknown provider type: {provider_type}")

    def reload(self) -> None:
        """Reload settings from file and environment."""
        with self._lock:
            if self.config_file and self.config_file.exists():
                self.load_from_file()
            self.load_from_env()
            logger.info("Settings reloaded")

    def validate(self) -> list[str]:
        """Validate current settings and return list of issues."""
        issues = []

        if self.chat.provider not in ["http", "gemini"]:
            issues.append(f"Unknown chat provider: {self.chat.provider}")
        if self.chat.history_window < 0:
            issues.append(f"Invalid history window: {self.chat.history_window}")
        if self.chat.request_timeout <= 0:
            issues.append(f"Invalid request timeout: {self.chat.request_timeout}")

        if self.speech.engine not in ["elevenlabs"]:
            issues.append(f"Unknown speech engine: {self.speech.engine}")
        if self.speech.settle_delay < 0:
            issues.append(f"Invalid settle delay: {self.speech.settle_delay}")
        if self.speech.poll_interval <= 0:
            issues.append(f"Invalid poll interval: {self.speech.poll_interval}")
        if not 0.5 <= self.persona.speech_rate <= 2.0:
            issues.append(f"Invalid speech rate: {self.persona.speech_rate}")

        if self.capture.engine not in ["whisperkit", "keyboard"]:
            issues.append(f"Unknown capture engine: {self.capture.engine}")
        if self.capture.sample_rate not in [8000, 16000, 32000, 48000]:
            issues.append(f"Invalid sample rate: {self.capture.sample_rate}")
        if self.capture.channels not in [1, 2]:
            issues.append(f"Invalid channels: {self.capture.channels}")
        if self.capture.min_utterance_chars < 0:
            issues.append(f"Invalid minimum utterance length: {self.capture.min_utterance_chars}")
        if self.capture.restart_backoff < 0:
            issues.append(f"Invalid restart backoff: {self.capture.restart_backoff}")
        if self.capture.max_consecutive_errors < 1:
            issues.append(f"Invalid max consecutive errors: {self.capture.max_consecutive_errors}")

        if self.logging.level.upper() not in ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]:
            issues.append(f"Invalid log level: {self.logging.level}")

        return issues

    def to_dict(self) -> Dict[str, Any]:
        """Convert settings to dictionary for serialization."""
        with self._lock:
            return {name: asdict(getattr(self, name)) for name in self.SECTIONS}


# Global settings instance
settings = Settings()
