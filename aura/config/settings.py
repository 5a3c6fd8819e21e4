"""Configuration settings for the companion."""

import os
from pathlib import Path
from typing import Optional, Dict, Any, Union
from dataclasses import dataclass, field, asdict, fields
import json
import structlog
from dotenv import load_dotenv
import threading


logger = structlog.get_logger()


@dataclass
class SystemPrompts:
    """Prompts sent to the generation provider."""
    persona: str = "You are a therapist named Aura. Be extremely concise."
    brevity: str = (
        "Your responses must:\n"
        "- Be 1-2 sentences maximum\n"
        "- Use simple, direct language\n"
        "- Avoid unnecessary words\n"
        "- Never exceed 25 words total"
    )
    greeting: str = (
        "Start a new therapy session with a very brief greeting. Keep it under 15 words. "
        "Be warm but extremely concise. Do NOT ask for the user's name or any personal information."
    )
    fallback_greeting: str = "Hello, I'm Aura. I'm here to listen whenever you're ready."
    apology: str = "Sorry, I couldn't generate a response. Please try again later."


@dataclass
class AudioSettings:
    """Microphone capture settings."""
    sample_rate: int = 16000
    channels: int = 1
    timeslice_ms: int = 500
    dtype: str = "int16"
    min_capture_bytes: int = 100


@dataclass
class ProviderSettings:
    """Provider-specific settings."""
    stt_chain: list = field(default_factory=lambda: ["elevenlabs"])
    ai_chain: list = field(default_factory=lambda: ["gemini"])
    narration_provider: str = "elevenlabs"
    cloning_provider: str = "zyphra"
    on_device_provider: str = "pyttsx3"

    # ElevenLabs speech-to-text
    elevenlabs_stt_model_id: str = "scribe_v1"

    # Gemini
    gemini_model: str = "gemini-2.0-flash"
    gemini_temperature: float = 0.7
    gemini_top_k: int = 40
    gemini_top_p: float = 0.95
    gemini_max_tokens: int = 300
    gemini_history_window: int = 5

    # ElevenLabs narration
    default_voice_id: str = "EXAVITQu4vr4xnSDxMaL"
    elevenlabs_model_id: str = "eleven_turbo_v2"
    elevenlabs_output_format: str = "mp3_44100_128"
    elevenlabs_stability: float = 0.5
    elevenlabs_similarity_boost: float = 0.75
    elevenlabs_style: float = 0.15
    elevenlabs_speed: float = 1.15

    # Zyphra voice cloning
    cloning_namespace: str = "zyphra_"
    zyphra_base_url: str = "https://api.zyphra.com/v1"
    zyphra_model: str = "zonos-v0.1-hybrid"
    zyphra_speaking_rate: int = 15
    min_audio_bytes: int = 100

    # On-device synthesis
    pyttsx3_rate: int = 200


@dataclass
class TimeoutSettings:
    """Timeout settings for remote calls, in seconds."""
    stt_timeout: float = 30.0
    ai_response_timeout: float = 30.0
    tts_generation_timeout: float = 20.0
    playback_ready_timeout: float = 2.0


@dataclass
class SyncSettings:
    """Remote session store settings."""
    api_url: str = "http://localhost:3005"
    health_path: str = "/api/health"
    sync_path: str = "/api/sessions/sync"
    probe_timeout: float = 3.0
    request_timeout: float = 10.0
    enabled: bool = True


@dataclass
class AnalysisSettings:
    """Thresholds and cutoffs for cross-session analysis."""
    trend_threshold: float = 0.15
    mixed_spread_threshold: float = 0.25
    top_themes: int = 5
    top_recommendations: int = 3
    evolution_min_sessions: int = 2
    evolution_max_themes: int = 4
    speech_seconds_per_char: float = 0.05
    analysis_temperature: float = 0.4
    analysis_max_tokens: int = 1024
    synthetic_seed: int = 1729


@dataclass
class StorageSettings:
    """Local-first storage settings."""
    data_dir: str = "~/.aura"
    metrics_enabled: bool = True


@dataclass
class LoggingSettings:
    """Logging configuration settings."""
    level: str = "INFO"
    format: str = "json"
    file_enabled: bool = True
    file_rotation_mb: int = 10
    file_backup_count: int = 7
    session_logs: bool = True


_SECTIONS = (
    "system_prompts",
    "audio",
    "providers",
    "timeouts",
    "sync",
    "analysis",
    "storage",
    "logging",
)


class Settings:
    """Main settings class for the companion."""

    def __init__(self, config_file: Optional[Union[str, Path]] = None):
        self.config_file = Path(config_file) if config_file else None
        self._lock = threading.RLock()
        self._env_loaded = False

        self.system_prompts = SystemPrompts()
        self.audio = AudioSettings()
        self.providers = ProviderSettings()
        self.timeouts = TimeoutSettings()
        self.sync = SyncSettings()
        self.analysis = AnalysisSettings()
        self.storage = StorageSettings()
        self.logging = LoggingSettings()

        # .env first, then file, then environment overrides
        self._load_env_file()

        if self.config_file and self.config_file.exists():
            self.load_from_file()

        self.load_from_env()

    def _load_env_file(self) -> None:
        """Load environment variables from the nearest .env file."""
        if not self._env_loaded:
            current_dir = Path.cwd()
            for parent in [current_dir] + list(current_dir.parents):
                env_file = parent / ".env"
                if env_file.exists():
                    load_dotenv(env_file)
                    logger.debug("Loaded .env file", path=str(env_file))
                    break
            self._env_loaded = True

    def load_from_file(self) -> None:
        """Load settings from the JSON configuration file."""
        if not self.config_file or not self.config_file.exists():
            return

        try:
            with self._lock:
                with open(self.config_file, "r") as f:
                    config = json.load(f)

                for section_name in _SECTIONS:
                    section_config = config.get(section_name)
                    if not isinstance(section_config, dict):
                        continue
                    section = getattr(self, section_name)
                    for key, value in section_config.items():
                        if hasattr(section, key):
                            setattr(section, key, value)

                logger.info("Loaded settings from file", file=str(self.config_file))

        except (OSError, json.JSONDecodeError) as e:
            logger.error("Failed to load settings from file",
                         file=str(self.config_file),
                         error=str(e))

    def load_from_env(self) -> None:
        """Load settings from environment variables."""
        with self._lock:
            if os.getenv("AURA_SYSTEM_PROMPT"):
                self.system_prompts.persona = os.getenv("AURA_SYSTEM_PROMPT")

            if os.getenv("AUDIO_SAMPLE_RATE"):
                self.audio.sample_rate = int(os.getenv("AUDIO_SAMPLE_RATE"))
            if os.getenv("AUDIO_CHANNELS"):
                self.audio.channels = int(os.getenv("AUDIO_CHANNELS"))
            if os.getenv("AUDIO_TIMESLICE_MS"):
                self.audio.timeslice_ms = int(os.getenv("AUDIO_TIMESLICE_MS"))

            if os.getenv("GEMINI_MODEL"):
                self.providers.gemini_model = os.getenv("GEMINI_MODEL")
            if os.getenv("GEMINI_TEMPERATURE"):
                self.providers.gemini_temperature = float(os.getenv("GEMINI_TEMPERATURE"))
            if os.getenv("GEMINI_MAX_TOKENS"):
                self.providers.gemini_max_tokens = int(os.getenv("GEMINI_MAX_TOKENS"))

            if os.getenv("DEFAULT_VOICE_ID"):
                self.providers.default_voice_id = os.getenv("DEFAULT_VOICE_ID")
            if os.getenv("ELEVENLABS_MODEL_ID"):
                self.providers.elevenlabs_model_id = os.getenv("ELEVENLABS_MODEL_ID")
            if os.getenv("ELEVENLABS_OUTPUT_FORMAT"):
                self.providers.elevenlabs_output_format = os.getenv("ELEVENLABS_OUTPUT_FORMAT")
            if os.getenv("ZYPHRA_MODEL"):
                self.providers.zyphra_model = os.getenv("ZYPHRA_MODEL")

            if os.getenv("AI_RESPONSE_TIMEOUT"):
                self.timeouts.ai_response_timeout = float(os.getenv("AI_RESPONSE_TIMEOUT"))
            if os.getenv("TTS_GENERATION_TIMEOUT"):
                self.timeouts.tts_generation_timeout = float(os.getenv("TTS_GENERATION_TIMEOUT"))

            if os.getenv("AURA_API_URL"):
                self.sync.api_url = os.getenv("AURA_API_URL")
            if os.getenv("AURA_SYNC_ENABLED"):
                self.sync.enabled = os.getenv("AURA_SYNC_ENABLED").lower() == "true"
            if os.getenv("AURA_PROBE_TIMEOUT"):
                self.sync.probe_timeout = float(os.getenv("AURA_PROBE_TIMEOUT"))

            if os.getenv("AURA_TREND_THRESHOLD"):
                self.analysis.trend_threshold = float(os.getenv("AURA_TREND_THRESHOLD"))
            if os.getenv("AURA_MIXED_SPREAD_THRESHOLD"):
                self.analysis.mixed_spread_threshold = float(os.getenv("AURA_MIXED_SPREAD_THRESHOLD"))
            if os.getenv("AURA_TOP_THEMES"):
                self.analysis.top_themes = int(os.getenv("AURA_TOP_THEMES"))

            if os.getenv("AURA_DATA_DIR"):
                self.storage.data_dir = os.getenv("AURA_DATA_DIR")
            if os.getenv("METRICS_ENABLED"):
                self.storage.metrics_enabled = os.getenv("METRICS_ENABLED").lower() == "true"

            if os.getenv("LOG_LEVEL"):
                self.logging.level = os.getenv("LOG_LEVEL")
            if os.getenv("LOG_FORMAT"):
                self.logging.format = os.getenv("LOG_FORMAT")
            if os.getenv("LOG_FILE_ENABLED"):
                self.logging.file_enabled = os.getenv("LOG_FILE_ENABLED").lower() == "true"

    @property
    def data_path(self) -> Path:
        """Resolved local data directory."""
        return Path(self.storage.data_dir).expanduser()

    def save_to_file(self, file_path: Optional[Union[str, Path]] = None) -> None:
        """Save current settings to file."""
        save_path = Path(file_path) if file_path else self.config_file
        if not save_path:
            raise ValueError("No file path provided")

        try:
            with self._lock:
                save_path.parent.mkdir(parents=True, exist_ok=True)
                with open(save_path, "w") as f:
                    json.dump(self.to_dict(), f, indent=2, ensure_ascii=False)

                logger.info("Saved settings to file", file=str(save_path))

        except OSError as e:
            logger.error("Failed to save settings to file",
                         file=str(save_path), error=str(e))
            raise

    def get_provider_config(self, provider_type: str) -> Dict[str, Any]:
        """Get constructor configuration for a specific provider."""
        p = self.providers
        if provider_type == "elevenlabs_stt":
            return {
                "model_id": p.elevenlabs_stt_model_id,
                "timeout": self.timeouts.stt_timeout,
            }
        elif provider_type == "gemini":
            return {
                "model_name": p.gemini_model,
                "temperature": p.gemini_temperature,
                "top_k": p.gemini_top_k,
                "top_p": p.gemini_top_p,
                "max_tokens": p.gemini_max_tokens,
                "history_window": p.gemini_history_window,
                "system_prompt": f"{self.system_prompts.persona}\n\n{self.system_prompts.brevity}",
                "timeout": self.timeouts.ai_response_timeout,
            }
        elif provider_type == "elevenlabs":
            return {
                "model_id": p.elevenlabs_model_id,
                "output_format": p.elevenlabs_output_format,
                "stability": p.elevenlabs_stability,
                "similarity_boost": p.elevenlabs_similarity_boost,
                "style": p.elevenlabs_style,
                "speed": p.elevenlabs_speed,
                "timeout": self.timeouts.tts_generation_timeout,
            }
        elif provider_type == "zyphra":
            return {
                "base_url": p.zyphra_base_url,
                "model": p.zyphra_model,
                "speaking_rate": p.zyphra_speaking_rate,
                "min_audio_bytes": p.min_audio_bytes,
                "timeout": self.timeouts.tts_generation_timeout,
            }
        elif provider_type == "pyttsx3":
            return {"rate": p.pyttsx3_rate}
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

        if self.audio.sample_rate not in [8000, 16000, 44100, 48000]:
            issues.append(f"Invalid sample rate: {self.audio.sample_rate}")
        if self.audio.channels not in [1, 2]:
            issues.append(f"Invalid channels: {self.audio.channels}")
        if self.audio.timeslice_ms <= 0:
            issues.append(f"Invalid timeslice: {self.audio.timeslice_ms}")

        if self.timeouts.ai_response_timeout <= 0:
            issues.append(f"Invalid AI response timeout: {self.timeouts.ai_response_timeout}")
        if self.timeouts.tts_generation_timeout <= 0:
            issues.append(f"Invalid TTS timeout: {self.timeouts.tts_generation_timeout}")
        if self.sync.probe_timeout <= 0:
            issues.append(f"Invalid probe timeout: {self.sync.probe_timeout}")

        if not 0 < self.analysis.trend_threshold < 1:
            issues.append(f"Invalid trend threshold: {self.analysis.trend_threshold}")
        if not 0 < self.analysis.mixed_spread_threshold <= 1:
            issues.append(f"Invalid mixed spread threshold: {self.analysis.mixed_spread_threshold}")
        if self.analysis.top_themes < 1:
            issues.append(f"Invalid top themes cutoff: {self.analysis.top_themes}")

        if not self.providers.cloning_namespace:
            issues.append("Cloning namespace must not be empty")

        return issues

    def to_dict(self) -> Dict[str, Any]:
        """Convert settings to dictionary for serialization."""
        return {name: asdict(getattr(self, name)) for name in _SECTIONS}


def section_fields(section: Any) -> list[str]:
    """Names of the fields of a settings section."""
    return [f.name for f in fields(section)]


# Global settings instance
settings = Settings()
