"""Text-to-Speech providers."""

from .base import AudioClip, TTSProvider
from .synthesizer import SpeechSynthesizer, SynthesizedAudio


def register_providers():
    """Register all TTS providers."""
    # Import at function level to avoid circular imports
    from ..registry import registry
    from ...config.settings import settings
    from .elevenlabs import ElevenLabsProvider
    from .zyphra import ZyphraProvider
    from .local import Pyttsx3Provider

    def get_elevenlabs_config():
        config = settings.get_provider_config("elevenlabs")
        config["voice_id"] = settings.providers.default_voice_id
        config["min_audio_bytes"] = settings.providers.min_audio_bytes
        return config

    registry.register_tts_provider("elevenlabs", ElevenLabsProvider, get_elevenlabs_config)
    registry.register_tts_provider(
        "zyphra", ZyphraProvider, lambda: settings.get_provider_config("zyphra")
    )
    registry.register_tts_provider(
        "pyttsx3", Pyttsx3Provider, lambda: settings.get_provider_config("pyttsx3")
    )


__all__ = ["AudioClip", "SpeechSynthesizer", "SynthesizedAudio", "TTSProvider", "register_providers"]
