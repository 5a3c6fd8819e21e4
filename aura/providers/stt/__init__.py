"""Speech-to-Text providers."""

from .base import STTProvider, Transcript
from .transcriber import SpeechTranscriber


def register_providers():
    """Register all STT providers."""
    # Import at function level to avoid circular imports
    from ..registry import registry
    from ...config.settings import settings
    from .elevenlabs import ElevenLabsSTTProvider
    from .placeholder import PlaceholderSTTProvider

    registry.register_stt_provider(
        "elevenlabs",
        ElevenLabsSTTProvider,
        lambda: settings.get_provider_config("elevenlabs_stt"),
    )
    registry.register_stt_provider("placeholder", PlaceholderSTTProvider)


__all__ = ["STTProvider", "SpeechTranscriber", "Transcript", "register_providers"]
