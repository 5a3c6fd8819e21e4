"""Base interface for Text-to-Speech providers."""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Optional


@dataclass
class AudioClip:
    """Synthesized audio for one utterance."""
    data: bytes
    format: str = "mp3"
    voice_id: Optional[str] = None
    provider: Optional[str] = None

    @property
    def size(self) -> int:
        return len(self.data)


class TTSProvider(ABC):
    """Abstract base class for TTS providers."""

    name: str = "tts"

    @abstractmethod
    async def synthesize(self, text: str, voice_id: Optional[str] = None) -> AudioClip:
        """
        Convert text to speech.

        Args:
            text: The text to speak
            voice_id: Provider-specific voice; the provider default when omitted

        Raises:
            TransientProviderError: synthesis failed
        """
        pass

    def get_status(self) -> dict:
        """Get current status of the TTS provider."""
        return {"provider": self.name}
