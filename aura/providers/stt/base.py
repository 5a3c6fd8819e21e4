"""Base interface for Speech-to-Text providers."""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Optional


@dataclass
class Transcript:
    """Text recognized from one captured utterance."""

    text: str
    provider: str
    is_placeholder: bool = False
    language: Optional[str] = None
    confidence: Optional[float] = None
    latency: Optional[float] = None

    @property
    def is_empty(self) -> bool:
        return not self.text.strip()


class STTProvider(ABC):
    """Abstract base class for STT providers."""

    name: str = "stt"

    @abstractmethod
    async def transcribe(self, audio: bytes, mime_type: str = "audio/wav") -> Transcript:
        """
        Transcribe a complete recording.

        Raises:
            EmptyTranscriptionError: the recording contains no speech
            TransientProviderError: the provider could not be reached or failed
        """
        pass

    def get_status(self) -> dict:
        """Get current status of the STT provider."""
        return {"provider": self.name}
