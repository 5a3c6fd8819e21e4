"""Transcription with fallback to placeholder utterances."""

from typing import List, Optional
import structlog

from ...errors import EmptyTranscriptionError
from ..chain import ChainResult, FallbackChain, Tier
from .base import STTProvider, Transcript
from .placeholder import PlaceholderSTTProvider


logger = structlog.get_logger()

NO_SPEECH_TIER = "no_speech"
TOO_SHORT_TIER = "too_short"


class SpeechTranscriber:
    """
    Runs remote recognizers in order, ending with a placeholder that never fails.

    "No speech" is a legitimate result rather than a failure: it stops the
    chain and yields an empty transcript.
    """

    def __init__(
        self,
        providers: List[STTProvider],
        fallback: Optional[STTProvider] = None,
        min_audio_bytes: int = 100,
        metrics=None,
    ):
        self.providers = list(providers)
        self.fallback = fallback or PlaceholderSTTProvider()
        self.min_audio_bytes = min_audio_bytes
        tiers = [Tier(p.name, p.transcribe) for p in self.providers]
        tiers.append(Tier(self.fallback.name, self.fallback.transcribe))
        self.chain = FallbackChain("transcription", tiers,
                                   stop_on=(EmptyTranscriptionError,), metrics=metrics)

    async def transcribe(self, audio: bytes, mime_type: str = "audio/wav") -> ChainResult[Transcript]:
        if len(audio) < self.min_audio_bytes:
            logger.info("Capture too short to transcribe", bytes=len(audio), minimum=self.min_audio_bytes)
            return ChainResult(value=Transcript(text="", provider="none"), tier=TOO_SHORT_TIER)

        try:
            return await self.chain.run(audio, mime_type)
        except EmptyTranscriptionError:
            return ChainResult(value=Transcript(text="", provider="none"), tier=NO_SPEECH_TIER)
