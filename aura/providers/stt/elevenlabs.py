"""ElevenLabs Scribe speech-to-text provider."""

import asyncio
import os
import time
from io import BytesIO
from typing import Optional
from elevenlabs.client import AsyncElevenLabs
import structlog

from ...errors import EmptyTranscriptionError, TransientProviderError
from .base import STTProvider, Transcript


logger = structlog.get_logger()


class ElevenLabsSTTProvider(STTProvider):
    """Transcribes complete recordings with ElevenLabs Scribe."""

    name = "elevenlabs"

    def __init__(
        self,
        model_id: str = "scribe_v1",
        timeout: float = 30.0,
        api_key: Optional[str] = None,
        client: Optional[AsyncElevenLabs] = None,
    ):
        self.model_id = model_id
        self.timeout = timeout
        self.api_key = api_key
        self.client = client

    def initialize(self) -> None:
        """Create the ElevenLabs client."""
        api_key = self.api_key or os.getenv("ELEVENLABS_API_KEY")
        if not api_key:
            raise TransientProviderError(self.name, "ELEVENLABS_API_KEY environment variable not set")
        self.client = AsyncElevenLabs(api_key=api_key)
        logger.info("ElevenLabs STT client initialized", model=self.model_id)

    async def transcribe(self, audio: bytes, mime_type: str = "audio/wav") -> Transcript:
        if self.client is None:
            self.initialize()

        start_time = time.perf_counter()
        extension = {"audio/wav": "wav", "audio/mpeg": "mp3"}.get(mime_type.split(";")[0], "webm")
        upload = BytesIO(audio)
        upload.name = f"recording.{extension}"

        try:
            result = await asyncio.wait_for(
                self.client.speech_to_text.convert(file=upload, model_id=self.model_id),
                timeout=self.timeout,
            )
        except asyncio.TimeoutError as e:
            raise TransientProviderError(self.name, f"timed out after {self.timeout}s", e) from e
        except Exception as e:
            raise TransientProviderError(self.name, str(e), e) from e

        text = (getattr(result, "text", None) or "").strip()
        latency = (time.perf_counter() - start_time) * 1000
        if not text:
            logger.info("No speech detected", provider=self.name, bytes=len(audio))
            raise EmptyTranscriptionError("No speech detected")

        logger.debug("Transcription complete", provider=self.name, chars=len(text), latency_ms=latency)
        return Transcript(
            text=text,
            provider=self.name,
            language=getattr(result, "language_code", None),
            confidence=getattr(result, "language_probability", None),
            latency=latency,
        )

    def get_status(self) -> dict:
        return {
            "provider": self.name,
            "model": self.model_id,
            "initialized": self.client is not None,
        }
