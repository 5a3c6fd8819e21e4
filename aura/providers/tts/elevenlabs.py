"""ElevenLabs narration provider."""

import asyncio
import inspect
import os
from typing import Any, Optional
from elevenlabs import VoiceSettings
from elevenlabs.client import AsyncElevenLabs
import structlog

from ...errors import TransientProviderError
from .base import TTSProvider, AudioClip


logger = structlog.get_logger()


async def collect_audio(result: Any) -> bytes:
    """Flatten whatever the SDK returned (bytes, response, async or sync iterator) into bytes."""
    if inspect.isawaitable(result):
        result = await result
    if hasattr(result, "content"):
        return bytes(result.content)
    if isinstance(result, (bytes, bytearray)):
        return bytes(result)
    if hasattr(result, "__aiter__"):
        return b"".join([chunk async for chunk in result])
    return b"".join(result)


class ElevenLabsProvider(TTSProvider):
    """Synthesizes narration with ElevenLabs stock voices."""

    name = "elevenlabs"

    def __init__(
        self,
        voice_id: str = "EXAVITQu4vr4xnSDxMaL",
        model_id: str = "eleven_turbo_v2",
        output_format: str = "mp3_44100_128",
        stability: float = 0.5,
        similarity_boost: float = 0.75,
        style: float = 0.15,
        speed: float = 1.15,
        timeout: float = 20.0,
        min_audio_bytes: int = 100,
        api_key: Optional[str] = None,
        client: Optional[AsyncElevenLabs] = None,
    ):
        self.voice_id = voice_id
        self.model_id = model_id
        self.output_format = output_format
        self.timeout = timeout
        self.min_audio_bytes = min_audio_bytes
        self.api_key = api_key
        self.client = client

        self.voice_settings = VoiceSettings(
            stability=stability,
            similarity_boost=similarity_boost,
            style=style,
            use_speaker_boost=True,
            speed=speed,
        )

    def initialize(self) -> None:
        api_key = self.api_key or os.getenv("ELEVENLABS_API_KEY")
        if not api_key:
            raise TransientProviderError(self.name, "ELEVENLABS_API_KEY environment variable not set")
        self.client = AsyncElevenLabs(api_key=api_key)
        logger.info("ElevenLabs TTS client initialized", model=self.model_id)

    async def synthesize(self, text: str, voice_id: Optional[str] = None) -> AudioClip:
        if self.client is None:
            self.initialize()

        voice_id = voice_id or self.voice_id
        logger.debug("Generating narration", voice_id=voice_id, text_length=len(text))

        try:
            result = self.client.text_to_speech.convert(
                voice_id=voice_id,
                text=text,
                model_id=self.model_id,
                output_format=self.output_format,
                voice_settings=self.voice_settings,
            )
            audio = await asyncio.wait_for(collect_audio(result), timeout=self.timeout)
        except asyncio.TimeoutError as e:
            raise TransientProviderError(self.name, f"timed out after {self.timeout}s", e) from e
        except Exception as e:
            raise TransientProviderError(self.name, str(e), e) from e

        if len(audio) < self.min_audio_bytes:
            raise TransientProviderError(self.name, f"implausibly small payload ({len(audio)} bytes)")

        return AudioClip(
            data=audio,
            format=self.output_format.split("_")[0],
            voice_id=voice_id,
            provider=self.name,
        )

    def get_status(self) -> dict:
        return {
            "provider": self.name,
            "voice_id": self.voice_id,
            "model": self.model_id,
            "initialized": self.client is not None,
        }
