"""Zyphra voice-cloning provider."""

import base64
import os
from typing import Callable, Optional
import httpx
import structlog

from ...errors import TransientProviderError
from .base import TTSProvider, AudioClip


logger = structlog.get_logger()

ReferenceLookup = Callable[[str], Optional[bytes]]


class ZyphraProvider(TTSProvider):
    """
    Speaks in a cloned voice conditioned on reference audio.

    Reference audio is looked up per voice id; a voice without reference
    audio cannot be synthesized.
    """

    name = "zyphra"

    def __init__(
        self,
        reference_lookup: Optional[ReferenceLookup] = None,
        base_url: str = "https://api.zyphra.com/v1",
        model: str = "zonos-v0.1-hybrid",
        speaking_rate: int = 15,
        min_audio_bytes: int = 100,
        timeout: float = 20.0,
        api_key: Optional[str] = None,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.reference_lookup = reference_lookup
        self.base_url = base_url.rstrip("/")
        self.model = model
        self.speaking_rate = speaking_rate
        self.min_audio_bytes = min_audio_bytes
        self.timeout = timeout
        self.api_key = api_key
        self.client = client

    async def synthesize(self, text: str, voice_id: Optional[str] = None) -> AudioClip:
        if not voice_id:
            raise TransientProviderError(self.name, "a cloned voice id is required")

        reference = self.reference_lookup(voice_id) if self.reference_lookup else None
        if not reference:
            raise TransientProviderError(self.name, f"no reference audio for {voice_id}")

        api_key = self.api_key or os.getenv("ZYPHRA_API_KEY")
        if not api_key:
            raise TransientProviderError(self.name, "ZYPHRA_API_KEY environment variable not set")

        payload = {
            "text": text,
            "speaker_audio": base64.b64encode(reference).decode("ascii"),
            "model": self.model,
            "speaking_rate": self.speaking_rate,
            "mime_type": "audio/mpeg",
        }
        headers = {"X-API-Key": api_key, "Content-Type": "application/json"}
        url = f"{self.base_url}/audio/text-to-speech"

        client = self.client or httpx.AsyncClient(timeout=self.timeout)
        try:
            response = await client.post(url, json=payload, headers=headers, timeout=self.timeout)
            response.raise_for_status()
            audio = response.content
        except httpx.HTTPStatusError as e:
            raise TransientProviderError(self.name, f"HTTP {e.response.status_code}", e) from e
        except httpx.HTTPError as e:
            raise TransientProviderError(self.name, str(e) or type(e).__name__, e) from e
        finally:
            if self.client is None:
                await client.aclose()

        if len(audio) < self.min_audio_bytes:
            raise TransientProviderError(self.name, f"implausibly small payload ({len(audio)} bytes)")

        logger.debug("Cloned speech generated", voice_id=voice_id, bytes=len(audio))
        return AudioClip(data=audio, format="mp3", voice_id=voice_id, provider=self.name)

    def get_status(self) -> dict:
        return {"provider": self.name, "model": self.model, "speaking_rate": self.speaking_rate}
