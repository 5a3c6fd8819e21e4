"""Embedded silent clip, the synthesis tier that cannot fail."""

import io
import wave
from typing import Optional

from .base import TTSProvider, AudioClip


def _build_silent_wav(duration_ms: int = 250, sample_rate: int = 16000) -> bytes:
    frames = int(sample_rate * duration_ms / 1000)
    buffer = io.BytesIO()
    with wave.open(buffer, "wb") as wav:
        wav.setnchannels(1)
        wav.setsampwidth(2)
        wav.setframerate(sample_rate)
        wav.writeframes(b"\x00\x00" * frames)
    return buffer.getvalue()


SILENT_WAV = _build_silent_wav()


class SilentProvider(TTSProvider):
    name = "silent"

    async def synthesize(self, text: str, voice_id: Optional[str] = None) -> AudioClip:
        return AudioClip(data=SILENT_WAV, format="wav", voice_id=None, provider=self.name)
