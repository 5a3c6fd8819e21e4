"""On-device synthesis with pyttsx3."""

import asyncio
import os
import tempfile
import threading
from pathlib import Path
from typing import Optional
import structlog

from ...errors import TransientProviderError
from .base import TTSProvider, AudioClip


logger = structlog.get_logger()


class Pyttsx3Provider(TTSProvider):
    """Renders speech with the operating system's engine, without network access."""

    name = "pyttsx3"

    def __init__(self, rate: int = 200, voice: Optional[str] = None):
        self.rate = rate
        self.voice = voice
        self._engine = None
        # the engine is not thread-safe
        self._lock = threading.Lock()

    def _get_engine(self):
        if self._engine is None:
            # imported lazily: initialization probes platform speech drivers
            import pyttsx3
            self._engine = pyttsx3.init()
            self._engine.setProperty("rate", self.rate)
            if self.voice:
                for v in self._engine.getProperty("voices"):
                    if self.voice.lower() in v.name.lower() or self.voice == v.id:
                        self._engine.setProperty("voice", v.id)
                        break
        return self._engine

    def _render(self, text: str) -> bytes:
        with self._lock:
            engine = self._get_engine()
            fd, tmp_name = tempfile.mkstemp(suffix=".wav")
            os.close(fd)
            tmp_path = Path(tmp_name)
            try:
                engine.save_to_file(text, str(tmp_path))
                engine.runAndWait()
                return tmp_path.read_bytes()
            finally:
                tmp_path.unlink(missing_ok=True)

    async def synthesize(self, text: str, voice_id: Optional[str] = None) -> AudioClip:
        try:
            audio = await asyncio.to_thread(self._render, text)
        except Exception as e:
            raise TransientProviderError(self.name, str(e), e) from e

        if not audio:
            raise TransientProviderError(self.name, "engine produced no audio")
        return AudioClip(data=audio, format="wav", voice_id=None, provider=self.name)
