"""Playback of synthesized replies through the pygame mixer."""

import asyncio
import os
import threading
from io import BytesIO
from typing import Any, Optional

os.environ.setdefault("PYGAME_HIDE_SUPPORT_PROMPT", "1")
import pygame
import structlog


logger = structlog.get_logger()


class AudioPlayer:
    """
    Plays one clip at a time and resolves when it has finished.

    ``play()`` returns ``False`` instead of raising when the clip cannot be
    decoded or the output device is unavailable, so a failed playback only
    degrades the turn.
    """

    def __init__(self, poll_interval: float = 0.05, ready_timeout: float = 2.0, mixer: Any = None):
        self.poll_interval = poll_interval
        self.ready_timeout = ready_timeout
        self.mixer = mixer or pygame.mixer
        self._buffer: Optional[BytesIO] = None
        self._stopped = False
        self._playing = False
        # a play() that timed out or was stopped no longer owns the mixer
        self._token = 0
        self._load_lock = threading.Lock()

    @property
    def is_playing(self) -> bool:
        return self._playing

    def _owns_mixer(self, token: int) -> bool:
        return token == self._token and not self._stopped

    def _load_and_play(self, data: bytes, fmt: str, token: int) -> None:
        with self._load_lock:
            if not self._owns_mixer(token):
                return
            if not self.mixer.get_init():
                self.mixer.init()
            self._buffer = BytesIO(data)
            self.mixer.music.load(self._buffer, fmt)
            self.mixer.music.play()
            # stop() or a timeout may have landed while the clip was loading
            if not self._owns_mixer(token):
                self.mixer.music.stop()
                self._buffer = None

    async def play(self, audio) -> bool:
        """Play a ``SynthesizedAudio`` clip. Returns ``True`` if it played to the end."""
        if not audio.data:
            return False

        self._token += 1
        token = self._token
        self._stopped = False
        try:
            await asyncio.wait_for(
                asyncio.to_thread(self._load_and_play, audio.data, audio.format, token),
                timeout=self.ready_timeout,
            )
        except (pygame.error, OSError, asyncio.TimeoutError) as e:
            self._abandon(token)
            logger.warning("Playback failed to start", error=str(e) or type(e).__name__,
                           format=audio.format, tier=getattr(audio, "tier", None))
            return False

        try:
            if not self._owns_mixer(token):
                self._abandon(token)
                logger.debug("Playback stopped while loading")
                return False

            self._playing = True
            while self._owns_mixer(token) and self.mixer.music.get_busy():
                await asyncio.sleep(self.poll_interval)
        finally:
            self._playing = False
            if token == self._token:
                self._buffer = None

        if not self._owns_mixer(token):
            logger.debug("Playback stopped early")
            return False
        return True

    def _abandon(self, token: int) -> None:
        """Make sure a clip from ``token`` never keeps playing."""
        if token == self._token:
            self._token += 1
        if self.mixer.get_init():
            self.mixer.music.stop()

    def stop(self) -> None:
        self._stopped = True
        if self.mixer.get_init():
            self.mixer.music.stop()

    def release(self) -> None:
        """Stop playback and free the output device."""
        self.stop()
        if self.mixer.get_init():
            self.mixer.quit()
        self._buffer = None
        logger.debug("Audio output released")
