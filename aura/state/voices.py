"""Registered synthesis voices and their reference audio."""

import base64
import binascii
import random
import string
import time
from typing import List, Optional
import structlog

from ..errors import VoiceValidationError
from .models import VoiceProfile, utcnow
from .storage import LocalStorage


logger = structlog.get_logger()

VOICES_KEY = "voices"
VOICE_AUDIO_PREFIX = "voice_audio_"

CLONING_PROVIDER = "zyphra"
NARRATION_PROVIDER = "elevenlabs"

VALID_AUDIO_TYPES = ("audio/wav", "audio/mpeg", "audio/mp3", "audio/x-m4a")
MAX_REFERENCE_BYTES = 15 * 1024 * 1024

_CONTENT_TYPES_BY_SUFFIX = {
    ".wav": "audio/wav",
    ".mp3": "audio/mpeg",
    ".mpeg": "audio/mpeg",
    ".m4a": "audio/x-m4a",
}


def content_type_for(filename: str) -> Optional[str]:
    """Guess the audio content type from a file name."""
    lowered = filename.lower()
    for suffix, content_type in _CONTENT_TYPES_BY_SUFFIX.items():
        if lowered.endswith(suffix):
            return content_type
    return None


def validate_reference_audio(audio: bytes, content_type: str) -> None:
    """Raise ``VoiceValidationError`` if reference audio cannot be used for cloning."""
    problems = []
    if content_type not in VALID_AUDIO_TYPES:
        problems.append(f"invalid type: {content_type}")
    if not audio:
        problems.append("no audio provided")
    elif len(audio) > MAX_REFERENCE_BYTES:
        problems.append("exceeds 15MB limit")
    if problems:
        raise VoiceValidationError("; ".join(problems))


class VoiceRegistry:
    """Voice profiles plus base64-encoded reference audio, kept in local storage."""

    def __init__(self, storage: LocalStorage, cloning_namespace: str = "zyphra_"):
        self.storage = storage
        self.cloning_namespace = cloning_namespace

    def is_cloned(self, voice_id: str) -> bool:
        return voice_id.startswith(self.cloning_namespace)

    def list(self) -> List[VoiceProfile]:
        """All registered voices, oldest first."""
        raw = self.storage.get(VOICES_KEY, [])
        if not isinstance(raw, list):
            return []
        voices = []
        for item in raw:
            try:
                voices.append(VoiceProfile.from_dict(item))
            except (KeyError, TypeError, ValueError) as e:
                logger.warning("Skipping unreadable voice profile", error=str(e))
        return sorted(voices, key=lambda v: v.created_at)

    def get(self, voice_id: str) -> Optional[VoiceProfile]:
        for voice in self.list():
            if voice.id == voice_id:
                return voice
        return None

    def add(self, profile: VoiceProfile) -> VoiceProfile:
        """Register a voice, replacing any profile with the same id."""
        voices = [v for v in self.list() if v.id != profile.id]
        voices.append(profile)
        self.storage.set(VOICES_KEY, [v.to_dict() for v in voices])
        logger.info("Registered voice", voice_id=profile.id, provider=profile.provider)
        return profile

    def latest(self) -> Optional[VoiceProfile]:
        voices = self.list()
        return voices[-1] if voices else None

    def save_reference_audio(self, voice_id: str, audio: bytes) -> str:
        key = VOICE_AUDIO_PREFIX + voice_id
        self.storage.set(key, base64.b64encode(audio).decode("ascii"))
        return key

    def load_reference_audio(self, voice_id: str) -> Optional[bytes]:
        """Reference audio for a voice, or ``None`` if absent or undecodable."""
        encoded = self.storage.get(VOICE_AUDIO_PREFIX + voice_id)
        if not isinstance(encoded, str) or not encoded:
            return None
        try:
            return base64.b64decode(encoded, validate=True)
        except (binascii.Error, ValueError):
            logger.warning("Reference audio is not valid base64", voice_id=voice_id)
            return None

    def has_reference_audio(self, voice_id: str) -> bool:
        return self.load_reference_audio(voice_id) is not None

    def select_session_voice(self, default_voice_id: str) -> str:
        """
        Pick the voice for a new session.

        The most recently created voice wins. A cloned voice without reference
        audio is skipped in favour of the next usable one; with none usable
        the default narration voice is used.
        """
        for voice in reversed(self.list()):
            if self.is_cloned(voice.id) and not self.has_reference_audio(voice.id):
                logger.warning("Skipping cloned voice without reference audio", voice_id=voice.id)
                continue
            return voice.id
        return default_voice_id

    def create_cloned_voice(self, name: str, audio: bytes, content_type: str) -> VoiceProfile:
        """Validate reference audio and register it as a new cloned voice."""
        validate_reference_audio(audio, content_type)

        suffix = "".join(random.choices(string.ascii_lowercase + string.digits, k=9))
        voice_id = f"{self.cloning_namespace}{int(time.time() * 1000)}_{suffix}"
        ref = self.save_reference_audio(voice_id, audio)
        profile = VoiceProfile(
            id=voice_id,
            provider=CLONING_PROVIDER,
            name=name,
            reference_audio_ref=ref,
            created_at=utcnow(),
        )
        return self.add(profile)
