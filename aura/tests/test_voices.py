"""Tests for the voice registry."""

import pytest
from datetime import timedelta

from aura.errors import VoiceValidationError
from aura.state.models import VoiceProfile, utcnow
from aura.state.storage import LocalStorage
from aura.state.voices import (
    MAX_REFERENCE_BYTES,
    VoiceRegistry,
    content_type_for,
    validate_reference_audio,
)


DEFAULT_VOICE = "EXAVITQu4vr4xnSDxMaL"


@pytest.fixture
def voices(tmp_path):
    return VoiceRegistry(LocalStorage(tmp_path))


class TestReferenceAudio:

    def test_content_type_from_name(self):
        assert content_type_for("me.WAV") == "audio/wav"
        assert content_type_for("me.m4a") == "audio/x-m4a"
        assert content_type_for("me.ogg") is None

    def test_valid_audio(self):
        validate_reference_audio(b"RIFF" + b"\x00" * 100, "audio/wav")

    def test_rejects_type_and_size(self):
        with pytest.raises(VoiceValidationError, match="invalid type"):
            validate_reference_audio(b"data", "audio/ogg")
        with pytest.raises(VoiceValidationError, match="15MB"):
            validate_reference_audio(b"\x00" * (MAX_REFERENCE_BYTES + 1), "audio/mpeg")
        with pytest.raises(VoiceValidationError, match="no audio"):
            validate_reference_audio(b"", "audio/wav")


class TestVoiceRegistry:

    def test_create_cloned_voice(self, voices):
        profile = voices.create_cloned_voice("My voice", b"RIFF-sample", "audio/wav")

        assert profile.id.startswith("zyphra_")
        assert voices.is_cloned(profile.id)
        assert voices.load_reference_audio(profile.id) == b"RIFF-sample"
        assert voices.get(profile.id).name == "My voice"

    def test_invalid_reference_registers_nothing(self, voices):
        with pytest.raises(VoiceValidationError):
            voices.create_cloned_voice("Bad", b"", "audio/wav")
        assert voices.list() == []

    def test_session_voice_defaults(self, voices):
        assert voices.select_session_voice(DEFAULT_VOICE) == DEFAULT_VOICE

    def test_session_voice_is_most_recent(self, voices):
        now = utcnow()
        voices.add(VoiceProfile(id="stock_old", provider="elevenlabs", name="Old",
                                created_at=now - timedelta(days=2)))
        voices.add(VoiceProfile(id="stock_new", provider="elevenlabs", name="New",
                                created_at=now - timedelta(days=1)))
        assert voices.select_session_voice(DEFAULT_VOICE) == "stock_new"

    def test_cloned_voice_without_reference_is_skipped(self, voices):
        now = utcnow()
        voices.add(VoiceProfile(id="stock_voice", provider="elevenlabs", name="Stock",
                                created_at=now - timedelta(days=1)))
        voices.add(VoiceProfile(id="zyphra_1_orphan", provider="zyphra", name="Orphan", created_at=now))

        assert voices.select_session_voice(DEFAULT_VOICE) == "stock_voice"

    def test_undecodable_reference(self, voices):
        voices.storage.set("voice_audio_zyphra_1_x", "***not base64***")
        assert voices.load_reference_audio("zyphra_1_x") is None
