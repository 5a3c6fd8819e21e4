"""Audio capture and playback."""

from .capture import AudioCaptureDevice, CapturedAudio
from .playback import AudioPlayer

__all__ = ["AudioCaptureDevice", "AudioPlayer", "CapturedAudio"]
