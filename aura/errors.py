"""Error taxonomy for the companion."""

from typing import Optional


class AuraError(Exception):
    """Base class for all companion errors."""


class MicrophonePermissionError(AuraError, PermissionError):
    """Microphone access was denied or the input device is unavailable."""


class SessionCreationError(AuraError):
    """A conversation session could not be provisioned."""


class TransientProviderError(AuraError):
    """A remote provider call failed; absorbed by the fallback chains."""

    def __init__(self, provider: str, message: str, cause: Optional[BaseException] = None):
        super().__init__(f"{provider}: {message}")
        self.provider = provider
        self.cause = cause


class EmptyTranscriptionError(AuraError):
    """No speech was detected in the captured audio."""


class SyncError(AuraError):
    """The remote store rejected or could not receive a session."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class StorageCorruptionError(AuraError):
    """A persisted key holds data that cannot be decoded."""

    def __init__(self, key: str, message: str):
        super().__init__(f"{key}: {message}")
        self.key = key


class VoiceValidationError(AuraError):
    """Reference audio supplied for a cloned voice was rejected."""
