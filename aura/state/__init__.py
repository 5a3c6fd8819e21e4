"""Local-first persistence of sessions and voices."""

from .models import (
    AggregateAnalysis,
    Message,
    Provenance,
    Role,
    Sentiment,
    SentimentTrend,
    Session,
    SessionAnalysis,
    SpeakingTime,
    SyncState,
    ThemeScore,
    VoiceProfile,
)
from .storage import LocalStorage
from .session_store import SessionStore
from .voices import VoiceRegistry

__all__ = [
    "AggregateAnalysis",
    "LocalStorage",
    "Message",
    "Provenance",
    "Role",
    "Sentiment",
    "SentimentTrend",
    "Session",
    "SessionAnalysis",
    "SessionStore",
    "SpeakingTime",
    "SyncState",
    "ThemeScore",
    "VoiceProfile",
    "VoiceRegistry",
]
