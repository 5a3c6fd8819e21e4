"""Data model for conversation sessions, voices and analyses."""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Union


class Role(str, Enum):
    USER = "user"
    ASSISTANT = "assistant"


class Provenance(str, Enum):
    """Where an analysis came from."""
    LLM = "llm"
    SYNTHETIC = "synthetic"
    MIXED = "mixed"
    NONE = "none"


class SentimentTrend(str, Enum):
    IMPROVING = "improving"
    STEADY = "steady"
    DECLINING = "declining"
    MIXED = "mixed"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def to_iso(value: Optional[datetime]) -> Optional[str]:
    """Serialize an aware datetime the way the remote API expects (``Z`` suffix)."""
    if value is None:
        return None
    return value.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


def parse_datetime(value: Union[str, int, float, datetime, None]) -> Optional[datetime]:
    """
    Parse a persisted date into a timezone-aware datetime.

    Accepts ISO-8601 strings (with or without ``Z``), epoch milliseconds and
    datetimes. Naive values are taken to be UTC.
    """
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, (int, float)) and not isinstance(value, bool):
        parsed = datetime.fromtimestamp(value / 1000, tz=timezone.utc)
    elif isinstance(value, str):
        text = value.strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        parsed = datetime.fromisoformat(text)
    else:
        raise ValueError(f"Unsupported date value: {value!r}")

    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


@dataclass
class Message:
    """One utterance in a conversation."""
    role: Role
    content: str
    timestamp: datetime = field(default_factory=utcnow)
    # the words were not heard; a placeholder transcription tier stood in
    placeholder: bool = False

    def __post_init__(self):
        self.role = Role(self.role)

    def to_dict(self) -> Dict[str, Any]:
        data = {
            "role": self.role.value,
            "content": self.content,
            "timestamp": to_iso(self.timestamp),
        }
        if self.placeholder:
            data["placeholder"] = True
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Message":
        return cls(
            role=Role(data["role"]),
            content=data.get("content", ""),
            timestamp=parse_datetime(data.get("timestamp")) or utcnow(),
            placeholder=bool(data.get("placeholder", False)),
        )


@dataclass
class SyncState:
    """Bookkeeping for reconciliation with the remote store."""
    synced: bool = False
    remote_id: Optional[str] = None
    synced_at: Optional[datetime] = None
    surrogate: bool = False


@dataclass
class Sentiment:
    positive: float = 0.0
    neutral: float = 0.0
    negative: float = 0.0

    @property
    def total(self) -> float:
        return self.positive + self.neutral + self.negative

    @classmethod
    def normalized(cls, positive: float, neutral: float, negative: float) -> "Sentiment":
        """
        Scale to sum to 1, rounded to two decimals.

        The largest share absorbs the rounding remainder, so no share goes
        below zero.
        """
        values = [max(0.0, float(v)) for v in (positive, neutral, negative)]
        total = sum(values)
        if total <= 0:
            return cls(positive=0.0, neutral=1.0, negative=0.0)
        shares = [round(v / total, 2) for v in values]
        remainder = round(1.0 - sum(shares), 2)
        if remainder:
            largest = shares.index(max(shares))
            shares[largest] = round(shares[largest] + remainder, 2)
        return cls(positive=shares[0], neutral=shares[1], negative=shares[2])

    def to_dict(self) -> Dict[str, float]:
        return {"positive": self.positive, "neutral": self.neutral, "negative": self.negative}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Sentiment":
        return cls(
            positive=float(data.get("positive", 0.0)),
            neutral=float(data.get("neutral", 0.0)),
            negative=float(data.get("negative", 0.0)),
        )


@dataclass
class ThemeScore:
    name: str
    strength: float

    def __post_init__(self):
        self.strength = min(1.0, max(0.0, float(self.strength)))


@dataclass
class SpeakingTime:
    """Estimated speaking time per role, in seconds."""
    user: float = 0.0
    assistant: float = 0.0


@dataclass
class SessionAnalysis:
    """Per-session analysis attached to a session."""
    sentiment: Sentiment
    themes: List[ThemeScore] = field(default_factory=list)
    speaking_time: SpeakingTime = field(default_factory=SpeakingTime)
    recommendations: List[str] = field(default_factory=list)
    last_updated: datetime = field(default_factory=utcnow)
    provenance: Provenance = Provenance.LLM

    def __post_init__(self):
        self.provenance = Provenance(self.provenance)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "sentiment": self.sentiment.to_dict(),
            "themes": [{"name": t.name, "strength": t.strength} for t in self.themes],
            "speakingTime": {"user": self.speaking_time.user, "assistant": self.speaking_time.assistant},
            "recommendations": list(self.recommendations),
            "lastUpdated": to_iso(self.last_updated),
            "provenance": self.provenance.value,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SessionAnalysis":
        speaking = data.get("speakingTime") or {}
        return cls(
            sentiment=Sentiment.from_dict(data.get("sentiment") or {}),
            themes=[ThemeScore(name=t["name"], strength=t.get("strength", 0.0))
                    for t in data.get("themes") or []],
            speaking_time=SpeakingTime(
                user=float(speaking.get("user", 0.0)),
                assistant=float(speaking.get("assistant", 0.0)),
            ),
            recommendations=list(data.get("recommendations") or []),
            last_updated=parse_datetime(data.get("lastUpdated")) or utcnow(),
            # analyses persisted before provenance was tracked came from the LLM path
            provenance=Provenance(data.get("provenance", Provenance.LLM.value)),
        )


@dataclass
class Session:
    """A conversation session, the unit of persistence and sync."""
    id: str
    user_id: str
    voice_id: str
    started_at: datetime = field(default_factory=utcnow)
    ended_at: Optional[datetime] = None
    conversation: List[Message] = field(default_factory=list)
    sync_state: SyncState = field(default_factory=SyncState)
    analysis: Optional[SessionAnalysis] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    @property
    def is_active(self) -> bool:
        return self.ended_at is None

    @property
    def duration_seconds(self) -> Optional[float]:
        if self.ended_at is None:
            return None
        return max(0.0, (self.ended_at - self.started_at).total_seconds())

    def append_message(self, message: Message) -> Message:
        """Append a message, keeping timestamps non-decreasing."""
        if self.conversation and message.timestamp < self.conversation[-1].timestamp:
            message = Message(
                role=message.role,
                content=message.content,
                timestamp=self.conversation[-1].timestamp,
                placeholder=message.placeholder,
            )
        self.conversation.append(message)
        self.sync_state.synced = False
        return message

    def end(self, at: Optional[datetime] = None) -> None:
        if self.ended_at is None:
            self.ended_at = at or utcnow()
            self.sync_state.synced = False

    def to_dict(self) -> Dict[str, Any]:
        data = {
            "id": self.id,
            "userId": self.user_id,
            "startedAt": to_iso(self.started_at),
            "endedAt": to_iso(self.ended_at),
            "voiceId": self.voice_id,
            "conversation": [m.to_dict() for m in self.conversation],
            "metadata": dict(self.metadata),
            "synced": self.sync_state.synced,
            "serverSessionId": self.sync_state.remote_id,
            "syncedAt": to_iso(self.sync_state.synced_at),
            "syncSurrogate": self.sync_state.surrogate,
        }
        if self.analysis is not None:
            data["analysis"] = self.analysis.to_dict()
        return data

    def to_sync_payload(self) -> Dict[str, Any]:
        """The session as sent to the remote store; local bookkeeping is omitted."""
        data = self.to_dict()
        for key in ("synced", "serverSessionId", "syncedAt", "syncSurrogate"):
            data.pop(key, None)
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Session":
        analysis = data.get("analysis")
        return cls(
            id=data["id"],
            user_id=data.get("userId") or "",
            voice_id=data.get("voiceId") or "",
            started_at=parse_datetime(data.get("startedAt")) or utcnow(),
            ended_at=parse_datetime(data.get("endedAt")),
            conversation=[Message.from_dict(m) for m in data.get("conversation") or []],
            sync_state=SyncState(
                synced=bool(data.get("synced", False)),
                remote_id=data.get("serverSessionId"),
                synced_at=parse_datetime(data.get("syncedAt")),
                surrogate=bool(data.get("syncSurrogate", False)),
            ),
            analysis=SessionAnalysis.from_dict(analysis) if analysis else None,
            metadata=dict(data.get("metadata") or {}),
        )


@dataclass
class VoiceProfile:
    """A registered synthesis voice."""
    id: str
    provider: str
    name: str
    reference_audio_ref: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "provider": self.provider,
            "name": self.name,
            "referenceAudioRef": self.reference_audio_ref,
            "createdAt": to_iso(self.created_at),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "VoiceProfile":
        return cls(
            id=data["id"],
            provider=data.get("provider", ""),
            name=data.get("name", data["id"]),
            reference_audio_ref=data.get("referenceAudioRef"),
            created_at=parse_datetime(data.get("createdAt")) or utcnow(),
        )


@dataclass
class ThemeFrequency:
    name: str
    frequency: int
    average_strength: float


@dataclass
class ThemePoint:
    session_index: int
    strength: float
    date: str


@dataclass
class ThemeEvolution:
    name: str
    evolution: List[ThemePoint] = field(default_factory=list)

    @property
    def occurrences(self) -> int:
        return sum(1 for point in self.evolution if point.strength > 0)


@dataclass
class SessionProgress:
    sessions: int = 0
    sentiment_trend: SentimentTrend = SentimentTrend.STEADY
    average_session_length: float = 0.0


@dataclass
class AggregateAnalysis:
    """Cross-session analysis, derived on demand and never persisted."""
    overall_sentiment: Sentiment = field(default_factory=Sentiment)
    common_themes: List[ThemeFrequency] = field(default_factory=list)
    progress: SessionProgress = field(default_factory=SessionProgress)
    top_recommendations: List[str] = field(default_factory=list)
    theme_evolution: List[ThemeEvolution] = field(default_factory=list)
    provenance: Provenance = Provenance.NONE
    excluded_synthetic: int = 0
    last_updated: datetime = field(default_factory=utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "overallSentiment": self.overall_sentiment.to_dict(),
            "commonThemes": [
                {"name": t.name, "frequency": t.frequency, "averageStrength": t.average_strength}
                for t in self.common_themes
            ],
            "progressOverTime": {
                "sessions": self.progress.sessions,
                "sentimentTrend": self.progress.sentiment_trend.value,
                "averageSessionLength": self.progress.average_session_length,
            },
            "topRecommendations": list(self.top_recommendations),
            "themeEvolution": [
                {
                    "name": t.name,
                    "evolution": [
                        {"sessionIndex": p.session_index, "strength": p.strength, "date": p.date}
                        for p in t.evolution
                    ],
                }
                for t in self.theme_evolution
            ],
            "provenance": self.provenance.value,
            "excludedSynthetic": self.excluded_synthetic,
            "lastUpdated": to_iso(self.last_updated),
        }
