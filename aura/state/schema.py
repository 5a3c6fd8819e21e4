"""Versioned decoding of the persisted session table."""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional
import structlog

from .models import Session, SessionAnalysis, parse_datetime, utcnow


logger = structlog.get_logger()

# 1: sessions stored as a list, messages as {sender, text}
# 2: sessions keyed by id, messages as {role, content, timestamp}
SCHEMA_VERSION = 2

_LEGACY_SENDERS = {
    "user": "user",
    "human": "user",
    "ai": "assistant",
    "bot": "assistant",
    "assistant": "assistant",
}


@dataclass
class MigrationReport:
    """Outcome of decoding the persisted session table."""
    sessions: Dict[str, Session] = field(default_factory=dict)
    from_version: int = SCHEMA_VERSION
    changed: bool = False
    dropped: List[str] = field(default_factory=list)

    @property
    def needs_write_back(self) -> bool:
        return self.changed or self.from_version < SCHEMA_VERSION


def _parse_date(value: Any, fallback: Optional[datetime], field_name: str) -> Optional[datetime]:
    """Parse a stored date; an unreadable one is replaced by ``fallback``."""
    try:
        return parse_datetime(value)
    except (ValueError, TypeError, OverflowError, OSError) as e:
        logger.warning("Replacing unreadable date", field=field_name, value=repr(value), error=str(e))
        return fallback


def _migrate_message(raw: Dict[str, Any], fallback_time: Optional[datetime]) -> Optional[Dict[str, Any]]:
    if not isinstance(raw, dict):
        return None

    message = dict(raw)
    if "role" not in message and "sender" in message:
        message["role"] = _LEGACY_SENDERS.get(str(message.pop("sender")).lower(), "assistant")
    if "content" not in message and "text" in message:
        message["content"] = message.pop("text")
    if message.get("role") not in ("user", "assistant"):
        return None

    message.setdefault("content", "")
    message["timestamp"] = _parse_date(message.get("timestamp"), fallback_time, "timestamp") or fallback_time
    return message


def migrate_session(raw: Dict[str, Any], key: Optional[str] = None) -> Dict[str, Any]:
    """
    Bring one persisted session record up to the current shape.

    Legacy message shapes are converted, a missing conversation becomes an
    empty list and every date, including nested message timestamps, is
    re-hydrated to a timezone-aware datetime.
    """
    session = dict(raw)
    if not session.get("id"):
        if not key:
            raise ValueError("session record has no id")
        session["id"] = key

    started = _parse_date(session.get("startedAt") or session.get("startTime"), None, "startedAt") or utcnow()
    session["startedAt"] = started
    session["endedAt"] = _parse_date(session.get("endedAt") or session.get("endTime"), None, "endedAt")
    session["syncedAt"] = _parse_date(session.get("syncedAt"), None, "syncedAt")
    session.pop("startTime", None)
    session.pop("endTime", None)

    conversation = session.get("conversation")
    if not isinstance(conversation, list):
        conversation = []

    migrated = []
    previous = None
    for raw_message in conversation:
        message = _migrate_message(raw_message, previous or started)
        if message is None:
            logger.warning("Dropping unreadable message", session_id=session["id"])
            continue
        # stored conversations are kept non-decreasing in time
        if previous is not None and message["timestamp"] < previous:
            message["timestamp"] = previous
        previous = message["timestamp"]
        migrated.append(message)
    session["conversation"] = migrated

    analysis = session.get("analysis")
    if isinstance(analysis, dict) and analysis.get("lastUpdated"):
        analysis = dict(analysis)
        analysis["lastUpdated"] = _parse_date(analysis["lastUpdated"], None, "lastUpdated")
        session["analysis"] = analysis
    if analysis:
        try:
            SessionAnalysis.from_dict(analysis)
        except (AttributeError, KeyError, TypeError, ValueError) as e:
            # an analysis can be recomputed, the conversation cannot
            logger.warning("Discarding unreadable analysis", session_id=session["id"], error=str(e))
            session["analysis"] = None

    metadata = session.get("metadata")
    session["metadata"] = dict(metadata) if isinstance(metadata, dict) else {}
    # the remote id used to live in metadata
    if not session.get("serverSessionId") and session["metadata"].get("mongoDbId"):
        session["serverSessionId"] = session["metadata"]["mongoDbId"]

    return session


def migrate(raw: Any, version: Optional[int] = None) -> MigrationReport:
    """
    Decode the persisted session table into ``Session`` objects.

    A list-shaped table (schema 1) is converted to the keyed map shape. Records
    that cannot be decoded are dropped and reported; everything else is kept.
    """
    from_version = version if version is not None else SCHEMA_VERSION
    report = MigrationReport(from_version=from_version)

    if raw is None:
        return report

    if isinstance(raw, list):
        report.from_version = min(from_version, 1)
        report.changed = True
        entries = [(None, item) for item in raw]
        logger.info("Upgrading list-shaped session table", sessions=len(raw))
    elif isinstance(raw, dict):
        entries = list(raw.items())
    else:
        raise ValueError(f"session table has unexpected type {type(raw).__name__}")

    for key, record in entries:
        if not isinstance(record, dict):
            report.dropped.append(str(key))
            report.changed = True
            continue
        try:
            normalized = migrate_session(record, key)
            session = Session.from_dict(normalized)
        except (KeyError, TypeError, ValueError) as e:
            logger.warning("Dropping unreadable session", key=key, error=str(e))
            report.dropped.append(str(key or record.get("id")))
            report.changed = True
            continue

        if key is not None and key != session.id:
            report.changed = True
        report.sessions[session.id] = session

    return report


def encode(sessions: Dict[str, Session]) -> Dict[str, Any]:
    """Encode sessions into the persisted keyed map shape."""
    return {session_id: session.to_dict() for session_id, session in sessions.items()}
