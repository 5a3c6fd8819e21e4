"""Local-first session persistence."""

import copy
import re
import threading
import time
from typing import Callable, Dict, List, Optional
from uuid import uuid4
import structlog

from ..errors import SessionCreationError
from .models import Message, Session, SessionAnalysis, utcnow
from .schema import SCHEMA_VERSION, migrate, encode
from .storage import LocalStorage


logger = structlog.get_logger()

SESSIONS_KEY = "sessions"
USER_ID_KEY = "user_id"
SCHEMA_VERSION_KEY = "schema_version"
USER_SESSIONS_PREFIX = "user_sessions_"
SESSIONS_BACKUP_PREFIX = "sessions_backup_"

SessionListener = Callable[[Optional[str]], None]


def user_sessions_key(user_id: str) -> str:
    """Storage key of the ordered session id list for ``user_id``."""
    return USER_SESSIONS_PREFIX + re.sub(r"[^A-Za-z0-9_.\-]", "_", user_id)


class SessionStore:
    """
    Durable local store of conversation sessions.

    The persisted table is decoded into an in-memory snapshot for reads.
    Every mutation re-reads the table first and is written through before
    returning, so writes from other processes sharing the data directory
    are kept. Returned sessions are copies, so callers never alias store
    state.
    """

    def __init__(self, storage: LocalStorage, user_id: Optional[str] = None,
                 default_voice_id: str = "EXAVITQu4vr4xnSDxMaL"):
        self.storage = storage
        self.default_voice_id = default_voice_id
        self._explicit_user_id = user_id
        self._sessions: Dict[str, Session] = {}
        self._loaded = False
        self._writing = False
        self._lock = threading.RLock()
        self._listeners: List[SessionListener] = []
        self._storage_unsubscribe: Optional[Callable[[], None]] = None

    # Lifecycle

    def open(self) -> "SessionStore":
        """Load the table and start following external changes."""
        self._load()
        if self._storage_unsubscribe is None:
            self._storage_unsubscribe = self.storage.subscribe(self._on_storage_change)
        return self

    def close(self) -> None:
        if self._storage_unsubscribe is not None:
            self._storage_unsubscribe()
            self._storage_unsubscribe = None

    def __enter__(self) -> "SessionStore":
        return self.open()

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    def reload(self) -> None:
        """Discard the in-memory snapshot and decode the table again."""
        self._load()
        self._notify(None)

    def poll(self) -> List[str]:
        """Check storage for changes made by other processes."""
        return self.storage.poll_changes()

    def _on_storage_change(self, key: str) -> None:
        if self._writing:
            return
        if key == SESSIONS_KEY or key.startswith(USER_SESSIONS_PREFIX):
            logger.info("Reloading sessions after external change", key=key)
            self.reload()

    def _load(self) -> None:
        with self._lock:
            raw = self.storage.get(SESSIONS_KEY, {})
            stored_version = self.storage.get(SCHEMA_VERSION_KEY)
            if not isinstance(stored_version, int):
                stored_version = 1 if isinstance(raw, list) else None

            try:
                report = migrate(raw, stored_version)
            except ValueError as e:
                logger.warning("Resetting unreadable session table", error=str(e))
                report = migrate({}, SCHEMA_VERSION)
                report.changed = True
                report.dropped.append(SESSIONS_KEY)

            if report.dropped:
                backup_key = f"{SESSIONS_BACKUP_PREFIX}{int(time.time() * 1000)}"
                self._write(backup_key, raw)
                logger.warning("Kept a copy of the session table before dropping records",
                               backup_key=backup_key, dropped=report.dropped)

            self._sessions = report.sessions
            self._loaded = True

            if report.needs_write_back or stored_version is None:
                logger.info("Writing back migrated session table",
                            from_version=report.from_version,
                            to_version=SCHEMA_VERSION,
                            sessions=len(self._sessions),
                            dropped=len(report.dropped))
                self._rebuild_user_indexes()
                self._persist()
                self._write(SCHEMA_VERSION_KEY, SCHEMA_VERSION)

    def _rebuild_user_indexes(self) -> None:
        by_user: Dict[str, List[Session]] = {}
        for session in self._sessions.values():
            by_user.setdefault(session.user_id, []).append(session)

        for user_id, sessions in by_user.items():
            if not user_id:
                continue
            key = user_sessions_key(user_id)
            ids = self.storage.get(key, [])
            if not isinstance(ids, list):
                ids = []
            missing = [s.id for s in sorted(sessions, key=lambda s: s.started_at) if s.id not in ids]
            if missing:
                self._write(key, ids + missing)

    def _ensure_loaded(self) -> None:
        if not self._loaded:
            self._load()

    def _refresh(self) -> None:
        # other processes share the table; writes start from its current contents
        self._load()

    def _write(self, key: str, value) -> None:
        self._writing = True
        try:
            self.storage.set(key, value)
        finally:
            self._writing = False

    def _persist(self) -> None:
        self._write(SESSIONS_KEY, encode(self._sessions))

    # Identity

    @property
    def user_id(self) -> str:
        """The explicit user id, or a persisted anonymous one."""
        if self._explicit_user_id:
            return self._explicit_user_id
        user_id = self.storage.get(USER_ID_KEY)
        if not isinstance(user_id, str) or not user_id:
            user_id = f"anonymous_{uuid4().hex[:16]}"
            self._write(USER_ID_KEY, user_id)
            logger.info("Created anonymous user id", user_id=user_id)
        return user_id

    # Operations

    def create(self, session_id: Optional[str] = None, voice_id: Optional[str] = None) -> Session:
        """Create and persist a new session for the current user."""
        session_id = session_id or f"session_{uuid4().hex}"
        with self._lock:
            self._refresh()
            if session_id in self._sessions:
                raise SessionCreationError(f"Session already exists: {session_id}")

            session = Session(
                id=session_id,
                user_id=self.user_id,
                voice_id=voice_id or self.default_voice_id,
                started_at=utcnow(),
            )
            try:
                self.save(session)
            except OSError as e:
                self._sessions.pop(session_id, None)
                raise SessionCreationError(f"Could not persist session {session_id}: {e}") from e

        logger.info("Created session", session_id=session_id, voice_id=session.voice_id)
        return copy.deepcopy(session)

    def save(self, session: Session) -> None:
        """Insert or replace a session and record it in its owner's id list."""
        with self._lock:
            self._refresh()
            self._sessions[session.id] = copy.deepcopy(session)
            self._persist()

            key = user_sessions_key(session.user_id)
            ids = self.storage.get(key, [])
            if not isinstance(ids, list):
                ids = []
            if session.id not in ids:
                ids.append(session.id)
                self._write(key, ids)

        logger.debug("Session saved", session_id=session.id, messages=len(session.conversation))
        self._notify(session.id)

    def get(self, session_id: str) -> Optional[Session]:
        with self._lock:
            self._ensure_loaded()
            session = self._sessions.get(session_id)
            return copy.deepcopy(session) if session else None

    def list_by_user(self, user_id: Optional[str] = None) -> List[Session]:
        """Sessions of ``user_id`` (default: the current user), in creation order."""
        user_id = user_id or self.user_id
        with self._lock:
            self._ensure_loaded()
            ids = self.storage.get(user_sessions_key(user_id), [])
            if not isinstance(ids, list):
                ids = []
            return [copy.deepcopy(self._sessions[i]) for i in ids if i in self._sessions]

    def _mutate(self, session_id: str, mutation: Callable[[Session], None]) -> Session:
        with self._lock:
            self._refresh()
            session = self._sessions.get(session_id)
            if session is None:
                raise KeyError(session_id)
            mutation(session)
            self._persist()
            result = copy.deepcopy(session)
        self._notify(session_id)
        return result

    def add_message(self, session_id: str, message: Message) -> Session:
        """Append a message. Raises ``KeyError`` for an unknown session."""
        return self._mutate(session_id, lambda s: s.append_message(message))

    def end_session(self, session_id: str) -> Session:
        session = self._mutate(session_id, lambda s: s.end())
        logger.info("Session ended", session_id=session_id, messages=len(session.conversation))
        return session

    def mark_synced(self, session_id: str, remote_id: str, surrogate: bool = False,
                    sent: Optional[Session] = None) -> Session:
        """
        Record a completed sync.

        When ``sent`` is given and the session has changed since that snapshot
        was sent, the remote id is kept but the session stays unsynced so the
        next sync carries the newer state.
        """
        def apply(session: Session) -> None:
            state = session.sync_state
            state.remote_id = remote_id
            state.surrogate = surrogate
            state.synced_at = utcnow()
            state.synced = sent is None or (
                len(sent.conversation) == len(session.conversation)
                and sent.ended_at == session.ended_at
            )

        return self._mutate(session_id, apply)

    def save_analysis(self, session_id: str, analysis: SessionAnalysis) -> Session:
        def apply(session: Session) -> None:
            session.analysis = analysis

        return self._mutate(session_id, apply)

    # Observers

    def subscribe(self, listener: SessionListener) -> Callable[[], None]:
        """
        Register ``listener(session_id)``; ``None`` means the whole table reloaded.

        Returns a function that removes the listener.
        """
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _notify(self, session_id: Optional[str]) -> None:
        for listener in list(self._listeners):
            try:
                listener(session_id)
            except Exception as e:
                logger.error("Session listener failed", session_id=session_id, error=str(e))
