"""Tests for local storage, schema migration and the session store."""

import json
import os
import tempfile
import pytest
from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock

from aura.errors import SessionCreationError, StorageCorruptionError
from aura.state.models import Message, Role, Session, parse_datetime, to_iso
from aura.state.schema import SCHEMA_VERSION, migrate
from aura.state.session_store import (
    SCHEMA_VERSION_KEY,
    SESSIONS_BACKUP_PREFIX,
    SESSIONS_KEY,
    USER_ID_KEY,
    SessionStore,
    user_sessions_key,
)
from aura.state.storage import LocalStorage


def write_raw(storage, key, value):
    """Write a key behind the storage's back, as another process would."""
    path = storage.data_dir / f"{key}.json"
    path.write_text(json.dumps(value), encoding="utf-8")
    stat = path.stat()
    os.utime(path, ns=(stat.st_atime_ns, stat.st_mtime_ns + 1_000_000))


class TestLocalStorage:

    def test_set_get(self, tmp_path):
        storage = LocalStorage(tmp_path)
        storage.set("greeting", {"text": "hi"})

        assert storage.get("greeting") == {"text": "hi"}
        assert storage.exists("greeting")
        assert storage.keys() == ["greeting"]

    def test_missing_key(self, tmp_path):
        storage = LocalStorage(tmp_path)
        assert storage.get("nothing", []) == []
        with pytest.raises(KeyError):
            storage.read("nothing")

    def test_corrupt_key_is_reset(self, tmp_path):
        storage = LocalStorage(tmp_path)
        (tmp_path / "broken.json").write_text("{not json", encoding="utf-8")

        with pytest.raises(StorageCorruptionError):
            storage.read("broken")
        assert storage.get("broken", {}) == {}
        assert storage.read("broken") == {}

    def test_rejects_unsafe_keys(self, tmp_path):
        storage = LocalStorage(tmp_path)
        with pytest.raises(ValueError):
            storage.set("../escape", 1)

    def test_poll_detects_external_writes(self, tmp_path):
        storage = LocalStorage(tmp_path)
        listener = MagicMock()
        storage.subscribe(listener)

        write_raw(storage, "other", [1, 2])
        assert storage.poll_changes() == ["other"]
        listener.assert_called_once_with("other")
        assert storage.poll_changes() == []

    def test_unsubscribe(self, tmp_path):
        storage = LocalStorage(tmp_path)
        listener = MagicMock()
        unsubscribe = storage.subscribe(listener)
        unsubscribe()
        storage.set("key", 1)
        listener.assert_not_called()


class TestSessionStore:
    """Session persistence."""

    def make_store(self, data_dir, user_id="user_1"):
        return SessionStore(LocalStorage(data_dir), user_id=user_id).open()

    def test_create_session(self):
        with tempfile.TemporaryDirectory() as tmp_dir:
            store = self.make_store(tmp_dir)
            session = store.create(voice_id="voice_a")

            assert session.id.startswith("session_")
            assert session.user_id == "user_1"
            assert session.voice_id == "voice_a"
            assert session.is_active
            assert session.started_at.tzinfo is not None

    def test_duplicate_id_is_rejected(self, tmp_path):
        store = self.make_store(tmp_path)
        store.create("session_same")
        with pytest.raises(SessionCreationError):
            store.create("session_same")

    def test_round_trip_keeps_aware_dates(self, tmp_path):
        store = self.make_store(tmp_path)
        session = store.create()
        store.add_message(session.id, Message(role=Role.USER, content="Hello"))
        store.add_message(session.id, Message(role=Role.ASSISTANT, content="Hi, I'm Aura"))
        store.end_session(session.id)

        reopened = self.make_store(tmp_path)
        loaded = reopened.get(session.id)

        assert [m.content for m in loaded.conversation] == ["Hello", "Hi, I'm Aura"]
        assert all(isinstance(m.timestamp, datetime) for m in loaded.conversation)
        assert all(m.timestamp.tzinfo is not None for m in loaded.conversation)
        assert loaded.ended_at is not None
        assert loaded.duration_seconds >= 0

    def test_returned_sessions_are_copies(self, tmp_path):
        store = self.make_store(tmp_path)
        session = store.create()
        session.conversation.append(Message(role=Role.USER, content="not saved"))

        assert store.get(session.id).conversation == []

    def test_add_message_to_unknown_session(self, tmp_path):
        store = self.make_store(tmp_path)
        with pytest.raises(KeyError):
            store.add_message("session_missing", Message(role=Role.USER, content="hi"))

    def test_messages_never_go_back_in_time(self, tmp_path):
        store = self.make_store(tmp_path)
        session = store.create()
        later = datetime.now(timezone.utc) + timedelta(minutes=5)
        store.add_message(session.id, Message(role=Role.USER, content="first", timestamp=later))
        updated = store.add_message(session.id, Message(role=Role.ASSISTANT, content="second",
                                                        timestamp=later - timedelta(minutes=1)))

        stamps = [m.timestamp for m in updated.conversation]
        assert stamps == sorted(stamps)

    def test_mutations_clear_synced(self, tmp_path):
        store = self.make_store(tmp_path)
        session = store.create()
        store.mark_synced(session.id, "remote_1")
        assert store.get(session.id).sync_state.synced

        store.add_message(session.id, Message(role=Role.USER, content="more"))
        assert not store.get(session.id).sync_state.synced

    def test_mark_synced_with_stale_snapshot(self, tmp_path):
        store = self.make_store(tmp_path)
        session = store.create()
        sent = store.get(session.id)
        store.add_message(session.id, Message(role=Role.USER, content="arrived during sync"))

        updated = store.mark_synced(session.id, "remote_1", sent=sent)
        assert updated.sync_state.remote_id == "remote_1"
        assert not updated.sync_state.synced

    def test_list_by_user(self, tmp_path):
        storage = LocalStorage(tmp_path)
        alice = SessionStore(storage, user_id="alice").open()
        bob = SessionStore(storage, user_id="bob").open()
        first = alice.create()
        bob.create()
        second = alice.create()

        alice.reload()
        assert [s.id for s in alice.list_by_user()] == [first.id, second.id]
        assert len(alice.list_by_user("bob")) == 1

    def test_anonymous_user_id_is_persisted(self, tmp_path):
        store = SessionStore(LocalStorage(tmp_path)).open()
        user_id = store.user_id

        assert user_id.startswith("anonymous_")
        assert SessionStore(LocalStorage(tmp_path)).user_id == user_id

    def test_legacy_list_table_is_upgraded(self, tmp_path):
        storage = LocalStorage(tmp_path)
        storage.set(SESSIONS_KEY, [{
            "id": "session_old",
            "userId": "user_1",
            "voiceId": "v",
            "startTime": "2024-03-01T10:00:00.000Z",
            "endTime": 1709287800000,
            "conversation": [
                {"sender": "user", "text": "I can't sleep", "timestamp": "2024-03-01T10:01:00Z"},
                {"sender": "ai", "text": "Tell me more", "timestamp": "2024-03-01T10:00:30Z"},
            ],
            "metadata": {"mongoDbId": "65f0c0ffee"},
        }])

        store = SessionStore(storage, user_id="user_1").open()
        session = store.get("session_old")

        assert [m.role for m in session.conversation] == [Role.USER, Role.ASSISTANT]
        assert session.conversation[1].timestamp == session.conversation[0].timestamp
        assert session.ended_at == parse_datetime("2024-03-01T10:10:00Z")
        assert session.sync_state.remote_id == "65f0c0ffee"
        assert isinstance(storage.read(SESSIONS_KEY), dict)
        assert storage.read(SCHEMA_VERSION_KEY) == SCHEMA_VERSION
        assert storage.read(user_sessions_key("user_1")) == ["session_old"]

    def test_missing_conversation_becomes_empty(self, tmp_path):
        storage = LocalStorage(tmp_path)
        storage.set(SESSIONS_KEY, {"session_x": {"id": "session_x", "userId": "user_1",
                                                 "startedAt": "2024-01-01T00:00:00Z"}})
        store = SessionStore(storage, user_id="user_1").open()
        assert store.get("session_x").conversation == []

    def test_corrupt_table_is_reset(self, tmp_path):
        (tmp_path / f"{SESSIONS_KEY}.json").write_text("[{broken", encoding="utf-8")
        store = self.make_store(tmp_path)

        assert store.list_by_user() == []
        session = store.create()
        assert store.get(session.id) is not None

    def test_unreadable_record_is_dropped_and_backed_up(self, tmp_path):
        storage = LocalStorage(tmp_path)
        storage.set(SESSIONS_KEY, {
            "good": {"id": "good", "userId": "user_1", "startedAt": "2024-01-01T00:00:00Z"},
            "bad": "oops",
        })
        store = SessionStore(storage, user_id="user_1").open()

        assert store.get("good") is not None
        assert store.get("bad") is None
        backups = storage.keys(SESSIONS_BACKUP_PREFIX)
        assert len(backups) == 1
        assert storage.read(backups[0])["bad"] == "oops"

    def test_bad_message_timestamp_keeps_session(self, tmp_path):
        storage = LocalStorage(tmp_path)
        storage.set(SESSIONS_KEY, {"session_t": {
            "id": "session_t",
            "userId": "user_1",
            "startedAt": "2024-01-01T00:00:00Z",
            "conversation": [
                {"role": "user", "content": "one", "timestamp": "2024-01-01T00:01:00Z"},
                {"role": "assistant", "content": "two", "timestamp": "not-a-date"},
                {"role": "user", "content": "three", "timestamp": "2024-01-01T00:03:00Z"},
            ],
        }})
        SessionStore(storage, user_id="user_1").open()

        reopened = self.make_store(tmp_path)
        session = reopened.get("session_t")
        assert [m.content for m in session.conversation] == ["one", "two", "three"]
        assert session.conversation[1].timestamp == parse_datetime("2024-01-01T00:01:00Z")
        assert storage.keys(SESSIONS_BACKUP_PREFIX) == []

    def test_bad_start_date_keeps_session(self, tmp_path):
        storage = LocalStorage(tmp_path)
        storage.set(SESSIONS_KEY, {"session_s": {
            "id": "session_s",
            "userId": "user_1",
            "startedAt": "yesterday-ish",
            "conversation": [{"role": "user", "content": "still here"}],
        }})
        store = SessionStore(storage, user_id="user_1").open()

        session = store.get("session_s")
        assert session.conversation[0].content == "still here"
        assert session.started_at.tzinfo is not None

    def test_bad_analysis_is_discarded(self, tmp_path):
        storage = LocalStorage(tmp_path)
        storage.set(SESSIONS_KEY, {"session_a": {
            "id": "session_a",
            "userId": "user_1",
            "startedAt": "2024-01-01T00:00:00Z",
            "conversation": [{"role": "user", "content": "kept", "timestamp": "2024-01-01T00:01:00Z"}],
            "analysis": {"sentiment": {"positive": "lots"}, "lastUpdated": "2024-01-01T00:05:00Z"},
        }})
        store = SessionStore(storage, user_id="user_1").open()

        session = store.get("session_a")
        assert session.analysis is None
        assert session.conversation[0].content == "kept"

    def test_writes_keep_changes_from_other_processes(self, tmp_path):
        first = self.make_store(tmp_path)
        second = self.make_store(tmp_path)
        session = first.create()
        second.add_message(session.id, Message(role=Role.USER, content="from other process"))

        first.add_message(session.id, Message(role=Role.ASSISTANT, content="from talk"))

        contents = [m.content for m in self.make_store(tmp_path).get(session.id).conversation]
        assert contents == ["from other process", "from talk"]

    def test_sessions_created_elsewhere_survive_a_write(self, tmp_path):
        first = self.make_store(tmp_path)
        second = self.make_store(tmp_path)
        mine = first.create()
        theirs = second.create()

        first.end_session(mine.id)

        reopened = self.make_store(tmp_path)
        assert reopened.get(theirs.id) is not None
        assert reopened.get(mine.id).ended_at is not None

    def test_external_change_reloads(self, tmp_path):
        store = self.make_store(tmp_path)
        session = store.create()
        listener = MagicMock()
        store.subscribe(listener)

        table = store.storage.read(SESSIONS_KEY)
        table[session.id]["conversation"] = [
            {"role": "user", "content": "from another window", "timestamp": to_iso(session.started_at)}
        ]
        write_raw(store.storage, SESSIONS_KEY, table)

        assert store.poll() == [SESSIONS_KEY]
        assert store.get(session.id).conversation[0].content == "from another window"
        listener.assert_called_with(None)

    def test_own_writes_do_not_reload(self, tmp_path):
        store = self.make_store(tmp_path)
        listener = MagicMock()
        store.subscribe(listener)
        session = store.create()

        listener.assert_called_with(session.id)
        assert None not in [c.args[0] for c in listener.call_args_list]


class TestMigrate:

    def test_empty_table(self):
        report = migrate({}, SCHEMA_VERSION)
        assert report.sessions == {}
        assert not report.needs_write_back

    def test_unexpected_shape(self):
        with pytest.raises(ValueError):
            migrate("sessions", SCHEMA_VERSION)

    def test_id_taken_from_key(self):
        report = migrate({"session_k": {"userId": "u", "startedAt": "2024-01-01T00:00:00Z"}}, SCHEMA_VERSION)
        assert isinstance(report.sessions["session_k"], Session)
