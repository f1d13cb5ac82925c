"""
Tests for the ConversationRepository storage accessor.
"""

import sqlite3
import sys
import threading
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).parent.parent))

from core.errors import (
    InvalidArgumentError, LockContentionError, RowDecodeError, StatementExecuteError,
    StatementPrepareError, StorageError,
)
from database.models import Conversation, Message, MindMapData
from database.repository import ConversationRepository
from tests.fixtures.sample_data import seed_repository


@pytest.fixture
def db_path(tmp_path):
    return tmp_path / "rwe_data" / "main.db"


@pytest.fixture
def repo(db_path):
    repository = ConversationRepository(db_path)
    yield repository
    repository.close()


def _set_created_at(db_path, conversation_id, value):
    conn = sqlite3.connect(str(db_path))
    with conn:
        conn.execute("UPDATE conversations SET created_at = ? WHERE id = ?", (value, conversation_id))
    conn.close()


class TestConversations:
    """Conversation lifecycle."""

    def test_create_returns_new_id(self, repo):
        first = repo.create_conversation("First", "summary")
        second = repo.create_conversation("Second", "summary")

        assert first > 0
        assert second > first

    def test_create_rejects_empty_name(self, repo):
        with pytest.raises(InvalidArgumentError):
            repo.create_conversation("   ", "summary")

    def test_get_conversation(self, repo):
        convo_id = repo.create_conversation("Trip", "Lisbon in May")

        convo = repo.get_conversation(convo_id)

        assert isinstance(convo, Conversation)
        assert convo.name == "Trip"
        assert convo.summary == "Lisbon in May"
        assert convo.notes is None
        assert convo.created_at

    def test_get_missing_conversation_returns_none(self, repo):
        assert repo.get_conversation(999) is None

    def test_get_conversations_newest_first(self, repo, db_path):
        old_id = repo.create_conversation("Old", "")
        new_id = repo.create_conversation("New", "")
        _set_created_at(db_path, old_id, "2020-01-01 00:00:00")

        convos = repo.get_conversations()

        assert [c.id for c in convos] == [new_id, old_id]

    def test_pagination(self, repo, db_path):
        ids = [repo.create_conversation(f"C{i}", "") for i in range(5)]
        for i, convo_id in enumerate(ids):
            _set_created_at(db_path, convo_id, f"2026-01-0{i + 1} 12:00:00")

        page = repo.get_conversations_paginated(2, 1)

        assert [c.id for c in page] == [ids[3], ids[2]]
        assert repo.get_conversations_count() == 5

    def test_pagination_rejects_negative(self, repo):
        with pytest.raises(InvalidArgumentError):
            repo.get_conversations_paginated(-1, 0)

    def test_update_notes_and_summary(self, repo):
        convo_id = repo.create_conversation("Notes", "")

        assert repo.update_conversation_notes(convo_id, "remember milk") is True
        assert repo.update_conversation_summary(convo_id, "groceries") is True

        convo = repo.get_conversation(convo_id)
        assert convo.notes == "remember milk"
        assert convo.summary == "groceries"

    def test_update_missing_conversation_returns_false(self, repo):
        assert repo.update_conversation_notes(404, "x") is False
        assert repo.update_conversation_summary(404, "x") is False

    def test_returned_records_are_independent(self, repo):
        convo_id = repo.create_conversation("Original", "")
        convo = repo.get_conversation(convo_id)
        convo.name = "Mutated"

        assert repo.get_conversation(convo_id).name == "Original"


class TestDeleteConversation:
    """Cascading delete."""

    def test_delete_removes_messages_and_mindmap(self, repo):
        target, other = seed_repository(repo)[:2]
        repo.save_mindmap_data(target, "Map", "[]", "[]", "dark")
        repo.save_mindmap_data(other, "Other map", "[]", "[]", "dark")
        other_messages = repo.get_messages(other)

        assert repo.delete_conversation(target) is True

        assert repo.get_conversation(target) is None
        assert repo.get_messages(target) == []
        assert repo.get_mindmap_data(target) is None

        assert repo.get_conversation(other) is not None
        assert repo.get_messages(other) == other_messages
        assert repo.get_mindmap_data(other) is not None

    def test_delete_missing_returns_false(self, repo):
        assert repo.delete_conversation(12345) is False

    def test_delete_failure_is_raised_and_rolled_back(self, repo):
        convo_id = repo.create_conversation("Guarded", "")
        repo.save_message(convo_id, "user", "hello")

        def block_delete(conn):
            conn.execute(
                "CREATE TRIGGER block_delete BEFORE DELETE ON conversations "
                "BEGIN SELECT RAISE(ABORT, 'blocked'); END"
            )
        repo.run_in_session("install_trigger", block_delete)

        with pytest.raises(StorageError):
            repo.delete_conversation(convo_id)

        assert len(repo.get_messages(convo_id)) == 1


class TestMessages:
    """Message storage and ordering."""

    def test_save_and_get(self, repo):
        convo_id = repo.create_conversation("Chat", "")
        message_id = repo.save_message(convo_id, "user", "hi there")

        messages = repo.get_messages(convo_id)

        assert len(messages) == 1
        assert isinstance(messages[0], Message)
        assert messages[0].id == message_id
        assert messages[0].role == "user"
        assert messages[0].content == "hi there"

    def test_sequence_is_ordered_and_strictly_increasing(self, repo):
        convo_id = repo.create_conversation("Burst", "")
        contents = [f"message {i}" for i in range(25)]
        for content in contents:
            repo.save_message(convo_id, "user", content)

        messages = repo.get_messages(convo_id)

        assert [m.content for m in messages] == contents
        seqs = [m.seq for m in messages]
        assert all(a < b for a, b in zip(seqs, seqs[1:]))

    def test_ordering_unaffected_by_other_conversations(self, repo):
        a = repo.create_conversation("A", "")
        b = repo.create_conversation("B", "")
        for i in range(10):
            repo.save_message(a, "user", f"a{i}")
            repo.save_message(b, "ai", f"b{i}")

        assert [m.content for m in repo.get_messages(a)] == [f"a{i}" for i in range(10)]
        assert [m.content for m in repo.get_messages(b)] == [f"b{i}" for i in range(10)]

    def test_sequence_survives_clock_going_backwards(self, repo, monkeypatch):
        convo_id = repo.create_conversation("Clock", "")
        monkeypatch.setattr("database.repository._now_ms", lambda: 5_000)
        repo.save_message(convo_id, "user", "first")
        monkeypatch.setattr("database.repository._now_ms", lambda: 1_000)
        repo.save_message(convo_id, "user", "second")

        messages = repo.get_messages(convo_id)

        assert [m.content for m in messages] == ["first", "second"]
        assert messages[1].seq == 5_001

    def test_sequence_is_millisecond_wall_clock(self, repo):
        convo_id = repo.create_conversation("Wall", "")
        before = int(datetime.now(timezone.utc).timestamp() * 1000)
        repo.save_message(convo_id, "user", "now")

        seq = repo.get_messages(convo_id)[0].seq
        assert seq >= before - 1


class TestMindMaps:
    """Mind-map upsert."""

    def test_missing_mindmap_returns_none(self, repo):
        assert repo.get_mindmap_data(1) is None

    def test_first_save_inserts(self, repo):
        convo_id = repo.create_conversation("Map", "")
        mindmap_id = repo.save_mindmap_data(convo_id, "Ideas", '[{"id": 1}]', "[]", "forest")

        mindmap = repo.get_mindmap_data(convo_id)

        assert isinstance(mindmap, MindMapData)
        assert mindmap.id == mindmap_id
        assert mindmap.nodes == '[{"id": 1}]'
        assert mindmap.theme == "forest"
        assert mindmap.created_at == mindmap.updated_at

    def test_second_save_updates_single_row(self, repo):
        convo_id = repo.create_conversation("Map", "")
        first_id = repo.save_mindmap_data(convo_id, "v1", "[]", "[]", "default")
        first = repo.get_mindmap_data(convo_id)

        second_id = repo.save_mindmap_data(convo_id, "v2", "[1]", "[2]", "dark")
        second = repo.get_mindmap_data(convo_id)

        assert second_id == first_id
        assert second.title == "v2"
        assert second.connections == "[2]"
        assert second.created_at == first.created_at
        assert second.updated_at > first.updated_at

        count = repo.run_in_session(
            "count_mindmaps",
            lambda conn: conn.execute("SELECT COUNT(*) FROM mindmaps").fetchone()[0]
        )
        assert count == 1

    def test_updated_at_increases_even_with_frozen_clock(self, repo, monkeypatch):
        convo_id = repo.create_conversation("Frozen", "")
        frozen = datetime(2026, 10, 18, 12, 0, 0, tzinfo=timezone.utc)

        class FrozenDatetime(datetime):
            @classmethod
            def now(cls, tz=None):
                return frozen

        monkeypatch.setattr("database.repository.datetime", FrozenDatetime)
        repo.save_mindmap_data(convo_id, "a", "[]", "[]")
        first = repo.get_mindmap_data(convo_id).updated_at
        repo.save_mindmap_data(convo_id, "b", "[]", "[]")
        second = repo.get_mindmap_data(convo_id).updated_at

        assert second > first

    def test_default_theme(self, repo):
        convo_id = repo.create_conversation("Theme", "")
        repo.save_mindmap_data(convo_id, "t", "[]", "[]", None)

        assert repo.get_mindmap_data(convo_id).theme == "default"


class TestPreferences:
    """Preference upsert and API key wrappers."""

    def test_missing_preference_is_none(self, repo):
        assert repo.get_preference("nope") is None

    def test_api_key_roundtrip_and_overwrite(self, repo):
        assert repo.get_api_key() is None

        repo.set_api_key("key-1")
        repo.set_api_key("key-2")

        assert repo.get_api_key() == "key-2"
        count = repo.run_in_session(
            "count_keys",
            lambda conn: conn.execute(
                "SELECT COUNT(*) FROM user_preferences WHERE key = 'gemini_api_key'"
            ).fetchone()[0]
        )
        assert count == 1

    def test_seeded_theme(self, repo):
        assert repo.get_preference("theme") == "system"


class TestAnalytics:
    """Calendar bucketing."""

    def test_day_buckets(self, repo, db_path):
        today = datetime.now(timezone.utc).date()
        day_a = (today - timedelta(days=2)).isoformat()
        day_b = (today - timedelta(days=5)).isoformat()

        for stamp in (f"{day_a} 09:00:00", f"{day_a} 17:30:00", f"{day_b} 08:00:00"):
            convo_id = repo.create_conversation("Bucketed", "")
            _set_created_at(db_path, convo_id, stamp)

        data = repo.get_conversation_analytics("day")

        assert [(d.date, d.count) for d in data] == [(day_a, 2), (day_b, 1)]

    def test_day_window_excludes_old_rows(self, repo, db_path):
        convo_id = repo.create_conversation("Ancient", "")
        _set_created_at(db_path, convo_id, "2001-01-01 00:00:00")

        assert repo.get_conversation_analytics("day") == []

    def test_week_buckets_start_on_monday(self, repo, db_path):
        today = datetime.now(timezone.utc).date()
        wednesday = today - timedelta(days=today.weekday() + 7 - 2)
        convo_id = repo.create_conversation("Midweek", "")
        _set_created_at(db_path, convo_id, f"{wednesday.isoformat()} 10:00:00")

        data = repo.get_conversation_analytics("week")

        monday = wednesday - timedelta(days=2)
        assert [(d.date, d.count) for d in data] == [(monday.isoformat(), 1)]

    def test_week_window_is_twelve_weeks(self, repo, db_path):
        today = datetime.now(timezone.utc).date()
        repo.create_conversation("Recent", "")
        inside = repo.create_conversation("Eleven weeks ago", "")
        _set_created_at(db_path, inside, f"{(today - timedelta(weeks=11)).isoformat()} 12:00:00")
        outside = repo.create_conversation("Too old", "")
        _set_created_at(db_path, outside, f"{(today - timedelta(days=100)).isoformat()} 12:00:00")

        data = repo.get_conversation_analytics("week")

        this_monday = today - timedelta(days=today.weekday())
        old_monday = this_monday - timedelta(weeks=11)
        assert [(d.date, d.count) for d in data] == [
            (this_monday.isoformat(), 1),
            (old_monday.isoformat(), 1),
        ]

    def test_month_buckets(self, repo):
        repo.create_conversation("This month", "")

        data = repo.get_conversation_analytics("month")

        first_of_month = datetime.now(timezone.utc).date().replace(day=1).isoformat()
        assert [(d.date, d.count) for d in data] == [(first_of_month, 1)]

    def test_invalid_period_rejected_without_query(self, repo, monkeypatch):
        def fail(*args, **kwargs):
            raise AssertionError("store must not be queried")

        monkeypatch.setattr(repo, "_session", fail)

        with pytest.raises(InvalidArgumentError):
            repo.get_conversation_analytics("year")


class TestDatabaseInfo:
    """Introspection."""

    def test_info(self, repo):
        seed_repository(repo)

        info = repo.get_database_info(app_version="9.9.9")

        assert info.schema_version == 2
        assert info.conversations_count == 3
        assert info.messages_count == 6
        assert info.database_size_bytes > 0
        assert info.app_version == "9.9.9"

    def test_info_without_migrations(self, tmp_path):
        repo = ConversationRepository(tmp_path / "bare.db", migrate=False)
        repo.run_in_session("bootstrap", lambda conn: conn.executescript(
            "CREATE TABLE conversations (id INTEGER); CREATE TABLE messages (id INTEGER);"
        ))

        assert repo.get_database_info().schema_version == 0
        repo.close()


class TestErrors:
    """Error translation and lock discipline."""

    def test_check_connection(self, repo):
        assert repo.check_connection() is True

    def test_prepare_error_names_operation(self, repo):
        with pytest.raises(StatementPrepareError) as exc_info:
            repo.run_in_session("bad_sql", lambda conn: conn.execute("SELEC nothing"))

        assert exc_info.value.operation == "bad_sql"
        assert "bad_sql" in exc_info.value.message

    def test_constraint_violation_is_execute_error(self, repo):
        convo_id = repo.create_conversation("Unique", "")
        repo.save_mindmap_data(convo_id, "m", "[]", "[]")

        def duplicate(conn):
            conn.execute(
                "INSERT INTO mindmaps (conversation_id, title, nodes, connections) VALUES (?, 't', '[]', '[]')",
                (convo_id,)
            )

        with pytest.raises(StatementExecuteError):
            repo.run_in_session("duplicate_mindmap", duplicate)

    def test_row_decode_checks_columns(self, repo):
        row = repo.run_in_session(
            "short_row",
            lambda conn: conn.execute("SELECT 1 AS id, 'x' AS name").fetchone()
        )

        with pytest.raises(RowDecodeError):
            Conversation.from_row(row)

    def test_row_decode_checks_types(self, repo):
        row = repo.run_in_session(
            "typed_row",
            lambda conn: conn.execute(
                "SELECT 'one' AS id, 'x' AS name, 'now' AS created_at, NULL AS summary, NULL AS notes"
            ).fetchone()
        )

        with pytest.raises(RowDecodeError):
            Conversation.from_row(row)

    def test_lock_timeout_raises_contention(self, db_path):
        repo = ConversationRepository(db_path, lock_timeout=0.05)
        repo._lock.acquire()
        try:
            with pytest.raises(LockContentionError):
                repo.get_conversations_count()
        finally:
            repo._lock.release()
            repo.close()

    def test_lock_released_after_error(self, repo):
        with pytest.raises(StorageError):
            repo.run_in_session("boom", lambda conn: conn.execute("SELECT * FROM missing_table"))

        assert repo.get_conversations_count() == 0

    def test_closed_repository_raises(self, db_path):
        repo = ConversationRepository(db_path)
        repo.close()

        with pytest.raises(StorageError):
            repo.get_conversations()

    def test_concurrent_writers(self, repo):
        convo_id = repo.create_conversation("Threads", "")

        def writer(n):
            for i in range(20):
                repo.save_message(convo_id, "user", f"{n}-{i}")

        threads = [threading.Thread(target=writer, args=(n,)) for n in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        messages = repo.get_messages(convo_id)
        assert len(messages) == 80
        seqs = [m.seq for m in messages]
        assert len(set(seqs)) == 80
        assert seqs == sorted(seqs)
