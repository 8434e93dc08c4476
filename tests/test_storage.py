"""
Tests for the message stores.

Tests cover:
- Insert numbering, timestamps and truncation
- Recent-history window, cap and ordering
- Deleting expired messages (including idempotence)
- Failure wrapping for the SQL backing
"""

from datetime import timedelta

import pytest

from chat_relay.config import Settings
from chat_relay.errors import PersistenceError
from chat_relay.storage import Base, InMemoryMessageStore, SqlMessageStore, create_store


class TestInsert:
    """Test storing new messages."""

    def test_insert_returns_stored_message(self, store):
        """Test insert assigns id and timestamp and keeps the source address."""
        message = store.insert("Alice", "hi", "10.0.0.1")

        assert message.id == 1
        assert message.username == "Alice"
        assert message.content == "hi"
        assert message.timestamp == "2025-01-15T12:00:00Z"
        assert message.source_address == "10.0.0.1"

    def test_ids_strictly_increase(self, store, clock):
        """Test every insert gets an id greater than all previous ones."""
        ids = []
        for i in range(5):
            ids.append(store.insert("Alice", f"msg {i}", "10.0.0.1").id)
            clock.advance(seconds=1)

        assert ids == sorted(ids)
        assert len(set(ids)) == 5

    def test_ids_not_reused_after_delete(self, store, clock):
        """Test ids keep increasing after older messages are swept."""
        first = store.insert("Alice", "old", "10.0.0.1")
        clock.advance(hours=1)
        store.delete_older_than(clock())

        second = store.insert("Alice", "new", "10.0.0.1")
        assert second.id > first.id

    def test_username_of_20_kept(self, store):
        """Test a 20 character username is stored in full."""
        message = store.insert("u" * 20, "hi", "10.0.0.1")
        assert message.username == "u" * 20

    def test_username_of_25_truncated(self, store):
        """Test a 25 character username is truncated to 20."""
        message = store.insert("abcdefghijklmnopqrstuvwxy", "hi", "10.0.0.1")
        assert message.username == "abcdefghijklmnopqrst"

    def test_content_truncated_to_500(self, store):
        """Test content beyond 500 characters is truncated by the store."""
        message = store.insert("Alice", "x" * 600, "10.0.0.1")
        assert len(message.content) == 500

    def test_messages_are_immutable(self, store):
        """Test stored messages cannot be modified."""
        message = store.insert("Alice", "hi", "10.0.0.1")
        with pytest.raises(Exception):
            message.content = "edited"


class TestRecent:
    """Test the recent-history query."""

    def test_empty_store(self, store):
        """Test recent on an empty store returns nothing."""
        assert store.recent(48) == []

    def test_round_trip(self, store):
        """Test username, content and timestamp survive insert then recent."""
        inserted = store.insert("Alice", "hello there", "10.0.0.1")

        recent = store.recent(48)
        assert len(recent) == 1
        assert recent[0] == inserted

    def test_inserted_message_appears_once(self, store, clock):
        """Test a new message is returned exactly once with the highest id."""
        for i in range(3):
            store.insert("Bob", f"msg {i}", "10.0.0.2")
            clock.advance(minutes=1)
        new = store.insert("Alice", "latest", "10.0.0.1")

        recent = store.recent(48)
        assert [m.id for m in recent].count(new.id) == 1
        assert new.id == max(m.id for m in recent)

    def test_oldest_first(self, store, clock):
        """Test messages come back oldest to newest."""
        for i in range(3):
            store.insert("Alice", f"msg {i}", "10.0.0.1")
            clock.advance(minutes=5)

        assert [m.content for m in store.recent(48)] == ["msg 0", "msg 1", "msg 2"]

    def test_same_second_keeps_insert_order(self, store):
        """Test messages stamped in the same second stay in insertion order."""
        for i in range(5):
            store.insert("Alice", f"msg {i}", "10.0.0.1")

        assert [m.content for m in store.recent(48)] == [f"msg {i}" for i in range(5)]

    def test_capped_at_100_most_recent(self, store, clock):
        """Test 150 messages over 40 hours yield the newest 100, oldest first."""
        for i in range(150):
            store.insert("Alice", f"msg {i}", "10.0.0.1")
            clock.advance(minutes=16)

        recent = store.recent(48)
        assert len(recent) == 100
        assert recent[0].content == "msg 50"
        assert recent[-1].content == "msg 149"

    def test_window_excludes_old_messages(self, store, clock):
        """Test messages older than the window are left out."""
        store.insert("Alice", "too old", "10.0.0.1")
        clock.advance(hours=49)
        store.insert("Alice", "fresh", "10.0.0.1")

        assert [m.content for m in store.recent(48)] == ["fresh"]

    def test_custom_limit(self, store):
        """Test the limit argument caps the result."""
        for i in range(10):
            store.insert("Alice", f"msg {i}", "10.0.0.1")

        assert [m.content for m in store.recent(48, limit=3)] == ["msg 7", "msg 8", "msg 9"]


class TestDeleteOlderThan:
    """Test deleting expired messages."""

    def test_deletes_strictly_before_cutoff(self, store, clock):
        """Test only messages stamped before the cutoff are removed."""
        store.insert("Alice", "old", "10.0.0.1")
        clock.advance(hours=1)
        cutoff = clock()
        store.insert("Alice", "at cutoff", "10.0.0.1")
        clock.advance(hours=1)
        store.insert("Alice", "new", "10.0.0.1")

        assert store.delete_older_than(cutoff) == 1
        assert [m.content for m in store.recent(48)] == ["at cutoff", "new"]

    def test_idempotent(self, store, clock):
        """Test a second delete with the same cutoff removes nothing."""
        store.insert("Alice", "a", "10.0.0.1")
        store.insert("Bob", "b", "10.0.0.2")
        clock.advance(hours=50)
        cutoff = clock() - timedelta(hours=48)

        assert store.delete_older_than(cutoff) == 2
        assert store.delete_older_than(cutoff) == 0

    def test_earlier_cutoff_deletes_nothing_more(self, store, clock):
        """Test an earlier cutoff after a sweep removes nothing."""
        store.insert("Alice", "a", "10.0.0.1")
        clock.advance(hours=2)
        store.delete_older_than(clock())

        assert store.delete_older_than(clock() - timedelta(hours=1)) == 0

    def test_count(self, store, clock):
        """Test count follows inserts and deletes."""
        store.insert("Alice", "a", "10.0.0.1")
        clock.advance(hours=1)
        store.insert("Alice", "b", "10.0.0.1")
        assert store.count() == 2

        store.delete_older_than(clock())
        assert store.count() == 1


class TestSqlFailures:
    """Test the SQL backing turns database errors into PersistenceError."""

    def test_ping_healthy(self, sql_store):
        """Test ping is True with the schema applied."""
        assert sql_store.ping() is True

    def test_insert_without_table(self, sql_store):
        """Test insert raises PersistenceError when the table is gone."""
        Base.metadata.drop_all(bind=sql_store.engine)

        with pytest.raises(PersistenceError):
            sql_store.insert("Alice", "hi", "10.0.0.1")
        assert sql_store.ping() is False

    def test_recent_without_table(self, sql_store):
        """Test recent raises PersistenceError when the table is gone."""
        Base.metadata.drop_all(bind=sql_store.engine)

        with pytest.raises(PersistenceError):
            sql_store.recent(48)

    def test_delete_without_table(self, sql_store, clock):
        """Test delete_older_than raises PersistenceError when the table is gone."""
        Base.metadata.drop_all(bind=sql_store.engine)

        with pytest.raises(PersistenceError):
            sql_store.delete_older_than(clock())


class TestCreateStore:
    """Test picking the store backing from settings."""

    def test_sql_backend(self):
        store = create_store(Settings(STORE_BACKEND="sql", DATABASE_URL="sqlite://"))
        assert isinstance(store, SqlMessageStore)

    def test_memory_backend(self):
        store = create_store(Settings(STORE_BACKEND="memory"))
        assert isinstance(store, InMemoryMessageStore)

    def test_limits_from_settings(self):
        """Test truncation bounds come from settings."""
        store = create_store(Settings(STORE_BACKEND="memory", MAX_USERNAME_LENGTH=5))
        assert store.insert("Alexander", "hi", "10.0.0.1").username == "Alexa"

    def test_unknown_backend(self):
        with pytest.raises(ValueError):
            create_store(Settings(STORE_BACKEND="redis"))
