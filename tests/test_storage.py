"""
Tests for the store reader.

Tests cover:
- Read-only access to the chat store
- Watermark queries (latest date, rows since a date)
- Fail-soft behaviour when the store is broken
- Health check
"""

import pytest
from sqlalchemy import text
from sqlalchemy.exc import OperationalError

from message_proxy.storage import StoreReader, check_store_health, create_store_engine


class TestReadOnly:
    """The chat store must never be written."""

    def test_write_rejected(self, store, reader):
        with pytest.raises(OperationalError):
            with reader.engine.begin() as conn:
                conn.execute(text("DELETE FROM message"))

    def test_sees_rows_written_after_open(self, store, reader):
        chat = store.add_chat()
        store.add_message(chat, "late arrival")

        assert [row["text"] for row in reader.fetch_chat_messages(chat, 10)] == ["late arrival"]


class TestWatermarkQueries:
    """Test the queries the poll loop relies on."""

    def test_latest_date_single_row(self, store, reader):
        chat = store.add_chat()
        store.add_message(chat, "one", date=50)
        store.add_message(chat, "two", date=70)

        assert reader.fetch_latest_dates() == [{"date": 70}]

    def test_latest_date_empty_store(self, reader):
        assert reader.fetch_latest_dates() == []

    def test_messages_since_strictly_greater_oldest_first(self, store, reader):
        chat = store.add_chat()
        for date in (30, 10, 20, 40):
            store.add_message(chat, f"at {date}", date=date)

        rows = reader.fetch_messages_since(20, limit=25)

        assert [row["date"] for row in rows] == [30, 40]

    def test_messages_since_capped(self, store, reader):
        chat = store.add_chat()
        for date in range(1, 11):
            store.add_message(chat, f"at {date}", date=date)

        rows = reader.fetch_messages_since(0, limit=3)

        assert [row["date"] for row in rows] == [1, 2, 3]

    def test_recent_sent_filters(self, store, reader):
        chat = store.add_chat()
        store.add_message(chat, "mine", is_from_me=True)
        store.add_message(chat, "theirs")
        store.add_message(chat, "errored", is_from_me=True, error=22)
        store.add_message(chat, "sms", is_from_me=True, service="SMS")

        assert [row["text"] for row in reader.fetch_recent_sent(15)] == ["mine"]


class TestFailSoft:
    """Query errors are logged and turned into empty results."""

    def test_missing_table_yields_empty(self, store, reader):
        with store.engine.begin() as conn:
            conn.execute(text("DROP TABLE message_attachment_join"))
            conn.execute(text("DROP TABLE chat_message_join"))
            conn.execute(text("DROP TABLE message"))
            conn.execute(text("DROP TABLE chat_handle_join"))
            conn.execute(text("DROP TABLE handle"))

        assert reader.fetch_latest_dates() == []
        assert reader.fetch_messages_since(0, 25) is None
        assert reader.fetch_chat_messages(1, 10) == []
        assert reader.fetch_handles() == {}
        assert reader.fetch_memberships() == []
        assert reader.fetch_recent_sent(15) == []

    def test_unreadable_store(self, tmp_path):
        engine = create_store_engine(str(tmp_path / "missing.db"))
        reader = StoreReader(engine)

        assert reader.fetch_latest_dates() == []
        assert reader.fetch_attachment(1) is None
        engine.dispose()


class TestHealth:
    """Test store health check."""

    def test_healthy_store(self, reader):
        assert check_store_health(reader.engine) is True

    def test_missing_store(self, tmp_path):
        engine = create_store_engine(str(tmp_path / "missing.db"))
        assert check_store_health(engine) is False
        engine.dispose()
