"""Tests for the durable key-value stores."""

import sqlite3
import pytest
from unittest.mock import MagicMock

from offsync.errors import StoreError
from offsync.store import MemoryStore, SQLiteStore, decode_record, encode_record


@pytest.fixture(params=["memory", "sqlite"])
def store(request):
    """Create each store implementation."""
    if request.param == "memory":
        yield MemoryStore()
    else:
        s = SQLiteStore(":memory:")
        s.connect()
        yield s
        s.close()


class TestStoreContract:
    """Behaviour shared by every store."""

    def test_get_missing(self, store):
        """Test missing keys return None."""
        assert store.get("nope") is None

    def test_set_and_get(self, store):
        """Test a value can be read back."""
        store.set("a", b"hello")
        assert store.get("a") == b"hello"

    def test_set_overwrites(self, store):
        """Test writing a key twice keeps the last value."""
        store.set("a", b"one")
        store.set("a", b"two")
        assert store.get("a") == b"two"

    def test_delete(self, store):
        """Test deleting a key."""
        store.set("a", b"x")
        store.delete("a")
        assert store.get("a") is None

    def test_delete_missing_is_noop(self, store):
        """Test deleting a missing key does not raise."""
        store.delete("missing")

    def test_list_keys_with_prefix(self, store):
        """Test prefix listing is sorted and exact."""
        store.set("queue:op:2", b"")
        store.set("queue:op:1", b"")
        store.set("queue:dead:1", b"")
        store.set("cache:profile", b"")

        assert store.list_keys_with_prefix("queue:op:") == ["queue:op:1", "queue:op:2"]
        assert store.list_keys_with_prefix("cache:") == ["cache:profile"]
        assert store.list_keys_with_prefix("other:") == []

    def test_prefix_wildcards_are_literal(self, store):
        """Test % and _ in prefixes are not treated as wildcards."""
        store.set("a_b", b"")
        store.set("axb", b"")
        store.set("a%c", b"")

        assert store.list_keys_with_prefix("a_") == ["a_b"]
        assert store.list_keys_with_prefix("a%") == ["a%c"]


class TestSQLiteStore:
    """Tests specific to the SQLite store."""

    def test_connect_creates_table(self):
        """Test that connect() creates the kv_store table."""
        s = SQLiteStore(":memory:")
        s.connect()

        tables = s._conn.execute(
            "SELECT name FROM sqlite_master WHERE type='table'"
        ).fetchall()

        assert "kv_store" in [t[0] for t in tables]
        s.close()

    def test_persists_across_connections(self, tmp_path):
        """Test values survive closing and reopening the database."""
        db_path = tmp_path / "nested" / "store.db"

        s = SQLiteStore(db_path)
        s.connect()
        s.set("queue:op:1", b'{"id": "1"}')
        s.close()

        reopened = SQLiteStore(db_path)
        reopened.connect()
        assert reopened.get("queue:op:1") == b'{"id": "1"}'
        reopened.close()

    def test_lazy_connect(self, tmp_path):
        """Test operations connect on first use."""
        s = SQLiteStore(tmp_path / "lazy.db")
        s.set("k", b"v")
        assert s.get("k") == b"v"
        s.close()

    def test_errors_become_store_error(self):
        """Test sqlite errors are wrapped in StoreError."""
        s = SQLiteStore(":memory:")
        s._conn = MagicMock()
        s._conn.execute.side_effect = sqlite3.OperationalError("disk I/O error")

        with pytest.raises(StoreError, match="disk I/O error"):
            s.set("k", b"v")
        with pytest.raises(StoreError):
            s.get("k")
        with pytest.raises(StoreError):
            s.list_keys_with_prefix("k")


class TestRecordCodec:
    """Tests for encode_record/decode_record."""

    def test_json_values_round_trip(self):
        """Test plain JSON records come back unchanged."""
        record = {"name": "Ada", "tags": ["a", "b"], "count": 3, "ok": True, "none": None}

        assert decode_record(encode_record(record)) == record

    def test_bytes_round_trip_at_any_depth(self):
        """Test bytes are restored as bytes, top-level or nested."""
        assert decode_record(encode_record(b"\x00opaque")) == b"\x00opaque"

        record = {"payload": b"\xff\x00", "items": [b"a", {"inner": b"b"}]}
        assert decode_record(encode_record(record)) == record

    def test_unsupported_value_raises_type_error(self):
        """Test values that cannot be stored are refused."""
        with pytest.raises(TypeError):
            encode_record({"when": object()})

    def test_malformed_input_raises_value_error(self):
        """Test undecodable input raises ValueError."""
        with pytest.raises(ValueError):
            decode_record(b"{not json")
