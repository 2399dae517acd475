"""Tests for the database module."""

import sqlite3
from collections.abc import Iterator
from pathlib import Path

import pytest

from cfdmarine.database import (
    DatabaseError,
    add_subscription,
    delete_gar,
    get_gar,
    get_gars_by_boat,
    get_subscriptions,
    init_db,
    insert_gar,
    remove_subscriptions,
    update_gar,
)
from cfdmarine.gar import GarRecord


@pytest.fixture
def db_path(tmp_path: Path) -> str:
    """Create a temporary database path."""
    return str(tmp_path / "test.db")


@pytest.fixture
def db_conn(db_path: str) -> Iterator[sqlite3.Connection]:
    """Create a database connection with initialized tables."""
    conn = init_db(db_path)
    yield conn
    conn.close()


def make_record(gar_id: str, boat: str = "Marine 1", date: str = "2026-05-01", time: str = "08:00") -> GarRecord:
    return GarRecord(
        id=gar_id,
        name="Lt. Ray",
        boat=boat,
        date=date,
        time=time,
        crew=["Ray", "Diaz"],
        overall_risk="Low",
        overall_gain="High",
        command_decision="Accept Mission",
        color="green",
        risk_elements={"weather": 2},
        submitted_at=f"{date}T{time}:00+00:00",
    )


class TestInitDb:
    """Tests for init_db function."""

    def test_creates_parent_directories(self, tmp_path: Path) -> None:
        """Parent directories are created if they don't exist."""
        nested_path = str(tmp_path / "nested" / "dir" / "test.db")
        conn = init_db(nested_path)
        conn.close()
        assert Path(nested_path).exists()

    def test_creates_tables(self, db_conn: sqlite3.Connection) -> None:
        cursor = db_conn.execute("SELECT name FROM sqlite_master WHERE type='table'")
        tables = {row[0] for row in cursor.fetchall()}
        assert {"gar", "push_subscriptions"} <= tables

    def test_creates_indexes(self, db_conn: sqlite3.Connection) -> None:
        cursor = db_conn.execute("SELECT name FROM sqlite_master WHERE type='index'")
        assert "idx_gar_boat_date" in {row[0] for row in cursor.fetchall()}

    def test_wal_mode_enabled(self, db_conn: sqlite3.Connection) -> None:
        """WAL journal mode is enabled."""
        cursor = db_conn.execute("PRAGMA journal_mode")
        assert cursor.fetchone()[0] == "wal"

    def test_idempotent(self, db_path: str) -> None:
        """Calling init_db twice doesn't fail."""
        init_db(db_path).close()
        init_db(db_path).close()


class TestGarRecords:
    """Tests for GAR record storage."""

    def test_insert_and_get(self, db_conn: sqlite3.Connection) -> None:
        record = make_record("GAR-aaaaaaaa")
        insert_gar(db_conn, record)
        assert get_gar(db_conn, "GAR-aaaaaaaa") == record

    def test_get_missing(self, db_conn: sqlite3.Connection) -> None:
        assert get_gar(db_conn, "GAR-missing0") is None

    def test_duplicate_id_raises(self, db_conn: sqlite3.Connection) -> None:
        insert_gar(db_conn, make_record("GAR-aaaaaaaa"))
        with pytest.raises(DatabaseError):
            insert_gar(db_conn, make_record("GAR-aaaaaaaa"))

    def test_by_boat_newest_first(self, db_conn: sqlite3.Connection) -> None:
        insert_gar(db_conn, make_record("GAR-old", date="2026-04-01"))
        insert_gar(db_conn, make_record("GAR-new", date="2026-05-02"))
        insert_gar(db_conn, make_record("GAR-mid", date="2026-05-02", time="06:00"))
        insert_gar(db_conn, make_record("GAR-other", boat="Marine 2"))

        records = get_gars_by_boat(db_conn, "Marine 1")

        assert [r.id for r in records] == ["GAR-new", "GAR-mid", "GAR-old"]

    def test_by_boat_empty(self, db_conn: sqlite3.Connection) -> None:
        assert get_gars_by_boat(db_conn, "Nobody") == []

    def test_legacy_text_crew(self, db_conn: sqlite3.Connection) -> None:
        """Rows written with plain-text crew still load."""
        insert_gar(db_conn, make_record("GAR-legacy"))
        db_conn.execute("UPDATE gar SET crew = 'Ray and Diaz' WHERE id = 'GAR-legacy'")
        db_conn.commit()
        assert get_gar(db_conn, "GAR-legacy").crew == ["Ray and Diaz"]

    def test_update(self, db_conn: sqlite3.Connection) -> None:
        insert_gar(db_conn, make_record("GAR-aaaaaaaa"))

        updated = update_gar(db_conn, "GAR-aaaaaaaa", {"location": "Pier 4", "color": "red"})

        assert updated is True
        record = get_gar(db_conn, "GAR-aaaaaaaa")
        assert record.location == "Pier 4"
        assert record.color == "red"
        assert record.name == "Lt. Ray"

    def test_update_missing(self, db_conn: sqlite3.Connection) -> None:
        assert update_gar(db_conn, "GAR-missing0", {"location": "x"}) is False

    def test_update_rejects_unknown_column(self, db_conn: sqlite3.Connection) -> None:
        with pytest.raises(DatabaseError, match="name"):
            update_gar(db_conn, "GAR-aaaaaaaa", {"name": "Mallory"})

    def test_delete(self, db_conn: sqlite3.Connection) -> None:
        insert_gar(db_conn, make_record("GAR-aaaaaaaa"))
        assert delete_gar(db_conn, "GAR-aaaaaaaa") is True
        assert delete_gar(db_conn, "GAR-aaaaaaaa") is False


class TestSubscriptions:
    """Tests for push subscription storage."""

    def test_add_and_list(self, db_conn: sqlite3.Connection) -> None:
        sub = {"endpoint": "https://push.example.com/a", "keys": {"p256dh": "x", "auth": "y"}}
        assert add_subscription(db_conn, sub) is True
        assert get_subscriptions(db_conn) == [sub]

    def test_add_is_idempotent(self, db_conn: sqlite3.Connection) -> None:
        sub = {"endpoint": "https://push.example.com/a"}
        add_subscription(db_conn, sub)
        assert add_subscription(db_conn, sub) is False
        assert len(get_subscriptions(db_conn)) == 1

    def test_add_requires_endpoint(self, db_conn: sqlite3.Connection) -> None:
        with pytest.raises(DatabaseError, match="endpoint"):
            add_subscription(db_conn, {"keys": {}})

    def test_unreadable_rows_skipped(self, db_conn: sqlite3.Connection) -> None:
        add_subscription(db_conn, {"endpoint": "https://push.example.com/a"})
        db_conn.execute(
            "INSERT INTO push_subscriptions (endpoint, subscription, created_at) VALUES (?, ?, ?)",
            ("https://push.example.com/bad", "{not json", "2026-01-01T00:00:00+00:00"),
        )
        db_conn.commit()

        endpoints = [s["endpoint"] for s in get_subscriptions(db_conn)]

        assert endpoints == ["https://push.example.com/a"]

    def test_remove(self, db_conn: sqlite3.Connection) -> None:
        add_subscription(db_conn, {"endpoint": "https://push.example.com/a"})
        add_subscription(db_conn, {"endpoint": "https://push.example.com/b"})

        removed = remove_subscriptions(db_conn, ["https://push.example.com/a", "https://push.example.com/zzz"])

        assert removed == 1
        assert [s["endpoint"] for s in get_subscriptions(db_conn)] == ["https://push.example.com/b"]

    def test_remove_nothing(self, db_conn: sqlite3.Connection) -> None:
        assert remove_subscriptions(db_conn, []) == 0
