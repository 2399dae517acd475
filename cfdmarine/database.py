"""SQLite database operations for GAR records and push subscriptions."""

import json
import logging
import sqlite3
import threading
from datetime import UTC, datetime
from pathlib import Path

from .gar import GarRecord, load_json_list, load_json_object

logger = logging.getLogger(__name__)


class DatabaseError(Exception):
    """Raised when a database operation fails."""

    pass


# Global lock for thread-safe database access.
# SQLite allows concurrent reads but only one writer at a time.
# This lock ensures safe access from multiple threads (API handlers, CLI).
_db_lock = threading.Lock()

GAR_COLUMNS = (
    "id",
    "name",
    "boat",
    "date",
    "time",
    "shift",
    "location",
    "crew",
    "overall_risk",
    "overall_gain",
    "command_decision",
    "color",
    "risk_elements",
    "submitted_at",
)

UPDATABLE_GAR_COLUMNS = ("location", "overall_risk", "overall_gain", "command_decision", "color")


def init_db(db_path: str) -> sqlite3.Connection:
    """Initialize the database and create tables if they don't exist.

    Args:
        db_path: Path to the SQLite database file.

    Returns:
        Database connection with WAL mode enabled.

    Raises:
        DatabaseError: If database initialization fails.
    """
    try:
        parent_dir = Path(db_path).parent
        if not parent_dir.exists():
            parent_dir.mkdir(parents=True, exist_ok=True)

        conn = sqlite3.connect(db_path, check_same_thread=False)
        conn.row_factory = sqlite3.Row

        conn.execute("PRAGMA journal_mode=WAL")
        conn.execute("PRAGMA synchronous=NORMAL")

        conn.execute("""
            CREATE TABLE IF NOT EXISTS gar (
                id TEXT PRIMARY KEY,
                name TEXT NOT NULL,
                boat TEXT NOT NULL,
                date TEXT NOT NULL DEFAULT '',
                time TEXT NOT NULL DEFAULT '',
                shift TEXT NOT NULL DEFAULT '',
                location TEXT NOT NULL DEFAULT '',
                crew TEXT NOT NULL DEFAULT '[]',
                overall_risk TEXT NOT NULL DEFAULT '',
                overall_gain TEXT NOT NULL DEFAULT '',
                command_decision TEXT NOT NULL DEFAULT '',
                color TEXT NOT NULL DEFAULT '',
                risk_elements TEXT NOT NULL DEFAULT '{}',
                submitted_at TEXT NOT NULL
            )
        """)
        conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_gar_boat_date
            ON gar(boat, date, time)
        """)

        conn.execute("""
            CREATE TABLE IF NOT EXISTS push_subscriptions (
                endpoint TEXT PRIMARY KEY,
                subscription TEXT NOT NULL,
                created_at TEXT NOT NULL
            )
        """)

        conn.commit()
        return conn

    except sqlite3.Error as e:
        raise DatabaseError(f"Failed to initialize database: {e}")
    except OSError as e:
        raise DatabaseError(f"Failed to create database directory: {e}")


def _row_to_gar(row: sqlite3.Row) -> GarRecord:
    return GarRecord(
        id=row["id"],
        name=row["name"] or "",
        boat=row["boat"] or "",
        date=row["date"] or "",
        time=row["time"] or "",
        shift=row["shift"] or "",
        location=row["location"] or "",
        crew=load_json_list(row["crew"]),
        overall_risk=row["overall_risk"] or "",
        overall_gain=row["overall_gain"] or "",
        command_decision=row["command_decision"] or "",
        color=row["color"] or "",
        risk_elements=load_json_object(row["risk_elements"]),
        submitted_at=row["submitted_at"] or "",
    )


def insert_gar(conn: sqlite3.Connection, record: GarRecord) -> None:
    """Insert a new GAR record.

    Thread-safe: acquires global lock before database access.

    Raises:
        DatabaseError: If the insert fails.
    """
    try:
        with _db_lock:
            conn.execute(
                f"INSERT INTO gar ({', '.join(GAR_COLUMNS)}) VALUES ({', '.join('?' for _ in GAR_COLUMNS)})",
                (
                    record.id,
                    record.name,
                    record.boat,
                    record.date,
                    record.time,
                    record.shift,
                    record.location,
                    json.dumps(record.crew),
                    record.overall_risk,
                    record.overall_gain,
                    record.command_decision,
                    record.color,
                    json.dumps(record.risk_elements),
                    record.submitted_at,
                ),
            )
            conn.commit()
    except sqlite3.Error as e:
        raise DatabaseError(f"Failed to insert GAR record: {e}")


def get_gars_by_boat(conn: sqlite3.Connection, boat: str) -> list[GarRecord]:
    """Get all GAR records for a boat, newest first.

    Thread-safe: acquires global lock before database access.

    Raises:
        DatabaseError: If the query fails.
    """
    try:
        with _db_lock:
            rows = conn.execute(
                f"""
                SELECT {', '.join(GAR_COLUMNS)} FROM gar
                WHERE boat = ?
                ORDER BY date DESC, time DESC, submitted_at DESC
                """,
                (boat,),
            ).fetchall()
        return [_row_to_gar(row) for row in rows]

    except sqlite3.Error as e:
        raise DatabaseError(f"Failed to get GAR records: {e}")


def get_gar(conn: sqlite3.Connection, gar_id: str) -> GarRecord | None:
    """Get a single GAR record by id."""
    try:
        with _db_lock:
            row = conn.execute(
                f"SELECT {', '.join(GAR_COLUMNS)} FROM gar WHERE id = ?",
                (gar_id,),
            ).fetchone()
        return _row_to_gar(row) if row else None

    except sqlite3.Error as e:
        raise DatabaseError(f"Failed to get GAR record: {e}")


def update_gar(conn: sqlite3.Connection, gar_id: str, fields: dict[str, str]) -> bool:
    """Update the admin-editable columns of a GAR record.

    Args:
        conn: Database connection.
        gar_id: Record id.
        fields: Column name to new value; only UPDATABLE_GAR_COLUMNS are allowed.

    Returns:
        True if the record existed.

    Raises:
        DatabaseError: If the update fails or names an unknown column.
    """
    unknown = set(fields) - set(UPDATABLE_GAR_COLUMNS)
    if unknown:
        raise DatabaseError(f"Cannot update GAR columns: {', '.join(sorted(unknown))}")
    if not fields:
        return get_gar(conn, gar_id) is not None

    assignments = ", ".join(f"{column} = ?" for column in fields)
    try:
        with _db_lock:
            cursor = conn.execute(
                f"UPDATE gar SET {assignments} WHERE id = ?",
                (*fields.values(), gar_id),
            )
            conn.commit()
        return cursor.rowcount > 0

    except sqlite3.Error as e:
        raise DatabaseError(f"Failed to update GAR record: {e}")


def delete_gar(conn: sqlite3.Connection, gar_id: str) -> bool:
    """Delete a GAR record. Returns True if it existed."""
    try:
        with _db_lock:
            cursor = conn.execute("DELETE FROM gar WHERE id = ?", (gar_id,))
            conn.commit()
        return cursor.rowcount > 0

    except sqlite3.Error as e:
        raise DatabaseError(f"Failed to delete GAR record: {e}")


def add_subscription(conn: sqlite3.Connection, subscription: dict) -> bool:
    """Store a push subscription, keyed by its endpoint.

    Returns:
        True if the endpoint was new.

    Raises:
        DatabaseError: If the subscription has no endpoint or the insert fails.
    """
    endpoint = subscription.get("endpoint")
    if not endpoint:
        raise DatabaseError("Subscription has no endpoint")

    try:
        with _db_lock:
            cursor = conn.execute(
                "INSERT OR IGNORE INTO push_subscriptions (endpoint, subscription, created_at) VALUES (?, ?, ?)",
                (endpoint, json.dumps(subscription), datetime.now(UTC).isoformat()),
            )
            conn.commit()
        return cursor.rowcount > 0

    except sqlite3.Error as e:
        raise DatabaseError(f"Failed to add subscription: {e}")


def get_subscriptions(conn: sqlite3.Connection) -> list[dict]:
    """Get all stored push subscriptions, oldest first.

    Rows whose stored JSON is unreadable are skipped.
    """
    try:
        with _db_lock:
            rows = conn.execute(
                "SELECT endpoint, subscription FROM push_subscriptions ORDER BY created_at, rowid"
            ).fetchall()
    except sqlite3.Error as e:
        raise DatabaseError(f"Failed to get subscriptions: {e}")

    subscriptions = []
    for row in rows:
        try:
            subscription = json.loads(row["subscription"])
        except ValueError:
            logger.warning("Skipping unreadable subscription for %s", row["endpoint"])
            continue
        if isinstance(subscription, dict):
            subscriptions.append(subscription)
    return subscriptions


def remove_subscriptions(conn: sqlite3.Connection, endpoints: list[str]) -> int:
    """Delete subscriptions by endpoint.

    Returns:
        Number of deleted subscriptions.
    """
    if not endpoints:
        return 0
    try:
        with _db_lock:
            cursor = conn.executemany(
                "DELETE FROM push_subscriptions WHERE endpoint = ?",
                [(endpoint,) for endpoint in endpoints],
            )
            conn.commit()
        return cursor.rowcount

    except sqlite3.Error as e:
        raise DatabaseError(f"Failed to remove subscriptions: {e}")
