import os
import sqlite3
import time
from contextlib import asynccontextmanager, contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import AsyncGenerator, Generator, Optional

from mcp_imessage_history.errors import ContactStoreUnavailableError, StoreUnavailableError

# Seconds between 1970-01-01 and 2001-01-01, the zero point of Messages timestamps
APPLE_EPOCH_OFFSET = 978307200
NANOSECONDS = 1_000_000_000
SECONDS_PER_DAY = 24 * 60 * 60

FULL_DISK_ACCESS_HINT = (
    "Grant Full Disk Access to the application running this server "
    "(System Settings > Privacy & Security > Full Disk Access) and restart it."
)


def get_messages_db_path() -> Path:
    """Return the Messages database path, honouring IMESSAGE_DB_PATH."""
    override = os.environ.get("IMESSAGE_DB_PATH")
    if override:
        return Path(override).expanduser()
    return Path.home() / "Library" / "Messages" / "chat.db"


def get_contacts_db_path() -> Path:
    """Return the AddressBook database path, honouring IMESSAGE_CONTACTS_DB_PATH."""
    override = os.environ.get("IMESSAGE_CONTACTS_DB_PATH")
    if override:
        return Path(override).expanduser()
    return Path.home() / "Library" / "Application Support" / "AddressBook" / "AddressBook-v22.abcddb"


def _connect_read_only(db_path: Path) -> sqlite3.Connection:
    conn = sqlite3.connect(f"{db_path.absolute().as_uri()}?mode=ro", uri=True)
    try:
        conn.row_factory = sqlite3.Row  # Enable column access by name
        # sqlite opens lazily, so touch the schema to surface permission errors here
        conn.execute("SELECT 1 FROM sqlite_master LIMIT 1")
    except sqlite3.Error:
        conn.close()
        raise
    return conn


@asynccontextmanager
async def get_db_connection() -> AsyncGenerator[sqlite3.Connection, None]:
    """Open a read-only connection to the Messages database.

    Yields:
        sqlite3.Connection: Database connection, closed on every exit path

    Raises:
        StoreUnavailableError: If the database is missing or cannot be opened
    """
    db_path = get_messages_db_path()

    if not db_path.exists():
        raise StoreUnavailableError(f"Messages database not found at {db_path}. {FULL_DISK_ACCESS_HINT}")

    try:
        conn = _connect_read_only(db_path)
    except sqlite3.Error as e:
        raise StoreUnavailableError(f"Failed to open Messages database: {e}. {FULL_DISK_ACCESS_HINT}")

    try:
        yield conn
    finally:
        conn.close()


@contextmanager
def get_contacts_connection() -> Generator[sqlite3.Connection, None, None]:
    """Open a read-only connection to the AddressBook database.

    Raises:
        ContactStoreUnavailableError: If the database is missing or unreadable
    """
    db_path = get_contacts_db_path()

    if not db_path.is_file():
        raise ContactStoreUnavailableError(f"Contacts database not found at {db_path}")

    try:
        conn = _connect_read_only(db_path)
    except sqlite3.Error as e:
        raise ContactStoreUnavailableError(f"Failed to open Contacts database: {e}")

    try:
        yield conn
    finally:
        conn.close()


def apple_threshold(days_back: int, now: Optional[float] = None) -> int:
    """Convert a days-back window into a Messages timestamp threshold.

    Messages stores dates as nanoseconds since 2001-01-01 UTC, so
    ``message.date > apple_threshold(n)`` selects messages from the last n days.
    A zero or negative window yields a threshold at or after now.
    """
    now_unix = int(time.time() if now is None else now)
    now_apple_ns = (now_unix - APPLE_EPOCH_OFFSET) * NANOSECONDS
    return now_apple_ns - int(days_back) * SECONDS_PER_DAY * NANOSECONDS


def apple_to_datetime(apple_time: int) -> datetime:
    """Convert a Messages timestamp to an aware UTC datetime.

    Databases written before macOS 10.13 store whole seconds instead of nanoseconds.
    """
    seconds = apple_time / NANOSECONDS if abs(apple_time) > 1e11 else apple_time
    return datetime.fromtimestamp(seconds + APPLE_EPOCH_OFFSET, tz=timezone.utc)


def apple_to_iso(apple_time: Optional[int]) -> Optional[str]:
    """Convert a Messages timestamp to a ``YYYY-MM-DD HH:MM:SS`` UTC string."""
    if apple_time is None:
        return None
    try:
        return apple_to_datetime(apple_time).strftime("%Y-%m-%d %H:%M:%S")
    except (ValueError, OverflowError, OSError):
        return None


def contains_pattern(value: str) -> str:
    """Build a ``LIKE ... ESCAPE '\\'`` pattern matching value as a substring."""
    escaped = value.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
    return f"%{escaped}%"


def digits_only(value: Optional[str]) -> str:
    return "".join(c for c in (value or "") if c.isdigit())


def phone_digits(value: Optional[str]) -> str:
    """Digits of a phone-like value; empty for emails, whose digits say nothing about numbers."""
    if not value or "@" in value:
        return ""
    return digits_only(value)
