import sqlite3
import tempfile
import time
from pathlib import Path
from unittest.mock import patch

import pytest

from mcp_imessage_history import server
from mcp_imessage_history.contacts import ContactResolver
from mcp_imessage_history.db import APPLE_EPOCH_OFFSET

# attributedBody as written by Messages, text recovered only from the archive
ATTRIBUTED_BODY = (
    b"\x04\x0bstreamtyped\x81\xe8\x03\x84\x01@\x84\x84\x84\x12NSAttributedString\x00"
    b"\x84\x84\x08NSObject\x00\x85\x92\x84\x84\x84\x08NSString\x01\x94\x84\x01+\x0bHello there\x86"
)


def apple_days_ago(days: float) -> int:
    """Messages timestamp (ns since 2001-01-01) for a moment `days` before now."""
    return int((time.time() - APPLE_EPOCH_OFFSET - days * 86400) * 1_000_000_000)


def build_messages_db(path: Path) -> None:
    conn = sqlite3.connect(str(path))
    c = conn.cursor()
    c.execute("CREATE TABLE handle (ROWID INTEGER PRIMARY KEY, id TEXT, service TEXT)")
    c.execute(
        """
        CREATE TABLE message (
            ROWID INTEGER PRIMARY KEY,
            text TEXT,
            attributedBody BLOB,
            handle_id INTEGER,
            date INTEGER,
            is_from_me INTEGER,
            service TEXT
        )
        """
    )
    c.execute("CREATE TABLE chat (ROWID INTEGER PRIMARY KEY, display_name TEXT, chat_identifier TEXT)")
    c.execute("CREATE TABLE chat_message_join (chat_id INTEGER, message_id INTEGER)")

    c.executemany(
        "INSERT INTO handle VALUES (?, ?, ?)",
        [
            (1, "+15551234567", "iMessage"),  # Alice, international format
            (2, "5551234567", "SMS"),  # Alice, local format
            (3, "bob@example.com", "iMessage"),
            (4, "+15559876543", "iMessage"),  # Carol
            (5, "+15550001111", "iMessage"),  # Dave
            (6, "+15552223333", "iMessage"),  # not in the address book
            (7, "amy2@example.com", "iMessage"),  # email with a digit, not in the address book
        ],
    )

    def add(text, handle_id, days, from_me=0, body=None, service="iMessage", chat_id=None):
        c.execute(
            "INSERT INTO message (text, attributedBody, handle_id, date, is_from_me, service) VALUES (?,?,?,?,?,?)",
            (text, body, handle_id, apple_days_ago(days), from_me, service),
        )
        if chat_id is not None:
            c.execute("INSERT INTO chat_message_join VALUES (?, ?)", (chat_id, c.lastrowid))

    # Alice: 5 usable messages inside 30 days, one empty row, 2 older ones
    add("See you tomorrow", 1, 1)
    add("On my way", 1, 2, from_me=1)
    add("I hate this", 2, 3, service="SMS")
    add(None, 1, 4, body=ATTRIBUTED_BODY)
    add("I really like this", 2, 5, service="SMS")
    add("", 1, 6)
    add("old message", 1, 40)
    add("older message", 2, 50, service="SMS")

    # Bob
    add("Lunch?", 3, 1)
    add("Sure", 3, 2, from_me=1)

    # Amy
    add("Hi from Amy", 7, 1)

    # Group chat 1: Book Club
    c.execute("INSERT INTO chat VALUES (1, 'Book Club', 'chat111')")
    add("Finished the book", 4, 1, chat_id=1)
    add("Loved it", 0, 1.5, from_me=1, chat_id=1)
    add("This chapter is terrible", 5, 2, chat_id=1)

    # Group chat 2: no name, participants with 10, 7 and 7 messages
    c.execute("INSERT INTO chat VALUES (2, NULL, 'chat222')")
    for i in range(7):
        add(f"carol {i}", 4, 3 + i * 0.1, chat_id=2)
    for i in range(10):
        add(f"dave {i}", 5, 3 + i * 0.1, chat_id=2)
    for i in range(7):
        add(f"stranger {i}", 6, 3 + i * 0.1, chat_id=2)

    conn.commit()
    conn.close()


def build_contacts_db(path: Path) -> None:
    conn = sqlite3.connect(str(path))
    c = conn.cursor()
    c.execute("CREATE TABLE ZABCDRECORD (Z_PK INTEGER PRIMARY KEY, ZFIRSTNAME TEXT, ZLASTNAME TEXT)")
    c.execute("CREATE TABLE ZABCDPHONENUMBER (Z_PK INTEGER PRIMARY KEY, ZOWNER INTEGER, ZFULLNUMBER TEXT)")
    c.execute("CREATE TABLE ZABCDEMAILADDRESS (Z_PK INTEGER PRIMARY KEY, ZOWNER INTEGER, ZADDRESS TEXT)")
    c.executemany(
        "INSERT INTO ZABCDRECORD VALUES (?, ?, ?)",
        [
            (1, "Alice", "Smith"),
            (2, "Bob", "Jones"),
            (3, "Carol", "White"),
            (4, "Dave", "Brown"),
            (5, "Eve", "Nobody"),  # no phone or email
        ],
    )
    c.executemany(
        "INSERT INTO ZABCDPHONENUMBER (ZOWNER, ZFULLNUMBER) VALUES (?, ?)",
        [(1, "5551234567"), (3, "+15559876543"), (4, "+15550001111")],
    )
    c.execute("INSERT INTO ZABCDEMAILADDRESS (ZOWNER, ZADDRESS) VALUES (?, ?)", (2, "bob@example.com"))
    conn.commit()
    conn.close()


@pytest.fixture()
def dummy_imessage_env():
    """Create a tiny chat.db and AddressBook database in a temporary directory.

    Patches the path lookups so the code under test reads these files, and gives
    the server a fresh name cache.
    """
    with tempfile.TemporaryDirectory() as tmpdir:
        root = Path(tmpdir)
        build_messages_db(root / "chat.db")
        build_contacts_db(root / "AddressBook-v22.abcddb")

        with patch("mcp_imessage_history.db.get_messages_db_path", return_value=root / "chat.db"), patch(
            "mcp_imessage_history.db.get_contacts_db_path", return_value=root / "AddressBook-v22.abcddb"
        ), patch.object(server, "contacts", ContactResolver()):
            yield root


@pytest.fixture()
def messages_conn(dummy_imessage_env):
    conn = sqlite3.connect(str(dummy_imessage_env / "chat.db"))
    conn.row_factory = sqlite3.Row
    yield conn
    conn.close()


@pytest.fixture()
def resolver(dummy_imessage_env):
    return ContactResolver()


@pytest.fixture()
def attributed_body():
    return ATTRIBUTED_BODY
