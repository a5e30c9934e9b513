import logging
import sqlite3
from contextlib import contextmanager
from typing import Dict, List, Optional

from mcp_imessage_history.db import contains_pattern, digits_only, get_contacts_connection, phone_digits
from mcp_imessage_history.errors import ContactStoreUnavailableError
from mcp_imessage_history.models import ContactMatch

MAX_NAME_MATCHES = 10


def format_endpoint_for_display(endpoint: Optional[str]) -> str:
    """Fallback display name derived from the endpoint string alone."""
    if not endpoint:
        return "Unknown"

    if "@" in endpoint:
        return endpoint.split("@")[0]

    digits = digits_only(endpoint)
    if len(digits) == 11 and digits.startswith("1"):
        digits = digits[1:]
    if len(digits) == 10:
        return f"({digits[:3]}) {digits[3:6]}-{digits[6:]}"

    return endpoint


class NameCache:
    """Process-lifetime endpoint -> display name map. Unbounded, never invalidated."""

    def __init__(self):
        self._names: Dict[str, str] = {}

    def get(self, endpoint: str) -> Optional[str]:
        return self._names.get(endpoint)

    def set(self, endpoint: str, name: str) -> None:
        self._names[endpoint] = name

    def __len__(self) -> int:
        return len(self._names)


class ContactStore:
    """Optional AddressBook collaborator.

    Each lookup opens a fresh connection. When the database is missing, cannot
    be opened, or cannot be queried (no AddressBook tables, locked) the store
    reports itself unavailable and a warning is logged once per process; the
    file is retried on later lookups.
    """

    def __init__(self):
        self.unavailable_reason: Optional[str] = None
        self._warned = False

    def mark_unavailable(self, error: ContactStoreUnavailableError) -> None:
        self.unavailable_reason = str(error)
        if not self._warned:
            logging.warning(f"{error} - names will fall back to phone numbers and emails")
            self._warned = True

    @contextmanager
    def _connection(self):
        """Yield an AddressBook connection; any query failure marks the store unreadable."""
        with get_contacts_connection() as conn:
            try:
                yield conn
            except sqlite3.Error as e:
                raise ContactStoreUnavailableError(f"Contacts database unreadable: {e}")
        self.unavailable_reason = None

    def lookup_name(self, endpoint: str) -> Optional[str]:
        """Return "First Last" for the person owning endpoint, or None.

        Raises:
            ContactStoreUnavailableError: If the AddressBook cannot be opened or queried
        """
        digits = phone_digits(endpoint)

        with self._connection() as conn:
            clauses = ["p.ZFULLNUMBER LIKE ? ESCAPE '\\'"]
            params = [contains_pattern(endpoint)]
            # Empty for emails; an empty digit pattern would match every number
            if digits:
                clauses += ["p.ZFULLNUMBER LIKE ? ESCAPE '\\'", "p.ZFULLNUMBER LIKE ? ESCAPE '\\'"]
                params += [contains_pattern(digits), contains_pattern(f"+{digits}")]

            row = conn.execute(
                f"""
                SELECT r.ZFIRSTNAME, r.ZLASTNAME
                FROM ZABCDRECORD r
                JOIN ZABCDPHONENUMBER p ON r.Z_PK = p.ZOWNER
                WHERE {' OR '.join(clauses)}
                LIMIT 1
                """,
                params,
            ).fetchone()

            if row is None and "@" in endpoint:
                row = conn.execute(
                    """
                    SELECT r.ZFIRSTNAME, r.ZLASTNAME
                    FROM ZABCDRECORD r
                    JOIN ZABCDEMAILADDRESS e ON r.Z_PK = e.ZOWNER
                    WHERE e.ZADDRESS LIKE ? ESCAPE '\\'
                    LIMIT 1
                    """,
                    (contains_pattern(endpoint),),
                ).fetchone()

        if row is None:
            return None
        return _full_name(row["ZFIRSTNAME"], row["ZLASTNAME"]) or None

    def find_by_name(self, name: str) -> List[ContactMatch]:
        """Loose substring match on first, last and full name.

        Raises:
            ContactStoreUnavailableError: If the AddressBook cannot be opened or queried
        """
        pattern = contains_pattern(name)

        with self._connection() as conn:
            rows = conn.execute(
                f"""
                SELECT r.ZFIRSTNAME, r.ZLASTNAME, p.ZFULLNUMBER as phone, e.ZADDRESS as email
                FROM ZABCDRECORD r
                LEFT JOIN ZABCDPHONENUMBER p ON r.Z_PK = p.ZOWNER
                LEFT JOIN ZABCDEMAILADDRESS e ON r.Z_PK = e.ZOWNER
                WHERE r.ZFIRSTNAME LIKE ? ESCAPE '\\'
                   OR r.ZLASTNAME LIKE ? ESCAPE '\\'
                   OR (COALESCE(r.ZFIRSTNAME, '') || ' ' || COALESCE(r.ZLASTNAME, '')) LIKE ? ESCAPE '\\'
                LIMIT {MAX_NAME_MATCHES}
                """,
                (pattern, pattern, pattern),
            ).fetchall()

        return [
            ContactMatch(
                name=_full_name(row["ZFIRSTNAME"], row["ZLASTNAME"]),
                phone=row["phone"],
                email=row["email"],
            )
            for row in rows
            if row["phone"] or row["email"]
        ]


def _full_name(first: Optional[str], last: Optional[str]) -> str:
    return f"{first or ''} {last or ''}".strip()


class ContactResolver:
    """Maps endpoints to display names and names to endpoints.

    The cache is injected so one instance can be shared for the process lifetime.
    """

    def __init__(self, cache: Optional[NameCache] = None, store: Optional[ContactStore] = None):
        self.cache = cache if cache is not None else NameCache()
        self.store = store if store is not None else ContactStore()

    def resolve_display_name(self, endpoint: str) -> str:
        """Return the cached or freshly resolved display name for endpoint."""
        cached = self.cache.get(endpoint)
        if cached is not None:
            return cached

        name = None
        if endpoint:
            try:
                name = self.store.lookup_name(endpoint)
            except ContactStoreUnavailableError as e:
                self.store.mark_unavailable(e)

        display_name = name or format_endpoint_for_display(endpoint)
        self.cache.set(endpoint, display_name)
        return display_name

    def find_persons_by_name(self, name: str) -> List[ContactMatch]:
        """Return up to 10 people whose name contains name; empty when unavailable."""
        if not name or not name.strip():
            return []

        try:
            return self.store.find_by_name(name.strip())
        except ContactStoreUnavailableError as e:
            self.store.mark_unavailable(e)
        return []
