import logging
import re
import sqlite3
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

from mcp_imessage_history.body import extract_plain_text, message_text
from mcp_imessage_history.contacts import ContactResolver
from mcp_imessage_history.db import apple_threshold, apple_to_datetime, apple_to_iso, contains_pattern, phone_digits
from mcp_imessage_history.errors import ContactNotFoundError, InvalidArgumentError
from mcp_imessage_history.models import (
    GROUP_PREFIX,
    Conversation,
    ConversationMessage,
    DailySentiment,
    GroupTotals,
    Handle,
    IndividualStats,
    ParticipantStats,
)

# Characters that mark an identifier as a phone number or email rather than a name
ENDPOINT_CHARS = re.compile(r"[@+\d\-()]")

# Stays well below SQLite's host parameter limit
MAX_HANDLE_KEYS = 500
HANDLES_PER_SEARCH_TERM = 10
MAX_CONTACT_HANDLES = 20
MAX_GROUP_MATCHES = 5
MAX_HOSTILE_MESSAGES = 50
SAMPLES_PER_DAY = 3

LOCAL_USER_LABEL = "You"
SENT_MARKER = "> "

DEFAULT_HOSTILE_KEYWORDS = (
    "fuck",
    "shit",
    "hate",
    "angry",
    "stupid",
    "idiot",
    "asshole",
    "bitch",
    "pissed",
    "disgusted",
    "shut up",
    "leave me alone",
    "horrible",
    "terrible",
    "worthless",
)

# Rows whose text or attributed body may carry something to show
HAS_CONTENT_SQL = "((m.text IS NOT NULL AND TRIM(m.text) != '') OR m.attributedBody IS NOT NULL)"


@dataclass(frozen=True)
class HandleKeys:
    """Deduplicated handle ROWIDs, parameterized as an ``IN (...)`` clause."""

    keys: Tuple[int, ...] = ()

    @classmethod
    def of(cls, keys: Iterable[int]) -> "HandleKeys":
        unique = tuple(dict.fromkeys(int(k) for k in keys))
        if len(unique) > MAX_HANDLE_KEYS:
            logging.warning(f"Handle key list truncated from {len(unique)} to {MAX_HANDLE_KEYS}")
            unique = unique[:MAX_HANDLE_KEYS]
        return cls(unique)

    def in_clause(self, column: str) -> str:
        if not self.keys:
            return "0"
        return f"{column} IN ({', '.join('?' for _ in self.keys)})"

    @property
    def params(self) -> List[int]:
        return list(self.keys)

    def __len__(self) -> int:
        return len(self.keys)

    def __iter__(self):
        return iter(self.keys)


def looks_like_endpoint(identifier: str) -> bool:
    return bool(ENDPOINT_CHARS.search(identifier))


def parse_group_identifier(identifier: str) -> Optional[int]:
    """Return the chat ROWID for a ``group:<id>`` identifier, None for individuals."""
    if not identifier.startswith(GROUP_PREFIX):
        return None
    key = identifier[len(GROUP_PREFIX) :].strip()
    try:
        return int(key)
    except ValueError:
        raise InvalidArgumentError(f"Invalid group identifier: {identifier} (expected group:<number>)")


def _require_positive(limit: int) -> int:
    if limit is None or int(limit) <= 0:
        raise InvalidArgumentError(f"limit must be a positive number, got {limit}")
    return int(limit)


def find_handles(conn: sqlite3.Connection, term: str, limit: Optional[int] = None) -> List[Handle]:
    """Handles whose id contains term or, for phone numbers, its digits or +digits."""
    clauses = ["id LIKE ? ESCAPE '\\'"]
    params: List[Any] = [contains_pattern(term)]

    digits = phone_digits(term)
    # Empty for emails; an empty digit pattern would match every handle
    if digits:
        clauses += ["id LIKE ? ESCAPE '\\'", "id LIKE ? ESCAPE '\\'"]
        params += [contains_pattern(digits), contains_pattern(f"+{digits}")]

    query = f"SELECT ROWID, id, service FROM handle WHERE {' OR '.join(clauses)} ORDER BY ROWID"
    if limit:
        query += " LIMIT ?"
        params.append(limit)

    return [Handle(rowid=row["ROWID"], id=row["id"], service=row["service"]) for row in conn.execute(query, params)]


def resolve_handle_keys(conn: sqlite3.Connection, resolver: ContactResolver, identifier: str) -> HandleKeys:
    """Resolve a name, phone number or email to every handle row it denotes.

    Names are looked up in the address book first and each of the person's
    endpoints searched; if that finds nothing the identifier itself is searched.
    One person commonly has several handle rows (e.g. ``5551234567`` and
    ``+15551234567``), so all matches are returned.

    Raises:
        ContactNotFoundError: If no handle matches
    """
    rowids: List[int] = []

    if not looks_like_endpoint(identifier):
        for person in resolver.find_persons_by_name(identifier):
            for endpoint in (person.phone, person.email):
                if endpoint:
                    rowids.extend(h.rowid for h in find_handles(conn, endpoint))

    if not rowids:
        rowids.extend(h.rowid for h in find_handles(conn, identifier))

    if not rowids:
        raise ContactNotFoundError(identifier)

    return HandleKeys.of(rowids)


def _build_individual_message(row: sqlite3.Row) -> ConversationMessage:
    prefix = SENT_MARKER if row["is_from_me"] else ""
    return ConversationMessage(
        date=apple_to_iso(row["date"]),
        text=prefix + message_text(row["text"], row["attributedBody"]),
        service=row["service"],
    )


def _sender_label(resolver: ContactResolver, row: sqlite3.Row) -> str:
    if row["is_from_me"]:
        return LOCAL_USER_LABEL
    return resolver.resolve_display_name(row["sender"] or "")


def fetch_individual_messages(
    conn: sqlite3.Connection,
    keys: HandleKeys,
    threshold: int,
    limit: int,
    include_sent: bool = True,
) -> List[ConversationMessage]:
    """Newest-first messages exchanged with any of the given handles."""
    query = f"""
    SELECT m.date, m.text, m.attributedBody, m.is_from_me, m.service
    FROM message m
    WHERE {keys.in_clause('m.handle_id')}
      AND m.date > ? AND {HAS_CONTENT_SQL}
    """
    if not include_sent:
        query += " AND m.is_from_me = 0"
    query += " ORDER BY m.date DESC LIMIT ?"

    cursor = conn.execute(query, [*keys.params, threshold, _require_positive(limit)])
    return [_build_individual_message(row) for row in cursor.fetchall()]


def fetch_group_messages(
    conn: sqlite3.Connection,
    resolver: ContactResolver,
    chat_id: int,
    threshold: int,
    limit: int,
    include_sent: bool = True,
) -> List[ConversationMessage]:
    """Newest-first messages in a chat with resolved sender names."""
    query = f"""
    SELECT m.date, m.text, m.attributedBody, m.is_from_me, m.service, h.id as sender
    FROM chat_message_join cmj
    JOIN message m ON cmj.message_id = m.ROWID
    LEFT JOIN handle h ON m.handle_id = h.ROWID
    WHERE cmj.chat_id = ? AND m.date > ? AND {HAS_CONTENT_SQL}
    """
    if not include_sent:
        query += " AND m.is_from_me = 0"
    query += " ORDER BY m.date DESC LIMIT ?"

    cursor = conn.execute(query, (chat_id, threshold, _require_positive(limit)))
    return [
        ConversationMessage(
            date=apple_to_iso(row["date"]),
            text=message_text(row["text"], row["attributedBody"]),
            sender=_sender_label(resolver, row),
            service=row["service"],
        )
        for row in cursor.fetchall()
    ]


def get_group_name(conn: sqlite3.Connection, chat_id: int) -> str:
    row = conn.execute("SELECT display_name FROM chat WHERE ROWID = ?", (chat_id,)).fetchone()
    if row and row["display_name"]:
        return row["display_name"]
    return f"Group {chat_id}"


def read_conversation(
    conn: sqlite3.Connection,
    resolver: ContactResolver,
    identifier: str,
    limit: int = 20,
    days_back: int = 60,
    include_sent: bool = True,
) -> Conversation:
    """Read one individual or ``group:<id>`` conversation."""
    threshold = apple_threshold(days_back)
    logging.debug(f"Reading {identifier}: days_back={days_back}, threshold={threshold}")

    chat_id = parse_group_identifier(identifier)
    if chat_id is not None:
        return Conversation(
            type="group",
            name=get_group_name(conn, chat_id),
            identifier=f"{GROUP_PREFIX}{chat_id}",
            messages=fetch_group_messages(conn, resolver, chat_id, threshold, limit, include_sent),
        )

    keys = resolve_handle_keys(conn, resolver, identifier)
    return Conversation(
        type="individual",
        name=resolver.resolve_display_name(identifier),
        identifier=identifier,
        handles=len(keys),
        messages=fetch_individual_messages(conn, keys, threshold, limit, include_sent),
    )


def search_conversations(
    conn: sqlite3.Connection,
    resolver: ContactResolver,
    query: str,
    include_groups: bool = True,
    limit: int = 15,
    days_back: int = 30,
) -> List[Conversation]:
    """Find individuals and groups matching query and read their recent messages.

    Handles are grouped by endpoint id so the same contact found through several
    search terms is read and reported once.
    """
    threshold = apple_threshold(days_back)

    search_terms = [query]
    for person in resolver.find_persons_by_name(query):
        search_terms.extend(e for e in (person.phone, person.email) if e)

    handle_groups: Dict[str, List[int]] = {}
    for term in dict.fromkeys(search_terms):
        for handle in find_handles(conn, term, limit=HANDLES_PER_SEARCH_TERM):
            rowids = handle_groups.setdefault(handle.id, [])
            if handle.rowid not in rowids:
                rowids.append(handle.rowid)

    results = []
    for contact_id, rowids in handle_groups.items():
        keys = HandleKeys.of(rowids)
        logging.debug(f"Processing contact {contact_id} with {len(keys)} handles: {keys.keys}")
        messages = fetch_individual_messages(conn, keys, threshold, limit)
        if messages:
            results.append(
                Conversation(
                    type="individual",
                    name=resolver.resolve_display_name(contact_id),
                    identifier=contact_id,
                    handles=len(keys),
                    messages=messages,
                )
            )

    if include_groups:
        pattern = contains_pattern(query)
        groups = conn.execute(
            """
            SELECT ROWID, display_name, chat_identifier FROM chat
            WHERE display_name LIKE ? ESCAPE '\\' OR chat_identifier LIKE ? ESCAPE '\\'
            ORDER BY ROWID
            LIMIT ?
            """,
            (pattern, pattern, MAX_GROUP_MATCHES),
        ).fetchall()

        for group in groups:
            messages = fetch_group_messages(conn, resolver, group["ROWID"], threshold, limit)
            if messages:
                results.append(
                    Conversation(
                        type="group",
                        name=group["display_name"] or f"Group {group['ROWID']}",
                        identifier=f"{GROUP_PREFIX}{group['ROWID']}",
                        messages=messages,
                    )
                )

    return results


def search_contacts(conn: sqlite3.Connection, resolver: ContactResolver, query: str) -> Dict[str, Any]:
    """Handles matching query, plus address-book people matching it by name."""
    clauses = ["id LIKE ? ESCAPE '\\'"]
    params: List[Any] = [contains_pattern(query)]
    digits = phone_digits(query)
    if digits:
        clauses.append("id LIKE ? ESCAPE '\\'")
        params.append(contains_pattern(digits))

    rows = conn.execute(
        f"SELECT ROWID, id, service FROM handle WHERE {' OR '.join(clauses)} ORDER BY id LIMIT ?",
        [*params, MAX_CONTACT_HANDLES],
    ).fetchall()

    people = resolver.find_persons_by_name(query) if not looks_like_endpoint(query) else []

    return {
        "query": query,
        "contacts_found": len(rows),
        "contacts": [f"{row['id']} ({row['service']})" for row in rows],
        "address_book": [p.model_dump(exclude_none=True) for p in people],
    }


def individual_stats(conn: sqlite3.Connection, keys: HandleKeys, threshold: int) -> IndividualStats:
    row = conn.execute(
        f"""
        SELECT COUNT(*) as total_messages,
               COUNT(CASE WHEN m.is_from_me = 0 THEN 1 END) as received_messages,
               COUNT(CASE WHEN m.is_from_me = 1 THEN 1 END) as sent_messages,
               MIN(m.date) as first_date,
               MAX(m.date) as last_date
        FROM message m
        WHERE {keys.in_clause('m.handle_id')} AND m.date > ?
        """,
        [*keys.params, threshold],
    ).fetchone()

    return IndividualStats(
        total_messages=row["total_messages"],
        received_messages=row["received_messages"],
        sent_messages=row["sent_messages"],
        first_message=apple_to_iso(row["first_date"]),
        last_message=apple_to_iso(row["last_date"]),
    )


def participant_stats(
    conn: sqlite3.Connection, resolver: ContactResolver, chat_id: int, threshold: int
) -> List[ParticipantStats]:
    """Per-sender counts for a chat, most active first; ties keep handle-id order."""
    rows = conn.execute(
        """
        SELECT h.id as participant,
               COUNT(*) as message_count,
               COUNT(CASE WHEN m.is_from_me = 1 THEN 1 END) as sent_by_you,
               MIN(m.date) as first_date,
               MAX(m.date) as last_date
        FROM chat_message_join cmj
        JOIN message m ON cmj.message_id = m.ROWID
        LEFT JOIN handle h ON m.handle_id = h.ROWID
        WHERE cmj.chat_id = ? AND m.date > ?
        GROUP BY h.id
        ORDER BY h.id
        """,
        (chat_id, threshold),
    ).fetchall()

    stats = [
        ParticipantStats(
            participant=resolver.resolve_display_name(row["participant"]) if row["participant"] else LOCAL_USER_LABEL,
            messages=row["message_count"],
            sent_by_you=row["sent_by_you"],
            first_message=apple_to_iso(row["first_date"]),
            last_message=apple_to_iso(row["last_date"]),
        )
        for row in rows
    ]
    # sorted() is stable, so equal counts stay in grouping order
    return sorted(stats, key=lambda s: -s.messages)


def conversation_stats(
    conn: sqlite3.Connection, resolver: ContactResolver, identifier: str, days_back: int = 60
) -> Dict[str, Any]:
    threshold = apple_threshold(days_back)

    chat_id = parse_group_identifier(identifier)
    if chat_id is not None:
        participants = participant_stats(conn, resolver, chat_id, threshold)
        totals = GroupTotals(
            total_messages=sum(p.messages for p in participants),
            total_participants=len(participants),
            most_active=participants[0].participant if participants else "None",
        )
        return {
            "group": get_group_name(conn, chat_id),
            "type": "group",
            "period_days": days_back,
            "participants": [p.model_dump() for p in participants],
            "totals": totals.model_dump(),
        }

    keys = resolve_handle_keys(conn, resolver, identifier)
    return {
        "contact": resolver.resolve_display_name(identifier),
        "type": "individual",
        "handles": len(keys),
        "period_days": days_back,
        "stats": individual_stats(conn, keys, threshold).model_dump(),
    }


def _matches_any(text: str, keywords: Sequence[str]) -> bool:
    lowered = text.lower()
    return any(kw in lowered for kw in keywords)


def _received_rows(
    conn: sqlite3.Connection, identifier: str, resolver: ContactResolver, threshold: int
) -> Tuple[str, str, List[sqlite3.Row]]:
    """Conversation type, display name and newest-first received rows for identifier."""
    chat_id = parse_group_identifier(identifier)
    if chat_id is not None:
        rows = conn.execute(
            f"""
            SELECT m.date, m.text, m.attributedBody, h.id as sender
            FROM chat_message_join cmj
            JOIN message m ON cmj.message_id = m.ROWID
            LEFT JOIN handle h ON m.handle_id = h.ROWID
            WHERE cmj.chat_id = ? AND m.date > ? AND m.is_from_me = 0 AND {HAS_CONTENT_SQL}
            ORDER BY m.date DESC
            """,
            (chat_id, threshold),
        ).fetchall()
        return "group", get_group_name(conn, chat_id), rows

    keys = resolve_handle_keys(conn, resolver, identifier)
    rows = conn.execute(
        f"""
        SELECT m.date, m.text, m.attributedBody, NULL as sender
        FROM message m
        WHERE {keys.in_clause('m.handle_id')} AND m.date > ? AND m.is_from_me = 0 AND {HAS_CONTENT_SQL}
        ORDER BY m.date DESC
        """,
        [*keys.params, threshold],
    ).fetchall()
    return "individual", resolver.resolve_display_name(identifier), rows


def analyze_sentiment(
    conn: sqlite3.Connection,
    resolver: ContactResolver,
    identifier: str,
    keywords: Optional[Sequence[str]] = None,
    days_back: int = 60,
    group_by_date: bool = True,
) -> Dict[str, Any]:
    """Find received messages containing any keyword (default: hostile terms).

    Matching is a case-insensitive substring test on the message text, so
    "hate" also matches "whatever". Only received messages are considered.
    """
    custom = [kw.strip().lower() for kw in keywords or [] if kw and kw.strip()]
    search_keywords = custom or list(DEFAULT_HOSTILE_KEYWORDS)

    threshold = apple_threshold(days_back)
    conversation_type, name, rows = _received_rows(conn, identifier, resolver, threshold)

    matches = []
    for row in rows:
        text = row["text"] if row["text"] and row["text"].strip() else extract_plain_text(row["attributedBody"])
        if text and _matches_any(text, search_keywords):
            matches.append((row, text))

    if group_by_date:
        by_date: Dict[str, DailySentiment] = {}
        for row, text in matches:
            day = apple_to_datetime(row["date"]).date().isoformat()
            entry = by_date.setdefault(day, DailySentiment(date=day, count=0))
            entry.count += 1
            if len(entry.samples) < SAMPLES_PER_DAY:
                sample = text
                if conversation_type == "group":
                    sample = f"{resolver.resolve_display_name(row['sender'] or '')}: {text}"
                entry.samples.append(sample)
        results = {
            "analysis_type": "sentiment_by_date",
            "daily_breakdown": [d.model_dump() for d in by_date.values()],
        }
    else:
        messages = []
        for row, text in matches[:MAX_HOSTILE_MESSAGES]:
            message = ConversationMessage(date=apple_to_iso(row["date"]), text=text)
            if conversation_type == "group":
                message.sender = resolver.resolve_display_name(row["sender"] or "")
            messages.append(message)
        results = {
            "analysis_type": "all_hostile_messages",
            "messages": [m.model_dump(exclude_none=True) for m in messages],
        }

    keyword_info = {"keywords_searched": custom} if custom else {"keywords_used": "default_hostile"}
    return {
        "conversation": name,
        **keyword_info,
        "period_days": days_back,
        "type": conversation_type,
        "total_matches": len(matches),
        **results,
    }
