"""Render conversations as minimal text, compact JSON or a full JSON dump."""
import json
from datetime import datetime
from typing import Any, List, Optional

from mcp_imessage_history.models import Conversation, ConversationMessage, OutputFormat
from mcp_imessage_history.queries import LOCAL_USER_LABEL, SENT_MARKER

SEARCH_PREVIEW_MESSAGES = 3
SEARCH_COMPACT_MESSAGES = 10


def to_json(payload: Any) -> str:
    return json.dumps(payload, ensure_ascii=False)


def short_time(date: Optional[str]) -> str:
    """``2025-10-03 16:05:00`` -> ``Oct 3, 4:05 PM``."""
    if not date:
        return "?"
    try:
        dt = datetime.strptime(date, "%Y-%m-%d %H:%M:%S")
    except ValueError:
        return date
    hour = dt.hour % 12 or 12
    return f"{dt:%b} {dt.day}, {hour}:{dt:%M} {dt:%p}"


def _header(conversation: Conversation) -> str:
    if conversation.type == "group":
        return f"📱 {conversation.name} ({conversation.count} msgs)"
    return f"👤 {conversation.name} ({conversation.count} msgs, {conversation.handles} handles)"


def _message_line(conversation: Conversation, message: ConversationMessage) -> str:
    if conversation.type == "group":
        sender = message.sender
    else:
        # Local-user messages carry the sent marker set when the row was read
        sender = LOCAL_USER_LABEL if message.text.startswith(SENT_MARKER) else conversation.name
    return f"  {short_time(message.date)} {sender}: {message.text}"


def render_minimal(conversation: Conversation, max_messages: Optional[int] = None) -> str:
    messages = conversation.messages if max_messages is None else conversation.messages[:max_messages]
    lines = [_header(conversation)] + [_message_line(conversation, m) for m in messages]
    return "\n".join(lines)


def _messages_payload(messages: List[ConversationMessage]) -> List[dict]:
    return [m.model_dump(exclude_none=True) for m in messages]


def format_search_results(results: List[Conversation], output_format: OutputFormat, query: str) -> str:
    """Render search_and_read results; minimal previews the 3 newest messages."""
    if output_format == "minimal":
        return "\n\n".join(render_minimal(r, SEARCH_PREVIEW_MESSAGES) for r in results)

    if output_format == "compact":
        return to_json(
            {
                "query": query,
                "found": len(results),
                "conversations": [
                    {
                        "type": r.type,
                        "name": r.name,
                        "identifier": r.identifier,
                        "message_count": r.count,
                        "recent_messages": _messages_payload(r.messages[:SEARCH_COMPACT_MESSAGES]),
                    }
                    for r in results
                ],
            }
        )

    return to_json({"query": query, "results": [r.model_dump(exclude_none=True) for r in results]})


def format_conversation(conversation: Conversation, output_format: OutputFormat, days_back: int) -> str:
    """Render a single read_conversation result with every message."""
    if output_format == "minimal":
        return render_minimal(conversation)

    if output_format == "compact":
        return to_json(
            {
                "conversation": conversation.name,
                "type": conversation.type,
                "message_count": conversation.count,
                "period_days": days_back,
                "messages": _messages_payload(conversation.messages),
            }
        )

    return to_json(conversation.model_dump(exclude_none=True))
