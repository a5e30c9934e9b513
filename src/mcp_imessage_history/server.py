import logging
import os
from typing import List, Optional

from dotenv import load_dotenv
from mcp.server.fastmcp import FastMCP

from mcp_imessage_history import queries
from mcp_imessage_history.contacts import ContactResolver, ContactStore, NameCache
from mcp_imessage_history.db import get_db_connection
from mcp_imessage_history.errors import InvalidArgumentError
from mcp_imessage_history.formatting import format_conversation, format_search_results, to_json
from mcp_imessage_history.models import OutputFormat

load_dotenv()

# Configure logging to stderr; stdout carries the stdio protocol
logging.basicConfig(
    level=os.environ.get("IMESSAGE_LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s - %(levelname)s - %(message)s",
)

# Initialize FastMCP server
# The name "iMessage History" will be shown in MCP client UIs.
mcp = FastMCP("iMessage History")

# One name cache for the whole process, shared by every tool call
contacts = ContactResolver(cache=NameCache(), store=ContactStore())


def _require(name: str, value: Optional[str]) -> str:
    if value is None or not str(value).strip():
        raise InvalidArgumentError(f"{name} is required")
    return str(value).strip()


@mcp.tool()
async def search_and_read(
    query: str,
    include_groups: bool = True,
    limit: int = 15,
    days_back: int = 30,
    format: OutputFormat = "minimal",
) -> str:
    """Search contacts and group chats by name, phone or email and read their recent messages.

    Args:
        query: Name, phone number, email, or group name
        include_groups: Also search group chats by name (default True)
        limit: Maximum messages per conversation (default 15)
        days_back: Only include messages from the last N days (default 30)
        format: Output format - "minimal", "compact" or "full" (default "minimal")

    Returns:
        One block per matching conversation, as text or JSON depending on format
    """
    try:
        query = _require("query", query)
        async with get_db_connection() as conn:
            results = queries.search_conversations(
                conn,
                contacts,
                query=query,
                include_groups=include_groups,
                limit=limit,
                days_back=days_back,
            )
        if not results:
            return f"No conversations found for: {query}"
        return format_search_results(results, format, query)
    except Exception as e:
        logging.error(f"Error searching conversations with query '{query}': {e}")
        return f"Error: {e}"


@mcp.tool()
async def search_contacts(query: str) -> str:
    """Find message handles and address-book contacts by name, phone or email.

    Args:
        query: Name, phone number, or email (partial matches allowed)

    Returns:
        JSON with matching handles as "<id> (<service>)" and matching address-book people
    """
    try:
        query = _require("query", query)
        async with get_db_connection() as conn:
            return to_json(queries.search_contacts(conn, contacts, query))
    except Exception as e:
        logging.error(f"Error searching contacts with query '{query}': {e}")
        return f"Error: {e}"


@mcp.tool()
async def read_conversation(
    identifier: str,
    limit: int = 20,
    days_back: int = 60,
    include_sent: bool = True,
    format: OutputFormat = "minimal",
) -> str:
    """Read messages with one person or group, newest first.

    Args:
        identifier: Phone number, email, contact name, or "group:<id>" for a group chat
        limit: Maximum number of messages (default 20)
        days_back: Only include messages from the last N days (default 60)
        include_sent: Include messages you sent (default True)
        format: Output format - "minimal", "compact" or "full" (default "minimal")

    Returns:
        The conversation as text or JSON depending on format
    """
    try:
        identifier = _require("identifier", identifier)
        async with get_db_connection() as conn:
            conversation = queries.read_conversation(
                conn,
                contacts,
                identifier,
                limit=limit,
                days_back=days_back,
                include_sent=include_sent,
            )
        return format_conversation(conversation, format, days_back)
    except Exception as e:
        logging.error(f"Error reading conversation '{identifier}': {e}")
        return f"Error: {e}"


@mcp.tool()
async def get_conversation_stats(identifier: str, days_back: int = 60) -> str:
    """Count sent and received messages for a person, or per participant for a group.

    Args:
        identifier: Phone number, email, contact name, or "group:<id>" for a group chat
        days_back: Days to analyze (default 60)

    Returns:
        JSON with totals, first/last message times and, for groups, a ranked participant list
    """
    try:
        identifier = _require("identifier", identifier)
        async with get_db_connection() as conn:
            return to_json(queries.conversation_stats(conn, contacts, identifier, days_back=days_back))
    except Exception as e:
        logging.error(f"Error getting stats for '{identifier}': {e}")
        return f"Error: {e}"


@mcp.tool()
async def analyze_message_sentiment(
    identifier: str,
    keywords: Optional[List[str]] = None,
    days_back: int = 60,
    group_by_date: bool = True,
) -> str:
    """Find received messages containing hostile terms or custom keywords.

    Args:
        identifier: Phone number, email, contact name, or "group:<id>" for a group chat
        keywords: Custom keywords to look for (default: a built-in list of hostile terms)
        days_back: Days to analyze (default 60)
        group_by_date: Summarize matches per day with up to 3 samples (default True),
            otherwise list up to 50 matching messages

    Returns:
        JSON describing the matches
    """
    try:
        identifier = _require("identifier", identifier)
        async with get_db_connection() as conn:
            return to_json(
                queries.analyze_sentiment(
                    conn,
                    contacts,
                    identifier,
                    keywords=keywords,
                    days_back=days_back,
                    group_by_date=group_by_date,
                )
            )
    except Exception as e:
        logging.error(f"Error analyzing messages for '{identifier}': {e}")
        return f"Error: {e}"


def main():
    """Main entry point to run the MCP server."""
    logging.info("Starting iMessage History MCP server in stdio mode...")
    # The server communicates over standard input/output
    mcp.run(transport="stdio")


if __name__ == "__main__":
    main()
