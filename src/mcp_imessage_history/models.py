from typing import List, Literal, Optional

from pydantic import BaseModel, Field, computed_field

# Use Literal type instead of enum for better MCP compatibility
OutputFormat = Literal["minimal", "compact", "full"]
ConversationType = Literal["individual", "group"]

GROUP_PREFIX = "group:"


class Handle(BaseModel):
    """One row of the Messages ``handle`` table."""

    rowid: int
    id: str = Field(description="Endpoint string: phone number or email")
    service: Optional[str] = None


class ContactMatch(BaseModel):
    """An address-book person matched by name, with one of their endpoints."""

    name: str
    phone: Optional[str] = None
    email: Optional[str] = None


class ConversationMessage(BaseModel):
    """A display copy of a message.

    Individual conversations mark local-user messages by prefixing the text
    with ``"> "``; group conversations carry the resolved sender instead.
    """

    date: Optional[str] = Field(None, description="UTC timestamp, YYYY-MM-DD HH:MM:SS")
    text: str
    sender: Optional[str] = None
    service: Optional[str] = None


class Conversation(BaseModel):
    """An individual (endpoint-based) or group (chat-based) message thread."""

    type: ConversationType
    name: str
    identifier: str = Field(description="Endpoint id, or group:<chat id> for groups")
    handles: Optional[int] = Field(None, description="Number of handle rows queried (individuals only)")
    messages: List[ConversationMessage] = Field(default_factory=list)

    @computed_field
    @property
    def count(self) -> int:
        return len(self.messages)


class IndividualStats(BaseModel):
    total_messages: int = 0
    received_messages: int = 0
    sent_messages: int = 0
    first_message: Optional[str] = None
    last_message: Optional[str] = None


class ParticipantStats(BaseModel):
    participant: str
    messages: int
    sent_by_you: int = 0
    first_message: Optional[str] = None
    last_message: Optional[str] = None


class GroupTotals(BaseModel):
    total_messages: int
    total_participants: int
    most_active: str


class DailySentiment(BaseModel):
    date: str
    count: int
    samples: List[str] = Field(default_factory=list, description="Up to 3 matching message fragments")
