"""Thread and message models mirrored in the local cache."""

from __future__ import annotations

from datetime import datetime
from enum import Enum

from pydantic import BaseModel, Field

INBOX = "INBOX"
UNREAD = "UNREAD"
SNOOZED = "SNOOZED"
STARRED = "STARRED"
SENT = "SENT"
DRAFT = "DRAFT"
TRASH = "TRASH"
SPAM = "SPAM"


class NudgeType(str, Enum):
    """Why the provider re-surfaced a thread without new mail."""

    NONE = "none"
    FOLLOW_UP = "follow_up"
    REPLY = "reply"


class PopulationLevel(str, Enum):
    """How much of a thread the cache holds."""

    METADATA = "metadata"
    FULL = "full"


class EmailAddress(BaseModel):
    """A display name and address pair."""

    name: str = Field(default="", description="Display name")
    email: str = Field(default="", description="Email address")


class Attachment(BaseModel):
    """Attachment metadata; content is never cached."""

    id: str = Field(description="Provider attachment ID")
    filename: str = Field(default="", description="File name")
    mime_type: str = Field(default="application/octet-stream", description="MIME type")
    size: int = Field(default=0, ge=0, description="Size in bytes")


class Message(BaseModel):
    """A single message. ``body``/``body_text`` are None until fetched in full."""

    id: str = Field(description="Provider message ID")
    thread_id: str = Field(description="ID of the thread this message belongs to")
    sender: EmailAddress = Field(default_factory=EmailAddress, description="From address")
    to: list[EmailAddress] = Field(default_factory=list, description="To addresses")
    cc: list[EmailAddress] = Field(default_factory=list, description="Cc addresses")
    bcc: list[EmailAddress] = Field(default_factory=list, description="Bcc addresses")
    subject: str = Field(default="", description="Subject header")
    snippet: str = Field(default="", description="Short preview text")
    body: str | None = Field(default=None, description="HTML body")
    body_text: str | None = Field(default=None, description="Plain text body")
    date: datetime | None = Field(default=None, description="Message date")
    labels: list[str] = Field(default_factory=list, description="Label IDs")
    is_unread: bool = Field(default=False, description="Whether the message is unread")
    attachments: list[Attachment] = Field(default_factory=list, description="Attachment metadata")

    @property
    def has_body(self) -> bool:
        return bool(self.body) or bool(self.body_text)

    @property
    def has_attachments(self) -> bool:
        return bool(self.attachments)


class Thread(BaseModel):
    """A conversation as the UI sees it."""

    id: str = Field(description="Provider thread ID")
    subject: str = Field(default="", description="Subject of the thread")
    snippet: str = Field(default="", description="Preview of the latest message")
    messages: list[Message] = Field(default_factory=list, description="Messages, oldest first")
    last_date: datetime | None = Field(default=None, description="Date of the latest message")
    labels: list[str] = Field(default_factory=list, description="Thread label IDs")
    is_unread: bool = Field(default=False, description="Whether any message is unread")
    nudge_type: NudgeType = Field(default=NudgeType.NONE, description="Provider nudge marker")
    sender: EmailAddress = Field(
        default_factory=EmailAddress, description="Sender of the most recent message"
    )
    participants: list[EmailAddress] = Field(default_factory=list, description="Everyone involved")
    population: PopulationLevel = Field(
        default=PopulationLevel.METADATA, description="Whether message bodies are present"
    )

    @property
    def last_message(self) -> Message | None:
        return self.messages[-1] if self.messages else None

    @property
    def has_bodies(self) -> bool:
        return any(m.has_body for m in self.messages)

    def has_label(self, label: str) -> bool:
        return label in self.labels


class ThreadPage(BaseModel):
    """One page of a thread listing."""

    threads: list[Thread] = Field(default_factory=list)
    next_page_token: str | None = None


class Profile(BaseModel):
    """Account profile as reported by the remote service."""

    email_address: str = Field(default="", description="Account owner address")
    history_id: str = Field(description="Current history cursor")


class SendResult(BaseModel):
    """Identifiers of a message accepted by the remote service."""

    id: str
    thread_id: str | None = None
