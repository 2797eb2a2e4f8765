"""Models for the offline queues, snoozes and cache reporting."""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class PendingActionType(str, Enum):
    """Mutations that can be replayed against the remote service."""

    ARCHIVE = "archive"
    LABEL = "label"
    MARK_READ = "mark_read"


class PendingActionStatus(str, Enum):
    """Replay status of a pending action."""

    QUEUED = "queued"
    APPLYING = "applying"
    SYNCED = "synced"
    FAILED = "failed"


class OutboxStatus(str, Enum):
    """Lifecycle of an outbound message: queued -> sending -> sent | failed."""

    QUEUED = "queued"
    SENDING = "sending"
    SENT = "sent"
    FAILED = "failed"


class PendingAction(BaseModel):
    """A mutation applied locally but not yet confirmed remotely."""

    id: int = Field(description="Queue position; replay order is ascending id")
    type: PendingActionType = Field(description="Mutation type")
    thread_id: str = Field(description="Target thread")
    payload: dict[str, Any] = Field(default_factory=dict, description="Action-specific data")
    status: PendingActionStatus = Field(default=PendingActionStatus.QUEUED)
    attempts: int = Field(default=0, ge=0, description="Failed replay attempts so far")
    last_error: str | None = Field(default=None, description="Error from the last failed replay")
    created_at: datetime = Field(default_factory=utcnow)

    def label_delta(self) -> tuple[list[str], list[str]]:
        """Return the (add, remove) label delta this action applies to a thread."""

        if self.type is PendingActionType.ARCHIVE:
            return [], ["INBOX"]
        if self.type is PendingActionType.MARK_READ:
            return [], ["UNREAD"]
        return _label_list(self.payload.get("add")), _label_list(self.payload.get("remove"))


def _label_list(value: Any) -> list[str]:
    if not value:
        return []
    if isinstance(value, str):
        return [value]
    return [str(label) for label in value]


class SendEmailPayload(BaseModel):
    """A complete send request, stored verbatim in the outbox."""

    to: str = Field(description="Comma-separated recipients")
    cc: str | None = Field(default=None, description="Comma-separated Cc recipients")
    bcc: str | None = Field(default=None, description="Comma-separated Bcc recipients")
    subject: str = Field(default="", description="Subject line")
    body_markdown: str = Field(default="", description="Body as written by the user")
    body_html: str | None = Field(default=None, description="Rendered HTML body, if any")
    reply_to_thread_id: str | None = Field(default=None, description="Thread being replied to")
    reply_to_message_id: str | None = Field(default=None, description="Message being replied to")
    signature: bool = Field(default=False, description="Whether to append the signature")

    def recipients(self) -> list[str]:
        out: list[str] = []
        for field in (self.to, self.cc, self.bcc):
            if field:
                out.extend(addr.strip() for addr in field.split(",") if addr.strip())
        return out


class OutboxItem(BaseModel):
    """An outbound message waiting for connectivity."""

    id: int
    payload: SendEmailPayload
    created_at: datetime = Field(default_factory=utcnow)
    status: OutboxStatus = Field(default=OutboxStatus.QUEUED)
    error: str | None = None
    sent_at: datetime | None = None
    attempts: int = Field(default=0, ge=0)


class SnoozeRecord(BaseModel):
    """A thread hidden from the inbox until ``snooze_until``."""

    thread_id: str
    snooze_until: datetime
    snoozed_at: datetime = Field(default_factory=utcnow)
    original_labels: list[str] = Field(default_factory=list)


class CacheStats(BaseModel):
    """Derived cache statistics; computed on demand, never persisted."""

    size_bytes: int = Field(description="Logical size of cached thread and message content")
    thread_count: int
    message_count: int
    last_synced_at: datetime | None = None
    pending_actions: int = 0
    outbox_count: int = 0
    db_file_bytes: int = Field(default=0, description="On-disk size of the database files")


class PruneResult(BaseModel):
    """Outcome of one eviction pass."""

    size_before: int
    size_after: int
    bodies_dropped: int = 0
    threads_deleted: int = 0


class ConnectivityStatus(BaseModel):
    """What the host shows about connectivity and queued work."""

    online: bool
    pending_actions: int
    outbox_count: int
