"""Data models for Offline Mail Sync.

This module contains Pydantic models for data validation and serialization.
"""

from offline_mail_sync.models.history import (
    HistoryPage,
    HistoryRecord,
    LabelsAdded,
    LabelsRemoved,
    MessageAdded,
    MessageDeleted,
)
from offline_mail_sync.models.mail import (
    DRAFT,
    INBOX,
    SENT,
    SNOOZED,
    SPAM,
    STARRED,
    TRASH,
    UNREAD,
    Attachment,
    EmailAddress,
    Message,
    NudgeType,
    PopulationLevel,
    Profile,
    SendResult,
    Thread,
    ThreadPage,
)
from offline_mail_sync.models.queue import (
    CacheStats,
    ConnectivityStatus,
    OutboxItem,
    OutboxStatus,
    PendingAction,
    PendingActionStatus,
    PendingActionType,
    PruneResult,
    SendEmailPayload,
    SnoozeRecord,
)

__all__ = [
    "DRAFT",
    "INBOX",
    "SENT",
    "SNOOZED",
    "SPAM",
    "STARRED",
    "TRASH",
    "UNREAD",
    "Attachment",
    "CacheStats",
    "ConnectivityStatus",
    "EmailAddress",
    "HistoryPage",
    "HistoryRecord",
    "LabelsAdded",
    "LabelsRemoved",
    "Message",
    "MessageAdded",
    "MessageDeleted",
    "NudgeType",
    "OutboxItem",
    "OutboxStatus",
    "PendingAction",
    "PendingActionStatus",
    "PendingActionType",
    "PopulationLevel",
    "Profile",
    "PruneResult",
    "SendEmailPayload",
    "SendResult",
    "SnoozeRecord",
    "Thread",
    "ThreadPage",
]
