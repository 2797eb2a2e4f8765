"""Incremental change-log records.

Each record is a tagged variant discriminated by ``kind`` so that consumers
dispatch on type instead of probing optional fields.
"""

from __future__ import annotations

from typing import Annotated, Literal, Union

from pydantic import BaseModel, Field


class MessageAdded(BaseModel):
    kind: Literal["message_added"] = "message_added"
    message_id: str
    thread_id: str


class MessageDeleted(BaseModel):
    kind: Literal["message_deleted"] = "message_deleted"
    message_id: str
    thread_id: str


class LabelsAdded(BaseModel):
    kind: Literal["labels_added"] = "labels_added"
    message_id: str
    thread_id: str
    label_ids: list[str] = Field(default_factory=list)


class LabelsRemoved(BaseModel):
    kind: Literal["labels_removed"] = "labels_removed"
    message_id: str
    thread_id: str
    label_ids: list[str] = Field(default_factory=list)


HistoryRecord = Annotated[
    Union[MessageAdded, MessageDeleted, LabelsAdded, LabelsRemoved],
    Field(discriminator="kind"),
]


class HistoryPage(BaseModel):
    """All changes since a cursor, plus the cursor to store afterwards."""

    records: list[HistoryRecord] = Field(default_factory=list)
    new_cursor: str
