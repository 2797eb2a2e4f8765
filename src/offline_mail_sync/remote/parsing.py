"""Helpers for parsing Gmail API payloads into internal models."""

from __future__ import annotations

import base64
from datetime import datetime, timezone
from email.utils import getaddresses, parsedate_to_datetime
from typing import Any

from offline_mail_sync.models import (
    UNREAD,
    Attachment,
    EmailAddress,
    HistoryRecord,
    LabelsAdded,
    LabelsRemoved,
    Message,
    MessageAdded,
    MessageDeleted,
    PopulationLevel,
    Thread,
)


def _header_map(message: dict[str, Any]) -> dict[str, str]:
    payload = message.get("payload") or {}
    headers = payload.get("headers") or []
    result: dict[str, str] = {}
    for h in headers:
        name = h.get("name")
        value = h.get("value")
        if isinstance(name, str) and isinstance(value, str):
            # Gmail can include duplicates; keep the first.
            result.setdefault(name.lower(), value)
    return result


def _parse_address_list(value: str | None) -> list[EmailAddress]:
    if not value:
        return []
    return [
        EmailAddress(name=name.strip() or addr, email=addr)
        for name, addr in getaddresses([value])
        if addr
    ]


def _parse_date(message: dict[str, Any], header_value: str | None) -> datetime | None:
    internal_date_raw = message.get("internalDate")
    try:
        if internal_date_raw is not None:
            return datetime.fromtimestamp(int(internal_date_raw) / 1000, tz=timezone.utc)
    except (TypeError, ValueError, OverflowError):
        pass

    if not header_value:
        return None
    try:
        return parsedate_to_datetime(header_value)
    except (TypeError, ValueError, OverflowError):
        return None


def _decode_part_data(data: str) -> str:
    padded = data + "=" * (-len(data) % 4)
    return base64.urlsafe_b64decode(padded).decode("utf-8", errors="replace")


def _walk_parts(part: dict[str, Any]):
    yield part
    for child in part.get("parts") or []:
        yield from _walk_parts(child)


def _extract_bodies(payload: dict[str, Any]) -> tuple[str | None, str | None]:
    html: str | None = None
    text: str | None = None
    for part in _walk_parts(payload):
        data = (part.get("body") or {}).get("data")
        if not data or part.get("filename"):
            continue
        mime_type = part.get("mimeType")
        if mime_type == "text/html" and html is None:
            html = _decode_part_data(data)
        elif mime_type == "text/plain" and text is None:
            text = _decode_part_data(data)
    return html, text


def _extract_attachments(payload: dict[str, Any]) -> list[Attachment]:
    attachments: list[Attachment] = []
    for part in _walk_parts(payload):
        body = part.get("body") or {}
        if part.get("filename") and body.get("attachmentId"):
            attachments.append(
                Attachment(
                    id=body["attachmentId"],
                    filename=part["filename"],
                    mime_type=part.get("mimeType") or "application/octet-stream",
                    size=int(body.get("size") or 0),
                )
            )
    return attachments


def message_from_gmail(message: dict[str, Any], *, include_body: bool = True) -> Message:
    """Convert a Gmail API message dict (format=full or metadata) to a Message.

    Args:
        message: Gmail API message dict.
        include_body: Decode text parts when the payload carries them.

    Returns:
        Message: Parsed message. Bodies stay None when not requested or absent.
    """

    hm = _header_map(message)
    payload = message.get("payload") or {}

    label_ids = message.get("labelIds") or []
    if not isinstance(label_ids, list):
        label_ids = []
    labels = [str(x) for x in label_ids if isinstance(x, str)]

    html: str | None = None
    text: str | None = None
    if include_body:
        html, text = _extract_bodies(payload)

    from_addrs = _parse_address_list(hm.get("from"))

    return Message(
        id=str(message.get("id") or ""),
        thread_id=str(message.get("threadId") or ""),
        sender=from_addrs[0] if from_addrs else EmailAddress(),
        to=_parse_address_list(hm.get("to")),
        cc=_parse_address_list(hm.get("cc")),
        bcc=_parse_address_list(hm.get("bcc")),
        subject=hm.get("subject") or "",
        snippet=str(message.get("snippet") or ""),
        body=html,
        body_text=text,
        date=_parse_date(message, hm.get("date")),
        labels=labels,
        is_unread=UNREAD in labels,
        attachments=_extract_attachments(payload),
    )


def thread_from_gmail(thread: dict[str, Any], *, include_body: bool = True) -> Thread | None:
    """Convert a Gmail API thread dict to a Thread; None when it has no messages."""

    messages = [message_from_gmail(m, include_body=include_body) for m in thread.get("messages") or []]
    if not messages:
        return None

    last = messages[-1]
    labels: list[str] = []
    for m in messages:
        for label in m.labels:
            if label not in labels:
                labels.append(label)

    seen: set[str] = set()
    participants: list[EmailAddress] = []
    for m in messages:
        for addr in (m.sender, *m.to, *m.cc):
            if addr.email and addr.email not in seen:
                seen.add(addr.email)
                participants.append(addr)

    return Thread(
        id=str(thread.get("id") or last.thread_id),
        subject=last.subject or messages[0].subject,
        snippet=last.snippet,
        messages=messages,
        last_date=last.date,
        labels=labels,
        is_unread=any(m.is_unread for m in messages),
        sender=last.sender,
        participants=participants,
        population=PopulationLevel.FULL if include_body else PopulationLevel.METADATA,
    )


def history_records_from_gmail(entries: list[dict[str, Any]]) -> list[HistoryRecord]:
    """Flatten Gmail history entries into typed records, preserving order."""

    records: list[HistoryRecord] = []
    for entry in entries:
        for item in entry.get("messagesAdded") or []:
            msg = item.get("message") or {}
            if msg.get("threadId"):
                records.append(MessageAdded(message_id=msg.get("id", ""), thread_id=msg["threadId"]))
        for item in entry.get("messagesDeleted") or []:
            msg = item.get("message") or {}
            if msg.get("threadId"):
                records.append(MessageDeleted(message_id=msg.get("id", ""), thread_id=msg["threadId"]))
        for item in entry.get("labelsAdded") or []:
            msg = item.get("message") or {}
            if msg.get("threadId"):
                records.append(
                    LabelsAdded(
                        message_id=msg.get("id", ""),
                        thread_id=msg["threadId"],
                        label_ids=list(item.get("labelIds") or []),
                    )
                )
        for item in entry.get("labelsRemoved") or []:
            msg = item.get("message") or {}
            if msg.get("threadId"):
                records.append(
                    LabelsRemoved(
                        message_id=msg.get("id", ""),
                        thread_id=msg["threadId"],
                        label_ids=list(item.get("labelIds") or []),
                    )
                )
    return records
