"""Pytest configuration and shared fixtures."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Any, Callable

import pytest

from offline_mail_sync.cache import CacheStore
from offline_mail_sync.config import Settings
from offline_mail_sync.connectivity import ConnectivityMonitor
from offline_mail_sync.exceptions import NetworkUnavailableError, NotFoundError
from offline_mail_sync.models import (
    EmailAddress,
    HistoryPage,
    Message,
    PopulationLevel,
    Profile,
    SendEmailPayload,
    SendResult,
    Thread,
    ThreadPage,
)

OWNER = "me@example.com"

_QUERY_LABELS = {
    "in:inbox": "INBOX",
    "in:sent": "SENT",
    "is:starred": "STARRED",
    "is:unread": "UNREAD",
}


def build_thread(
    thread_id: str,
    *,
    labels: list[str] | None = None,
    senders: list[str] | None = None,
    body: str | None = None,
    subject: str = "Project update",
    age_minutes: int = 0,
) -> Thread:
    """Build a thread with one message per sender, newest last."""

    labels = list(labels if labels is not None else ["INBOX"])
    senders = senders or ["alice@example.com"]
    base = datetime(2025, 1, 1, 12, 0, tzinfo=timezone.utc) - timedelta(minutes=age_minutes)

    messages = [
        Message(
            id=f"{thread_id}-m{i}",
            thread_id=thread_id,
            sender=EmailAddress(name=sender.split("@")[0].title(), email=sender),
            to=[EmailAddress(email=OWNER)],
            subject=subject,
            snippet=f"snippet {i}",
            body=f"<p>{body}</p>" if body is not None else None,
            body_text=body,
            date=base + timedelta(minutes=i),
            labels=labels,
            is_unread="UNREAD" in labels,
        )
        for i, sender in enumerate(senders)
    ]
    last = messages[-1]
    return Thread(
        id=thread_id,
        subject=subject,
        snippet=last.snippet,
        messages=messages,
        last_date=last.date,
        labels=labels,
        is_unread="UNREAD" in labels,
        sender=last.sender,
        participants=[m.sender for m in messages],
        population=PopulationLevel.FULL if body is not None else PopulationLevel.METADATA,
    )


class FakeRemoteService:
    """In-memory remote mail service recording every call."""

    def __init__(self) -> None:
        self.threads: dict[str, Thread] = {}
        self.profile = Profile(email_address=OWNER, history_id="100")
        self.history: list[HistoryPage] = []
        self.history_error: Exception | None = None
        self.errors: dict[str, Exception] = {}
        self.offline = False
        self.calls: list[tuple[str, tuple[Any, ...]]] = []
        self.sent: list[SendEmailPayload] = []

    def add_thread(self, thread: Thread) -> Thread:
        self.threads[thread.id] = thread
        return thread

    def calls_to(self, name: str) -> list[tuple[Any, ...]]:
        return [args for method, args in self.calls if method == name]

    def _check(self, name: str, *args: Any) -> None:
        self.calls.append((name, args))
        if self.offline:
            raise NetworkUnavailableError("getaddrinfo failed")
        if name in self.errors:
            raise self.errors[name]

    def _copy(self, thread: Thread, metadata_only: bool) -> Thread:
        copy = thread.model_copy(deep=True)
        if metadata_only:
            for message in copy.messages:
                message.body = None
                message.body_text = None
            copy.population = PopulationLevel.METADATA
        else:
            copy.population = PopulationLevel.FULL
        return copy

    async def fetch_threads(
        self, query: str, max_results: int, page_token: str | None = None
    ) -> ThreadPage:
        self._check("fetch_threads", query, max_results)
        label = _QUERY_LABELS.get(query)
        if label is None and query.startswith("label:"):
            label = query[len("label:"):]
        matches = [t for t in self.threads.values() if label is None or label in t.labels]
        return ThreadPage(threads=[self._copy(t, True) for t in matches[:max_results]])

    async def fetch_thread(self, thread_id: str, *, metadata_only: bool = False) -> Thread | None:
        self._check("fetch_thread", thread_id, metadata_only)
        if thread_id not in self.threads:
            raise NotFoundError(f"thread {thread_id} not found")
        return self._copy(self.threads[thread_id], metadata_only)

    async def get_history(self, since: str) -> HistoryPage:
        self._check("get_history", since)
        if self.history_error is not None:
            error, self.history_error = self.history_error, None
            raise error
        if self.history:
            return self.history.pop(0)
        return HistoryPage(records=[], new_cursor=self.profile.history_id)

    def _relabel(self, thread_id: str, add: list[str], remove: list[str]) -> None:
        thread = self.threads.get(thread_id)
        if thread is None:
            return
        labels = [label for label in thread.labels if label not in remove]
        labels.extend(label for label in add if label not in labels)
        thread.labels = labels

    async def modify_labels(
        self, thread_id: str, add_label: str | None = None, remove_label: str | None = None
    ) -> None:
        self._check("modify_labels", thread_id, add_label, remove_label)
        self._relabel(thread_id, [add_label] if add_label else [], [remove_label] if remove_label else [])

    async def archive_thread(self, thread_id: str) -> None:
        self._check("archive_thread", thread_id)
        self._relabel(thread_id, [], ["INBOX"])

    async def mark_as_read(self, thread_id: str) -> None:
        self._check("mark_as_read", thread_id)
        self._relabel(thread_id, [], ["UNREAD"])

    async def send_email(self, payload: SendEmailPayload) -> SendResult:
        self._check("send_email", payload)
        self.sent.append(payload)
        return SendResult(id=f"sent-{len(self.sent)}", thread_id=payload.reply_to_thread_id or "new")

    async def get_profile(self) -> Profile:
        self._check("get_profile")
        return self.profile

    async def get_user_email(self) -> str:
        return self.profile.email_address


@pytest.fixture
def settings(tmp_path) -> Settings:
    """Settings pointing at a temporary cache database."""
    return Settings(
        _env_file=None,
        cache_db_path=tmp_path / "cache.sqlite3",
        account_email=OWNER,
        populate_delay_seconds=0,
        remote_timeout_seconds=1,
        log_level="DEBUG",
        debug=True,
    )


@pytest.fixture
def cache_store(settings: Settings) -> CacheStore:
    """An initialized cache store on a temporary database."""
    store = CacheStore(settings.cache_db_path, max_replay_attempts=settings.max_replay_attempts)
    store.initialize()
    return store


@pytest.fixture
def remote() -> FakeRemoteService:
    return FakeRemoteService()


@pytest.fixture
def connectivity() -> ConnectivityMonitor:
    return ConnectivityMonitor(online=True)


@pytest.fixture
def make_thread() -> Callable[..., Thread]:
    """Factory for threads with realistic messages."""
    return build_thread


@pytest.fixture
def sample_gmail_thread() -> dict:
    """Provide a Gmail API thread payload (format=full)."""
    return {
        "id": "thread789",
        "historyId": "4242",
        "messages": [
            {
                "id": "msg1",
                "threadId": "thread789",
                "labelIds": ["INBOX"],
                "snippet": "Are we still on for Friday?",
                "internalDate": "1735732800000",
                "payload": {
                    "mimeType": "multipart/alternative",
                    "headers": [
                        {"name": "Subject", "value": "Friday planning"},
                        {"name": "From", "value": "Alice Example <alice@example.com>"},
                        {"name": "To", "value": "me@example.com"},
                    ],
                    "parts": [
                        {
                            "mimeType": "text/plain",
                            "body": {"data": "QXJlIHdlIHN0aWxsIG9uIGZvciBGcmlkYXk_"},
                        },
                        {
                            "mimeType": "text/html",
                            "body": {"data": "PHA-QXJlIHdlIHN0aWxsIG9uPC9wPg"},
                        },
                    ],
                },
            },
            {
                "id": "msg2",
                "threadId": "thread789",
                "labelIds": ["INBOX", "UNREAD"],
                "snippet": "Yes, see attached agenda",
                "internalDate": "1735736400000",
                "payload": {
                    "mimeType": "multipart/mixed",
                    "headers": [
                        {"name": "Subject", "value": "Re: Friday planning"},
                        {"name": "From", "value": "me@example.com"},
                        {"name": "To", "value": "Alice Example <alice@example.com>"},
                        {"name": "Cc", "value": "bob@example.com, Carol <carol@example.com>"},
                    ],
                    "parts": [
                        {
                            "mimeType": "text/plain",
                            "body": {"data": "WWVz"},
                        },
                        {
                            "mimeType": "application/pdf",
                            "filename": "agenda.pdf",
                            "body": {"attachmentId": "att-1", "size": 2048},
                        },
                    ],
                },
            },
        ],
    }
