"""Remote mail service protocol."""

from typing import Protocol

from offline_mail_sync.models import (
    HistoryPage,
    Profile,
    SendEmailPayload,
    SendResult,
    Thread,
    ThreadPage,
)


class RemoteMailService(Protocol):
    """Abstract async interface the sync core calls on the mail provider.

    Implementations raise ``RemoteServiceError`` subclasses carrying a
    ``RemoteErrorKind`` so that callers never inspect error messages.
    """

    async def fetch_threads(
        self, query: str, max_results: int, page_token: str | None = None
    ) -> ThreadPage:
        """List threads matching a provider search query, with message metadata."""
        ...

    async def fetch_thread(self, thread_id: str, *, metadata_only: bool = False) -> Thread | None:
        """Fetch one thread; with bodies unless ``metadata_only``. Raises NotFoundError if gone."""
        ...

    async def get_history(self, since: str) -> HistoryPage:
        """Change records since a cursor. Raises CursorExpiredError when the cursor is too old."""
        ...

    async def modify_labels(
        self, thread_id: str, add_label: str | None = None, remove_label: str | None = None
    ) -> None:
        ...

    async def archive_thread(self, thread_id: str) -> None:
        ...

    async def mark_as_read(self, thread_id: str) -> None:
        ...

    async def send_email(self, payload: SendEmailPayload) -> SendResult:
        ...

    async def get_profile(self) -> Profile:
        """Account profile, including the current history cursor."""
        ...

    async def get_user_email(self) -> str:
        ...
