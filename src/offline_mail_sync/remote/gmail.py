"""Gmail implementation of the remote mail service.

Notes:
    The Google API client is synchronous. Calls are wrapped with
    `asyncio.to_thread` so the sync engine can stay async. The underlying
    httplib2 transport is not thread-safe, so each worker thread builds its
    own service object from the shared credentials.
"""

from __future__ import annotations

import asyncio
import base64
import threading
from email.message import EmailMessage
from pathlib import Path
from typing import Any, Callable, TypeVar

import markdown
import structlog

from offline_mail_sync.config import Settings
from offline_mail_sync.exceptions import (
    AuthenticationError,
    ConfigurationError,
    CursorExpiredError,
    NetworkUnavailableError,
    NotFoundError,
    RemoteErrorKind,
    RemoteServiceError,
)
from offline_mail_sync.models import (
    HistoryPage,
    Profile,
    SendEmailPayload,
    SendResult,
    Thread,
    ThreadPage,
)
from offline_mail_sync.remote.parsing import history_records_from_gmail, thread_from_gmail

logger = structlog.get_logger()

T = TypeVar("T")

USER_ID = "me"

METADATA_HEADERS = ["Subject", "From", "To", "Cc", "Bcc", "Date", "Message-ID"]

HISTORY_TYPES = ["messageAdded", "messageDeleted", "labelAdded", "labelRemoved"]

SYSTEM_LABELS = frozenset(
    {"INBOX", "UNREAD", "STARRED", "IMPORTANT", "SENT", "DRAFT", "TRASH", "SPAM", "CHAT"}
)


def classify_error(exc: BaseException, *, history: bool = False) -> RemoteServiceError:
    """Map a Google client or transport exception to a structured remote error.

    Args:
        exc: The exception raised by the Google client.
        history: The failing call was a history request, where 404 and 410
            mean the start cursor is no longer valid.
    """

    if isinstance(exc, RemoteServiceError):
        return exc

    import httplib2
    from google.auth.exceptions import TransportError
    from googleapiclient.errors import HttpError

    if isinstance(exc, HttpError):
        status = getattr(exc.resp, "status", None)
        try:
            status = int(status) if status is not None else None
        except (TypeError, ValueError):
            status = None

        if history and status in (404, 410):
            return CursorExpiredError(str(exc))
        if status == 404:
            return NotFoundError(str(exc))
        return RemoteServiceError(str(exc), kind=RemoteErrorKind.OTHER)

    if isinstance(exc, (httplib2.ServerNotFoundError, TransportError, TimeoutError, OSError)):
        return NetworkUnavailableError(str(exc) or exc.__class__.__name__)

    return RemoteServiceError(str(exc), kind=RemoteErrorKind.OTHER)


class GmailRemoteService:
    """Gmail API client implementing ``RemoteMailService``.

    Handles OAuth2 authentication, label name resolution, history paging and
    MIME message construction for sends.
    """

    def __init__(self, settings: Settings | None = None) -> None:
        """Initialize the Gmail service.

        Args:
            settings: Application settings. If None, uses default settings.
        """
        from offline_mail_sync.config import get_settings

        self.settings = settings or get_settings()
        self._credentials: Any | None = None
        self._local = threading.local()
        self._label_ids: dict[str, str] = {}
        self._labels_lock = threading.Lock()
        self._user_email: str | None = self.settings.account_email
        logger.info("gmail_remote_initialized")

    @property
    def is_authenticated(self) -> bool:
        return self._credentials is not None

    async def authenticate(self) -> None:
        """Authenticate with Gmail API using OAuth2.

        Raises:
            ConfigurationError: If the credentials file is missing.
            AuthenticationError: If authentication fails.
        """

        if self._credentials is not None:
            return

        credentials_path = Path(self.settings.gmail_credentials_path)
        token_path = Path(self.settings.gmail_token_path)
        scope = self.settings.gmail_scope

        if not credentials_path.exists():
            raise ConfigurationError(
                f"Gmail credentials file not found: {credentials_path}. "
                "Create an OAuth client in Google Cloud and download it to this path."
            )

        logger.info(
            "gmail_authentication_started",
            credentials_path=str(credentials_path),
            token_path=str(token_path),
            scope=scope,
        )

        try:
            self._credentials = await asyncio.to_thread(
                self._load_credentials,
                credentials_path,
                token_path,
                scope,
            )
        except Exception as exc:  # noqa: BLE001
            logger.exception("gmail_authentication_failed", error=str(exc))
            raise AuthenticationError(str(exc)) from exc

        logger.info("gmail_authentication_completed")

    # ── Reads ──────────────────────────────────────────────

    async def fetch_threads(
        self, query: str, max_results: int, page_token: str | None = None
    ) -> ThreadPage:
        """List threads for a search query with message metadata (no bodies)."""

        logger.info("gmail_fetch_threads", query=query, max_results=max_results)
        return await self._call("fetch_threads", self._fetch_threads_sync, query, max_results, page_token)

    async def fetch_thread(self, thread_id: str, *, metadata_only: bool = False) -> Thread | None:
        logger.debug("gmail_fetch_thread", thread_id=thread_id, metadata_only=metadata_only)
        return await self._call("fetch_thread", self._fetch_thread_sync, thread_id, metadata_only)

    async def get_history(self, since: str) -> HistoryPage:
        return await self._call("get_history", self._get_history_sync, since, history=True)

    async def get_profile(self) -> Profile:
        profile = await self._call("get_profile", self._get_profile_sync)
        if profile.email_address and self._user_email is None:
            self._user_email = profile.email_address
        return profile

    async def get_user_email(self) -> str:
        if self._user_email is None:
            await self.get_profile()
        return self._user_email or ""

    # ── Mutations ──────────────────────────────────────────

    async def modify_labels(
        self, thread_id: str, add_label: str | None = None, remove_label: str | None = None
    ) -> None:
        logger.info("gmail_modify_labels", thread_id=thread_id, add=add_label, remove=remove_label)
        await self._call("modify_labels", self._modify_labels_sync, thread_id, add_label, remove_label)

    async def archive_thread(self, thread_id: str) -> None:
        logger.info("gmail_archive_thread", thread_id=thread_id)
        await self._call("archive_thread", self._modify_sync, thread_id, [], ["INBOX"])

    async def mark_as_read(self, thread_id: str) -> None:
        logger.info("gmail_mark_as_read", thread_id=thread_id)
        await self._call("mark_as_read", self._modify_sync, thread_id, [], ["UNREAD"])

    async def send_email(self, payload: SendEmailPayload) -> SendResult:
        logger.info("gmail_send_email", recipients=len(payload.recipients()))
        return await self._call("send_email", self._send_sync, payload)

    # ── Internals ──────────────────────────────────────────

    async def _call(
        self, operation: str, func: Callable[..., T], *args: Any, history: bool = False
    ) -> T:
        await self._ensure_authenticated()

        try:
            return await asyncio.to_thread(func, *args)
        except Exception as exc:  # noqa: BLE001
            error = classify_error(exc, history=history)
            if error.kind is RemoteErrorKind.OTHER:
                logger.exception("gmail_request_failed", operation=operation, error=str(exc))
            else:
                logger.warning(
                    "gmail_request_failed", operation=operation, kind=error.kind.value, error=str(exc)
                )
            if error is exc:
                raise
            raise error from exc

    async def _ensure_authenticated(self) -> None:
        if self._credentials is None:
            raise AuthenticationError(
                "Gmail service is not authenticated. Call await GmailRemoteService.authenticate() first."
            )

    def _load_credentials(self, credentials_path: Path, token_path: Path, scope: str) -> Any:
        # Imported lazily to keep import-time cost low and tests fast.
        from google.auth.transport.requests import Request
        from google.oauth2.credentials import Credentials
        from google_auth_oauthlib.flow import InstalledAppFlow

        creds: Credentials | None = None
        if token_path.exists():
            creds = Credentials.from_authorized_user_file(str(token_path), scopes=[scope])

        if creds is not None and creds.expired and creds.refresh_token:
            creds.refresh(Request())

        if creds is None or not creds.valid:
            flow = InstalledAppFlow.from_client_secrets_file(str(credentials_path), scopes=[scope])
            creds = flow.run_local_server(port=0)
            token_path.parent.mkdir(parents=True, exist_ok=True)
            token_path.write_text(creds.to_json(), encoding="utf-8")

        return creds

    def _service(self) -> Any:
        service = getattr(self._local, "service", None)
        if service is None:
            from googleapiclient.discovery import build

            # cache_discovery=False prevents writing discovery docs to disk.
            service = build("gmail", "v1", credentials=self._credentials, cache_discovery=False)
            self._local.service = service
        return service

    def _fetch_threads_sync(
        self, query: str, max_results: int, page_token: str | None
    ) -> ThreadPage:
        response = (
            self._service()
            .users()
            .threads()
            .list(userId=USER_ID, q=query or None, maxResults=max_results, pageToken=page_token)
            .execute()
        )

        threads: list[Thread] = []
        for item in response.get("threads", []) or []:
            thread_id = item.get("id")
            if not isinstance(thread_id, str) or not thread_id:
                continue
            try:
                thread = self._fetch_thread_sync(thread_id, True)
            except Exception as exc:  # noqa: BLE001
                if classify_error(exc).kind is RemoteErrorKind.NOT_FOUND:
                    continue
                raise
            if thread is not None:
                threads.append(thread)

        return ThreadPage(threads=threads, next_page_token=response.get("nextPageToken"))

    def _fetch_thread_sync(self, thread_id: str, metadata_only: bool) -> Thread | None:
        if metadata_only:
            request = (
                self._service()
                .users()
                .threads()
                .get(userId=USER_ID, id=thread_id, format="metadata", metadataHeaders=METADATA_HEADERS)
            )
        else:
            request = self._service().users().threads().get(userId=USER_ID, id=thread_id, format="full")
        return thread_from_gmail(request.execute(), include_body=not metadata_only)

    def _get_history_sync(self, since: str) -> HistoryPage:
        entries: list[dict[str, Any]] = []
        new_cursor = since
        page_token: str | None = None
        while True:
            response = (
                self._service()
                .users()
                .history()
                .list(
                    userId=USER_ID,
                    startHistoryId=since,
                    historyTypes=HISTORY_TYPES,
                    pageToken=page_token,
                )
                .execute()
            )
            entries.extend(response.get("history", []) or [])
            new_cursor = str(response.get("historyId") or new_cursor)
            page_token = response.get("nextPageToken")
            if page_token is None:
                break

        return HistoryPage(records=history_records_from_gmail(entries), new_cursor=new_cursor)

    def _get_profile_sync(self) -> Profile:
        response = self._service().users().getProfile(userId=USER_ID).execute()
        return Profile(
            email_address=str(response.get("emailAddress") or ""),
            history_id=str(response.get("historyId") or ""),
        )

    def _modify_labels_sync(
        self, thread_id: str, add_label: str | None, remove_label: str | None
    ) -> None:
        add_ids: list[str] = []
        remove_ids: list[str] = []
        if add_label:
            add_ids.append(self._resolve_label_id(add_label, create=True))
        if remove_label:
            label_id = self._resolve_label_id(remove_label, create=False)
            if label_id:
                remove_ids.append(label_id)

        if add_ids or remove_ids:
            self._modify_sync(thread_id, add_ids, remove_ids)

    def _modify_sync(self, thread_id: str, add_ids: list[str], remove_ids: list[str]) -> None:
        (
            self._service()
            .users()
            .threads()
            .modify(
                userId=USER_ID,
                id=thread_id,
                body={"addLabelIds": add_ids, "removeLabelIds": remove_ids},
            )
            .execute()
        )

    def _resolve_label_id(self, name: str, *, create: bool) -> str:
        if name in SYSTEM_LABELS or name.startswith("CATEGORY_"):
            return name

        with self._labels_lock:
            if not self._label_ids:
                response = self._service().users().labels().list(userId=USER_ID).execute()
                for label in response.get("labels", []) or []:
                    if label.get("name") and label.get("id"):
                        self._label_ids[label["name"]] = label["id"]

            if name in self._label_ids:
                return self._label_ids[name]
            if not create:
                return ""

            created = (
                self._service()
                .users()
                .labels()
                .create(
                    userId=USER_ID,
                    body={
                        "name": name,
                        "labelListVisibility": "labelShow",
                        "messageListVisibility": "show",
                    },
                )
                .execute()
            )
            self._label_ids[name] = created["id"]
            logger.info("gmail_label_created", name=name, label_id=created["id"])
            return created["id"]

    def _send_sync(self, payload: SendEmailPayload) -> SendResult:
        message = build_mime_message(payload, signature_html=self.settings.signature_html)
        raw = base64.urlsafe_b64encode(message.as_bytes()).decode("ascii")

        body: dict[str, Any] = {"raw": raw}
        if payload.reply_to_thread_id:
            body["threadId"] = payload.reply_to_thread_id

        response = self._service().users().messages().send(userId=USER_ID, body=body).execute()
        return SendResult(id=str(response.get("id") or ""), thread_id=response.get("threadId"))


def build_mime_message(payload: SendEmailPayload, *, signature_html: str = "") -> EmailMessage:
    """Build a multipart/alternative message from a send payload.

    The plain part is the Markdown as written; the HTML part is ``body_html``
    when given, otherwise the Markdown rendered to HTML.
    """

    message = EmailMessage()
    message["To"] = payload.to
    if payload.cc:
        message["Cc"] = payload.cc
    if payload.bcc:
        message["Bcc"] = payload.bcc
    message["Subject"] = payload.subject

    html = payload.body_html or markdown.markdown(
        payload.body_markdown, extensions=["extra", "sane_lists"]
    )
    if payload.signature and signature_html:
        html = f"{html}<br/><br/>{signature_html}"

    message.set_content(payload.body_markdown)
    message.add_alternative(html, subtype="html")
    return message
