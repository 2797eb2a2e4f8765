"""User-initiated mail mutations with offline queuing.

Every mutation follows one pattern: write the cache first so the UI sees the
change immediately, then try the remote once with a short timeout. When the
remote is unreachable the mutation lands in a durable queue and is replayed by
``flush_queues`` once connectivity returns. Errors that are not about
connectivity propagate to the caller.

Label mutations record their queue row before the remote call and only mark
it synced once the remote confirms, so a sync landing mid-call keeps the
local change.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import datetime, timedelta
from email.utils import getaddresses
from itertools import zip_longest
from typing import Any, Awaitable, Callable

import structlog

from offline_mail_sync.cache import CacheStore
from offline_mail_sync.config import Settings
from offline_mail_sync.connectivity import ConnectivityMonitor
from offline_mail_sync.events import EventEmitter
from offline_mail_sync.exceptions import is_network_error
from offline_mail_sync.models import (
    INBOX,
    SNOOZED,
    UNREAD,
    ConnectivityStatus,
    EmailAddress,
    OutboxItem,
    OutboxStatus,
    PendingAction,
    PendingActionStatus,
    PendingActionType,
    SendEmailPayload,
    SendResult,
)
from offline_mail_sync.remote import RemoteMailService

logger = structlog.get_logger()

# Contacts we write to rank above contacts we merely receive mail from.
SENT_CONTACT_BOOST = 3


@dataclass(frozen=True)
class SendOutcome:
    """Result of a send: either delivered (``result``) or parked in the outbox."""

    queued: bool
    outbox_id: int | None = None
    result: SendResult | None = None


@dataclass
class FlushResult:
    """Per-pass counters for a reconnect flush."""

    actions_synced: int = 0
    actions_failed: int = 0
    outbox_sent: int = 0
    outbox_failed: int = 0
    interrupted: bool = False
    skipped: bool = False


def default_snooze_until(days: int, now: datetime | None = None) -> datetime:
    """Wake-up time ``days`` from now at 08:00 local time."""

    base = (now or datetime.now().astimezone()) + timedelta(days=days)
    return base.replace(hour=8, minute=0, second=0, microsecond=0)


class MailActions:
    """Optimistic mutation API shared by the host and the sync engine."""

    def __init__(
        self,
        cache: CacheStore,
        remote: RemoteMailService,
        connectivity: ConnectivityMonitor,
        settings: Settings | None = None,
        events: EventEmitter | None = None,
    ) -> None:
        from offline_mail_sync.config import get_settings

        self.cache = cache
        self.remote = remote
        self.connectivity = connectivity
        self.settings = settings or get_settings()
        self.events = events or EventEmitter()
        self._flushing = False

    # ── Core pattern ───────────────────────────────────────

    async def _apply(
        self,
        local: Callable[[], Any],
        remote: Callable[[], Awaitable[Any]],
        queue: Callable[[], Any],
    ) -> tuple[bool, Any]:
        """Apply locally, attempt remotely, queue on network failure.

        Returns:
            ``(True, remote_result)`` when the remote confirmed the change, or
            ``(False, queue_result)`` when it was queued for replay.
        """

        local()

        if not self.connectivity.is_online:
            return False, queue()

        try:
            result = await asyncio.wait_for(remote(), timeout=self.settings.remote_timeout_seconds)
        except Exception as exc:
            if not is_network_error(exc):
                raise
            logger.warning("mail_action_network_failure", error=str(exc) or type(exc).__name__)
            self.connectivity.report_offline()
            return False, queue()

        self.connectivity.report_online()
        return True, result

    async def _apply_action(
        self,
        local: Callable[[], Any],
        remote: Callable[[], Awaitable[Any]],
        action_type: PendingActionType,
        thread_id: str,
        payload: dict[str, Any] | None = None,
        *,
        keep_on_error: bool = False,
    ) -> bool:
        """Apply a label mutation with its intent recorded before the remote call.

        The action row stays ``applying`` while the remote call is in flight, so
        a sync that lands meanwhile re-applies the delta instead of reverting
        it. With ``keep_on_error`` a rejected call is kept as a failed action
        for replay instead of propagating.

        Returns True when the remote confirmed the change.
        """

        local()

        if not self.connectivity.is_online:
            self.cache.enqueue_pending_action(action_type, thread_id, payload)
            return False

        action_id = self.cache.enqueue_pending_action(
            action_type, thread_id, payload, status=PendingActionStatus.APPLYING
        )
        try:
            await asyncio.wait_for(remote(), timeout=self.settings.remote_timeout_seconds)
        except asyncio.CancelledError:
            self.cache.requeue_action(action_id)
            raise
        except Exception as exc:
            if is_network_error(exc):
                logger.warning("mail_action_network_failure", error=str(exc) or type(exc).__name__)
                self.connectivity.report_offline()
                self.cache.requeue_action(action_id)
                return False
            if not keep_on_error:
                self.cache.delete_pending_action(action_id)
                raise
            logger.warning(
                "mail_action_rejected_kept", action_id=action_id, thread_id=thread_id, error=str(exc)
            )
            self.cache.mark_action_failed(action_id, str(exc))
            return False

        self.cache.mark_action_synced(action_id)
        self.connectivity.report_online()
        return True

    async def _remote_labels(self, thread_id: str, add: list[str], remove: list[str]) -> None:
        for add_label, remove_label in zip_longest(add, remove):
            await self.remote.modify_labels(thread_id, add_label, remove_label)

    # ── Label mutations ────────────────────────────────────

    async def archive_thread(self, thread_id: str) -> bool:
        """Archive a thread. Returns False when the change was queued."""

        return await self._apply_action(
            lambda: self.cache.update_thread_labels(thread_id, [], [INBOX]),
            lambda: self.remote.archive_thread(thread_id),
            PendingActionType.ARCHIVE,
            thread_id,
        )

    async def mark_as_read(self, thread_id: str) -> bool:
        return await self._apply_action(
            lambda: self.cache.update_thread_labels(thread_id, [], [UNREAD]),
            lambda: self.remote.mark_as_read(thread_id),
            PendingActionType.MARK_READ,
            thread_id,
        )

    async def modify_labels(
        self, thread_id: str, add_label: str | None = None, remove_label: str | None = None
    ) -> bool:
        return await self.apply_labels(
            thread_id,
            [add_label] if add_label else [],
            [remove_label] if remove_label else [],
        )

    async def apply_labels(
        self, thread_id: str, add: list[str], remove: list[str], *, keep_on_error: bool = False
    ) -> bool:
        """Apply a multi-label delta as one queued action."""

        return await self._apply_action(
            lambda: self.cache.update_thread_labels(thread_id, add, remove),
            lambda: self._remote_labels(thread_id, add, remove),
            PendingActionType.LABEL,
            thread_id,
            {"add": add, "remove": remove},
            keep_on_error=keep_on_error,
        )

    async def restore_to_inbox(self, thread_id: str, *, keep_on_error: bool = False) -> bool:
        return await self.apply_labels(thread_id, [INBOX, UNREAD], [], keep_on_error=keep_on_error)

    # ── Snoozes ────────────────────────────────────────────

    async def snooze_thread(self, thread_id: str, until: datetime) -> datetime:
        """Hide a thread from the inbox until ``until``."""

        thread = self.cache.get_thread(thread_id)
        original_labels = list(thread.labels) if thread is not None else []

        def local() -> None:
            self.cache.snooze_thread(thread_id, until, original_labels)
            self.cache.update_thread_labels(thread_id, [SNOOZED], [INBOX])

        await self._apply_action(
            local,
            lambda: self.remote.modify_labels(thread_id, SNOOZED, INBOX),
            PendingActionType.LABEL,
            thread_id,
            {"add": [SNOOZED], "remove": [INBOX]},
        )
        logger.info("thread_snoozed", thread_id=thread_id, until=until.isoformat())
        return until

    async def cancel_snooze(self, thread_id: str) -> bool:
        """Cancel a snooze and put back the labels the thread had before it.

        Returns False when the thread was not snoozed.
        """

        record = self.cache.get_snoozed_thread(thread_id)
        if record is None:
            return False

        add = [INBOX]
        remove = [SNOOZED]
        thread = self.cache.get_thread(thread_id)
        if thread is not None and record.original_labels:
            current = thread.labels
            add = [label for label in record.original_labels if label not in current]
            remove = [label for label in current if label not in record.original_labels]

        def local() -> None:
            self.cache.cancel_snooze(thread_id)
            self.cache.update_thread_labels(thread_id, add, remove)

        await self._apply_action(
            local,
            lambda: self._remote_labels(thread_id, add, remove),
            PendingActionType.LABEL,
            thread_id,
            {"add": add, "remove": remove},
        )
        logger.info("thread_snooze_cancelled", thread_id=thread_id)
        return True

    # ── Sending ────────────────────────────────────────────

    async def send_email(self, payload: SendEmailPayload) -> SendOutcome:
        """Send now, or park the message in the outbox when the network is down."""

        sent, value = await self._apply(
            lambda: None,
            lambda: self.remote.send_email(payload),
            lambda: self.cache.enqueue_outbox(payload),
        )
        if not sent:
            logger.info("send_email_queued", outbox_id=value)
            return SendOutcome(queued=True, outbox_id=value)

        self._record_recipients(payload)
        return SendOutcome(queued=False, result=value)

    async def retry_outbox_item(self, item_id: int) -> SendOutcome | None:
        """Manually retry one outbox item, regardless of its attempt count.

        Returns None when the item does not exist or was already sent.
        """

        item = self.cache.get_outbox_item(item_id)
        if item is None or item.status is OutboxStatus.SENT:
            return None

        result = await self._send_outbox_item(item, raise_errors=True)
        if result is None:
            return SendOutcome(queued=True, outbox_id=item_id)
        return SendOutcome(queued=False, outbox_id=item_id, result=result)

    def cancel_outbox_item(self, item_id: int) -> None:
        self.cache.cancel_outbox_item(item_id)
        logger.info("outbox_item_cancelled", item_id=item_id)

    def requeue_action(self, action_id: int) -> None:
        self.cache.requeue_action(action_id)
        logger.info("pending_action_requeued", action_id=action_id)

    # ── Status ─────────────────────────────────────────────

    def get_status(self) -> ConnectivityStatus:
        return ConnectivityStatus(
            online=self.connectivity.is_online,
            pending_actions=self.cache.get_pending_action_count(),
            outbox_count=self.cache.get_outbox_count(),
        )

    # ── Reconnect flush ────────────────────────────────────

    async def flush_queues(self) -> FlushResult:
        """Replay pending actions, then the outbox, one item at a time.

        A non-network failure marks only that item failed. A network failure
        ends the pass and leaves the remaining items queued.
        """

        result = FlushResult()
        if self._flushing:
            result.skipped = True
            return result

        self._flushing = True
        try:
            actions = self.cache.get_pending_actions()
            outbox = self.cache.get_replayable_outbox_items()
            if not actions and not outbox:
                return result

            logger.info("flush_started", pending_actions=len(actions), outbox_items=len(outbox))

            for queued_action in actions:
                if not self.connectivity.is_online:
                    result.interrupted = True
                    break
                # The queue may have changed while earlier items were in flight.
                action = self.cache.get_pending_action(queued_action.id)
                if action is None or not self.cache.is_action_replayable(action):
                    logger.info("flush_action_skipped", action_id=queued_action.id)
                    continue
                try:
                    await asyncio.wait_for(
                        self._replay(action), timeout=self.settings.remote_timeout_seconds
                    )
                except Exception as exc:
                    if is_network_error(exc):
                        logger.warning("flush_interrupted_offline", action_id=action.id, error=str(exc))
                        self.connectivity.report_offline()
                        result.interrupted = True
                        break
                    logger.error(
                        "flush_action_failed", action_id=action.id, type=action.type.value, error=str(exc)
                    )
                    self.cache.mark_action_failed(action.id, str(exc))
                    result.actions_failed += 1
                else:
                    self.cache.mark_action_synced(action.id)
                    result.actions_synced += 1

            if not result.interrupted:
                for queued_item in outbox:
                    if not self.connectivity.is_online:
                        result.interrupted = True
                        break
                    item = self.cache.get_outbox_item(queued_item.id)
                    if item is None or item.status not in (OutboxStatus.QUEUED, OutboxStatus.FAILED):
                        logger.info("flush_outbox_item_skipped", item_id=queued_item.id)
                        continue
                    try:
                        sent = await self._send_outbox_item(item, raise_errors=False)
                    except Exception as exc:  # noqa: BLE001
                        logger.exception("flush_outbox_item_failed", item_id=item.id, error=str(exc))
                        result.outbox_failed += 1
                        continue
                    if sent is None:
                        if not self.connectivity.is_online:
                            result.interrupted = True
                            break
                        result.outbox_failed += 1
                    else:
                        result.outbox_sent += 1

            logger.info(
                "flush_completed",
                actions_synced=result.actions_synced,
                actions_failed=result.actions_failed,
                outbox_sent=result.outbox_sent,
                outbox_failed=result.outbox_failed,
                interrupted=result.interrupted,
            )
            return result
        finally:
            self._flushing = False

    async def _replay(self, action: PendingAction) -> None:
        if action.type is PendingActionType.ARCHIVE:
            await self.remote.archive_thread(action.thread_id)
        elif action.type is PendingActionType.MARK_READ:
            await self.remote.mark_as_read(action.thread_id)
        else:
            add, remove = action.label_delta()
            await self._remote_labels(action.thread_id, add, remove)

    async def _send_outbox_item(self, item: OutboxItem, *, raise_errors: bool) -> SendResult | None:
        """Drive one outbox item through sending to sent or failed.

        Returns the send result, or None when the item did not go out. Network
        failures put the item back in the queue and report offline.
        """

        self.cache.mark_outbox_sending(item.id)
        try:
            result = await asyncio.wait_for(
                self.remote.send_email(item.payload), timeout=self.settings.remote_timeout_seconds
            )
        except Exception as exc:
            if is_network_error(exc):
                logger.warning("outbox_send_offline", item_id=item.id, error=str(exc))
                self.cache.requeue_outbox_item(item.id)
                self.connectivity.report_offline()
                return None

            logger.error("outbox_send_failed", item_id=item.id, error=str(exc))
            self.cache.mark_outbox_failed(item.id, str(exc))
            if raise_errors:
                raise
            return None

        self.cache.mark_outbox_sent(item.id)
        self.connectivity.report_online()
        self._record_recipients(item.payload)

        recipients = item.payload.recipients()
        logger.info("outbox_item_sent", item_id=item.id)
        self.events.emit("outbox_sent", item.id, recipients[0] if recipients else "")
        return result

    def _record_recipients(self, payload: SendEmailPayload) -> None:
        self.cache.record_contacts(
            [EmailAddress(name=name, email=addr) for name, addr in getaddresses(payload.recipients()) if addr],
            frequency_boost=SENT_CONTACT_BOOST,
        )
