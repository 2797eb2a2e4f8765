"""Background synchronization between the remote mail service and the cache.

The engine pulls remote changes into the cache on a fixed cadence, detects
provider nudges, wakes snoozed threads, restores archived threads that got a
new external reply and, in its spare time, fills in message bodies for threads
only known by their metadata.

Events (on ``SyncEngine.events``):
    threads_updated(source): the cached thread list changed.
    thread_updated(thread): one thread was refreshed from the remote.
    notification(title, body): something the user should be told about.
    outbox_sent(item_id, to): a queued message went out.
    sync_error(error): a sync cycle failed for a reason other than connectivity.
"""

from __future__ import annotations

import asyncio
from datetime import datetime, timezone
from enum import Enum

import structlog

from offline_mail_sync.actions import MailActions
from offline_mail_sync.cache import CacheStore
from offline_mail_sync.config import Settings
from offline_mail_sync.connectivity import ConnectivityMonitor
from offline_mail_sync.events import EventEmitter
from offline_mail_sync.exceptions import (
    CacheStoreError,
    CursorExpiredError,
    NotFoundError,
    is_network_error,
)
from offline_mail_sync.models import (
    INBOX,
    SNOOZED,
    SPAM,
    TRASH,
    UNREAD,
    LabelsAdded,
    LabelsRemoved,
    MessageAdded,
    NudgeType,
    PopulationLevel,
    Thread,
)
from offline_mail_sync.remote import RemoteMailService
from offline_mail_sync.utils import chunked

logger = structlog.get_logger()

# Background population pauses once the cache reaches this share of its budget.
POPULATE_HIGH_WATER = 0.95


class EngineState(str, Enum):
    """Lifecycle of a sync engine."""

    STOPPED = "stopped"
    STARTING = "starting"
    IDLE = "idle"
    SYNCING = "syncing"


class WakeReason(str, Enum):
    EXPIRED = "expired"
    NEW_REPLY = "new_reply"


class SyncEngine:
    """Keeps one account's cache in step with the remote mail service.

    All state lives on the instance, so several engines (one per account) can
    run side by side in the same event loop.
    """

    def __init__(
        self,
        cache: CacheStore,
        remote: RemoteMailService,
        connectivity: ConnectivityMonitor,
        settings: Settings | None = None,
        actions: MailActions | None = None,
    ) -> None:
        """Create an engine.

        Args:
            cache: Local cache store.
            remote: Remote mail service.
            connectivity: Shared connectivity signal.
            settings: Application settings. If None, uses default settings.
            actions: Mutation helper to share with the host. Built on demand.
        """
        from offline_mail_sync.config import get_settings

        self.cache = cache
        self.remote = remote
        self.connectivity = connectivity
        self.settings = settings or get_settings()
        if actions is None:
            self.events = EventEmitter()
            actions = MailActions(cache, remote, connectivity, self.settings, events=self.events)
        else:
            self.events = actions.events
        self.actions = actions

        self.last_error: str | None = None
        self._state = EngineState.STOPPED
        self._is_syncing = False
        self._generation = 0
        self._stop_event = asyncio.Event()
        self._tasks: list[asyncio.Task[None]] = []
        self._user_email: str | None = (self.settings.account_email or "").lower() or None

    @property
    def state(self) -> EngineState:
        return self._state

    @property
    def is_syncing(self) -> bool:
        return self._is_syncing

    # ── Lifecycle ──────────────────────────────────────────

    async def start(self) -> None:
        """Start syncing. A second call while running is a no-op."""

        if self._state is not EngineState.STOPPED:
            return

        self._state = EngineState.STARTING
        self._generation += 1
        generation = self._generation
        self._stop_event = asyncio.Event()
        self.connectivity.on("online", self._on_online)
        logger.info("sync_engine_starting", online=self.connectivity.is_online)

        # Snoozes that expired while the engine was not running.
        await self.check_snoozes()
        if self._stopped_since(generation):
            return

        await self.sync()
        if self._stopped_since(generation):
            return

        self._state = EngineState.IDLE
        self._tasks = [
            asyncio.create_task(self._poll_loop()),
            asyncio.create_task(self._populate_loop()),
        ]
        logger.info(
            "sync_engine_started",
            sync_interval_seconds=self.settings.sync_interval_seconds,
            populate_interval_seconds=self.settings.populate_interval_seconds,
        )

    def stop(self) -> None:
        """Stop scheduling work. Safe to call at any point.

        A cycle that is already running finishes its current remote call and
        then drops its results.
        """

        if self._state is EngineState.STOPPED:
            return

        self._state = EngineState.STOPPED
        self._generation += 1
        self._stop_event.set()
        self.connectivity.off("online", self._on_online)
        logger.info("sync_engine_stopped")

    async def wait_closed(self) -> None:
        """Wait for the poll loops to exit after ``stop()``."""

        tasks, self._tasks = self._tasks, []
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    def _stopped_since(self, generation: int) -> bool:
        return self._generation != generation

    async def _wait_for_stop(self, timeout: float) -> bool:
        try:
            await asyncio.wait_for(self._stop_event.wait(), timeout=timeout)
        except asyncio.TimeoutError:
            return False
        return True

    async def _poll_loop(self) -> None:
        while not await self._wait_for_stop(self.settings.sync_interval_seconds):
            try:
                await self.check_snoozes()
                if self.connectivity.is_online:
                    await self.sync()
            except Exception as exc:  # noqa: BLE001
                logger.exception("sync_poll_failed", error=str(exc))

    async def _populate_loop(self) -> None:
        while not await self._wait_for_stop(self.settings.populate_interval_seconds):
            try:
                await self.populate_full_bodies()
            except Exception as exc:  # noqa: BLE001
                logger.exception("populate_poll_failed", error=str(exc))

    async def _on_online(self) -> None:
        if self._state is EngineState.STOPPED:
            return
        logger.info("sync_engine_back_online")
        await self.actions.flush_queues()
        await self.sync()

    # ── Sync ───────────────────────────────────────────────

    async def sync(self) -> bool:
        """Run one sync cycle.

        Returns True when a cycle ran to completion. Overlapping calls and
        calls made while offline return False immediately. Never raises.
        """

        if self._is_syncing or not self.connectivity.is_online:
            return False
        self._is_syncing = True

        generation = self._generation
        if self._state in (EngineState.STARTING, EngineState.IDLE):
            self._state = EngineState.SYNCING

        try:
            cursor = self.cache.get_last_history_id()
            if cursor:
                completed = await self._incremental_sync(cursor, generation)
            else:
                completed = await self._full_sync(generation)

            if not completed:
                logger.info("sync_results_dropped", reason="engine_stopped")
                return False

            self.cache.set_last_synced_at(datetime.now(timezone.utc))
            if self.settings.cache_enabled:
                self.cache.prune(self.settings.cache_max_bytes)

            self.last_error = None
            return True
        except CacheStoreError as exc:
            logger.exception("sync_aborted_cache_error", error=str(exc))
            self._report_error(exc)
            return False
        except Exception as exc:  # noqa: BLE001
            if is_network_error(exc):
                logger.warning("sync_offline", error=str(exc) or type(exc).__name__)
                self.connectivity.report_offline()
            else:
                logger.exception("sync_failed", error=str(exc))
                self._report_error(exc)
            return False
        finally:
            self._is_syncing = False
            if self._state is EngineState.SYNCING:
                self._state = EngineState.IDLE

    def _report_error(self, exc: Exception) -> None:
        self.last_error = str(exc) or type(exc).__name__
        self.events.emit("sync_error", self.last_error)

    async def _full_sync(self, generation: int) -> bool:
        logger.info("sync_full_started", queries=len(self.settings.full_sync_queries))

        profile = await self.remote.get_profile()
        if self._user_email is None and profile.email_address:
            self._user_email = profile.email_address.lower()

        thread_count = 0
        for query in self.settings.full_sync_queries:
            try:
                page = await self.remote.fetch_threads(query, self.settings.full_sync_max_results)
            except Exception as exc:
                if is_network_error(exc):
                    raise
                logger.warning("sync_full_query_failed", query=query, error=str(exc))
                continue

            if self._stopped_since(generation):
                return False

            if page.threads:
                self.cache.upsert_threads(page.threads)
                self.cache.record_contacts(t.sender for t in page.threads)
                thread_count += len(page.threads)

        if self._stopped_since(generation):
            return False

        self.cache.set_last_history_id(profile.history_id)
        self.events.emit("threads_updated", "sync")
        logger.info("sync_full_completed", thread_count=thread_count, cursor=profile.history_id)
        return True

    async def _incremental_sync(self, cursor: str, generation: int) -> bool:
        try:
            page = await self.remote.get_history(cursor)
        except CursorExpiredError:
            logger.info("sync_history_expired", cursor=cursor)
            self.cache.clear_cache()
            return await self._full_sync(generation)

        if self._stopped_since(generation):
            return False

        if not page.records:
            self.cache.set_last_history_id(page.new_cursor)
            return True

        # Insertion-ordered sets keep refresh order stable.
        affected: dict[str, None] = {}
        new_message: set[str] = set()
        inbox_added: set[str] = set()
        inbox_removed: set[str] = set()

        for record in page.records:
            affected[record.thread_id] = None
            if isinstance(record, MessageAdded):
                new_message.add(record.thread_id)
            elif isinstance(record, LabelsAdded) and INBOX in record.label_ids:
                inbox_added.add(record.thread_id)
            elif isinstance(record, LabelsRemoved) and INBOX in record.label_ids:
                inbox_removed.add(record.thread_id)

        nudge_candidates = inbox_added - new_message
        logger.info(
            "sync_incremental_started",
            records=len(page.records),
            affected=len(affected),
            new_message=len(new_message),
            nudge_candidates=len(nudge_candidates),
        )

        self.cache.clear_nudges(new_message | inbox_removed)

        for thread_id in sorted(new_message):
            if self.cache.is_snoozed(thread_id):
                await self.wake_thread(thread_id, WakeReason.NEW_REPLY)

        user_email = await self._get_user_email()
        refreshed = 0

        for batch in chunked(affected, self.settings.refresh_batch_size):
            results = await asyncio.gather(
                *(self._refresh_thread(thread_id) for thread_id in batch),
                return_exceptions=True,
            )
            if self._stopped_since(generation):
                return False

            for thread_id, result in zip(batch, results):
                if isinstance(result, NotFoundError):
                    logger.info("sync_thread_deleted_remotely", thread_id=thread_id)
                    self.cache.delete_thread(thread_id)
                    continue
                if isinstance(result, BaseException):
                    if isinstance(result, asyncio.CancelledError) or is_network_error(result):
                        raise result
                    logger.warning("sync_thread_refresh_failed", thread_id=thread_id, error=str(result))
                    continue
                if result is None:
                    continue

                await self._merge_thread(result, nudge_candidates, new_message, user_email)
                refreshed += 1

        self.cache.set_last_history_id(page.new_cursor)
        self.events.emit("threads_updated", "sync")
        logger.info("sync_incremental_completed", refreshed=refreshed, cursor=page.new_cursor)
        return True

    async def _refresh_thread(self, thread_id: str) -> Thread | None:
        metadata_only = not self.cache.has_full_thread(thread_id)
        return await self.remote.fetch_thread(thread_id, metadata_only=metadata_only)

    async def _merge_thread(
        self,
        thread: Thread,
        nudge_candidates: set[str],
        new_message: set[str],
        user_email: str,
    ) -> None:
        if thread.population is PopulationLevel.FULL:
            self.cache.upsert_full_thread(thread)
        else:
            self.cache.upsert_threads([thread])

        last = thread.last_message
        from_me = last is not None and bool(user_email) and last.sender.email.lower() == user_email

        if thread.id in nudge_candidates and last is not None:
            nudge_type = NudgeType.FOLLOW_UP if from_me else NudgeType.REPLY
            self.cache.set_nudge(thread.id, nudge_type)
            logger.info("sync_nudge_detected", thread_id=thread.id, nudge_type=nudge_type.value)

        # Without the owner's address every message looks external; skip restores.
        if (
            thread.id in new_message
            and last is not None
            and user_email
            and not from_me
            and not thread.has_label(INBOX)
            and not thread.has_label(TRASH)
            and not thread.has_label(SPAM)
            and not self.cache.is_snoozed(thread.id)
        ):
            await self._restore_archived(thread)

        self.events.emit("thread_updated", self.cache.get_thread(thread.id) or thread)

    async def _restore_archived(self, thread: Thread) -> None:
        logger.info("sync_restoring_archived_thread", thread_id=thread.id)
        try:
            await self.actions.restore_to_inbox(thread.id, keep_on_error=True)
        except CacheStoreError as exc:
            logger.exception("sync_restore_failed", thread_id=thread.id, error=str(exc))
            return

        last = thread.last_message
        self.events.emit(
            "notification",
            f"New reply: {thread.subject or 'Thread'}",
            (last.snippet if last else "") or thread.snippet,
        )

    async def _get_user_email(self) -> str:
        if self._user_email is None:
            try:
                self._user_email = (await self.remote.get_user_email()).lower()
            except Exception as exc:
                if is_network_error(exc):
                    raise
                logger.warning("sync_user_email_unavailable", error=str(exc))
                return ""
        return self._user_email

    # ── Snoozes ────────────────────────────────────────────

    async def check_snoozes(self) -> int:
        """Wake every expired snooze. Works offline; remote changes are queued."""

        try:
            expired = self.cache.get_expired_snoozes()
        except CacheStoreError as exc:
            logger.exception("snooze_check_failed", error=str(exc))
            return 0

        if not expired:
            return 0

        logger.info("snooze_waking", count=len(expired))
        for record in expired:
            await self.wake_thread(record.thread_id, WakeReason.EXPIRED)

        self.events.emit("threads_updated", "snooze")
        return len(expired)

    async def wake_thread(self, thread_id: str, reason: WakeReason | str) -> None:
        """Return a snoozed thread to the inbox as unread and tell the user.

        A remote rejection does not stop the wake: the label change stays in the
        pending queue and is replayed on the next flush.
        """

        reason = WakeReason(reason)
        try:
            await self.actions.apply_labels(thread_id, [INBOX, UNREAD], [SNOOZED], keep_on_error=True)
            self.cache.cancel_snooze(thread_id)
        except CacheStoreError as exc:
            logger.exception("snooze_wake_failed", thread_id=thread_id, error=str(exc))
            return

        thread = self.cache.get_thread(thread_id)
        subject = thread.subject if thread is not None and thread.subject else "Snoozed thread"
        title = "New reply" if reason is WakeReason.NEW_REPLY else "Snooze expired"
        self.events.emit("notification", f"{title}: {subject}", thread.snippet if thread else "")
        logger.info("snooze_woken", thread_id=thread_id, reason=reason.value)

    # ── Background population ──────────────────────────────

    async def populate_full_bodies(self) -> int:
        """Fetch full bodies for a few metadata-only threads, newest first.

        Returns the number of threads upgraded.
        """

        if not self.connectivity.is_online or self._is_syncing or not self.settings.cache_enabled:
            return 0

        if self.cache.get_stats().size_bytes >= self.settings.cache_max_bytes * POPULATE_HIGH_WATER:
            logger.debug("populate_skipped_cache_full")
            return 0

        generation = self._generation
        threads = self.cache.get_metadata_only_threads(self.settings.populate_batch_size)
        populated = 0

        for index, candidate in enumerate(threads):
            if not self.connectivity.is_online or self._is_syncing or self._stopped_since(generation):
                break

            try:
                full = await self.remote.fetch_thread(candidate.id)
            except NotFoundError:
                self.cache.delete_thread(candidate.id)
                continue
            except Exception as exc:
                if is_network_error(exc):
                    self.connectivity.report_offline()
                    break
                logger.warning("populate_thread_failed", thread_id=candidate.id, error=str(exc))
                continue

            if self._stopped_since(generation):
                break
            if full is not None:
                self.cache.upsert_full_thread(full)
                populated += 1

            if index < len(threads) - 1:
                if await self._wait_for_stop(self.settings.populate_delay_seconds):
                    break

        if populated:
            logger.info("populate_completed", populated=populated)
            self.events.emit("threads_updated", "populate")
        return populated
