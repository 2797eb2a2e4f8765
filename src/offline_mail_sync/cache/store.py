"""SQLite-backed local cache and offline queues.

The cache is the single source of truth for anything the host reads: threads,
messages, the pending-action queue, the outbox, snoozes and the sync cursor.
Writes are serialized through one lock and committed before returning, so the
UI mutation path and the sync engine can share a store safely.
"""

from __future__ import annotations

import json
import sqlite3
import threading
from collections.abc import Iterable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

import structlog

from offline_mail_sync.exceptions import CacheStoreError
from offline_mail_sync.models import (
    INBOX,
    UNREAD,
    Attachment,
    CacheStats,
    EmailAddress,
    Message,
    NudgeType,
    OutboxItem,
    OutboxStatus,
    PendingAction,
    PendingActionStatus,
    PendingActionType,
    PopulationLevel,
    PruneResult,
    SendEmailPayload,
    SnoozeRecord,
    Thread,
)

logger = structlog.get_logger()


_SCHEMA_VERSION = 1

# Eviction stops once the cache is back under this share of the budget.
PRUNE_LOW_WATER = 0.9

_LAST_HISTORY_ID = "last_history_id"
_LAST_SYNCED_AT = "last_synced_at"

_QUERY_LABELS: dict[str, str] = {
    "in:inbox": INBOX,
    "in:sent": "SENT",
    "in:drafts": "DRAFT",
    "is:starred": "STARRED",
    "is:unread": UNREAD,
}


@dataclass(frozen=True)
class ContactSuggestion:
    """An address seen in mail, ranked for recipient autocomplete."""

    email: str
    name: str
    frequency: int


def _iso(value: datetime | None) -> str | None:
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat()


def _parse_dt(value: str | None) -> datetime | None:
    return datetime.fromisoformat(value) if value else None


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _nbytes(value: str | None) -> int:
    return len(value.encode("utf-8")) if value else 0


def _addresses_json(addresses: Iterable[EmailAddress]) -> str:
    return json.dumps([a.model_dump() for a in addresses])


def _merge_labels(labels: list[str], add: Iterable[str], remove: Iterable[str]) -> list[str]:
    removed = set(remove)
    merged = [label for label in labels if label not in removed]
    for label in add:
        if label not in merged:
            merged.append(label)
    return merged


class CacheStore:
    """Durable, size-bounded store of threads, messages and offline queues."""

    def __init__(self, db_path: Path, *, max_replay_attempts: int = 5) -> None:
        """Create a store.

        Args:
            db_path: Path to the SQLite database file.
            max_replay_attempts: Failed queue items are replayable until they
                reach this many attempts.
        """

        self._db_path = Path(db_path)
        self._max_replay_attempts = max_replay_attempts
        self._write_lock = threading.RLock()

    @property
    def db_path(self) -> Path:
        return self._db_path

    def initialize(self) -> None:
        """Create or upgrade the cache schema."""

        try:
            self._db_path.parent.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise CacheStoreError(f"Cannot create cache directory: {exc}") from exc

        with self._transaction() as conn:
            conn.execute("PRAGMA journal_mode=WAL;")
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS _schema_meta (
                    key TEXT PRIMARY KEY,
                    value TEXT NOT NULL
                );
                """
            )

            current_version = self._get_schema_version(conn)
            if current_version is None:
                self._create_schema_v1(conn)
                self._set_schema_version(conn, _SCHEMA_VERSION)
                logger.info("cache_schema_created", version=_SCHEMA_VERSION, path=str(self._db_path))
            elif current_version != _SCHEMA_VERSION:
                raise CacheStoreError(
                    f"Unsupported schema version {current_version}; expected {_SCHEMA_VERSION}"
                )

            # A send interrupted by a crash never got an answer; offer it again.
            interrupted = conn.execute(
                "UPDATE outbox SET status = ? WHERE status = ?",
                (OutboxStatus.QUEUED.value, OutboxStatus.SENDING.value),
            ).rowcount
            if interrupted:
                logger.warning("cache_outbox_interrupted_requeued", count=interrupted)

            applying = conn.execute(
                "UPDATE pending_actions SET status = ? WHERE status = ?",
                (PendingActionStatus.QUEUED.value, PendingActionStatus.APPLYING.value),
            ).rowcount
            if applying:
                logger.warning("cache_actions_interrupted_requeued", count=applying)

    # ── Threads & messages ─────────────────────────────────

    def upsert_threads(self, threads: list[Thread]) -> None:
        """Merge thread rows by id. Population only ever upgrades here."""

        if not threads:
            return
        self._write_threads(threads, fetched_full=False)

    def upsert_messages(self, messages: list[Message]) -> None:
        """Merge message rows by id; a missing body never replaces a cached one."""

        if not messages:
            return
        with self._transaction() as conn:
            self._write_messages(conn, messages)
            self._reapply_pending_deltas(conn, {m.thread_id for m in messages})

    def upsert_full_thread(self, thread: Thread) -> None:
        """Store a fully fetched thread and mark it as fully populated."""

        self._write_threads([thread], fetched_full=True)

    def get_thread(self, thread_id: str) -> Thread | None:
        """Get a single thread with all of its cached messages."""

        with self._read() as conn:
            row = conn.execute("SELECT * FROM threads WHERE id = ?", (thread_id,)).fetchone()
            if row is None:
                return None
            msg_rows = conn.execute(
                "SELECT * FROM messages WHERE thread_id = ? ORDER BY date ASC, rowid ASC",
                (thread_id,),
            ).fetchall()

        return self._row_to_thread(row, [self._row_to_message(r) for r in msg_rows])

    def get_threads_by_labels(
        self, labels: list[str], limit: int = 50, offset: int = 0
    ) -> list[Thread]:
        """Get threads carrying all of ``labels``, newest first. Empty means all."""

        conditions = " AND ".join(
            "EXISTS (SELECT 1 FROM json_each(threads.labels_json) WHERE value = ?)"
            for _ in labels
        )
        where = f"WHERE {conditions}" if conditions else ""

        with self._read() as conn:
            rows = conn.execute(
                f"SELECT * FROM threads {where} ORDER BY last_date DESC LIMIT ? OFFSET ?",
                (*labels, limit, offset),
            ).fetchall()

        return [self._row_to_thread(row) for row in rows]

    def get_threads_by_query(self, query: str, limit: int = 50) -> list[Thread]:
        """Answer a search-style query from the cache.

        Supports ``in:inbox``, ``in:sent``, ``in:drafts``, ``is:starred``,
        ``is:unread`` and ``label:X``. Anything else returns all threads.
        """

        q = (query or "").strip()
        key = q.lower()
        if key in _QUERY_LABELS:
            return self.get_threads_by_labels([_QUERY_LABELS[key]], limit)
        # Label IDs are case-sensitive (``Label_42``), so keep the caller's case.
        if key.startswith("label:") and len(q.split()) == 1 and len(q) > len("label:"):
            return self.get_threads_by_labels([q[len("label:"):]], limit)
        return self.get_threads_by_labels([], limit)

    def has_full_thread(self, thread_id: str) -> bool:
        with self._read() as conn:
            row = conn.execute(
                "SELECT population FROM threads WHERE id = ?", (thread_id,)
            ).fetchone()
        return row is not None and row["population"] == PopulationLevel.FULL.value

    def get_metadata_only_threads(self, limit: int = 10) -> list[Thread]:
        """Threads without cached bodies, most recent first."""

        with self._read() as conn:
            rows = conn.execute(
                "SELECT * FROM threads WHERE population = ? ORDER BY last_date DESC LIMIT ?",
                (PopulationLevel.METADATA.value, limit),
            ).fetchall()
        return [self._row_to_thread(row) for row in rows]

    def update_thread_labels(self, thread_id: str, add: list[str], remove: list[str]) -> None:
        """Apply an optimistic label delta. Unknown threads are left alone."""

        with self._transaction() as conn:
            self._apply_label_delta(conn, thread_id, add, remove)

    def delete_thread(self, thread_id: str) -> None:
        with self._transaction() as conn:
            conn.execute("DELETE FROM messages WHERE thread_id = ?", (thread_id,))
            conn.execute("DELETE FROM threads WHERE id = ?", (thread_id,))

    # ── Nudges ─────────────────────────────────────────────

    def set_nudge(self, thread_id: str, nudge_type: NudgeType) -> None:
        with self._transaction() as conn:
            conn.execute(
                "UPDATE threads SET nudge_type = ? WHERE id = ?",
                (NudgeType(nudge_type).value, thread_id),
            )

    def clear_nudges(self, thread_ids: Iterable[str]) -> None:
        ids = list(thread_ids)
        if not ids:
            return
        with self._transaction() as conn:
            conn.executemany(
                "UPDATE threads SET nudge_type = ? WHERE id = ?",
                [(NudgeType.NONE.value, thread_id) for thread_id in ids],
            )

    # ── Search & contacts ──────────────────────────────────

    def search_local(self, query: str, limit: int = 50) -> list[Thread]:
        """Full-text search over cached messages, falling back to LIKE on threads."""

        terms = query.replace('"', "").replace("'", "").split()
        if not terms:
            return []
        fts_query = " AND ".join(f'"{term}"*' for term in terms)

        try:
            with self._read() as conn:
                rows = conn.execute(
                    """
                    SELECT t.*
                    FROM threads t
                    WHERE t.id IN (
                        SELECT m.thread_id
                        FROM messages_fts
                        JOIN messages m ON m.rowid = messages_fts.rowid
                        WHERE messages_fts MATCH ?
                    )
                    ORDER BY t.last_date DESC
                    LIMIT ?;
                    """,
                    (fts_query, limit),
                ).fetchall()
        except CacheStoreError as exc:
            logger.warning("cache_fts_search_failed", query=query, error=str(exc))
            like = f"%{query.strip()}%"
            with self._read() as conn:
                rows = conn.execute(
                    """
                    SELECT * FROM threads
                    WHERE subject LIKE ? OR snippet LIKE ? OR sender_name LIKE ? OR sender_email LIKE ?
                    ORDER BY last_date DESC
                    LIMIT ?;
                    """,
                    (like, like, like, like, limit),
                ).fetchall()

        return [self._row_to_thread(row) for row in rows]

    def record_contacts(self, addresses: Iterable[EmailAddress], frequency_boost: int = 1) -> None:
        """Count addresses seen in mail; sent-to addresses get a larger boost."""

        now_iso = _now_iso()
        seen: set[str] = set()
        params: list[dict[str, Any]] = []
        for addr in addresses:
            email = addr.email.strip().lower()
            if not email or "@" not in email or email in seen:
                continue
            seen.add(email)
            params.append(
                {"email": email, "name": addr.name.strip(), "boost": frequency_boost, "now": now_iso}
            )

        if not params:
            return

        with self._transaction() as conn:
            conn.executemany(
                """
                INSERT INTO contacts (email, name, frequency, last_used)
                VALUES (:email, :name, :boost, :now)
                ON CONFLICT(email) DO UPDATE SET
                    frequency = contacts.frequency + :boost,
                    name = CASE
                        WHEN excluded.name != '' AND excluded.name != excluded.email THEN excluded.name
                        ELSE contacts.name
                    END,
                    last_used = excluded.last_used
                """,
                params,
            )

    def suggest_contacts(self, prefix: str, limit: int = 8) -> list[ContactSuggestion]:
        """Prefix matches rank above substring matches; ties go to frequency."""

        needle = prefix.strip().lower()
        if not needle:
            return []

        with self._read() as conn:
            rows = conn.execute(
                """
                SELECT email, name, frequency FROM contacts
                WHERE email LIKE :contains OR LOWER(name) LIKE :contains
                ORDER BY
                    CASE WHEN email LIKE :prefix OR LOWER(name) LIKE :prefix THEN 0 ELSE 1 END,
                    frequency DESC
                LIMIT :limit
                """,
                {"contains": f"%{needle}%", "prefix": f"{needle}%", "limit": limit},
            ).fetchall()

        return [
            ContactSuggestion(email=row["email"], name=row["name"] or "", frequency=row["frequency"])
            for row in rows
        ]

    # ── Snoozes ────────────────────────────────────────────

    def snooze_thread(
        self, thread_id: str, snooze_until: datetime, original_labels: list[str]
    ) -> None:
        with self._transaction() as conn:
            conn.execute(
                """
                INSERT OR REPLACE INTO snoozed_threads
                    (thread_id, snooze_until, snoozed_at, original_labels_json)
                VALUES (?, ?, ?, ?)
                """,
                (thread_id, _iso(snooze_until), _now_iso(), json.dumps(original_labels)),
            )

    def get_expired_snoozes(self, now: datetime | None = None) -> list[SnoozeRecord]:
        """Snoozes whose wake-up time has passed, earliest first."""

        cutoff = _iso(now or datetime.now(timezone.utc))
        with self._read() as conn:
            rows = conn.execute(
                "SELECT * FROM snoozed_threads WHERE snooze_until <= ? ORDER BY snooze_until ASC",
                (cutoff,),
            ).fetchall()
        return [self._row_to_snooze(row) for row in rows]

    def get_snoozed_thread(self, thread_id: str) -> SnoozeRecord | None:
        with self._read() as conn:
            row = conn.execute(
                "SELECT * FROM snoozed_threads WHERE thread_id = ?", (thread_id,)
            ).fetchone()
        return self._row_to_snooze(row) if row is not None else None

    def is_snoozed(self, thread_id: str) -> bool:
        return self.get_snoozed_thread(thread_id) is not None

    def cancel_snooze(self, thread_id: str) -> None:
        with self._transaction() as conn:
            conn.execute("DELETE FROM snoozed_threads WHERE thread_id = ?", (thread_id,))

    def get_all_snoozed(self) -> list[SnoozeRecord]:
        with self._read() as conn:
            rows = conn.execute(
                "SELECT * FROM snoozed_threads ORDER BY snooze_until ASC"
            ).fetchall()
        return [self._row_to_snooze(row) for row in rows]

    # ── Sync metadata ──────────────────────────────────────

    def get_last_history_id(self) -> str | None:
        return self._get_meta(_LAST_HISTORY_ID)

    def set_last_history_id(self, history_id: str) -> None:
        self._set_meta(_LAST_HISTORY_ID, history_id)

    def get_last_synced_at(self) -> datetime | None:
        return _parse_dt(self._get_meta(_LAST_SYNCED_AT))

    def set_last_synced_at(self, ts: datetime) -> None:
        self._set_meta(_LAST_SYNCED_AT, _iso(ts) or "")

    # ── Pending actions ────────────────────────────────────

    def enqueue_pending_action(
        self,
        action_type: PendingActionType | str,
        thread_id: str,
        payload: dict[str, Any] | None = None,
        *,
        status: PendingActionStatus = PendingActionStatus.QUEUED,
    ) -> int:
        """Queue a mutation for replay and return its id.

        An ``applying`` action is one whose remote call is in flight. It is not
        replayed, but its label delta survives sync upserts like a queued one.
        """

        with self._transaction() as conn:
            cursor = conn.execute(
                """
                INSERT INTO pending_actions (type, thread_id, payload_json, status, attempts, created_at)
                VALUES (?, ?, ?, ?, 0, ?)
                """,
                (
                    PendingActionType(action_type).value,
                    thread_id,
                    json.dumps(payload or {}),
                    PendingActionStatus(status).value,
                    _now_iso(),
                ),
            )
            action_id = int(cursor.lastrowid)

        logger.info(
            "pending_action_enqueued",
            action_id=action_id,
            type=PendingActionType(action_type).value,
            thread_id=thread_id,
            status=PendingActionStatus(status).value,
        )
        return action_id

    def get_pending_actions(self) -> list[PendingAction]:
        """Replayable actions in creation order."""

        with self._read() as conn:
            rows = conn.execute(
                f"SELECT * FROM pending_actions WHERE {self._replayable_sql()} ORDER BY id ASC",
                self._replayable_params(),
            ).fetchall()
        return [self._row_to_action(row) for row in rows]

    def get_pending_action(self, action_id: int) -> PendingAction | None:
        with self._read() as conn:
            row = conn.execute("SELECT * FROM pending_actions WHERE id = ?", (action_id,)).fetchone()
        return self._row_to_action(row) if row is not None else None

    def is_action_replayable(self, action: PendingAction) -> bool:
        return action.status is PendingActionStatus.QUEUED or (
            action.status is PendingActionStatus.FAILED and action.attempts < self._max_replay_attempts
        )

    def get_failed_actions(self) -> list[PendingAction]:
        """Actions that exhausted their replay attempts."""

        with self._read() as conn:
            rows = conn.execute(
                "SELECT * FROM pending_actions WHERE status = ? AND attempts >= ? ORDER BY id ASC",
                (PendingActionStatus.FAILED.value, self._max_replay_attempts),
            ).fetchall()
        return [self._row_to_action(row) for row in rows]

    def mark_action_synced(self, action_id: int) -> None:
        with self._transaction() as conn:
            conn.execute(
                "UPDATE pending_actions SET status = ?, last_error = NULL WHERE id = ?",
                (PendingActionStatus.SYNCED.value, action_id),
            )

    def mark_action_failed(self, action_id: int, error: str | None = None) -> None:
        with self._transaction() as conn:
            conn.execute(
                """
                UPDATE pending_actions
                SET status = ?, attempts = attempts + 1, last_error = ?
                WHERE id = ?
                """,
                (PendingActionStatus.FAILED.value, error, action_id),
            )

    def requeue_action(self, action_id: int) -> None:
        """Give a failed action a fresh set of replay attempts."""

        with self._transaction() as conn:
            conn.execute(
                "UPDATE pending_actions SET status = ?, attempts = 0 WHERE id = ?",
                (PendingActionStatus.QUEUED.value, action_id),
            )

    def delete_pending_action(self, action_id: int) -> None:
        with self._transaction() as conn:
            conn.execute("DELETE FROM pending_actions WHERE id = ?", (action_id,))

    def get_pending_action_count(self) -> int:
        with self._read() as conn:
            (count,) = conn.execute(
                f"SELECT COUNT(*) FROM pending_actions WHERE {self._replayable_sql()}",
                self._replayable_params(),
            ).fetchone()
        return int(count or 0)

    # ── Outbox ─────────────────────────────────────────────

    def enqueue_outbox(self, payload: SendEmailPayload) -> int:
        with self._transaction() as conn:
            cursor = conn.execute(
                """
                INSERT INTO outbox (payload_json, thread_id, created_at, status, attempts)
                VALUES (?, ?, ?, ?, 0)
                """,
                (
                    payload.model_dump_json(),
                    payload.reply_to_thread_id,
                    _now_iso(),
                    OutboxStatus.QUEUED.value,
                ),
            )
            item_id = int(cursor.lastrowid)

        logger.info("outbox_item_enqueued", item_id=item_id)
        return item_id

    def get_outbox_items(self) -> list[OutboxItem]:
        """Unsent items (queued or failed) in creation order."""

        with self._read() as conn:
            rows = conn.execute(
                "SELECT * FROM outbox WHERE status IN (?, ?) ORDER BY id ASC",
                (OutboxStatus.QUEUED.value, OutboxStatus.FAILED.value),
            ).fetchall()
        return [self._row_to_outbox(row) for row in rows]

    def get_replayable_outbox_items(self) -> list[OutboxItem]:
        """Unsent items still within their automatic retry budget."""

        return [
            item
            for item in self.get_outbox_items()
            if item.status is OutboxStatus.QUEUED or item.attempts < self._max_replay_attempts
        ]

    def get_outbox_item(self, item_id: int) -> OutboxItem | None:
        with self._read() as conn:
            row = conn.execute("SELECT * FROM outbox WHERE id = ?", (item_id,)).fetchone()
        return self._row_to_outbox(row) if row is not None else None

    def mark_outbox_sending(self, item_id: int) -> None:
        self._set_outbox_status(item_id, OutboxStatus.SENDING)

    def mark_outbox_sent(self, item_id: int) -> None:
        with self._transaction() as conn:
            conn.execute(
                "UPDATE outbox SET status = ?, sent_at = ?, error = NULL WHERE id = ?",
                (OutboxStatus.SENT.value, _now_iso(), item_id),
            )

    def mark_outbox_failed(self, item_id: int, error: str | None = None) -> None:
        with self._transaction() as conn:
            conn.execute(
                "UPDATE outbox SET status = ?, error = ?, attempts = attempts + 1 WHERE id = ?",
                (OutboxStatus.FAILED.value, error, item_id),
            )

    def requeue_outbox_item(self, item_id: int) -> None:
        """Put an item back in the queue without counting an attempt."""

        self._set_outbox_status(item_id, OutboxStatus.QUEUED)

    def cancel_outbox_item(self, item_id: int) -> None:
        with self._transaction() as conn:
            conn.execute("DELETE FROM outbox WHERE id = ?", (item_id,))

    def get_outbox_count(self) -> int:
        with self._read() as conn:
            (count,) = conn.execute(
                "SELECT COUNT(*) FROM outbox WHERE status IN (?, ?)",
                (OutboxStatus.QUEUED.value, OutboxStatus.FAILED.value),
            ).fetchone()
        return int(count or 0)

    # ── Stats & maintenance ────────────────────────────────

    def get_stats(self) -> CacheStats:
        with self._read() as conn:
            (thread_count,) = conn.execute("SELECT COUNT(*) FROM threads").fetchone()
            (message_count,) = conn.execute("SELECT COUNT(*) FROM messages").fetchone()
            size_bytes = self._total_size(conn)

        return CacheStats(
            size_bytes=size_bytes,
            thread_count=int(thread_count or 0),
            message_count=int(message_count or 0),
            last_synced_at=self.get_last_synced_at(),
            pending_actions=self.get_pending_action_count(),
            outbox_count=self.get_outbox_count(),
            db_file_bytes=self._db_file_bytes(),
        )

    def prune(self, max_bytes: int) -> PruneResult:
        """Evict cached content until the cache fits in ``max_bytes``.

        Bodies go first (least recently fetched first) so list views stay
        populated; whole threads (oldest synced first) only after that.
        Threads with queued actions, unsent replies or snoozes are never touched.
        """

        with self._transaction() as conn:
            size_before = self._total_size(conn)
            result = PruneResult(size_before=size_before, size_after=size_before)
            if size_before <= max_bytes:
                return result

            target = int(max_bytes * PRUNE_LOW_WATER)
            protected = self._protected_thread_ids(conn)
            size = size_before

            full_rows = conn.execute(
                """
                SELECT id FROM threads
                WHERE population = ?
                ORDER BY COALESCE(body_fetched_at, cached_at) ASC
                """,
                (PopulationLevel.FULL.value,),
            ).fetchall()
            for row in full_rows:
                if size <= target:
                    break
                if row["id"] in protected:
                    continue
                size -= self._drop_bodies(conn, row["id"])
                result.bodies_dropped += 1

            if size > target:
                oldest_rows = conn.execute("SELECT id FROM threads ORDER BY cached_at ASC").fetchall()
                for row in oldest_rows:
                    if size <= target:
                        break
                    if row["id"] in protected:
                        continue
                    size -= self._delete_thread_rows(conn, row["id"])
                    result.threads_deleted += 1

            result.size_after = self._total_size(conn)

        logger.info(
            "cache_pruned",
            size_before=result.size_before,
            size_after=result.size_after,
            max_bytes=max_bytes,
            bodies_dropped=result.bodies_dropped,
            threads_deleted=result.threads_deleted,
        )
        return result

    def clear_cache(self) -> None:
        """Drop all cached mail and the sync cursor. Queues and snoozes survive."""

        with self._transaction() as conn:
            conn.execute("DELETE FROM messages")
            conn.execute("DELETE FROM threads")
            conn.execute(
                "DELETE FROM sync_meta WHERE key IN (?, ?)", (_LAST_HISTORY_ID, _LAST_SYNCED_AT)
            )
            conn.execute("INSERT INTO messages_fts(messages_fts) VALUES('rebuild')")
        logger.info("cache_cleared")

    # ── Internals ──────────────────────────────────────────

    @contextmanager
    def _connect(self) -> Iterator[sqlite3.Connection]:
        conn = sqlite3.connect(self._db_path)
        try:
            conn.row_factory = sqlite3.Row
            yield conn
        finally:
            conn.close()

    @contextmanager
    def _read(self) -> Iterator[sqlite3.Connection]:
        try:
            with self._connect() as conn:
                yield conn
        except sqlite3.Error as exc:
            raise CacheStoreError(str(exc)) from exc

    @contextmanager
    def _transaction(self) -> Iterator[sqlite3.Connection]:
        with self._write_lock:
            try:
                with self._connect() as conn:
                    conn.execute("PRAGMA synchronous=NORMAL;")
                    try:
                        yield conn
                        conn.commit()
                    except BaseException:
                        conn.rollback()
                        raise
            except sqlite3.Error as exc:
                raise CacheStoreError(str(exc)) from exc

    def _write_threads(self, threads: list[Thread], *, fetched_full: bool) -> None:
        now_iso = _now_iso()
        rows = []
        for t in threads:
            population = PopulationLevel.FULL if fetched_full else t.population
            rows.append(
                {
                    "id": t.id,
                    "subject": t.subject,
                    "snippet": t.snippet,
                    "last_date": _iso(t.last_date),
                    "labels_json": json.dumps(t.labels),
                    "is_unread": 1 if t.is_unread else 0,
                    "sender_name": t.sender.name,
                    "sender_email": t.sender.email,
                    "participants_json": _addresses_json(t.participants),
                    "has_attachments": 1 if any(m.has_attachments for m in t.messages) else 0,
                    "population": population.value,
                    "size_bytes": _nbytes(t.model_dump_json(exclude={"messages"})),
                    "cached_at": now_iso,
                    "body_fetched_at": now_iso if population is PopulationLevel.FULL else None,
                }
            )

        with self._transaction() as conn:
            conn.executemany(
                """
                INSERT INTO threads (
                    id, subject, snippet, last_date, labels_json, is_unread,
                    sender_name, sender_email, participants_json, has_attachments,
                    nudge_type, population, size_bytes, cached_at, body_fetched_at
                )
                VALUES (
                    :id, :subject, :snippet, :last_date, :labels_json, :is_unread,
                    :sender_name, :sender_email, :participants_json, :has_attachments,
                    'none', :population, :size_bytes, :cached_at, :body_fetched_at
                )
                ON CONFLICT(id) DO UPDATE SET
                    subject=excluded.subject,
                    snippet=excluded.snippet,
                    last_date=excluded.last_date,
                    labels_json=excluded.labels_json,
                    is_unread=excluded.is_unread,
                    sender_name=excluded.sender_name,
                    sender_email=excluded.sender_email,
                    participants_json=excluded.participants_json,
                    has_attachments=excluded.has_attachments,
                    population=CASE
                        WHEN excluded.population = 'full' THEN 'full'
                        ELSE threads.population
                    END,
                    size_bytes=excluded.size_bytes,
                    cached_at=excluded.cached_at,
                    body_fetched_at=COALESCE(excluded.body_fetched_at, threads.body_fetched_at)
                """,
                rows,
            )
            messages = [m for t in threads for m in t.messages]
            if messages:
                self._write_messages(conn, messages)
            self._reapply_pending_deltas(conn, {t.id for t in threads})

    def _write_messages(self, conn: sqlite3.Connection, messages: list[Message]) -> None:
        now_iso = _now_iso()
        conn.executemany(
            """
            INSERT INTO messages (
                id, thread_id, sender_name, sender_email, to_json, cc_json, bcc_json,
                subject, snippet, body, body_text, date, labels_json, is_unread,
                attachments_json, meta_bytes, body_bytes, cached_at
            )
            VALUES (
                :id, :thread_id, :sender_name, :sender_email, :to_json, :cc_json, :bcc_json,
                :subject, :snippet, :body, :body_text, :date, :labels_json, :is_unread,
                :attachments_json, :meta_bytes, :body_bytes, :cached_at
            )
            ON CONFLICT(id) DO UPDATE SET
                thread_id=excluded.thread_id,
                sender_name=excluded.sender_name,
                sender_email=excluded.sender_email,
                to_json=excluded.to_json,
                cc_json=excluded.cc_json,
                bcc_json=excluded.bcc_json,
                subject=excluded.subject,
                snippet=excluded.snippet,
                body=COALESCE(excluded.body, messages.body),
                body_text=COALESCE(excluded.body_text, messages.body_text),
                date=excluded.date,
                labels_json=excluded.labels_json,
                is_unread=excluded.is_unread,
                attachments_json=excluded.attachments_json,
                meta_bytes=excluded.meta_bytes,
                body_bytes=
                    LENGTH(CAST(COALESCE(excluded.body, messages.body, '') AS BLOB))
                    + LENGTH(CAST(COALESCE(excluded.body_text, messages.body_text, '') AS BLOB)),
                cached_at=excluded.cached_at
            """,
            [
                {
                    "id": m.id,
                    "thread_id": m.thread_id,
                    "sender_name": m.sender.name,
                    "sender_email": m.sender.email,
                    "to_json": _addresses_json(m.to),
                    "cc_json": _addresses_json(m.cc),
                    "bcc_json": _addresses_json(m.bcc),
                    "subject": m.subject,
                    "snippet": m.snippet,
                    "body": m.body,
                    "body_text": m.body_text,
                    "date": _iso(m.date),
                    "labels_json": json.dumps(m.labels),
                    "is_unread": 1 if m.is_unread else 0,
                    "attachments_json": json.dumps([a.model_dump() for a in m.attachments]),
                    "meta_bytes": _nbytes(m.model_dump_json(exclude={"body", "body_text"})),
                    "body_bytes": _nbytes(m.body) + _nbytes(m.body_text),
                    "cached_at": now_iso,
                }
                for m in messages
            ],
        )

    def _apply_label_delta(
        self, conn: sqlite3.Connection, thread_id: str, add: list[str], remove: list[str]
    ) -> None:
        row = conn.execute("SELECT labels_json FROM threads WHERE id = ?", (thread_id,)).fetchone()
        if row is not None:
            labels = _merge_labels(json.loads(row["labels_json"] or "[]"), add, remove)
            conn.execute(
                "UPDATE threads SET labels_json = ?, is_unread = ? WHERE id = ?",
                (json.dumps(labels), 1 if UNREAD in labels else 0, thread_id),
            )

        msg_rows = conn.execute(
            "SELECT id, labels_json FROM messages WHERE thread_id = ?", (thread_id,)
        ).fetchall()
        updates = []
        for msg in msg_rows:
            labels = _merge_labels(json.loads(msg["labels_json"] or "[]"), add, remove)
            updates.append((json.dumps(labels), 1 if UNREAD in labels else 0, msg["id"]))
        if updates:
            conn.executemany("UPDATE messages SET labels_json = ?, is_unread = ? WHERE id = ?", updates)

    def _reapply_pending_deltas(self, conn: sqlite3.Connection, thread_ids: set[str]) -> None:
        """Keep unconfirmed local label changes on top of freshly synced rows."""

        if not thread_ids:
            return
        placeholders = ",".join("?" for _ in thread_ids)
        rows = conn.execute(
            f"""
            SELECT * FROM pending_actions
            WHERE thread_id IN ({placeholders}) AND {self._unconfirmed_sql()}
            ORDER BY id ASC
            """,
            (*thread_ids, *self._unconfirmed_params()),
        ).fetchall()
        for row in rows:
            action = self._row_to_action(row)
            add, remove = action.label_delta()
            self._apply_label_delta(conn, action.thread_id, add, remove)

    def _replayable_sql(self) -> str:
        return "(status = ? OR (status = ? AND attempts < ?))"

    def _replayable_params(self) -> tuple[Any, ...]:
        return (
            PendingActionStatus.QUEUED.value,
            PendingActionStatus.FAILED.value,
            self._max_replay_attempts,
        )

    def _unconfirmed_sql(self) -> str:
        return f"(status = ? OR {self._replayable_sql()})"

    def _unconfirmed_params(self) -> tuple[Any, ...]:
        return (PendingActionStatus.APPLYING.value, *self._replayable_params())

    def _protected_thread_ids(self, conn: sqlite3.Connection) -> set[str]:
        protected: set[str] = set()
        rows = conn.execute(
            f"SELECT DISTINCT thread_id FROM pending_actions WHERE {self._unconfirmed_sql()}",
            self._unconfirmed_params(),
        ).fetchall()
        protected.update(row[0] for row in rows)

        rows = conn.execute(
            "SELECT DISTINCT thread_id FROM outbox WHERE thread_id IS NOT NULL AND status != ?",
            (OutboxStatus.SENT.value,),
        ).fetchall()
        protected.update(row[0] for row in rows)

        rows = conn.execute("SELECT thread_id FROM snoozed_threads").fetchall()
        protected.update(row[0] for row in rows)
        return protected

    def _drop_bodies(self, conn: sqlite3.Connection, thread_id: str) -> int:
        (freed,) = conn.execute(
            "SELECT COALESCE(SUM(body_bytes), 0) FROM messages WHERE thread_id = ?", (thread_id,)
        ).fetchone()
        conn.execute(
            "UPDATE messages SET body = NULL, body_text = NULL, body_bytes = 0 WHERE thread_id = ?",
            (thread_id,),
        )
        conn.execute(
            "UPDATE threads SET population = ?, body_fetched_at = NULL WHERE id = ?",
            (PopulationLevel.METADATA.value, thread_id),
        )
        return int(freed)

    def _delete_thread_rows(self, conn: sqlite3.Connection, thread_id: str) -> int:
        (msg_bytes,) = conn.execute(
            "SELECT COALESCE(SUM(meta_bytes + body_bytes), 0) FROM messages WHERE thread_id = ?",
            (thread_id,),
        ).fetchone()
        (thread_bytes,) = conn.execute(
            "SELECT COALESCE(SUM(size_bytes), 0) FROM threads WHERE id = ?", (thread_id,)
        ).fetchone()
        conn.execute("DELETE FROM messages WHERE thread_id = ?", (thread_id,))
        conn.execute("DELETE FROM threads WHERE id = ?", (thread_id,))
        return int(msg_bytes) + int(thread_bytes)

    def _total_size(self, conn: sqlite3.Connection) -> int:
        (thread_bytes,) = conn.execute("SELECT COALESCE(SUM(size_bytes), 0) FROM threads").fetchone()
        (msg_bytes,) = conn.execute(
            "SELECT COALESCE(SUM(meta_bytes + body_bytes), 0) FROM messages"
        ).fetchone()
        return int(thread_bytes) + int(msg_bytes)

    def _db_file_bytes(self) -> int:
        total = 0
        for path in (self._db_path, Path(f"{self._db_path}-wal")):
            try:
                total += path.stat().st_size
            except FileNotFoundError:
                continue
        return total

    def _set_outbox_status(self, item_id: int, status: OutboxStatus) -> None:
        with self._transaction() as conn:
            conn.execute("UPDATE outbox SET status = ? WHERE id = ?", (status.value, item_id))

    def _get_meta(self, key: str) -> str | None:
        with self._read() as conn:
            row = conn.execute("SELECT value FROM sync_meta WHERE key = ?", (key,)).fetchone()
        return row["value"] if row is not None and row["value"] else None

    def _set_meta(self, key: str, value: str) -> None:
        with self._transaction() as conn:
            conn.execute("INSERT OR REPLACE INTO sync_meta(key, value) VALUES(?, ?)", (key, value))

    def _get_schema_version(self, conn: sqlite3.Connection) -> int | None:
        row = conn.execute(
            "SELECT value FROM _schema_meta WHERE key = 'schema_version'"
        ).fetchone()
        if row is None:
            return None
        return int(row[0])

    def _set_schema_version(self, conn: sqlite3.Connection, version: int) -> None:
        conn.execute(
            "INSERT OR REPLACE INTO _schema_meta(key, value) VALUES('schema_version', ?) ",
            (str(version),),
        )

    def _create_schema_v1(self, conn: sqlite3.Connection) -> None:
        conn.executescript(
            """
            CREATE TABLE IF NOT EXISTS threads (
                id TEXT PRIMARY KEY,
                subject TEXT,
                snippet TEXT,
                last_date TEXT,
                labels_json TEXT NOT NULL,
                is_unread INTEGER NOT NULL,
                sender_name TEXT,
                sender_email TEXT,
                participants_json TEXT NOT NULL,
                has_attachments INTEGER NOT NULL,
                nudge_type TEXT NOT NULL DEFAULT 'none',
                population TEXT NOT NULL DEFAULT 'metadata',
                size_bytes INTEGER NOT NULL DEFAULT 0,
                cached_at TEXT NOT NULL,
                body_fetched_at TEXT
            );

            CREATE INDEX IF NOT EXISTS idx_threads_last_date ON threads(last_date);
            CREATE INDEX IF NOT EXISTS idx_threads_cached_at ON threads(cached_at);

            CREATE TABLE IF NOT EXISTS messages (
                rowid INTEGER PRIMARY KEY,
                id TEXT NOT NULL UNIQUE,
                thread_id TEXT NOT NULL,
                sender_name TEXT,
                sender_email TEXT,
                to_json TEXT NOT NULL,
                cc_json TEXT NOT NULL,
                bcc_json TEXT NOT NULL,
                subject TEXT,
                snippet TEXT,
                body TEXT,
                body_text TEXT,
                date TEXT,
                labels_json TEXT NOT NULL,
                is_unread INTEGER NOT NULL,
                attachments_json TEXT NOT NULL,
                meta_bytes INTEGER NOT NULL DEFAULT 0,
                body_bytes INTEGER NOT NULL DEFAULT 0,
                cached_at TEXT NOT NULL
            );

            CREATE INDEX IF NOT EXISTS idx_messages_thread ON messages(thread_id);

            CREATE TABLE IF NOT EXISTS sync_meta (
                key TEXT PRIMARY KEY,
                value TEXT
            );

            CREATE TABLE IF NOT EXISTS pending_actions (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                type TEXT NOT NULL,
                thread_id TEXT NOT NULL,
                payload_json TEXT NOT NULL,
                status TEXT NOT NULL,
                attempts INTEGER NOT NULL DEFAULT 0,
                last_error TEXT,
                created_at TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS outbox (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                payload_json TEXT NOT NULL,
                thread_id TEXT,
                created_at TEXT NOT NULL,
                status TEXT NOT NULL,
                error TEXT,
                sent_at TEXT,
                attempts INTEGER NOT NULL DEFAULT 0
            );

            CREATE TABLE IF NOT EXISTS snoozed_threads (
                thread_id TEXT PRIMARY KEY,
                snooze_until TEXT NOT NULL,
                snoozed_at TEXT NOT NULL,
                original_labels_json TEXT NOT NULL
            );

            CREATE INDEX IF NOT EXISTS idx_snoozed_until ON snoozed_threads(snooze_until);

            CREATE TABLE IF NOT EXISTS contacts (
                email TEXT PRIMARY KEY,
                name TEXT,
                frequency INTEGER NOT NULL DEFAULT 1,
                last_used TEXT
            );

            CREATE INDEX IF NOT EXISTS idx_contacts_frequency ON contacts(frequency DESC);

            CREATE VIRTUAL TABLE IF NOT EXISTS messages_fts USING fts5(
                subject,
                body_text,
                sender_name,
                sender_email,
                to_json,
                content='messages',
                content_rowid='rowid'
            );

            CREATE TRIGGER IF NOT EXISTS messages_ai
            AFTER INSERT ON messages
            BEGIN
                INSERT INTO messages_fts(rowid, subject, body_text, sender_name, sender_email, to_json)
                VALUES (new.rowid, new.subject, new.body_text, new.sender_name, new.sender_email, new.to_json);
            END;

            CREATE TRIGGER IF NOT EXISTS messages_ad
            AFTER DELETE ON messages
            BEGIN
                INSERT INTO messages_fts(messages_fts, rowid, subject, body_text, sender_name, sender_email, to_json)
                VALUES('delete', old.rowid, old.subject, old.body_text, old.sender_name, old.sender_email, old.to_json);
            END;

            CREATE TRIGGER IF NOT EXISTS messages_au
            AFTER UPDATE ON messages
            BEGIN
                INSERT INTO messages_fts(messages_fts, rowid, subject, body_text, sender_name, sender_email, to_json)
                VALUES('delete', old.rowid, old.subject, old.body_text, old.sender_name, old.sender_email, old.to_json);

                INSERT INTO messages_fts(rowid, subject, body_text, sender_name, sender_email, to_json)
                VALUES (new.rowid, new.subject, new.body_text, new.sender_name, new.sender_email, new.to_json);
            END;
            """
        )

    def _row_to_thread(self, row: sqlite3.Row, messages: list[Message] | None = None) -> Thread:
        return Thread(
            id=row["id"],
            subject=row["subject"] or "",
            snippet=row["snippet"] or "",
            messages=messages or [],
            last_date=_parse_dt(row["last_date"]),
            labels=json.loads(row["labels_json"] or "[]"),
            is_unread=bool(row["is_unread"]),
            nudge_type=NudgeType(row["nudge_type"] or NudgeType.NONE.value),
            sender=EmailAddress(name=row["sender_name"] or "", email=row["sender_email"] or ""),
            participants=[EmailAddress(**a) for a in json.loads(row["participants_json"] or "[]")],
            population=PopulationLevel(row["population"]),
        )

    def _row_to_message(self, row: sqlite3.Row) -> Message:
        return Message(
            id=row["id"],
            thread_id=row["thread_id"],
            sender=EmailAddress(name=row["sender_name"] or "", email=row["sender_email"] or ""),
            to=[EmailAddress(**a) for a in json.loads(row["to_json"] or "[]")],
            cc=[EmailAddress(**a) for a in json.loads(row["cc_json"] or "[]")],
            bcc=[EmailAddress(**a) for a in json.loads(row["bcc_json"] or "[]")],
            subject=row["subject"] or "",
            snippet=row["snippet"] or "",
            body=row["body"],
            body_text=row["body_text"],
            date=_parse_dt(row["date"]),
            labels=json.loads(row["labels_json"] or "[]"),
            is_unread=bool(row["is_unread"]),
            attachments=[Attachment(**a) for a in json.loads(row["attachments_json"] or "[]")],
        )

    def _row_to_action(self, row: sqlite3.Row) -> PendingAction:
        return PendingAction(
            id=row["id"],
            type=PendingActionType(row["type"]),
            thread_id=row["thread_id"],
            payload=json.loads(row["payload_json"] or "{}"),
            status=PendingActionStatus(row["status"]),
            attempts=row["attempts"],
            last_error=row["last_error"],
            created_at=datetime.fromisoformat(row["created_at"]),
        )

    def _row_to_outbox(self, row: sqlite3.Row) -> OutboxItem:
        return OutboxItem(
            id=row["id"],
            payload=SendEmailPayload.model_validate_json(row["payload_json"]),
            created_at=datetime.fromisoformat(row["created_at"]),
            status=OutboxStatus(row["status"]),
            error=row["error"],
            sent_at=_parse_dt(row["sent_at"]),
            attempts=row["attempts"],
        )

    def _row_to_snooze(self, row: sqlite3.Row) -> SnoozeRecord:
        return SnoozeRecord(
            thread_id=row["thread_id"],
            snooze_until=datetime.fromisoformat(row["snooze_until"]),
            snoozed_at=datetime.fromisoformat(row["snoozed_at"]),
            original_labels=json.loads(row["original_labels_json"] or "[]"),
        )
