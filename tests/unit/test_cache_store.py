"""Unit tests for the SQLite cache store."""

import sqlite3
from datetime import datetime, timedelta, timezone

import pytest

from offline_mail_sync.cache import CacheStore
from offline_mail_sync.exceptions import CacheStoreError
from offline_mail_sync.models import (
    EmailAddress,
    NudgeType,
    OutboxStatus,
    PendingActionStatus,
    PendingActionType,
    PopulationLevel,
    SendEmailPayload,
)


class TestSchema:
    """Test suite for schema creation and versioning."""

    def test_initialize_is_idempotent(self, cache_store: CacheStore) -> None:
        cache_store.initialize()

        stats = cache_store.get_stats()
        assert stats.thread_count == 0
        assert stats.size_bytes == 0

    def test_unknown_schema_version_rejected(self, cache_store: CacheStore) -> None:
        conn = sqlite3.connect(cache_store.db_path)
        conn.execute("UPDATE _schema_meta SET value = '99' WHERE key = 'schema_version'")
        conn.commit()
        conn.close()

        with pytest.raises(CacheStoreError):
            cache_store.initialize()

    def test_interrupted_send_requeued_on_startup(self, cache_store: CacheStore) -> None:
        item_id = cache_store.enqueue_outbox(SendEmailPayload(to="bob@example.com", subject="Hi"))
        cache_store.mark_outbox_sending(item_id)

        cache_store.initialize()

        item = cache_store.get_outbox_item(item_id)
        assert item is not None
        assert item.status is OutboxStatus.QUEUED


class TestThreadStorage:
    """Test suite for thread and message upserts."""

    def test_upsert_and_get_thread(self, cache_store: CacheStore, make_thread) -> None:
        thread = make_thread("t1", senders=["alice@example.com", "bob@example.com"], body="hello")

        cache_store.upsert_threads([thread])
        stored = cache_store.get_thread("t1")

        assert stored is not None
        assert stored.subject == "Project update"
        assert [m.id for m in stored.messages] == ["t1-m0", "t1-m1"]
        assert stored.messages[0].body_text == "hello"
        assert stored.sender.email == "bob@example.com"
        assert stored.population is PopulationLevel.FULL

    def test_upsert_is_idempotent(self, cache_store: CacheStore, make_thread) -> None:
        thread = make_thread("t1", body="hello")

        cache_store.upsert_threads([thread])
        first = cache_store.get_stats()
        cache_store.upsert_threads([thread])
        second = cache_store.get_stats()

        assert second.thread_count == first.thread_count == 1
        assert second.message_count == first.message_count == 1
        assert second.size_bytes == first.size_bytes

    def test_metadata_upsert_keeps_cached_body(self, cache_store: CacheStore, make_thread) -> None:
        cache_store.upsert_full_thread(make_thread("t1", body="full text"))

        cache_store.upsert_threads([make_thread("t1", labels=["INBOX", "STARRED"])])
        stored = cache_store.get_thread("t1")

        assert stored is not None
        assert stored.messages[0].body_text == "full text"
        assert stored.population is PopulationLevel.FULL
        assert stored.labels == ["INBOX", "STARRED"]

    def test_upsert_messages_keeps_cached_body(self, cache_store: CacheStore, make_thread) -> None:
        thread = make_thread("t1", body="full text")
        cache_store.upsert_full_thread(thread)

        stripped = thread.messages[0].model_copy(update={"body": None, "body_text": None})
        cache_store.upsert_messages([stripped])

        stored = cache_store.get_thread("t1")
        assert stored is not None
        assert stored.messages[0].body == "<p>full text</p>"

    def test_upsert_full_thread_upgrades_population(self, cache_store: CacheStore, make_thread) -> None:
        cache_store.upsert_threads([make_thread("t1")])
        assert cache_store.has_full_thread("t1") is False
        assert [t.id for t in cache_store.get_metadata_only_threads()] == ["t1"]

        cache_store.upsert_full_thread(make_thread("t1", body="now with body"))

        assert cache_store.has_full_thread("t1") is True
        assert cache_store.get_metadata_only_threads() == []

    def test_get_threads_by_labels_requires_all(self, cache_store: CacheStore, make_thread) -> None:
        cache_store.upsert_threads(
            [
                make_thread("t1", labels=["INBOX", "STARRED"], age_minutes=10),
                make_thread("t2", labels=["INBOX"], age_minutes=5),
                make_thread("t3", labels=["SENT"]),
            ]
        )

        assert [t.id for t in cache_store.get_threads_by_labels(["INBOX"])] == ["t2", "t1"]
        assert [t.id for t in cache_store.get_threads_by_labels(["INBOX", "STARRED"])] == ["t1"]
        assert len(cache_store.get_threads_by_labels([])) == 3

    def test_get_threads_by_query(self, cache_store: CacheStore, make_thread) -> None:
        cache_store.upsert_threads(
            [
                make_thread("t1", labels=["INBOX", "UNREAD"]),
                make_thread("t2", labels=["SENT"]),
                make_thread("t3", labels=["Label_7"]),
            ]
        )

        assert [t.id for t in cache_store.get_threads_by_query("in:sent")] == ["t2"]
        assert [t.id for t in cache_store.get_threads_by_query("is:unread")] == ["t1"]
        assert [t.id for t in cache_store.get_threads_by_query("label:Label_7")] == ["t3"]
        assert len(cache_store.get_threads_by_query("from:anyone")) == 3

    def test_update_labels_unknown_thread_is_noop(self, cache_store: CacheStore) -> None:
        cache_store.update_thread_labels("missing", ["STARRED"], [])

        assert cache_store.get_thread("missing") is None

    def test_update_labels_tracks_unread(self, cache_store: CacheStore, make_thread) -> None:
        cache_store.upsert_threads([make_thread("t1", labels=["INBOX", "UNREAD"])])

        cache_store.update_thread_labels("t1", [], ["UNREAD"])
        stored = cache_store.get_thread("t1")

        assert stored is not None
        assert stored.is_unread is False
        assert stored.messages[0].labels == ["INBOX"]

    def test_nudges_survive_upsert_until_cleared(self, cache_store: CacheStore, make_thread) -> None:
        cache_store.upsert_threads([make_thread("t1")])
        cache_store.set_nudge("t1", NudgeType.REPLY)

        cache_store.upsert_threads([make_thread("t1")])
        assert cache_store.get_thread("t1").nudge_type is NudgeType.REPLY

        cache_store.clear_nudges(["t1"])
        assert cache_store.get_thread("t1").nudge_type is NudgeType.NONE

    def test_delete_thread(self, cache_store: CacheStore, make_thread) -> None:
        cache_store.upsert_threads([make_thread("t1", body="bye")])

        cache_store.delete_thread("t1")

        assert cache_store.get_thread("t1") is None
        assert cache_store.get_stats().message_count == 0


class TestPendingActions:
    """Test suite for the pending-action queue."""

    def test_pending_delta_survives_stale_upsert(self, cache_store: CacheStore, make_thread) -> None:
        cache_store.upsert_threads([make_thread("t1", labels=["INBOX"])])
        cache_store.update_thread_labels("t1", [], ["INBOX"])
        cache_store.enqueue_pending_action(PendingActionType.ARCHIVE, "t1")

        # The remote has not seen the archive yet and still reports INBOX.
        cache_store.upsert_threads([make_thread("t1", labels=["INBOX"])])

        assert cache_store.get_thread("t1").labels == []

    def test_synced_action_no_longer_reapplied(self, cache_store: CacheStore, make_thread) -> None:
        action_id = cache_store.enqueue_pending_action(
            PendingActionType.LABEL, "t1", {"add": ["STARRED"], "remove": []}
        )
        cache_store.mark_action_synced(action_id)

        cache_store.upsert_threads([make_thread("t1", labels=["INBOX"])])

        assert cache_store.get_thread("t1").labels == ["INBOX"]
        assert cache_store.get_pending_action_count() == 0

    def test_applying_action_reapplied_but_not_replayed(self, cache_store: CacheStore, make_thread) -> None:
        cache_store.upsert_threads([make_thread("t1", labels=["INBOX"])])
        cache_store.update_thread_labels("t1", [], ["INBOX"])
        action_id = cache_store.enqueue_pending_action(
            PendingActionType.ARCHIVE, "t1", status=PendingActionStatus.APPLYING
        )

        cache_store.upsert_threads([make_thread("t1", labels=["INBOX"])])

        assert cache_store.get_thread("t1").labels == []
        assert cache_store.get_pending_actions() == []
        assert cache_store.is_action_replayable(cache_store.get_pending_action(action_id)) is False

    def test_applying_action_requeued_on_startup(self, cache_store: CacheStore) -> None:
        action_id = cache_store.enqueue_pending_action(
            PendingActionType.ARCHIVE, "t1", status=PendingActionStatus.APPLYING
        )

        cache_store.initialize()

        assert cache_store.get_pending_action(action_id).status is PendingActionStatus.QUEUED
        assert [a.id for a in cache_store.get_pending_actions()] == [action_id]

    def test_actions_returned_in_fifo_order(self, cache_store: CacheStore) -> None:
        first = cache_store.enqueue_pending_action(PendingActionType.ARCHIVE, "t1")
        second = cache_store.enqueue_pending_action(PendingActionType.MARK_READ, "t2")
        third = cache_store.enqueue_pending_action(PendingActionType.LABEL, "t1", {"add": ["X"]})

        actions = cache_store.get_pending_actions()

        assert [a.id for a in actions] == [first, second, third]
        assert actions[2].payload == {"add": ["X"]}

    def test_failed_actions_replay_until_cap(self, settings, make_thread) -> None:
        store = CacheStore(settings.cache_db_path, max_replay_attempts=2)
        store.initialize()
        action_id = store.enqueue_pending_action(PendingActionType.ARCHIVE, "t1")

        store.mark_action_failed(action_id, "boom")
        pending = store.get_pending_actions()
        assert [a.id for a in pending] == [action_id]
        assert pending[0].status is PendingActionStatus.FAILED
        assert pending[0].attempts == 1
        assert pending[0].last_error == "boom"

        store.mark_action_failed(action_id, "boom again")
        assert store.get_pending_actions() == []
        assert [a.id for a in store.get_failed_actions()] == [action_id]

        store.requeue_action(action_id)
        assert [a.id for a in store.get_pending_actions()] == [action_id]
        assert store.get_failed_actions() == []


class TestOutbox:
    """Test suite for the outbox lifecycle."""

    def test_enqueue_and_send(self, cache_store: CacheStore) -> None:
        payload = SendEmailPayload(to="bob@example.com", subject="Hi", body_markdown="**hey**")
        item_id = cache_store.enqueue_outbox(payload)

        items = cache_store.get_outbox_items()
        assert [i.id for i in items] == [item_id]
        assert items[0].payload == payload
        assert cache_store.get_outbox_count() == 1

        cache_store.mark_outbox_sending(item_id)
        assert cache_store.get_outbox_count() == 0

        cache_store.mark_outbox_sent(item_id)
        item = cache_store.get_outbox_item(item_id)
        assert item is not None
        assert item.status is OutboxStatus.SENT
        assert item.sent_at is not None

    def test_failed_items_counted_and_capped(self, settings) -> None:
        store = CacheStore(settings.cache_db_path, max_replay_attempts=1)
        store.initialize()
        item_id = store.enqueue_outbox(SendEmailPayload(to="bob@example.com"))

        store.mark_outbox_failed(item_id, "rejected")

        item = store.get_outbox_item(item_id)
        assert item.status is OutboxStatus.FAILED
        assert item.error == "rejected"
        assert item.attempts == 1
        assert store.get_outbox_count() == 1
        assert store.get_replayable_outbox_items() == []

        store.requeue_outbox_item(item_id)
        assert [i.id for i in store.get_replayable_outbox_items()] == [item_id]

    def test_cancel_outbox_item(self, cache_store: CacheStore) -> None:
        item_id = cache_store.enqueue_outbox(SendEmailPayload(to="bob@example.com"))

        cache_store.cancel_outbox_item(item_id)

        assert cache_store.get_outbox_item(item_id) is None
        assert cache_store.get_outbox_items() == []


class TestSnoozes:
    """Test suite for snooze records."""

    def test_snooze_lifecycle(self, cache_store: CacheStore) -> None:
        now = datetime(2025, 1, 1, 12, 0, tzinfo=timezone.utc)
        cache_store.snooze_thread("t1", now - timedelta(minutes=1), ["INBOX", "UNREAD"])
        cache_store.snooze_thread("t2", now + timedelta(days=1), ["INBOX"])

        expired = cache_store.get_expired_snoozes(now)
        assert [s.thread_id for s in expired] == ["t1"]
        assert expired[0].original_labels == ["INBOX", "UNREAD"]
        assert cache_store.is_snoozed("t2") is True
        assert [s.thread_id for s in cache_store.get_all_snoozed()] == ["t1", "t2"]

        cache_store.cancel_snooze("t1")
        assert cache_store.get_snoozed_thread("t1") is None

    def test_resnooze_replaces_record(self, cache_store: CacheStore) -> None:
        later = datetime(2030, 1, 1, tzinfo=timezone.utc)
        cache_store.snooze_thread("t1", datetime(2029, 1, 1, tzinfo=timezone.utc), ["INBOX"])
        cache_store.snooze_thread("t1", later, ["INBOX"])

        record = cache_store.get_snoozed_thread("t1")
        assert record is not None
        assert record.snooze_until == later
        assert len(cache_store.get_all_snoozed()) == 1


class TestSyncMetadata:
    def test_cursor_round_trip(self, cache_store: CacheStore) -> None:
        assert cache_store.get_last_history_id() is None

        cache_store.set_last_history_id("12345")
        synced = datetime(2025, 1, 1, 12, 0, tzinfo=timezone.utc)
        cache_store.set_last_synced_at(synced)

        assert cache_store.get_last_history_id() == "12345"
        assert cache_store.get_last_synced_at() == synced


class TestPrune:
    """Test suite for size-bounded eviction."""

    def _fill(self, store: CacheStore, make_thread, count: int = 5) -> None:
        for i in range(count):
            store.upsert_full_thread(make_thread(f"t{i}", body="x" * 2000, age_minutes=count - i))

    def test_under_budget_is_noop(self, cache_store: CacheStore, make_thread) -> None:
        self._fill(cache_store, make_thread, count=2)
        size = cache_store.get_stats().size_bytes

        result = cache_store.prune(size + 1)

        assert result.size_after == result.size_before == size
        assert result.bodies_dropped == 0
        assert result.threads_deleted == 0

    def test_bodies_dropped_before_threads(self, cache_store: CacheStore, make_thread) -> None:
        self._fill(cache_store, make_thread)
        size = cache_store.get_stats().size_bytes
        max_bytes = size - 3000

        result = cache_store.prune(max_bytes)

        assert result.bodies_dropped > 0
        assert result.threads_deleted == 0
        assert result.size_after <= max_bytes
        assert cache_store.get_stats().thread_count == 5
        # Least recently fetched bodies go first.
        assert cache_store.has_full_thread("t0") is False
        assert cache_store.has_full_thread("t4") is True

    def test_threads_deleted_when_bodies_are_not_enough(self, cache_store: CacheStore, make_thread) -> None:
        self._fill(cache_store, make_thread)

        result = cache_store.prune(1)

        assert result.bodies_dropped == 5
        assert result.threads_deleted == 5
        assert cache_store.get_stats().thread_count == 0

    def test_protected_threads_untouched(self, cache_store: CacheStore, make_thread) -> None:
        self._fill(cache_store, make_thread)
        cache_store.enqueue_pending_action(PendingActionType.ARCHIVE, "t0")
        cache_store.enqueue_outbox(SendEmailPayload(to="bob@example.com", reply_to_thread_id="t1"))
        cache_store.snooze_thread("t2", datetime(2030, 1, 1, tzinfo=timezone.utc), ["INBOX"])

        cache_store.prune(1)

        for thread_id in ("t0", "t1", "t2"):
            assert cache_store.has_full_thread(thread_id) is True
        assert cache_store.get_thread("t3") is None
        assert cache_store.get_thread("t4") is None

    def test_clear_cache_keeps_queues(self, cache_store: CacheStore, make_thread) -> None:
        self._fill(cache_store, make_thread, count=2)
        cache_store.set_last_history_id("500")
        cache_store.enqueue_pending_action(PendingActionType.ARCHIVE, "t0")
        cache_store.enqueue_outbox(SendEmailPayload(to="bob@example.com"))
        cache_store.snooze_thread("t1", datetime(2030, 1, 1, tzinfo=timezone.utc), ["INBOX"])

        cache_store.clear_cache()

        stats = cache_store.get_stats()
        assert stats.thread_count == 0
        assert stats.message_count == 0
        assert cache_store.get_last_history_id() is None
        assert stats.pending_actions == 1
        assert stats.outbox_count == 1
        assert cache_store.is_snoozed("t1") is True


class TestSearchAndContacts:
    """Test suite for local search and recipient suggestions."""

    def test_search_local_matches_bodies_and_subjects(self, cache_store: CacheStore, make_thread) -> None:
        cache_store.upsert_full_thread(make_thread("t1", body="quarterly budget review"))
        cache_store.upsert_full_thread(make_thread("t2", body="lunch plans", subject="Friday"))

        assert [t.id for t in cache_store.search_local("budget")] == ["t1"]
        assert [t.id for t in cache_store.search_local("frid")] == ["t2"]
        assert cache_store.search_local("   ") == []

    def test_search_after_clear_finds_nothing(self, cache_store: CacheStore, make_thread) -> None:
        cache_store.upsert_full_thread(make_thread("t1", body="quarterly budget review"))

        cache_store.clear_cache()

        assert cache_store.search_local("budget") == []

    def test_contacts_ranked_by_prefix_then_frequency(self, cache_store: CacheStore) -> None:
        cache_store.record_contacts([EmailAddress(name="Anna", email="anna@example.com")])
        cache_store.record_contacts(
            [EmailAddress(name="Joanna", email="joanna@example.com")], frequency_boost=3
        )
        cache_store.record_contacts([EmailAddress(name="Andy", email="Andy@Example.com")])
        cache_store.record_contacts([EmailAddress(name="Andy", email="andy@example.com")])

        suggestions = cache_store.suggest_contacts("an")

        assert [s.email for s in suggestions] == ["andy@example.com", "anna@example.com", "joanna@example.com"]
        assert suggestions[0].frequency == 2
        assert cache_store.suggest_contacts("") == []
