"""Unit tests for the command-line interface."""

from datetime import datetime, timezone
from pathlib import Path

import pytest

from offline_mail_sync.cache import CacheStore
from offline_mail_sync.cli import main
from offline_mail_sync.config import get_settings
from offline_mail_sync.models import PendingActionType, SendEmailPayload


@pytest.fixture(autouse=True)
def fresh_settings():
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture
def db_path(tmp_path) -> Path:
    return tmp_path / "cli.sqlite3"


@pytest.fixture
def store(db_path) -> CacheStore:
    cache = CacheStore(db_path, max_replay_attempts=get_settings().max_replay_attempts)
    cache.initialize()
    return cache


class TestCli:
    """Test suite for the offline cache commands."""

    def test_stats_on_empty_cache(self, db_path, capsys) -> None:
        assert main(["stats", "--db", str(db_path)]) == 0

        out = capsys.readouterr().out
        assert "Threads: 0" in out
        assert "Last synced: never" in out

    def test_stats_lists_actions_needing_attention(self, store, db_path, make_thread, capsys) -> None:
        store.upsert_threads([make_thread("t1")])
        action_id = store.enqueue_pending_action(PendingActionType.ARCHIVE, "t1")
        for _ in range(get_settings().max_replay_attempts):
            store.mark_action_failed(action_id, "label not found")

        assert main(["stats", "--db", str(db_path)]) == 0

        out = capsys.readouterr().out
        assert "Threads: 1" in out
        assert "Actions needing attention (1)" in out
        assert "label not found" in out

    def test_outbox_list_and_cancel(self, store, db_path, capsys) -> None:
        item_id = store.enqueue_outbox(SendEmailPayload(to="bob@example.com", subject="Weekly report"))

        assert main(["outbox", "list", "--db", str(db_path)]) == 0
        assert "Weekly report" in capsys.readouterr().out

        assert main(["outbox", "cancel", str(item_id), "--db", str(db_path)]) == 0
        assert store.get_outbox_item(item_id) is None
        assert main(["outbox", "cancel", str(item_id), "--db", str(db_path)]) == 1

    def test_snoozed(self, store, db_path, make_thread, capsys) -> None:
        store.upsert_threads([make_thread("t1", subject="Dentist")])
        store.snooze_thread("t1", datetime(2030, 1, 1, 8, 0, tzinfo=timezone.utc), ["INBOX"])

        assert main(["snoozed", "--db", str(db_path)]) == 0

        out = capsys.readouterr().out
        assert "t1" in out
        assert "Dentist" in out

    def test_search(self, store, db_path, make_thread, capsys) -> None:
        store.upsert_full_thread(make_thread("t1", subject="Budget", body="numbers for q3"))

        assert main(["search", "numbers", "--db", str(db_path)]) == 0

        assert "Budget" in capsys.readouterr().out

    def test_clear_cache_keeps_outbox(self, store, db_path, make_thread) -> None:
        store.upsert_threads([make_thread("t1")])
        store.enqueue_outbox(SendEmailPayload(to="bob@example.com"))

        assert main(["clear-cache", "--db", str(db_path)]) == 0

        stats = store.get_stats()
        assert stats.thread_count == 0
        assert stats.outbox_count == 1
