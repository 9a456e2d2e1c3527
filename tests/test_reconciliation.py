from datetime import datetime
from unittest.mock import MagicMock, Mock, patch

import redis

from conftest import INSTANCE_KEY, REMOTE_JID
from wacanda.models import Conversation, Message
from wacanda.services.reconciliation_service import ReconciliationEngine, SyncProgress, group_by_conversation
from wacanda.services.result import Result

OTHER_JID = "5511777777777@s.whatsapp.net"


def _engine(session_factory, provider, **kwargs):
    kwargs.setdefault("max_workers", 1)
    return ReconciliationEngine(provider, session_factory, **kwargs)


def _provider(messages):
    provider = Mock()
    provider.list_all_messages.return_value = Result.success(messages)
    provider.list_messages.return_value = Result.success(messages)
    return provider


class TestGroupByConversation:
    def test_groups_and_counts_orphans(self, make_message):
        payloads = [
            make_message("m1"),
            make_message("m2", remote_jid=OTHER_JID),
            make_message("m3"),
            {"key": {"id": "orphan"}},
        ]

        groups, orphans = group_by_conversation(payloads)

        assert sorted(groups) == sorted([REMOTE_JID, OTHER_JID])
        assert len(groups[REMOTE_JID]) == 2
        assert orphans == 1


class TestReconcile:
    def test_mixed_order_history(self, db, session_factory, instance, owner_id, make_message):
        provider = _provider(
            [
                make_message("m2", text="second", timestamp=1700000200),
                make_message("m3", text="third", timestamp=1700000300),
                make_message("m1", text="first", timestamp=1700000100),
            ]
        )

        progress = _engine(session_factory, provider).reconcile(owner_id, INSTANCE_KEY)

        assert progress.status == "completed"
        assert progress.inserted_messages == 3
        assert progress.processed_conversations == 1
        conversation = db.query(Conversation).one()
        assert conversation.message_count == 3
        assert conversation.last_message_preview == "third"
        assert conversation.last_message_at.replace(tzinfo=None) == datetime(2023, 11, 14, 22, 18, 20)
        assert conversation.sync_status == "synced"
        assert conversation.contact_name == "Maria"

    def test_second_run_is_idempotent(self, db, session_factory, instance, owner_id, make_message):
        provider = _provider([make_message("m1"), make_message("m2", timestamp=1700000100)])
        engine = _engine(session_factory, provider)

        engine.reconcile(owner_id, INSTANCE_KEY)
        progress = engine.reconcile(owner_id, INSTANCE_KEY)

        assert progress.status == "completed"
        assert progress.inserted_messages == 0
        assert db.query(Message).count() == 2
        assert db.query(Conversation).one().message_count == 2

    def test_unattributable_messages_are_skipped(self, db, session_factory, instance, owner_id, make_message):
        provider = _provider([make_message("m1"), {"key": {"id": "x"}, "message": {"conversation": "?"}}])

        progress = _engine(session_factory, provider).reconcile(owner_id, INSTANCE_KEY)

        assert progress.status == "completed"
        assert progress.skipped_messages == 1
        assert progress.inserted_messages == 1

    def test_provider_failure_reports_error(self, session_factory, instance, owner_id):
        provider = Mock()
        provider.list_all_messages.return_value = Result.failure("down", code="provider_unavailable")

        with patch("wacanda.services.reconciliation_service.alert_error") as mock_alert:
            progress = _engine(session_factory, provider).reconcile(owner_id, INSTANCE_KEY)

        assert progress.status == "error"
        assert "Provider fetch failed" in progress.errors[0]
        assert progress.finished_at is not None
        mock_alert.assert_called_once()

    def test_failed_conversation_does_not_stop_others(self, db, session_factory, instance, owner_id, make_message):
        provider = _provider([make_message("m1"), make_message("m2", remote_jid=OTHER_JID)])
        engine = _engine(session_factory, provider)
        real_sync = engine.sync_conversation

        def flaky(owner, key, jid, payloads):
            if jid == OTHER_JID:
                raise RuntimeError("boom")
            return real_sync(owner, key, jid, payloads)

        with patch.object(engine, "sync_conversation", side_effect=flaky):
            progress = engine.reconcile(owner_id, INSTANCE_KEY)

        assert progress.status == "completed"
        assert progress.processed_conversations == 1
        assert progress.failed_conversations == 1
        assert "boom" in progress.errors[0]
        assert db.query(Message).count() == 1

    def test_aborts_after_too_many_failures(self, session_factory, instance, owner_id, make_message):
        jids = [f"55110000{i:05d}@s.whatsapp.net" for i in range(15)]
        provider = _provider([make_message(f"m{i}", remote_jid=jid) for i, jid in enumerate(jids)])
        engine = _engine(session_factory, provider, max_failed_conversations=10)

        with patch.object(engine, "sync_conversation", side_effect=RuntimeError("db down")), patch(
            "wacanda.services.reconciliation_service.alert_error"
        ) as mock_alert:
            progress = engine.reconcile(owner_id, INSTANCE_KEY)

        assert progress.status == "error"
        assert progress.failed_conversations == 11
        assert "Aborted" in progress.errors[-1]
        mock_alert.assert_called_once()

    def test_parallel_workers_process_every_group(self, session_factory, instance, owner_id, make_message):
        jids = [f"55110000{i:05d}@s.whatsapp.net" for i in range(6)]
        provider = _provider([make_message(f"m{i}", remote_jid=jid) for i, jid in enumerate(jids)])
        engine = _engine(session_factory, provider, max_workers=3)

        with patch.object(engine, "sync_conversation", return_value=(1, 0)) as mock_sync:
            progress = engine.reconcile(owner_id, INSTANCE_KEY)

        assert mock_sync.call_count == 6
        assert progress.processed_conversations == 6
        assert progress.inserted_messages == 6

    def test_single_conversation_resync(self, db, session_factory, instance, owner_id, make_message):
        provider = _provider([make_message("m1"), make_message("m2", timestamp=1700000100)])

        progress = _engine(session_factory, provider).reconcile_conversation(owner_id, INSTANCE_KEY, REMOTE_JID)

        provider.list_messages.assert_called_once_with(INSTANCE_KEY, REMOTE_JID)
        assert progress.status == "completed"
        assert db.query(Conversation).one().message_count == 2


class TestSyncLock:
    def test_held_lock_skips_run(self, session_factory, owner_id):
        lock = MagicMock()
        lock.set.return_value = None
        provider = _provider([])

        progress = _engine(session_factory, provider, lock_client=lock).reconcile(owner_id, INSTANCE_KEY)

        assert progress.status == "error"
        assert "already running" in progress.errors[0]
        provider.list_all_messages.assert_not_called()

    def test_lock_released_after_run(self, session_factory, instance, owner_id):
        lock = MagicMock()
        lock.set.return_value = True
        lock.get.side_effect = lambda key: lock.set.call_args[0][1]

        _engine(session_factory, _provider([]), lock_client=lock).reconcile(owner_id, INSTANCE_KEY)

        key = lock.set.call_args[0][0]
        assert key == f"wacanda:sync-lock:{INSTANCE_KEY}"
        assert lock.set.call_args[1] == {"nx": True, "ex": 1800}
        lock.delete.assert_called_once_with(key)

    def test_redis_outage_does_not_block_sync(self, session_factory, instance, owner_id, make_message):
        lock = MagicMock()
        lock.set.side_effect = redis.ConnectionError("refused")

        progress = _engine(session_factory, _provider([make_message("m1")]), lock_client=lock).reconcile(
            owner_id, INSTANCE_KEY
        )

        assert progress.status == "completed"
        lock.delete.assert_not_called()


class TestSyncProgress:
    def test_to_dict_includes_duration(self):
        progress = SyncProgress(instance_key=INSTANCE_KEY, status="running")
        progress.finish()

        data = progress.to_dict()

        assert data["status"] == "completed"
        assert data["duration_seconds"] >= 0
