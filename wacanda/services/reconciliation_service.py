"""Full-history reconciliation of a provider instance into the conversation store."""

from collections import defaultdict
from concurrent.futures import FIRST_COMPLETED, ThreadPoolExecutor, wait
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Callable, Dict, List, Optional, Tuple
from uuid import uuid4

import redis
from sqlalchemy.orm import Session

from wacanda.config import settings
from wacanda.database import SessionLocal
from wacanda.logging_config import ContextLogger, get_logger
from wacanda.services.alert_service import alert_error
from wacanda.services.conversation_store import (
    existing_message_ids,
    find_conversation,
    insert_messages_if_absent,
    mark_synced,
    resolve_conversation,
)
from wacanda.services.normalizer import NormalizationError, NormalizedMessage, normalize_message
from wacanda.services.provider_client import ProviderClient, get_provider_client
from wacanda.services.result import ResultError

logger = get_logger("reconciliation")

LOCK_KEY_PREFIX = "wacanda:sync-lock"


def _now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class SyncProgress:
    instance_key: str
    status: str = "pending"  # pending, running, completed, error
    total_messages: int = 0
    processed_messages: int = 0
    inserted_messages: int = 0
    skipped_messages: int = 0
    total_conversations: int = 0
    processed_conversations: int = 0
    failed_conversations: int = 0
    errors: List[str] = field(default_factory=list)
    started_at: datetime = field(default_factory=_now)
    finished_at: Optional[datetime] = None

    @property
    def duration_seconds(self) -> Optional[float]:
        if self.finished_at is None:
            return None
        return (self.finished_at - self.started_at).total_seconds()

    def fail(self, error: str) -> None:
        self.status = "error"
        self.errors.append(error)

    def finish(self) -> None:
        if self.status == "running":
            self.status = "completed"
        self.finished_at = _now()

    def to_dict(self) -> dict:
        data = asdict(self)
        data["duration_seconds"] = self.duration_seconds
        return data


def group_by_conversation(payloads: List[dict]) -> Tuple[Dict[str, List[dict]], int]:
    """Group raw provider messages by remoteJid. Returns (groups, unattributable count)."""
    groups: Dict[str, List[dict]] = defaultdict(list)
    orphans = 0
    for payload in payloads:
        key = payload.get("key") if isinstance(payload, dict) else None
        remote_jid = (key or {}).get("remoteJid")
        if not remote_jid:
            orphans += 1
            continue
        groups[remote_jid].append(payload)
    return dict(groups), orphans


def _inbound_contact_name(messages: List[NormalizedMessage]) -> Optional[str]:
    for message in sorted(messages, key=lambda m: m.external_timestamp, reverse=True):
        if message.direction == "inbound" and message.sender_name:
            return message.contact_name
    return None


class ReconciliationEngine:
    def __init__(
        self,
        provider: ProviderClient,
        session_factory: Callable[[], Session],
        *,
        batch_size: int = 50,
        max_failed_conversations: int = 10,
        max_workers: int = 4,
        lock_client: Optional[redis.Redis] = None,
        lock_ttl_seconds: int = 1800,
    ):
        self.provider = provider
        self.session_factory = session_factory
        self.batch_size = batch_size
        self.max_failed_conversations = max_failed_conversations
        self.max_workers = max_workers
        self.lock_client = lock_client
        self.lock_ttl_seconds = lock_ttl_seconds

    def reconcile(self, owner_id, instance_key: str) -> SyncProgress:
        progress = SyncProgress(instance_key=instance_key, status="running")
        log = ContextLogger(logger, {"instance_key": instance_key, "owner_id": str(owner_id)})

        lock_token = self._acquire_lock(instance_key)
        if lock_token is False:
            progress.fail(f"Reconciliation already running for {instance_key}")
            progress.finish()
            log.warning("Reconciliation skipped, lock held")
            return progress

        try:
            try:
                payloads = self.provider.list_all_messages(instance_key).unwrap()
            except ResultError as e:
                payloads = None
                progress.fail(f"Provider fetch failed: {e}")

            if payloads is not None:
                groups, orphans = group_by_conversation(payloads)
                progress.total_messages = len(payloads)
                progress.skipped_messages = orphans
                progress.total_conversations = len(groups)

                # largest threads first so progress is visible early
                ordered = sorted(groups.items(), key=lambda item: len(item[1]), reverse=True)
                log.info(
                    "Reconciliation started",
                    context={"messages": len(payloads), "conversations": len(groups)},
                )
                self._run_groups(owner_id, instance_key, ordered, progress)
        finally:
            self._release_lock(instance_key, lock_token)
            progress.finish()

        log.info("Reconciliation finished", context=self._summary(progress))
        if progress.status == "error":
            alert_error("Reconciliation aborted", self._summary(progress))
        return progress

    def reconcile_conversation(self, owner_id, instance_key: str, external_conversation_id: str) -> SyncProgress:
        """Resync a single conversation from the provider."""
        progress = SyncProgress(instance_key=instance_key, status="running", total_conversations=1)
        try:
            payloads = self.provider.list_messages(instance_key, external_conversation_id).unwrap()
        except ResultError as e:
            progress.fail(f"Provider fetch failed: {e}")
            progress.finish()
            return progress

        progress.total_messages = len(payloads)
        self._run_groups(owner_id, instance_key, [(external_conversation_id, payloads)], progress)
        progress.finish()
        return progress

    def _run_groups(self, owner_id, instance_key: str, groups: List[Tuple[str, List[dict]]], progress: SyncProgress):
        if self.max_workers <= 1:
            for remote_jid, payloads in groups:
                outcome = self._sync_group_safely(owner_id, instance_key, remote_jid, payloads)
                if self._record(progress, remote_jid, payloads, outcome):
                    return
            return

        queue = iter(groups)
        in_flight = {}
        aborted = False

        with ThreadPoolExecutor(max_workers=self.max_workers, thread_name_prefix="reconcile") as executor:

            def submit_next() -> bool:
                item = next(queue, None)
                if item is None:
                    return False
                future = executor.submit(self._sync_group_safely, owner_id, instance_key, item[0], item[1])
                in_flight[future] = item
                return True

            for _ in range(self.max_workers):
                if not submit_next():
                    break

            while in_flight:
                done, _ = wait(in_flight, return_when=FIRST_COMPLETED)
                for future in done:
                    remote_jid, payloads = in_flight.pop(future)
                    if self._record(progress, remote_jid, payloads, future.result()):
                        aborted = True
                    # already-running workers finish and keep their commits
                    if not aborted:
                        submit_next()

    def _record(
        self, progress: SyncProgress, remote_jid: str, payloads: List[dict], outcome: Tuple[int, int, Optional[str]]
    ) -> bool:
        """Fold one conversation outcome into progress. True means abort the run."""
        inserted, skipped, error = outcome
        if error is None:
            progress.processed_conversations += 1
            progress.processed_messages += len(payloads) - skipped
            progress.inserted_messages += inserted
            progress.skipped_messages += skipped
            return False

        progress.failed_conversations += 1
        progress.errors.append(f"Error syncing conversation {remote_jid} ({len(payloads)} messages): {error}")
        if progress.failed_conversations > self.max_failed_conversations and progress.status != "error":
            progress.fail(
                f"Aborted after {progress.failed_conversations} failed conversations "
                f"(limit {self.max_failed_conversations})"
            )
            return True
        return progress.status == "error"

    def _sync_group_safely(
        self, owner_id, instance_key: str, remote_jid: str, payloads: List[dict]
    ) -> Tuple[int, int, Optional[str]]:
        try:
            inserted, skipped = self.sync_conversation(owner_id, instance_key, remote_jid, payloads)
            return inserted, skipped, None
        except Exception as e:
            log = ContextLogger(logger, {"instance_key": instance_key}).bind(remote_jid=remote_jid)
            log.warning(
                "Conversation sync failed", context={"error": str(e), "messages": len(payloads)}, exc_info=True
            )
            self._mark_sync_error(owner_id, instance_key, remote_jid)
            return 0, 0, str(e) or type(e).__name__

    def sync_conversation(self, owner_id, instance_key: str, remote_jid: str, payloads: List[dict]) -> Tuple[int, int]:
        """Merge one conversation's provider messages. Returns (inserted, skipped)."""
        normalized: List[NormalizedMessage] = []
        skipped = 0
        for payload in payloads:
            try:
                normalized.append(normalize_message(payload))
            except NormalizationError:
                skipped += 1

        db = self.session_factory()
        try:
            conversation = resolve_conversation(
                db,
                owner_id=owner_id,
                instance_key=instance_key,
                external_conversation_id=remote_jid,
                contact_name=_inbound_contact_name(normalized),
            )
            known = existing_message_ids(db, conversation.id)
            fresh = [message for message in normalized if message.external_message_id not in known]

            inserted = 0
            if fresh:
                inserted = insert_messages_if_absent(db, conversation, fresh, batch_size=self.batch_size)
            mark_synced(conversation)
            db.commit()
            return inserted, skipped
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

    def _mark_sync_error(self, owner_id, instance_key: str, remote_jid: str) -> None:
        db = self.session_factory()
        try:
            conversation = find_conversation(
                db, owner_id=owner_id, instance_key=instance_key, external_conversation_id=remote_jid
            )
            if conversation is not None:
                mark_synced(conversation, status="error")
                db.commit()
        except Exception as e:
            db.rollback()
            logger.warning(f"Could not record sync error for {remote_jid}: {e}")
        finally:
            db.close()

    def _acquire_lock(self, instance_key: str):
        """Returns a token, None when locking is unavailable, or False when another run holds it."""
        if self.lock_client is None:
            return None
        token = uuid4().hex
        try:
            acquired = self.lock_client.set(
                f"{LOCK_KEY_PREFIX}:{instance_key}", token, nx=True, ex=self.lock_ttl_seconds
            )
        except redis.RedisError as e:
            logger.warning(f"Sync lock unavailable, proceeding without it: {e}")
            return None
        return token if acquired else False

    def _release_lock(self, instance_key: str, token) -> None:
        if not token or self.lock_client is None:
            return
        key = f"{LOCK_KEY_PREFIX}:{instance_key}"
        try:
            if self.lock_client.get(key) == token:
                self.lock_client.delete(key)
        except redis.RedisError as e:
            logger.warning(f"Sync lock release failed: {e}")

    @staticmethod
    def _summary(progress: SyncProgress) -> dict:
        return {
            "status": progress.status,
            "total_messages": progress.total_messages,
            "inserted_messages": progress.inserted_messages,
            "processed_conversations": progress.processed_conversations,
            "failed_conversations": progress.failed_conversations,
            "duration_seconds": progress.duration_seconds,
        }


_lock_client: Optional[redis.Redis] = None


def get_lock_client() -> Optional[redis.Redis]:
    global _lock_client
    if not settings.redis_url:
        return None
    if _lock_client is None:
        _lock_client = redis.from_url(settings.redis_url, decode_responses=True, socket_timeout=2.0)
    return _lock_client


def build_reconciliation_engine() -> ReconciliationEngine:
    return ReconciliationEngine(
        get_provider_client(),
        SessionLocal,
        batch_size=settings.sync_batch_size,
        max_failed_conversations=settings.sync_max_failed_conversations,
        max_workers=settings.sync_max_workers,
        lock_client=get_lock_client(),
        lock_ttl_seconds=settings.sync_lock_ttl_seconds,
    )
