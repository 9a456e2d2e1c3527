"""Write path shared by reconciliation and webhook ingestion.

Every message write goes through insert_messages_if_absent, which is a
conditional insert keyed on external_message_id, followed by
refresh_aggregates in the same transaction.
"""

import uuid
from datetime import datetime, timezone
from typing import Iterable, List, Optional, Set

from sqlalchemy import and_, func, insert, select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from wacanda.logging_config import get_logger
from wacanda.models import Conversation, Message
from wacanda.services.normalizer import NormalizedMessage, contact_name_for, is_group_jid

logger = get_logger("conversation_store")

PREVIEW_LENGTH = 100
DEFAULT_BATCH_SIZE = 50

CONVERSATION_KEY = ["owner_id", "external_conversation_id", "instance_key"]
MESSAGE_KEY = ["external_message_id"]

# status -> statuses it may be reached from
STATUS_PREDECESSORS = {
    "pending": set(),
    "sent": {"pending"},
    "delivered": {"pending", "sent"},
    "read": {"pending", "sent", "delivered"},
    "failed": {"pending", "sent"},
}


def _native_insert(db: Session, model):
    dialect = db.get_bind().dialect.name
    if dialect == "postgresql":
        return pg_insert(model)
    if dialect == "sqlite":
        return sqlite_insert(model)
    return None


def insert_ignoring_conflicts(db: Session, model, rows: List[dict], index_elements: List[str]) -> int:
    """Insert rows, skipping any that collide on index_elements. Returns rows inserted."""
    if not rows:
        return 0

    stmt = _native_insert(db, model)
    if stmt is not None:
        result = db.execute(stmt.values(rows).on_conflict_do_nothing(index_elements=index_elements))
        return max(result.rowcount or 0, 0)

    inserted = 0
    for row in rows:
        try:
            with db.begin_nested():
                db.execute(insert(model).values(**row))
            inserted += 1
        except IntegrityError:
            logger.debug(
                "Skipped duplicate row",
                extra={"context": {"table": model.__tablename__, "key": {k: row.get(k) for k in index_elements}}},
            )
    return inserted


def find_conversation(
    db: Session, *, owner_id, instance_key: str, external_conversation_id: str
) -> Optional[Conversation]:
    return (
        db.query(Conversation)
        .filter(
            Conversation.owner_id == owner_id,
            Conversation.instance_key == instance_key,
            Conversation.external_conversation_id == external_conversation_id,
        )
        .first()
    )


def resolve_conversation(
    db: Session,
    *,
    owner_id,
    instance_key: str,
    external_conversation_id: str,
    contact_name: Optional[str] = None,
) -> Conversation:
    """Get or create the conversation for the natural key (owner, jid, instance)."""
    conversation = find_conversation(
        db, owner_id=owner_id, instance_key=instance_key, external_conversation_id=external_conversation_id
    )
    if conversation:
        if contact_name and conversation.contact_name != contact_name:
            conversation.contact_name = contact_name
        return conversation

    is_group = is_group_jid(external_conversation_id)
    row = {
        "id": uuid.uuid4(),
        "owner_id": owner_id,
        "instance_key": instance_key,
        "external_conversation_id": external_conversation_id,
        "contact_id": external_conversation_id,
        "contact_name": contact_name or contact_name_for(external_conversation_id),
        "status": "active",
        "message_count": 0,
        "contact_metadata": {"is_group": is_group},
    }
    created = insert_ignoring_conflicts(db, Conversation, [row], CONVERSATION_KEY)

    conversation = find_conversation(
        db, owner_id=owner_id, instance_key=instance_key, external_conversation_id=external_conversation_id
    )
    if conversation is None:
        raise RuntimeError(f"Conversation {external_conversation_id} vanished after insert")
    if created:
        logger.info(
            "Conversation created",
            extra={
                "context": {
                    "conversation_id": str(conversation.id),
                    "instance_key": instance_key,
                    "external_conversation_id": external_conversation_id,
                }
            },
        )
    return conversation


def lock_conversation(db: Session, conversation_id) -> None:
    """Row lock that orders concurrent aggregate refreshes for one conversation.

    No-op on SQLite, which serializes writers itself.
    """
    db.execute(select(Conversation.id).where(Conversation.id == conversation_id).with_for_update())


def existing_message_ids(db: Session, conversation_id) -> Set[str]:
    rows = db.execute(select(Message.external_message_id).where(Message.conversation_id == conversation_id))
    return {row[0] for row in rows}


def _message_row(conversation_id, message: NormalizedMessage) -> dict:
    row = message.to_row(conversation_id)
    row["id"] = uuid.uuid4()
    row["ai_processed"] = False
    return row


def insert_messages_if_absent(
    db: Session,
    conversation: Conversation,
    messages: Iterable[NormalizedMessage],
    batch_size: int = DEFAULT_BATCH_SIZE,
    extra_fields: Optional[dict] = None,
) -> int:
    """Conditionally insert messages and refresh the conversation aggregates.

    Duplicates (already stored, or repeated within the input) are skipped
    silently. extra_fields is merged into every row (used for AI replies).
    """
    unique: dict = {}
    for message in messages:
        unique.setdefault(message.external_message_id, message)
    if not unique:
        return 0

    lock_conversation(db, conversation.id)

    rows = []
    for message in unique.values():
        row = _message_row(conversation.id, message)
        if extra_fields:
            row.update(extra_fields)
        rows.append(row)

    batch_size = max(batch_size, 1)
    inserted = 0
    for start in range(0, len(rows), batch_size):
        inserted += insert_ignoring_conflicts(db, Message, rows[start : start + batch_size], MESSAGE_KEY)

    refresh_aggregates(db, conversation)
    return inserted


def refresh_aggregates(db: Session, conversation: Conversation) -> None:
    """Recompute count and last-message fields from the stored messages.

    One UPDATE with scalar subqueries, so the values always match the
    message set visible to this transaction. Ties on timestamp are broken
    by external_message_id, highest wins.
    """
    visible = and_(Message.conversation_id == conversation.id, Message.deleted_at.is_(None))

    def latest(column):
        return (
            select(column)
            .where(visible)
            .order_by(Message.external_timestamp.desc(), Message.external_message_id.desc())
            .limit(1)
            .scalar_subquery()
        )

    db.execute(
        update(Conversation)
        .where(Conversation.id == conversation.id)
        .values(
            message_count=select(func.count(Message.id)).where(visible).scalar_subquery(),
            last_message_at=latest(Message.external_timestamp),
            last_message_preview=latest(func.substr(Message.content, 1, PREVIEW_LENGTH)),
            last_message_direction=latest(Message.direction),
        )
        .execution_options(synchronize_session=False)
    )
    db.expire(
        conversation,
        ["message_count", "last_message_at", "last_message_preview", "last_message_direction"],
    )


def update_message_status(db: Session, external_message_id: str, status: str) -> bool:
    """Advance a message's delivery status. Stale or backwards updates are ignored."""
    predecessors = STATUS_PREDECESSORS.get(status)
    if not predecessors:
        return False

    result = db.execute(
        update(Message)
        .where(Message.external_message_id == external_message_id, Message.status.in_(predecessors))
        .values(status=status)
        .execution_options(synchronize_session=False)
    )
    return (result.rowcount or 0) > 0


def soft_delete_message(db: Session, external_message_id: str) -> Optional[Message]:
    message = db.query(Message).filter(Message.external_message_id == external_message_id).first()
    if message is None or message.deleted_at is not None:
        return None

    conversation = db.get(Conversation, message.conversation_id)
    lock_conversation(db, conversation.id)
    message.status = "deleted"
    message.deleted_at = datetime.now(timezone.utc)
    db.flush()
    refresh_aggregates(db, conversation)
    return message


def archive_conversation(db: Session, conversation: Conversation) -> None:
    conversation.status = "archived"
    conversation.archived_at = datetime.now(timezone.utc)


def merge_contact_metadata(
    conversation: Conversation, metadata: Optional[dict] = None, contact_name: Optional[str] = None
) -> None:
    if contact_name:
        conversation.contact_name = contact_name
    if metadata:
        # reassign so the JSON column is flagged dirty
        conversation.contact_metadata = {**(conversation.contact_metadata or {}), **metadata}


def mark_synced(conversation: Conversation, status: str = "synced") -> None:
    conversation.sync_status = status
    conversation.last_synced_at = datetime.now(timezone.utc)
