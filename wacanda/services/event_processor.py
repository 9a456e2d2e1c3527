"""Real-time handling of provider webhook events.

Message events go through the same conditional insert as reconciliation.
Everything else touches only the fields it owns and never the message
aggregates.
"""

from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime, timezone
from functools import partial
from typing import Any, Callable, Dict, List, Optional

from sqlalchemy.orm import Session

from wacanda.logging_config import get_logger
from wacanda.models import Conversation, ProviderInstance
from wacanda.services.conversation_store import (
    archive_conversation,
    existing_message_ids,
    find_conversation,
    insert_messages_if_absent,
    merge_contact_metadata,
    resolve_conversation,
    soft_delete_message,
    update_message_status,
)
from wacanda.services.normalizer import NormalizationError, is_group_jid, map_status, normalize_message

logger = get_logger("event_processor")

CONNECTION_STATES = {"open": "connected", "connecting": "connecting", "close": "disconnected"}


def normalize_event_name(name: Optional[str]) -> str:
    """'messages.upsert', 'MESSAGES_UPSERT' and 'group-participants.update' share one spelling."""
    return (name or "").strip().upper().replace(".", "_").replace("-", "_")


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _as_list(data: Any, *envelope_keys: str) -> List[dict]:
    if isinstance(data, list):
        return [item for item in data if isinstance(item, dict)]
    if isinstance(data, dict):
        for key in envelope_keys:
            nested = data.get(key)
            if isinstance(nested, list):
                return [item for item in nested if isinstance(item, dict)]
        return [data]
    return []


def _jid_of(item: dict) -> Optional[str]:
    return item.get("id") or item.get("remoteJid") or (item.get("key") or {}).get("remoteJid")


@dataclass
class EventOutcome:
    event: str
    handled: bool
    action: str
    detail: Dict[str, Any] = field(default_factory=dict)
    # (conversation_id, external_message_id) of newly stored inbound messages
    new_inbound: List[tuple] = field(default_factory=list)


class EventProcessor:
    def __init__(self, batch_size: int = 50):
        self.batch_size = batch_size
        self._handlers: Dict[str, Callable[[Session, ProviderInstance, Any], EventOutcome]] = {
            "MESSAGES_UPSERT": self._on_messages,
            "MESSAGES_SET": self._on_messages,
            "SEND_MESSAGE": self._on_messages,
            "MESSAGES_UPDATE": self._on_message_status,
            "MESSAGES_DELETE": self._on_message_delete,
            "CONTACTS_UPSERT": self._on_contacts,
            "CONTACTS_UPDATE": self._on_contacts,
            "CONTACTS_SET": self._on_contacts,
            "PRESENCE_UPDATE": self._on_presence,
            "CHATS_UPSERT": self._on_chats,
            "CHATS_UPDATE": self._on_chats,
            "CHATS_SET": self._on_chats,
            "GROUPS_UPSERT": self._on_chats,
            "GROUP_UPDATE": self._on_chats,
            "GROUP_PARTICIPANTS_UPDATE": self._on_group_participants,
            "CHATS_DELETE": self._on_chats_delete,
            "CONNECTION_UPDATE": self._on_connection,
            "QRCODE_UPDATED": self._on_qrcode,
            "APPLICATION_STARTUP": partial(self._on_lifecycle, "APPLICATION_STARTUP"),
            "LOGOUT_INSTANCE": partial(self._on_lifecycle, "LOGOUT_INSTANCE"),
            "REMOVE_INSTANCE": partial(self._on_lifecycle, "REMOVE_INSTANCE"),
            "NEW_JWT_TOKEN": partial(self._on_lifecycle, "NEW_JWT_TOKEN"),
        }

    def handle(self, db: Session, event: dict) -> EventOutcome:
        """Apply one webhook event. Never raises; failures are logged and reported in the outcome."""
        name = normalize_event_name(event.get("event"))
        instance_key = event.get("instance")
        context = {"event": name, "instance_key": instance_key}

        handler = self._handlers.get(name)
        if handler is None:
            logger.info("Ignoring unknown provider event", extra={"context": context})
            return EventOutcome(event=name, handled=False, action="ignored")

        instance = self._instance(db, instance_key)
        if instance is None:
            logger.warning("Event for unknown instance", extra={"context": context})
            return EventOutcome(event=name, handled=False, action="unknown_instance")

        try:
            outcome = handler(db, instance, event.get("data"))
            db.commit()
        except Exception as e:
            db.rollback()
            logger.error(
                "Provider event failed", extra={"context": {**context, "error": str(e)}}, exc_info=True
            )
            return EventOutcome(event=name, handled=False, action="error", detail={"error": str(e)})

        outcome.event = name
        logger.info("Provider event applied", extra={"context": {**context, "action": outcome.action, **outcome.detail}})
        return outcome

    @staticmethod
    def _instance(db: Session, instance_key: Optional[str]) -> Optional[ProviderInstance]:
        if not instance_key:
            return None
        return db.query(ProviderInstance).filter(ProviderInstance.instance_key == instance_key).first()

    def _conversation(self, db: Session, instance: ProviderInstance, jid: Optional[str]) -> Optional[Conversation]:
        if not jid:
            return None
        return find_conversation(
            db, owner_id=instance.owner_id, instance_key=instance.instance_key, external_conversation_id=jid
        )

    def _on_messages(self, db: Session, instance: ProviderInstance, data: Any) -> EventOutcome:
        grouped = defaultdict(list)
        skipped = 0
        for payload in _as_list(data, "messages"):
            try:
                message = normalize_message(payload)
            except NormalizationError as e:
                logger.warning(f"Skipping unattributable message: {e}")
                skipped += 1
                continue
            grouped[message.external_conversation_id].append(message)

        inserted = 0
        new_inbound = []
        for remote_jid, messages in grouped.items():
            inbound_names = [m.contact_name for m in messages if m.direction == "inbound" and m.sender_name]
            conversation = resolve_conversation(
                db,
                owner_id=instance.owner_id,
                instance_key=instance.instance_key,
                external_conversation_id=remote_jid,
                contact_name=inbound_names[-1] if inbound_names else None,
            )
            known = existing_message_ids(db, conversation.id)
            inserted += insert_messages_if_absent(db, conversation, messages, batch_size=self.batch_size)
            for m in messages:
                if m.direction == "inbound" and m.external_message_id not in known:
                    known.add(m.external_message_id)
                    new_inbound.append((conversation.id, m.external_message_id))

        return EventOutcome(
            event="",
            handled=True,
            action="messages_stored",
            detail={"inserted": inserted, "skipped": skipped, "conversations": len(grouped)},
            new_inbound=new_inbound,
        )

    def _on_message_status(self, db: Session, instance: ProviderInstance, data: Any) -> EventOutcome:
        updated = 0
        for item in _as_list(data):
            message_id = (item.get("key") or {}).get("id") or item.get("keyId") or item.get("messageId")
            status = map_status(item.get("status") or (item.get("update") or {}).get("status"))
            if message_id and update_message_status(db, message_id, status):
                updated += 1
        return EventOutcome(event="", handled=True, action="status_updated", detail={"updated": updated})

    def _on_message_delete(self, db: Session, instance: ProviderInstance, data: Any) -> EventOutcome:
        deleted = 0
        for item in _as_list(data):
            message_id = (item.get("key") or {}).get("id") or item.get("id")
            if message_id and soft_delete_message(db, message_id) is not None:
                deleted += 1
        return EventOutcome(event="", handled=True, action="messages_deleted", detail={"deleted": deleted})

    def _on_contacts(self, db: Session, instance: ProviderInstance, data: Any) -> EventOutcome:
        updated = 0
        for item in _as_list(data, "contacts"):
            conversation = self._conversation(db, instance, _jid_of(item))
            if conversation is None:
                continue
            name = item.get("verifiedName") or item.get("notify") or item.get("pushName") or item.get("name")
            metadata = {
                key: item[key]
                for key in ("verifiedName", "notify", "pushName", "profilePicUrl")
                if item.get(key) is not None
            }
            merge_contact_metadata(conversation, metadata, contact_name=name)
            updated += 1
        return EventOutcome(event="", handled=True, action="contacts_updated", detail={"updated": updated})

    def _on_presence(self, db: Session, instance: ProviderInstance, data: Any) -> EventOutcome:
        item = data if isinstance(data, dict) else {}
        conversation = self._conversation(db, instance, _jid_of(item))
        if conversation is None:
            return EventOutcome(event="", handled=True, action="presence_ignored")
        merge_contact_metadata(
            conversation, {"presence": item.get("presences"), "last_presence_update": _now().isoformat()}
        )
        return EventOutcome(event="", handled=True, action="presence_updated")

    def _on_chats(self, db: Session, instance: ProviderInstance, data: Any) -> EventOutcome:
        updated = 0
        for item in _as_list(data, "chats"):
            jid = _jid_of(item)
            conversation = self._conversation(db, instance, jid)
            if conversation is None:
                continue
            metadata = {"is_group": is_group_jid(jid)}
            for source, target in (("unreadCount", "unread_count"), ("subject", "subject"), ("participants", "participants")):
                if item.get(source) is not None:
                    metadata[target] = item[source]
            name = item.get("subject") if is_group_jid(jid) else item.get("name")
            merge_contact_metadata(conversation, metadata, contact_name=name)
            updated += 1
        return EventOutcome(event="", handled=True, action="chats_updated", detail={"updated": updated})

    def _on_group_participants(self, db: Session, instance: ProviderInstance, data: Any) -> EventOutcome:
        item = data if isinstance(data, dict) else {}
        conversation = self._conversation(db, instance, _jid_of(item))
        if conversation is None:
            return EventOutcome(event="", handled=True, action="participants_ignored")
        merge_contact_metadata(
            conversation,
            {
                "is_group": True,
                "last_participant_update": {
                    "action": item.get("action"),
                    "participants": item.get("participants") or [],
                    "timestamp": _now().isoformat(),
                },
            },
        )
        return EventOutcome(event="", handled=True, action="participants_updated")

    def _on_chats_delete(self, db: Session, instance: ProviderInstance, data: Any) -> EventOutcome:
        items = data if isinstance(data, list) else [data]
        archived = 0
        for item in items:
            jid = item if isinstance(item, str) else _jid_of(item or {})
            conversation = self._conversation(db, instance, jid)
            if conversation is not None and conversation.status != "archived":
                archive_conversation(db, conversation)
                archived += 1
        return EventOutcome(event="", handled=True, action="conversations_archived", detail={"archived": archived})

    def _on_connection(self, db: Session, instance: ProviderInstance, data: Any) -> EventOutcome:
        state = (data or {}).get("state") if isinstance(data, dict) else None
        status = CONNECTION_STATES.get(state, "disconnected")
        instance.status = status
        if status == "connected":
            instance.last_connected_at = _now()
            instance.qr_code = None
        return EventOutcome(event="", handled=True, action="connection_updated", detail={"status": status})

    def _on_qrcode(self, db: Session, instance: ProviderInstance, data: Any) -> EventOutcome:
        qrcode = (data or {}).get("qrcode") if isinstance(data, dict) else None
        if isinstance(qrcode, dict):
            instance.qr_code = qrcode.get("base64") or qrcode.get("code")
        elif isinstance(qrcode, str):
            instance.qr_code = qrcode
        instance.status = "connecting"
        return EventOutcome(event="", handled=True, action="qrcode_updated")

    def _on_lifecycle(self, kind: str, db: Session, instance: ProviderInstance, data: Any) -> EventOutcome:
        metadata = dict(instance.instance_metadata or {})
        if kind == "APPLICATION_STARTUP":
            metadata["last_startup_at"] = _now().isoformat()
        elif kind == "NEW_JWT_TOKEN":
            metadata["token_refreshed_at"] = _now().isoformat()
        elif kind == "LOGOUT_INSTANCE":
            instance.status = "logged_out"
            instance.qr_code = None
        elif kind == "REMOVE_INSTANCE":
            instance.status = "removed"
            instance.qr_code = None
        instance.instance_metadata = metadata
        return EventOutcome(event="", handled=True, action=kind.lower(), detail={"status": instance.status})
