"""Map provider message payloads onto one canonical message record.

The gateway delivers the same WhatsApp message in several shapes (history
sync, webhook upsert, send echo). Everything downstream works with
NormalizedMessage only.
"""

import hashlib
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Optional

MESSAGE_TYPES = ("text", "image", "audio", "video", "document", "location", "contact", "sticker")

PROVIDER_TYPE_MAP = {
    "conversation": "text",
    "extendedTextMessage": "text",
    "imageMessage": "image",
    "audioMessage": "audio",
    "pttMessage": "audio",
    "videoMessage": "video",
    "ptvMessage": "video",
    "documentMessage": "document",
    "documentWithCaptionMessage": "document",
    "locationMessage": "location",
    "liveLocationMessage": "location",
    "contactMessage": "contact",
    "contactsArrayMessage": "contact",
    "stickerMessage": "sticker",
}

TYPE_TAGS = {
    "image": "Image",
    "audio": "Audio",
    "video": "Video",
    "document": "Document",
    "location": "Location",
    "contact": "Contact",
    "sticker": "Sticker",
}

# Provider ack names, shared by history payloads and MESSAGES_UPDATE events.
STATUS_MAP = {
    "PENDING": "pending",
    "SERVER_ACK": "sent",
    "DELIVERY_ACK": "delivered",
    "READ": "read",
    "PLAYED": "read",
    "ERROR": "failed",
}

PERSONAL_SUFFIX = "@s.whatsapp.net"
GROUP_SUFFIX = "@g.us"


class NormalizationError(ValueError):
    """Payload cannot be attributed to any conversation."""


@dataclass
class NormalizedMessage:
    external_message_id: str
    external_conversation_id: str
    content: str
    message_type: str
    direction: str
    sender_type: str
    external_timestamp: datetime
    sender_name: Optional[str] = None
    sender_id: Optional[str] = None
    status: str = "delivered"
    is_group: bool = False
    contact_name: Optional[str] = None
    raw: dict = field(default_factory=dict)

    def to_row(self, conversation_id) -> dict:
        return {
            "conversation_id": conversation_id,
            "external_message_id": self.external_message_id,
            "content": self.content,
            "message_type": self.message_type,
            "direction": self.direction,
            "sender_type": self.sender_type,
            "sender_name": self.sender_name,
            "sender_id": self.sender_id,
            "status": self.status,
            "external_timestamp": self.external_timestamp,
            "external_metadata": self.raw,
        }


def is_group_jid(remote_jid: str) -> bool:
    return remote_jid.endswith(GROUP_SUFFIX)


def contact_name_for(remote_jid: str, push_name: Optional[str] = None) -> str:
    if push_name:
        return push_name
    if is_group_jid(remote_jid):
        return "Group Chat"
    return remote_jid.replace(PERSONAL_SUFFIX, "")


def map_status(provider_status: Any, default: str = "delivered") -> str:
    if provider_status is None:
        return default
    if isinstance(provider_status, int):
        # numeric acks: 0 error, 1 pending, 2 server, 3 delivered, 4 read, 5 played
        numeric = {0: "failed", 1: "pending", 2: "sent", 3: "delivered", 4: "read", 5: "read"}
        return numeric.get(provider_status, default)
    return STATUS_MAP.get(str(provider_status).upper(), default)


def detect_message_type(payload: dict) -> str:
    provider_type = payload.get("messageType")
    if provider_type in PROVIDER_TYPE_MAP:
        return PROVIDER_TYPE_MAP[provider_type]

    body = payload.get("message") or {}
    if isinstance(body, dict):
        for key in body:
            if key in PROVIDER_TYPE_MAP:
                return PROVIDER_TYPE_MAP[key]

    # unknown subtypes stay visible as text
    return "text"


def _media_body(body: dict, message_type: str) -> dict:
    for provider_key, mapped in PROVIDER_TYPE_MAP.items():
        if mapped == message_type and isinstance(body.get(provider_key), dict):
            media = body[provider_key]
            # documentWithCaptionMessage nests the real document one level down
            nested = media.get("message", {}).get("documentMessage") if isinstance(media.get("message"), dict) else None
            return nested or media
    return {}


def extract_content(payload: dict, message_type: Optional[str] = None) -> str:
    """Text, then extended text, then tagged caption, then the bare tag."""
    message_type = message_type or detect_message_type(payload)
    body = payload.get("message") or {}
    if not isinstance(body, dict):
        body = {}

    text = body.get("conversation")
    if isinstance(text, str) and text.strip():
        return text

    extended = body.get("extendedTextMessage")
    if isinstance(extended, dict) and extended.get("text"):
        return extended["text"]

    tag = TYPE_TAGS.get(message_type)
    if tag:
        media = _media_body(body, message_type)
        caption = media.get("caption")
        if not caption and message_type == "document":
            caption = media.get("title") or media.get("fileName")
        return f"[{tag}] {caption}" if caption else f"[{tag}]"

    provider_type = payload.get("messageType")
    return f"[{provider_type}]" if provider_type else "[Message]"


def parse_timestamp(value: Any) -> Optional[datetime]:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    if isinstance(value, dict):
        # protobuf Long serialized as {"low": ..., "high": ...}
        value = value.get("low")
        if value is None:
            return None
    if isinstance(value, str):
        stripped = value.strip()
        if stripped.isdigit():
            value = int(stripped)
        else:
            try:
                parsed = datetime.fromisoformat(stripped.replace("Z", "+00:00"))
            except ValueError:
                return None
            return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)
    try:
        seconds = float(value)
    except (TypeError, ValueError):
        return None
    if seconds > 1_000_000_000_000:
        seconds = seconds / 1000
    try:
        return datetime.fromtimestamp(seconds, tz=timezone.utc)
    except (OverflowError, OSError, ValueError):
        return None


def synthesize_message_id(remote_jid: str, timestamp: Optional[datetime], content: str) -> str:
    """Deterministic dedup key for payloads without key.id."""
    if timestamp is not None:
        return f"{remote_jid}:{int(timestamp.timestamp())}"
    digest = hashlib.sha1(content.encode("utf-8")).hexdigest()[:16]
    return f"{remote_jid}:{digest}"


def normalize_message(payload: dict) -> NormalizedMessage:
    if not isinstance(payload, dict):
        raise NormalizationError("message payload is not an object")

    key = payload.get("key") or {}
    remote_jid = key.get("remoteJid") or payload.get("remoteJid")
    if not remote_jid:
        raise NormalizationError("message payload has no remoteJid")

    message_type = detect_message_type(payload)
    content = extract_content(payload, message_type)

    parsed_ts = parse_timestamp(payload.get("messageTimestamp"))
    message_id = key.get("id") or synthesize_message_id(remote_jid, parsed_ts, content)
    timestamp = parsed_ts or datetime.now(timezone.utc)

    from_me = bool(key.get("fromMe"))
    push_name = payload.get("pushName")
    participant = key.get("participant") or payload.get("participant")

    return NormalizedMessage(
        external_message_id=message_id,
        external_conversation_id=remote_jid,
        content=content,
        message_type=message_type,
        direction="outbound" if from_me else "inbound",
        sender_type="agent" if from_me else "contact",
        sender_name=push_name,
        sender_id=participant or push_name or remote_jid,
        status=map_status(payload.get("status")),
        external_timestamp=timestamp,
        is_group=is_group_jid(remote_jid),
        contact_name=None if from_me else contact_name_for(remote_jid, push_name),
        raw=payload,
    )
