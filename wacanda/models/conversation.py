import uuid

from sqlalchemy import Column, Integer, Text, UniqueConstraint, func
from sqlalchemy.dialects.postgresql import TIMESTAMP, UUID
from sqlalchemy.orm import relationship

from wacanda.database import Base, JSONType


class Conversation(Base):
    __tablename__ = "conversations"
    __table_args__ = (
        UniqueConstraint(
            "owner_id", "external_conversation_id", "instance_key", name="uq_conversations_natural_key"
        ),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    owner_id = Column(UUID(as_uuid=True), nullable=False, index=True)
    external_conversation_id = Column(Text, nullable=False)  # remoteJid
    instance_key = Column(Text, nullable=False)
    contact_id = Column(Text)
    contact_name = Column(Text)
    status = Column(Text, nullable=False, default="active")  # active, resolved, archived, handed_off
    message_count = Column(Integer, nullable=False, default=0)
    last_message_at = Column(TIMESTAMP(timezone=True))
    last_message_preview = Column(Text)
    last_message_direction = Column(Text)  # inbound, outbound
    contact_metadata = Column(JSONType, nullable=False, default=dict)
    last_synced_at = Column(TIMESTAMP(timezone=True))
    sync_status = Column(Text)  # synced, error
    archived_at = Column(TIMESTAMP(timezone=True))
    created_at = Column(TIMESTAMP(timezone=True), nullable=False, server_default=func.now())
    updated_at = Column(TIMESTAMP(timezone=True), onupdate=func.now())

    messages = relationship("Message", back_populates="conversation")
    handoff_requests = relationship("HandoffRequest", back_populates="conversation")
