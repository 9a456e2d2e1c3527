import uuid

from sqlalchemy import Column, Float, ForeignKey, Text, func
from sqlalchemy.dialects.postgresql import TIMESTAMP, UUID
from sqlalchemy.orm import relationship

from wacanda.database import Base, JSONType


class HandoffRequest(Base):
    __tablename__ = "handoff_requests"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    conversation_id = Column(UUID(as_uuid=True), ForeignKey("conversations.id"), nullable=False, index=True)
    owner_id = Column(UUID(as_uuid=True), nullable=False, index=True)
    reason = Column(Text, nullable=False)
    urgency = Column(Text, nullable=False, default="low")  # low, medium, high
    status = Column(Text, nullable=False, default="pending")  # pending, assigned, resolved
    assigned_agent_id = Column(Text)
    user_message = Column(Text)
    ai_confidence = Column(Float)
    resolution_notes = Column(Text)
    handoff_metadata = Column("metadata", JSONType, nullable=False, default=dict)
    created_at = Column(TIMESTAMP(timezone=True), nullable=False, server_default=func.now())
    assigned_at = Column(TIMESTAMP(timezone=True))
    resolved_at = Column(TIMESTAMP(timezone=True))

    conversation = relationship("Conversation", back_populates="handoff_requests")
