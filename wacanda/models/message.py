import uuid

from sqlalchemy import Boolean, Column, Float, ForeignKey, Integer, Text, func
from sqlalchemy.dialects.postgresql import TIMESTAMP, UUID
from sqlalchemy.orm import relationship

from wacanda.database import Base, JSONType


class Message(Base):
    __tablename__ = "messages"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    conversation_id = Column(UUID(as_uuid=True), ForeignKey("conversations.id"), nullable=False, index=True)
    external_message_id = Column(Text, nullable=False, unique=True)
    content = Column(Text, nullable=False)
    message_type = Column(Text, nullable=False, default="text")  # text, image, audio, video, document, location, contact, sticker
    direction = Column(Text, nullable=False)  # inbound, outbound
    sender_type = Column(Text, nullable=False)  # contact, agent, bot
    sender_name = Column(Text)
    sender_id = Column(Text)
    status = Column(Text, nullable=False, default="delivered")  # pending, sent, delivered, read, failed, deleted
    external_timestamp = Column(TIMESTAMP(timezone=True), nullable=False)
    external_metadata = Column(JSONType, nullable=False, default=dict)

    ai_processed = Column(Boolean, nullable=False, default=False)
    ai_confidence_score = Column(Float)
    ai_model_used = Column(Text)
    ai_response_time_ms = Column(Integer)
    ai_tokens_used = Column(Integer)
    rag_sources = Column(JSONType)
    rag_similarity_scores = Column(JSONType)
    rag_context_used = Column(Text)

    deleted_at = Column(TIMESTAMP(timezone=True))
    created_at = Column(TIMESTAMP(timezone=True), nullable=False, server_default=func.now())
    updated_at = Column(TIMESTAMP(timezone=True), onupdate=func.now())

    conversation = relationship("Conversation", back_populates="messages")
