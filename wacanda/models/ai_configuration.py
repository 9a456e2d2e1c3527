import uuid

from sqlalchemy import Boolean, Column, Float, Integer, Text, func
from sqlalchemy.dialects.postgresql import TIMESTAMP, UUID

from wacanda.database import Base


class AIConfiguration(Base):
    __tablename__ = "ai_configurations"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    owner_id = Column(UUID(as_uuid=True), nullable=False, index=True)
    system_prompt = Column(Text)
    model = Column(Text)
    temperature = Column(Float)
    max_tokens = Column(Integer)
    similarity_threshold = Column(Float)
    max_sources = Column(Integer)
    is_active = Column(Boolean, nullable=False, default=True)
    created_at = Column(TIMESTAMP(timezone=True), nullable=False, server_default=func.now())
