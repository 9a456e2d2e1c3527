import uuid

from sqlalchemy import Column, Text, func
from sqlalchemy.dialects.postgresql import TIMESTAMP, UUID

from wacanda.database import Base, JSONType


class ProviderInstance(Base):
    __tablename__ = "provider_instances"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    owner_id = Column(UUID(as_uuid=True), nullable=False, index=True)
    instance_key = Column(Text, nullable=False, unique=True)
    display_name = Column(Text)
    status = Column(Text, nullable=False, default="created")  # created, connecting, connected, disconnected, logged_out, removed
    qr_code = Column(Text)
    last_connected_at = Column(TIMESTAMP(timezone=True))
    instance_metadata = Column("metadata", JSONType, nullable=False, default=dict)
    created_at = Column(TIMESTAMP(timezone=True), nullable=False, server_default=func.now())
    updated_at = Column(TIMESTAMP(timezone=True), onupdate=func.now())
