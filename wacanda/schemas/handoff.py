from datetime import datetime
from typing import Dict, Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict


class HandoffRequestResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    conversation_id: UUID
    reason: str
    urgency: str
    status: str
    assigned_agent_id: Optional[str] = None
    user_message: Optional[str] = None
    created_at: datetime
    assigned_at: Optional[datetime] = None
    resolved_at: Optional[datetime] = None


class AssignHandoffRequest(BaseModel):
    agent_id: str


class ResolveHandoffRequest(BaseModel):
    resolution_notes: Optional[str] = None


class HandoffStatisticsResponse(BaseModel):
    total: int
    pending: int
    assigned: int
    resolved: int
    by_urgency: Dict[str, int]
    avg_resolution_seconds: float
