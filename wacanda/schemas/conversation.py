from typing import List, Optional
from uuid import UUID

from pydantic import BaseModel


class RespondRequest(BaseModel):
    message: str
    external_message_id: Optional[str] = None
    dispatch: bool = False


class SourceRef(BaseModel):
    chunk_id: Optional[str] = None
    source_id: str
    source_type: str
    similarity: float


class HandoffDecisionResponse(BaseModel):
    should_handoff: bool
    reason: str
    urgency: str
    triggers: List[str] = []


class RespondResponse(BaseModel):
    conversation_id: UUID
    reply: Optional[str] = None
    confidence: Optional[float] = None
    sources: List[SourceRef] = []
    tokens_used: int = 0
    latency_ms: int = 0
    fallback: bool = False
    handoff: Optional[HandoffDecisionResponse] = None
    handoff_request_id: Optional[UUID] = None
    dispatched: bool = False
    skipped_reason: Optional[str] = None
