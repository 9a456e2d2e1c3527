from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel


class SyncProgressResponse(BaseModel):
    instance_key: str
    status: str
    total_messages: int
    processed_messages: int
    inserted_messages: int
    skipped_messages: int
    total_conversations: int
    processed_conversations: int
    failed_conversations: int
    errors: List[str]
    started_at: datetime
    finished_at: Optional[datetime] = None
    duration_seconds: Optional[float] = None
