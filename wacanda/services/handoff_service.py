"""Decide when a conversation leaves the assistant, and track the resulting tickets."""

import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Dict, List, Optional

from sqlalchemy.orm import Session

from wacanda.logging_config import get_logger
from wacanda.models import Conversation, HandoffRequest
from wacanda.services.alert_service import alert_warning
from wacanda.services.result import Result
from wacanda.services.text_signals import classify_sentiment

logger = get_logger("handoff_service")

LOW_CONFIDENCE_THRESHOLD = 0.6
SENTIMENT_TURNS = 3

URGENT_KEYWORDS = (
    "emergency", "urgent", "legal", "lawsuit", "lawyer", "attorney", "sue", "court", "police",
    "fraud", "scam", "security breach", "unauthorized",
    "cancel", "cancelled", "canceled", "cancellation", "refund", "refunds", "refunded",
    "billing", "chargeback", "dispute", "complaint", "complaints",
)

HUMAN_REQUEST_PHRASES = (
    "speak to human", "speak to a human", "talk to a human", "human agent", "real person",
    "manager", "supervisor", "escalate", "transfer me", "live agent", "customer service",
    "representative", "human help", "talk to someone", "human support",
)

URGENCY_RANK = {"low": 0, "medium": 1, "high": 2}


def _term_pattern(terms, plurals: bool = False) -> re.Pattern:
    alternatives = "|".join(re.escape(term) for term in sorted(terms, key=len, reverse=True))
    suffix = "s?" if plurals else ""
    return re.compile(rf"\b(?:{alternatives}){suffix}\b", re.IGNORECASE)


_URGENT_PATTERN = _term_pattern(URGENT_KEYWORDS)
_HUMAN_REQUEST_PATTERN = _term_pattern(HUMAN_REQUEST_PHRASES, plurals=True)


class HandoffStatus(str, Enum):
    PENDING = "pending"
    ASSIGNED = "assigned"
    RESOLVED = "resolved"


HANDOFF_TRANSITIONS = {
    HandoffStatus.PENDING: {HandoffStatus.ASSIGNED, HandoffStatus.RESOLVED},
    HandoffStatus.ASSIGNED: {HandoffStatus.RESOLVED},
    HandoffStatus.RESOLVED: set(),
}


@dataclass
class HandoffTrigger:
    name: str
    triggered: bool
    reason: str = ""
    urgency: str = "low"


@dataclass
class HandoffDecision:
    should_handoff: bool
    reason: str
    urgency: str
    triggers: List[HandoffTrigger] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "should_handoff": self.should_handoff,
            "reason": self.reason,
            "urgency": self.urgency,
            "triggers": [t.name for t in self.triggers if t.triggered],
        }


def check_confidence(confidence: float, threshold: float = LOW_CONFIDENCE_THRESHOLD) -> HandoffTrigger:
    if confidence < threshold:
        return HandoffTrigger("low_confidence", True, f"Low AI confidence ({confidence:.2f})", "medium")
    return HandoffTrigger("low_confidence", False)


def check_urgent_keywords(text: str) -> HandoffTrigger:
    match = _URGENT_PATTERN.search(text or "")
    if match:
        return HandoffTrigger("urgent_keyword", True, f"Urgent keyword detected: {match.group(0).lower()}", "high")
    return HandoffTrigger("urgent_keyword", False)


def check_human_request(text: str) -> HandoffTrigger:
    match = _HUMAN_REQUEST_PATTERN.search(text or "")
    if match:
        return HandoffTrigger("human_request", True, "Customer explicitly requested a human agent", "high")
    return HandoffTrigger("human_request", False)


def check_sentiment(user_turns: List[str]) -> HandoffTrigger:
    if classify_sentiment(user_turns[-SENTIMENT_TURNS:]) == "negative":
        return HandoffTrigger("negative_sentiment", True, "Negative customer sentiment detected", "medium")
    return HandoffTrigger("negative_sentiment", False)


def recent_user_turns(message: str, conversation_context: Optional[dict]) -> List[str]:
    turns = [
        turn.get("content") or ""
        for turn in (conversation_context or {}).get("recent_messages", [])
        if turn.get("role") == "user"
    ]
    if not turns or turns[-1] != message:
        turns.append(message)
    return turns


def evaluate(
    message: str,
    conversation_context: Optional[dict],
    confidence: float,
    confidence_threshold: float = LOW_CONFIDENCE_THRESHOLD,
) -> HandoffDecision:
    """Run the independent trigger checks; any hit means handoff at the highest urgency seen."""
    triggers = [
        check_confidence(confidence, confidence_threshold),
        check_urgent_keywords(message),
        check_human_request(message),
        check_sentiment(recent_user_turns(message, conversation_context)),
    ]
    active = [t for t in triggers if t.triggered]
    if not active:
        return HandoffDecision(should_handoff=False, reason="", urgency="low", triggers=triggers)

    urgency = max((t.urgency for t in active), key=URGENCY_RANK.__getitem__)
    return HandoffDecision(
        should_handoff=True,
        reason=", ".join(t.reason for t in active),
        urgency=urgency,
        triggers=triggers,
    )


def create_handoff_request(
    db: Session,
    conversation: Conversation,
    decision: HandoffDecision,
    user_message: Optional[str] = None,
    confidence: Optional[float] = None,
    metadata: Optional[dict] = None,
) -> HandoffRequest:
    request = HandoffRequest(
        conversation_id=conversation.id,
        owner_id=conversation.owner_id,
        reason=decision.reason,
        urgency=decision.urgency,
        status=HandoffStatus.PENDING.value,
        user_message=user_message,
        ai_confidence=confidence,
        handoff_metadata={
            "triggers": [t.name for t in decision.triggers if t.triggered],
            "created_by": "ai_system",
            **(metadata or {}),
        },
        created_at=datetime.now(timezone.utc),
    )
    db.add(request)
    conversation.status = "handed_off"
    db.flush()

    logger.info(
        "Handoff requested",
        extra={
            "context": {
                "handoff_id": str(request.id),
                "conversation_id": str(conversation.id),
                "urgency": decision.urgency,
                "reason": decision.reason,
            }
        },
    )
    if decision.urgency == "high":
        alert_warning(
            "High urgency handoff",
            {"conversation_id": str(conversation.id), "contact": conversation.contact_name, "reason": decision.reason},
        )
    return request


def _transition(request: HandoffRequest, target: HandoffStatus) -> Result[HandoffRequest]:
    current = HandoffStatus(request.status)
    if target not in HANDOFF_TRANSITIONS[current]:
        return Result.failure(f"Cannot move handoff from {current.value} to {target.value}", code="invalid_transition")
    request.status = target.value
    return Result.success(request)


def assign_handoff(db: Session, handoff_id, agent_id: str) -> Result[HandoffRequest]:
    request = db.get(HandoffRequest, handoff_id)
    if request is None:
        return Result.failure("Handoff not found", code="not_found")

    result = _transition(request, HandoffStatus.ASSIGNED)
    if not result.ok:
        return result
    request.assigned_agent_id = agent_id
    request.assigned_at = datetime.now(timezone.utc)
    db.flush()
    return result


def resolve_handoff(db: Session, handoff_id, resolution_notes: Optional[str] = None) -> Result[HandoffRequest]:
    request = db.get(HandoffRequest, handoff_id)
    if request is None:
        return Result.failure("Handoff not found", code="not_found")

    result = _transition(request, HandoffStatus.RESOLVED)
    if not result.ok:
        return result
    request.resolved_at = datetime.now(timezone.utc)
    request.resolution_notes = resolution_notes

    conversation = db.get(Conversation, request.conversation_id)
    if conversation is not None and conversation.status == "handed_off":
        still_open = (
            db.query(HandoffRequest)
            .filter(
                HandoffRequest.conversation_id == conversation.id,
                HandoffRequest.id != request.id,
                HandoffRequest.status != HandoffStatus.RESOLVED.value,
            )
            .count()
        )
        if not still_open:
            conversation.status = "active"
    db.flush()
    return result


def _as_utc(value: datetime) -> datetime:
    # SQLite hands back naive datetimes
    return value if value.tzinfo else value.replace(tzinfo=timezone.utc)


def list_pending_handoffs(db: Session, owner_id, urgency: Optional[str] = None) -> List[HandoffRequest]:
    query = db.query(HandoffRequest).filter(
        HandoffRequest.owner_id == owner_id, HandoffRequest.status == HandoffStatus.PENDING.value
    )
    if urgency:
        query = query.filter(HandoffRequest.urgency == urgency)
    return query.order_by(HandoffRequest.created_at.asc()).all()


def handoff_statistics(db: Session, owner_id) -> Dict[str, object]:
    requests = db.query(HandoffRequest).filter(HandoffRequest.owner_id == owner_id).all()

    by_status = {status.value: 0 for status in HandoffStatus}
    by_urgency = {urgency: 0 for urgency in URGENCY_RANK}
    resolution_seconds = []
    for request in requests:
        by_status[request.status] = by_status.get(request.status, 0) + 1
        by_urgency[request.urgency] = by_urgency.get(request.urgency, 0) + 1
        if request.resolved_at and request.created_at:
            elapsed = _as_utc(request.resolved_at) - _as_utc(request.created_at)
            resolution_seconds.append(elapsed.total_seconds())

    return {
        "total": len(requests),
        **by_status,
        "by_urgency": by_urgency,
        "avg_resolution_seconds": (sum(resolution_seconds) / len(resolution_seconds)) if resolution_seconds else 0.0,
    }
