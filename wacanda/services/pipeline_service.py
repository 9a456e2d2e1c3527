"""Inbound message -> composed reply -> handoff decision."""

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import List, Optional
from uuid import uuid4

from sqlalchemy import update
from sqlalchemy.orm import Session

from wacanda.config import settings
from wacanda.database import SessionLocal
from wacanda.logging_config import get_logger
from wacanda.models import Conversation, Message
from wacanda.services.conversation_store import insert_messages_if_absent
from wacanda.services.handoff_service import HandoffDecision, create_handoff_request, evaluate
from wacanda.services.normalizer import NormalizedMessage
from wacanda.services.provider_client import ProviderClient, get_provider_client
from wacanda.services.retrieval_composer import (
    ComposedReply,
    RetrievalComposer,
    get_retrieval_composer,
    load_ai_configuration,
)

logger = get_logger("pipeline_service")

HISTORY_LIMIT = 10
AI_SENDER_NAME = "AI Assistant"
SKIP_STATUSES = {"handed_off", "archived"}


@dataclass
class PipelineOutcome:
    conversation_id: object
    reply: Optional[ComposedReply] = None
    decision: Optional[HandoffDecision] = None
    handoff_request_id: Optional[object] = None
    reply_message_id: Optional[str] = None
    dispatched: bool = False
    skipped_reason: Optional[str] = None


def conversation_history(db: Session, conversation_id, limit: int = HISTORY_LIMIT, exclude_external_id=None) -> List[dict]:
    """Last turns oldest-first as {"role", "content"}; business-side messages count as assistant."""
    query = db.query(Message).filter(Message.conversation_id == conversation_id, Message.deleted_at.is_(None))
    if exclude_external_id:
        query = query.filter(Message.external_message_id != exclude_external_id)
    rows = (
        query.order_by(Message.external_timestamp.desc(), Message.external_message_id.desc()).limit(limit).all()
    )
    return [
        {"role": "user" if row.direction == "inbound" else "assistant", "content": row.content}
        for row in reversed(rows)
    ]


def _reply_fields(reply: ComposedReply) -> dict:
    return {
        "ai_processed": True,
        "ai_confidence_score": reply.confidence,
        "ai_model_used": reply.model,
        "ai_response_time_ms": reply.latency_ms,
        "ai_tokens_used": reply.tokens_used,
        "rag_sources": [
            {"chunk_id": s.get("chunk_id"), "source_id": s["source_id"], "source_type": s["source_type"]}
            for s in reply.sources
        ],
        "rag_similarity_scores": reply.similarity_scores,
        "rag_context_used": reply.rag_context.get("context_used") or None,
    }


def process_inbound_message(
    db: Session,
    conversation: Conversation,
    message_text: str,
    *,
    composer: RetrievalComposer,
    provider: Optional[ProviderClient] = None,
    external_message_id: Optional[str] = None,
    confidence_threshold: float = 0.6,
) -> PipelineOutcome:
    outcome = PipelineOutcome(conversation_id=conversation.id)

    if conversation.status in SKIP_STATUSES:
        outcome.skipped_reason = f"conversation_{conversation.status}"
        return outcome

    inbound = None
    if external_message_id:
        inbound = db.query(Message).filter(Message.external_message_id == external_message_id).first()
        if inbound is not None and inbound.ai_processed:
            outcome.skipped_reason = "already_processed"
            return outcome

    history = conversation_history(db, conversation.id, exclude_external_id=external_message_id)
    config = load_ai_configuration(db, conversation.owner_id)
    reply = composer.respond(conversation.owner_id, conversation.id, message_text, history, config=config)
    outcome.reply = reply

    reply_id = None
    status = "pending"
    if provider is not None:
        sent = provider.send_message(conversation.instance_key, conversation.external_conversation_id, reply.reply)
        if sent.ok:
            # provider id, so the SEND_MESSAGE echo webhook dedups against this row
            reply_id = sent.value["id"]
            status = "sent"
            outcome.dispatched = True
        else:
            status = "failed"
            logger.warning(
                "Reply dispatch failed",
                extra={"context": {"conversation_id": str(conversation.id), "error": sent.error}},
            )

    outcome.reply_message_id = reply_id or f"wacanda-ai:{uuid4().hex}"
    stored = insert_messages_if_absent(
        db,
        conversation,
        [
            NormalizedMessage(
                external_message_id=outcome.reply_message_id,
                external_conversation_id=conversation.external_conversation_id,
                content=reply.reply,
                message_type="text",
                direction="outbound",
                sender_type="bot",
                sender_name=AI_SENDER_NAME,
                sender_id="ai",
                status=status,
                external_timestamp=datetime.now(timezone.utc),
                raw={"generated": True, "fallback": reply.fallback},
            )
        ],
        extra_fields=_reply_fields(reply),
    )
    if not stored:
        # the SEND_MESSAGE echo won the race; claim its row for the assistant
        db.execute(
            update(Message)
            .where(Message.external_message_id == outcome.reply_message_id)
            .values(sender_type="bot", sender_name=AI_SENDER_NAME, sender_id="ai", **_reply_fields(reply))
            .execution_options(synchronize_session=False)
        )
    if inbound is not None:
        inbound.ai_processed = True

    decision = evaluate(message_text, {"recent_messages": history}, reply.confidence, confidence_threshold)
    outcome.decision = decision
    if decision.should_handoff:
        request = create_handoff_request(
            db,
            conversation,
            decision,
            user_message=message_text,
            confidence=reply.confidence,
            metadata={"rag_sources": [s["source_id"] for s in reply.sources], "fallback": reply.fallback},
        )
        outcome.handoff_request_id = request.id

    logger.info(
        "Inbound message processed",
        extra={
            "context": {
                "conversation_id": str(conversation.id),
                "confidence": reply.confidence,
                "sources": len(reply.sources),
                "handoff": decision.should_handoff,
                "urgency": decision.urgency,
                "latency_ms": reply.latency_ms,
            }
        },
    )
    return outcome


def run_pipeline_for_new_messages(new_inbound: List[tuple]) -> None:
    """Background entry point for freshly stored inbound webhook messages."""
    composer = get_retrieval_composer()
    provider = get_provider_client() if settings.auto_reply_dispatch else None

    db = SessionLocal()
    try:
        for conversation_id, external_message_id in new_inbound:
            conversation = db.get(Conversation, conversation_id)
            message = db.query(Message).filter(Message.external_message_id == external_message_id).first()
            if conversation is None or message is None or message.conversation_id != conversation.id:
                continue
            if message.message_type != "text":
                continue
            try:
                process_inbound_message(
                    db,
                    conversation,
                    message.content,
                    composer=composer,
                    provider=provider,
                    external_message_id=external_message_id,
                    confidence_threshold=settings.handoff_confidence_threshold,
                )
                db.commit()
            except Exception as e:
                db.rollback()
                logger.error(
                    "Pipeline failed",
                    extra={"context": {"conversation_id": str(conversation_id), "error": str(e)}},
                    exc_info=True,
                )
    finally:
        db.close()
