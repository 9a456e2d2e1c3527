from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.orm import Session

from wacanda.config import settings
from wacanda.database import get_db
from wacanda.models import Conversation
from wacanda.schemas.conversation import HandoffDecisionResponse, RespondRequest, RespondResponse, SourceRef
from wacanda.services.pipeline_service import PipelineOutcome, process_inbound_message
from wacanda.services.provider_client import get_provider_client
from wacanda.services.retrieval_composer import RetrievalComposer, get_retrieval_composer

router = APIRouter(prefix="/conversations", tags=["conversations"])


def _to_response(outcome: PipelineOutcome) -> RespondResponse:
    response = RespondResponse(
        conversation_id=outcome.conversation_id,
        handoff_request_id=outcome.handoff_request_id,
        dispatched=outcome.dispatched,
        skipped_reason=outcome.skipped_reason,
    )
    if outcome.reply is not None:
        response.reply = outcome.reply.reply
        response.confidence = outcome.reply.confidence
        response.tokens_used = outcome.reply.tokens_used
        response.latency_ms = outcome.reply.latency_ms
        response.fallback = outcome.reply.fallback
        response.sources = [
            SourceRef(
                chunk_id=source.get("chunk_id"),
                source_id=source["source_id"],
                source_type=source["source_type"],
                similarity=source["similarity"],
            )
            for source in outcome.reply.sources
        ]
    if outcome.decision is not None:
        response.handoff = HandoffDecisionResponse(**outcome.decision.to_dict())
    return response


@router.post("/{conversation_id}/respond", response_model=RespondResponse)
def respond_to_message(
    conversation_id: UUID,
    body: RespondRequest,
    db: Session = Depends(get_db),
    composer: RetrievalComposer = Depends(get_retrieval_composer),
):
    """Compose a reply for an inbound message and evaluate handoff."""
    conversation = db.get(Conversation, conversation_id)
    if conversation is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Conversation not found")

    outcome = process_inbound_message(
        db,
        conversation,
        body.message,
        composer=composer,
        provider=get_provider_client() if body.dispatch else None,
        external_message_id=body.external_message_id,
        confidence_threshold=settings.handoff_confidence_threshold,
    )
    db.commit()
    return _to_response(outcome)
