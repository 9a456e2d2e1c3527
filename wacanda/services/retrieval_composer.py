"""Retrieval-augmented reply composition with a reproducible confidence score."""

import time
from collections import OrderedDict
from dataclasses import dataclass, field
from typing import Callable, List, Optional

from sqlalchemy.orm import Session

from wacanda.config import settings
from wacanda.logging_config import get_logger
from wacanda.models import AIConfiguration
from wacanda.services.knowledge_service import get_embedding, search_knowledge
from wacanda.services.llm import LLMProvider, OpenAIProvider
from wacanda.services.text_signals import extract_keywords, keyword_overlap

logger = get_logger("retrieval_composer")

FALLBACK_REPLY = (
    "I apologize, but I'm experiencing technical difficulties. "
    "Please try again or contact human support if the issue persists."
)
FALLBACK_CONFIDENCE = 0.1
UNGROUNDED_CONFIDENCE = 0.3

DEFAULT_SYSTEM_PROMPT = """You are an AI customer service assistant for a business that talks to its customers on WhatsApp.

Guidelines:
- Answer using the knowledge base context when it is relevant and cite the source.
- If you are not sure or the knowledge base does not cover the question, say so honestly. Never invent policies, prices or dates.
- When your confidence is low, recommend that the customer talks to a human agent.
- Use the conversation history to keep context and avoid repeating yourself.
- Keep answers short, warm and professional. Ask a clarifying question when the intent is unclear."""

TOPIC_TURNS = 5
TOPIC_COUNT = 3
PREVIOUS_QUESTIONS = 4


class ComposerTimeout(Exception):
    """Composer run exceeded its overall time budget."""


@dataclass
class ComposedReply:
    reply: str
    sources: List[dict]
    confidence: float
    tokens_used: int
    latency_ms: int
    model: Optional[str] = None
    rag_context: dict = field(default_factory=dict)
    fallback: bool = False

    @property
    def similarity_scores(self) -> List[float]:
        return [source["similarity"] for source in self.sources]


def _log_timing(stage: str, started: float, **context) -> None:
    elapsed_ms = int((time.monotonic() - started) * 1000)
    logger.info("Timing", extra={"context": {"stage": stage, "elapsed_ms": elapsed_ms, **context}})


def build_retrieval_query(message: str, history: List[dict]) -> str:
    """Enrich short follow-ups with recent topics and the customer's prior questions."""
    if not history:
        return message

    recent = history[-TOPIC_TURNS:]
    query = message

    topics = extract_keywords(" ".join(turn.get("content") or "" for turn in recent))[:TOPIC_COUNT]
    if topics:
        query += f" Context: {', '.join(topics)}"

    previous = [turn.get("content") or "" for turn in recent if turn.get("role") == "user"]
    if previous and previous[-1] == message:
        previous = previous[:-1]
    previous = [text for text in previous if text][-PREVIOUS_QUESTIONS:]
    if previous:
        query += f" Previous questions: {'; '.join(previous)}"

    return query


def select_sources(chunks: List[dict], max_per_source: int = 3) -> List[dict]:
    """Group chunks by source, best source first, at most max_per_source chunks each."""
    groups: "OrderedDict[str, List[dict]]" = OrderedDict()
    for chunk in chunks:
        groups.setdefault(f"{chunk['source_type']}:{chunk['source_id']}", []).append(chunk)

    ranked = sorted(
        (sorted(group, key=lambda c: c["similarity"], reverse=True)[:max_per_source] for group in groups.values()),
        key=lambda group: group[0]["similarity"],
        reverse=True,
    )
    return [chunk for group in ranked for chunk in group]


def build_context_block(sources: List[dict]) -> str:
    sections: "OrderedDict[tuple, List[str]]" = OrderedDict()
    for source in sources:
        sections.setdefault((source["source_type"], source["source_id"]), []).append(source["text"])
    return "\n\n---\n\n".join(
        f"[Source: {source_type} {source_id}]\n" + "\n\n".join(texts)
        for (source_type, source_id), texts in sections.items()
    )


def build_history_block(history: List[dict], turns: int = 10) -> str:
    return "\n".join(f"{turn.get('role')}: {turn.get('content')}" for turn in history[-turns:])


def compute_confidence(sources: List[dict], query: str, response: str) -> float:
    """0.4 mean similarity + 0.2 source count + 0.2 length ratio + 0.2 keyword overlap, clamped."""
    if not sources:
        return UNGROUNDED_CONFIDENCE

    avg_similarity = sum(source["similarity"] for source in sources) / len(sources)
    source_count_factor = min(len(sources) / 5, 1.0)
    response_quality = min(len(response) / (len(query) * 2), 1.0) if query else 1.0
    overlap = keyword_overlap(query, (source["text"] for source in sources))

    confidence = avg_similarity * 0.4 + source_count_factor * 0.2 + response_quality * 0.2 + overlap * 0.2
    return min(max(confidence, 0.1), 1.0)


def load_ai_configuration(db: Session, owner_id) -> Optional[AIConfiguration]:
    return (
        db.query(AIConfiguration)
        .filter(AIConfiguration.owner_id == owner_id, AIConfiguration.is_active.is_(True))
        .order_by(AIConfiguration.created_at.desc())
        .first()
    )


class RetrievalComposer:
    def __init__(
        self,
        llm: LLMProvider,
        *,
        embed: Callable[..., List[float]] = get_embedding,
        search: Callable[..., List[dict]] = search_knowledge,
        similarity_threshold: float = 0.7,
        max_sources: int = 8,
        max_chunks_per_source: int = 3,
        history_turns: int = 10,
        timeout_seconds: float = 30.0,
        llm_timeout_seconds: float = 20.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.llm = llm
        self.embed = embed
        self.search = search
        self.similarity_threshold = similarity_threshold
        self.max_sources = max_sources
        self.max_chunks_per_source = max_chunks_per_source
        self.history_turns = history_turns
        self.timeout_seconds = timeout_seconds
        self.llm_timeout_seconds = llm_timeout_seconds
        self.clock = clock

    def respond(
        self,
        owner_id,
        conversation_id,
        new_message: str,
        history: List[dict],
        config: Optional[AIConfiguration] = None,
    ) -> ComposedReply:
        """Compose a reply. Any failure or timeout yields the fixed fallback reply."""
        started = self.clock()
        log_context = {"owner_id": str(owner_id), "conversation_id": str(conversation_id)}
        try:
            return self._compose(owner_id, new_message, history or [], config, started, log_context)
        except Exception as e:
            latency_ms = int((self.clock() - started) * 1000)
            logger.warning(
                "Composer fallback",
                extra={"context": {**log_context, "error": str(e), "error_type": type(e).__name__, "latency_ms": latency_ms}},
            )
            return ComposedReply(
                reply=FALLBACK_REPLY,
                sources=[],
                confidence=FALLBACK_CONFIDENCE,
                tokens_used=0,
                latency_ms=latency_ms,
                rag_context={
                    "retrieval_query": new_message,
                    "source_documents": [],
                    "similarity_scores": [],
                    "context_used": "",
                },
                fallback=True,
            )

    def _remaining(self, started: float) -> float:
        remaining = self.timeout_seconds - (self.clock() - started)
        if remaining <= 0:
            raise ComposerTimeout(f"composer exceeded {self.timeout_seconds}s")
        return remaining

    def _compose(self, owner_id, new_message, history, config, started, log_context) -> ComposedReply:
        threshold = self.similarity_threshold
        limit = self.max_sources
        system_prompt = DEFAULT_SYSTEM_PROMPT
        model = None
        temperature = 0.7
        max_tokens = 1000
        if config is not None:
            threshold = config.similarity_threshold if config.similarity_threshold is not None else threshold
            limit = config.max_sources or limit
            system_prompt = config.system_prompt or system_prompt
            model = config.model
            temperature = config.temperature if config.temperature is not None else temperature
            max_tokens = config.max_tokens or max_tokens

        retrieval_query = build_retrieval_query(new_message, history)

        step_started = time.monotonic()
        embedding = self.embed(retrieval_query, timeout=self._remaining(started))
        chunks = self.search(owner_id, embedding, threshold=threshold, limit=limit, timeout=self._remaining(started))
        _log_timing("retrieval", step_started, chunks=len(chunks), **log_context)

        sources = select_sources(chunks, self.max_chunks_per_source)
        context_block = build_context_block(sources)
        history_block = build_history_block(history, self.history_turns)

        context_blocks = []
        if context_block:
            context_blocks.append(f"Knowledge Base Context:\n{context_block}")
        if history_block:
            context_blocks.append(f"Conversation History:\n{history_block}")

        step_started = time.monotonic()
        response = self.llm.complete(
            system_prompt,
            context_blocks,
            new_message,
            model=model,
            temperature=temperature,
            max_tokens=max_tokens,
            timeout_seconds=min(self.llm_timeout_seconds, self._remaining(started)),
        )
        _log_timing("completion", step_started, model=response.model, **log_context)
        self._remaining(started)

        confidence = compute_confidence(sources, new_message, response.content)
        latency_ms = int((self.clock() - started) * 1000)
        return ComposedReply(
            reply=response.content,
            sources=sources,
            confidence=confidence,
            tokens_used=response.tokens_used,
            latency_ms=latency_ms,
            model=response.model,
            rag_context={
                "retrieval_query": retrieval_query,
                "source_documents": [source["source_id"] for source in sources],
                "similarity_scores": [source["similarity"] for source in sources],
                "context_used": context_block,
            },
        )


_composer: Optional[RetrievalComposer] = None


def get_retrieval_composer() -> RetrievalComposer:
    global _composer
    if _composer is None:
        _composer = RetrievalComposer(
            OpenAIProvider(settings.openai_api_key or "", default_model=settings.openai_model),
            similarity_threshold=settings.rag_similarity_threshold,
            max_sources=settings.rag_max_sources,
            max_chunks_per_source=settings.rag_max_chunks_per_source,
            history_turns=settings.rag_history_turns,
            timeout_seconds=settings.composer_timeout_seconds,
            llm_timeout_seconds=settings.llm_timeout_seconds,
        )
    return _composer
