"""Client for the knowledge-base vector index (Qdrant) and its embedding service."""

from typing import List

import httpx

from wacanda.config import settings
from wacanda.logging_config import get_logger
from wacanda.services.alert_service import alert_warning

logger = get_logger("knowledge_service")


class VectorSearchError(Exception):
    """Embedding or similarity search failed."""


def get_embedding(text: str, timeout: float = 30.0) -> List[float]:
    """Get an embedding vector from the BGE-M3 service."""
    with httpx.Client(timeout=timeout) as client:
        response = client.post(settings.embedding_url, json={"inputs": text})
    if response.status_code != 200:
        raise VectorSearchError(f"Embedding error: {response.status_code} - {response.text[:200]}")

    data = response.json()
    # TEI answers [[...]], other servers {"embedding": [...]}
    if isinstance(data, list) and data:
        return data[0] if isinstance(data[0], list) else data
    if isinstance(data, dict):
        vector = data.get("embedding") or data.get("embeddings")
        if vector:
            return vector[0] if isinstance(vector[0], list) else vector
    raise VectorSearchError("Embedding service returned no vector")


def search_knowledge(
    owner_id,
    embedding: List[float],
    threshold: float = 0.7,
    limit: int = 8,
    timeout: float = 30.0,
) -> List[dict]:
    """Similarity search restricted to one owner's chunks.

    Returns [{chunk_id, source_id, source_type, text, similarity, metadata}].
    """
    with httpx.Client(timeout=timeout) as client:
        response = client.post(
            f"{settings.qdrant_host}/collections/{settings.qdrant_collection}/points/search",
            headers={"api-key": settings.qdrant_api_key or ""},
            json={
                "vector": embedding,
                "limit": limit,
                "score_threshold": threshold,
                "filter": {"must": [{"key": "owner_id", "match": {"value": str(owner_id)}}]},
                "with_payload": True,
            },
        )

    if response.status_code != 200:
        logger.error(f"Qdrant search error: {response.status_code} - {response.text[:200]}")
        alert_warning("Knowledge search failed", {"status": response.status_code, "owner_id": str(owner_id)})
        raise VectorSearchError(f"Qdrant search error: {response.status_code}")

    chunks = []
    for point in response.json().get("result", []):
        payload = point.get("payload") or {}
        metadata = payload.get("metadata") or {}
        chunks.append(
            {
                "chunk_id": str(point.get("id")),
                "source_id": str(payload.get("source_id") or metadata.get("source_id") or metadata.get("doc_name") or "unknown"),
                "source_type": payload.get("source_type") or metadata.get("source_type") or "document",
                "text": payload.get("content") or "",
                "similarity": float(point.get("score") or 0.0),
                "metadata": metadata,
            }
        )

    logger.info(
        "Knowledge search",
        extra={"context": {"owner_id": str(owner_id), "results": len(chunks), "threshold": threshold}},
    )
    return chunks
