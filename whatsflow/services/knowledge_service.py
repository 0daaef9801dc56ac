from typing import List
from uuid import UUID

import httpx
from sqlalchemy.orm import Session

from whatsflow.config import settings
from whatsflow.logging_config import get_logger
from whatsflow.models import KnowledgeFile
from whatsflow.services.token_budget import SECTION_SEPARATOR

logger = get_logger("knowledge_service")


class KnowledgeSearchError(Exception):
    pass


def count_knowledge_files(db: Session, instance_id: UUID) -> int:
    return db.query(KnowledgeFile).filter(KnowledgeFile.whatsapp_instance_id == instance_id).count()


async def get_embedding(text: str) -> List[float]:
    """Get query embedding from the OpenAI embeddings endpoint."""
    async with httpx.AsyncClient(timeout=settings.search_timeout_seconds) as client:
        response = await client.post(
            f"{settings.openai_base_url}/embeddings",
            headers={"Authorization": f"Bearer {settings.openai_api_key}"},
            json={"model": settings.embedding_model, "input": text},
        )
    if response.status_code != 200:
        raise KnowledgeSearchError(f"Embedding error: {response.status_code} - {response.text}")

    data = response.json()
    items = data.get("data") or []
    if not items:
        raise KnowledgeSearchError("Embedding response has no data")
    return items[0].get("embedding") or []


async def search_knowledge(
    query: str,
    instance_id: UUID,
    limit: int | None = None,
    score_threshold: float | None = None,
) -> List[dict]:
    """Similarity search over the instance's knowledge chunks.

    Returns results ordered best-first; an unavailable index yields [].
    """
    if not query or not query.strip():
        return []

    embedding = await get_embedding(query)

    async with httpx.AsyncClient(timeout=settings.search_timeout_seconds) as client:
        response = await client.post(
            f"{settings.vector_search_url}/collections/{settings.vector_collection}/points/search",
            headers={"api-key": settings.vector_search_api_key},
            json={
                "vector": embedding,
                "limit": limit or settings.search_limit,
                "score_threshold": settings.search_score_threshold if score_threshold is None else score_threshold,
                "filter": {"must": [{"key": "metadata.instance_id", "match": {"value": str(instance_id)}}]},
                "with_payload": True,
            },
        )

    if response.status_code != 200:
        logger.error(
            "Vector search failed",
            extra={"context": {"status": response.status_code, "query": query[:50]}},
        )
        return []

    results = []
    for point in response.json().get("result", []):
        payload = point.get("payload", {})
        results.append(
            {
                "score": point.get("score") or 0.0,
                "text": payload.get("content"),
                "source": payload.get("metadata", {}).get("file_name"),
                "metadata": payload.get("metadata", {}),
            }
        )

    results.sort(key=lambda r: r["score"], reverse=True)
    logger.info(f"Knowledge search: found {len(results)} results for '{query[:30]}...'")
    return results


def format_knowledge_context(results: List[dict]) -> str:
    """Join passages best-first into separator-delimited sections."""
    sections = [r["text"].strip() for r in results if r.get("text") and r["text"].strip()]
    return SECTION_SEPARATOR.join(sections)
