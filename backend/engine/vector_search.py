"""
Semantic nearest-neighbour search over stored embeddings.

Vectors are stored as JSON text, so cosine distance is computed in Python
over every row holding an embedding. Every failure degrades to an empty
result: semantic search is an optional layer on top of text search.
"""

import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError

from db.embedding import cosine_distance
from db.graph_client import Entity, GraphClient, Observation, load_vector

logger = logging.getLogger(__name__)

DEFAULT_MERGE_THRESHOLD = 0.3
DEFAULT_MERGE_LIMIT = 20
HIGH_CONFIDENCE_MERGE_DISTANCE = 0.15
MAX_CANDIDATES_PER_ENTITY = 3


@dataclass
class VectorResult:
    entity: Entity
    distance: float


class VectorRankScorer:
    def __init__(self, client: GraphClient):
        self.client = client

    async def _embed_query(self, query: str) -> Optional[List[float]]:
        if not self.client.vector_enabled():
            return None
        return await self.client.embedding.embed(query)

    async def search(self, query: str, limit: int = 20) -> List[VectorResult]:
        """Entities ordered by ascending cosine distance to the query."""
        try:
            query_vector = await self._embed_query(query)
            if not query_vector or limit <= 0:
                return []
            async with self.client.session() as session:
                entities = (
                    await session.execute(
                        select(Entity).where(Entity.embedding.is_not(None))
                    )
                ).scalars().all()
        except (SQLAlchemyError, ValueError) as exc:
            logger.error("VectorRankScorer: %s", exc)
            return []

        results = []
        for entity in entities:
            vector = load_vector(entity.embedding)
            if vector:
                results.append(
                    VectorResult(entity, cosine_distance(query_vector, vector))
                )
        results.sort(key=lambda r: (r.distance, r.entity.id))
        return results[:limit]

    async def search_observations(self, query: str, limit: int = 50) -> List[int]:
        """Entity ids ranked by their closest observation to the query."""
        try:
            query_vector = await self._embed_query(query)
            if not query_vector or limit <= 0:
                return []
            async with self.client.session() as session:
                rows = (
                    await session.execute(
                        select(Observation.entity_id, Observation.embedding).where(
                            Observation.embedding.is_not(None)
                        )
                    )
                ).all()
        except (SQLAlchemyError, ValueError) as exc:
            logger.error("VectorRankScorer.search_observations: %s", exc)
            return []

        best: Dict[int, float] = {}
        for entity_id, raw in rows:
            vector = load_vector(raw)
            if not vector:
                continue
            distance = cosine_distance(query_vector, vector)
            if entity_id not in best or distance < best[entity_id]:
                best[entity_id] = distance
        ranked = sorted(best.items(), key=lambda item: (item[1], item[0]))
        return [entity_id for entity_id, _ in ranked[:limit]]

    async def suggest_merges(
        self,
        threshold: float = DEFAULT_MERGE_THRESHOLD,
        limit: int = DEFAULT_MERGE_LIMIT,
        entity_type: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Pairs of entities whose vectors sit closer than `threshold`."""
        suggestions: List[Dict[str, Any]] = []
        query = select(Entity).where(Entity.embedding.is_not(None)).order_by(Entity.id)
        if entity_type:
            query = query.where(Entity.entity_type == entity_type)
        async with self.client.session() as session:
            entities = (await session.execute(query)).scalars().all()

        vectors = [(entity, load_vector(entity.embedding)) for entity in entities]
        vectors = [(entity, vector) for entity, vector in vectors if vector]

        for index, (entity, vector) in enumerate(vectors):
            if len(suggestions) >= limit:
                break
            candidates = []
            for other, other_vector in vectors[index + 1:]:
                distance = cosine_distance(vector, other_vector)
                if distance < threshold:
                    candidates.append((distance, other))
            candidates.sort(key=lambda item: (item[0], item[1].id))
            for distance, other in candidates[:MAX_CANDIDATES_PER_ENTITY]:
                suggestions.append(
                    {
                        "entity_a": _entity_ref(entity),
                        "entity_b": _entity_ref(other),
                        "cosine_distance": round(distance, 4),
                        "recommendation": (
                            "high_confidence_merge"
                            if distance < HIGH_CONFIDENCE_MERGE_DISTANCE
                            else "review_manually"
                        ),
                    }
                )
                if len(suggestions) >= limit:
                    break

        return {
            "suggestions": suggestions,
            "total": len(suggestions),
            "threshold_used": threshold,
        }


def _entity_ref(entity: Entity) -> Dict[str, Any]:
    return {
        "entity_id": entity.id,
        "name": entity.name,
        "entity_type": entity.entity_type,
    }
