"""Reciprocal rank fusion of text and vector search results."""

import logging
from typing import Dict, List, Optional

from db.graph_client import Entity, GraphClient

from .text_search import SearchResult, TextRankScorer
from .vector_search import VectorRankScorer, VectorResult

logger = logging.getLogger(__name__)

RRF_K = 60
SEMANTIC_FIELD = "semantic"


class HybridRanker:
    def __init__(
        self,
        client: GraphClient,
        text_scorer: Optional[TextRankScorer] = None,
        vector_scorer: Optional[VectorRankScorer] = None,
    ):
        self.text_scorer = text_scorer or TextRankScorer(client)
        self.vector_scorer = vector_scorer or VectorRankScorer(client)

    async def search(
        self, query: str, limit: int = 50, semantic: bool = True
    ) -> List[SearchResult]:
        text_results = await self.text_scorer.search(query, limit=limit * 2)
        vector_results: List[VectorResult] = []
        if semantic:
            vector_results = await self.vector_scorer.search(query, limit=limit * 2)

        if not vector_results:
            return text_results[:limit]
        return self.fuse(text_results, vector_results, limit)

    @staticmethod
    def fuse(
        text_results: List[SearchResult],
        vector_results: List[VectorResult],
        limit: int,
    ) -> List[SearchResult]:
        scores: Dict[int, float] = {}
        entities: Dict[int, Entity] = {}
        matched_fields: Dict[int, List[str]] = {}

        for rank, result in enumerate(text_results):
            entity_id = result.entity.id
            scores[entity_id] = scores.get(entity_id, 0.0) + 1.0 / (RRF_K + rank + 1)
            entities[entity_id] = result.entity
            matched_fields[entity_id] = list(result.matched_fields)

        for rank, result in enumerate(vector_results):
            entity_id = result.entity.id
            scores[entity_id] = scores.get(entity_id, 0.0) + 1.0 / (RRF_K + rank + 1)
            entities.setdefault(entity_id, result.entity)
            fields = matched_fields.setdefault(entity_id, [])
            if SEMANTIC_FIELD not in fields:
                fields.append(SEMANTIC_FIELD)

        ranked = sorted(scores.items(), key=lambda item: -item[1])[:limit]
        logger.debug(
            "HybridRanker: fused %d text and %d vector results",
            len(text_results),
            len(vector_results),
        )
        return [
            SearchResult(entities[entity_id], score, matched_fields[entity_id])
            for entity_id, score in ranked
        ]
