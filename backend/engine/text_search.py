"""
Token-weighted relevance search over entity name, type and aliases.

Candidates are pre-filtered in SQL with a case-insensitive substring match on
any token, then scored in Python:

- each token found in a field adds that field's weight
  (entity_type=15, name=10, aliases=5)
- a token equal to a whole word of the field adds half the weight again
- matching more than one distinct token adds (matched - 1) * 2 once

Scores are truncated to int; results order by entity_type, then score.
"""

import logging
import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Sequence, Tuple

from sqlalchemy import func, or_, select

from db.graph_client import Entity, GraphClient, iso_utc

logger = logging.getLogger(__name__)

FIELD_WEIGHTS = (
    ("entity_type", 15),
    ("name", 10),
    ("aliases", 5),
)
EXACT_WORD_BONUS = 0.5
MULTI_TOKEN_BONUS = 2
MIN_SCORE = 1

_WORD_SPLIT = re.compile(r"[\s,|]+")


@dataclass
class SearchResult:
    entity: Entity
    score: float
    matched_fields: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        entity = self.entity
        score = self.score
        if isinstance(score, float) and not score.is_integer():
            score = round(score, 4)
        return {
            "entity_id": entity.id,
            "name": entity.name,
            "entity_type": entity.entity_type,
            "aliases": entity.aliases,
            "description": entity.description,
            "observations_count": int(entity.observations_count or 0),
            "created_at": iso_utc(entity.created_at),
            "updated_at": iso_utc(entity.updated_at),
            "relevance_score": score,
            "matched_fields": list(self.matched_fields),
        }


def tokenize_query(query: Any) -> List[str]:
    tokens: List[str] = []
    for token in str(query or "").lower().split():
        if token and token not in tokens:
            tokens.append(token)
    return tokens


def score_entity(entity: Any, tokens: Sequence[str]) -> Tuple[int, List[str]]:
    """Score one entity against already-normalized tokens."""
    values = {
        field_name: str(getattr(entity, field_name, None) or "").lower()
        for field_name, _ in FIELD_WEIGHTS
    }
    words = {name: set(_WORD_SPLIT.split(value)) for name, value in values.items()}

    score = 0.0
    matched_fields: List[str] = []
    matched_tokens = 0
    for token in tokens:
        token_matched = False
        for field_name, weight in FIELD_WEIGHTS:
            if token not in values[field_name]:
                continue
            token_matched = True
            score += weight
            if token in words[field_name]:
                score += weight * EXACT_WORD_BONUS
            if field_name not in matched_fields:
                matched_fields.append(field_name)
        if token_matched:
            matched_tokens += 1

    if matched_tokens > 1:
        score += (matched_tokens - 1) * MULTI_TOKEN_BONUS
    return int(score), matched_fields


class TextRankScorer:
    """Relevance-ranked substring search; blank queries return nothing."""

    def __init__(self, client: GraphClient):
        self.client = client

    async def search(self, query: str, limit: int = 50) -> List[SearchResult]:
        tokens = tokenize_query(query)
        if not tokens or limit <= 0:
            return []

        logger.debug("TextRankScorer: searching for tokens %s", tokens)
        conditions = []
        for token in tokens:
            conditions.extend(
                func.lower(column).contains(token, autoescape=True)
                for column in (Entity.name, Entity.entity_type, Entity.aliases)
            )
        async with self.client.session() as session:
            candidates = (
                await session.execute(select(Entity).where(or_(*conditions)))
            ).scalars().all()

        results = []
        for entity in candidates:
            score, matched_fields = score_entity(entity, tokens)
            if score >= MIN_SCORE:
                results.append(SearchResult(entity, score, matched_fields))

        # Two stable sorts: score desc first, then entity_type asc on top of it.
        results.sort(key=lambda r: (-r.score, str(r.entity.name).lower(), r.entity.id))
        results.sort(key=lambda r: str(r.entity.entity_type))
        return results[:limit]
