"""Suggest parent Projects for orphan entities by name-token overlap."""

import logging
import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence

from sqlalchemy import func, select

from db.graph_client import (
    PARENT_CHILD_RELATION_TYPES,
    PROJECT_ENTITY_TYPE,
    Entity,
    GraphClient,
    Relation,
)

from .aliases import parse_aliases
from .export import child_entity_ids_query

logger = logging.getLogger(__name__)

_TOKEN_SPLIT = re.compile(r"[\s_\-\.]+")
MIN_TOKEN_LENGTH = 2

NAME_TOKEN_SCORE = 10
NAME_SUBSTRING_SCORE = 5
ALIAS_TOKEN_SCORE = 8
ALIAS_SUBSTRING_SCORE = 3


def tokenize(name: Optional[str]) -> List[str]:
    tokens: List[str] = []
    for part in _TOKEN_SPLIT.split(str(name or "")):
        token = part.strip().lower()
        if len(token) >= MIN_TOKEN_LENGTH and token not in tokens:
            tokens.append(token)
    return tokens


@dataclass
class ProjectMatch:
    project: Entity
    score: int
    matched_tokens: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.project.id,
            "name": self.project.name,
            "score": self.score,
            "matched_tokens": list(self.matched_tokens),
        }


def score_against_project(tokens: Sequence[str], project: Any) -> ProjectMatch:
    name_lower = str(project.name or "").lower()
    aliases_lower = str(project.aliases or "").lower()
    name_tokens = tokenize(project.name)
    alias_tokens = [t for alias in parse_aliases(project.aliases) for t in tokenize(alias)]

    score = 0
    matched: List[str] = []
    for token in tokens:
        if token in name_tokens:
            score += NAME_TOKEN_SCORE
        elif token in name_lower:
            score += NAME_SUBSTRING_SCORE
        elif token in alias_tokens:
            score += ALIAS_TOKEN_SCORE
        elif token in aliases_lower:
            score += ALIAS_SUBSTRING_SCORE
        else:
            continue
        matched.append(token)
    return ProjectMatch(project, score, matched)


class OrphanMatcher:
    def __init__(self, client: GraphClient):
        self.client = client

    async def orphan_nodes(self) -> List[Entity]:
        """Roots that are not Projects, ordered by name."""
        query = (
            select(Entity)
            .where(
                Entity.id.not_in(child_entity_ids_query()),
                Entity.entity_type != PROJECT_ENTITY_TYPE,
            )
            .order_by(Entity.name, Entity.id)
        )
        async with self.client.session() as session:
            return list((await session.execute(query)).scalars().all())

    async def all_projects(self) -> List[Entity]:
        query = (
            select(Entity)
            .where(Entity.entity_type == PROJECT_ENTITY_TYPE)
            .order_by(Entity.name, Entity.id)
        )
        async with self.client.session() as session:
            return list((await session.execute(query)).scalars().all())

    async def match_to_projects(
        self, node: Any, projects: Optional[List[Entity]] = None
    ) -> List[ProjectMatch]:
        tokens = tokenize(node.name)
        if not tokens:
            return []
        if projects is None:
            projects = await self.all_projects()

        matches = [score_against_project(tokens, project) for project in projects]
        matches = [m for m in matches if m.score > 0]
        matches.sort(key=lambda m: -m.score)
        return matches

    async def orphans_with_matches(self) -> List[Dict[str, Any]]:
        orphans = await self.orphan_nodes()
        projects = await self.all_projects()
        child_counts = await self._child_counts([o.id for o in orphans])

        payload = []
        for orphan in orphans:
            matches = await self.match_to_projects(orphan, projects)
            payload.append(
                {
                    "id": orphan.id,
                    "name": orphan.name,
                    "entity_type": orphan.entity_type,
                    "observations_count": int(orphan.observations_count or 0),
                    "children_count": child_counts.get(orphan.id, 0),
                    "suggested_parents": [m.to_dict() for m in matches],
                }
            )
        logger.debug("OrphanMatcher: %d orphans, %d projects", len(orphans), len(projects))
        return payload

    async def _child_counts(self, entity_ids: List[int]) -> Dict[int, int]:
        if not entity_ids:
            return {}
        async with self.client.session() as session:
            rows = await session.execute(
                select(Relation.to_entity_id, func.count(Relation.id))
                .where(
                    Relation.to_entity_id.in_(entity_ids),
                    Relation.relation_type.in_(PARENT_CHILD_RELATION_TYPES),
                )
                .group_by(Relation.to_entity_id)
            )
            return {row[0]: int(row[1]) for row in rows.all()}
