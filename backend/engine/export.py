"""
Portable tree export of the knowledge graph.

Roots are entities with no outgoing parent-child relation (nothing they are
`part_of` / `depends_on`). From each requested root the exporter descends
into:

1. entities that point at the node through a parent-child relation, and
2. entities the node points at through any other relation type.

Each branch carries its own frozen set of ancestor ids, so an entity may be
repeated across sibling branches (or twice under one parent when linked by
both kinds of relation) but never inside its own ancestry.
"""

import json
import logging
from datetime import datetime, timezone
from typing import Any, Dict, FrozenSet, Iterable, List, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from db.graph_client import (
    PARENT_CHILD_RELATION_TYPES,
    PROJECT_ENTITY_TYPE,
    Entity,
    GraphClient,
    Observation,
    Relation,
    iso_utc,
)

logger = logging.getLogger(__name__)

FORMAT_VERSION = "1.0"


def child_entity_ids_query():
    """Ids of entities that sit below some parent."""
    return select(Relation.from_entity_id).where(
        Relation.relation_type.in_(PARENT_CHILD_RELATION_TYPES)
    )


class GraphExporter:
    def __init__(self, client: GraphClient):
        self.client = client

    async def root_nodes(self) -> List[Entity]:
        """Projects first, then every other root, each group by name."""
        query = (
            select(Entity)
            .where(Entity.id.not_in(child_entity_ids_query()))
            .order_by(Entity.name, Entity.id)
        )
        async with self.client.session() as session:
            roots = (await session.execute(query)).scalars().all()
        projects = [e for e in roots if e.entity_type == PROJECT_ENTITY_TYPE]
        others = [e for e in roots if e.entity_type != PROJECT_ENTITY_TYPE]
        return projects + others

    async def export(self, entity_ids: Optional[Iterable[Any]]) -> Dict[str, Any]:
        requested: List[int] = []
        for raw in entity_ids or []:
            try:
                value = int(raw)
            except (TypeError, ValueError):
                continue
            if value not in requested:
                requested.append(value)

        root_payload: List[Dict[str, Any]] = []
        async with self.client.session() as session:
            for entity_id in requested:
                entity = await session.get(Entity, entity_id)
                if entity is None:
                    logger.debug("GraphExporter: skipping unknown entity %s", entity_id)
                    continue
                node = await self._build_tree(session, entity, frozenset())
                if node is not None:
                    root_payload.append(node)

        return {
            "version": FORMAT_VERSION,
            "exported_at": iso_utc(datetime.now(timezone.utc)),
            "root_nodes": root_payload,
        }

    async def export_json(self, entity_ids: Optional[Iterable[Any]]) -> str:
        return json.dumps(await self.export(entity_ids), ensure_ascii=False, indent=2)

    async def _build_tree(
        self,
        session: AsyncSession,
        entity: Entity,
        ancestors: FrozenSet[int],
        relation_type: Optional[str] = None,
    ) -> Optional[Dict[str, Any]]:
        if entity.id in ancestors:
            return None
        branch = ancestors | {entity.id}
        logger.debug("GraphExporter: building tree for %s (%s)", entity.id, entity.name)

        observations = (
            await session.execute(
                select(Observation)
                .where(Observation.entity_id == entity.id)
                .order_by(Observation.created_at, Observation.id)
            )
        ).scalars().all()

        node: Dict[str, Any] = {
            "name": entity.name,
            "entity_type": entity.entity_type,
            "aliases": entity.aliases,
            "description": entity.description,
            "observations": [
                {"content": o.content, "created_at": iso_utc(o.created_at)}
                for o in observations
            ],
            "children": [],
        }
        if relation_type:
            node["relation_type"] = relation_type

        child_rows = (
            await session.execute(
                select(Relation.from_entity_id, Relation.relation_type)
                .where(
                    Relation.to_entity_id == entity.id,
                    Relation.relation_type.in_(PARENT_CHILD_RELATION_TYPES),
                )
                .order_by(Relation.id)
            )
        ).all()
        related_rows = (
            await session.execute(
                select(Relation.to_entity_id, Relation.relation_type)
                .where(
                    Relation.from_entity_id == entity.id,
                    Relation.relation_type.not_in(PARENT_CHILD_RELATION_TYPES),
                )
                .order_by(Relation.id)
            )
        ).all()

        for other_id, other_type in list(child_rows) + list(related_rows):
            if other_id in branch:
                continue
            other = await session.get(Entity, other_id)
            if other is None:
                continue
            child = await self._build_tree(session, other, branch, other_type)
            if child is not None:
                node["children"].append(child)
        return node
