"""
Graph surgery for the clean-up workflow: move, merge and delete nodes.

Each operation runs in a single transaction. Missing ids raise NotFoundError,
rule violations raise ValidationFailedError, and store-level failures are
re-raised as OperationFailedError once the transaction has rolled back.
"""

import logging
from typing import Any, Dict, List, Set, Tuple

from sqlalchemy import delete, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from db.graph_client import (
    DEFAULT_RELATION_TYPE,
    PARENT_CHILD_RELATION_TYPES,
    GraphClient,
    Observation,
    Relation,
)

from .aliases import merge_aliases, parse_aliases
from .errors import OperationFailedError, ValidationFailedError

logger = logging.getLogger(__name__)


class NodeConsolidator:
    def __init__(self, client: GraphClient):
        self.client = client

    async def move(self, node_id: int, parent_id: int) -> Dict[str, Any]:
        """Make `node_id` a `part_of` child of `parent_id` and nothing else."""
        try:
            async with self.client.session() as session:
                node = await GraphClient.require_entity(session, node_id, "Node")
                parent = await GraphClient.require_entity(session, parent_id, "Parent node")
                if node.id == parent.id:
                    raise ValidationFailedError("Cannot move a node to itself")
                existing = await session.scalar(
                    select(Relation.id).where(
                        Relation.from_entity_id == node.id,
                        Relation.to_entity_id == parent.id,
                        Relation.relation_type == DEFAULT_RELATION_TYPE,
                    )
                )
                if existing is not None:
                    raise ValidationFailedError("Node is already a child of this parent")

                await session.execute(
                    delete(Relation).where(
                        Relation.from_entity_id == node.id,
                        Relation.relation_type.in_(PARENT_CHILD_RELATION_TYPES),
                    )
                )
                session.add(
                    Relation(
                        from_entity_id=node.id,
                        to_entity_id=parent.id,
                        relation_type=DEFAULT_RELATION_TYPE,
                    )
                )
                await session.flush()
                node_name, parent_name = node.name, parent.name
        except SQLAlchemyError as exc:
            raise OperationFailedError(f"Failed to move node: {exc}") from exc

        logger.info("Moved node %s (%s) under %s (%s)", node_id, node_name, parent_id, parent_name)
        return {
            "success": True,
            "message": f"Successfully moved '{node_name}' under '{parent_name}'",
        }

    async def merge(self, source_id: int, target_id: int) -> Dict[str, Any]:
        """Fold `source_id` into `target_id` and delete the source."""
        try:
            async with self.client.session() as session:
                source = await GraphClient.require_entity(session, source_id, "Source node")
                target = await GraphClient.require_entity(session, target_id, "Target node")
                if source.id == target.id:
                    raise ValidationFailedError("Cannot merge a node into itself")
                source_name, target_name = source.name, target.name

                extra = [] if source_name.lower() == target_name.lower() else [source_name]
                target.aliases = merge_aliases(
                    parse_aliases(target.aliases), parse_aliases(source.aliases), extra
                )

                moved = await session.execute(
                    update(Observation)
                    .where(Observation.entity_id == source.id)
                    .values(entity_id=target.id)
                    .execution_options(synchronize_session=False)
                )
                transferred = int(moved.rowcount or 0)

                relations = await self._repoint_relations(session, source.id, target.id)
                await GraphClient.refresh_observation_count(session, target.id)
                await GraphClient.purge_entity(session, source.id)
        except SQLAlchemyError as exc:
            raise OperationFailedError(f"Failed to merge nodes: {exc}") from exc

        await self.client.refresh_embeddings([target_id])
        logger.info(
            "Merged '%s' (%s) into '%s' (%s); transferred %d observations",
            source_name,
            source_id,
            target_name,
            target_id,
            transferred,
        )
        return {
            "success": True,
            "message": f"Successfully merged '{source_name}' into '{target_name}'",
            "observations_transferred": transferred,
            "relations_kept": relations,
        }

    @staticmethod
    async def _repoint_relations(
        session: AsyncSession, source_id: int, target_id: int
    ) -> int:
        """Swap source for target on every edge, dropping self-loops and duplicates.

        The final set is computed up front so the (from, to, type) unique
        constraint holds after every statement: losers are deleted before any
        survivor is rewritten. Returns the number of surviving edges.
        """
        rows = (
            await session.execute(
                select(
                    Relation.id,
                    Relation.from_entity_id,
                    Relation.to_entity_id,
                    Relation.relation_type,
                )
                .where(
                    Relation.from_entity_id.in_((source_id, target_id))
                    | Relation.to_entity_id.in_((source_id, target_id))
                )
                .order_by(Relation.id)
            )
        ).all()

        def swap(entity_id: int) -> int:
            return target_id if entity_id == source_id else entity_id

        survivors: Dict[Tuple[int, int, str], Tuple[int, int, int]] = {}
        losers: List[int] = []
        for relation_id, from_id, to_id, relation_type in rows:
            new_from, new_to = swap(from_id), swap(to_id)
            key = (new_from, new_to, relation_type)
            if new_from == new_to or key in survivors:
                losers.append(relation_id)
                continue
            survivors[key] = (relation_id, from_id, to_id)

        if losers:
            await session.execute(
                delete(Relation)
                .where(Relation.id.in_(losers))
                .execution_options(synchronize_session=False)
            )
        for (new_from, new_to, _), (relation_id, from_id, to_id) in survivors.items():
            if (new_from, new_to) == (from_id, to_id):
                continue
            await session.execute(
                update(Relation)
                .where(Relation.id == relation_id)
                .values(from_entity_id=new_from, to_entity_id=new_to)
                .execution_options(synchronize_session=False)
            )
        return len(survivors)

    async def delete(self, node_id: int, cascade: bool = False) -> Dict[str, Any]:
        """Delete a node; children are orphaned, or removed too with `cascade`."""
        try:
            async with self.client.session() as session:
                node = await GraphClient.require_entity(session, node_id, "Node")
                node_name = node.name
                deleted = 0
                if cascade:
                    deleted = await self._delete_descendants(session, node.id, {node.id})
                else:
                    await session.execute(
                        delete(Relation).where(
                            Relation.to_entity_id == node.id,
                            Relation.relation_type.in_(PARENT_CHILD_RELATION_TYPES),
                        )
                    )
                deleted += await GraphClient.purge_entity(session, node.id)
        except SQLAlchemyError as exc:
            raise OperationFailedError(f"Failed to delete node: {exc}") from exc

        logger.info("Deleted node '%s' (%s); total deleted: %d", node_name, node_id, deleted)
        if cascade:
            message = f"Successfully deleted '{node_name}' and {deleted - 1} descendants"
        else:
            message = f"Successfully deleted '{node_name}'"
        return {"success": True, "message": message, "deleted_count": deleted}

    async def _delete_descendants(
        self, session: AsyncSession, node_id: int, visited: Set[int]
    ) -> int:
        child_ids = (
            await session.execute(
                select(Relation.from_entity_id)
                .where(
                    Relation.to_entity_id == node_id,
                    Relation.relation_type.in_(PARENT_CHILD_RELATION_TYPES),
                )
                .order_by(Relation.id)
            )
        ).scalars().all()

        count = 0
        for child_id in child_ids:
            if child_id in visited:
                continue
            visited.add(child_id)
            count += await self._delete_descendants(session, child_id, visited)
            count += await GraphClient.purge_entity(session, child_id)
        return count
