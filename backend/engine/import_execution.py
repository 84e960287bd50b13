"""
Apply operator decisions to an import tree.

The whole walk runs in one transaction. Every node's entity work and its
parent relation each run inside a SAVEPOINT: a failing node is rolled back
to its savepoint, reported in `errors`, and its subtree is skipped while
siblings carry on. Anything escaping the walk rolls back the transaction and
yields a report with zero counts.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple, Union

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from db.graph_client import (
    DEFAULT_RELATION_TYPE,
    Entity,
    GraphClient,
    Observation,
    Relation,
    parse_iso_datetime,
)

from .aliases import merge_aliases, parse_aliases
from .errors import GraphMemoryError, NotFoundError, ValidationFailedError
from .import_matching import (
    INVALID_FORMAT_ERROR,
    INVALID_JSON_ERROR,
    is_valid_document,
    node_children,
    parse_import_document,
)

logger = logging.getLogger(__name__)


# =============================================================================
# Decisions
# =============================================================================


@dataclass(frozen=True)
class CreateDecision:
    parent_id: Optional[int] = None


@dataclass(frozen=True)
class MergeDecision:
    target_id: Optional[int]
    parent_id: Optional[int] = None


@dataclass(frozen=True)
class SkipDecision:
    target_id: Optional[int] = None
    parent_id: Optional[int] = None


@dataclass(frozen=True)
class AddRelationDecision:
    target_id: Optional[int] = None
    parent_id: Optional[int] = None


Decision = Union[CreateDecision, MergeDecision, SkipDecision, AddRelationDecision]

_DECISION_TYPES = {
    "create": CreateDecision,
    "merge": MergeDecision,
    "skip": SkipDecision,
    "add_relation": AddRelationDecision,
}


def _optional_int(value: Any) -> Optional[int]:
    if value is None or value == "":
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def parse_decision(raw: Any) -> Decision:
    """Build a decision from a mapping; `child_action` overrides `action`."""
    if isinstance(raw, (CreateDecision, MergeDecision, SkipDecision, AddRelationDecision)):
        return raw
    if not isinstance(raw, Mapping):
        return CreateDecision()
    action = str(raw.get("child_action") or raw.get("action") or "create").strip().lower()
    parent_id = _optional_int(raw.get("parent_id"))
    decision_type = _DECISION_TYPES.get(action, CreateDecision)
    if decision_type is CreateDecision:
        return CreateDecision(parent_id=parent_id)
    return decision_type(target_id=_optional_int(raw.get("target_id")), parent_id=parent_id)


def normalize_decisions(decisions: Any) -> Dict[str, Decision]:
    """Accept {node_path: decision} or [{node_path, ...}, ...]."""
    if not decisions:
        return {}
    if isinstance(decisions, Mapping):
        return {str(path): parse_decision(raw) for path, raw in decisions.items()}
    normalized: Dict[str, Decision] = {}
    for raw in decisions:
        if isinstance(raw, Mapping) and raw.get("node_path") is not None:
            normalized[str(raw["node_path"])] = parse_decision(raw)
    return normalized


# =============================================================================
# Report
# =============================================================================


@dataclass
class ImportReport:
    entities_created: int = 0
    entities_merged: int = 0
    entities_skipped: int = 0
    observations_created: int = 0
    relations_created: int = 0
    errors: List[str] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return not self.errors

    def absorb(self, other: "ImportReport") -> None:
        self.entities_created += other.entities_created
        self.entities_merged += other.entities_merged
        self.entities_skipped += other.entities_skipped
        self.observations_created += other.observations_created
        self.relations_created += other.relations_created
        self.errors.extend(other.errors)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "entities_created": self.entities_created,
            "entities_merged": self.entities_merged,
            "entities_skipped": self.entities_skipped,
            "observations_created": self.observations_created,
            "relations_created": self.relations_created,
            "errors": list(self.errors),
        }


# =============================================================================
# Executor
# =============================================================================


class ImportExecutor:
    def __init__(self, client: GraphClient):
        self.client = client

    async def execute(self, import_data: Any, decisions: Any = None) -> ImportReport:
        data = parse_import_document(import_data)
        if data is None:
            return ImportReport(errors=[INVALID_JSON_ERROR])
        if not is_valid_document(data):
            return ImportReport(errors=[INVALID_FORMAT_ERROR])

        decision_map = normalize_decisions(decisions)
        report = ImportReport()
        touched: List[int] = []
        logger.info("ImportExecutor: starting import of %d roots", len(data["root_nodes"]))

        try:
            async with self.client.session() as session:
                for index, root in enumerate(data["root_nodes"]):
                    if isinstance(root, dict):
                        await self._process_node(
                            session, root, str(index), decision_map, None, report, touched
                        )
        except (SQLAlchemyError, GraphMemoryError, TypeError, ValueError) as exc:
            logger.error("ImportExecutor: transaction failed: %s", exc)
            return ImportReport(errors=report.errors + [f"Transaction failed: {exc}"])

        await self.client.refresh_embeddings(touched)
        logger.info("ImportExecutor: finished %s", report.to_dict())
        return report

    async def _process_node(
        self,
        session: AsyncSession,
        node: Dict[str, Any],
        path: str,
        decision_map: Dict[str, Decision],
        tree_parent_id: Optional[int],
        report: ImportReport,
        touched: List[int],
    ) -> None:
        decision = decision_map.get(path) or CreateDecision()
        tally = ImportReport()
        try:
            async with session.begin_nested():
                entity_id, skipped = await self._apply(session, node, decision, tally)
        except (SQLAlchemyError, GraphMemoryError) as exc:
            logger.warning("ImportExecutor: node %s failed: %s", path, exc)
            report.errors.append(str(exc))
            return
        report.absorb(tally)
        if not skipped:
            touched.append(entity_id)

        parent_id = decision.parent_id or tree_parent_id
        if not skipped and parent_id is not None:
            relation_type = str(node.get("relation_type") or "").strip() or DEFAULT_RELATION_TYPE
            try:
                async with session.begin_nested():
                    if await self._link(session, entity_id, parent_id, relation_type):
                        report.relations_created += 1
            except (SQLAlchemyError, GraphMemoryError) as exc:
                report.errors.append(
                    f"Failed to create relation ({entity_id} -> {parent_id}): {exc}"
                )

        for index, child in enumerate(node_children(node)):
            await self._process_node(
                session,
                child,
                f"{path}.children.{index}",
                decision_map,
                entity_id,
                report,
                touched,
            )

    async def _apply(
        self,
        session: AsyncSession,
        node: Dict[str, Any],
        decision: Decision,
        tally: ImportReport,
    ) -> Tuple[int, bool]:
        """Resolve the node to an entity id; the flag is True for a real skip."""
        if isinstance(decision, MergeDecision):
            return await self._merge_into(session, node, decision.target_id, tally), False

        if isinstance(decision, (SkipDecision, AddRelationDecision)):
            existing = await self._find_existing(session, node, decision.target_id)
            if existing is None:
                logger.warning(
                    "ImportExecutor: %s target for '%s' not found, creating instead",
                    type(decision).__name__,
                    node.get("name"),
                )
                return await self._create(session, node, tally), False
            if isinstance(decision, SkipDecision):
                tally.entities_skipped += 1
                return existing.id, True
            return await self._merge_into(session, node, existing.id, tally), False

        return await self._create(session, node, tally), False

    @staticmethod
    async def _find_existing(
        session: AsyncSession, node: Dict[str, Any], target_id: Optional[int]
    ) -> Optional[Entity]:
        if target_id is not None:
            entity = await session.get(Entity, target_id)
            if entity is not None:
                return entity
        return await session.scalar(
            select(Entity)
            .where(
                Entity.name == str(node.get("name") or ""),
                Entity.entity_type == str(node.get("entity_type") or ""),
            )
            .order_by(Entity.id)
            .limit(1)
        )

    async def _create(
        self, session: AsyncSession, node: Dict[str, Any], tally: ImportReport
    ) -> int:
        name = str(node.get("name") or "").strip()
        entity_type = str(node.get("entity_type") or "").strip()
        if not name or not entity_type:
            raise ValidationFailedError(
                f"Failed to create entity '{name}': name and entity_type can't be blank"
            )

        existing_id = await session.scalar(
            select(Entity.id).where(Entity.name == name).order_by(Entity.id).limit(1)
        )
        if existing_id is not None:
            logger.warning("ImportExecutor: entity '%s' already exists, merging instead", name)
            return await self._merge_into(session, node, existing_id, tally)

        entity = Entity(
            name=name,
            entity_type=entity_type,
            aliases=node.get("aliases") or None,
            description=node.get("description") or None,
            observations_count=0,
        )
        session.add(entity)
        await session.flush()
        await self._import_observations(session, node, entity.id, tally)
        await GraphClient.refresh_observation_count(session, entity.id)
        tally.entities_created += 1
        logger.info("ImportExecutor: created entity %s (%s)", entity.id, name)
        return entity.id

    async def _merge_into(
        self,
        session: AsyncSession,
        node: Dict[str, Any],
        target_id: Optional[int],
        tally: ImportReport,
    ) -> int:
        target = await session.get(Entity, target_id) if target_id is not None else None
        if target is None:
            raise NotFoundError(f"Target entity {target_id} not found for merge")

        incoming = parse_aliases(node.get("aliases"))
        if incoming:
            target.aliases = merge_aliases(parse_aliases(target.aliases), incoming)
        await self._import_observations(session, node, target.id, tally)
        await GraphClient.refresh_observation_count(session, target.id)
        tally.entities_merged += 1
        logger.info("ImportExecutor: merged into entity %s (%s)", target.id, target.name)
        return target.id

    @staticmethod
    async def _import_observations(
        session: AsyncSession, node: Dict[str, Any], entity_id: int, tally: ImportReport
    ) -> None:
        present = set(
            (
                await session.execute(
                    select(Observation.content).where(Observation.entity_id == entity_id)
                )
            ).scalars().all()
        )
        for item in _observation_items(node.get("observations")):
            content = item.get("content")
            if not isinstance(content, str) or not content.strip() or content in present:
                continue
            observation = Observation(entity_id=entity_id, content=content)
            created_at = parse_iso_datetime(item.get("created_at"))
            if created_at is not None:
                observation.created_at = created_at
            session.add(observation)
            present.add(content)
            tally.observations_created += 1
        await session.flush()

    @staticmethod
    async def _link(
        session: AsyncSession, child_id: int, parent_id: int, relation_type: str
    ) -> bool:
        """Create child -> parent unless it is a self-loop or already present."""
        if child_id == parent_id:
            return False
        if await session.get(Entity, parent_id) is None:
            raise NotFoundError(f"Parent entity {parent_id} not found")
        existing = await session.scalar(
            select(Relation.id).where(
                Relation.from_entity_id == child_id,
                Relation.to_entity_id == parent_id,
                Relation.relation_type == relation_type,
            )
        )
        if existing is not None:
            return False
        session.add(
            Relation(
                from_entity_id=child_id,
                to_entity_id=parent_id,
                relation_type=relation_type,
            )
        )
        await session.flush()
        logger.debug(
            "ImportExecutor: created relation %s -[%s]-> %s", child_id, relation_type, parent_id
        )
        return True


def _observation_items(raw: Optional[Iterable[Any]]) -> List[Dict[str, Any]]:
    items = []
    for item in raw or []:
        if isinstance(item, dict):
            items.append(item)
        elif isinstance(item, str):
            items.append({"content": item})
    return items
