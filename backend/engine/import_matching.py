"""
Confidence classification of an import tree against the existing graph.

Root nodes go through relevance search on "<name> <entity_type>":

- high: best score >= 20, matched name or aliases plus entity_type, and the
  same entity_type (case-insensitive); the match is auto-selected
- low:  best score >= 10 and matched entity_type
- new:  anything else

Child nodes are matched exactly on (name, entity_type):

- skip:         found and already a child of an entity named like the
                import parent
- add_relation: found under some other parent (or none)
- new/create:   not found
"""

import json
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Set, Union

from sqlalchemy import func, select

from db.graph_client import (
    PARENT_CHILD_RELATION_TYPES,
    Entity,
    GraphClient,
    Observation,
    Relation,
)

from .export import GraphExporter
from .text_search import TextRankScorer

logger = logging.getLogger(__name__)

HIGH_CONFIDENCE_THRESHOLD = 20
LOW_CONFIDENCE_THRESHOLD = 10
ROOT_SEARCH_LIMIT = 10

STATUS_HIGH = "high"
STATUS_LOW = "low"
STATUS_NEW = "new"
STATUS_SKIP = "skip"
STATUS_ADD_RELATION = "add_relation"

CHILD_ACTION_SKIP = "skip"
CHILD_ACTION_ADD_RELATION = "add_relation"
CHILD_ACTION_CREATE = "create"

INVALID_JSON_ERROR = "Invalid JSON format"
INVALID_FORMAT_ERROR = "Invalid import format. Expected 'root_nodes' array."


def parse_import_document(raw: Union[str, bytes, Dict[str, Any], None]) -> Optional[Any]:
    """Decode a JSON string/bytes or pass a mapping through; None when unreadable."""
    if isinstance(raw, dict):
        return raw
    if isinstance(raw, (str, bytes)):
        try:
            return json.loads(raw)
        except ValueError as exc:
            logger.error("ImportMatcher: JSON parse error: %s", exc)
            return None
    return None


def is_valid_document(data: Any) -> bool:
    return isinstance(data, dict) and isinstance(data.get("root_nodes"), list)


def node_children(node: Dict[str, Any]) -> List[Dict[str, Any]]:
    children = node.get("children") or []
    return [child for child in children if isinstance(child, dict)]


def node_observation_contents(node: Dict[str, Any]) -> List[str]:
    contents = []
    for item in node.get("observations") or []:
        content = item.get("content") if isinstance(item, dict) else item
        if isinstance(content, str) and content.strip():
            contents.append(content)
    return contents


def _entity_summary(entity: Entity) -> Dict[str, Any]:
    return {
        "entity_id": entity.id,
        "name": entity.name,
        "entity_type": entity.entity_type,
        "aliases": entity.aliases,
        "observations_count": int(entity.observations_count or 0),
    }


@dataclass
class MatchResult:
    import_node: Dict[str, Any]
    node_path: str
    status: str
    matches: List[Dict[str, Any]] = field(default_factory=list)
    selected_match_id: Optional[int] = None
    parent_entity_id: Optional[int] = None
    is_child: bool = False
    import_parent_name: Optional[str] = None
    exact_match: Optional[Entity] = None
    child_action: Optional[str] = None
    will_add_observations: Optional[bool] = None

    def to_dict(self) -> Dict[str, Any]:
        node = self.import_node
        return {
            "import_node": {
                "name": node.get("name"),
                "entity_type": node.get("entity_type"),
                "aliases": node.get("aliases"),
                "description": node.get("description"),
                "observations_count": len(node.get("observations") or []),
                "children_count": len(node_children(node)),
                "relation_type": node.get("relation_type"),
            },
            "matches": list(self.matches),
            "status": self.status,
            "selected_match_id": self.selected_match_id,
            "parent_entity_id": self.parent_entity_id,
            "node_path": self.node_path,
            "is_child": self.is_child,
            "import_parent_name": self.import_parent_name,
            "exact_match": (
                _entity_summary(self.exact_match) if self.exact_match is not None else None
            ),
            "child_action": self.child_action,
            "will_add_observations": self.will_add_observations,
        }


def empty_stats() -> Dict[str, int]:
    return {
        "total": 0,
        "root_nodes": 0,
        "high_confidence": 0,
        "low_confidence": 0,
        "new": 0,
        "skip": 0,
        "add_relation": 0,
    }


def calculate_stats(results: List[MatchResult]) -> Dict[str, int]:
    stats = empty_stats()
    stats["total"] = len(results)
    stats["root_nodes"] = sum(1 for r in results if not r.is_child)
    status_keys = {
        STATUS_HIGH: "high_confidence",
        STATUS_LOW: "low_confidence",
        STATUS_NEW: "new",
        STATUS_SKIP: "skip",
        STATUS_ADD_RELATION: "add_relation",
    }
    for result in results:
        key = status_keys.get(result.status)
        if key:
            stats[key] += 1
    return stats


def best_match(matches: List[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    """Highest-scoring match; the earliest one wins a tie."""
    best = None
    for match in matches:
        if best is None or match["score"] > best["score"]:
            best = match
    return best


def classify_root(matches: List[Dict[str, Any]], entity_type: Any) -> str:
    best = best_match(matches)
    if best is None:
        return STATUS_NEW
    fields = best["matched_fields"]
    type_matched = "entity_type" in fields
    if best["score"] >= HIGH_CONFIDENCE_THRESHOLD:
        name_matched = "name" in fields or "aliases" in fields
        same_type = str(best["entity_type"] or "").lower() == str(entity_type or "").lower()
        if name_matched and type_matched and same_type:
            return STATUS_HIGH
    if best["score"] >= LOW_CONFIDENCE_THRESHOLD and type_matched:
        return STATUS_LOW
    return STATUS_NEW


class ImportMatcher:
    def __init__(self, client: GraphClient, text_scorer: Optional[TextRankScorer] = None):
        self.client = client
        self.text_scorer = text_scorer or TextRankScorer(client)

    async def match(self, raw: Union[str, bytes, Dict[str, Any], None]) -> Dict[str, Any]:
        data = parse_import_document(raw)
        if data is None:
            return self._error(INVALID_JSON_ERROR)
        if not is_valid_document(data):
            return self._error(INVALID_FORMAT_ERROR)

        results: List[MatchResult] = []
        for index, root in enumerate(data["root_nodes"]):
            if isinstance(root, dict):
                await self._match_recursive(root, str(index), None, results)

        stats = calculate_stats(results)
        logger.info("ImportMatcher: matched %d nodes %s", stats["total"], stats)
        return {
            "success": True,
            "version": data.get("version"),
            "exported_at": data.get("exported_at"),
            "match_results": [result.to_dict() for result in results],
            "stats": stats,
        }

    async def available_parents(self) -> List[Entity]:
        return await GraphExporter(self.client).root_nodes()

    @staticmethod
    def _error(message: str) -> Dict[str, Any]:
        return {
            "success": False,
            "error": message,
            "match_results": [],
            "stats": empty_stats(),
        }

    async def _match_recursive(
        self,
        node: Dict[str, Any],
        path: str,
        parent_name: Optional[str],
        results: List[MatchResult],
    ) -> None:
        if parent_name is None:
            results.append(await self._match_root(node, path))
        else:
            results.append(await self._match_child(node, path, parent_name))
        name = str(node.get("name") or "")
        for index, child in enumerate(node_children(node)):
            await self._match_recursive(child, f"{path}.children.{index}", name, results)

    async def _match_root(self, node: Dict[str, Any], path: str) -> MatchResult:
        name = str(node.get("name") or "")
        entity_type = str(node.get("entity_type") or "")
        query = f"{name} {entity_type}".strip()
        found = await self.text_scorer.search(query, limit=ROOT_SEARCH_LIMIT)
        matches = [
            {
                "entity_id": r.entity.id,
                "name": r.entity.name,
                "entity_type": r.entity.entity_type,
                "aliases": r.entity.aliases,
                "score": r.score,
                "matched_fields": list(r.matched_fields),
            }
            for r in found
        ]
        status = classify_root(matches, entity_type)
        best = best_match(matches)
        return MatchResult(
            import_node=node,
            node_path=path,
            status=status,
            matches=matches,
            selected_match_id=best["entity_id"] if status == STATUS_HIGH else None,
        )

    async def _match_child(
        self, node: Dict[str, Any], path: str, parent_name: str
    ) -> MatchResult:
        name = str(node.get("name") or "")
        entity_type = str(node.get("entity_type") or "")
        contents = node_observation_contents(node)

        async with self.client.session() as session:
            existing = await session.scalar(
                select(Entity)
                .where(Entity.name == name, Entity.entity_type == entity_type)
                .order_by(Entity.id)
                .limit(1)
            )
            if existing is None:
                return MatchResult(
                    import_node=node,
                    node_path=path,
                    status=STATUS_NEW,
                    is_child=True,
                    import_parent_name=parent_name,
                    child_action=CHILD_ACTION_CREATE,
                    will_add_observations=bool(contents),
                )

            under_same_parent = await session.scalar(
                select(Relation.id)
                .join(Entity, Entity.id == Relation.to_entity_id)
                .where(
                    Relation.from_entity_id == existing.id,
                    Relation.relation_type.in_(PARENT_CHILD_RELATION_TYPES),
                    func.lower(Entity.name) == parent_name.lower(),
                )
                .limit(1)
            )
            present: Set[str] = set(
                (
                    await session.execute(
                        select(Observation.content).where(
                            Observation.entity_id == existing.id
                        )
                    )
                ).scalars().all()
            )

        if under_same_parent is not None:
            status, action = STATUS_SKIP, CHILD_ACTION_SKIP
        else:
            status, action = STATUS_ADD_RELATION, CHILD_ACTION_ADD_RELATION
        return MatchResult(
            import_node=node,
            node_path=path,
            status=status,
            selected_match_id=existing.id,
            is_child=True,
            import_parent_name=parent_name,
            exact_match=existing,
            child_action=action,
            will_add_observations=any(c not in present for c in contents),
        )
