"""
MCP Server for the Graph Memory System (SQLite Backend)

This module provides the MCP (Model Context Protocol) interface for the AI
agent to read and write its knowledge graph:

- entities:     named, typed nodes with aliases and a description
- observations: timestamped free-text facts owned by one entity
- relations:    directed, typed edges; `part_of` / `depends_on` point
                child -> parent and give the graph its tree shape

Every tool returns a JSON string with an `ok` flag.
"""

import json
import os
import sys
from typing import Any, Dict, List, Optional

# Ensure we can import from backend modules
sys.path.append(os.path.dirname(os.path.abspath(__file__)))

from mcp.server.fastmcp import FastMCP

import config  # noqa: F401  loads .env before the client reads DATABASE_URL
from db import get_graph_client
from engine.errors import (
    GraphMemoryError,
    NotFoundError,
    OperationFailedError,
    ValidationFailedError,
)
from engine.hybrid_search import HybridRanker
from engine.vector_search import (
    DEFAULT_MERGE_LIMIT,
    DEFAULT_MERGE_THRESHOLD,
    VectorRankScorer,
)

# Initialize FastMCP server
mcp = FastMCP("Graph Memory Interface")

_ERROR_CODES = (
    (NotFoundError, "not_found"),
    (ValidationFailedError, "validation_failed"),
    (OperationFailedError, "operation_failed"),
)
_DIRECTIONS = {"both", "incoming", "outgoing"}


# =============================================================================
# Helper Functions
# =============================================================================


def _to_json(payload: Dict[str, Any]) -> str:
    """Serialize payload for MCP string responses."""
    return json.dumps(payload, ensure_ascii=False)


def _tool_response(*, ok: bool, message: str, **extra: Any) -> str:
    payload: Dict[str, Any] = {"ok": bool(ok), "message": message}
    payload.update(extra)
    return _to_json(payload)


def _error_response(exc: GraphMemoryError) -> str:
    code = "internal_error"
    for error_type, error_code in _ERROR_CODES:
        if isinstance(exc, error_type):
            code = error_code
            break
    return _tool_response(ok=False, message=str(exc), error=code)


# =============================================================================
# Search & Read Tools
# =============================================================================


@mcp.tool()
async def search_entities(query: str, limit: int = 10, semantic: bool = True) -> str:
    """
    Search entities by name, type and aliases, ranked by relevance.

    Query tokens are matched case-insensitively. When vector search is
    enabled, text ranking is fused with semantic similarity.

    Args:
        query: Space separated search terms (e.g. "payment service")
        limit: Maximum number of results
        semantic: Set False to use text ranking only

    Examples:
        search_entities("billing service project")
        search_entities("auth", limit=5, semantic=False)
    """
    limit = max(1, min(int(limit), 200))
    results = await HybridRanker(get_graph_client()).search(
        query, limit=limit, semantic=semantic
    )
    return _tool_response(
        ok=True,
        message=f"{len(results)} result(s)",
        results=[r.to_dict() for r in results],
    )


@mcp.tool()
async def get_entity(entity_id: int) -> str:
    """
    Read one entity with all of its observations and relations.

    Args:
        entity_id: The entity id
    """
    try:
        entity = await get_graph_client().get_entity(entity_id)
    except GraphMemoryError as exc:
        return _error_response(exc)
    return _tool_response(ok=True, message=f"Entity {entity_id}", entity=entity)


@mcp.tool()
async def list_entities(
    entity_type: Optional[str] = None, limit: int = 50, offset: int = 0
) -> str:
    """List entities by name, optionally filtered by entity type."""
    entities = await get_graph_client().list_entities(
        entity_type=entity_type, limit=limit, offset=offset
    )
    return _tool_response(ok=True, message=f"{len(entities)} entity(ies)", entities=entities)


@mcp.tool()
async def find_relations(
    entity_id: Optional[int] = None,
    relation_type: Optional[str] = None,
    direction: str = "both",
) -> str:
    """
    Find relations, optionally around one entity.

    Args:
        entity_id: Restrict to relations touching this entity
        relation_type: Restrict to one relation type (e.g. "part_of")
        direction: "outgoing", "incoming" or "both"
    """
    if direction not in _DIRECTIONS:
        return _tool_response(
            ok=False,
            message=f"direction must be one of: {', '.join(sorted(_DIRECTIONS))}",
            error="validation_failed",
        )
    relations = await get_graph_client().find_relations(
        entity_id=entity_id, relation_type=relation_type, direction=direction
    )
    return _tool_response(
        ok=True, message=f"{len(relations)} relation(s)", relations=relations
    )


@mcp.tool()
async def get_graph_stats() -> str:
    """Entity, observation and relation totals with per-type breakdowns."""
    stats = await get_graph_client().graph_stats()
    return _tool_response(ok=True, message="Graph statistics", stats=stats)


@mcp.tool()
async def suggest_merges(
    threshold: float = DEFAULT_MERGE_THRESHOLD,
    limit: int = DEFAULT_MERGE_LIMIT,
    entity_type: Optional[str] = None,
) -> str:
    """
    Find entity pairs that are likely duplicates by vector similarity.

    Args:
        threshold: Maximum cosine distance (0.0 = identical, 1.0 = unrelated)
        limit: Maximum number of suggestions
        entity_type: Only compare entities of this type
    """
    client = get_graph_client()
    if not client.vector_enabled():
        return _tool_response(
            ok=False,
            message="Vector search is disabled (EMBEDDING_BACKEND=none).",
            error="operation_failed",
        )
    result = await VectorRankScorer(client).suggest_merges(
        threshold=threshold, limit=limit, entity_type=entity_type
    )
    return _tool_response(ok=True, message=f"{result['total']} suggestion(s)", **result)


# =============================================================================
# Write Tools
# =============================================================================


@mcp.tool()
async def create_entity(
    name: str,
    entity_type: str,
    aliases: Optional[str] = None,
    description: Optional[str] = None,
    observations: Optional[List[str]] = None,
) -> str:
    """
    Create a new entity. Names are unique.

    Args:
        name: Entity name
        entity_type: Free-form type tag (e.g. "Project", "Task", "Person")
        aliases: Alternative names separated by "," "|" or ";"
        description: Optional longer description
        observations: Optional initial observations

    Examples:
        create_entity("Billing Service", "Project", aliases="billing,payments")
    """
    try:
        entity = await get_graph_client().create_entity(
            name=name,
            entity_type=entity_type,
            aliases=aliases,
            description=description,
            observations=observations,
        )
    except GraphMemoryError as exc:
        return _error_response(exc)
    return _tool_response(
        ok=True, message=f"Created entity '{entity['name']}'", entity=entity
    )


@mcp.tool()
async def update_entity(
    entity_id: int,
    name: Optional[str] = None,
    entity_type: Optional[str] = None,
    aliases: Optional[str] = None,
    description: Optional[str] = None,
) -> str:
    """Update the given attributes of an entity; omitted ones are kept."""
    try:
        entity = await get_graph_client().update_entity(
            entity_id,
            name=name,
            entity_type=entity_type,
            aliases=aliases,
            description=description,
        )
    except GraphMemoryError as exc:
        return _error_response(exc)
    return _tool_response(ok=True, message=f"Updated entity {entity_id}", entity=entity)


@mcp.tool()
async def delete_entity(entity_id: int) -> str:
    """
    Delete an entity together with its observations and relations.

    Children attached through part_of/depends_on become orphans.
    """
    try:
        entity = await get_graph_client().delete_entity(entity_id)
    except GraphMemoryError as exc:
        return _error_response(exc)
    return _tool_response(
        ok=True, message=f"Deleted entity '{entity['name']}'", entity=entity
    )


@mcp.tool()
async def create_observation(entity_id: int, content: str) -> str:
    """Attach a new observation (free-text fact) to an entity."""
    try:
        observation = await get_graph_client().create_observation(entity_id, content)
    except GraphMemoryError as exc:
        return _error_response(exc)
    return _tool_response(
        ok=True, message=f"Added observation to entity {entity_id}", observation=observation
    )


@mcp.tool()
async def delete_observation(observation_id: int) -> str:
    try:
        observation = await get_graph_client().delete_observation(observation_id)
    except GraphMemoryError as exc:
        return _error_response(exc)
    return _tool_response(
        ok=True, message=f"Deleted observation {observation_id}", observation=observation
    )


@mcp.tool()
async def create_relation(from_entity_id: int, to_entity_id: int, relation_type: str) -> str:
    """
    Create a directed relation.

    For tree structure use part_of / depends_on pointing child -> parent.

    Examples:
        create_relation(12, 3, "part_of")
        create_relation(12, 40, "relates_to")
    """
    try:
        relation = await get_graph_client().create_relation(
            from_entity_id, to_entity_id, relation_type
        )
    except GraphMemoryError as exc:
        return _error_response(exc)
    return _tool_response(
        ok=True,
        message=(
            f"Created relation {relation['from_entity_name']} "
            f"-[{relation['relation_type']}]-> {relation['to_entity_name']}"
        ),
        relation=relation,
    )


@mcp.tool()
async def delete_relation(relation_id: int) -> str:
    try:
        relation = await get_graph_client().delete_relation(relation_id)
    except GraphMemoryError as exc:
        return _error_response(exc)
    return _tool_response(ok=True, message=f"Deleted relation {relation_id}", relation=relation)


async def startup():
    """Initialize the database on startup."""
    client = get_graph_client()
    await client.init_db()


if __name__ == "__main__":
    import asyncio

    asyncio.run(startup())
    mcp.run()
