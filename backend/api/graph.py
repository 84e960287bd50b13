"""
Graph API - entity, observation and relation CRUD plus search.

Reads are open; every write requires the MCP API key.
"""

from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, Field

from db import get_graph_client
from engine.errors import GraphMemoryError
from engine.hybrid_search import HybridRanker
from engine.vector_search import VectorRankScorer

from .deps import http_error, require_api_key

router = APIRouter(prefix="/api/v1", tags=["graph"])

_DIRECTIONS = {"both", "incoming", "outgoing"}


class EntityCreate(BaseModel):
    name: str = Field(min_length=1)
    entity_type: str = Field(min_length=1)
    aliases: Optional[str] = None
    description: Optional[str] = None
    observations: list[str] = Field(default_factory=list)


class EntityUpdate(BaseModel):
    name: Optional[str] = None
    entity_type: Optional[str] = None
    aliases: Optional[str] = None
    description: Optional[str] = None


class ObservationCreate(BaseModel):
    content: str = Field(min_length=1)


class RelationCreate(BaseModel):
    from_entity_id: int = Field(ge=1)
    to_entity_id: int = Field(ge=1)
    relation_type: str = Field(min_length=1)


@router.get("/entities")
async def list_entities(
    entity_type: Optional[str] = None,
    limit: int = Query(50, ge=1, le=500),
    offset: int = Query(0, ge=0),
):
    client = get_graph_client()
    return await client.list_entities(entity_type=entity_type, limit=limit, offset=offset)


@router.post("/entities", status_code=201)
async def create_entity(body: EntityCreate, _auth: None = Depends(require_api_key)):
    client = get_graph_client()
    try:
        return await client.create_entity(
            name=body.name,
            entity_type=body.entity_type,
            aliases=body.aliases,
            description=body.description,
            observations=body.observations,
        )
    except GraphMemoryError as exc:
        raise http_error(exc) from exc


@router.get("/entities/{entity_id}")
async def get_entity(entity_id: int):
    client = get_graph_client()
    try:
        return await client.get_entity(entity_id)
    except GraphMemoryError as exc:
        raise http_error(exc) from exc


@router.patch("/entities/{entity_id}")
async def update_entity(
    entity_id: int, body: EntityUpdate, _auth: None = Depends(require_api_key)
):
    client = get_graph_client()
    try:
        return await client.update_entity(
            entity_id,
            name=body.name,
            entity_type=body.entity_type,
            aliases=body.aliases,
            description=body.description,
        )
    except GraphMemoryError as exc:
        raise http_error(exc) from exc


@router.delete("/entities/{entity_id}")
async def delete_entity(entity_id: int, _auth: None = Depends(require_api_key)):
    client = get_graph_client()
    try:
        return await client.delete_entity(entity_id)
    except GraphMemoryError as exc:
        raise http_error(exc) from exc


@router.post("/entities/{entity_id}/observations", status_code=201)
async def create_observation(
    entity_id: int, body: ObservationCreate, _auth: None = Depends(require_api_key)
):
    client = get_graph_client()
    try:
        return await client.create_observation(entity_id, body.content)
    except GraphMemoryError as exc:
        raise http_error(exc) from exc


@router.delete("/observations/{observation_id}")
async def delete_observation(observation_id: int, _auth: None = Depends(require_api_key)):
    client = get_graph_client()
    try:
        return await client.delete_observation(observation_id)
    except GraphMemoryError as exc:
        raise http_error(exc) from exc


@router.get("/relations")
async def find_relations(
    entity_id: Optional[int] = None,
    relation_type: Optional[str] = None,
    direction: str = "both",
):
    if direction not in _DIRECTIONS:
        raise HTTPException(
            status_code=422,
            detail=f"direction must be one of: {', '.join(sorted(_DIRECTIONS))}",
        )
    client = get_graph_client()
    return await client.find_relations(
        entity_id=entity_id, relation_type=relation_type, direction=direction
    )


@router.post("/relations", status_code=201)
async def create_relation(body: RelationCreate, _auth: None = Depends(require_api_key)):
    client = get_graph_client()
    try:
        return await client.create_relation(
            body.from_entity_id, body.to_entity_id, body.relation_type
        )
    except GraphMemoryError as exc:
        raise http_error(exc) from exc


@router.delete("/relations/{relation_id}")
async def delete_relation(relation_id: int, _auth: None = Depends(require_api_key)):
    client = get_graph_client()
    try:
        return await client.delete_relation(relation_id)
    except GraphMemoryError as exc:
        raise http_error(exc) from exc


@router.get("/search")
async def search_entities(
    q: str = Query("", description="Space separated search tokens"),
    limit: int = Query(20, ge=1, le=200),
    semantic: bool = True,
):
    """Hybrid search: text relevance fused with vector similarity when enabled."""
    results = await HybridRanker(get_graph_client()).search(q, limit=limit, semantic=semantic)
    return {"query": q, "results": [r.to_dict() for r in results]}


@router.get("/search/observations")
async def search_observations(q: str = Query(...), limit: int = Query(50, ge=1, le=500)):
    entity_ids = await VectorRankScorer(get_graph_client()).search_observations(q, limit=limit)
    return {"query": q, "entity_ids": entity_ids}


@router.get("/stats")
async def graph_stats():
    return await get_graph_client().graph_stats()


@router.post("/embeddings/backfill")
async def backfill_embeddings(
    batch_size: int = Query(100, ge=1, le=1000),
    _auth: None = Depends(require_api_key),
):
    return await get_graph_client().backfill_embeddings(batch_size=batch_size)
