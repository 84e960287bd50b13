"""
Clean-up API - orphan review, node surgery and duplicate suggestions.
"""

from typing import Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field

from db import get_graph_client
from engine.errors import GraphMemoryError
from engine.node_operations import NodeConsolidator
from engine.orphan_matching import OrphanMatcher
from engine.vector_search import (
    DEFAULT_MERGE_LIMIT,
    DEFAULT_MERGE_THRESHOLD,
    VectorRankScorer,
)

from .deps import http_error, require_api_key

router = APIRouter(prefix="/cleanup", tags=["cleanup"])


class MoveRequest(BaseModel):
    node_id: int = Field(ge=1)
    parent_id: int = Field(ge=1)


class MergeRequest(BaseModel):
    source_id: int = Field(ge=1)
    target_id: int = Field(ge=1)


@router.get("/orphans")
async def get_orphans():
    """Orphans (non-Project roots) with suggested parent Projects."""
    orphans = await OrphanMatcher(get_graph_client()).orphans_with_matches()
    return {"orphans": orphans, "total": len(orphans)}


@router.post("/move")
async def move_node(body: MoveRequest, _auth: None = Depends(require_api_key)):
    try:
        return await NodeConsolidator(get_graph_client()).move(body.node_id, body.parent_id)
    except GraphMemoryError as exc:
        raise http_error(exc) from exc


@router.post("/merge")
async def merge_nodes(body: MergeRequest, _auth: None = Depends(require_api_key)):
    try:
        return await NodeConsolidator(get_graph_client()).merge(
            body.source_id, body.target_id
        )
    except GraphMemoryError as exc:
        raise http_error(exc) from exc


@router.delete("/nodes/{node_id}")
async def delete_node(
    node_id: int,
    cascade: bool = False,
    _auth: None = Depends(require_api_key),
):
    try:
        return await NodeConsolidator(get_graph_client()).delete(node_id, cascade=cascade)
    except GraphMemoryError as exc:
        raise http_error(exc) from exc


@router.get("/merge_suggestions")
async def merge_suggestions(
    threshold: float = Query(DEFAULT_MERGE_THRESHOLD, ge=0.0, le=2.0),
    limit: int = Query(DEFAULT_MERGE_LIMIT, ge=1, le=200),
    entity_type: Optional[str] = None,
):
    return await VectorRankScorer(get_graph_client()).suggest_merges(
        threshold=threshold, limit=limit, entity_type=entity_type
    )
