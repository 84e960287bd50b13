"""
Data exchange API - tree export and the match -> review -> execute import flow.
"""

from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Union

from fastapi import APIRouter, Body, Depends, HTTPException, Query
from fastapi.responses import Response
from pydantic import BaseModel, Field

from db import get_graph_client
from db.import_sessions import ImportSessionStore
from engine.export import GraphExporter
from engine.import_execution import ImportExecutor
from engine.import_matching import ImportMatcher

from .deps import require_api_key

router = APIRouter(prefix="/data_exchange", tags=["data_exchange"])


class ImportDecisionItem(BaseModel):
    node_path: str = Field(min_length=1)
    action: str = "create"
    child_action: Optional[str] = None
    target_id: Optional[int] = None
    parent_id: Optional[int] = None


class ImportExecuteRequest(BaseModel):
    decisions: Union[List[ImportDecisionItem], Dict[str, Dict[str, Any]]] = Field(
        default_factory=list
    )


def _node_summary(entity) -> Dict[str, Any]:
    return {
        "id": entity.id,
        "name": entity.name,
        "entity_type": entity.entity_type,
        "observations_count": int(entity.observations_count or 0),
    }


async def _available_parents() -> List[Dict[str, Any]]:
    roots = await GraphExporter(get_graph_client()).root_nodes()
    return [
        {"id": e.id, "name": e.name, "entity_type": e.entity_type} for e in roots
    ]


@router.get("/root_nodes")
async def root_nodes():
    roots = await GraphExporter(get_graph_client()).root_nodes()
    return {"nodes": [_node_summary(entity) for entity in roots]}


@router.get("/export")
async def export_tree(ids: List[int] = Query(default=[])):
    if not ids:
        raise HTTPException(status_code=422, detail="No entity IDs provided")
    content = await GraphExporter(get_graph_client()).export_json(ids)
    filename = f"graph_mem_export_{datetime.now(timezone.utc).strftime('%Y%m%d_%H%M%S')}.json"
    return Response(
        content=content,
        media_type="application/json",
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )


@router.post("/import/match")
async def import_match(
    document: Dict[str, Any] = Body(...),
    _auth: None = Depends(require_api_key),
):
    """Match an uploaded export document and open an import session for review."""
    store = ImportSessionStore()
    store.cleanup_old_sessions()

    result = await ImportMatcher(get_graph_client()).match(document)
    if not result["success"]:
        raise HTTPException(status_code=422, detail=result["error"])

    session_id = store.create(
        import_data=document,
        matches=result["match_results"],
        stats=result["stats"],
        version=result.get("version"),
    )
    return {
        "session_id": session_id,
        "version": result.get("version"),
        "match_results": result["match_results"],
        "stats": result["stats"],
        "available_parents": await _available_parents(),
    }


@router.get("/import/{session_id}")
async def import_review(session_id: str):
    store = ImportSessionStore()
    if not store.exists(session_id):
        raise HTTPException(
            status_code=404, detail="No import data found. Please upload a file first."
        )
    return {
        "session_id": session_id,
        "version": store.load_version(session_id),
        "match_results": store.load_matches(session_id) or [],
        "stats": store.load_stats(session_id) or {},
        "available_parents": await _available_parents(),
    }


@router.post("/import/{session_id}/execute")
async def import_execute(
    session_id: str,
    body: Optional[ImportExecuteRequest] = None,
    _auth: None = Depends(require_api_key),
):
    store = ImportSessionStore()
    import_data = store.load_data(session_id)
    if import_data is None:
        raise HTTPException(
            status_code=404, detail="No import data found. Please upload a file first."
        )

    body = body or ImportExecuteRequest()
    if isinstance(body.decisions, list):
        decisions: Any = [item.model_dump() for item in body.decisions]
    else:
        decisions = body.decisions
    report = await ImportExecutor(get_graph_client()).execute(import_data, decisions)

    payload = report.to_dict()
    store.store_report(session_id, payload)
    store.cleanup(session_id, keep_report=True)
    return payload


@router.get("/import/{session_id}/report")
async def import_report(session_id: str):
    report = ImportSessionStore().load_report(session_id)
    if report is None:
        raise HTTPException(status_code=404, detail="No import report found.")
    return report


@router.delete("/import/{session_id}")
async def import_cancel(session_id: str, _auth: None = Depends(require_api_key)):
    ImportSessionStore().cleanup(session_id)
    return {"success": True, "message": "Import cancelled"}
