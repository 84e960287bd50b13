import json
from pathlib import Path

import pytest

from db.embedding import EmbeddingService
from db.graph_client import GraphClient
from engine.import_matching import (
    INVALID_FORMAT_ERROR,
    INVALID_JSON_ERROR,
    ImportMatcher,
    classify_root,
)


def _sqlite_url(db_path: Path) -> str:
    return f"sqlite+aiosqlite:///{db_path}"


async def _client(tmp_path: Path) -> GraphClient:
    client = GraphClient(_sqlite_url(tmp_path / "graph.db"), EmbeddingService(backend="none"))
    await client.init_db()
    return client


def test_classify_root_thresholds() -> None:
    assert classify_root([], "Project") == "new"

    high = {"score": 54, "matched_fields": ["entity_type", "name"], "entity_type": "project"}
    assert classify_root([high], "Project") == "high"

    other_type = dict(high, entity_type="Task")
    assert classify_root([other_type], "Project") == "low"

    type_only = {"score": 22, "matched_fields": ["entity_type"], "entity_type": "Project"}
    assert classify_root([type_only], "Project") == "low"

    name_only = {"score": 15, "matched_fields": ["name"], "entity_type": "Project"}
    assert classify_root([name_only], "Project") == "new"

    # matches arrive grouped by type, so the best one need not come first
    assert classify_root([name_only, high], "Project") == "high"


@pytest.mark.asyncio
async def test_match_classifies_roots_and_children(tmp_path: Path) -> None:
    client = await _client(tmp_path)
    try:
        project = await client.create_entity("Project Alpha", "Project")
        existing = await client.create_entity("Existing Task", "Task", observations=["x"])
        floating = await client.create_entity("Floating", "Task", observations=["old"])
        await client.create_relation(existing["entity_id"], project["entity_id"], "part_of")

        document = {
            "version": "1.0",
            "exported_at": "2026-01-01T00:00:00Z",
            "root_nodes": [
                {
                    "name": "Project Alpha",
                    "entity_type": "Project",
                    "observations": [],
                    "children": [
                        {
                            "name": "Existing Task",
                            "entity_type": "Task",
                            "relation_type": "part_of",
                            "observations": [{"content": "x"}],
                        },
                        {
                            "name": "Floating",
                            "entity_type": "Task",
                            "observations": [{"content": "old"}, {"content": "new fact"}],
                        },
                        {"name": "Brand New", "entity_type": "Task"},
                    ],
                }
            ],
        }

        result = await ImportMatcher(client).match(json.dumps(document))
        assert result["success"] is True
        assert result["version"] == "1.0"
        assert result["exported_at"] == "2026-01-01T00:00:00Z"

        root, skip, add, new = result["match_results"]
        assert root["status"] == "high"
        assert root["selected_match_id"] == project["entity_id"]
        assert root["node_path"] == "0"
        assert root["is_child"] is False
        assert root["import_node"]["children_count"] == 3
        assert root["matches"][0]["matched_fields"] == ["entity_type", "name"]

        assert skip["status"] == "skip"
        assert skip["child_action"] == "skip"
        assert skip["node_path"] == "0.children.0"
        assert skip["import_parent_name"] == "Project Alpha"
        assert skip["exact_match"]["entity_id"] == existing["entity_id"]
        assert skip["will_add_observations"] is False

        assert add["status"] == "add_relation"
        assert add["selected_match_id"] == floating["entity_id"]
        assert add["will_add_observations"] is True

        assert new["status"] == "new"
        assert new["child_action"] == "create"
        assert new["exact_match"] is None
        assert new["will_add_observations"] is False

        assert result["stats"] == {
            "total": 4,
            "root_nodes": 1,
            "high_confidence": 1,
            "low_confidence": 0,
            "new": 1,
            "skip": 1,
            "add_relation": 1,
        }
    finally:
        await client.close()


@pytest.mark.asyncio
async def test_match_selects_highest_scoring_root_across_types(tmp_path: Path) -> None:
    client = await _client(tmp_path)
    try:
        project = await client.create_entity("Project Alpha", "Project")
        await client.create_entity("Alpha Project Notes", "Component")

        result = await ImportMatcher(client).match(
            {"root_nodes": [{"name": "Project Alpha", "entity_type": "Project"}]}
        )
        (root,) = result["match_results"]
        assert [m["name"] for m in root["matches"]] == ["Alpha Project Notes", "Project Alpha"]
        assert root["status"] == "high"
        assert root["selected_match_id"] == project["entity_id"]
        assert result["stats"]["high_confidence"] == 1
    finally:
        await client.close()


@pytest.mark.asyncio
async def test_match_low_confidence_and_new_roots(tmp_path: Path) -> None:
    client = await _client(tmp_path)
    try:
        await client.create_entity("Zeta", "Project")

        result = await ImportMatcher(client).match(
            {
                "root_nodes": [
                    {"name": "Gamma", "entity_type": "Project"},
                    {"name": "Sourdough", "entity_type": "Recipe"},
                ]
            }
        )
        low, new = result["match_results"]
        assert low["status"] == "low"
        assert low["selected_match_id"] is None
        assert new["status"] == "new"
        assert new["matches"] == []
        assert result["stats"]["low_confidence"] == 1
        assert result["stats"]["root_nodes"] == 2
    finally:
        await client.close()


@pytest.mark.asyncio
async def test_match_rejects_invalid_documents(tmp_path: Path) -> None:
    client = await _client(tmp_path)
    try:
        matcher = ImportMatcher(client)

        broken = await matcher.match("{not json")
        assert broken["success"] is False
        assert broken["error"] == INVALID_JSON_ERROR
        assert broken["stats"]["total"] == 0

        wrong_shape = await matcher.match({"root_nodes": "nope"})
        assert wrong_shape["success"] is False
        assert wrong_shape["error"] == INVALID_FORMAT_ERROR

        empty = await matcher.match({"root_nodes": []})
        assert empty["success"] is True
        assert empty["match_results"] == []
    finally:
        await client.close()
