from pathlib import Path

import pytest

from db.embedding import EmbeddingService
from db.graph_client import GraphClient
from engine.errors import NotFoundError, ValidationFailedError
from engine.node_operations import NodeConsolidator


def _sqlite_url(db_path: Path) -> str:
    return f"sqlite+aiosqlite:///{db_path}"


async def _client(tmp_path: Path) -> GraphClient:
    client = GraphClient(_sqlite_url(tmp_path / "graph.db"), EmbeddingService(backend="none"))
    await client.init_db()
    return client


@pytest.mark.asyncio
async def test_move_replaces_parent_links_with_a_single_part_of(tmp_path: Path) -> None:
    client = await _client(tmp_path)
    try:
        old_parent = await client.create_entity("Old", "Project")
        new_parent = await client.create_entity("New", "Project")
        other = await client.create_entity("Other", "Project")
        node = await client.create_entity("Task", "Task")
        await client.create_relation(node["entity_id"], old_parent["entity_id"], "part_of")
        await client.create_relation(node["entity_id"], other["entity_id"], "depends_on")
        await client.create_relation(node["entity_id"], other["entity_id"], "relates_to")

        result = await NodeConsolidator(client).move(node["entity_id"], new_parent["entity_id"])
        assert result == {"success": True, "message": "Successfully moved 'Task' under 'New'"}

        outgoing = await client.find_relations(node["entity_id"], direction="outgoing")
        assert sorted((r["relation_type"], r["to_entity_name"]) for r in outgoing) == [
            ("part_of", "New"),
            ("relates_to", "Other"),
        ]
    finally:
        await client.close()


@pytest.mark.asyncio
async def test_move_rejects_missing_self_and_repeated_moves(tmp_path: Path) -> None:
    client = await _client(tmp_path)
    try:
        parent = await client.create_entity("Parent", "Project")
        node = await client.create_entity("Task", "Task")
        consolidator = NodeConsolidator(client)

        with pytest.raises(NotFoundError, match="Node with ID 9999 not found"):
            await consolidator.move(9999, parent["entity_id"])
        with pytest.raises(NotFoundError, match="Parent node"):
            await consolidator.move(node["entity_id"], 9999)
        with pytest.raises(ValidationFailedError, match="to itself"):
            await consolidator.move(node["entity_id"], node["entity_id"])

        await consolidator.move(node["entity_id"], parent["entity_id"])
        with pytest.raises(ValidationFailedError, match="already a child"):
            await consolidator.move(node["entity_id"], parent["entity_id"])
    finally:
        await client.close()


@pytest.mark.asyncio
async def test_merge_moves_observations_and_repoints_relations(tmp_path: Path) -> None:
    client = await _client(tmp_path)
    try:
        project = await client.create_entity("Project", "Project")
        source = await client.create_entity(
            "Auth Svc", "Service", aliases="auth|login", observations=["s1", "s2"]
        )
        target = await client.create_entity(
            "Auth Service", "Service", aliases="auth", observations=["t1", "t2", "t3"]
        )
        child = await client.create_entity("Token cache", "Component")
        await client.create_relation(source["entity_id"], project["entity_id"], "part_of")
        await client.create_relation(target["entity_id"], project["entity_id"], "part_of")
        await client.create_relation(child["entity_id"], source["entity_id"], "part_of")
        await client.create_relation(source["entity_id"], target["entity_id"], "relates_to")

        result = await NodeConsolidator(client).merge(source["entity_id"], target["entity_id"])
        assert result["success"] is True
        assert result["observations_transferred"] == 2
        assert result["relations_kept"] == 2

        merged = await client.get_entity(target["entity_id"])
        assert merged["observations_count"] == 5
        assert set(merged["aliases"].split(",")) >= {"auth", "login", "Auth Svc"}
        assert sorted(
            (r["from_entity_name"], r["relation_type"], r["to_entity_name"])
            for r in merged["relations"]
        ) == [
            ("Auth Service", "part_of", "Project"),
            ("Token cache", "part_of", "Auth Service"),
        ]

        with pytest.raises(NotFoundError):
            await client.get_entity(source["entity_id"])
        assert (await client.graph_stats())["total_relations"] == 2
    finally:
        await client.close()


@pytest.mark.asyncio
async def test_merge_rejects_self_and_missing_nodes(tmp_path: Path) -> None:
    client = await _client(tmp_path)
    try:
        node = await client.create_entity("Only", "Task")
        consolidator = NodeConsolidator(client)
        with pytest.raises(ValidationFailedError, match="into itself"):
            await consolidator.merge(node["entity_id"], node["entity_id"])
        with pytest.raises(NotFoundError, match="Target node"):
            await consolidator.merge(node["entity_id"], 9999)
    finally:
        await client.close()


@pytest.mark.asyncio
async def test_delete_without_cascade_orphans_children(tmp_path: Path) -> None:
    client = await _client(tmp_path)
    try:
        parent = await client.create_entity("Parent", "Project", observations=["p"])
        child = await client.create_entity("Child", "Task")
        await client.create_relation(child["entity_id"], parent["entity_id"], "part_of")

        result = await NodeConsolidator(client).delete(parent["entity_id"])
        assert result == {
            "success": True,
            "message": "Successfully deleted 'Parent'",
            "deleted_count": 1,
        }
        assert (await client.get_entity(child["entity_id"]))["relations"] == []
        stats = await client.graph_stats()
        assert stats["total_observations"] == 0
    finally:
        await client.close()


@pytest.mark.asyncio
async def test_cascade_delete_removes_every_descendant_once(tmp_path: Path) -> None:
    client = await _client(tmp_path)
    try:
        root = await client.create_entity("Root", "Project")
        a = await client.create_entity("A", "Task")
        b = await client.create_entity("B", "Task")
        c = await client.create_entity("C", "Task", observations=["deep"])
        keep = await client.create_entity("Keep", "Project")
        await client.create_relation(a["entity_id"], root["entity_id"], "part_of")
        await client.create_relation(b["entity_id"], root["entity_id"], "depends_on")
        await client.create_relation(c["entity_id"], a["entity_id"], "part_of")
        await client.create_relation(c["entity_id"], b["entity_id"], "part_of")
        await client.create_relation(root["entity_id"], c["entity_id"], "part_of")
        await client.create_relation(keep["entity_id"], a["entity_id"], "relates_to")

        result = await NodeConsolidator(client).delete(root["entity_id"], cascade=True)
        assert result["deleted_count"] == 4
        assert result["message"] == "Successfully deleted 'Root' and 3 descendants"

        stats = await client.graph_stats()
        assert stats["total_entities"] == 1
        assert stats["total_observations"] == 0
        assert stats["total_relations"] == 0
        assert (await client.get_entity(keep["entity_id"]))["relations"] == []

        with pytest.raises(NotFoundError):
            await NodeConsolidator(client).delete(root["entity_id"], cascade=True)
    finally:
        await client.close()
