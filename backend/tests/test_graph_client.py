from pathlib import Path

import pytest

from db.embedding import EmbeddingService
from db.graph_client import Entity, GraphClient, load_vector
from engine.errors import NotFoundError, ValidationFailedError


def _sqlite_url(db_path: Path) -> str:
    return f"sqlite+aiosqlite:///{db_path}"


async def _client(tmp_path: Path, backend: str = "none") -> GraphClient:
    client = GraphClient(
        _sqlite_url(tmp_path / "graph.db"), EmbeddingService(backend=backend)
    )
    await client.init_db()
    return client


@pytest.mark.asyncio
async def test_create_entity_with_observations_caches_count(tmp_path: Path) -> None:
    client = await _client(tmp_path)
    try:
        entity = await client.create_entity(
            "Billing Service",
            "Project",
            aliases="BS|billing",
            observations=["first fact", "  ", "second fact"],
        )
        assert entity["observations_count"] == 2
        assert entity["created_at"].endswith("Z")

        detail = await client.get_entity(entity["entity_id"])
        assert [o["content"] for o in detail["observations"]] == ["first fact", "second fact"]
        assert detail["aliases"] == "BS|billing"
        assert detail["relations"] == []
    finally:
        await client.close()


@pytest.mark.asyncio
async def test_create_entity_rejects_blank_and_duplicate_names(tmp_path: Path) -> None:
    client = await _client(tmp_path)
    try:
        await client.create_entity("Alpha", "Project")
        with pytest.raises(ValidationFailedError, match="already been taken"):
            await client.create_entity("Alpha", "Task")
        with pytest.raises(ValidationFailedError, match="Name can't be blank"):
            await client.create_entity("   ", "Task")
        with pytest.raises(ValidationFailedError, match="Entity type can't be blank"):
            await client.create_entity("Beta", "")
    finally:
        await client.close()


@pytest.mark.asyncio
async def test_update_entity_requires_an_attribute_and_keeps_names_unique(
    tmp_path: Path,
) -> None:
    client = await _client(tmp_path)
    try:
        alpha = await client.create_entity("Alpha", "Project")
        await client.create_entity("Beta", "Project")

        with pytest.raises(ValidationFailedError, match="At least one attribute"):
            await client.update_entity(alpha["entity_id"])
        with pytest.raises(ValidationFailedError, match="already been taken"):
            await client.update_entity(alpha["entity_id"], name="Beta")
        with pytest.raises(NotFoundError):
            await client.update_entity(9999, name="Gamma")

        updated = await client.update_entity(
            alpha["entity_id"], description="Top level project", aliases="A"
        )
        assert updated["name"] == "Alpha"
        assert updated["description"] == "Top level project"
        assert updated["aliases"] == "A"
    finally:
        await client.close()


@pytest.mark.asyncio
async def test_observation_add_and_delete_refresh_count(tmp_path: Path) -> None:
    client = await _client(tmp_path)
    try:
        entity = await client.create_entity("Alpha", "Project")
        first = await client.create_observation(entity["entity_id"], "one")
        await client.create_observation(entity["entity_id"], "two")
        assert (await client.get_entity(entity["entity_id"]))["observations_count"] == 2

        await client.delete_observation(first["observation_id"])
        assert (await client.get_entity(entity["entity_id"]))["observations_count"] == 1

        with pytest.raises(ValidationFailedError):
            await client.create_observation(entity["entity_id"], " ")
        with pytest.raises(NotFoundError):
            await client.create_observation(9999, "orphan fact")
        with pytest.raises(NotFoundError):
            await client.delete_observation(first["observation_id"])
    finally:
        await client.close()


@pytest.mark.asyncio
async def test_relations_reject_duplicates_self_loops_and_missing_endpoints(
    tmp_path: Path,
) -> None:
    client = await _client(tmp_path)
    try:
        project = await client.create_entity("Alpha", "Project")
        task = await client.create_entity("Write docs", "Task")

        relation = await client.create_relation(
            task["entity_id"], project["entity_id"], "part_of"
        )
        assert relation["from_entity_name"] == "Write docs"
        assert relation["to_entity_name"] == "Alpha"

        with pytest.raises(ValidationFailedError, match="already exists"):
            await client.create_relation(task["entity_id"], project["entity_id"], "part_of")
        with pytest.raises(ValidationFailedError, match="itself"):
            await client.create_relation(task["entity_id"], task["entity_id"], "relates_to")
        with pytest.raises(NotFoundError, match="To entity"):
            await client.create_relation(task["entity_id"], 9999, "relates_to")

        outgoing = await client.find_relations(task["entity_id"], direction="outgoing")
        incoming = await client.find_relations(task["entity_id"], direction="incoming")
        assert [r["relation_id"] for r in outgoing] == [relation["relation_id"]]
        assert incoming == []

        await client.delete_relation(relation["relation_id"])
        assert await client.find_relations(task["entity_id"]) == []
    finally:
        await client.close()


@pytest.mark.asyncio
async def test_delete_entity_removes_observations_and_relations(tmp_path: Path) -> None:
    client = await _client(tmp_path)
    try:
        project = await client.create_entity("Alpha", "Project", observations=["fact"])
        task = await client.create_entity("Task A", "Task")
        await client.create_relation(task["entity_id"], project["entity_id"], "part_of")

        await client.delete_entity(project["entity_id"])

        stats = await client.graph_stats()
        assert stats["total_entities"] == 1
        assert stats["total_observations"] == 0
        assert stats["total_relations"] == 0
        with pytest.raises(NotFoundError):
            await client.get_entity(project["entity_id"])
    finally:
        await client.close()


@pytest.mark.asyncio
async def test_list_entities_and_graph_stats(tmp_path: Path) -> None:
    client = await _client(tmp_path)
    try:
        await client.create_entity("Bravo", "Task")
        await client.create_entity("Alpha", "Project")
        await client.create_entity("Charlie", "Task")

        names = [e["name"] for e in await client.list_entities()]
        assert names == ["Alpha", "Bravo", "Charlie"]
        tasks = await client.list_entities(entity_type="Task", limit=1, offset=1)
        assert [e["name"] for e in tasks] == ["Charlie"]

        stats = await client.graph_stats()
        assert stats["entity_types"] == {"Task": 2, "Project": 1}
    finally:
        await client.close()


@pytest.mark.asyncio
async def test_hash_backend_embeds_on_write_and_backfills(tmp_path: Path) -> None:
    client = await _client(tmp_path, backend="hash")
    try:
        entity = await client.create_entity("Alpha", "Project", observations=["fact"])
        async with client.session() as session:
            stored = await session.get(Entity, entity["entity_id"])
            vector = load_vector(stored.embedding)
        assert vector is not None
        assert len(vector) == client.embedding.dims

        totals = await client.backfill_embeddings(batch_size=10)
        assert totals == {"entities": 0, "observations": 1}
        again = await client.backfill_embeddings(batch_size=10)
        assert again == {"entities": 0, "observations": 0}
    finally:
        await client.close()


@pytest.mark.asyncio
async def test_disabled_backend_skips_embeddings(tmp_path: Path) -> None:
    client = await _client(tmp_path, backend="none")
    try:
        entity = await client.create_entity("Alpha", "Project")
        assert client.vector_enabled() is False
        assert await client.embed_entity(entity["entity_id"]) is False
        assert await client.backfill_embeddings() == {"entities": 0, "observations": 0}
    finally:
        await client.close()
