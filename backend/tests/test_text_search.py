from pathlib import Path
from types import SimpleNamespace

import pytest

from db.embedding import EmbeddingService
from db.graph_client import GraphClient
from engine.text_search import TextRankScorer, score_entity, tokenize_query


def _sqlite_url(db_path: Path) -> str:
    return f"sqlite+aiosqlite:///{db_path}"


def _entity(name: str, entity_type: str, aliases=None):
    return SimpleNamespace(name=name, entity_type=entity_type, aliases=aliases)


def test_tokenize_query_lowercases_and_dedupes() -> None:
    assert tokenize_query("  Widget FACTORY widget ") == ["widget", "factory"]
    assert tokenize_query(None) == []
    assert tokenize_query("   ") == []


def test_score_entity_weights_fields_and_exact_words() -> None:
    assert score_entity(_entity("Widget", "Component"), ["widget"]) == (15, ["name"])
    assert score_entity(_entity("Widgets", "Component"), ["widget"]) == (10, ["name"])
    # 5 + 2.5 truncates to 7
    assert score_entity(_entity("Gizmo", "Component", "widget|w2"), ["widget"]) == (
        7,
        ["aliases"],
    )
    assert score_entity(_entity("Thing", "widget"), ["widget"]) == (22, ["entity_type"])


def test_score_entity_adds_multi_token_bonus_once_per_extra_token() -> None:
    score, fields = score_entity(_entity("Widget Factory", "Project"), ["widget", "factory"])
    assert score == 15 + 15 + 2
    assert fields == ["name"]

    score, _ = score_entity(_entity("Widget", "Project"), ["widget", "missing"])
    assert score == 15


def test_score_is_monotonic_in_field_weight() -> None:
    tokens = ["alpha"]
    by_type, _ = score_entity(_entity("x", "Alpha"), tokens)
    by_name, _ = score_entity(_entity("Alpha", "x"), tokens)
    by_alias, _ = score_entity(_entity("x", "y", "Alpha"), tokens)
    assert by_type > by_name > by_alias > 0


@pytest.mark.asyncio
async def test_text_search_groups_by_type_then_orders_by_score(tmp_path: Path) -> None:
    client = GraphClient(_sqlite_url(tmp_path / "graph.db"), EmbeddingService(backend="none"))
    await client.init_db()
    try:
        await client.create_entity("Widgets", "Task")
        await client.create_entity("Widget Factory", "Project")
        await client.create_entity("Gizmo", "Component", aliases="widget|w2")
        await client.create_entity("Widget", "Component")
        await client.create_entity("Unrelated", "Component")

        results = await TextRankScorer(client).search("widget")
        assert [(r.entity.name, r.score) for r in results] == [
            ("Widget", 15),
            ("Gizmo", 7),
            ("Widget Factory", 15),
            ("Widgets", 10),
        ]

        payload = results[0].to_dict()
        assert payload["relevance_score"] == 15
        assert payload["matched_fields"] == ["name"]
        assert payload["entity_type"] == "Component"
    finally:
        await client.close()


@pytest.mark.asyncio
async def test_text_search_multi_token_and_limit(tmp_path: Path) -> None:
    client = GraphClient(_sqlite_url(tmp_path / "graph.db"), EmbeddingService(backend="none"))
    await client.init_db()
    try:
        await client.create_entity("Widget Factory", "Project")
        await client.create_entity("Widget", "Project")
        await client.create_entity("Factory Floor", "Project")

        results = await TextRankScorer(client).search("WIDGET factory")
        assert [r.entity.name for r in results] == ["Widget Factory", "Factory Floor", "Widget"]
        assert results[0].score == 32

        limited = await TextRankScorer(client).search("widget factory", limit=1)
        assert [r.entity.name for r in limited] == ["Widget Factory"]
    finally:
        await client.close()


@pytest.mark.asyncio
async def test_text_search_blank_query_and_literal_wildcards(tmp_path: Path) -> None:
    client = GraphClient(_sqlite_url(tmp_path / "graph.db"), EmbeddingService(backend="none"))
    await client.init_db()
    try:
        await client.create_entity("100% coverage", "Goal")
        await client.create_entity("Plain", "Goal")

        scorer = TextRankScorer(client)
        assert await scorer.search("") == []
        assert await scorer.search("   ") == []
        assert await scorer.search("widget", limit=0) == []

        results = await scorer.search("%")
        assert [r.entity.name for r in results] == ["100% coverage"]
    finally:
        await client.close()
