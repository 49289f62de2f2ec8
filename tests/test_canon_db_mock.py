"""Tests for canon and collection db operations against a mocked Supabase client."""

from unittest.mock import MagicMock

import pytest

from loreforge.core.schemas_canon import CanonEntityCreate, CanonEntityUpdate, CanonQuery


@pytest.fixture
def tables(monkeypatch: pytest.MonkeyPatch) -> dict[str, MagicMock]:
    """One MagicMock per table, shared by the canon and collections modules."""
    by_name: dict[str, MagicMock] = {}

    def table(name: str) -> MagicMock:
        return by_name.setdefault(name, MagicMock(name=name))

    mock_supabase = MagicMock()
    mock_supabase.table.side_effect = table
    monkeypatch.setattr("loreforge.db.canon.get_supabase", lambda: mock_supabase)
    monkeypatch.setattr("loreforge.db.collections.get_supabase", lambda: mock_supabase)
    return by_name


def _table(tables: dict[str, MagicMock], name: str) -> MagicMock:
    return tables.setdefault(name, MagicMock(name=name))


def test_create_entity_inserts_chunks(tables) -> None:
    entities = _table(tables, "canon_entities")
    entities.insert.return_value.execute.return_value = MagicMock(
        data=[{"id": "ent-1", "canonical_name": "Mara"}]
    )

    from loreforge.db.canon import create_entity

    result = create_entity(
        CanonEntityCreate(
            canonical_name="Mara",
            type="npc",
            facts=["Mara guards the south gate.", "  ", "Mara owes Durnan money."],
            source="Session 4 notes",
        )
    )

    assert result["id"] == "ent-1"
    entity_row = entities.insert.call_args[0][0]
    assert "facts" not in entity_row
    assert entity_row["canonical_name"] == "Mara"

    chunk_rows = tables["canon_chunks"].insert.call_args[0][0]
    assert [r["text"] for r in chunk_rows] == [
        "Mara guards the south gate.",
        "Mara owes Durnan money.",
    ]
    assert all(r["entity_id"] == "ent-1" for r in chunk_rows)
    assert chunk_rows[0]["source"] == "Session 4 notes"


def test_create_entity_failure_raises(tables) -> None:
    _table(tables, "canon_entities").insert.return_value.execute.return_value = MagicMock(data=[])

    from loreforge.db.canon import create_entity

    with pytest.raises(ValueError, match="Failed to create canon entity"):
        create_entity(CanonEntityCreate(canonical_name="Mara", type="npc"))


def test_delete_entity_cascades_to_chunks(tables) -> None:
    chunks = _table(tables, "canon_chunks")
    entities = _table(tables, "canon_entities")
    entities.delete.return_value.eq.return_value.execute.return_value = MagicMock(
        data=[{"id": "ent-1"}]
    )

    from loreforge.db.canon import delete_entity

    assert delete_entity("ent-1") is True
    chunks.delete.return_value.eq.assert_called_once_with("entity_id", "ent-1")
    entities.delete.return_value.eq.assert_called_once_with("id", "ent-1")


def test_update_entity_replaces_chunks_when_facts_given(tables) -> None:
    chunks = _table(tables, "canon_chunks")
    entities = _table(tables, "canon_entities")
    entities.update.return_value.eq.return_value.execute.return_value = MagicMock(
        data=[{"id": "ent-1", "source": "Campaign wiki"}]
    )

    from loreforge.db.canon import update_entity

    update_entity("ent-1", CanonEntityUpdate(facts=["Mara retired last winter."]))

    update_row = entities.update.call_args[0][0]
    assert "facts" not in update_row
    assert "updated_at" in update_row
    chunks.delete.return_value.eq.assert_called_once_with("entity_id", "ent-1")
    inserted = chunks.insert.call_args[0][0]
    assert inserted == [
        {
            "entity_id": "ent-1",
            "text": "Mara retired last winter.",
            "source": "Campaign wiki",
            "position": 0,
        }
    ]


def test_update_entity_without_facts_keeps_chunks(tables) -> None:
    entities = _table(tables, "canon_entities")
    entities.update.return_value.eq.return_value.execute.return_value = MagicMock(
        data=[{"id": "ent-1"}]
    )

    from loreforge.db.canon import update_entity

    update_entity("ent-1", CanonEntityUpdate(region="Sword Coast"))

    assert "canon_chunks" not in tables
    assert entities.update.call_args[0][0]["region"] == "Sword Coast"


def test_list_entities_excludes_collection_members(tables) -> None:
    collections_table = _table(tables, "library_collections")
    collections_table.select.return_value.in_.return_value.execute.return_value = MagicMock(
        data=[{"entity_ids": ["ent-1", "ent-2"]}, {"entity_ids": ["ent-2", "ent-3"]}]
    )

    from loreforge.db.canon import list_entities

    list_entities(CanonQuery(type="npc", exclude_collection_ids=["col-1", "col-2"]))

    query = tables["canon_entities"].select.return_value
    query.eq.assert_called_once_with("type", "npc")
    query.eq.return_value.not_.in_.assert_called_once_with("id", ["ent-1", "ent-2", "ent-3"])
    collections_table.select.return_value.in_.assert_called_once_with("id", ["col-1", "col-2"])


def test_create_collection_auto_populates_by_tag_overlap(tables) -> None:
    entities = _table(tables, "canon_entities")
    entities.select.return_value.overlaps.return_value.execute.return_value = MagicMock(
        data=[{"id": "ent-1"}, {"id": "ent-4"}]
    )
    collections_table = _table(tables, "library_collections")
    collections_table.insert.return_value.execute.return_value = MagicMock(
        data=[{"id": "col-1", "name": "Harpers"}]
    )

    from loreforge.db.collections import create_collection

    result = create_collection("Harpers", "Harper agents", ["harper", "faction"])

    assert result["id"] == "col-1"
    entities.select.return_value.overlaps.assert_called_once_with("tags", ["harper", "faction"])
    row = collections_table.insert.call_args[0][0]
    assert row["entity_ids"] == ["ent-1", "ent-4"]
    assert row["tags"] == ["harper", "faction"]


def test_create_collection_without_tags_is_empty(tables) -> None:
    collections_table = _table(tables, "library_collections")
    collections_table.insert.return_value.execute.return_value = MagicMock(data=[{"id": "col-2"}])

    from loreforge.db.collections import create_collection

    create_collection("Scratch", "", [])

    assert "canon_entities" not in tables
    assert collections_table.insert.call_args[0][0]["entity_ids"] == []


def test_update_collection_replaces_membership(tables) -> None:
    collections_table = _table(tables, "library_collections")
    collections_table.update.return_value.eq.return_value.execute.return_value = MagicMock(
        data=[{"id": "col-1", "entity_ids": ["ent-2", "ent-9"]}]
    )

    from loreforge.db.collections import update_collection

    result = update_collection("col-1", ["ent-2", "ent-9", "ent-2"])

    assert result["entity_ids"] == ["ent-2", "ent-9"]
    update_row = collections_table.update.call_args[0][0]
    assert update_row["entity_ids"] == ["ent-2", "ent-9"]
    assert "updated_at" in update_row
    collections_table.update.return_value.eq.assert_called_once_with("id", "col-1")


def test_search_facts_merges_entity_and_text_matches(tables) -> None:
    entities = _table(tables, "canon_entities")
    chunks = _table(tables, "canon_chunks")
    entities.select.return_value.or_.return_value.order.return_value.limit.return_value.execute.return_value = (
        MagicMock(data=[{"id": "ent-1", "canonical_name": "Mara", "type": "npc"}])
    )
    chunks.select.return_value.in_.return_value.order.return_value.limit.return_value.execute.return_value = (
        MagicMock(data=[{"id": 10, "entity_id": "ent-1", "text": "Mara guards the gate."}])
    )
    chunks.select.return_value.or_.return_value.order.return_value.limit.return_value.execute.return_value = (
        MagicMock(
            data=[
                {"id": 10, "entity_id": "ent-1", "text": "Mara guards the gate."},
                {"id": 11, "entity_id": "ent-2", "text": "Durnan hired Mara once."},
            ]
        )
    )
    entities.select.return_value.in_.return_value.execute.return_value = MagicMock(
        data=[{"id": "ent-2", "canonical_name": "Durnan", "type": "npc", "source": "Wiki"}]
    )

    from loreforge.db.canon import search_facts

    facts = search_facts(CanonQuery(keywords=["Mara"]))

    assert [(f.chunk_id, f.entity_name) for f in facts] == [("10", "Mara"), ("11", "Durnan")]
    assert facts[1].source == "Wiki"
    entity_filter = entities.select.return_value.or_.call_args[0][0]
    assert "canonical_name.ilike.%Mara%" in entity_filter
    assert "aliases.cs.{Mara}" in entity_filter
    chunks.select.return_value.or_.assert_called_once_with("text.ilike.%Mara%")
    chunks.select.return_value.or_.return_value.order.assert_called_once_with("id")
    entities.select.return_value.or_.return_value.order.assert_called_once_with("id")


def test_search_facts_keeps_every_candidate_and_warns_at_cap(tables, caplog) -> None:
    entities = _table(tables, "canon_entities")
    chunks = _table(tables, "canon_chunks")
    entity_query = entities.select.return_value.or_.return_value.order.return_value
    entity_query.limit.return_value.execute.return_value = MagicMock(
        data=[{"id": "ent-1", "canonical_name": "Mara", "type": "npc"}]
    )
    by_entity = chunks.select.return_value.in_.return_value.order.return_value
    by_entity.limit.return_value.execute.return_value = MagicMock(
        data=[
            {"id": 1, "entity_id": "ent-1", "text": "Mara fact 1"},
            {"id": 2, "entity_id": "ent-1", "text": "Mara fact 2"},
        ]
    )
    by_text = chunks.select.return_value.or_.return_value.order.return_value
    by_text.limit.return_value.execute.return_value = MagicMock(
        data=[{"id": 3, "entity_id": "ent-1", "text": "Mara fact 3"}]
    )

    from loreforge.db.canon import search_facts

    with caplog.at_level("WARNING"):
        facts = search_facts(CanonQuery(keywords=["Mara"], limit=2))

    assert [f.chunk_id for f in facts] == ["1", "2", "3"]
    assert "candidate cap" in caplog.text
    assert "canon_chunks by entity" in caplog.text
    by_entity.limit.assert_called_once_with(2)
