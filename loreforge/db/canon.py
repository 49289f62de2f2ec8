"""CRUD operations for canon entities and their fact chunks.

Entities live in canon_entities; each entity's facts are rows in canon_chunks
keyed by entity_id. Deleting an entity deletes its chunks.
"""

from datetime import datetime, timezone
from typing import Any

from loreforge.core.logging import get_logger
from loreforge.core.schemas_canon import (
    CanonEntity,
    CanonEntityCreate,
    CanonEntityUpdate,
    CanonFact,
    CanonQuery,
    LibraryCollection,
)
from loreforge.db import collections
from loreforge.db.supabase_client import get_supabase

logger = get_logger(__name__)

ENTITIES = "canon_entities"
CHUNKS = "canon_chunks"


def _escape(term: str) -> str:
    """Strip characters that would break a PostgREST or() filter."""
    return term.replace(",", " ").replace("(", " ").replace(")", " ").strip()


def list_entities(query: CanonQuery) -> list[dict[str, Any]]:
    """
    List canon entities matching the query filters.

    Args:
        query: Filters (type, tags, era, region, text, excluded collections),
            sort and paging

    Returns:
        List of entity dicts
    """
    supabase = get_supabase()
    q = supabase.table(ENTITIES).select("*")

    if query.type:
        q = q.eq("type", query.type)
    if query.tags:
        q = q.contains("tags", query.tags)
    if query.era:
        q = q.eq("era", query.era)
    if query.region:
        q = q.eq("region", query.region)
    if query.entity_ids:
        q = q.in_("id", query.entity_ids)
    if query.text:
        term = _escape(query.text)
        q = q.or_(f"canonical_name.ilike.%{term}%,tags.cs.{{{term}}},aliases.cs.{{{term}}}")
    if query.exclude_collection_ids:
        excluded = collections.get_member_ids(query.exclude_collection_ids)
        if excluded:
            q = q.not_.in_("id", excluded)

    if query.sort == "recent":
        q = q.order("created_at", desc=True)
    q = q.order("canonical_name")

    response = q.range(query.offset, query.offset + query.limit - 1).execute()
    return response.data or []


def get_entity(entity_id: str) -> dict[str, Any] | None:
    supabase = get_supabase()
    response = (
        supabase.table(ENTITIES).select("*").eq("id", entity_id).maybe_single().execute()
    )
    return response.data if response else None


def list_entity_chunks(entity_id: str) -> list[dict[str, Any]]:
    supabase = get_supabase()
    response = (
        supabase.table(CHUNKS).select("*").eq("entity_id", entity_id).order("position").execute()
    )
    return response.data or []


def _insert_chunks(entity_id: str, facts: list[str], source: str | None) -> int:
    rows = [
        {"entity_id": entity_id, "text": text.strip(), "source": source, "position": i}
        for i, text in enumerate(facts)
        if text and text.strip()
    ]
    if not rows:
        return 0
    supabase = get_supabase()
    supabase.table(CHUNKS).insert(rows).execute()
    return len(rows)


def create_entity(data: CanonEntityCreate) -> dict[str, Any]:
    """
    Create a canon entity and chunk its facts.

    Returns:
        Created entity dict

    Raises:
        ValueError: If the insert returns nothing
    """
    supabase = get_supabase()
    row = data.model_dump(exclude={"facts"})
    response = supabase.table(ENTITIES).insert(row).execute()
    if not response.data:
        raise ValueError("Failed to create canon entity")

    entity = response.data[0]
    count = _insert_chunks(entity["id"], data.facts, data.source)
    logger.info(
        f"Created canon entity {data.canonical_name} with {count} facts",
        extra={"entity_id": entity["id"]},
    )
    return entity


def update_entity(entity_id: str, data: CanonEntityUpdate) -> dict[str, Any] | None:
    """Update entity fields; when facts are given they replace the chunks."""
    supabase = get_supabase()
    updates = data.model_dump(exclude={"facts"}, exclude_none=True)
    updates["updated_at"] = datetime.now(timezone.utc).isoformat()

    response = supabase.table(ENTITIES).update(updates).eq("id", entity_id).execute()
    if not response.data:
        return None
    entity = response.data[0]

    if data.facts is not None:
        supabase.table(CHUNKS).delete().eq("entity_id", entity_id).execute()
        _insert_chunks(entity_id, data.facts, data.source or entity.get("source"))
    return entity


def delete_entity(entity_id: str) -> bool:
    """Delete an entity and cascade-delete its fact chunks."""
    supabase = get_supabase()
    supabase.table(CHUNKS).delete().eq("entity_id", entity_id).execute()
    response = supabase.table(ENTITIES).delete().eq("id", entity_id).execute()
    deleted = bool(response.data)
    if deleted:
        logger.info("Deleted canon entity and its chunks", extra={"entity_id": entity_id})
    return deleted


def _entity_filter(keyword: str) -> str:
    term = _escape(keyword)
    return ",".join(
        [
            f"canonical_name.ilike.%{term}%",
            f"type.ilike.%{term}%",
            f"region.ilike.%{term}%",
            f"tags.cs.{{{term}}}",
            f"aliases.cs.{{{term}}}",
        ]
    )


def _to_fact(chunk: dict[str, Any], entity: dict[str, Any] | None) -> CanonFact:
    entity = entity or {}
    return CanonFact(
        chunk_id=str(chunk["id"]),
        text=chunk.get("text") or "",
        source=chunk.get("source") or entity.get("source"),
        entity_id=str(entity["id"]) if entity.get("id") else chunk.get("entity_id"),
        entity_name=entity.get("canonical_name") or "",
        entity_type=entity.get("type"),
        aliases=entity.get("aliases") or [],
        tags=entity.get("tags") or [],
        region=entity.get("region"),
        era=entity.get("era"),
    )


def search_facts(query: CanonQuery) -> list[CanonFact]:
    """
    Pull candidate facts for retrieval keywords.

    Candidates are the chunks of entities matching a keyword on name, type,
    region, tags or aliases, plus chunks whose text mentions a keyword.
    Every query is ordered by id so a capped result is the same subset on
    each call. Ranking is left to the caller.
    """
    supabase = get_supabase()
    keywords = [k for k in query.keywords if _escape(k)]
    excluded = set(collections.get_member_ids(query.exclude_collection_ids))
    capped: list[str] = []

    entities: dict[str, dict[str, Any]] = {}
    entity_query = supabase.table(ENTITIES).select("*")
    if keywords:
        entity_query = entity_query.or_(",".join(_entity_filter(k) for k in keywords))
    response = entity_query.order("id").limit(query.limit).execute()
    rows = response.data or []
    if len(rows) >= query.limit:
        capped.append(ENTITIES)
    for row in rows:
        entities[str(row["id"])] = row

    chunks: dict[str, dict[str, Any]] = {}
    if entities:
        response = (
            supabase.table(CHUNKS)
            .select("*")
            .in_("entity_id", list(entities))
            .order("id")
            .limit(query.limit)
            .execute()
        )
        rows = response.data or []
        if len(rows) >= query.limit:
            capped.append(f"{CHUNKS} by entity")
        for row in rows:
            chunks[str(row["id"])] = row

    if keywords:
        text_filter = ",".join(f"text.ilike.%{_escape(k)}%" for k in keywords)
        response = (
            supabase.table(CHUNKS)
            .select("*")
            .or_(text_filter)
            .order("id")
            .limit(query.limit)
            .execute()
        )
        rows = response.data or []
        if len(rows) >= query.limit:
            capped.append(f"{CHUNKS} by text")
        for row in rows:
            chunks.setdefault(str(row["id"]), row)

    if capped:
        logger.warning(
            f"Canon search hit the {query.limit}-row candidate cap on {', '.join(capped)}; "
            "results beyond the cap are not considered"
        )

    missing = {str(c["entity_id"]) for c in chunks.values() if str(c["entity_id"]) not in entities}
    if missing:
        response = supabase.table(ENTITIES).select("*").in_("id", sorted(missing)).execute()
        for row in response.data or []:
            entities[str(row["id"])] = row

    facts = [
        _to_fact(chunk, entities.get(str(chunk["entity_id"])))
        for chunk in chunks.values()
        if str(chunk["entity_id"]) not in excluded
    ]
    logger.debug(f"Canon search returned {len(facts)} candidate facts")
    return facts


def _entity_model(row: dict[str, Any]) -> CanonEntity:
    return CanonEntity.model_validate({**row, "id": str(row["id"])})


def _collection_model(row: dict[str, Any]) -> LibraryCollection:
    return LibraryCollection.model_validate(
        {**row, "id": str(row["id"]), "entity_ids": row.get("entity_ids") or []}
    )


class SupabaseCanonStore:
    """CanonStore backed by Supabase tables."""

    def search_facts(self, query: CanonQuery) -> list[CanonFact]:
        return search_facts(query)

    def query_entities(self, query: CanonQuery) -> list[CanonEntity]:
        return [_entity_model(row) for row in list_entities(query)]

    def get_entity(self, entity_id: str) -> CanonEntity | None:
        row = get_entity(entity_id)
        return _entity_model(row) if row else None

    def create_entity(self, data: CanonEntityCreate) -> CanonEntity:
        return _entity_model(create_entity(data))

    def update_entity(self, entity_id: str, data: CanonEntityUpdate) -> CanonEntity | None:
        row = update_entity(entity_id, data)
        return _entity_model(row) if row else None

    def delete_entity(self, entity_id: str) -> bool:
        return delete_entity(entity_id)

    def list_collections(self) -> list[LibraryCollection]:
        return [_collection_model(row) for row in collections.list_collections()]

    def create_collection(
        self, name: str, description: str, tags: list[str]
    ) -> LibraryCollection:
        return _collection_model(collections.create_collection(name, description, tags))

    def update_collection(
        self, collection_id: str, entity_ids: list[str]
    ) -> LibraryCollection | None:
        row = collections.update_collection(collection_id, entity_ids)
        return _collection_model(row) if row else None

    def delete_collection(self, collection_id: str) -> bool:
        return collections.delete_collection(collection_id)
