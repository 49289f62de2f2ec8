"""In-memory canon store for pipeline and API tests."""

import uuid
from typing import Any

from loreforge.core.schemas_canon import (
    CanonEntity,
    CanonEntityCreate,
    CanonEntityUpdate,
    CanonFact,
    CanonQuery,
    LibraryCollection,
)


def make_fact(
    chunk_id: str,
    text: str,
    entity_name: str = "Thornwick",
    *,
    entity_id: str | None = None,
    entity_type: str = "npc",
    tags: list[str] | None = None,
    aliases: list[str] | None = None,
    region: str | None = None,
) -> CanonFact:
    return CanonFact(
        chunk_id=chunk_id,
        text=text,
        entity_id=entity_id or f"ent-{entity_name.lower().replace(' ', '-')}",
        entity_name=entity_name,
        entity_type=entity_type,
        tags=tags or [],
        aliases=aliases or [],
        region=region,
    )


class FakeCanonStore:
    """Keeps entities, facts and collections in dicts. Matches by substring."""

    def __init__(self, facts: list[CanonFact] | None = None):
        self.entities: dict[str, dict[str, Any]] = {}
        self.facts: dict[str, CanonFact] = {}
        self.collections: dict[str, dict[str, Any]] = {}
        self.search_calls: list[CanonQuery] = []
        for fact in facts or []:
            self.add_fact(fact)

    def add_fact(self, fact: CanonFact) -> None:
        self.facts[fact.chunk_id] = fact
        if fact.entity_id and fact.entity_id not in self.entities:
            self.entities[fact.entity_id] = {
                "id": fact.entity_id,
                "canonical_name": fact.entity_name,
                "type": fact.entity_type or "unknown",
                "aliases": list(fact.aliases),
                "tags": list(fact.tags),
                "region": fact.region,
                "era": fact.era,
            }

    def _excluded(self, collection_ids: list[str]) -> set[str]:
        members: set[str] = set()
        for cid in collection_ids:
            members.update(self.collections.get(cid, {}).get("entity_ids", []))
        return members

    @staticmethod
    def _matches(fact: CanonFact, keyword: str) -> bool:
        haystack = [
            fact.text,
            fact.entity_name,
            fact.entity_type or "",
            fact.region or "",
            *fact.tags,
            *fact.aliases,
        ]
        return any(keyword in value.lower() for value in haystack)

    def search_facts(self, query: CanonQuery) -> list[CanonFact]:
        self.search_calls.append(query)
        excluded = self._excluded(query.exclude_collection_ids)
        results = []
        for fact in self.facts.values():
            if fact.entity_id in excluded:
                continue
            if query.keywords and not any(self._matches(fact, kw) for kw in query.keywords):
                continue
            results.append(fact)
        return results[: query.limit]

    def query_entities(self, query: CanonQuery) -> list[CanonEntity]:
        excluded = self._excluded(query.exclude_collection_ids)
        rows = []
        for row in self.entities.values():
            if row["id"] in excluded:
                continue
            if query.type and row["type"] != query.type:
                continue
            if query.tags and not set(query.tags).issubset(row["tags"]):
                continue
            if query.region and row.get("region") != query.region:
                continue
            if query.text and query.text.lower() not in row["canonical_name"].lower():
                continue
            rows.append(row)
        rows.sort(key=lambda r: r["canonical_name"].lower())
        return [CanonEntity.model_validate(r) for r in rows[query.offset : query.offset + query.limit]]

    def get_entity(self, entity_id: str) -> CanonEntity | None:
        row = self.entities.get(entity_id)
        return CanonEntity.model_validate(row) if row else None

    def create_entity(self, data: CanonEntityCreate) -> CanonEntity:
        entity_id = str(uuid.uuid4())
        row = {"id": entity_id, **data.model_dump(exclude={"facts"})}
        self.entities[entity_id] = row
        for i, text in enumerate(data.facts):
            chunk_id = f"{entity_id}-{i}"
            self.facts[chunk_id] = CanonFact(
                chunk_id=chunk_id,
                text=text,
                entity_id=entity_id,
                entity_name=data.canonical_name,
                entity_type=data.type,
                tags=data.tags,
                aliases=data.aliases,
                region=data.region,
            )
        return CanonEntity.model_validate(row)

    def update_entity(self, entity_id: str, data: CanonEntityUpdate) -> CanonEntity | None:
        row = self.entities.get(entity_id)
        if row is None:
            return None
        row.update(data.model_dump(exclude={"facts"}, exclude_none=True))
        return CanonEntity.model_validate(row)

    def delete_entity(self, entity_id: str) -> bool:
        if self.entities.pop(entity_id, None) is None:
            return False
        self.facts = {k: f for k, f in self.facts.items() if f.entity_id != entity_id}
        return True

    def list_collections(self) -> list[LibraryCollection]:
        return [LibraryCollection.model_validate(c) for c in self.collections.values()]

    def create_collection(self, name: str, description: str, tags: list[str]) -> LibraryCollection:
        collection_id = str(uuid.uuid4())
        members = [r["id"] for r in self.entities.values() if set(tags) & set(r["tags"])]
        self.collections[collection_id] = {
            "id": collection_id,
            "name": name,
            "description": description,
            "tags": tags,
            "entity_ids": members,
        }
        return LibraryCollection.model_validate(self.collections[collection_id])

    def update_collection(self, collection_id: str, entity_ids: list[str]) -> LibraryCollection | None:
        collection = self.collections.get(collection_id)
        if collection is None:
            return None
        collection["entity_ids"] = list(entity_ids)
        return LibraryCollection.model_validate(collection)

    def delete_collection(self, collection_id: str) -> bool:
        return self.collections.pop(collection_id, None) is not None
