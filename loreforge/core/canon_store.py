"""Canon store contract consumed by retrieval and the canon API."""

from typing import Protocol

from loreforge.core.schemas_canon import (
    CanonEntity,
    CanonEntityCreate,
    CanonEntityUpdate,
    CanonFact,
    CanonQuery,
    LibraryCollection,
)


class CanonStore(Protocol):
    """Persistence operations the pipeline needs from a canon backend."""

    def search_facts(self, query: CanonQuery) -> list[CanonFact]:
        """Return candidate facts for the query. Ranking is not the store's job."""
        ...

    def query_entities(self, query: CanonQuery) -> list[CanonEntity]: ...

    def get_entity(self, entity_id: str) -> CanonEntity | None: ...

    def create_entity(self, data: CanonEntityCreate) -> CanonEntity: ...

    def update_entity(self, entity_id: str, data: CanonEntityUpdate) -> CanonEntity | None: ...

    def delete_entity(self, entity_id: str) -> bool:
        """Delete the entity and cascade-delete its fact chunks."""
        ...

    def list_collections(self) -> list[LibraryCollection]: ...

    def create_collection(
        self, name: str, description: str, tags: list[str]
    ) -> LibraryCollection: ...

    def update_collection(
        self, collection_id: str, entity_ids: list[str]
    ) -> LibraryCollection | None: ...

    def delete_collection(self, collection_id: str) -> bool: ...
