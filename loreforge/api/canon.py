"""API endpoints for the canon library: entities and collections."""

from typing import Literal

from fastapi import APIRouter, Depends, HTTPException, Query

from loreforge.core.canon_store import CanonStore
from loreforge.core.logging import get_logger
from loreforge.core.schemas_canon import (
    CanonEntity,
    CanonEntityCreate,
    CanonEntityUpdate,
    CanonQuery,
    CollectionCreate,
    CollectionUpdate,
    LibraryCollection,
)
from loreforge.db.canon import SupabaseCanonStore

logger = get_logger(__name__)

router = APIRouter()


def get_canon_store() -> CanonStore:
    """Default canon store; tests override this dependency."""
    return SupabaseCanonStore()


# =============================================================================
# Entities
# =============================================================================


@router.get("/entities", response_model=list[CanonEntity])
def query_entities(
    type: str | None = Query(None, description="Entity type filter"),
    tags: list[str] | None = Query(None, description="Entities must carry all tags"),
    era: str | None = Query(None),
    region: str | None = Query(None),
    text: str | None = Query(None, description="Search names, aliases and tags"),
    exclude_collection_ids: list[str] | None = Query(None),
    sort: Literal["name", "recent"] = Query("name"),
    limit: int = Query(50, ge=1, le=500),
    offset: int = Query(0, ge=0),
    store: CanonStore = Depends(get_canon_store),
) -> list[CanonEntity]:
    """List canon entities matching the given filters."""
    query = CanonQuery(
        type=type,
        tags=tags or [],
        era=era,
        region=region,
        text=text,
        exclude_collection_ids=exclude_collection_ids or [],
        sort=sort,
        limit=limit,
        offset=offset,
    )
    return store.query_entities(query)


@router.get("/entities/{entity_id}", response_model=CanonEntity)
def get_entity(entity_id: str, store: CanonStore = Depends(get_canon_store)) -> CanonEntity:
    entity = store.get_entity(entity_id)
    if entity is None:
        raise HTTPException(status_code=404, detail="Entity not found")
    return entity


@router.post("/entities", response_model=CanonEntity, status_code=201)
def create_entity(
    data: CanonEntityCreate, store: CanonStore = Depends(get_canon_store)
) -> CanonEntity:
    """Create an entity; its facts are chunked for retrieval."""
    try:
        return store.create_entity(data)
    except ValueError as e:
        logger.error(f"Failed to create entity: {e}")
        raise HTTPException(status_code=500, detail=str(e)) from e


@router.patch("/entities/{entity_id}", response_model=CanonEntity)
def update_entity(
    entity_id: str,
    data: CanonEntityUpdate,
    store: CanonStore = Depends(get_canon_store),
) -> CanonEntity:
    entity = store.update_entity(entity_id, data)
    if entity is None:
        raise HTTPException(status_code=404, detail="Entity not found")
    return entity


@router.delete("/entities/{entity_id}")
def delete_entity(entity_id: str, store: CanonStore = Depends(get_canon_store)) -> dict:
    """Delete an entity and its fact chunks."""
    if not store.delete_entity(entity_id):
        raise HTTPException(status_code=404, detail="Entity not found")
    return {"deleted": True}


# =============================================================================
# Collections
# =============================================================================


@router.get("/collections", response_model=list[LibraryCollection])
def list_collections(store: CanonStore = Depends(get_canon_store)) -> list[LibraryCollection]:
    return store.list_collections()


@router.post("/collections", response_model=LibraryCollection, status_code=201)
def create_collection(
    data: CollectionCreate, store: CanonStore = Depends(get_canon_store)
) -> LibraryCollection:
    """Create a collection populated from entities sharing any of its tags."""
    try:
        return store.create_collection(data.name, data.description, data.tags)
    except ValueError as e:
        logger.error(f"Failed to create collection: {e}")
        raise HTTPException(status_code=500, detail=str(e)) from e


@router.put("/collections/{collection_id}", response_model=LibraryCollection)
def update_collection(
    collection_id: str,
    data: CollectionUpdate,
    store: CanonStore = Depends(get_canon_store),
) -> LibraryCollection:
    """Replace a collection's membership."""
    collection = store.update_collection(collection_id, data.entity_ids)
    if collection is None:
        raise HTTPException(status_code=404, detail="Collection not found")
    return collection


@router.delete("/collections/{collection_id}")
def delete_collection(
    collection_id: str, store: CanonStore = Depends(get_canon_store)
) -> dict:
    if not store.delete_collection(collection_id):
        raise HTTPException(status_code=404, detail="Collection not found")
    return {"deleted": True}
