"""CRUD operations for library collections (named bundles of canon entities)."""

from datetime import datetime, timezone
from typing import Any

from loreforge.core.logging import get_logger
from loreforge.db.supabase_client import get_supabase

logger = get_logger(__name__)

TABLE = "library_collections"


def list_collections() -> list[dict[str, Any]]:
    """List all collections, newest first."""
    supabase = get_supabase()
    response = supabase.table(TABLE).select("*").order("created_at", desc=True).execute()
    return response.data or []


def get_collection(collection_id: str) -> dict[str, Any] | None:
    supabase = get_supabase()
    response = supabase.table(TABLE).select("*").eq("id", collection_id).maybe_single().execute()
    return response.data if response else None


def get_member_ids(collection_ids: list[str]) -> list[str]:
    """Union of entity ids across the given collections."""
    if not collection_ids:
        return []
    supabase = get_supabase()
    response = supabase.table(TABLE).select("entity_ids").in_("id", collection_ids).execute()
    members: dict[str, None] = {}
    for row in response.data or []:
        for entity_id in row.get("entity_ids") or []:
            members.setdefault(entity_id, None)
    return list(members)


def create_collection(name: str, description: str, tags: list[str]) -> dict[str, Any]:
    """
    Create a collection, auto-populated with entities whose tags intersect.

    Membership is computed once, at creation time.

    Args:
        name: Collection name
        description: Collection description
        tags: Tags used for initial membership

    Returns:
        Created collection dict
    """
    supabase = get_supabase()

    entity_ids: list[str] = []
    if tags:
        matches = (
            supabase.table("canon_entities").select("id").overlaps("tags", tags).execute()
        )
        entity_ids = [row["id"] for row in matches.data or []]

    data = {
        "name": name,
        "description": description,
        "tags": tags,
        "entity_ids": entity_ids,
    }
    response = supabase.table(TABLE).insert(data).execute()

    if not response.data:
        raise ValueError("Failed to create collection")

    logger.info(
        f"Created collection {name} with {len(entity_ids)} entities",
        extra={"collection_id": response.data[0].get("id")},
    )
    return response.data[0]


def update_collection(collection_id: str, entity_ids: list[str]) -> dict[str, Any] | None:
    """Replace a collection's membership."""
    supabase = get_supabase()
    response = (
        supabase.table(TABLE)
        .update(
            {
                "entity_ids": list(dict.fromkeys(entity_ids)),
                "updated_at": datetime.now(timezone.utc).isoformat(),
            }
        )
        .eq("id", collection_id)
        .execute()
    )
    return response.data[0] if response.data else None


def delete_collection(collection_id: str) -> bool:
    """Delete a collection. Member entities are untouched."""
    supabase = get_supabase()
    response = supabase.table(TABLE).delete().eq("id", collection_id).execute()
    return bool(response.data)
