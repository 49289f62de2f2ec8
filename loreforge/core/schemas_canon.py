"""Pydantic schemas for canon entities, facts and collections."""

from datetime import datetime
from typing import Literal

from pydantic import BaseModel, Field


class CanonFact(BaseModel):
    """Atomic, independently citable canon claim."""

    chunk_id: str = Field(..., description="Stable id of the fact chunk")
    text: str = Field(..., description="The claim itself")
    source: str | None = Field(default=None, description="Source attribution")
    entity_id: str | None = Field(default=None, description="Owning canon entity id")
    entity_name: str = Field(default="", description="Owning entity canonical name")
    entity_type: str | None = Field(default=None, description="npc, monster, location, faction, ...")
    aliases: list[str] = Field(default_factory=list, description="Owning entity aliases")
    tags: list[str] = Field(default_factory=list)
    region: str | None = None
    era: str | None = None

    @property
    def entity_key(self) -> str:
        """Grouping key: entity id when known, else entity name."""
        return self.entity_id or self.entity_name

    @property
    def char_count(self) -> int:
        return len(self.text)


class CanonQuery(BaseModel):
    """Store query used by retrieval and the library browser."""

    keywords: list[str] = Field(default_factory=list)
    text: str | None = Field(default=None, description="Free-text search across names and tags")
    entity_ids: list[str] = Field(default_factory=list)
    type: str | None = None
    tags: list[str] = Field(default_factory=list)
    era: str | None = None
    region: str | None = None
    exclude_collection_ids: list[str] = Field(default_factory=list)
    sort: Literal["name", "recent"] = "name"
    limit: int = Field(default=500, ge=1)
    offset: int = Field(default=0, ge=0)


class CanonEntityCreate(BaseModel):
    canonical_name: str = Field(..., min_length=1)
    type: str = Field(..., min_length=1)
    aliases: list[str] = Field(default_factory=list)
    tags: list[str] = Field(default_factory=list)
    era: str | None = None
    region: str | None = None
    source: str | None = None
    facts: list[str] = Field(default_factory=list, description="Fact texts chunked for retrieval")


class CanonEntityUpdate(BaseModel):
    canonical_name: str | None = None
    type: str | None = None
    aliases: list[str] | None = None
    tags: list[str] | None = None
    era: str | None = None
    region: str | None = None
    source: str | None = None
    facts: list[str] | None = Field(
        default=None, description="When set, replaces the entity's fact chunks"
    )


class CanonEntity(BaseModel):
    id: str
    canonical_name: str
    type: str
    aliases: list[str] = Field(default_factory=list)
    tags: list[str] = Field(default_factory=list)
    era: str | None = None
    region: str | None = None
    source: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None


class CollectionCreate(BaseModel):
    name: str = Field(..., min_length=1)
    description: str = Field(..., min_length=1)
    tags: list[str] = Field(default_factory=list)


class CollectionUpdate(BaseModel):
    entity_ids: list[str] = Field(default_factory=list)


class LibraryCollection(BaseModel):
    id: str
    name: str
    description: str
    tags: list[str] = Field(default_factory=list)
    entity_ids: list[str] = Field(default_factory=list)
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @property
    def entity_count(self) -> int:
        return len(self.entity_ids)


class FactBudget(BaseModel):
    """Size ceiling for the canon fed into generation."""

    max_facts: int = Field(default=80, ge=1)
    max_chars: int = Field(default=24_000, ge=1)

    def exceeded_by(self, fact_count: int, char_count: int) -> bool:
        return fact_count > self.max_facts or char_count > self.max_chars


class CanonFactSet(BaseModel):
    """Ranked canon facts carried through a session."""

    keywords: list[str] = Field(default_factory=list)
    facts: list[CanonFact] = Field(default_factory=list)
    over_budget_override: bool = False

    @property
    def fact_count(self) -> int:
        return len(self.facts)

    @property
    def char_count(self) -> int:
        return sum(f.char_count for f in self.facts)

    @property
    def chunk_ids(self) -> set[str]:
        return {f.chunk_id for f in self.facts}
