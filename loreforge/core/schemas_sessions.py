"""Request/response schemas for the generation session API."""

from typing import Any, Literal

from pydantic import BaseModel, Field

from loreforge.core.schemas_pipeline import SessionStatus, StageStatus


class NarrowingResolveRequest(BaseModel):
    mode: Literal["add_keywords", "filter_facts", "proceed_anyway"]
    keywords: list[str] | None = Field(default=None, description="New terms for add_keywords")
    fact_ids: list[str] | None = Field(default=None, description="Chunk ids kept by filter_facts")


class ProposalSelectRequest(BaseModel):
    option: str = Field(..., min_length=1, description="A listed option or 'custom'")
    custom_text: str | None = None


class ResolutionRequest(BaseModel):
    resolution: str = Field(..., min_length=1)


class SessionResponse(BaseModel):
    """Public view of a generation session."""

    session_id: str
    deliverable: str
    status: SessionStatus
    current_stage: str | None = None
    stage_status: dict[str, StageStatus] = Field(default_factory=dict)
    chunk_progress: dict[str, dict[str, int]] = Field(default_factory=dict)
    fact_count: int = 0
    narrowing: dict[str, Any] | None = None
    open_reviews: list[str] = Field(default_factory=list)
    last_error: dict[str, Any] | None = None
