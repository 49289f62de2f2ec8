"""Pydantic schemas for generation requests, chunking and the pipeline context."""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Literal

from pydantic import BaseModel, Field

from loreforge.core.llm import ProviderConfig
from loreforge.core.schemas_canon import CanonFactSet
from loreforge.core.schemas_outputs import StageOutput
from loreforge.core.schemas_reconcile import ApprovalBundle, OutstandingWork, ReconciliationSet

Deliverable = Literal["monster", "npc", "location"]


class StageStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    AWAITING_REVIEW = "awaiting_review"
    APPROVED = "approved"
    SKIPPED = "skipped"
    FAILED = "failed"


class SessionStatus(str, Enum):
    CREATED = "created"
    AWAITING_NARROWING = "awaiting_narrowing"
    READY = "ready"
    RUNNING = "running"
    AWAITING_REVIEW = "awaiting_review"
    FAILED = "failed"
    CANCELLED = "cancelled"
    COMPLETED = "completed"


class RequestConfig(BaseModel):
    """What the user asked for."""

    deliverable: Deliverable
    prompt: str = Field(..., min_length=1)
    keywords: list[str] = Field(default_factory=list, description="Canon retrieval keywords")
    flags: dict[str, Any] = Field(default_factory=dict)
    provider: ProviderConfig | None = None
    max_facts: int | None = Field(default=None, ge=1, description="Fact budget override")
    max_fact_chars: int | None = Field(default=None, ge=1, description="Char budget override")


class ChunkPlan(BaseModel):
    should_chunk: bool = False
    total_chunks: int = Field(default=1, ge=1)
    chunk_size: int = Field(default=1, ge=1)


class ChunkState(BaseModel):
    """Position of the iteration currently being generated."""

    index: int = Field(..., ge=1)
    total: int = Field(..., ge=1)
    label: str = ""
    window: int = Field(default=5, ge=0)


class ChunkProgress(BaseModel):
    completed: int = Field(default=0, ge=0)
    total: int = Field(default=1, ge=1)

    @property
    def done(self) -> bool:
        return self.completed >= self.total

    @property
    def next_index(self) -> int:
        return self.completed + 1


class PipelineContext(BaseModel):
    """
    Everything one generation session knows.

    Owned by exactly one session and passed by reference into every stage.
    """

    session_id: str
    request: RequestConfig
    status: SessionStatus = SessionStatus.CREATED
    stage_results: dict[str, StageOutput] = Field(default_factory=dict)
    stage_status: dict[str, StageStatus] = Field(default_factory=dict)
    canon: CanonFactSet = Field(default_factory=CanonFactSet)
    chunk_state: ChunkState | None = None
    chunk_progress: dict[str, ChunkProgress] = Field(default_factory=dict)
    prior_decisions: dict[str, str] = Field(default_factory=dict)
    open_reconciliation: dict[str, ReconciliationSet] = Field(default_factory=dict)
    approvals: dict[str, ApprovalBundle] = Field(default_factory=dict)
    outstanding_work: list[OutstandingWork] = Field(default_factory=list)
    last_error: dict[str, Any] | None = None
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    def status_of(self, stage_id: str) -> StageStatus:
        return self.stage_status.get(stage_id, StageStatus.PENDING)


class FinalArtifact(BaseModel):
    """Merged, approved deliverable."""

    session_id: str
    deliverable: Deliverable
    content: dict[str, Any] = Field(default_factory=dict)
    decisions: dict[str, str] = Field(default_factory=dict)
    conflict_resolutions: list[dict[str, Any]] = Field(default_factory=list)
    canon_overrides: list[dict[str, Any]] = Field(default_factory=list)
    canon_updates: list[Any] = Field(default_factory=list)
    sources_used: list[Any] = Field(default_factory=list)
    assumptions: list[Any] = Field(default_factory=list)
    outstanding_work: list[OutstandingWork] = Field(default_factory=list)
    skipped_stages: list[str] = Field(default_factory=list)
    over_budget_override: bool = False
