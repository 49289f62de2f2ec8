"""Pydantic schemas for delta reconciliation (proposals, conflicts, issues)."""

from enum import Enum
from typing import Any, Literal

from pydantic import BaseModel, Field

CUSTOM_OPTION = "custom"


class ResolutionState(str, Enum):
    UNRESOLVED = "unresolved"
    RESOLVED = "resolved"


class ConflictResolution(str, Enum):
    NONE = "none"
    KEEP_OLD = "keep_old"
    USE_NEW = "use_new"
    MERGE = "merge"
    SKIP = "skip"


class IssueSeverity(str, Enum):
    CRITICAL = "critical"
    MODERATE = "moderate"
    MINOR = "minor"


class IssueResolution(str, Enum):
    NONE = "none"
    WILL_FIX = "will_fix"
    ACKNOWLEDGE = "acknowledge"
    IGNORE = "ignore"


class Proposal(BaseModel):
    """AI-raised open question that needs a human decision."""

    question: str
    options: list[str] = Field(default_factory=list)
    rule_impact: str | None = None
    selected_option: str | None = None
    custom_text: str | None = None

    @property
    def resolution_state(self) -> ResolutionState:
        if self.selected_option is None:
            return ResolutionState.UNRESOLVED
        if self.selected_option == CUSTOM_OPTION and not (self.custom_text or "").strip():
            return ResolutionState.UNRESOLVED
        return ResolutionState.RESOLVED

    @property
    def answer(self) -> str | None:
        if self.resolution_state is ResolutionState.UNRESOLVED:
            return None
        if self.selected_option == CUSTOM_OPTION:
            return (self.custom_text or "").strip()
        return self.selected_option


class Conflict(BaseModel):
    """Contradiction between a new claim and existing canon."""

    existing_claim: str | None = None
    new_claim: str | None = None
    entity_id: str | None = None
    entity_name: str | None = None
    field_path: str | None = None
    severity: str | None = None
    summary: str | None = None
    suggested_fix: str | None = None
    resolution: ConflictResolution = ConflictResolution.NONE

    @property
    def resolution_state(self) -> ResolutionState:
        if self.resolution is ConflictResolution.NONE:
            return ResolutionState.UNRESOLVED
        return ResolutionState.RESOLVED


class Issue(BaseModel):
    """Validation or logic issue raised against generated content."""

    description: str
    severity: IssueSeverity = IssueSeverity.MINOR
    issue_type: str | None = None
    location: str | None = None
    suggestion: str | None = None
    resolution: IssueResolution = IssueResolution.NONE

    @property
    def blocking(self) -> bool:
        """Only unresolved critical issues block approval."""
        return self.severity is IssueSeverity.CRITICAL and self.resolution is IssueResolution.NONE

    @property
    def outstanding(self) -> bool:
        """Accepted for approval but the fix is still owed."""
        return self.resolution is IssueResolution.WILL_FIX


class ReconciliationSet(BaseModel):
    """The three reconciliation collections extracted from one stage's output."""

    stage_id: str | None = None
    proposals: list[Proposal] = Field(default_factory=list)
    conflicts: list[Conflict] = Field(default_factory=list)
    issues: list[Issue] = Field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        return not (self.proposals or self.conflicts or self.issues)


class UnresolvedItem(BaseModel):
    kind: Literal["proposal", "conflict", "issue"]
    index: int
    label: str


class ProposalAnswer(BaseModel):
    question: str
    answer: str
    custom: bool = False


class OutstandingWork(BaseModel):
    """Persisted marker for an issue accepted with a promise to fix it later."""

    stage_id: str | None = None
    description: str
    severity: IssueSeverity
    issue_type: str | None = None
    location: str | None = None
    suggestion: str | None = None


class ApprovalBundle(BaseModel):
    """Merged result of a successful approval."""

    stage_id: str | None = None
    proposal_answers: list[ProposalAnswer] = Field(default_factory=list)
    conflict_resolutions: list[Conflict] = Field(default_factory=list)
    issue_resolutions: list[Issue] = Field(default_factory=list)
    outstanding_work: list[OutstandingWork] = Field(default_factory=list)

    def decisions(self) -> dict[str, Any]:
        """Question → answer mapping carried into later stages."""
        return {a.question: a.answer for a in self.proposal_answers}
