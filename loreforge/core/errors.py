"""Exception taxonomy for the generation pipeline.

Every error names where it happened (stage, chunk, entity) so callers can
surface it without re-deriving context. Upstream-data problems (a missing or
malformed prior stage result) are deliberately absent: they are recovered by
omission inside context building and never raised.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from loreforge.core.canon_retrieval import NarrowingDecision
    from loreforge.core.schemas_reconcile import UnresolvedItem


class PipelineError(Exception):
    """Base class for pipeline failures."""

    def __init__(
        self,
        reason: str,
        *,
        stage_id: str | None = None,
        chunk_index: int | None = None,
        chunk_total: int | None = None,
        entity: str | None = None,
    ):
        self.reason = reason
        self.stage_id = stage_id
        self.chunk_index = chunk_index
        self.chunk_total = chunk_total
        self.entity = entity
        super().__init__(self._format())

    def _format(self) -> str:
        where: list[str] = []
        if self.stage_id:
            where.append(f"stage={self.stage_id}")
        if self.chunk_index is not None:
            total = f"/{self.chunk_total}" if self.chunk_total else ""
            where.append(f"chunk={self.chunk_index}{total}")
        if self.entity:
            where.append(f"entity={self.entity}")
        prefix = f"[{' '.join(where)}] " if where else ""
        return f"{prefix}{self.reason}"

    def to_dict(self) -> dict[str, Any]:
        """Serializable form for API responses."""
        return {
            "error": type(self).__name__,
            "reason": self.reason,
            "stage_id": self.stage_id,
            "chunk_index": self.chunk_index,
            "chunk_total": self.chunk_total,
            "entity": self.entity,
        }


class NarrowingRequired(PipelineError):
    """Retrieved canon exceeds the fact budget; a narrowing decision is required."""

    def __init__(self, decision: NarrowingDecision, *, stage_id: str | None = None):
        self.decision = decision
        reason = (
            f"Retrieved {decision.fact_count} facts ({decision.char_count} chars) "
            f"exceeds budget of {decision.budget.max_facts} facts / "
            f"{decision.budget.max_chars} chars"
        )
        super().__init__(reason, stage_id=stage_id or decision.requested_by)

    def to_dict(self) -> dict[str, Any]:
        data = super().to_dict()
        data["narrowing"] = self.decision.summary()
        return data


class GenerationCallError(PipelineError):
    """The external generation call failed. Safe to retry; never retried implicitly."""

    retryable = True

    def __init__(self, reason: str, *, provider: str | None = None, **kwargs: Any):
        self.provider = provider
        super().__init__(reason, **kwargs)

    def to_dict(self) -> dict[str, Any]:
        data = super().to_dict()
        data["provider"] = self.provider
        data["retryable"] = self.retryable
        return data


class StageParseError(PipelineError):
    """Stage output could not be parsed or validated after the retry cap."""

    def __init__(
        self,
        reason: str,
        *,
        attempts: int = 1,
        line: int | None = None,
        column: int | None = None,
        position: int | None = None,
        **kwargs: Any,
    ):
        self.attempts = attempts
        self.line = line
        self.column = column
        self.position = position
        super().__init__(reason, **kwargs)

    def to_dict(self) -> dict[str, Any]:
        data = super().to_dict()
        data.update(
            {
                "attempts": self.attempts,
                "line": self.line,
                "column": self.column,
                "position": self.position,
            }
        )
        return data


class ReconciliationBlocked(PipelineError):
    """Approval attempted while required reconciliation items remain unresolved."""

    def __init__(self, unresolved: list[UnresolvedItem], *, stage_id: str | None = None):
        self.unresolved = unresolved
        labels = "; ".join(f"{item.kind}[{item.index}]: {item.label}" for item in unresolved)
        super().__init__(f"{len(unresolved)} item(s) unresolved: {labels}", stage_id=stage_id)

    def to_dict(self) -> dict[str, Any]:
        data = super().to_dict()
        data["unresolved"] = [item.model_dump() for item in self.unresolved]
        return data


class ReviewPending(PipelineError):
    """Advance attempted while a completed stage still awaits approval."""


class GenerationCancelled(PipelineError):
    """Generation was cancelled between chunk iterations or stages."""
