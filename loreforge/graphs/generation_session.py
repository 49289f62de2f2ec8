"""Generation session: drives a deliverable's stages over one PipelineContext.

Each session owns its context and lock. Stages run one at a time through the
stage graph; a stage with reconciliation items waits for approval before the
next stage may start. Canon is retrieved once at start and carried forward,
growing only through retrieval hints.
"""

import threading
import uuid
from typing import Any, Literal

from loreforge.chains.build_artifact import build_final_artifact
from loreforge.chains.registry import get_stages
from loreforge.chains.stage_definition import StageDefinition
from loreforge.core.canon_retrieval import (
    NarrowingDecision,
    normalize_keywords,
    retrieve_canon,
    retrieve_hinted_facts,
)
from loreforge.core.canon_store import CanonStore
from loreforge.core.config import Settings, get_settings
from loreforge.core.errors import (
    GenerationCancelled,
    NarrowingRequired,
    PipelineError,
    ReviewPending,
)
from loreforge.core.fact_filter import FactFilterSession
from loreforge.core.logging import get_logger
from loreforge.core.reconciliation import (
    approve,
    resolve_conflict,
    resolve_issue,
    select_proposal,
)
from loreforge.core.schemas_canon import CanonFact, CanonFactSet, FactBudget
from loreforge.core.schemas_pipeline import (
    FinalArtifact,
    PipelineContext,
    RequestConfig,
    SessionStatus,
    StageStatus,
)
from loreforge.core.schemas_reconcile import ApprovalBundle, ReconciliationSet
from loreforge.graphs.stage_graph import ProgressCallback, run_stage

logger = get_logger(__name__)

NarrowingMode = Literal["add_keywords", "filter_facts", "proceed_anyway"]

# Stage states that let the session move past a stage
_DONE = (StageStatus.APPROVED, StageStatus.SKIPPED)


class GenerationSession:
    """One user's generation run for one deliverable."""

    def __init__(
        self,
        request: RequestConfig,
        store: CanonStore,
        *,
        settings: Settings | None = None,
        session_id: str | None = None,
        on_progress: ProgressCallback | None = None,
        context: PipelineContext | None = None,
    ):
        self.settings = settings or get_settings()
        self.store = store
        self.stages: tuple[StageDefinition, ...] = get_stages(request.deliverable)
        self.context = context or PipelineContext(
            session_id=session_id or str(uuid.uuid4()),
            request=request,
        )
        self.on_progress = on_progress
        self.pending_narrowing: NarrowingDecision | None = None
        self._lock = threading.Lock()
        self._cancel = threading.Event()

    # =========================================================================
    # Properties
    # =========================================================================

    @property
    def session_id(self) -> str:
        return self.context.session_id

    @property
    def status(self) -> SessionStatus:
        return self.context.status

    @property
    def budget(self) -> FactBudget:
        request = self.context.request
        return FactBudget(
            max_facts=request.max_facts or self.settings.CANON_MAX_FACTS,
            max_chars=request.max_fact_chars or self.settings.CANON_MAX_FACT_CHARS,
        )

    def current_stage(self) -> StageDefinition | None:
        """First stage not yet approved or skipped."""
        for stage in self.stages:
            if self.context.status_of(stage.id) not in _DONE:
                return stage
        return None

    def _awaiting_review(self) -> str | None:
        for stage in self.stages:
            if self.context.status_of(stage.id) is StageStatus.AWAITING_REVIEW:
                return stage.id
        return None

    def _settle_status(self) -> None:
        if self.pending_narrowing is not None:
            self.context.status = SessionStatus.AWAITING_NARROWING
        elif self._awaiting_review():
            self.context.status = SessionStatus.AWAITING_REVIEW
        elif self.current_stage() is None:
            self.context.status = SessionStatus.COMPLETED
        else:
            self.context.status = SessionStatus.READY

    # =========================================================================
    # Canon retrieval and narrowing
    # =========================================================================

    def start(self) -> SessionStatus:
        """Retrieve canon for the request keywords."""
        with self._lock:
            keywords = self.context.request.keywords
            if normalize_keywords(keywords):
                try:
                    self.context.canon = retrieve_canon(
                        self.store,
                        keywords,
                        self.budget,
                        limit=self.settings.CANON_RETRIEVAL_LIMIT,
                    )
                except NarrowingRequired as e:
                    self.pending_narrowing = e.decision
            self._settle_status()
            logger.info(
                f"Session started for {self.context.request.deliverable}",
                extra={
                    "session_id": self.session_id,
                    "facts": self.context.canon.fact_count,
                    "status": self.status.value,
                },
            )
            return self.status

    def narrowing_summary(self) -> dict[str, Any] | None:
        if self.pending_narrowing is None:
            return None
        return self.pending_narrowing.summary()

    def fact_filter(self) -> FactFilterSession:
        """Filter session over the pending over-budget facts."""
        if self.pending_narrowing is None:
            raise ValueError("No narrowing decision is pending")
        return self.pending_narrowing.filter_session()

    def resolve_narrowing(
        self,
        mode: NarrowingMode,
        *,
        keywords: list[str] | None = None,
        fact_ids: list[str] | None = None,
        selection: FactFilterSession | None = None,
    ) -> SessionStatus:
        """
        Resolve the pending narrowing decision.

        A resolution that is still over budget leaves a fresh decision pending
        and returns awaiting_narrowing.

        Raises:
            ValueError: If nothing is pending or mode arguments are missing
        """
        with self._lock:
            decision = self.pending_narrowing
            if decision is None:
                raise ValueError("No narrowing decision is pending")

            try:
                if mode == "add_keywords":
                    resolved = decision.add_keywords(keywords or [])
                elif mode == "filter_facts":
                    if selection is None and fact_ids is None:
                        raise ValueError("filter_facts requires fact_ids or a selection")
                    chosen = selection if selection is not None else fact_ids
                    resolved = decision.filter_facts(chosen)
                elif mode == "proceed_anyway":
                    resolved = decision.proceed_anyway()
                else:
                    raise ValueError(f"Unknown narrowing mode: {mode}")
            except NarrowingRequired as e:
                self.pending_narrowing = e.decision
                self._settle_status()
                return self.status

            self._apply_canon(resolved, decision)
            self.pending_narrowing = None
            self._settle_status()
            logger.info(
                f"Narrowing resolved via {mode}: {resolved.fact_count} facts",
                extra={"session_id": self.session_id},
            )
            return self.status

    def _apply_canon(self, resolved: CanonFactSet, decision: NarrowingDecision) -> None:
        if decision.context == "retrieval_hints":
            carried = self.context.canon
            merged_keywords = [
                *carried.keywords,
                *[k for k in resolved.keywords if k not in carried.keywords],
            ]
            resolved = resolved.model_copy(
                update={
                    "keywords": merged_keywords,
                    "over_budget_override": resolved.over_budget_override
                    or carried.over_budget_override,
                }
            )
        self.context.canon = resolved

    def _apply_retrieval_hints(self, stage: StageDefinition) -> None:
        output = self.context.stage_results.get(stage.id)
        hints = getattr(output, "retrieval_hints", None)
        if hints is None or not hints.terms:
            return
        try:
            self.context.canon = retrieve_hinted_facts(
                self.store,
                self.context.canon,
                hints.terms,
                self.budget,
                requested_by=stage.id,
                limit=self.settings.CANON_RETRIEVAL_LIMIT,
            )
        except NarrowingRequired as e:
            self.pending_narrowing = e.decision
            logger.info(
                f"Retrieval hints from {stage.id} exceed the fact budget",
                extra={"session_id": self.session_id},
            )

    # =========================================================================
    # Stage execution
    # =========================================================================

    def run_next_stage(self) -> StageStatus | None:
        """
        Run the next pending stage.

        Returns:
            The stage's status, or None when every stage is done

        Raises:
            NarrowingRequired: If a narrowing decision is pending
            ReviewPending: If a completed stage still awaits approval
            GenerationCancelled: If cancel() was called
            GenerationCallError, StageParseError: From the stage call; earlier
                results and completed chunks are kept
        """
        with self._lock:
            if self.pending_narrowing is not None:
                raise NarrowingRequired(self.pending_narrowing)
            waiting = self._awaiting_review()
            if waiting:
                raise ReviewPending(
                    "Stage output awaits reconciliation approval", stage_id=waiting
                )

            stage = self.current_stage()
            if stage is None:
                self._settle_status()
                return None

            self.context.status = SessionStatus.RUNNING
            self.context.last_error = None
            try:
                status = run_stage(
                    self.context,
                    stage,
                    settings=self.settings,
                    cancel_event=self._cancel,
                    on_progress=self.on_progress,
                )
                if status is not StageStatus.SKIPPED:
                    self._apply_retrieval_hints(stage)
            except GenerationCancelled as e:
                self.context.stage_status[stage.id] = StageStatus.PENDING
                self.context.status = SessionStatus.CANCELLED
                self.context.last_error = e.to_dict()
                logger.info(f"Session cancelled: {e}", extra={"session_id": self.session_id})
                raise
            except PipelineError as e:
                self.context.stage_status[stage.id] = StageStatus.FAILED
                self.context.status = SessionStatus.FAILED
                self.context.last_error = e.to_dict()
                logger.error(f"Stage failed: {e}", extra={"session_id": self.session_id})
                raise
            except Exception as e:
                self.context.stage_status[stage.id] = StageStatus.FAILED
                self.context.status = SessionStatus.FAILED
                self.context.last_error = {
                    "error": type(e).__name__,
                    "reason": str(e),
                    "stage_id": stage.id,
                }
                logger.error(
                    f"Unexpected error in {stage.id}: {e}",
                    extra={"session_id": self.session_id},
                    exc_info=True,
                )
                raise

            self._settle_status()
            return status

    def run_until_blocked(self) -> SessionStatus:
        """Run stages until review, narrowing or completion is reached."""
        while True:
            if self.pending_narrowing is not None or self._awaiting_review():
                self._settle_status()
                return self.status
            if self.run_next_stage() is None:
                return self.status

    def cancel(self) -> None:
        """Request cancellation; honored before the next stage or chunk."""
        self._cancel.set()

    def resume(self) -> SessionStatus:
        """Clear a cancellation so the next advance continues where it stopped."""
        with self._lock:
            self._cancel.clear()
            self._settle_status()
            return self.status

    # =========================================================================
    # Reconciliation
    # =========================================================================

    def reconciliation(self, stage_id: str) -> ReconciliationSet:
        try:
            return self.context.open_reconciliation[stage_id]
        except KeyError:
            raise KeyError(f"No open reconciliation for stage {stage_id}") from None

    def select_proposal(
        self, stage_id: str, index: int, option: str, custom_text: str | None = None
    ) -> None:
        select_proposal(self.reconciliation(stage_id), index, option, custom_text)

    def resolve_conflict(self, stage_id: str, index: int, resolution: str) -> None:
        resolve_conflict(self.reconciliation(stage_id), index, resolution)

    def resolve_issue(self, stage_id: str, index: int, resolution: str) -> None:
        resolve_issue(self.reconciliation(stage_id), index, resolution)

    def approve_stage(self, stage_id: str) -> ApprovalBundle:
        """
        Approve a stage's reconciliation set and carry its answers forward.

        Raises:
            KeyError: If the stage has no open reconciliation
            ReconciliationBlocked: If blocking items remain unresolved
        """
        with self._lock:
            bundle = approve(self.reconciliation(stage_id))
            ctx = self.context
            ctx.approvals[stage_id] = bundle
            del ctx.open_reconciliation[stage_id]
            ctx.stage_status[stage_id] = StageStatus.APPROVED
            ctx.prior_decisions.update(bundle.decisions())
            ctx.outstanding_work.extend(bundle.outstanding_work)
            self._settle_status()
            return bundle

    # =========================================================================
    # Output
    # =========================================================================

    def finalize(self) -> FinalArtifact:
        """
        Build the final artifact.

        Raises:
            ReviewPending: If any stage is not yet approved or skipped
        """
        with self._lock:
            stage = self.current_stage()
            if stage is not None:
                raise ReviewPending(
                    f"Stage is {self.context.status_of(stage.id).value}", stage_id=stage.id
                )
            return build_final_artifact(self.context, self.stages)

    def snapshot(self) -> dict[str, Any]:
        """JSON-serializable session state."""
        data: dict[str, Any] = {"context": self.context.model_dump(mode="json")}
        decision = self.pending_narrowing
        if decision is not None:
            data["pending_narrowing"] = {
                "keywords": decision.keywords,
                "facts": [f.model_dump(mode="json") for f in decision.facts],
                "existing": [f.model_dump(mode="json") for f in decision.existing],
                "context": decision.context,
                "requested_by": decision.requested_by,
            }
        return data

    @classmethod
    def restore(
        cls,
        snapshot: dict[str, Any],
        store: CanonStore,
        *,
        settings: Settings | None = None,
        on_progress: ProgressCallback | None = None,
    ) -> "GenerationSession":
        """Rebuild a session; it resumes at the first incomplete stage or chunk."""
        context = PipelineContext.model_validate(snapshot["context"])
        # Interrupted stages become runnable again; chunk progress is kept
        for stage_id, status in list(context.stage_status.items()):
            if status is StageStatus.RUNNING:
                context.stage_status[stage_id] = StageStatus.PENDING
        session = cls(
            context.request,
            store,
            settings=settings,
            on_progress=on_progress,
            context=context,
        )
        pending = snapshot.get("pending_narrowing")
        if pending:
            session.pending_narrowing = NarrowingDecision(
                store=store,
                keywords=pending.get("keywords", []),
                facts=[CanonFact.model_validate(f) for f in pending.get("facts", [])],
                budget=session.budget,
                limit=session.settings.CANON_RETRIEVAL_LIMIT,
                context=pending.get("context", "initial"),
                requested_by=pending.get("requested_by"),
                existing=[CanonFact.model_validate(f) for f in pending.get("existing", [])],
            )
        session._settle_status()
        return session
