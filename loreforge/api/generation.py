"""API endpoints for staged generation sessions.

Endpoints are plain ``def`` so the blocking stage calls run in the
threadpool. Each session serializes its own advances.
"""

import threading

from fastapi import APIRouter, Depends, HTTPException

from loreforge.api.canon import get_canon_store
from loreforge.core.canon_store import CanonStore
from loreforge.core.errors import (
    GenerationCallError,
    GenerationCancelled,
    NarrowingRequired,
    PipelineError,
    ReconciliationBlocked,
    ReviewPending,
    StageParseError,
)
from loreforge.core.logging import get_logger
from loreforge.core.reconciliation import list_unresolved
from loreforge.core.schemas_pipeline import RequestConfig
from loreforge.core.schemas_sessions import (
    NarrowingResolveRequest,
    ProposalSelectRequest,
    ResolutionRequest,
    SessionResponse,
)
from loreforge.graphs.generation_session import GenerationSession

logger = get_logger(__name__)

router = APIRouter()


class SessionRegistry:
    """In-process registry of live sessions."""

    def __init__(self):
        self._sessions: dict[str, GenerationSession] = {}
        self._lock = threading.Lock()

    def add(self, session: GenerationSession) -> None:
        with self._lock:
            self._sessions[session.session_id] = session

    def get(self, session_id: str) -> GenerationSession | None:
        with self._lock:
            return self._sessions.get(session_id)

    def remove(self, session_id: str) -> bool:
        with self._lock:
            return self._sessions.pop(session_id, None) is not None


_registry = SessionRegistry()


def get_session_registry() -> SessionRegistry:
    return _registry


def _status_code(error: PipelineError) -> int:
    blocked = (NarrowingRequired, ReviewPending, ReconciliationBlocked, GenerationCancelled)
    if isinstance(error, blocked):
        return 409
    if isinstance(error, GenerationCallError):
        return 502
    if isinstance(error, StageParseError):
        return 422
    return 500


def _pipeline_http_error(error: PipelineError) -> HTTPException:
    return HTTPException(status_code=_status_code(error), detail=error.to_dict())


def _load(registry: SessionRegistry, session_id: str) -> GenerationSession:
    session = registry.get(session_id)
    if session is None:
        raise HTTPException(status_code=404, detail="Session not found")
    return session


def _view(session: GenerationSession) -> SessionResponse:
    ctx = session.context
    stage = session.current_stage()
    return SessionResponse(
        session_id=session.session_id,
        deliverable=ctx.request.deliverable,
        status=ctx.status,
        current_stage=stage.id if stage else None,
        stage_status=dict(ctx.stage_status),
        chunk_progress={k: v.model_dump() for k, v in ctx.chunk_progress.items()},
        fact_count=ctx.canon.fact_count,
        narrowing=session.narrowing_summary(),
        open_reviews=list(ctx.open_reconciliation),
        last_error=ctx.last_error,
    )


@router.post("/sessions", response_model=SessionResponse)
def create_session(
    request: RequestConfig,
    store: CanonStore = Depends(get_canon_store),
    registry: SessionRegistry = Depends(get_session_registry),
) -> SessionResponse:
    """
    Create a session and retrieve canon for its keywords.

    A retrieval over the fact budget leaves the session awaiting_narrowing.
    """
    session = GenerationSession(request, store)
    session.start()
    registry.add(session)
    logger.info(
        f"Created {request.deliverable} session",
        extra={"session_id": session.session_id},
    )
    return _view(session)


@router.get("/sessions/{session_id}", response_model=SessionResponse)
def get_session(
    session_id: str, registry: SessionRegistry = Depends(get_session_registry)
) -> SessionResponse:
    return _view(_load(registry, session_id))


@router.delete("/sessions/{session_id}")
def delete_session(
    session_id: str, registry: SessionRegistry = Depends(get_session_registry)
) -> dict:
    session = _load(registry, session_id)
    session.cancel()
    registry.remove(session_id)
    return {"deleted": True}


@router.post("/sessions/{session_id}/advance", response_model=SessionResponse)
def advance_session(
    session_id: str,
    until_blocked: bool = False,
    registry: SessionRegistry = Depends(get_session_registry),
) -> SessionResponse:
    """
    Run the next stage, or every stage up to the next review/narrowing point.

    Raises:
        HTTPException 409: Narrowing or review pending, or cancelled
        HTTPException 502: Generation call failed (retryable)
        HTTPException 422: Stage output unparseable after retries
    """
    session = _load(registry, session_id)
    try:
        if until_blocked:
            session.run_until_blocked()
        else:
            session.run_next_stage()
    except PipelineError as e:
        raise _pipeline_http_error(e) from e
    return _view(session)


@router.post("/sessions/{session_id}/cancel", response_model=SessionResponse)
def cancel_session(
    session_id: str, registry: SessionRegistry = Depends(get_session_registry)
) -> SessionResponse:
    session = _load(registry, session_id)
    session.cancel()
    return _view(session)


@router.post("/sessions/{session_id}/resume", response_model=SessionResponse)
def resume_session(
    session_id: str, registry: SessionRegistry = Depends(get_session_registry)
) -> SessionResponse:
    session = _load(registry, session_id)
    session.resume()
    return _view(session)


@router.get("/sessions/{session_id}/narrowing")
def get_narrowing(
    session_id: str, registry: SessionRegistry = Depends(get_session_registry)
) -> dict:
    """Pending narrowing decision with the candidate facts grouped by entity."""
    session = _load(registry, session_id)
    summary = session.narrowing_summary()
    if summary is None:
        raise HTTPException(status_code=404, detail="No narrowing decision is pending")

    groups = session.fact_filter().groups()
    return {
        **summary,
        "groups": [
            {
                "entity_key": group.entity_key,
                "entity_name": group.entity_name,
                "facts": [fact.model_dump() for fact in group.facts],
            }
            for group in groups
        ],
    }


@router.post("/sessions/{session_id}/narrowing", response_model=SessionResponse)
def resolve_narrowing(
    session_id: str,
    body: NarrowingResolveRequest,
    registry: SessionRegistry = Depends(get_session_registry),
) -> SessionResponse:
    session = _load(registry, session_id)
    try:
        session.resolve_narrowing(body.mode, keywords=body.keywords, fact_ids=body.fact_ids)
    except (ValueError, RuntimeError) as e:
        raise HTTPException(status_code=400, detail=str(e)) from e
    return _view(session)


@router.get("/sessions/{session_id}/stages/{stage_id}/review")
def get_review(
    session_id: str,
    stage_id: str,
    registry: SessionRegistry = Depends(get_session_registry),
) -> dict:
    """Reconciliation items for a stage plus what still blocks approval."""
    session = _load(registry, session_id)
    try:
        rset = session.reconciliation(stage_id)
    except KeyError as e:
        raise HTTPException(status_code=404, detail=str(e)) from e

    output = session.context.stage_results.get(stage_id)
    return {
        "reconciliation": rset.model_dump(mode="json"),
        "unresolved": [item.model_dump() for item in list_unresolved(rset)],
        "output": output.model_dump(mode="json") if output is not None else None,
    }


def _review_action(action, *args) -> None:
    try:
        action(*args)
    except KeyError as e:
        raise HTTPException(status_code=404, detail=str(e)) from e
    except (IndexError, ValueError) as e:
        raise HTTPException(status_code=400, detail=str(e)) from e


@router.post("/sessions/{session_id}/stages/{stage_id}/proposals/{index}")
def select_proposal(
    session_id: str,
    stage_id: str,
    index: int,
    body: ProposalSelectRequest,
    registry: SessionRegistry = Depends(get_session_registry),
) -> dict:
    session = _load(registry, session_id)
    _review_action(session.select_proposal, stage_id, index, body.option, body.custom_text)
    return get_review(session_id, stage_id, registry)


@router.post("/sessions/{session_id}/stages/{stage_id}/conflicts/{index}")
def resolve_conflict(
    session_id: str,
    stage_id: str,
    index: int,
    body: ResolutionRequest,
    registry: SessionRegistry = Depends(get_session_registry),
) -> dict:
    session = _load(registry, session_id)
    _review_action(session.resolve_conflict, stage_id, index, body.resolution)
    return get_review(session_id, stage_id, registry)


@router.post("/sessions/{session_id}/stages/{stage_id}/issues/{index}")
def resolve_issue(
    session_id: str,
    stage_id: str,
    index: int,
    body: ResolutionRequest,
    registry: SessionRegistry = Depends(get_session_registry),
) -> dict:
    session = _load(registry, session_id)
    _review_action(session.resolve_issue, stage_id, index, body.resolution)
    return get_review(session_id, stage_id, registry)


@router.post("/sessions/{session_id}/stages/{stage_id}/approve", response_model=SessionResponse)
def approve_stage(
    session_id: str,
    stage_id: str,
    registry: SessionRegistry = Depends(get_session_registry),
) -> SessionResponse:
    """
    Approve a stage's reconciliation set.

    Raises:
        HTTPException 404: No open reconciliation for the stage
        HTTPException 409: Blocking items remain unresolved
    """
    session = _load(registry, session_id)
    try:
        session.approve_stage(stage_id)
    except KeyError as e:
        raise HTTPException(status_code=404, detail=str(e)) from e
    except ReconciliationBlocked as e:
        raise _pipeline_http_error(e) from e
    return _view(session)


@router.get("/sessions/{session_id}/artifact")
def get_artifact(
    session_id: str, registry: SessionRegistry = Depends(get_session_registry)
) -> dict:
    session = _load(registry, session_id)
    try:
        artifact = session.finalize()
    except ReviewPending as e:
        raise _pipeline_http_error(e) from e
    return artifact.model_dump(mode="json")


@router.get("/sessions/{session_id}/snapshot")
def get_snapshot(
    session_id: str, registry: SessionRegistry = Depends(get_session_registry)
) -> dict:
    return _load(registry, session_id).snapshot()


@router.post("/sessions/restore", response_model=SessionResponse)
def restore_session(
    snapshot: dict,
    store: CanonStore = Depends(get_canon_store),
    registry: SessionRegistry = Depends(get_session_registry),
) -> SessionResponse:
    """Rebuild a session from a snapshot; it resumes at the first incomplete stage."""
    try:
        session = GenerationSession.restore(snapshot, store)
    except (KeyError, ValueError) as e:
        raise HTTPException(status_code=400, detail=f"Invalid snapshot: {e}") from e
    registry.add(session)
    return _view(session)
