"""LangGraph flow for running one stage: prepare, plan chunks, generate, reconcile."""

import threading
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from langgraph.graph import END, StateGraph

from loreforge.chains.generate_stage import generate_stage_output
from loreforge.chains.stage_definition import StageDefinition
from loreforge.core.chunk_planner import append_chunk_output
from loreforge.core.config import Settings, get_settings
from loreforge.core.errors import GenerationCancelled
from loreforge.core.logging import get_logger
from loreforge.core.reconciliation import approve, extract_reconciliation_items
from loreforge.core.schemas_outputs import RetrievalHints, StageOutputBase
from loreforge.core.schemas_pipeline import (
    ChunkPlan,
    ChunkProgress,
    ChunkState,
    PipelineContext,
    StageStatus,
)

logger = get_logger(__name__)

# Bookkeeping lists folded from every chunk into the stage result
CHUNK_BOOKKEEPING = ("sources_used", "assumptions", "proposals", "conflicts", "issues")

ProgressCallback = Callable[[str, ChunkProgress], None]


@dataclass
class StageRunState:
    """State for the stage graph."""

    # Input fields
    context: PipelineContext
    stage: StageDefinition
    settings: Settings
    cancel_event: threading.Event | None = None
    on_progress: ProgressCallback | None = None

    # Processing state
    step_count: int = 0
    skipped: bool = False
    chunk_plan: ChunkPlan | None = None

    # Output
    status: StageStatus = StageStatus.PENDING


def _check_max_steps(state: StageRunState) -> StageRunState:
    """Check and increment step count, raise if exceeded."""
    state.step_count += 1
    limit = state.settings.MAX_GRAPH_STEPS
    if state.step_count > limit:
        raise RuntimeError(f"Graph exceeded max steps ({limit})")
    return state


def _check_cancelled(state: StageRunState, chunk: ChunkState | None = None) -> None:
    if state.cancel_event is not None and state.cancel_event.is_set():
        raise GenerationCancelled(
            "Generation cancelled",
            stage_id=state.stage.id,
            chunk_index=chunk.index if chunk else None,
            chunk_total=chunk.total if chunk else None,
        )


def prepare(state: StageRunState) -> dict[str, Any]:
    """Check cancellation and stage routing."""
    state = _check_max_steps(state)
    _check_cancelled(state)

    ctx = state.context
    stage = state.stage
    if not stage.runs_for(ctx):
        logger.info(
            f"Skipping stage {stage.id}: routing predicate not met",
            extra={"session_id": ctx.session_id},
        )
        ctx.stage_status[stage.id] = StageStatus.SKIPPED
        return {"skipped": True, "status": StageStatus.SKIPPED, "step_count": state.step_count}

    ctx.stage_status[stage.id] = StageStatus.RUNNING
    return {"skipped": False, "status": StageStatus.RUNNING, "step_count": state.step_count}


def plan_chunks(state: StageRunState) -> dict[str, Any]:
    """Plan iterations for chunked stages and set up resumable progress."""
    state = _check_max_steps(state)

    ctx = state.context
    stage = state.stage
    if not stage.chunked:
        return {"chunk_plan": ChunkPlan(), "step_count": state.step_count}

    plan = stage.chunk_plan(ctx)
    total = plan.total_chunks if plan.should_chunk else 1

    progress = ctx.chunk_progress.get(stage.id)
    if progress is None or progress.total != total or progress.done:
        # Fresh run: drop any stale partial output
        ctx.chunk_progress[stage.id] = ChunkProgress(completed=0, total=total)
        ctx.stage_results.pop(stage.id, None)
    else:
        logger.info(
            f"Resuming {stage.id} at chunk {progress.next_index}/{total}",
            extra={"session_id": ctx.session_id},
        )

    logger.info(
        f"Planned {total} iteration(s) for {stage.id}",
        extra={"session_id": ctx.session_id, "should_chunk": plan.should_chunk},
    )
    return {"chunk_plan": plan, "step_count": state.step_count}


def _fold_chunk(result: StageOutputBase, chunk_output: StageOutputBase, key: str) -> int:
    count = append_chunk_output(result, key, chunk_output.content_fields())
    for name in CHUNK_BOOKKEEPING:
        getattr(result, name).extend(getattr(chunk_output, name))
    hints = chunk_output.retrieval_hints
    if hints is not None:
        merged = result.retrieval_hints or RetrievalHints()
        merged.entities.extend(hints.entities)
        merged.keywords.extend(hints.keywords)
        merged.regions.extend(hints.regions)
        merged.eras.extend(hints.eras)
        result.retrieval_hints = merged
    if chunk_output.canon_update:
        updates = result.canon_update if isinstance(result.canon_update, list) else []
        updates.append(chunk_output.canon_update)
        result.canon_update = updates
    return count


def generate(state: StageRunState) -> dict[str, Any]:
    """Generate the stage, one sequential call per chunk for chunked stages."""
    state = _check_max_steps(state)

    ctx = state.context
    stage = state.stage

    if not stage.chunked:
        output = generate_stage_output(stage, ctx, settings=state.settings)
        ctx.stage_results[stage.id] = output
        return {"step_count": state.step_count}

    progress = ctx.chunk_progress[stage.id]
    window = state.settings.CHUNK_RECENT_WINDOW
    try:
        for index in range(progress.next_index, progress.total + 1):
            chunk = ChunkState(
                index=index, total=progress.total, label=stage.chunk_label, window=window
            )
            _check_cancelled(state, chunk)
            ctx.chunk_state = chunk

            chunk_output = generate_stage_output(stage, ctx, settings=state.settings)

            result = ctx.stage_results.get(stage.id) or stage.output_model()
            _fold_chunk(result, chunk_output, stage.accumulate_key)
            ctx.stage_results[stage.id] = result
            progress.completed = index

            logger.info(
                f"Completed {stage.chunk_label.lower()} {index}/{progress.total} for {stage.id}",
                extra={"session_id": ctx.session_id},
            )
            if state.on_progress is not None:
                state.on_progress(stage.id, progress.model_copy())
    finally:
        ctx.chunk_state = None

    return {"step_count": state.step_count}


def reconcile(state: StageRunState) -> dict[str, Any]:
    """Extract reconciliation items; auto-approve when there is nothing to review."""
    state = _check_max_steps(state)

    ctx = state.context
    stage = state.stage
    rset = extract_reconciliation_items(ctx.stage_results.get(stage.id), stage.id)

    if rset.is_empty:
        ctx.approvals[stage.id] = approve(rset)
        ctx.stage_status[stage.id] = StageStatus.APPROVED
        status = StageStatus.APPROVED
    else:
        ctx.open_reconciliation[stage.id] = rset
        ctx.stage_status[stage.id] = StageStatus.AWAITING_REVIEW
        status = StageStatus.AWAITING_REVIEW

    logger.info(
        f"Stage {stage.id} {status.value}: {len(rset.proposals)} proposals, "
        f"{len(rset.conflicts)} conflicts, {len(rset.issues)} issues",
        extra={"session_id": ctx.session_id},
    )
    return {"status": status, "step_count": state.step_count}


def _route_after_prepare(state: StageRunState) -> str:
    return "end" if state.skipped else "plan_chunks"


def _build_graph() -> StateGraph:
    """Build the stage graph."""
    graph = StateGraph(StageRunState)

    graph.add_node("prepare", prepare)
    graph.add_node("plan_chunks", plan_chunks)
    graph.add_node("generate", generate)
    graph.add_node("reconcile", reconcile)

    graph.set_entry_point("prepare")
    graph.add_conditional_edges(
        "prepare", _route_after_prepare, {"plan_chunks": "plan_chunks", "end": END}
    )
    graph.add_edge("plan_chunks", "generate")
    graph.add_edge("generate", "reconcile")
    graph.add_edge("reconcile", END)

    return graph


# Compile the graph once at module load
_compiled_graph = _build_graph().compile()


def run_stage(
    context: PipelineContext,
    stage: StageDefinition,
    *,
    settings: Settings | None = None,
    cancel_event: threading.Event | None = None,
    on_progress: ProgressCallback | None = None,
) -> StageStatus:
    """
    Run one stage against the session context.

    The context is mutated in place; completed chunks stay in
    context.stage_results and context.chunk_progress even if a later chunk
    fails, so re-running resumes from the first incomplete chunk.

    Returns:
        Final stage status (approved, awaiting_review or skipped)

    Raises:
        GenerationCancelled: If cancelled before the stage or between chunks
        GenerationCallError: If a provider call fails
        StageParseError: If output stays invalid after the retry cap
        RuntimeError: If graph exceeds max steps
    """
    initial_state = StageRunState(
        context=context,
        stage=stage,
        settings=settings or get_settings(),
        cancel_event=cancel_event,
        on_progress=on_progress,
    )

    final_state = _compiled_graph.invoke(initial_state)
    return final_state["status"]
