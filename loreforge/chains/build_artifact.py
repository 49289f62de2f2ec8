"""Merge approved stage outputs into the final artifact."""

from typing import Any

from loreforge.chains.stage_definition import StageDefinition
from loreforge.core.logging import get_logger
from loreforge.core.schemas_pipeline import FinalArtifact, PipelineContext, StageStatus
from loreforge.core.schemas_reconcile import ConflictResolution

logger = get_logger(__name__)

# Conflict resolutions whose new claim is written back to canon
ACCEPTED_RESOLUTIONS = (ConflictResolution.USE_NEW, ConflictResolution.MERGE)


def _append_unique(target: list[Any], items: list[Any]) -> None:
    for item in items:
        if item not in target:
            target.append(item)


def build_final_artifact(
    ctx: PipelineContext, stages: tuple[StageDefinition, ...]
) -> FinalArtifact:
    """
    Fold every approved stage into one artifact, in registry order.

    Content fields from earlier stages win on key collisions. Bookkeeping is
    collected separately: approved answers become decisions, keep_old
    conflicts become canon overrides and skipped conflicts never reach the
    canon update.

    Args:
        ctx: Session context with all stages approved or skipped
        stages: The deliverable's registry

    Returns:
        FinalArtifact
    """
    artifact = FinalArtifact(
        session_id=ctx.session_id,
        deliverable=ctx.request.deliverable,
        decisions=dict(ctx.prior_decisions),
        outstanding_work=list(ctx.outstanding_work),
        over_budget_override=ctx.canon.over_budget_override,
    )

    for stage in stages:
        if ctx.status_of(stage.id) is StageStatus.SKIPPED:
            artifact.skipped_stages.append(stage.id)
            continue
        output = ctx.stage_results.get(stage.id)
        if output is None:
            continue

        for key, value in output.content_fields().items():
            if value in ([], {}, ""):
                continue
            artifact.content.setdefault(key, value)

        _append_unique(artifact.sources_used, output.sources_used)
        _append_unique(artifact.assumptions, output.assumptions)

        bundle = ctx.approvals.get(stage.id)
        conflicts = bundle.conflict_resolutions if bundle else []
        accepted_claims = []
        for conflict in conflicts:
            record = {"stage_id": stage.id, **conflict.model_dump(mode="json")}
            artifact.conflict_resolutions.append(record)
            if conflict.resolution is ConflictResolution.KEEP_OLD:
                artifact.canon_overrides.append(record)
            elif conflict.resolution in ACCEPTED_RESOLUTIONS and conflict.new_claim:
                accepted_claims.append(conflict.new_claim)

        if output.canon_update or accepted_claims:
            artifact.canon_updates.append(
                {
                    "stage_id": stage.id,
                    "summary": output.canon_update,
                    "accepted_claims": accepted_claims,
                }
            )

    logger.info(
        f"Built {ctx.request.deliverable} artifact with {len(artifact.content)} fields",
        extra={
            "session_id": ctx.session_id,
            "outstanding": len(artifact.outstanding_work),
            "overrides": len(artifact.canon_overrides),
        },
    )
    return artifact
