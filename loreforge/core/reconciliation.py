"""Delta reconciliation: extract, resolve and approve AI-proposed changes.

A stage output may carry three reconciliation collections:
- proposals: open questions with options, answered by a human
- conflicts: contradictions with existing canon, resolved per item
- issues: validation problems, of which only critical ones block

Approval only succeeds once every proposal has an answer, every conflict has
a resolution and no critical issue is left unresolved.
"""

from collections.abc import Mapping
from typing import Any

from pydantic import BaseModel, ValidationError

from loreforge.core.errors import ReconciliationBlocked
from loreforge.core.logging import get_logger
from loreforge.core.schemas_reconcile import (
    CUSTOM_OPTION,
    ApprovalBundle,
    Conflict,
    ConflictResolution,
    Issue,
    IssueResolution,
    IssueSeverity,
    OutstandingWork,
    Proposal,
    ProposalAnswer,
    ReconciliationSet,
    ResolutionState,
    UnresolvedItem,
)

logger = get_logger(__name__)

# Issue lists are accepted under any of these keys
ISSUE_KEYS = ("issues", "physics_issues", "validation_issues")

_SEVERITY_ALIASES = {
    "critical": IssueSeverity.CRITICAL,
    "blocker": IssueSeverity.CRITICAL,
    "high": IssueSeverity.MODERATE,
    "major": IssueSeverity.MODERATE,
    "moderate": IssueSeverity.MODERATE,
    "medium": IssueSeverity.MODERATE,
    "minor": IssueSeverity.MINOR,
    "low": IssueSeverity.MINOR,
}


def normalize_severity(value: Any) -> IssueSeverity:
    """Map free-form severity labels onto critical/moderate/minor (default minor)."""
    if isinstance(value, IssueSeverity):
        return value
    if not isinstance(value, str):
        return IssueSeverity.MINOR
    return _SEVERITY_ALIASES.get(value.strip().lower(), IssueSeverity.MINOR)


def _as_mapping(output: Any) -> Mapping[str, Any]:
    if isinstance(output, BaseModel):
        return output.model_dump(by_alias=False)
    if isinstance(output, Mapping):
        return output
    return {}


def _coerce_proposal(raw: Any) -> Proposal | None:
    if isinstance(raw, str):
        raw = {"question": raw}
    if not isinstance(raw, Mapping):
        return None
    question = raw.get("question")
    if not isinstance(question, str) or not question.strip():
        return None
    options = raw.get("options") or []
    if not isinstance(options, list):
        return None
    # Proposals always start unresolved, whatever the model pre-filled
    return Proposal(
        question=question.strip(),
        options=[str(o) for o in options if o is not None],
        rule_impact=raw.get("rule_impact") or raw.get("ruleImpact"),
    )


def _coerce_conflict(raw: Any) -> Conflict | None:
    if not isinstance(raw, Mapping):
        return None
    data = {k: v for k, v in raw.items() if k in Conflict.model_fields and k != "resolution"}
    if not any(data.get(k) for k in ("existing_claim", "new_claim", "summary")):
        return None
    return Conflict.model_validate(data)


def _coerce_issue(raw: Any) -> Issue | None:
    if isinstance(raw, str):
        raw = {"description": raw}
    if not isinstance(raw, Mapping):
        return None
    description = raw.get("description") or raw.get("issue")
    if not isinstance(description, str) or not description.strip():
        return None
    return Issue(
        description=description.strip(),
        severity=normalize_severity(raw.get("severity")),
        issue_type=raw.get("issue_type") or raw.get("type"),
        location=raw.get("location"),
        suggestion=raw.get("suggestion"),
    )


def extract_reconciliation_items(output: Any, stage_id: str | None = None) -> ReconciliationSet:
    """
    Build the reconciliation set from one stage's raw output.

    Malformed entries are skipped and logged; they never fail the stage.

    Args:
        output: Stage output (pydantic model or dict)
        stage_id: Stage the output belongs to

    Returns:
        ReconciliationSet with all items unresolved
    """
    data = _as_mapping(output)
    rset = ReconciliationSet(stage_id=stage_id)

    def collect(key: str, coerce, target: list) -> None:
        raw_items = data.get(key)
        if raw_items is None:
            return
        if not isinstance(raw_items, list):
            logger.warning(f"Skipping non-list {key} on stage {stage_id}")
            return
        for i, raw in enumerate(raw_items):
            try:
                item = coerce(raw)
            except ValidationError as e:
                logger.warning(f"Skipping malformed {key}[{i}] on stage {stage_id}: {e}")
                continue
            if item is None:
                logger.warning(f"Skipping malformed {key}[{i}] on stage {stage_id}")
                continue
            target.append(item)

    collect("proposals", _coerce_proposal, rset.proposals)
    collect("conflicts", _coerce_conflict, rset.conflicts)
    for key in ISSUE_KEYS:
        collect(key, _coerce_issue, rset.issues)

    return rset


def _item(items: list, index: int, kind: str):
    if index < 0 or index >= len(items):
        raise IndexError(f"No {kind} at index {index}")
    return items[index]


def select_proposal(
    rset: ReconciliationSet,
    index: int,
    option: str,
    custom_text: str | None = None,
) -> Proposal:
    """
    Answer a proposal with one of its options or with custom text.

    Selecting "custom" with blank text is accepted but leaves the proposal
    unresolved.

    Raises:
        IndexError: If no proposal exists at index
        ValueError: If option is neither a listed option nor "custom"
    """
    proposal = _item(rset.proposals, index, "proposal")
    if option != CUSTOM_OPTION and option not in proposal.options:
        raise ValueError(f"Option {option!r} is not one of {proposal.options}")
    proposal.selected_option = option
    proposal.custom_text = custom_text if option == CUSTOM_OPTION else None
    return proposal


def resolve_conflict(
    rset: ReconciliationSet, index: int, resolution: ConflictResolution | str
) -> Conflict:
    conflict = _item(rset.conflicts, index, "conflict")
    conflict.resolution = ConflictResolution(resolution)
    return conflict


def resolve_issue(rset: ReconciliationSet, index: int, resolution: IssueResolution | str) -> Issue:
    issue = _item(rset.issues, index, "issue")
    issue.resolution = IssueResolution(resolution)
    return issue


def _conflict_label(conflict: Conflict) -> str:
    label = conflict.summary or conflict.new_claim or conflict.existing_claim or ""
    if conflict.entity_name:
        return f"{conflict.entity_name}: {label}"
    return label


def list_unresolved(rset: ReconciliationSet) -> list[UnresolvedItem]:
    """List exactly the items that block approval, in collection order."""
    unresolved: list[UnresolvedItem] = []
    for i, p in enumerate(rset.proposals):
        if p.resolution_state is ResolutionState.UNRESOLVED:
            unresolved.append(UnresolvedItem(kind="proposal", index=i, label=p.question))
    for i, c in enumerate(rset.conflicts):
        if c.resolution_state is ResolutionState.UNRESOLVED:
            unresolved.append(UnresolvedItem(kind="conflict", index=i, label=_conflict_label(c)))
    for i, issue in enumerate(rset.issues):
        if issue.blocking:
            unresolved.append(UnresolvedItem(kind="issue", index=i, label=issue.description))
    return unresolved


def approve(rset: ReconciliationSet) -> ApprovalBundle:
    """
    Approve a reconciliation set.

    Returns:
        ApprovalBundle with answers, resolutions and outstanding work

    Raises:
        ReconciliationBlocked: If any blocking item is unresolved
    """
    unresolved = list_unresolved(rset)
    if unresolved:
        raise ReconciliationBlocked(unresolved, stage_id=rset.stage_id)

    answers = [
        ProposalAnswer(
            question=p.question,
            answer=p.answer or "",
            custom=p.selected_option == CUSTOM_OPTION,
        )
        for p in rset.proposals
    ]
    outstanding = [
        OutstandingWork(
            stage_id=rset.stage_id,
            description=i.description,
            severity=i.severity,
            issue_type=i.issue_type,
            location=i.location,
            suggestion=i.suggestion,
        )
        for i in rset.issues
        if i.outstanding
    ]

    logger.info(
        f"Approved stage {rset.stage_id}: {len(answers)} answers, "
        f"{len(rset.conflicts)} conflicts, {len(outstanding)} outstanding"
    )

    return ApprovalBundle(
        stage_id=rset.stage_id,
        proposal_answers=answers,
        conflict_resolutions=[c.model_copy() for c in rset.conflicts],
        issue_resolutions=[i.model_copy() for i in rset.issues],
        outstanding_work=outstanding,
    )
