"""Tests for delta reconciliation: extraction, resolution and approval."""

import pytest

from loreforge.core.errors import ReconciliationBlocked
from loreforge.core.reconciliation import (
    approve,
    extract_reconciliation_items,
    list_unresolved,
    normalize_severity,
    resolve_conflict,
    resolve_issue,
    select_proposal,
)
from loreforge.core.schemas_outputs import NpcBasicInfo
from loreforge.core.schemas_reconcile import (
    ConflictResolution,
    IssueSeverity,
    ResolutionState,
)

STAGE_OUTPUT = {
    "name": "Thornwick",
    "proposals": [
        {
            "question": "Is Thornwick a member of the Harpers?",
            "options": ["Yes", "No"],
            "rule_impact": "Affects faction relationships",
        }
    ],
    "conflicts": [
        {
            "existing_claim": "Thornwick lives in Neverwinter",
            "new_claim": "Thornwick lives in Waterdeep",
            "entity_name": "Thornwick",
            "summary": "Home city differs",
        },
        {
            "existing_claim": "Thornwick is human",
            "new_claim": "Thornwick is a half-elf",
            "entity_name": "Thornwick",
            "summary": "Race differs",
        },
    ],
    "physics_issues": [
        {"description": "AC 25 is impossible at CR 1", "severity": "critical"},
        {"description": "Speed seems low", "severity": "low"},
    ],
}


class TestExtraction:
    def test_extracts_all_three_collections(self):
        rset = extract_reconciliation_items(STAGE_OUTPUT, "npc_basic_info")
        assert rset.stage_id == "npc_basic_info"
        assert len(rset.proposals) == 1
        assert len(rset.conflicts) == 2
        assert len(rset.issues) == 2
        assert rset.issues[0].severity is IssueSeverity.CRITICAL
        assert rset.issues[1].severity is IssueSeverity.MINOR

    def test_items_start_unresolved(self):
        output = {
            "proposals": [{"question": "Q?", "options": ["a"], "selected_option": "a"}],
            "conflicts": [{"summary": "x", "resolution": "keep_old"}],
        }
        rset = extract_reconciliation_items(output)
        assert rset.proposals[0].resolution_state is ResolutionState.UNRESOLVED
        assert rset.conflicts[0].resolution_state is ResolutionState.UNRESOLVED

    def test_skips_malformed_entries(self):
        output = {
            "proposals": [{"options": ["a"]}, 42, "Plain question?"],
            "conflicts": "not a list",
            "issues": [{}, {"description": "Real issue"}],
        }
        rset = extract_reconciliation_items(output)
        assert [p.question for p in rset.proposals] == ["Plain question?"]
        assert rset.conflicts == []
        assert [i.description for i in rset.issues] == ["Real issue"]

    def test_reads_stage_output_model(self):
        output = NpcBasicInfo(name="Thornwick", issues=[{"description": "Odd", "severity": "high"}])
        rset = extract_reconciliation_items(output, "npc_basic_info")
        assert rset.issues[0].severity is IssueSeverity.MODERATE

    def test_empty_output(self):
        assert extract_reconciliation_items(None).is_empty
        assert extract_reconciliation_items({"name": "x"}).is_empty


class TestNormalizeSeverity:
    @pytest.mark.parametrize(
        "raw,expected",
        [
            ("Critical", IssueSeverity.CRITICAL),
            ("major", IssueSeverity.MODERATE),
            ("medium", IssueSeverity.MODERATE),
            ("low", IssueSeverity.MINOR),
            ("whatever", IssueSeverity.MINOR),
            (None, IssueSeverity.MINOR),
        ],
    )
    def test_normalize(self, raw, expected):
        assert normalize_severity(raw) is expected


class TestApproval:
    def test_two_unresolved_conflicts_block_approval(self):
        rset = extract_reconciliation_items(
            {"conflicts": STAGE_OUTPUT["conflicts"]}, "npc_basic_info"
        )
        with pytest.raises(ReconciliationBlocked) as exc_info:
            approve(rset)

        unresolved = exc_info.value.unresolved
        assert [(u.kind, u.index) for u in unresolved] == [("conflict", 0), ("conflict", 1)]
        assert unresolved[0].label == "Thornwick: Home city differs"

    def test_approval_after_resolving_conflicts(self):
        rset = extract_reconciliation_items(
            {"conflicts": STAGE_OUTPUT["conflicts"]}, "npc_basic_info"
        )
        resolve_conflict(rset, 0, "keep_old")
        with pytest.raises(ReconciliationBlocked) as exc_info:
            approve(rset)
        assert [u.index for u in exc_info.value.unresolved] == [1]

        resolve_conflict(rset, 1, ConflictResolution.USE_NEW)
        bundle = approve(rset)
        assert [c.resolution for c in bundle.conflict_resolutions] == [
            ConflictResolution.KEEP_OLD,
            ConflictResolution.USE_NEW,
        ]

    def test_custom_proposal_with_empty_text_stays_unresolved(self):
        rset = extract_reconciliation_items({"proposals": STAGE_OUTPUT["proposals"]})
        select_proposal(rset, 0, "custom", "   ")
        assert rset.proposals[0].resolution_state is ResolutionState.UNRESOLVED
        with pytest.raises(ReconciliationBlocked):
            approve(rset)

        select_proposal(rset, 0, "custom", "Former member, now estranged")
        bundle = approve(rset)
        assert bundle.decisions() == {
            "Is Thornwick a member of the Harpers?": "Former member, now estranged"
        }
        assert bundle.proposal_answers[0].custom is True

    def test_select_unlisted_option_rejected(self):
        rset = extract_reconciliation_items({"proposals": STAGE_OUTPUT["proposals"]})
        with pytest.raises(ValueError):
            select_proposal(rset, 0, "Maybe")
        with pytest.raises(IndexError):
            select_proposal(rset, 3, "Yes")

    def test_only_critical_issues_block(self):
        rset = extract_reconciliation_items({"physics_issues": STAGE_OUTPUT["physics_issues"]})
        unresolved = list_unresolved(rset)
        assert [(u.kind, u.index) for u in unresolved] == [("issue", 0)]

        resolve_issue(rset, 0, "acknowledge")
        bundle = approve(rset)
        assert bundle.outstanding_work == []

    def test_will_fix_becomes_outstanding_work(self):
        rset = extract_reconciliation_items(
            {"physics_issues": STAGE_OUTPUT["physics_issues"]}, "npc_stats"
        )
        resolve_issue(rset, 0, "will_fix")
        bundle = approve(rset)
        assert len(bundle.outstanding_work) == 1
        work = bundle.outstanding_work[0]
        assert work.stage_id == "npc_stats"
        assert work.description == "AC 25 is impossible at CR 1"
        assert work.severity is IssueSeverity.CRITICAL

    def test_full_set_lists_every_blocker(self):
        rset = extract_reconciliation_items(STAGE_OUTPUT, "npc_basic_info")
        kinds = [u.kind for u in list_unresolved(rset)]
        assert kinds == ["proposal", "conflict", "conflict", "issue"]
