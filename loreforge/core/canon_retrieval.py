"""Canon retrieval, ranking and fact-budget narrowing.

Facts are ranked by the best tier any keyword matches:
    0 tag, 1 entity name, 2 alias or entity id, 3 type or region, 4 body text
Ties break on keywords matched (more first), then entity name, then chunk id,
so identical keywords against an unchanged store always rank identically.

When a ranked set exceeds the FactBudget, retrieval raises NarrowingRequired
instead of truncating. The attached NarrowingDecision is resolved exactly once
by adding keywords, filtering facts, or proceeding anyway.
"""

import re
from collections import Counter
from typing import Any, Literal

from loreforge.core.canon_store import CanonStore
from loreforge.core.errors import NarrowingRequired
from loreforge.core.fact_filter import FactFilterSession
from loreforge.core.logging import get_logger
from loreforge.core.schemas_canon import CanonFact, CanonFactSet, CanonQuery, FactBudget

logger = get_logger(__name__)

TIER_TAG = 0
TIER_NAME = 1
TIER_ALIAS = 2
TIER_TYPE_REGION = 3
TIER_TEXT = 4

# Entity types whose names make useful narrowing keywords
SUGGESTIBLE_TYPES = ("location", "npc", "faction", "organization", "settlement", "region")

_WS = re.compile(r"\s+")


def normalize_keywords(keywords: list[str]) -> list[str]:
    """Lowercase, strip and dedupe keywords, keeping first-seen order."""
    seen: dict[str, None] = {}
    for kw in keywords:
        if not isinstance(kw, str):
            continue
        cleaned = kw.strip().lower()
        if cleaned:
            seen.setdefault(cleaned, None)
    return list(seen)


def normalize_text(text: str) -> str:
    return _WS.sub(" ", text).strip().lower()


def match_tier(fact: CanonFact, keyword: str) -> int | None:
    """Best tier at which a (normalized) keyword matches the fact, or None."""
    if any(keyword in tag.lower() for tag in fact.tags):
        return TIER_TAG
    if keyword in fact.entity_name.lower():
        return TIER_NAME
    if any(keyword in alias.lower() for alias in fact.aliases):
        return TIER_ALIAS
    if fact.entity_id and keyword in fact.entity_id.lower():
        return TIER_ALIAS
    if (fact.entity_type and keyword in fact.entity_type.lower()) or (
        fact.region and keyword in fact.region.lower()
    ):
        return TIER_TYPE_REGION
    if keyword in fact.text.lower():
        return TIER_TEXT
    return None


def _dedupe(facts: list[CanonFact]) -> list[CanonFact]:
    seen_ids: set[str] = set()
    seen_texts: set[str] = set()
    unique: list[CanonFact] = []
    for fact in facts:
        text_key = normalize_text(fact.text)
        if fact.chunk_id in seen_ids or text_key in seen_texts:
            continue
        seen_ids.add(fact.chunk_id)
        seen_texts.add(text_key)
        unique.append(fact)
    return unique


def rank_facts(facts: list[CanonFact], keywords: list[str]) -> list[CanonFact]:
    """
    Filter and order facts by keyword match priority.

    Args:
        facts: Candidate facts from the store
        keywords: Retrieval keywords

    Returns:
        Deduplicated facts matching at least one keyword, best first. With no
        keywords, all facts ordered by entity name then chunk id.
    """
    normalized = normalize_keywords(keywords)

    if not normalized:
        ordered = sorted(facts, key=lambda f: (f.entity_name.lower(), f.chunk_id))
        return _dedupe(ordered)

    scored: list[tuple[int, int, str, str, CanonFact]] = []
    for fact in facts:
        tiers = [t for t in (match_tier(fact, kw) for kw in normalized) if t is not None]
        if not tiers:
            continue
        scored.append((min(tiers), -len(tiers), fact.entity_name.lower(), fact.chunk_id, fact))

    scored.sort(key=lambda s: s[:4])
    return _dedupe([s[4] for s in scored])


def _query(
    store: CanonStore,
    keywords: list[str],
    limit: int,
    exclude_collection_ids: list[str] | None = None,
) -> list[CanonFact]:
    query = CanonQuery(
        keywords=normalize_keywords(keywords),
        exclude_collection_ids=exclude_collection_ids or [],
        limit=limit,
    )
    return rank_facts(store.search_facts(query), keywords)


def suggest_keywords(
    facts: list[CanonFact], exclude: list[str] | None = None, limit: int = 12
) -> list[str]:
    """
    Suggest narrowing keywords drawn from the retrieved set.

    Location, NPC and faction names plus regions, most frequent first.
    """
    excluded = set(normalize_keywords(exclude or []))
    counts: Counter[str] = Counter()
    display: dict[str, str] = {}

    for fact in facts:
        candidates: list[str] = []
        if fact.entity_type and fact.entity_type.lower() in SUGGESTIBLE_TYPES and fact.entity_name:
            candidates.append(fact.entity_name)
        if fact.region:
            candidates.append(fact.region)
        for candidate in candidates:
            key = candidate.strip().lower()
            if not key or key in excluded:
                continue
            counts[key] += 1
            display.setdefault(key, candidate.strip())

    ranked = sorted(counts, key=lambda k: (-counts[k], k))
    return [display[k] for k in ranked[:limit]]


class NarrowingDecision:
    """
    Pending resolution of an over-budget fact set. Usable exactly once.

    Holds the over-budget facts so filtering never re-queries the store.
    """

    def __init__(
        self,
        *,
        store: CanonStore,
        keywords: list[str],
        facts: list[CanonFact],
        budget: FactBudget,
        limit: int,
        context: Literal["initial", "retrieval_hints"] = "initial",
        requested_by: str | None = None,
        existing: list[CanonFact] | None = None,
    ):
        self.store = store
        self.keywords = list(keywords)
        self.facts = list(facts)
        self.budget = budget
        self.limit = limit
        self.context = context
        self.requested_by = requested_by
        self.existing = list(existing or [])
        self.used = False

    @property
    def fact_count(self) -> int:
        return len(self.facts)

    @property
    def char_count(self) -> int:
        return sum(f.char_count for f in self.facts)

    @property
    def existing_count(self) -> int:
        return len(self.existing)

    def _ensure_open(self, mode: str) -> None:
        if self.used:
            raise RuntimeError(f"Narrowing decision already resolved; cannot {mode}")

    def _consume(self, mode: str) -> None:
        self._ensure_open(mode)
        self.used = True
        logger.info(
            f"Resolving narrowing via {mode}",
            extra={"context": self.context, "fact_count": self.fact_count},
        )

    def filter_session(self) -> FactFilterSession:
        return FactFilterSession(self.facts)

    def add_keywords(self, terms: list[str]) -> CanonFactSet:
        """
        Re-run retrieval with the combined keywords.

        The added terms refine the search: only facts matching at least one
        added term are kept, ranked against all keywords.

        Raises:
            NarrowingRequired: If the narrower set still exceeds the budget
            ValueError: If no new terms were given
        """
        added = [t for t in normalize_keywords(terms) if t not in normalize_keywords(self.keywords)]
        if not added:
            raise ValueError("add_keywords requires at least one new keyword")
        self._ensure_open("add_keywords")
        combined = [*self.keywords, *added]
        # A failed re-query leaves the decision open for another attempt
        fresh = [
            fact
            for fact in _query(self.store, combined, self.limit)
            if any(match_tier(fact, term) is not None for term in added)
        ]
        self._consume("add_keywords")
        if self.context == "retrieval_hints":
            return merge_additional_facts(
                self.existing,
                fresh,
                self.budget,
                requested_by=self.requested_by,
                store=self.store,
                keywords=combined,
                limit=self.limit,
            )
        return _check_budget(
            CanonFactSet(keywords=combined, facts=fresh),
            self.budget,
            store=self.store,
            limit=self.limit,
        )

    def filter_facts(self, selection: list[str] | FactFilterSession) -> CanonFactSet:
        """
        Keep a subset of the already retrieved facts.

        Raises:
            NarrowingRequired: If the selection still exceeds the budget; the
                new decision offers the same candidate facts again
        """
        self._consume("filter_facts")
        if isinstance(selection, FactFilterSession):
            chosen = selection.selected_facts()
        else:
            wanted = set(selection)
            chosen = [f for f in self.facts if f.chunk_id in wanted]

        if self.budget.exceeded_by(len(chosen), sum(f.char_count for f in chosen)):
            retry = NarrowingDecision(
                store=self.store,
                keywords=self.keywords,
                facts=self.facts,
                budget=self.budget,
                limit=self.limit,
                context=self.context,
                requested_by=self.requested_by,
                existing=self.existing,
            )
            raise NarrowingRequired(retry)
        return CanonFactSet(keywords=self.keywords, facts=chosen)

    def proceed_anyway(self) -> CanonFactSet:
        """Forward the over-budget set verbatim, flagged as an override."""
        self._consume("proceed_anyway")
        return CanonFactSet(keywords=self.keywords, facts=self.facts, over_budget_override=True)

    def summary(self) -> dict[str, Any]:
        groups: dict[str, dict[str, Any]] = {}
        for fact in self.facts:
            entry = groups.setdefault(
                fact.entity_key,
                {
                    "entity_key": fact.entity_key,
                    "entity_name": fact.entity_name,
                    "entity_type": fact.entity_type,
                    "fact_count": 0,
                },
            )
            entry["fact_count"] += 1
        return {
            "context": self.context,
            "requested_by": self.requested_by,
            "keywords": self.keywords,
            "fact_count": self.fact_count,
            "char_count": self.char_count,
            "existing_count": self.existing_count,
            "max_facts": self.budget.max_facts,
            "max_chars": self.budget.max_chars,
            "suggested_keywords": suggest_keywords(self.facts, exclude=self.keywords),
            "entities": list(groups.values()),
            "resolved": self.used,
        }


def _check_budget(
    fact_set: CanonFactSet,
    budget: FactBudget,
    *,
    store: CanonStore,
    limit: int,
    context: Literal["initial", "retrieval_hints"] = "initial",
    requested_by: str | None = None,
    existing: list[CanonFact] | None = None,
) -> CanonFactSet:
    if budget.exceeded_by(fact_set.fact_count, fact_set.char_count):
        decision = NarrowingDecision(
            store=store,
            keywords=fact_set.keywords,
            facts=fact_set.facts,
            budget=budget,
            limit=limit,
            context=context,
            requested_by=requested_by,
            existing=existing,
        )
        logger.info(
            f"Fact budget exceeded: {fact_set.fact_count} facts, {fact_set.char_count} chars",
            extra={"context": context, "requested_by": requested_by},
        )
        raise NarrowingRequired(decision)
    return fact_set


def retrieve_canon(
    store: CanonStore,
    keywords: list[str],
    budget: FactBudget,
    *,
    limit: int = 500,
    exclude_collection_ids: list[str] | None = None,
) -> CanonFactSet:
    """
    Retrieve and rank canon for the given keywords.

    Args:
        store: Canon store
        keywords: Retrieval keywords
        budget: Fact budget the result must fit
        limit: Max candidates pulled from the store
        exclude_collection_ids: Collections whose entities are left out

    Returns:
        CanonFactSet within budget

    Raises:
        NarrowingRequired: If the ranked set exceeds the budget
    """
    facts = _query(store, keywords, limit, exclude_collection_ids)
    logger.info(f"Retrieved {len(facts)} canon facts for {len(keywords)} keywords")
    return _check_budget(
        CanonFactSet(keywords=list(keywords), facts=facts), budget, store=store, limit=limit
    )


def merge_additional_facts(
    existing: list[CanonFact],
    new: list[CanonFact],
    budget: FactBudget,
    *,
    requested_by: str | None,
    store: CanonStore,
    keywords: list[str] | None = None,
    limit: int = 500,
) -> CanonFactSet:
    """
    Merge facts requested mid-generation into the carried set.

    Existing facts keep their place; new ones are appended unless their chunk
    id is already present. The total is re-checked against the budget.

    Raises:
        NarrowingRequired: With context "retrieval_hints" if the merged set
            exceeds the budget
    """
    known = {f.chunk_id for f in existing}
    merged = list(existing)
    for fact in new:
        if fact.chunk_id not in known:
            known.add(fact.chunk_id)
            merged.append(fact)

    logger.info(
        f"Merged {len(merged) - len(existing)} additional facts into {len(existing)}",
        extra={"requested_by": requested_by},
    )
    return _check_budget(
        CanonFactSet(keywords=list(keywords or []), facts=merged),
        budget,
        store=store,
        limit=limit,
        context="retrieval_hints",
        requested_by=requested_by,
        existing=existing,
    )


def retrieve_hinted_facts(
    store: CanonStore,
    current: CanonFactSet,
    terms: list[str],
    budget: FactBudget,
    *,
    requested_by: str | None,
    limit: int = 500,
) -> CanonFactSet:
    """Retrieve facts for a stage's retrieval hints and merge them additively."""
    fresh = _query(store, terms, limit)
    merged = merge_additional_facts(
        current.facts,
        fresh,
        budget,
        requested_by=requested_by,
        store=store,
        keywords=terms,
        limit=limit,
    )
    merged.keywords = [*current.keywords, *[t for t in terms if t not in current.keywords]]
    merged.over_budget_override = current.over_budget_override
    return merged
