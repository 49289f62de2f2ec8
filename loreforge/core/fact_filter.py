"""Manual fact filtering for budget narrowing.

Facts are grouped by owning entity. Everything starts selected; the user
deselects facts one at a time or per entity, optionally after searching.
"""

from dataclasses import dataclass, field

from loreforge.core.schemas_canon import CanonFact


@dataclass
class FactGroup:
    entity_key: str
    entity_name: str
    entity_type: str | None
    facts: list[CanonFact] = field(default_factory=list)


class FactFilterSession:
    """Selection state over an already retrieved fact set. Never re-queries."""

    def __init__(self, facts: list[CanonFact]):
        self._facts = list(facts)
        self._selected: set[str] = {f.chunk_id for f in self._facts}

    @property
    def facts(self) -> list[CanonFact]:
        return list(self._facts)

    def groups(self) -> list[FactGroup]:
        """Facts grouped by entity, in first-seen order."""
        by_key: dict[str, FactGroup] = {}
        for fact in self._facts:
            group = by_key.get(fact.entity_key)
            if group is None:
                group = FactGroup(
                    entity_key=fact.entity_key,
                    entity_name=fact.entity_name,
                    entity_type=fact.entity_type,
                )
                by_key[fact.entity_key] = group
            group.facts.append(fact)
        return list(by_key.values())

    def is_selected(self, chunk_id: str) -> bool:
        return chunk_id in self._selected

    def toggle_fact(self, chunk_id: str) -> bool:
        """Flip one fact. Returns the new selection state."""
        if chunk_id in self._selected:
            self._selected.discard(chunk_id)
            return False
        if any(f.chunk_id == chunk_id for f in self._facts):
            self._selected.add(chunk_id)
            return True
        raise KeyError(chunk_id)

    def toggle_entity(self, entity_key: str, selected: bool) -> int:
        """Select or deselect every fact of one entity. Returns facts affected."""
        ids = [f.chunk_id for f in self._facts if f.entity_key == entity_key]
        if not ids:
            raise KeyError(entity_key)
        if selected:
            self._selected.update(ids)
        else:
            self._selected.difference_update(ids)
        return len(ids)

    def select_only(self, chunk_ids: list[str]) -> None:
        known = {f.chunk_id for f in self._facts}
        self._selected = {cid for cid in chunk_ids if cid in known}

    def search(self, query: str) -> list[CanonFact]:
        """Case-insensitive match over text, entity name, tags, type and region."""
        needle = query.strip().lower()
        if not needle:
            return self.facts

        def haystack(fact: CanonFact) -> list[str]:
            return [
                fact.text,
                fact.entity_name,
                fact.entity_type or "",
                fact.region or "",
                *fact.tags,
            ]

        return [f for f in self._facts if any(needle in h.lower() for h in haystack(f))]

    def selected_facts(self) -> list[CanonFact]:
        """Selected facts in original ranked order."""
        return [f for f in self._facts if f.chunk_id in self._selected]

    @property
    def selected_count(self) -> int:
        return len(self._selected)

    @property
    def char_count(self) -> int:
        return sum(f.char_count for f in self.selected_facts())
