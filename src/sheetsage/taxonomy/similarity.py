"""Similarity guard against near-duplicate category names.

The reasoner's own "is this an existing category?" judgment is noisy, so a
proposed new name is checked against the existing names before it is
committed. A match means the existing category is reused instead.
"""

from dataclasses import dataclass
from typing import Protocol, Sequence


DEFAULT_SYNONYM_GROUPS: tuple[frozenset[str], ...] = (
    frozenset({"hardware", "components", "parts", "pieces", "elements", "component"}),
    frozenset({"equipment", "tools", "instruments", "devices", "apparatus"}),
    frozenset({"fastener", "fasteners", "connector", "connectors", "fastening"}),
    frozenset({"material", "materials", "substance", "substances", "matter"}),
    frozenset({"medical", "healthcare", "health", "clinical", "therapeutic"}),
    frozenset({"dental", "tooth", "teeth", "oral", "orthodontic"}),
    frozenset({"plate", "plates", "panel", "panels", "board", "boards"}),
)


@dataclass(frozen=True)
class SimilarityMatch:
    """An existing category judged equivalent to a proposed name."""

    category: str
    reason: str


class SimilarityGuard(Protocol):
    def find_match(self, proposed: str, existing: Sequence[str]) -> SimilarityMatch | None:
        """Return the existing category ``proposed`` duplicates, if any."""
        ...


def _significant_words(name: str) -> list[str]:
    return [word for word in name.lower().split() if len(word) > 2]


class HeuristicSimilarityGuard:
    """Token-overlap, synonym and substring heuristics.

    Rules, checked per existing name in order:
    1. exact match ignoring case
    2. at least ``overlap_threshold`` of the words longer than 2 chars shared
    3. any word of each name in the same synonym group
    4. for single-word names, one contains the other and the contained word
       is longer than ``min_substring_length`` chars
    """

    def __init__(
        self,
        synonym_groups: Sequence[frozenset[str]] = DEFAULT_SYNONYM_GROUPS,
        *,
        overlap_threshold: float = 0.5,
        min_substring_length: int = 4,
    ):
        self.synonym_groups = tuple(synonym_groups)
        self.overlap_threshold = overlap_threshold
        self.min_substring_length = min_substring_length

    def find_match(self, proposed: str, existing: Sequence[str]) -> SimilarityMatch | None:
        proposed_norm = proposed.lower().strip()
        proposed_words = _significant_words(proposed)

        for candidate in existing:
            candidate_norm = candidate.lower().strip()
            candidate_words = _significant_words(candidate)

            if proposed_norm == candidate_norm:
                return SimilarityMatch(candidate, "Exact match (case insensitive)")

            common = [word for word in proposed_words if word in candidate_words]
            longest = max(len(proposed_words), len(candidate_words), 1)
            if common and len(common) / longest >= self.overlap_threshold:
                return SimilarityMatch(candidate, f"High word overlap: {', '.join(common)}")

            for group in self.synonym_groups:
                ours = [word for word in proposed_words if word in group]
                theirs = [word for word in candidate_words if word in group]
                if ours and theirs:
                    return SimilarityMatch(
                        candidate,
                        f"Synonym overlap: {', '.join(ours)} ~ {', '.join(theirs)}",
                    )

            if len(proposed_words) == 1 and len(candidate_words) == 1:
                ours, theirs = proposed_words[0], candidate_words[0]
                if (theirs in ours and len(theirs) > self.min_substring_length) or (
                    ours in theirs and len(ours) > self.min_substring_length
                ):
                    return SimilarityMatch(candidate, f"Substring match: {ours} ~ {theirs}")

        return None
