"""Dynamic taxonomy manager.

Assigns each item to a category, creating categories on demand while
reusing existing ones wherever possible:

- Predefined categories are seeded first and never removed by a run
- Items with the same content signature reuse the cached decision
- A proposed new name is checked by a similarity guard before it is created
- A failed item gets an auto-numbered placeholder category

The category map, alias map and classification cache survive across runs
through ``export_snapshot`` / ``import_snapshot``. One instance may be shared
between threads: each item is classified and recorded under an instance lock.
"""

import hashlib
import json
import threading
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Sequence

import structlog

from sheetsage.contracts import (
    CategorizationResult,
    CategoryRecord,
    CategorySummary,
    CategoryTag,
    ClassificationDecision,
    Provenance,
    TaxonomySnapshot,
    TaxonomyStatistics,
    TaxonomyUpdate,
)
from sheetsage.errors import ItemClassificationError, SheetSageError
from sheetsage.llm.reasoner import Reasoner, call_structured, call_text
from sheetsage.progress import (
    CancellationToken,
    ProgressCallback,
    ProgressMessages,
    ProgressTracker,
    is_cancelled,
)
from sheetsage.sql.guardrails import sanitize_for_prompt_injection
from sheetsage.taxonomy.similarity import HeuristicSimilarityGuard, SimilarityGuard

logger = structlog.get_logger()


FIRST_CATEGORY_PROMPT = """Tag this data item with a category name.

Data Item: "{item}"
{context_line}{format_line}
Respond with just the category name, nothing else."""

MATCH_OR_CREATE_PROMPT = """Tag this data item with a category name. First check if it matches any existing category; if not, propose a new one.

Data Item: "{item}"
{context_line}{format_line}
EXISTING CATEGORIES (check these first):
{categories}

INSTRUCTIONS:
1. First check if this item fits ANY of the existing categories above
2. If it matches (even roughly), use the EXACT existing category name
3. Only propose a new category if the item is clearly different from all of them
4. {naming_rule}

Respond with JSON only:
{{
  "category": "exact_category_name",
  "is_existing": true,
  "reasoning": "why this category was chosen"
}}"""


@dataclass(frozen=True)
class TaxonomyConfig:
    """Confidence levels and limits used by ``TaxonomyManager``."""

    predefined_confidence: float = 1.0
    first_category_confidence: float = 0.9
    existing_category_confidence: float = 0.85
    new_category_confidence: float = 0.8
    placeholder_confidence: float = 0.5
    max_exemplars: int = 10
    placeholder_prefix: str = "Category_"
    description_chars: int = 100
    item_pause_seconds: float = 0.0


def canonical_text(item: Any) -> str:
    """Strings as-is, anything else as JSON with sorted keys."""
    if isinstance(item, str):
        return item
    return json.dumps(item, sort_keys=True, default=str, ensure_ascii=False)


def content_signature(item: Any) -> str:
    """SHA-256 hex digest of the item's canonical text."""
    return hashlib.sha256(canonical_text(item).encode("utf-8")).hexdigest()


def _clean_label(text: str) -> str:
    first_line = next((line for line in text.splitlines() if line.strip()), "")
    return first_line.strip().strip("\"'`*").strip().rstrip(".")


UpdateCallback = Callable[[TaxonomyUpdate], None]


class TaxonomyManager:
    """Creates, deduplicates and reuses category labels.

    Usage:
        manager = TaxonomyManager(reasoner)
        result = manager.categorize(items, predefined_categories=["Finance"])
        stats = manager.get_statistics()
    """

    def __init__(
        self,
        reasoner: Reasoner,
        *,
        similarity_guard: SimilarityGuard | None = None,
        config: TaxonomyConfig | None = None,
    ):
        self.reasoner = reasoner
        self.similarity_guard = similarity_guard or HeuristicSimilarityGuard()
        self.config = config or TaxonomyConfig()
        self._categories: dict[str, CategoryRecord] = {}
        self._aliases: dict[str, str] = {}
        self._cache: dict[str, ClassificationDecision] = {}
        # Reentrant: statistics are read while an item is being recorded
        self._lock = threading.RLock()

    @property
    def category_names(self) -> list[str]:
        with self._lock:
            return list(self._categories)

    def get_category(self, name: str) -> CategoryRecord | None:
        with self._lock:
            return self._categories.get(name)

    def categorize(
        self,
        items: Sequence[Any],
        predefined_categories: Sequence[str] = (),
        context: str = "",
        on_update: UpdateCallback | None = None,
        naming_format: str | None = None,
        cancel_token: CancellationToken | None = None,
        on_progress: ProgressCallback | None = None,
    ) -> CategorizationResult:
        """Assign every item to a category, in input order.

        Args:
            items: Strings or JSON-serializable values to categorize
            predefined_categories: Names seeded before the first item
            context: Free-text description of what the items are
            on_update: Called after each item with the taxonomy delta
            naming_format: Naming constraint such as "exactly two words"
            cancel_token: Checked before each item; cancellation returns
                the decisions made so far with ``partial=True``
            on_progress: Called once per processed item

        Returns:
            CategorizationResult with one decision per processed item
        """
        with self._lock:
            self._seed(predefined_categories)
            existing = len(self._categories)
        logger.info(
            "Starting categorization",
            items=len(items),
            predefined=len(predefined_categories),
            existing=existing,
        )

        tracker = ProgressTracker(len(items), on_progress)
        decisions: list[ClassificationDecision] = []
        partial = False
        for index, item in enumerate(items, start=1):
            if is_cancelled(cancel_token):
                logger.info("Categorization cancelled", processed=len(decisions), total=len(items))
                partial = True
                break

            with self._lock:
                decision, cached = self._decide_and_record(item, index, context, naming_format)
                update = None
                if on_update is not None:
                    update = TaxonomyUpdate(
                        new_category_name=decision.category if decision.is_new and not cached else None,
                        all_category_names=list(self._categories),
                        current_stats=self.get_statistics(),
                    )
            decisions.append(decision)
            tracker.advance(ProgressMessages.categorizing_item(index, len(items)))

            if update is not None:
                on_update(update)
            if not cached and self.config.item_pause_seconds and index < len(items):
                time.sleep(self.config.item_pause_seconds)

        stats = self.get_statistics()
        logger.info(
            "Categorization complete",
            items=len(decisions),
            categories=stats.total_categories,
            new_categories=stats.new_categories,
            partial=partial,
        )
        return CategorizationResult(
            decisions=decisions,
            stats=stats,
            category_names=self.category_names,
            partial=partial,
        )

    # ------------------------------------------------------------------
    # Classification
    # ------------------------------------------------------------------

    def _decide_and_record(
        self,
        item: Any,
        index: int,
        context: str,
        naming_format: str | None,
    ) -> tuple[ClassificationDecision, bool]:
        """Classify (or reuse the cached decision for) one item and count it.

        Must be called with the instance lock held. Returns the decision and
        whether it came from the cache.
        """
        signature = content_signature(item)
        cached = self._cache.get(signature)
        if cached is not None:
            logger.debug("Classification cache hit", item=index, category=cached.category)
            decision = cached
        else:
            decision = self._classify_or_placeholder(item, index, context, naming_format)
            self._cache[signature] = decision
        self._record_usage(decision.category, item)
        return decision, cached is not None

    def _seed(self, predefined_categories: Sequence[str]) -> None:
        for raw in predefined_categories:
            name = raw.strip()
            if name and name not in self._categories:
                self._categories[name] = CategoryRecord(
                    name=name,
                    description=f"Predefined category: {name}",
                    confidence=self.config.predefined_confidence,
                    provenance=Provenance.PREDEFINED,
                )

    def _classify_or_placeholder(
        self,
        item: Any,
        index: int,
        context: str,
        naming_format: str | None,
    ) -> ClassificationDecision:
        try:
            return self._classify(item, context, naming_format)
        except SheetSageError as e:
            name = self._placeholder_name()
            logger.warning("Item classification failed, using placeholder", item=index, category=name, error=str(e))
            self._create(name, item, self.config.placeholder_confidence)
            return ClassificationDecision(
                category=name,
                confidence=self.config.placeholder_confidence,
                reasoning=f"Fallback category due to processing error: {e}",
                is_new=True,
            )

    def _classify(self, item: Any, context: str, naming_format: str | None) -> ClassificationDecision:
        text = sanitize_for_prompt_injection(canonical_text(item))
        context_line = f"Context: {context}\n" if context else ""
        format_line = ""
        if naming_format:
            format_line = (
                f'User Format: "{naming_format}"\n'
                "CRITICAL: Follow the user format EXACTLY.\n"
            )

        if not self._categories:
            label = _clean_label(
                call_text(
                    self.reasoner,
                    FIRST_CATEGORY_PROMPT.format(item=text, context_line=context_line, format_line=format_line),
                    temperature=0.3,
                )
            )
            if not label:
                raise ItemClassificationError("Reasoner returned an empty category name", item)
            self._create(label, item, self.config.first_category_confidence)
            logger.info("Created first category", category=label)
            return ClassificationDecision(
                category=label,
                confidence=self.config.first_category_confidence,
                reasoning="First category created",
                is_new=True,
            )

        prompt = MATCH_OR_CREATE_PROMPT.format(
            item=text,
            context_line=context_line,
            format_line=format_line,
            categories="\n".join(f'{i}. "{name}"' for i, name in enumerate(self._categories, start=1)),
            naming_rule=(
                f"Follow the user format EXACTLY: {naming_format}"
                if naming_format
                else "Use a clear, concise category name"
            ),
        )
        tag = call_structured(self.reasoner, prompt, CategoryTag, temperature=0.3)
        proposed = _clean_label(tag.category)
        if not proposed:
            raise ItemClassificationError("Reasoner returned an empty category name", item)

        existing = self._resolve_existing(proposed)
        if existing is not None:
            return ClassificationDecision(
                category=existing,
                confidence=self.config.existing_category_confidence,
                reasoning=tag.reasoning,
                is_new=False,
            )

        match = self.similarity_guard.find_match(proposed, self.category_names)
        if match is not None:
            self._aliases[proposed.lower()] = match.category
            logger.info("Reused similar category", proposed=proposed, category=match.category, reason=match.reason)
            return ClassificationDecision(
                category=match.category,
                confidence=self.config.existing_category_confidence,
                reasoning=f"Prevented duplicate of {match.category!r}: {match.reason}",
                is_new=False,
            )

        self._create(proposed, item, self.config.new_category_confidence)
        logger.info("Created new category", category=proposed)
        return ClassificationDecision(
            category=proposed,
            confidence=self.config.new_category_confidence,
            reasoning=tag.reasoning,
            is_new=True,
        )

    def _resolve_existing(self, name: str) -> str | None:
        if name in self._categories:
            return name
        lowered = name.lower()
        for existing in self._categories:
            if existing.lower() == lowered:
                return existing
        alias = self._aliases.get(lowered)
        if alias in self._categories:
            return alias
        return None

    def _placeholder_name(self) -> str:
        n = len(self._categories) + 1
        while f"{self.config.placeholder_prefix}{n}" in self._categories:
            n += 1
        return f"{self.config.placeholder_prefix}{n}"

    def _create(self, name: str, item: Any, confidence: float) -> CategoryRecord:
        """Add a derived category; an existing record with ``name`` is kept as-is."""
        existing = self._categories.get(name)
        if existing is not None:
            logger.debug("Category already exists, keeping it", category=name)
            return existing
        record = CategoryRecord(
            name=name,
            description=f"Derived category for: {canonical_text(item)[:self.config.description_chars]}",
            confidence=confidence,
            provenance=Provenance.DERIVED,
        )
        self._categories[name] = record
        return record

    def _record_usage(self, name: str, item: Any) -> None:
        record = self._categories.get(name)
        if record is None:
            # Cached decision whose category was dropped from an imported snapshot
            record = self._create(name, item, self.config.placeholder_confidence)
        record.count += 1
        text = canonical_text(item)
        if len(record.exemplars) < self.config.max_exemplars and text not in record.exemplars:
            record.exemplars.append(text)

    # ------------------------------------------------------------------
    # Statistics and persistence
    # ------------------------------------------------------------------

    def get_statistics(self) -> TaxonomyStatistics:
        """Categories sorted by usage (descending) with percentage share."""
        with self._lock:
            return self._build_statistics()

    def _build_statistics(self) -> TaxonomyStatistics:
        records = sorted(self._categories.values(), key=lambda r: r.count, reverse=True)
        total_items = sum(r.count for r in records)
        summaries = [
            CategorySummary(
                name=r.name,
                count=r.count,
                percentage=round(r.count / total_items * 100, 1) if total_items else 0.0,
                description=r.description,
                exemplars=list(r.exemplars),
                confidence=r.confidence,
                provenance=r.provenance,
                created_at=r.created_at,
            )
            for r in records
        ]
        return TaxonomyStatistics(
            total_categories=len(records),
            total_items=total_items,
            new_categories=sum(1 for r in records if r.provenance == Provenance.DERIVED),
            predefined_categories=sum(1 for r in records if r.provenance == Provenance.PREDEFINED),
            categories=summaries,
        )

    def export_snapshot(self) -> TaxonomySnapshot:
        """Serializable copy of categories, aliases and cache."""
        with self._lock:
            return TaxonomySnapshot(
                categories={name: r.model_copy(deep=True) for name, r in self._categories.items()},
                aliases=dict(self._aliases),
                cache={sig: d.model_copy() for sig, d in self._cache.items()},
            )

    def import_snapshot(self, snapshot: TaxonomySnapshot | dict[str, Any]) -> None:
        """Replace the current state with ``snapshot`` verbatim."""
        if not isinstance(snapshot, TaxonomySnapshot):
            snapshot = TaxonomySnapshot.model_validate(snapshot)
        with self._lock:
            self._categories = {name: r.model_copy(deep=True) for name, r in snapshot.categories.items()}
            self._aliases = dict(snapshot.aliases)
            self._cache = {sig: d.model_copy() for sig, d in snapshot.cache.items()}
        logger.info(
            "Imported taxonomy",
            categories=len(self._categories),
            aliases=len(self._aliases),
            cached=len(self._cache),
        )

    def save(self, path: Path | str) -> None:
        Path(path).write_text(self.export_snapshot().model_dump_json(indent=2), encoding="utf-8")

    def load(self, path: Path | str) -> None:
        self.import_snapshot(TaxonomySnapshot.model_validate_json(Path(path).read_text(encoding="utf-8")))

    def reset(self) -> None:
        with self._lock:
            self._categories.clear()
            self._aliases.clear()
            self._cache.clear()
        logger.info("Taxonomy reset")
