"""Pattern and similarity classifier.

Reasoner-backed replacements for static regex matching: column pattern
analysis, value and row matching, value classification, similarity scoring,
rule validation and business insight extraction.
"""

import hashlib
import json
from typing import Any, NamedTuple, Sequence

import structlog
from pydantic_core import to_jsonable_python

from sheetsage.analysis import prompts
from sheetsage.config import AnalysisConfig
from sheetsage.contracts import (
    BusinessInsights,
    ClassificationBatch,
    ColumnPatternAnalysis,
    MatchAnnotation,
    SimilarityScores,
    ValidationReport,
    ValueClassification,
)
from sheetsage.errors import ItemClassificationError, SheetSageError
from sheetsage.llm.reasoner import Reasoner, call_structured

logger = structlog.get_logger()

CLASSIFY_BATCH_SIZE = 10
MAX_SIMILARITY_CANDIDATES = 50
MAX_VALIDATION_VALUES = 20
FALLBACK_CONFIDENCE = 0.5


class SimilarValue(NamedTuple):
    value: Any
    score: float
    reasoning: str


def _looks_numeric(value: Any) -> bool:
    try:
        float(str(value).replace(",", "").strip())
    except ValueError:
        return False
    return True


def heuristic_column_analysis(values: Sequence[Any], column: str) -> ColumnPatternAnalysis:
    """Cheap stand-in used when the reasoner cannot analyze a column."""
    sample = [str(v) for v in values[:10] if v is not None]
    if any("@" in v for v in sample):
        semantic_type, pattern = "email", "Email addresses detected"
    elif sample and all(_looks_numeric(v) for v in sample):
        semantic_type, pattern = "numeric", "Numeric values detected"
    elif sample and sum(len(v) for v in sample) / len(sample) > 50:
        semantic_type, pattern = "long_text", "Long text content detected"
    else:
        semantic_type, pattern = "categorical", "Short text values"
    return ColumnPatternAnalysis(
        column=column,
        semantic_type=semantic_type,
        data_format="mixed",
        patterns=[pattern],
        insights="Heuristic analysis (reasoner unavailable)",
        confidence=FALLBACK_CONFIDENCE,
    )


class PatternClassifier:
    """Reasoner-backed pattern detection with a per-column analysis cache."""

    def __init__(self, reasoner: Reasoner, config: AnalysisConfig | None = None):
        self.reasoner = reasoner
        self.config = config or AnalysisConfig()
        self._column_cache: dict[str, ColumnPatternAnalysis] = {}

    def _cache_key(self, column: str, values: Sequence[Any]) -> str:
        fingerprint = json.dumps(list(values), default=str, sort_keys=True)
        return f"{column}:{hashlib.sha256(fingerprint.encode('utf-8')).hexdigest()}"

    def analyze_column(self, values: Sequence[Any], column: str, context: str = "") -> ColumnPatternAnalysis:
        """Summarize a column's semantic type, format and quality.

        Results are cached per column and value sample. A failed call falls
        back to ``heuristic_column_analysis`` (not cached).
        """
        sample = [v for v in values if v is not None][:self.config.column_sample_values]
        key = self._cache_key(column, sample)
        if key in self._column_cache:
            logger.debug("Using cached column analysis", column=column)
            return self._column_cache[key]

        prompt = prompts.COLUMN_PATTERN_PROMPT.format(
            column=column,
            values=prompts.format_values(sample),
            context=context or "none",
            json_rules=prompts.JSON_RULES,
        )
        try:
            analysis = call_structured(self.reasoner, prompt, ColumnPatternAnalysis, temperature=0.3)
        except SheetSageError as e:
            logger.warning("Column analysis failed, using heuristics", column=column, error=str(e))
            return heuristic_column_analysis(sample, column)

        if not analysis.column:
            analysis = analysis.model_copy(update={"column": column})
        self._column_cache[key] = analysis
        logger.debug("Column analyzed", column=column, semantic_type=analysis.semantic_type)
        return analysis

    def match_value(self, value: Any, description: str, context: str = "") -> MatchAnnotation:
        """Decide whether one cell value matches ``description``.

        Raises:
            ItemClassificationError: If the reasoner call or decode fails
        """
        prompt = prompts.VALUE_MATCH_PROMPT.format(
            value=prompts.clean_cell(value),
            description=description,
            context=context or "none",
            json_rules=prompts.JSON_RULES,
        )
        try:
            annotation = call_structured(self.reasoner, prompt, MatchAnnotation, temperature=0.1)
        except SheetSageError as e:
            raise ItemClassificationError(f"Value match failed: {e}", value) from e
        if annotation.matched_value is None:
            annotation = annotation.model_copy(update={"matched_value": str(value)})
        return annotation

    def match_row(self, row: dict[str, Any], question: str) -> MatchAnnotation:
        """Decide whether a whole row satisfies ``question``.

        Raises:
            ItemClassificationError: If the reasoner call or decode fails
        """
        prompt = prompts.ROW_MATCH_PROMPT.format(
            question=question,
            row=prompts.format_row(row),
            json_rules=prompts.JSON_RULES,
        )
        try:
            return call_structured(self.reasoner, prompt, MatchAnnotation, temperature=0.2)
        except SheetSageError as e:
            raise ItemClassificationError(f"Row match failed: {e}", row) from e

    def classify_values(
        self,
        values: Sequence[Any],
        categories: Sequence[str],
        context: str = "",
    ) -> list[ValueClassification]:
        """Assign each value to one of ``categories``, ten values per call.

        Returns one classification per input value, in order. Values in a
        failed batch, or missing from a reply, are marked ``unknown``.
        """
        results: list[ValueClassification] = []
        for start in range(0, len(values), CLASSIFY_BATCH_SIZE):
            batch = list(values[start:start + CLASSIFY_BATCH_SIZE])
            prompt = prompts.CLASSIFY_VALUES_PROMPT.format(
                categories=", ".join(f'"{c}"' for c in categories),
                context=context or "none",
                values=prompts.format_values(batch),
                json_rules=prompts.JSON_RULES,
            )
            try:
                reply = call_structured(self.reasoner, prompt, ClassificationBatch, temperature=0.2)
            except SheetSageError as e:
                logger.warning("Classification batch failed", start=start + 1, size=len(batch), error=str(e))
                reply = ClassificationBatch()
            results.extend(self._align(batch, reply.classifications))
        return results

    @staticmethod
    def _align(batch: list[Any], classifications: list[ValueClassification]) -> list[ValueClassification]:
        if len(classifications) == len(batch):
            return [c.model_copy(update={"value": str(v)}) for v, c in zip(batch, classifications)]
        by_value = {c.value: c for c in classifications}
        return [
            by_value.get(str(v)) or ValueClassification(value=str(v), reasoning="Not classified")
            for v in batch
        ]

    def find_similar(
        self,
        target: Any,
        candidates: Sequence[Any],
        threshold: float = 0.7,
    ) -> list[SimilarValue]:
        """Candidates scoring at least ``threshold``, best first.

        Only the first 50 candidates are scored. A failed call yields an
        empty list.
        """
        pool = list(candidates[:MAX_SIMILARITY_CANDIDATES])
        if not pool:
            return []
        prompt = prompts.SIMILARITY_PROMPT.format(
            target=prompts.clean_cell(target),
            values=prompts.format_values(pool),
            json_rules=prompts.JSON_RULES,
        )
        try:
            reply = call_structured(self.reasoner, prompt, SimilarityScores, temperature=0.2)
        except SheetSageError as e:
            logger.warning("Similarity scoring failed", error=str(e))
            return []

        similar = [
            SimilarValue(pool[s.index - 1], s.score, s.reasoning)
            for s in reply.scores
            if 1 <= s.index <= len(pool) and s.score >= threshold
        ]
        return sorted(similar, key=lambda s: s.score, reverse=True)

    def validate_values(self, values: Sequence[Any], rules: str, context: str = "") -> ValidationReport:
        """Check up to 20 values against free-text rules."""
        sample = list(values[:MAX_VALIDATION_VALUES])
        prompt = prompts.VALIDATE_VALUES_PROMPT.format(
            rules=rules,
            context=context or "none",
            values=prompts.format_values(sample),
            json_rules=prompts.JSON_RULES,
        )
        try:
            return call_structured(self.reasoner, prompt, ValidationReport, temperature=0.1)
        except SheetSageError as e:
            logger.warning("Value validation failed", error=str(e))
            return ValidationReport(summary=f"Validation unavailable: {e}")

    def extract_business_insights(
        self,
        patterns: Any,
        data_context: str = "",
        user_goals: str = "",
    ) -> BusinessInsights:
        """Read detected patterns for their business meaning.

        ``patterns`` may hold ``ColumnPatternAnalysis`` records or any other
        JSON-serializable findings. A failed call yields empty insights.
        """
        prompt = prompts.BUSINESS_INSIGHTS_PROMPT.format(
            context=data_context or "none",
            goals=user_goals or "none",
            patterns=prompts.to_json(to_jsonable_python(patterns, fallback=str)),
            json_rules=prompts.JSON_RULES,
        )
        try:
            insights = call_structured(self.reasoner, prompt, BusinessInsights, temperature=0.3)
        except SheetSageError as e:
            logger.warning("Business insight extraction failed", error=str(e))
            return BusinessInsights()
        logger.debug(
            "Business insights extracted",
            insights=len(insights.insights),
            opportunities=len(insights.opportunities),
            risks=len(insights.risks),
        )
        return insights

    def clear_cache(self) -> None:
        self._column_cache.clear()
