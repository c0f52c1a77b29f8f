"""Pydantic contracts for sheetsage.

This module defines the data model shared by every component and the
structured shapes the reasoner is asked to return. Reasoner-facing records
derive from ``ReasonerRecord``, which accepts camelCase spellings of declared
field names so replies like ``{"batchSize": 5}`` validate cleanly.

Data model:
- ColumnDescriptor: per-column schema summary, immutable for a run
- AnalysisStrategy: the chosen execution method and its parameters
- MatchAnnotation / MatchedRow: row-level classification output
- CategoryRecord / ClassificationDecision: taxonomy state
- AnalysisResult: what every execution strategy returns
"""

import re
from datetime import datetime, timezone
from enum import Enum
from typing import Annotated, Any, ClassVar

from pydantic import BaseModel, BeforeValidator, ConfigDict, Field, field_validator, model_validator


DEFAULT_STRATEGY_REASONING = "SQL-based computational analysis"


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def camel_to_snake(name: str) -> str:
    """Convert ``matchingRowNumbers`` to ``matching_row_numbers``."""
    return re.sub(r"(?<=[a-z0-9])([A-Z])", r"_\1", name).lower()


def snake_to_camel(name: str) -> str:
    """Convert ``matching_row_numbers`` to ``matchingRowNumbers``."""
    head, *rest = name.split("_")
    return head + "".join(part.capitalize() for part in rest)


def _as_str_list(value: Any) -> Any:
    if value is None:
        return []
    if isinstance(value, str):
        return [value] if value.strip() else []
    if isinstance(value, (list, tuple)):
        out = []
        for item in value:
            if isinstance(item, str):
                out.append(item)
            elif isinstance(item, dict):
                out.append("; ".join(f"{k}: {v}" for k, v in item.items()))
            elif item is not None:
                out.append(str(item))
        return out
    return value


def _as_int_list(value: Any) -> Any:
    if value is None:
        return []
    if isinstance(value, (int, str)):
        value = [value]
    if isinstance(value, (list, tuple)):
        out = []
        for item in value:
            if isinstance(item, bool):
                continue
            if isinstance(item, int):
                out.append(item)
            elif isinstance(item, float) and item.is_integer():
                out.append(int(item))
            elif isinstance(item, str):
                out.extend(int(d) for d in re.findall(r"\d+", item))
        return out
    return value


def _as_confidence(value: Any) -> Any:
    """Accept 0-1 floats, percentages, and numeric strings."""
    if isinstance(value, str):
        stripped = value.strip().rstrip("%")
        try:
            value = float(stripped)
        except ValueError:
            return value
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        if 1.0 < value <= 100.0:
            return value / 100.0
    return value


def _as_optional_str(value: Any) -> Any:
    if value is None or isinstance(value, str):
        return value
    return str(value)


StrList = Annotated[list[str], BeforeValidator(_as_str_list)]
IntList = Annotated[list[int], BeforeValidator(_as_int_list)]
Confidence = Annotated[float, BeforeValidator(_as_confidence), Field(ge=0.0, le=1.0)]
OptionalStr = Annotated[str | None, BeforeValidator(_as_optional_str)]


# =============================================================================
# Enums
# =============================================================================

class ColumnType(str, Enum):
    """Coarse type family of a column."""

    TEXT = "TEXT"
    NUMBER = "NUMBER"
    DATE = "DATE"


class AnalysisMethod(str, Enum):
    """Execution strategy for answering a question."""

    ROW_BY_ROW_AI = "row_by_row_ai"
    BATCH_AI = "batch_ai"
    QUERY_COMPUTATIONAL = "query_computational"
    HYBRID = "hybrid"


_METHOD_ALIASES = {
    "row_by_row": AnalysisMethod.ROW_BY_ROW_AI,
    "rowbyrowai": AnalysisMethod.ROW_BY_ROW_AI,
    "row_by_row_ai": AnalysisMethod.ROW_BY_ROW_AI,
    "batch": AnalysisMethod.BATCH_AI,
    "batchai": AnalysisMethod.BATCH_AI,
    "batch_ai": AnalysisMethod.BATCH_AI,
    "sql_computational": AnalysisMethod.QUERY_COMPUTATIONAL,
    "sql": AnalysisMethod.QUERY_COMPUTATIONAL,
    "querycomputational": AnalysisMethod.QUERY_COMPUTATIONAL,
    "query_computational": AnalysisMethod.QUERY_COMPUTATIONAL,
    "hybrid": AnalysisMethod.HYBRID,
}


class TaskType(str, Enum):
    """Kind of row-by-row task detected for a question."""

    TRANSFORMATION = "transformation"
    COLUMN_SPECIFIC = "column_specific"
    HOLISTIC = "holistic"


class Provenance(str, Enum):
    """Where a category came from."""

    PREDEFINED = "predefined"
    DERIVED = "derived"


# =============================================================================
# Reasoner records
# =============================================================================

class ReasonerRecord(BaseModel):
    """Base for records decoded from reasoner output.

    Keys are matched against declared fields by exact name, by snake_case
    conversion of a camelCase key, or through ``key_aliases``.
    """

    key_aliases: ClassVar[dict[str, str]] = {}

    @model_validator(mode="before")
    @classmethod
    def _normalize_keys(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data
        return cls._normalize(data)

    @classmethod
    def _normalize(cls, data: dict[str, Any]) -> dict[str, Any]:
        normalized: dict[str, Any] = {}
        for key, value in data.items():
            target = key
            if key not in cls.model_fields:
                if key in cls.key_aliases:
                    target = cls.key_aliases[key]
                elif camel_to_snake(key) in cls.model_fields:
                    target = camel_to_snake(key)
            normalized.setdefault(target, value)
        return normalized

    @classmethod
    def key_spellings(cls, field_name: str) -> list[str]:
        """All JSON key spellings accepted for ``field_name``."""
        spellings = [field_name, snake_to_camel(field_name)]
        spellings.extend(k for k, v in cls.key_aliases.items() if v == field_name)
        return list(dict.fromkeys(spellings))


class AnalysisStrategy(ReasonerRecord):
    """Strategy chosen by the selector for one question."""

    model_config = ConfigDict(frozen=True)

    key_aliases: ClassVar[dict[str, str]] = {
        "sqlQuery": "generated_query",
        "sql_query": "generated_query",
        "query": "generated_query",
        "aiPrompt": "prompt_template",
        "ai_prompt": "prompt_template",
        "prompt": "prompt_template",
        "expectedResults": "expected_results",
    }

    method: AnalysisMethod = Field(..., description="Execution method")
    reasoning: str = Field(DEFAULT_STRATEGY_REASONING, description="Why this method was chosen")
    generated_query: OptionalStr = Field(None, description="SQL for query_computational/hybrid")
    prompt_template: OptionalStr = Field(None, description="Per-row or per-batch prompt")
    batch_size: int | None = Field(None, ge=1, le=500, description="Rows per batch (default: config)")
    expected_results: OptionalStr = Field(None, description="What the result should look like")

    @field_validator("method", mode="before")
    @classmethod
    def _normalize_method(cls, value: Any) -> Any:
        if isinstance(value, str):
            key = re.sub(r"[\s\-]+", "_", value.strip()).lower()
            if key in _METHOD_ALIASES:
                return _METHOD_ALIASES[key]
            compact = key.replace("_", "")
            if compact in _METHOD_ALIASES:
                return _METHOD_ALIASES[compact]
        return value


class MatchAnnotation(ReasonerRecord):
    """Row- or cell-level match verdict; never alters the row itself."""

    matches: bool = Field(..., description="Whether the row/value answers the question")
    confidence: Confidence = Field(0.0, description="Confidence 0-1")
    reasoning: str = Field("", description="Short justification")
    matched_column: OptionalStr = Field(None, description="Column that produced the match")
    matched_value: OptionalStr = Field(None, description="Cell value that produced the match")


class TransformationCheck(ReasonerRecord):
    is_transformation: bool = False
    confidence: Confidence = 0.0
    reasoning: str = ""
    transformation_type: OptionalStr = None


class ColumnScopeCheck(ReasonerRecord):
    is_column_specific: bool = False
    confidence: Confidence = 0.0
    reasoning: str = ""


class TransformationOperation(ReasonerRecord):
    column: str = Field(..., description="Column the operation reads or writes")
    operation: str = Field(..., description="e.g. sum, convert, split, rename")
    details: str = ""


class TransformationPlan(ReasonerRecord):
    operations: list[TransformationOperation] = Field(default_factory=list)
    return_whole_row: bool = True
    notes: str = ""


class TransformedRow(ReasonerRecord):
    """A row after applying a transformation plan.

    Replies that put the row fields at the top level next to
    ``confidence`` and ``reasoning`` are accepted: undeclared keys are
    collected into ``row``.
    """

    key_aliases: ClassVar[dict[str, str]] = {
        "transformed_row": "row",
        "transformedRow": "row",
        "data": "row",
    }

    row: dict[str, Any] = Field(..., description="Every column of the transformed row")
    confidence: Confidence = 0.0
    reasoning: str = ""
    operations_applied: StrList = Field(default_factory=list)

    @classmethod
    def _normalize(cls, data: dict[str, Any]) -> dict[str, Any]:
        normalized = super()._normalize(data)
        if "row" in normalized:
            return normalized
        extra = {k: v for k, v in normalized.items() if k not in cls.model_fields}
        if not extra:
            return normalized
        folded = {k: v for k, v in normalized.items() if k in cls.model_fields}
        folded["row"] = extra
        return folded


class ColumnPatternAnalysis(ReasonerRecord):
    """Column-level pattern summary reused when scoring the column's cells."""

    key_aliases: ClassVar[dict[str, str]] = {
        "dataType": "semantic_type",
        "data_type": "semantic_type",
        "format": "data_format",
        "qualityIssues": "quality_issues",
    }

    column: str = ""
    semantic_type: str = "unknown"
    data_format: str = ""
    patterns: StrList = Field(default_factory=list)
    quality_issues: StrList = Field(default_factory=list)
    insights: str = ""
    confidence: Confidence = 0.5


class InsightSummary(ReasonerRecord):
    key_aliases: ClassVar[dict[str, str]] = {"dataQuality": "data_quality"}

    summary: str = ""
    insights: StrList = Field(default_factory=list)
    patterns: StrList = Field(default_factory=list)
    data_quality: str = ""
    recommendations: StrList = Field(default_factory=list)


class BatchFinding(ReasonerRecord):
    key_aliases: ClassVar[dict[str, str]] = {"matchingRows": "matching_row_numbers"}

    findings: StrList = Field(default_factory=list)
    matching_row_numbers: IntList = Field(default_factory=list)
    insights: str = ""

    @field_validator("insights", mode="before")
    @classmethod
    def _join_insights(cls, value: Any) -> Any:
        if isinstance(value, list):
            return " ".join(str(v) for v in value)
        return value


class QueryInsights(ReasonerRecord):
    key_aliases: ClassVar[dict[str, str]] = {"answer": "direct_answer"}

    summary: str = ""
    insights: StrList = Field(default_factory=list)
    direct_answer: str = ""


class HybridInsights(ReasonerRecord):
    patterns: StrList = Field(default_factory=list)
    insights: StrList = Field(default_factory=list)
    conclusion: str = ""
    recommendations: StrList = Field(default_factory=list)


class CategoryTag(ReasonerRecord):
    key_aliases: ClassVar[dict[str, str]] = {"isExisting": "is_existing", "name": "category"}

    category: str = Field(..., description="Existing or proposed category name")
    is_existing: bool = False
    reasoning: str = ""


class ValueClassification(ReasonerRecord):
    value: str = ""
    category: str = "unknown"
    confidence: Confidence = 0.0
    reasoning: str = ""


class ClassificationBatch(ReasonerRecord):
    classifications: list[ValueClassification] = Field(default_factory=list)


class SimilarityScore(ReasonerRecord):
    index: int
    score: Confidence = 0.0
    reasoning: str = ""


class SimilarityScores(ReasonerRecord):
    scores: list[SimilarityScore] = Field(default_factory=list)


class InvalidValue(ReasonerRecord):
    value: str = ""
    reason: str = ""


class ValidationReport(ReasonerRecord):
    key_aliases: ClassVar[dict[str, str]] = {"invalid": "invalid_values"}

    valid_count: int = 0
    invalid_values: list[InvalidValue] = Field(default_factory=list)
    summary: str = ""


class BusinessInsight(ReasonerRecord):
    insight: str = Field(..., description="Specific business insight")
    impact: str = ""
    actionable: str = ""
    confidence: Confidence = 0.5


class BusinessOpportunity(ReasonerRecord):
    opportunity: str = Field(..., description="Business opportunity")
    description: str = ""
    requirements: str = ""


class BusinessRisk(ReasonerRecord):
    risk: str = Field(..., description="Potential risk")
    severity: str = "medium"
    mitigation: str = ""

    @field_validator("severity", mode="before")
    @classmethod
    def _lower_severity(cls, value: Any) -> Any:
        if isinstance(value, str):
            return value.strip().lower()
        return value


class BusinessRecommendations(ReasonerRecord):
    immediate: str = ""
    short_term: str = ""
    long_term: str = ""


class BusinessInsights(ReasonerRecord):
    """Business reading of previously detected patterns.

    A list holding a malformed entry is dropped as a whole by the decoder,
    leaving that list empty rather than failing the reply.
    """

    key_aliases: ClassVar[dict[str, str]] = {"businessInsights": "insights"}

    insights: list[BusinessInsight] = Field(default_factory=list)
    opportunities: list[BusinessOpportunity] = Field(default_factory=list)
    risks: list[BusinessRisk] = Field(default_factory=list)
    recommendations: BusinessRecommendations = Field(default_factory=BusinessRecommendations)


# =============================================================================
# Data model
# =============================================================================

class ColumnDescriptor(BaseModel):
    """Schema summary for one column, immutable for a run."""

    model_config = ConfigDict(frozen=True)

    name: str = Field(..., description="Exact column name")
    type: ColumnType = Field(ColumnType.TEXT, description="TEXT, NUMBER or DATE")
    sample_value: Any = Field(None, description="One representative non-null value")
    unique_count: int = Field(0, ge=0)
    total_count: int = Field(0, ge=0)
    null_count: int = Field(0, ge=0)


class MatchedRow(BaseModel):
    """A row together with the annotation that selected it."""

    row_number: int = Field(..., ge=1, description="1-based position in the dataset")
    row: dict[str, Any]
    annotation: MatchAnnotation
    transformed: bool = False
    operations_applied: list[str] = Field(default_factory=list)
    category: str | None = None


class BatchResult(BaseModel):
    batch_number: int
    start_row: int
    end_row: int
    findings: list[str] = Field(default_factory=list)
    insights: str = ""
    matching_row_numbers: list[int] = Field(default_factory=list)


class CategoryRecord(BaseModel):
    """One taxonomy entry with usage statistics."""

    name: str
    count: int = Field(0, ge=0)
    exemplars: list[str] = Field(default_factory=list, max_length=10)
    description: str = ""
    confidence: float = Field(1.0, ge=0.0, le=1.0)
    provenance: Provenance = Provenance.DERIVED
    created_at: datetime = Field(default_factory=utc_now)


class ClassificationDecision(BaseModel):
    """Category assignment for one item; cached by content signature."""

    category: str
    confidence: float = Field(..., ge=0.0, le=1.0)
    reasoning: str = ""
    is_new: bool = False


class CategorySummary(BaseModel):
    name: str
    count: int
    percentage: float
    description: str = ""
    exemplars: list[str] = Field(default_factory=list)
    confidence: float
    provenance: Provenance
    created_at: datetime


class TaxonomyStatistics(BaseModel):
    total_categories: int = 0
    total_items: int = 0
    new_categories: int = 0
    predefined_categories: int = 0
    categories: list[CategorySummary] = Field(default_factory=list)


class TaxonomyUpdate(BaseModel):
    """Incremental taxonomy delta passed to ``on_update`` callbacks."""

    new_category_name: str | None = None
    all_category_names: list[str]
    current_stats: TaxonomyStatistics


class TaxonomySnapshot(BaseModel):
    """Serializable taxonomy state: categories, aliases and cache."""

    version: int = 1
    exported_at: datetime = Field(default_factory=utc_now)
    categories: dict[str, CategoryRecord] = Field(default_factory=dict)
    aliases: dict[str, str] = Field(default_factory=dict)
    cache: dict[str, ClassificationDecision] = Field(default_factory=dict)


class CategorizationResult(BaseModel):
    decisions: list[ClassificationDecision] = Field(default_factory=list)
    stats: TaxonomyStatistics
    category_names: list[str] = Field(default_factory=list)
    partial: bool = False


class AnalysisResult(BaseModel):
    """Outcome of one execution strategy."""

    method: AnalysisMethod
    question: str
    summary: str = ""
    insights: list[str] = Field(default_factory=list)

    # Row-level strategies
    matches: list[MatchedRow] = Field(default_factory=list)
    task_type: TaskType | None = None
    column_analysis: dict[str, ColumnPatternAnalysis] = Field(default_factory=dict)
    batches: list[BatchResult] = Field(default_factory=list)
    insight_summary: InsightSummary | None = None

    # Query-level strategies
    results: list[dict[str, Any]] = Field(default_factory=list)
    generated_query: str | None = None
    truncated: bool = False
    query_insights: QueryInsights | None = None
    deep_analysis: HybridInsights | None = None

    # Bookkeeping
    total_rows: int = 0
    skipped_items: int = 0
    partial: bool = False
    categorization: TaxonomyStatistics | None = None
