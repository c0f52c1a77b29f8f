"""RowByRowAI strategy.

Every row is judged individually. The task type is detected first, in
priority order:

1. transformation: each row is planned, transformed and returned
2. column-specific: each column is analyzed once, then each cell is scored
3. holistic: the whole row is scored in one call

Per-row failures are logged and counted in ``skipped_items``; they never
abort the run. One summary call over the matched rows closes the run.
"""

import re
from typing import Any, Sequence

import structlog

from sheetsage.analysis import prompts
from sheetsage.analysis.base import BaseStrategy
from sheetsage.analysis.patterns import PatternClassifier
from sheetsage.config import AnalysisConfig
from sheetsage.contracts import (
    AnalysisMethod,
    AnalysisResult,
    AnalysisStrategy,
    ColumnDescriptor,
    ColumnPatternAnalysis,
    ColumnScopeCheck,
    InsightSummary,
    MatchAnnotation,
    MatchedRow,
    TaskType,
    TransformationCheck,
    TransformationPlan,
    TransformedRow,
)
from sheetsage.errors import ItemClassificationError, SheetSageError
from sheetsage.llm.reasoner import Reasoner, call_structured
from sheetsage.progress import (
    CancellationToken,
    ProgressCallback,
    ProgressMessages,
    ProgressTracker,
    is_cancelled,
)
from sheetsage.sql.store import RelationalStore

logger = structlog.get_logger()

TRANSFORMATION_KEYWORDS = (
    "sum",
    "calculate",
    "transform",
    "convert",
    "modify",
    "restructure",
    "return the whole sheet",
    "return back",
    "semicolon",
    "semi colon",
)

COLUMN_KEYWORDS = (
    "column",
    "columns",
    "field",
    "fields",
    "attribute",
    "attributes",
    "which columns",
    "what columns",
    "contain",
)

COLUMN_SCOPE_CONFIDENCE = 0.5
SUMMARY_SAMPLE_MATCHES = 5


def _has_keyword(question: str, keywords: Sequence[str]) -> bool:
    lowered = question.lower()
    return any(re.search(rf"\b{re.escape(kw)}\b", lowered) for kw in keywords)


class RowByRowAI(BaseStrategy):
    """Per-row reasoning with transformation, column-specific and holistic modes."""

    method = AnalysisMethod.ROW_BY_ROW_AI

    def __init__(
        self,
        reasoner: Reasoner,
        store: RelationalStore,
        config: AnalysisConfig | None = None,
        classifier: PatternClassifier | None = None,
    ):
        super().__init__(reasoner, store, config)
        self.classifier = classifier or PatternClassifier(reasoner, self.config)

    # ------------------------------------------------------------------
    # Task type detection
    # ------------------------------------------------------------------

    def is_transformation(
        self,
        question: str,
        columns: Sequence[ColumnDescriptor],
        sample_rows: Sequence[dict[str, Any]],
    ) -> bool:
        prompt = prompts.TRANSFORMATION_CHECK_PROMPT.format(
            question=question,
            columns=prompts.format_column_list(columns),
            sample_rows=prompts.format_rows(list(sample_rows)[:2]),
            json_rules=prompts.JSON_RULES,
        )
        try:
            check = call_structured(self.reasoner, prompt, TransformationCheck, temperature=0.1)
        except SheetSageError as e:
            detected = _has_keyword(question, TRANSFORMATION_KEYWORDS)
            logger.warning("Transformation check failed, using keywords", detected=detected, error=str(e))
            return detected
        decision = check.is_transformation and check.confidence > self.config.transformation_confidence_threshold
        logger.info(
            "Transformation check",
            is_transformation=check.is_transformation,
            confidence=check.confidence,
            decision=decision,
        )
        return decision

    def is_column_specific(self, question: str, columns: Sequence[ColumnDescriptor]) -> bool:
        prompt = prompts.COLUMN_SCOPE_PROMPT.format(
            question=question,
            columns=prompts.format_column_list(columns),
            json_rules=prompts.JSON_RULES,
        )
        try:
            check = call_structured(self.reasoner, prompt, ColumnScopeCheck, temperature=0.1)
        except SheetSageError as e:
            detected = _has_keyword(question, COLUMN_KEYWORDS)
            logger.warning("Column scope check failed, using keywords", detected=detected, error=str(e))
            return detected
        return check.is_column_specific and check.confidence >= COLUMN_SCOPE_CONFIDENCE

    def detect_task_type(
        self,
        question: str,
        columns: Sequence[ColumnDescriptor],
        sample_rows: Sequence[dict[str, Any]],
    ) -> TaskType:
        if self.is_transformation(question, columns, sample_rows):
            return TaskType.TRANSFORMATION
        if self.is_column_specific(question, columns):
            return TaskType.COLUMN_SPECIFIC
        return TaskType.HOLISTIC

    # ------------------------------------------------------------------
    # Run
    # ------------------------------------------------------------------

    def run(
        self,
        question: str,
        columns: Sequence[ColumnDescriptor],
        strategy: AnalysisStrategy,
        *,
        on_progress: ProgressCallback | None = None,
        cancel_token: CancellationToken | None = None,
    ) -> AnalysisResult:
        rows = self._load_rows()
        if not rows:
            return AnalysisResult(method=self.method, question=question, summary="No data found")
        if is_cancelled(cancel_token):
            return AnalysisResult(method=self.method, question=question, total_rows=len(rows), partial=True)

        task_type = self.detect_task_type(question, columns, rows)
        logger.info("Row-by-row task type", task_type=task_type.value, rows=len(rows))

        tracker = ProgressTracker(len(rows), on_progress)
        column_analysis: dict[str, ColumnPatternAnalysis] = {}
        if task_type == TaskType.TRANSFORMATION:
            matches, skipped, partial = self._run_transformation(question, rows, tracker, cancel_token)
        elif task_type == TaskType.COLUMN_SPECIFIC:
            tracker.set_total(len(rows) + len(columns))
            column_analysis, partial = self._analyze_columns(question, columns, rows, tracker, cancel_token)
            if partial:
                matches, skipped = [], 0
            else:
                matches, skipped, partial = self._run_column_specific(
                    question, rows, column_analysis, tracker, cancel_token
                )
        else:
            matches, skipped, partial = self._run_holistic(question, rows, tracker, cancel_token)

        insight = self._summarize(question, matches, column_analysis, len(rows), cancel_token)
        tracker.finish()
        logger.info(
            "Row-by-row analysis complete",
            task_type=task_type.value,
            total_rows=len(rows),
            matches=len(matches),
            skipped=skipped,
            partial=partial,
        )
        return AnalysisResult(
            method=self.method,
            question=question,
            summary=insight.summary,
            insights=insight.insights,
            matches=matches,
            task_type=task_type,
            column_analysis=column_analysis,
            insight_summary=insight,
            total_rows=len(rows),
            skipped_items=skipped,
            partial=partial or is_cancelled(cancel_token),
        )

    def _run_transformation(
        self,
        question: str,
        rows: list[dict[str, Any]],
        tracker: ProgressTracker,
        cancel_token: CancellationToken | None,
    ) -> tuple[list[MatchedRow], int, bool]:
        matches: list[MatchedRow] = []
        skipped = 0
        for number, row in enumerate(rows, start=1):
            if is_cancelled(cancel_token):
                return matches, skipped, True
            tracker.advance(ProgressMessages.transforming_row(number, len(rows)))
            self._trace(number, "calling", mode="transformation")

            try:
                plan = self._plan(question, row)
            except SheetSageError as e:
                logger.warning("Transformation plan failed, applying without plan", row=number, error=str(e))
                plan = TransformationPlan()

            try:
                transformed = self._apply(question, row, plan)
            except SheetSageError as e:
                logger.warning("Row transformation failed", row=number, error=str(e))
                skipped += 1
                continue

            self._trace(number, "recording", transformed=True)
            matches.append(
                MatchedRow(
                    row_number=number,
                    row={**row, **transformed.row},
                    annotation=MatchAnnotation(
                        matches=True,
                        confidence=transformed.confidence,
                        reasoning=transformed.reasoning,
                    ),
                    transformed=True,
                    operations_applied=transformed.operations_applied
                    or [op.operation for op in plan.operations],
                )
            )
            if number < len(rows):
                self._pause(self.config.holistic_pause_seconds)
        return matches, skipped, False

    def _plan(self, question: str, row: dict[str, Any]) -> TransformationPlan:
        prompt = prompts.TRANSFORMATION_PLAN_PROMPT.format(
            question=question,
            row=prompts.format_row(row),
            json_rules=prompts.JSON_RULES,
        )
        return call_structured(self.reasoner, prompt, TransformationPlan, temperature=0.1)

    def _apply(self, question: str, row: dict[str, Any], plan: TransformationPlan) -> TransformedRow:
        prompt = prompts.TRANSFORMATION_APPLY_PROMPT.format(
            question=question,
            row=prompts.format_row(row),
            plan=plan.model_dump_json(),
            json_rules=prompts.JSON_RULES,
        )
        transformed = call_structured(self.reasoner, prompt, TransformedRow, temperature=0.1)
        # The reply must be the row itself, so it has to keep at least one source column
        if not set(transformed.row) & set(row):
            raise ItemClassificationError("Transformed row shares no columns with the source row", row)
        return transformed

    def _analyze_columns(
        self,
        question: str,
        columns: Sequence[ColumnDescriptor],
        rows: list[dict[str, Any]],
        tracker: ProgressTracker,
        cancel_token: CancellationToken | None,
    ) -> tuple[dict[str, ColumnPatternAnalysis], bool]:
        analysis: dict[str, ColumnPatternAnalysis] = {}
        names = [col.name for col in columns] or list(rows[0])
        for index, name in enumerate(names, start=1):
            if is_cancelled(cancel_token):
                return analysis, True
            tracker.advance(ProgressMessages.analyzing_column(name, index, len(names)))
            values = [row.get(name) for row in rows if row.get(name) not in (None, "")]
            if not values:
                continue
            analysis[name] = self.classifier.analyze_column(values, name, f'User is asking: "{question}"')
        logger.info("Column analysis complete", columns=len(analysis))
        return analysis, False

    def _run_column_specific(
        self,
        question: str,
        rows: list[dict[str, Any]],
        column_analysis: dict[str, ColumnPatternAnalysis],
        tracker: ProgressTracker,
        cancel_token: CancellationToken | None,
    ) -> tuple[list[MatchedRow], int, bool]:
        matches: list[MatchedRow] = []
        skipped = 0
        for number, row in enumerate(rows, start=1):
            if is_cancelled(cancel_token):
                return matches, skipped, True
            tracker.advance(ProgressMessages.analyzing_row(number, len(rows)))
            try:
                best = self._best_cell_match(question, row, number, column_analysis, cancel_token)
            except ItemClassificationError as e:
                logger.warning("Row analysis failed", row=number, error=str(e))
                skipped += 1
                continue
            if best is not None:
                self._trace(number, "recording", column=best.matched_column, confidence=best.confidence)
                matches.append(MatchedRow(row_number=number, row=row, annotation=best))
            if number < len(rows):
                self._pause(self.config.column_pause_seconds)
        return matches, skipped, False

    def _best_cell_match(
        self,
        question: str,
        row: dict[str, Any],
        number: int,
        column_analysis: dict[str, ColumnPatternAnalysis],
        cancel_token: CancellationToken | None,
    ) -> MatchAnnotation | None:
        """Highest-confidence matching cell, or a holistic verdict if a cell fails."""
        best: MatchAnnotation | None = None
        for column, value in row.items():
            if value in (None, ""):
                continue
            if is_cancelled(cancel_token):
                break
            analysis = column_analysis.get(column)
            context = f"Column: {column}"
            if analysis is not None:
                context += f", type: {analysis.semantic_type}, format: {analysis.data_format}, notes: {analysis.insights}"
            self._trace(number, "calling", column=column)
            try:
                verdict = self.classifier.match_value(value, question, context)
            except ItemClassificationError as e:
                logger.warning("Cell match failed, falling back to whole row", row=number, column=column, error=str(e))
                fallback = self.classifier.match_row(row, question)
                if fallback.matches and (best is None or fallback.confidence > best.confidence):
                    best = fallback
                break
            if verdict.matches and (best is None or verdict.confidence > best.confidence):
                best = verdict.model_copy(update={"matched_column": column, "matched_value": str(value)})
        return best

    def _run_holistic(
        self,
        question: str,
        rows: list[dict[str, Any]],
        tracker: ProgressTracker,
        cancel_token: CancellationToken | None,
    ) -> tuple[list[MatchedRow], int, bool]:
        matches: list[MatchedRow] = []
        skipped = 0
        for number, row in enumerate(rows, start=1):
            if is_cancelled(cancel_token):
                return matches, skipped, True
            tracker.advance(ProgressMessages.analyzing_row(number, len(rows)))
            self._trace(number, "calling", mode="holistic")
            try:
                verdict = self.classifier.match_row(row, question)
            except ItemClassificationError as e:
                logger.warning("Row analysis failed", row=number, error=str(e))
                skipped += 1
                continue
            if verdict.matches:
                self._trace(number, "recording", confidence=verdict.confidence)
                matches.append(MatchedRow(row_number=number, row=row, annotation=verdict))
            if number < len(rows):
                self._pause(self.config.holistic_pause_seconds)
        return matches, skipped, False

    # ------------------------------------------------------------------
    # Summary
    # ------------------------------------------------------------------

    def _summarize(
        self,
        question: str,
        matches: list[MatchedRow],
        column_analysis: dict[str, ColumnPatternAnalysis],
        total_rows: int,
        cancel_token: CancellationToken | None,
    ) -> InsightSummary:
        fallback = InsightSummary(
            summary=f"Found {len(matches)} matching rows out of {total_rows} total rows",
            insights=[],
            recommendations=["Review the matching rows for detailed results"],
        )
        if not matches:
            return InsightSummary(summary=f"No matching rows found out of {total_rows} total rows")
        if is_cancelled(cancel_token):
            return fallback

        sample = "\n".join(
            f"{i}. Row {m.row_number}"
            + (f' {m.annotation.matched_column}: "{prompts.clean_cell(m.annotation.matched_value)}"'
               if m.annotation.matched_column else f": {prompts.format_row(m.row)}")
            + f" (confidence: {m.annotation.confidence:.2f})"
            for i, m in enumerate(matches[:SUMMARY_SAMPLE_MATCHES], start=1)
        )
        prompt = prompts.ROW_INSIGHTS_PROMPT.format(
            question=question,
            match_count=len(matches),
            total_rows=total_rows,
            column_analysis=prompts.format_column_analysis(column_analysis),
            sample_matches=sample,
            json_rules=prompts.JSON_RULES,
        )
        try:
            insight = call_structured(self.reasoner, prompt, InsightSummary, temperature=0.3)
        except SheetSageError as e:
            logger.warning("Summary call failed, using fallback summary", error=str(e))
            return fallback
        if not insight.summary:
            insight = insight.model_copy(update={"summary": fallback.summary})
        return insight
