"""QueryComputational strategy: validated generated SQL plus one insight call.

Pipeline:
1. Clean and validate the generated query (read-only + aggregate guard)
2. On failure, exactly one repair call; the repaired query is re-validated
3. Execute, keep at most ``max_result_rows`` rows
4. One insight call over a sample of the rows (skipped for empty results)

Every failure here is fatal for the run.
"""

from typing import Sequence

import structlog

from sheetsage.analysis import prompts
from sheetsage.analysis.base import BaseStrategy
from sheetsage.contracts import (
    AnalysisMethod,
    AnalysisResult,
    AnalysisStrategy,
    ColumnDescriptor,
    QueryInsights,
)
from sheetsage.errors import ProviderError, QueryValidationError
from sheetsage.llm.reasoner import call_structured, call_text
from sheetsage.progress import (
    CancellationToken,
    ProgressCallback,
    ProgressMessages,
    ProgressTracker,
    is_cancelled,
)
from sheetsage.sql.guardrails import ValidationResult, clean_generated_query, validate_generated_query
from sheetsage.sql.store import run_query

logger = structlog.get_logger()


class QueryComputational(BaseStrategy):
    """Answer aggregate and statistical questions with generated SQL."""

    method = AnalysisMethod.QUERY_COMPUTATIONAL

    def prepare_query(
        self,
        question: str,
        columns: Sequence[ColumnDescriptor],
        strategy: AnalysisStrategy,
        tracker: ProgressTracker | None = None,
    ) -> str:
        """Validate the generated query, repairing it once if needed.

        Returns:
            A query that passed validation

        Raises:
            QueryValidationError: If the query and its repair both fail
        """
        query = clean_generated_query(strategy.generated_query or "")
        validation = validate_generated_query(query)
        if validation.is_valid:
            return query

        logger.warning("Generated query rejected", error=validation.error, query=query)
        if tracker is not None:
            tracker.advance(ProgressMessages.repairing_query())
        repaired = self._repair(question, columns, query, validation)

        revalidation = validate_generated_query(repaired)
        if not revalidation.is_valid:
            logger.error("Repaired query still invalid", error=revalidation.error, query=repaired)
            raise QueryValidationError(
                f"Query validation failed: {validation.error}. {validation.suggestion or ''}".strip(),
                query,
                repaired_query=repaired,
            )
        logger.info("Using repaired query", original=query, repaired=repaired)
        return repaired

    def _repair(
        self,
        question: str,
        columns: Sequence[ColumnDescriptor],
        query: str,
        validation: ValidationResult,
    ) -> str:
        prompt = prompts.QUERY_REPAIR_PROMPT.format(
            query=query or "(no query was generated)",
            error=validation.error,
            suggestion=validation.suggestion or "",
            schema=prompts.format_schema(columns),
            table_name=self.config.table_name,
            question=question,
        )
        try:
            return clean_generated_query(call_text(self.reasoner, prompt, temperature=0.1))
        except ProviderError as e:
            raise QueryValidationError(
                f"Query validation failed: {validation.error}; repair call failed: {e}",
                query,
            ) from e

    def run(
        self,
        question: str,
        columns: Sequence[ColumnDescriptor],
        strategy: AnalysisStrategy,
        *,
        on_progress: ProgressCallback | None = None,
        cancel_token: CancellationToken | None = None,
    ) -> AnalysisResult:
        tracker = ProgressTracker(2, on_progress)
        if is_cancelled(cancel_token):
            return AnalysisResult(method=self.method, question=question, partial=True)

        query = self.prepare_query(question, columns, strategy, tracker)

        tracker.advance(ProgressMessages.executing_query())
        logger.debug("Running generated query", query=query)
        result = run_query(self.store, query)
        truncated = result.row_count > self.config.max_result_rows
        rows = result.rows[:self.config.max_result_rows]
        if truncated:
            logger.warning(
                "Large result set truncated",
                rows=result.row_count,
                kept=self.config.max_result_rows,
            )
        logger.info("Query executed", rows=result.row_count)

        base = AnalysisResult(
            method=self.method,
            question=question,
            results=rows,
            generated_query=query,
            truncated=truncated,
            total_rows=result.row_count,
        )
        if not rows:
            tracker.finish()
            return base.model_copy(update={"summary": "No results found from the query."})
        if is_cancelled(cancel_token):
            return base.model_copy(
                update={"summary": f"Query returned {result.row_count} rows.", "partial": True}
            )

        tracker.advance(ProgressMessages.generating_insights())
        sample = rows[:self.config.insight_sample_rows]
        truncation_note = (
            f" (showing first {len(sample)} of {result.row_count} results)"
            if result.row_count > len(sample)
            else ""
        )
        prompt = prompts.QUERY_INSIGHTS_PROMPT.format(
            question=question,
            query=query,
            truncation_note=truncation_note,
            results=prompts.to_json(prompts.prompt_safe_rows(sample)),
            json_rules=prompts.JSON_RULES,
        )
        insights = call_structured(self.reasoner, prompt, QueryInsights, temperature=0.2)
        tracker.finish()

        return base.model_copy(
            update={
                "summary": insights.direct_answer
                or insights.summary
                or f"Query returned {result.row_count} results.",
                "insights": insights.insights,
                "query_insights": insights,
            }
        )
