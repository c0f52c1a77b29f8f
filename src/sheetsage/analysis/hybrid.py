"""Hybrid strategy: generated SQL narrows the data, then deeper reasoning.

The deep-analysis call only runs when the narrowed result has between 1 and
``hybrid_deep_analysis_threshold`` rows; larger results are returned as the
plain query result, unmodified.
"""

from typing import Sequence

import structlog

from sheetsage.analysis import prompts
from sheetsage.analysis.query import QueryComputational
from sheetsage.contracts import (
    AnalysisMethod,
    AnalysisResult,
    AnalysisStrategy,
    ColumnDescriptor,
    HybridInsights,
)
from sheetsage.llm.reasoner import call_structured
from sheetsage.progress import (
    CancellationToken,
    ProgressCallback,
    ProgressMessages,
    ProgressTracker,
    is_cancelled,
)

logger = structlog.get_logger()


class Hybrid(QueryComputational):
    method = AnalysisMethod.HYBRID

    def run(
        self,
        question: str,
        columns: Sequence[ColumnDescriptor],
        strategy: AnalysisStrategy,
        *,
        on_progress: ProgressCallback | None = None,
        cancel_token: CancellationToken | None = None,
    ) -> AnalysisResult:
        narrowed = super().run(
            question,
            columns,
            strategy,
            on_progress=on_progress,
            cancel_token=cancel_token,
        ).model_copy(update={"method": AnalysisMethod.QUERY_COMPUTATIONAL})

        count = narrowed.total_rows
        threshold = self.config.hybrid_deep_analysis_threshold
        if not 0 < count <= threshold:
            logger.info("Skipping deep analysis", rows=count, threshold=threshold)
            return narrowed
        if narrowed.partial or is_cancelled(cancel_token):
            return narrowed.model_copy(update={"partial": True})

        ProgressTracker(1, on_progress).advance(ProgressMessages.deep_analysis(count))
        sample = narrowed.results[:self.config.insight_sample_rows]
        prompt = prompts.HYBRID_PROMPT.format(
            question=question,
            row_count=count,
            query=narrowed.generated_query,
            truncation_note=f" (first {len(sample)} of {count})" if count > len(sample) else "",
            results=prompts.to_json(prompts.prompt_safe_rows(sample)),
            json_rules=prompts.JSON_RULES,
        )
        deep = call_structured(self.reasoner, prompt, HybridInsights, temperature=0.3)
        logger.info("Deep analysis complete", rows=count, patterns=len(deep.patterns))

        return narrowed.model_copy(
            update={
                "method": AnalysisMethod.HYBRID,
                "summary": deep.conclusion
                or f"Found {count} results with SQL, then analyzed them for deeper insights.",
                "insights": deep.insights or narrowed.insights,
                "deep_analysis": deep,
            }
        )
