"""BatchAI strategy: fixed-size batches of rows, one reasoner call each."""

from typing import Sequence

import structlog

from sheetsage.analysis import prompts
from sheetsage.analysis.base import BaseStrategy
from sheetsage.contracts import (
    AnalysisMethod,
    AnalysisResult,
    AnalysisStrategy,
    BatchFinding,
    BatchResult,
    ColumnDescriptor,
    MatchAnnotation,
    MatchedRow,
)
from sheetsage.errors import SheetSageError
from sheetsage.llm.reasoner import call_structured
from sheetsage.progress import (
    CancellationToken,
    ProgressCallback,
    ProgressMessages,
    ProgressTracker,
    is_cancelled,
)

logger = structlog.get_logger()


class BatchAI(BaseStrategy):
    """Send compact tables of rows with the strategy's prompt template.

    The reply names matching rows by their 1-based number inside the batch;
    numbers outside the batch are ignored. A failed batch is logged,
    counted in ``skipped_items`` and skipped.
    """

    method = AnalysisMethod.BATCH_AI

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

        batch_size = strategy.batch_size or self.config.default_batch_size
        column_names = [col.name for col in columns] or list(rows[0])
        instructions = strategy.prompt_template or f'Analyze this batch of data for: "{question}"'
        batch_count = (len(rows) + batch_size - 1) // batch_size
        tracker = ProgressTracker(batch_count, on_progress)

        batches: list[BatchResult] = []
        matches: list[MatchedRow] = []
        skipped = 0
        partial = False

        for batch_number, start in enumerate(range(0, len(rows), batch_size), start=1):
            if is_cancelled(cancel_token):
                partial = True
                break
            batch = rows[start:start + batch_size]
            tracker.advance(ProgressMessages.processing_batch(batch_number, batch_count))
            prompt = prompts.BATCH_PROMPT.format(
                instructions=instructions,
                row_count=len(batch),
                table=prompts.format_batch_table(batch, column_names),
                json_rules=prompts.JSON_RULES,
            )

            self._trace(batch_number, "calling", rows=len(batch))
            try:
                finding = call_structured(self.reasoner, prompt, BatchFinding, temperature=0.3)
            except SheetSageError as e:
                logger.warning("Batch analysis failed", batch=batch_number, error=str(e))
                skipped += 1
                continue

            in_range = sorted({n for n in finding.matching_row_numbers if 1 <= n <= len(batch)})
            ignored = [n for n in finding.matching_row_numbers if not 1 <= n <= len(batch)]
            if ignored:
                logger.debug("Ignored out-of-range row numbers", batch=batch_number, numbers=ignored)

            self._trace(batch_number, "recording", matches=len(in_range))
            batches.append(
                BatchResult(
                    batch_number=batch_number,
                    start_row=start + 1,
                    end_row=start + len(batch),
                    findings=finding.findings,
                    insights=finding.insights,
                    matching_row_numbers=in_range,
                )
            )
            matches.extend(
                MatchedRow(
                    row_number=start + n,
                    row=batch[n - 1],
                    annotation=MatchAnnotation(matches=True, confidence=1.0, reasoning=finding.insights),
                )
                for n in in_range
            )

            if start + batch_size < len(rows):
                self._pause(self.config.batch_pause_seconds)

        tracker.finish()
        insights = [f for b in batches for f in b.findings]
        summary = f"Analyzed {len(rows)} rows in {len(batches)} batches; {len(matches)} rows matched."
        if skipped:
            summary += f" {skipped} batch(es) failed and were skipped."
        logger.info(
            "Batch analysis complete",
            rows=len(rows),
            batches=len(batches),
            failed_batches=skipped,
            matches=len(matches),
            partial=partial,
        )
        return AnalysisResult(
            method=self.method,
            question=question,
            summary=summary,
            insights=insights,
            matches=matches,
            batches=batches,
            total_rows=len(rows),
            skipped_items=skipped,
            partial=partial,
        )
