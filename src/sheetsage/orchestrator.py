"""Run orchestration for one analysis question.

Flow: Idle → StrategySelected → Executing → Summarizing → Done

Key features:
- Column descriptors are profiled from the store when the caller has none
- Selector and run-level failures move the run to Error and are re-raised
- Matched rows of loop strategies can be categorized through the taxonomy
- Every transition is recorded in ``AnalysisRun.transitions``
"""

import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Sequence

import structlog
from pydantic import BaseModel, Field

from sheetsage.analysis.engine import ExecutionEngine
from sheetsage.analysis.selector import StrategySelector
from sheetsage.config import AnalysisConfig
from sheetsage.contracts import (
    AnalysisMethod,
    AnalysisResult,
    AnalysisStrategy,
    CategorizationResult,
    ColumnDescriptor,
    utc_now,
)
from sheetsage.errors import SheetSageError
from sheetsage.io.profile import describe_columns
from sheetsage.llm.reasoner import Reasoner
from sheetsage.progress import CancellationToken, ProgressCallback, ProgressMessages, ProgressTracker
from sheetsage.sql.store import RelationalStore, read_table
from sheetsage.taxonomy.manager import TaxonomyManager, UpdateCallback

logger = structlog.get_logger()


class RunState(str, Enum):
    IDLE = "idle"
    STRATEGY_SELECTED = "strategy_selected"
    EXECUTING = "executing"
    SUMMARIZING = "summarizing"
    DONE = "done"
    ERROR = "error"


class RunTransition(BaseModel):
    state: RunState
    at: datetime = Field(default_factory=utc_now)
    detail: str = ""


class AnalysisRun(BaseModel):
    """One question's trip through selection and execution."""

    run_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    question: str
    strategy: AnalysisStrategy | None = None
    result: AnalysisResult | None = None
    state: RunState = RunState.IDLE
    transitions: list[RunTransition] = Field(default_factory=list)
    error: str | None = None

    def move_to(self, state: RunState, detail: str = "") -> None:
        self.state = state
        self.transitions.append(RunTransition(state=state, detail=detail))
        logger.info("Run transition", run_id=self.run_id, state=state.value, detail=detail or None)


@dataclass
class CategorizationOptions:
    """Categorize matched rows after a row-by-row or batch run."""

    predefined_categories: Sequence[str] = field(default_factory=tuple)
    naming_format: str | None = None
    context: str = ""


_CATEGORIZABLE_METHODS = (AnalysisMethod.ROW_BY_ROW_AI, AnalysisMethod.BATCH_AI)


class AnalysisOrchestrator:
    """Select a strategy, execute it and post-process the result.

    Usage:
        orchestrator = AnalysisOrchestrator(LLMReasoner(), DuckDBStore("data.duckdb"))
        run = orchestrator.analyze("Which customers churned?")
        print(run.result.summary)
    """

    def __init__(
        self,
        reasoner: Reasoner,
        store: RelationalStore,
        config: AnalysisConfig | None = None,
        taxonomy: TaxonomyManager | None = None,
    ):
        self.reasoner = reasoner
        self.store = store
        self.config = config or AnalysisConfig()
        self.taxonomy = taxonomy
        self.selector = StrategySelector(reasoner, self.config)
        self.engine = ExecutionEngine(reasoner, store, self.config)

    def describe_columns(self) -> list[ColumnDescriptor]:
        return describe_columns(self.store, self.config.table_name)

    def sample_rows(self, n: int | None = None) -> list[dict[str, Any]]:
        return read_table(self.store, self.config.table_name, limit=n or self.config.selector_sample_rows)

    def get_taxonomy(self) -> TaxonomyManager:
        if self.taxonomy is None:
            self.taxonomy = TaxonomyManager(self.reasoner)
        return self.taxonomy

    def analyze(
        self,
        question: str,
        columns: Sequence[ColumnDescriptor] | None = None,
        *,
        strategy: AnalysisStrategy | None = None,
        on_progress: ProgressCallback | None = None,
        cancel_token: CancellationToken | None = None,
        categorize: CategorizationOptions | None = None,
    ) -> AnalysisRun:
        """Answer ``question`` about the dataset table.

        Args:
            question: Natural-language question
            columns: Column descriptors; profiled from the store when omitted
            strategy: Skip selection and run this strategy
            on_progress: Optional progress observer
            cancel_token: Cooperative cancellation flag
            categorize: Categorize matched rows (row-by-row and batch only)

        Returns:
            AnalysisRun in state DONE

        Raises:
            StrategyError, QueryValidationError, QueryExecutionError,
            DecodeError, ProviderError: After the run is moved to ERROR
        """
        run = AnalysisRun(question=question)
        logger.info("Starting analysis", run_id=run.run_id, question=question)
        try:
            if columns is None:
                columns = self.describe_columns()

            if strategy is None:
                ProgressTracker(1, on_progress).update(0, ProgressMessages.selecting_strategy())
                strategy = self.selector.select(question, columns, self.sample_rows())
            run.strategy = strategy
            run.move_to(RunState.STRATEGY_SELECTED, strategy.method.value)

            run.move_to(RunState.EXECUTING)
            result = self.engine.execute(
                question,
                columns,
                strategy,
                on_progress=on_progress,
                cancel_token=cancel_token,
            )

            run.move_to(RunState.SUMMARIZING)
            if categorize is not None:
                result = self._categorize_matches(result, categorize, cancel_token)
            run.result = result
        except Exception as e:
            run.error = str(e)
            run.move_to(RunState.ERROR, type(e).__name__)
            logger.error("Analysis failed", run_id=run.run_id, error_type=type(e).__name__, error=str(e))
            raise

        run.move_to(RunState.DONE, "partial" if result.partial else "")
        return run

    def _categorize_matches(
        self,
        result: AnalysisResult,
        options: CategorizationOptions,
        cancel_token: CancellationToken | None,
    ) -> AnalysisResult:
        if result.method not in _CATEGORIZABLE_METHODS or not result.matches:
            return result
        try:
            categorized = self.get_taxonomy().categorize(
                [m.row for m in result.matches],
                predefined_categories=options.predefined_categories,
                context=options.context or result.question,
                naming_format=options.naming_format,
                cancel_token=cancel_token,
            )
        except SheetSageError as e:
            logger.warning("Categorization of matched rows failed", error=str(e))
            return result

        matches = [
            m.model_copy(update={"category": d.category})
            for m, d in zip(result.matches, categorized.decisions)
        ]
        matches.extend(result.matches[len(categorized.decisions):])
        return result.model_copy(
            update={
                "matches": matches,
                "categorization": categorized.stats,
                "partial": result.partial or categorized.partial,
            }
        )

    def categorize(
        self,
        items: Sequence[Any],
        predefined_categories: Sequence[str] = (),
        context: str = "",
        naming_format: str | None = None,
        on_update: UpdateCallback | None = None,
        cancel_token: CancellationToken | None = None,
        on_progress: ProgressCallback | None = None,
    ) -> CategorizationResult:
        """Categorize arbitrary items through the taxonomy manager."""
        return self.get_taxonomy().categorize(
            items,
            predefined_categories=predefined_categories,
            context=context,
            on_update=on_update,
            naming_format=naming_format,
            cancel_token=cancel_token,
            on_progress=on_progress,
        )
