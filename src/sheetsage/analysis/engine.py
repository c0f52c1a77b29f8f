"""Execution engine: dispatches an ``AnalysisStrategy`` to its strategy class."""

from typing import Sequence

import structlog

from sheetsage.analysis.base import BaseStrategy
from sheetsage.analysis.batch import BatchAI
from sheetsage.analysis.hybrid import Hybrid
from sheetsage.analysis.patterns import PatternClassifier
from sheetsage.analysis.query import QueryComputational
from sheetsage.analysis.row_by_row import RowByRowAI
from sheetsage.config import AnalysisConfig
from sheetsage.contracts import AnalysisMethod, AnalysisResult, AnalysisStrategy, ColumnDescriptor
from sheetsage.llm.reasoner import Reasoner
from sheetsage.progress import CancellationToken, ProgressCallback
from sheetsage.sql.store import RelationalStore

logger = structlog.get_logger()


class ExecutionEngine:
    """Runs the strategy chosen by the selector.

    Usage:
        engine = ExecutionEngine(reasoner, store)
        result = engine.execute(question, columns, strategy)
    """

    def __init__(
        self,
        reasoner: Reasoner,
        store: RelationalStore,
        config: AnalysisConfig | None = None,
        classifier: PatternClassifier | None = None,
    ):
        self.reasoner = reasoner
        self.store = store
        self.config = config or AnalysisConfig()
        self.classifier = classifier or PatternClassifier(reasoner, self.config)

    def strategy_for(self, method: AnalysisMethod) -> BaseStrategy:
        if method == AnalysisMethod.ROW_BY_ROW_AI:
            return RowByRowAI(self.reasoner, self.store, self.config, self.classifier)
        if method == AnalysisMethod.BATCH_AI:
            return BatchAI(self.reasoner, self.store, self.config)
        if method == AnalysisMethod.QUERY_COMPUTATIONAL:
            return QueryComputational(self.reasoner, self.store, self.config)
        if method == AnalysisMethod.HYBRID:
            return Hybrid(self.reasoner, self.store, self.config)
        raise ValueError(f"Unsupported analysis method: {method}")

    def execute(
        self,
        question: str,
        columns: Sequence[ColumnDescriptor],
        strategy: AnalysisStrategy,
        *,
        on_progress: ProgressCallback | None = None,
        cancel_token: CancellationToken | None = None,
    ) -> AnalysisResult:
        """Execute ``strategy`` for ``question``.

        Raises:
            QueryValidationError: Generated query invalid after one repair
            QueryExecutionError: The store rejected the query
            DecodeError: A run-level reply (query insights) could not be decoded
            ProviderError: The reasoner or store failed at run level
        """
        runner = self.strategy_for(strategy.method)
        logger.info("Executing strategy", method=strategy.method.value, strategy=type(runner).__name__)
        return runner.run(
            question,
            columns,
            strategy,
            on_progress=on_progress,
            cancel_token=cancel_token,
        )
