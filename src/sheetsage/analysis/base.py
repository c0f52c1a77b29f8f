"""Base class for execution strategies.

Each strategy receives the question, the column descriptors and the chosen
``AnalysisStrategy``, reads the dataset table through the relational store,
and returns an ``AnalysisResult``.
"""

import time
from abc import ABC, abstractmethod
from typing import Any, Sequence

import structlog

from sheetsage.config import AnalysisConfig
from sheetsage.contracts import AnalysisMethod, AnalysisResult, AnalysisStrategy, ColumnDescriptor
from sheetsage.llm.reasoner import Reasoner
from sheetsage.progress import CancellationToken, ProgressCallback
from sheetsage.sql.store import RelationalStore, read_table

logger = structlog.get_logger()


class BaseStrategy(ABC):
    """Abstract base class for the four execution strategies.

    Subclasses must implement:
    - method: the AnalysisMethod they produce
    - run(): execute and return an AnalysisResult
    """

    method: AnalysisMethod

    def __init__(self, reasoner: Reasoner, store: RelationalStore, config: AnalysisConfig | None = None):
        self.reasoner = reasoner
        self.store = store
        self.config = config or AnalysisConfig()

    @abstractmethod
    def run(
        self,
        question: str,
        columns: Sequence[ColumnDescriptor],
        strategy: AnalysisStrategy,
        *,
        on_progress: ProgressCallback | None = None,
        cancel_token: CancellationToken | None = None,
    ) -> AnalysisResult:
        """Execute the strategy.

        Args:
            question: Natural-language question
            columns: Column descriptors of the dataset table
            strategy: Strategy chosen by the selector
            on_progress: Optional progress observer
            cancel_token: Checked before each reasoner call

        Returns:
            AnalysisResult for this method
        """
        ...

    def _load_rows(self) -> list[dict[str, Any]]:
        rows = read_table(self.store, self.config.table_name)
        logger.info("Loaded dataset rows", table=self.config.table_name, rows=len(rows))
        return rows

    @staticmethod
    def _pause(seconds: float) -> None:
        if seconds > 0:
            time.sleep(seconds)

    @staticmethod
    def _trace(item: int, state: str, **context: Any) -> None:
        """Debug trace of the per-item calling/decoding/recording states."""
        logger.debug("Item state", item=item, state=state, **context)
