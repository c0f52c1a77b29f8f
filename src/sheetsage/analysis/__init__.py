"""Strategy selection and execution."""

from sheetsage.analysis.batch import BatchAI
from sheetsage.analysis.engine import ExecutionEngine
from sheetsage.analysis.hybrid import Hybrid
from sheetsage.analysis.patterns import PatternClassifier
from sheetsage.analysis.query import QueryComputational
from sheetsage.analysis.row_by_row import RowByRowAI
from sheetsage.analysis.selector import StrategySelector

__all__ = [
    "BatchAI",
    "ExecutionEngine",
    "Hybrid",
    "PatternClassifier",
    "QueryComputational",
    "RowByRowAI",
    "StrategySelector",
]
