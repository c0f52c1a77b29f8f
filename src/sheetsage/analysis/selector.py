"""Strategy selector.

Classifies a question into one of the four execution methods with a single
reasoner call. There is no default strategy: if the reply cannot be decoded
the run fails with ``StrategyError``.
"""

import re
from typing import Any, Sequence

import structlog

from sheetsage.analysis import prompts
from sheetsage.config import AnalysisConfig
from sheetsage.contracts import AnalysisMethod, AnalysisStrategy, ColumnDescriptor
from sheetsage.errors import DecodeError, StrategyError
from sheetsage.llm.reasoner import Reasoner, call_structured

logger = structlog.get_logger()

# Questions with these phrases need business-rule reasoning that pure SQL
# tends to get wrong, so they always run as hybrid.
FORCED_HYBRID_KEYWORDS = (
    "optimal",
    "optimize",
    "optimise",
    "minimum cost",
    "lowest cost",
    "cheapest",
    "best price",
    "picking list",
    "recommendation",
    "recommend",
)


def forced_hybrid_keywords(question: str) -> list[str]:
    """Forced-hybrid phrases present in ``question``."""
    lowered = re.sub(r"\s+", " ", question.lower())
    return [kw for kw in FORCED_HYBRID_KEYWORDS if kw in lowered]


class StrategySelector:
    """Choose an ``AnalysisStrategy`` for a question."""

    def __init__(self, reasoner: Reasoner, config: AnalysisConfig | None = None):
        self.reasoner = reasoner
        self.config = config or AnalysisConfig()

    def build_prompt(
        self,
        question: str,
        columns: Sequence[ColumnDescriptor],
        sample_rows: Sequence[dict[str, Any]],
    ) -> str:
        return prompts.STRATEGY_PROMPT.format(
            question=question,
            schema=prompts.format_schema(columns),
            column_names=prompts.format_column_names(columns),
            sample_rows=prompts.format_rows(list(sample_rows)[:self.config.selector_sample_rows]),
            table_name=self.config.table_name,
            json_rules=prompts.JSON_RULES,
        )

    def select(
        self,
        question: str,
        columns: Sequence[ColumnDescriptor],
        sample_rows: Sequence[dict[str, Any]],
    ) -> AnalysisStrategy:
        """Pick the execution method for ``question``.

        Args:
            question: Natural-language question
            columns: Column descriptors of the dataset table
            sample_rows: A few representative rows (at most 5 are used)

        Returns:
            Frozen AnalysisStrategy

        Raises:
            StrategyError: If the reasoner reply cannot be decoded
            ProviderError: If the reasoner call fails
        """
        prompt = self.build_prompt(question, columns, sample_rows)
        logger.debug("Selecting strategy", question=question, columns=len(columns), prompt_chars=len(prompt))

        try:
            strategy = call_structured(self.reasoner, prompt, AnalysisStrategy, temperature=0.1)
        except DecodeError as e:
            logger.error(
                "Strategy reply could not be decoded",
                parser_message=e.parser_message,
                recovery_attempts=e.recovery_attempts,
            )
            raise StrategyError(
                f"Could not decode an analysis strategy: {e.parser_message}",
                raw_text=e.raw_text,
                recovery_attempts=e.recovery_attempts,
            ) from e

        forced = forced_hybrid_keywords(question)
        if forced and strategy.method != AnalysisMethod.HYBRID:
            logger.info("Forcing hybrid strategy", chosen=strategy.method.value, keywords=forced)
            strategy = strategy.model_copy(update={"method": AnalysisMethod.HYBRID})

        logger.info(
            "Strategy selected",
            method=strategy.method.value,
            has_query=bool(strategy.generated_query),
            batch_size=strategy.batch_size,
        )
        return strategy
