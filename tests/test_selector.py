"""Tests for the strategy selector."""

import pytest

from sheetsage.analysis.selector import StrategySelector, forced_hybrid_keywords
from sheetsage.contracts import AnalysisMethod
from sheetsage.errors import ProviderError, StrategyError


def test_selects_decoded_strategy(scripted, sales_columns, sales_rows, fast_config):
    reasoner = scripted([
        {
            "method": "query_computational",
            "reasoning": "Aggregate question",
            "generated_query": 'SELECT SUM("Sales") FROM "dataset"',
        }
    ])

    strategy = StrategySelector(reasoner, fast_config).select("What are total sales?", sales_columns, sales_rows)

    assert strategy.method == AnalysisMethod.QUERY_COMPUTATIONAL
    assert strategy.generated_query == 'SELECT SUM("Sales") FROM "dataset"'
    assert reasoner.temperatures == [0.1]


def test_prompt_carries_question_schema_and_at_most_five_rows(scripted, sales_columns, fast_config):
    rows = [{"Region": f"R{i}", "Product": "P", "Sales": i, "Notes": ""} for i in range(1, 9)]
    reasoner = scripted([{"method": "batch_ai"}])

    StrategySelector(reasoner, fast_config).select("Which notes mention refunds?", sales_columns, rows)

    prompt = reasoner.prompts[0]
    assert 'Question: "Which notes mention refunds?"' in prompt
    assert '"Region", "Product", "Sales", "Notes"' in prompt
    assert "Row 5:" in prompt
    assert "Row 6:" not in prompt


def test_method_aliases_are_normalized(scripted, sales_columns, sales_rows, fast_config):
    reasoner = scripted([{"method": "Row-By-Row"}])

    strategy = StrategySelector(reasoner, fast_config).select("Find sad notes", sales_columns, sales_rows)

    assert strategy.method == AnalysisMethod.ROW_BY_ROW_AI


@pytest.mark.parametrize(
    "question",
    [
        "What is the optimal reorder quantity?",
        "Give me a picking list for the North region",
        "Which supplier has the lowest   cost?",
        "Build the minimum cost picking list for order 42",
    ],
)
def test_forced_keywords_override_to_hybrid(scripted, sales_columns, sales_rows, fast_config, question):
    reasoner = scripted([{"method": "query_computational", "generated_query": 'SELECT * FROM "dataset"'}])

    strategy = StrategySelector(reasoner, fast_config).select(question, sales_columns, sales_rows)

    assert strategy.method == AnalysisMethod.HYBRID
    assert strategy.generated_query == 'SELECT * FROM "dataset"'


def test_forced_hybrid_keywords_lists_matches():
    assert forced_hybrid_keywords("Recommend the cheapest option") == ["cheapest", "recommend"]
    assert forced_hybrid_keywords("Total sales by region") == []


def test_undecodable_reply_raises_strategy_error(scripted, sales_columns, sales_rows, fast_config):
    reasoner = scripted(["I think you should use SQL for this one."])

    with pytest.raises(StrategyError) as exc_info:
        StrategySelector(reasoner, fast_config).select("Total sales?", sales_columns, sales_rows)

    assert exc_info.value.raw_text == "I think you should use SQL for this one."


def test_unknown_method_raises_strategy_error(scripted, sales_columns, sales_rows, fast_config):
    reasoner = scripted([{"method": "magic"}])

    with pytest.raises(StrategyError):
        StrategySelector(reasoner, fast_config).select("Total sales?", sales_columns, sales_rows)


def test_provider_error_propagates(scripted, sales_columns, sales_rows, fast_config):
    reasoner = scripted([ProviderError(401, "bad key")])

    with pytest.raises(ProviderError) as exc_info:
        StrategySelector(reasoner, fast_config).select("Total sales?", sales_columns, sales_rows)

    assert exc_info.value.cause == "invalid credential"
