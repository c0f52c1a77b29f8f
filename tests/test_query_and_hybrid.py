"""Tests for the QueryComputational and Hybrid strategies.

Covers:
- Validation, exactly one repair, and QueryValidationError after a failed repair
- Execution errors propagate
- Empty results skip the insight call
- Result truncation
- Hybrid deep analysis only for 1..threshold narrowed rows
"""

from dataclasses import replace

import pytest

from sheetsage.analysis.hybrid import Hybrid
from sheetsage.analysis.query import QueryComputational
from sheetsage.contracts import AnalysisMethod, AnalysisStrategy
from sheetsage.errors import DecodeError, ProviderError, QueryExecutionError, QueryValidationError
from sheetsage.progress import CancellationToken
from sheetsage.sql.store import DuckDBStore


def _query_strategy(sql, method=AnalysisMethod.QUERY_COMPUTATIONAL):
    return AnalysisStrategy(method=method, generated_query=sql)


INSIGHTS = {"summary": "North leads", "insights": ["North sold 320"], "direct_answer": "North"}


# ============================================================================
# QueryComputational
# ============================================================================

def test_valid_query_runs_and_summarizes(scripted, sales_store, sales_columns, fast_config):
    reasoner = scripted([INSIGHTS])
    sql = 'SELECT "Region", SUM("Sales") AS total FROM "dataset" GROUP BY "Region" ORDER BY total DESC'

    result = QueryComputational(reasoner, sales_store, fast_config).run(
        "Which region sells most?", sales_columns, _query_strategy(sql)
    )

    assert result.method == AnalysisMethod.QUERY_COMPUTATIONAL
    assert result.results[0] == {"Region": "North", "total": 320}
    assert result.total_rows == 4
    assert result.summary == "North"
    assert result.insights == ["North sold 320"]
    assert result.generated_query == sql
    assert reasoner.call_count == 1
    assert reasoner.temperatures == [0.2]


def test_fenced_query_is_cleaned(scripted, sales_store, sales_columns, fast_config):
    reasoner = scripted([INSIGHTS])

    result = QueryComputational(reasoner, sales_store, fast_config).run(
        "How many rows?", sales_columns, _query_strategy('```sql\nSELECT COUNT(*) AS n FROM "dataset";\n```')
    )

    assert result.generated_query == 'SELECT COUNT(*) AS n FROM "dataset"'
    assert result.results == [{"n": 5}]


def test_invalid_query_is_repaired_exactly_once(scripted, sales_store, sales_columns, fast_config):
    reasoner = scripted([
        'SELECT "Region", SUM("Sales") AS total FROM "dataset" GROUP BY "Region"',
        INSIGHTS,
    ])

    result = QueryComputational(reasoner, sales_store, fast_config).run(
        "Sales per region", sales_columns, _query_strategy('SELECT "Region", SUM("Sales") FROM "dataset"')
    )

    repair_prompts = reasoner.prompts_starting_with("Fix this SQL query.")
    assert len(repair_prompts) == 1
    assert "Aggregate functions used without GROUP BY" in repair_prompts[0]
    assert result.generated_query.endswith('GROUP BY "Region"')
    assert result.total_rows == 4


def test_failed_repair_raises_query_validation_error(scripted, sales_store, sales_columns, fast_config):
    reasoner = scripted(['SELECT "Region", MAX("Sales") FROM "dataset"'])

    with pytest.raises(QueryValidationError) as exc_info:
        QueryComputational(reasoner, sales_store, fast_config).run(
            "Sales per region", sales_columns, _query_strategy("DELETE FROM dataset")
        )

    assert exc_info.value.query == "DELETE FROM dataset"
    assert exc_info.value.repaired_query == 'SELECT "Region", MAX("Sales") FROM "dataset"'
    assert reasoner.call_count == 1


def test_missing_query_goes_through_repair(scripted, sales_store, sales_columns, fast_config):
    reasoner = scripted(['SELECT MAX("Sales") AS top FROM "dataset"', INSIGHTS])

    result = QueryComputational(reasoner, sales_store, fast_config).run(
        "Top sale?", sales_columns, _query_strategy(None)
    )

    assert "(no query was generated)" in reasoner.prompts[0]
    assert result.results == [{"top": 310}]


def test_repair_provider_error_becomes_validation_error(scripted, sales_store, sales_columns, fast_config):
    reasoner = scripted([ProviderError(503, "unavailable")])

    with pytest.raises(QueryValidationError):
        QueryComputational(reasoner, sales_store, fast_config).run(
            "Top sale?", sales_columns, _query_strategy("DROP TABLE dataset")
        )


def test_execution_error_propagates(scripted, sales_store, sales_columns, fast_config):
    reasoner = scripted()

    with pytest.raises(QueryExecutionError) as exc_info:
        QueryComputational(reasoner, sales_store, fast_config).run(
            "Revenue?", sales_columns, _query_strategy('SELECT "Revenue" FROM "dataset"')
        )

    assert "column" in str(exc_info.value).lower()
    assert reasoner.call_count == 0


def test_zero_rows_skip_insight_call(scripted, sales_store, sales_columns, fast_config):
    reasoner = scripted()

    result = QueryComputational(reasoner, sales_store, fast_config).run(
        "Anything over a million?", sales_columns, _query_strategy('SELECT * FROM "dataset" WHERE "Sales" > 1000000')
    )

    assert result.summary == "No results found from the query."
    assert result.results == []
    assert reasoner.call_count == 0


def test_large_results_are_truncated(scripted, sales_store, sales_columns, fast_config):
    reasoner = scripted([INSIGHTS])
    config = replace(fast_config, max_result_rows=2, insight_sample_rows=1)

    result = QueryComputational(reasoner, sales_store, config).run(
        "All rows", sales_columns, _query_strategy('SELECT * FROM "dataset"')
    )

    assert result.truncated
    assert len(result.results) == 2
    assert result.total_rows == 5
    assert "(showing first 1 of 5 results)" in reasoner.prompts[0]


def test_undecodable_insights_are_fatal(scripted, sales_store, sales_columns, fast_config):
    reasoner = scripted(["The answer is North."])

    with pytest.raises(DecodeError):
        QueryComputational(reasoner, sales_store, fast_config).run(
            "Top region?", sales_columns, _query_strategy('SELECT "Region" FROM "dataset" LIMIT 1')
        )


def test_cancelled_before_start_returns_partial(scripted, sales_store, sales_columns, fast_config):
    token = CancellationToken()
    token.cancel()
    reasoner = scripted()

    result = QueryComputational(reasoner, sales_store, fast_config).run(
        "Top region?", sales_columns, _query_strategy('SELECT "Region" FROM "dataset"'), cancel_token=token
    )

    assert result.partial
    assert reasoner.call_count == 0


# ============================================================================
# Hybrid
# ============================================================================

DEEP = {
    "patterns": ["North dominates"],
    "insights": ["Reorder widgets first"],
    "conclusion": "Prioritize the North region",
    "recommendations": ["Stock up"],
}


def _wide_store(n):
    return DuckDBStore.from_records([{"id": i, "score": i % 7} for i in range(1, n + 1)])


def test_hybrid_runs_deep_analysis_on_small_results(scripted, sales_store, sales_columns, fast_config):
    reasoner = scripted([INSIGHTS, DEEP])

    result = Hybrid(reasoner, sales_store, fast_config).run(
        "What is the optimal region to restock?",
        sales_columns,
        _query_strategy('SELECT * FROM "dataset" WHERE "Region" = \'North\'', AnalysisMethod.HYBRID),
    )

    assert result.method == AnalysisMethod.HYBRID
    assert result.summary == "Prioritize the North region"
    assert result.insights == ["Reorder widgets first"]
    assert result.deep_analysis.patterns == ["North dominates"]
    assert result.query_insights.direct_answer == "North"
    assert reasoner.prompts[1].startswith('Analyze these SQL results for: "What is the optimal region to restock?"')
    assert reasoner.temperatures == [0.2, 0.3]


@pytest.mark.parametrize("rows, deep_expected", [(100, True), (101, False)])
def test_hybrid_threshold(scripted, sales_columns, fast_config, rows, deep_expected):
    store = _wide_store(rows)
    reasoner = scripted([INSIGHTS, DEEP])

    result = Hybrid(reasoner, store, fast_config).run(
        "Best ids?", [], _query_strategy('SELECT * FROM "dataset"', AnalysisMethod.HYBRID)
    )

    assert result.total_rows == rows
    if deep_expected:
        assert result.method == AnalysisMethod.HYBRID
        assert result.deep_analysis is not None
        assert reasoner.call_count == 2
    else:
        assert result.method == AnalysisMethod.QUERY_COMPUTATIONAL
        assert result.deep_analysis is None
        assert result.summary == "North"
        assert reasoner.call_count == 1


def test_hybrid_with_empty_result_skips_both_calls(scripted, sales_store, sales_columns, fast_config):
    reasoner = scripted()

    result = Hybrid(reasoner, sales_store, fast_config).run(
        "Cheapest product over a million?",
        sales_columns,
        _query_strategy('SELECT * FROM "dataset" WHERE "Sales" > 1000000', AnalysisMethod.HYBRID),
    )

    assert result.method == AnalysisMethod.QUERY_COMPUTATIONAL
    assert result.summary == "No results found from the query."
    assert reasoner.call_count == 0


def test_hybrid_deep_analysis_failure_is_fatal(scripted, sales_store, sales_columns, fast_config):
    reasoner = scripted([INSIGHTS, ProviderError(429, "slow down")])

    with pytest.raises(ProviderError):
        Hybrid(reasoner, sales_store, fast_config).run(
            "Cheapest region?",
            sales_columns,
            _query_strategy('SELECT * FROM "dataset"', AnalysisMethod.HYBRID),
        )
