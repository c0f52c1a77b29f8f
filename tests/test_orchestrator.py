"""Tests for run orchestration."""

import pytest

from sheetsage.contracts import AnalysisMethod, AnalysisStrategy
from sheetsage.errors import StrategyError
from sheetsage.orchestrator import AnalysisOrchestrator, CategorizationOptions, RunState

INSIGHTS = {"summary": "North leads", "insights": ["North sold 320"], "direct_answer": "North"}


def test_selected_query_run_reaches_done(scripted, sales_store, fast_config):
    reasoner = scripted([
        {
            "method": "sql",
            "reasoning": "Aggregation",
            "sqlQuery": 'SELECT "Region", SUM("Sales") AS total FROM "dataset" GROUP BY "Region"',
        },
        INSIGHTS,
    ])
    events = []

    run = AnalysisOrchestrator(reasoner, sales_store, fast_config).analyze(
        "Total sales by region", on_progress=events.append
    )

    assert run.state == RunState.DONE
    assert [t.state for t in run.transitions] == [
        RunState.STRATEGY_SELECTED,
        RunState.EXECUTING,
        RunState.SUMMARIZING,
        RunState.DONE,
    ]
    assert run.strategy.method == AnalysisMethod.QUERY_COMPUTATIONAL
    assert run.result.total_rows == 4
    assert reasoner.prompts[0].startswith("Analyze this data question")
    assert '"Sales" (NUMBER' in reasoner.prompts[0]
    assert events[0].message == "Choosing an analysis strategy"


def test_selector_failure_moves_run_to_error(scripted, sales_store, fast_config):
    reasoner = scripted(["I would use SQL for this."])

    with pytest.raises(StrategyError):
        AnalysisOrchestrator(reasoner, sales_store, fast_config).analyze("Total sales by region")


def test_explicit_strategy_skips_selection(scripted, sales_store, sales_columns, fast_config):
    reasoner = scripted([INSIGHTS])
    strategy = AnalysisStrategy(
        method=AnalysisMethod.QUERY_COMPUTATIONAL,
        generated_query='SELECT COUNT(*) AS n FROM "dataset"',
    )

    run = AnalysisOrchestrator(reasoner, sales_store, fast_config).analyze(
        "How many rows?", sales_columns, strategy=strategy
    )

    assert run.result.results == [{"n": 5}]
    assert reasoner.call_count == 1


def test_matched_rows_are_categorized(scripted, sales_store, sales_columns, fast_config):
    def handler(prompt):
        if prompt.startswith("Tag this data item"):
            return {"category": "Escalation", "is_existing": True, "reasoning": "urgent"}
        return {"findings": ["two urgent notes"], "matching_row_numbers": [1, 3]}

    reasoner = scripted(handler=handler)
    strategy = AnalysisStrategy(method=AnalysisMethod.BATCH_AI, batch_size=10, prompt_template="Flag urgent notes")

    run = AnalysisOrchestrator(reasoner, sales_store, fast_config).analyze(
        "Which notes are urgent?",
        sales_columns,
        strategy=strategy,
        categorize=CategorizationOptions(predefined_categories=["Escalation", "Routine"]),
    )

    assert [m.category for m in run.result.matches] == ["Escalation", "Escalation"]
    assert run.result.categorization.total_items == 2
    assert "Context: Which notes are urgent?" in reasoner.prompts_starting_with("Tag this data item")[0]


def test_categorize_items_directly(scripted, sales_store, fast_config):
    reasoner = scripted(['"Hardware"'])

    result = AnalysisOrchestrator(reasoner, sales_store, fast_config).categorize(["M4 hex bolt"])

    assert result.decisions[0].category == "Hardware"
