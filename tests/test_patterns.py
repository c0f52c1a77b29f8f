"""Tests for the pattern and similarity classifier."""

import pytest

from sheetsage.analysis.patterns import PatternClassifier, heuristic_column_analysis
from sheetsage.errors import ItemClassificationError, ProviderError


def test_analyze_column_is_cached_per_sample(scripted, fast_config):
    reasoner = scripted([{"semantic_type": "email", "data_format": "user@domain", "patterns": "emails"}])
    classifier = PatternClassifier(reasoner, fast_config)
    values = ["a@x.com", "b@y.org"]

    first = classifier.analyze_column(values, "Contact")
    second = classifier.analyze_column(values, "Contact")

    assert first.column == "Contact"
    assert first.semantic_type == "email"
    assert first.patterns == ["emails"]
    assert second is first
    assert reasoner.call_count == 1


def test_analyze_column_falls_back_to_heuristics(scripted, fast_config):
    reasoner = scripted([ProviderError(None, "down"), ProviderError(None, "down")])
    classifier = PatternClassifier(reasoner, fast_config)

    analysis = classifier.analyze_column(["1,200", "35", "7.5"], "Amount")
    classifier.analyze_column(["1,200", "35", "7.5"], "Amount")

    assert analysis.semantic_type == "numeric"
    assert analysis.confidence == 0.5
    assert reasoner.call_count == 2


@pytest.mark.parametrize(
    "values, expected",
    [
        (["a@x.com", "hello"], "email"),
        (["1", "2.5", "-3"], "numeric"),
        (["x" * 60, "y" * 70], "long_text"),
        (["red", "blue"], "categorical"),
    ],
)
def test_heuristic_column_analysis(values, expected):
    assert heuristic_column_analysis(values, "col").semantic_type == expected


def test_match_value_fills_matched_value(scripted, fast_config):
    reasoner = scripted([{"matches": True, "confidence": 0.92, "reasoning": "looks like French"}])

    annotation = PatternClassifier(reasoner, fast_config).match_value("Bonjour", "French text")

    assert annotation.matches
    assert annotation.matched_value == "Bonjour"
    assert 'Value: "Bonjour"' in reasoner.prompts[0]


def test_match_value_failure_raises_item_error(scripted, fast_config):
    reasoner = scripted(["no idea"])

    with pytest.raises(ItemClassificationError) as exc_info:
        PatternClassifier(reasoner, fast_config).match_value("Bonjour", "French text")

    assert exc_info.value.item == "Bonjour"


def test_match_row_failure_raises_item_error(scripted, fast_config):
    reasoner = scripted([ProviderError(500, "boom")])

    with pytest.raises(ItemClassificationError):
        PatternClassifier(reasoner, fast_config).match_row({"a": 1}, "Is a positive?")


def test_classify_values_batches_of_ten(scripted, fast_config):
    def handler(prompt):
        count = sum(1 for line in prompt.splitlines() if line[:1].isdigit() and '. "' in line)
        return {"classifications": [{"category": "even", "confidence": 0.9}] * count}

    reasoner = scripted(handler=handler)
    values = [str(i) for i in range(23)]

    results = PatternClassifier(reasoner, fast_config).classify_values(values, ["even", "odd"])

    assert reasoner.call_count == 3
    assert len(results) == 23
    assert [r.value for r in results] == values
    assert all(r.category == "even" for r in results)


def test_classify_values_marks_failed_batch_unknown(scripted, fast_config):
    reasoner = scripted([ProviderError(500, "boom")])

    results = PatternClassifier(reasoner, fast_config).classify_values(["x", "y"], ["a", "b"])

    assert [(r.value, r.category) for r in results] == [("x", "unknown"), ("y", "unknown")]


def test_classify_values_aligns_by_value_on_count_mismatch(scripted, fast_config):
    reasoner = scripted([{"classifications": [{"value": "y", "category": "b", "confidence": 0.7}]}])

    results = PatternClassifier(reasoner, fast_config).classify_values(["x", "y"], ["a", "b"])

    assert [(r.value, r.category) for r in results] == [("x", "unknown"), ("y", "b")]


def test_find_similar_filters_and_sorts(scripted, fast_config):
    reasoner = scripted([
        {
            "scores": [
                {"index": 1, "score": 0.75, "reasoning": "close"},
                {"index": 2, "score": 0.2},
                {"index": 3, "score": 0.95, "reasoning": "same"},
                {"index": 9, "score": 1.0},
            ]
        }
    ])

    similar = PatternClassifier(reasoner, fast_config).find_similar("NYC", ["New York", "Boston", "New York City"])

    assert [s.value for s in similar] == ["New York City", "New York"]
    assert similar[0].score == 0.95


def test_find_similar_returns_empty_on_failure(scripted, fast_config):
    reasoner = scripted(["???"])

    assert PatternClassifier(reasoner, fast_config).find_similar("NYC", ["New York"]) == []


def test_validate_values_reports_invalid(scripted, fast_config):
    reasoner = scripted([
        {"valid_count": 1, "invalid_values": [{"value": "abc", "reason": "not a date"}], "summary": "1 bad value"}
    ])

    report = PatternClassifier(reasoner, fast_config).validate_values(["2024-01-01", "abc"], "ISO dates")

    assert report.valid_count == 1
    assert report.invalid_values[0].value == "abc"


def test_validate_values_degrades_on_failure(scripted, fast_config):
    reasoner = scripted([ProviderError(503, "busy")])

    report = PatternClassifier(reasoner, fast_config).validate_values(["abc"], "ISO dates")

    assert report.summary.startswith("Validation unavailable")


def test_extract_business_insights_reads_camel_case_reply(scripted, fast_config):
    reasoner = scripted([{
        "businessInsights": [
            {"insight": "North drives most revenue", "impact": "concentration", "confidence": 0.8},
        ],
        "opportunities": [{"opportunity": "Expand East", "requirements": "sales hires"}],
        "risks": [{"risk": "Single-region dependence", "severity": "High", "mitigation": "diversify"}],
        "recommendations": {"immediate": "review North pricing", "shortTerm": "pilot East", "longTerm": "rebalance"},
    }])
    classifier = PatternClassifier(reasoner, fast_config)
    patterns = {"Region": heuristic_column_analysis(["North", "South"], "Region")}

    insights = classifier.extract_business_insights(patterns, "regional sales", "grow revenue")

    assert insights.insights[0].insight == "North drives most revenue"
    assert insights.opportunities[0].opportunity == "Expand East"
    assert insights.risks[0].severity == "high"
    assert insights.recommendations.short_term == "pilot East"
    assert insights.recommendations.long_term == "rebalance"
    assert reasoner.temperatures == [0.3]
    assert '"semantic_type": "categorical"' in reasoner.prompts[0]
    assert "User Goals: grow revenue" in reasoner.prompts[0]


def test_extract_business_insights_drops_malformed_list(scripted, fast_config):
    reasoner = scripted([{
        "insights": [{"insight": "Gadgets sell in pairs"}],
        "risks": [{"severity": "low"}],
    }])

    insights = PatternClassifier(reasoner, fast_config).extract_business_insights(["paired purchases"])

    assert [i.insight for i in insights.insights] == ["Gadgets sell in pairs"]
    assert insights.risks == []


def test_extract_business_insights_degrades_on_failure(scripted, fast_config):
    reasoner = scripted([ProviderError(503, "busy")])

    insights = PatternClassifier(reasoner, fast_config).extract_business_insights(["anything"])

    assert insights.insights == []
    assert insights.opportunities == []
    assert insights.recommendations.immediate == ""
