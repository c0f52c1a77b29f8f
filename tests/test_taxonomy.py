"""Tests for the dynamic taxonomy manager and similarity guard.

Covers:
- First category creation from a plain-text reply
- Reuse of predefined and existing categories (exact, case-insensitive, alias)
- Similarity guard preventing near-duplicate names
- Classification cache by content signature
- Count conservation, exemplar cap, statistics ordering
- Placeholder categories on failure
- Snapshot export/import and file persistence
- Progress reporting and concurrent runs on a shared manager
"""

import concurrent.futures
import time
from datetime import timezone

import pytest

from sheetsage.contracts import Provenance
from sheetsage.errors import ProviderError
from sheetsage.progress import CancellationToken
from sheetsage.taxonomy import HeuristicSimilarityGuard, TaxonomyManager
from sheetsage.taxonomy.manager import canonical_text, content_signature


def _tag(category, is_existing=False, reasoning="fits"):
    return {"category": category, "is_existing": is_existing, "reasoning": reasoning}


# ============================================================================
# Classification flow
# ============================================================================

def test_first_category_from_plain_text_reply(scripted):
    reasoner = scripted(['"Technology."'])
    manager = TaxonomyManager(reasoner)

    result = manager.categorize(["Apple releases new iPhone"])

    decision = result.decisions[0]
    assert decision.category == "Technology"
    assert decision.is_new
    assert decision.confidence == 0.9
    assert reasoner.prompts[0].startswith("Tag this data item with a category name.")
    assert reasoner.temperatures == [0.3]
    assert manager.get_category("Technology").provenance == Provenance.DERIVED


def test_predefined_categories_are_reused_and_cache_hits_skip_calls(scripted):
    reasoner = scripted([
        _tag("Technology", True),
        _tag("finance", True),
        _tag("Cooking"),
    ])
    manager = TaxonomyManager(reasoner)
    items = [
        "Apple releases new iPhone",
        "Bank raises interest rates",
        "Apple releases new iPhone",
        "Pizza dough recipe",
    ]

    result = manager.categorize(items, predefined_categories=["Technology", "Finance"])

    assert [d.category for d in result.decisions] == ["Technology", "Finance", "Technology", "Cooking"]
    assert [d.is_new for d in result.decisions] == [False, False, False, True]
    assert result.decisions[0].confidence == 0.85
    assert result.decisions[3].confidence == 0.8
    assert reasoner.call_count == 3

    stats = result.stats
    assert stats.total_items == len(items)
    assert sum(c.count for c in stats.categories) == len(items)
    assert stats.categories[0].name == "Technology"
    assert stats.categories[0].percentage == 50.0
    assert stats.total_categories == 3
    assert stats.predefined_categories == 2
    assert stats.new_categories == 1


def test_existing_categories_are_listed_in_prompt(scripted):
    reasoner = scripted([_tag("Finance", True)])
    manager = TaxonomyManager(reasoner)

    manager.categorize(["Stock market dips"], predefined_categories=["Technology", "Finance"], context="news headlines")

    prompt = reasoner.prompts[0]
    assert '1. "Technology"' in prompt
    assert '2. "Finance"' in prompt
    assert "Context: news headlines" in prompt


def test_naming_format_is_passed_to_the_reasoner(scripted):
    reasoner = scripted([_tag("Hand Tools")])
    manager = TaxonomyManager(reasoner)

    manager.categorize(["hammer"], predefined_categories=["Power Tools"], naming_format="exactly two words")

    assert 'User Format: "exactly two words"' in reasoner.prompts[0]
    assert "Follow the user format EXACTLY: exactly two words" in reasoner.prompts[0]


def test_similarity_guard_reuses_near_duplicate_and_records_alias(scripted):
    reasoner = scripted([_tag("Fastener Components"), _tag("fastener components")])
    manager = TaxonomyManager(reasoner)

    result = manager.categorize(["M4 hex bolt", "M6 wing nut"], predefined_categories=["Fastener Hardware"])

    assert [d.category for d in result.decisions] == ["Fastener Hardware", "Fastener Hardware"]
    assert not any(d.is_new for d in result.decisions)
    assert "Prevented duplicate" in result.decisions[0].reasoning
    assert manager.category_names == ["Fastener Hardware"]
    assert manager.export_snapshot().aliases == {"fastener components": "Fastener Hardware"}


def test_synonym_groups_prevent_duplicates(scripted):
    reasoner = scripted([_tag("Dental Plates")])
    manager = TaxonomyManager(reasoner)

    result = manager.categorize(["titanium bite splint"], predefined_categories=["Orthodontic Panels"])

    assert result.decisions[0].category == "Orthodontic Panels"


def test_custom_similarity_guard_is_used(scripted):
    class NeverSimilar:
        def find_match(self, proposed, existing):
            return None

    reasoner = scripted([_tag("Fastener Components")])
    manager = TaxonomyManager(reasoner, similarity_guard=NeverSimilar())

    result = manager.categorize(["M4 hex bolt"], predefined_categories=["Fastener Hardware"])

    assert result.decisions[0].category == "Fastener Components"
    assert result.decisions[0].is_new


def test_exemplars_are_capped_at_ten(scripted):
    reasoner = scripted([_tag("Misc", True)] * 12)
    manager = TaxonomyManager(reasoner)

    manager.categorize([f"item {i}" for i in range(12)], predefined_categories=["Misc"])

    record = manager.get_category("Misc")
    assert record.count == 12
    assert len(record.exemplars) == 10
    assert record.exemplars[0] == "item 0"


def test_failed_item_gets_placeholder_category(scripted):
    reasoner = scripted([ProviderError(500, "boom"), _tag("Fruit")])
    manager = TaxonomyManager(reasoner)

    result = manager.categorize(["banana", "apple"])

    assert result.decisions[0].category == "Category_1"
    assert result.decisions[0].confidence == 0.5
    assert result.decisions[0].is_new
    assert result.decisions[1].category == "Fruit"
    assert '1. "Category_1"' in reasoner.prompts[1]


def test_empty_label_gets_placeholder(scripted):
    reasoner = scripted([_tag("  ")])
    manager = TaxonomyManager(reasoner)

    result = manager.categorize(["???"], predefined_categories=["A", "B"])

    assert result.decisions[0].category == "Category_3"


def test_on_update_reports_each_item(scripted):
    reasoner = scripted([_tag("Technology", True), _tag("Sports")])
    manager = TaxonomyManager(reasoner)
    updates = []

    manager.categorize(
        ["new laptop", "football final", "new laptop"],
        predefined_categories=["Technology"],
        on_update=updates.append,
    )

    assert [u.new_category_name for u in updates] == [None, "Sports", None]
    assert updates[-1].all_category_names == ["Technology", "Sports"]
    assert updates[-1].current_stats.total_items == 3


def test_cancellation_returns_partial_result(scripted):
    token = CancellationToken()
    reasoner = scripted([_tag("Technology", True), _tag("Technology", True)])
    manager = TaxonomyManager(reasoner)

    result = manager.categorize(
        ["a", "b", "c"],
        predefined_categories=["Technology"],
        on_update=lambda update: token.cancel(),
        cancel_token=token,
    )

    assert result.partial
    assert len(result.decisions) == 1
    assert reasoner.call_count == 1


def test_on_progress_reports_each_item(scripted):
    reasoner = scripted([_tag("Technology", True), _tag("Sports")])
    manager = TaxonomyManager(reasoner)
    events = []

    manager.categorize(
        ["new laptop", "football final", "new laptop"],
        predefined_categories=["Technology"],
        on_progress=events.append,
    )

    assert [e.message for e in events] == [
        "Categorizing item 1 of 3",
        "Categorizing item 2 of 3",
        "Categorizing item 3 of 3",
    ]
    assert events[-1].percentage == 100.0


def test_create_keeps_existing_category(scripted):
    manager = TaxonomyManager(scripted([_tag("Finance", True)]))
    manager.categorize(["bond yields rise"], predefined_categories=["Finance"])

    record = manager._create("Finance", "stock split", 0.8)

    assert record is manager.get_category("Finance")
    assert record.count == 1
    assert record.provenance == Provenance.PREDEFINED


def test_concurrent_runs_on_shared_manager_conserve_counts(scripted):
    def handler(prompt):
        time.sleep(0.01)
        label = "Technology" if "laptop" in prompt else "Sports"
        if "EXISTING CATEGORIES" in prompt:
            return _tag(label)
        return label

    manager = TaxonomyManager(scripted(handler=handler))
    batches = [
        [f"laptop {worker}-{i}" if i % 2 else f"football {worker}-{i}" for i in range(4)]
        for worker in range(3)
    ]

    with concurrent.futures.ThreadPoolExecutor(max_workers=3) as pool:
        results = list(pool.map(manager.categorize, batches))

    assert all(len(r.decisions) == 4 for r in results)
    stats = manager.get_statistics()
    assert sorted(manager.category_names) == ["Sports", "Technology"]
    assert stats.total_items == 12
    assert sum(c.count for c in stats.categories) == 12
    assert manager.get_category("Technology").count == 6
    assert manager.get_category("Sports").count == 6


# ============================================================================
# Persistence
# ============================================================================

def test_snapshot_round_trip_keeps_cache(scripted):
    first = TaxonomyManager(scripted([_tag("Technology", True)]))
    first.categorize(["new laptop"], predefined_categories=["Technology"])
    snapshot = first.export_snapshot()

    reasoner = scripted()
    second = TaxonomyManager(reasoner)
    second.import_snapshot(snapshot.model_dump(mode="json"))
    result = second.categorize(["new laptop"])

    assert result.decisions[0].category == "Technology"
    assert reasoner.call_count == 0
    assert second.get_category("Technology").count == 2


def test_snapshot_is_a_copy(scripted):
    manager = TaxonomyManager(scripted())
    manager.categorize([], predefined_categories=["Technology"])

    snapshot = manager.export_snapshot()
    snapshot.categories["Technology"].count = 99

    assert manager.get_category("Technology").count == 0


def test_save_and_load(scripted, tmp_path):
    path = tmp_path / "taxonomy.json"
    manager = TaxonomyManager(scripted([_tag("Finance", True)]))
    manager.categorize(["bond yields rise"], predefined_categories=["Finance"])
    manager.save(path)

    loaded = TaxonomyManager(scripted())
    loaded.load(path)

    assert loaded.category_names == ["Finance"]
    assert loaded.get_statistics().total_items == 1


def test_reset_clears_state(scripted):
    manager = TaxonomyManager(scripted([_tag("Finance", True)]))
    manager.categorize(["bond yields rise"], predefined_categories=["Finance"])

    manager.reset()

    assert manager.category_names == []
    assert manager.export_snapshot().cache == {}


def test_timestamps_are_timezone_aware(scripted):
    manager = TaxonomyManager(scripted())
    manager.categorize([], predefined_categories=["Technology"])

    snapshot = manager.export_snapshot()

    assert snapshot.exported_at.tzinfo is timezone.utc
    assert manager.get_category("Technology").created_at.tzinfo is timezone.utc


def test_content_signature_ignores_key_order():
    assert content_signature({"a": 1, "b": 2}) == content_signature({"b": 2, "a": 1})
    assert canonical_text("plain") == "plain"
    assert canonical_text({"b": 1, "a": 2}) == '{"a": 2, "b": 1}'


# ============================================================================
# Similarity guard
# ============================================================================

@pytest.mark.parametrize(
    "proposed, existing, expected",
    [
        ("technology", ["Technology"], "Technology"),
        ("Fastener Components", ["Fastener Hardware"], "Fastener Hardware"),
        ("Medical Devices", ["Healthcare Supplies"], "Healthcare Supplies"),
        ("Electronics", ["Electronic"], "Electronic"),
        ("Finance", ["Technology"], None),
        ("Tool", ["Tools"], None),
    ],
)
def test_heuristic_similarity_guard(proposed, existing, expected):
    match = HeuristicSimilarityGuard().find_match(proposed, existing)

    assert (match.category if match else None) == expected
