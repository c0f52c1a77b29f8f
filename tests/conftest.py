"""Shared test fixtures for the sheetsage test suite.

Provides:

* ``ScriptedReasoner`` -- fake reasoner that records every prompt and answers
  from a queue of replies or from a callable keyed on the prompt text
* ``fast_config``      -- ``AnalysisConfig`` with every pause scaled to zero
* ``sales_rows`` / ``sales_store`` -- small, precisely-counted dataset in an
  in-memory DuckDB store
"""

from __future__ import annotations

import json
from collections import deque
from typing import Any, Callable, Iterable

import pytest

from sheetsage.config import AnalysisConfig
from sheetsage.contracts import ColumnDescriptor, ColumnType
from sheetsage.llm.reasoner import Completion
from sheetsage.sql.store import DuckDBStore


Reply = str | dict | list | Exception


class ScriptedReasoner:
    """Fake reasoner.

    Replies come from ``handler(prompt)`` when one is given, otherwise from
    the ``replies`` queue in order. Dicts and lists are sent as JSON text;
    exceptions are raised instead of replying.
    """

    def __init__(
        self,
        replies: Iterable[Reply] = (),
        handler: Callable[[str], Reply] | None = None,
    ):
        self.replies = deque(replies)
        self.handler = handler
        self.prompts: list[str] = []
        self.temperatures: list[float] = []

    def complete(self, prompt: str, temperature: float = 0.1) -> Completion:
        self.prompts.append(prompt)
        self.temperatures.append(temperature)
        if self.handler is not None:
            reply = self.handler(prompt)
        elif self.replies:
            reply = self.replies.popleft()
        else:
            raise AssertionError(f"Unexpected reasoner call: {prompt[:120]!r}")

        if isinstance(reply, Exception):
            raise reply
        if isinstance(reply, (dict, list)):
            reply = json.dumps(reply)
        return Completion(text=reply, usage={"prompt_tokens": len(prompt), "completion_tokens": len(reply)})

    @property
    def call_count(self) -> int:
        return len(self.prompts)

    def prompts_starting_with(self, prefix: str) -> list[str]:
        return [p for p in self.prompts if p.startswith(prefix)]


SALES_ROWS = [
    {"Region": "North", "Product": "Widget", "Sales": 120, "Notes": "urgent reorder"},
    {"Region": "South", "Product": "Gadget", "Sales": 80, "Notes": "routine"},
    {"Region": "North", "Product": "Gadget", "Sales": 200, "Notes": "urgent: customer escalation"},
    {"Region": "East", "Product": "Widget", "Sales": 50, "Notes": "routine"},
    {"Region": "West", "Product": "Doohickey", "Sales": 310, "Notes": "new account"},
]


@pytest.fixture
def fast_config() -> AnalysisConfig:
    return AnalysisConfig().scaled_pauses(0)


@pytest.fixture
def sales_rows() -> list[dict[str, Any]]:
    return [dict(row) for row in SALES_ROWS]


@pytest.fixture
def sales_store(sales_rows):
    store = DuckDBStore.from_records(sales_rows)
    yield store
    store.close()


@pytest.fixture
def sales_columns() -> list[ColumnDescriptor]:
    return [
        ColumnDescriptor(name="Region", type=ColumnType.TEXT, sample_value="North", unique_count=4, total_count=5),
        ColumnDescriptor(name="Product", type=ColumnType.TEXT, sample_value="Widget", unique_count=3, total_count=5),
        ColumnDescriptor(name="Sales", type=ColumnType.NUMBER, sample_value=120, unique_count=5, total_count=5),
        ColumnDescriptor(name="Notes", type=ColumnType.TEXT, sample_value="routine", unique_count=4, total_count=5),
    ]


@pytest.fixture
def scripted():
    """The ``ScriptedReasoner`` class, for building per-test fakes."""
    return ScriptedReasoner
