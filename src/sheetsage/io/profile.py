"""Column profiling for a dataset table.

Produces the ``ColumnDescriptor`` list the strategy selector needs when the
caller has no schema-inference pass of its own.
"""

import re
from typing import Any

import structlog

from sheetsage.contracts import ColumnDescriptor, ColumnType
from sheetsage.sql.store import RelationalStore, quote_identifier, run_query

logger = structlog.get_logger()

_NUMERIC_TYPES = ("int", "float", "double", "decimal", "numeric", "number", "real")
_DATE_TYPES = ("date", "timestamp", "time")
_DATE_RE = re.compile(
    r"^\d{4}-\d{1,2}-\d{1,2}([ T]\d{1,2}:\d{2}(:\d{2})?)?$"
    r"|^\d{1,2}/\d{1,2}/\d{2,4}$"
)
_NUMBER_RE = re.compile(r"^[-+]?[$€£]?\d[\d,]*(\.\d+)?%?$")


def infer_column_type(type_name: str, samples: list[Any]) -> ColumnType:
    """Map a declared type plus sample values onto TEXT / NUMBER / DATE.

    Text columns whose samples all look like numbers (currency symbols,
    thousands separators and percent signs allowed) or all look like dates
    are promoted, since spreadsheet imports often land as VARCHAR.
    """
    lowered = type_name.lower()
    if any(t in lowered for t in _NUMERIC_TYPES):
        return ColumnType.NUMBER
    if any(t in lowered for t in _DATE_TYPES):
        return ColumnType.DATE

    values = [str(v).strip() for v in samples if v is not None and str(v).strip()]
    if not values:
        return ColumnType.TEXT
    if all(_NUMBER_RE.match(v) for v in values):
        return ColumnType.NUMBER
    if all(_DATE_RE.match(v) for v in values):
        return ColumnType.DATE
    return ColumnType.TEXT


def profile_column(
    store: RelationalStore,
    table_name: str,
    column_name: str,
    column_type: str,
    sample_rows: int = 20,
) -> ColumnDescriptor:
    """
    Profile a single column.

    Args:
        store: Relational store holding the table
        table_name: Name of table
        column_name: Name of column
        column_type: Declared database type
        sample_rows: Non-null values fetched for type inference

    Returns:
        ColumnDescriptor for the column
    """
    table_safe = quote_identifier(table_name)
    col_safe = quote_identifier(column_name)

    stats = run_query(
        store,
        f"""
            SELECT
                COUNT(*) AS total_count,
                COUNT(*) - COUNT({col_safe}) AS null_count,
                COUNT(DISTINCT {col_safe}) AS unique_count
            FROM {table_safe}
        """,
    ).rows[0]

    samples = [
        row["value"]
        for row in run_query(
            store,
            f"""
                SELECT {col_safe} AS value
                FROM {table_safe}
                WHERE {col_safe} IS NOT NULL
                LIMIT {int(sample_rows)}
            """,
        ).rows
    ]

    return ColumnDescriptor(
        name=column_name,
        type=infer_column_type(column_type, samples),
        sample_value=samples[0] if samples else None,
        unique_count=int(stats["unique_count"]),
        total_count=int(stats["total_count"]),
        null_count=int(stats["null_count"]),
    )


def describe_columns(store: RelationalStore, table_name: str, sample_rows: int = 20) -> list[ColumnDescriptor]:
    """Profile every column of ``table_name`` in storage order."""
    header = run_query(store, f"SELECT * FROM {quote_identifier(table_name)} LIMIT 0")
    columns = [
        profile_column(store, table_name, f.name, f.type_name, sample_rows)
        for f in header.fields
    ]
    logger.info("Profiled columns", table=table_name, columns=len(columns))
    return columns
