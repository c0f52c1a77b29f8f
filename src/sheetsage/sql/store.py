"""Relational store interface and its DuckDB implementation.

The analysis core only needs ``connect()``, ``Connection.query(sql)`` and
``Connection.close()``. ``DuckDBStore`` provides them over a DuckDB file
(fresh connection per ``connect()``) or an in-memory database built from a
pandas DataFrame (cursor per ``connect()`` on a shared connection).
"""

import datetime as dt
import decimal
import math
import uuid
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Protocol

import duckdb
import pandas as pd
import structlog

from sheetsage.errors import ProviderError, QueryExecutionError

logger = structlog.get_logger()

# Largest integer that survives a round trip through a float64 / JSON number.
MAX_SAFE_INTEGER = 2**53 - 1


@dataclass
class FieldInfo:
    name: str
    type_name: str = ""


@dataclass
class QueryResult:
    """Rows returned by ``Connection.query``."""

    row_count: int
    fields: list[FieldInfo] = field(default_factory=list)
    rows: list[dict[str, Any]] = field(default_factory=list)

    @property
    def columns(self) -> list[str]:
        return [f.name for f in self.fields]


class Connection(Protocol):
    def query(self, sql: str) -> QueryResult:
        ...

    def close(self) -> None:
        ...


class RelationalStore(Protocol):
    """Read access to an already-populated dataset table."""

    def connect(self) -> Connection:
        ...


def narrow_value(value: Any) -> Any:
    """Convert a database scalar into a JSON-safe RowRecord value.

    Integers beyond the safe range are kept as strings, decimals become
    ints or floats, temporal values become ISO strings, and strings that
    arrive wrapped in literal double quotes are unwrapped.
    """
    if value is None or isinstance(value, bool):
        return value
    if isinstance(value, float):
        return None if math.isnan(value) else value
    if isinstance(value, int):
        return value if abs(value) <= MAX_SAFE_INTEGER else str(value)
    if isinstance(value, decimal.Decimal):
        if value == value.to_integral_value():
            as_int = int(value)
            return as_int if abs(as_int) <= MAX_SAFE_INTEGER else str(as_int)
        return float(value)
    if isinstance(value, str):
        if len(value) >= 2 and value.startswith('"') and value.endswith('"'):
            return value[1:-1]
        return value
    if isinstance(value, (dt.datetime, dt.date, dt.time)):
        return value.isoformat()
    if isinstance(value, dt.timedelta):
        return str(value)
    if isinstance(value, uuid.UUID):
        return str(value)
    if isinstance(value, (list, tuple)):
        return [narrow_value(v) for v in value]
    if isinstance(value, dict):
        return {str(k): narrow_value(v) for k, v in value.items()}
    return str(value)


def quote_identifier(name: str) -> str:
    """Quote a table or column name for DuckDB."""
    return '"' + name.replace('"', '""') + '"'


def _execution_hint(message: str) -> str:
    lowered = message.lower()
    if "referenced column" in lowered or "not found in from clause" in lowered:
        return "A column name does not exist; use the exact quoted column names."
    if "must appear in the group by clause" in lowered or "aggregate function" in lowered:
        return "Add GROUP BY for non-aggregated columns or wrap them in ANY_VALUE()."
    if "conversion error" in lowered or "could not convert" in lowered:
        return "A value could not be converted; use TRY_CAST for mixed-type columns."
    if "table with name" in lowered and "does not exist" in lowered:
        return "The table name is wrong."
    if "syntax error" in lowered or "parser error" in lowered:
        return "The SQL has a syntax error."
    return "The database rejected the query."


class DuckDBConnection:
    """One DuckDB connection or cursor satisfying the ``Connection`` protocol."""

    def __init__(self, conn: duckdb.DuckDBPyConnection):
        self._conn = conn

    def query(self, sql: str) -> QueryResult:
        """Execute SQL and return narrowed rows.

        Raises:
            ProviderError: If the database is unreachable (I/O or connection failure)
            QueryExecutionError: If DuckDB rejects the statement
        """
        try:
            result = self._conn.execute(sql)
            raw_rows = result.fetchall()
            description = result.description or []
        except (duckdb.IOException, duckdb.ConnectionException) as e:
            raise ProviderError(None, f"Database unavailable: {e}") from e
        except duckdb.Error as e:
            hint = _execution_hint(str(e))
            raise QueryExecutionError(f"SQL execution failed: {hint} ({e})", sql) from e

        fields = [FieldInfo(name=desc[0], type_name=str(desc[1])) for desc in description]
        names = [f.name for f in fields]
        rows = [
            {col: narrow_value(val) for col, val in zip(names, raw_row)}
            for raw_row in raw_rows
        ]
        return QueryResult(row_count=len(rows), fields=fields, rows=rows)

    def close(self) -> None:
        self._conn.close()

    def __enter__(self) -> "DuckDBConnection":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()


class DuckDBStore:
    """DuckDB-backed relational store.

    Usage:
        store = DuckDBStore("data/sales.duckdb")
        conn = store.connect()
        try:
            result = conn.query('SELECT * FROM "dataset" LIMIT 5')
        finally:
            conn.close()
    """

    def __init__(
        self,
        db_path: Path | str | None = None,
        *,
        read_only: bool = True,
        connection: duckdb.DuckDBPyConnection | None = None,
    ):
        """Initialize the store.

        Args:
            db_path: Path to a DuckDB database file
            read_only: Open file connections read-only (default True)
            connection: Existing connection to share (in-memory databases)
        """
        if db_path is None and connection is None:
            raise ValueError("DuckDBStore needs a db_path or a connection")
        self.db_path = Path(db_path) if db_path is not None else None
        self.read_only = read_only
        self._shared = connection

    @classmethod
    def from_dataframe(cls, df: pd.DataFrame, table_name: str = "dataset") -> "DuckDBStore":
        """Create an in-memory store holding ``df`` as ``table_name``."""
        conn = duckdb.connect(":memory:")
        conn.register("_incoming_frame", df)
        conn.execute(f"CREATE TABLE {quote_identifier(table_name)} AS SELECT * FROM _incoming_frame")
        conn.unregister("_incoming_frame")
        logger.debug("Registered DataFrame", table=table_name, rows=len(df), columns=len(df.columns))
        return cls(connection=conn)

    @classmethod
    def from_records(cls, rows: list[dict[str, Any]], table_name: str = "dataset") -> "DuckDBStore":
        """Create an in-memory store from a list of row dicts."""
        return cls.from_dataframe(pd.DataFrame.from_records(rows), table_name)

    def connect(self) -> DuckDBConnection:
        """Open a connection (a cursor for in-memory stores)."""
        if self._shared is not None:
            return DuckDBConnection(self._shared.cursor())
        try:
            return DuckDBConnection(duckdb.connect(str(self.db_path), read_only=self.read_only))
        except duckdb.Error as e:
            raise ProviderError(None, f"Cannot open DuckDB database {self.db_path}: {e}") from e

    def close(self) -> None:
        if self._shared is not None:
            self._shared.close()
            self._shared = None


def run_query(store: RelationalStore, sql: str) -> QueryResult:
    """Open a connection, run one query, and always close the connection."""
    conn = store.connect()
    try:
        return conn.query(sql)
    finally:
        conn.close()


def read_table(store: RelationalStore, table_name: str, limit: int | None = None) -> list[dict[str, Any]]:
    """Fetch rows of ``table_name`` in storage order."""
    sql = f"SELECT * FROM {quote_identifier(table_name)}"
    if limit is not None:
        sql += f" LIMIT {int(limit)}"
    return run_query(store, sql).rows
