"""Exception taxonomy for sheetsage.

Run-level errors (StrategyError, QueryValidationError, QueryExecutionError,
DecodeError raised while decoding a strategy or query insight) propagate to
the caller unchanged. ItemClassificationError is item-level: loop-based
strategies and the taxonomy manager catch it, log it, and keep going.
"""

from typing import Any


class SheetSageError(Exception):
    """Base class for all sheetsage errors."""


class DecodeError(SheetSageError):
    """Structured output could not be recovered into the expected schema."""

    def __init__(self, raw_text: str, parser_message: str, recovery_attempts: int = 0):
        preview = raw_text[:200] + ("..." if len(raw_text) > 200 else "")
        super().__init__(
            f"Could not decode reasoner output after {recovery_attempts} recovery "
            f"attempt(s): {parser_message}. Raw text: {preview!r}"
        )
        self.raw_text = raw_text
        self.parser_message = parser_message
        self.recovery_attempts = recovery_attempts


class ProviderError(SheetSageError):
    """The reasoner or relational store reported a transport or API failure."""

    def __init__(self, status_code: int | None, message: str):
        self.status_code = status_code
        self.message = message
        super().__init__(f"{self.cause}: {message}" if message else self.cause)

    @property
    def cause(self) -> str:
        """Human-readable cause derived from the status code."""
        if self.status_code in (401, 403):
            return "invalid credential"
        if self.status_code == 429:
            return "rate limited"
        return "generic"

    @property
    def retryable(self) -> bool:
        """Rate limits, server errors and transport failures are worth retrying."""
        if self.status_code is None:
            return True
        return self.status_code == 429 or self.status_code >= 500


class StrategyError(SheetSageError):
    """The strategy selector could not produce a usable strategy."""

    def __init__(
        self,
        message: str,
        raw_text: str | None = None,
        recovery_attempts: int = 0,
    ):
        super().__init__(message)
        self.raw_text = raw_text
        self.recovery_attempts = recovery_attempts


class QueryValidationError(SheetSageError):
    """A generated query failed structural checks and repair did not fix it."""

    def __init__(self, message: str, query: str | None, repaired_query: str | None = None):
        super().__init__(message)
        self.query = query
        self.repaired_query = repaired_query


class QueryExecutionError(SheetSageError):
    """The relational store rejected a query that passed validation."""

    def __init__(self, message: str, query: str):
        super().__init__(message)
        self.query = query


class ItemClassificationError(SheetSageError):
    """A single row or item could not be classified."""

    def __init__(self, message: str, item: Any = None):
        super().__init__(message)
        self.item = item
