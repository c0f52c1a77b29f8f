"""Progress reporting and cooperative cancellation for analysis runs."""

import threading
from dataclasses import dataclass
from typing import Callable

import structlog

logger = structlog.get_logger()


@dataclass(frozen=True)
class ProgressEvent:
    """Incremental progress passed to ``on_progress`` observers."""

    step: int
    total: int
    message: str

    @property
    def percentage(self) -> float:
        if self.total <= 0:
            return 100.0
        return round(min(self.step, self.total) / self.total * 100, 1)


ProgressCallback = Callable[[ProgressEvent], None]


class ProgressMessages:
    """Standard progress message text."""

    @staticmethod
    def selecting_strategy() -> str:
        return "Choosing an analysis strategy"

    @staticmethod
    def analyzing_column(column: str, index: int, total: int) -> str:
        return f"Analyzing column patterns: {column} ({index}/{total})"

    @staticmethod
    def analyzing_row(index: int, total: int) -> str:
        return f"Analyzing row {index} of {total}"

    @staticmethod
    def transforming_row(index: int, total: int) -> str:
        return f"Transforming row {index} of {total}"

    @staticmethod
    def processing_batch(index: int, total: int) -> str:
        return f"Processing batch {index} of {total}"

    @staticmethod
    def executing_query() -> str:
        return "Executing generated query"

    @staticmethod
    def repairing_query() -> str:
        return "Repairing generated query"

    @staticmethod
    def generating_insights() -> str:
        return "Generating insights"

    @staticmethod
    def deep_analysis(count: int) -> str:
        return f"Running deep analysis on {count} rows"

    @staticmethod
    def categorizing_item(index: int, total: int) -> str:
        return f"Categorizing item {index} of {total}"

    @staticmethod
    def complete() -> str:
        return "Analysis complete"


class ProgressTracker:
    """Counts steps and forwards them to an optional observer.

    Observer exceptions are logged and never interrupt the run; the
    observer is informational only.
    """

    def __init__(self, total: int, on_progress: ProgressCallback | None = None):
        self.total = max(total, 0)
        self.step = 0
        self._on_progress = on_progress

    def set_total(self, total: int) -> None:
        self.total = max(total, 0)

    def advance(self, message: str) -> ProgressEvent:
        self.step = min(self.step + 1, max(self.total, self.step + 1))
        return self._emit(message)

    def update(self, step: int, message: str) -> ProgressEvent:
        self.step = step
        return self._emit(message)

    def finish(self, message: str | None = None) -> ProgressEvent:
        self.step = max(self.total, self.step)
        return self._emit(message or ProgressMessages.complete())

    def _emit(self, message: str) -> ProgressEvent:
        event = ProgressEvent(step=self.step, total=self.total, message=message)
        if self._on_progress is not None:
            try:
                self._on_progress(event)
            except Exception as e:  # observer failures must not abort analysis
                logger.warning("Progress observer raised", error=str(e))
        return event


class CancellationToken:
    """Cooperative cancellation flag checked before each reasoner call."""

    def __init__(self):
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()


def is_cancelled(token: CancellationToken | None) -> bool:
    return token is not None and token.cancelled
