"""Analysis configuration.

Values come from dataclass defaults, optionally overridden by environment
variables through ``AnalysisConfig.from_env()``:

- SS_TABLE_NAME: Table queried by generated SQL (default: dataset)
- SS_BATCH_SIZE: Rows per BatchAI call (default: 10)
- SS_MAX_RESULT_ROWS: Cap on rows kept from a generated query (default: 1000)
- SS_HYBRID_THRESHOLD: Max narrowed rows for the hybrid deep analysis (default: 100)
- SS_PAUSE_SCALE: Multiplier applied to every inter-call pause (default: 1.0)
"""

import os
from dataclasses import dataclass, fields, replace


@dataclass(frozen=True)
class AnalysisConfig:
    """Configuration for strategy selection and execution."""

    table_name: str = "dataset"

    # Batch / query sizing
    default_batch_size: int = 10
    max_result_rows: int = 1000
    insight_sample_rows: int = 20
    selector_sample_rows: int = 5
    column_sample_values: int = 30
    hybrid_deep_analysis_threshold: int = 100

    # Pauses between successive reasoner calls (seconds)
    holistic_pause_seconds: float = 0.2
    column_pause_seconds: float = 0.3
    batch_pause_seconds: float = 1.0
    item_pause_seconds: float = 0.0

    # Task-type detection
    transformation_confidence_threshold: float = 0.7

    @classmethod
    def from_env(cls) -> "AnalysisConfig":
        """Build a config from SS_* environment variables."""
        config = cls(
            table_name=os.environ.get("SS_TABLE_NAME", cls.table_name),
            default_batch_size=int(os.environ.get("SS_BATCH_SIZE", cls.default_batch_size)),
            max_result_rows=int(os.environ.get("SS_MAX_RESULT_ROWS", cls.max_result_rows)),
            hybrid_deep_analysis_threshold=int(
                os.environ.get("SS_HYBRID_THRESHOLD", cls.hybrid_deep_analysis_threshold)
            ),
        )
        scale = float(os.environ.get("SS_PAUSE_SCALE", "1.0"))
        if scale != 1.0:
            config = config.scaled_pauses(scale)
        return config

    def scaled_pauses(self, factor: float) -> "AnalysisConfig":
        """Return a copy with every pause multiplied by ``factor``."""
        pauses = {
            f.name: getattr(self, f.name) * factor
            for f in fields(self)
            if f.name.endswith("_pause_seconds")
        }
        return replace(self, **pauses)

    def as_dict(self) -> dict:
        return {f.name: getattr(self, f.name) for f in fields(self)}
