"""sheetsage: LLM-orchestrated question answering over tabular datasets."""

__version__ = "0.3.0"
