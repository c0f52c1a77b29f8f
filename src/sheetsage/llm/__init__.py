"""Reasoner clients and the shared call+decode primitive."""

from sheetsage.llm.reasoner import Completion, Reasoner, call_structured, call_text
from sheetsage.llm.router import LLMReasoner, call_llm

__all__ = ["Completion", "LLMReasoner", "Reasoner", "call_llm", "call_structured", "call_text"]
