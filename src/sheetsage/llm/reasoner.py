"""Reasoner protocol and the shared call+decode primitive.

Every component talks to the reasoner through ``call_structured`` (JSON
replies decoded into a schema) or ``call_text`` (plain-text replies), so
decoding and logging are implemented once. Retries and backoff live in the
concrete reasoner (``sheetsage.llm.router.LLMReasoner``).
"""

from dataclasses import dataclass, field
from typing import Protocol, TypeVar, runtime_checkable

import structlog
from pydantic import BaseModel

from sheetsage.decoding import decode

logger = structlog.get_logger()

T = TypeVar("T", bound=BaseModel)


@dataclass
class Completion:
    """Raw reasoner reply."""

    text: str
    usage: dict[str, int] = field(default_factory=dict)


@runtime_checkable
class Reasoner(Protocol):
    """Anything that turns a prompt into a completion.

    Implementations raise ``ProviderError`` on transport, credential or
    rate-limit failures.
    """

    def complete(self, prompt: str, temperature: float) -> Completion:
        ...


def call_structured(
    reasoner: Reasoner,
    prompt: str,
    schema: type[T],
    *,
    temperature: float = 0.1,
) -> T:
    """Call the reasoner and decode its reply into ``schema``.

    Raises:
        ProviderError: If the reasoner call fails
        DecodeError: If the reply cannot be recovered into ``schema``
    """
    completion = reasoner.complete(prompt, temperature)
    logger.debug(
        "Reasoner replied",
        schema=schema.__name__,
        chars=len(completion.text or ""),
        usage=completion.usage or None,
    )
    return decode(completion.text, schema)


def call_text(reasoner: Reasoner, prompt: str, *, temperature: float = 0.1) -> str:
    """Call the reasoner and return its reply stripped of whitespace."""
    completion = reasoner.complete(prompt, temperature)
    return (completion.text or "").strip()
