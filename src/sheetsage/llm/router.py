"""LLM router for dispatching reasoner calls to a provider.

Supported providers:
- ollama: Local models via Ollama (default)
- anthropic: Claude models via Anthropic API
- openai: GPT models via OpenAI API

Environment variables:
- SS_LLM_PROVIDER: Provider to use (ollama, anthropic, openai)
- SS_LLM_MODEL: Model name (defaults per provider)
- SS_LLM_TIMEOUT: Request timeout in seconds (default: 60)
- SS_MAX_RETRIES: Retries for rate-limit / transport failures (default: 2)
- SS_ANTHROPIC_API_KEY: Anthropic API key (falls back to ANTHROPIC_API_KEY)
- SS_OPENAI_API_KEY: OpenAI API key (falls back to OPENAI_API_KEY)
"""

import importlib
import importlib.util
import os
from typing import Any

import structlog
from tenacity import RetryCallState, Retrying, retry_if_exception, stop_after_attempt, wait_exponential

from sheetsage.errors import ProviderError
from sheetsage.llm.ollama_client import ollama_chat
from sheetsage.llm.reasoner import Completion

logger = structlog.get_logger()


DEFAULT_MODELS = {
    "ollama": "qwen2.5:14b-instruct",
    "anthropic": "claude-3-5-sonnet-20241022",
    "openai": "gpt-4o-mini",
}

SUPPORTED_PROVIDERS = tuple(DEFAULT_MODELS)

DEFAULT_SYSTEM_PROMPT = (
    "You are a data analysis assistant working on a single tabular dataset. "
    "When asked for JSON, reply with JSON only."
)

# Models that reject any temperature other than the default.
_FIXED_TEMPERATURE_PREFIXES = ("gpt-5", "o1", "o3", "o4-mini")


def effective_temperature(model: str, temperature: float) -> float:
    """Return the temperature the model will actually accept."""
    if model.lower().startswith(_FIXED_TEMPERATURE_PREFIXES):
        return 1.0
    return temperature


def _call_anthropic(
    messages: list[dict[str, str]],
    model: str,
    temperature: float,
    max_tokens: int | None,
    timeout: int,
) -> Completion:
    """Call Anthropic API (Claude models)."""
    try:
        import anthropic
    except ImportError:
        raise ImportError(
            "anthropic package not installed. "
            "Install with: pip install 'sheetsage[anthropic]'"
        )

    api_key = os.environ.get("SS_ANTHROPIC_API_KEY") or os.environ.get("ANTHROPIC_API_KEY")
    if not api_key:
        raise ProviderError(
            401,
            "Anthropic API key not found. "
            "Set SS_ANTHROPIC_API_KEY or ANTHROPIC_API_KEY environment variable.",
        )

    client = anthropic.Anthropic(api_key=api_key, timeout=timeout)

    system_content = None
    api_messages = []
    for msg in messages:
        if msg["role"] == "system":
            system_content = msg["content"]
        else:
            api_messages.append(msg)

    try:
        response = client.messages.create(
            model=model,
            max_tokens=max_tokens or 4096,
            temperature=temperature,
            system=system_content or DEFAULT_SYSTEM_PROMPT,
            messages=api_messages,
        )
    except anthropic.APIError as e:
        raise ProviderError(getattr(e, "status_code", None), str(e)) from e

    usage = {
        "prompt_tokens": response.usage.input_tokens,
        "completion_tokens": response.usage.output_tokens,
    }
    return Completion(text=response.content[0].text, usage=usage)


def _call_openai(
    messages: list[dict[str, str]],
    model: str,
    temperature: float,
    max_tokens: int | None,
    timeout: int,
) -> Completion:
    """Call OpenAI API (GPT models)."""
    try:
        openai_module = importlib.import_module("openai")
    except ImportError:
        raise ImportError(
            "openai package not installed. "
            "Install with: pip install 'sheetsage[openai]'"
        )

    api_key = os.environ.get("SS_OPENAI_API_KEY") or os.environ.get("OPENAI_API_KEY")
    if not api_key:
        raise ProviderError(
            401,
            "OpenAI API key not found. "
            "Set SS_OPENAI_API_KEY or OPENAI_API_KEY environment variable.",
        )

    client = openai_module.OpenAI(api_key=api_key, timeout=timeout)

    request: dict[str, Any] = {
        "model": model,
        "messages": messages,
        "temperature": temperature,
    }
    # Reasoning models take max_completion_tokens instead of max_tokens
    if model.lower().startswith(_FIXED_TEMPERATURE_PREFIXES):
        request["max_completion_tokens"] = max_tokens or 4096
    else:
        request["max_tokens"] = max_tokens or 4096

    try:
        response = client.chat.completions.create(**request)
    except openai_module.OpenAIError as e:
        raise ProviderError(getattr(e, "status_code", None), str(e)) from e

    usage = {}
    if response.usage is not None:
        usage = {
            "prompt_tokens": response.usage.prompt_tokens,
            "completion_tokens": response.usage.completion_tokens,
        }
    return Completion(text=response.choices[0].message.content or "", usage=usage)


def call_llm(
    messages: list[dict[str, str]],
    *,
    provider: str | None = None,
    model: str | None = None,
    temperature: float = 0.1,
    max_tokens: int | None = None,
    timeout: int = 60,
) -> Completion:
    """Route one chat call to the configured provider.

    Args:
        messages: List of message dicts with 'role' and 'content'
        provider: Provider override (defaults to SS_LLM_PROVIDER)
        model: Model override (defaults to SS_LLM_MODEL or the provider default)
        temperature: Sampling temperature (fixed-temperature models get 1.0)
        max_tokens: Maximum tokens in response
        timeout: Request timeout in seconds

    Returns:
        Completion with reply text and token usage

    Raises:
        ProviderError: If the provider call fails
        ValueError: If the provider is not supported
    """
    resolved_provider = (provider or os.environ.get("SS_LLM_PROVIDER", "ollama")).lower()
    if resolved_provider not in SUPPORTED_PROVIDERS:
        raise ValueError(
            f"Unsupported LLM provider: {resolved_provider}. "
            f"Supported: {', '.join(SUPPORTED_PROVIDERS)}"
        )

    resolved_model = model or os.environ.get("SS_LLM_MODEL") or DEFAULT_MODELS[resolved_provider]
    temperature = effective_temperature(resolved_model, temperature)

    if resolved_provider == "anthropic":
        return _call_anthropic(messages, resolved_model, temperature, max_tokens, timeout)
    if resolved_provider == "openai":
        return _call_openai(messages, resolved_model, temperature, max_tokens, timeout)
    return ollama_chat(
        messages,
        model=resolved_model,
        temperature=temperature,
        max_tokens=max_tokens,
        timeout=timeout,
    )


def _is_retryable(exc: BaseException) -> bool:
    return isinstance(exc, ProviderError) and exc.retryable


def _log_retry(retry_state: RetryCallState) -> None:
    exc = retry_state.outcome.exception() if retry_state.outcome else None
    logger.warning(
        "Reasoner call failed, retrying",
        attempt=retry_state.attempt_number,
        cause=getattr(exc, "cause", None),
        error=str(exc),
    )


class LLMReasoner:
    """Reasoner backed by a hosted or local LLM, with retry and backoff.

    Usage:
        reasoner = LLMReasoner(provider="openai", model="gpt-4o-mini")
        completion = reasoner.complete("Say hi", temperature=0.2)
    """

    def __init__(
        self,
        provider: str | None = None,
        model: str | None = None,
        *,
        timeout: int | None = None,
        max_retries: int | None = None,
        max_tokens: int | None = None,
        system_prompt: str = DEFAULT_SYSTEM_PROMPT,
    ):
        self.provider = (provider or os.environ.get("SS_LLM_PROVIDER", "ollama")).lower()
        self.model = model or os.environ.get("SS_LLM_MODEL") or DEFAULT_MODELS.get(self.provider, "")
        self.timeout = timeout or int(os.environ.get("SS_LLM_TIMEOUT", "60"))
        self.max_retries = (
            max_retries if max_retries is not None else int(os.environ.get("SS_MAX_RETRIES", "2"))
        )
        self.max_tokens = max_tokens
        self.system_prompt = system_prompt

    def complete(self, prompt: str, temperature: float = 0.1) -> Completion:
        """Send one prompt, retrying rate-limit and transport failures.

        Raises:
            ProviderError: After the last retry, or immediately for credential errors
        """
        messages = [
            {"role": "system", "content": self.system_prompt},
            {"role": "user", "content": prompt},
        ]
        retrying = Retrying(
            retry=retry_if_exception(_is_retryable),
            stop=stop_after_attempt(self.max_retries + 1),
            wait=wait_exponential(multiplier=0.5, max=8),
            before_sleep=_log_retry,
            reraise=True,
        )
        return retrying(
            call_llm,
            messages,
            provider=self.provider,
            model=self.model,
            temperature=temperature,
            max_tokens=self.max_tokens,
            timeout=self.timeout,
        )


def _has_module(module_name: str) -> bool:
    """Return True when a module is installed in the current environment."""
    return importlib.util.find_spec(module_name) is not None


def get_available_providers() -> list[str]:
    """Get list of available LLM providers based on installed packages and API keys."""
    available = ["ollama"]

    if _has_module("anthropic") and (
        os.environ.get("SS_ANTHROPIC_API_KEY") or os.environ.get("ANTHROPIC_API_KEY")
    ):
        available.append("anthropic")

    if _has_module("openai") and (
        os.environ.get("SS_OPENAI_API_KEY") or os.environ.get("OPENAI_API_KEY")
    ):
        available.append("openai")

    return available


def get_current_config() -> dict[str, Any]:
    """Get current LLM configuration."""
    provider = os.environ.get("SS_LLM_PROVIDER", "ollama").lower()
    return {
        "provider": provider,
        "model": os.environ.get("SS_LLM_MODEL") or DEFAULT_MODELS.get(provider, ""),
        "timeout": int(os.environ.get("SS_LLM_TIMEOUT", "60")),
        "max_retries": int(os.environ.get("SS_MAX_RETRIES", "2")),
        "available_providers": get_available_providers(),
    }
