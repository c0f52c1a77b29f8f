"""Ollama client for local LLM inference.

Single-shot HTTP call to the Ollama chat API. Retries are applied by the
caller (``LLMReasoner``); this module only maps transport and HTTP failures
onto ``ProviderError``.
"""

import os

import requests

from sheetsage.errors import ProviderError
from sheetsage.llm.reasoner import Completion


def ollama_chat(
    messages: list[dict[str, str]],
    *,
    model: str,
    temperature: float = 0.0,
    max_tokens: int | None = None,
    timeout: int = 60,
) -> Completion:
    """Call Ollama API with messages.

    Args:
        messages: List of message dicts with 'role' and 'content'
        model: Ollama model name (e.g. qwen2.5:14b-instruct)
        temperature: Temperature for sampling
        max_tokens: Maximum tokens in response (Ollama calls it num_predict)
        timeout: Request timeout in seconds

    Returns:
        Completion with the reply text and token usage

    Raises:
        ProviderError: On connection failure, timeout, or non-2xx status
    """
    base_url = os.environ.get("SS_OLLAMA_BASE_URL", "http://localhost:11434")
    endpoint = f"{base_url}/api/chat"

    # Row prompts embed whole records and column summaries; the default
    # Ollama context (2048) silently truncates them.
    num_ctx = int(os.environ.get("SS_OLLAMA_NUM_CTX", "8192"))

    payload = {
        "model": model,
        "messages": messages,
        "stream": False,
        "options": {
            "temperature": temperature,
            "num_ctx": num_ctx,
        },
    }
    if max_tokens is not None:
        payload["options"]["num_predict"] = max_tokens

    try:
        response = requests.post(endpoint, json=payload, timeout=timeout)
    except requests.exceptions.ConnectionError as e:
        raise ProviderError(
            None,
            f"Cannot connect to Ollama at {base_url}. "
            "Ensure Ollama is running (ollama serve or Ollama app).",
        ) from e
    except requests.exceptions.Timeout as e:
        raise ProviderError(None, f"Ollama request timed out after {timeout}s (model: {model})") from e

    if not 200 <= response.status_code < 300:
        raise ProviderError(response.status_code, f"Ollama API error: {response.text[:500]}")

    try:
        result = response.json()
    except ValueError as e:
        raise ProviderError(response.status_code, "Ollama returned a non-JSON body") from e

    if "message" not in result or "content" not in result["message"]:
        raise ProviderError(response.status_code, f"Unexpected Ollama response format: {result}")

    usage = {
        "prompt_tokens": int(result.get("prompt_eval_count", 0) or 0),
        "completion_tokens": int(result.get("eval_count", 0) or 0),
    }
    return Completion(text=result["message"]["content"], usage=usage)
