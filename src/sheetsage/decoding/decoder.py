"""Resilient decoder for reasoner output.

Turns raw completion text into a validated pydantic record:

1. strict parse of the raw text
2. repair passes (``passes.REPAIR_PASSES``), re-parsing after each one
3. positional recovery driven by the parser's error offset
4. field-by-field reconstruction against the schema
5. ``DecodeError`` carrying the raw text and the last parser message

A well-formed document is returned by step 1 untouched.
"""

import json
import re
from typing import Any, TypeVar

import structlog
from pydantic import BaseModel, ValidationError

from sheetsage.contracts import ReasonerRecord
from sheetsage.decoding.passes import REPAIR_PASSES, extract_envelope, strip_code_fences
from sheetsage.errors import DecodeError

logger = structlog.get_logger()

T = TypeVar("T", bound=BaseModel)

MAX_POSITIONAL_ATTEMPTS = 8

_MISSING = object()


def _loads(text: str) -> Any:
    return json.loads(text, strict=False)


def _describe(exc: json.JSONDecodeError) -> str:
    return f"{exc.msg} at line {exc.lineno} column {exc.colno} (char {exc.pos})"


# =============================================================================
# Positional recovery
# =============================================================================

def _close_open_brackets(text: str) -> str:
    """Append whatever closers a truncated document is missing."""
    stack: list[str] = []
    in_string = False
    escaped = False
    for ch in text:
        if in_string:
            if escaped:
                escaped = False
            elif ch == "\\":
                escaped = True
            elif ch == '"':
                in_string = False
            continue
        if ch == '"':
            in_string = True
        elif ch in "{[":
            stack.append("}" if ch == "{" else "]")
        elif ch in "}]" and stack:
            stack.pop()
    suffix = '"' if in_string else ""
    return text.rstrip().rstrip(",") + suffix + "".join(reversed(stack))


def _local_patches(text: str, exc: json.JSONDecodeError) -> list[str]:
    """Candidate single-edit fixes around the reported error offset."""
    pos = exc.pos
    msg = exc.msg
    candidates: list[str] = []

    if msg.startswith("Expecting ',' delimiter"):
        candidates.append(text[:pos] + "," + text[pos:])
        quote = text.rfind('"', 0, pos)
        if quote > 0 and text[quote - 1] != "\\":
            candidates.append(text[:quote] + "\\" + text[quote:])
        escaped_quote = text.rfind('\\"', 0, pos)
        if escaped_quote != -1:
            candidates.append(text[:escaped_quote] + text[escaped_quote + 1:])
    elif msg.startswith("Expecting ':' delimiter"):
        quote = text.rfind('"', 0, pos)
        if quote > 0:
            candidates.append(text[:quote] + "\\" + text[quote:])
        candidates.append(text[:pos] + ":" + text[pos:])
    elif msg.startswith("Invalid \\escape") or msg.startswith("Invalid \\u"):
        candidates.append(text[:pos] + "\\" + text[pos:])
        candidates.append(text[:pos] + text[pos + 1:])
    elif msg.startswith("Expecting property name") or msg.startswith("Expecting value"):
        before = text[:pos].rstrip()
        if before.endswith(","):
            candidates.append(before[:-1] + text[pos:])
        if pos < len(text) and text[pos] in ",}]":
            candidates.append(text[:pos] + "null" + text[pos:])
    elif msg.startswith("Extra data"):
        candidates.append(text[:pos])
    elif msg.startswith("Unterminated string"):
        candidates.append(_close_open_brackets(text))

    if pos >= len(text.rstrip()) - 1:
        candidates.append(_close_open_brackets(text))
    return [c for c in dict.fromkeys(candidates) if c != text]


def _positional_recovery(text: str, max_attempts: int) -> tuple[Any, int, str]:
    """Patch the text at the parser's error offset until it parses.

    Each round keeps the candidate that moves the error furthest forward and
    stops as soon as no candidate makes progress.

    Returns:
        (parsed value or _MISSING, rounds used, last parser message)
    """
    current = text
    message = ""
    for attempt in range(1, max_attempts + 1):
        try:
            return _loads(current), attempt - 1, ""
        except json.JSONDecodeError as exc:
            message = _describe(exc)
            best: str | None = None
            best_pos = exc.pos
            for candidate in _local_patches(current, exc):
                try:
                    return _loads(candidate), attempt, ""
                except json.JSONDecodeError as inner:
                    if inner.pos > best_pos:
                        best, best_pos = candidate, inner.pos
            if best is None:
                return _MISSING, attempt, message
            current = best
    return _MISSING, max_attempts, message


# =============================================================================
# Field-by-field reconstruction
# =============================================================================

_STRING_VALUE_RE = re.compile(
    r'"(.*?)"(?=\s*(?:,\s*"[^"\n]{1,80}"\s*:|,?\s*[}\]]|\s*$))',
    re.DOTALL,
)
_SCALAR_RE = re.compile(r"(-?\d+(?:\.\d+)?(?:[eE][+-]?\d+)?|true|false|null)\b")
_BAREWORD_RE = re.compile(r"([A-Za-z_][\w\-]*)")


def _unescape(inner: str) -> str:
    try:
        return _loads(f'"{inner}"')
    except json.JSONDecodeError:
        return (
            inner.replace('\\"', '"')
            .replace("\\n", "\n")
            .replace("\\t", "\t")
            .replace("\\\\", "\\")
        )


def _balanced_slice(text: str) -> str | None:
    opener = text[0]
    closer = "}" if opener == "{" else "]"
    depth = 0
    in_string = False
    escaped = False
    for idx, ch in enumerate(text):
        if in_string:
            if escaped:
                escaped = False
            elif ch == "\\":
                escaped = True
            elif ch == '"':
                in_string = False
            continue
        if ch == '"':
            in_string = True
        elif ch == opener:
            depth += 1
        elif ch == closer:
            depth -= 1
            if depth == 0:
                return text[:idx + 1]
    return None


def _parse_container(fragment: str) -> Any:
    try:
        return _loads(fragment)
    except json.JSONDecodeError:
        pass
    repaired = fragment
    for repair in REPAIR_PASSES[2:]:
        repaired = repair(repaired)
    try:
        return _loads(repaired)
    except json.JSONDecodeError:
        return _MISSING


def _extract_field(text: str, key: str) -> Any:
    match = re.search(rf'"{re.escape(key)}"\s*:\s*', text)
    if not match:
        return _MISSING
    rest = text[match.end():]
    if not rest:
        return _MISSING

    if rest[0] == '"':
        value = _STRING_VALUE_RE.match(rest)
        return _unescape(value.group(1)) if value else _MISSING
    if rest[0] in "{[":
        fragment = _balanced_slice(rest)
        return _parse_container(fragment) if fragment else _MISSING
    scalar = _SCALAR_RE.match(rest)
    if scalar:
        return _loads(scalar.group(1))
    bareword = _BAREWORD_RE.match(rest)
    if bareword:
        return bareword.group(1)
    return _MISSING


def _key_spellings(schema: type[BaseModel], field_name: str) -> list[str]:
    if issubclass(schema, ReasonerRecord):
        return schema.key_spellings(field_name)
    return [field_name]


def reconstruct_fields(text: str, schema: type[BaseModel]) -> dict[str, Any]:
    """Regex-extract each schema field independently.

    Fields that cannot be found are left out so the schema's defaults apply.
    """
    recovered: dict[str, Any] = {}
    for name in schema.model_fields:
        for key in _key_spellings(schema, name):
            value = _extract_field(text, key)
            if value is not _MISSING:
                recovered[name] = value
                break
    return recovered


# =============================================================================
# Validation
# =============================================================================

def _unwrap(parsed: Any, schema: type[BaseModel]) -> Any:
    """Accept a single-element list or a one-key wrapper around the record."""
    if isinstance(parsed, list) and len(parsed) == 1 and isinstance(parsed[0], dict):
        return parsed[0]
    if isinstance(parsed, dict) and len(parsed) == 1:
        key, value = next(iter(parsed.items()))
        if isinstance(value, dict) and key not in schema.model_fields:
            return value
    return parsed


def _validate(data: dict[str, Any], schema: type[T], raw_text: str, attempts: int) -> T:
    """Validate, dropping invalid optional fields so their defaults apply."""
    try:
        return schema.model_validate(data)
    except ValidationError as exc:
        bad_fields = {err["loc"][0] for err in exc.errors() if err["loc"]}
        droppable = all(
            name in schema.model_fields and not schema.model_fields[name].is_required()
            for name in bad_fields
        )
        if not bad_fields or not droppable:
            raise DecodeError(raw_text, f"schema validation failed: {exc}", attempts) from exc

    pruned = dict(data)
    for name in bad_fields:
        for key in _key_spellings(schema, name):
            pruned.pop(key, None)
    logger.debug("Dropped invalid fields in favour of defaults", schema=schema.__name__, fields=sorted(bad_fields))
    try:
        return schema.model_validate(pruned)
    except ValidationError as exc:
        raise DecodeError(raw_text, f"schema validation failed: {exc}", attempts) from exc


# =============================================================================
# Public API
# =============================================================================

def _parse_with_recovery(raw_text: str, max_positional_attempts: int) -> tuple[Any, int, str, str]:
    """Run stages 1-3.

    Returns:
        (parsed value or _MISSING, recovery attempts, last parser message,
        envelope text used for reconstruction)
    """
    text = raw_text.strip()
    try:
        return _loads(text), 0, "", text
    except json.JSONDecodeError as exc:
        message = _describe(exc)

    attempts = 0
    envelope = extract_envelope(strip_code_fences(text))
    for repair in REPAIR_PASSES:
        repaired = repair(text)
        if repaired == text:
            continue
        text = repaired
        attempts += 1
        try:
            parsed = _loads(text)
            logger.debug("Decoded after repair pass", repair=repair.__name__, attempts=attempts)
            return parsed, attempts, "", envelope
        except json.JSONDecodeError as exc:
            message = _describe(exc)

    for candidate in dict.fromkeys((text, envelope)):
        if not candidate:
            continue
        parsed, rounds, positional_message = _positional_recovery(candidate, max_positional_attempts)
        attempts += rounds
        if parsed is not _MISSING:
            logger.debug("Decoded after positional recovery", attempts=attempts)
            return parsed, attempts, "", envelope
        message = positional_message or message

    return _MISSING, attempts, message, envelope


def decode_json(raw_text: str | None, *, max_positional_attempts: int = MAX_POSITIONAL_ATTEMPTS) -> Any:
    """Decode reasoner text into a plain JSON value (no schema).

    Raises:
        DecodeError: If no stage produces parseable JSON
    """
    raw_text = raw_text or ""
    parsed, attempts, message, _ = _parse_with_recovery(raw_text, max_positional_attempts)
    if parsed is _MISSING:
        raise DecodeError(raw_text, message or "empty response", attempts)
    return parsed


def decode(
    raw_text: str | None,
    schema: type[T],
    *,
    max_positional_attempts: int = MAX_POSITIONAL_ATTEMPTS,
) -> T:
    """Decode reasoner text into an instance of ``schema``.

    Args:
        raw_text: Raw completion text
        schema: Pydantic model describing the expected fields
        max_positional_attempts: Bound on positional recovery rounds

    Returns:
        Validated record

    Raises:
        DecodeError: If the text cannot be recovered into the schema
    """
    raw_text = raw_text or ""
    parsed, attempts, message, envelope = _parse_with_recovery(raw_text, max_positional_attempts)

    if parsed is not _MISSING:
        data = _unwrap(parsed, schema)
        if isinstance(data, dict):
            return _validate(data, schema, raw_text, attempts)
        message = f"expected a JSON object, got {type(parsed).__name__}"

    attempts += 1
    recovered = reconstruct_fields(envelope or raw_text, schema)
    if not recovered:
        raise DecodeError(raw_text, message or "empty response", attempts)

    logger.warning(
        "Reconstructed record field by field",
        schema=schema.__name__,
        fields=sorted(recovered),
        parser_message=message,
    )
    return _validate(recovered, schema, raw_text, attempts)
