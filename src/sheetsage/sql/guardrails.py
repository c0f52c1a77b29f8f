"""SQL guardrails for reasoner-generated queries.

Generated SQL is validated before it reaches the relational store:

Safety Features:
- SELECT/WITH-only validation (block all write and file-access operations)
- Dangerous keyword and pattern blocking
- Single-statement enforcement
- Aggregate guard: aggregates mixed with ungrouped columns need GROUP BY
- Prompt injection filtering for cell values embedded in prompts
"""

import re
from dataclasses import dataclass
from typing import NamedTuple

from sheetsage.decoding.passes import strip_code_fences


class ValidationResult(NamedTuple):
    """Result of SQL validation."""

    is_valid: bool
    error: str | None = None
    suggestion: str | None = None


@dataclass(frozen=True)
class GuardrailConfig:
    """Configuration for SQL guardrails."""

    # Blocked keywords (case-insensitive, word boundaries, outside quotes)
    blocked_keywords: tuple[str, ...] = (
        "DROP",
        "DELETE",
        "UPDATE",
        "INSERT",
        "ALTER",
        "TRUNCATE",
        "GRANT",
        "REVOKE",
        "CREATE",
        "EXECUTE",
        "EXEC",
        "CALL",
        "PRAGMA",
        "ATTACH",
        "DETACH",
        "COPY",
        "LOAD",
        "INSTALL",
        "EXPORT",
        "IMPORT",
    )

    # Additional patterns to block (regex)
    blocked_patterns: tuple[str, ...] = (
        r";\s*(DROP|DELETE|UPDATE|INSERT|ALTER|TRUNCATE)",  # Piggyback attacks
        r"/\*.*\*/",  # Block comments (potential injection hiding)
        r"INTO\s+OUTFILE",  # File write
        r"\bread_(csv|csv_auto|parquet|json|json_auto|text|blob)\s*\(",  # DuckDB file readers
        r"\bglob\s*\(",  # DuckDB file listing
    )

    # Allowed statement prefixes (case-insensitive)
    allowed_prefixes: tuple[str, ...] = (
        "SELECT",
        "WITH",
    )

    # Functions that collapse rows and therefore need GROUP BY next to bare columns
    aggregate_functions: tuple[str, ...] = (
        "SUM",
        "COUNT",
        "AVG",
        "MIN",
        "MAX",
        "STRING_AGG",
        "GROUP_CONCAT",
        "LISTAGG",
        "ARRAY_AGG",
        "LIST",
        "MEDIAN",
        "MODE",
        "STDDEV",
        "STDDEV_POP",
        "STDDEV_SAMP",
        "VARIANCE",
        "VAR_POP",
        "VAR_SAMP",
        "ARG_MIN",
        "ARG_MAX",
        "BOOL_AND",
        "BOOL_OR",
    )


# Default configuration
DEFAULT_CONFIG = GuardrailConfig()


def _mask_literals(sql: str) -> str:
    """Blank out string literals and quoted identifiers, preserving length.

    Quoted identifiers such as "Price (USD)" would otherwise confuse keyword
    and parenthesis scanning.
    """
    sql = re.sub(r"'(?:[^']|'')*'", lambda m: "'" + " " * (len(m.group()) - 2) + "'", sql)
    return re.sub(r'"(?:[^"]|"")*"', lambda m: '"' + "_" * (len(m.group()) - 2) + '"', sql)


def clean_generated_query(text: str) -> str:
    """Extract a bare SQL statement from reasoner text.

    Strips code fences and prose before the first SELECT/WITH, plus any
    trailing semicolon.
    """
    if not text:
        return ""
    sql = strip_code_fences(text).strip().strip("`").strip()
    match = re.search(r"\b(SELECT|WITH)\b", sql, re.IGNORECASE)
    if match:
        sql = sql[match.start():]
    return sql.rstrip().rstrip(";").rstrip()


def validate_sql(sql: str, config: GuardrailConfig | None = None) -> ValidationResult:
    """Validate that a query is a single read-only statement.

    Args:
        sql: SQL query string to validate
        config: Optional guardrail configuration

    Returns:
        ValidationResult with is_valid flag and optional error message
    """
    if config is None:
        config = DEFAULT_CONFIG

    if not sql or not sql.strip():
        return ValidationResult(
            is_valid=False,
            error="Empty SQL query",
            suggestion="Write a SELECT statement that answers the question",
        )

    sql_upper = sql.strip().upper()

    if not sql_upper.startswith(config.allowed_prefixes):
        return ValidationResult(
            is_valid=False,
            error=f"Query must start with one of: {', '.join(config.allowed_prefixes)}",
            suggestion="Rewrite the query as a single SELECT statement",
        )

    blocked = detect_dangerous_keywords(sql, config)
    if blocked:
        return ValidationResult(
            is_valid=False,
            error=f"Blocked keyword(s) detected: {', '.join(blocked)}",
            suggestion="Only read-only queries are allowed",
        )

    pattern_match = detect_dangerous_patterns(sql, config)
    if pattern_match:
        return ValidationResult(
            is_valid=False,
            error=f"Dangerous pattern detected: {pattern_match}",
            suggestion="Only read-only queries against the dataset table are allowed",
        )

    return ValidationResult(is_valid=True)


def detect_dangerous_keywords(sql: str, config: GuardrailConfig | None = None) -> list[str]:
    """Detect blocked keywords in SQL query.

    Args:
        sql: SQL query string
        config: Optional guardrail configuration

    Returns:
        List of detected blocked keywords (empty if none)
    """
    if config is None:
        config = DEFAULT_CONFIG

    found = []
    sql_upper = _mask_literals(sql).upper()

    for keyword in config.blocked_keywords:
        # Word boundaries so "UPDATED_AT" does not match "UPDATE"
        if re.search(rf"\b{keyword}\b", sql_upper):
            found.append(keyword)

    return found


def detect_dangerous_patterns(sql: str, config: GuardrailConfig | None = None) -> str | None:
    """Detect dangerous patterns in SQL query.

    Args:
        sql: SQL query string
        config: Optional guardrail configuration

    Returns:
        Description of matched pattern, or None if safe
    """
    if config is None:
        config = DEFAULT_CONFIG

    masked = _mask_literals(sql)
    for pattern in config.blocked_patterns:
        if re.search(pattern, masked, re.IGNORECASE | re.DOTALL):
            return f"Pattern: {pattern}"

    semicolons = [m.start() for m in re.finditer(r";", masked)]
    stripped = masked.rstrip()
    if len(semicolons) > 1 or (semicolons and semicolons[0] < len(stripped) - 1):
        remaining = masked[semicolons[0] + 1:].strip()
        if remaining and not remaining.startswith("--"):
            return "Multiple statements detected (only single SELECT allowed)"

    return None


def _depths(text: str) -> list[int]:
    """Parenthesis depth in effect at each character."""
    depths = []
    depth = 0
    for ch in text:
        if ch == ")":
            depths.append(depth)
            depth = max(depth - 1, 0)
            continue
        depths.append(depth)
        if ch == "(":
            depth += 1
    return depths


def _split_top_level(text: str) -> list[str]:
    items = []
    depth = 0
    current: list[str] = []
    for ch in text:
        if ch == "(":
            depth += 1
        elif ch == ")":
            depth -= 1
        if ch == "," and depth == 0:
            items.append("".join(current))
            current = []
        else:
            current.append(ch)
    items.append("".join(current))
    return [item.strip() for item in items if item.strip()]


_CONSTANT_RE = re.compile(r"(?:'[^']*'|-?\d+(?:\.\d+)?|NULL|TRUE|FALSE)")


def _classify_select_item(item: str, aggregate_re: re.Pattern) -> str:
    """Classify a select-list item as aggregate, window, constant or bare."""
    upper = item.upper().strip()
    upper = re.sub(r"^DISTINCT\s+", "", upper)
    upper = re.sub(r"\s+(?:AS\s+)?(?:\"_*\"|[A-Z_][A-Z0-9_]*)$", "", upper) if not upper.endswith(")") else upper
    if re.search(r"\bSELECT\b", upper):
        return "constant"
    if aggregate_re.search(upper):
        return "window" if re.search(r"\bOVER\b", upper) else "aggregate"
    if _CONSTANT_RE.fullmatch(upper.strip()):
        return "constant"
    return "bare"


def check_aggregate_grouping(sql: str, config: GuardrailConfig | None = None) -> ValidationResult:
    """Reject aggregates mixed with ungrouped columns.

    Every SELECT (including subqueries and CTE bodies) is checked in its own
    scope. A select list that mixes aggregate calls with bare columns is
    rejected unless the same scope has a GROUP BY. Pure-aggregate select
    lists and window aggregates (``OVER``) are aggregate-safe.

    Args:
        sql: SQL query string
        config: Optional guardrail configuration

    Returns:
        ValidationResult with a repair suggestion when invalid
    """
    if config is None:
        config = DEFAULT_CONFIG

    masked = _mask_literals(sql)
    upper = masked.upper()
    aggregate_re = re.compile(rf"\b({'|'.join(config.aggregate_functions)})\s*\(")
    if not aggregate_re.search(upper):
        return ValidationResult(is_valid=True)

    depths = _depths(upper)
    for select in re.finditer(r"\bSELECT\b", upper):
        level = depths[select.start()]
        start = select.end()

        end = len(upper)
        for idx in range(start, len(upper)):
            if upper[idx] == ")" and depths[idx] == level:
                end = idx
                break
        flat = "".join(
            ch if depths[idx] == level and ch != ")" else " "
            for idx, ch in enumerate(upper[start:end], start)
        )
        next_select = re.search(r"\bSELECT\b", flat)
        if next_select:
            flat = flat[:next_select.start()]

        if re.search(r"\bGROUP\s+BY\b", flat):
            continue

        from_clause = re.search(r"\bFROM\b", flat)
        select_list = upper[start:start + from_clause.start()] if from_clause else upper[start:start + len(flat)]
        kinds = [_classify_select_item(item, aggregate_re) for item in _split_top_level(select_list)]

        if "aggregate" in kinds and "bare" in kinds:
            return ValidationResult(
                is_valid=False,
                error="Aggregate functions used without GROUP BY alongside non-aggregated columns",
                suggestion=(
                    "Add GROUP BY for every non-aggregated column, or wrap those columns "
                    "in an aggregate such as ANY_VALUE() or MIN()"
                ),
            )

    return ValidationResult(is_valid=True)


def validate_generated_query(sql: str, config: GuardrailConfig | None = None) -> ValidationResult:
    """Run the read-only checks, then the aggregate guard."""
    result = validate_sql(sql, config)
    if not result.is_valid:
        return result
    return check_aggregate_grouping(sql, config)


def sanitize_for_prompt_injection(text: str, max_len: int = 1000) -> str:
    """Sanitize dataset text before embedding it in a prompt.

    Args:
        text: Raw cell text
        max_len: Truncate beyond this many characters

    Returns:
        Sanitized text safe for LLM prompts
    """
    if not text:
        return ""

    patterns_to_remove = [
        r"ignore\s+(previous|all|above)\s+instructions?",
        r"disregard\s+(previous|all|above)\s+instructions?",
        r"forget\s+(previous|all|above)\s+instructions?",
        r"new\s+instructions?:",
        r"\[INST\]",
        r"\[/INST\]",
        r"<\|im_start\|>",
        r"<\|im_end\|>",
        r"<<SYS>>",
        r"<</SYS>>",
    ]

    result = text
    for pattern in patterns_to_remove:
        result = re.sub(pattern, "[FILTERED]", result, flags=re.IGNORECASE)

    if len(result) > max_len:
        result = result[:max_len] + "... [truncated]"

    return result
