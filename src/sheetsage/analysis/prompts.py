"""Prompt templates for the analysis strategies.

Templates are plain ``str.format`` strings; literal braces in JSON examples
are doubled. Dataset values always pass through ``format_row`` /
``format_values`` so they are sanitized before reaching the reasoner.
"""

import json
from typing import Any, Sequence

from sheetsage.contracts import ColumnDescriptor, ColumnPatternAnalysis
from sheetsage.sql.guardrails import sanitize_for_prompt_injection

# Cell values longer than this are truncated inside prompts
MAX_CELL_CHARS = 300

JSON_RULES = """Return ONLY valid JSON, no markdown and no explanations.
Escape quotes inside strings, use null instead of empty objects, no trailing commas."""


STRATEGY_PROMPT = """Analyze this data question and choose the best approach.

Question: "{question}"

Dataset Schema (EXACT column names for SQL):
{schema}

CRITICAL: When generating SQL queries, use EXACTLY these column names:
{column_names}

Sample Data:
{sample_rows}

CRITICAL: If the question contains words like "optimal", "minimum cost", "cheapest", "best price", "picking list" or "recommendation", you MUST choose "hybrid".

Choose the BEST analysis method:

1. "row_by_row_ai" - each row must be judged individually
   - Use for: language detection, sentiment, content classification, complex parsing or transformation of each row
   - Example: "Find all French content", "Identify negative reviews", "Sum the semicolon-separated values and return the sheet"

2. "batch_ai" - reasoning is needed but rows can be grouped
   - Use for: pattern recognition across rows, grouping, categorization
   - Example: "Group similar projects", "Find related items"

3. "query_computational" - a pure data or math question
   - Use for: counts, averages, sums, duplicates, statistics, string operations
   - Example: "How many rows?", "Find duplicates", "Average price per region"
   - NEVER use for: optimization, multi-step business rules, recommendations

4. "hybrid" - SQL first to narrow the data, then reasoning over the subset
   - Use for: optimization, business logic, recommendations, row-level judgments over a filtered subset
   - Example: "Optimal picking list at minimum cost", "Sentiment of the ten largest customers"

SQL RULES:
- The data is stored in a table named "{table_name}". Reference it exactly.
- Use DuckDB syntax. Quote column names with double quotes.
- Only a single read-only SELECT (or WITH ... SELECT) statement.
- When using aggregates (SUM, COUNT, AVG, MIN, MAX, STRING_AGG, LIST), every non-aggregated column in SELECT must be in GROUP BY, or wrapped in ANY_VALUE().
  * WRONG: SELECT id, name, SUM(amount) FROM "{table_name}" GROUP BY name
  * RIGHT: SELECT ANY_VALUE(id), name, SUM(amount) FROM "{table_name}" GROUP BY name
- Window functions (ROW_NUMBER, RANK) go in SELECT, never in WHERE; filter on them from a CTE.
- For delimited numbers use string_split(column, ';') and list_sum(...).
- UNION requires the same number and types of columns on both sides.

{json_rules}

Respond in JSON:
{{
  "method": "row_by_row_ai | batch_ai | query_computational | hybrid",
  "reasoning": "Why this method is best",
  "generated_query": "DuckDB SQL using the exact column names above, or null",
  "prompt_template": "Instruction applied to each row or batch, or null",
  "batch_size": 10,
  "expected_results": "What the result should look like"
}}"""


TRANSFORMATION_CHECK_PROMPT = """Analyze this request and decide whether it asks for a data transformation.

User Question: "{question}"

Columns: {columns}
Sample Data:
{sample_rows}

A transformation request wants to modify, calculate or restructure the actual values and get the dataset back, for example:
- "Sum the semicolon-separated values and return the sheet"
- "Convert dates to a different format"
- "Calculate totals for each row"

NOT transformations: filtering ("Find rows with French text"), analysis ("Show duplicates"), aggregation ("Count rows with high values").

{json_rules}

Respond with JSON:
{{
  "is_transformation": true,
  "confidence": 0.0,
  "reasoning": "Brief explanation",
  "transformation_type": "mathematical | textual | structural | parsing | other | null"
}}"""


COLUMN_SCOPE_PROMPT = """Does this question ask which columns or fields contain certain content, rather than which rows match?

User Question: "{question}"

Columns: {columns}

{json_rules}

Respond with JSON:
{{
  "is_column_specific": true,
  "confidence": 0.0,
  "reasoning": "Brief explanation"
}}"""


TRANSFORMATION_PLAN_PROMPT = """Determine which operations must be applied to this row.

User Request: "{question}"
Row Data: {row}

Consider mathematical operations, text processing, format changes, parsing of delimited values, and combining or splitting columns.

{json_rules}

Respond with JSON:
{{
  "operations": [
    {{"column": "column_name", "operation": "sum_delimited | uppercase | parse | calculate | format_date | other", "details": "specific details"}}
  ],
  "return_whole_row": true,
  "notes": "anything else to keep in mind"
}}"""


TRANSFORMATION_APPLY_PROMPT = """Transform this row according to the plan.

User Request: "{question}"
Row Data: {row}

Transformation Plan: {plan}

INSTRUCTIONS:
- Follow the plan exactly; if the plan is empty, apply the request directly
- Be precise with arithmetic
- Keep the original column names unless asked to change them
- Include ALL columns, transformed and untransformed

{json_rules}

Respond with JSON:
{{
  "row": {{"column_name": "transformed value"}},
  "confidence": 0.95,
  "reasoning": "What was transformed",
  "operations_applied": ["operation 1"]
}}"""


COLUMN_PATTERN_PROMPT = """Analyze these data samples from column "{column}" and identify patterns.

Sample data:
{values}

User context: {context}

{json_rules}

Respond with JSON:
{{
  "column": "{column}",
  "semantic_type": "email | phone | name | address | currency | date | text | number | other",
  "data_format": "common format observed",
  "patterns": ["pattern 1", "pattern 2"],
  "quality_issues": ["issue 1"],
  "insights": "what the column represents and its quality",
  "confidence": 0.0
}}"""


VALUE_MATCH_PROMPT = """Does this value match the description?

Value: "{value}"
Description: "{description}"
Context: {context}

Examples:
- Value: "jean.doe@company.fr" Description: "French email addresses" -> matches: true
- Value: "Happy customer!" Description: "positive sentiment" -> matches: true

{json_rules}

Respond with JSON:
{{
  "matches": true,
  "confidence": 0.0,
  "reasoning": "brief explanation"
}}"""


ROW_MATCH_PROMPT = """Does this row meet the criteria: "{question}"

Row data: {row}

{json_rules}

Respond with JSON:
{{
  "matches": true,
  "confidence": 0.0,
  "reasoning": "Brief explanation"
}}"""


ROW_INSIGHTS_PROMPT = """Analyze these matching rows and provide insights.

User Question: "{question}"
Found {match_count} matching rows out of {total_rows}

Column Analysis:
{column_analysis}

Sample Matches:
{sample_matches}

{json_rules}

Respond with JSON:
{{
  "summary": "Key findings summary",
  "insights": ["insight 1", "insight 2"],
  "patterns": ["pattern 1"],
  "data_quality": "assessment of data quality",
  "recommendations": ["what to do next"]
}}"""


BATCH_PROMPT = """{instructions}

Batch data ({row_count} rows, numbered from 1 within this batch):
{table}

{json_rules}

Respond with JSON:
{{
  "findings": ["finding 1", "finding 2"],
  "matching_row_numbers": [1, 3],
  "insights": "Key insights from this batch"
}}"""


QUERY_REPAIR_PROMPT = """Fix this SQL query.

ORIGINAL QUERY (has errors):
{query}

ERROR: {error}
SUGGESTION: {suggestion}

SCHEMA:
{schema}

RULES:
1. If the query uses aggregate functions (SUM, COUNT, AVG, ...) next to other columns, add GROUP BY for every non-aggregated column, or wrap those columns in ANY_VALUE()
2. Use the table name "{table_name}" and the exact quoted column names
3. A single read-only SELECT statement only
4. Keep the intent of the original query

USER QUESTION: {question}

Return ONLY the corrected SQL query, no explanation."""


QUERY_INSIGHTS_PROMPT = """Question: "{question}"
SQL Query: {query}
SQL Results{truncation_note}:
{results}

{json_rules}

Provide insights in JSON:
{{
  "summary": "Brief summary of findings",
  "insights": ["insight 1", "insight 2"],
  "direct_answer": "Direct answer to the user's question"
}}"""


HYBRID_PROMPT = """Analyze these SQL results for: "{question}"

{row_count} rows were selected by this query:
{query}

Results{truncation_note}:
{results}

{json_rules}

Provide detailed analysis in JSON:
{{
  "patterns": ["pattern 1", "pattern 2"],
  "insights": ["insight 1", "insight 2"],
  "conclusion": "Final conclusion",
  "recommendations": ["what to do next"]
}}"""


CLASSIFY_VALUES_PROMPT = """Classify these values into one of the categories.

Categories: {categories}
Context: {context}

Values:
{values}

{json_rules}

Respond with JSON:
{{
  "classifications": [
    {{"value": "original value", "category": "one of the categories or unknown", "confidence": 0.0, "reasoning": "why"}}
  ]
}}"""


SIMILARITY_PROMPT = """Score how similar each candidate is to the target (semantic meaning, context, category, format).

Target: "{target}"

Candidates:
{values}

{json_rules}

Respond with JSON, one score per candidate, using the candidate numbers above:
{{
  "scores": [
    {{"index": 1, "score": 0.0, "reasoning": "why"}}
  ]
}}"""


VALIDATE_VALUES_PROMPT = """Validate these values against the rules.

Rules: "{rules}"
Business Context: {context}

Values:
{values}

Check format compliance, business logic, inconsistencies and missing information.

{json_rules}

Respond with JSON:
{{
  "valid_count": 0,
  "invalid_values": [
    {{"value": "original value", "reason": "what is wrong"}}
  ],
  "summary": "overall data quality"
}}"""

BUSINESS_INSIGHTS_PROMPT = """Analyze these data patterns and extract business insights.

Data Context: {context}
User Goals: {goals}

Patterns Found:
{patterns}

{json_rules}

Respond with JSON:
{{
  "insights": [
    {{"insight": "specific business insight", "impact": "potential business impact", "actionable": "specific actions to take", "confidence": 0.8}}
  ],
  "opportunities": [
    {{"opportunity": "business opportunity", "description": "detailed description", "requirements": "what is needed to pursue it"}}
  ],
  "risks": [
    {{"risk": "potential risk", "severity": "high|medium|low", "mitigation": "how to mitigate"}}
  ],
  "recommendations": {{
    "immediate": "immediate actions",
    "short_term": "short-term improvements",
    "long_term": "long-term strategy"
  }}
}}"""


# =============================================================================
# Formatting helpers
# =============================================================================

def clean_cell(value: Any, max_chars: int = MAX_CELL_CHARS) -> str:
    """Render one cell for a prompt: sanitized, single-line, truncated."""
    if value is None:
        return ""
    text = str(value).replace("\r", " ").replace("\n", " ")
    return sanitize_for_prompt_injection(text, max_len=max_chars)


def format_row(row: dict[str, Any]) -> str:
    return ", ".join(f'{key}: "{clean_cell(value)}"' for key, value in row.items())


def format_rows(rows: Sequence[dict[str, Any]]) -> str:
    if not rows:
        return "(no rows)"
    return "\n".join(f"Row {i}: {format_row(row)}" for i, row in enumerate(rows, start=1))


def format_values(values: Sequence[Any]) -> str:
    return "\n".join(f'{i}. "{clean_cell(value)}"' for i, value in enumerate(values, start=1))


def format_schema(columns: Sequence[ColumnDescriptor]) -> str:
    return "\n".join(
        f'"{col.name}" ({col.type.value}, sample: "{clean_cell(col.sample_value, 80)}", '
        f"{col.unique_count} unique, {col.null_count} null of {col.total_count})"
        for col in columns
    )


def format_column_names(columns: Sequence[ColumnDescriptor]) -> str:
    return ", ".join(f'"{col.name}"' for col in columns)


def format_column_list(columns: Sequence[ColumnDescriptor]) -> str:
    return ", ".join(f"{col.name} ({col.type.value})" for col in columns)


def format_batch_table(rows: Sequence[dict[str, Any]], columns: Sequence[str]) -> str:
    """Compact pipe-separated table with 1-based row numbers."""
    lines = ["# | " + " | ".join(columns)]
    for i, row in enumerate(rows, start=1):
        cells = [clean_cell(row.get(col)).replace("|", "/") for col in columns]
        lines.append(f"{i} | " + " | ".join(cells))
    return "\n".join(lines)


def format_column_analysis(analysis: dict[str, ColumnPatternAnalysis]) -> str:
    if not analysis:
        return "(not analyzed)"
    return "\n".join(
        f"{name}: {a.semantic_type} ({a.insights or 'no notes'})" for name, a in analysis.items()
    )


def prompt_safe_rows(rows: Sequence[dict[str, Any]]) -> list[dict[str, Any]]:
    """Sanitize string cells of result rows, leaving numbers untouched."""
    return [
        {key: clean_cell(value) if isinstance(value, str) else value for key, value in row.items()}
        for row in rows
    ]


def to_json(data: Any) -> str:
    """Pretty JSON for results embedded in prompts."""
    return json.dumps(data, indent=2, default=str, ensure_ascii=False)
