"""
Prompt templates for validation SQL generation.

Two modes:
- normal: intent + output contract + authoritative column list
- fix: previous SQL + its error, verbatim, with instructions to repair column references
"""

import re
from typing import Iterable, Optional, Sequence

from datadeployer.models.validation import ColumnDescriptor

_SQL_FENCE_RE = re.compile(r"```sql[^\n]*\n(.*?)```", re.DOTALL | re.IGNORECASE)
_ANY_FENCE_RE = re.compile(r"```[^\n]*\n(.*?)```", re.DOTALL)
_OPEN_FENCE_RE = re.compile(r"```[^\n]*\n(.*)", re.DOTALL)


def format_columns(columns: Sequence[ColumnDescriptor]) -> str:
    lines = [
        f"- {c.name} ({c.type}) {'NULL' if c.nullable else 'NOT NULL'}" for c in columns
    ]
    return (
        "ACTUAL TABLE COLUMNS:\n"
        + "\n".join(lines)
        + "\n\n⚠️ IMPORTANT: You MUST use ONLY these exact column names. "
        "Do not assume or invent column names."
    )


def build_generation_prompt(
    database: Optional[str],
    schema: Optional[str],
    tables: Optional[Iterable[str]] = None,
    columns: Optional[Sequence[ColumnDescriptor]] = None,
) -> str:
    """System prompt for a first attempt."""
    columns_info = f"\n\n{format_columns(columns)}" if columns else ""
    tables_list = ", ".join(tables) if tables else "Not specified"
    return f"""You are an expert SQL data validation engineer. Generate Snowflake SQL validation queries based on user requirements.

IMPORTANT: Follow this exact pattern for validation queries:
1. Each validation must return 2 columns: "Table Name" and "Status"
2. Status values:
   - 0 = Success (no issues)
   - 1 = Failure (critical issues found)
   - 2 = Warning (threshold breach, some issues but under limit)
3. Use UNION ALL to combine multiple validations
4. Example pattern:

SELECT
    'VALIDATION_NAME' AS "Table Name",
    CASE
        WHEN COUNT(*) = 0 THEN 0       -- Success
        WHEN COUNT(*) > 0 AND COUNT(*) < 50 THEN 2  -- Warning
        ELSE 1                          -- Failure
    END AS "Status"
FROM {database}.{schema}.TABLE_NAME
WHERE [validation condition]

Database: {database}
Schema: {schema}
Available Tables: {tables_list}{columns_info}

Generate production-quality validation queries. Include appropriate thresholds where needed."""


def build_fix_prompt(
    previous_sql: str,
    previous_error: str,
    columns: Optional[Sequence[ColumnDescriptor]] = None,
) -> str:
    """System prompt for a retry; prior SQL and error are embedded unmodified."""
    columns_info = f"\n\n{format_columns(columns)}" if columns else ""
    return f"""You are an expert SQL data validation engineer. The previous query failed with an error.

PREVIOUS QUERY:
{previous_sql}

ERROR:
{previous_error}{columns_info}

Fix the query by:
1. Using the exact column names provided in the table schema
2. Ensure all column names are correctly spelled and exist
3. Keep the same validation logic but fix the column references

ONLY output the corrected SQL query, nothing else."""


def compose(system_prompt: str, user_request: str) -> str:
    return f"{system_prompt}\n\nUser Request: {user_request}"


def extract_sql(text: str) -> str:
    """Prefer a ```sql fence, then any ``` fence, then the whole text."""
    if not text:
        return ""
    match = _SQL_FENCE_RE.search(text) or _ANY_FENCE_RE.search(text)
    if match:
        return match.group(1).strip()
    # unclosed fence, e.g. output cut at the token limit
    match = _OPEN_FENCE_RE.search(text)
    if match:
        return match.group(1).strip()
    return text.strip()
