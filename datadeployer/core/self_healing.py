"""
Self-healing validation SQL generation.

Generate → execute → on error regenerate with the failing SQL and the
warehouse's error message, until the statement runs or the retry budget is spent.

At most 1 + max_retries generation calls per intent. Calls are strictly
sequential; attempt N+1 starts only after attempt N's execution returns.
"""

import logging
from typing import Any, Dict, Iterable, List, Optional, Protocol, Sequence

import sqlglot
from sqlglot import exp
from sqlglot.errors import SqlglotError

from datadeployer.config import settings
from datadeployer.connectors.gemini_client import (
    GeminiClient,
    GeminiError,
    GeminiNotConfiguredError,
)
from datadeployer.connectors.snowflake_client import WarehouseQueryError, split_table_name
from datadeployer.core import prompts
from datadeployer.core.draft_store import DraftStore
from datadeployer.models.validation import (
    ColumnDescriptor,
    HealingOutcome,
    HealingState,
    TestResult,
)

logger = logging.getLogger(__name__)

VALID_STATUS_CODES = {0, 1, 2}


class Warehouse(Protocol):
    async def execute(
        self, query: str, params: Optional[Sequence[Any]] = None
    ) -> List[Dict[str, Any]]: ...

    async def describe_table(
        self, database: str | None, schema: str | None, table: str
    ) -> List[ColumnDescriptor]: ...


def unknown_column_warnings(sql: str, columns: Sequence[ColumnDescriptor]) -> List[str]:
    """
    Column references that are neither a known column nor an output alias.

    Advisory only: a parse failure yields no warnings.
    """
    if not columns:
        return []
    try:
        tree = sqlglot.parse_one(sql, read="snowflake")
    except SqlglotError as e:
        logger.debug(f"Skipping column check, SQL did not parse: {e}")
        return []
    if tree is None:
        return []

    known = {c.name.upper() for c in columns}
    aliases = {a.alias.upper() for a in tree.find_all(exp.Alias) if a.alias}
    ctes = {c.alias.upper() for c in tree.find_all(exp.CTE) if c.alias}

    unknown: List[str] = []
    for column in tree.find_all(exp.Column):
        if isinstance(column.this, exp.Star):
            continue
        name = column.name
        if not name:
            continue
        if column.table and column.table.upper() in ctes:
            continue
        upper = name.upper()
        if upper in known or upper in aliases or upper in unknown:
            continue
        unknown.append(upper)

    return [f"Column {name} is not in the table's column list" for name in unknown]


def status_contract_warnings(rows: Iterable[Dict[str, Any]]) -> List[str]:
    """Rows should carry a "Status" column with values 0, 1 or 2."""
    warnings: List[str] = []
    bad: List[Any] = []
    for row in rows:
        key = next((k for k in row if str(k).strip().lower() == "status"), None)
        if key is None:
            return ['Result has no "Status" column']
        value = row[key]
        try:
            code = int(value)
        except (TypeError, ValueError):
            code = None
        if code not in VALID_STATUS_CODES and value not in bad:
            bad.append(value)
    if bad:
        warnings.append(f"Status values outside 0/1/2: {', '.join(map(str, bad))}")
    return warnings


class SelfHealingGenerator:
    """Runs the bounded generate/test/regenerate loop for one intent."""

    def __init__(
        self,
        gemini: Optional[GeminiClient],
        warehouse: Warehouse,
        *,
        store: Optional[DraftStore] = None,
        max_retries: int | None = None,
    ):
        self.gemini = gemini
        self.warehouse = warehouse
        self.store = store
        self.max_retries = (
            settings.SELF_HEAL_MAX_RETRIES if max_retries is None else max(0, int(max_retries))
        )

    async def _resolve_columns(
        self,
        table_name: Optional[str],
        database: Optional[str],
        schema: Optional[str],
        columns: Optional[Sequence[ColumnDescriptor]],
        log: List[str],
    ) -> List[ColumnDescriptor]:
        if not table_name:
            return list(columns or [])
        db, sch, table = split_table_name(table_name, database, schema)
        try:
            fetched = await self.warehouse.describe_table(db, sch, table)
        except (WarehouseQueryError, ValueError) as e:
            log.append(f"Could not fetch columns for {table_name}: {e}")
            logger.warning(f"Column fetch for {table_name} failed: {e}")
            return list(columns or [])
        log.append(f"Fetched {len(fetched)} columns for {table_name}")
        return fetched or list(columns or [])

    async def run(
        self,
        intent: str,
        *,
        database: Optional[str] = None,
        schema: Optional[str] = None,
        table_name: Optional[str] = None,
        columns: Optional[Sequence[ColumnDescriptor]] = None,
        tables: Optional[Sequence[str]] = None,
    ) -> HealingOutcome:
        if self.gemini is None:
            raise GeminiNotConfiguredError()

        log: List[str] = []
        if table_name:
            database, schema, _ = split_table_name(table_name, database, schema)
            if not tables:
                tables = [table_name.split(".")[-1]]
        known_columns = await self._resolve_columns(
            table_name, database, schema, columns, log
        )

        attempts = 0
        retries = 0
        last_sql: Optional[str] = None
        last_error: Optional[str] = None
        failure: Optional[str] = None
        state = HealingState.GENERATING

        while True:
            # GENERATING
            if last_sql is not None and last_error is not None:
                system = prompts.build_fix_prompt(last_sql, last_error, known_columns)
            else:
                system = prompts.build_generation_prompt(
                    database, schema, tables, known_columns
                )
            attempts += 1
            sql: Optional[str] = None
            try:
                raw = await self.gemini.generate(prompts.compose(system, intent))
                sql = prompts.extract_sql(raw)
                if not sql:
                    raise GeminiError("Model returned no SQL")
            except GeminiError as e:
                failure = str(e)
                log.append(f"Attempt {attempts}: generation failed: {failure}")
                logger.warning(f"Generation attempt {attempts} failed: {failure}")
                sql = None

            # TESTING
            if sql is not None:
                state = HealingState.TESTING
                try:
                    rows = await self.warehouse.execute(sql)
                except WarehouseQueryError as e:
                    failure = str(e)
                    last_sql, last_error = sql, failure
                    log.append(f"Attempt {attempts}: execution failed: {failure}")
                    logger.info(f"Attempt {attempts} SQL failed: {failure}")
                else:
                    log.append(f"Attempt {attempts}: executed, {len(rows)} rows")
                    return await self._healed(
                        intent,
                        sql,
                        rows,
                        attempts=attempts,
                        retries=retries,
                        database=database,
                        schema=schema,
                        columns=known_columns,
                        log=log,
                    )

            if retries >= self.max_retries:
                state = HealingState.EXHAUSTED
                log.append(f"Giving up after {retries} retries")
                logger.warning(f"Self-healing exhausted after {attempts} attempts: {failure}")
                return HealingOutcome(
                    success=False,
                    sql=last_sql,
                    attempts=attempts,
                    retries=retries,
                    state=state,
                    healing_log=log,
                    error=failure,
                )

            retries += 1
            state = HealingState.GENERATING

    async def _healed(
        self,
        intent: str,
        sql: str,
        rows: List[Dict[str, Any]],
        *,
        attempts: int,
        retries: int,
        database: Optional[str],
        schema: Optional[str],
        columns: Sequence[ColumnDescriptor],
        log: List[str],
    ) -> HealingOutcome:
        result = TestResult(success=True, rows=rows, row_count=len(rows))
        warnings = unknown_column_warnings(sql, columns) + status_contract_warnings(rows)

        draft = None
        if self.store is not None:
            draft = await self.store.append(
                prompt=intent,
                sql=sql,
                database=database,
                schema=schema,
                test_result=result,
            )
        return HealingOutcome(
            success=True,
            sql=sql,
            draft=draft,
            test_result=result,
            attempts=attempts,
            retries=retries,
            state=HealingState.HEALED,
            healing_log=log,
            warnings=warnings,
        )
