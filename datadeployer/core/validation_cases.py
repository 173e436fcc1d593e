"""
Validation case catalog.

CRUD over the warehouse table the deployed validator job reads its rules from.
Identifiers are validated to `[A-Z0-9_]+`; all values are bound parameters.
"""

import logging
from typing import Any, Callable, Dict, List, Sequence

from datadeployer.config import settings
from datadeployer.connectors.snowflake_client import open_session, validate_ident
from datadeployer.models.connection import WarehouseConnectionConfig
from datadeployer.models.validation_case import ValidationCase

logger = logging.getLogger(__name__)

SEQUENCE_NAME = "VALIDATION_CASES"

_CASE_COLUMNS = (
    "ID, VALIDATION_DESCRIPTION, VALIDATION_QUERY, OPERATOR, EXPECTED_OUTCOME, "
    "VALIDATED_BY, ENTITY, ITERATION, IS_ACTIVE, INSERTED_DATE, UPDATED_DATE, "
    "TEAM, METRIC_INDEX"
)


def _placeholders(n: int) -> str:
    return ", ".join("?" for _ in range(n))


def _qualified(name: str) -> str:
    return ".".join(validate_ident(p, label="identifier") for p in name.split("."))


class ValidationCaseCatalog:
    """Operations on `<db>.<schema>.TBL_VALIDATING_TEST_CASES`."""

    def __init__(
        self,
        config: WarehouseConnectionConfig,
        *,
        session_factory: Callable = open_session,
    ):
        self.config = config
        self.database = validate_ident(config.database, label="database")
        self.schema = validate_ident(config.schema_name, label="schema")
        self.table_name = validate_ident(settings.TEST_CASES_TABLE, label="table")
        self.table = f"{self.database}.{self.schema}.{self.table_name}"
        self._session_factory = session_factory

    async def _run(
        self, *statements: tuple[str, Sequence[Any] | None]
    ) -> List[Dict[str, Any]]:
        """Run statements on one connection, returning the last one's rows."""
        rows: List[Dict[str, Any]] = []
        async with self._session_factory(self.config) as session:
            for sql, params in statements:
                rows = await session.execute(sql, params)
        return rows

    async def list_tables(self) -> List[Dict[str, Any]]:
        rows = await self._run(
            (
                f"SELECT TABLE_NAME FROM {self.database}.INFORMATION_SCHEMA.TABLES "
                "WHERE TABLE_SCHEMA = ? AND TABLE_CATALOG = ? ORDER BY TABLE_NAME",
                [self.schema, self.database],
            )
        )
        tables = [{"name": r.get("TABLE_NAME"), "exists": True} for r in rows]
        if not any(t["name"] == self.table_name for t in tables):
            tables.append({"name": self.table_name, "exists": False})
        return tables

    def create_table_sql(self) -> str:
        seq = f"{self.database}.{self.schema}.{SEQUENCE_NAME}"
        return f"""CREATE TABLE IF NOT EXISTS {self.table} (
    ID NUMBER(38,0) NOT NULL DEFAULT {seq}.NEXTVAL,
    VALIDATION_DESCRIPTION VARCHAR(500),
    VALIDATION_QUERY VARCHAR(16777216),
    OPERATOR VARCHAR(10),
    EXPECTED_OUTCOME VARCHAR(100),
    VALIDATED_BY VARCHAR(100),
    ENTITY VARCHAR(200),
    ITERATION VARCHAR(10),
    INSERTED_DATE TIMESTAMP_NTZ(9),
    UPDATED_DATE TIMESTAMP_NTZ(9),
    IS_ACTIVE BOOLEAN,
    TEAM VARCHAR(50),
    METRIC_INDEX NUMBER(38,0) DEFAULT 1,
    PRIMARY KEY (ID)
)"""

    async def create_config_table(self) -> str:
        seq = f"{self.database}.{self.schema}.{SEQUENCE_NAME}"
        ddl = self.create_table_sql()
        await self._run(
            (f"CREATE SEQUENCE IF NOT EXISTS {seq} START = 1 INCREMENT = 1", None),
            (ddl, None),
        )
        logger.info(f"Created/verified {self.table}")
        return ddl

    async def insert_case(self, case: ValidationCase) -> None:
        await self._run(
            (
                f"INSERT INTO {self.table} (VALIDATION_DESCRIPTION, VALIDATION_QUERY, "
                "OPERATOR, EXPECTED_OUTCOME, VALIDATED_BY, ENTITY, ITERATION, "
                "INSERTED_DATE, UPDATED_DATE, IS_ACTIVE, TEAM, METRIC_INDEX) "
                "VALUES (?, ?, ?, ?, ?, ?, ?, CURRENT_TIMESTAMP(), CURRENT_TIMESTAMP(), "
                "TRUE, ?, ?)",
                [
                    case.validation_description,
                    case.validation_query,
                    case.operator,
                    case.expected_outcome,
                    case.validated_by,
                    case.entity,
                    case.iteration,
                    case.team,
                    case.metric_index,
                ],
            )
        )
        logger.info(f"Inserted validation case into {self.table}")

    async def list_entities(self) -> List[str]:
        rows = await self._run(
            (
                f"SELECT DISTINCT ENTITY FROM {self.table} "
                "WHERE ENTITY IS NOT NULL ORDER BY ENTITY",
                None,
            )
        )
        return [r["ENTITY"] for r in rows]

    async def list_descriptions(self, entities: Sequence[str]) -> List[str]:
        if not entities:
            return []
        rows = await self._run(
            (
                f"SELECT DISTINCT VALIDATION_DESCRIPTION FROM {self.table} "
                f"WHERE ENTITY IN ({_placeholders(len(entities))}) "
                "AND VALIDATION_DESCRIPTION IS NOT NULL ORDER BY VALIDATION_DESCRIPTION",
                list(entities),
            )
        )
        return [r["VALIDATION_DESCRIPTION"] for r in rows]

    async def list_filtered(
        self, entities: Sequence[str], descriptions: Sequence[str]
    ) -> List[Dict[str, Any]]:
        if not entities or not descriptions:
            return []
        return await self._run(
            (
                f"SELECT {_CASE_COLUMNS} FROM {self.table} "
                f"WHERE ENTITY IN ({_placeholders(len(entities))}) "
                f"AND VALIDATION_DESCRIPTION IN ({_placeholders(len(descriptions))}) "
                "ORDER BY INSERTED_DATE DESC",
                [*entities, *descriptions],
            )
        )

    async def set_active_cases(self, ids: Sequence[Any]) -> int:
        """Deactivate everything, then activate exactly `ids`."""
        statements: List[tuple[str, Sequence[Any] | None]] = [
            (
                f"UPDATE {self.table} SET IS_ACTIVE = FALSE, "
                "UPDATED_DATE = CURRENT_TIMESTAMP()",
                None,
            )
        ]
        if ids:
            statements.append(
                (
                    f"UPDATE {self.table} SET IS_ACTIVE = TRUE, "
                    "UPDATED_DATE = CURRENT_TIMESTAMP() "
                    f"WHERE ID IN ({_placeholders(len(ids))})",
                    list(ids),
                )
            )
        await self._run(*statements)
        return len(ids)

    async def update_case(self, case: ValidationCase) -> None:
        if case.id is None or case.id == "":
            raise ValueError("Validation data with ID is required")
        await self._run(
            (
                f"UPDATE {self.table} SET VALIDATION_DESCRIPTION = ?, "
                "VALIDATION_QUERY = ?, OPERATOR = ?, EXPECTED_OUTCOME = ?, "
                "VALIDATED_BY = ?, ENTITY = ?, ITERATION = ?, IS_ACTIVE = ?, "
                "TEAM = ?, METRIC_INDEX = ?, UPDATED_DATE = CURRENT_TIMESTAMP() "
                "WHERE ID = ?",
                [
                    case.validation_description,
                    case.validation_query,
                    case.operator,
                    case.expected_outcome,
                    case.validated_by,
                    case.entity,
                    case.iteration,
                    case.is_active,
                    case.team,
                    case.metric_index,
                    case.id,
                ],
            )
        )
        logger.info(f"Updated validation case {case.id}")

    async def validation_summary(self) -> List[Dict[str, Any]]:
        """Latest validator results joined with their case definitions."""
        results = _qualified(settings.VALIDATION_RESULTS_TABLE)
        return await self._run(
            (
                f"""WITH latest AS (
    SELECT * FROM {results} WHERE execution_type = 'L'
)
SELECT
    cfg.entity AS "Application",
    cfg.validation_description AS "Description",
    res.validation_status AS "Status",
    res.comment AS "Comment"
FROM latest res
JOIN {self.table} cfg ON cfg.id = res.validation_id
ORDER BY cfg.entity, cfg.validation_description""",
                None,
            )
        )
