"""
AI Validation Models

Pydantic models for generated validation drafts, their test results and the
self-healing generation loop.
"""

from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field

from datadeployer.models.connection import WarehouseConnectionConfig


class ColumnDescriptor(BaseModel):
    """A column as reported by DESCRIBE TABLE."""

    name: str
    type: str = ""
    nullable: bool = True


class TestResult(BaseModel):
    """Outcome of executing a candidate SQL statement."""

    __test__ = False

    model_config = ConfigDict(populate_by_name=True)

    success: bool
    rows: List[Dict[str, Any]] = Field(default_factory=list, alias="results")
    row_count: int = Field(0, alias="rowCount")
    error: Optional[str] = None


class ValidationDraft(BaseModel):
    """
    A generated SQL validation that executed successfully at least once.

    Stored keys follow the console's JSON contract (camelCase aliases).
    """

    model_config = ConfigDict(populate_by_name=True)

    id: str
    prompt_text: str = Field("", alias="prompt")
    sql_text: str = Field(..., alias="sql")
    target_database: Optional[str] = Field(None, alias="database")
    target_schema: Optional[str] = Field(None, alias="schema")
    last_test_result: Optional[Any] = Field(None, alias="testResult")
    created_at: datetime = Field(..., alias="createdAt")
    is_active: bool = Field(False, alias="isActive")

    def to_json(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True)


class HealingState(str, Enum):
    """States of the generate → test → regenerate loop."""

    GENERATING = "generating"
    TESTING = "testing"
    HEALED = "healed"
    EXHAUSTED = "exhausted"


# ---------------------------------------------------------------------------
# Request / response payloads
# ---------------------------------------------------------------------------


class TableSchemaRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    table_name: str = Field(..., alias="tableName", min_length=1)
    database: Optional[str] = None
    schema_name: Optional[str] = Field(
        None, validation_alias=AliasChoices("schema", "schema_name")
    )
    snowflake_config: WarehouseConnectionConfig = Field(..., alias="snowflakeConfig")


class GenerateValidationRequest(BaseModel):
    """Single generation call (normal mode, or fix mode when both previous_* are set)."""

    model_config = ConfigDict(populate_by_name=True)

    prompt: str = ""
    database: Optional[str] = None
    schema_name: Optional[str] = Field(
        None, validation_alias=AliasChoices("schema", "schema_name")
    )
    tables: Optional[List[str]] = None
    table_columns: Optional[List[ColumnDescriptor]] = Field(None, alias="tableColumns")
    previous_error: Optional[str] = Field(None, alias="previousError")
    previous_sql: Optional[str] = Field(None, alias="previousSQL")


class TestQueryRequest(BaseModel):
    __test__ = False

    model_config = ConfigDict(populate_by_name=True)

    query: str = Field(..., min_length=1)
    snowflake_config: WarehouseConnectionConfig = Field(..., alias="snowflakeConfig")


class SelfHealRequest(BaseModel):
    """Server-side run of the whole generate/test/heal loop."""

    model_config = ConfigDict(populate_by_name=True)

    prompt: str = Field(..., min_length=1)
    database: Optional[str] = None
    schema_name: Optional[str] = Field(
        None, validation_alias=AliasChoices("schema", "schema_name")
    )
    table_name: Optional[str] = Field(None, alias="tableName")
    tables: Optional[List[str]] = None
    table_columns: Optional[List[ColumnDescriptor]] = Field(None, alias="tableColumns")
    snowflake_config: WarehouseConnectionConfig = Field(..., alias="snowflakeConfig")


class SaveDraftRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    prompt: str = ""
    sql: str = Field(..., min_length=1)
    database: Optional[str] = None
    schema_name: Optional[str] = Field(
        None, validation_alias=AliasChoices("schema", "schema_name")
    )
    test_result: Optional[Any] = Field(None, alias="testResult")


class ToggleDraftRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    id: str = Field(..., min_length=1)
    is_active: bool = Field(..., alias="isActive")
    snowflake_config: Optional[WarehouseConnectionConfig] = Field(
        None, alias="snowflakeConfig"
    )


class DeleteDraftRequest(BaseModel):
    id: str = Field(..., min_length=1)


class HealingOutcome(BaseModel):
    """Result of one self-healing run, as returned to the console."""

    model_config = ConfigDict(populate_by_name=True)

    success: bool
    sql: Optional[str] = None
    draft: Optional[ValidationDraft] = None
    test_result: Optional[TestResult] = Field(None, alias="testResult")
    attempts: int = 0
    retries: int = 0
    state: Optional[HealingState] = None
    healing_log: List[str] = Field(default_factory=list, alias="healingLog")
    warnings: List[str] = Field(default_factory=list)
    error: Optional[str] = None
