"""
Validation Case Models

Rows of the warehouse-side validation configuration table that the deployed
validator job reads. Payloads arrive with lower-case keys on insert and with
the table's upper-case column names on update; both are accepted.
"""

from typing import List, Optional, Union

from pydantic import AliasChoices, BaseModel, ConfigDict, Field

from datadeployer.models.connection import WarehouseConnectionConfig


def _either(name: str) -> AliasChoices:
    return AliasChoices(name, name.upper())


class ValidationCase(BaseModel):
    """A single validation rule."""

    model_config = ConfigDict(populate_by_name=True)

    id: Optional[Union[int, str]] = Field(None, validation_alias=_either("id"))
    validation_description: Optional[str] = Field(
        None, validation_alias=_either("validation_description")
    )
    validation_query: Optional[str] = Field(
        None, validation_alias=_either("validation_query")
    )
    operator: Optional[str] = Field(None, validation_alias=_either("operator"))
    expected_outcome: Optional[str] = Field(
        None, validation_alias=_either("expected_outcome")
    )
    validated_by: Optional[str] = Field(None, validation_alias=_either("validated_by"))
    entity: Optional[str] = Field(None, validation_alias=_either("entity"))
    iteration: Optional[str] = Field(None, validation_alias=_either("iteration"))
    is_active: Optional[bool] = Field(None, validation_alias=_either("is_active"))
    team: Optional[str] = Field(None, validation_alias=_either("team"))
    metric_index: Optional[int] = Field(1, validation_alias=_either("metric_index"))


class InsertCaseRequest(WarehouseConnectionConfig):
    validation_case: ValidationCase = Field(..., alias="validationCase")


class DescriptionsRequest(WarehouseConnectionConfig):
    entities: List[str] = Field(default_factory=list)


class FilteredCasesRequest(WarehouseConnectionConfig):
    entities: List[str] = Field(default_factory=list)
    descriptions: List[str] = Field(default_factory=list)


class ActivateCasesRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    snowflake_config: WarehouseConnectionConfig = Field(..., alias="snowflakeConfig")
    selected_validation_ids: List[Union[int, str]] = Field(
        default_factory=list, alias="selectedValidationIds"
    )


class UpdateCaseRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    snowflake_config: Optional[WarehouseConnectionConfig] = Field(
        None, alias="snowflakeConfig"
    )
    validation: Optional[ValidationCase] = None
