"""
API routes for the warehouse-side validation case table.
"""

from typing import Any, Dict, Optional

from fastapi import APIRouter, Body
from fastapi.encoders import jsonable_encoder

from datadeployer.api.error_handling import error_response, fail
from datadeployer.core import config_store
from datadeployer.core.validation_cases import ValidationCaseCatalog
from datadeployer.models.connection import WarehouseConnectionConfig
from datadeployer.models.validation_case import (
    ActivateCasesRequest,
    DescriptionsRequest,
    FilteredCasesRequest,
    InsertCaseRequest,
    UpdateCaseRequest,
)

router = APIRouter()


def _catalog(config: WarehouseConnectionConfig) -> ValidationCaseCatalog:
    return ValidationCaseCatalog(config)


@router.post("/snowflake/tables")
async def list_tables(config: WarehouseConnectionConfig):
    try:
        catalog = _catalog(config)
        tables = await catalog.list_tables()
    except Exception as e:
        return error_response("list Snowflake tables", e)
    return {
        "success": True,
        "tables": tables,
        "message": f"Found {len(tables)} tables in {catalog.database}.{catalog.schema}",
    }


@router.post("/snowflake/create-config-table")
async def create_config_table(config: WarehouseConnectionConfig):
    try:
        catalog = _catalog(config)
        ddl = await catalog.create_config_table()
    except Exception as e:
        return error_response("create config table", e)
    return {
        "success": True,
        "message": f"{catalog.table_name} table created successfully",
        "sql": ddl,
    }


@router.post("/snowflake/insert-validation")
async def insert_validation(request: InsertCaseRequest):
    try:
        await _catalog(request).insert_case(request.validation_case)
    except Exception as e:
        return error_response("insert validation case", e)
    return {"success": True, "message": "Validation case inserted successfully"}


@router.post("/snowflake/entities")
async def list_entities(config: WarehouseConnectionConfig):
    try:
        entities = await _catalog(config).list_entities()
    except Exception as e:
        return error_response("fetch entities", e)
    return {
        "success": True,
        "entities": entities,
        "message": f"Found {len(entities)} unique entities",
    }


@router.post("/snowflake/descriptions")
async def list_descriptions(request: DescriptionsRequest):
    try:
        descriptions = await _catalog(request).list_descriptions(request.entities)
    except Exception as e:
        return error_response("fetch descriptions", e)
    return {
        "success": True,
        "descriptions": descriptions,
        "message": f"Found {len(descriptions)} descriptions",
    }


@router.post("/snowflake/validations-filtered")
async def list_filtered(request: FilteredCasesRequest):
    try:
        rows = await _catalog(request).list_filtered(request.entities, request.descriptions)
    except Exception as e:
        return error_response("fetch validations", e)
    return {
        "success": True,
        "validations": jsonable_encoder(rows),
        "message": f"Found {len(rows)} validation rules",
    }


@router.post("/snowflake/update-validations")
async def update_validations(request: ActivateCasesRequest):
    """Make exactly the selected cases active."""
    try:
        count = await _catalog(request.snowflake_config).set_active_cases(
            request.selected_validation_ids
        )
    except Exception as e:
        return error_response("update validations", e)
    return {
        "success": True,
        "message": f"Successfully activated {count} validation rules",
        "activeCount": count,
    }


@router.post("/snowflake/update-validation")
async def update_validation(request: UpdateCaseRequest):
    config = request.snowflake_config or config_store.load_snowflake_config()
    if config is None:
        return fail("Snowflake configuration is required")
    if request.validation is None or request.validation.id in (None, ""):
        return fail("Validation data with ID is required")
    try:
        await _catalog(config).update_case(request.validation)
    except Exception as e:
        return error_response("update validation", e)
    return {"success": True, "message": "Validation rule updated successfully"}


@router.post("/validation-summary")
async def validation_summary(payload: Optional[Dict[str, Any]] = Body(None)):
    """Latest results per case. Uses the body's config, else the saved one."""
    try:
        config: Optional[WarehouseConnectionConfig]
        if payload and payload.get("account"):
            config = WarehouseConnectionConfig.model_validate(payload)
        else:
            config = config_store.load_snowflake_config()
        if config is None:
            return fail(
                "Snowflake configuration not found. Please configure Snowflake first."
            )
        rows = await _catalog(config).validation_summary()
    except Exception as e:
        return error_response("fetch validation summary", e)
    return {"success": True, "data": jsonable_encoder(rows), "count": len(rows)}
