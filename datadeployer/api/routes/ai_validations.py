"""
API routes for AI-generated validations.

Stepwise endpoints (schema, generate, test) back the interactive flow; the
self-heal endpoint runs the whole generate/test/regenerate loop server-side.
"""

import logging

from fastapi import APIRouter, status
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse

from datadeployer.api.error_handling import error_response
from datadeployer.connectors.gemini_client import GeminiClient, GeminiNotConfiguredError
from datadeployer.connectors.snowflake_client import (
    SnowflakeSession,
    open_session,
    split_table_name,
)
from datadeployer.core import config_store, prompts
from datadeployer.core.draft_store import ConfigTableTarget, get_draft_store
from datadeployer.core.self_healing import SelfHealingGenerator
from datadeployer.models.validation import (
    DeleteDraftRequest,
    GenerateValidationRequest,
    SaveDraftRequest,
    SelfHealRequest,
    TableSchemaRequest,
    TestQueryRequest,
    ToggleDraftRequest,
)

router = APIRouter()

logger = logging.getLogger(__name__)


def _gemini_client() -> GeminiClient:
    credential = config_store.load_gemini_credential()
    if credential is None:
        raise GeminiNotConfiguredError()
    return GeminiClient(credential.api_key)


@router.post("/get-table-schema")
async def get_table_schema(request: TableSchemaRequest):
    cfg = request.snowflake_config
    database, schema, table = split_table_name(
        request.table_name,
        request.database or cfg.database,
        request.schema_name or cfg.schema_name,
    )
    try:
        async with open_session(cfg) as session:
            columns = await session.describe_table(database, schema, table)
    except Exception as e:
        return error_response("get table schema", e)
    return {
        "success": True,
        "columns": [c.model_dump() for c in columns],
        "tableName": request.table_name,
    }


@router.post("/generate-validation")
async def generate_validation(request: GenerateValidationRequest):
    """
    One generation call. Fix mode when both `previousError` and `previousSQL`
    are present, otherwise the normal template.
    """
    try:
        client = _gemini_client()
        if request.previous_error and request.previous_sql:
            system = prompts.build_fix_prompt(
                request.previous_sql, request.previous_error, request.table_columns
            )
        else:
            system = prompts.build_generation_prompt(
                request.database,
                request.schema_name,
                request.tables,
                request.table_columns,
            )
        raw = await client.generate(prompts.compose(system, request.prompt))
    except Exception as e:
        return error_response("generate validation", e)
    return {"success": True, "sql": prompts.extract_sql(raw), "raw_response": raw}


@router.post("/test-query")
async def test_query(request: TestQueryRequest):
    try:
        async with open_session(request.snowflake_config) as session:
            rows = await session.execute(request.query)
    except Exception as e:
        return error_response("test query", e)
    return {"success": True, "results": jsonable_encoder(rows), "rowCount": len(rows)}


@router.post("/self-heal-validation")
async def self_heal_validation(request: SelfHealRequest):
    """Generate, test and regenerate until the SQL runs or retries run out."""
    try:
        client = _gemini_client()
        # connects lazily so connect failures count as attempts
        session = SnowflakeSession(request.snowflake_config)
        try:
            generator = SelfHealingGenerator(client, session, store=get_draft_store())
            outcome = await generator.run(
                request.prompt,
                database=request.database or request.snowflake_config.database,
                schema=request.schema_name or request.snowflake_config.schema_name,
                table_name=request.table_name,
                columns=request.table_columns,
                tables=request.tables,
            )
        finally:
            await session.close()
    except Exception as e:
        return error_response("self-heal validation", e)

    body = outcome.model_dump(mode="json", by_alias=True)
    if not outcome.success:
        body["message"] = (
            f"Validation could not be healed after {outcome.retries} retries: {outcome.error}"
        )
        return JSONResponse(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, content=body)
    return body


@router.post("/save-ai-validation")
async def save_ai_validation(request: SaveDraftRequest):
    try:
        draft = await get_draft_store().append(
            prompt=request.prompt,
            sql=request.sql,
            database=request.database,
            schema=request.schema_name,
            test_result=request.test_result,
        )
    except Exception as e:
        return error_response("save validation", e)
    return {"success": True, "validation": draft.to_json()}


@router.get("/ai-validations")
async def list_ai_validations():
    drafts = await get_draft_store().list()
    return {"success": True, "validations": [d.to_json() for d in drafts]}


@router.post("/toggle-ai-validation")
async def toggle_ai_validation(request: ToggleDraftRequest):
    """
    Flip a draft's active flag. With a Snowflake config the config table is
    updated as well (insert on activation, delete on deactivation).
    """
    try:
        remote = (
            ConfigTableTarget(request.snowflake_config, session_factory=open_session)
            if request.snowflake_config is not None
            else None
        )
        draft = await get_draft_store().set_active(request.id, request.is_active, remote)
    except Exception as e:
        return error_response("toggle validation", e)
    return {"success": True, "validation": draft.to_json()}


@router.post("/delete-ai-validation")
async def delete_ai_validation(request: DeleteDraftRequest):
    try:
        deleted = await get_draft_store().delete(request.id)
    except Exception as e:
        return error_response("delete validation", e)
    return {"success": True, "deleted": deleted}
