"""
API routes for remote service connections (AWS, Snowflake, Gemini) and the
persisted credentials.
"""

import logging
from typing import Any, Dict

from fastapi import APIRouter, Body, status

from datadeployer.api.error_handling import error_response
from datadeployer.connectors.gemini_client import GeminiClient
from datadeployer.connectors.snowflake_client import open_session
from datadeployer.core import aws_resources, config_store
from datadeployer.models.connection import (
    AwsCredentials,
    GeminiCredential,
    PermissionSetupRequest,
    WarehouseConnectionConfig,
)

router = APIRouter()

logger = logging.getLogger(__name__)


@router.post("/test-aws")
async def test_aws(credentials: AwsCredentials):
    """Check key format, then STS identity and ECR access."""
    try:
        account = await aws_resources.verify_credentials(credentials)
    except Exception as e:
        return error_response("test AWS connection", e, status_code=status.HTTP_400_BAD_REQUEST)
    return {
        "success": True,
        "message": f"AWS connection successful! Account: {account}",
        "accountId": account,
    }


@router.post("/aws-resources")
async def aws_resources_list(credentials: AwsCredentials):
    try:
        resources = await aws_resources.list_resources(credentials)
    except Exception as e:
        return error_response("fetch AWS resources", e, status_code=status.HTTP_400_BAD_REQUEST)
    return {
        "success": True,
        "message": "AWS resources fetched successfully",
        "resources": resources,
    }


@router.post("/setup-permissions")
async def setup_permissions(request: PermissionSetupRequest):
    try:
        policy_arn = await aws_resources.setup_permissions(request, request.user_name)
    except Exception as e:
        return error_response("setup permissions", e, status_code=status.HTTP_400_BAD_REQUEST)
    return {
        "success": True,
        "message": "Permissions setup completed successfully!",
        "policyArn": policy_arn,
        "policyName": aws_resources.POLICY_NAME,
    }


@router.post("/test-snowflake")
async def test_snowflake(config: WarehouseConnectionConfig):
    """
    Open (and close) a connection with the given credentials.

    On success the config is saved so other screens can reuse it; a failed
    save is logged and does not fail the test.
    """
    try:
        async with open_session(config):
            pass
    except Exception as e:
        return error_response("test Snowflake connection", e)

    try:
        config_store.save_snowflake_config(_stored_config(config))
    except config_store.CredentialStoreError as e:
        logger.error(f"Snowflake connection ok but config not saved: {e}")
    return {"success": True, "message": "Snowflake connection successful."}


@router.post("/test-gemini")
async def test_gemini(credential: GeminiCredential):
    """Verify the API key with a probe prompt; store it only if it works."""
    try:
        await GeminiClient(credential.api_key).verify_key()
        config_store.save_gemini_credential(credential)
    except Exception as e:
        return error_response("test Gemini API", e)
    return {"success": True, "message": "Gemini API key validated successfully"}


@router.get("/connections")
async def list_connections():
    return {"success": True, "connections": config_store.connection_summary()}


@router.get("/config/snowflake")
async def get_snowflake_config():
    config = config_store.load_snowflake_raw()
    if config is None:
        return {"success": False, "message": "Config not found"}
    return {"success": True, "config": config}


@router.post("/config/snowflake")
async def save_snowflake_config(payload: Dict[str, Any] = Body(...)):
    try:
        config_store.save_snowflake_config(payload)
    except Exception as e:
        return error_response("save Snowflake config", e)
    return {"success": True, "message": "Snowflake config saved"}


def _stored_config(config: WarehouseConnectionConfig) -> Dict[str, Any]:
    return {
        "account": config.account,
        "username": config.username,
        "password": config.password,
        "database": config.database or "",
        "schema": config.schema_name or "",
        "warehouse": config.warehouse or "",
        "role": config.role or "",
    }
