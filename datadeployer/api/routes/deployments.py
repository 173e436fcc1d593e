"""
API routes for module deployments and validation runs.
"""

import json
import logging
import time
from pathlib import Path
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Body, File, Form, UploadFile, status
from pydantic import TypeAdapter

from datadeployer.api.error_handling import error_response, fail
from datadeployer.config import settings
from datadeployer.core.activity import ActivityService
from datadeployer.core.deployments import registry
from datadeployer.models.connection import AwsCredentials
from datadeployer.models.deployment import EnvVariable

router = APIRouter()

logger = logging.getLogger(__name__)

_ENV_LIST = TypeAdapter(List[EnvVariable])
_CHUNK = 1024 * 1024


async def _save_upload(upload: UploadFile) -> tuple[Path, int]:
    """Stream the image archive into the uploads dir, enforcing the size cap."""
    uploads = settings.uploads_dir
    uploads.mkdir(parents=True, exist_ok=True)
    name = Path(upload.filename or "image.tar").name
    target = uploads / f"{int(time.time() * 1000)}-{name}"
    size = 0
    try:
        with target.open("wb") as out:
            while chunk := await upload.read(_CHUNK):
                size += len(chunk)
                if size > settings.MAX_UPLOAD_BYTES:
                    raise ValueError(
                        f"Image archive exceeds {settings.MAX_UPLOAD_BYTES} bytes"
                    )
                out.write(chunk)
    except BaseException:
        target.unlink(missing_ok=True)
        raise
    finally:
        await upload.close()
    return target, size


@router.post("/deploy")
async def deploy(
    dockerImage: UploadFile = File(...),
    awsConfig: str = Form(...),
    envVariables: str = Form("[]"),
    deploymentConfig: str = Form(...),
):
    """
    Start a deployment in the background. The console polls
    `/deployment/{id}/status` for progress.
    """
    try:
        aws = AwsCredentials.model_validate_json(awsConfig)
        env = _ENV_LIST.validate_json(envVariables)
        module = str(json.loads(deploymentConfig).get("module") or "").strip()
        if not module:
            raise ValueError("deploymentConfig.module is required")
        if module not in settings.DEPLOY_MODULES:
            raise ValueError(f"Unknown module: {module}")
        image_path, image_size = await _save_upload(dockerImage)
        deployment = registry.start(
            module, aws, env, image_path=str(image_path), image_size=image_size
        )
    except Exception as e:
        return error_response("start deployment", e)
    return {
        "success": True,
        "message": "Deployment process initiated.",
        "deploymentId": deployment.id,
    }


@router.get("/deployment/load-resources")
async def load_resources():
    resources = registry.records.load_resources("validator")
    if resources is None:
        return fail(
            "No deployment found. Please deploy the validator module first.",
            status_code=status.HTTP_404_NOT_FOUND,
        )
    return {
        "success": True,
        "resources": resources,
        "message": "Deployment resources loaded successfully",
    }


@router.get("/deployment/status/{module}")
async def module_status(module: str):
    """Whether a module has a valid persisted deployment (corrupt records are reset)."""
    try:
        result = registry.records.status(module)
    except Exception as e:
        return error_response("check deployment status", e)
    return {"success": True, **result}


@router.delete("/deployment/clear/{module}")
async def clear_module(module: str):
    try:
        removed = registry.records.clear(module)
    except Exception as e:
        return error_response("clear deployment", e)
    forgotten = registry.forget_module(module)
    logger.info(f"Cleared module '{module}': {removed} file(s), {forgotten} in-memory deployment(s)")
    return {
        "success": True,
        "message": f"Module '{module}' cleared for redeployment. {removed} files removed.",
        "filesRemoved": removed,
    }


@router.get("/deployment/{deployment_id}/status")
async def deployment_status(deployment_id: str):
    try:
        deployment = registry.get(deployment_id)
    except Exception as e:
        return error_response("get deployment status", e)
    return {"success": True, "deployment": deployment.to_json()}


@router.post("/deployment/{deployment_id}/retry")
async def retry_deployment(deployment_id: str):
    try:
        registry.retry(deployment_id)
    except Exception as e:
        return error_response("retry deployment", e)
    return {"success": True, "message": "Deployment retry initiated"}


@router.get("/deployments/check/{module}")
async def check_module_deployments(module: str):
    found = registry.completed_for_module(module)
    return {
        "success": True,
        "hasExistingDeployments": bool(found),
        "deployments": found,
    }


@router.post("/stepfunction/execute")
async def execute_validations(payload: Optional[Dict[str, Any]] = Body(None)):
    """Run the deployed validator; optional `validationIds` limits the cases."""
    ids = (payload or {}).get("validationIds") or None
    try:
        execution = await ActivityService(registry.records).start_validation_run(ids)
    except Exception as e:
        return error_response("execute Step Function", e)
    return {
        "success": True,
        "message": "Validation execution started successfully",
        **execution,
    }
