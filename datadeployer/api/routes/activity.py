"""
API routes for the activity log of validation runs.
"""

from typing import Optional

from fastapi import APIRouter, Query

from datadeployer.api.error_handling import error_response
from datadeployer.core.activity import ActivityService
from datadeployer.core.deployments import registry

router = APIRouter()


@router.get("/executions")
async def list_executions():
    try:
        executions = await ActivityService(registry.records).list_executions()
    except Exception as e:
        return error_response("fetch executions", e)
    return {"success": True, "executions": executions}


@router.get("/logs/{execution_arn:path}")
async def execution_logs(
    execution_arn: str,
    startTime: Optional[int] = Query(None),
    incremental: bool = Query(False),
):
    """
    Task logs for one execution. With `incremental=true` and `startTime` only
    events after `startTime` (epoch ms) are returned.
    """
    try:
        result = await ActivityService(registry.records).execution_logs(
            execution_arn, start_time=startTime, incremental=incremental
        )
    except Exception as e:
        return error_response("fetch logs", e, logs=[], taskArn=None)
    return {"success": True, **result}
