"""
API routes for the dashboard summary cards.
"""

import logging
import time
from typing import Any, Dict, List

from fastapi import APIRouter

from datadeployer.config import settings
from datadeployer.core.deployments import registry
from datadeployer.core.draft_store import get_draft_store

router = APIRouter()

logger = logging.getLogger(__name__)


def time_ago(seconds: float) -> str:
    if seconds < 3600:
        return f"{int(seconds // 60)} mins ago"
    return f"{int(seconds // 3600)} hours ago"


@router.get("/stats")
async def dashboard_stats():
    """Deployment record files per module plus AI validation draft counts."""
    files = registry.records.record_files(settings.DEPLOY_MODULES)
    per_module: Dict[str, int] = {m: 0 for m in settings.DEPLOY_MODULES}
    for module, _ in files:
        per_module[module] += 1
    drafts = await get_draft_store().counts()
    return {
        "success": True,
        "stats": {
            "activeDeployments": len(files),
            "deploymentsByModule": per_module,
            "totalValidations": drafts["total"],
            "activeValidations": drafts["active"],
        },
    }


@router.get("/activity")
async def dashboard_activity():
    """Most recent deployment record changes, newest first."""
    now = time.time()
    entries: List[tuple[float, Dict[str, Any]]] = []
    for module, path in registry.records.record_files(settings.DEPLOY_MODULES):
        try:
            mtime = path.stat().st_mtime
        except OSError as e:
            logger.debug(f"Skipping {path}: {e}")
            continue
        entries.append(
            (
                mtime,
                {
                    "module": module.capitalize(),
                    "action": "Deployment completed",
                    "time": time_ago(now - mtime),
                    "status": "success",
                },
            )
        )
    entries.sort(key=lambda e: e[0], reverse=True)
    return {"success": True, "activity": [item for _, item in entries[:10]]}
