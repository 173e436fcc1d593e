"""
Validation runs and their activity log.

Runs are Step Functions executions of the deployed validator module; logs come
from the ECS task's CloudWatch stream, falling back to execution history.
"""

import json
import logging
import time
from datetime import UTC, datetime, timedelta
from typing import Any, Callable, Dict, List, Optional, Sequence

from botocore.exceptions import BotoCoreError, ClientError
from pydantic import ValidationError

from datadeployer.config import settings
from datadeployer.connectors.aws_clients import AwsSession
from datadeployer.core.deployments import ModuleRecords
from datadeployer.models.connection import AwsCredentials

logger = logging.getLogger(__name__)

VALIDATOR_MODULE = "validator"
LOG_WINDOW = timedelta(seconds=60)


class ModuleNotDeployedError(LookupError):
    def __str__(self) -> str:
        return "No deployment found. Please deploy the validator module first."


def build_test_case_sql(ids: Optional[Sequence[Any]] = None) -> str:
    """SQL the validator container runs to pick its active cases."""
    sql = (
        "SELECT id, validation_query, expected_outcome, operator, metric_index "
        f"FROM {settings.TEST_CASES_TABLE.lower()} WHERE is_active = TRUE"
    )
    if ids:
        quoted = ",".join("'" + str(i).replace("'", "''") + "'" for i in ids)
        sql += f" AND id IN ({quoted})"
    return sql


def container_name(resources: Dict[str, Any]) -> str:
    repo = resources.get("ecrRepository")
    if not repo:
        return VALIDATOR_MODULE
    return str(repo).split("/")[-1].split(":")[0]


def infer_level(message: str) -> str:
    for level in ("ERROR", "WARN", "INFO"):
        if level in message:
            return level
    return "DEBUG"


def _iso(value: Any) -> Optional[str]:
    if isinstance(value, datetime):
        return value.isoformat()
    return value


def _ms(value: datetime) -> int:
    return int(value.timestamp() * 1000)


class ActivityService:
    """Operations against the validator module's recorded deployment."""

    def __init__(
        self,
        records: ModuleRecords | None = None,
        *,
        session_factory: Callable[[AwsCredentials], AwsSession] = AwsSession,
    ):
        self.records = records or ModuleRecords()
        self._session_factory = session_factory

    def _deployment(self) -> Optional[tuple[Dict[str, Any], AwsSession]]:
        deployment, resources = self.records.load(VALIDATOR_MODULE)
        if deployment is None or resources is None:
            return None
        aws = dict(deployment.get("awsConfig") or {})
        if resources.get("region"):
            aws["region"] = resources["region"]
        try:
            credentials = AwsCredentials.model_validate(aws)
        except ValidationError:
            logger.warning("Validator deployment record has no usable AWS config")
            return None
        return resources, self._session_factory(credentials)

    async def start_validation_run(self, ids: Optional[Sequence[Any]] = None) -> Dict[str, Any]:
        loaded = self._deployment()
        if loaded is None:
            raise ModuleNotDeployedError()
        resources, session = loaded
        state_machine = resources.get("stepFunctionArn")
        if not state_machine:
            raise ModuleNotDeployedError()

        payload = {
            "action": "run_active_validations",
            "timestamp": datetime.now(UTC).isoformat(),
            "containerOverrides": {
                "ContainerOverrides": [
                    {
                        "Name": container_name(resources),
                        "Environment": [
                            {"Name": "TEST_CASE_SQL", "Value": build_test_case_sql(ids)}
                        ],
                    }
                ]
            },
        }
        execution = await session.call(
            "stepfunctions",
            "start_execution",
            stateMachineArn=state_machine,
            name=f"validation-run-{int(time.time() * 1000)}",
            input=json.dumps(payload),
        )
        logger.info(f"Started validation run {execution['executionArn']}")
        return {
            "executionArn": execution["executionArn"],
            "startDate": _iso(execution.get("startDate")),
            "stepFunctionArn": state_machine,
        }

    async def list_executions(self) -> List[Dict[str, Any]]:
        loaded = self._deployment()
        if loaded is None or not loaded[0].get("stepFunctionArn"):
            return []
        resources, session = loaded
        result = await session.call(
            "stepfunctions",
            "list_executions",
            stateMachineArn=resources["stepFunctionArn"],
            maxResults=10,
        )
        return [
            {
                "executionArn": e["executionArn"],
                "status": e["status"],
                "startTime": _iso(e.get("startDate")),
                "endTime": _iso(e.get("stopDate")),
                "logs": [],
            }
            for e in result.get("executions", [])
        ]

    async def execution_logs(
        self,
        execution_arn: str,
        *,
        start_time: Optional[int] = None,
        incremental: bool = False,
    ) -> Dict[str, Any]:
        loaded = self._deployment()
        if loaded is None:
            return {"logs": [], "taskArn": None}
        resources, session = loaded

        execution = await session.call(
            "stepfunctions", "describe_execution", executionArn=execution_arn
        )
        started: datetime = execution["startDate"]
        stopped: datetime = execution.get("stopDate") or datetime.now(UTC)

        groups = (resources.get("logGroups") or {}).get("possibleEcsLogs") or [
            (resources.get("logGroups") or {}).get("ecsTask"),
            (resources.get("logGroups") or {}).get("ecsTaskAlt"),
            f"/ecs/{settings.RESOURCE_PREFIX}-{VALIDATOR_MODULE}-task",
        ]
        for group in filter(None, groups):
            try:
                found = await self._stream_logs(
                    session, group, started, stopped, start_time, incremental
                )
            except (ClientError, BotoCoreError) as e:
                logger.debug(f"Log group {group} unavailable: {e}")
                continue
            if found is not None:
                return found

        if incremental:
            return {"logs": [], "taskArn": None}
        return {"logs": await self._history(session, execution_arn), "taskArn": None}

    async def _stream_logs(
        self,
        session: AwsSession,
        group: str,
        started: datetime,
        stopped: datetime,
        start_time: Optional[int],
        incremental: bool,
    ) -> Optional[Dict[str, Any]]:
        streams = (
            await session.call(
                "logs",
                "describe_log_streams",
                logGroupName=group,
                orderBy="LastEventTime",
                descending=True,
                limit=20,
            )
        ).get("logStreams", [])
        if not streams:
            return None

        lo, hi = _ms(started), _ms(stopped)
        target = next(
            (
                s
                for s in streams
                if s.get("firstEventTime", s.get("creationTime", 0)) <= hi
                and s.get("lastEventTime", _ms(datetime.now(UTC))) >= lo
            ),
            streams[0],
        )

        params: Dict[str, Any] = {
            "logGroupName": group,
            "logStreamName": target["logStreamName"],
            "limit": 100,
        }
        if incremental and start_time is not None:
            params["startTime"] = int(start_time) + 1
            params["startFromHead"] = False
        else:
            params["startTime"] = max(lo - _ms_delta(LOG_WINDOW), 0)
            params["endTime"] = hi + _ms_delta(LOG_WINDOW)
            params["startFromHead"] = True

        events = (await session.call("logs", "get_log_events", **params)).get("events", [])
        logs = [
            {
                "timestamp": datetime.fromtimestamp(ev["timestamp"] / 1000, UTC).isoformat(),
                "message": ev["message"].strip(),
                "level": infer_level(ev["message"]),
                "source": "ECS",
            }
            for ev in events
        ]
        return {"logs": logs, "taskArn": target["logStreamName"]}

    async def _history(self, session: AwsSession, execution_arn: str) -> List[Dict[str, Any]]:
        history = await session.call(
            "stepfunctions",
            "get_execution_history",
            executionArn=execution_arn,
            maxResults=50,
            reverseOrder=False,
        )
        return [
            {
                "timestamp": _iso(ev.get("timestamp")),
                "message": f"{ev['type']}: {json.dumps(ev, default=str, indent=2)}",
                "level": "ERROR" if "Failed" in ev["type"] else "INFO",
                "source": "StepFunction",
            }
            for ev in history.get("events", [])
        ]


def _ms_delta(delta: timedelta) -> int:
    return int(delta.total_seconds() * 1000)
