"""
Deployment Models

Status tracking for module deployments to AWS (ECR → ECS → Step Functions).
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from datadeployer.models.connection import AwsCredentials


STEP_IDS: tuple[str, ...] = (
    "ecr-repo",
    "ecr-push",
    "task-definition",
    "ecs-service",
    "step-functions",
    "final-setup",
)


class DeploymentState(str, Enum):
    """Overall deployment status."""

    STARTED = "started"
    COMPLETED = "completed"
    FAILED = "failed"


class StepStatus(str, Enum):
    """Status of a single deployment step."""

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    ERROR = "error"


class StepLog(BaseModel):
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    message: str


class DeploymentStep(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    status: StepStatus = StepStatus.PENDING
    start_time: Optional[datetime] = Field(None, alias="startTime")
    end_time: Optional[datetime] = Field(None, alias="endTime")
    details: Optional[str] = None
    logs: List[StepLog] = Field(default_factory=list)


class ResourceNames(BaseModel):
    """Names derived from module + deployment sequence."""

    model_config = ConfigDict(populate_by_name=True)

    cluster_name: str = Field(..., alias="clusterName")
    task_definition_family: str = Field(..., alias="taskDefinitionFamily")
    execution_role_name: str = Field(..., alias="executionRoleName")
    task_role_name: str = Field(..., alias="taskRoleName")
    step_function_role_name: str = Field(..., alias="stepFunctionRoleName")
    step_function_name: str = Field(..., alias="stepFunctionName")
    ecr_repository_name: str = Field(..., alias="ecrRepositoryName")
    codebuild_role_name: str = Field(..., alias="codebuildRoleName")
    codebuild_project_name: str = Field(..., alias="codebuildProjectName")
    build_bucket_name: str = Field(..., alias="buildBucketName")
    log_group_name: str = Field(..., alias="logGroupName")
    security_group_name: str = Field(..., alias="securityGroupName")


class EnvVariable(BaseModel):
    key: str = Field(..., min_length=1)
    value: str = ""


class DeploymentConfig(BaseModel):
    """Everything needed to (re-)run a deployment."""

    module: str
    aws: AwsCredentials
    env_variables: List[EnvVariable] = Field(default_factory=list)
    image_name: str
    image_path: Optional[str] = None
    image_size: int = 0
    names: ResourceNames


class DeploymentStatus(BaseModel):
    """Live status of one deployment, polled by the console."""

    model_config = ConfigDict(populate_by_name=True)

    id: str
    module: str
    status: DeploymentState = DeploymentState.STARTED
    current_step: str = Field(STEP_IDS[0], alias="currentStep")
    steps: Dict[str, DeploymentStep] = Field(
        default_factory=lambda: {step_id: DeploymentStep() for step_id in STEP_IDS}
    )
    api_endpoint: Optional[str] = Field(None, alias="apiEndpoint")
    error: Optional[str] = None
    completed_at: Optional[datetime] = Field(None, alias="completedAt")
    resources: Dict[str, Any] = Field(default_factory=dict)

    def to_json(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True)
