"""
Module deployments to AWS.

A deployment builds, per module (validator, migrator, reconciliator):
ECR repository → image push (S3 + CodeBuild) → Fargate task definition →
ECS cluster/networking → Step Functions state machine → local module record.

Status is tracked in memory by `DeploymentRegistry` and polled by the console.
Completed deployments are persisted under `deployments/modules/<module>/`.
"""

from __future__ import annotations

import asyncio
import json
import logging
import secrets
import string
import time
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, List, Optional

from botocore.exceptions import BotoCoreError, ClientError

from datadeployer.config import settings
from datadeployer.connectors.aws_clients import AwsSession, is_error
from datadeployer.core.config_store import read_json, write_json
from datadeployer.models.connection import AwsCredentials
from datadeployer.models.deployment import (
    STEP_IDS,
    DeploymentConfig,
    DeploymentState,
    DeploymentStatus,
    EnvVariable,
    ResourceNames,
    StepLog,
    StepStatus,
)

logger = logging.getLogger(__name__)

_BASE36 = string.digits + string.ascii_lowercase

DEPLOYMENT_FILE = "deployment.json"
RESOURCES_FILE = "aws-resources.json"

CODEBUILD_POLICIES = (
    "arn:aws:iam::aws:policy/AmazonEC2ContainerRegistryPowerUser",
    "arn:aws:iam::aws:policy/AmazonS3ReadOnlyAccess",
    "arn:aws:iam::aws:policy/CloudWatchLogsFullAccess",
)
TASK_EXECUTION_POLICY = "arn:aws:iam::aws:policy/service-role/AmazonECSTaskExecutionRolePolicy"

TASK_ROLE_POLICY: Dict[str, Any] = {
    "Version": "2012-10-17",
    "Statement": [
        {
            "Effect": "Allow",
            "Action": ["ssm:GetParameter", "ssm:GetParameters", "ssm:GetParametersByPath"],
            "Resource": "arn:aws:ssm:*:*:parameter/*",
        },
        {"Effect": "Allow", "Action": ["kms:Decrypt"], "Resource": "*"},
        {"Effect": "Allow", "Action": ["ses:SendEmail", "ses:SendRawEmail"], "Resource": "*"},
    ],
}

STATE_MACHINE_ROLE_POLICY: Dict[str, Any] = {
    "Version": "2012-10-17",
    "Statement": [
        {
            "Effect": "Allow",
            "Action": ["ecs:RunTask", "ecs:StopTask", "ecs:DescribeTasks", "iam:PassRole"],
            "Resource": "*",
        },
        {
            "Effect": "Allow",
            "Action": [
                "events:PutTargets",
                "events:PutRule",
                "events:DescribeRule",
                "events:DeleteRule",
                "events:RemoveTargets",
                "events:TagResource",
            ],
            "Resource": "*",
        },
        {
            "Effect": "Allow",
            "Action": [
                "logs:CreateLogGroup",
                "logs:CreateLogStream",
                "logs:PutLogEvents",
                "logs:DescribeLogGroups",
                "logs:DescribeLogStreams",
            ],
            "Resource": "*",
        },
    ],
}


class DeploymentNotFoundError(KeyError):
    def __str__(self) -> str:
        return "Deployment not found"


class DeploymentStateError(Exception):
    """Operation not allowed in the deployment's current state."""


class DeploymentStepError(Exception):
    pass


def new_deployment_id() -> str:
    suffix = "".join(secrets.choice(_BASE36) for _ in range(9))
    return f"deploy-{int(time.time() * 1000)}-{suffix}"


def resource_names(module: str, deployment_id: str) -> ResourceNames:
    """`<prefix>-<module>-<kind>-<seq>`; seq is the id's random suffix."""
    seq = deployment_id.rsplit("-", 1)[-1]
    base = f"{settings.RESOURCE_PREFIX}-{module}"
    repo = f"{base}-repo-{seq}"
    return ResourceNames(
        cluster_name=f"{base}-cluster-{seq}",
        task_definition_family=f"{base}-task-{seq}",
        execution_role_name=f"{module}-exec-{seq}",
        task_role_name=f"{module}-task-{seq}",
        step_function_role_name=f"{base}-sfn-role-{seq}",
        step_function_name=f"{base}-workflow-{seq}",
        ecr_repository_name=repo,
        codebuild_role_name=f"{base}-codebuild-{seq}",
        codebuild_project_name=f"{base}-build-{seq}",
        build_bucket_name=f"{base}-builds-{seq}".lower(),
        log_group_name=f"/ecs/{repo}",
        security_group_name=f"{repo}-sg",
    )


def _trust_policy(service: str) -> str:
    return json.dumps(
        {
            "Version": "2012-10-17",
            "Statement": [
                {
                    "Effect": "Allow",
                    "Principal": {"Service": service},
                    "Action": "sts:AssumeRole",
                }
            ],
        }
    )


# ---------------------------------------------------------------------------
# Module records (persisted completed deployments)
# ---------------------------------------------------------------------------


class ModuleRecords:
    """`deployments/modules/<module>/{deployment,aws-resources}.json`."""

    def __init__(self, root: Path | None = None):
        self._root = root

    @property
    def root(self) -> Path:
        return self._root or settings.modules_dir

    def _dir(self, module: str) -> Path:
        if not module or "/" in module or "\\" in module or module.startswith("."):
            raise ValueError(f"Invalid module: {module!r}")
        return self.root / module

    def save(self, module: str, deployment: Dict[str, Any], resources: Dict[str, Any]) -> None:
        d = self._dir(module)
        write_json(d / DEPLOYMENT_FILE, deployment)
        write_json(d / RESOURCES_FILE, resources)

    def load(self, module: str) -> tuple[Optional[Dict[str, Any]], Optional[Dict[str, Any]]]:
        d = self._dir(module)
        deployment = read_json(d / DEPLOYMENT_FILE)
        resources = read_json(d / RESOURCES_FILE)
        return (
            deployment if isinstance(deployment, dict) else None,
            resources if isinstance(resources, dict) else None,
        )

    def status(self, module: str) -> Dict[str, Any]:
        """Whether `module` has a usable deployment. Corrupt records are removed."""
        d = self._dir(module)
        if not (d / DEPLOYMENT_FILE).exists() or not (d / RESOURCES_FILE).exists():
            return {"isDeployed": False, "message": f"Module '{module}' is not deployed"}

        deployment, resources = self.load(module)
        if (
            deployment is None
            or resources is None
            or deployment.get("status") != DeploymentState.COMPLETED.value
            or not resources.get("stepFunctionArn")
            or not resources.get("ecsCluster")
            or not deployment.get("awsConfig")
        ):
            removed = self.clear(module)
            logger.warning(f"Removed {removed} corrupt deployment file(s) for '{module}'")
            return {
                "isDeployed": False,
                "message": f"Module '{module}' deployment is corrupted and has been reset",
            }

        return {
            "isDeployed": True,
            "deploymentData": {
                "id": deployment.get("id"),
                "status": deployment.get("status"),
                "completedAt": deployment.get("completedAt"),
                "apiEndpoint": deployment.get("apiEndpoint"),
                "stepFunctionArn": resources.get("stepFunctionArn"),
                "region": resources.get("region"),
            },
            "message": f"Module '{module}' is already deployed",
        }

    def load_resources(self, module: str = "validator") -> Optional[Dict[str, Any]]:
        _, resources = self.load(module)
        return resources

    def clear(self, module: str) -> int:
        d = self._dir(module)
        removed = 0
        for name in (DEPLOYMENT_FILE, RESOURCES_FILE):
            path = d / name
            if path.exists():
                path.unlink()
                removed += 1
        return removed

    def record_files(self, modules: List[str]) -> List[tuple[str, Path]]:
        files: List[tuple[str, Path]] = []
        for module in modules:
            d = self.root / module
            if d.is_dir():
                files.extend((module, p) for p in sorted(d.glob("*.json")))
        return files


# ---------------------------------------------------------------------------
# Runner
# ---------------------------------------------------------------------------


class DeploymentRunner:
    """Executes the not-yet-completed steps of one deployment, in order."""

    def __init__(
        self,
        status: DeploymentStatus,
        config: DeploymentConfig,
        *,
        records: ModuleRecords,
        session_factory: Callable[[AwsCredentials], AwsSession] = AwsSession,
    ):
        self.status = status
        self.config = config
        self.records = records
        self.session = session_factory(config.aws)
        self.names = config.names
        self._handlers: Dict[str, Callable[[], Awaitable[None]]] = {
            "ecr-repo": self._ecr_repo,
            "ecr-push": self._ecr_push,
            "task-definition": self._task_definition,
            "ecs-service": self._ecs_service,
            "step-functions": self._step_functions,
            "final-setup": self._final_setup,
        }

    # -- status helpers --

    def log(self, step_id: str, message: str) -> None:
        step = self.status.steps.get(step_id)
        if step is not None:
            step.logs.append(StepLog(message=message))
        logger.info(f"[{self.status.id}/{step_id}] {message}")

    def _mark(self, step_id: str, state: StepStatus, details: str | None = None) -> None:
        step = self.status.steps[step_id]
        step.status = state
        now = datetime.now(UTC)
        if state == StepStatus.RUNNING:
            self.status.current_step = step_id
            if step.start_time is None:
                step.start_time = now
        elif state == StepStatus.COMPLETED and step.start_time is not None:
            step.end_time = now
        elif state == StepStatus.ERROR:
            self.status.status = DeploymentState.FAILED
            self.status.error = details or "Step failed"
        if details:
            step.details = details

    @property
    def resources(self) -> Dict[str, Any]:
        return self.status.resources

    async def run(self) -> DeploymentStatus:
        for step_id in STEP_IDS:
            if self.status.steps[step_id].status == StepStatus.COMPLETED:
                continue
            self._mark(step_id, StepStatus.RUNNING)
            try:
                await self._handlers[step_id]()
            except Exception as e:
                message = str(e) or type(e).__name__
                self.log(step_id, f"❌ {message}")
                logger.error(f"Deployment {self.status.id} failed at {step_id}: {message}")
                self._mark(step_id, StepStatus.ERROR, message)
                return self.status
            self._mark(step_id, StepStatus.COMPLETED)

        self.status.status = DeploymentState.COMPLETED
        self.status.completed_at = datetime.now(UTC)
        logger.info(f"Deployment {self.status.id} completed")
        return self.status

    async def _ensure_role(
        self,
        step_id: str,
        role_name: str,
        service: str,
        *,
        managed_policies: tuple[str, ...] = (),
        inline_policy: Dict[str, Any] | None = None,
    ) -> str:
        try:
            created = await self.session.call(
                "iam",
                "create_role",
                RoleName=role_name,
                AssumeRolePolicyDocument=_trust_policy(service),
            )
            arn = created["Role"]["Arn"]
            self.log(step_id, f"✅ Created role {role_name}")
            fresh = True
        except ClientError as e:
            if not is_error(e, "EntityAlreadyExists", "EntityAlreadyExistsException"):
                raise
            arn = (await self.session.call("iam", "get_role", RoleName=role_name))["Role"]["Arn"]
            self.log(step_id, f"⚠️ Using existing role {role_name}")
            fresh = False

        for policy_arn in managed_policies:
            await self.session.call(
                "iam", "attach_role_policy", RoleName=role_name, PolicyArn=policy_arn
            )
        if inline_policy is not None:
            await self.session.call(
                "iam",
                "put_role_policy",
                RoleName=role_name,
                PolicyName=f"{role_name}-policy",
                PolicyDocument=json.dumps(inline_policy),
            )
        if fresh and settings.IAM_PROPAGATION_SECONDS > 0:
            self.log(step_id, "⏳ Waiting for IAM role propagation...")
            await asyncio.sleep(settings.IAM_PROPAGATION_SECONDS)
        return arn

    # -- steps --

    async def _ecr_repo(self) -> None:
        name = self.names.ecr_repository_name
        self.log("ecr-repo", f"Creating ECR repository {name} in {self.config.aws.region}")
        try:
            result = await self.session.call(
                "ecr",
                "create_repository",
                repositoryName=name,
                imageScanningConfiguration={"scanOnPush": True},
            )
            uri = result["repository"]["repositoryUri"]
            self.log("ecr-repo", f"✅ ECR repository created: {uri}")
        except ClientError as e:
            if not is_error(e, "RepositoryAlreadyExistsException"):
                raise
            described = await self.session.call(
                "ecr", "describe_repositories", repositoryNames=[name]
            )
            uri = described["repositories"][0]["repositoryUri"]
            self.log("ecr-repo", f"⚠️ Repository already exists, using: {uri}")
        self.resources["ecrRepository"] = uri

    async def _ecr_push(self) -> None:
        image_path = self.config.image_path
        if not image_path or not Path(image_path).exists():
            raise DeploymentStepError("No Docker image file uploaded")
        uri = self.resources["ecrRepository"]
        region = self.config.aws.region
        bucket = self.names.build_bucket_name
        key = "docker-image.tar"

        self.log("ecr-push", f"🪣 Preparing S3 bucket {bucket}")
        create_args: Dict[str, Any] = {"Bucket": bucket}
        if region != "us-east-1":
            create_args["CreateBucketConfiguration"] = {"LocationConstraint": region}
        try:
            await self.session.call("s3", "create_bucket", **create_args)
        except ClientError as e:
            if not is_error(e, "BucketAlreadyOwnedByYou"):
                raise
        self.resources["buildBucket"] = bucket

        size_mb = self.config.image_size / 1024 / 1024
        self.log("ecr-push", f"⬆️ Uploading image archive ({size_mb:.1f} MB)")
        await self.session.upload_file(image_path, bucket, key)

        role_arn = await self._ensure_role(
            "ecr-push",
            self.names.codebuild_role_name,
            "codebuild.amazonaws.com",
            managed_policies=CODEBUILD_POLICIES,
        )
        registry = uri.split("/")[0]
        buildspec = {
            "version": "0.2",
            "phases": {
                "pre_build": {
                    "commands": [
                        f"aws ecr get-login-password --region {region} | "
                        f"docker login --username AWS --password-stdin {registry}",
                        f"aws s3 cp s3://{bucket}/{key} ./docker-image.tar",
                    ]
                },
                "build": {
                    "commands": [
                        "docker load -i docker-image.tar",
                        'IMAGE_NAME=$(docker images --format "{{.Repository}}:{{.Tag}}" | head -n 1)',
                        f"docker tag $IMAGE_NAME {uri}:latest",
                    ]
                },
                "post_build": {"commands": [f"docker push {uri}:latest"]},
            },
        }
        project = {
            "name": self.names.codebuild_project_name,
            "description": f"Loads and pushes {self.config.image_name}",
            "source": {"type": "NO_SOURCE", "buildspec": json.dumps(buildspec)},
            "artifacts": {"type": "NO_ARTIFACTS"},
            "environment": {
                "type": "LINUX_CONTAINER",
                "image": "aws/codebuild/amazonlinux2-x86_64-standard:3.0",
                "computeType": "BUILD_GENERAL1_MEDIUM",
                "privilegedMode": True,
            },
            "serviceRole": role_arn,
        }
        try:
            await self.session.call("codebuild", "create_project", **project)
        except ClientError as e:
            if not is_error(e, "ResourceAlreadyExistsException"):
                raise
            await self.session.call("codebuild", "update_project", **project)

        build = await self.session.call(
            "codebuild", "start_build", projectName=self.names.codebuild_project_name
        )
        build_id = build["build"]["id"]
        self.log("ecr-push", f"🚀 Build started: {build_id}")

        loop = asyncio.get_running_loop()
        deadline = loop.time() + settings.CODEBUILD_TIMEOUT_SECONDS
        build_status = "IN_PROGRESS"
        while build_status == "IN_PROGRESS":
            if loop.time() > deadline:
                raise DeploymentStepError(f"CodeBuild timed out (build {build_id})")
            await asyncio.sleep(settings.CODEBUILD_POLL_SECONDS)
            builds = await self.session.call("codebuild", "batch_get_builds", ids=[build_id])
            build_status = builds["builds"][0]["buildStatus"]
            self.log("ecr-push", f"Build status: {build_status}")

        if build_status != "SUCCEEDED":
            raise DeploymentStepError(f"CodeBuild failed with status: {build_status}")
        self.log("ecr-push", f"✅ Image available at {uri}:latest")

    async def _task_definition(self) -> None:
        step = "task-definition"
        log_group = self.names.log_group_name
        try:
            await self.session.call("logs", "create_log_group", logGroupName=log_group)
            self.log(step, f"✅ Created log group: {log_group}")
        except ClientError as e:
            if not is_error(e, "ResourceAlreadyExistsException"):
                raise

        execution_role = await self._ensure_role(
            step,
            self.names.execution_role_name,
            "ecs-tasks.amazonaws.com",
            managed_policies=(TASK_EXECUTION_POLICY,),
        )
        task_role = await self._ensure_role(
            step,
            self.names.task_role_name,
            "ecs-tasks.amazonaws.com",
            inline_policy=TASK_ROLE_POLICY,
        )

        container = {
            "name": self.names.ecr_repository_name,
            "image": f"{self.resources['ecrRepository']}:latest",
            "portMappings": [
                {"containerPort": settings.DEPLOY_CONTAINER_PORT, "protocol": "tcp"}
            ],
            "environment": [
                {"name": env.key, "value": env.value} for env in self.config.env_variables
            ],
            "logConfiguration": {
                "logDriver": "awslogs",
                "options": {
                    "awslogs-group": log_group,
                    "awslogs-region": self.config.aws.region,
                    "awslogs-stream-prefix": "ecs",
                },
            },
            "essential": True,
        }
        result = await self.session.call(
            "ecs",
            "register_task_definition",
            family=self.names.task_definition_family,
            networkMode="awsvpc",
            requiresCompatibilities=["FARGATE"],
            cpu=settings.DEPLOY_TASK_CPU,
            memory=settings.DEPLOY_TASK_MEMORY,
            executionRoleArn=execution_role,
            taskRoleArn=task_role,
            containerDefinitions=[container],
        )
        arn = result["taskDefinition"]["taskDefinitionArn"]
        self.log(step, f"✅ Task definition registered: {arn}")
        self.resources.update(
            {
                "taskDefinition": arn,
                "taskDefinitionFamily": self.names.task_definition_family,
                "executionRoleArn": execution_role,
                "taskRoleArn": task_role,
            }
        )

    async def _ecs_service(self) -> None:
        step = "ecs-service"
        cluster = self.names.cluster_name
        await self.session.call("ecs", "create_cluster", clusterName=cluster)
        self.log(step, f"✅ ECS cluster ready: {cluster}")
        self.resources["ecsCluster"] = cluster

        vpcs = await self.session.call(
            "ec2", "describe_vpcs", Filters=[{"Name": "isDefault", "Values": ["true"]}]
        )
        if not vpcs.get("Vpcs"):
            raise DeploymentStepError("No default VPC found in region")
        vpc_id = vpcs["Vpcs"][0]["VpcId"]
        subnets = await self.session.call(
            "ec2", "describe_subnets", Filters=[{"Name": "vpc-id", "Values": [vpc_id]}]
        )
        subnet_ids = [s["SubnetId"] for s in subnets.get("Subnets", [])][:2]
        if not subnet_ids:
            raise DeploymentStepError(f"No subnets in default VPC {vpc_id}")

        sg_name = self.names.security_group_name
        try:
            sg = await self.session.call(
                "ec2",
                "create_security_group",
                GroupName=sg_name,
                Description=f"Security group for {self.names.ecr_repository_name}",
                VpcId=vpc_id,
            )
            sg_id = sg["GroupId"]
            port = settings.DEPLOY_CONTAINER_PORT
            await self.session.call(
                "ec2",
                "authorize_security_group_ingress",
                GroupId=sg_id,
                IpPermissions=[
                    {
                        "IpProtocol": "tcp",
                        "FromPort": port,
                        "ToPort": port,
                        "IpRanges": [{"CidrIp": "0.0.0.0/0"}],
                    }
                ],
            )
            self.log(step, f"✅ Security group created: {sg_id}")
        except ClientError as e:
            if not is_error(e, "InvalidGroup.Duplicate"):
                raise
            groups = await self.session.call(
                "ec2",
                "describe_security_groups",
                Filters=[{"Name": "group-name", "Values": [sg_name]}],
            )
            sg_id = groups["SecurityGroups"][0]["GroupId"]
            self.log(step, f"⚠️ Using existing security group: {sg_id}")

        self.resources["subnets"] = subnet_ids
        self.resources["securityGroupId"] = sg_id
        self.log(step, "💡 Tasks will be started on demand via Step Functions")

    async def _step_functions(self) -> None:
        step = "step-functions"
        role_arn = await self._ensure_role(
            step,
            self.names.step_function_role_name,
            "states.amazonaws.com",
            inline_policy=STATE_MACHINE_ROLE_POLICY,
        )
        definition = {
            "Comment": f"Start Fargate task for {self.names.ecr_repository_name}",
            "StartAt": "StartTask",
            "States": {
                "StartTask": {
                    "Type": "Task",
                    "Resource": "arn:aws:states:::ecs:runTask.sync",
                    "Parameters": {
                        "LaunchType": "FARGATE",
                        "Cluster": self.resources["ecsCluster"],
                        "TaskDefinition": self.names.task_definition_family,
                        "Overrides.$": "$.containerOverrides",
                        "NetworkConfiguration": {
                            "AwsvpcConfiguration": {
                                "Subnets": self.resources["subnets"],
                                "SecurityGroups": [self.resources["securityGroupId"]],
                                "AssignPublicIp": "ENABLED",
                            }
                        },
                    },
                    "End": True,
                }
            },
        }
        result = await self.session.call(
            "stepfunctions",
            "create_state_machine",
            name=self.names.step_function_name,
            definition=json.dumps(definition),
            roleArn=role_arn,
        )
        self.resources["stepFunctionArn"] = result["stateMachineArn"]
        self.log(step, f"✅ Step Function created: {self.names.step_function_name}")

    async def _final_setup(self) -> None:
        step = "final-setup"
        now = datetime.now(UTC).isoformat()
        resources = {
            "stepFunctionArn": self.resources.get("stepFunctionArn"),
            "ecsCluster": self.resources.get("ecsCluster"),
            "ecsService": None,
            "taskDefinition": self.resources.get("taskDefinition"),
            "taskDefinitionFamily": self.resources.get("taskDefinitionFamily"),
            "executionRoleArn": self.resources.get("executionRoleArn"),
            "taskRoleArn": self.resources.get("taskRoleArn"),
            "ecrRepository": self.resources.get("ecrRepository"),
            "region": self.config.aws.region,
            "deploymentDate": now,
            "logGroups": {"possibleEcsLogs": [self.names.log_group_name]},
        }
        api_endpoint = f"Step Function: {self.names.step_function_name}"
        deployment = {
            "id": self.status.id,
            "status": DeploymentState.COMPLETED.value,
            "module": self.config.module,
            "awsConfig": self.config.aws.model_dump(by_alias=True),
            "envVariables": [e.model_dump() for e in self.config.env_variables],
            "imageName": self.config.image_name,
            "apiEndpoint": api_endpoint,
            "completedAt": now,
            "savedAt": now,
            "awsResources": resources,
        }
        self.records.save(self.config.module, deployment, resources)
        self.status.api_endpoint = api_endpoint
        self.log(step, f"💾 Deployment saved for module '{self.config.module}'")
        await self._cleanup(step)

    async def _cleanup(self, step: str) -> None:
        """Remove the uploaded archive and the build bucket. Failures only warn."""
        if self.config.image_path:
            try:
                Path(self.config.image_path).unlink(missing_ok=True)
            except OSError as e:
                self.log(step, f"⚠️ Could not delete upload: {e}")
        bucket = self.resources.get("buildBucket")
        if not bucket:
            return
        try:
            listed = await self.session.call("s3", "list_objects_v2", Bucket=bucket)
            objects = [{"Key": o["Key"]} for o in listed.get("Contents", [])]
            if objects:
                await self.session.call(
                    "s3", "delete_objects", Bucket=bucket, Delete={"Objects": objects}
                )
            await self.session.call("s3", "delete_bucket", Bucket=bucket)
            self.log(step, f"🧹 Deleted build bucket {bucket}")
        except (ClientError, BotoCoreError) as e:
            self.log(step, f"⚠️ Build bucket cleanup: {e}")


# ---------------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------------


class DeploymentRegistry:
    """In-memory deployment status + the config needed to retry."""

    def __init__(
        self,
        *,
        records: ModuleRecords | None = None,
        session_factory: Callable[[AwsCredentials], AwsSession] = AwsSession,
    ) -> None:
        self.records = records or ModuleRecords()
        self._session_factory = session_factory
        self._status: Dict[str, DeploymentStatus] = {}
        self._configs: Dict[str, DeploymentConfig] = {}
        self._background_tasks: set[asyncio.Task] = set()

    def _track_task(self, task: asyncio.Task) -> None:
        self._background_tasks.add(task)

        def _done(t: asyncio.Task) -> None:
            self._background_tasks.discard(t)
            if t.cancelled():
                return
            exc = t.exception()
            if exc is not None:
                logger.error("Deployment task crashed: %s", exc, exc_info=exc)

        task.add_done_callback(_done)

    def _launch(self, deployment_id: str) -> asyncio.Task:
        runner = DeploymentRunner(
            self._status[deployment_id],
            self._configs[deployment_id],
            records=self.records,
            session_factory=self._session_factory,
        )
        task = asyncio.create_task(runner.run(), name=f"deploy:{deployment_id}")
        self._track_task(task)
        return task

    def start(
        self,
        module: str,
        aws: AwsCredentials,
        env_variables: List[EnvVariable],
        *,
        image_path: str | None,
        image_size: int = 0,
    ) -> DeploymentStatus:
        if module not in settings.DEPLOY_MODULES:
            raise ValueError(f"Unknown module: {module}")
        deployment_id = new_deployment_id()
        config = DeploymentConfig(
            module=module,
            aws=aws,
            env_variables=env_variables,
            image_name=f"{settings.RESOURCE_PREFIX}-{module}:latest",
            image_path=image_path,
            image_size=image_size,
            names=resource_names(module, deployment_id),
        )
        status = DeploymentStatus(id=deployment_id, module=module)
        self._status[deployment_id] = status
        self._configs[deployment_id] = config
        logger.info(f"Starting deployment {deployment_id} for module '{module}'")
        self._launch(deployment_id)
        return status

    def get(self, deployment_id: str) -> DeploymentStatus:
        status = self._status.get(deployment_id)
        if status is None:
            raise DeploymentNotFoundError(deployment_id)
        return status

    def retry(self, deployment_id: str) -> DeploymentStatus:
        """Re-run a failed deployment from its first errored step."""
        status = self.get(deployment_id)
        if status.status != DeploymentState.FAILED:
            raise DeploymentStateError("Deployment is not in failed state")

        status.status = DeploymentState.STARTED
        status.error = None
        failed_at = next(
            (i for i, sid in enumerate(STEP_IDS) if status.steps[sid].status == StepStatus.ERROR),
            None,
        )
        if failed_at is not None:
            for sid in STEP_IDS[failed_at:]:
                step = status.steps[sid]
                step.status = StepStatus.PENDING
                step.start_time = None
                step.end_time = None
            status.current_step = STEP_IDS[failed_at]

        if deployment_id not in self._configs:
            status.status = DeploymentState.FAILED
            status.error = "Cannot retry: Original deployment configuration not found"
            return status

        logger.info(f"Retrying deployment {deployment_id} from {status.current_step}")
        self._launch(deployment_id)
        return status

    def completed_for_module(self, module: str) -> List[Dict[str, Any]]:
        found = []
        for deployment_id, status in self._status.items():
            config = self._configs.get(deployment_id)
            if config is None or config.module != module:
                continue
            if status.status != DeploymentState.COMPLETED:
                continue
            found.append(
                {
                    "deploymentId": deployment_id,
                    "module": module,
                    "apiEndpoint": status.api_endpoint,
                    "completedAt": status.completed_at.isoformat()
                    if status.completed_at
                    else None,
                    "imageName": config.image_name,
                }
            )
        return found

    def forget_module(self, module: str) -> int:
        ids = [i for i, s in self._status.items() if s.module == module]
        for deployment_id in ids:
            self._status.pop(deployment_id, None)
            self._configs.pop(deployment_id, None)
        return len(ids)

    async def shutdown(self, *, timeout_seconds: float = 5.0) -> None:
        """Cancel in-flight deployment tasks (dev reloads, graceful stop)."""
        tasks = list(self._background_tasks)
        for task in tasks:
            task.cancel()
        if not tasks:
            return
        try:
            await asyncio.wait_for(
                asyncio.gather(*tasks, return_exceptions=True), timeout=timeout_seconds
            )
        except TimeoutError:
            logger.warning(
                "Deployment shutdown timed out after %.1fs; forcing continuation",
                timeout_seconds,
            )
        self._background_tasks.clear()


registry = DeploymentRegistry()
