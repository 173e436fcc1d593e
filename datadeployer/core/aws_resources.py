"""
AWS connectivity checks, resource inventory and permission bootstrap.
"""

import json
import logging
from typing import Any, Awaitable, Callable, Dict, List

from botocore.exceptions import BotoCoreError, ClientError

from datadeployer.connectors.aws_clients import AwsSession, is_error
from datadeployer.models.connection import AwsCredentials

logger = logging.getLogger(__name__)

POLICY_NAME = "DataDeployerFullAccess"

POLICY_DOCUMENT: Dict[str, Any] = {
    "Version": "2012-10-17",
    "Statement": [
        {
            "Effect": "Allow",
            "Action": [
                "events:*",
                "states:*",
                "apigateway:*",
                "iam:CreateRole",
                "iam:AttachRolePolicy",
                "iam:CreatePolicy",
                "iam:GetRole",
                "iam:PassRole",
                "ecr:*",
                "ecs:*",
                "codebuild:*",
                "s3:*",
                "logs:*",
                "ec2:DescribeVpcs",
                "ec2:DescribeSubnets",
                "ec2:CreateSecurityGroup",
                "ec2:AuthorizeSecurityGroupIngress",
                "ec2:DescribeSecurityGroups",
                "ec2:DescribeNetworkInterfaces",
            ],
            "Resource": "*",
        }
    ],
}


async def verify_credentials(credentials: AwsCredentials) -> str:
    """
    Check key format, then identity (STS) and ECR reachability.

    Returns:
        The AWS account id.

    Raises:
        ValueError: Malformed credentials (caught before any AWS call)
        ClientError: AWS rejected the credentials or the ECR probe
    """
    problem = credentials.format_problem()
    if problem:
        raise ValueError(problem)

    session = AwsSession(credentials)
    identity = await session.call("sts", "get_caller_identity")
    await session.call("ecr", "describe_repositories", maxResults=1)
    return identity["Account"]


async def _collect(label: str, fetch: Callable[[], Awaitable[List[str]]]) -> List[str]:
    try:
        return await fetch()
    except (ClientError, BotoCoreError) as e:
        logger.warning(f"Could not list {label}: {e}")
        return []


async def list_resources(credentials: AwsCredentials) -> Dict[str, List[str]]:
    """Existing resources by category; each category fails independently."""
    session = AwsSession(credentials)

    async def clusters() -> List[str]:
        arns = (await session.call("ecs", "list_clusters")).get("clusterArns") or []
        if not arns:
            return []
        described = await session.call("ecs", "describe_clusters", clusters=arns)
        return [
            c["clusterName"]
            for c in described.get("clusters", [])
            if c.get("status") == "ACTIVE"
        ]

    async def task_definitions() -> List[str]:
        result = await session.call(
            "ecs", "list_task_definition_families", status="ACTIVE", maxResults=100
        )
        return list(result.get("families") or [])

    async def repositories() -> List[str]:
        result = await session.call("ecr", "describe_repositories", maxResults=100)
        return [r["repositoryName"] for r in result.get("repositories", [])]

    async def roles() -> List[str]:
        result = await session.call("iam", "list_roles", MaxItems=1000)
        return sorted(r["RoleName"] for r in result.get("Roles", []))

    async def state_machines() -> List[str]:
        result = await session.call("stepfunctions", "list_state_machines", maxResults=100)
        return [sm["name"] for sm in result.get("stateMachines", [])]

    async def api_gateways() -> List[str]:
        result = await session.call("apigateway", "get_rest_apis", limit=100)
        return [api["name"] for api in result.get("items", [])]

    resources = {
        "clusters": await _collect("ECS clusters", clusters),
        "taskDefinitions": await _collect("task definitions", task_definitions),
        "ecrRepositories": await _collect("ECR repositories", repositories),
        "iamRoles": await _collect("IAM roles", roles),
        "stepFunctions": await _collect("state machines", state_machines),
        "apiGateways": await _collect("API gateways", api_gateways),
    }
    logger.info(
        "AWS resources: " + ", ".join(f"{k}={len(v)}" for k, v in resources.items())
    )
    return resources


async def account_id(session: AwsSession) -> str:
    user = await session.call("iam", "get_user")
    return user["User"]["Arn"].split(":")[4]


async def setup_permissions(credentials: AwsCredentials, user_name: str) -> str:
    """Create (or reuse) the deployer policy and attach it to `user_name`."""
    session = AwsSession(credentials)
    try:
        created = await session.call(
            "iam",
            "create_policy",
            PolicyName=POLICY_NAME,
            PolicyDocument=json.dumps(POLICY_DOCUMENT),
            Description="Full access policy for Data Deployer application",
        )
        policy_arn = created["Policy"]["Arn"]
        logger.info(f"Created policy {policy_arn}")
    except ClientError as e:
        if not is_error(e, "EntityAlreadyExists", "EntityAlreadyExistsException"):
            raise
        policy_arn = f"arn:aws:iam::{await account_id(session)}:policy/{POLICY_NAME}"
        logger.info(f"Reusing existing policy {policy_arn}")

    await session.call("iam", "attach_user_policy", UserName=user_name, PolicyArn=policy_arn)
    return policy_arn
