"""
Data models for the Data Deployer console.

This package contains Pydantic models for:
- Remote service credentials (Snowflake, AWS, Gemini)
- AI-generated validation drafts and the self-healing loop
- Validation cases stored in the warehouse
- Module deployments
"""

from datadeployer.models.connection import (
    AwsCredentials,
    GeminiCredential,
    WarehouseConnectionConfig,
)

from datadeployer.models.validation import (
    ColumnDescriptor,
    HealingOutcome,
    HealingState,
    TestResult,
    ValidationDraft,
)

from datadeployer.models.validation_case import ValidationCase

from datadeployer.models.deployment import (
    STEP_IDS,
    DeploymentConfig,
    DeploymentState,
    DeploymentStatus,
    DeploymentStep,
    EnvVariable,
    ResourceNames,
    StepStatus,
)

__all__ = [
    # connection
    "AwsCredentials",
    "GeminiCredential",
    "WarehouseConnectionConfig",
    # validation
    "ColumnDescriptor",
    "HealingOutcome",
    "HealingState",
    "TestResult",
    "ValidationDraft",
    # validation_case
    "ValidationCase",
    # deployment
    "STEP_IDS",
    "DeploymentConfig",
    "DeploymentState",
    "DeploymentStatus",
    "DeploymentStep",
    "EnvVariable",
    "ResourceNames",
    "StepStatus",
]
