"""
Connection Models

Per-request credentials for the remote services the console talks to:
- Snowflake (warehouse)
- AWS (deployments, activity)
- Gemini (generative SQL)
"""

from typing import Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator

_AWS_KEY_PREFIXES = ("AKIA", "ASIA")


class WarehouseConnectionConfig(BaseModel):
    """
    Snowflake connection parameters supplied by the caller.

    Never cached server-side beyond one request, except through the explicit
    "save Snowflake config" operation.
    """

    model_config = ConfigDict(populate_by_name=True)

    account: str = Field(..., min_length=1, description="Account identifier")
    username: str = Field(
        ...,
        min_length=1,
        validation_alias=AliasChoices("username", "user"),
        description="Login name",
    )
    password: str = Field(..., min_length=1, description="Password")
    warehouse: Optional[str] = Field(None, description="Warehouse")
    database: Optional[str] = Field(None, description="Default database")
    schema_name: Optional[str] = Field(
        None,
        validation_alias=AliasChoices("schema", "schema_name"),
        serialization_alias="schema",
        description="Default schema",
    )
    role: Optional[str] = Field(None, description="Role")


class AwsCredentials(BaseModel):
    """Access key pair + region used to build boto3 clients."""

    model_config = ConfigDict(populate_by_name=True)

    access_key: str = Field(..., alias="accessKey", min_length=1)
    secret_key: str = Field(..., alias="secretKey", min_length=1)
    region: str = Field(..., min_length=1)

    def format_problem(self) -> str | None:
        """Cheap client-side checks that catch pasted-in-the-wrong-box mistakes."""
        if not self.access_key.startswith(_AWS_KEY_PREFIXES):
            return (
                "Invalid Access Key format. AWS Access Keys should start with "
                "AKIA or ASIA."
            )
        if len(self.secret_key) < 20:
            return (
                "Invalid Secret Key format. AWS Secret Keys should be at least "
                "20 characters long."
            )
        return None


class GeminiCredential(BaseModel):
    api_key: str

    @field_validator("api_key")
    @classmethod
    def _strip(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("API key is required")
        return v


class PermissionSetupRequest(AwsCredentials):
    user_name: str = Field(..., alias="userName", min_length=1)
