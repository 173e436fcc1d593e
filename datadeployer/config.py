"""
Application settings.

All values come from the environment (or a local `.env`). Field names match the
environment variable names.
"""

import json
from pathlib import Path
from typing import Annotated, Any

from pydantic import field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict


def _parse_list(v: Any) -> Any:
    # Accept "a,b" as well as a JSON list.
    if isinstance(v, str):
        raw = v.strip()
        if raw.startswith("["):
            return json.loads(raw)
        return [i.strip() for i in raw.split(",") if i.strip()]
    return v


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env", env_ignore_empty=True, extra="ignore"
    )

    # App
    APP_HOST: str = "0.0.0.0"
    APP_PORT: int = 3002
    APP_DEBUG: bool = False
    CORS_ORIGINS: Annotated[list[str], NoDecode] = ["*"]

    # Logging
    LOG_LEVEL: str = "INFO"
    LOG_FORMAT: str = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    LOG_FILE: str | None = None

    # Local state (credentials, draft history, deployment records, uploads)
    DATA_DIR: Path = Path("./data")

    # Generative AI
    GEMINI_API_BASE: str = "https://generativelanguage.googleapis.com/v1beta"
    GEMINI_MODEL: str = "gemini-2.0-flash-exp"
    GEMINI_TEMPERATURE: float = 0.2
    GEMINI_MAX_OUTPUT_TOKENS: int = 2048
    GEMINI_TIMEOUT_SECONDS: float = 60.0

    # Self-healing SQL generation
    SELF_HEAL_MAX_RETRIES: int = 3

    # Snowflake
    SNOWFLAKE_CONNECT_LOGIN_TIMEOUT: int = 30
    SNOWFLAKE_CONNECT_NETWORK_TIMEOUT: int = 60
    SNOWFLAKE_CONNECT_SOCKET_TIMEOUT: int = 60
    SNOWFLAKE_CONNECT_MAX_RETRIES: int = 3
    SNOWFLAKE_CONNECT_RETRY_DELAY: float = 1.0
    SNOWFLAKE_DEFAULT_ROLE: str = "PUBLIC"
    SNOWFLAKE_QUERY_TAG: str = "data_deployer"
    VALIDATION_CONFIG_TABLE: str = "MINIBEAST_VALIDATION_CONFIG"
    TEST_CASES_TABLE: str = "TBL_VALIDATING_TEST_CASES"
    VALIDATION_RESULTS_TABLE: str = "WARNER_MONITORING.VALIDATOR.TBL_VALIDATION_RESULTS"

    # AWS deployments
    RESOURCE_PREFIX: str = "minibeat"
    DEPLOY_MODULES: Annotated[list[str], NoDecode] = ["validator", "migrator", "reconciliator"]
    DEPLOY_TASK_CPU: str = "256"
    DEPLOY_TASK_MEMORY: str = "512"
    DEPLOY_CONTAINER_PORT: int = 8080
    CODEBUILD_POLL_SECONDS: float = 10.0
    CODEBUILD_TIMEOUT_SECONDS: float = 1800.0
    IAM_PROPAGATION_SECONDS: float = 15.0
    MAX_UPLOAD_BYTES: int = 2 * 1024 * 1024 * 1024

    @field_validator("CORS_ORIGINS", "DEPLOY_MODULES", mode="before")
    @classmethod
    def _split_lists(cls, v: Any) -> Any:
        return _parse_list(v)

    @field_validator("LOG_LEVEL", mode="before")
    @classmethod
    def _upper_level(cls, v: Any) -> Any:
        return str(v).strip().upper() if v is not None else v

    @property
    def configs_dir(self) -> Path:
        return self.DATA_DIR / "configs"

    @property
    def history_file(self) -> Path:
        return self.DATA_DIR / "ai-validations" / "history.json"

    @property
    def deployments_dir(self) -> Path:
        return self.DATA_DIR / "deployments"

    @property
    def modules_dir(self) -> Path:
        return self.deployments_dir / "modules"

    @property
    def uploads_dir(self) -> Path:
        return self.DATA_DIR / "uploads"


settings = Settings()
