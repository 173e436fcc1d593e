"""
Persisted credentials: the Gemini API key and the saved Snowflake config.

Missing or corrupt files read as None. Write failures raise CredentialStoreError.
"""

import json
import logging
import os
import tempfile
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Optional

from pydantic import ValidationError

from datadeployer.config import settings
from datadeployer.models.connection import GeminiCredential, WarehouseConnectionConfig

logger = logging.getLogger(__name__)


class CredentialStoreError(Exception):
    pass


def gemini_path() -> Path:
    return settings.configs_dir / "gemini.json"


def snowflake_path() -> Path:
    return settings.deployments_dir / "snowflake-config.json"


def read_json(path: Path) -> Optional[Any]:
    try:
        return json.loads(path.read_text(encoding="utf-8"))
    except FileNotFoundError:
        return None
    except (OSError, ValueError) as e:
        logger.warning(f"Ignoring unreadable {path}: {e}")
        return None


def write_json(path: Path, data: Any) -> None:
    """Atomic JSON write (temp file in the same directory, then replace)."""
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp = tempfile.mkstemp(prefix=f".{path.stem}-", suffix=".json", dir=str(path.parent))
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(data, f, indent=2, default=str)
            os.replace(tmp, path)
        except BaseException:
            Path(tmp).unlink(missing_ok=True)
            raise
    except OSError as e:
        raise CredentialStoreError(f"Failed to write {path.name}: {e}") from e


def load_gemini_credential() -> Optional[GeminiCredential]:
    data = read_json(gemini_path())
    if not isinstance(data, dict):
        return None
    try:
        return GeminiCredential.model_validate(data)
    except ValidationError:
        logger.warning("Stored Gemini credential is invalid; ignoring")
        return None


def save_gemini_credential(credential: GeminiCredential) -> None:
    write_json(gemini_path(), credential.model_dump())
    logger.info("Gemini API key saved")


def load_snowflake_raw() -> Optional[Dict[str, Any]]:
    data = read_json(snowflake_path())
    return data if isinstance(data, dict) else None


def load_snowflake_config() -> Optional[WarehouseConnectionConfig]:
    data = load_snowflake_raw()
    if data is None:
        return None
    try:
        return WarehouseConnectionConfig.model_validate(data)
    except ValidationError:
        logger.warning("Stored Snowflake config is incomplete; ignoring")
        return None


def save_snowflake_config(data: Dict[str, Any]) -> Dict[str, Any]:
    record = {**data, "savedAt": datetime.now(timezone.utc).isoformat()}
    write_json(snowflake_path(), record)
    logger.info("Snowflake config saved")
    return record


def connection_summary() -> Dict[str, bool]:
    return {
        "gemini": load_gemini_credential() is not None,
        "snowflake": load_snowflake_config() is not None,
    }
