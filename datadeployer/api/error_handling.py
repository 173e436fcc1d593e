"""
Centralized API error handling helpers.

Every route answers `{"success": false, "message": ...}` on failure. Upstream
errors (Snowflake network policy, rejected AWS keys, bad Gemini keys) are
rewritten into messages an operator can act on.
"""

from __future__ import annotations

import logging
import traceback
from dataclasses import dataclass
from typing import Any

from botocore.exceptions import BotoCoreError, ClientError
from fastapi import status
from fastapi.responses import JSONResponse

from datadeployer.config import settings
from datadeployer.connectors.aws_clients import error_code
from datadeployer.connectors.gemini_client import GeminiError, GeminiNotConfiguredError
from datadeployer.connectors.snowflake_client import WarehouseQueryError
from datadeployer.core.activity import ModuleNotDeployedError
from datadeployer.core.config_store import CredentialStoreError
from datadeployer.core.deployments import DeploymentNotFoundError, DeploymentStateError
from datadeployer.core.draft_store import ActivationError, DraftNotFoundError, DraftStoreError

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class ApiError:
    status_code: int
    message: str
    code: str | None = None
    hint: str | None = None
    debug: str | None = None


def _maybe_debug(exc: BaseException) -> str | None:
    if settings.APP_DEBUG:
        return str(exc)
    return None


def classify_snowflake_error(exc: BaseException) -> ApiError | None:
    """
    Classify Snowflake connector failures into user-actionable errors.

    String matching, because the connector raises several exception types for
    the same network condition and the session wraps them anyway.
    """
    msg = str(exc)
    lower = msg.lower()

    # Snowflake network policy / VPN / IP allowlist failure.
    if ("ip/token" in lower and "not allowed" in lower) or (
        "is not allowed to access snowflake" in lower
    ):
        return ApiError(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            code="SNOWFLAKE_IP_NOT_ALLOWED",
            message="Snowflake access blocked by network policy (VPN / IP allowlist).",
            hint="Connect to your VPN (or allowlist your current IP in Snowflake), then retry.",
            debug=_maybe_debug(exc),
        )

    if "failed to connect to db" in lower or "(08001)" in lower:
        return ApiError(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            code="SNOWFLAKE_CONNECTION_FAILED",
            message="Failed to connect to Snowflake.",
            hint="Check VPN/network access and Snowflake account URL, then retry.",
            debug=_maybe_debug(exc),
        )

    return None


_AWS_MESSAGES = {
    "UnrecognizedClientException": (
        "Invalid AWS credentials. Please check your Access Key and Secret Key."
    ),
    "InvalidClientTokenId": (
        "Invalid AWS credentials. Please check your Access Key and Secret Key."
    ),
    "InvalidUserID.NotFound": "AWS credentials are invalid or expired.",
    "ExpiredToken": "AWS session token has expired. Please provide fresh credentials.",
    "ExpiredTokenException": (
        "AWS session token has expired. Please provide fresh credentials."
    ),
    "AccessDenied": (
        "Access denied. Please ensure your AWS user has ECR and ECS permissions."
    ),
    "AccessDeniedException": (
        "Access denied. Please ensure your AWS user has the required permissions."
    ),
}


def classify_aws_error(exc: BaseException) -> ApiError | None:
    if isinstance(exc, ClientError):
        code = error_code(exc)
        return ApiError(
            status_code=status.HTTP_400_BAD_REQUEST,
            code=code,
            message=_AWS_MESSAGES.get(code or "", str(exc)),
            debug=_maybe_debug(exc),
        )
    if isinstance(exc, BotoCoreError):
        return ApiError(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            code="AWS_UNAVAILABLE",
            message=str(exc),
        )
    return None


def classify_gemini_error(exc: BaseException) -> ApiError | None:
    if isinstance(exc, GeminiNotConfiguredError):
        return ApiError(status_code=status.HTTP_400_BAD_REQUEST, message=str(exc))
    if isinstance(exc, GeminiError):
        code = exc.status_code
        if code in (400, 401, 403):
            return ApiError(status_code=status.HTTP_400_BAD_REQUEST, message=str(exc))
        return ApiError(status_code=status.HTTP_502_BAD_GATEWAY, message=str(exc))
    return None


# Domain exceptions that carry an operator-readable message as-is.
_STATUS_BY_TYPE: tuple[tuple[type[BaseException], int], ...] = (
    (DraftNotFoundError, status.HTTP_404_NOT_FOUND),
    (DeploymentNotFoundError, status.HTTP_404_NOT_FOUND),
    (ModuleNotDeployedError, status.HTTP_404_NOT_FOUND),
    (DeploymentStateError, status.HTTP_400_BAD_REQUEST),
    (WarehouseQueryError, status.HTTP_400_BAD_REQUEST),
    (ValueError, status.HTTP_400_BAD_REQUEST),
    (DraftStoreError, status.HTTP_500_INTERNAL_SERVER_ERROR),
    (ActivationError, status.HTTP_500_INTERNAL_SERVER_ERROR),
    (CredentialStoreError, status.HTTP_500_INTERNAL_SERVER_ERROR),
)


def classify(operation: str, exc: BaseException) -> ApiError:
    for classifier in (classify_gemini_error, classify_aws_error):
        found = classifier(exc)
        if found is not None:
            return found

    if isinstance(exc, WarehouseQueryError):
        sf = classify_snowflake_error(exc)
        if sf is not None:
            return sf

    for exc_type, code in _STATUS_BY_TYPE:
        if isinstance(exc, exc_type):
            return ApiError(status_code=code, message=str(exc))

    # Unknown failure: keep a safe summary.
    return ApiError(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        code="INTERNAL_ERROR",
        message=f"{operation} failed.",
        debug=_maybe_debug(exc),
    )


def error_response(
    operation: str,
    exc: BaseException,
    *,
    status_code: int | None = None,
    **extra: Any,
) -> JSONResponse:
    """
    Convert an exception into the console's `{success: false, message}` payload.

    `status_code` overrides the classified status (e.g. connection tests answer
    400 for any failure).
    """
    logger.error(
        "API error during '%s': %s\n%s",
        operation,
        exc,
        traceback.format_exc(),
    )

    err = classify(operation, exc)
    body: dict[str, Any] = {"success": False, "message": err.message}
    if err.code:
        body["errorCode"] = err.code
    if err.hint:
        body["hint"] = err.hint
    if err.debug:
        body["debug"] = err.debug
    body.update(extra)
    return JSONResponse(status_code=status_code or err.status_code, content=body)


def fail(message: str, status_code: int = status.HTTP_400_BAD_REQUEST, **extra: Any) -> JSONResponse:
    """A handled, expected failure (missing input, nothing deployed yet)."""
    return JSONResponse(
        status_code=status_code, content={"success": False, "message": message, **extra}
    )
