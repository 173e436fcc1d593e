"""
AWS session wrapper.

boto3 is blocking; every call is pushed to the default thread executor so route
handlers stay async.
"""

import asyncio
import functools
import logging
from typing import Any, Dict

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from datadeployer.models.connection import AwsCredentials

logger = logging.getLogger(__name__)


def error_code(exc: BaseException) -> str | None:
    """AWS error code of a ClientError (e.g. `AccessDenied`), else None."""
    if isinstance(exc, ClientError):
        return exc.response.get("Error", {}).get("Code")
    return None


def is_error(exc: BaseException, *codes: str) -> bool:
    return error_code(exc) in codes


class AwsSession:
    """boto3 session bound to one set of caller credentials."""

    def __init__(self, credentials: AwsCredentials):
        self.credentials = credentials
        self.region = credentials.region
        self._session = boto3.session.Session(
            aws_access_key_id=credentials.access_key,
            aws_secret_access_key=credentials.secret_key,
            region_name=credentials.region,
        )
        self._clients: Dict[str, Any] = {}

    def client(self, service: str) -> Any:
        if service not in self._clients:
            self._clients[service] = self._session.client(service)
        return self._clients[service]

    async def call(self, service: str, method: str, **kwargs: Any) -> Dict[str, Any]:
        """
        Invoke `client(service).<method>(**kwargs)` off the event loop.

        ClientError / BotoCoreError propagate unchanged.
        """
        fn = getattr(self.client(service), method)
        loop = asyncio.get_running_loop()
        try:
            return await loop.run_in_executor(None, functools.partial(fn, **kwargs))
        except (ClientError, BotoCoreError) as e:
            logger.debug(f"AWS {service}.{method} failed: {e}")
            raise

    async def upload_file(self, path: str, bucket: str, key: str) -> None:
        """Multipart-aware upload of a local file to S3."""
        s3 = self.client("s3")
        loop = asyncio.get_running_loop()
        await loop.run_in_executor(
            None,
            functools.partial(
                s3.upload_file,
                path,
                bucket,
                key,
                ExtraArgs={"ContentType": "application/x-tar"},
            ),
        )
