"""
Tests for the connection endpoints.

Covers:
- AWS: key format checks before any AWS call, STS/ECR verification, error mapping
- AWS resource inventory (per-category failures) and permission setup
- Snowflake: connection test saves the config, config read/save
- Gemini: key probe, stored only on success
"""

from __future__ import annotations

import json
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from botocore.exceptions import ClientError
from fastapi.testclient import TestClient

from datadeployer.connectors.gemini_client import GeminiError
from datadeployer.connectors.snowflake_client import WarehouseQueryError
from datadeployer.core import config_store

ROUTES = "datadeployer.api.routes.connections"


def _client_error(code: str, operation: str = "GetCallerIdentity") -> ClientError:
    return ClientError({"Error": {"Code": code, "Message": code}}, operation)


def _aws_session(handler):
    """Patch AwsSession in aws_resources with a fake whose `call` is `handler`."""
    session = MagicMock()
    session.call = AsyncMock(side_effect=handler)
    return patch("datadeployer.core.aws_resources.AwsSession", return_value=session), session


class TestAwsConnection:
    def test_success(self, client: TestClient, aws_payload) -> None:
        def handler(service, method, **kwargs):
            if method == "get_caller_identity":
                return {"Account": "123456789012"}
            return {"repositories": []}

        aws_patch, session = _aws_session(handler)
        with aws_patch:
            response = client.post("/api/test-aws", json=aws_payload)

        assert response.status_code == 200
        data = response.json()
        assert data["success"] is True
        assert data["accountId"] == "123456789012"
        assert "123456789012" in data["message"]
        methods = [c.args[:2] for c in session.call.await_args_list]
        assert methods == [("sts", "get_caller_identity"), ("ecr", "describe_repositories")]

    def test_bad_access_key_format_makes_no_aws_call(self, client: TestClient, aws_payload) -> None:
        aws_patch, session = _aws_session(lambda *a, **k: {})
        with aws_patch:
            response = client.post("/api/test-aws", json={**aws_payload, "accessKey": "XYZ123"})

        assert response.status_code == 400
        assert "AKIA or ASIA" in response.json()["message"]
        session.call.assert_not_awaited()

    def test_short_secret_key(self, client: TestClient, aws_payload) -> None:
        response = client.post("/api/test-aws", json={**aws_payload, "secretKey": "short"})
        assert response.status_code == 400
        assert "at least 20 characters" in response.json()["message"]

    def test_rejected_credentials(self, client: TestClient, aws_payload) -> None:
        def handler(service, method, **kwargs):
            raise _client_error("InvalidClientTokenId")

        aws_patch, _ = _aws_session(handler)
        with aws_patch:
            response = client.post("/api/test-aws", json=aws_payload)

        assert response.status_code == 400
        data = response.json()
        assert data["errorCode"] == "InvalidClientTokenId"
        assert data["message"].startswith("Invalid AWS credentials")

    def test_missing_region(self, client: TestClient, aws_payload) -> None:
        payload = {k: v for k, v in aws_payload.items() if k != "region"}
        response = client.post("/api/test-aws", json=payload)
        assert response.status_code == 400
        assert "region" in response.json()["message"]


class TestAwsResources:
    def test_category_failure_is_isolated(self, client: TestClient, aws_payload) -> None:
        def handler(service, method, **kwargs):
            if method == "list_clusters":
                return {"clusterArns": ["arn:a", "arn:b"]}
            if method == "describe_clusters":
                return {
                    "clusters": [
                        {"clusterName": "live", "status": "ACTIVE"},
                        {"clusterName": "gone", "status": "INACTIVE"},
                    ]
                }
            if method == "list_roles":
                raise _client_error("AccessDenied", "ListRoles")
            if method == "list_task_definition_families":
                return {"families": ["minibeat-validator-task"]}
            return {}

        aws_patch, _ = _aws_session(handler)
        with aws_patch:
            response = client.post("/api/aws-resources", json=aws_payload)

        assert response.status_code == 200
        resources = response.json()["resources"]
        assert resources["clusters"] == ["live"]
        assert resources["taskDefinitions"] == ["minibeat-validator-task"]
        assert resources["iamRoles"] == []
        assert resources["stepFunctions"] == []


class TestSetupPermissions:
    def test_creates_and_attaches_policy(self, client: TestClient, aws_payload) -> None:
        def handler(service, method, **kwargs):
            if method == "create_policy":
                assert "states:*" in json.loads(kwargs["PolicyDocument"])["Statement"][0]["Action"]
                return {"Policy": {"Arn": "arn:aws:iam::1:policy/DataDeployerFullAccess"}}
            return {}

        aws_patch, session = _aws_session(handler)
        with aws_patch:
            response = client.post(
                "/api/setup-permissions", json={**aws_payload, "userName": "deployer"}
            )

        assert response.status_code == 200
        data = response.json()
        assert data["policyArn"] == "arn:aws:iam::1:policy/DataDeployerFullAccess"
        assert data["policyName"] == "DataDeployerFullAccess"
        session.call.assert_any_await(
            "iam",
            "attach_user_policy",
            UserName="deployer",
            PolicyArn="arn:aws:iam::1:policy/DataDeployerFullAccess",
        )

    def test_reuses_existing_policy(self, client: TestClient, aws_payload) -> None:
        def handler(service, method, **kwargs):
            if method == "create_policy":
                raise _client_error("EntityAlreadyExists", "CreatePolicy")
            if method == "get_user":
                return {"User": {"Arn": "arn:aws:iam::999888777666:user/deployer"}}
            return {}

        aws_patch, _ = _aws_session(handler)
        with aws_patch:
            response = client.post(
                "/api/setup-permissions", json={**aws_payload, "userName": "deployer"}
            )

        assert response.status_code == 200
        assert response.json()["policyArn"] == (
            "arn:aws:iam::999888777666:policy/DataDeployerFullAccess"
        )

    def test_user_name_required(self, client: TestClient, aws_payload) -> None:
        response = client.post("/api/setup-permissions", json=aws_payload)
        assert response.status_code == 400


class TestSnowflakeConnection:
    def test_success_saves_config(
        self, client: TestClient, session_factory, snowflake_payload
    ) -> None:
        with patch(f"{ROUTES}.open_session", session_factory):
            response = client.post("/api/test-snowflake", json=snowflake_payload)

        assert response.status_code == 200
        assert response.json()["success"] is True

        saved = client.get("/api/config/snowflake").json()
        assert saved["success"] is True
        assert saved["config"]["account"] == "acme-xy12345"
        assert saved["config"]["schema"] == "PUBLIC"
        assert "savedAt" in saved["config"]

    def test_connection_failure(self, client: TestClient, snowflake_payload) -> None:
        def failing(config):
            raise WarehouseQueryError("250001 (08001): Failed to connect to DB")

        with patch(f"{ROUTES}.open_session", failing):
            response = client.post("/api/test-snowflake", json=snowflake_payload)

        assert response.status_code == 503
        assert response.json()["errorCode"] == "SNOWFLAKE_CONNECTION_FAILED"
        assert config_store.load_snowflake_raw() is None

    def test_missing_password(self, client: TestClient, snowflake_payload) -> None:
        payload = {k: v for k, v in snowflake_payload.items() if k != "password"}
        response = client.post("/api/test-snowflake", json=payload)
        assert response.status_code == 400
        assert response.json()["success"] is False

    def test_config_not_found(self, client: TestClient) -> None:
        assert client.get("/api/config/snowflake").json() == {
            "success": False,
            "message": "Config not found",
        }

    def test_save_config_directly(self, client: TestClient) -> None:
        response = client.post("/api/config/snowflake", json={"account": "acme", "database": "DB"})
        assert response.status_code == 200
        assert client.get("/api/config/snowflake").json()["config"]["database"] == "DB"


class TestGeminiConnection:
    def test_valid_key_is_stored(self, client: TestClient) -> None:
        gemini = MagicMock()
        gemini.verify_key = AsyncMock()
        with patch(f"{ROUTES}.GeminiClient", return_value=gemini) as factory:
            response = client.post("/api/test-gemini", json={"api_key": "  good-key "})

        assert response.status_code == 200
        factory.assert_called_once_with("good-key")
        assert config_store.load_gemini_credential().api_key == "good-key"
        assert client.get("/api/connections").json()["connections"] == {
            "gemini": True,
            "snowflake": False,
        }

    def test_invalid_key_is_not_stored(self, client: TestClient) -> None:
        gemini = MagicMock()
        gemini.verify_key = AsyncMock(side_effect=GeminiError("Invalid API key", status_code=403))
        with patch(f"{ROUTES}.GeminiClient", return_value=gemini):
            response = client.post("/api/test-gemini", json={"api_key": "bad"})

        assert response.status_code == 400
        assert response.json() == {"success": False, "message": "Invalid API key"}
        assert config_store.load_gemini_credential() is None

    @pytest.mark.parametrize("payload", [{}, {"api_key": "   "}])
    def test_key_required(self, client: TestClient, payload) -> None:
        response = client.post("/api/test-gemini", json=payload)
        assert response.status_code == 400
        assert response.json()["success"] is False
