"""
Tests for the AI validation endpoints.

Covers:
- Table schema, single generation (normal / fix mode), test-query
- Server-side self-heal: healed, exhausted, Gemini not configured
- Draft history: save, list, toggle (idempotent, 404), delete
"""

from __future__ import annotations

from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from fastapi.testclient import TestClient
from snowflake.connector.errors import DatabaseError

from datadeployer.connectors.snowflake_client import WarehouseQueryError
from datadeployer.core import config_store
from datadeployer.models.connection import GeminiCredential
from datadeployer.models.validation import ColumnDescriptor

ROUTES = "datadeployer.api.routes.ai_validations"
CONNECT = "datadeployer.connectors.snowflake_client.snowflake.connector.connect"
OK = {"success": True, "results": [{"Status": 0}], "rowCount": 1}


@pytest.fixture
def gemini_configured(data_dir):
    config_store.save_gemini_credential(GeminiCredential(api_key="test-key"))


@pytest.fixture
def patched_session(session_factory):
    with patch(f"{ROUTES}.open_session", session_factory):
        yield


@pytest.fixture
def heal_session(fake_session):
    with patch(f"{ROUTES}.SnowflakeSession", return_value=fake_session):
        yield fake_session


def _gemini_returning(*texts):
    instance = MagicMock()
    instance.generate = AsyncMock(side_effect=list(texts))
    return patch(f"{ROUTES}.GeminiClient", return_value=instance), instance


class TestTableSchema:
    def test_returns_columns(
        self, client: TestClient, patched_session, fake_session, snowflake_payload
    ) -> None:
        fake_session.columns = [ColumnDescriptor(name="ID", type="NUMBER", nullable=False)]

        response = client.post(
            "/api/get-table-schema",
            json={"tableName": "ORDERS", "snowflakeConfig": snowflake_payload},
        )

        assert response.status_code == 200
        data = response.json()
        assert data["success"] is True
        assert data["tableName"] == "ORDERS"
        assert data["columns"] == [{"name": "ID", "type": "NUMBER", "nullable": False}]
        assert fake_session.described == [("ANALYTICS", "PUBLIC", "ORDERS")]

    def test_missing_table_name(self, client: TestClient, snowflake_payload) -> None:
        response = client.post(
            "/api/get-table-schema", json={"snowflakeConfig": snowflake_payload}
        )
        assert response.status_code == 400
        assert response.json()["success"] is False

    def test_warehouse_error_is_reported(
        self, client: TestClient, patched_session, fake_session, snowflake_payload
    ) -> None:
        fake_session.columns = WarehouseQueryError("Table 'ORDERS' does not exist")

        response = client.post(
            "/api/get-table-schema",
            json={"tableName": "ORDERS", "snowflakeConfig": snowflake_payload},
        )

        assert response.status_code == 400
        assert response.json() == {
            "success": False,
            "message": "Table 'ORDERS' does not exist",
        }


class TestGenerateValidation:
    def test_not_configured(self, client: TestClient) -> None:
        response = client.post("/api/generate-validation", json={"prompt": "x"})
        assert response.status_code == 400
        assert "Gemini API key not configured" in response.json()["message"]

    def test_normal_mode(self, client: TestClient, gemini_configured) -> None:
        gemini_patch, gemini = _gemini_returning("```sql\nSELECT 0 AS \"Status\"\n```")
        with gemini_patch:
            response = client.post(
                "/api/generate-validation",
                json={"prompt": "check", "database": "SALES", "schema": "PUBLIC"},
            )

        assert response.status_code == 200
        data = response.json()
        assert data["sql"] == 'SELECT 0 AS "Status"'
        assert data["raw_response"].startswith("```sql")
        prompt = gemini.generate.await_args.args[0]
        assert "Database: SALES" in prompt
        assert "PREVIOUS QUERY" not in prompt

    def test_fix_mode(self, client: TestClient, gemini_configured) -> None:
        gemini_patch, gemini = _gemini_returning("SELECT STATUS FROM ORDERS")
        with gemini_patch:
            response = client.post(
                "/api/generate-validation",
                json={
                    "prompt": "check",
                    "previousSQL": "SELECT AMOUNT FROM ORDERS",
                    "previousError": "invalid identifier 'AMOUNT'",
                },
            )

        assert response.status_code == 200
        prompt = gemini.generate.await_args.args[0]
        assert "PREVIOUS QUERY:\nSELECT AMOUNT FROM ORDERS" in prompt
        assert "ERROR:\ninvalid identifier 'AMOUNT'" in prompt


class TestTestQuery:
    def test_returns_rows(
        self, client: TestClient, patched_session, fake_session, snowflake_payload
    ) -> None:
        fake_session.responses = [[{"Table Name": "ORDERS", "Status": 0}]]

        response = client.post(
            "/api/test-query",
            json={"query": "SELECT 1", "snowflakeConfig": snowflake_payload},
        )

        assert response.status_code == 200
        assert response.json() == {
            "success": True,
            "results": [{"Table Name": "ORDERS", "Status": 0}],
            "rowCount": 1,
        }

    def test_sql_error_verbatim(
        self, client: TestClient, patched_session, fake_session, snowflake_payload
    ) -> None:
        fake_session.responses = [WarehouseQueryError("invalid identifier 'AMOUNT'")]

        response = client.post(
            "/api/test-query",
            json={"query": "SELECT AMOUNT", "snowflakeConfig": snowflake_payload},
        )

        assert response.status_code == 400
        assert response.json()["message"] == "invalid identifier 'AMOUNT'"

    def test_network_policy_is_classified(
        self, client: TestClient, patched_session, fake_session, snowflake_payload
    ) -> None:
        fake_session.responses = [
            WarehouseQueryError("IP/Token 10.0.0.1 is not allowed to access Snowflake")
        ]

        response = client.post(
            "/api/test-query",
            json={"query": "SELECT 1", "snowflakeConfig": snowflake_payload},
        )

        assert response.status_code == 503
        assert response.json()["errorCode"] == "SNOWFLAKE_IP_NOT_ALLOWED"


class TestSelfHeal:
    def test_heals_and_stores_draft(
        self,
        client: TestClient,
        gemini_configured,
        heal_session,
        fake_session,
        snowflake_payload,
    ) -> None:
        fake_session.responses = [
            WarehouseQueryError("column AMOUNT does not exist"),
            [{"Table Name": "ORDERS", "Status": 0}],
        ]
        gemini_patch, gemini = _gemini_returning("SELECT AMOUNT", 'SELECT 0 AS "Status"')
        with gemini_patch:
            response = client.post(
                "/api/self-heal-validation",
                json={"prompt": "check", "snowflakeConfig": snowflake_payload},
            )

        assert response.status_code == 200
        data = response.json()
        assert data["success"] is True
        assert data["retries"] == 1
        assert data["sql"] == 'SELECT 0 AS "Status"'
        assert data["testResult"]["rowCount"] == 1
        assert data["state"] == "healed"
        assert data["draft"]["isActive"] is False
        assert fake_session.closed is True

        listed = client.get("/api/ai-validations").json()["validations"]
        assert [v["id"] for v in listed] == [data["draft"]["id"]]

    def test_exhausted(
        self,
        client: TestClient,
        gemini_configured,
        heal_session,
        fake_session,
        snowflake_payload,
    ) -> None:
        fake_session.responses = [WarehouseQueryError("still broken")] * 4
        gemini_patch, gemini = _gemini_returning(*["SELECT X"] * 5)
        with gemini_patch:
            response = client.post(
                "/api/self-heal-validation",
                json={"prompt": "check", "snowflakeConfig": snowflake_payload},
            )

        assert response.status_code == 422
        data = response.json()
        assert data["success"] is False
        assert data["state"] == "exhausted"
        assert gemini.generate.await_count == 4
        assert "still broken" in data["message"]
        assert client.get("/api/ai-validations").json()["validations"] == []

    def test_connect_failure_counts_against_retries(
        self, client: TestClient, gemini_configured, snowflake_payload
    ) -> None:
        login_error = DatabaseError(msg="Incorrect username or password was specified.")
        gemini_patch, gemini = _gemini_returning(*["SELECT 1"] * 5)
        with gemini_patch, patch(CONNECT, side_effect=login_error) as connect:
            response = client.post(
                "/api/self-heal-validation",
                json={
                    "prompt": "check",
                    "tableName": "ORDERS",
                    "snowflakeConfig": snowflake_payload,
                },
            )

        assert response.status_code == 422
        data = response.json()
        assert data["success"] is False
        assert data["state"] == "exhausted"
        assert data["attempts"] == 4
        assert data["retries"] == 3
        assert gemini.generate.await_count == 4
        assert "Incorrect username or password" in data["error"]
        assert any("Could not fetch columns" in line for line in data["healingLog"])
        # one describe plus four executions
        assert connect.call_count == 5

    def test_not_configured_does_not_touch_warehouse(
        self, client: TestClient, heal_session, fake_session, snowflake_payload
    ) -> None:
        response = client.post(
            "/api/self-heal-validation",
            json={"prompt": "check", "snowflakeConfig": snowflake_payload},
        )
        assert response.status_code == 400
        assert fake_session.statements == []


class TestDraftHistory:
    def test_save_and_list(self, client: TestClient) -> None:
        response = client.post(
            "/api/save-ai-validation",
            json={"prompt": "p", "sql": "SELECT 1", "database": "DB", "schema": "S", "testResult": OK},
        )
        assert response.status_code == 200
        saved = response.json()["validation"]
        assert saved["id"].startswith("ai-val-")
        assert saved["schema"] == "S"

        listed = client.get("/api/ai-validations").json()
        assert listed == {"success": True, "validations": [saved]}

    def test_save_refuses_failed_test(self, client: TestClient) -> None:
        response = client.post(
            "/api/save-ai-validation",
            json={"prompt": "p", "sql": "SELECT 1", "testResult": {"success": False}},
        )
        assert response.status_code == 400
        assert response.json()["success"] is False

    def test_toggle_without_config(self, client: TestClient) -> None:
        saved = client.post(
            "/api/save-ai-validation", json={"sql": "SELECT 1", "testResult": OK}
        ).json()["validation"]

        response = client.post(
            "/api/toggle-ai-validation", json={"id": saved["id"], "isActive": True}
        )

        assert response.status_code == 200
        assert response.json()["validation"]["isActive"] is True

    def test_toggle_with_config_is_idempotent(
        self, client: TestClient, patched_session, fake_session, snowflake_payload
    ) -> None:
        saved = client.post(
            "/api/save-ai-validation", json={"sql": "SELECT 1", "testResult": OK}
        ).json()["validation"]
        body = {"id": saved["id"], "isActive": True, "snowflakeConfig": snowflake_payload}

        client.post("/api/toggle-ai-validation", json=body)
        client.post("/api/toggle-ai-validation", json=body)

        inserts = [s for s in fake_session.sql() if s.startswith("INSERT")]
        assert len(inserts) == 1

    def test_toggle_unknown(self, client: TestClient) -> None:
        response = client.post(
            "/api/toggle-ai-validation", json={"id": "ai-val-0-nope", "isActive": True}
        )
        assert response.status_code == 404
        assert response.json() == {"success": False, "message": "Validation not found"}

    def test_delete_unknown_is_not_an_error(self, client: TestClient) -> None:
        response = client.post("/api/delete-ai-validation", json={"id": "ai-val-0-nope"})
        assert response.status_code == 200
        assert response.json() == {"success": True, "deleted": False}
