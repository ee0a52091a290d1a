"""
Unit Tests for API Controllers/Endpoints

Tests the evaluation-methods endpoints using the in-memory storage connector.
"""

import pytest
from fastapi import status
from unittest.mock import AsyncMock


class TestHealthEndpoints:
    """Tests for health check endpoints."""

    def test_root_endpoint(self, test_client):
        """Root endpoint should return API info."""
        response = test_client.get("/")

        assert response.status_code == status.HTTP_200_OK
        data = response.json()
        assert "message" in data
        assert "docs" in data

    def test_health_endpoint(self, test_client):
        """Health endpoint should return ok status."""
        response = test_client.get("/health")

        assert response.status_code == status.HTTP_200_OK
        assert response.json()["status"] == "ok"


class TestMethodEndpoints:
    """Tests for method discovery endpoints."""

    def test_list_methods(self, test_client):
        """GET /api/evaluation-methods should list both methods."""
        response = test_client.get("/api/evaluation-methods")

        assert response.status_code == status.HTTP_200_OK
        methods = {m["method"]: m for m in response.json()}
        assert set(methods) == {"tool_correctness", "argument_correctness"}
        assert methods["tool_correctness"]["scorer"] == "matcher"
        assert methods["argument_correctness"]["item_source"] == "logs"

    def test_get_method_details(self, test_client):
        response = test_client.get("/api/evaluation-methods/tool_correctness")

        assert response.status_code == status.HTTP_200_OK
        assert response.json()["name"] == "Tool Correctness"

    def test_get_unknown_method(self, test_client):
        """Unknown methods should return 404."""
        response = test_client.get("/api/evaluation-methods/bleu_score")

        assert response.status_code == status.HTTP_404_NOT_FOUND

    def test_get_method_schema(self, test_client):
        response = test_client.get("/api/evaluation-methods/tool_correctness/schema")

        assert response.status_code == status.HTTP_200_OK
        properties = response.json()["properties"]
        assert "threshold" in properties
        assert "should_exact_match" in properties
        assert "evaluation_params" in properties

    def test_argument_correctness_schema_has_overrides(self, test_client):
        response = test_client.get("/api/evaluation-methods/argument_correctness/schema")

        assert "tools_called" in response.json()["properties"]

    def test_get_unknown_method_schema(self, test_client):
        response = test_client.get("/api/evaluation-methods/bleu_score/schema")

        assert response.status_code == status.HTTP_404_NOT_FOUND


class TestExecuteEndpoint:
    """Tests for POST /api/evaluation-methods/execute."""

    def test_execute_tool_correctness(self, test_client, mock_storage_connector,
                                      sample_evaluation_request, sample_data_points):
        """A valid request should run to completion and return the stored run."""
        mock_storage_connector._data_points["ds_123"] = sample_data_points

        response = test_client.post("/api/evaluation-methods/execute", json=sample_evaluation_request)

        assert response.status_code == status.HTTP_201_CREATED
        data = response.json()
        assert data["status"] == "completed"
        assert data["results"]["evaluated_items"] == 3
        assert data["results"]["average_score"] == pytest.approx(1 / 3)

    def test_execute_unsupported_method(self, test_client, mock_storage_connector, sample_evaluation_request):
        """Unsupported methods should return 400 without creating a run."""
        sample_evaluation_request["evaluation_method"] = "bleu_score"

        response = test_client.post("/api/evaluation-methods/execute", json=sample_evaluation_request)

        assert response.status_code == status.HTTP_400_BAD_REQUEST
        assert mock_storage_connector._runs == {}

    def test_execute_invalid_parameters(self, test_client, mock_storage_connector, sample_evaluation_request):
        """Non-boolean flags fail validation before any run is created."""
        sample_evaluation_request["parameters"] = {"strict_mode": "yes"}

        response = test_client.post("/api/evaluation-methods/execute", json=sample_evaluation_request)

        assert response.status_code == status.HTTP_400_BAD_REQUEST
        assert mock_storage_connector._runs == {}

    def test_execute_missing_dataset_id(self, test_client):
        """Body validation errors are reported as 422."""
        response = test_client.post("/api/evaluation-methods/execute",
                                    json={"agent_id": "a", "evaluation_method": "tool_correctness"})

        assert response.status_code == status.HTTP_422_UNPROCESSABLE_ENTITY

    def test_execute_storage_failure(self, test_client, mock_storage_connector, sample_evaluation_request):
        """Connector errors surface as 500 and the run is marked failed."""
        mock_storage_connector.get_data_points = AsyncMock(side_effect=RuntimeError("Database connection lost"))

        response = test_client.post("/api/evaluation-methods/execute", json=sample_evaluation_request)

        assert response.status_code == status.HTTP_500_INTERNAL_SERVER_ERROR
        assert "Database connection lost" in response.json()["detail"]
        run = next(iter(mock_storage_connector._runs.values()))
        assert run.status.value == "failed"


class TestStorageConnectorLoading:
    """STORAGE_CONNECTOR_FACTORY resolution for the script entrypoint."""

    def test_missing_factory_path(self):
        from src.evaluator.main import load_storage_connector

        with pytest.raises(RuntimeError, match="STORAGE_CONNECTOR_FACTORY"):
            load_storage_connector("")

    def test_factory_is_imported_and_called(self):
        from src.evaluator.main import load_storage_connector
        from tests.mocks.mock_judge_server import mock_judge_app

        assert load_storage_connector("tests.mocks.mock_judge_server:get_mock_judge_app") is mock_judge_app
