"""
Pytest Configuration and Fixtures

Provides shared fixtures for both unit and integration tests.
"""

import json
import pytest
from datetime import datetime, timezone
from unittest.mock import AsyncMock
from fastapi.testclient import TestClient
from httpx import ASGITransport


# ==============================================================================
# Mock Storage Connector
# ==============================================================================

@pytest.fixture
def mock_storage_connector():
    """In-memory storage connector so runs can be evaluated without a database.

    Seed items with ``mock._data_points[dataset_id] = [...]`` or
    ``mock._logs[dataset_id] = [...]``. Individual methods can be replaced with
    ``AsyncMock(side_effect=...)`` to simulate storage failures.
    """
    from src.evaluator.models import EvaluationRun

    mock = AsyncMock()

    mock._runs = {}
    mock._updates = []
    mock._data_points = {}
    mock._logs = {}
    mock._data_point_outputs = []
    mock._log_outputs = []

    # Evaluation run operations
    async def create_evaluation_run(run):
        eval_run = EvaluationRun(**run.model_dump())
        mock._runs[eval_run.id] = eval_run
        return eval_run

    async def update_evaluation_run(run_id, update):
        mock._updates.append((run_id, update))
        changes = update.model_dump(exclude_none=True)
        changes["updated_at"] = datetime.now(timezone.utc)
        updated = mock._runs[run_id].model_copy(update=changes)
        mock._runs[run_id] = updated
        return updated

    async def get_evaluation_runs(query):
        run_id = query.get("id")
        return [run for run in mock._runs.values() if run_id is None or run.id == run_id]

    # Item operations
    async def get_data_points(dataset_id, query):
        return list(mock._data_points.get(dataset_id, []))

    async def get_dataset_logs(dataset_id, query):
        return list(mock._logs.get(dataset_id, []))

    # Output operations
    async def create_data_point_output(evaluation_run_id, output):
        record = {"id": f"dpo_{len(mock._data_point_outputs) + 1}", "evaluation_run_id": evaluation_run_id,
                  **output.model_dump()}
        mock._data_point_outputs.append(record)
        return record

    async def create_log_output(evaluation_run_id, output):
        record = {"id": f"lo_{len(mock._log_outputs) + 1}", "evaluation_run_id": evaluation_run_id,
                  **output.model_dump()}
        mock._log_outputs.append(record)
        return record

    mock.create_evaluation_run = create_evaluation_run
    mock.update_evaluation_run = update_evaluation_run
    mock.get_evaluation_runs = get_evaluation_runs
    mock.get_data_points = get_data_points
    mock.get_dataset_logs = get_dataset_logs
    mock.create_data_point_output = create_data_point_output
    mock.create_log_output = create_log_output

    return mock


# ==============================================================================
# Judge Client Fixtures
# ==============================================================================

@pytest.fixture
def judge_client():
    """Judge client wired to the mock judge server, retrying without delays."""
    from src.evaluator.judge_client import LLMJudgeClient
    from tests.mocks.mock_judge_server import mock_judge_app, reset_mock_judge

    reset_mock_judge()
    return LLMJudgeClient(
        base_url="http://judge.test/v1",
        api_key="test-key",
        default_model="judge-model",
        max_attempts=3,
        retry_base_delay=0,
        transport=ASGITransport(app=mock_judge_app),
    )


@pytest.fixture
def evaluator(judge_client):
    from src.evaluator.evaluator_service import EvaluatorService

    return EvaluatorService(judge_client=judge_client)


# ==============================================================================
# FastAPI Test Client Fixtures
# ==============================================================================

@pytest.fixture
def test_client(mock_storage_connector, judge_client):
    """Synchronous test client for endpoint tests."""
    from src.evaluator.main import create_app

    app = create_app(mock_storage_connector, judge_client=judge_client)
    with TestClient(app) as client:
        yield client


# ==============================================================================
# Sample Test Data Fixtures
# ==============================================================================

@pytest.fixture
def sample_data_points():
    """Three data points: nothing at all, expected but not called, called but not expected."""
    return [
        {"id": "dp_empty", "request_body": {"tools_called": []}, "ground_truth": {"expected_tools": []}},
        {
            "id": "dp_missing_call",
            "request_body": {"tools_called": []},
            "ground_truth": {"expected_tools": [{"name": "WebSearch", "input_parameters": {"query": "weather"}}]},
        },
        {
            "id": "dp_unexpected_call",
            "request_body": {"tools_called": [{"name": "Calculator", "input_parameters": {"expr": "2+2"}}]},
            "ground_truth": {"expected_tools": []},
        },
    ]


@pytest.fixture
def sample_logs():
    """Logs carrying what the argument-correctness judge needs."""
    def make_log(log_id, prompt):
        return {
            "id": log_id,
            "ai_provider_request_log": {
                "request_body": {
                    "input": prompt,
                    "tools": [{"type": "function", "name": "search_flights",
                               "parameters": {"from": "string", "to": "string"}}],
                },
                "response_body": {"text": "I found 3 flights from SFO to JFK."},
            },
            "metadata": {
                "tools": json.dumps([{"name": "search_flights", "arguments": {"from": "SFO", "to": "JFK"}}]),
            },
        }

    return [
        make_log("log_1", "Find flights from SFO to JFK"),
        make_log("log_2", "Find flights from SFO to JFK low_score"),
    ]


@pytest.fixture
def sample_evaluation_request():
    """Sample tool correctness request."""
    return {
        "agent_id": "agent_123",
        "dataset_id": "ds_123",
        "evaluation_method": "tool_correctness",
        "parameters": {"threshold": 0.5},
    }
