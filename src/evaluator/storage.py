"""
Storage connector contract.

The engine never talks to a database directly. Whatever owns persistence (a
SQL layer, an HTTP client for the dashboard backend, an in-memory fake in
tests) implements this protocol and is passed to ``EvaluatorService.evaluate``.
Item fetchers may return dicts or pydantic models; both are normalized in
``items.py``.
"""

from typing import Any, Dict, List, Protocol, runtime_checkable

from .models import (
    DataPointOutputCreate,
    EvaluationRun,
    EvaluationRunCreate,
    EvaluationRunUpdate,
    LogOutputCreate,
)


@runtime_checkable
class StorageConnector(Protocol):
    async def create_evaluation_run(self, run: EvaluationRunCreate) -> EvaluationRun:
        ...

    async def update_evaluation_run(self, run_id: str, update: EvaluationRunUpdate) -> EvaluationRun:
        ...

    async def get_evaluation_runs(self, query: Dict[str, Any]) -> List[EvaluationRun]:
        ...

    async def get_data_points(self, dataset_id: str, query: Dict[str, Any]) -> List[Any]:
        ...

    async def get_dataset_logs(self, dataset_id: str, query: Dict[str, Any]) -> List[Any]:
        ...

    async def create_data_point_output(self, evaluation_run_id: str, output: DataPointOutputCreate) -> Any:
        ...

    async def create_log_output(self, evaluation_run_id: str, output: LogOutputCreate) -> Any:
        ...
