from typing import List
from fastapi import APIRouter, HTTPException, status
import logging

from .evaluator_service import EvaluationCancelledError, EvaluatorService
from .models import EvaluationMethodDetails, EvaluationRequest, EvaluationRun
from .storage import StorageConnector

logger = logging.getLogger(__name__)


def create_methods_router(evaluator: EvaluatorService, storage: StorageConnector) -> APIRouter:
    """Routes for listing evaluation methods and executing runs.

    Collaborators are bound here rather than at import time so tests and
    embedding applications can supply their own connector.
    """
    router = APIRouter(prefix="/api/evaluation-methods", tags=["evaluation-methods"])

    @router.get("", response_model=List[EvaluationMethodDetails])
    async def list_methods():
        """List every supported evaluation method."""
        return evaluator.list_methods()

    @router.get("/{method}", response_model=EvaluationMethodDetails)
    async def get_method(method: str):
        try:
            return evaluator.get_method_details(method)
        except ValueError:
            raise HTTPException(404, f"Evaluation method '{method}' not found")

    @router.get("/{method}/schema")
    async def get_method_schema(method: str):
        """JSON schema of the parameters accepted by a method."""
        try:
            schema_model = evaluator.get_parameter_schema(method)
        except ValueError:
            raise HTTPException(404, f"Evaluation method '{method}' not found")
        return schema_model.model_json_schema()

    @router.post("/execute", response_model=EvaluationRun, status_code=status.HTTP_201_CREATED)
    async def execute_evaluation(request: EvaluationRequest):
        """Run an evaluation synchronously and return the stored run."""
        try:
            evaluator.prepare(request)
        except ValueError as e:
            # Unknown method or invalid parameters, nothing was written
            raise HTTPException(400, str(e))

        try:
            return await evaluator.evaluate(request, storage)
        except EvaluationCancelledError as e:
            raise HTTPException(409, str(e))
        except Exception as e:
            logger.error(f"Evaluation failed for dataset {request.dataset_id}: {str(e)}")
            raise HTTPException(500, f"Evaluation failed: {str(e)}")

    return router
