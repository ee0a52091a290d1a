"""
Main FastAPI Application Entry Point

The evaluation engine does not own persistence, so the app is built around a
storage connector supplied by the embedding application (or loaded from
STORAGE_CONNECTOR_FACTORY when run as a script).
"""

import importlib
import logging
from typing import Optional

import uvicorn
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from . import config
from .controllers import create_methods_router
from .evaluator_service import get_evaluator_service
from .judge_client import LLMJudgeClient
from .storage import StorageConnector

logger = logging.getLogger(__name__)


def create_app(storage: StorageConnector, judge_client: Optional[LLMJudgeClient] = None) -> FastAPI:
    evaluator = get_evaluator_service(judge_client)

    app = FastAPI(title=config.API_TITLE, docs_url="/api/docs")
    app.add_middleware(
        CORSMiddleware,
        allow_origins=config.CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.include_router(create_methods_router(evaluator, storage))

    @app.get("/")
    async def root():
        return {"message": config.API_TITLE, "docs": "/api/docs"}

    @app.get("/health")
    async def health():
        return {"status": "ok"}

    return app


def load_storage_connector(factory_path: str = config.STORAGE_CONNECTOR_FACTORY) -> StorageConnector:
    """Instantiate the connector named by a "package.module:callable" path."""
    if not factory_path or ":" not in factory_path:
        raise RuntimeError(
            "STORAGE_CONNECTOR_FACTORY must be set to 'package.module:callable' returning a storage connector"
        )
    module_name, attr = factory_path.split(":", 1)
    factory = getattr(importlib.import_module(module_name), attr)
    return factory()


if __name__ == "__main__":
    logging.basicConfig(
        level=config.LOG_LEVEL,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    app = create_app(load_storage_connector())
    logger.info(f"Starting {config.API_TITLE} on {config.API_HOST}:{config.API_PORT}")
    uvicorn.run(app, host=config.API_HOST, port=config.API_PORT)
