from __future__ import annotations

import logging
from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI

from compliance_client.api.routes import router as compliance_router
from compliance_client.pipeline.workflow import ComplianceWorkflow
from settings import AppSettings, get_settings


def create_app(settings: AppSettings, workflow: ComplianceWorkflow | None = None) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        yield
        await app.state.workflow.close()

    app = FastAPI(title="MOE Compliance Client", version="0.1.0", lifespan=lifespan)
    app.state.workflow = workflow or ComplianceWorkflow(settings)
    app.include_router(compliance_router)

    @app.get("/health")
    async def health_check():
        return {"status": "ok"}

    return app


settings = get_settings()

logging.basicConfig(
    level=getattr(logging, settings.logging.level.upper(), logging.INFO),
    format="%(asctime)s [%(levelname)s] %(name)s - %(message)s",
)

logger = logging.getLogger(__name__)
app = create_app(settings)

logger.info("Compliance client initialized", extra={"log_level": settings.logging.level, "backend": settings.backend.base_url})


def run() -> None:
    uvicorn.run(app, host=settings.server.host, port=settings.server.port)


if __name__ == "__main__":
    run()
