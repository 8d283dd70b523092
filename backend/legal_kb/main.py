"""
Legal KB Training API

Thin HTTP front for the training pipeline. POST /api/v1/training/runs records
a run and hands it to the training.pipeline Celery queue; the two GET routes
read run rows back. Nothing here touches OneDrive or the embedding provider.

Errors leave the API as ErrorResponse bodies (error_code, message, details)
so the dashboard can key off error_code: VALIDATION_ERROR, RUN_NOT_FOUND,
QUEUE_ERROR, INTERNAL_ERROR.

Run locally:
    uvicorn legal_kb.main:app --reload
"""

from __future__ import annotations

import logging
import time
import uuid
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.gzip import GZipMiddleware
from fastapi.responses import JSONResponse

from legal_kb.api.v1.training import router as training_router
from legal_kb.core.config import settings
from legal_kb.core.exceptions import RunNotFoundError
from legal_kb.db.session import check_db_health
from legal_kb.schemas.training import ErrorDetail, ErrorResponse, TrainingErrors

logger = logging.getLogger(__name__)

logging.basicConfig(
    level=logging.DEBUG if settings.debug else logging.INFO,
    format="%(asctime)s %(levelname)s %(name)s %(message)s",
)

SERVICE_NAME = "legal-kb-training"


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info(
        "Training API starting | env=%s graph=%s embedding_model=%s",
        settings.app_env, settings.graph_api_base_url, settings.embedding_model,
    )

    # Runs cannot be created without the run table
    db_health = await check_db_health()
    if db_health["status"] != "ok":
        logger.critical("Training API aborted | database=%s", db_health)
        raise RuntimeError(f"DB unavailable: {db_health}")

    yield

    from legal_kb.db.session import engine

    await engine.dispose()
    logger.info("Training API stopped")


# ---------------------------------------------------------------------------
# Error envelopes
# ---------------------------------------------------------------------------

def _validation_details(exc: RequestValidationError) -> list[ErrorDetail]:
    return [
        ErrorDetail(
            field=" → ".join(str(loc) for loc in err["loc"]),
            message=err["msg"],
            code="VALIDATION_ERROR",
        )
        for err in exc.errors()
    ]


def register_error_handlers(app: FastAPI) -> None:

    @app.exception_handler(RequestValidationError)
    async def invalid_run_request(request: Request, exc: RequestValidationError):
        body = ErrorResponse(
            error_code="VALIDATION_ERROR",
            message="Request validation failed.",
            details=_validation_details(exc),
            request_id=request.headers.get("X-Request-ID"),
        )
        return JSONResponse(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            content=body.model_dump(mode="json"),
        )

    @app.exception_handler(RunNotFoundError)
    async def unknown_run(request: Request, exc: RunNotFoundError):
        return JSONResponse(
            status_code=status.HTTP_404_NOT_FOUND,
            content=TrainingErrors.run_not_found(exc.run_id).model_dump(mode="json"),
        )

    @app.exception_handler(Exception)
    async def unexpected_failure(request: Request, exc: Exception):
        """Logged with the traceback; the client only sees the request id."""
        request_id = request.headers.get("X-Request-ID", str(uuid.uuid4()))
        logger.exception("Training API error | path=%s request_id=%s", request.url.path, request_id)
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content=TrainingErrors.internal_error(request_id).model_dump(mode="json"),
            headers={"X-Request-ID": request_id},
        )


# ---------------------------------------------------------------------------
# Liveness / readiness
# ---------------------------------------------------------------------------

def register_operations_routes(app: FastAPI) -> None:

    @app.get("/health", tags=["Operations"], summary="Process is up")
    async def health() -> dict:
        return {"status": "ok", "service": SERVICE_NAME}

    @app.get("/ready", tags=["Operations"], summary="Run table is reachable")
    async def readiness() -> JSONResponse:
        database = await check_db_health()
        ready = database["status"] == "ok"
        return JSONResponse(
            status_code=status.HTTP_200_OK if ready else status.HTTP_503_SERVICE_UNAVAILABLE,
            content={"status": "ready" if ready else "not_ready", "database": database},
        )


def create_app() -> FastAPI:
    expose_docs = not settings.is_production
    app = FastAPI(
        title="Legal Knowledge-Base Training Pipeline",
        description=(
            "Builds a searchable legal knowledge base from OneDrive documents: "
            "text extraction, embeddings, phrase patterns and document templates."
        ),
        version="1.0.0",
        docs_url="/api/docs" if expose_docs else None,
        redoc_url="/api/redoc" if expose_docs else None,
        openapi_url="/api/openapi.json" if expose_docs else None,
        lifespan=lifespan,
    )

    # run lists can reach 50 rows
    app.add_middleware(GZipMiddleware, minimum_size=1024)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"] if settings.app_env == "development" else [],
        allow_credentials=True,
        allow_methods=["GET", "POST"],
        allow_headers=["Authorization", "Content-Type", "X-Request-ID"],
        expose_headers=["X-Request-ID", "Location"],
    )

    @app.middleware("http")
    async def tag_request(request: Request, call_next):
        request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
        started = time.perf_counter()
        response = await call_next(request)
        response.headers["X-Request-ID"] = request_id
        logger.info(
            "HTTP %s %s | status=%d ms=%.1f request_id=%s",
            request.method, request.url.path, response.status_code,
            (time.perf_counter() - started) * 1000, request_id,
        )
        return response

    register_error_handlers(app)
    app.include_router(training_router, prefix="/api/v1")
    register_operations_routes(app)
    return app


app = create_app()
