import logging
from contextlib import asynccontextmanager
from typing import AsyncGenerator

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from src.api import pipeline as pipeline_routes
from src.api import storage, websocket
from src.bootstrap import Pipeline, build_pipeline
from src.config import Settings, get_settings
from src.constants.error_codes import get_error_spec
from src.exceptions import PipelineError
from src.utils.log import configure_logging

logger = logging.getLogger(__name__)


def _error_body(code: str, detail: str) -> dict:
    spec = get_error_spec(code)
    body = {"detail": detail, "code": code, "retryable": spec.get("retryable", False)}
    if spec.get("suggested_fix"):
        body["suggested_fix"] = spec["suggested_fix"]
    return body


def create_app(settings: Settings | None = None, pipeline: Pipeline | None = None) -> FastAPI:
    """Build the API application.

    ``pipeline`` replaces the one normally assembled at startup (tests).
    """
    settings = settings or get_settings()
    configure_logging(settings.log_level)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        # Startup
        app.state.pipeline = pipeline or build_pipeline(settings, role="api")
        await app.state.pipeline.start()
        yield
        # Shutdown
        await app.state.pipeline.shutdown()

    app = FastAPI(
        title=settings.app_name,
        version=settings.app_version,
        lifespan=lifespan,
    )

    # CORS
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(PipelineError)
    async def pipeline_exception_handler(request: Request, exc: PipelineError) -> JSONResponse:
        if exc.status_code >= 500:
            logger.error(f"{exc.code} on {request.url.path}: {exc.message}")
        return JSONResponse(status_code=exc.status_code, content=exc.to_dict())

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
        errors = exc.errors()
        if errors:
            first_error = errors[0]
            loc = " -> ".join(str(x) for x in first_error.get("loc", []))
            msg = first_error.get("msg", "Validation error")
            message = f"{loc}: {msg}" if loc else msg
        else:
            message = "Request validation failed"
        return JSONResponse(status_code=422, content=_error_body("VALIDATION_ERROR", message))

    @app.exception_handler(HTTPException)
    async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
        return JSONResponse(status_code=exc.status_code, content={"detail": exc.detail})

    # Global exception handler to ensure errors return proper JSON
    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        logger.exception(f"Unhandled exception: {exc}")
        return JSONResponse(status_code=500, content=_error_body("INTERNAL_ERROR", "Internal server error"))

    # Routers
    app.include_router(pipeline_routes.router, prefix="/api/pipeline", tags=["pipeline"])
    app.include_router(storage.router, prefix="/api/storage", tags=["storage"])
    app.include_router(websocket.router, tags=["websocket"])

    @app.get("/health")
    async def health_check() -> dict:
        stats = await app.state.pipeline.service.queue_stats()
        return {
            "status": "healthy",
            "version": settings.app_version,
            "git_hash": settings.git_hash,
            "queue_backend": settings.queue_backend,
            "queues": {lane: s.model_dump() for lane, s in stats.items()},
        }

    return app


app = create_app()
