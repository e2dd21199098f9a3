"""
Stage Gate

FastAPI application entry point.
"""

from contextlib import asynccontextmanager
from typing import AsyncGenerator

from fastapi import FastAPI, HTTPException, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from stagegate.api.middleware.request_id import RequestIdMiddleware
from stagegate.api.v1 import router as api_v1_router
from stagegate.config import get_settings
from stagegate.context import StageContext
from stagegate.database import async_session_maker, close_db, init_db
from stagegate.kernel.errors import (
    AdmissionDenied,
    ConfigError,
    DependencyError,
    MissingDependenciesError,
    StageGateError,
    UnknownStageError,
)
from stagegate.kernel.stages.stage_id import InvalidStageId
from stagegate.logging_config import configure_logging, get_logger
from stagegate.schemas.common import HealthResponse

settings = get_settings()
logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator:
    """
    Application lifespan handler.

    Builds the stage context, loads definitions and runs the processing cycle.
    """
    configure_logging(
        log_level=settings.log_level,
        environment=settings.environment,
        debug=settings.debug,
    )

    logger.info("Starting %s v%s", settings.project_name, settings.version)
    await init_db()
    logger.info("Database initialized")

    context = StageContext(settings, session_maker=async_session_maker)
    context.load_from_settings()
    await context.start()
    app.state.context = context

    yield

    logger.info("Shutting down...")
    await context.stop()
    app.state.context = None
    await close_db()
    logger.info("Database connections closed")


app = FastAPI(
    title=settings.project_name,
    description="""
    Stage Gate

    Grants named capability stages to principals and gates access to a
    catalog of typed resources.

    ## Features

    - **Stages**: dependency graph with cascading or strict grants
    - **Access**: layered lock resolution with whitelist overrides
    - **Groups**: shared stage sets across group members
    - **Replication**: snapshot + coalesced deltas over WebSocket
    - **Triggers**: automatic grants from external events
    """,
    version=settings.version,
    lifespan=lifespan,
    docs_url="/docs" if settings.debug else None,
    redoc_url="/redoc" if settings.debug else None,
)

app.add_middleware(RequestIdMiddleware)


def _error_response(request: Request, status_code: int, content: dict) -> JSONResponse:
    headers = {}
    req_id = getattr(request.state, "request_id", None)
    if req_id:
        headers["X-Request-ID"] = req_id
        if status_code >= 500:
            content["request_id"] = req_id
    return JSONResponse(status_code=status_code, content=content, headers=headers)


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException):
    return _error_response(request, exc.status_code, {"detail": exc.detail})


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    """Handle request validation errors."""
    errors = []
    for error in exc.errors():
        field = ".".join(str(loc) for loc in error["loc"])
        errors.append({
            "field": field,
            "message": error["msg"],
            "type": error["type"],
        })
    return _error_response(
        request,
        status.HTTP_422_UNPROCESSABLE_ENTITY,
        {"detail": "Validation error", "errors": errors},
    )


@app.exception_handler(InvalidStageId)
async def invalid_stage_id_handler(request: Request, exc: InvalidStageId):
    return _error_response(request, status.HTTP_422_UNPROCESSABLE_ENTITY, {"detail": str(exc)})


@app.exception_handler(StageGateError)
async def stage_gate_exception_handler(request: Request, exc: StageGateError):
    """Grant mutations fail closed; map the reason to a status code."""
    content = {"detail": str(exc), "code": type(exc).__name__}
    if isinstance(exc, UnknownStageError):
        status_code = status.HTTP_404_NOT_FOUND
    elif isinstance(exc, MissingDependenciesError):
        status_code = status.HTTP_409_CONFLICT
        content["missing"] = [str(m) for m in exc.missing]
    elif isinstance(exc, (DependencyError, AdmissionDenied)):
        status_code = status.HTTP_409_CONFLICT
    elif isinstance(exc, ConfigError):
        status_code = status.HTTP_400_BAD_REQUEST
    else:
        status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
        logger.error("Stage engine error: %s", exc)
    return _error_response(request, status_code, content)


@app.exception_handler(Exception)
async def general_exception_handler(request: Request, exc: Exception):
    logger.exception("Unhandled exception: %s", exc)
    req_id = getattr(request.state, "request_id", None)
    if settings.debug:
        content = {"detail": str(exc), "type": type(exc).__name__, "request_id": req_id}
    else:
        content = {"detail": "Internal server error", "request_id": req_id}
    return _error_response(request, status.HTTP_500_INTERNAL_SERVER_ERROR, content)


@app.get("/health", response_model=HealthResponse, tags=["Health"])
async def health_check(request: Request):
    """Check application health."""
    context = getattr(request.app.state, "context", None)
    if context is None:
        return HealthResponse(status="starting", version=settings.version)
    return HealthResponse(
        version=settings.version,
        stages=len(context.graph),
        epoch=context.registry.epoch,
        load_errors=[str(e) for e in context.load_errors],
    )


app.include_router(api_v1_router, prefix=settings.api_v1_prefix)


@app.get("/", tags=["Root"])
async def root():
    """Root endpoint with API information."""
    return {
        "name": settings.project_name,
        "version": settings.version,
        "docs": "/docs" if settings.debug else "disabled",
        "api": {
            "v1": settings.api_v1_prefix,
        },
    }


# Main entry point for development
if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "stagegate.main:app",
        host="0.0.0.0",
        port=8000,
        reload=settings.debug,
    )
