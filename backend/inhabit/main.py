import logging
import sys
import time
import uuid
from contextlib import asynccontextmanager

from fastapi import APIRouter, FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .config import settings
from .db import db
from .errors import setup_error_handlers
from .habits import router as habits_router
from .observability import (
    REQUEST_ID_HEADER,
    bind_request_context,
    duration_ms,
    is_valid_request_id,
    log_ctx,
    log_ctx_json,
    unbind_request_context,
)

SERVICE_NAME = "inhabit-api"
SERVICE_VERSION = "1.0.0"

logging.basicConfig(
    level=settings.LOG_LEVEL.upper(),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    stream=sys.stdout,
)
logger = logging.getLogger("inhabit-api")


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("Starting inhabit API (env=%s)...", settings.env_mode())
    logger.info(
        "Startup config: streak_timezone=%s recent_days_default=%s recent_days_max=%s",
        settings.get_streak_timezone().key,
        settings.get_recent_days_default(),
        settings.get_recent_days_max(),
    )
    await db.create_pool()
    logger.info("Schema capabilities: %s", db.capabilities)
    yield
    logger.info("Shutting down inhabit API...")
    await db.close_pool()


app = FastAPI(
    title="inhabit API",
    description="Daily habit tracking with streak statistics",
    version=SERVICE_VERSION,
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.get_cors_allow_origins(),
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
    allow_headers=["Authorization", "Content-Type", REQUEST_ID_HEADER],
    expose_headers=[REQUEST_ID_HEADER],
)


@app.middleware("http")
async def request_observability_middleware(request: Request, call_next):
    started_at = time.monotonic()

    incoming_request_id = request.headers.get(REQUEST_ID_HEADER)
    if incoming_request_id is not None and not is_valid_request_id(incoming_request_id):
        request_id = str(uuid.uuid4())
        request.state.request_id = request_id
        logger.warning(
            "REQUEST_REJECTED context=%s",
            log_ctx_json(
                log_ctx(
                    request,
                    extra={
                        "status_code": 400,
                        "duration_ms": duration_ms(started_at),
                        "reason": "invalid_x_request_id",
                    },
                )
            ),
        )
        response = JSONResponse(
            status_code=400,
            content={
                "error": {
                    "code": "VALIDATION_FAILED",
                    "message": "Validation failed",
                    "details": {
                        "fieldErrors": [
                            {
                                "field": "header.X-Request-Id",
                                "issue": "must be non-empty and <= 128 chars",
                            }
                        ]
                    },
                }
            },
        )
        response.headers[REQUEST_ID_HEADER] = request_id
        return response

    request_id = incoming_request_id.strip() if incoming_request_id else str(uuid.uuid4())
    request.state.request_id = request_id
    context_tokens = bind_request_context(request_id=request_id, path=request.url.path)
    try:
        response = await call_next(request)
        response.headers[REQUEST_ID_HEADER] = request_id
        logger.info(
            "REQUEST_DONE context=%s",
            log_ctx_json(
                log_ctx(
                    request,
                    extra={
                        "status_code": response.status_code,
                        "duration_ms": duration_ms(started_at),
                    },
                )
            ),
        )
        return response
    finally:
        unbind_request_context(context_tokens)


setup_error_handlers(app)

v1_router = APIRouter(prefix="/v1")


@app.get("/health", tags=["Health"])
@v1_router.get("/health", tags=["Health"])
async def health_check():
    return {
        "status": "ok",
        "service": SERVICE_NAME,
        "version": SERVICE_VERSION,
        "db": await db.db_check(),
        "schemaVersion": db.capabilities.schema_version,
    }


app.include_router(v1_router)
app.include_router(habits_router)


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("inhabit.main:app", host=settings.APP_HOST, port=settings.APP_PORT, log_level=settings.LOG_LEVEL.lower())
