import logging

import redis.asyncio as aioredis
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from coldstore.api.middleware.logging import RequestLoggingMiddleware
from coldstore.api.middleware.tenant_context import TenantContextMiddleware
from coldstore.api.routes.approvals import router as approvals_router
from coldstore.api.routes.operations import router as operations_router
from coldstore.api.routes.retrievals import router as retrievals_router
from coldstore.api.routes.rules import router as rules_router
from coldstore.api.routes.savings import router as savings_router
from coldstore.config import settings
from coldstore.core.errors import NotFoundError, ValidationError

logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(message)s")
logger = logging.getLogger(__name__)

app = FastAPI(
    title="ColdStore API",
    description="Archive lifecycle engine for document libraries",
    version="1.0.0",
    docs_url="/v1/docs",
    openapi_url="/v1/openapi.json",
)

app.add_middleware(TenantContextMiddleware)
app.add_middleware(RequestLoggingMiddleware)

app.include_router(rules_router)
app.include_router(operations_router)
app.include_router(approvals_router)
app.include_router(retrievals_router)
app.include_router(savings_router)

# Redis client stored on app state so it can be accessed by routes and tests
app.state.redis = None


@app.exception_handler(ValidationError)
async def validation_error_handler(request: Request, exc: ValidationError) -> JSONResponse:
    return JSONResponse({"detail": str(exc)}, status_code=422)


@app.exception_handler(NotFoundError)
async def not_found_handler(request: Request, exc: NotFoundError) -> JSONResponse:
    return JSONResponse({"detail": str(exc)}, status_code=404)


@app.get("/healthz", tags=["health"])
async def health_check() -> JSONResponse:
    redis_ok = None
    if app.state.redis is not None:
        try:
            redis_ok = bool(await app.state.redis.ping())
        except aioredis.RedisError as exc:
            logger.warning("Health check: Redis ping failed: %s", exc)
            redis_ok = False
    status = "ok" if redis_ok is not False else "degraded"
    return JSONResponse(
        {"status": status, "redis": redis_ok},
        status_code=200 if status == "ok" else 503,
    )


@app.on_event("startup")
async def startup_event() -> None:
    logger.info("ColdStore API starting up")
    app.state.redis = aioredis.from_url(
        settings.REDIS_URL,
        encoding="utf-8",
        decode_responses=True,
    )
    logger.info("Redis client initialised")


@app.on_event("shutdown")
async def shutdown_event() -> None:
    if app.state.redis is not None:
        await app.state.redis.aclose()
        logger.info("Redis client closed")
    logger.info("ColdStore API shutting down")
