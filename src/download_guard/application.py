import asyncio
import contextlib
import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Any

from dishka import AsyncContainer
from dishka.integrations.fastapi import setup_dishka
from fastapi import APIRouter, FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.openapi.utils import get_openapi
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from download_guard.api import register_routers
from download_guard.api.middleware import ApiKeyMiddleware, RequestTimeoutMiddleware
from download_guard.api.modules.ratelimit.exceptions import (
    MeteringError,
    ValidationError,
)
from download_guard.api.modules.ratelimit.services.ledger.maintenance import (
    run_purge_loop,
)
from download_guard.database import create_tables
from download_guard.ioc import get_async_container
from download_guard.services.logging import setup_logging
from download_guard.settings import Config, get_config

logger = logging.getLogger(__name__)

_OPENAPI_API_KEY_SCHEME = "ApiKeyAuth"
_PUBLIC_PATHS = ("/rate-limit/collector.js", "/health")


def _install_openapi_api_key_security(app: FastAPI) -> None:
    def custom_openapi() -> dict[str, Any]:
        if app.openapi_schema:
            return app.openapi_schema

        schema = get_openapi(
            title=app.title,
            version=app.version,
            routes=app.routes,
        )

        components = schema.setdefault("components", {})
        security_schemes = components.setdefault("securitySchemes", {})
        security_schemes[_OPENAPI_API_KEY_SCHEME] = {
            "type": "apiKey",
            "in": "header",
            "name": "X-API-Key",
        }
        schema["security"] = [{_OPENAPI_API_KEY_SCHEME: []}]

        for path in _PUBLIC_PATHS:
            for operation in schema.get("paths", {}).get(path, {}).values():
                operation["security"] = []

        app.openapi_schema = schema
        return schema

    app.openapi = custom_openapi


async def metering_error_handler(request: Request, exc: MeteringError) -> JSONResponse:
    return JSONResponse(
        {"detail": exc.code, "retryable": exc.retryable},
        status_code=exc.status_code,
    )


async def request_validation_error_handler(
    request: Request,
    exc: RequestValidationError,
) -> JSONResponse:
    return JSONResponse(
        {"detail": ValidationError.code, "retryable": False},
        status_code=ValidationError.status_code,
    )


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    container: AsyncContainer = app.state.dishka_container
    config = await container.get(Config)
    engine = await container.get(AsyncEngine)
    session_factory = await container.get(async_sessionmaker[AsyncSession])

    logger.info("Creating database tables...")
    await create_tables(engine)

    purge_task = asyncio.create_task(run_purge_loop(session_factory, config.metering))

    logger.info("Starting application...")
    yield
    logger.info("Shutting down application...")
    purge_task.cancel()
    with contextlib.suppress(asyncio.CancelledError):
        await purge_task
    await container.close()


def get_production_app(config: Config | None = None) -> FastAPI:
    """Get the FastAPI application instance."""
    config = config or get_config()
    setup_logging(config.env)

    app = FastAPI(
        title=config.api.title,
        version=config.api.version,
        lifespan=lifespan,
    )

    app.add_middleware(
        RequestTimeoutMiddleware,
        timeout_seconds=config.api.request_timeout_seconds,
    )

    if config.api.api_key:
        app.add_middleware(ApiKeyMiddleware, api_key=config.api.api_key)
        _install_openapi_api_key_security(app)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=config.api.allowed_hosts,
        allow_credentials=False,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.add_exception_handler(MeteringError, metering_error_handler)
    app.add_exception_handler(RequestValidationError, request_validation_error_handler)

    api_router = APIRouter()
    register_routers(api_router)
    app.include_router(api_router)

    setup_dishka(get_async_container(config), app)

    return app
