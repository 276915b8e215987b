"""
FastAPI application entry point for the love_health backend.
"""

from __future__ import annotations

import logging
import time
from contextlib import asynccontextmanager
from typing import Optional

from botocore.exceptions import BotoCoreError, ClientError
from fastapi import Depends, FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from starlette.exceptions import HTTPException as StarletteHTTPException

from love_health.cache import CacheClient
from love_health.config import Settings, get_settings
from love_health.db import Database
from love_health.dependencies import (
    build_cache_client,
    build_storage_client,
    get_database,
)
from love_health.errors import ApiError
from love_health.repository import RepositoryError
from love_health.responses import error_response
from love_health.routes import router
from love_health.storage import StorageClient
from love_health.users import UserStore

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"


def configure_logging(settings: Settings) -> None:
    logging.basicConfig(level=settings.log_level.upper(), format=LOG_FORMAT)


def register_exception_handlers(app: FastAPI, settings: Settings) -> None:
    @app.exception_handler(ApiError)
    async def handle_api_error(request: Request, exc: ApiError):
        return error_response(exc.message, exc.status_code, exc.data)

    @app.exception_handler(RequestValidationError)
    async def handle_validation_error(request: Request, exc: RequestValidationError):
        details = [
            {
                "field": ".".join(str(part) for part in error["loc"][1:]),
                "message": error["msg"],
            }
            for error in exc.errors()
        ]
        return error_response("Request validation failed", 400, details)

    @app.exception_handler(RepositoryError)
    async def handle_repository_error(request: Request, exc: RepositoryError):
        return error_response(str(exc), 400)

    @app.exception_handler(StarletteHTTPException)
    async def handle_http_error(request: Request, exc: StarletteHTTPException):
        message = exc.detail if isinstance(exc.detail, str) else "Request failed"
        if exc.status_code == 404 and exc.detail == "Not Found":
            message = "The requested API resource was not found"
        return error_response(message, exc.status_code)

    @app.exception_handler(Exception)
    async def handle_unexpected(request: Request, exc: Exception):
        logger.error(
            "Unhandled exception in %s %s: %s",
            request.method,
            request.url.path,
            exc,
            exc_info=exc,
        )
        message = "Internal server error" if settings.is_production else str(exc)
        return error_response(message, 500)


def create_app(
    settings: Optional[Settings] = None,
    *,
    database: Optional[Database] = None,
    storage: Optional[StorageClient] = None,
    cache: Optional[CacheClient] = None,
) -> FastAPI:
    """
    Build the application. Resources not passed in are created from settings
    at startup and closed at shutdown.
    """
    settings = settings or get_settings()
    configure_logging(settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        db = database or Database.from_settings(settings)
        db.create_all()
        storage_client = storage or build_storage_client(settings)
        try:
            storage_client.ensure_buckets()
        except (BotoCoreError, ClientError) as exc:
            logger.error("Object storage is unavailable: %s", exc)
        cache_client = cache or build_cache_client(settings)

        app.state.settings = settings
        app.state.database = db
        app.state.user_store = UserStore(db)
        app.state.storage = storage_client
        app.state.cache = cache_client
        logger.info("love_health backend started (%s)", settings.environment)
        try:
            yield
        finally:
            if database is None:
                db.dispose()
            if cache is None and hasattr(cache_client, "close"):
                cache_client.close()
            logger.info("love_health backend stopped")

    app = FastAPI(title="Love Health Backend", version="0.1.0", lifespan=lifespan)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
        allow_headers=["Content-Type", "Authorization", "X-Requested-With"],
        max_age=86400,
    )

    @app.middleware("http")
    async def log_requests(request: Request, call_next):
        start = time.perf_counter()
        response = await call_next(request)
        elapsed_ms = (time.perf_counter() - start) * 1000
        if response.status_code >= 500:
            level = logging.ERROR
        elif response.status_code >= 400:
            level = logging.WARNING
        else:
            level = logging.INFO
        logger.log(
            level,
            "%s %s -> %s (%.1fms)",
            request.method,
            request.url.path,
            response.status_code,
            elapsed_ms,
        )
        return response

    register_exception_handlers(app, settings)

    @app.get("/health")
    def health(db: Database = Depends(get_database)):
        return {"status": "ok", "database": db.ping()}

    app.include_router(router, prefix=f"{settings.api_prefix}/users", tags=["users"])
    return app


app = create_app()
