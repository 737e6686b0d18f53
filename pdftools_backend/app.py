"""
FastAPI application entry point for the PDF tools backend.

Run with ``python -m pdftools_backend`` or
``uvicorn pdftools_backend.app:create_app --factory``.
"""

from __future__ import annotations

import logging
import time
from contextlib import asynccontextmanager
from datetime import timedelta

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from pdftools_backend.auth import AuthService
from pdftools_backend.config import Settings, get_settings
from pdftools_backend.db import DbClient, open_db_client
from pdftools_backend.errors import ConfigurationError, ServiceError
from pdftools_backend.frontend import mount_frontend
from pdftools_backend.routes import router
from pdftools_backend.usage import UsageService

logger = logging.getLogger(__name__)


def _validation_message(exc: RequestValidationError) -> str:
    for error in exc.errors():
        loc = [str(part) for part in error.get("loc", ())[1:]]
        field = ".".join(loc) or "body"
        if error.get("type") == "missing":
            return f"{field} is required"
        return f"{field}: {error.get('msg', 'invalid value')}"
    return "Invalid request"


def register_exception_handlers(app: FastAPI) -> None:
    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(request: Request, exc: RequestValidationError):
        return JSONResponse(status_code=400, content={"message": _validation_message(exc)})

    @app.exception_handler(ServiceError)
    async def service_error_handler(request: Request, exc: ServiceError):
        if exc.status_code >= 500:
            logger.error("%s %s failed: %r", request.method, request.url.path, exc)
        return JSONResponse(
            status_code=exc.status_code, content={"message": exc.public_message}
        )

    @app.exception_handler(StarletteHTTPException)
    async def http_error_handler(request: Request, exc: StarletteHTTPException):
        return JSONResponse(
            status_code=exc.status_code,
            content={"message": str(exc.detail)},
            headers=getattr(exc, "headers", None),
        )

    @app.exception_handler(Exception)
    async def unhandled_error_handler(request: Request, exc: Exception):
        logger.exception("Unhandled error on %s %s", request.method, request.url.path)
        return JSONResponse(status_code=500, content={"message": "Server error"})


async def log_requests(request: Request, call_next):
    started = time.perf_counter()
    response = await call_next(request)
    logger.info(
        "%s %s %d %.1fms",
        request.method,
        request.url.path,
        response.status_code,
        (time.perf_counter() - started) * 1000,
    )
    return response


def create_app(
    settings: Settings | None = None, db: DbClient | None = None
) -> FastAPI:
    settings = settings or get_settings()
    if not settings.jwt_secret:
        raise ConfigurationError("JWT_SECRET is not set; refusing to start")

    db = db or open_db_client(settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        yield
        app.state.db.close()

    app = FastAPI(title="PDF Tools Backend", version="0.1.0", lifespan=lifespan)
    app.state.settings = settings
    app.state.db = db
    app.state.auth_service = AuthService(
        db,
        settings.jwt_secret,
        token_ttl=timedelta(minutes=settings.jwt_expire_minutes),
        bcrypt_rounds=settings.bcrypt_rounds,
    )
    app.state.usage_service = UsageService(db)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.middleware("http")(log_requests)
    register_exception_handlers(app)

    app.include_router(router, prefix=settings.api_prefix)
    if settings.serve_static:
        mount_frontend(app, settings.static_dir, api_prefix=settings.api_prefix)
    return app
