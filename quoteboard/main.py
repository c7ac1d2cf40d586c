"""Quoteboard: sales quote pipeline service.

FastAPI application providing:
- Kanban board of quotes with per-stage ordering (drag and drop)
- Follow-up reminders for due chase dates (email or log)
- Lightweight CRM: customers, contacts, activities, tasks
- JWT login and PDF attachments
"""

import logging
import os
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.staticfiles import StaticFiles
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware
from sqlalchemy.exc import IntegrityError, InterfaceError, OperationalError, SQLAlchemyError

from quoteboard import __version__
from quoteboard.adapters import create_notifier
from quoteboard.attachments import URL_PREFIX, upload_dir
from quoteboard.auth import ensure_admin_user
from quoteboard.config import ServiceConfig, get_config
from quoteboard.db.connection import close_db, get_session, init_db
from quoteboard.errors import (
    AuthError,
    ConflictError,
    NotFoundError,
    NotificationError,
    QuoteboardError,
    StorageError,
    ValidationError,
)
from quoteboard.pipeline import PipelineStore
from quoteboard.ratelimit import limiter, rate_limit_exceeded
from quoteboard.reminders import ReminderEngine
from quoteboard.routers import api_router

logging.basicConfig(
    level=os.environ.get("LOG_LEVEL", "INFO"),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

UNAVAILABLE_MESSAGE = "Service temporarily unavailable"

ERROR_STATUS = {
    ValidationError: 400,
    AuthError: 401,
    NotFoundError: 404,
    ConflictError: 409,
    NotificationError: 502,
}


def status_for(exc: QuoteboardError) -> int:
    if isinstance(exc, StorageError):
        if exc.retryable:
            return 503
        return 400 if exc.kind == "constraint" else 500
    for error_type, status_code in ERROR_STATUS.items():
        if isinstance(exc, error_type):
            return status_code
    return 500


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Prepare the database, then run the reminder engine for the app's lifetime."""
    config: ServiceConfig = app.state.config
    await init_db()

    store = PipelineStore(timeout_seconds=config.database.operation_timeout_seconds)
    await store.repair_positions()
    async with get_session() as session:
        await ensure_admin_user(session, config.auth)
    upload_dir(config.uploads)

    notifier = create_notifier(config)
    reminders = ReminderEngine(
        store, notifier, interval_seconds=config.reminders.poll_interval_seconds
    )
    app.state.store = store
    app.state.reminders = reminders

    if config.reminders.enabled:
        reminders.start()
    else:
        logger.info("Reminder engine disabled by config")
    logger.info(f"Quoteboard v{__version__} started (notifier: {notifier.channel_name})")

    yield

    await reminders.stop()
    await close_db()
    logger.info("Quoteboard shutdown.")


def register_exception_handlers(app: FastAPI) -> None:
    @app.exception_handler(QuoteboardError)
    async def handle_domain_error(request: Request, exc: QuoteboardError):
        status_code = status_for(exc)
        message = UNAVAILABLE_MESSAGE if status_code == 503 else exc.message
        if status_code >= 500:
            logger.error(f"{request.method} {request.url.path} failed: {exc.message}")
        headers = {"WWW-Authenticate": "Bearer"} if status_code == 401 else None
        return JSONResponse(status_code=status_code, content={"message": message}, headers=headers)

    @app.exception_handler(RequestValidationError)
    async def handle_request_validation(request: Request, exc: RequestValidationError):
        errors = exc.errors()
        if errors:
            first = errors[0]
            field = ".".join(str(part) for part in first.get("loc", ()) if part != "body")
            message = f"{field}: {first.get('msg')}" if field else first.get("msg")
        else:
            message = "Invalid request"
        return JSONResponse(status_code=400, content={"message": message})

    @app.exception_handler(SQLAlchemyError)
    async def handle_database_error(request: Request, exc: SQLAlchemyError):
        logger.error(f"{request.method} {request.url.path} database error: {exc!r}")
        if isinstance(exc, IntegrityError):
            return JSONResponse(status_code=400, content={"message": "Constraint violated"})
        if isinstance(exc, (OperationalError, InterfaceError)):
            return JSONResponse(status_code=503, content={"message": UNAVAILABLE_MESSAGE})
        return JSONResponse(status_code=500, content={"message": "Database error"})


def create_app(config: Optional[ServiceConfig] = None) -> FastAPI:
    config = config or get_config()
    app = FastAPI(
        title="Quoteboard",
        description="Sales quote pipeline with follow-up reminders",
        version=__version__,
        lifespan=lifespan,
    )
    app.state.config = config

    limiter.enabled = config.rate_limit.enabled
    app.state.limiter = limiter
    app.add_middleware(SlowAPIMiddleware)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=config.cors_origins,
        allow_credentials=True,
        allow_methods=["GET", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"],
        allow_headers=["Content-Type", "Authorization"],
    )
    register_exception_handlers(app)
    app.add_exception_handler(RateLimitExceeded, rate_limit_exceeded)
    app.include_router(api_router)
    app.mount(
        URL_PREFIX,
        StaticFiles(directory=config.uploads.directory, check_dir=False),
        name="uploads",
    )
    return app


app = create_app()
