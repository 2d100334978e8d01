import time
import uuid
from contextlib import asynccontextmanager
from typing import Optional

import httpx
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from marketplace.api import admin, routes
from marketplace.auth.api_key import ApiKeyAuthenticator, ApiKeyService
from marketplace.auth.quota import QuotaTracker, rate_limit_headers
from marketplace.auth.users import UserDirectory
from marketplace.config import settings
from marketplace.cost.database import Database
from marketplace.cost.ledger import CreditLedger
from marketplace.cost.recorder import UsageRecorder
from marketplace.errors import MarketplaceError
from marketplace.proxy.service import ProxyService
from marketplace.registry.shadow_models import ModelRegistry
from marketplace.utils.encryption import EncryptionService
from marketplace.utils.logging import get_logger, setup_logging

# Setup logging
setup_logging()
logger = get_logger(__name__)


def _error_headers(request: Request) -> dict:
    """Rate-limit headers for error responses once the caller's key is known."""
    context = getattr(request.state, "api_key", None)
    if context is None:
        return {}
    try:
        return rate_limit_headers(request.app.state.quota.check(context.api_key_id))
    except Exception as e:
        logger.warning(f"Failed to read quota for error response: {e}")
        return {}


def create_app(
    database: Optional[Database] = None,
    encryption: Optional[EncryptionService] = None,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> FastAPI:
    """
    Build the application and wire its services.

    Args:
        database: Storage; defaults to settings.database_url
        encryption: Provider token cipher; defaults to settings.encryption_key
        transport: httpx transport for upstream calls (tests pass a mock)
    """
    database = database or Database()
    encryption = encryption or EncryptionService(settings.encryption_key)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if settings.auto_create_tables:
            try:
                database.init_db()
                logger.info("Database initialized")
            except Exception as e:
                logger.error(f"Failed to initialize database: {e}", exc_info=True)
        yield
        database.close()
        logger.info("Database connections closed")

    app = FastAPI(
        title="API Marketplace Gateway",
        description="Metered proxy for Anthropic and OpenAI compatible models with credit billing",
        version="1.0.0",
        lifespan=lifespan,
    )

    # Services shared by every request
    quota = QuotaTracker(database)
    ledger = CreditLedger(database)
    recorder = UsageRecorder(database)
    registry = ModelRegistry(database, encryption)
    app.state.database = database
    app.state.authenticator = ApiKeyAuthenticator(database)
    app.state.api_keys = ApiKeyService(database)
    app.state.users = UserDirectory(database)
    app.state.registry = registry
    app.state.quota = quota
    app.state.ledger = ledger
    app.state.recorder = recorder
    app.state.proxy = ProxyService(registry, ledger, quota, recorder, transport=transport)

    # CORS middleware
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.middleware("http")
    async def log_requests(request: Request, call_next):
        """Log all HTTP requests."""
        request_id = f"req-{uuid.uuid4().hex[:12]}"
        request.state.request_id = request_id
        start_time = time.time()
        logger.info(
            f"Request: {request.method} {request.url.path}",
            extra={
                "request_id": request_id,
                "method": request.method,
                "path": request.url.path,
            },
        )
        response = await call_next(request)
        latency_ms = int((time.time() - start_time) * 1000)
        response.headers["X-Request-ID"] = request_id
        logger.info(
            f"Response: {request.method} {request.url.path} - {response.status_code}",
            extra={
                "request_id": request_id,
                "method": request.method,
                "path": request.url.path,
                "status_code": response.status_code,
                "latency_ms": latency_ms,
            },
        )
        return response

    @app.exception_handler(MarketplaceError)
    async def marketplace_error_handler(request: Request, exc: MarketplaceError):
        return JSONResponse(
            status_code=exc.status_code,
            content={"error": exc.message},
            headers=_error_headers(request),
        )

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(request: Request, exc: RequestValidationError):
        errors = exc.errors()
        message = errors[0].get("msg", "Invalid request") if errors else "Invalid request"
        return JSONResponse(status_code=400, content={"error": message})

    @app.exception_handler(StarletteHTTPException)
    async def http_error_handler(request: Request, exc: StarletteHTTPException):
        return JSONResponse(
            status_code=exc.status_code,
            content={"error": exc.detail},
            headers=getattr(exc, "headers", None),
        )

    @app.exception_handler(Exception)
    async def unhandled_error_handler(request: Request, exc: Exception):
        logger.error(
            f"Unhandled error: {exc}",
            exc_info=exc,
            extra={"request_id": getattr(request.state, "request_id", None)},
        )
        return JSONResponse(status_code=500, content={"error": "Internal server error"})

    # Register routes
    app.include_router(routes.router)
    app.include_router(admin.router)

    @app.get("/")
    async def root():
        """Root endpoint."""
        return {
            "service": "API Marketplace Gateway",
            "version": "1.0.0",
            "docs": "/docs",
            "health": "/health",
            "metrics": "/metrics",
            "models": "/v1/models",
        }

    return app


app = create_app()
