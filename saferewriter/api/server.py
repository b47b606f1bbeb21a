import time
import traceback
import uuid
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from saferewriter.api.admin import router as admin_router
from saferewriter.api.responses import error_body, utc_timestamp
from saferewriter.api.routes import router as api_router
from saferewriter.api.security import RateLimiter
from saferewriter.config import SUPPORTED_LANGUAGES, SUPPORTED_REGIONS, Settings, settings as default_settings
from saferewriter.database import init_db, make_engine, make_session_factory, ping_db
from saferewriter.errors import APIError, InternalError
from saferewriter.models.scam_pattern import PatternCategory
from saferewriter.services.cache_service import CacheStore
from saferewriter.services.gemini_service import GeminiService
from saferewriter.services.rewrite_service import RewriteService
from saferewriter.utils.logging_config import StructuredLogger, init_logging, metrics, request_id_var

logger = StructuredLogger(__name__)

# Framework HTTP errors folded into the closed error code set
HTTP_ERROR_CODES = {
    401: "AUTHENTICATION_ERROR",
    403: "AUTHORIZATION_ERROR",
    409: "CONFLICT",
    429: "RATE_LIMIT_EXCEEDED",
}


def _error_response(status_code: int, error: dict, headers: Optional[dict] = None) -> JSONResponse:
    return JSONResponse(status_code=status_code, content=jsonable_encoder(error_body(error)), headers=headers)


def create_app(
    settings: Optional[Settings] = None,
    gemini: Optional[GeminiService] = None,
    cache: Optional[CacheStore] = None,
    engine=None,
) -> FastAPI:
    """
    Build the application and its services.

    Anything not passed in is built from settings; tests inject fakes here.
    """
    settings = settings or default_settings
    engine = engine if engine is not None else make_engine(settings.database_url)
    gemini = gemini or GeminiService(settings)
    cache = cache if cache is not None else CacheStore.from_url(
        settings.redis_url,
        default_ttl=settings.cache_ttl,
        socket_timeout=settings.redis_socket_timeout,
    )

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        init_db(engine)
        if cache.is_enabled and not await cache.ping():
            logger.warning("Redis unreachable at startup, continuing without cache")
            cache.disable()
        logger.info("SafeRewriter API started", environment=settings.environment, cache_enabled=cache.is_enabled)
        yield
        await cache.close()
        await gemini.aclose()
        logger.info("SafeRewriter API stopped")

    app = FastAPI(
        title="SafeRewriter API",
        version=settings.version,
        description="AI-powered scam message detection and rewriting service",
        docs_url="/docs" if settings.debug else None,  # Disable docs in production
        redoc_url="/redoc" if settings.debug else None,
        lifespan=lifespan,
    )

    app.state.settings = settings
    app.state.engine = engine
    app.state.session_factory = make_session_factory(engine)
    app.state.cache = cache
    app.state.gemini = gemini
    app.state.rewrite_service = RewriteService(gemini, cache, settings)
    app.state.rate_limiter = RateLimiter()
    app.state.started_at = time.time()

    # CORS middleware
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins_list,
        allow_credentials=settings.cors_origins_list != ["*"],
        allow_methods=["GET", "POST"],
        allow_headers=["*"],
    )

    # Security headers middleware
    @app.middleware("http")
    async def add_security_headers(request: Request, call_next):
        response = await call_next(request)
        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["X-Frame-Options"] = "DENY"
        response.headers["X-XSS-Protection"] = "1; mode=block"
        if settings.is_production:
            response.headers["Strict-Transport-Security"] = "max-age=31536000; includeSubDomains"
        return response

    # Rate limit headers middleware
    @app.middleware("http")
    async def add_rate_limit_headers(request: Request, call_next):
        response = await call_next(request)
        if hasattr(request.state, "rate_limit_remaining"):
            response.headers["X-RateLimit-Limit"] = str(request.state.rate_limit_limit)
            response.headers["X-RateLimit-Remaining"] = str(request.state.rate_limit_remaining)
        return response

    # Request id middleware (outermost, so every log line carries the id)
    @app.middleware("http")
    async def add_request_id(request: Request, call_next):
        request_id = request.headers.get("X-Request-ID") or uuid.uuid4().hex
        token = request_id_var.set(request_id)
        start = time.time()
        try:
            response = await call_next(request)
        finally:
            request_id_var.reset(token)
        duration = time.time() - start

        metrics.increment("api.requests.total")
        metrics.timing("api.latency", duration)
        if response.status_code >= 400:
            metrics.increment(f"api.responses.{response.status_code}")
        logger.info(
            "Request completed",
            request_id=request_id,
            method=request.method,
            path=request.url.path,
            status_code=response.status_code,
            duration_ms=round(duration * 1000, 2),
        )
        response.headers["X-Request-ID"] = request_id
        return response

    # ============== ERROR HANDLERS ==============

    @app.exception_handler(APIError)
    async def handle_api_error(request: Request, exc: APIError):
        log = logger.error if exc.status_code >= 500 else logger.warning
        log("API error", code=exc.code, status_code=exc.status_code, error=exc.message, path=request.url.path)

        headers = None
        if hasattr(exc, "retry_after"):
            headers = {"Retry-After": str(exc.retry_after)}
        return _error_response(exc.status_code, exc.to_dict(), headers)

    @app.exception_handler(RequestValidationError)
    async def handle_request_validation_error(request: Request, exc: RequestValidationError):
        first = exc.errors()[0] if exc.errors() else {}
        loc = [str(part) for part in first.get("loc", ())]
        if loc and loc[0] in ("body", "query", "path", "header"):
            loc = loc[1:]
        field = ".".join(loc) or None

        error = {"code": "VALIDATION_ERROR", "message": first.get("msg", "Invalid request")}
        if field:
            error["field"] = field
            error["value"] = first.get("input")
        return _error_response(400, error)

    @app.exception_handler(StarletteHTTPException)
    async def handle_http_exception(request: Request, exc: StarletteHTTPException):
        status_code = exc.status_code
        # no route accepts this method, so report it like an unknown route
        if status_code in (404, 405):
            return _error_response(404, {
                "code": "ROUTE_NOT_FOUND",
                "message": f"Route {request.method} {request.url.path} not found",
            })

        default = "VALIDATION_ERROR" if status_code < 500 else "INTERNAL_ERROR"
        code = HTTP_ERROR_CODES.get(status_code, default)
        return _error_response(status_code, {"code": code, "message": str(exc.detail)}, getattr(exc, "headers", None))

    @app.exception_handler(Exception)
    async def handle_unexpected_error(request: Request, exc: Exception):
        logger.error("Unhandled error", path=request.url.path, error=str(exc), exc_info=True)
        error = InternalError(str(exc) if settings.is_development else "Internal server error").to_dict()
        if settings.is_development:
            error["details"] = {
                "type": type(exc).__name__,
                "stack": traceback.format_exception(type(exc), exc, exc.__traceback__),
            }
        return _error_response(500, error)

    # ============== ROUTES ==============

    app.include_router(api_router)
    app.include_router(admin_router)

    async def _health():
        db_ok = ping_db(app.state.session_factory)
        if not cache.is_enabled:
            redis_status = "disabled"
        else:
            redis_status = "connected" if await cache.ping() else "disconnected"
        gemini_ok = await gemini.check_health()

        body = {
            "status": "healthy" if db_ok else "unhealthy",
            "timestamp": utc_timestamp(),
            "uptime": round(time.time() - app.state.started_at, 3),
            "version": settings.version,
            "environment": settings.environment,
            "services": {
                "database": "connected" if db_ok else "disconnected",
                "redis": redis_status,
                "gemini": "available" if gemini_ok else "unavailable",
            },
        }
        return JSONResponse(status_code=200 if db_ok else 503, content=body)

    @app.get("/health")
    async def health():
        """Health check endpoint - no auth required."""
        return await _health()

    @app.get("/api/health")
    async def api_health():
        return await _health()

    @app.get("/api/status")
    def status_info():
        """
        API status and configuration info.
        Useful for debugging and monitoring.
        """
        return {
            "status": "ok",
            "version": settings.version,
            "environment": settings.environment,
            "auth_enabled": bool(settings.api_token),
            "cache_enabled": cache.is_enabled,
            "rate_limits": {
                "general": {"requests": settings.rate_limit_requests, "window_seconds": settings.rate_limit_window},
                "rewrite": {"requests": settings.rewrite_rate_limit, "window_seconds": settings.rewrite_rate_window},
                "user": {"requests": settings.user_rate_limit, "window_seconds": settings.user_rate_window},
                "analytics": {"requests": settings.analytics_rate_limit, "window_seconds": settings.analytics_rate_window},
                "pattern": {"requests": settings.pattern_rate_limit, "window_seconds": settings.pattern_rate_window},
            },
            "max_message_length": settings.max_message_length,
            "supported_regions": SUPPORTED_REGIONS,
            "supported_languages": SUPPORTED_LANGUAGES,
            "pattern_categories": [c.value for c in PatternCategory],
            "gemini": gemini.get_stats(),
        }

    return app


init_logging(default_settings)

app = create_app()
