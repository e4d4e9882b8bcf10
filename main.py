"""
Contract Analyzer API
Upload contracts, run AI risk analyses, chat about contracts and manage plans
"""

from pathlib import Path
import logging
import traceback

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from redis.asyncio import Redis
from starlette.exceptions import HTTPException as StarletteHTTPException
from starlette.middleware.base import BaseHTTPMiddleware

from auth import auth_router
from routers.analysis_router import analysis_router
from routers.billing_router import billing_router
from routers.contracts_router import contracts_router
from routers.health_router import health_router
from routers.user_router import user_router
from services.analysis_service import ContractAnalyzer
from services.blob_service import BlobStore
from utils.errors import ApiError
from utils.rate_limit import FixedWindowRateLimiter
from utils.responses import error_response
from database import init_db
from config.settings import settings, MEDIA_DIR, is_production

# Logging setup - write ALL events to /logs/app.log
LOGS_DIR = Path("./logs")
LOGS_DIR.mkdir(exist_ok=True)
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
    handlers=[
        logging.FileHandler(LOGS_DIR / "app.log"),
        logging.StreamHandler()
    ]
)
logger = logging.getLogger(__name__)

HTTP_ERROR_CODES = {
    400: "BAD_REQUEST",
    401: "AUTH_REQUIRED",
    403: "FORBIDDEN",
    404: "NOT_FOUND",
    405: "METHOD_NOT_ALLOWED",
    409: "CONFLICT",
    413: "FILE_TOO_LARGE",
    429: "RATE_LIMIT_EXCEEDED",
}

# ============================================================================
# FASTAPI APP SETUP
# ============================================================================

app = FastAPI(title="Contract Analyzer API")


def configure_state(application: FastAPI) -> None:
    """Build the shared clients once per process; routes read them through Depends."""
    redis_client = Redis.from_url(settings.redis_url, decode_responses=True) if settings.redis_url else None
    if redis_client is None:
        logger.info("REDIS_URL not set. Rate limiting will admit all requests.")
    application.state.redis = redis_client
    application.state.rate_limiter = FixedWindowRateLimiter(redis_client)
    application.state.analyzer = ContractAnalyzer()
    application.state.blob_store = BlobStore(MEDIA_DIR)


configure_state(app)


# Uncaught exception middleware - logs all unhandled exceptions and returns 500
class UncaughtExceptionMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request, call_next):
        try:
            return await call_next(request)
        except Exception as e:
            logger.error(f"Uncaught exception: {e}\n{traceback.format_exc()}")
            return error_response("Internal server error", status=500, code="INTERNAL_ERROR")


# Security headers middleware
class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    """Add security headers to all responses: CSP, HSTS, X-Frame-Options, X-Content-Type-Options"""
    async def dispatch(self, request, call_next):
        response = await call_next(request)

        response.headers["Content-Security-Policy"] = (
            "default-src 'self'; "
            "connect-src 'self'; "
            "img-src 'self' data: blob:; "
            "object-src 'none'; "
            "base-uri 'self'; "
            "form-action 'self';"
        )

        # Only in production, where HTTPS is guaranteed
        if is_production():
            response.headers["Strict-Transport-Security"] = "max-age=31536000; includeSubDomains"

        response.headers["X-Frame-Options"] = "DENY"
        response.headers["X-Content-Type-Options"] = "nosniff"

        return response


app.add_middleware(UncaughtExceptionMiddleware)
app.add_middleware(SecurityHeadersMiddleware)

# CORS MUST be near the bottom
app.add_middleware(
    CORSMiddleware,
    allow_origins=[settings.frontend_url],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# ============================================================================
# ERROR ENVELOPE
# ============================================================================

@app.exception_handler(ApiError)
async def api_error_handler(request: Request, exc: ApiError):
    if exc.status_code >= 500:
        logger.error(f"{request.method} {request.url.path} -> {exc.status_code} {exc.code}: {exc.message}")
    else:
        logger.info(f"{request.method} {request.url.path} -> {exc.status_code} {exc.code}")
    return error_response(exc.message, status=exc.status_code, code=exc.code, details=exc.details)


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException):
    code = HTTP_ERROR_CODES.get(exc.status_code, "INTERNAL_ERROR" if exc.status_code >= 500 else "HTTP_ERROR")
    return error_response(str(exc.detail), status=exc.status_code, code=code)


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    details = [
        {"field": ".".join(str(part) for part in err["loc"] if part not in ("body", "query", "path")), "message": err["msg"]}
        for err in exc.errors()
    ]
    return error_response("Invalid request data", status=400, code="VALIDATION_ERROR", details=details)


# ============================================================================
# STARTUP / SHUTDOWN
# ============================================================================

@app.on_event("startup")
async def check_env_keys_on_startup():
    """Check for missing environment variables on startup (non-fatal warning)"""
    key_checks = {
        "AUTH_JWT_SECRET": settings.auth_jwt_secret,
        "OPENAI_API_KEY": settings.openai_api_key,
        "STRIPE_SECRET_KEY": settings.stripe_secret_key,
        "STRIPE_WEBHOOK_SECRET": settings.stripe_webhook_secret,
        "REDIS_URL": settings.redis_url,
    }
    missing = [key for key, value in key_checks.items() if not value]
    if missing:
        logger.warning(f"Startup check: Missing environment variables: {', '.join(missing)}")
    else:
        logger.info("Startup check: All critical environment variables are set")
    if settings.allow_unsigned_webhooks and not is_production():
        logger.warning("ALLOW_UNSIGNED_WEBHOOKS is set: unsigned webhook deliveries will be accepted")


# Initialize database on startup
@app.on_event("startup")
async def initialize_database():
    """Create all tables and the media directory."""
    MEDIA_DIR.mkdir(parents=True, exist_ok=True)
    try:
        await init_db()
        logger.info("Database initialized successfully")
    except Exception as e:
        logger.error(f"Database initialization failed: {e}")
        raise


@app.on_event("shutdown")
async def close_clients():
    if app.state.redis is not None:
        await app.state.redis.aclose()


# ============================================================================
# INCLUDE ROUTERS
# ============================================================================
app.include_router(health_router)
app.include_router(auth_router)
app.include_router(user_router)
app.include_router(contracts_router)
app.include_router(analysis_router)
app.include_router(billing_router)


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
