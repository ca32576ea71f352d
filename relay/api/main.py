"""
FastAPI app for the E2EE Signature Relay

The relay brokers encrypted signature submissions between a signer's browser
and the owner that requested them. It never holds a private key.
"""
import logging
import re
import uuid
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Optional

from fastapi import FastAPI, Request as FastAPIRequest
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request

from relay import __version__
from relay.api.auditing import AuditingMiddleware, audit_log_action, configure_audit_logging
from relay.api.rate_limiting import APIRateLimiter, GeneralRateLimitMiddleware, start_cleanup_thread
from relay.api.routes import signatures
from relay.core.config import Settings, get_settings
from relay.core.sessions import SignatureSessionStore

logger = logging.getLogger(__name__)
error_logger = logging.getLogger("api.errors")


# Security Headers Middleware
class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    """Add security headers to all responses"""
    async def dispatch(self, request: Request, call_next):
        response = await call_next(request)
        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["X-Frame-Options"] = "DENY"
        response.headers["Strict-Transport-Security"] = "max-age=31536000; includeSubDomains"
        response.headers["Referrer-Policy"] = "no-referrer"
        response.headers["Cache-Control"] = "no-store"
        return response


def _sanitize_error_message(message: str) -> str:
    """
    Scrub key material and envelopes from exception messages before logging.

    Covers:
    - JWK private scalars ("d") and coordinates
    - ciphertext / iv values
    - long base64 runs that may be keys or ciphertext
    """
    sanitized = message

    sanitized = re.sub(
        r'(["\']?\b(?:d|x|y|ciphertext|iv)\b["\']?\s*[:=]\s*)["\']?[A-Za-z0-9+/_=-]+["\']?',
        r'\1[REDACTED]',
        sanitized,
    )

    sanitized = re.sub(
        r'(private_key|secret|token|key)["\']?\s*[=:]\s*["\']?[^"\'\s,;}]+',
        r'\1=[REDACTED]',
        sanitized,
        flags=re.IGNORECASE,
    )

    # Bare base64/base64url runs (43+ chars covers a P-256 coordinate)
    sanitized = re.sub(r'[A-Za-z0-9+/_-]{43,}={0,2}', '[REDACTED_B64]', sanitized)

    return sanitized


def _log_store_event(event: str, session_id: str) -> None:
    audit_log_action(f"signature_session_{event}", session_id=session_id)


def create_app(
    settings: Optional[Settings] = None,
    store: Optional[SignatureSessionStore] = None,
) -> FastAPI:
    """
    Build the relay application.

    Args:
        settings: Settings to use (defaults to the environment-loaded singleton)
        store: Session store to serve (defaults to a new in-memory store)

    Returns:
        Configured FastAPI app; the store is available as app.state.session_store
    """
    settings = settings or get_settings()
    if store is None:
        store = SignatureSessionStore(
            default_ttl_minutes=settings.session_ttl_minutes,
            retention_seconds=settings.retention_seconds,
            sweep_interval_seconds=settings.sweep_interval_seconds,
            on_event=_log_store_event,
        )

    rate_limiter = None
    if settings.rate_limit_enabled:
        rate_limiter = APIRateLimiter(
            ip_rate_limit=settings.rate_limit_per_minute,
            create_rate_limit=settings.session_create_rate_limit_per_minute,
        )

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        try:
            configure_audit_logging(settings.audit_log_dir)
        except OSError as e:
            logger.error(f"❌ Failed to configure audit log file: {e}")

        store.start()
        logger.info("✅ Signature session store started")

        if rate_limiter is not None:
            start_cleanup_thread(rate_limiter)
            logger.info("✅ Rate limiter cleanup started")

        yield

        store.stop()
        logger.info("✅ Signature session store stopped")

    app = FastAPI(
        title="Signature Relay API",
        description="End-to-end encrypted signature sessions",
        version=__version__,
        docs_url="/docs",
        redoc_url="/redoc",
        lifespan=lifespan,
    )
    app.state.settings = settings
    app.state.session_store = store
    app.state.rate_limiter = rate_limiter

    # Global exception handler for safe error messages
    @app.exception_handler(Exception)
    async def global_exception_handler(request: FastAPIRequest, exc: Exception):
        """
        Log detailed errors internally, return a generic message to clients.
        """
        error_id = str(uuid.uuid4())
        sanitized_message = _sanitize_error_message(str(exc))

        error_logger.error(
            f"Error {error_id}: {type(exc).__name__}: {sanitized_message}",
            extra={
                "error_id": error_id,
                "path": request.url.path,
                "method": request.method,
                "client": request.client.host if request.client else None
            }
        )

        return JSONResponse(
            status_code=500,
            content={
                "detail": "An internal error occurred",
                "error_id": error_id,
                "message": "The error has been logged. If you need assistance, reference this error ID."
            }
        )

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: FastAPIRequest, exc: RequestValidationError):
        # Field locations only; never echo the submitted values back
        problems = [
            {"loc": list(err.get("loc", ())), "msg": err.get("msg", "")}
            for err in exc.errors()
        ]
        return JSONResponse(
            status_code=400,
            content={"detail": "Invalid request", "errors": problems},
        )

    # Last added runs outermost: CORS, security headers, auditing, rate limiting

    if rate_limiter is not None:
        app.add_middleware(
            GeneralRateLimitMiddleware,
            limiter=rate_limiter,
            sessions_path=f"{settings.api_prefix}/sessions",
        )

    # General auditing (sees rate-limited responses too)
    app.add_middleware(AuditingMiddleware)

    app.add_middleware(SecurityHeadersMiddleware)

    # The signing page may be served from another origin
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.allowed_origins_list,
        allow_credentials=False,
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["Content-Type"],
        max_age=3600,
    )

    app.include_router(signatures.router, prefix=settings.api_prefix)

    @app.get("/health")
    async def health_check():
        """Health check endpoint"""
        return {
            "status": "ok",
            "version": __version__,
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "sessions": len(store),
        }

    return app


app = create_app()


def run() -> None:
    """Console entrypoint: configure logging and serve the module-level app."""
    import uvicorn

    settings = get_settings()
    logging.basicConfig(level=settings.log_level.upper(), format=settings.log_format)
    port = settings.port  # PORT env var
    uvicorn.run(app, host="0.0.0.0", port=port)


if __name__ == "__main__":
    run()
