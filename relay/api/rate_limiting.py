"""
Rate Limiting Middleware

Per-IP token buckets for the relay. Session creation gets a stricter
bucket; long polls are exempt because owners hold them open by design.
"""
import logging
import threading
import time
from typing import Dict, Tuple
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import JSONResponse

from relay.api.auditing import client_ip

logger = logging.getLogger(__name__)

# Buckets idle for this long are dropped by cleanup
BUCKET_IDLE_SECONDS = 600

RETRY_AFTER_SECONDS = 60

Bucket = Tuple[float, float]  # (tokens, last_refill)


class APIRateLimiter:
    """
    Token bucket rate limiter for relay endpoints.

    Every request draws from the caller's general bucket; session creation
    additionally draws from a smaller per-IP bucket.
    """

    def __init__(self, ip_rate_limit: int = 120, create_rate_limit: int = 20, burst_size: int = 10):
        self.ip_buckets: Dict[str, Bucket] = {}
        self.create_buckets: Dict[str, Bucket] = {}
        self.lock = threading.Lock()

        # Tokens per minute
        self.IP_RATE_LIMIT = ip_rate_limit
        self.CREATE_RATE_LIMIT = create_rate_limit
        self.BURST_SIZE = burst_size

        logger.info(
            f"Rate limiter initialized: {self.IP_RATE_LIMIT} req/min per IP, "
            f"{self.CREATE_RATE_LIMIT} session creations/min per IP"
        )

    def _draw(self, buckets: Dict[str, Bucket], ip: str, per_minute: int) -> bool:
        """Refill the caller's bucket for the time elapsed, then take one token if available."""
        now = time.time()
        tokens, last_refill = buckets.get(ip, (float(per_minute), now))
        capacity = per_minute + self.BURST_SIZE
        tokens = min(capacity, tokens + (now - last_refill) * per_minute / 60.0)

        allowed = tokens >= 1
        buckets[ip] = (tokens - 1 if allowed else tokens, now)
        return allowed

    def check_rate_limit(self, ip: str, is_session_create: bool = False) -> Tuple[bool, str]:
        """
        Decide whether a request from ip may proceed.

        Args:
            ip: Client IP address
            is_session_create: Request creates a signature session (stricter limit)

        Returns:
            (allowed, reason); reason is empty when allowed
        """
        with self.lock:
            if is_session_create and not self._draw(self.create_buckets, ip, self.CREATE_RATE_LIMIT):
                logger.warning(f"Session creation rate limit exceeded for IP: {ip}")
                return False, f"Rate limit exceeded: {self.CREATE_RATE_LIMIT} session creations per minute"

            if not self._draw(self.ip_buckets, ip, self.IP_RATE_LIMIT):
                logger.warning(f"Rate limit exceeded for IP: {ip}")
                return False, f"Rate limit exceeded: {self.IP_RATE_LIMIT} requests per minute per IP"

        return True, ""

    def cleanup_old_entries(self):
        """Drop buckets that have been idle for BUCKET_IDLE_SECONDS."""
        cutoff = time.time() - BUCKET_IDLE_SECONDS
        with self.lock:
            for buckets in (self.ip_buckets, self.create_buckets):
                for ip in [ip for ip, (_, last_refill) in buckets.items() if last_refill <= cutoff]:
                    del buckets[ip]


class GeneralRateLimitMiddleware(BaseHTTPMiddleware):
    """
    Applies APIRateLimiter to every relay request except polls and docs.
    """

    EXEMPT_PATHS = ("/health", "/docs", "/redoc", "/openapi.json")

    def __init__(self, app, limiter: APIRateLimiter, sessions_path: str = "/api/signatures/sessions"):
        super().__init__(app)
        self.limiter = limiter
        self.sessions_path = sessions_path.rstrip("/")

    def _is_exempt(self, path: str) -> bool:
        return path.startswith(self.EXEMPT_PATHS) or path.endswith("/poll")

    async def dispatch(self, request: Request, call_next):
        path = request.url.path
        if self._is_exempt(path):
            return await call_next(request)

        ip = client_ip(request) or "unknown"
        is_session_create = request.method == "POST" and path.rstrip("/") == self.sessions_path

        allowed, reason = self.limiter.check_rate_limit(ip, is_session_create)
        if allowed:
            return await call_next(request)

        limit = self.limiter.CREATE_RATE_LIMIT if is_session_create else self.limiter.IP_RATE_LIMIT
        logger.warning(f"Rate limit blocked: {ip} - {request.method} {path}")
        return JSONResponse(
            status_code=429,
            content={"detail": reason, "retry_after": RETRY_AFTER_SECONDS},
            headers={
                "Retry-After": str(RETRY_AFTER_SECONDS),
                "X-RateLimit-Limit": str(limit),
                "X-RateLimit-Remaining": "0",
            },
        )


def start_cleanup_thread(limiter: APIRateLimiter, interval_seconds: float = 300) -> threading.Thread:
    """Prune idle buckets every interval_seconds on a daemon thread."""
    def cleanup_loop():
        while True:
            time.sleep(interval_seconds)
            limiter.cleanup_old_entries()
            logger.debug("Rate limiter cleanup complete")

    cleanup_thread = threading.Thread(target=cleanup_loop, name="rate-limit-cleanup", daemon=True)
    cleanup_thread.start()
    return cleanup_thread
