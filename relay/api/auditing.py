"""
Security Auditing

Audit logging for signature session operations and relay requests.
Entries are JSON lines on the "security.audit" logger; a file handler is
attached when an audit log directory is configured.

Never log ciphertext, IVs or key material here: only ids, events, status
codes and client metadata.
"""
import hashlib
import json
import logging
import os
import time
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request

logger = logging.getLogger(__name__)
audit_logger = logging.getLogger("security.audit")


def configure_audit_logging(log_dir: Optional[str]) -> Optional[str]:
    """
    Attach a daily audit log file under log_dir.

    Returns:
        Path of the audit log file, or None when file auditing is disabled
    """
    audit_logger.setLevel(logging.INFO)
    if not log_dir:
        return None

    log_dir = os.path.expanduser(log_dir)
    os.makedirs(log_dir, exist_ok=True)
    audit_log_file = os.path.join(log_dir, f"audit_{datetime.now().strftime('%Y%m%d')}.log")

    for handler in audit_logger.handlers:
        if isinstance(handler, logging.FileHandler) and handler.baseFilename == os.path.abspath(audit_log_file):
            return audit_log_file

    audit_handler = logging.FileHandler(audit_log_file)
    audit_handler.setFormatter(logging.Formatter(
        '%(asctime)s - %(levelname)s - %(message)s'
    ))
    audit_logger.addHandler(audit_handler)
    logger.info(f"Audit log file: {audit_log_file}")
    return audit_log_file


def client_ip(request: Request) -> Optional[str]:
    """
    Best-effort client address.

    First hop of X-Forwarded-For, then CF-Connecting-IP, then the socket peer.
    """
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        first = forwarded.split(",")[0].strip()
        if first:
            return first
    cf_ip = request.headers.get("cf-connecting-ip")
    if cf_ip:
        return cf_ip.strip()
    return request.client.host if request.client else None


class AuditingMiddleware(BaseHTTPMiddleware):
    """
    Middleware to audit relay requests.

    Logs modifying requests and error responses with client context.
    """

    # Paths to skip (high-frequency, low-value)
    SKIP_PATHS = ["/health", "/docs", "/redoc", "/openapi.json"]

    def __init__(self, app):
        super().__init__(app)
        self.request_count = 0

    async def dispatch(self, request: Request, call_next):
        if any(request.url.path.startswith(path) for path in self.SKIP_PATHS):
            return await call_next(request)

        start_time = time.time()
        self.request_count += 1

        ip = client_ip(request) or "unknown"
        is_modification = request.method in ["POST", "PUT", "DELETE", "PATCH"]
        is_poll = request.url.path.endswith("/poll")

        response = await call_next(request)

        response_time_ms = int((time.time() - start_time) * 1000)

        audit_entry = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "request_id": self.request_count,
            "method": request.method,
            "path": request.url.path,
            "ip": ip,
            "status": response.status_code,
            "response_time_ms": response_time_ms,
            "is_modification": is_modification,
            "user_agent": request.headers.get("user-agent", "")[:200],
        }

        if is_modification or response.status_code >= 400:
            audit_logger.info(json.dumps(audit_entry))

        if response.status_code == 429:
            logger.warning(f"SECURITY: Rate limited {ip} on {request.url.path}")

        # Long polls are slow by design
        if response_time_ms > 5000 and not is_poll:
            logger.warning(f"PERFORMANCE: Slow request ({response_time_ms}ms) - {request.method} {request.url.path}")

        return response


def audit_log_action(
    action: str,
    session_id: Optional[str] = None,
    ip_address: Optional[str] = None,
    details: Optional[Dict[str, Any]] = None
):
    """
    Log a specific audit action.

    Use for session events not captured by middleware (e.g. sweeper expiry).
    """
    audit_entry = {
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "action": action,
        "session_id": session_id,
        "ip": ip_address,
        "details": details or {}
    }

    audit_logger.info(json.dumps(audit_entry))


def fingerprint_jwk(jwk: Dict[str, Any]) -> str:
    """Short SHA-256 fingerprint of a public JWK for audit records."""
    canonical = json.dumps(
        {k: jwk.get(k) for k in ("crv", "kty", "x", "y")},
        separators=(",", ":"),
        sort_keys=True,
    )
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()[:16]
