"""
Signature Session Module

In-memory signature sessions, their long-poll waiters and the TTL sweeper.
"""

from relay.core.sessions.errors import (
    SessionError,
    SessionNotFoundError,
    SessionExpiredError,
    SessionAlreadyCompletedError,
)
from relay.core.sessions.models import (
    AuditEntry,
    EncryptedPayload,
    SessionStatus,
    SignatureSession,
    Waiter,
)
from relay.core.sessions.store import SignatureSessionStore, SweepResult

__all__ = [
    "SessionError",
    "SessionNotFoundError",
    "SessionExpiredError",
    "SessionAlreadyCompletedError",
    "AuditEntry",
    "EncryptedPayload",
    "SessionStatus",
    "SignatureSession",
    "Waiter",
    "SignatureSessionStore",
    "SweepResult",
]
