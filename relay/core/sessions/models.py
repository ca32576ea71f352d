"""
Signature Session Models

In-memory records for E2EE signature sessions. Instances are owned by
SignatureSessionStore and must only be mutated while holding its lock.
"""
import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

logger = logging.getLogger(__name__)


class SessionStatus(str, Enum):
    WAITING = "waiting"
    COMPLETED = "completed"
    EXPIRED = "expired"

    @property
    def is_terminal(self) -> bool:
        return self is not SessionStatus.WAITING


def iso_timestamp(ts: float) -> str:
    """Unix timestamp → ISO-8601 UTC with millisecond precision and Z suffix."""
    dt = datetime.fromtimestamp(ts, tz=timezone.utc)
    return dt.isoformat(timespec="milliseconds").replace("+00:00", "Z")


@dataclass(frozen=True)
class AuditEntry:
    timestamp: str
    event: str
    ip: Optional[str] = None
    user_agent: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"timestamp": self.timestamp, "event": self.event}
        if self.ip:
            data["ip"] = self.ip
        if self.user_agent:
            data["userAgent"] = self.user_agent
        return data


@dataclass(frozen=True)
class EncryptedPayload:
    """Opaque envelope stored for the owner. The relay never decodes it."""
    ciphertext: str
    iv: str
    ephemeral_public_key: Dict[str, Any]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "ciphertext": self.ciphertext,
            "iv": self.iv,
            "ephemeralPublicKey": dict(self.ephemeral_public_key),
        }


@dataclass(eq=False)
class Waiter:
    """
    A pending long-poll registration.

    The future belongs to the poller's event loop; waking goes through
    call_soon_threadsafe so the sweeper thread can release it too. Waking a
    waiter whose poll already timed out (future cancelled) is a no-op.
    """
    loop: asyncio.AbstractEventLoop
    future: asyncio.Future

    def wake(self, view: Dict[str, Any]) -> None:
        try:
            self.loop.call_soon_threadsafe(self._resolve, view)
        except RuntimeError:
            # Loop already closed: nobody is left to receive the view
            logger.debug("Dropped wake-up for waiter on a closed event loop")

    def _resolve(self, view: Dict[str, Any]) -> None:
        if not self.future.done():
            self.future.set_result(view)


@dataclass
class SignatureSession:
    """
    One signature session.

    Attributes:
        session_id: Unique session identifier
        public_key_jwk: Owner's P-256 public key (JWK)
        instructions: Text shown to the signer
        signer_name: Optional pre-filled signer name
        request_drivers_license: Signing page should also ask for an ID photo
        status: waiting | completed | expired
        created_at: Unix timestamp of creation
        expires_at: Unix timestamp of expiry (created_at + ttl)
        encrypted_payload: Envelope, set exactly when status is completed
        audit_log: Append-only event history
        waiters: Pending long-poll registrations
    """
    session_id: str
    public_key_jwk: Dict[str, Any]
    instructions: str
    created_at: float
    expires_at: float
    signer_name: Optional[str] = None
    request_drivers_license: bool = False
    status: SessionStatus = SessionStatus.WAITING
    encrypted_payload: Optional[EncryptedPayload] = None
    audit_log: List[AuditEntry] = field(default_factory=list)
    waiters: List[Waiter] = field(default_factory=list)

    def is_past_expiry(self, now: float) -> bool:
        return now > self.expires_at

    def record(self, event: str, now: float, ip: Optional[str] = None, user_agent: Optional[str] = None) -> AuditEntry:
        entry = AuditEntry(timestamp=iso_timestamp(now), event=event, ip=ip, user_agent=user_agent)
        self.audit_log.append(entry)
        return entry

    def take_waiters(self) -> List[Waiter]:
        """Detach all registered waiters (caller wakes them)."""
        waiters, self.waiters = self.waiters, []
        return waiters

    def poll_view(self) -> Dict[str, Any]:
        """Owner-facing snapshot. Envelope and audit log only once completed."""
        view: Dict[str, Any] = {"status": self.status.value}
        if self.status is SessionStatus.COMPLETED and self.encrypted_payload is not None:
            view["encryptedPayload"] = self.encrypted_payload.to_dict()
            view["auditLog"] = [entry.to_dict() for entry in self.audit_log]
        return view

    def signer_view(self) -> Dict[str, Any]:
        """Signer-facing metadata. Never includes a prior submission."""
        return {
            "publicKeyJwk": dict(self.public_key_jwk),
            "instructions": self.instructions,
            "signerName": self.signer_name,
            "requestDriversLicense": self.request_drivers_license,
        }
