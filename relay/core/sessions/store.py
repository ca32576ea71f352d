"""
Signature Session Store

In-memory registry of E2EE signature sessions.

Features:
- Session creation with per-session TTL
- Atomic waiting → completed / waiting → expired transitions
- Long-poll waiters woken on every transition (broadcast)
- Background sweeper that expires stale sessions and deletes old ones

Memory only: sessions are lost on restart.
"""

import asyncio
import logging
import threading
import time
import uuid
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Tuple

from relay.core.sessions.errors import (
    SessionAlreadyCompletedError,
    SessionExpiredError,
    SessionNotFoundError,
)
from relay.core.sessions.models import (
    EncryptedPayload,
    SessionStatus,
    SignatureSession,
    Waiter,
)

logger = logging.getLogger(__name__)


DEFAULT_TTL_MINUTES = 60

# Sessions are kept this long after expiry so late polls still see a terminal state
DEFAULT_RETENTION_SECONDS = 60 * 60

SWEEP_INTERVAL_SECONDS = 60

WAITING_VIEW = {"status": SessionStatus.WAITING.value}


@dataclass
class SweepResult:
    expired: int = 0
    removed: int = 0


@dataclass
class _Effects:
    """Wake-ups and listener events collected under the lock, applied after release."""
    wakeups: List[Tuple[List[Waiter], Dict[str, Any]]] = field(default_factory=list)
    events: List[Tuple[str, str]] = field(default_factory=list)


class SignatureSessionStore:
    """
    Registry of signature sessions.

    Thread-safe: request handlers (event loop) and the sweeper thread share
    one lock. The lock is held per operation or per record, never while
    sleeping or awaiting.
    """

    def __init__(
        self,
        default_ttl_minutes: float = DEFAULT_TTL_MINUTES,
        retention_seconds: float = DEFAULT_RETENTION_SECONDS,
        sweep_interval_seconds: float = SWEEP_INTERVAL_SECONDS,
        clock: Callable[[], float] = time.time,
        on_event: Optional[Callable[[str, str], None]] = None,
    ):
        """
        Args:
            default_ttl_minutes: Lifetime used when create_session gets none
            retention_seconds: Time after expiry before a session is deleted
            sweep_interval_seconds: Sleep between background sweep passes
            clock: Source of Unix timestamps
            on_event: Called as on_event(event, session_id) for "expired" and
                "removed", outside the lock
        """
        self.default_ttl_minutes = default_ttl_minutes
        self.retention_seconds = retention_seconds
        self.sweep_interval_seconds = sweep_interval_seconds
        self._clock = clock
        self._on_event = on_event
        self._sessions: Dict[str, SignatureSession] = {}
        self._lock = threading.RLock()
        self._stop_event = threading.Event()
        self._sweeper_thread: Optional[threading.Thread] = None

    def __len__(self) -> int:
        with self._lock:
            return len(self._sessions)

    # ------------------------------------------------------------------
    # Sweeper
    # ------------------------------------------------------------------

    def start(self) -> None:
        """Start the background sweeper thread."""
        if self._sweeper_thread and self._sweeper_thread.is_alive():
            return

        self._stop_event.clear()
        self._sweeper_thread = threading.Thread(
            target=self._sweep_loop, name="signature-session-sweeper", daemon=True
        )
        self._sweeper_thread.start()
        logger.info(f"Signature session sweeper started (interval={self.sweep_interval_seconds}s)")

    def stop(self) -> None:
        """Stop the background sweeper thread."""
        self._stop_event.set()
        if self._sweeper_thread:
            self._sweeper_thread.join(timeout=5)
            self._sweeper_thread = None
        logger.info("Signature session sweeper stopped")

    def _sweep_loop(self) -> None:
        while not self._stop_event.wait(self.sweep_interval_seconds):
            try:
                self.sweep()
            except Exception:
                logger.exception("Signature session sweep failed")

    def sweep(self, now: Optional[float] = None) -> SweepResult:
        """
        Run one sweep pass.

        Expires waiting sessions past their deadline and deletes sessions
        whose retention window has passed. Waiters still registered on a
        session being deleted are released with its final view first.

        Args:
            now: Override for the current time (defaults to the store clock)

        Returns:
            Counts of expired and removed sessions
        """
        now = self._clock() if now is None else now
        result = SweepResult()

        with self._lock:
            session_ids = list(self._sessions)

        for session_id in session_ids:
            effects = _Effects()
            with self._lock:
                session = self._sessions.get(session_id)
                if session is None:
                    continue

                if self._expire_if_due(session, now, effects):
                    result.expired += 1

                if now > session.expires_at + self.retention_seconds:
                    stragglers = session.take_waiters()
                    if stragglers:
                        effects.wakeups.append((stragglers, session.poll_view()))
                    del self._sessions[session_id]
                    effects.events.append(("removed", session_id))
                    result.removed += 1
                    logger.info(f"Removed signature session {session_id} (status={session.status.value})")

            self._apply(effects)

        if result.expired or result.removed:
            logger.info(f"Sweep complete: {result.expired} expired, {result.removed} removed")
        return result

    # ------------------------------------------------------------------
    # Transitions (caller holds the lock)
    # ------------------------------------------------------------------

    def _expire_if_due(self, session: SignatureSession, now: float, effects: "_Effects") -> bool:
        if session.status is not SessionStatus.WAITING or not session.is_past_expiry(now):
            return False

        session.status = SessionStatus.EXPIRED
        session.record("expired", now)
        effects.wakeups.append((session.take_waiters(), session.poll_view()))
        effects.events.append(("expired", session.session_id))
        logger.info(f"Signature session {session.session_id} expired")
        return True

    def _get_current(self, session_id: str, effects: "_Effects") -> SignatureSession:
        """Look up a session and apply a due expiry. Caller holds the lock."""
        session = self._sessions.get(session_id)
        if session is None:
            raise SessionNotFoundError(session_id)
        self._expire_if_due(session, self._clock(), effects)
        return session

    def _apply(self, effects: "_Effects") -> None:
        """Wake waiters and notify the listener. Caller must NOT hold the lock."""
        for waiters, view in effects.wakeups:
            for waiter in waiters:
                waiter.wake(view)

        if self._on_event is None:
            return
        for event, session_id in effects.events:
            try:
                self._on_event(event, session_id)
            except Exception:
                logger.exception(f"Session event listener failed for {event} {session_id}")

    @staticmethod
    def _ensure_waiting(session: SignatureSession) -> None:
        if session.status is SessionStatus.EXPIRED:
            raise SessionExpiredError(session.session_id)
        if session.status is SessionStatus.COMPLETED:
            raise SessionAlreadyCompletedError(session.session_id)

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def create_session(
        self,
        public_key_jwk: Dict[str, Any],
        instructions: str,
        signer_name: Optional[str] = None,
        ttl_minutes: Optional[float] = None,
        request_drivers_license: bool = False,
    ) -> SignatureSession:
        """
        Create a new waiting session.

        Args:
            public_key_jwk: Owner's public key (stored as given)
            instructions: Text shown to the signer
            signer_name: Optional pre-filled signer name
            ttl_minutes: Lifetime; defaults to the store default
            request_drivers_license: Ask the signer for an ID photo as well

        Returns:
            Created session
        """
        ttl_minutes = self.default_ttl_minutes if ttl_minutes is None else ttl_minutes
        now = self._clock()

        session = SignatureSession(
            session_id=str(uuid.uuid4()),
            public_key_jwk=dict(public_key_jwk),
            instructions=instructions,
            signer_name=signer_name,
            request_drivers_license=request_drivers_license,
            created_at=now,
            expires_at=now + ttl_minutes * 60,
        )
        session.record("created", now)

        with self._lock:
            self._sessions[session.session_id] = session

        logger.info(f"Created signature session {session.session_id} (ttl={ttl_minutes}m)")
        return session

    def get_session(self, session_id: str) -> Optional[SignatureSession]:
        """
        Get a session by ID.

        Returns:
            Session if present (any status), None otherwise
        """
        effects = _Effects()
        try:
            with self._lock:
                return self._get_current(session_id, effects)
        except SessionNotFoundError:
            return None
        finally:
            self._apply(effects)

    def get_signer_view(self, session_id: str) -> Dict[str, Any]:
        """
        Session metadata for the signer.

        Raises:
            SessionNotFoundError, SessionExpiredError, SessionAlreadyCompletedError
        """
        effects = _Effects()
        try:
            with self._lock:
                session = self._get_current(session_id, effects)
                self._ensure_waiting(session)
                return session.signer_view()
        finally:
            self._apply(effects)

    def get_poll_view(self, session_id: str) -> Dict[str, Any]:
        """
        Current owner-facing view without waiting.

        Raises:
            SessionNotFoundError
        """
        effects = _Effects()
        try:
            with self._lock:
                return self._get_current(session_id, effects).poll_view()
        finally:
            self._apply(effects)

    def ensure_accepting(self, session_id: str) -> None:
        """
        Check a session can still take a submission.

        Raises:
            SessionNotFoundError, SessionExpiredError, SessionAlreadyCompletedError
        """
        effects = _Effects()
        try:
            with self._lock:
                self._ensure_waiting(self._get_current(session_id, effects))
        finally:
            self._apply(effects)

    def submit(
        self,
        session_id: str,
        ciphertext: str,
        iv: str,
        ephemeral_public_key: Dict[str, Any],
        ip: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> SignatureSession:
        """
        Store the signer's envelope and complete the session.

        Payload, status and audit entry are written under one lock hold,
        before any waiter is woken.

        Raises:
            SessionNotFoundError, SessionExpiredError, SessionAlreadyCompletedError
        """
        effects = _Effects()
        try:
            with self._lock:
                session = self._get_current(session_id, effects)
                self._ensure_waiting(session)

                session.encrypted_payload = EncryptedPayload(
                    ciphertext=ciphertext,
                    iv=iv,
                    ephemeral_public_key=dict(ephemeral_public_key),
                )
                session.status = SessionStatus.COMPLETED
                session.record("submitted", self._clock(), ip=ip, user_agent=user_agent)
                waiters = session.take_waiters()
                effects.wakeups.append((waiters, session.poll_view()))
        finally:
            self._apply(effects)

        logger.info(f"Signature session {session_id} completed ({len(waiters)} waiters woken)")
        return session

    async def wait_for_transition(self, session_id: str, timeout: float) -> Dict[str, Any]:
        """
        Long-poll a session.

        Returns the current view at once if the session is terminal. Otherwise
        waits until a transition wakes this poll or the timeout elapses, in
        which case {"status": "waiting"} is returned.

        Raises:
            SessionNotFoundError
        """
        loop = asyncio.get_running_loop()

        effects = _Effects()
        try:
            with self._lock:
                session = self._get_current(session_id, effects)
                if session.status.is_terminal:
                    return session.poll_view()
                waiter = Waiter(loop=loop, future=loop.create_future())
                session.waiters.append(waiter)
        finally:
            self._apply(effects)

        try:
            return await asyncio.wait_for(waiter.future, timeout=max(timeout, 0))
        except asyncio.TimeoutError:
            return dict(WAITING_VIEW)
        finally:
            with self._lock:
                if waiter in session.waiters:
                    session.waiters.remove(waiter)

    def waiter_count(self, session_id: str) -> int:
        """Number of polls currently registered on a session."""
        with self._lock:
            session = self._sessions.get(session_id)
            return len(session.waiters) if session else 0
