"""
Signature Session Endpoints

HTTP surface of the E2EE signature relay.

Flow:
1. Owner generates a P-256 keypair locally
2. Owner creates a session with only the public key and instructions
3. Signer fetches session info, encrypts the signature with an ephemeral key
4. Signer submits {ciphertext, iv, ephemeralPublicKey}
5. Owner long-polls, receives the envelope and decrypts locally

The relay stores the envelope as opaque strings and cannot decrypt it.
"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status

from relay.api.auditing import audit_log_action, client_ip, fingerprint_jwk
from relay.api.schemas import (
    CreateSessionRequest,
    CreateSessionResponse,
    PollResponse,
    SessionInfoResponse,
    SubmitRequest,
    SubmitResponse,
)
from relay.core.config import Settings
from relay.core.crypto import has_private_material, jwk_to_public_key
from relay.core.sessions import (
    SessionAlreadyCompletedError,
    SessionError,
    SessionExpiredError,
    SessionNotFoundError,
    SignatureSessionStore,
)
from relay.core.sessions.models import iso_timestamp

logger = logging.getLogger(__name__)

router = APIRouter(tags=["signatures"])


def get_session_store(request: Request) -> SignatureSessionStore:
    """Session store owned by the running app."""
    return request.app.state.session_store


def get_app_settings(request: Request) -> Settings:
    return request.app.state.settings


def _raise_for_session_error(exc: SessionError) -> None:
    if isinstance(exc, SessionNotFoundError):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    if isinstance(exc, SessionExpiredError):
        raise HTTPException(status_code=status.HTTP_410_GONE, detail=str(exc)) from exc
    if isinstance(exc, SessionAlreadyCompletedError):
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc
    raise exc


def clamp_poll_timeout(requested: Optional[float], default: float, maximum: float) -> float:
    """Apply the default and clamp a client-requested poll timeout to [0, maximum]."""
    if requested is None:
        requested = default
    return max(0.0, min(float(requested), maximum))


@router.post("/sessions", response_model=CreateSessionResponse, status_code=status.HTTP_201_CREATED)
async def create_session(
    body: CreateSessionRequest,
    request: Request,
    store: SignatureSessionStore = Depends(get_session_store),
    settings: Settings = Depends(get_app_settings),
) -> CreateSessionResponse:
    """
    Create a signature session.

    Only the owner's public key is uploaded. The owner keeps its private key;
    losing it means the signature can never be read.
    """
    if not body.owner_public_key or not body.instructions:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="ownerPublicKey and instructions are required",
        )

    if has_private_material(body.owner_public_key):
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="ownerPublicKey must not contain private key material",
        )

    try:
        jwk_to_public_key(body.owner_public_key)
    except ValueError as e:
        logger.warning(f"Rejected owner public key: {e}")
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Invalid ownerPublicKey: {e}",
        )

    ttl_minutes = body.ttl_minutes
    if ttl_minutes is not None and not (1 <= ttl_minutes <= settings.max_session_ttl_minutes):
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"ttlMinutes must be between 1 and {settings.max_session_ttl_minutes}",
        )

    session = store.create_session(
        public_key_jwk=body.owner_public_key,
        instructions=body.instructions,
        signer_name=body.signer_name,
        ttl_minutes=ttl_minutes,
        request_drivers_license=body.request_drivers_license,
    )

    audit_log_action(
        "signature_session_created",
        session_id=session.session_id,
        ip_address=client_ip(request),
        details={
            "owner_key_fingerprint": fingerprint_jwk(body.owner_public_key),
            "expires_at": iso_timestamp(session.expires_at),
        },
    )

    return CreateSessionResponse(
        session_id=session.session_id,
        sign_url=settings.sign_url(session.session_id),
        expires_at=iso_timestamp(session.expires_at),
    )


@router.get(
    "/sessions/{session_id}/info",
    response_model=SessionInfoResponse,
    response_model_exclude_none=True,
)
async def get_session_info(
    session_id: str,
    store: SignatureSessionStore = Depends(get_session_store),
) -> dict:
    """
    Session metadata for the signing page.

    Returns the owner's public key and display text only; never a prior
    submission.
    """
    try:
        return store.get_signer_view(session_id)
    except SessionError as e:
        _raise_for_session_error(e)


@router.get(
    "/sessions/{session_id}/poll",
    response_model=PollResponse,
    response_model_exclude_none=True,
)
async def poll_session(
    session_id: str,
    timeout: Optional[float] = Query(None, description="Seconds to wait for a transition"),
    store: SignatureSessionStore = Depends(get_session_store),
    settings: Settings = Depends(get_app_settings),
) -> dict:
    """
    Long-poll for session completion (owner calls this).

    Returns immediately once the session is terminal; otherwise waits up to
    the clamped timeout and returns {"status": "waiting"} if nothing happened.
    """
    wait_seconds = clamp_poll_timeout(
        timeout,
        default=settings.poll_default_timeout_seconds,
        maximum=settings.poll_max_timeout_seconds,
    )
    try:
        return await store.wait_for_transition(session_id, wait_seconds)
    except SessionError as e:
        _raise_for_session_error(e)


@router.post("/sessions/{session_id}/submit", response_model=SubmitResponse)
async def submit_signature(
    session_id: str,
    body: SubmitRequest,
    request: Request,
    store: SignatureSessionStore = Depends(get_session_store),
) -> SubmitResponse:
    """
    Accept the signer's encrypted envelope.

    A session accepts exactly one submission. State errors are reported
    before field validation.
    """
    try:
        store.ensure_accepting(session_id)
    except SessionError as e:
        _raise_for_session_error(e)

    if not body.ciphertext or not body.iv or not body.ephemeral_public_key:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="ciphertext, iv, and ephemeralPublicKey are required",
        )

    ip = client_ip(request)
    user_agent = request.headers.get("user-agent") or None

    try:
        store.submit(
            session_id,
            ciphertext=body.ciphertext,
            iv=body.iv,
            ephemeral_public_key=body.ephemeral_public_key,
            ip=ip,
            user_agent=user_agent,
        )
    except SessionError as e:
        _raise_for_session_error(e)

    audit_log_action(
        "signature_submitted",
        session_id=session_id,
        ip_address=ip,
        details={"ciphertext_bytes": len(body.ciphertext)},
    )

    return SubmitResponse(status="completed")
