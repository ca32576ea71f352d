"""
Pydantic schemas for the signature session API.

Wire format is camelCase (the browser signing page and owner scripts share
it); Python attributes are snake_case with aliases.
"""
from typing import Any, Dict, List, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field


class CreateSessionRequest(BaseModel):
    """Request body for creating a signature session.

    Presence of the required fields is checked by the route so that missing
    fields come back as 400 with a readable message.
    """
    model_config = ConfigDict(populate_by_name=True)

    owner_public_key: Optional[Dict[str, Any]] = Field(
        None,
        validation_alias=AliasChoices("ownerPublicKey", "publicKey"),
        description="Owner's P-256 public key as JWK (never the private key)",
    )
    instructions: Optional[str] = Field(None, description="Text shown to the signer")
    signer_name: Optional[str] = Field(
        None,
        validation_alias=AliasChoices("signerName", "signer_name"),
        description="Pre-filled signer name",
    )
    ttl_minutes: Optional[float] = Field(
        None,
        validation_alias=AliasChoices("ttlMinutes", "expiryMinutes"),
        description="Session lifetime in minutes",
    )
    request_drivers_license: bool = Field(
        False,
        validation_alias=AliasChoices("requestDriversLicense", "request_drivers_license"),
        description="Ask the signer to attach a driver's license photo",
    )


class CreateSessionResponse(BaseModel):
    """Response body for a created session."""
    model_config = ConfigDict(populate_by_name=True)

    session_id: str = Field(..., alias="sessionId", description="Session identifier")
    sign_url: str = Field(..., alias="signUrl", description="URL to send to the signer")
    expires_at: str = Field(..., alias="expiresAt", description="ISO-8601 expiry timestamp")


class SessionInfoResponse(BaseModel):
    """What the signer's client needs to encrypt a submission."""
    model_config = ConfigDict(populate_by_name=True)

    public_key_jwk: Dict[str, Any] = Field(..., alias="publicKeyJwk")
    instructions: str
    signer_name: Optional[str] = Field(None, alias="signerName")
    request_drivers_license: bool = Field(False, alias="requestDriversLicense")


class EncryptedPayloadModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    ciphertext: str
    iv: str
    ephemeral_public_key: Dict[str, Any] = Field(..., alias="ephemeralPublicKey")


class AuditEntryModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    timestamp: str
    event: str
    ip: Optional[str] = None
    user_agent: Optional[str] = Field(None, alias="userAgent")


class PollResponse(BaseModel):
    """Owner-facing session state. Envelope and audit log only when completed."""
    model_config = ConfigDict(populate_by_name=True)

    status: str
    encrypted_payload: Optional[EncryptedPayloadModel] = Field(None, alias="encryptedPayload")
    audit_log: Optional[List[AuditEntryModel]] = Field(None, alias="auditLog")


class SubmitRequest(BaseModel):
    """Encrypted signature envelope uploaded by the signer."""
    model_config = ConfigDict(populate_by_name=True)

    ciphertext: Optional[str] = Field(None, description="Base64 AES-GCM ciphertext (tag appended)")
    iv: Optional[str] = Field(None, description="Base64 96-bit IV")
    ephemeral_public_key: Optional[Dict[str, Any]] = Field(
        None,
        validation_alias=AliasChoices("ephemeralPublicKey", "ephemeral_public_key"),
        description="Signer's ephemeral P-256 public key (JWK)",
    )


class SubmitResponse(BaseModel):
    status: str = Field(..., description="Always 'completed' on success")
