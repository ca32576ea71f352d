"""
API tests for the signature session endpoints.
"""
import asyncio
import base64
import time

import httpx
import pytest
from fastapi.testclient import TestClient

from relay.api.main import _sanitize_error_message, create_app
from relay.core.config import Settings
from relay.core.crypto import (
    EncryptedEnvelope,
    build_signature_payload,
    decrypt_payload,
    encrypt_payload,
    generate_keypair,
    private_key_to_jwk,
    signature_image_bytes,
)

PREFIX = "/api/signatures"


def _create(client, owner_public_jwk, **extra):
    body = {"ownerPublicKey": owner_public_jwk, "instructions": "Sign the intake form"}
    body.update(extra)
    return client.post(f"{PREFIX}/sessions", json=body)


def _envelope(owner_keypair, png):
    return encrypt_payload(build_signature_payload(png), owner_keypair[1]).to_dict()


@pytest.fixture
def session_id(client, owner_public_jwk):
    response = _create(client, owner_public_jwk)
    assert response.status_code == 201
    return response.json()["sessionId"]


class TestCreateSession:
    """POST /sessions"""

    def test_create_returns_201(self, client, owner_public_jwk):
        response = _create(client, owner_public_jwk, signerName="Ada Lovelace")

        assert response.status_code == 201
        data = response.json()
        assert set(data) == {"sessionId", "signUrl", "expiresAt"}
        assert data["signUrl"] == f"https://relay.example.org/sign/{data['sessionId']}"
        assert data["expiresAt"].endswith("Z")

    def test_legacy_field_names_accepted(self, client, owner_public_jwk, store):
        response = client.post(
            f"{PREFIX}/sessions",
            json={"publicKey": owner_public_jwk, "instructions": "Sign", "expiryMinutes": 5},
        )

        assert response.status_code == 201
        session = store.get_session(response.json()["sessionId"])
        assert session.expires_at - session.created_at == 5 * 60

    @pytest.mark.parametrize("body", [
        {"instructions": "Sign"},
        {"ownerPublicKey": None, "instructions": "Sign"},
        {"ownerPublicKey": {}, "instructions": "Sign"},
    ])
    def test_missing_public_key(self, client, body, store):
        response = client.post(f"{PREFIX}/sessions", json=body)

        assert response.status_code == 400
        assert len(store) == 0

    @pytest.mark.parametrize("instructions", [None, ""])
    def test_missing_instructions(self, client, owner_public_jwk, instructions):
        body = {"ownerPublicKey": owner_public_jwk}
        if instructions is not None:
            body["instructions"] = instructions

        response = client.post(f"{PREFIX}/sessions", json=body)

        assert response.status_code == 400
        assert "required" in response.json()["detail"]

    def test_private_key_rejected(self, client, owner_keypair, store):
        response = _create(client, private_key_to_jwk(owner_keypair[0]))

        assert response.status_code == 400
        assert "private" in response.json()["detail"]
        assert len(store) == 0

    def test_invalid_public_key_rejected(self, client):
        response = _create(client, {"kty": "EC", "crv": "P-256", "x": "AA", "y": "AA"})

        assert response.status_code == 400
        assert response.json()["detail"].startswith("Invalid ownerPublicKey")

    @pytest.mark.parametrize("ttl", [0, 0.5, -5, 24 * 60 + 1])
    def test_ttl_out_of_range(self, client, owner_public_jwk, ttl):
        response = _create(client, owner_public_jwk, ttlMinutes=ttl)

        assert response.status_code == 400
        assert response.json()["detail"] == "ttlMinutes must be between 1 and 1440"

    def test_ttl_one_minute_accepted(self, client, owner_public_jwk, store):
        response = _create(client, owner_public_jwk, ttlMinutes=1)

        assert response.status_code == 201
        session = store.get_session(response.json()["sessionId"])
        assert session.expires_at - session.created_at == 60

    def test_malformed_json(self, client):
        response = client.post(
            f"{PREFIX}/sessions",
            content=b"{not json",
            headers={"Content-Type": "application/json"},
        )

        assert response.status_code == 400

    def test_wrong_field_type(self, client, owner_public_jwk):
        response = _create(client, owner_public_jwk, instructions=["not", "a", "string"])

        assert response.status_code == 400


class TestSessionInfo:
    """GET /sessions/{id}/info"""

    def test_info_echoes_instructions(self, client, owner_public_jwk):
        created = _create(
            client, owner_public_jwk, instructions="Sign page 3", signerName="Bob", requestDriversLicense=True
        ).json()

        response = client.get(f"{PREFIX}/sessions/{created['sessionId']}/info")

        assert response.status_code == 200
        assert response.json() == {
            "publicKeyJwk": owner_public_jwk,
            "instructions": "Sign page 3",
            "signerName": "Bob",
            "requestDriversLicense": True,
        }

    def test_info_omits_missing_signer_name(self, client, session_id):
        data = client.get(f"{PREFIX}/sessions/{session_id}/info").json()

        assert "signerName" not in data
        assert data["requestDriversLicense"] is False

    def test_unknown_session(self, client):
        response = client.get(f"{PREFIX}/sessions/nope/info")

        assert response.status_code == 404
        assert response.json() == {"detail": "Session not found"}

    def test_expired_session(self, client, session_id, clock):
        clock.advance(61 * 60)

        response = client.get(f"{PREFIX}/sessions/{session_id}/info")

        assert response.status_code == 410

    def test_completed_session(self, client, session_id, owner_keypair, sample_png):
        client.post(f"{PREFIX}/sessions/{session_id}/submit", json=_envelope(owner_keypair, sample_png))

        response = client.get(f"{PREFIX}/sessions/{session_id}/info")

        assert response.status_code == 409


class TestSubmit:
    """POST /sessions/{id}/submit"""

    def test_submit_completes(self, client, session_id, owner_keypair, sample_png, store):
        response = client.post(
            f"{PREFIX}/sessions/{session_id}/submit",
            json=_envelope(owner_keypair, sample_png),
            headers={"User-Agent": "Mobile Safari", "X-Forwarded-For": "203.0.113.9, 10.0.0.1"},
        )

        assert response.status_code == 200
        assert response.json() == {"status": "completed"}
        submitted = store.get_session(session_id).audit_log[-1]
        assert submitted.event == "submitted"
        assert submitted.ip == "203.0.113.9"
        assert submitted.user_agent == "Mobile Safari"

    def test_cf_connecting_ip_used_without_forwarded_for(self, client, session_id, owner_keypair, sample_png, store):
        client.post(
            f"{PREFIX}/sessions/{session_id}/submit",
            json=_envelope(owner_keypair, sample_png),
            headers={"CF-Connecting-IP": "198.51.100.20"},
        )

        assert store.get_session(session_id).audit_log[-1].ip == "198.51.100.20"

    def test_second_submit_conflicts(self, client, session_id, owner_keypair, sample_png, store):
        first = _envelope(owner_keypair, sample_png)
        client.post(f"{PREFIX}/sessions/{session_id}/submit", json=first)

        response = client.post(
            f"{PREFIX}/sessions/{session_id}/submit", json=_envelope(owner_keypair, b"other")
        )

        assert response.status_code == 409
        session = store.get_session(session_id)
        assert session.encrypted_payload.ciphertext == first["ciphertext"]
        assert [entry.event for entry in session.audit_log] == ["created", "submitted"]

    def test_submit_to_expired_session(self, client, session_id, owner_keypair, sample_png, store, clock):
        clock.advance(61 * 60)

        response = client.post(
            f"{PREFIX}/sessions/{session_id}/submit", json=_envelope(owner_keypair, sample_png)
        )

        assert response.status_code == 410
        assert store.get_session(session_id).encrypted_payload is None

    def test_submit_unknown_session(self, client, owner_keypair, sample_png):
        response = client.post(f"{PREFIX}/sessions/nope/submit", json=_envelope(owner_keypair, sample_png))

        assert response.status_code == 404

    @pytest.mark.parametrize("missing", ["ciphertext", "iv", "ephemeralPublicKey"])
    def test_missing_fields(self, client, session_id, owner_keypair, sample_png, missing):
        body = _envelope(owner_keypair, sample_png)
        del body[missing]

        response = client.post(f"{PREFIX}/sessions/{session_id}/submit", json=body)

        assert response.status_code == 400

    def test_state_error_reported_before_missing_fields(self, client, session_id, owner_keypair, sample_png):
        client.post(f"{PREFIX}/sessions/{session_id}/submit", json=_envelope(owner_keypair, sample_png))

        response = client.post(f"{PREFIX}/sessions/{session_id}/submit", json={})

        assert response.status_code == 409


class TestPoll:
    """GET /sessions/{id}/poll"""

    def test_waiting_after_timeout(self, client, session_id):
        started = time.monotonic()
        response = client.get(f"{PREFIX}/sessions/{session_id}/poll", params={"timeout": 0.3})
        elapsed = time.monotonic() - started

        assert response.status_code == 200
        assert response.json() == {"status": "waiting"}
        assert elapsed >= 0.25
        assert elapsed < 0.3 + 1.0

    def test_requested_timeout_above_max_waits_only_max(self, store, owner_public_jwk):
        settings = Settings(
            rate_limit_enabled=False,
            audit_log_dir=None,
            poll_default_timeout_seconds=0.3,
            poll_max_timeout_seconds=0.3,
        )
        client = TestClient(create_app(settings=settings, store=store))
        session = store.create_session(owner_public_jwk, "Sign")

        started = time.monotonic()
        response = client.get(f"{PREFIX}/sessions/{session.session_id}/poll", params={"timeout": 600})
        elapsed = time.monotonic() - started

        assert response.json() == {"status": "waiting"}
        assert elapsed >= 0.25
        assert elapsed < 0.3 + 1.0

    def test_default_timeout_applies_without_parameter(self, client, session_id):
        started = time.monotonic()
        response = client.get(f"{PREFIX}/sessions/{session_id}/poll")
        elapsed = time.monotonic() - started

        # settings fixture uses a 1 s default
        assert response.json() == {"status": "waiting"}
        assert elapsed >= 0.9
        assert elapsed < 1.0 + 1.0

    def test_completed_view_decrypts(self, client, session_id, owner_keypair, sample_png):
        client.post(f"{PREFIX}/sessions/{session_id}/submit", json=_envelope(owner_keypair, sample_png))

        data = client.get(f"{PREFIX}/sessions/{session_id}/poll", params={"timeout": 5}).json()

        assert data["status"] == "completed"
        payload = decrypt_payload(EncryptedEnvelope.from_dict(data["encryptedPayload"]), owner_keypair[0])
        assert signature_image_bytes(payload) == sample_png
        assert [entry["event"] for entry in data["auditLog"]] == ["created", "submitted"]

    def test_expired_view(self, client, session_id, clock):
        clock.advance(61 * 60)

        data = client.get(f"{PREFIX}/sessions/{session_id}/poll", params={"timeout": 0}).json()

        assert data == {"status": "expired"}

    def test_unknown_session(self, client):
        response = client.get(f"{PREFIX}/sessions/nope/poll", params={"timeout": 0})

        assert response.status_code == 404

    def test_invalid_timeout(self, client, session_id):
        response = client.get(f"{PREFIX}/sessions/{session_id}/poll", params={"timeout": "soon"})

        assert response.status_code == 400

    def test_timeout_is_clamped(self):
        from relay.api.routes.signatures import clamp_poll_timeout

        assert clamp_poll_timeout(None, default=30, maximum=60) == 30
        assert clamp_poll_timeout(600, default=30, maximum=60) == 60
        assert clamp_poll_timeout(-3, default=30, maximum=60) == 0

    @pytest.mark.asyncio
    async def test_concurrent_pollers_all_receive_submission(self, app, store, owner_keypair, owner_public_jwk, sample_png):
        transport = httpx.ASGITransport(app=app)
        async with httpx.AsyncClient(transport=transport, base_url="http://testserver") as ac:
            created = await ac.post(
                f"{PREFIX}/sessions", json={"ownerPublicKey": owner_public_jwk, "instructions": "Sign"}
            )
            session_id = created.json()["sessionId"]

            polls = [
                asyncio.create_task(ac.get(f"{PREFIX}/sessions/{session_id}/poll", params={"timeout": 5}))
                for _ in range(3)
            ]
            for _ in range(400):
                if store.waiter_count(session_id) == 3:
                    break
                await asyncio.sleep(0.005)
            assert store.waiter_count(session_id) == 3

            submitted = await ac.post(
                f"{PREFIX}/sessions/{session_id}/submit", json=_envelope(owner_keypair, sample_png)
            )
            responses = await asyncio.wait_for(asyncio.gather(*polls), timeout=5)

        assert submitted.status_code == 200
        bodies = [response.json() for response in responses]
        assert all(body["status"] == "completed" for body in bodies)
        assert all(body == bodies[0] for body in bodies)


class TestHealthAndMiddleware:
    """Health check, headers and rate limiting."""

    def test_health(self, client, session_id):
        data = client.get("/health").json()

        assert data["status"] == "ok"
        assert data["sessions"] == 1
        assert "timestamp" in data

    def test_security_headers(self, client, session_id):
        response = client.get(f"{PREFIX}/sessions/{session_id}/info")

        assert response.headers["X-Content-Type-Options"] == "nosniff"
        assert response.headers["X-Frame-Options"] == "DENY"

    def test_session_creation_rate_limited(self, store, owner_public_jwk):
        settings = Settings(
            rate_limit_enabled=True,
            session_create_rate_limit_per_minute=2,
            audit_log_dir=None,
        )
        client = TestClient(create_app(settings=settings, store=store))

        statuses = [_create(client, owner_public_jwk).status_code for _ in range(3)]

        assert statuses[:2] == [201, 201]
        assert statuses[2] == 429
        blocked = _create(client, owner_public_jwk)
        assert blocked.headers["Retry-After"] == "60"

    def test_poll_is_not_rate_limited(self, store, owner_public_jwk):
        settings = Settings(rate_limit_enabled=True, rate_limit_per_minute=2, audit_log_dir=None)
        client = TestClient(create_app(settings=settings, store=store))
        session = store.create_session(owner_public_jwk, "Sign")

        statuses = [
            client.get(f"{PREFIX}/sessions/{session.session_id}/poll", params={"timeout": 0}).status_code
            for _ in range(10)
        ]

        assert statuses == [200] * 10


class TestErrorSanitizing:
    """Secrets never reach the error log."""

    def test_jwk_private_scalar_redacted(self, owner_keypair):
        jwk = private_key_to_jwk(owner_keypair[0])

        sanitized = _sanitize_error_message(f"bad key: {jwk}")

        assert jwk["d"] not in sanitized
        assert "[REDACTED]" in sanitized

    def test_ciphertext_redacted(self):
        ciphertext = base64.b64encode(b"x" * 64).decode("ascii")

        sanitized = _sanitize_error_message(f'{{"ciphertext": "{ciphertext}"}}')

        assert ciphertext not in sanitized


class TestAuditTrail:
    """Store events reach the security audit log."""

    def test_sweeper_expiry_is_audited(self, settings, owner_public_jwk, caplog):
        app = create_app(settings=settings)
        store = app.state.session_store
        session = store.create_session(owner_public_jwk, "Sign", ttl_minutes=1)

        with caplog.at_level("INFO", logger="security.audit"):
            store.sweep(now=session.expires_at + 1)

        assert "signature_session_expired" in caplog.text
        assert session.session_id in caplog.text

    def test_keypair_never_leaves_owner(self, client, owner_public_jwk, store):
        """Only public material is stored by the relay."""
        created = _create(client, owner_public_jwk).json()

        stored = store.get_session(created["sessionId"]).public_key_jwk

        assert "d" not in stored
        assert stored == owner_public_jwk

    def test_other_owner_cannot_decrypt(self, client, session_id, owner_keypair, sample_png):
        from relay.core.crypto import DecryptionError

        client.post(f"{PREFIX}/sessions/{session_id}/submit", json=_envelope(owner_keypair, sample_png))
        data = client.get(f"{PREFIX}/sessions/{session_id}/poll", params={"timeout": 0}).json()
        intruder_private, _ = generate_keypair()

        with pytest.raises(DecryptionError):
            decrypt_payload(EncryptedEnvelope.from_dict(data["encryptedPayload"]), intruder_private)
