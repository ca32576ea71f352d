"""
Shared fixtures for relay tests.

The store runs on a fake clock so expiry and retention are driven by the
test, not by wall time. The background sweeper is never started here; tests
call store.sweep() directly.
"""
import pytest
from fastapi.testclient import TestClient

from relay.api.main import create_app
from relay.core.config import Settings
from relay.core.crypto import generate_keypair, public_key_to_jwk
from relay.core.sessions import SignatureSessionStore

START_TIME = 1_700_000_000.0

# PNG signature bytes plus a stand-in body; the relay never parses it
SAMPLE_PNG = b"\x89PNG\r\n\x1a\n" + b"\x00\x00\x00\rIHDR" + b"signature-strokes"


class FakeClock:
    """Manually advanced Unix clock."""

    def __init__(self, start: float = START_TIME):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> float:
        self.now += seconds
        return self.now


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def events():
    """Records (event, session_id) pairs emitted by the store."""
    return []


@pytest.fixture
def store(clock, events):
    return SignatureSessionStore(
        default_ttl_minutes=60,
        retention_seconds=3600,
        sweep_interval_seconds=3600,
        clock=clock,
        on_event=lambda event, session_id: events.append((event, session_id)),
    )


@pytest.fixture
def owner_keypair():
    """Owner's (private_key, public_key)."""
    return generate_keypair()


@pytest.fixture
def owner_public_jwk(owner_keypair):
    return public_key_to_jwk(owner_keypair[1])


@pytest.fixture
def sample_png():
    return SAMPLE_PNG


@pytest.fixture
def settings():
    return Settings(
        base_url="https://relay.example.org",
        rate_limit_enabled=False,
        audit_log_dir=None,
        poll_default_timeout_seconds=1.0,
        poll_max_timeout_seconds=5.0,
    )


@pytest.fixture
def app(settings, store):
    return create_app(settings=settings, store=store)


@pytest.fixture
def client(app):
    """TestClient without lifespan (sweeper stays stopped)."""
    return TestClient(app)
