# optiroute/conftest.py
import base64

import httpx
import pytest
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from fastapi.testclient import TestClient
from unittest.mock import Mock

from optiroute.core.clerk_auth import create_test_jwt, set_jwks_provider_for_tests
from optiroute.core.config import settings
from optiroute.tests.mocks import TEST_USER_ID, FakeClerk, FakeHere, InMemoryProfileStore


def _b64url_int(val: int) -> str:
    return base64.urlsafe_b64encode(val.to_bytes((val.bit_length() + 7) // 8, "big")).rstrip(b"=").decode("ascii")


@pytest.fixture(scope="session")
def rsa_material():
    """(private PEM, public PEM, JWKS) for signing test session tokens offline."""
    key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
    private_pem = key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption(),
    ).decode("ascii")
    public_pem = key.public_key().public_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PublicFormat.SubjectPublicKeyInfo,
    ).decode("ascii")
    pub_numbers = key.public_key().public_numbers()
    jwks = {
        "keys": [
            {
                "kid": "test-kid",
                "kty": "RSA",
                "use": "sig",
                "alg": "RS256",
                "n": _b64url_int(pub_numbers.n),
                "e": _b64url_int(pub_numbers.e),
            }
        ]
    }
    return private_pem, public_pem, jwks


@pytest.fixture(autouse=True)
def test_settings(monkeypatch, rsa_material):
    """Deterministic configuration for every test; no real keys, no network."""
    _, public_pem, _ = rsa_material
    monkeypatch.setattr(settings, "ENV", "test")
    monkeypatch.setattr(settings, "HERE_API_KEY", "here-test-key")
    monkeypatch.setattr(settings, "STRIPE_SECRET_KEY", "sk_test_123")
    monkeypatch.setattr(settings, "STRIPE_WEBHOOK_SECRET", "whsec_test")
    monkeypatch.setattr(settings, "STRIPE_PRICE_PRO", "price_pro")
    monkeypatch.setattr(settings, "STRIPE_PRICE_UNLIMITED", "price_unlimited")
    monkeypatch.setattr(settings, "CLERK_SECRET_KEY", "sk_clerk_test")
    monkeypatch.setattr(settings, "CLERK_JWT_KEY", public_pem)
    monkeypatch.setattr(settings, "CLERK_ISSUER", None)
    monkeypatch.setattr(settings, "CLERK_AUDIENCE", None)
    monkeypatch.setattr(settings, "CLERK_JWKS_URL", None)
    monkeypatch.setattr(settings, "NEXT_PUBLIC_APP_URL", "https://app.test")
    monkeypatch.setattr(settings, "BATCH_GEOCODE_DELAY_SECONDS", 0.0)
    yield
    set_jwks_provider_for_tests(None)


@pytest.fixture
def auth_headers(rsa_material):
    private_pem, _, _ = rsa_material
    token = create_test_jwt(private_pem, sub=TEST_USER_ID)
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def profile_store():
    return InMemoryProfileStore()


@pytest.fixture
def fake_here():
    return FakeHere()


@pytest.fixture
def fake_clerk():
    return FakeClerk()


@pytest.fixture
def billing_provider():
    """Mock BillingProvider; tests set return values per method."""
    return Mock()


@pytest.fixture
def app_client(fake_here, profile_store, fake_clerk, billing_provider):
    from optiroute.api import deps
    from optiroute.main import create_app

    app = create_app()
    http = httpx.AsyncClient(transport=httpx.MockTransport(fake_here.handler))
    app.dependency_overrides[deps.get_http_client] = lambda: http
    app.dependency_overrides[deps.get_profile_store] = lambda: profile_store
    app.dependency_overrides[deps.get_clerk_client] = lambda: fake_clerk
    app.dependency_overrides[deps.get_billing_provider] = lambda: billing_provider

    with TestClient(app, raise_server_exceptions=False) as client:
        yield client
    app.dependency_overrides.clear()
