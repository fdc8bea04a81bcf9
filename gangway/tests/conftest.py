"""
Shared fixtures: settings, a mock identity provider, and test certificates.
"""

import datetime
import time
from typing import Any, Callable, Dict, List, Optional
from urllib.parse import parse_qs

import httpx
import jwt
import pytest
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.x509.oid import NameOID
from fastapi.testclient import TestClient

from gangway.config import Settings
from gangway.context import AppContext
from gangway.main import create_app

TEST_IDP_KEY = "test-idp-signing-key-0123456789abcdef"
TEST_SESSION_KEY = "test-session-secret-0123456789abcdef"


def make_settings(**overrides) -> Settings:
    values = dict(
        CLIENT_ID="gangway-client",
        CLIENT_SECRET="gangway-secret",
        REDIRECT_URL="http://testserver/callback",
        SCOPES=["openid", "profile"],
        AUTHORIZE_URL="https://idp/auth",
        TOKEN_URL="https://idp/token",
        CLUSTER_NAME="test-cluster",
        API_SERVER_URL="https://k8s.example.com:6443",
        SESSION_SECURITY_KEY=TEST_SESSION_KEY,
        SECURE_COOKIES=False,
        HOST="127.0.0.1",
        PORT=8080,
        SHUTDOWN_TIMEOUT=5,
    )
    values.update(overrides)
    return Settings(**values)


def create_id_token(exp_delta_seconds: int = 3600, **claims) -> str:
    """
    Create an ID token as the mock IdP would issue it.

    Args:
        exp_delta_seconds: Token expiry relative to now
        **claims: Claims overriding the defaults
    """
    now = int(time.time())
    payload = {
        "iss": "https://idp/",
        "sub": "user-sub-123",
        "aud": "gangway-client",
        "iat": now,
        "exp": now + exp_delta_seconds,
        "nickname": "jdoe",
        "email": "jdoe@example.com",
    }
    payload.update(claims)
    return jwt.encode(payload, TEST_IDP_KEY, algorithm="HS256")


class MockIdP:
    """
    Token endpoint double for httpx.MockTransport.

    Each authorization code can be redeemed once, like a real IdP; a
    second redemption gets ``invalid_grant``.
    """

    def __init__(self):
        self.id_token = create_id_token()
        self.refresh_token = "refresh-token-abc"
        self.requests: List[httpx.Request] = []
        self.redeemed = set()
        self.override: Optional[Callable[[httpx.Request], httpx.Response]] = None

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.override is not None:
            return self.override(request)

        form = {k: v[0] for k, v in parse_qs(request.content.decode()).items()}
        code = form.get("code")
        if form.get("grant_type") != "authorization_code" or not code:
            return httpx.Response(400, json={"error": "invalid_request"})
        if code in self.redeemed:
            return httpx.Response(
                400,
                json={"error": "invalid_grant", "error_description": "Authorization code already used"},
            )
        self.redeemed.add(code)

        body: Dict[str, Any] = {
            "access_token": "access-token-xyz",
            "token_type": "Bearer",
            "expires_in": 3600,
            "id_token": self.id_token,
            "refresh_token": self.refresh_token,
        }
        return httpx.Response(200, json=body)


@pytest.fixture
def settings() -> Settings:
    return make_settings()


@pytest.fixture
def idp() -> MockIdP:
    return MockIdP()


@pytest.fixture
def idp_http_client(idp) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.MockTransport(idp.handler))


@pytest.fixture
def context(settings, idp_http_client) -> AppContext:
    return AppContext.from_settings(settings, http_client=idp_http_client)


@pytest.fixture
def client(context) -> TestClient:
    with TestClient(create_app(context)) as test_client:
        yield test_client


def start_login(client: TestClient) -> str:
    """Hit /login and return the state nonce from the redirect."""
    response = client.get("/login", follow_redirects=False)
    assert response.status_code == 302
    query = parse_qs(httpx.URL(response.headers["location"]).query.decode())
    return query["state"][0]


def login(client: TestClient, code: str = "auth-code-1") -> httpx.Response:
    """Complete a full login and return the callback response."""
    state = start_login(client)
    return client.get("/callback", params={"code": code, "state": state}, follow_redirects=False)


# =============================================================================
# Certificates
# =============================================================================

def _name(common_name: str) -> x509.Name:
    return x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, common_name)])


def generate_ca(common_name: str = "Gangway Test CA"):
    key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
    now = datetime.datetime.now(datetime.timezone.utc)
    cert = (
        x509.CertificateBuilder()
        .subject_name(_name(common_name))
        .issuer_name(_name(common_name))
        .public_key(key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(now - datetime.timedelta(days=1))
        .not_valid_after(now + datetime.timedelta(days=30))
        .add_extension(x509.BasicConstraints(ca=True, path_length=None), critical=True)
        .add_extension(
            x509.KeyUsage(
                digital_signature=True, content_commitment=False, key_encipherment=False,
                data_encipherment=False, key_agreement=False, key_cert_sign=True,
                crl_sign=True, encipher_only=False, decipher_only=False,
            ),
            critical=True,
        )
        .add_extension(x509.SubjectKeyIdentifier.from_public_key(key.public_key()), critical=False)
        .sign(key, hashes.SHA256())
    )
    return cert, key


def generate_leaf(ca_cert, ca_key, hostname: str = "localhost"):
    key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
    now = datetime.datetime.now(datetime.timezone.utc)
    cert = (
        x509.CertificateBuilder()
        .subject_name(_name(hostname))
        .issuer_name(ca_cert.subject)
        .public_key(key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(now - datetime.timedelta(days=1))
        .not_valid_after(now + datetime.timedelta(days=30))
        .add_extension(x509.SubjectAlternativeName([x509.DNSName(hostname)]), critical=False)
        .add_extension(x509.BasicConstraints(ca=False, path_length=None), critical=True)
        .add_extension(x509.ExtendedKeyUsage([x509.oid.ExtendedKeyUsageOID.SERVER_AUTH]), critical=False)
        .add_extension(
            x509.AuthorityKeyIdentifier.from_issuer_public_key(ca_key.public_key()), critical=False
        )
        .sign(ca_key, hashes.SHA256())
    )
    return cert, key


def cert_pem(cert) -> bytes:
    return cert.public_bytes(serialization.Encoding.PEM)


def key_pem(key) -> bytes:
    return key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption(),
    )
