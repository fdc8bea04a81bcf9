"""
TLS trust configuration for calls to the identity provider.

The IdP may sit behind a private CA, so the HTTP client used for the
token exchange trusts the system roots plus an optional PEM bundle.
The resulting SSL context is built once at startup and never modified.
"""

import logging
import ssl
from typing import Optional

import httpx
from cryptography import x509
from cryptography.hazmat.primitives import serialization

logger = logging.getLogger(__name__)


class TLSTrustLoadError(Exception):
    """Raised when a configured CA bundle cannot be read."""
    pass


def _load_pem_certificates(pem_data: bytes) -> list:
    """Parse every certificate in a PEM bundle, returning [] if none parse."""
    try:
        return x509.load_pem_x509_certificates(pem_data)
    except ValueError:
        return []


def build_ssl_context(trusted_ca_path: Optional[str] = None) -> ssl.SSLContext:
    """
    Create the client SSL context used for IdP requests.

    Args:
        trusted_ca_path: Optional PEM file appended to the system roots

    Returns:
        ssl.SSLContext with hostname checking and CERT_REQUIRED

    Raises:
        TLSTrustLoadError: If trusted_ca_path is set but unreadable
    """
    # create_default_context() loads the platform roots; an empty store is fine
    ctx = ssl.create_default_context()

    if hasattr(ssl, "OP_IGNORE_UNEXPECTED_EOF"):
        ctx.options |= ssl.OP_IGNORE_UNEXPECTED_EOF

    if not trusted_ca_path:
        return ctx

    try:
        with open(trusted_ca_path, "rb") as fh:
            pem_data = fh.read()
    except OSError as e:
        raise TLSTrustLoadError(f"Failed to read trusted CA file {trusted_ca_path!r}: {e}") from e

    certs = _load_pem_certificates(pem_data)
    if not certs:
        logger.warning(
            "No certs appended, using system certs only",
            extra={"trusted_ca_path": trusted_ca_path},
        )
        return ctx

    ctx.load_verify_locations(
        cadata="".join(c.public_bytes(serialization.Encoding.PEM).decode("ascii") for c in certs)
    )
    logger.info(
        f"Appended {len(certs)} certificate(s) from {trusted_ca_path} to the trust store",
        extra={"subjects": [c.subject.rfc4514_string() for c in certs]},
    )
    return ctx


def build_http_client(ssl_context: ssl.SSLContext, timeout: float = 10.0) -> httpx.AsyncClient:
    """
    Create the shared client for server-to-IdP calls.

    The client is closed by the server supervisor on shutdown.
    """
    return httpx.AsyncClient(
        verify=ssl_context,
        timeout=httpx.Timeout(timeout),
        headers={"Accept": "application/json"},
        follow_redirects=False,
    )
