"""
ID token helpers.

The ID token stored in the session came straight from the IdP's token
endpoint over the trusted TLS client, so its claims are read without
re-verifying the signature. These helpers only extract identity and
expiry information for rendering the kubeconfig.
"""

import time
from datetime import datetime, timezone
from typing import Any, Dict, Optional

import jwt
from jwt.exceptions import InvalidTokenError


def decode_id_token_claims(id_token: str) -> Dict[str, Any]:
    """
    Decode an ID token's claims without verifying the signature.

    Args:
        id_token: JWT string

    Returns:
        Claims dictionary

    Raises:
        InvalidTokenError: If the token is not a well-formed JWT
    """
    claims = jwt.decode(id_token, options={"verify_signature": False})
    if not isinstance(claims, dict):
        raise InvalidTokenError("ID token payload is not a JSON object")
    return claims


def safe_claims(id_token: str) -> Optional[Dict[str, Any]]:
    """Like decode_id_token_claims, but returns None for malformed tokens."""
    try:
        return decode_id_token_claims(id_token)
    except InvalidTokenError:
        return None


def extract_claim(claims: Dict[str, Any], claim_name: str) -> Optional[str]:
    """
    Return a string claim, or None if absent or not a non-empty string.
    """
    value = claims.get(claim_name)
    if isinstance(value, str) and value.strip():
        return value.strip()
    return None


def get_username(claims: Dict[str, Any], username_claim: str) -> Optional[str]:
    """
    Extract the kubeconfig user name.

    Falls back to ``sub`` when the configured claim is missing, since every
    OIDC ID token carries a subject.
    """
    return extract_claim(claims, username_claim) or extract_claim(claims, "sub")


def get_token_expiry(claims: Dict[str, Any]) -> Optional[datetime]:
    """
    Extract expiry datetime from token claims.

    Returns:
        Expiry datetime in UTC, or None if not present
    """
    exp = claims.get("exp")
    if isinstance(exp, (int, float)):
        return datetime.fromtimestamp(exp, tz=timezone.utc)
    return None


def is_token_expired(claims: Dict[str, Any], leeway_seconds: int = 10) -> bool:
    """
    Check if token is expired.

    Tokens without an ``exp`` claim are treated as not expiring; the
    session cookie's own lifetime still bounds them.

    Args:
        claims: Decoded token claims
        leeway_seconds: Clock skew tolerance
    """
    exp = claims.get("exp")
    if not isinstance(exp, (int, float)):
        return False

    return time.time() > (exp + leeway_seconds)
