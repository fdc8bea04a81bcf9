"""
Data Models Module

Pydantic models for the payloads Gangway exchanges with the identity
provider and stores in the browser session.
"""

from datetime import datetime, timezone
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field


# ============================================================================
# Identity Provider Models
# ============================================================================

class OAuth2Token(BaseModel):
    """Token endpoint response (RFC 6749 section 5.1)."""
    model_config = ConfigDict(extra="allow")

    access_token: str = Field(..., min_length=1, description="Access token issued by the IdP")
    token_type: str = Field(default="Bearer", description="Token type")
    id_token: Optional[str] = Field(None, description="OIDC ID token (JWT)")
    refresh_token: Optional[str] = Field(None, description="Refresh token if offline access was granted")
    expires_in: Optional[int] = Field(None, description="Access token lifetime in seconds")
    scope: Optional[str] = Field(None, description="Granted scopes")


# ============================================================================
# Session Models
# ============================================================================

class SessionData(BaseModel):
    """Authenticated browser session. Replaced wholesale, never mutated."""
    model_config = ConfigDict(frozen=True)

    id_token: str = Field(..., min_length=1, description="OIDC ID token carrying the identity")
    refresh_token: Optional[str] = Field(None, description="IdP refresh token")
    issued_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    @classmethod
    def from_token(cls, token: OAuth2Token) -> "SessionData":
        return cls(
            id_token=token.id_token,
            refresh_token=token.refresh_token,
        )
