"""
OAuth2 authorization code flow against the configured identity provider.

The client is built once from Settings and holds the trusted
``httpx.AsyncClient`` created by ``gangway.tls``; it never falls back to a
default client because the IdP may be signed by a private CA.
"""

import logging
from typing import Any, Dict
from urllib.parse import quote, urlencode, urlsplit, urlunsplit

import httpx
from pydantic import ValidationError

from gangway.config import Settings
from gangway.models import OAuth2Token

logger = logging.getLogger(__name__)


# =============================================================================
# Exceptions
# =============================================================================

class TokenExchangeError(Exception):
    """
    The IdP did not return a usable token.

    Attributes:
        error: OAuth2 error code from the IdP (e.g. ``invalid_grant``), if any
        status_code: HTTP status of the token response, if one was received
    """

    def __init__(self, message: str, error: str = None, status_code: int = None):
        super().__init__(message)
        self.error = error
        self.status_code = status_code


# =============================================================================
# Client
# =============================================================================

class OAuth2Client:
    """
    Immutable OAuth2 client descriptor plus the trusted HTTP client.

    Usage:
        client = OAuth2Client(settings, http_client)
        url = client.build_authorization_url(state)
        token = await client.exchange_code(code)
    """

    def __init__(self, settings: Settings, http_client: httpx.AsyncClient):
        self._client_id = settings.CLIENT_ID
        self._client_secret = settings.CLIENT_SECRET
        self._redirect_url = settings.REDIRECT_URL
        self._scopes = tuple(settings.SCOPES)
        self._authorize_url = settings.AUTHORIZE_URL
        self._token_url = settings.TOKEN_URL
        self._audience = settings.AUDIENCE
        self._http = http_client

    @property
    def scopes(self) -> tuple:
        return self._scopes

    def build_authorization_url(self, state: str) -> str:
        """
        Build the IdP authorization URL for the given state.

        Deterministic and offline. Scopes are space-joined and encoded as
        ``%20``; any query already present on AUTHORIZE_URL is preserved.

        Args:
            state: Anti-CSRF nonce round-tripped through the IdP

        Returns:
            Absolute authorization URL
        """
        params = {
            "client_id": self._client_id,
            "redirect_uri": self._redirect_url,
            "response_type": "code",
            "scope": " ".join(self._scopes),
            "state": state,
        }
        if self._audience:
            params["audience"] = self._audience

        query = urlencode(params, quote_via=quote)

        parts = urlsplit(self._authorize_url)
        if parts.query:
            query = f"{parts.query}&{query}"

        return urlunsplit((parts.scheme, parts.netloc, parts.path, query, parts.fragment))

    async def exchange_code(self, code: str) -> OAuth2Token:
        """
        Exchange an authorization code for tokens.

        Args:
            code: Authorization code from the callback

        Returns:
            Parsed OAuth2Token

        Raises:
            TokenExchangeError: On network failure, a non-2xx response, or
                a payload that is not a valid token response
        """
        payload = {
            "grant_type": "authorization_code",
            "code": code,
            "redirect_uri": self._redirect_url,
        }

        try:
            response = await self._http.post(
                self._token_url,
                data=payload,
                auth=(self._client_id, self._client_secret),
                headers={"Content-Type": "application/x-www-form-urlencoded"},
            )
        except httpx.HTTPError as e:
            raise TokenExchangeError(f"Token request to {self._token_url} failed: {e}") from e

        if not response.is_success:
            error_data = _json_or_empty(response)
            error = error_data.get("error")
            error_msg = error_data.get("error_description") or error or "Token exchange failed"
            raise TokenExchangeError(
                f"Token exchange failed: {error_msg}",
                error=error,
                status_code=response.status_code,
            )

        try:
            token = OAuth2Token.model_validate(response.json())
        except (ValueError, ValidationError) as e:
            raise TokenExchangeError(
                f"Malformed token response: {e}",
                status_code=response.status_code,
            ) from e

        logger.debug(
            "Exchanged authorization code",
            extra={"token_type": token.token_type, "has_id_token": token.id_token is not None},
        )
        return token


def _json_or_empty(response: httpx.Response) -> Dict[str, Any]:
    try:
        data = response.json()
    except ValueError:
        return {}
    return data if isinstance(data, dict) else {}
