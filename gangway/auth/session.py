"""
Browser Session Management Module
=================================

Issues, validates and destroys cookie-backed browser sessions and the
single-use login state nonces that protect the callback from CSRF.

Cookie contents are produced by a ``SessionCodec``:

- ``JWTSessionCodec``: HS256-signed JWT (default)
- ``FernetSessionCodec``: encrypted token, used when an encryption key is
  configured so IdP tokens are opaque to the browser

Only ``SessionManager`` interprets decoded cookie contents.
"""

import asyncio
import json
import logging
import secrets
import time
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional, Protocol

import jwt
from cryptography.fernet import Fernet, InvalidToken
from jwt.exceptions import InvalidTokenError
from pydantic import ValidationError
from starlette.requests import Request
from starlette.responses import Response

from gangway.config import Settings
from gangway.models import OAuth2Token, SessionData

logger = logging.getLogger(__name__)

# Browsers drop cookies whose Set-Cookie header is larger than this
MAX_COOKIE_SIZE = 4096
# Consumed login nonces remembered at most; about 150 bytes each
MAX_CONSUMED_NONCES = 10000


# =============================================================================
# Exceptions
# =============================================================================

class SessionDecodeError(Exception):
    """Cookie could not be decoded, verified, or has expired."""
    pass


class CSRFStateError(Exception):
    """The callback state does not match an unused login nonce."""
    pass


class SessionTooLargeError(Exception):
    """The encoded session does not fit in a browser cookie."""
    pass


# =============================================================================
# Codecs
# =============================================================================

class SessionCodec(Protocol):
    """Turns session dictionaries into opaque cookie values and back."""

    def encode(self, data: Dict[str, Any], max_age: int) -> str:
        ...

    def decode(self, token: str) -> Dict[str, Any]:
        ...


class JWTSessionCodec:
    """Signed (not encrypted) cookie values using PyJWT."""

    def __init__(self, secret: str, issuer: str = "gangway", algorithm: str = "HS256"):
        self._secret = secret
        self._issuer = issuer
        self._algorithm = algorithm

    def encode(self, data: Dict[str, Any], max_age: int) -> str:
        # Copy to avoid mutating the input
        payload = data.copy()
        now = datetime.now(timezone.utc)
        payload.update({
            "iat": now,
            "exp": now + timedelta(seconds=max_age),
            "iss": self._issuer,
        })
        return jwt.encode(payload, self._secret, algorithm=self._algorithm)

    def decode(self, token: str) -> Dict[str, Any]:
        try:
            return jwt.decode(
                token,
                self._secret,
                algorithms=[self._algorithm],
                issuer=self._issuer,
                options={"require": ["exp", "iat", "iss"]},
            )
        except InvalidTokenError as e:
            raise SessionDecodeError(str(e)) from e


class FernetSessionCodec:
    """Encrypted cookie values using cryptography's Fernet."""

    def __init__(self, key: str):
        self._fernet = Fernet(key)

    def encode(self, data: Dict[str, Any], max_age: int) -> str:
        payload = dict(data, exp=int(time.time()) + max_age)
        return self._fernet.encrypt(json.dumps(payload).encode("utf-8")).decode("ascii")

    def decode(self, token: str) -> Dict[str, Any]:
        try:
            payload = json.loads(self._fernet.decrypt(token.encode("ascii")))
        except (InvalidToken, UnicodeError, ValueError) as e:
            raise SessionDecodeError(f"Undecodable session cookie: {e!r}") from e

        if not isinstance(payload, dict) or not isinstance(payload.get("exp"), int):
            raise SessionDecodeError("Session cookie missing expiry")
        if payload["exp"] < time.time():
            raise SessionDecodeError("Session cookie has expired")
        return payload


def build_session_codec(settings: Settings) -> SessionCodec:
    """Pick the codec for the configured keys."""
    if settings.SESSION_ENCRYPTION_KEY:
        return FernetSessionCodec(settings.SESSION_ENCRYPTION_KEY)
    return JWTSessionCodec(settings.SESSION_SECURITY_KEY)


# =============================================================================
# Session Manager
# =============================================================================

class SessionManager:
    """
    Cookie-backed session store.

    Two cookies are used: a short-lived state cookie that carries the login
    nonce between /login and /callback, and the session cookie written
    after a successful token exchange. Consumed nonces are remembered until
    they would have expired anyway, so a replayed state cookie is rejected.
    """

    SESSION_COOKIE = "gangway_session"
    STATE_COOKIE = "gangway_state"

    def __init__(
        self,
        codec: SessionCodec,
        session_max_age: int = 86400,
        state_max_age: int = 600,
        secure_cookies: bool = True,
        max_consumed_nonces: int = MAX_CONSUMED_NONCES,
    ):
        self._codec = codec
        self.session_max_age = session_max_age
        self.state_max_age = state_max_age
        self._secure = secure_cookies

        # nonce -> monotonic deadline after which it may be forgotten;
        # insertion order is deadline order
        self._consumed: Dict[str, float] = {}
        self._max_consumed = max_consumed_nonces
        self._lock = asyncio.Lock()

    @classmethod
    def from_settings(cls, settings: Settings) -> "SessionManager":
        return cls(
            build_session_codec(settings),
            session_max_age=settings.SESSION_MAX_AGE,
            state_max_age=settings.STATE_MAX_AGE,
            secure_cookies=settings.SECURE_COOKIES,
        )

    # -------------------------------------------------------------------------
    # Login state
    # -------------------------------------------------------------------------

    def new_login_state(self, response: Response) -> str:
        """
        Generate a login nonce and bind it to this browser.

        Args:
            response: Response that will carry the state cookie

        Returns:
            The nonce to embed as the ``state`` authorization parameter
        """
        nonce = secrets.token_urlsafe(32)
        cookie = self._codec.encode({"typ": "state", "nonce": nonce}, self.state_max_age)
        self._set_cookie(response, self.STATE_COOKIE, cookie, self.state_max_age)
        return nonce

    async def validate_and_consume_state(self, request: Request, supplied_state: str) -> bool:
        """
        Check the callback ``state`` against this browser's login nonce.

        On success the nonce is marked consumed; a second call with the
        same nonce fails even if the browser replays the state cookie.

        Returns:
            True if the state matched an unused nonce, False otherwise
        """
        data = self._decode_cookie(request, self.STATE_COOKIE, "state")
        if data is None:
            logger.info("Callback without a valid state cookie")
            return False

        expected = data.get("nonce")
        if not isinstance(expected, str) or not secrets.compare_digest(
            expected.encode("utf-8"), supplied_state.encode("utf-8")
        ):
            logger.info("Callback state does not match login nonce")
            return False

        async with self._lock:
            now = time.monotonic()
            self._prune(now)
            if expected in self._consumed:
                logger.warning("Login nonce replayed")
                return False
            self._evict_oldest()
            self._consumed[expected] = now + self.state_max_age

        return True

    async def require_state(self, request: Request, supplied_state: str) -> None:
        """Like validate_and_consume_state, but raises CSRFStateError on failure."""
        if not await self.validate_and_consume_state(request, supplied_state):
            raise CSRFStateError("Callback state does not match an unused login nonce")

    def clear_login_state(self, response: Response) -> None:
        response.delete_cookie(self.STATE_COOKIE, path="/")

    def _prune(self, now: float) -> None:
        expired = [nonce for nonce, deadline in self._consumed.items() if deadline <= now]
        for nonce in expired:
            del self._consumed[nonce]

    def _evict_oldest(self) -> None:
        while len(self._consumed) >= self._max_consumed:
            oldest = next(iter(self._consumed))
            del self._consumed[oldest]
            logger.warning("Consumed nonce registry full, forgetting the oldest nonce")

    # -------------------------------------------------------------------------
    # Authenticated session
    # -------------------------------------------------------------------------

    def establish_session(self, response: Response, token: OAuth2Token) -> SessionData:
        """
        Store a fresh session for ``token`` in the session cookie.

        If the cookie would exceed MAX_COOKIE_SIZE the refresh token is left
        out; kubectl then needs a new login once the ID token expires.

        Raises:
            SessionTooLargeError: If the ID token alone does not fit
        """
        session = SessionData.from_token(token)
        cookie = self._encode_session(session)
        size = self._cookie_size(self.SESSION_COOKIE, cookie, self.session_max_age)

        if size > MAX_COOKIE_SIZE and session.refresh_token:
            logger.warning(f"Session cookie is {size} bytes, storing it without the refresh token")
            session = session.model_copy(update={"refresh_token": None})
            cookie = self._encode_session(session)
            size = self._cookie_size(self.SESSION_COOKIE, cookie, self.session_max_age)

        if size > MAX_COOKIE_SIZE:
            raise SessionTooLargeError(f"Session cookie is {size} bytes, limit is {MAX_COOKIE_SIZE}")

        self._set_cookie(response, self.SESSION_COOKIE, cookie, self.session_max_age)
        return session

    def _encode_session(self, session: SessionData) -> str:
        data = session.model_dump(mode="json")
        data["typ"] = "session"
        return self._codec.encode(data, self.session_max_age)

    def _cookie_size(self, name: str, value: str, max_age: int) -> int:
        scratch = Response()
        self._set_cookie(scratch, name, value, max_age)
        return len(scratch.headers["set-cookie"])

    def get_session(self, request: Request) -> Optional[SessionData]:
        data = self._decode_cookie(request, self.SESSION_COOKIE, "session")
        if data is None:
            return None
        try:
            return SessionData.model_validate(
                {k: v for k, v in data.items() if k in SessionData.model_fields}
            )
        except ValidationError as e:
            logger.debug(f"Discarding malformed session: {e}")
            return None

    def is_authenticated(self, request: Request) -> bool:
        return self.get_session(request) is not None

    def destroy(self, response: Response) -> None:
        """Clear the session and any pending login state."""
        response.delete_cookie(self.SESSION_COOKIE, path="/")
        response.delete_cookie(self.STATE_COOKIE, path="/")

    # -------------------------------------------------------------------------
    # Helpers
    # -------------------------------------------------------------------------

    def _decode_cookie(self, request: Request, name: str, typ: str) -> Optional[Dict[str, Any]]:
        raw = request.cookies.get(name)
        if not raw:
            return None
        try:
            data = self._codec.decode(raw)
        except SessionDecodeError as e:
            logger.debug(f"Ignoring {name} cookie: {e}")
            return None
        if data.get("typ") != typ:
            logger.debug(f"Ignoring {name} cookie of type {data.get('typ')!r}")
            return None
        return data

    def _set_cookie(self, response: Response, name: str, value: str, max_age: int) -> None:
        response.set_cookie(
            name,
            value,
            max_age=max_age,
            path="/",
            secure=self._secure,
            httponly=True,
            samesite="lax",
        )


__all__ = [
    "SessionCodec",
    "JWTSessionCodec",
    "FernetSessionCodec",
    "build_session_codec",
    "SessionManager",
    "SessionDecodeError",
    "CSRFStateError",
    "SessionTooLargeError",
]
