"""
Authentication Package

This package implements the OAuth2 authorization code flow between the
browser and the identity provider, and the cookie sessions that follow it.

Modules:
- oauth: Authorization URL building and code-for-token exchange
- session: Cookie codecs, login state nonces and browser sessions
- middleware: login_required wrapper for protected routes
- utils: ID token claim helpers
- routes: /login, /callback, /logout, /commandline, /kubeconf

The authentication flow:
1. Browser visits /login and is redirected to the IdP with a state nonce
2. User authenticates with the IdP
3. IdP redirects to /callback with an authorization code
4. Gangway checks the state, exchanges the code, and sets the session cookie
5. Browser is sent to /commandline for its kubectl credentials
"""

from .oauth import OAuth2Client, TokenExchangeError
from .session import CSRFStateError, SessionDecodeError, SessionManager, SessionTooLargeError

__all__ = [
    "OAuth2Client",
    "TokenExchangeError",
    "SessionManager",
    "SessionDecodeError",
    "CSRFStateError",
    "SessionTooLargeError",
]
