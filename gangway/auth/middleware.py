"""
Access middleware.

``login_required`` wraps a route handler so it only runs for browsers with
a valid session; everyone else is redirected to ``/login``.
"""

import functools
import logging
from typing import Awaitable, Callable

from fastapi.responses import RedirectResponse
from starlette.requests import Request
from starlette.responses import Response

from gangway.context import get_context

logger = logging.getLogger(__name__)

Handler = Callable[..., Awaitable[Response]]
AuthCheck = Callable[[Request], bool]


def session_check(request: Request) -> bool:
    """Default auth check: does the request carry a valid session cookie?"""
    return get_context(request).sessions.is_authenticated(request)


def login_required(handler: Handler, is_authenticated: AuthCheck = session_check) -> Handler:
    """
    Wrap ``handler`` behind an authentication check.

    The returned handler keeps the wrapped handler's signature, so FastAPI
    injects the same parameters. Unauthenticated requests get a 302 to
    ``/login`` and the wrapped handler is not called; authenticated
    requests pass through untouched.
    """

    @functools.wraps(handler)
    async def wrapper(request: Request, **kwargs) -> Response:
        if not is_authenticated(request):
            logger.debug(f"Unauthenticated request to {request.url.path}, redirecting to login")
            return RedirectResponse(url="/login", status_code=302)
        return await handler(request, **kwargs)

    return wrapper
