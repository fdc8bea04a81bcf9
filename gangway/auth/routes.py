"""
Authentication routes for the OAuth2 authorization code flow.

Browser flow:
    /login      -> IdP authorization endpoint (state nonce in a cookie)
    /callback   <- IdP, state checked, code exchanged, session created
    /commandline   kubectl instructions for the session's identity
    /kubeconf      the same kubeconfig as a download
    /logout        session cleared
"""

import logging
from typing import Optional

from fastapi import APIRouter, Query, Request
from fastapi.responses import HTMLResponse, PlainTextResponse, RedirectResponse
from starlette.responses import Response

from gangway.auth.middleware import login_required
from gangway.auth.oauth import TokenExchangeError
from gangway.auth.session import CSRFStateError, SessionTooLargeError
from gangway.auth.utils import extract_claim, get_username, is_token_expired, safe_claims
from gangway.context import AppContext, get_context
from gangway.kubeconfig import UserCredential, kubectl_commands, render_kubeconfig
from gangway.pages import render_commandline_page, render_error_page, render_home_page

logger = logging.getLogger(__name__)


# =============================================================================
# Router Setup
# =============================================================================

router = APIRouter(tags=["authentication"])


def _client_addr(request: Request) -> str:
    return request.client.host if request.client else "-"


# =============================================================================
# Public Endpoints
# =============================================================================

@router.get("/", response_class=HTMLResponse)
async def home(request: Request):
    """Landing page; identical for anonymous and signed-in browsers."""
    ctx = get_context(request)
    return render_home_page(ctx.cluster.name)


@router.get("/login", response_class=RedirectResponse)
async def login(request: Request):
    """
    Start the authorization code flow.

    Generates the state nonce, stores it in the state cookie and redirects
    the browser to the IdP.
    """
    ctx = get_context(request)

    response = RedirectResponse(url="/", status_code=302)
    state = ctx.sessions.new_login_state(response)
    response.headers["location"] = ctx.oauth.build_authorization_url(state)

    return response


@router.get("/callback", response_class=HTMLResponse)
async def callback(
    request: Request,
    code: Optional[str] = Query(None, description="Authorization code from the IdP"),
    state: Optional[str] = Query(None, description="State parameter for CSRF protection"),
    error: Optional[str] = Query(None, description="Error code if authentication failed"),
    error_description: Optional[str] = Query(None, description="Error description"),
):
    """
    Handle the redirect back from the IdP.

    Responses:
        302 to /commandline on success
        400 when the IdP reported an error or code/state are missing
        403 when the state does not match an unused login nonce
        502 when the code cannot be exchanged for an ID token
    """
    ctx = get_context(request)

    if error:
        logger.warning(
            f"IdP returned error on callback: {error}",
            extra={"error_description": error_description, "remote_addr": _client_addr(request)},
        )
        return render_error_page(
            title="Authentication Failed",
            message=f"Unable to authenticate: {error_description or error}",
        )

    if not code or not state:
        return render_error_page(
            title="Invalid Request",
            message="Missing required parameters (code or state)",
        )

    try:
        await ctx.sessions.require_state(request, state)
    except CSRFStateError:
        logger.warning(
            "Rejected callback with invalid state",
            extra={"method": request.method, "path": request.url.path, "remote_addr": _client_addr(request)},
        )
        # Leave the state cookie alone; it may belong to a real login still in progress
        return render_error_page(
            title="Security Error",
            message="Invalid state parameter. This may be a CSRF attack or an expired login.",
            status_code=403,
        )

    try:
        token = await ctx.oauth.exchange_code(code)
        if not token.id_token:
            raise TokenExchangeError("No ID token received from identity provider")
    except TokenExchangeError as e:
        logger.error(
            f"Token exchange failed: {e}",
            extra={
                "idp_error": e.error,
                "idp_status": e.status_code,
                "method": request.method,
                "path": request.url.path,
                "remote_addr": _client_addr(request),
            },
        )
        response = render_error_page(
            title="Authentication Error",
            message="Unable to obtain a token from the identity provider. Please sign in again.",
            status_code=502,
        )
        ctx.sessions.clear_login_state(response)
        return response

    response = RedirectResponse(url="/commandline", status_code=302)
    ctx.sessions.clear_login_state(response)
    try:
        ctx.sessions.establish_session(response, token)
    except SessionTooLargeError as e:
        logger.error(
            f"Could not store session: {e}",
            extra={"method": request.method, "path": request.url.path, "remote_addr": _client_addr(request)},
        )
        response = render_error_page(
            title="Authentication Error",
            message="The identity provider returned a token too large to store in a browser session.",
            show_retry=False,
            status_code=500,
        )
        ctx.sessions.clear_login_state(response)
        return response

    logger.info("Session established", extra={"remote_addr": _client_addr(request)})
    return response


# =============================================================================
# Session-Protected Endpoints
# =============================================================================

def _user_credential(ctx: AppContext, request: Request) -> Optional[UserCredential]:
    """
    Build the credential for the session's identity.

    Returns None when the session is gone or its ID token is malformed or
    expired; callers then force a new login.
    """
    session = ctx.sessions.get_session(request)
    if session is None:
        return None

    claims = safe_claims(session.id_token)
    if claims is None:
        logger.warning("Session holds a malformed ID token")
        return None
    if is_token_expired(claims):
        logger.info("ID token in session has expired")
        return None

    username = get_username(claims, ctx.settings.USERNAME_CLAIM)
    if not username:
        logger.warning(f"ID token has neither {ctx.settings.USERNAME_CLAIM!r} nor 'sub'")
        return None

    return UserCredential(
        username=username,
        email=extract_claim(claims, ctx.settings.EMAIL_CLAIM),
        issuer=extract_claim(claims, "iss"),
        id_token=session.id_token,
        refresh_token=session.refresh_token,
    )


def _relogin(ctx: AppContext) -> Response:
    response = RedirectResponse(url="/login", status_code=302)
    ctx.sessions.destroy(response)
    return response


async def logout(request: Request):
    ctx = get_context(request)
    response = RedirectResponse(url="/", status_code=302)
    ctx.sessions.destroy(response)
    return response


async def commandline(request: Request):
    """kubectl instructions and kubeconfig for the signed-in user."""
    ctx = get_context(request)
    user = _user_credential(ctx, request)
    if user is None:
        return _relogin(ctx)

    return render_commandline_page(
        cluster_name=ctx.cluster.name,
        username=user.username,
        email=user.email,
        commands=kubectl_commands(ctx.cluster, user),
        kubeconfig_yaml=render_kubeconfig(ctx.cluster, user),
    )


async def kubeconf(request: Request):
    """Download the kubeconfig."""
    ctx = get_context(request)
    user = _user_credential(ctx, request)
    if user is None:
        return _relogin(ctx)

    return PlainTextResponse(
        content=render_kubeconfig(ctx.cluster, user),
        media_type="application/x-yaml",
        headers={"Content-Disposition": 'attachment; filename="kubeconfig"'},
    )


router.add_api_route("/logout", login_required(logout), methods=["GET"], response_class=RedirectResponse)
router.add_api_route("/commandline", login_required(commandline), methods=["GET"], response_class=HTMLResponse)
router.add_api_route("/kubeconf", login_required(kubeconf), methods=["GET"], response_class=PlainTextResponse)
