"""
Gangway Application Factory
===========================

Gangway lets users sign in with an OAuth2/OIDC identity provider and hands
them a kubeconfig for the configured Kubernetes cluster.

Architecture:
    Browser -> Gangway -> Identity Provider (token endpoint, trusted TLS)

Routes:
    - /             : Landing page
    - /login        : Redirect to the IdP authorization endpoint
    - /callback     : Authorization code exchange, session creation
    - /commandline  : kubectl instructions (session required)
    - /kubeconf     : kubeconfig download (session required)
    - /logout       : Clear the session (session required)
    - /healthz      : Health check

Running the Service:
    gangway --config /etc/gangway/gangway.yaml

    Settings may also be given as GANGWAY_* environment variables, which
    override the config file.
"""

import argparse
import logging
import sys
from typing import Dict, List, Optional

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from gangway import __version__
from gangway.auth.routes import router as auth_router
from gangway.config import Settings, StartupConfigError, load_settings
from gangway.context import AppContext
from gangway.server import GatewayServer, ListenerBindError, RequestTimeoutMiddleware
from gangway.tls import TLSTrustLoadError


def setup_logging(log_level: str = "INFO") -> None:
    """
    Configure structured logging for the application.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
    """
    logging.basicConfig(
        level=getattr(logging, log_level.upper()),
        format='{"timestamp": "%(asctime)s", "level": "%(levelname)s", "logger": "%(name)s", "message": "%(message)s", "module": "%(module)s", "function": "%(funcName)s"}',
        handlers=[logging.StreamHandler(sys.stdout)],
        force=True,
    )
    # Requests are logged by the http logging middleware below
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)


def create_app(context: AppContext) -> FastAPI:
    """
    Application factory function.

    Creates the FastAPI application around an already-built AppContext.
    The caller owns the context and closes it on shutdown.

    Returns:
        FastAPI: Configured application instance
    """
    settings = context.settings
    access_logger = logging.getLogger("gangway.access")

    app = FastAPI(
        title="Gangway",
        description="OIDC login gateway that issues kubectl credentials",
        version=__version__,
        docs_url=None,
        redoc_url=None,
        openapi_url=None,
    )
    app.state.context = context

    app.add_middleware(RequestTimeoutMiddleware, timeout=settings.REQUEST_TIMEOUT)

    @app.middleware("http")
    async def http_logger(request: Request, call_next):
        response = await call_next(request)
        remote = request.client.host if request.client else "-"
        access_logger.info(f"{request.method} {request.url.path} {remote} {response.status_code}")
        return response

    app.include_router(auth_router)

    @app.get("/healthz", tags=["System"])
    async def health_check() -> Dict[str, str]:
        return {"status": "ok", "service": "gangway", "version": __version__}

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        """
        Global exception handler for unhandled errors.

        Logs the error and returns a standardized error response; the
        failure stays contained to this request.
        """
        logger = logging.getLogger("gangway.main")
        logger.error(
            f"Unhandled exception: {str(exc)}",
            extra={
                "path": request.url.path,
                "method": request.method,
                "remote_addr": request.client.host if request.client else "-",
                "exception_type": type(exc).__name__,
            },
            exc_info=True,
        )

        return JSONResponse(
            status_code=500,
            content={
                "error": "internal_server_error",
                "message": "An unexpected error occurred",
                "detail": str(exc) if settings.LOG_LEVEL == "DEBUG" else None,
            },
        )

    return app


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(prog="gangway", description=__doc__.splitlines()[1])
    parser.add_argument("--config", default=None, help="The config file to use.")
    return parser.parse_args(argv)


def main(argv: Optional[List[str]] = None) -> int:
    """
    Process entry point.

    Returns the exit status: 0 after a clean shutdown, 1 on startup errors.
    """
    args = parse_args(argv)

    setup_logging()
    logger = logging.getLogger("gangway.main")

    try:
        settings: Settings = load_settings(args.config)
    except StartupConfigError as e:
        logger.error(f"Could not parse config file: {e}")
        return 1

    setup_logging(settings.LOG_LEVEL)

    try:
        context = AppContext.from_settings(settings)
    except (TLSTrustLoadError, StartupConfigError) as e:
        logger.critical(f"Startup failed: {e}")
        return 1

    app = create_app(context)
    server = GatewayServer(app, settings, on_shutdown=context.aclose)

    try:
        server.run()
    except (ListenerBindError, StartupConfigError) as e:
        logger.critical(str(e))
        return 1

    return 0


if __name__ == "__main__":
    sys.exit(main())
