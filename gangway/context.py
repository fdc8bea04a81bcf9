"""
Application context.

Everything the request handlers share is built once at startup and kept
in one immutable ``AppContext`` stored on ``app.state.context``.
"""

import logging
from dataclasses import dataclass
from typing import Optional

import httpx
from starlette.requests import Request

from gangway.auth.oauth import OAuth2Client
from gangway.auth.session import SessionManager
from gangway.config import Settings, StartupConfigError
from gangway.kubeconfig import ClusterInfo, load_cluster_info
from gangway.tls import build_http_client, build_ssl_context

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AppContext:
    settings: Settings
    oauth: OAuth2Client
    sessions: SessionManager
    cluster: ClusterInfo
    http_client: httpx.AsyncClient

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        http_client: Optional[httpx.AsyncClient] = None,
    ) -> "AppContext":
        """
        Build the context for ``settings``.

        Args:
            settings: Loaded settings
            http_client: Client for IdP calls; built from TRUSTED_CA_PATH
                when omitted

        Raises:
            TLSTrustLoadError: If TRUSTED_CA_PATH is set but unreadable
            StartupConfigError: If the cluster CA or session key is unusable
        """
        if http_client is None:
            ssl_context = build_ssl_context(settings.TRUSTED_CA_PATH)
            http_client = build_http_client(ssl_context, timeout=settings.IDP_TIMEOUT)

        try:
            cluster = load_cluster_info(settings)
        except OSError as e:
            raise StartupConfigError(f"Could not read cluster CA {settings.CLUSTER_CA_PATH!r}: {e}") from e

        try:
            sessions = SessionManager.from_settings(settings)
        except ValueError as e:
            raise StartupConfigError(f"Invalid SESSION_ENCRYPTION_KEY: {e}") from e

        return cls(
            settings=settings,
            oauth=OAuth2Client(settings, http_client),
            sessions=sessions,
            cluster=cluster,
            http_client=http_client,
        )

    async def aclose(self) -> None:
        await self.http_client.aclose()
        logger.info("Closed identity provider HTTP client")


def get_context(request: Request) -> AppContext:
    return request.app.state.context
