"""
HTTP server supervisor.

Runs the ASGI app on uvicorn inside our own event loop:

- the listening socket is bound here, so a bind failure is reported before
  anything else starts
- one task runs uvicorn's serve loop, the main coroutine waits for
  SIGINT/SIGTERM and then asks uvicorn to stop accepting and drain
- the drain is bounded; connections still open at the deadline are
  abandoned
- a connection that has not delivered complete request headers within
  REQUEST_TIMEOUT is closed
"""

import asyncio
import functools
import logging
import signal
import socket
import ssl
from typing import Awaitable, Callable, Optional

import h11
import uvicorn
from starlette.responses import PlainTextResponse
from starlette.types import ASGIApp, Message, Receive, Scope, Send
from uvicorn.protocols.http.h11_impl import H11Protocol

from gangway.config import Settings, StartupConfigError

logger = logging.getLogger(__name__)

HTTP_SERVER_BACKLOG = 2048
# Extra time granted to uvicorn beyond its own graceful shutdown timeout
SHUTDOWN_GRACE_SECONDS = 5.0


class ListenerBindError(Exception):
    """The listening socket could not be bound."""
    pass


# =============================================================================
# Request timeout
# =============================================================================

class RequestTimeoutMiddleware:
    """
    Bound the time spent on each HTTP request.

    If the handler has not started a response when the deadline passes, a
    504 is sent; if it has, the response is abandoned and uvicorn closes
    the connection.
    """

    def __init__(self, app: ASGIApp, timeout: float = 10.0):
        self.app = app
        self.timeout = timeout

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        response_started = False

        async def send_wrapper(message: Message) -> None:
            nonlocal response_started
            if message["type"] == "http.response.start":
                response_started = True
            await send(message)

        try:
            await asyncio.wait_for(self.app(scope, receive, send_wrapper), timeout=self.timeout)
        except asyncio.TimeoutError:
            client = scope.get("client") or ("-", 0)
            logger.warning(
                f"Request exceeded {self.timeout}s deadline",
                extra={"method": scope.get("method"), "path": scope.get("path"), "remote_addr": client[0]},
            )
            if not response_started:
                response = PlainTextResponse("Request timed out", status_code=504)
                await response(scope, receive, send)


class HeaderTimeoutProtocol(H11Protocol):
    """
    uvicorn's h11 protocol with a deadline for receiving request headers.

    A timer starts when the connection opens and again after every
    completed response; it is cancelled once h11 has parsed a full request
    line and headers. When it fires the transport is closed. Body reads and
    handler time are bounded by RequestTimeoutMiddleware instead.
    """

    def __init__(self, *args, header_timeout: float = 10.0, **kwargs):
        super().__init__(*args, **kwargs)
        self.header_timeout = header_timeout
        self._header_timer: Optional[asyncio.TimerHandle] = None

    def connection_made(self, transport: asyncio.Transport) -> None:
        super().connection_made(transport)
        self._arm_header_timer()

    def connection_lost(self, exc: Optional[Exception]) -> None:
        self._cancel_header_timer()
        super().connection_lost(exc)

    def data_received(self, data: bytes) -> None:
        super().data_received(data)
        if self.conn.their_state is not h11.IDLE:
            self._cancel_header_timer()

    def on_response_complete(self) -> None:
        super().on_response_complete()
        # A pipelined request may already be in progress
        if not self.transport.is_closing() and self.conn.their_state is h11.IDLE:
            self._arm_header_timer()

    def _arm_header_timer(self) -> None:
        self._cancel_header_timer()
        self._header_timer = self.loop.call_later(self.header_timeout, self._header_timeout_expired)

    def _cancel_header_timer(self) -> None:
        if self._header_timer is not None:
            self._header_timer.cancel()
            self._header_timer = None

    def _header_timeout_expired(self) -> None:
        self._header_timer = None
        if not self.transport.is_closing():
            logger.info(f"Closing connection without complete request headers after {self.header_timeout}s")
            self.transport.close()


# =============================================================================
# Supervisor
# =============================================================================

class GatewayServer:
    """
    Serve an ASGI app until a termination signal arrives.

    Usage:
        GatewayServer(app, settings, on_shutdown=context.aclose).run()
    """

    def __init__(
        self,
        app: ASGIApp,
        settings: Settings,
        on_shutdown: Optional[Callable[[], Awaitable[None]]] = None,
    ):
        self.app = app
        self.settings = settings
        self.on_shutdown = on_shutdown
        self.server: Optional[uvicorn.Server] = None

    def bind(self) -> socket.socket:
        """
        Bind and listen on HOST:PORT.

        Raises:
            ListenerBindError: If the address cannot be bound
        """
        family = socket.AF_INET6 if ":" in self.settings.HOST else socket.AF_INET
        sock = socket.socket(family, socket.SOCK_STREAM)
        sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        try:
            sock.bind((self.settings.HOST, self.settings.PORT))
            sock.listen(HTTP_SERVER_BACKLOG)
        except OSError as e:
            sock.close()
            raise ListenerBindError(f"listen tcp {self.settings.bind_address}: {e.strerror or e}") from e
        sock.setblocking(False)
        return sock

    def build_server(self) -> uvicorn.Server:
        """
        Create the uvicorn server.

        Raises:
            StartupConfigError: If the TLS certificate or key cannot be loaded
        """
        settings = self.settings
        config = uvicorn.Config(
            self.app,
            log_config=None,
            access_log=False,
            lifespan="off",
            http=functools.partial(HeaderTimeoutProtocol, header_timeout=settings.REQUEST_TIMEOUT),
            timeout_keep_alive=int(settings.REQUEST_TIMEOUT),
            timeout_graceful_shutdown=int(settings.SHUTDOWN_TIMEOUT),
            ssl_certfile=settings.CERT_FILE if settings.SERVE_TLS else None,
            ssl_keyfile=settings.KEY_FILE if settings.SERVE_TLS else None,
        )
        try:
            config.load()
        except (OSError, ssl.SSLError) as e:
            raise StartupConfigError(f"Could not load TLS certificate/key: {e}") from e
        return uvicorn.Server(config)

    def _install_signal_handlers(self, stop: asyncio.Event) -> bool:
        loop = asyncio.get_running_loop()
        try:
            for sig in (signal.SIGINT, signal.SIGTERM):
                loop.add_signal_handler(sig, stop.set)
        except (NotImplementedError, RuntimeError, ValueError):
            # Not the main thread, or a platform without loop signal support
            logger.warning("Signal handlers not available; stop the server via its stop event")
            return False
        return True

    def _remove_signal_handlers(self) -> None:
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.remove_signal_handler(sig)

    async def serve(
        self,
        sock: Optional[socket.socket] = None,
        stop: Optional[asyncio.Event] = None,
    ) -> None:
        """
        Serve until ``stop`` is set or a SIGINT/SIGTERM arrives.

        Args:
            sock: Pre-bound listening socket; bound from settings if omitted
            stop: Event that triggers the graceful shutdown

        Raises:
            ListenerBindError: If binding fails
            StartupConfigError: If the TLS files cannot be loaded
        """
        if sock is None:
            sock = self.bind()
        stop = stop or asyncio.Event()

        try:
            self.server = self.build_server()
        except StartupConfigError:
            sock.close()
            raise

        signals_installed = self._install_signal_handlers(stop)
        serve_task = asyncio.create_task(self.server._serve(sockets=[sock]))
        stop_task = asyncio.create_task(stop.wait())

        scheme = "https" if self.settings.SERVE_TLS else "http"
        logger.info(f"Gangway listening on {scheme}://{self.settings.bind_address}")

        try:
            done, _ = await asyncio.wait({serve_task, stop_task}, return_when=asyncio.FIRST_COMPLETED)

            if serve_task in done:
                # uvicorn stopped on its own (startup failure)
                stop_task.cancel()
                serve_task.result()
                return

            logger.info("Shutdown signal received, exiting.")
            self.server.should_exit = True
            try:
                await asyncio.wait_for(
                    serve_task,
                    timeout=self.settings.SHUTDOWN_TIMEOUT + SHUTDOWN_GRACE_SECONDS,
                )
            except asyncio.TimeoutError:
                logger.warning("Shutdown deadline exceeded, abandoning unfinished connections")
        finally:
            if signals_installed:
                self._remove_signal_handlers()
            sock.close()
            if self.on_shutdown is not None:
                await self.on_shutdown()
            logger.info("Gangway shutdown complete")

    def run(self) -> None:
        asyncio.run(self.serve())
