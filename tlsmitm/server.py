"""
Proxy front-end: accepts client connections and dispatches them.

``CONNECT host:port`` requests start an interception ``Session`` on the
same connection.  Absolute-form plain-HTTP requests are relayed once in
cleartext.  Every connection carries exactly one exchange and is closed
afterwards.
"""

from __future__ import annotations

import asyncio
import ssl
import traceback
from asyncio import StreamReader, StreamWriter
from typing import Callable, Optional
from urllib.parse import urlsplit

from .certs import CertificateProvider, make_issuer
from .config import DEFAULT_CONFIG, ProxyConfig
from .errors import (
    CertificateIssuanceError,
    HijackUnsupportedError,
    MalformedRequestError,
    MitmError,
    OriginUnreachableError,
    ParseError,
)
from .log import get_logger
from .relay import HttpRequest, RequestRelay, read_request
from .session import handle_connect
from .tunnel import Tunnel, TunnelRole

logger = get_logger(__name__)

BAD_REQUEST = b"HTTP/1.1 400 Bad Request\r\nContent-Length: 0\r\nConnection: close\r\n\r\n"
BAD_GATEWAY = b"HTTP/1.1 502 Bad Gateway\r\nContent-Length: 0\r\nConnection: close\r\n\r\n"
REQUEST_TIMEOUT = b"HTTP/1.1 408 Request Timeout\r\nContent-Length: 0\r\nConnection: close\r\n\r\n"


class InterceptProxy:
    """An HTTP/HTTPS intercepting proxy server.

    Usage::

        proxy = InterceptProxy(ProxyConfig(port=0, issuer="local"))
        port = await proxy.start()
        # point the client at 127.0.0.1:{port} and trust certGen/ca.crt
        await proxy.stop()
    """

    def __init__(
        self,
        config: ProxyConfig = DEFAULT_CONFIG,
        provider: Optional[CertificateProvider] = None,
    ):
        self.config = config
        self.host = config.host
        self.port = config.port
        self.provider = provider or CertificateProvider(config.paths, make_issuer(config.issuer, config.paths))
        self.relay = RequestRelay(config)
        self._server: Optional[asyncio.Server] = None
        self._active_connections: set[Tunnel] = set()
        self._handlers: set[asyncio.Task] = set()
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._previous_handler: Optional[Callable[[asyncio.AbstractEventLoop, dict], object]] = None

    # -- lifecycle ---------------------------------------------------------

    async def start(self) -> int:
        """Start listening.  Returns the bound port number."""
        self._server = await asyncio.start_server(
            self.handle_client,
            self.host,
            self.port,
            reuse_address=True,
            limit=self.config.max_line_size,
        )
        # Clients reset connections mid-shutdown all the time; keep those
        # SSL errors out of the loop's default handler.
        loop = asyncio.get_running_loop()
        if self._loop is None:
            self._loop, self._previous_handler = loop, loop.get_exception_handler()
            loop.set_exception_handler(self._quiet_ssl_errors)

        sock = self._server.sockets[0]
        self.port = sock.getsockname()[1]
        logger.info("InterceptProxy listening on %s:%d (certs: %s)", self.host, self.port, self.config.paths.certs_dir)
        return self.port

    async def stop(self) -> None:
        """Stop accepting new connections and close all active ones."""
        if self._server:
            if self._server.is_serving():
                self._server.close()
            self._server = None
        # Sessions own their tunnels once hijacked; cancelling the handler
        # makes them close both.
        for task in list(self._handlers):
            task.cancel()
        if self._handlers:
            await asyncio.gather(*self._handlers, return_exceptions=True)
        for conn in list(self._active_connections):
            await conn.close(force=True)
        self._active_connections.clear()
        if self._loop is not None:
            self._loop.set_exception_handler(self._previous_handler)
            self._loop = self._previous_handler = None
        logger.info("InterceptProxy stopped (was :%d)", self.port)

    async def serve_forever(self) -> None:
        if self._server is None:
            await self.start()
        assert self._server is not None
        await self._server.serve_forever()

    def _quiet_ssl_errors(self, loop: asyncio.AbstractEventLoop, context: dict) -> None:
        exc = context.get("exception")
        msg = context.get("message", "")
        if isinstance(exc, ssl.SSLError) or (isinstance(msg, str) and "ssl" in msg.lower()):
            logger.debug("Suppressed loop SSL error: %s", exc or msg)
            return
        if self._previous_handler is not None:
            self._previous_handler(loop, context)
        else:
            loop.default_exception_handler(context)

    # -- per connection ----------------------------------------------------

    async def handle_client(self, reader: StreamReader, writer: StreamWriter) -> None:
        """Entry point for each new client connection (called by ``asyncio.Server``)."""
        client = Tunnel(reader, writer, TunnelRole.PLAIN)
        self._active_connections.add(client)
        task = asyncio.current_task()
        if task is not None:
            self._handlers.add(task)

        try:
            try:
                async with asyncio.timeout(self.config.io_timeout):
                    request = await read_request(reader, self.config.max_body_size)
            except MalformedRequestError as e:
                logger.debug("Unreadable proxy request: %s", e)
                self._try_error(client, BAD_REQUEST)
                return
            except TimeoutError:
                logger.debug("Client sent no complete request within %ss", self.config.io_timeout)
                self._try_error(client, REQUEST_TIMEOUT)
                return

            if request.method.upper() == "CONNECT":
                await self._handle_connect(client, request.target)
            else:
                await self._handle_plain_http(client, request)

        except asyncio.CancelledError:
            raise
        except Exception:
            logger.error("Client handler error: %s", traceback.format_exc())
        finally:
            self._active_connections.discard(client)
            if task is not None:
                self._handlers.discard(task)
            await client.close()

    async def _handle_connect(self, client: Tunnel, authority: str) -> None:
        """Hand the connection over to an interception session."""
        try:
            await handle_connect(authority, client, self.provider, self.config)
        except ParseError as e:
            logger.warning("[CONNECT %s] %s", authority, e)
            self._try_error(client, BAD_REQUEST)
        except (CertificateIssuanceError, HijackUnsupportedError) as e:
            # Nothing was acknowledged yet, the client still speaks plain HTTP
            logger.error("[CONNECT %s] %s", authority, e)
            self._try_error(client, BAD_GATEWAY)
        except OriginUnreachableError as e:
            logger.warning("[CONNECT %s] %s", authority, e)
        except MitmError as e:
            logger.warning("[CONNECT %s] %s: %s", authority, type(e).__name__, e)

    async def _handle_plain_http(self, client: Tunnel, request: HttpRequest) -> None:
        """Relay one absolute-form ``http://`` request in cleartext."""
        parsed = urlsplit(request.target)
        if parsed.scheme.lower() != "http" or not parsed.hostname:
            logger.debug("Rejecting non-proxy request %s", request.request_line)
            self._try_error(client, BAD_REQUEST)
            return

        host = parsed.hostname
        try:
            port = parsed.port or 80
        except ValueError:
            self._try_error(client, BAD_REQUEST)
            return
        path = parsed.path or "/"
        if parsed.query:
            path = f"{path}?{parsed.query}"

        origin: Optional[Tunnel] = None
        try:
            origin = await self._connect_plain(host, port)
            self._active_connections.add(origin)
            result = await self.relay.relay_buffered(request.with_target(path), client, origin)
            logger.info("[http://%s:%d] %s -> %d", host, port, request.request_line, result.response.status)
        except OriginUnreachableError as e:
            logger.warning("[HTTP] %s", e)
            self._try_error(client, BAD_GATEWAY)
        except MitmError as e:
            logger.warning("[HTTP %s:%d] %s: %s", host, port, type(e).__name__, e)
            self._try_error(client, BAD_GATEWAY)
        finally:
            if origin is not None:
                self._active_connections.discard(origin)
                await origin.close()

    async def _connect_plain(self, host: str, port: int) -> Tunnel:
        try:
            async with asyncio.timeout(self.config.connect_timeout):
                reader, writer = await asyncio.open_connection(host, port, limit=self.config.max_line_size)
        except (ConnectionError, OSError, TimeoutError) as e:
            raise OriginUnreachableError(host, port, e) from e
        return Tunnel(reader, writer, TunnelRole.PLAIN)

    @staticmethod
    def _try_error(client: Tunnel, msg: bytes) -> None:
        """Best-effort error response on a plain connection."""
        try:
            if not client.closed:
                client.writer.write(msg)
        except (ConnectionError, OSError, RuntimeError) as e:
            logger.debug("Cannot send error response: %s", e)
