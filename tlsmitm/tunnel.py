"""
Encrypted tunnels on both sides of the interception.

* **ClientTunnel** takes over the connection that carried the CONNECT
  request, acknowledges the tunnel and performs the server-role TLS
  handshake with the client.
* **OriginTunnel** dials the real origin and performs the client-role
  handshake.

Both return a ``Tunnel``: a reader/writer pair carrying decrypted
application data, closed exactly once.
"""

from __future__ import annotations

import asyncio
import ssl
import time
from asyncio import StreamReader, StreamWriter
from enum import Enum
from typing import Optional

from .certs import TLSConfig
from .errors import HandshakeError, HijackUnsupportedError, OriginUnreachableError, TunnelAckError
from .log import get_logger

logger = get_logger(__name__)

TUNNEL_ACK = b"HTTP/1.1 200 Connection established\r\n\r\n"

DEFAULT_LIMIT = 65536


class TunnelRole(Enum):
    """Which TLS role the proxy plays on a tunnel."""

    SERVER = "server"  # toward the client
    CLIENT = "client"  # toward the origin
    PLAIN = "plain"    # not yet (or never) encrypted


class Tunnel:
    """Thin wrapper around an ``(StreamReader, StreamWriter)`` pair.

    Tracks last-activity time and provides a ``close()`` that is safe to
    call any number of times and handles SSL edge-cases quietly.
    """

    __slots__ = ("reader", "writer", "role", "last_activity", "_closed")

    def __init__(self, reader: StreamReader, writer: StreamWriter, role: TunnelRole = TunnelRole.PLAIN):
        self.reader = reader
        self.writer = writer
        self.role = role
        self.last_activity = time.monotonic()
        self._closed = False

    def touch(self) -> None:
        """Update the last-activity timestamp (call on every successful I/O)."""
        self.last_activity = time.monotonic()

    def detach(self) -> None:
        """Give up ownership of the transport without closing it.

        Called once the transport has been upgraded to TLS: from then on
        the resulting ``Tunnel`` owns (and closes) it.
        """
        self._closed = True

    async def close(self, force: bool = False) -> None:
        """Close the underlying transport.

        Parameters
        ----------
        force:
            If ``True``, abort the transport immediately without
            attempting a graceful TLS ``close_notify`` shutdown.

        When the peer already reset an SSL transport, ``writer.close()``
        would route an ``SSLError`` through the loop's exception handler;
        the transport is aborted directly instead.
        """
        if self._closed:
            return
        self._closed = True
        try:
            transport = self.writer.transport
            if transport is None or transport.is_closing():
                return
            if force:
                transport.abort()
                return
            ssl_obj = transport.get_extra_info("ssl_object")
            if ssl_obj is not None:
                try:
                    ssl_obj.version()
                except Exception:
                    # SSL session is dead, skip graceful close
                    transport.abort()
                    return
            self.writer.close()
            await asyncio.wait_for(self.writer.wait_closed(), timeout=2.0)
        except TimeoutError:
            try:
                transport = self.writer.transport
                if transport and not transport.is_closing():
                    transport.abort()
            except Exception as e:
                logger.debug(e)
            logger.trace("Tunnel close timed out, aborted")
        except Exception as e:
            logger.debug("Tunnel close error: %s", e)

    @property
    def closed(self) -> bool:
        return self._closed or self.writer.is_closing()

    def __repr__(self) -> str:
        state = "closed" if self.closed else "open"
        return f"<Tunnel {self.role.value} {state}>"


async def close_quietly(tunnel: Optional[Tunnel], force: bool = False) -> None:
    """Close *tunnel* if there is one; ``None`` is a no-op."""
    if tunnel is not None:
        await tunnel.close(force=force)


def _attach(
    transport: asyncio.BaseTransport,
    protocol: asyncio.StreamReaderProtocol,
    reader: StreamReader,
    role: TunnelRole,
) -> Tunnel:
    """Bind a reader/writer pair to an upgraded transport.

    *protocol* must already be the transport's protocol: the TLS layer
    delivers application data that arrived with the handshake before
    ``start_tls()`` returns.
    """
    loop = asyncio.get_running_loop()
    protocol.connection_made(transport)
    writer = StreamWriter(transport, protocol, reader, loop)  # type: ignore[arg-type]
    return Tunnel(reader, writer, role)


# ============================================================================
# Client side
# ============================================================================


class ClientTunnel:
    """Server-role TLS toward the client, over the hijacked CONNECT connection."""

    @staticmethod
    def _hijack(raw: Tunnel) -> asyncio.BaseTransport:
        transport = raw.writer.transport
        if raw.closed or transport is None or transport.is_closing():
            raise HijackUnsupportedError("Connection is already closed")
        if not hasattr(transport, "pause_reading"):
            raise HijackUnsupportedError(f"Transport {type(transport).__name__} is not a stream transport")
        if transport.get_extra_info("ssl_object") is not None:
            raise HijackUnsupportedError("Connection is already encrypted")
        if transport.get_extra_info("socket") is None:
            raise HijackUnsupportedError("Transport exposes no socket")
        return transport

    @classmethod
    async def establish(
        cls,
        raw: Tunnel,
        tls_config: TLSConfig,
        timeout: Optional[float] = None,
        limit: int = DEFAULT_LIMIT,
    ) -> Tunnel:
        """Acknowledge the tunnel and complete the handshake with the client.

        Sequence:
        1. Check the connection can be taken over.
        2. Write ``200 Connection established`` in cleartext.
        3. Pause reading so the ClientHello stays in the kernel buffer.
        4. Upgrade the transport with ``loop.start_tls(server_side=True)``,
           handing it the protocol of the new reader so a request sent
           together with the client's Finished message lands there.

        The raw connection is closed on any failure after step 1.
        """
        transport = cls._hijack(raw)

        try:
            raw.writer.write(TUNNEL_ACK)
            await raw.writer.drain()
        except (ConnectionError, OSError, RuntimeError) as e:
            await raw.close(force=True)
            raise TunnelAckError(f"Cannot acknowledge tunnel: {e}") from e

        loop = asyncio.get_running_loop()
        reader = StreamReader(limit=limit, loop=loop)
        protocol = asyncio.StreamReaderProtocol(reader, loop=loop)
        try:
            ctx = tls_config.server_context()
            transport.pause_reading()
            async with asyncio.timeout(timeout):
                ssl_transport = await loop.start_tls(transport, protocol, ctx, server_side=True)
        except TypeError as e:
            await raw.close(force=True)
            raise HijackUnsupportedError(f"Transport cannot be upgraded: {e}") from e
        except (ssl.SSLError, ConnectionError, OSError, TimeoutError) as e:
            await raw.close(force=True)
            raise HandshakeError(f"Client TLS handshake failed: {e}") from e

        if ssl_transport is None:
            await raw.close(force=True)
            raise HandshakeError("Client TLS handshake failed")

        raw.detach()
        tunnel = _attach(ssl_transport, protocol, reader, TunnelRole.SERVER)
        logger.debug("[%s] Client handshake done (%s)", tls_config.server_name, _tls_version(ssl_transport))
        return tunnel


# ============================================================================
# Origin side
# ============================================================================


class OriginTunnel:
    """Client-role TLS toward the real origin.  Opened fresh per session."""

    @staticmethod
    async def dial(
        host: str,
        port: int,
        tls_config: TLSConfig,
        verify: bool = True,
        cafile: Optional[str] = None,
        timeout: Optional[float] = None,
        limit: int = DEFAULT_LIMIT,
    ) -> Tunnel:
        try:
            ctx = tls_config.client_context(verify=verify, cafile=cafile)
            async with asyncio.timeout(timeout):
                reader, writer = await asyncio.open_connection(
                    host,
                    port,
                    ssl=ctx,
                    server_hostname=tls_config.server_name,
                    limit=limit,
                )
        except (ssl.SSLError, ConnectionError, OSError, TimeoutError, ValueError) as e:
            raise OriginUnreachableError(host, port, e) from e

        logger.debug("[%s:%d] Origin handshake done (%s)", host, port, _tls_version(writer.transport))
        return Tunnel(reader, writer, TunnelRole.CLIENT)


def _tls_version(transport: asyncio.BaseTransport) -> str:
    ssl_obj = transport.get_extra_info("ssl_object")
    return ssl_obj.version() if ssl_obj is not None else "?"
