"""
Interception session: one CONNECT request, one relayed exchange.

State machine::

    CREATED -> CONFIG_READY -> CLIENT_HANDSHAKE_DONE -> ORIGIN_CONNECTED
            -> REQUEST_FORWARDED -> RESPONSE_FORWARDED -> CLOSED

Any failure jumps straight to ``CLOSED`` after closing whatever tunnels
were already open.  ``CLOSED`` is terminal; closing again is a no-op.
A session never serves a second request on the same tunnels.
"""

from __future__ import annotations

import ipaddress
from dataclasses import dataclass
from enum import Enum
from typing import Optional

from .certs import CertificateProvider, TLSConfig
from .config import DEFAULT_CONFIG, ProxyConfig
from .errors import MitmError, ParseError, SessionClosedError
from .log import get_logger
from .relay import RelayResult, RequestRelay
from .tunnel import ClientTunnel, OriginTunnel, Tunnel, close_quietly

logger = get_logger(__name__)

DEFAULT_PORT = 443


@dataclass(frozen=True)
class TargetIdentity:
    """Where to dial, and which certificate to present.

    ``label`` selects the cached certificate; it is the host name, so
    every origin gets its own leaf certificate.
    """

    host: str
    port: int
    label: str

    @classmethod
    def parse(cls, authority: str) -> TargetIdentity:
        """Parse a CONNECT authority: ``host``, ``host:port`` or ``[v6]:port``."""
        text = authority.strip()
        if not text or any(c in text for c in "/\\?#@ \t"):
            raise ParseError(f"Invalid CONNECT authority: {authority!r}")

        if text.startswith("["):
            host, sep, rest = text[1:].partition("]")
            if not sep:
                raise ParseError(f"Unterminated IPv6 literal: {authority!r}")
            try:
                ipaddress.IPv6Address(host)
            except ValueError as e:
                raise ParseError(f"Invalid IPv6 literal: {authority!r}") from e
            if rest and not rest.startswith(":"):
                raise ParseError(f"Invalid CONNECT authority: {authority!r}")
            port_str = rest[1:] if rest else ""
        elif text.count(":") > 1:
            raise ParseError(f"IPv6 literal must be bracketed: {authority!r}")
        else:
            host, _, port_str = text.partition(":")
            if text.endswith(":"):
                raise ParseError(f"Empty port: {authority!r}")

        if not host:
            raise ParseError(f"Missing host: {authority!r}")

        port = DEFAULT_PORT
        if port_str:
            if not (port_str.isascii() and port_str.isdigit()):
                raise ParseError(f"Invalid port: {authority!r}")
            port = int(port_str)
            if not 0 < port <= 65535:
                raise ParseError(f"Port out of range: {authority!r}")

        host = host.lower().rstrip(".")
        if not host:
            raise ParseError(f"Missing host: {authority!r}")
        return cls(host=host, port=port, label=host)

    def __str__(self) -> str:
        host = f"[{self.host}]" if ":" in self.host else self.host
        return f"{host}:{self.port}"


class SessionState(Enum):
    CREATED = "created"
    CONFIG_READY = "config_ready"
    CLIENT_HANDSHAKE_DONE = "client_handshake_done"
    ORIGIN_CONNECTED = "origin_connected"
    REQUEST_FORWARDED = "request_forwarded"
    RESPONSE_FORWARDED = "response_forwarded"
    CLOSED = "closed"


class Session:
    """Owns both tunnels of one interception and relays a single exchange.

    Use ``Session.create()`` to set everything up, ``run()`` to relay,
    and ``close()`` (also called by ``run()``) to release the tunnels.
    """

    __slots__ = ("target", "config", "state", "tls_config", "client", "origin", "result", "_relay")

    def __init__(self, target: TargetIdentity, config: ProxyConfig = DEFAULT_CONFIG):
        self.target = target
        self.config = config
        self.state = SessionState.CREATED
        self.tls_config: Optional[TLSConfig] = None
        self.client: Optional[Tunnel] = None
        self.origin: Optional[Tunnel] = None
        self.result: Optional[RelayResult] = None
        self._relay = RequestRelay(config)

    @classmethod
    async def create(
        cls,
        authority: str,
        raw: Tunnel,
        provider: CertificateProvider,
        config: ProxyConfig = DEFAULT_CONFIG,
    ) -> Session:
        """Parse the target, obtain a certificate, and open both tunnels.

        *raw* is the connection that carried the CONNECT request.  If
        the certificate cannot be obtained, *raw* is left untouched (no
        acknowledgement, no handshake) so the caller can still answer
        with an error status.  Once the handshake starts, the session
        owns *raw* and closes it on failure.
        """
        session = cls(TargetIdentity.parse(authority), config)
        target = session.target

        try:
            session.tls_config = await provider.obtain(target.label)
            session.state = SessionState.CONFIG_READY

            session.client = await ClientTunnel.establish(
                raw, session.tls_config, config.connect_timeout, config.max_line_size
            )
            session.state = SessionState.CLIENT_HANDSHAKE_DONE

            session.origin = await OriginTunnel.dial(
                target.host,
                target.port,
                session.tls_config,
                verify=config.verify_ssl,
                cafile=config.origin_ca_file,
                timeout=config.connect_timeout,
                limit=config.max_line_size,
            )
            session.state = SessionState.ORIGIN_CONNECTED
        except BaseException:
            await session.close()
            raise

        logger.debug("[%s] Session ready", target)
        return session

    async def run(self) -> RelayResult:
        """Relay one request/response pair, then close.  Single use."""
        if self.state is not SessionState.ORIGIN_CONNECTED or self.client is None or self.origin is None:
            raise SessionClosedError(f"Session for {self.target} is {self.state.value}, cannot relay")

        try:
            request = await self._relay.forward_request(self.client, self.origin)
            self.state = SessionState.REQUEST_FORWARDED

            response = await self._relay.forward_response(self.origin, self.client, request)
            self.state = SessionState.RESPONSE_FORWARDED

            self.result = RelayResult(request, response)
            logger.info("[%s] %s -> %d", self.target, request.request_line, response.status)
            return self.result
        finally:
            await self.close()

    async def close(self) -> None:
        """Release both tunnels.  Safe to call repeatedly and on half-built sessions."""
        if self.state is SessionState.CLOSED:
            return
        self.state = SessionState.CLOSED
        client, origin = self.client, self.origin
        await close_quietly(client)
        await close_quietly(origin)

    @property
    def closed(self) -> bool:
        return self.state is SessionState.CLOSED

    def __repr__(self) -> str:
        return f"<Session {self.target} {self.state.value}>"


async def handle_connect(
    authority: str,
    raw: Tunnel,
    provider: CertificateProvider,
    config: ProxyConfig = DEFAULT_CONFIG,
) -> RelayResult:
    """Run a whole session for one CONNECT request.

    Raises the ``MitmError`` that ended the session, if any; both
    tunnels are closed either way.
    """
    session = await Session.create(authority, raw, provider, config)
    try:
        return await session.run()
    except MitmError as e:
        logger.debug("[%s] Session failed in %s: %s", session.target, type(e).__name__, e)
        raise
