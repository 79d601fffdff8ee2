"""Exception taxonomy for an interception session.

Every error is terminal to the session that raised it.  Nothing here is
retried; the outer server logs the error and moves on.
"""

from __future__ import annotations


class MitmError(Exception):
    """Base class for all session failures."""


class ParseError(MitmError):
    """The CONNECT authority could not be turned into host and port."""


class CertificateIssuanceError(MitmError):
    """No usable leaf certificate could be issued or loaded."""


class HijackUnsupportedError(MitmError):
    """The accepted connection cannot be taken over for TLS."""


class TunnelAckError(MitmError):
    """Writing the ``200 Connection established`` line failed."""


class HandshakeError(MitmError):
    """TLS handshake with the client failed."""


class OriginUnreachableError(MitmError):
    """TCP connect or TLS handshake toward the origin failed."""

    def __init__(self, host: str, port: int, reason: object):
        self.host = host
        self.port = port
        self.reason = reason
        super().__init__(f"Origin {host}:{port} unreachable: {reason}")


class MalformedRequestError(MitmError):
    """The client sent a truncated or unparsable HTTP request."""


class MalformedResponseError(MitmError):
    """The origin sent a truncated or unparsable HTTP response."""


class ForwardError(MitmError):
    """Writing a relayed message to the other side failed."""


class SessionClosedError(MitmError):
    """The session already ran its single relay cycle or failed."""


class ConfigError(Exception):
    """Invalid proxy configuration."""
