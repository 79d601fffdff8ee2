"""Single-shot HTTPS interception: terminate TLS on both sides, relay one exchange."""

from .certs import CertificateIssuer, CertificateProvider, LocalIssuer, ScriptIssuer, TLSConfig
from .config import CertPaths, ProxyConfig
from .errors import (
    CertificateIssuanceError,
    ConfigError,
    ForwardError,
    HandshakeError,
    HijackUnsupportedError,
    MalformedRequestError,
    MalformedResponseError,
    MitmError,
    OriginUnreachableError,
    ParseError,
    SessionClosedError,
    TunnelAckError,
)
from .relay import HttpRequest, HttpResponse, RelayResult, RequestRelay, read_request, read_response
from .server import InterceptProxy
from .session import Session, SessionState, TargetIdentity, handle_connect
from .tunnel import ClientTunnel, OriginTunnel, Tunnel, TunnelRole

__version__ = "0.1.0"

__all__ = [
    "CertPaths",
    "CertificateIssuanceError",
    "CertificateIssuer",
    "CertificateProvider",
    "ClientTunnel",
    "ConfigError",
    "ForwardError",
    "HandshakeError",
    "HijackUnsupportedError",
    "HttpRequest",
    "HttpResponse",
    "InterceptProxy",
    "LocalIssuer",
    "MalformedRequestError",
    "MalformedResponseError",
    "MitmError",
    "OriginTunnel",
    "OriginUnreachableError",
    "ParseError",
    "ProxyConfig",
    "RelayResult",
    "RequestRelay",
    "ScriptIssuer",
    "Session",
    "SessionClosedError",
    "SessionState",
    "TLSConfig",
    "TargetIdentity",
    "Tunnel",
    "TunnelAckError",
    "TunnelRole",
    "handle_connect",
    "read_request",
    "read_response",
]
