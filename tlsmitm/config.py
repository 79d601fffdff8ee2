"""Configuration objects for the proxy and the certificate cache."""

from __future__ import annotations

import argparse
import configparser
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Optional

from .errors import ConfigError


@dataclass(frozen=True)
class CertPaths:
    """Where the root material, issuance script, and leaf cache live.

    Attributes
    ----------
    root_dir:
        Directory holding the root authority (``ca.crt``/``ca.key``), the
        shared leaf key (``cert.key``) and the issuance script.
    certs_dir:
        Cache directory for issued leaf certificates, one
        ``<identity>.crt`` per target host.
    """

    root_dir: Path = Path("certGen")
    certs_dir: Path = Path("certs")
    key_name: str = "cert.key"
    script_name: str = "gen_cert.sh"
    ca_cert_name: str = "ca.crt"
    ca_key_name: str = "ca.key"

    @classmethod
    def under(cls, workdir: str | Path) -> CertPaths:
        base = Path(workdir).resolve()
        return cls(root_dir=base / "certGen", certs_dir=base / "certs")

    @property
    def key_file(self) -> Path:
        return self.root_dir / self.key_name

    @property
    def script(self) -> Path:
        return self.root_dir / self.script_name

    @property
    def ca_cert_file(self) -> Path:
        return self.root_dir / self.ca_cert_name

    @property
    def ca_key_file(self) -> Path:
        return self.root_dir / self.ca_key_name

    def cert_file(self, identity: str) -> Path:
        return self.certs_dir / f"{identity}.crt"


ISSUERS = ("script", "local")


@dataclass(frozen=True)
class ProxyConfig:
    """Tunable knobs for the proxy.

    Timeouts are in seconds; ``None`` means no deadline, so a stalled
    peer blocks its own session only.  Sizes are in bytes.

    Attributes
    ----------
    issuer:
        ``"script"`` runs ``gen_cert.sh`` for missing certificates,
        ``"local"`` mints them in-process.
    verify_ssl:
        Whether to verify the origin's TLS certificate.
    origin_ca_file:
        Extra trust roots for origin verification (PEM bundle).
    connect_timeout:
        Deadline for TCP connect + TLS handshake on either side.
    io_timeout:
        Deadline for reading or writing one whole HTTP message.
    max_line_size:
        Longest accepted request/status/header line.
    max_body_size:
        Largest body buffered before forwarding.
    """

    host: str = "127.0.0.1"
    port: int = 8080
    paths: CertPaths = field(default_factory=CertPaths)
    issuer: str = "script"
    verify_ssl: bool = True
    origin_ca_file: Optional[str] = None

    connect_timeout: Optional[float] = None
    io_timeout: Optional[float] = None

    read_buffer_size: int = 65536
    max_line_size: int = 65536
    max_body_size: int = 64 * 1024 * 1024

    def __post_init__(self) -> None:
        if self.issuer not in ISSUERS:
            raise ConfigError(f"issuer must be one of {ISSUERS}, got {self.issuer!r}")
        if not 0 <= self.port <= 65535:
            raise ConfigError(f"port out of range: {self.port}")
        for name in ("connect_timeout", "io_timeout"):
            value = getattr(self, name)
            if value is not None and value <= 0:
                raise ConfigError(f"{name} must be positive, got {value}")
        if self.max_line_size <= 0 or self.max_body_size < 0:
            raise ConfigError("size limits must be positive")


DEFAULT_CONFIG = ProxyConfig()


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="tlsmitm",
        description="Intercepting HTTPS proxy: terminates TLS on both sides and relays one request per tunnel.",
    )
    parser.add_argument("-c", "--config", default=None, help="INI file with a [proxy] section")
    parser.add_argument("--host", default=None, help="Listen address (default: 127.0.0.1)")
    parser.add_argument("--port", type=int, default=None, help="Listen port (default: 8080)")
    parser.add_argument("--workdir", default=None, help="Directory containing certGen/ and certs/ (default: .)")
    parser.add_argument("--issuer", choices=ISSUERS, default=None, help="Certificate issuer (default: script)")
    parser.add_argument("--no-verify", dest="verify_ssl", action="store_false", default=None,
                        help="Do not verify origin certificates")
    parser.add_argument("--origin-ca", default=None, help="Extra CA bundle for origin verification")
    parser.add_argument("--connect-timeout", type=float, default=None, help="Connect/handshake deadline in seconds")
    parser.add_argument("--io-timeout", type=float, default=None, help="Per-message read/write deadline in seconds")
    parser.add_argument("--log-level", default=None, help="TRACE, DEBUG, INFO, WARNING or ERROR (default: INFO)")
    return parser


def _optional_float(ini: configparser.ConfigParser, key: str) -> Optional[float]:
    raw = ini.get("proxy", key, fallback="").strip()
    if not raw or raw.lower() == "none":
        return None
    return float(raw)


def load_config(args: argparse.Namespace) -> tuple[ProxyConfig, str]:
    """Merge CLI arguments over the INI file over defaults.

    Returns the config and the log level name.
    """
    ini = configparser.ConfigParser()
    if args.config is not None:
        if not ini.read(args.config):
            raise ConfigError(f"Config file not found: {args.config}")
    if not ini.has_section("proxy"):
        ini.add_section("proxy")

    try:
        workdir = args.workdir if args.workdir is not None else ini.get("proxy", "workdir", fallback=".")
        config = ProxyConfig(
            host=args.host if args.host is not None else ini.get("proxy", "host", fallback=DEFAULT_CONFIG.host),
            port=args.port if args.port is not None else ini.getint("proxy", "port", fallback=DEFAULT_CONFIG.port),
            paths=CertPaths.under(workdir),
            issuer=args.issuer if args.issuer is not None else ini.get("proxy", "issuer", fallback=DEFAULT_CONFIG.issuer),
            verify_ssl=(
                args.verify_ssl
                if args.verify_ssl is not None
                else ini.getboolean("proxy", "verify_ssl", fallback=DEFAULT_CONFIG.verify_ssl)
            ),
            origin_ca_file=(
                args.origin_ca if args.origin_ca is not None else ini.get("proxy", "origin_ca", fallback=None)
            ),
            connect_timeout=(
                args.connect_timeout if args.connect_timeout is not None else _optional_float(ini, "connect_timeout")
            ),
            io_timeout=args.io_timeout if args.io_timeout is not None else _optional_float(ini, "io_timeout"),
        )
        ini_body = ini.get("proxy", "max_body_size", fallback=None)
        if ini_body is not None:
            config = replace(config, max_body_size=int(ini_body))
    except ValueError as e:
        raise ConfigError(f"Invalid configuration value: {e}") from e

    level = args.log_level if args.log_level is not None else ini.get("proxy", "log_level", fallback="INFO")
    return config, level
