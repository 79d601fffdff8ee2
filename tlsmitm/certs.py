"""
Leaf certificate issuance and caching for intercepted hosts.

A ``CertificateProvider`` maps a target identity (the host name) to a
``TLSConfig`` carrying a leaf certificate signed by the proxy's root
authority.  Certificates are cached as ``<certs_dir>/<identity>.crt`` and
issued at most once per identity: a missing file triggers one call to the
configured ``CertificateIssuer``.

Issuers
~~~~~~~
* **ScriptIssuer** runs ``certGen/gen_cert.sh <identity> <out_dir>`` as a
  subprocess.  The script signs with ``ca.key`` and uses the shared leaf
  key ``cert.key`` for every certificate it produces.
* **LocalIssuer** does the same in-process with ``cryptography``.

Both write into a private temporary directory inside the cache; the
finished file is moved into place with ``os.replace`` so concurrent first
writers (other tasks or other processes) never see a partial file.
"""

from __future__ import annotations

import asyncio
import ipaddress
import os
import shutil
import ssl
import tempfile
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Optional, Protocol

from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.x509.oid import ExtendedKeyUsageOID, NameOID

from .config import CertPaths
from .errors import CertificateIssuanceError
from .log import get_logger

logger = get_logger(__name__)

ALPN = ("http/1.1",)


# ============================================================================
# TLS configuration handed to both tunnels
# ============================================================================


@dataclass
class TLSConfig:
    """Certificate material plus the server name for one target.

    The same object configures both sides of the interception: the
    server-role context presented to the client and the client-role
    context used toward the origin, which advertises ``server_name``.
    """

    cert_file: Path
    key_file: Path
    server_name: str
    _server_ctx: Optional[ssl.SSLContext] = field(default=None, repr=False, compare=False)

    def server_context(self) -> ssl.SSLContext:
        """Return the cached server-side context (loads the key pair on first use)."""
        if self._server_ctx is None:
            ctx = ssl.SSLContext(ssl.PROTOCOL_TLS_SERVER)
            ctx.load_cert_chain(str(self.cert_file), str(self.key_file))
            ctx.check_hostname = False
            ctx.verify_mode = ssl.CERT_NONE
            ctx.set_alpn_protocols(list(ALPN))
            self._server_ctx = ctx
        return self._server_ctx

    def client_context(self, verify: bool = True, cafile: Optional[str] = None) -> ssl.SSLContext:
        """Create a fresh client-side context for the origin connection."""
        if verify:
            ctx = ssl.create_default_context()
            if cafile:
                ctx.load_verify_locations(cafile=cafile)
        else:
            ctx = ssl.SSLContext(ssl.PROTOCOL_TLS_CLIENT)
            ctx.check_hostname = False
            ctx.verify_mode = ssl.CERT_NONE
        ctx.set_alpn_protocols(list(ALPN))
        return ctx


# ============================================================================
# Issuers
# ============================================================================


class CertificateIssuer(Protocol):
    async def issue(self, identity: str, out_dir: Path) -> None:
        """Produce ``<out_dir>/<identity>.crt`` or raise ``CertificateIssuanceError``."""
        ...


class ScriptIssuer:
    """Runs the external issuance script once per missing certificate."""

    __slots__ = ("paths",)

    def __init__(self, paths: CertPaths):
        self.paths = paths

    async def issue(self, identity: str, out_dir: Path) -> None:
        script = self.paths.script.resolve()
        if not script.is_file():
            raise CertificateIssuanceError(f"Issuance script not found: {script}")

        try:
            process = await asyncio.create_subprocess_exec(
                str(script),
                identity,
                str(Path(out_dir).resolve()),
                cwd=str(self.paths.root_dir.resolve()),
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            raise CertificateIssuanceError(f"Cannot run {script}: {e}") from e

        stdout, stderr = await process.communicate()
        if stdout:
            logger.debug("[ISSUE %s] %s", identity, stdout.decode("utf-8", errors="replace").strip())
        if process.returncode != 0:
            raise CertificateIssuanceError(
                f"{script.name} exited with {process.returncode} for {identity}: "
                f"{stderr.decode('utf-8', errors='replace').strip()}"
            )


class LocalIssuer:
    """Mints leaf certificates in-process, mirroring ``gen_cert.sh``.

    The leaf public key is taken from the shared ``cert.key`` and the
    certificate is signed by ``ca.key`` / ``ca.crt``.
    """

    __slots__ = ("paths", "days")

    def __init__(self, paths: CertPaths, days: int = 825):
        self.paths = paths
        self.days = days

    async def issue(self, identity: str, out_dir: Path) -> None:
        await asyncio.to_thread(self._issue_sync, identity, Path(out_dir))

    def _issue_sync(self, identity: str, out_dir: Path) -> None:
        try:
            ca_cert = x509.load_pem_x509_certificate(self.paths.ca_cert_file.read_bytes())
            ca_key = serialization.load_pem_private_key(self.paths.ca_key_file.read_bytes(), password=None)
            leaf_key = serialization.load_pem_private_key(self.paths.key_file.read_bytes(), password=None)
        except (OSError, ValueError) as e:
            raise CertificateIssuanceError(f"Cannot load root material from {self.paths.root_dir}: {e}") from e

        now = datetime.now(timezone.utc)
        try:
            san: x509.GeneralName = x509.IPAddress(ipaddress.ip_address(identity))
        except ValueError:
            san = x509.DNSName(identity)

        cert = (
            x509.CertificateBuilder()
            .subject_name(x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, identity)]))
            .issuer_name(ca_cert.subject)
            .public_key(leaf_key.public_key())
            .serial_number(x509.random_serial_number())
            .not_valid_before(now - timedelta(minutes=1))
            .not_valid_after(now + timedelta(days=self.days))
            .add_extension(x509.BasicConstraints(ca=False, path_length=None), critical=True)
            .add_extension(x509.ExtendedKeyUsage([ExtendedKeyUsageOID.SERVER_AUTH]), critical=False)
            .add_extension(x509.SubjectAlternativeName([san]), critical=False)
            .add_extension(x509.AuthorityKeyIdentifier.from_issuer_public_key(ca_key.public_key()), critical=False)
            .sign(ca_key, hashes.SHA256())
        )
        (out_dir / f"{identity}.crt").write_bytes(cert.public_bytes(serialization.Encoding.PEM))


def make_issuer(kind: str, paths: CertPaths) -> CertificateIssuer:
    if kind == "local":
        return LocalIssuer(paths)
    return ScriptIssuer(paths)


# ============================================================================
# Provider
# ============================================================================


def _check_identity(identity: str) -> None:
    if not identity or identity.startswith(".") or "/" in identity or "\\" in identity or "\x00" in identity:
        raise CertificateIssuanceError(f"Unusable certificate identity: {identity!r}")


class CertificateProvider:
    """Resolves or issues the leaf certificate for a target identity.

    Root material is read-only and may be shared by any number of
    sessions.  Tasks asking for the same missing identity wait on one
    issuance instead of racing.
    """

    __slots__ = ("paths", "issuer", "_locks")

    def __init__(self, paths: CertPaths, issuer: Optional[CertificateIssuer] = None):
        self.paths = paths
        self.issuer: CertificateIssuer = issuer if issuer is not None else ScriptIssuer(paths)
        self._locks: dict[str, asyncio.Lock] = {}

    async def obtain(self, identity: str) -> TLSConfig:
        _check_identity(identity)
        cert_file = self.paths.cert_file(identity)

        if not cert_file.exists():
            lock = self._locks.setdefault(identity, asyncio.Lock())
            try:
                async with lock:
                    if not cert_file.exists():
                        await self._issue(identity, cert_file)
            finally:
                if not lock.locked() and self._locks.get(identity) is lock:
                    del self._locks[identity]

        config = TLSConfig(cert_file=cert_file, key_file=self.paths.key_file, server_name=identity)
        try:
            config.server_context()
        except (OSError, ssl.SSLError) as e:
            raise CertificateIssuanceError(f"Cannot load certificate {cert_file}: {e}") from e
        return config

    async def _issue(self, identity: str, cert_file: Path) -> None:
        logger.info("Issuing certificate for %s", identity)
        try:
            self.paths.certs_dir.mkdir(parents=True, exist_ok=True)
            workdir = Path(tempfile.mkdtemp(prefix=".issue-", dir=self.paths.certs_dir))
        except OSError as e:
            raise CertificateIssuanceError(f"Cannot prepare {self.paths.certs_dir}: {e}") from e

        try:
            await self.issuer.issue(identity, workdir)
            produced = workdir / cert_file.name
            if not produced.is_file():
                raise CertificateIssuanceError(f"Issuer produced no certificate for {identity}")
            try:
                x509.load_pem_x509_certificate(produced.read_bytes())
            except ValueError as e:
                raise CertificateIssuanceError(f"Issuer produced an unreadable certificate for {identity}") from e
            os.replace(produced, cert_file)
        except OSError as e:
            raise CertificateIssuanceError(f"Cannot store certificate for {identity}: {e}") from e
        finally:
            shutil.rmtree(workdir, ignore_errors=True)
