"""Shared fixtures: a throwaway root authority, fake streams, loopback servers."""

from __future__ import annotations

import asyncio
import shutil
import socket
import ssl
from contextlib import asynccontextmanager
from pathlib import Path
from typing import AsyncIterator, Awaitable, Callable, Optional

import pytest

from generate_certs import generate_root
from tlsmitm.certs import CertificateIssuanceError, LocalIssuer
from tlsmitm.config import CertPaths
from tlsmitm.relay import read_request
from tlsmitm.tunnel import Tunnel


@pytest.fixture(scope="session")
def root_dir(tmp_path_factory: pytest.TempPathFactory) -> Path:
    """certGen/ with ca.crt, ca.key and cert.key, generated once per run."""
    d = tmp_path_factory.mktemp("root") / "certGen"
    generate_root(d, ca_name="tlsmitm test CA")
    script = shutil.copy(Path(__file__).resolve().parent.parent / "certGen" / "gen_cert.sh", d / "gen_cert.sh")
    Path(script).chmod(0o755)
    return d


@pytest.fixture
def cert_paths(root_dir: Path, tmp_path: Path) -> CertPaths:
    return CertPaths(root_dir=root_dir, certs_dir=tmp_path / "certs")


@pytest.fixture
def ca_file(root_dir: Path) -> str:
    return str(root_dir / "ca.crt")


class RecordingIssuer:
    """LocalIssuer that counts calls and can be slowed down."""

    def __init__(self, paths: CertPaths, delay: float = 0.0):
        self.inner = LocalIssuer(paths)
        self.delay = delay
        self.calls: list[str] = []

    async def issue(self, identity: str, out_dir: Path) -> None:
        self.calls.append(identity)
        if self.delay:
            await asyncio.sleep(self.delay)
        await self.inner.issue(identity, out_dir)


class FailingIssuer:
    def __init__(self) -> None:
        self.calls: list[str] = []

    async def issue(self, identity: str, out_dir: Path) -> None:
        self.calls.append(identity)
        raise CertificateIssuanceError(f"refusing to issue {identity}")


class FakeWriter:
    """Just enough of ``StreamWriter`` for the relay."""

    def __init__(self, fail: bool = False):
        self.data = bytearray()
        self.fail = fail
        self.closing = False
        self.transport = None

    def write(self, data: bytes) -> None:
        self.data += data

    async def drain(self) -> None:
        if self.fail:
            raise ConnectionResetError("peer reset")

    def is_closing(self) -> bool:
        return self.closing

    def close(self) -> None:
        self.closing = True

    async def wait_closed(self) -> None:
        pass


def make_reader(data: bytes = b"", eof: bool = True, limit: int = 65536) -> asyncio.StreamReader:
    reader = asyncio.StreamReader(limit=limit)
    if data:
        reader.feed_data(data)
    if eof:
        reader.feed_eof()
    return reader


def fake_tunnel(data: bytes = b"", eof: bool = True, fail: bool = False, limit: int = 65536) -> Tunnel:
    return Tunnel(make_reader(data, eof, limit), FakeWriter(fail=fail))  # type: ignore[arg-type]


def free_port() -> int:
    """A port nothing listens on (bound then released)."""
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        s.bind(("127.0.0.1", 0))
        return s.getsockname()[1]


class OriginRecorder:
    """What a loopback origin received."""

    def __init__(self) -> None:
        self.requests: list[bytes] = []
        self.trailing: list[bytes] = []
        self.sni: list[Optional[str]] = []


@asynccontextmanager
async def tls_origin(
    root_dir: Path,
    response: bytes,
    tmp_path: Path,
    host: str = "127.0.0.1",
    identity: Optional[str] = None,
) -> AsyncIterator[tuple[int, OriginRecorder]]:
    """A TLS origin on loopback that answers one request with *response*.

    Its certificate is issued for *identity* (defaults to *host*).
    """
    identity = identity or host
    paths = CertPaths(root_dir=root_dir, certs_dir=tmp_path / "origin")
    paths.certs_dir.mkdir(parents=True, exist_ok=True)
    await LocalIssuer(paths).issue(identity, paths.certs_dir)

    recorder = OriginRecorder()
    ctx = ssl.SSLContext(ssl.PROTOCOL_TLS_SERVER)
    ctx.load_cert_chain(str(paths.cert_file(identity)), str(paths.key_file))

    def _sni(sslobj: ssl.SSLObject, name: Optional[str], _ctx: ssl.SSLContext) -> None:
        recorder.sni.append(name)

    ctx.sni_callback = _sni

    async def handler(reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        try:
            request = await read_request(reader)
            recorder.requests.append(request.to_bytes())
            writer.write(response)
            await writer.drain()
            recorder.trailing.append(await reader.read())
        except Exception:
            pass
        finally:
            writer.close()

    async with plain_server(handler, ssl_ctx=ctx, host=host) as port:
        yield port, recorder


@asynccontextmanager
async def plain_server(
    handler: Callable[[asyncio.StreamReader, asyncio.StreamWriter], Awaitable[None]],
    ssl_ctx: Optional[ssl.SSLContext] = None,
    host: str = "127.0.0.1",
) -> AsyncIterator[int]:
    server = await asyncio.start_server(handler, host, 0, ssl=ssl_ctx)
    try:
        yield server.sockets[0].getsockname()[1]
    finally:
        server.close()
        try:
            await asyncio.wait_for(server.wait_closed(), timeout=2.0)
        except TimeoutError:
            pass


async def connect_through(
    proxy_port: int, authority: str
) -> tuple[asyncio.StreamReader, asyncio.StreamWriter, bytes]:
    """Send CONNECT to the proxy and return the reply head."""
    reader, writer = await asyncio.open_connection("127.0.0.1", proxy_port)
    writer.write(f"CONNECT {authority} HTTP/1.1\r\nHost: {authority}\r\n\r\n".encode())
    await writer.drain()
    head = await asyncio.wait_for(reader.readuntil(b"\r\n\r\n"), 5)
    return reader, writer, head


def client_tls_context(ca_file: str) -> ssl.SSLContext:
    return ssl.create_default_context(cafile=ca_file)
