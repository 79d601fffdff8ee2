"""End-to-end tests for the proxy front-end."""

from __future__ import annotations

import asyncio
import ssl
from contextlib import asynccontextmanager
from pathlib import Path
from typing import AsyncIterator, Optional

import pytest

from conftest import (
    FailingIssuer,
    client_tls_context,
    connect_through,
    free_port,
    plain_server,
    tls_origin,
)
from tlsmitm.certs import CertificateProvider
from tlsmitm.config import CertPaths, ProxyConfig
from tlsmitm.relay import read_request
from tlsmitm.server import InterceptProxy
from tlsmitm.tunnel import TUNNEL_ACK

RESPONSE = b"HTTP/1.1 200 OK\r\nContent-Length: 2\r\n\r\nok"


@asynccontextmanager
async def running_proxy(
    config: ProxyConfig, provider: Optional[CertificateProvider] = None
) -> AsyncIterator[tuple[int, InterceptProxy]]:
    proxy = InterceptProxy(config, provider)
    port = await proxy.start()
    try:
        yield port, proxy
    finally:
        await proxy.stop()


@pytest.fixture
def config(cert_paths: CertPaths, ca_file: str) -> ProxyConfig:
    return ProxyConfig(port=0, paths=cert_paths, issuer="local", origin_ca_file=ca_file, io_timeout=5)


async def _send(port: int, data: bytes) -> bytes:
    reader, writer = await asyncio.open_connection("127.0.0.1", port)
    writer.write(data)
    await writer.drain()
    reply = await asyncio.wait_for(reader.read(), 5)
    writer.close()
    return reply


class TestConnect:
    @pytest.mark.asyncio
    async def test_intercepts_https(
        self, config: ProxyConfig, root_dir: Path, ca_file: str, tmp_path: Path
    ) -> None:
        request = b"GET /secure HTTP/1.1\r\nHost: localhost\r\n\r\n"

        async with tls_origin(root_dir, RESPONSE, tmp_path, identity="localhost") as (origin_port, recorder):
            async with running_proxy(config) as (port, _):
                reader, writer, head = await connect_through(port, f"localhost:{origin_port}")
                assert head == TUNNEL_ACK

                await writer.start_tls(client_tls_context(ca_file), server_hostname="localhost")
                writer.write(request)
                await writer.drain()

                assert await asyncio.wait_for(reader.read(), 5) == RESPONSE
                writer.close()

        assert recorder.requests == [request]
        assert recorder.sni == ["localhost"]

    @pytest.mark.asyncio
    async def test_bad_authority(self, config: ProxyConfig) -> None:
        async with running_proxy(config) as (port, _):
            _, writer, head = await connect_through(port, "user@example.com:443")
            writer.close()
        assert head.startswith(b"HTTP/1.1 400 ")

    @pytest.mark.asyncio
    async def test_issuance_failure(self, config: ProxyConfig, cert_paths: CertPaths) -> None:
        issuer = FailingIssuer()
        async with running_proxy(config, CertificateProvider(cert_paths, issuer)) as (port, _):
            _, writer, head = await connect_through(port, "example.com:443")
            writer.close()
        assert head.startswith(b"HTTP/1.1 502 ")
        assert issuer.calls == ["example.com"]

    @pytest.mark.asyncio
    async def test_unreachable_origin_drops_tunnel(self, config: ProxyConfig, ca_file: str) -> None:
        async with running_proxy(config) as (port, _):
            reader, writer, head = await connect_through(port, f"127.0.0.1:{free_port()}")
            assert head == TUNNEL_ACK
            await writer.start_tls(client_tls_context(ca_file), server_hostname="127.0.0.1")
            assert await asyncio.wait_for(reader.read(), 5) == b""
            writer.close()


class TestPlainHttp:
    @pytest.mark.asyncio
    async def test_forwards_in_origin_form(self, config: ProxyConfig) -> None:
        received: list[bytes] = []

        async def origin(reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
            received.append((await read_request(reader)).to_bytes())
            writer.write(RESPONSE)
            await writer.drain()
            writer.close()

        async with plain_server(origin) as origin_port, running_proxy(config) as (port, _):
            authority = f"127.0.0.1:{origin_port}"
            reply = await _send(
                port, f"GET http://{authority}/a?b=1 HTTP/1.1\r\nHost: {authority}\r\n\r\n".encode()
            )

        assert reply == RESPONSE
        assert received == [f"GET /a?b=1 HTTP/1.1\r\nHost: {authority}\r\n\r\n".encode()]

    @pytest.mark.asyncio
    async def test_unreachable_origin(self, config: ProxyConfig) -> None:
        async with running_proxy(config) as (port, _):
            reply = await _send(port, f"GET http://127.0.0.1:{free_port()}/ HTTP/1.1\r\n\r\n".encode())
        assert reply.startswith(b"HTTP/1.1 502 ")

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "request_bytes",
        [
            b"GET https://example.com/ HTTP/1.1\r\n\r\n",
            b"GET / HTTP/1.1\r\nHost: example.com\r\n\r\n",
            b"garbage\r\n\r\n",
        ],
    )
    async def test_rejected(self, config: ProxyConfig, request_bytes: bytes) -> None:
        async with running_proxy(config) as (port, _):
            reply = await _send(port, request_bytes)
        assert reply.startswith(b"HTTP/1.1 400 ")


class TestLifecycle:
    @pytest.mark.asyncio
    async def test_idle_client_times_out(self, cert_paths: CertPaths) -> None:
        config = ProxyConfig(port=0, paths=cert_paths, issuer="local", io_timeout=0.2)
        async with running_proxy(config) as (port, _):
            reader, writer = await asyncio.open_connection("127.0.0.1", port)
            reply = await asyncio.wait_for(reader.read(), 5)
            writer.close()
        assert reply.startswith(b"HTTP/1.1 408 ")

    @pytest.mark.asyncio
    async def test_stop_closes_pending_connections(self, cert_paths: CertPaths) -> None:
        proxy = InterceptProxy(ProxyConfig(port=0, paths=cert_paths, issuer="local"))
        port = await proxy.start()
        reader, writer = await asyncio.open_connection("127.0.0.1", port)
        writer.write(b"GET http://example.com/ HTTP/1.1\r\n")
        await writer.drain()

        for _ in range(50):
            if proxy._handlers:
                break
            await asyncio.sleep(0.01)
        assert proxy._handlers
        # Let the handler consume the buffered bytes before stopping.
        await asyncio.sleep(0)

        await proxy.stop()

        assert await asyncio.wait_for(reader.read(), 5) == b""
        assert not proxy._handlers
        assert not proxy._active_connections
        writer.close()

    @pytest.mark.asyncio
    async def test_exception_handler_is_restored(self, config: ProxyConfig) -> None:
        loop = asyncio.get_running_loop()
        forwarded: list[dict] = []

        def previous(_loop: asyncio.AbstractEventLoop, context: dict) -> None:
            forwarded.append(context)

        loop.set_exception_handler(previous)
        try:
            proxy = InterceptProxy(config)
            await proxy.start()
            handler = loop.get_exception_handler()
            assert handler is not previous

            handler(loop, {"message": "Fatal error on SSL transport", "exception": ssl.SSLError(1, "reset")})
            handler(loop, {"message": "Task exception was never retrieved"})
            assert [c["message"] for c in forwarded] == ["Task exception was never retrieved"]

            await proxy.stop()
            assert loop.get_exception_handler() is previous
        finally:
            loop.set_exception_handler(None)
