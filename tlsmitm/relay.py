"""
One-shot HTTP/1.x relay between two tunnels.

The relay reconstructs message framing instead of piping bytes blindly:
it reads exactly one request from the client (line, headers and a body
delimited by ``Content-Length`` or chunked encoding), forwards it, then
reads exactly one response from the origin and forwards that back.

Messages keep the exact bytes they were parsed from, so what goes out
on the other side is byte-identical to what came in: header order,
casing, chunk framing and trailers are all preserved.

Bodies are buffered completely before forwarding.  Streaming bodies
(server-sent events, endless chunked responses) therefore never reach
the client; ``max_body_size`` bounds how much is buffered.
"""

from __future__ import annotations

import asyncio
import string
from dataclasses import dataclass, replace
from typing import Optional

from .config import DEFAULT_CONFIG, ProxyConfig
from .errors import ForwardError, MalformedRequestError, MalformedResponseError, MitmError
from .log import get_logger
from .tunnel import Tunnel

logger = get_logger(__name__)

MAX_HEADERS = 256

_HEX = frozenset(string.hexdigits.encode())
_TOKEN = frozenset((string.ascii_letters + string.digits + "!#$%&'*+-.^_`|~").encode())


# ============================================================================
# Message types
# ============================================================================


@dataclass
class _Message:
    headers: list[tuple[str, str]]
    head: bytes
    framed_body: bytes
    body: bytes

    def header(self, name: str) -> Optional[str]:
        """First value of header *name* (case-insensitive)."""
        name = name.lower()
        for k, v in self.headers:
            if k.lower() == name:
                return v
        return None

    def to_bytes(self) -> bytes:
        """The message exactly as it was framed on the wire."""
        return self.head + self.framed_body


@dataclass
class HttpRequest(_Message):
    method: str = ""
    target: str = ""
    version: str = ""

    @property
    def request_line(self) -> str:
        return f"{self.method} {self.target} {self.version}"

    def with_target(self, target: str) -> HttpRequest:
        """Copy with a different request-target; everything else is kept verbatim."""
        _, sep, rest = self.head.partition(b"\n")
        eol = b"\r\n" if self.head.split(b"\n", 1)[0].endswith(b"\r") else b"\n"
        line = f"{self.method} {target} {self.version}".encode("latin-1") + eol
        return replace(self, target=target, head=line + rest if sep else line)


@dataclass
class HttpResponse(_Message):
    version: str = ""
    status: int = 0
    reason: str = ""

    @property
    def status_line(self) -> str:
        return f"{self.version} {self.status} {self.reason}".rstrip()


@dataclass
class RelayResult:
    """The exchange relayed during one session."""

    request: HttpRequest
    response: HttpResponse


# ============================================================================
# Parsing
# ============================================================================


async def _readline(reader: asyncio.StreamReader, error: type[MitmError], what: str) -> bytes:
    try:
        line = await reader.readline()
    except ValueError as e:
        raise error(f"{what} exceeds line limit") from e
    except (ConnectionError, OSError) as e:
        raise error(f"Connection failed while reading {what}: {e}") from e
    if not line.endswith(b"\n"):
        raise error(f"Truncated {what}")
    return line


async def _readexactly(reader: asyncio.StreamReader, n: int, error: type[MitmError]) -> bytes:
    try:
        return await reader.readexactly(n)
    except asyncio.IncompleteReadError as e:
        raise error(f"Truncated body: expected {n} bytes, got {len(e.partial)}") from e
    except (ConnectionError, OSError) as e:
        raise error(f"Connection failed while reading body: {e}") from e


async def _read_head(
    reader: asyncio.StreamReader, error: type[MitmError], what: str
) -> tuple[bytes, str, list[tuple[str, str]]]:
    """Read a start line and header block.  Returns ``(raw, start_line, headers)``."""
    try:
        first = await reader.readline()
    except ValueError as e:
        raise error(f"{what} line exceeds line limit") from e
    except (ConnectionError, OSError) as e:
        raise error(f"Connection failed before {what}: {e}") from e
    if not first:
        raise error(f"Connection closed before {what}")
    if not first.endswith(b"\n"):
        raise error(f"Truncated {what} line")

    raw = bytearray(first)
    headers: list[tuple[str, str]] = []
    while True:
        line = await _readline(reader, error, "header block")
        raw += line
        if line in (b"\r\n", b"\n"):
            break
        if line[:1] in (b" ", b"\t"):
            raise error("Obsolete header line folding")
        name, sep, value = line.rstrip(b"\r\n").partition(b":")
        if not sep or not name or not set(name) <= _TOKEN:
            raise error(f"Malformed header line: {line[:80]!r}")
        headers.append((name.decode("ascii"), value.strip(b" \t").decode("latin-1")))
        if len(headers) > MAX_HEADERS:
            raise error(f"More than {MAX_HEADERS} headers")

    return bytes(raw), first.rstrip(b"\r\n").decode("latin-1"), headers


def _content_length(headers: list[tuple[str, str]], error: type[MitmError]) -> Optional[int]:
    values: set[str] = set()
    for k, v in headers:
        if k.lower() == "content-length":
            values.update(p.strip() for p in v.split(","))
    if not values:
        return None
    if len(values) > 1:
        raise error(f"Conflicting Content-Length values: {sorted(values)}")
    value = values.pop()
    if not (value.isascii() and value.isdigit()):
        raise error(f"Invalid Content-Length: {value!r}")
    return int(value)


def _is_chunked(headers: list[tuple[str, str]], error: type[MitmError], strict: bool) -> Optional[bool]:
    """``True`` for chunked, ``None`` when no Transfer-Encoding is present.

    A Transfer-Encoding whose final coding is not ``chunked`` is an error
    for requests (*strict*) and means close-delimited for responses.
    """
    codings = [
        c.strip().lower()
        for k, v in headers
        if k.lower() == "transfer-encoding"
        for c in v.split(",")
        if c.strip()
    ]
    if not codings:
        return None
    if codings[-1] == "chunked":
        return True
    if strict:
        raise error(f"Unsupported Transfer-Encoding: {', '.join(codings)}")
    return False


async def _read_chunked(
    reader: asyncio.StreamReader, error: type[MitmError], max_body_size: int
) -> tuple[bytes, bytes]:
    """Read a chunked body.  Returns ``(framed, decoded)``; trailers stay in *framed*."""
    framed = bytearray()
    body = bytearray()
    while True:
        size_line = await _readline(reader, error, "chunk size")
        framed += size_line
        size_str = size_line.split(b";", 1)[0].strip()
        if not size_str or not set(size_str) <= _HEX:
            raise error(f"Invalid chunk size: {size_line[:40]!r}")
        size = int(size_str, 16)
        if size == 0:
            break
        if len(body) + size > max_body_size:
            raise error(f"Body exceeds {max_body_size} bytes")
        chunk = await _readexactly(reader, size, error)
        body += chunk
        framed += chunk
        crlf = await _readline(reader, error, "chunk terminator")
        if crlf not in (b"\r\n", b"\n"):
            raise error("Missing CRLF after chunk data")
        framed += crlf

    while True:
        line = await _readline(reader, error, "chunk trailer")
        framed += line
        if line in (b"\r\n", b"\n"):
            break
    return bytes(framed), bytes(body)


async def _read_until_eof(
    reader: asyncio.StreamReader, error: type[MitmError], max_body_size: int, chunk_size: int
) -> bytes:
    body = bytearray()
    while True:
        try:
            chunk = await reader.read(chunk_size)
        except (ConnectionError, OSError) as e:
            raise error(f"Connection failed while reading body: {e}") from e
        if not chunk:
            return bytes(body)
        body += chunk
        if len(body) > max_body_size:
            raise error(f"Body exceeds {max_body_size} bytes")


async def _read_sized(
    reader: asyncio.StreamReader, length: int, error: type[MitmError], max_body_size: int
) -> bytes:
    if length > max_body_size:
        raise error(f"Body of {length} bytes exceeds {max_body_size}")
    if length == 0:
        return b""
    return await _readexactly(reader, length, error)


async def read_request(
    reader: asyncio.StreamReader, max_body_size: int = DEFAULT_CONFIG.max_body_size
) -> HttpRequest:
    """Read one complete HTTP/1.x request.

    Raises ``MalformedRequestError`` on truncated or unparsable input.
    """
    head, line, headers = await _read_head(reader, MalformedRequestError, "request")
    parts = line.split(" ")
    if len(parts) != 3 or not all(parts):
        raise MalformedRequestError(f"Malformed request line: {line[:80]!r}")
    method, target, version = parts
    if not set(method.encode("latin-1")) <= _TOKEN or not version.startswith("HTTP/1."):
        raise MalformedRequestError(f"Malformed request line: {line[:80]!r}")

    framed = body = b""
    if _is_chunked(headers, MalformedRequestError, strict=True):
        framed, body = await _read_chunked(reader, MalformedRequestError, max_body_size)
    else:
        length = _content_length(headers, MalformedRequestError)
        if length:
            framed = body = await _read_sized(reader, length, MalformedRequestError, max_body_size)

    return HttpRequest(
        headers=headers, head=head, framed_body=framed, body=body,
        method=method, target=target, version=version,
    )


def _interim(status: int) -> bool:
    return 100 <= status < 200 and status != 101


def _bodyless(method: str, status: int) -> bool:
    return method.upper() == "HEAD" or 100 <= status < 200 or status in (204, 304)


async def read_response(
    reader: asyncio.StreamReader,
    request_method: str,
    max_body_size: int = DEFAULT_CONFIG.max_body_size,
    read_buffer_size: int = DEFAULT_CONFIG.read_buffer_size,
) -> HttpResponse:
    """Read one complete HTTP/1.x response to a *request_method* request.

    Body framing, in order: none (HEAD, 1xx, 204, 304), chunked,
    ``Content-Length``, otherwise everything up to EOF.

    Raises ``MalformedResponseError`` on truncated or unparsable input.
    """
    head, line, headers = await _read_head(reader, MalformedResponseError, "response")
    version, _, rest = line.partition(" ")
    code, _, reason = rest.partition(" ")
    if not version.startswith("HTTP/1.") or len(code) != 3 or not (code.isascii() and code.isdigit()):
        raise MalformedResponseError(f"Malformed status line: {line[:80]!r}")
    status = int(code)

    framed = body = b""
    if not _bodyless(request_method, status):
        chunked = _is_chunked(headers, MalformedResponseError, strict=False)
        if chunked:
            framed, body = await _read_chunked(reader, MalformedResponseError, max_body_size)
        else:
            length = None if chunked is False else _content_length(headers, MalformedResponseError)
            if length is None:
                framed = body = await _read_until_eof(
                    reader, MalformedResponseError, max_body_size, read_buffer_size
                )
            else:
                framed = body = await _read_sized(reader, length, MalformedResponseError, max_body_size)

    return HttpResponse(
        headers=headers, head=head, framed_body=framed, body=body,
        version=version, status=status, reason=reason,
    )


# ============================================================================
# Relay
# ============================================================================


class RequestRelay:
    """Forwards exactly one request/response pair between two tunnels.

    Strictly sequential: the request is read completely before it is
    forwarded, the response is read completely before it is forwarded.
    """

    __slots__ = ("config",)

    def __init__(self, config: ProxyConfig = DEFAULT_CONFIG):
        self.config = config

    async def relay(self, client: Tunnel, origin: Tunnel) -> RelayResult:
        request = await self.forward_request(client, origin)
        response = await self.forward_response(origin, client, request)
        return RelayResult(request, response)

    async def relay_buffered(self, request: HttpRequest, client: Tunnel, origin: Tunnel) -> RelayResult:
        """Forward a request that was already read, then its response.

        Used for plain-HTTP proxying, where the outer server has consumed
        the request to learn the target host.
        """
        await self._write(origin, request.to_bytes(), "request")
        response = await self.forward_response(origin, client, request)
        return RelayResult(request, response)

    async def forward_request(self, client: Tunnel, origin: Tunnel) -> HttpRequest:
        """Request phase: read from *client*, write verbatim to *origin*."""
        try:
            async with asyncio.timeout(self.config.io_timeout):
                request = await read_request(client.reader, self.config.max_body_size)
        except TimeoutError as e:
            raise MalformedRequestError("Timed out reading request") from e
        client.touch()
        logger.trace("[REQ] %s (%d body bytes)", request.request_line, len(request.body))
        await self._write(origin, request.to_bytes(), "request")
        return request

    async def forward_response(self, origin: Tunnel, client: Tunnel, request: HttpRequest) -> HttpResponse:
        """Response phase: read from *origin* (framed by *request*'s method), write verbatim to *client*.

        Interim 1xx responses (``100 Continue``, ``103 Early Hints``) are
        passed through as they arrive; the returned response is the final
        one.  ``101`` is final: nothing is relayed after it.
        """
        while True:
            try:
                async with asyncio.timeout(self.config.io_timeout):
                    response = await read_response(
                        origin.reader,
                        request.method,
                        self.config.max_body_size,
                        self.config.read_buffer_size,
                    )
            except TimeoutError as e:
                raise MalformedResponseError("Timed out reading response") from e
            origin.touch()
            logger.trace("[RESP] %s (%d body bytes)", response.status_line, len(response.body))
            await self._write(client, response.to_bytes(), "response")
            if not _interim(response.status):
                return response

    async def _write(self, dest: Tunnel, data: bytes, what: str) -> None:
        if dest.closed:
            raise ForwardError(f"Cannot forward {what}: tunnel closed")
        try:
            async with asyncio.timeout(self.config.io_timeout):
                dest.writer.write(data)
                await dest.writer.drain()
        except (ConnectionError, OSError, RuntimeError, TimeoutError) as e:
            raise ForwardError(f"Cannot forward {what}: {e}") from e
        dest.touch()
