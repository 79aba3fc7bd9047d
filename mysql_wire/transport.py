from __future__ import annotations

import asyncio
import logging
import socket
import ssl
import struct
import zlib
from typing import Optional

from mysql_wire.constants import MAX_PACKET_LEN, MIN_COMPRESS_LENGTH
from mysql_wire.errors import (
    ConnectionClosed,
    ErrorCode,
    ProtocolError,
    TransportError,
)
from mysql_wire.types import uint_3, uint_1
from mysql_wire.utils import seq

logger = logging.getLogger(__name__)


class Transport:
    """
    Duplex byte stream over plain TCP, a unix socket, or TLS.

    Writes are buffered until `drain`.
    """

    def __init__(
        self,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
    ):
        self.reader = reader
        self.writer = writer
        self.tls = False
        self._closed = False

    @classmethod
    async def connect(
        cls,
        host: str,
        port: int,
        unix_socket: Optional[str] = None,
        tcp_nodelay: bool = True,
        tcp_keepalive: Optional[int] = None,
    ) -> Transport:
        try:
            if unix_socket:
                reader, writer = await asyncio.open_unix_connection(unix_socket)
            else:
                reader, writer = await asyncio.open_connection(host, port)
        except OSError as e:
            where = unix_socket or f"{host}:{port}"
            code = ErrorCode.CONNECTION_ERROR if unix_socket else ErrorCode.CONN_HOST_ERROR
            raise TransportError(f"Can't connect to {where}: {e}", code) from e

        sock = writer.get_extra_info("socket")
        if sock is not None and sock.family in (socket.AF_INET, socket.AF_INET6):
            sock.setsockopt(socket.IPPROTO_TCP, socket.TCP_NODELAY, int(tcp_nodelay))
            if tcp_keepalive is not None:
                sock.setsockopt(socket.SOL_SOCKET, socket.SO_KEEPALIVE, 1)
                if hasattr(socket, "TCP_KEEPIDLE"):
                    sock.setsockopt(
                        socket.IPPROTO_TCP,
                        socket.TCP_KEEPIDLE,
                        max(1, tcp_keepalive // 1000),
                    )

        return cls(reader, writer)

    async def read(self, n: int) -> bytes:
        try:
            return await self.reader.readexactly(n)
        except asyncio.IncompleteReadError as e:
            raise ConnectionClosed(
                f"Connection closed after {len(e.partial)} of {n} expected bytes",
                expected=n,
            ) from e
        except ssl.SSLError as e:
            raise TransportError(
                f"TLS failure: {e}", ErrorCode.SSL_CONNECTION_ERROR
            ) from e
        except OSError as e:
            raise TransportError(f"Read failed: {e}") from e

    def write(self, data: bytes) -> None:
        self.writer.write(data)

    async def drain(self) -> None:
        try:
            await self.writer.drain()
        except ssl.SSLError as e:
            raise TransportError(
                f"TLS failure: {e}", ErrorCode.SSL_CONNECTION_ERROR
            ) from e
        except OSError as e:
            raise TransportError(
                f"Write failed: {e}", ErrorCode.SERVER_GONE_ERROR
            ) from e

    async def start_tls(
        self, context: ssl.SSLContext, server_hostname: Optional[str] = None
    ) -> None:
        try:
            if hasattr(self.writer, "start_tls"):
                await self.writer.start_tls(context, server_hostname=server_hostname)
            else:
                transport = self.writer.transport
                protocol = transport.get_protocol()
                loop = asyncio.get_event_loop()
                new_transport = await loop.start_tls(
                    transport=transport,
                    protocol=protocol,
                    sslcontext=context,
                    server_side=False,
                    server_hostname=server_hostname,
                )

                # This seems to be the easiest way to wrap the socket created by asyncio
                self.writer._transport = new_transport  # type: ignore # pylint: disable=protected-access
                self.reader._transport = new_transport  # type: ignore # pylint: disable=protected-access
        except OSError as e:
            # ssl.SSLError is an OSError
            raise TransportError(
                f"TLS handshake failed: {e}", ErrorCode.SSL_CONNECTION_ERROR
            ) from e
        self.tls = True
        logger.debug("TLS established (%s)", self.writer.get_extra_info("cipher"))

    def reset_seq(self) -> None:
        pass

    @property
    def closed(self) -> bool:
        return self._closed

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self.writer.close()
        try:
            await self.writer.wait_closed()
        except (OSError, ssl.SSLError):
            # The peer may already be gone, nothing left to clean up
            logger.debug("Error while closing transport", exc_info=True)


class CompressedTransport:
    """
    Compression layer on top of a `Transport`.

    Every compressed frame is a 7 byte header (compressed length, sequence id,
    uncompressed length) followed by a zlib stream, or by the raw bytes when the
    uncompressed length is 0. Plaintext packet boundaries are preserved below
    this layer, which means TLS always sits underneath compression.
    """

    def __init__(self, inner: Transport, level: int = 6):
        self.inner = inner
        self.level = level
        self.seq = seq(256)
        self._read_buffer = bytearray()
        self._write_buffer = bytearray()

    @property
    def tls(self) -> bool:
        return self.inner.tls

    @property
    def closed(self) -> bool:
        return self.inner.closed

    async def read(self, n: int) -> bytes:
        while len(self._read_buffer) < n:
            self._read_buffer.extend(await self._read_frame())
        data = bytes(self._read_buffer[:n])
        del self._read_buffer[:n]
        return data

    async def _read_frame(self) -> bytes:
        header = await self.inner.read(7)
        compressed_length, sequence_id, uncompressed_length = _unpack_header(header)

        expected = next(self.seq)
        if sequence_id != expected:
            raise ProtocolError(
                f"Compressed packet out of order: expected seq({expected}) got seq({sequence_id})"
            )

        payload = await self.inner.read(compressed_length)
        if uncompressed_length == 0:
            return payload

        try:
            data = zlib.decompress(payload)
        except zlib.error as e:
            raise ProtocolError(f"Corrupt compressed packet: {e}") from e
        if len(data) != uncompressed_length:
            raise ProtocolError(
                f"Compressed packet inflated to {len(data)} bytes, header said {uncompressed_length}"
            )
        return data

    def write(self, data: bytes) -> None:
        self._write_buffer.extend(data)

    async def drain(self) -> None:
        data = bytes(self._write_buffer)
        self._write_buffer.clear()
        while data:
            chunk = data[:MAX_PACKET_LEN]
            data = data[MAX_PACKET_LEN:]
            self.inner.write(self._frame(chunk))
        await self.inner.drain()

    def _frame(self, chunk: bytes) -> bytes:
        sequence_id = uint_1(next(self.seq))
        if len(chunk) >= MIN_COMPRESS_LENGTH:
            compressed = zlib.compress(chunk, self.level)
            if len(compressed) < len(chunk):
                return (
                    uint_3(len(compressed))
                    + sequence_id
                    + uint_3(len(chunk))
                    + compressed
                )
        return uint_3(len(chunk)) + sequence_id + uint_3(0) + chunk

    async def start_tls(
        self, context: ssl.SSLContext, server_hostname: Optional[str] = None
    ) -> None:
        raise ProtocolError("TLS must be negotiated before compression is enabled")

    def reset_seq(self) -> None:
        self.seq.reset()

    async def close(self) -> None:
        await self.inner.close()


def _unpack_header(header: bytes) -> tuple:
    i = struct.unpack("<I", header[:4])[0]
    compressed_length = i & 0x00FFFFFF
    sequence_id = (i & 0xFF000000) >> 24
    uncompressed_length = int.from_bytes(header[4:7], "little")
    return compressed_length, sequence_id, uncompressed_length
