from __future__ import annotations

import logging
import ssl
import struct
from typing import Optional, Union

from mysql_wire.constants import MAX_PACKET_LEN
from mysql_wire.errors import ProtocolError
from mysql_wire.transport import CompressedTransport, Transport
from mysql_wire.types import uint_3, uint_1
from mysql_wire.utils import seq

logger = logging.getLogger(__name__)

AnyTransport = Union[Transport, CompressedTransport]


class MysqlStream:
    """
    Frames logical payloads into physical packets over a transport.

    A physical packet is a 3 byte length, a 1 byte sequence id and up to
    0xFFFFFF bytes of payload. A physical packet of exactly 0xFFFFFF bytes means
    another packet follows, so a payload whose length is a multiple of 0xFFFFFF
    ends with an empty packet. The sequence counter is shared by both directions:
    the server continues numbering from the last packet the client sent.
    """

    def __init__(
        self,
        transport: AnyTransport,
        buffer_size: int = 2**15,
    ):
        self.transport = transport
        self.seq = seq(256)
        self._buffer = bytearray()
        self._buffer_size = buffer_size

    async def read(self) -> bytes:
        data = b""
        while True:
            header = await self.transport.read(4)

            i = struct.unpack("<I", header)[0]
            payload_length = i & 0x00FFFFFF
            sequence_id = (i & 0xFF000000) >> 24

            expected = next(self.seq)
            if sequence_id != expected:
                raise ProtocolError(
                    f"Packets out of order: expected seq({expected}) got seq({sequence_id})"
                )

            if payload_length == 0:
                return data

            data += await self.transport.read(payload_length)

            if payload_length < MAX_PACKET_LEN:
                return data

    read_payload = read

    async def write(self, data: bytes, drain: bool = True) -> None:
        while True:
            # Grab first 0xFFFFFF bytes to send
            payload = data[:MAX_PACKET_LEN]
            data = data[MAX_PACKET_LEN:]

            payload_length = uint_3(len(payload))
            sequence_id = uint_1(next(self.seq))
            packet = payload_length + sequence_id + payload

            self._buffer.extend(packet)
            if drain or len(self._buffer) >= self._buffer_size:
                await self.drain()

            # We are done unless len(send) == 0xFFFFFF
            if len(payload) != MAX_PACKET_LEN:
                return

    write_payload = write

    async def drain(self) -> None:
        if self._buffer:
            self.transport.write(bytes(self._buffer))
            self._buffer.clear()
        await self.transport.drain()

    def reset_seq(self) -> None:
        """Start a new command context"""
        self.seq.reset()
        self.transport.reset_seq()

    async def start_tls(
        self, context: ssl.SSLContext, server_hostname: Optional[str] = None
    ) -> None:
        await self.drain()
        await self.transport.start_tls(context, server_hostname)

    def enable_compression(self, level: int) -> None:
        if isinstance(self.transport, CompressedTransport):
            return
        self.transport = CompressedTransport(self.transport, level)
        logger.debug("Compression enabled (level %s)", level)

    @property
    def compressed(self) -> bool:
        return isinstance(self.transport, CompressedTransport)

    @property
    def tls(self) -> bool:
        return self.transport.tls

    async def close(self) -> None:
        await self.transport.close()
