"""
Binary log streaming.

After `COM_REGISTER_SLAVE` and `COM_BINLOG_DUMP[_GTID]` every packet the server
sends is an event frame: an OK marker, a 19 byte event header, the event body
and, when checksums are enabled, a CRC32 of header and body.
"""

from __future__ import annotations

import io
import logging
import struct
import zlib
from dataclasses import dataclass, field
from enum import IntEnum
from typing import TYPE_CHECKING, Callable, Dict, List, Optional, Union

from mysql_wire import packets
from mysql_wire.errors import (
    ConnectionClosed,
    ErrorCode,
    ProtocolError,
    ServerError,
)
from mysql_wire.gtid import GtidSet
from mysql_wire.packets import (
    BINLOG_DUMP_NON_BLOCK,
    BINLOG_THROUGH_GTID,
    ComBinlogDump,
    ComBinlogDumpGtid,
    ComRegisterSlave,
)
from mysql_wire.types import (
    read_str_fixed,
    read_str_rest,
    read_uint_1,
    read_uint_2,
    read_uint_4,
    read_uint_6,
    read_uint_8,
    read_uint_len,
    remaining,
)

if TYPE_CHECKING:
    from mysql_wire.connection import Connection

logger = logging.getLogger(__name__)

EVENT_HEADER_LEN = 19
CHECKSUM_LEN = 4

# Lets a MariaDB primary send GTID and annotate events to this client
MARIADB_SLAVE_CAPABILITY_GTID = 4


class EventType(IntEnum):
    UNKNOWN_EVENT = 0
    START_EVENT_V3 = 1
    QUERY_EVENT = 2
    STOP_EVENT = 3
    ROTATE_EVENT = 4
    INTVAR_EVENT = 5
    SLAVE_EVENT = 7
    APPEND_BLOCK_EVENT = 9
    DELETE_FILE_EVENT = 11
    RAND_EVENT = 13
    USER_VAR_EVENT = 14
    FORMAT_DESCRIPTION_EVENT = 15
    XID_EVENT = 16
    BEGIN_LOAD_QUERY_EVENT = 17
    EXECUTE_LOAD_QUERY_EVENT = 18
    TABLE_MAP_EVENT = 19
    WRITE_ROWS_EVENT_V1 = 23
    UPDATE_ROWS_EVENT_V1 = 24
    DELETE_ROWS_EVENT_V1 = 25
    INCIDENT_EVENT = 26
    HEARTBEAT_LOG_EVENT = 27
    IGNORABLE_LOG_EVENT = 28
    ROWS_QUERY_LOG_EVENT = 29
    WRITE_ROWS_EVENT = 30
    UPDATE_ROWS_EVENT = 31
    DELETE_ROWS_EVENT = 32
    GTID_LOG_EVENT = 33
    ANONYMOUS_GTID_LOG_EVENT = 34
    PREVIOUS_GTIDS_LOG_EVENT = 35
    TRANSACTION_CONTEXT_EVENT = 36
    VIEW_CHANGE_EVENT = 37
    XA_PREPARE_LOG_EVENT = 38
    PARTIAL_UPDATE_ROWS_EVENT = 39
    TRANSACTION_PAYLOAD_EVENT = 40
    HEARTBEAT_LOG_EVENT_V2 = 41

    # MariaDB
    ANNOTATE_ROWS_EVENT = 160
    BINLOG_CHECKPOINT_EVENT = 161
    MARIADB_GTID_EVENT = 162
    MARIADB_GTID_LIST_EVENT = 163
    START_ENCRYPTION_EVENT = 164


class ChecksumAlg(IntEnum):
    OFF = 0
    CRC32 = 1
    UNDEF = 255


class EventFlags(IntEnum):
    LOG_EVENT_BINLOG_IN_USE_F = 0x0001
    LOG_EVENT_THREAD_SPECIFIC_F = 0x0004
    LOG_EVENT_SUPPRESS_USE_F = 0x0008
    LOG_EVENT_ARTIFICIAL_F = 0x0020
    LOG_EVENT_RELAY_LOG_F = 0x0040
    LOG_EVENT_IGNORABLE_F = 0x0080


@dataclass
class BinlogRequest:
    """
    Where to start streaming from.

    Args:
        server_id: this replica's server id. Must be unique among the primary's replicas.
        filename: binlog file to start from. Empty means the first available file.
        position: offset in `filename`
        gtid_set: MySQL GTIDs already applied. Streams with COM_BINLOG_DUMP_GTID when set.
        non_blocking: end the stream with EOF at the end of the last binlog, instead of waiting
        heartbeat_period: seconds between heartbeat events while the primary is idle
        mariadb_gtid: MariaDB GTID position (`domain-server-seq,...`) to start from
    """

    server_id: int
    filename: str = ""
    position: int = 4
    gtid_set: Union[GtidSet, str, None] = None
    non_blocking: bool = False
    heartbeat_period: Optional[float] = None
    mariadb_gtid: Optional[str] = None
    hostname: str = ""
    port: int = 0


@dataclass
class EventHeader:
    timestamp: int
    event_type: int
    server_id: int
    event_size: int
    log_pos: int
    flags: int

    @property
    def type_name(self) -> str:
        try:
            return EventType(self.event_type).name
        except ValueError:
            return f"UNKNOWN({self.event_type})"

    @classmethod
    def unpack(cls, data: bytes) -> EventHeader:
        return cls(*struct.unpack("<LBLLLH", data[:EVENT_HEADER_LEN]))


@dataclass
class BinlogEvent:
    header: EventHeader

    @property
    def event_type(self) -> int:
        return self.header.event_type

    @property
    def timestamp(self) -> int:
        return self.header.timestamp

    @property
    def log_pos(self) -> int:
        return self.header.log_pos


@dataclass
class FormatDescriptionEvent(BinlogEvent):
    binlog_version: int
    server_version: str
    create_timestamp: int
    header_length: int
    post_header_lengths: bytes
    checksum_alg: ChecksumAlg = ChecksumAlg.UNDEF


@dataclass
class RotateEvent(BinlogEvent):
    position: int
    next_binlog: str


@dataclass
class QueryEvent(BinlogEvent):
    thread_id: int
    exec_time: int
    error_code: int
    status_vars: bytes
    schema: str
    query: str


@dataclass
class XidEvent(BinlogEvent):
    xid: int


@dataclass
class GtidEvent(BinlogEvent):
    commit_flag: bool
    sid: bytes
    gno: int
    last_committed: Optional[int] = None
    sequence_number: Optional[int] = None

    @property
    def gtid(self) -> str:
        nibbles = self.sid.hex()
        return "%s-%s-%s-%s-%s:%d" % (
            nibbles[:8],
            nibbles[8:12],
            nibbles[12:16],
            nibbles[16:20],
            nibbles[20:],
            self.gno,
        )


@dataclass
class MariadbGtidEvent(BinlogEvent):
    sequence_number: int
    domain_id: int
    flags2: int

    @property
    def gtid(self) -> str:
        return f"{self.domain_id}-{self.header.server_id}-{self.sequence_number}"


@dataclass
class PreviousGtidsEvent(BinlogEvent):
    data: bytes

    @property
    def gtid_set(self) -> GtidSet:
        return GtidSet.decode(self.data)


@dataclass
class TableMapEvent(BinlogEvent):
    table_id: int
    flags: int
    schema: str
    table: str
    column_types: bytes
    column_meta: bytes
    null_bitmap: bytes
    optional_meta: bytes = b""


@dataclass
class RowsEvent(BinlogEvent):
    """Row changes. The row images are kept raw: decoding them needs the table map."""

    table_id: int
    flags: int
    extra_data: bytes
    column_count: int
    columns_present: bytes
    columns_present_update: Optional[bytes]
    rows: bytes


@dataclass
class HeartbeatEvent(BinlogEvent):
    log_ident: str


@dataclass
class StopEvent(BinlogEvent):
    pass


@dataclass
class UnknownEvent(BinlogEvent):
    data: bytes = field(default=b"")


def _parse_format_description(
    header: EventHeader, body: bytes
) -> FormatDescriptionEvent:
    r = io.BytesIO(body)
    event = FormatDescriptionEvent(
        header=header,
        binlog_version=read_uint_2(r),
        server_version=read_str_fixed(r, 50)
        .rstrip(b"\x00")
        .decode("ascii", errors="replace"),
        create_timestamp=read_uint_4(r),
        header_length=read_uint_1(r),
        post_header_lengths=read_str_rest(r),
    )
    if _supports_checksum(event.server_version):
        # Checksum aware servers always end this event with the algorithm byte
        # and a CRC32, even with binlog_checksum=NONE
        if len(event.post_header_lengths) < 1 + CHECKSUM_LEN:
            raise ProtocolError(
                "Format description is too short to carry a checksum algorithm",
                ErrorCode.BINLOG_CHECKSUM_MISMATCH,
            )
        alg = event.post_header_lengths[-1 - CHECKSUM_LEN]
        event.post_header_lengths = event.post_header_lengths[: -1 - CHECKSUM_LEN]
        try:
            event.checksum_alg = ChecksumAlg(alg)
        except ValueError:
            raise ProtocolError(
                f"Unknown binlog checksum algorithm {alg} in format description"
            ) from None
    return event


def _supports_checksum(server_version: str) -> bool:
    """Binlog checksums were added in MySQL 5.6.1 and MariaDB 5.3"""
    version = server_version.split("-", 1)[0]
    try:
        parsed = tuple(int(p) for p in version.split(".")[:3])
    except ValueError:
        return True
    if "mariadb" in server_version.lower():
        return parsed >= (5, 3)
    return parsed >= (5, 6, 1)


def _parse_rotate(header: EventHeader, body: bytes) -> RotateEvent:
    r = io.BytesIO(body)
    return RotateEvent(
        header=header,
        position=read_uint_8(r),
        next_binlog=read_str_rest(r).decode("utf8"),
    )


def _parse_query(header: EventHeader, body: bytes) -> QueryEvent:
    r = io.BytesIO(body)
    thread_id = read_uint_4(r)
    exec_time = read_uint_4(r)
    schema_len = read_uint_1(r)
    error_code = read_uint_2(r)
    status_vars_len = read_uint_2(r)
    status_vars = read_str_fixed(r, status_vars_len)
    schema = read_str_fixed(r, schema_len).decode("utf8")
    read_uint_1(r)  # NUL after the schema
    return QueryEvent(
        header=header,
        thread_id=thread_id,
        exec_time=exec_time,
        error_code=error_code,
        status_vars=status_vars,
        schema=schema,
        query=read_str_rest(r).decode("utf8", errors="replace"),
    )


def _parse_xid(header: EventHeader, body: bytes) -> XidEvent:
    if len(body) != 8:
        raise ProtocolError(f"XID event body must be 8 bytes, got {len(body)}")
    return XidEvent(header=header, xid=struct.unpack("<Q", body)[0])


def _parse_gtid(header: EventHeader, body: bytes) -> GtidEvent:
    r = io.BytesIO(body)
    event = GtidEvent(
        header=header,
        commit_flag=read_uint_1(r) == 1,
        sid=read_str_fixed(r, 16),
        gno=read_uint_8(r),
    )
    # Logical clock timestamps, since MySQL 5.7
    if remaining(r) >= 17 and read_uint_1(r) == 2:
        event.last_committed = read_uint_8(r)
        event.sequence_number = read_uint_8(r)
    return event


def _parse_mariadb_gtid(header: EventHeader, body: bytes) -> MariadbGtidEvent:
    r = io.BytesIO(body)
    return MariadbGtidEvent(
        header=header,
        sequence_number=read_uint_8(r),
        domain_id=read_uint_4(r),
        flags2=read_uint_1(r),
    )


def _parse_previous_gtids(header: EventHeader, body: bytes) -> PreviousGtidsEvent:
    return PreviousGtidsEvent(header=header, data=body)


def _parse_table_map(header: EventHeader, body: bytes) -> TableMapEvent:
    r = io.BytesIO(body)
    table_id = read_uint_6(r)
    flags = read_uint_2(r)
    schema = read_str_fixed(r, read_uint_1(r)).decode("utf8")
    read_uint_1(r)
    table = read_str_fixed(r, read_uint_1(r)).decode("utf8")
    read_uint_1(r)
    column_count = read_uint_len(r)
    column_types = read_str_fixed(r, column_count)
    column_meta = read_str_fixed(r, read_uint_len(r))
    null_bitmap = read_str_fixed(r, (column_count + 7) // 8)
    return TableMapEvent(
        header=header,
        table_id=table_id,
        flags=flags,
        schema=schema,
        table=table,
        column_types=column_types,
        column_meta=column_meta,
        null_bitmap=null_bitmap,
        optional_meta=read_str_rest(r),
    )


def _parse_rows(header: EventHeader, body: bytes) -> RowsEvent:
    r = io.BytesIO(body)
    table_id = read_uint_6(r)
    flags = read_uint_2(r)

    extra_data = b""
    if header.event_type in (
        EventType.WRITE_ROWS_EVENT,
        EventType.UPDATE_ROWS_EVENT,
        EventType.DELETE_ROWS_EVENT,
        EventType.PARTIAL_UPDATE_ROWS_EVENT,
    ):
        # The length includes its own two bytes
        extra_len = read_uint_2(r)
        if extra_len < 2:
            raise ProtocolError(f"Invalid rows event extra data length: {extra_len}")
        extra_data = read_str_fixed(r, extra_len - 2)

    column_count = read_uint_len(r)
    bitmap_len = (column_count + 7) // 8
    columns_present = read_str_fixed(r, bitmap_len)
    columns_present_update = None
    if header.event_type in (
        EventType.UPDATE_ROWS_EVENT,
        EventType.UPDATE_ROWS_EVENT_V1,
        EventType.PARTIAL_UPDATE_ROWS_EVENT,
    ):
        columns_present_update = read_str_fixed(r, bitmap_len)

    return RowsEvent(
        header=header,
        table_id=table_id,
        flags=flags,
        extra_data=extra_data,
        column_count=column_count,
        columns_present=columns_present,
        columns_present_update=columns_present_update,
        rows=read_str_rest(r),
    )


def _parse_heartbeat(header: EventHeader, body: bytes) -> HeartbeatEvent:
    return HeartbeatEvent(
        header=header, log_ident=body.decode("utf8", errors="replace")
    )


def _parse_stop(header: EventHeader, body: bytes) -> StopEvent:
    return StopEvent(header=header)


_EVENT_PARSERS: Dict[int, Callable[[EventHeader, bytes], BinlogEvent]] = {
    EventType.ROTATE_EVENT: _parse_rotate,
    EventType.QUERY_EVENT: _parse_query,
    EventType.XID_EVENT: _parse_xid,
    EventType.GTID_LOG_EVENT: _parse_gtid,
    EventType.ANONYMOUS_GTID_LOG_EVENT: _parse_gtid,
    EventType.MARIADB_GTID_EVENT: _parse_mariadb_gtid,
    EventType.PREVIOUS_GTIDS_LOG_EVENT: _parse_previous_gtids,
    EventType.TABLE_MAP_EVENT: _parse_table_map,
    EventType.WRITE_ROWS_EVENT_V1: _parse_rows,
    EventType.UPDATE_ROWS_EVENT_V1: _parse_rows,
    EventType.DELETE_ROWS_EVENT_V1: _parse_rows,
    EventType.WRITE_ROWS_EVENT: _parse_rows,
    EventType.UPDATE_ROWS_EVENT: _parse_rows,
    EventType.DELETE_ROWS_EVENT: _parse_rows,
    EventType.PARTIAL_UPDATE_ROWS_EVENT: _parse_rows,
    EventType.HEARTBEAT_LOG_EVENT: _parse_heartbeat,
    EventType.STOP_EVENT: _parse_stop,
}


class BinlogDecoder:
    """
    Decodes event frames for one stream.

    Args:
        checksum: whether events carry a trailing CRC32. This must match what was
            negotiated with the server: event bodies don't say whether they do.
    """

    def __init__(self, checksum: bool):
        self.checksum = checksum
        self.format_description: Optional[FormatDescriptionEvent] = None

    def decode(self, frame: bytes) -> BinlogEvent:
        """Decode one event (header, body and optional checksum), without the OK marker"""
        if len(frame) < EVENT_HEADER_LEN:
            raise ProtocolError(
                f"Binlog event shorter than its header: {len(frame)} bytes"
            )
        header = EventHeader.unpack(frame)
        if header.event_size != len(frame):
            raise ProtocolError(
                f"Binlog event size mismatch: header says {header.event_size}, got {len(frame)} bytes"
            )

        body = frame[EVENT_HEADER_LEN:]
        if header.event_type == EventType.FORMAT_DESCRIPTION_EVENT:
            # Carries its own checksum trailer whatever was negotiated
            fde = _parse_format_description(header, body)
            if _supports_checksum(fde.server_version):
                self._verify_checksum(header, frame)
            self._check_format_description(fde)
            return fde

        if self.checksum:
            if len(body) < CHECKSUM_LEN:
                raise ProtocolError(
                    f"{header.type_name} is too short to carry a checksum",
                    ErrorCode.BINLOG_CHECKSUM_MISMATCH,
                )
            body = body[:-CHECKSUM_LEN]
            self._verify_checksum(header, frame)

        parser = _EVENT_PARSERS.get(header.event_type)
        if parser is None:
            return UnknownEvent(header=header, data=body)
        return parser(header, body)

    def _verify_checksum(self, header: EventHeader, frame: bytes) -> None:
        expected = struct.unpack("<I", frame[-CHECKSUM_LEN:])[0]
        actual = zlib.crc32(frame[:-CHECKSUM_LEN]) & 0xFFFFFFFF
        if expected != actual:
            raise ProtocolError(
                f"Binlog checksum mismatch on {header.type_name} at {header.log_pos}: "
                f"expected 0x{expected:08x}, computed 0x{actual:08x}",
                ErrorCode.BINLOG_CHECKSUM_MISMATCH,
            )

    def _check_format_description(self, event: FormatDescriptionEvent) -> None:
        alg = event.checksum_alg
        if alg != ChecksumAlg.UNDEF and (alg == ChecksumAlg.CRC32) != self.checksum:
            raise ProtocolError(
                f"Format description uses checksum {alg.name}, "
                f"but the stream was set up with checksum {'CRC32' if self.checksum else 'OFF'}",
                ErrorCode.BINLOG_CHECKSUM_MISMATCH,
            )
        self.format_description = event


class BinlogStream:
    """
    Async iterator over binlog events.

    The stream is unbounded unless it was requested as non blocking. Reads wait
    for the server indefinitely: the only way to stop waiting is `close()`,
    which closes the connection.
    """

    def __init__(
        self, connection: Connection, checksum: bool, request: BinlogRequest
    ):
        self.connection = connection
        self.request = request
        self.decoder = BinlogDecoder(checksum)
        self.filename = request.filename
        self.position = request.position
        self.finished = False

    @property
    def checksum(self) -> bool:
        return self.decoder.checksum

    def __aiter__(self) -> BinlogStream:
        return self

    async def __anext__(self) -> BinlogEvent:
        event = await self.next_event()
        if event is None:
            raise StopAsyncIteration
        return event

    async def next_event(self) -> Optional[BinlogEvent]:
        """
        Returns:
            The next event, or None once the stream has ended
        """
        if self.finished:
            return None

        conn = self.connection
        try:
            data = await conn.read_packet()
        except ConnectionClosed:
            logger.info("Binlog stream ended: connection closed")
            self.finished = True
            return None

        if packets.is_err_packet(data):
            self.finished = True
            raise packets.parse_err(conn.capabilities, data)
        if packets.is_eof_packet(conn.capabilities, data):
            logger.info("Binlog stream ended at %s:%s", self.filename, self.position)
            self.finished = True
            return None
        if not data or data[0] != packets.OK_HEADER:
            raise ProtocolError(
                f"Expected binlog event marker 0x00, got header 0x{data[:1].hex()}"
            )

        with conn.fatal_on_protocol_error():
            event = self.decoder.decode(data[1:])

        if isinstance(event, RotateEvent):
            logger.info("Binlog rotated to %s:%s", event.next_binlog, event.position)
            self.filename = event.next_binlog
            self.position = event.position
        elif (
            event.log_pos
            and not event.header.flags & EventFlags.LOG_EVENT_ARTIFICIAL_F
        ):
            self.position = event.log_pos
        return event

    async def close(self) -> None:
        """Stop streaming. Closes the underlying connection."""
        self.finished = True
        await self.connection.close()


async def _execute(conn: Connection, sql: str) -> List[tuple]:
    result = await conn.query(sql)
    return await result.fetchall()


async def _negotiate_checksum(conn: Connection) -> bool:
    try:
        rows = await _execute(conn, "SHOW GLOBAL VARIABLES LIKE 'binlog_checksum'")
    except ServerError as e:
        logger.debug("Server has no binlog_checksum variable: %s", e)
        return False
    if not rows:
        return False

    value = rows[0][1]
    if isinstance(value, bytes):
        value = value.decode("ascii")
    # The primary only sends checksums to replicas that declare they understand them
    await _execute(conn, "SET @master_binlog_checksum = @@global.binlog_checksum")
    return (value or "NONE").upper() != "NONE"


async def start_binlog_stream(
    conn: Connection, request: BinlogRequest
) -> BinlogStream:
    """
    Register as a replica and request the binlog.

    The connection can't be used for anything else afterwards.
    """
    checksum = await _negotiate_checksum(conn)

    if conn.is_mariadb:
        await _execute(
            conn, f"SET @mariadb_slave_capability = {MARIADB_SLAVE_CAPABILITY_GTID}"
        )
    if request.heartbeat_period is not None:
        nanoseconds = int(request.heartbeat_period * 1_000_000_000)
        await _execute(conn, f"SET @master_heartbeat_period = {nanoseconds}")
    if request.mariadb_gtid is not None:
        state = request.mariadb_gtid.replace("'", "")
        await _execute(conn, f"SET @slave_connect_state = '{state}'")

    await conn.send_command(
        packets.make_com_register_slave(
            ComRegisterSlave(
                server_id=request.server_id,
                hostname=request.hostname,
                port=request.port,
            )
        )
    )
    await conn.read_ok()

    flags = BINLOG_DUMP_NON_BLOCK if request.non_blocking else 0
    gtid_set = request.gtid_set
    if isinstance(gtid_set, str):
        gtid_set = GtidSet(gtid_set)

    if gtid_set is not None and request.mariadb_gtid is None:
        await conn.send_command(
            packets.make_com_binlog_dump_gtid(
                ComBinlogDumpGtid(
                    server_id=request.server_id,
                    gtid_data=gtid_set.encode(),
                    filename=request.filename,
                    position=request.position,
                    flags=flags | BINLOG_THROUGH_GTID,
                )
            )
        )
        logger.info(
            "Registered as replica %s, streaming from GTID set %s",
            request.server_id,
            gtid_set,
        )
    else:
        await conn.send_command(
            packets.make_com_binlog_dump(
                ComBinlogDump(
                    server_id=request.server_id,
                    filename=request.filename,
                    position=request.position,
                    flags=flags,
                )
            )
        )
        logger.info(
            "Registered as replica %s, streaming from %s:%s (checksum=%s)",
            request.server_id,
            request.filename or "<first binlog>",
            request.position,
            checksum,
        )

    return BinlogStream(conn, checksum, request)
