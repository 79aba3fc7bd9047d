from __future__ import annotations

import io
from dataclasses import dataclass, field
from typing import Optional, Dict, Any, Sequence, Tuple, List

from mysql_wire.errors import ProtocolError, ServerError
from mysql_wire.results import (
    Column,
    NullBitmap,
    decode_binary_value,
)
from mysql_wire.types import (
    Capabilities,
    ColumnDefinition,
    ColumnType,
    Commands,
    ResultsetMetadata,
    ServerStatus,
    peek,
    read_str_fixed,
    read_str_len,
    read_str_null,
    read_str_rest,
    read_uint_1,
    read_uint_2,
    read_uint_4,
    read_uint_len,
    remaining,
    str_fixed,
    str_len,
    str_null,
    str_rest,
    uint_1,
    uint_2,
    uint_4,
    uint_8,
    uint_len,
)

OK_HEADER = 0x00
EOF_HEADER = 0xFE
ERR_HEADER = 0xFF
LOCAL_INFILE_HEADER = 0xFB
AUTH_MORE_DATA_HEADER = 0x01
AUTH_SWITCH_HEADER = 0xFE

# A "binlog dump" flag asking the server to end the stream with EOF instead of waiting
BINLOG_DUMP_NON_BLOCK = 0x01
BINLOG_THROUGH_POSITION = 0x02
BINLOG_THROUGH_GTID = 0x04


@dataclass
class HandshakeV10:
    protocol_version: int
    server_version: str
    connection_id: int
    auth_data: bytes
    capabilities: Capabilities
    character_set: int
    status_flags: ServerStatus
    auth_plugin_name: Optional[str] = None

    @property
    def is_mariadb(self) -> bool:
        return "mariadb" in self.server_version.lower()


@dataclass
class SSLRequest:
    max_packet_size: int
    capabilities: Capabilities
    client_charset: int


@dataclass
class HandshakeResponse41:
    max_packet_size: int
    capabilities: Capabilities
    client_charset: int
    username: str
    auth_response: bytes
    connect_attrs: Dict[str, str] = field(default_factory=dict)
    database: Optional[str] = None
    client_plugin: Optional[str] = None


@dataclass
class OkPacket:
    affected_rows: int = 0
    last_insert_id: int = 0
    status_flags: ServerStatus = ServerStatus(0)
    warnings: int = 0
    info: str = ""
    session_state_changes: bytes = b""


@dataclass
class EofPacket:
    warnings: int = 0
    status_flags: ServerStatus = ServerStatus(0)


@dataclass
class AuthSwitchRequest:
    plugin_name: str
    plugin_data: bytes


@dataclass
class AuthMoreData:
    data: bytes


@dataclass
class LocalInfileRequest:
    filename: str


@dataclass
class ComStmtPrepareOk:
    stmt_id: int
    num_columns: int
    num_params: int
    warnings: int


@dataclass
class ComRegisterSlave:
    server_id: int
    hostname: str = ""
    user: str = ""
    password: str = ""
    port: int = 0
    replication_rank: int = 0
    master_id: int = 0


@dataclass
class ComBinlogDump:
    server_id: int
    filename: str = ""
    position: int = 4
    flags: int = 0


@dataclass
class ComBinlogDumpGtid:
    server_id: int
    gtid_data: bytes
    filename: str = ""
    position: int = 4
    flags: int = BINLOG_THROUGH_GTID


# Binary protocol parameter: type, unsigned, and the encoded value.
# A None value is either NULL or was already sent as long data.
BinaryParam = Tuple[ColumnType, bool, Optional[bytes]]


def parse_handshake_v10(data: bytes) -> HandshakeV10:
    r = io.BytesIO(data)

    protocol_version = read_uint_1(r)
    if protocol_version == ERR_HEADER:
        raise parse_err(Capabilities(0), data)
    if protocol_version != 10:
        raise ProtocolError(
            f"Unsupported handshake protocol version: expected 10, got {protocol_version}"
        )

    server_version = read_str_null(r).decode("ascii", errors="replace")
    connection_id = read_uint_4(r)
    auth_data = read_str_fixed(r, 8)
    read_uint_1(r)  # filler
    capabilities = read_uint_2(r)

    handshake = HandshakeV10(
        protocol_version=protocol_version,
        server_version=server_version,
        connection_id=connection_id,
        auth_data=auth_data,
        capabilities=Capabilities(capabilities),
        character_set=0,
        status_flags=ServerStatus(0),
    )

    if not peek(r):
        # Pre 4.1 servers stop here
        return handshake

    handshake.character_set = read_uint_1(r)
    handshake.status_flags = ServerStatus(read_uint_2(r))
    capabilities |= read_uint_2(r) << 16
    auth_data_len = read_uint_1(r)
    read_str_fixed(r, 6)  # reserved
    extended = read_uint_4(r)
    if not capabilities & Capabilities.CLIENT_LONG_PASSWORD:
        # MariaDB clears this bit and reuses the last reserved bytes
        capabilities |= extended << 32

    if capabilities & Capabilities.CLIENT_SECURE_CONNECTION:
        part2 = read_str_fixed(r, max(13, auth_data_len - 8))
        if part2.endswith(b"\x00"):
            part2 = part2[:-1]
        auth_data += part2

    if capabilities & Capabilities.CLIENT_PLUGIN_AUTH:
        # Some servers don't NUL terminate the plugin name
        name = read_str_rest(r)
        handshake.auth_plugin_name = name.split(b"\x00", 1)[0].decode("ascii")

    handshake.auth_data = auth_data
    handshake.capabilities = Capabilities(capabilities)
    return handshake


def _capability_header(
    capabilities: Capabilities, max_packet_size: int, client_charset: int
) -> bytes:
    return _concat(
        uint_4(capabilities & 0xFFFFFFFF),
        uint_4(max_packet_size),
        uint_1(client_charset),
        str_fixed(19, bytes(19)),  # filler
        uint_4((capabilities >> 32) & 0xFFFFFFFF),  # MariaDB extended capabilities
    )


def make_ssl_request(request: SSLRequest) -> bytes:
    return _capability_header(
        request.capabilities, request.max_packet_size, request.client_charset
    )


def make_handshake_response_41(response: HandshakeResponse41) -> bytes:
    capabilities = response.capabilities
    parts = [
        _capability_header(
            capabilities, response.max_packet_size, response.client_charset
        ),
        str_null(response.username.encode("utf8")),
    ]

    if Capabilities.CLIENT_PLUGIN_AUTH_LENENC_CLIENT_DATA in capabilities:
        parts.append(str_len(response.auth_response))
    elif Capabilities.CLIENT_SECURE_CONNECTION in capabilities:
        if len(response.auth_response) > 255:
            raise ProtocolError("Auth response is too long without lenenc client data")
        parts.append(uint_1(len(response.auth_response)))
        parts.append(str_rest(response.auth_response))
    else:
        parts.append(str_null(response.auth_response))

    if Capabilities.CLIENT_CONNECT_WITH_DB in capabilities:
        parts.append(str_null((response.database or "").encode("utf8")))

    if Capabilities.CLIENT_PLUGIN_AUTH in capabilities:
        parts.append(str_null((response.client_plugin or "").encode("utf8")))

    if Capabilities.CLIENT_CONNECT_ATTRS in capabilities:
        parts.append(_make_connect_attrs(response.connect_attrs))

    return _concat(*parts)


def parse_auth_switch_request(data: bytes) -> AuthSwitchRequest:
    r = io.BytesIO(data)
    read_uint_1(r)  # status tag
    if not peek(r):
        # Old style request: switch to mysql_old_password using the original scramble
        return AuthSwitchRequest(plugin_name="mysql_old_password", plugin_data=b"")
    plugin_name = read_str_null(r).decode("ascii")
    plugin_data = read_str_rest(r)
    if plugin_data.endswith(b"\x00"):
        plugin_data = plugin_data[:-1]
    return AuthSwitchRequest(plugin_name=plugin_name, plugin_data=plugin_data)


def parse_auth_more_data(data: bytes) -> AuthMoreData:
    return AuthMoreData(data=data[1:])


def is_ok_packet(data: bytes) -> bool:
    return bool(data) and data[0] == OK_HEADER


def is_err_packet(data: bytes) -> bool:
    return bool(data) and data[0] == ERR_HEADER


def is_eof_packet(capabilities: Capabilities, data: bytes) -> bool:
    """
    Does this packet end a sequence of rows or column definitions?

    With CLIENT_DEPRECATE_EOF the terminator is an OK packet with an EOF header,
    which can be longer than a classic EOF packet. A row can also start with
    0xfe (an 8 byte length prefix), but then it is at least 0xffffff bytes long.
    """
    if not data or data[0] != EOF_HEADER:
        return False
    if Capabilities.CLIENT_DEPRECATE_EOF in capabilities:
        return len(data) < 0xFFFFFF
    return len(data) < 9


def parse_ok(capabilities: Capabilities, data: bytes) -> OkPacket:
    r = io.BytesIO(data)
    header = read_uint_1(r)
    if header not in (OK_HEADER, EOF_HEADER):
        raise ProtocolError(f"Expected OK packet, got header 0x{header:02x}")

    ok = OkPacket(
        affected_rows=read_uint_len(r),
        last_insert_id=read_uint_len(r),
    )

    if Capabilities.CLIENT_PROTOCOL_41 in capabilities:
        ok.status_flags = ServerStatus(read_uint_2(r))
        ok.warnings = read_uint_2(r)
    elif Capabilities.CLIENT_TRANSACTIONS in capabilities:
        ok.status_flags = ServerStatus(read_uint_2(r))

    if Capabilities.CLIENT_SESSION_TRACK in capabilities:
        if remaining(r):
            ok.info = read_str_len(r).decode("utf8", errors="replace")
        if (
            ServerStatus.SERVER_SESSION_STATE_CHANGED in ok.status_flags
            and remaining(r)
        ):
            ok.session_state_changes = read_str_len(r)
    else:
        ok.info = read_str_rest(r).decode("utf8", errors="replace")

    return ok


def parse_eof(capabilities: Capabilities, data: bytes) -> EofPacket:
    r = io.BytesIO(data)
    header = read_uint_1(r)
    if header != EOF_HEADER:
        raise ProtocolError(f"Expected EOF packet, got header 0x{header:02x}")
    if Capabilities.CLIENT_PROTOCOL_41 in capabilities and remaining(r) >= 4:
        return EofPacket(
            warnings=read_uint_2(r), status_flags=ServerStatus(read_uint_2(r))
        )
    return EofPacket()


def parse_terminator(capabilities: Capabilities, data: bytes) -> OkPacket:
    """Parse whatever ends a result set into an OkPacket"""
    if Capabilities.CLIENT_DEPRECATE_EOF in capabilities:
        return parse_ok(capabilities, data)
    eof = parse_eof(capabilities, data)
    return OkPacket(status_flags=eof.status_flags, warnings=eof.warnings)


def parse_err(capabilities: Capabilities, data: bytes) -> ServerError:
    r = io.BytesIO(data)
    header = read_uint_1(r)
    if header != ERR_HEADER:
        raise ProtocolError(f"Expected ERR packet, got header 0x{header:02x}")
    code = read_uint_2(r)
    sqlstate = None
    if peek(r) == b"#":
        r.read(1)
        sqlstate = read_str_fixed(r, 5).decode("ascii", errors="replace")
    msg = read_str_rest(r).decode("utf8", errors="replace")
    return ServerError(code, sqlstate, msg)


def parse_local_infile_request(data: bytes) -> LocalInfileRequest:
    return LocalInfileRequest(filename=data[1:].decode("utf8", errors="replace"))


def parse_column_count(capabilities: Capabilities, data: bytes) -> Tuple[int, bool]:
    """
    Returns:
        Number of columns and whether column definitions follow
    """
    r = io.BytesIO(data)
    metadata_follows = True
    if Capabilities.CLIENT_OPTIONAL_RESULTSET_METADATA in capabilities:
        metadata_follows = (
            read_uint_1(r) == ResultsetMetadata.RESULTSET_METADATA_FULL
        )
    column_count = read_uint_len(r)
    return column_count, metadata_follows


def parse_column_definition_41(data: bytes) -> Column:
    r = io.BytesIO(data)
    catalog = read_str_len(r)
    schema = read_str_len(r)
    table = read_str_len(r)
    org_table = read_str_len(r)
    name = read_str_len(r)
    org_name = read_str_len(r)
    fixed_length = read_uint_len(r)
    if fixed_length < 0x0C:
        raise ProtocolError(f"Column definition fixed fields too short: {fixed_length}")
    character_set = read_uint_2(r)
    column_length = read_uint_4(r)
    type_code = read_uint_1(r)
    flags = read_uint_2(r)
    decimals = read_uint_1(r)

    try:
        column_type = ColumnType(type_code)
    except ValueError:
        raise ProtocolError(f"Unknown column type 0x{type_code:02x}") from None

    return Column(
        name=_decode_identifier(name),
        type=column_type,
        flags=ColumnDefinition(flags),
        character_set=character_set,
        column_length=column_length,
        decimals=decimals,
        schema=_decode_identifier(schema),
        table=_decode_identifier(table),
        org_table=_decode_identifier(org_table),
        org_name=_decode_identifier(org_name),
        catalog=_decode_identifier(catalog),
    )


def _decode_identifier(b: bytes) -> str:
    return b.decode("utf8", errors="surrogateescape")


def parse_text_resultset_row(
    data: bytes, columns: Sequence[Column]
) -> Tuple[Optional[bytes], ...]:
    r = io.BytesIO(data)
    values: List[Optional[bytes]] = []
    for _ in columns:
        if peek(r) == b"\xfb":
            r.read(1)
            values.append(None)
        else:
            values.append(read_str_len(r))
    if remaining(r):
        raise ProtocolError(
            f"Text row has {remaining(r)} trailing bytes after {len(columns)} columns"
        )
    return tuple(values)


def parse_binary_resultrow(data: bytes, columns: Sequence[Column]) -> Tuple[Any, ...]:
    r = io.BytesIO(data)
    header = read_uint_1(r)
    if header != OK_HEADER:
        raise ProtocolError(f"Expected binary row header 0x00, got 0x{header:02x}")

    null_bitmap = NullBitmap.from_buffer(r, len(columns), offset=2)

    values = []
    for i, column in enumerate(columns):
        if null_bitmap.is_flipped(i):
            values.append(None)
        else:
            values.append(decode_binary_value(r, column))
    if remaining(r):
        raise ProtocolError(
            f"Binary row has {remaining(r)} trailing bytes after {len(columns)} columns"
        )
    return tuple(values)


def make_command(command: Commands, payload: bytes = b"") -> bytes:
    return _concat(uint_1(command), str_rest(payload))


def make_com_query(sql: bytes) -> bytes:
    return make_command(Commands.COM_QUERY, sql)


def make_com_init_db(database: bytes) -> bytes:
    return make_command(Commands.COM_INIT_DB, database)


def make_com_stmt_prepare(sql: bytes) -> bytes:
    return make_command(Commands.COM_STMT_PREPARE, sql)


def parse_com_stmt_prepare_ok(data: bytes) -> ComStmtPrepareOk:
    r = io.BytesIO(data)
    status = read_uint_1(r)
    if status != OK_HEADER:
        raise ProtocolError(f"Expected COM_STMT_PREPARE OK, got header 0x{status:02x}")
    stmt_id = read_uint_4(r)
    num_columns = read_uint_2(r)
    num_params = read_uint_2(r)
    warnings = 0
    if remaining(r) >= 3:
        read_uint_1(r)  # filler
        warnings = read_uint_2(r)
    return ComStmtPrepareOk(
        stmt_id=stmt_id,
        num_columns=num_columns,
        num_params=num_params,
        warnings=warnings,
    )


def make_com_stmt_execute(
    stmt_id: int, params: Sequence[BinaryParam], flags: int = 0
) -> bytes:
    parts = [
        uint_1(Commands.COM_STMT_EXECUTE),
        uint_4(stmt_id),
        uint_1(flags),
        uint_4(1),  # iteration count. Always 1.
    ]

    if params:
        null_bitmap = NullBitmap.new(len(params))
        types = []
        values = []
        for i, (param_type, unsigned, value) in enumerate(params):
            if param_type == ColumnType.NULL:
                null_bitmap.flip(i)
            types.append(uint_1(param_type) + uint_1(0x80 if unsigned else 0))
            if value is not None:
                values.append(value)

        parts.append(bytes(null_bitmap))
        parts.append(uint_1(1))  # new-params-bound flag
        parts.extend(types)
        parts.extend(values)

    return _concat(*parts)


def make_com_stmt_send_long_data(stmt_id: int, param_id: int, data: bytes) -> bytes:
    return _concat(
        uint_1(Commands.COM_STMT_SEND_LONG_DATA),
        uint_4(stmt_id),
        uint_2(param_id),
        str_rest(data),
    )


def make_com_stmt_reset(stmt_id: int) -> bytes:
    return make_command(Commands.COM_STMT_RESET, uint_4(stmt_id))


def make_com_stmt_close(stmt_id: int) -> bytes:
    return make_command(Commands.COM_STMT_CLOSE, uint_4(stmt_id))


def make_com_register_slave(com: ComRegisterSlave) -> bytes:
    return _concat(
        uint_1(Commands.COM_REGISTER_SLAVE),
        uint_4(com.server_id),
        _str_len_1(com.hostname.encode("utf8")),
        _str_len_1(com.user.encode("utf8")),
        _str_len_1(com.password.encode("utf8")),
        uint_2(com.port),
        uint_4(com.replication_rank),
        uint_4(com.master_id),
    )


def make_com_binlog_dump(com: ComBinlogDump) -> bytes:
    return _concat(
        uint_1(Commands.COM_BINLOG_DUMP),
        uint_4(com.position & 0xFFFFFFFF),
        uint_2(com.flags),
        uint_4(com.server_id),
        str_rest(com.filename.encode("utf8")),
    )


def make_com_binlog_dump_gtid(com: ComBinlogDumpGtid) -> bytes:
    filename = com.filename.encode("utf8")
    parts = [
        uint_1(Commands.COM_BINLOG_DUMP_GTID),
        uint_2(com.flags),
        uint_4(com.server_id),
        uint_4(len(filename)),
        str_rest(filename),
        uint_8(com.position),
    ]
    if com.flags & BINLOG_THROUGH_GTID:
        parts.append(uint_4(len(com.gtid_data)))
        parts.append(str_rest(com.gtid_data))
    return _concat(*parts)


def _str_len_1(s: bytes) -> bytes:
    if len(s) > 255:
        raise ProtocolError(f"Value too long for a 1 byte length prefix: {len(s)}")
    return uint_1(len(s)) + s


def _make_connect_attrs(connect_attrs: Dict[str, str]) -> bytes:
    data = b"".join(
        str_len(k.encode("utf8")) + str_len(v.encode("utf8"))
        for k, v in connect_attrs.items()
    )
    return str_len(data)


def _concat(*parts: bytes) -> bytes:
    return b"".join(parts)

