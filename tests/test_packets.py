import pytest

from mysql_wire import packets
from mysql_wire.errors import ProtocolError, ServerError
from mysql_wire.packets import (
    ComBinlogDump,
    ComBinlogDumpGtid,
    ComRegisterSlave,
    HandshakeResponse41,
)
from mysql_wire.types import (
    Capabilities,
    ColumnDefinition,
    ColumnType,
    ServerStatus,
    str_null,
    uint_4,
)
from tests.conftest import (
    SCRAMBLE,
    SERVER_CAPABILITIES,
    column_def,
    err,
    greeting,
    ok,
)

DEPRECATE_EOF = SERVER_CAPABILITIES
CLASSIC_EOF = SERVER_CAPABILITIES & ~Capabilities.CLIENT_DEPRECATE_EOF


def test_parse_handshake() -> None:
    handshake = packets.parse_handshake_v10(greeting(version="8.0.36-log"))
    assert handshake.protocol_version == 10
    assert handshake.server_version == "8.0.36-log"
    assert handshake.connection_id == 7
    assert handshake.auth_data == SCRAMBLE
    assert handshake.capabilities == SERVER_CAPABILITIES
    assert handshake.character_set == 45
    assert ServerStatus.SERVER_STATUS_AUTOCOMMIT in handshake.status_flags
    assert handshake.auth_plugin_name == "mysql_native_password"
    assert not handshake.is_mariadb


def test_parse_handshake_mariadb() -> None:
    capabilities = SERVER_CAPABILITIES & ~Capabilities.CLIENT_LONG_PASSWORD
    handshake = packets.parse_handshake_v10(
        greeting(
            capabilities=capabilities,
            version="5.5.5-10.11.2-MariaDB",
            extended=0b101,
        )
    )
    assert handshake.is_mariadb
    assert Capabilities.MARIADB_CLIENT_PROGRESS in handshake.capabilities
    assert Capabilities.MARIADB_CLIENT_STMT_BULK_OPERATIONS in handshake.capabilities
    assert Capabilities.MARIADB_CLIENT_COM_MULTI not in handshake.capabilities


def test_parse_handshake_plugin_without_nul() -> None:
    data = greeting(plugin="caching_sha2_password")[:-1]
    handshake = packets.parse_handshake_v10(data)
    assert handshake.auth_plugin_name == "caching_sha2_password"


def test_parse_handshake_error() -> None:
    with pytest.raises(ServerError) as ctx:
        packets.parse_handshake_v10(b"\xff\x69\x04Too many connections")
    assert ctx.value.code == 1129


def test_parse_handshake_bad_version() -> None:
    with pytest.raises(ProtocolError):
        packets.parse_handshake_v10(b"\x09" + greeting()[1:])


def test_handshake_response() -> None:
    capabilities = (
        Capabilities.CLIENT_PROTOCOL_41
        | Capabilities.CLIENT_SECURE_CONNECTION
        | Capabilities.CLIENT_PLUGIN_AUTH
        | Capabilities.CLIENT_CONNECT_WITH_DB
        | Capabilities.CLIENT_CONNECT_ATTRS
    )
    data = packets.make_handshake_response_41(
        HandshakeResponse41(
            max_packet_size=2**24,
            capabilities=capabilities,
            client_charset=45,
            username="root",
            auth_response=b"\x01\x02\x03",
            connect_attrs={"_client_name": "x"},
            database="test",
            client_plugin="mysql_native_password",
        )
    )
    assert data[:4] == uint_4(capabilities)
    assert data[4:8] == uint_4(2**24)
    assert data[8] == 45
    assert data[9:32] == bytes(23)
    assert data[32:] == (
        str_null(b"root")
        + b"\x03\x01\x02\x03"
        + str_null(b"test")
        + str_null(b"mysql_native_password")
        + b"\x0f\x0c_client_name\x01x"
    )


def test_handshake_response_lenenc_auth_data() -> None:
    capabilities = (
        Capabilities.CLIENT_PROTOCOL_41
        | Capabilities.CLIENT_PLUGIN_AUTH_LENENC_CLIENT_DATA
    )
    data = packets.make_handshake_response_41(
        HandshakeResponse41(
            max_packet_size=0,
            capabilities=capabilities,
            client_charset=45,
            username="u",
            auth_response=bytes(300),
        )
    )
    assert data[32:] == b"u\x00\xfc\x2c\x01" + bytes(300)


def test_is_eof_packet() -> None:
    assert packets.is_eof_packet(CLASSIC_EOF, b"\xfe\x00\x00\x02\x00")
    assert not packets.is_eof_packet(CLASSIC_EOF, b"\xfe" + bytes(9))
    assert packets.is_eof_packet(DEPRECATE_EOF, b"\xfe" + bytes(20))
    assert not packets.is_eof_packet(DEPRECATE_EOF, b"\x00\x00\x00")
    assert not packets.is_eof_packet(DEPRECATE_EOF, b"")


def test_parse_ok() -> None:
    data = ok(
        affected_rows=300,
        last_insert_id=5,
        status=ServerStatus.SERVER_STATUS_IN_TRANS,
        warnings=2,
        info=b"Rows matched: 300",
    )
    result = packets.parse_ok(DEPRECATE_EOF, data)
    assert result.affected_rows == 300
    assert result.last_insert_id == 5
    assert result.status_flags == ServerStatus.SERVER_STATUS_IN_TRANS
    assert result.warnings == 2
    assert result.info == "Rows matched: 300"


def test_parse_ok_session_track() -> None:
    capabilities = DEPRECATE_EOF | Capabilities.CLIENT_SESSION_TRACK
    data = (
        ok(status=ServerStatus.SERVER_SESSION_STATE_CHANGED)
        + b"\x04info"
        + b"\x03abc"
    )
    result = packets.parse_ok(capabilities, data)
    assert result.info == "info"
    assert result.session_state_changes == b"abc"


def test_parse_terminator_classic_eof() -> None:
    result = packets.parse_terminator(
        CLASSIC_EOF, b"\xfe\x01\x00" + bytes([0x0A, 0x00])
    )
    assert result.warnings == 1
    assert result.status_flags == (
        ServerStatus.SERVER_STATUS_AUTOCOMMIT | ServerStatus.SERVER_MORE_RESULTS_EXISTS
    )


def test_parse_err() -> None:
    error = packets.parse_err(
        DEPRECATE_EOF, err(1045, "28000", "Access denied for user 'x'")
    )
    assert error.code == 1045
    assert error.sqlstate == "28000"
    assert error.msg == "Access denied for user 'x'"
    assert str(error) == "1045 (28000): Access denied for user 'x'"


def test_parse_err_without_sqlstate() -> None:
    error = packets.parse_err(DEPRECATE_EOF, b"\xff\x10\x04Bad handshake")
    assert error.code == 1040
    assert error.sqlstate is None
    assert error.msg == "Bad handshake"


def test_parse_column_definition() -> None:
    column = packets.parse_column_definition_41(
        column_def(
            "id",
            ColumnType.LONGLONG,
            flags=ColumnDefinition.UNSIGNED_FLAG | ColumnDefinition.NOT_NULL_FLAG,
            character_set=63,
        )
    )
    assert column.name == "id"
    assert column.org_name == "id"
    assert column.schema == "db"
    assert column.table == "t"
    assert column.type == ColumnType.LONGLONG
    assert column.unsigned
    assert column.binary
    assert column.column_length == 255


def test_parse_column_definition_unknown_type() -> None:
    data = bytearray(column_def("x"))
    data[-6] = 0x30
    with pytest.raises(ProtocolError):
        packets.parse_column_definition_41(bytes(data))


def test_parse_text_row() -> None:
    columns = [
        packets.parse_column_definition_41(column_def(name)) for name in "abc"
    ]
    row = packets.parse_text_resultset_row(b"\x011\xfb\x00", columns)
    assert row == (b"1", None, b"")
    with pytest.raises(ProtocolError):
        packets.parse_text_resultset_row(b"\x011\xfb\x00extra", columns)


def test_parse_auth_switch() -> None:
    switch = packets.parse_auth_switch_request(
        b"\xfecaching_sha2_password\x00" + SCRAMBLE + b"\x00"
    )
    assert switch.plugin_name == "caching_sha2_password"
    assert switch.plugin_data == SCRAMBLE

    old = packets.parse_auth_switch_request(b"\xfe")
    assert old.plugin_name == "mysql_old_password"


def test_com_stmt_execute() -> None:
    data = packets.make_com_stmt_execute(
        3,
        [
            (ColumnType.LONGLONG, False, b"\x01" + bytes(7)),
            (ColumnType.NULL, False, None),
            (ColumnType.VAR_STRING, False, b"\x02hi"),
        ],
    )
    assert data == (
        b"\x17"
        + uint_4(3)
        + b"\x00"
        + uint_4(1)
        + b"\x02"  # null bitmap
        + b"\x01"  # new params bound
        + b"\x08\x00\x06\x00\xfd\x00"
        + b"\x01"
        + bytes(7)
        + b"\x02hi"
    )


def test_com_stmt_execute_without_params() -> None:
    data = packets.make_com_stmt_execute(1, [])
    assert data == b"\x17" + uint_4(1) + b"\x00" + uint_4(1)


def test_com_register_slave() -> None:
    data = packets.make_com_register_slave(
        ComRegisterSlave(server_id=1001, hostname="replica", port=3307)
    )
    assert data == (
        b"\x15"
        + uint_4(1001)
        + b"\x07replica"
        + b"\x00"
        + b"\x00"
        + b"\xeb\x0c"
        + uint_4(0)
        + uint_4(0)
    )


def test_com_binlog_dump() -> None:
    data = packets.make_com_binlog_dump(
        ComBinlogDump(server_id=2, filename="binlog.000003", position=154, flags=1)
    )
    assert data == b"\x12" + uint_4(154) + b"\x01\x00" + uint_4(2) + b"binlog.000003"


def test_com_binlog_dump_gtid() -> None:
    data = packets.make_com_binlog_dump_gtid(
        ComBinlogDumpGtid(server_id=2, gtid_data=b"\x00" * 8)
    )
    assert data == (
        b"\x1e"
        + b"\x04\x00"
        + uint_4(2)
        + uint_4(0)
        + b"\x04" + bytes(7)
        + uint_4(8)
        + bytes(8)
    )


def test_local_infile_request() -> None:
    request = packets.parse_local_infile_request(b"\xfb/tmp/data.csv")
    assert request.filename == "/tmp/data.csv"


def test_prepare_ok() -> None:
    data = b"\x00" + uint_4(9) + b"\x02\x00" + b"\x01\x00" + b"\x00" + b"\x03\x00"
    result = packets.parse_com_stmt_prepare_ok(data)
    assert (result.stmt_id, result.num_columns, result.num_params) == (9, 2, 1)
    assert result.warnings == 3
