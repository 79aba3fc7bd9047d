from __future__ import annotations
import asyncio
from ssl import SSLContext
from typing import (
    Optional,
    List,
    Dict,
    Any,
    Tuple,
    Sequence,
    AsyncGenerator,
    Callable,
    Awaitable,
)

import pytest
import pytest_asyncio
from mysql_mimic import MysqlServer, Session
from mysql_mimic.auth import AuthPlugin, IdentityProvider, User
from mysql_mimic.results import AllowedResult
from mysql_mimic.schema import InfoSchema
from mysql_mimic.variables import Variables
from sqlglot import expressions as exp

from mysql_wire import Capabilities, Connection, Opts, connect
from mysql_wire.results import NullBitmap
from mysql_wire.stream import MysqlStream
from mysql_wire.transport import Transport
from mysql_wire.types import (
    ColumnType,
    ServerStatus,
    str_len,
    str_null,
    uint_1,
    uint_2,
    uint_3,
    uint_4,
    uint_len,
)

SCRAMBLE = b"abcdefghijklmnopqrst"

SERVER_CAPABILITIES = (
    Capabilities.CLIENT_LONG_PASSWORD
    | Capabilities.CLIENT_LONG_FLAG
    | Capabilities.CLIENT_CONNECT_WITH_DB
    | Capabilities.CLIENT_COMPRESS
    | Capabilities.CLIENT_PROTOCOL_41
    | Capabilities.CLIENT_TRANSACTIONS
    | Capabilities.CLIENT_SECURE_CONNECTION
    | Capabilities.CLIENT_MULTI_STATEMENTS
    | Capabilities.CLIENT_MULTI_RESULTS
    | Capabilities.CLIENT_PS_MULTI_RESULTS
    | Capabilities.CLIENT_PLUGIN_AUTH
    | Capabilities.CLIENT_CONNECT_ATTRS
    | Capabilities.CLIENT_PLUGIN_AUTH_LENENC_CLIENT_DATA
    | Capabilities.CLIENT_DEPRECATE_EOF
)

AUTOCOMMIT = ServerStatus.SERVER_STATUS_AUTOCOMMIT


class MockReader:
    """Stands in for asyncio.StreamReader. Runs dry like a closed socket."""

    def __init__(self, data: bytes = b""):
        self.data = bytearray(data)

    def feed(self, data: bytes) -> None:
        self.data.extend(data)

    async def readexactly(self, n: int) -> bytes:
        if len(self.data) < n:
            partial = bytes(self.data)
            self.data.clear()
            raise asyncio.IncompleteReadError(partial, n)
        chunk = bytes(self.data[:n])
        del self.data[:n]
        return chunk


class MockWriter:
    def __init__(self) -> None:
        self.data = b""
        self.closed = False

    def write(self, data: bytes) -> None:
        self.data += data

    async def drain(self) -> None:
        return

    def close(self) -> None:
        self.closed = True

    async def wait_closed(self) -> None:
        return

    def get_extra_info(self, name: str, default: Any = None) -> Any:
        return default


def frame(payload: bytes, seq: int) -> bytes:
    return uint_3(len(payload)) + uint_1(seq % 256) + payload


def frames(*payloads: bytes, start: int = 1) -> bytes:
    """Physical packets numbered from `start`, as a server would answer a command"""
    return b"".join(frame(p, start + i) for i, p in enumerate(payloads))


def split_frames(data: bytes) -> List[Tuple[int, bytes]]:
    """Sequence ids and payloads of everything the client wrote"""
    packets = []
    while data:
        length = int.from_bytes(data[:3], "little")
        packets.append((data[3], data[4 : 4 + length]))
        data = data[4 + length :]
    return packets


def greeting(
    capabilities: int = SERVER_CAPABILITIES,
    plugin: str = "mysql_native_password",
    scramble: bytes = SCRAMBLE,
    version: str = "8.0.36",
    connection_id: int = 7,
    status: int = AUTOCOMMIT,
    extended: int = 0,
) -> bytes:
    return b"".join(
        [
            uint_1(10),
            str_null(version.encode()),
            uint_4(connection_id),
            scramble[:8],
            b"\x00",
            uint_2(capabilities & 0xFFFF),
            uint_1(45),
            uint_2(status),
            uint_2((capabilities >> 16) & 0xFFFF),
            uint_1(len(scramble) + 1),
            bytes(6),
            uint_4(extended),
            scramble[8:] + b"\x00",
            str_null(plugin.encode()),
        ]
    )


def ok(
    affected_rows: int = 0,
    last_insert_id: int = 0,
    status: int = AUTOCOMMIT,
    warnings: int = 0,
    info: bytes = b"",
    header: int = 0x00,
) -> bytes:
    return (
        uint_1(header)
        + uint_len(affected_rows)
        + uint_len(last_insert_id)
        + uint_2(status)
        + uint_2(warnings)
        + info
    )


def terminator(status: int = AUTOCOMMIT, deprecate_eof: bool = True) -> bytes:
    if deprecate_eof:
        return ok(status=status, header=0xFE)
    return eof(status=status)


def eof(status: int = AUTOCOMMIT, warnings: int = 0) -> bytes:
    return b"\xfe" + uint_2(warnings) + uint_2(status)


def err(code: int = 1064, sqlstate: str = "42000", msg: str = "syntax error") -> bytes:
    return b"\xff" + uint_2(code) + b"#" + sqlstate.encode() + msg.encode()


def column_def(
    name: str,
    column_type: ColumnType = ColumnType.VAR_STRING,
    flags: int = 0,
    character_set: int = 45,
) -> bytes:
    return b"".join(
        [
            str_len(b"def"),
            str_len(b"db"),
            str_len(b"t"),
            str_len(b"t"),
            str_len(name.encode()),
            str_len(name.encode()),
            uint_len(0x0C),
            uint_2(character_set),
            uint_4(255),
            uint_1(column_type),
            uint_2(flags),
            uint_1(0),
            uint_2(0),
        ]
    )


def text_row(*values: Optional[bytes]) -> bytes:
    return b"".join(b"\xfb" if v is None else str_len(v) for v in values)


def binary_row(*values: Optional[bytes]) -> bytes:
    """`values` are already binary encoded, or None for NULL"""
    bitmap = NullBitmap.new(len(values), offset=2)
    for i, v in enumerate(values):
        if v is None:
            bitmap.flip(i)
    return b"\x00" + bytes(bitmap) + b"".join(v for v in values if v is not None)


def result_set(
    columns: Sequence[bytes],
    rows: Sequence[bytes],
    status: int = AUTOCOMMIT,
    deprecate_eof: bool = True,
) -> List[bytes]:
    """Payloads of a complete result set"""
    payloads = [uint_len(len(columns)), *columns]
    if not deprecate_eof:
        payloads.append(eof())
    payloads.extend(rows)
    payloads.append(terminator(status, deprecate_eof))
    return payloads


class MockServer:
    """A scripted server on the other end of an in-memory transport"""

    def __init__(self, **opts: Any):
        self.reader = MockReader()
        self.writer = MockWriter()
        self.opts = Opts(**opts)
        self.conn = Connection(
            MysqlStream(Transport(self.reader, self.writer)),  # type: ignore
            self.opts,
        )

    def respond(self, *payloads: bytes, start: int = 1) -> None:
        self.reader.feed(frames(*payloads, start=start))

    def sent(self) -> List[Tuple[int, bytes]]:
        """Packets the client wrote since the last call"""
        packets = split_frames(self.writer.data)
        self.writer.data = b""
        return packets

    async def handshake(self, **greeting_kwargs: Any) -> Connection:
        self.reader.feed(frame(greeting(**greeting_kwargs), 0))
        self.respond(ok(), start=2)
        await self.conn.handshake()
        self.sent()
        return self.conn


@pytest.fixture
def mock_server() -> MockServer:
    return MockServer()


@pytest_asyncio.fixture
async def conn(mock_server: MockServer) -> Connection:
    return await mock_server.handshake()


class MockSession(Session):
    def __init__(self, variables: Optional[Variables] = None) -> None:
        super().__init__(variables)
        self.return_value: Any = None
        self.echo = False
        self.last_sql: Optional[str] = None

    async def query(
        self, expression: exp.Expression, sql: str, attrs: Dict[str, str]
    ) -> AllowedResult:
        self.last_sql = sql
        if self.echo:
            return [(sql,)], ["sql"]
        return self.return_value

    async def schema(self) -> dict | InfoSchema:
        return {
            "db": {
                "x": {
                    "a": "TEXT",
                    "b": "TEXT",
                },
            }
        }


class MockIdentityProvider(IdentityProvider):
    def __init__(self, auth_plugins: List[AuthPlugin], users: Dict[str, User]):
        self.auth_plugins = auth_plugins
        self.users = users

    def get_plugins(self) -> Sequence[AuthPlugin]:
        return self.auth_plugins

    async def get_user(self, username: str) -> Optional[User]:
        return self.users.get(username)


@pytest.fixture
def session() -> MockSession:
    return MockSession()


@pytest.fixture
def auth_plugins() -> Optional[List[AuthPlugin]]:
    return None


@pytest.fixture
def users() -> Dict[str, User]:
    return {}


@pytest.fixture
def identity_provider(
    auth_plugins: Optional[List[AuthPlugin]], users: Dict[str, User]
) -> Optional[IdentityProvider]:
    if auth_plugins:
        return MockIdentityProvider(auth_plugins, users)
    return None


@pytest.fixture
def ssl() -> Optional[SSLContext]:
    return None


@pytest_asyncio.fixture
async def server(
    session: MockSession,
    identity_provider: Optional[IdentityProvider],
    ssl: Optional[SSLContext],
) -> AsyncGenerator[MysqlServer, None]:
    srv = MysqlServer(
        session_factory=lambda: session,
        identity_provider=identity_provider,
        ssl=ssl,
    )
    await srv.start_server(host="127.0.0.1", port=0)
    asyncio.create_task(srv.serve_forever())
    try:
        yield srv
    finally:
        srv.close()
        await srv.wait_closed()


@pytest.fixture
def port(server: MysqlServer) -> int:
    return server.sockets()[0].getsockname()[1]


ConnectFixture = Callable[..., Awaitable[Connection]]


@pytest.fixture
def connect_to_server(port: int) -> ConnectFixture:
    async def conn(**kwargs: Any) -> Connection:
        kwargs.setdefault("user", "levon_helm")
        kwargs.setdefault("prefer_socket", False)
        # Prepared statement responses always end parameter definitions with EOF
        kwargs.setdefault("remove_capabilities", Capabilities.CLIENT_DEPRECATE_EOF)
        return await connect(host="127.0.0.1", port=port, **kwargs)

    return conn
