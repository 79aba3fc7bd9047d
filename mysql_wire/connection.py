from __future__ import annotations

import logging
from contextlib import contextmanager
from dataclasses import replace
from enum import Enum
from typing import (
    Any,
    AsyncIterator,
    Dict,
    Iterator,
    List,
    Optional,
    Sequence,
    Set,
    Union,
)

from mysql_wire import packets
from mysql_wire.auth import AuthInfo, AuthState, get_plugin
from mysql_wire.binlog import BinlogRequest, BinlogStream, start_binlog_stream
from mysql_wire.constants import (
    DEFAULT_CONNECT_ATTRS,
    LONG_DATA_THRESHOLD,
    MAX_AUTH_ROUNDS,
)
from mysql_wire.cursor import ResultSet
from mysql_wire.errors import (
    AuthError,
    ClientError,
    ErrorCode,
    MysqlError,
    ProtocolError,
    ServerError,
    TransportError,
)
from mysql_wire.opts import Opts
from mysql_wire.packets import (
    HandshakeResponse41,
    HandshakeV10,
    OkPacket,
    SSLRequest,
)
from mysql_wire.prepared import PreparedStatement, StatementCache
from mysql_wire.results import Column, encode_binary_param
from mysql_wire.stream import MysqlStream
from mysql_wire.transport import Transport
from mysql_wire.types import Capabilities, Commands, ServerStatus
from mysql_wire.utils import parse_version

logger = logging.getLogger(__name__)

# Local infile contents are streamed in packets of this size
LOCAL_INFILE_CHUNK_SIZE = 2**20


class HandshakeState(Enum):
    AWAIT_GREETING = "AwaitGreeting"
    NEGOTIATE_CAPABILITIES = "NegotiateCapabilities"
    AWAIT_AUTH_CHALLENGE_OR_SWITCH = "AwaitAuthChallengeOrSwitch"
    SEND_AUTH_RESPONSE = "SendAuthResponse"
    AWAIT_RESULT = "AwaitResult"
    READY = "Ready"
    FAILED = "Failed"


class Connection:
    """
    One authenticated session with a server.

    Commands are strictly request/response: only one may be in flight, and a
    result set must be read to the end before the next command is sent.
    """

    def __init__(self, stream: MysqlStream, opts: Opts):
        self.stream = stream
        self.opts = opts

        self.handshake_state = HandshakeState.AWAIT_GREETING
        self.server_capabilities = Capabilities(0)
        self.capabilities = Capabilities(0)
        self.server_version = ""
        self.connection_id = 0
        self.character_set = opts.character_set.default_collation
        self.status_flags = ServerStatus(0)
        self.auth_plugin_name: Optional[str] = None
        self.is_mariadb = False

        self.last_ok: Optional[OkPacket] = None
        self._active_result: Optional[ResultSet] = None
        self._stmt_cache = StatementCache(opts.stmt_cache_size)
        self._broken: Optional[MysqlError] = None
        self._closed = False
        self._binlog = False

    @property
    def in_transaction(self) -> bool:
        return ServerStatus.SERVER_STATUS_IN_TRANS in self.status_flags

    @property
    def autocommit(self) -> bool:
        return ServerStatus.SERVER_STATUS_AUTOCOMMIT in self.status_flags

    @property
    def more_results(self) -> bool:
        return ServerStatus.SERVER_MORE_RESULTS_EXISTS in self.status_flags

    @property
    def server_version_info(self) -> tuple:
        return parse_version(self.server_version)

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def compressed(self) -> bool:
        return self.stream.compressed

    @property
    def tls(self) -> bool:
        return self.stream.tls

    async def __aenter__(self) -> Connection:
        return self

    async def __aexit__(self, *args: Any) -> None:
        await self.close()

    @contextmanager
    def fatal_on_protocol_error(self) -> Iterator[None]:
        """Transport and protocol errors leave the connection in an unknown state"""
        try:
            yield
        except (TransportError, ProtocolError, AuthError) as e:
            if self._broken is None:
                self._broken = e
            raise

    async def read_packet(self) -> bytes:
        with self.fatal_on_protocol_error():
            return await self.stream.read()

    async def write_packet(self, data: bytes) -> None:
        with self.fatal_on_protocol_error():
            await self.stream.write(data)

    async def handshake(self, init: bool = True) -> None:
        """
        Drive the connection phase, from the server greeting to an authenticated session.

        Args:
            init: run `opts.init` once authenticated
        """
        try:
            with self.fatal_on_protocol_error():
                await self._handshake()
        except BaseException:
            self._set_state(HandshakeState.FAILED)
            raise

        if (
            self.opts.compression is not None
            and Capabilities.CLIENT_COMPRESS in self.capabilities
        ):
            self.stream.enable_compression(self.opts.compression)

        logger.info(
            "Connected to %s (connection id %s, plugin %s, tls=%s, compressed=%s)",
            self.server_version,
            self.connection_id,
            self.auth_plugin_name,
            self.tls,
            self.compressed,
        )

        if init:
            await self.run_init()

    async def run_init(self) -> None:
        """Run the `opts.init` statements"""
        for sql in self.opts.init:
            async for result in self.iter_results(sql):
                await result.drain()

    def _set_state(self, state: HandshakeState) -> None:
        logger.debug("Handshake %s -> %s", self.handshake_state.value, state.value)
        self.handshake_state = state

    async def _handshake(self) -> None:
        greeting = packets.parse_handshake_v10(await self.stream.read())
        self.server_version = greeting.server_version
        self.connection_id = greeting.connection_id
        self.server_capabilities = greeting.capabilities
        self.status_flags = greeting.status_flags
        self.is_mariadb = greeting.is_mariadb or not (
            greeting.capabilities & Capabilities.CLIENT_LONG_PASSWORD
        )

        self._set_state(HandshakeState.NEGOTIATE_CAPABILITIES)
        self.capabilities = self._negotiate_capabilities(greeting)

        ssl_opts = self.opts.ssl_opts
        if ssl_opts is not None and Capabilities.CLIENT_SSL in self.capabilities:
            await self.stream.write(
                packets.make_ssl_request(
                    SSLRequest(
                        max_packet_size=self.opts.max_allowed_packet,
                        capabilities=self.capabilities,
                        client_charset=self.character_set,
                    )
                )
            )
            await self.stream.start_tls(
                ssl_opts.ssl_context(),
                server_hostname=ssl_opts.tls_server_name or self.opts.host,
            )

        await self._authenticate(greeting)

    def _negotiate_capabilities(self, greeting: HandshakeV10) -> Capabilities:
        server = greeting.capabilities
        if Capabilities.CLIENT_PROTOCOL_41 not in server:
            raise ProtocolError(
                f"Server {greeting.server_version} doesn't support protocol 4.1",
                ErrorCode.VERSION_ERROR,
            )
        if self.opts.ssl_opts and Capabilities.CLIENT_SSL not in server:
            raise TransportError(
                "TLS was requested but the server doesn't support it",
                ErrorCode.SSL_CONNECTION_ERROR,
            )

        capabilities = self.opts.client_capabilities() & server
        if not self.is_mariadb:
            # Only MariaDB understands the extended capability bits
            capabilities &= 0xFFFFFFFF
        capabilities = Capabilities(capabilities)

        logger.debug(
            "Negotiated capabilities %r (server offered 0x%x)",
            capabilities,
            int(server),
        )
        return capabilities

    def _auth_info(self, scramble: bytes) -> AuthInfo:
        return AuthInfo(
            username=self.opts.user,
            password=self.opts.password.encode("utf8"),
            scramble=scramble,
            secure=self.stream.tls or bool(self.opts.socket),
            server_public_key=self.opts.server_public_key,
            enable_cleartext_plugin=self.opts.enable_cleartext_plugin,
            secure_auth=self.opts.secure_auth,
        )

    async def _authenticate(self, greeting: HandshakeV10) -> None:
        self._set_state(HandshakeState.SEND_AUTH_RESPONSE)
        plugin = get_plugin(greeting.auth_plugin_name or "mysql_native_password")
        self.auth_plugin_name = plugin.name
        auth_response, auth_state = await plugin.start(
            self._auth_info(greeting.auth_data)
        )

        connect_attrs: Dict[str, str] = {}
        if Capabilities.CLIENT_CONNECT_ATTRS in self.capabilities:
            connect_attrs = {**DEFAULT_CONNECT_ATTRS, **self.opts.connect_attrs}

        await self.stream.write(
            packets.make_handshake_response_41(
                HandshakeResponse41(
                    max_packet_size=self.opts.max_allowed_packet,
                    capabilities=self.capabilities,
                    client_charset=self.character_set,
                    username=self.opts.user,
                    auth_response=auth_response,
                    connect_attrs=connect_attrs,
                    database=self.opts.db_name,
                    client_plugin=plugin.name,
                )
            )
        )

        switched: Set[str] = set()
        try:
            for _ in range(MAX_AUTH_ROUNDS):
                self._set_state(HandshakeState.AWAIT_RESULT)
                data = await self.stream.read()

                if packets.is_ok_packet(data):
                    ok = packets.parse_ok(self.capabilities, data)
                    self._update_status(ok)
                    self._set_state(HandshakeState.READY)
                    return

                if packets.is_err_packet(data):
                    error = packets.parse_err(self.capabilities, data)
                    logger.info(
                        "Authentication as '%s' with plugin %s rejected: %s",
                        self.opts.user,
                        self.auth_plugin_name,
                        error,
                    )
                    raise AuthError(error.msg, error.code, server_error=error)

                self._set_state(HandshakeState.AWAIT_AUTH_CHALLENGE_OR_SWITCH)
                header = data[0] if data else None

                if header == packets.AUTH_SWITCH_HEADER:
                    switch = packets.parse_auth_switch_request(data)
                    if switch.plugin_name in switched:
                        raise AuthError(
                            f"Server requested a second switch to {switch.plugin_name}",
                            ErrorCode.AUTH_PLUGIN_ERR,
                        )
                    switched.add(switch.plugin_name)
                    logger.info(
                        "Switching authentication plugin %s -> %s",
                        self.auth_plugin_name,
                        switch.plugin_name,
                    )

                    await auth_state.aclose()
                    plugin = get_plugin(switch.plugin_name)
                    self.auth_plugin_name = plugin.name
                    scramble = switch.plugin_data or greeting.auth_data
                    auth_response, auth_state = await plugin.start(
                        self._auth_info(scramble)
                    )
                    self._set_state(HandshakeState.SEND_AUTH_RESPONSE)
                    await self.stream.write(auth_response)

                elif header == packets.AUTH_MORE_DATA_HEADER:
                    more = packets.parse_auth_more_data(data)
                    try:
                        response = await auth_state.asend(more.data)
                    except StopAsyncIteration:
                        raise ProtocolError(
                            f"Unexpected auth more data for plugin {self.auth_plugin_name}"
                        ) from None
                    if response is not None:
                        self._set_state(HandshakeState.SEND_AUTH_RESPONSE)
                        await self.stream.write(response)

                else:
                    raise ProtocolError(
                        f"Unexpected packet during authentication: header {data[:1].hex() or 'empty'}"
                    )

            raise AuthError(
                f"Authentication did not complete after {MAX_AUTH_ROUNDS} round trips"
            )
        finally:
            await auth_state.aclose()

    def _update_status(self, ok: OkPacket) -> None:
        self.status_flags = ok.status_flags
        self.last_ok = ok

    def parse_terminator(self, data: bytes) -> OkPacket:
        with self.fatal_on_protocol_error():
            ok = packets.parse_terminator(self.capabilities, data)
        self._update_status(ok)
        return ok

    def result_finished(self, result: ResultSet) -> None:
        if self._active_result is result:
            self._active_result = None

    def result_failed(self, result: ResultSet) -> None:
        """An ERR packet ended `result` and any results chained after it"""
        self.result_finished(result)
        self.status_flags &= ~ServerStatus.SERVER_MORE_RESULTS_EXISTS

    def _check_ready(self) -> None:
        if self._closed:
            raise ClientError("Connection is closed", ErrorCode.SERVER_GONE_ERROR)
        if self._broken is not None:
            raise ClientError(
                f"Connection is unusable after an earlier error: {self._broken}",
                ErrorCode.SERVER_GONE_ERROR,
            )
        if self._binlog:
            raise ClientError(
                "Connection is streaming the binlog and can't run commands",
                ErrorCode.COMMANDS_OUT_OF_SYNC,
            )
        if self.handshake_state != HandshakeState.READY:
            raise ClientError(
                f"Connection is not ready ({self.handshake_state.value})",
                ErrorCode.COMMANDS_OUT_OF_SYNC,
            )
        if self._active_result is not None or self.more_results:
            raise ClientError(
                "Commands out of sync: read the pending result set to the end first",
                ErrorCode.COMMANDS_OUT_OF_SYNC,
            )

    async def send_command(self, payload: bytes) -> None:
        """Start a new command context and send one command"""
        self._check_ready()
        logger.debug("Sending command 0x%02x (%s bytes)", payload[0], len(payload))
        self.stream.reset_seq()
        await self.write_packet(payload)

    async def read_ok(self) -> OkPacket:
        data = await self.read_packet()
        if packets.is_err_packet(data):
            raise packets.parse_err(self.capabilities, data)
        with self.fatal_on_protocol_error():
            ok = packets.parse_ok(self.capabilities, data)
        self._update_status(ok)
        return ok

    async def read_result(
        self, binary: bool = False, stmt: Optional[PreparedStatement] = None
    ) -> ResultSet:
        """Read the response to a command that may produce a result set"""
        data = await self.read_packet()

        if packets.is_err_packet(data):
            # A failed statement also ends any chain of results
            self.status_flags &= ~ServerStatus.SERVER_MORE_RESULTS_EXISTS
            raise packets.parse_err(self.capabilities, data)

        if packets.is_ok_packet(data):
            with self.fatal_on_protocol_error():
                ok = packets.parse_ok(self.capabilities, data)
            self._update_status(ok)
            return ResultSet(self, ok=ok, binary=binary, stmt=stmt)

        if data[:1] == bytes([packets.LOCAL_INFILE_HEADER]):
            await self._handle_local_infile(data)
            return await self.read_result(binary=binary, stmt=stmt)

        with self.fatal_on_protocol_error():
            column_count, metadata_follows = packets.parse_column_count(
                self.capabilities, data
            )
            if metadata_follows:
                columns = await self._read_column_definitions(column_count)
            elif stmt is not None and len(stmt.columns) == column_count:
                columns = stmt.columns
            else:
                raise ProtocolError(
                    f"Server omitted metadata for {column_count} columns that aren't cached"
                )

        logger.debug("Result set with columns %s", [c.name for c in columns])
        result = ResultSet(self, columns=columns, binary=binary, stmt=stmt)
        self._active_result = result
        return result

    async def _read_column_definitions(self, count: int) -> List[Column]:
        columns = [
            packets.parse_column_definition_41(await self.read_packet())
            for _ in range(count)
        ]
        if count and Capabilities.CLIENT_DEPRECATE_EOF not in self.capabilities:
            data = await self.read_packet()
            if not packets.is_eof_packet(self.capabilities, data):
                raise ProtocolError(
                    f"Expected EOF after column definitions, got header 0x{data[:1].hex()}"
                )
        return columns

    async def _handle_local_infile(self, data: bytes) -> None:
        request = packets.parse_local_infile_request(data)
        handler = self.opts.local_infile_handler

        if handler is None:
            logger.warning(
                "Refusing LOCAL INFILE request for %s: no handler configured",
                request.filename,
            )
            await self.write_packet(b"")
            return

        try:
            content = await handler(request.filename)
        except Exception as e:
            # Tell the server the file is empty so the connection stays in sync
            await self.write_packet(b"")
            await self.read_result()
            raise ClientError(
                f"Local infile handler failed for {request.filename}: {e}"
            ) from e

        for i in range(0, len(content), LOCAL_INFILE_CHUNK_SIZE):
            await self.write_packet(content[i : i + LOCAL_INFILE_CHUNK_SIZE])
        await self.write_packet(b"")

    async def query(self, sql: Union[str, bytes]) -> ResultSet:
        """
        Run a text protocol query.

        Returns:
            The first result set. Use `ResultSet.next_result` or `iter_results` for the rest.
        """
        await self.send_command(packets.make_com_query(self._encode(sql)))
        return await self.read_result()

    async def iter_results(self, sql: Union[str, bytes]) -> AsyncIterator[ResultSet]:
        """Iterate every result set of a multi statement query, in order"""
        result: Optional[ResultSet] = await self.query(sql)
        while result is not None:
            yield result
            result = await result.next_result()

    async def prepare(self, sql: str) -> PreparedStatement:
        cached = self._stmt_cache.get(sql)
        if cached is not None:
            return cached

        await self.send_command(packets.make_com_stmt_prepare(self._encode(sql)))
        data = await self.read_packet()
        if packets.is_err_packet(data):
            raise packets.parse_err(self.capabilities, data)

        with self.fatal_on_protocol_error():
            prepare_ok = packets.parse_com_stmt_prepare_ok(data)
            stmt = PreparedStatement(
                stmt_id=prepare_ok.stmt_id,
                sql=sql,
                num_params=prepare_ok.num_params,
                num_columns=prepare_ok.num_columns,
                warnings=prepare_ok.warnings,
            )
            stmt.params = await self._read_column_definitions(stmt.num_params)
            stmt.columns = await self._read_column_definitions(stmt.num_columns)

        logger.debug(
            "Prepared statement %s with %s params: %s",
            stmt.stmt_id,
            stmt.num_params,
            sql,
        )
        for evicted in self._stmt_cache.put(stmt):
            await self.close_statement(evicted)
        return stmt

    async def execute(
        self,
        stmt: Union[PreparedStatement, str],
        params: Sequence[Any] = (),
    ) -> ResultSet:
        """
        Execute a prepared statement with the binary protocol.

        A SQL string is prepared first (or taken from the statement cache).
        """
        if isinstance(stmt, str):
            stmt = await self.prepare(stmt)
        if stmt.closed:
            raise ClientError(f"Statement {stmt.stmt_id} is closed")
        if len(params) != stmt.num_params:
            raise ClientError(
                f"Statement expects {stmt.num_params} parameters, got {len(params)}",
                ErrorCode.INVALID_PARAMETER_NO,
            )

        codec = self.opts.character_set.codec
        encoded = [encode_binary_param(p, codec) for p in params]
        self._check_ready()

        for i, (param, (param_type, unsigned, _)) in enumerate(zip(params, encoded)):
            if (
                isinstance(param, (str, bytes, bytearray))
                and len(param) >= LONG_DATA_THRESHOLD
            ):
                raw = param.encode(codec) if isinstance(param, str) else bytes(param)
                await self.send_long_data(stmt, i, raw)
                encoded[i] = (param_type, unsigned, None)

        await self.send_command(packets.make_com_stmt_execute(stmt.stmt_id, encoded))
        return await self.read_result(binary=True, stmt=stmt)

    async def send_long_data(
        self, stmt: PreparedStatement, param_id: int, data: bytes
    ) -> None:
        """Send a parameter value in chunks. The server doesn't reply."""
        if not 0 <= param_id < stmt.num_params:
            raise ClientError(
                f"Statement has no parameter {param_id}", ErrorCode.INVALID_PARAMETER_NO
            )
        chunk_size = LONG_DATA_THRESHOLD
        for i in range(0, max(len(data), 1), chunk_size):
            await self.send_command(
                packets.make_com_stmt_send_long_data(
                    stmt.stmt_id, param_id, data[i : i + chunk_size]
                )
            )

    async def reset_statement(self, stmt: PreparedStatement) -> None:
        """Discard long data sent for a statement"""
        await self.send_command(packets.make_com_stmt_reset(stmt.stmt_id))
        await self.read_ok()

    async def close_statement(self, stmt: PreparedStatement) -> None:
        if stmt.closed:
            return
        self._stmt_cache.remove(stmt)
        await self.send_command(packets.make_com_stmt_close(stmt.stmt_id))
        stmt.closed = True
        logger.debug("Closed statement %s", stmt.stmt_id)

    async def ping(self) -> None:
        await self.send_command(packets.make_command(Commands.COM_PING))
        await self.read_ok()

    async def init_db(self, database: str) -> None:
        await self.send_command(packets.make_com_init_db(self._encode(database)))
        await self.read_ok()

    async def reset_connection(self) -> None:
        """Reset session state. The server deallocates every prepared statement."""
        await self.send_command(
            packets.make_command(Commands.COM_RESET_CONNECTION)
        )
        await self.read_ok()
        for stmt in self._stmt_cache.clear():
            stmt.closed = True

    async def binlog_stream(self, request: BinlogRequest) -> BinlogStream:
        """
        Register as a replica and start streaming binlog events.

        The connection can't run any other command afterwards. Closing the
        returned stream (or this connection) is the only way to stop it.
        """
        self._check_ready()
        stream = await start_binlog_stream(self, request)
        self._binlog = True
        return stream

    async def close(self) -> None:
        """Send COM_QUIT, when possible, and close the transport"""
        if self._closed:
            return
        try:
            if (
                self.handshake_state == HandshakeState.READY
                and self._broken is None
                and not self._binlog
                and self._active_result is None
            ):
                self.stream.reset_seq()
                await self.stream.write(packets.make_command(Commands.COM_QUIT))
        except TransportError:
            logger.debug("Server went away before COM_QUIT", exc_info=True)
        finally:
            self._closed = True
            await self.stream.close()
            logger.info("Connection %s closed", self.connection_id)

    def _encode(self, s: Union[str, bytes]) -> bytes:
        if isinstance(s, bytes):
            return s
        return s.encode(self.opts.character_set.codec)


async def connect(
    opts: Union[Opts, str, None] = None, **kwargs: Any
) -> Connection:
    """
    Open a connection.

    With `opts.prefer_socket`, a TCP connection to a loopback address is
    replaced by one over the server's unix socket (from `@@socket`), keeping
    TCP if that fails.

    Args:
        opts: connection options, or a mysql:// URL
        kwargs: `Opts` fields, used when `opts` is not given
    """
    if isinstance(opts, str):
        opts = Opts.from_url(opts)
    elif opts is None:
        opts = Opts(**kwargs)

    conn = await _open(opts, init=False)
    try:
        if opts.prefers_socket_reconnect():
            conn = await _reconnect_via_socket(conn)
        await conn.run_init()
    except BaseException:
        await conn.close()
        raise
    return conn


async def _open(opts: Opts, init: bool = True) -> Connection:
    transport = await Transport.connect(
        host=opts.host,
        port=opts.port,
        unix_socket=opts.socket,
        tcp_nodelay=opts.tcp_nodelay,
        tcp_keepalive=opts.tcp_keepalive,
    )
    conn = Connection(MysqlStream(transport), opts)
    try:
        await conn.handshake(init=init)
    except BaseException:
        await transport.close()
        raise
    return conn


async def _reconnect_via_socket(conn: Connection) -> Connection:
    try:
        result = await conn.query("SELECT @@socket")
        rows = await result.fetchall()
    except ServerError as e:
        logger.debug("Server socket unknown, staying on TCP: %s", e)
        return conn

    if not rows or not rows[0] or not rows[0][0]:
        return conn
    path = rows[0][0].decode(conn.opts.character_set.codec)

    try:
        socket_conn = await _open(replace(conn.opts, socket=path), init=False)
    except MysqlError as e:
        logger.info("Can't connect through %s, staying on TCP: %s", path, e)
        return conn

    await conn.close()
    logger.info("Reconnected through unix socket %s", path)
    return socket_conn
