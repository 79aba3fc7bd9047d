from __future__ import annotations

from enum import IntEnum


class ErrorCode(IntEnum):
    """https://dev.mysql.com/doc/mysql-errors/8.0/en/client-error-reference.html"""

    UNKNOWN_ERROR = 2000
    CONNECTION_ERROR = 2002
    CONN_HOST_ERROR = 2003
    SERVER_GONE_ERROR = 2006
    VERSION_ERROR = 2007
    WRONG_HOST_INFO = 2009
    SERVER_LOST = 2013
    COMMANDS_OUT_OF_SYNC = 2014
    MALFORMED_PACKET = 2027
    SSL_CONNECTION_ERROR = 2026
    PARAMS_NOT_BOUND = 2031
    UNSUPPORTED_PARAM_TYPE = 2036
    INVALID_PARAMETER_NO = 2034
    AUTH_PLUGIN_CANNOT_LOAD = 2059
    AUTH_PLUGIN_ERR = 2061
    INSECURE_API_ERR = 2062
    COMPRESSION_WRONGLY_CONFIGURED = 2066
    BINLOG_CHECKSUM_MISMATCH = 2070
    INVALID_URL = 2071


class MysqlError(Exception):
    def __init__(self, msg: str, code: int = ErrorCode.UNKNOWN_ERROR):
        super().__init__(f"{int(code)}: {msg}")
        self.msg = msg
        self.code = code


class TransportError(MysqlError):
    """The underlying byte stream failed. The connection must be discarded."""

    def __init__(self, msg: str, code: int = ErrorCode.SERVER_LOST):
        super().__init__(msg, code)


class ConnectionClosed(TransportError):
    """The peer closed the stream while we were waiting for bytes"""

    def __init__(self, msg: str = "Connection closed by peer", expected: int = 0):
        super().__init__(msg, ErrorCode.SERVER_LOST)
        self.expected = expected


class ProtocolError(MysqlError):
    """Bytes arrived that don't match the protocol. The connection must be discarded."""

    def __init__(self, msg: str, code: int = ErrorCode.MALFORMED_PACKET):
        super().__init__(msg, code)


class ServerError(MysqlError):
    """
    A well formed ERR packet from the server.

    Args:
        code: server error number
        sqlstate: five character SQL state, or None for pre-4.1 style errors
        msg: server message, unmodified
    """

    def __init__(self, code: int, sqlstate: str | None, msg: str):
        super().__init__(msg, code)
        self.sqlstate = sqlstate

    def __str__(self) -> str:
        if self.sqlstate:
            return f"{self.code} ({self.sqlstate}): {self.msg}"
        return f"{self.code}: {self.msg}"


class AuthError(MysqlError):
    """
    Authentication did not succeed.

    When the server rejected the login, `server_error` holds the ERR packet.
    """

    def __init__(
        self,
        msg: str,
        code: int = ErrorCode.AUTH_PLUGIN_ERR,
        server_error: ServerError | None = None,
    ):
        super().__init__(msg, code)
        self.server_error = server_error

    @property
    def sqlstate(self) -> str | None:
        return self.server_error.sqlstate if self.server_error else None


class ClientError(MysqlError):
    """Local misuse. Nothing was sent to the server and the connection is still usable."""


class UrlError(ClientError):
    def __init__(self, msg: str, param: str | None = None, value: str | None = None):
        if param is not None:
            msg = f"{msg} (parameter `{param}` = `{value}`)"
        super().__init__(msg, ErrorCode.INVALID_URL)
        self.param = param
        self.value = value
