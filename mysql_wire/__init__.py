"""Implementation of the mysql client wire protocol"""

from mysql_wire.binlog import BinlogRequest, BinlogStream
from mysql_wire.connection import Connection, HandshakeState, connect
from mysql_wire.cursor import ResultSet
from mysql_wire.errors import (
    AuthError,
    ClientError,
    ConnectionClosed,
    ErrorCode,
    MysqlError,
    ProtocolError,
    ServerError,
    TransportError,
    UrlError,
)
from mysql_wire.gtid import GtidSet
from mysql_wire.opts import Opts, SslOpts
from mysql_wire.prepared import PreparedStatement
from mysql_wire.types import Capabilities, ColumnType
