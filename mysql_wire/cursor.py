from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any, List, Optional, Sequence, Tuple

from mysql_wire import packets
from mysql_wire.packets import OkPacket
from mysql_wire.results import Column
from mysql_wire.types import ServerStatus

if TYPE_CHECKING:
    from mysql_wire.connection import Connection
    from mysql_wire.prepared import PreparedStatement

logger = logging.getLogger(__name__)

Row = Tuple[Any, ...]


class ResultSet:
    """
    Cursor over one result set.

    Rows are read from the connection as they are iterated. The connection
    accepts no other command until this result set, and any result sets chained
    after it, have been read to the end.

    Text protocol rows hold raw `bytes` (or None for NULL). Binary protocol rows
    hold ints, floats, temporal values, or `bytes` for everything else.
    """

    def __init__(
        self,
        connection: Connection,
        columns: Sequence[Column] = (),
        binary: bool = False,
        ok: Optional[OkPacket] = None,
        stmt: Optional[PreparedStatement] = None,
    ):
        self.connection = connection
        self.columns = list(columns)
        self.binary = binary
        self.stmt = stmt
        self.ok = ok
        self.rowcount = 0

    @property
    def done(self) -> bool:
        return self.ok is not None

    @property
    def column_names(self) -> List[str]:
        return [c.name for c in self.columns]

    @property
    def has_rows(self) -> bool:
        return bool(self.columns)

    @property
    def more_results(self) -> bool:
        return bool(
            self.ok and ServerStatus.SERVER_MORE_RESULTS_EXISTS in self.ok.status_flags
        )

    @property
    def affected_rows(self) -> int:
        return self.ok.affected_rows if self.ok else 0

    @property
    def last_insert_id(self) -> int:
        return self.ok.last_insert_id if self.ok else 0

    @property
    def warnings(self) -> int:
        return self.ok.warnings if self.ok else 0

    @property
    def info(self) -> str:
        return self.ok.info if self.ok else ""

    def __aiter__(self) -> ResultSet:
        return self

    async def __anext__(self) -> Row:
        row = await self.fetchone()
        if row is None:
            raise StopAsyncIteration
        return row

    async def fetchone(self) -> Optional[Row]:
        if self.ok is not None:
            return None

        conn = self.connection
        data = await conn.read_packet()

        if packets.is_eof_packet(conn.capabilities, data):
            self.ok = conn.parse_terminator(data)
            conn.result_finished(self)
            logger.debug("Result set finished after %s rows", self.rowcount)
            return None

        if packets.is_err_packet(data):
            # The server gave up mid result set, e.g. the query was killed
            self.ok = OkPacket()
            conn.result_failed(self)
            raise packets.parse_err(conn.capabilities, data)

        with conn.fatal_on_protocol_error():
            if self.binary:
                row = packets.parse_binary_resultrow(data, self.columns)
            else:
                row = packets.parse_text_resultset_row(data, self.columns)
        self.rowcount += 1
        return row

    async def fetchall(self) -> List[Row]:
        return [row async for row in self]

    async def drain(self) -> None:
        """Read and discard the remaining rows"""
        while await self.fetchone() is not None:
            pass

    async def next_result(self) -> Optional[ResultSet]:
        """
        Drain this result set and read the next one, if the server chained another.
        """
        await self.drain()
        if not self.more_results:
            return None
        return await self.connection.read_result(binary=self.binary, stmt=self.stmt)

    def __repr__(self) -> str:
        state = "done" if self.done else "pending"
        return f"ResultSet({self.column_names} {state})"
