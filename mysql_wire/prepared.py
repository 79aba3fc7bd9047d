from __future__ import annotations

from collections import OrderedDict
from dataclasses import dataclass, field
from typing import List, Optional

from mysql_wire.results import Column


@dataclass
class PreparedStatement:
    stmt_id: int
    sql: str
    num_params: int
    num_columns: int
    params: List[Column] = field(default_factory=list)
    columns: List[Column] = field(default_factory=list)
    warnings: int = 0
    closed: bool = False


class StatementCache:
    """Least recently used prepared statements, keyed by SQL text"""

    def __init__(self, size: int):
        self.size = size
        self._stmts: OrderedDict[str, PreparedStatement] = OrderedDict()

    def get(self, sql: str) -> Optional[PreparedStatement]:
        stmt = self._stmts.get(sql)
        if stmt is not None:
            self._stmts.move_to_end(sql)
        return stmt

    def put(self, stmt: PreparedStatement) -> List[PreparedStatement]:
        """
        Add a statement.

        Returns:
            Statements evicted to make room. The caller should close them on the server.
        """
        if self.size == 0:
            return []
        self._stmts[stmt.sql] = stmt
        self._stmts.move_to_end(stmt.sql)
        evicted = []
        while len(self._stmts) > self.size:
            _, old = self._stmts.popitem(last=False)
            evicted.append(old)
        return evicted

    def remove(self, stmt: PreparedStatement) -> None:
        if self._stmts.get(stmt.sql) is stmt:
            del self._stmts[stmt.sql]

    def clear(self) -> List[PreparedStatement]:
        stmts = list(self._stmts.values())
        self._stmts.clear()
        return stmts

    def __len__(self) -> int:
        return len(self._stmts)

    def __contains__(self, sql: str) -> bool:
        return sql in self._stmts
