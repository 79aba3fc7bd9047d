from __future__ import annotations

import io
import uuid
from typing import Dict, Iterable, List, Tuple

from mysql_wire.errors import ProtocolError
from mysql_wire.types import read_str_fixed, read_uint_8, remaining, uint_8

# Closed interval of transaction numbers
Interval = Tuple[int, int]


class GtidSet:
    """
    Set of MySQL global transaction ids.

    Text form: `3e11fa47-71ca-11e1-9e33-c80aa9429562:1-5:7,<uuid>:<gno>...`
    """

    def __init__(self, gtids: str | Dict[uuid.UUID, List[Interval]] = ""):
        self.intervals: Dict[uuid.UUID, List[Interval]] = {}
        if isinstance(gtids, str):
            self._parse(gtids)
        else:
            for sid, intervals in gtids.items():
                self.add(sid, intervals)

    def _parse(self, text: str) -> None:
        for part in text.replace("\n", "").split(","):
            part = part.strip()
            if not part:
                continue
            sid_text, *ranges = part.split(":")
            try:
                sid = uuid.UUID(sid_text.strip())
            except ValueError:
                raise ValueError(f"Invalid GTID source id: {sid_text!r}") from None
            if not ranges:
                raise ValueError(f"GTID set entry without transaction ids: {part!r}")
            self.add(sid, [_parse_interval(r) for r in ranges])

    def add(self, sid: uuid.UUID, intervals: Iterable[Interval]) -> None:
        merged = sorted(self.intervals.get(sid, []) + list(intervals))
        result: List[Interval] = []
        for start, end in merged:
            if result and start <= result[-1][1] + 1:
                result[-1] = (result[-1][0], max(result[-1][1], end))
            else:
                result.append((start, end))
        self.intervals[sid] = result

    def __contains__(self, gtid: str) -> bool:
        sid_text, gno = gtid.rsplit(":", 1)
        intervals = self.intervals.get(uuid.UUID(sid_text), [])
        return any(start <= int(gno) <= end for start, end in intervals)

    def __eq__(self, other: object) -> bool:
        return isinstance(other, GtidSet) and self.intervals == other.intervals

    def __bool__(self) -> bool:
        return bool(self.intervals)

    def __str__(self) -> str:
        return ",".join(
            str(sid)
            + "".join(
                f":{start}" if start == end else f":{start}-{end}"
                for start, end in intervals
            )
            for sid, intervals in sorted(
                self.intervals.items(), key=lambda i: str(i[0])
            )
        )

    def __repr__(self) -> str:
        return f"GtidSet('{self}')"

    def encode(self) -> bytes:
        """
        Binary form used by COM_BINLOG_DUMP_GTID and previous GTIDs events.

        Interval ends are exclusive on the wire.
        """
        parts = [uint_8(len(self.intervals))]
        for sid, intervals in self.intervals.items():
            parts.append(sid.bytes)
            parts.append(uint_8(len(intervals)))
            for start, end in intervals:
                parts.append(uint_8(start))
                parts.append(uint_8(end + 1))
        return b"".join(parts)

    @classmethod
    def decode(cls, data: bytes) -> GtidSet:
        r = io.BytesIO(data)
        gtids = cls()
        for _ in range(read_uint_8(r)):
            sid = uuid.UUID(bytes=read_str_fixed(r, 16))
            intervals = []
            for _ in range(read_uint_8(r)):
                start = read_uint_8(r)
                end = read_uint_8(r)
                if end <= start:
                    raise ProtocolError(
                        f"Invalid GTID interval {start}-{end} for {sid}"
                    )
                intervals.append((start, end - 1))
            gtids.add(sid, intervals)
        if remaining(r):
            raise ProtocolError(f"{remaining(r)} trailing bytes after GTID set")
        return gtids


def _parse_interval(text: str) -> Interval:
    start_text, _, end_text = text.strip().partition("-")
    try:
        start = int(start_text)
        end = int(end_text) if end_text else start
    except ValueError:
        raise ValueError(f"Invalid GTID interval: {text!r}") from None
    if start < 1 or end < start:
        raise ValueError(f"Invalid GTID interval: {text!r}")
    return start, end
