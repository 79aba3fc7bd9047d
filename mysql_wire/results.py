from __future__ import annotations

import io
import struct
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta
from decimal import Decimal
from typing import Any, Callable, Dict, Optional, Tuple

from mysql_wire.charset import Collation, codec_for_collation
from mysql_wire.errors import ClientError, ErrorCode
from mysql_wire.types import (
    ColumnDefinition,
    ColumnType,
    read_double,
    read_float,
    read_int_1,
    read_int_2,
    read_int_4,
    read_int_8,
    read_str_fixed,
    read_str_len,
    read_uint_1,
    read_uint_2,
    read_uint_4,
    read_uint_8,
    str_len,
    uint_1,
    uint_2,
    uint_4,
)


@dataclass
class Column:
    """
    Column definition of a result set

    Args:
        name: column name, or alias
        type: column type
        flags: column definition flags
        character_set: collation id of the column's values
        column_length: maximum display length
        decimals: number of decimals for numeric and temporal types
    """

    name: str
    type: ColumnType
    flags: ColumnDefinition = ColumnDefinition(0)
    character_set: int = Collation.utf8mb4_general_ci
    column_length: int = 0
    decimals: int = 0
    schema: str = ""
    table: str = ""
    org_table: str = ""
    org_name: str = ""
    catalog: str = "def"

    @property
    def unsigned(self) -> bool:
        return ColumnDefinition.UNSIGNED_FLAG in self.flags

    @property
    def binary(self) -> bool:
        return self.character_set == Collation.binary

    @property
    def codec(self) -> str:
        return codec_for_collation(self.character_set)

    def decode(self, value: Optional[bytes]) -> Optional[str]:
        """Decode a raw text value using the column's character set"""
        if value is None:
            return None
        return value.decode(self.codec)

    def __repr__(self) -> str:
        return f"Column({self.name} {self.type.name})"


Decoder = Callable[[io.BytesIO, Column], Any]


def decode_binary_value(reader: io.BytesIO, column: Column) -> Any:
    return _BINARY_DECODERS.get(column.type, _binary_decode_str)(reader, column)


def _binary_decode_tiny(reader: io.BytesIO, column: Column) -> int:
    return (read_uint_1 if column.unsigned else read_int_1)(reader)


def _binary_decode_short(reader: io.BytesIO, column: Column) -> int:
    return (read_uint_2 if column.unsigned else read_int_2)(reader)


def _binary_decode_long(reader: io.BytesIO, column: Column) -> int:
    return (read_uint_4 if column.unsigned else read_int_4)(reader)


def _binary_decode_longlong(reader: io.BytesIO, column: Column) -> int:
    return (read_uint_8 if column.unsigned else read_int_8)(reader)


def _binary_decode_float(reader: io.BytesIO, column: Column) -> float:
    return read_float(reader)


def _binary_decode_double(reader: io.BytesIO, column: Column) -> float:
    return read_double(reader)


def _binary_decode_str(reader: io.BytesIO, column: Column) -> bytes:
    return read_str_len(reader)


def _binary_decode_null(reader: io.BytesIO, column: Column) -> None:
    return None


def _binary_decode_date(reader: io.BytesIO, column: Column) -> Any:
    length = read_uint_1(reader)
    year = month = day = hour = minute = second = microsecond = 0
    if length >= 4:
        year = read_uint_2(reader)
        month = read_uint_1(reader)
        day = read_uint_1(reader)
    if length >= 7:
        hour = read_uint_1(reader)
        minute = read_uint_1(reader)
        second = read_uint_1(reader)
    if length >= 11:
        microsecond = read_uint_4(reader)

    try:
        if column.type == ColumnType.DATE:
            return date(year, month, day)
        return datetime(year, month, day, hour, minute, second, microsecond)
    except ValueError:
        # Zero and partial dates ("0000-00-00") have no python equivalent
        text = f"{year:04d}-{month:02d}-{day:02d}"
        if column.type != ColumnType.DATE:
            text += f" {hour:02d}:{minute:02d}:{second:02d}"
            if microsecond:
                text += f".{microsecond:06d}"
        return text.encode("ascii")


def _binary_decode_time(reader: io.BytesIO, column: Column) -> timedelta:
    length = read_uint_1(reader)
    if length == 0:
        return timedelta(0)
    is_negative = read_uint_1(reader)
    days = read_uint_4(reader)
    hours = read_uint_1(reader)
    minutes = read_uint_1(reader)
    seconds = read_uint_1(reader)
    microseconds = read_uint_4(reader) if length >= 12 else 0
    val = timedelta(
        days=days,
        hours=hours,
        minutes=minutes,
        seconds=seconds,
        microseconds=microseconds,
    )
    return -val if is_negative else val


_BINARY_DECODERS: Dict[ColumnType, Decoder] = {
    ColumnType.TINY: _binary_decode_tiny,
    ColumnType.BOOL: _binary_decode_tiny,
    ColumnType.SHORT: _binary_decode_short,
    ColumnType.YEAR: _binary_decode_short,
    ColumnType.LONG: _binary_decode_long,
    ColumnType.INT24: _binary_decode_long,
    ColumnType.LONGLONG: _binary_decode_longlong,
    ColumnType.FLOAT: _binary_decode_float,
    ColumnType.DOUBLE: _binary_decode_double,
    ColumnType.NULL: _binary_decode_null,
    ColumnType.DATE: _binary_decode_date,
    ColumnType.NEWDATE: _binary_decode_date,
    ColumnType.DATETIME: _binary_decode_date,
    ColumnType.TIMESTAMP: _binary_decode_date,
    ColumnType.TIME: _binary_decode_time,
}


# Binary protocol encoders for prepared statement parameters
def _binary_encode_tiny(val: Any, codec: str) -> bytes:
    return uint_1(int(bool(val)))


def _binary_encode_int(val: Any, codec: str) -> bytes:
    if val < 0:
        return struct.pack("<q", val)
    return struct.pack("<Q", val)


def _binary_encode_double(val: Any, codec: str) -> bytes:
    return struct.pack("<d", val)


def _binary_encode_str(val: Any, codec: str) -> bytes:
    if isinstance(val, (bytearray, memoryview)):
        val = bytes(val)

    if not isinstance(val, bytes):
        val = str(val)

    if isinstance(val, str):
        val = val.encode(codec)

    return str_len(val)


def _binary_encode_date(val: Any, codec: str) -> bytes:
    year = val.year
    month = val.month
    day = val.day

    if isinstance(val, datetime):
        hour = val.hour
        minute = val.minute
        second = val.second
        microsecond = val.microsecond
    else:
        hour = minute = second = microsecond = 0

    if microsecond == 0:
        if hour == minute == second == 0:
            return b"".join([uint_1(4), uint_2(year), uint_1(month), uint_1(day)])
        return b"".join(
            [
                uint_1(7),
                uint_2(year),
                uint_1(month),
                uint_1(day),
                uint_1(hour),
                uint_1(minute),
                uint_1(second),
            ]
        )
    return b"".join(
        [
            uint_1(11),
            uint_2(year),
            uint_1(month),
            uint_1(day),
            uint_1(hour),
            uint_1(minute),
            uint_1(second),
            uint_4(microsecond),
        ]
    )


def _binary_encode_timedelta(val: Any, codec: str) -> bytes:
    if isinstance(val, time):
        val = timedelta(
            hours=val.hour,
            minutes=val.minute,
            seconds=val.second,
            microseconds=val.microsecond,
        )

    is_negative = val < timedelta(0)
    if is_negative:
        val = -val
    days = val.days
    hours, remainder = divmod(val.seconds, 3600)
    minutes, seconds = divmod(remainder, 60)
    microseconds = val.microseconds

    if microseconds == 0:
        if days == hours == minutes == seconds == 0:
            return uint_1(0)
        return b"".join(
            [
                uint_1(8),
                uint_1(is_negative),
                uint_4(days),
                uint_1(hours),
                uint_1(minutes),
                uint_1(seconds),
            ]
        )
    return b"".join(
        [
            uint_1(12),
            uint_1(is_negative),
            uint_4(days),
            uint_1(hours),
            uint_1(minutes),
            uint_1(seconds),
            uint_4(microseconds),
        ]
    )


# Order matters
# bool is a subclass of int
# datetime is a subclass of date
_PY_TO_MYSQL_TYPE: Dict[type, Tuple[ColumnType, Callable[[Any, str], bytes]]] = {
    bool: (ColumnType.TINY, _binary_encode_tiny),
    int: (ColumnType.LONGLONG, _binary_encode_int),
    float: (ColumnType.DOUBLE, _binary_encode_double),
    Decimal: (ColumnType.NEWDECIMAL, _binary_encode_str),
    str: (ColumnType.VAR_STRING, _binary_encode_str),
    bytes: (ColumnType.BLOB, _binary_encode_str),
    bytearray: (ColumnType.BLOB, _binary_encode_str),
    memoryview: (ColumnType.BLOB, _binary_encode_str),
    datetime: (ColumnType.DATETIME, _binary_encode_date),
    date: (ColumnType.DATE, _binary_encode_date),
    timedelta: (ColumnType.TIME, _binary_encode_timedelta),
    time: (ColumnType.TIME, _binary_encode_timedelta),
}


def encode_binary_param(
    val: Any, codec: str = "utf8"
) -> Tuple[ColumnType, bool, Optional[bytes]]:
    """
    Encode a python value as a binary protocol parameter.

    Returns:
        The parameter type, whether it is unsigned, and the encoded value (None for NULL)
    """
    if val is None:
        return ColumnType.NULL, False, None

    for py_type, (my_type, encoder) in _PY_TO_MYSQL_TYPE.items():
        if isinstance(val, py_type):
            if my_type == ColumnType.LONGLONG and not -(2**63) <= val < 2**64:
                raise ClientError(
                    f"Integer parameter out of range: {val}",
                    ErrorCode.UNSUPPORTED_PARAM_TYPE,
                )
            unsigned = my_type == ColumnType.LONGLONG and val >= 2**63
            return my_type, unsigned, encoder(val, codec)

    raise ClientError(
        f"Unsupported parameter type: {type(val).__name__}",
        ErrorCode.UNSUPPORTED_PARAM_TYPE,
    )


class NullBitmap:
    """See https://dev.mysql.com/doc/internals/en/null-bitmap.html"""

    __slots__ = ("offset", "bitmap")

    def __init__(self, bitmap: bytearray, offset: int = 0):
        self.offset = offset
        self.bitmap = bitmap

    @classmethod
    def new(cls, num_bits: int, offset: int = 0) -> NullBitmap:
        bitmap = bytearray(cls._num_bytes(num_bits, offset))
        return cls(bitmap, offset)

    @classmethod
    def from_buffer(
        cls, buffer: io.BytesIO, num_bits: int, offset: int = 0
    ) -> NullBitmap:
        bitmap = bytearray(read_str_fixed(buffer, cls._num_bytes(num_bits, offset)))
        return cls(bitmap, offset)

    @classmethod
    def _num_bytes(cls, num_bits: int, offset: int) -> int:
        return (num_bits + 7 + offset) // 8

    def flip(self, i: int) -> None:
        byte_position, bit_position = self._pos(i)
        self.bitmap[byte_position] |= 1 << bit_position

    def is_flipped(self, i: int) -> bool:
        byte_position, bit_position = self._pos(i)
        return bool(self.bitmap[byte_position] & (1 << bit_position))

    def _pos(self, i: int) -> Tuple[int, int]:
        byte_position = (i + self.offset) // 8
        bit_position = (i + self.offset) % 8
        return byte_position, bit_position

    def __bytes__(self) -> bytes:
        return bytes(self.bitmap)

    def __repr__(self) -> str:
        return "".join(format(b, "08b") for b in self.bitmap)
