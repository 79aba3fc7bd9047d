import io
from datetime import date, datetime, timedelta
from decimal import Decimal
from typing import Any

import pytest

from mysql_wire import types
from mysql_wire.charset import CharacterSet, Collation, codec_for_collation
from mysql_wire.errors import ClientError, ProtocolError
from mysql_wire.results import NullBitmap, encode_binary_param
from mysql_wire.types import ColumnType
from mysql_wire.utils import parse_version, xor_cycle


@pytest.mark.parametrize(
    "i, encoded",
    [
        (0, b"\x00"),
        (250, b"\xfa"),
        (251, b"\xfc\xfb\x00"),
        (0xFFFF, b"\xfc\xff\xff"),
        (0x10000, b"\xfd\x00\x00\x01"),
        (0xFFFFFF, b"\xfd\xff\xff\xff"),
        (0x1000000, b"\xfe\x00\x00\x00\x01\x00\x00\x00\x00"),
    ],
)
def test_uint_len(i: int, encoded: bytes) -> None:
    assert types.uint_len(i) == encoded
    assert types.read_uint_len(io.BytesIO(encoded)) == i


def test_uint_len_null_marker() -> None:
    with pytest.raises(ProtocolError):
        types.read_uint_len(io.BytesIO(b"\xfb"))


def test_truncated() -> None:
    with pytest.raises(ProtocolError):
        types.read_uint_4(io.BytesIO(b"\x01\x02"))
    with pytest.raises(ProtocolError):
        types.read_str_len(io.BytesIO(b"\x05abc"))


def test_str_null() -> None:
    reader = io.BytesIO(b"abc\x00def")
    assert types.read_str_null(reader) == b"abc"
    assert types.read_str_rest(reader) == b"def"
    with pytest.raises(ProtocolError):
        types.read_str_null(io.BytesIO(b"no terminator"))


def test_uint_6() -> None:
    assert types.read_uint_6(io.BytesIO(b"\x01\x00\x00\x00\x02\x00")) == 0x2_0000_0001


def test_null_bitmap() -> None:
    bitmap = NullBitmap.new(10, offset=2)
    bitmap.flip(0)
    bitmap.flip(6)
    assert bytes(bitmap) == b"\x04\x01"
    assert bitmap.is_flipped(6)
    assert not bitmap.is_flipped(5)


@pytest.mark.parametrize(
    "value, column_type, unsigned, encoded",
    [
        (None, ColumnType.NULL, False, None),
        (True, ColumnType.TINY, False, b"\x01"),
        (-1, ColumnType.LONGLONG, False, b"\xff" * 8),
        (2**64 - 1, ColumnType.LONGLONG, True, b"\xff" * 8),
        (1.5, ColumnType.DOUBLE, False, b"\x00\x00\x00\x00\x00\x00\xf8\x3f"),
        ("héllo", ColumnType.VAR_STRING, False, b"\x06h\xc3\xa9llo"),
        (b"\x00\x01", ColumnType.BLOB, False, b"\x02\x00\x01"),
        (Decimal("1.10"), ColumnType.NEWDECIMAL, False, b"\x041.10"),
        (date(2024, 2, 29), ColumnType.DATE, False, b"\x04\xe8\x07\x02\x1d"),
        (
            datetime(2024, 2, 29, 13, 5, 1),
            ColumnType.DATETIME,
            False,
            b"\x07\xe8\x07\x02\x1d\x0d\x05\x01",
        ),
        (timedelta(0), ColumnType.TIME, False, b"\x00"),
        (
            -timedelta(days=1, hours=2),
            ColumnType.TIME,
            False,
            b"\x08\x01\x01\x00\x00\x00\x02\x00\x00",
        ),
    ],
)
def test_encode_binary_param(
    value: Any, column_type: ColumnType, unsigned: bool, encoded: bytes
) -> None:
    assert encode_binary_param(value) == (column_type, unsigned, encoded)


def test_encode_unsupported_param() -> None:
    with pytest.raises(ClientError):
        encode_binary_param(object())
    with pytest.raises(ClientError):
        encode_binary_param(2**64)


def test_charset() -> None:
    assert CharacterSet.from_name("utf8") == CharacterSet.utf8mb3
    assert CharacterSet.from_name("UTF8MB4").default_collation == 45
    assert CharacterSet.latin1.codec == "latin1"
    assert codec_for_collation(Collation.utf8mb4_0900_ai_ci) == "utf8"
    assert codec_for_collation(9999) == "utf8"
    with pytest.raises(ValueError):
        CharacterSet.from_name("klingon")


@pytest.mark.parametrize(
    "version, expected",
    [
        ("8.0.36", (8, 0, 36)),
        ("5.7.44-log", (5, 7, 44)),
        ("5.5.5-10.11.2-MariaDB-1:10.11.2+maria~ubu2204", (10, 11, 2)),
        ("8.0.11-TiDB-v7.5.0", (8, 0, 11)),
        ("9", (9, 0, 0)),
    ],
)
def test_parse_version(version: str, expected: tuple) -> None:
    assert parse_version(version) == expected


def test_xor_cycle() -> None:
    data = b"password\x00"
    key = b"abc"
    assert xor_cycle(xor_cycle(data, key), key) == data
    assert xor_cycle(data, b"") == data
