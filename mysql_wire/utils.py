from __future__ import annotations

import sys
from collections.abc import Iterator


class seq(Iterator):
    """Auto-incrementing sequence with an optional maximum size"""

    def __init__(self, size: int | None = None):
        self.size = size
        self.value = 0

    def __next__(self) -> int:
        value = self.value
        self.value = self.value + 1
        if self.size:
            self.value = self.value % self.size
        return value

    def reset(self) -> None:
        self.value = 0


def xor(a: bytes, b: bytes) -> bytes:
    # Fast XOR implementation, according to https://stackoverflow.com/questions/29408173/byte-operations-xor-in-python
    a, b = a[: len(b)], b[: len(a)]
    int_b = int.from_bytes(b, sys.byteorder)
    int_a = int.from_bytes(a, sys.byteorder)
    int_enc = int_b ^ int_a
    return int_enc.to_bytes(len(b), sys.byteorder)


def xor_cycle(data: bytes, key: bytes) -> bytes:
    """XOR `data` with `key` repeated to the length of `data`"""
    if not key:
        return data
    repeated = (key * (len(data) // len(key) + 1))[: len(data)]
    return xor(data, repeated)


def parse_version(version: str) -> tuple:
    """
    Leading numeric triple of a server version string.

    >>> parse_version("5.5.5-10.11.2-MariaDB-log")
    (10, 11, 2)
    >>> parse_version("8.0.36")
    (8, 0, 36)
    """
    # MariaDB prefixes its real version with a fake 5.5.5 for old clients
    if version.startswith("5.5.5-"):
        version = version[len("5.5.5-") :]
    parts = []
    for chunk in version.split("-", 1)[0].split(".")[:3]:
        digits = ""
        for c in chunk:
            if not c.isdigit():
                break
            digits += c
        parts.append(int(digits or 0))
    while len(parts) < 3:
        parts.append(0)
    return tuple(parts)
