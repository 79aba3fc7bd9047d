from __future__ import annotations
from enum import IntEnum


class CharacterSet(IntEnum):
    """Character sets a client can request, valued by their default collation id"""

    big5 = 1
    latin1 = 8
    latin2 = 9
    ascii = 11
    ujis = 12
    sjis = 13
    hebrew = 16
    euckr = 19
    koi8u = 22
    gb2312 = 24
    greek = 25
    cp1250 = 26
    gbk = 28
    latin5 = 30
    utf8mb3 = 33
    cp866 = 36
    cp852 = 40
    cp1251 = 51
    utf16 = 54
    cp1256 = 57
    cp1257 = 59
    utf32 = 60
    binary = 63
    cp932 = 95
    eucjpms = 97
    gb18030 = 248
    utf8mb4 = 255

    @property
    def codec(self) -> str:
        return CODECS.get(self.name, self.name)

    @property
    def default_collation(self) -> Collation:
        return DEFAULT_COLLATIONS[self]

    @classmethod
    def from_name(cls, name: str) -> CharacterSet:
        name = name.lower()
        if name == "utf8":
            return cls.utf8mb3
        try:
            return cls[name]
        except KeyError:
            raise ValueError(f"Unknown character set {name}") from None

    def decode(self, b: bytes) -> str:
        return b.decode(self.codec)

    def encode(self, s: str) -> bytes:
        return s.encode(self.codec)


class Collation(IntEnum):
    big5_chinese_ci = 1
    latin1_swedish_ci = 8
    latin2_general_ci = 9
    ascii_general_ci = 11
    ujis_japanese_ci = 12
    sjis_japanese_ci = 13
    hebrew_general_ci = 16
    euckr_korean_ci = 19
    koi8u_general_ci = 22
    gb2312_chinese_ci = 24
    greek_general_ci = 25
    cp1250_general_ci = 26
    gbk_chinese_ci = 28
    latin5_turkish_ci = 30
    utf8mb3_general_ci = 33
    cp866_general_ci = 36
    cp852_general_ci = 40
    utf8mb4_general_ci = 45
    utf8mb4_bin = 46
    latin1_bin = 47
    cp1251_general_ci = 51
    utf16_general_ci = 54
    cp1256_general_ci = 57
    cp1257_general_ci = 59
    utf32_general_ci = 60
    binary = 63
    utf8mb3_bin = 83
    cp932_japanese_ci = 95
    eucjpms_japanese_ci = 97
    utf8mb4_unicode_ci = 224
    gb18030_chinese_ci = 248
    utf8mb4_0900_ai_ci = 255

    @property
    def codec(self) -> str:
        return self.charset.codec

    @property
    def charset(self) -> CharacterSet:
        return CharacterSet.from_name(self.name.split("_", 1)[0])


# Python codec names, where they differ from the MySQL name
CODECS = {
    "utf8mb3": "utf8",
    "utf8mb4": "utf8",
    "binary": "latin1",
    "ujis": "euc_jp",
    "sjis": "shift_jis",
    "hebrew": "iso8859_8",
    "euckr": "euc_kr",
    "koi8u": "koi8_u",
    "greek": "iso8859_7",
    "latin2": "iso8859_2",
    "latin5": "iso8859_9",
    "utf16": "utf_16_be",
    "utf32": "utf_32_be",
    "eucjpms": "euc_jp",
}

DEFAULT_COLLATIONS = {
    CharacterSet.big5: Collation.big5_chinese_ci,
    CharacterSet.latin1: Collation.latin1_swedish_ci,
    CharacterSet.latin2: Collation.latin2_general_ci,
    CharacterSet.ascii: Collation.ascii_general_ci,
    CharacterSet.ujis: Collation.ujis_japanese_ci,
    CharacterSet.sjis: Collation.sjis_japanese_ci,
    CharacterSet.hebrew: Collation.hebrew_general_ci,
    CharacterSet.euckr: Collation.euckr_korean_ci,
    CharacterSet.koi8u: Collation.koi8u_general_ci,
    CharacterSet.gb2312: Collation.gb2312_chinese_ci,
    CharacterSet.greek: Collation.greek_general_ci,
    CharacterSet.cp1250: Collation.cp1250_general_ci,
    CharacterSet.gbk: Collation.gbk_chinese_ci,
    CharacterSet.latin5: Collation.latin5_turkish_ci,
    CharacterSet.utf8mb3: Collation.utf8mb3_general_ci,
    CharacterSet.cp866: Collation.cp866_general_ci,
    CharacterSet.cp852: Collation.cp852_general_ci,
    CharacterSet.cp1251: Collation.cp1251_general_ci,
    CharacterSet.utf16: Collation.utf16_general_ci,
    CharacterSet.cp1256: Collation.cp1256_general_ci,
    CharacterSet.cp1257: Collation.cp1257_general_ci,
    CharacterSet.utf32: Collation.utf32_general_ci,
    CharacterSet.binary: Collation.binary,
    CharacterSet.cp932: Collation.cp932_japanese_ci,
    CharacterSet.eucjpms: Collation.eucjpms_japanese_ci,
    CharacterSet.gb18030: Collation.gb18030_chinese_ci,
    # The handshake collation id is a single byte, and utf8mb4_general_ci is
    # understood by every server flavour
    CharacterSet.utf8mb4: Collation.utf8mb4_general_ci,
}


def codec_for_collation(collation_id: int) -> str:
    """Python codec for a collation id reported by the server, falling back to utf8"""
    try:
        return Collation(collation_id).codec
    except ValueError:
        return "utf8"
