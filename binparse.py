"""
Bounds-checked primitive reads over raw artifact bytes.

ByteCursor never mutates the buffer it wraps: every read hands back the decoded
value together with a new cursor positioned after it.
"""

import struct
import uuid
from dataclasses import dataclass
from typing import Literal

from artifact_errors import StructuralTruncation

Endian = Literal["little", "big"]

FILETIME_EPOCH_SECONDS = 11644473600
HUNDREDS_OF_NS = 10_000_000

_UINT_FORMATS = {1: "B", 2: "H", 4: "I", 8: "Q"}


class InsufficientData(StructuralTruncation):
    def __init__(self, offset: int, wanted: int, available: int):
        self.offset = offset
        self.wanted = wanted
        self.available = available
        super().__init__(f"Need {wanted} bytes at offset {offset:#x}, only {available} available")


def filetime_to_unixepoch(filetime: int) -> int:
    """Windows FILETIME (100ns ticks since 1601) -> whole seconds since 1970."""
    return filetime // HUNDREDS_OF_NS - FILETIME_EPOCH_SECONDS


def decode_utf16(raw: bytes) -> str:
    """
    Lossy UTF-16LE decode. Undecodable units are dropped and the text ends at the
    first NUL, since forensic input is frequently imperfect.
    """
    if len(raw) % 2:
        raw = raw[:-1]
    text = raw.decode("utf-16-le", errors="ignore")
    return text.split("\x00", 1)[0]


def format_guid(raw: bytes) -> str:
    return str(uuid.UUID(bytes_le=bytes(raw)))


@dataclass(frozen=True)
class ByteCursor:
    data: bytes
    pos: int = 0

    @property
    def remaining(self) -> int:
        return len(self.data) - self.pos

    def rest(self) -> bytes:
        return self.data[self.pos:]

    def _require(self, size: int) -> None:
        if size < 0 or size > self.remaining:
            raise InsufficientData(self.pos, size, max(self.remaining, 0))

    def seek(self, offset: int) -> "ByteCursor":
        """Cursor at an absolute offset into the same buffer."""
        if offset < 0 or offset > len(self.data):
            raise InsufficientData(offset, 0, 0)
        return ByteCursor(self.data, offset)

    def skip(self, size: int) -> "ByteCursor":
        self._require(size)
        return ByteCursor(self.data, self.pos + size)

    def take(self, size: int) -> tuple[bytes, "ByteCursor"]:
        self._require(size)
        end = self.pos + size
        return self.data[self.pos:end], ByteCursor(self.data, end)

    def _read_uint(self, size: int, endian: Endian) -> tuple[int, "ByteCursor"]:
        self._require(size)
        fmt = ("<" if endian == "little" else ">") + _UINT_FORMATS[size]
        value = struct.unpack_from(fmt, self.data, self.pos)[0]
        return value, ByteCursor(self.data, self.pos + size)

    def read_u8(self) -> tuple[int, "ByteCursor"]:
        return self._read_uint(1, "little")

    def read_u16(self, endian: Endian = "little") -> tuple[int, "ByteCursor"]:
        return self._read_uint(2, endian)

    def read_u32(self, endian: Endian = "little") -> tuple[int, "ByteCursor"]:
        return self._read_uint(4, endian)

    def read_u64(self, endian: Endian = "little") -> tuple[int, "ByteCursor"]:
        return self._read_uint(8, endian)

    def read_utf16_string(self, byte_len: int) -> tuple[str, "ByteCursor"]:
        raw, cur = self.take(byte_len)
        return decode_utf16(raw), cur

    def read_filetime(self) -> tuple[int, "ByteCursor"]:
        ft, cur = self.read_u64()
        return filetime_to_unixepoch(ft), cur

    def read_guid(self) -> tuple[str, "ByteCursor"]:
        raw, cur = self.take(16)
        return format_guid(raw), cur
