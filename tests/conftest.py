"""
Synthetic artifact bytes built with struct, shared across the test modules.
"""

import struct
import uuid

import pytest

from binparse import FILETIME_EPOCH_SECONDS, HUNDREDS_OF_NS
from bits import ESE_JOB_MARKERS, FILE_MARKER, LEGACY_JOB_MARKERS, QUEUE_HEADER

VOLUME = "\\VOLUME{01d6828290579d13-4290933e}"
VOLUME_DIRECTORIES = [
    "\\$EXTEND",
    "\\PROGRAMDATA",
    "\\PROGRAMDATA\\CHOCOLATEY",
    "\\PROGRAMDATA\\CHOCOLATEY\\TOOLS",
    "\\USERS",
    "\\USERS\\BOB",
    "\\USERS\\BOB\\APPDATA",
    "\\USERS\\BOB\\APPDATA\\LOCAL",
    "\\USERS\\BOB\\APPDATA\\LOCAL\\TEMP",
    "\\USERS\\BOB\\APPDATA\\LOCAL\\TEMP\\CHOCOLATEY",
    "\\USERS\\BOB\\APPDATA\\LOCAL\\TEMP\\CHOCOLATEY\\PSEXEC.2.40",
    "\\WINDOWS",
    "\\WINDOWS\\APPPATCH",
    "\\WINDOWS\\SYSTEM32",
    "\\WINDOWS\\SYSWOW64",
]

OWNER_SID = "S-1-5-21-3471133136-2963561160-3931775028-1001"
JOB_ID = "0b3b52ab-4f45-4b59-a8e2-6b2e7a5e1f01"
FILE_ID = "5d1c4e2a-7a42-4f7c-9b55-0c8f3bd1f0a2"


def to_filetime(unix_seconds: int) -> int:
    return (unix_seconds + FILETIME_EPOCH_SECONDS) * HUNDREDS_OF_NS


def guid_bytes(value: str) -> bytes:
    return uuid.UUID(value).bytes_le


def pstr(text: str) -> bytes:
    raw = (text + "\x00").encode("utf-16-le")
    return struct.pack("<I", len(raw) // 2) + raw


def pstr_list(values: list[str]) -> bytes:
    return struct.pack("<I", len(values)) + b"".join(pstr(v) for v in values)


def job_blob(
    job_id: str = JOB_ID,
    file_ids: tuple[str, ...] = (FILE_ID,),
    *,
    marker: bytes = ESE_JOB_MARKERS[0],
    name: str = "chrome_update",
    description: str = "",
    command: str = "",
    arguments: str = "",
    owner_sid: str = OWNER_SID,
    job_type: int = 0,
    priority: int = 2,
    state: int = 6,
    flags: int = 0x1,
    http_method: str = "GET",
    target_path: str = "",
    errors: tuple[int, int, int, int] = (0, 0, 600, 1209600),
    times: tuple[int, int, int, int] = (1600000000, 1600000100, 1600000200, 1600086400),
    acls: tuple[str, ...] = (),
    sids: tuple[str, ...] = (),
) -> bytes:
    return b"".join(
        [
            marker,
            struct.pack("<IIII", job_type, priority, state, 0),
            guid_bytes(job_id),
            pstr(name),
            pstr(description),
            pstr(command),
            pstr(arguments),
            pstr(owner_sid),
            struct.pack("<I", flags),
            pstr(http_method),
            pstr(target_path),
            struct.pack("<I", len(file_ids)),
            b"".join(guid_bytes(f) for f in file_ids),
            struct.pack("<IIII", *errors),
            struct.pack("<QQQQ", *(to_filetime(t) for t in times)),
            pstr_list(list(acls)),
            pstr_list(list(sids)),
        ]
    )


def file_blob(
    file_id: str = FILE_ID,
    *,
    full_path: str = "C:\\Users\\bob\\AppData\\Local\\Temp\\payload.exe",
    url: str = "http://example.invalid/payload.exe",
    tmp_fullpath: str = "C:\\Users\\bob\\AppData\\Local\\Temp\\BIT1A2B.tmp",
    download: int = 4096,
    transfer: int = 4096,
    volume: str = VOLUME,
    files_transferred: int = 1,
) -> bytes:
    return b"".join(
        [
            FILE_MARKER,
            guid_bytes(file_id),
            pstr(full_path),
            pstr(url),
            pstr(tmp_fullpath),
            struct.pack("<QQ", download, transfer),
            b"\x00",
            pstr(volume),
            struct.pack("<I", files_transferred),
        ]
    )


def legacy_queue(jobs: list[tuple[bytes, list[bytes]]]) -> bytes:
    parts = [QUEUE_HEADER, struct.pack("<I", len(jobs))]
    for job, files in jobs:
        parts.append(job)
        parts.append(struct.pack("<I", len(files)))
        parts.extend(files)
    return b"".join(parts)


def directory_table(volume: str = VOLUME, directories: list[str] = VOLUME_DIRECTORIES) -> bytes:
    out = bytearray()
    for directory in directories:
        text = volume + directory
        out += struct.pack("<H", len(text)) + text.encode("utf-16-le") + b"\x00\x00"
    return bytes(out)


def volume_info() -> bytes:
    """One volume entry laid out like a real version 30 volume information block."""
    path_offset, directory_offset = 96, 864
    header = struct.pack(
        "<IIQIIIII",
        path_offset,
        len(VOLUME),
        0x01D6828290579D13,
        0x4290933E,
        168,
        696,
        directory_offset,
        len(VOLUME_DIRECTORIES),
    )
    data = bytearray(directory_offset)
    data[: len(header)] = header
    path = (VOLUME + "\x00").encode("utf-16-le")
    data[path_offset : path_offset + len(path)] = path
    return bytes(data) + directory_table()


def prefetch_file(version: int = 30, executable: str = "PSEXEC.EXE", volumes: bytes | None = None) -> bytes:
    volumes = volume_info() if volumes is None else volumes
    volumes_offset = 0x100
    header = bytearray(volumes_offset)
    struct.pack_into("<I4s", header, 0, version, b"SCCA")
    name = executable.encode("utf-16-le")
    header[0x10 : 0x10 + len(name)] = name
    struct.pack_into("<II", header, 0x6C, volumes_offset, 1)
    return bytes(header) + volumes


@pytest.fixture
def legacy_data() -> bytes:
    first = job_blob(marker=LEGACY_JOB_MARKERS[0])
    second = job_blob(
        "2f0e8b0c-1d2a-4c3b-8e4f-5a6b7c8d9e00",
        ("9a8b7c6d-5e4f-4a3b-2c1d-0e0f1a2b3c4d",),
        marker=LEGACY_JOB_MARKERS[1],
        name="updater",
        owner_sid="S-1-5-18",
    )
    return legacy_queue(
        [
            (first, [file_blob()]),
            (second, [file_blob("9a8b7c6d-5e4f-4a3b-2c1d-0e0f1a2b3c4d", full_path="C:\\Windows\\Temp\\u.cab")]),
        ]
    )
