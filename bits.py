"""
BITS (Background Intelligent Transfer Service) job and file records.

Two on-disk generations exist:
  - Win10+ qmgr.db: an ESE database whose Jobs and Files tables hold one blob per row
  - pre-Win10 qmgr0.dat / qmgr1.dat: a flat queue of job blobs with their files inline

Both generations share the job and file blob layouts decoded here.
"""

import base64
import binascii
import ntpath
import uuid
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Any, Callable, Mapping

from artifact_errors import ArtifactError, MissingExpectedTable, UnknownSignature
from binparse import ByteCursor, InsufficientData, format_guid

Row = Mapping[str, Any]
UsernameLookup = Callable[[str], str | None]

QUEUE_HEADER = bytes.fromhex("47445F00A9BDBA449851C47BB6C07ACE")
FILE_MARKER = bytes.fromhex("36DA56776F515A43ACAC44A248FFF34D")

LEGACY_JOB_MARKERS = (
    bytes.fromhex("93362035A00C104A84F3B17E7B499CD7"),  # Vista / 7
    bytes.fromhex("101370C83653B34183E581557F361B87"),  # 8 / 8.1
)
ESE_JOB_MARKERS = (
    bytes.fromhex("8C93EA64030F6840B46FF97FE51D4DCD"),
    bytes.fromhex("B346ED3D3B10F944BC2FE8378BD31986"),
)
ALL_JOB_MARKERS = LEGACY_JOB_MARKERS + ESE_JOB_MARKERS
MARKER_SIZE = 16

JOBS_TABLE = "Jobs"
FILES_TABLE = "Files"

JOB_TYPES = {0: "Download", 1: "Upload", 2: "UploadReply"}
PRIORITIES = {0: "Foreground", 1: "High", 2: "Normal", 3: "Low"}
JOB_STATES = {
    0: "Queued",
    1: "Connecting",
    2: "Transferring",
    3: "Suspended",
    4: "Error",
    5: "TransientError",
    6: "Transferred",
    7: "Acknowledged",
    8: "Cancelled",
}
JOB_FLAGS = {
    0x1: "JobTransferred",
    0x2: "JobError",
    0x4: "Disable",
    0x8: "JobModification",
    0x10: "FileTransferred",
}

# Plausibility limits, only applied when carving
MAX_CARVE_CHARS = 0x8000
MAX_CARVE_FILES = 0x400


class ImplausibleRecord(ValueError):
    """Bytes decode, but not into anything a real BITS record would contain."""


@dataclass
class JobRecord:
    job_id: str = ""
    file_id: str = ""
    owner_sid: str = ""
    created: int = 0
    modified: int = 0
    completed: int = 0
    expiration: int = 0
    job_name: str = ""
    job_description: str = ""
    job_command: str = ""
    job_arguments: str = ""
    error_count: int = 0
    job_type: str = ""
    job_state: str = ""
    priority: str = ""
    flags: str = ""
    http_method: str = ""
    target_path: str = ""
    timeout: int = 0
    retry_delay: int = 0
    transient_error_count: int = 0
    acls: list[str] = field(default_factory=list)
    additional_sids: list[str] = field(default_factory=list)


@dataclass
class FileRecord:
    file_id: str = ""
    files_transferred: int = 0
    download_bytes_size: int = 0
    transfer_bytes_size: int = 0
    full_path: str = ""
    filename: str = ""
    tmp_fullpath: str = ""
    volume: str = ""
    url: str = ""


@dataclass
class MergedArtifactRecord:
    job_id: str
    file_id: str
    owner_sid: str
    username: str
    created: int
    modified: int
    completed: int
    expiration: int
    files_total: int
    bytes_downloaded: int
    bytes_transferred: int
    job_name: str
    job_description: str
    job_command: str
    job_arguments: str
    error_count: int
    job_type: str
    job_state: str
    priority: str
    flags: str
    http_method: str
    full_path: str
    filename: str
    target_path: str
    tmp_file: str
    volume: str
    url: str
    timeout: int
    retry_delay: int
    transient_error_count: int
    acls: list[str]
    additional_sids: list[str]
    carved: bool = False

    @classmethod
    def from_pair(cls, job: JobRecord, file: FileRecord, username: str = "", carved: bool = False):
        return cls(
            job_id=job.job_id,
            file_id=job.file_id,
            owner_sid=job.owner_sid,
            username=username,
            created=job.created,
            modified=job.modified,
            completed=job.completed,
            expiration=job.expiration,
            files_total=file.files_transferred,
            bytes_downloaded=file.download_bytes_size,
            bytes_transferred=file.transfer_bytes_size,
            job_name=job.job_name,
            job_description=job.job_description,
            job_command=job.job_command,
            job_arguments=job.job_arguments,
            error_count=job.error_count,
            job_type=job.job_type,
            job_state=job.job_state,
            priority=job.priority,
            flags=job.flags,
            http_method=job.http_method,
            full_path=file.full_path,
            filename=file.filename,
            target_path=job.target_path,
            tmp_file=file.tmp_fullpath,
            volume=file.volume,
            url=file.url,
            timeout=job.timeout,
            retry_delay=job.retry_delay,
            transient_error_count=job.transient_error_count,
            acls=list(job.acls),
            additional_sids=list(job.additional_sids),
            carved=carved,
        )


@dataclass
class SourceError:
    source: str
    error: ArtifactError

    def __str__(self) -> str:
        return f"{self.source}: {self.error}"


@dataclass
class WindowsArtifactCollection:
    entries: list[MergedArtifactRecord] = field(default_factory=list)
    carved_jobs: list[JobRecord] = field(default_factory=list)
    carved_files: list[FileRecord] = field(default_factory=list)
    # Non-fatal conditions met while collecting (skipped sources, truncations)
    errors: list[SourceError] = field(default_factory=list)

    def extend(self, other: "WindowsArtifactCollection") -> None:
        self.entries.extend(other.entries)
        self.carved_jobs.extend(other.carved_jobs)
        self.carved_files.extend(other.carved_files)
        self.errors.extend(other.errors)


def _enum_name(table: Mapping[int, str], value: int) -> str:
    return table.get(value, f"Unknown({value})")


def flag_names(value: int) -> str:
    names = [name for bit, name in JOB_FLAGS.items() if value & bit]
    unknown = value & ~sum(JOB_FLAGS)
    if unknown:
        names.append(f"Unknown({unknown:#x})")
    return "|".join(names)


def _read_pstr(cursor: ByteCursor, max_chars: int | None = None) -> tuple[str, ByteCursor]:
    """u32 character count (terminator included), then UTF-16LE text."""
    count, cursor = cursor.read_u32()
    if max_chars is not None and count > max_chars:
        raise ImplausibleRecord(f"string of {count} chars at {cursor.pos:#x}")
    return cursor.read_utf16_string(count * 2)


def _read_pstr_list(cursor: ByteCursor, max_chars: int | None = None) -> tuple[list[str], ByteCursor]:
    count, cursor = cursor.read_u32()
    if max_chars is not None and count > MAX_CARVE_FILES:
        raise ImplausibleRecord(f"list of {count} strings at {cursor.pos:#x}")
    values: list[str] = []
    for _ in range(count):
        value, cursor = _read_pstr(cursor, max_chars)
        values.append(value)
    return values, cursor


# Job blobs
def _read_job_identity(cursor: ByteCursor, job: JobRecord, max_chars: int | None) -> ByteCursor:
    job_type, cursor = cursor.read_u32()
    priority, cursor = cursor.read_u32()
    state, cursor = cursor.read_u32()
    if max_chars is not None and (
        job_type not in JOB_TYPES or priority not in PRIORITIES or state not in JOB_STATES
    ):
        raise ImplausibleRecord(f"job enums {job_type}/{priority}/{state}")
    job.job_type = _enum_name(JOB_TYPES, job_type)
    job.priority = _enum_name(PRIORITIES, priority)
    job.job_state = _enum_name(JOB_STATES, state)

    cursor = cursor.skip(4)
    job.job_id, cursor = cursor.read_guid()
    job.job_name, cursor = _read_pstr(cursor, max_chars)
    job.job_description, cursor = _read_pstr(cursor, max_chars)
    job.job_command, cursor = _read_pstr(cursor, max_chars)
    job.job_arguments, cursor = _read_pstr(cursor, max_chars)
    job.owner_sid, cursor = _read_pstr(cursor, max_chars)
    if max_chars is not None and job.owner_sid and not job.owner_sid.startswith("S-1-"):
        raise ImplausibleRecord(f"owner SID {job.owner_sid!r}")
    return cursor


def _read_job_details(cursor: ByteCursor, job: JobRecord, max_chars: int | None) -> ByteCursor:
    flags, cursor = cursor.read_u32()
    job.flags = flag_names(flags)
    job.http_method, cursor = _read_pstr(cursor, max_chars)
    job.target_path, cursor = _read_pstr(cursor, max_chars)

    file_count, cursor = cursor.read_u32()
    if max_chars is not None and file_count > MAX_CARVE_FILES:
        raise ImplausibleRecord(f"{file_count} files in job {job.job_id}")
    for index in range(file_count):
        file_id, cursor = cursor.read_guid()
        if index == 0:
            job.file_id = file_id

    job.error_count, cursor = cursor.read_u32()
    job.transient_error_count, cursor = cursor.read_u32()
    job.retry_delay, cursor = cursor.read_u32()
    job.timeout, cursor = cursor.read_u32()
    job.created, cursor = cursor.read_filetime()
    job.modified, cursor = cursor.read_filetime()
    job.completed, cursor = cursor.read_filetime()
    job.expiration, cursor = cursor.read_filetime()
    job.acls, cursor = _read_pstr_list(cursor, max_chars)
    job.additional_sids, cursor = _read_pstr_list(cursor, max_chars)
    return cursor


def read_job(
    cursor: ByteCursor,
    markers: tuple[bytes, ...] = ALL_JOB_MARKERS,
    *,
    max_chars: int | None = None,
    partial: bool = False,
) -> tuple[JobRecord, ByteCursor | None]:
    """
    Decode one job blob at the cursor, marker included.

    With `partial`, a record whose identity block decoded is kept even if the rest
    is truncated or implausible; the returned cursor is then None.
    """
    marker, cursor = cursor.take(MARKER_SIZE)
    if marker not in markers:
        raise UnknownSignature("BITS job", marker)

    job = JobRecord()
    cursor = _read_job_identity(cursor, job, max_chars)
    try:
        cursor = _read_job_details(cursor, job, max_chars)
    except (InsufficientData, ImplausibleRecord):
        if not partial:
            raise
        return job, None
    return job, cursor


def decode_job_blob(blob: bytes) -> JobRecord:
    """Best-effort decode of a table blob; undecoded fields keep their defaults."""
    job = JobRecord()
    cursor = ByteCursor(blob)
    try:
        marker, cursor = cursor.take(MARKER_SIZE)
        if marker not in ALL_JOB_MARKERS:
            return job
        cursor = _read_job_identity(cursor, job, None)
        _read_job_details(cursor, job, None)
    except InsufficientData:
        pass
    return job


# File blobs
def _read_file_fields(cursor: ByteCursor, file: FileRecord, max_chars: int | None) -> ByteCursor:
    file.file_id, cursor = cursor.read_guid()
    file.full_path, cursor = _read_pstr(cursor, max_chars)
    file.filename = ntpath.basename(file.full_path)
    file.url, cursor = _read_pstr(cursor, max_chars)
    file.tmp_fullpath, cursor = _read_pstr(cursor, max_chars)
    file.download_bytes_size, cursor = cursor.read_u64()
    file.transfer_bytes_size, cursor = cursor.read_u64()
    cursor = cursor.skip(1)
    file.volume, cursor = _read_pstr(cursor, max_chars)
    file.files_transferred, cursor = cursor.read_u32()
    return cursor


def read_file(cursor: ByteCursor, *, max_chars: int | None = None) -> tuple[FileRecord, ByteCursor]:
    marker, cursor = cursor.take(MARKER_SIZE)
    if marker != FILE_MARKER:
        raise UnknownSignature("BITS file", marker)

    file = FileRecord()
    cursor = _read_file_fields(cursor, file, max_chars)
    return file, cursor


def decode_file_blob(blob: bytes) -> FileRecord:
    file = FileRecord()
    cursor = ByteCursor(blob)
    try:
        marker, cursor = cursor.take(MARKER_SIZE)
        if marker != FILE_MARKER:
            return file
        _read_file_fields(cursor, file, None)
    except InsufficientData:
        pass
    return file


# ESE table rows
def _cell_bytes(value: Any) -> bytes | None:
    if isinstance(value, (bytes, bytearray, memoryview)):
        return bytes(value)
    if not isinstance(value, str):
        return None

    text = value.strip()
    try:
        return bytes.fromhex(text)
    except ValueError:
        pass
    try:
        return base64.b64decode(text, validate=True)
    except (binascii.Error, ValueError):
        return None


def _cell_guid(value: Any) -> str:
    if isinstance(value, uuid.UUID):
        return str(value)
    if isinstance(value, (bytes, bytearray, memoryview)):
        raw = bytes(value)
        return format_guid(raw) if len(raw) == 16 else ""
    if isinstance(value, str):
        try:
            return str(uuid.UUID(value.strip().strip("{}")))
        except ValueError:
            return ""
    return ""


def get_jobs(rows: list[Row]) -> list[JobRecord]:
    jobs: list[JobRecord] = []
    for row in rows:
        blob = _cell_bytes(row.get("Blob"))
        job = decode_job_blob(blob) if blob else JobRecord()
        job.job_id = _cell_guid(row.get("Id")) or job.job_id
        jobs.append(job)
    return jobs


def get_files(rows: list[Row]) -> list[FileRecord]:
    files: list[FileRecord] = []
    for row in rows:
        blob = _cell_bytes(row.get("Blob"))
        file = decode_file_blob(blob) if blob else FileRecord()
        file.file_id = _cell_guid(row.get("Id")) or file.file_id
        files.append(file)
    return files


def decode_tables(
    tables: Mapping[str, list[Row]],
    jobs_table: str = JOBS_TABLE,
    files_table: str = FILES_TABLE,
) -> tuple[list[JobRecord], list[FileRecord]]:
    """Jobs and Files from rows already dumped by a table engine."""
    if jobs_table not in tables:
        raise MissingExpectedTable(jobs_table)
    if files_table not in tables:
        raise MissingExpectedTable(files_table)
    return get_jobs(tables[jobs_table]), get_files(tables[files_table])


# Legacy qmgr files
@dataclass
class LegacyQueue:
    jobs: list[JobRecord] = field(default_factory=list)
    files: list[FileRecord] = field(default_factory=list)
    error: ArtifactError | None = None


def decode_legacy_queue(data: bytes) -> LegacyQueue:
    """
    Decode a pre-Win10 qmgr file: header, job count, then each job blob followed by
    its inline file blobs. A structural error keeps what was decoded before it.
    """
    queue = LegacyQueue()
    cursor = ByteCursor(data)
    try:
        header, cursor = cursor.take(MARKER_SIZE)
        if header != QUEUE_HEADER:
            raise UnknownSignature("BITS queue", header)
        job_count, cursor = cursor.read_u32()

        for _ in range(job_count):
            job, cursor = read_job(cursor, LEGACY_JOB_MARKERS)
            queue.jobs.append(job)
            file_count, cursor = cursor.read_u32()
            for _ in range(file_count):
                file, cursor = read_file(cursor)
                queue.files.append(file)
    except (InsufficientData, UnknownSignature) as err:
        queue.error = err
    return queue


def decode_legacy_jobs(data: bytes) -> list[JobRecord]:
    return decode_legacy_queue(data).jobs


# Join
def join_jobs_files(
    jobs: list[JobRecord],
    files: list[FileRecord],
    lookup_username: UsernameLookup | None = None,
    *,
    carved: bool = False,
) -> list[MergedArtifactRecord]:
    """
    One merged record per (job, file) pair sharing a file_id. Jobs or files with no
    counterpart are dropped.
    """
    index: dict[str, list[FileRecord]] = defaultdict(list)
    for file in files:
        index[file.file_id].append(file)

    merged: list[MergedArtifactRecord] = []
    for job in jobs:
        matches = index.get(job.file_id)
        if not matches:
            continue
        username = (lookup_username(job.owner_sid) if lookup_username else None) or ""
        for file in matches:
            merged.append(MergedArtifactRecord.from_pair(job, file, username, carved))
    return merged
