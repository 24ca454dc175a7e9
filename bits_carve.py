"""
Carve BITS jobs and files out of raw bytes.

When BITS entries are deleted the data is not actually removed from the file, so
older entries can be recovered by scanning for the job and file markers without
using any index. Some parts of the old entries may be overwritten by newer data:
carving is best effort and may return truncated, overlapping or stale records.

For the ESE generation jobs and files live in separate tables and nothing that
links them survives a scan of the whole database, so carved jobs and files are
never merged. Legacy qmgr files keep the files inline after their job, which is
the only case where carved records get assembled.
"""

from dataclasses import dataclass, field
from typing import Iterator

from artifact_errors import CarveFailure, UnknownSignature
from binparse import ByteCursor, InsufficientData
from bits import (
    ESE_JOB_MARKERS,
    FILE_MARKER,
    LEGACY_JOB_MARKERS,
    MAX_CARVE_CHARS,
    MAX_CARVE_FILES,
    FileRecord,
    ImplausibleRecord,
    JobRecord,
    MergedArtifactRecord,
    UsernameLookup,
    read_file,
    read_job,
)

NIL_GUID = "00000000-0000-0000-0000-000000000000"
_SKIP = (InsufficientData, ImplausibleRecord, UnknownSignature)


@dataclass
class CarveResult:
    bits: list[MergedArtifactRecord] = field(default_factory=list)
    jobs: list[JobRecord] = field(default_factory=list)
    files: list[FileRecord] = field(default_factory=list)
    error: CarveFailure | None = None


def find_all(data: bytes, marker: bytes) -> Iterator[int]:
    start = data.find(marker)
    while start != -1:
        yield start
        start = data.find(marker, start + 1)


def carve_bits(data: bytes, is_legacy: bool, lookup_username: UsernameLookup | None = None) -> CarveResult:
    """Scan `data` for the job markers of one generation plus file markers. Never raises."""
    try:
        return _carve(data, is_legacy, lookup_username)
    except Exception as ex:
        return CarveResult(error=CarveFailure(f"Could not carve BITS data: {ex}"))


def _carve(data: bytes, is_legacy: bool, lookup_username: UsernameLookup | None) -> CarveResult:
    result = CarveResult()
    markers = LEGACY_JOB_MARKERS if is_legacy else ESE_JOB_MARKERS
    consumed_files: set[int] = set()

    job_offsets = sorted(offset for marker in markers for offset in find_all(data, marker))
    for offset in job_offsets:
        try:
            job, end = read_job(ByteCursor(data, offset), markers, max_chars=MAX_CARVE_CHARS, partial=True)
        except _SKIP:
            continue
        if job.job_id == NIL_GUID:
            continue

        inline = _carve_inline_files(end) if is_legacy and end is not None else []
        if not inline:
            result.jobs.append(job)
            continue

        username = (lookup_username(job.owner_sid) if lookup_username else None) or ""
        for file_offset, file in inline:
            consumed_files.add(file_offset)
            result.bits.append(MergedArtifactRecord.from_pair(job, file, username, carved=True))

    for offset in find_all(data, FILE_MARKER):
        if offset in consumed_files:
            continue
        try:
            file, _ = read_file(ByteCursor(data, offset), max_chars=MAX_CARVE_CHARS)
        except _SKIP:
            continue
        if file.url or file.full_path:
            result.files.append(file)

    return result


def _carve_inline_files(cursor: ByteCursor) -> list[tuple[int, FileRecord]]:
    """Files that directly follow a legacy job. Stops at the first one that fails."""
    carved: list[tuple[int, FileRecord]] = []
    try:
        count, cursor = cursor.read_u32()
        if count > MAX_CARVE_FILES:
            return carved
        for _ in range(count):
            offset = cursor.pos
            file, cursor = read_file(cursor, max_chars=MAX_CARVE_CHARS)
            carved.append((offset, file))
    except _SKIP:
        pass
    return carved
