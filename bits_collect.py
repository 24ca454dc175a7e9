"""
Collect BITS jobs from either on-disk generation, optionally carving deleted entries.

Each source (one database, one qmgr file) is processed to completion on its own and
returns a self-contained collection, so callers may run sources in parallel.
"""

from pathlib import Path
from typing import Any, Callable

from dissect.esedb import EseDB
from dissect.esedb.exceptions import Error as EseError

from artifact_errors import MissingExpectedTable, ReadFailure
from bits import (
    FILES_TABLE,
    JOBS_TABLE,
    SourceError,
    UsernameLookup,
    WindowsArtifactCollection,
    decode_legacy_queue,
    decode_tables,
    join_jobs_files,
)
from bits_carve import CarveResult, carve_bits

TableExtractor = Callable[[str, list[str]], dict[str, list[dict[str, Any]]]]
RawReader = Callable[[str], bytes]

DOWNLOADER_DIR = ("ProgramData", "Microsoft", "Network", "Downloader")
ESE_NAME = "qmgr.db"
# Legacy BITS has two (2) files
LEGACY_NAMES = ("qmgr0.dat", "qmgr1.dat")


def read_raw(path: str) -> bytes:
    """Whole file as bytes, including regions no longer referenced by the live structure."""
    try:
        return Path(path).read_bytes()
    except OSError as ex:
        raise ReadFailure(str(path), ex.strerror or str(ex)) from ex


def extract_ese_tables(path: str, table_names: list[str]) -> dict[str, list[dict[str, Any]]]:
    """
    Dump the requested tables of an ESE database as {table: [row]} where each row
    maps column name to cell value. Tables that do not exist are left out.
    """
    try:
        fh = open(path, "rb")
    except OSError as ex:
        raise ReadFailure(str(path), ex.strerror or str(ex)) from ex

    with fh:
        try:
            db = EseDB(fh)
            available = {table.name: table for table in db.tables()}
            tables: dict[str, list[dict[str, Any]]] = {}
            for name in table_names:
                table = available.get(name)
                if table is None:
                    continue
                columns = [column.name for column in table.columns]
                tables[name] = [{col: record.get(col) for col in columns} for record in table.records()]
        except (EseError, EOFError, IndexError, ValueError) as ex:
            raise ReadFailure(str(path), f"failed to parse ESE database ({ex})") from ex
    return tables


def drive_path(system_drive: str, name: str, root: Path | None = None) -> str:
    """
    Location of a Downloader file. With a triage `root` the drive's layout is
    mirrored below that directory.
    """
    if root is not None:
        return str(Path(root).joinpath(*DOWNLOADER_DIR, name))
    return f"{system_drive}:\\" + "\\".join(DOWNLOADER_DIR) + f"\\{name}"


def _append_carved(collection: WindowsArtifactCollection, carved: CarveResult, source: str) -> None:
    if carved.error is not None:
        collection.errors.append(SourceError(source, carved.error))
    collection.entries.extend(carved.bits)
    collection.carved_jobs.extend(carved.jobs)
    collection.carved_files.extend(carved.files)


def decode_structured(
    path: str,
    carve: bool = False,
    *,
    lookup_username: UsernameLookup | None = None,
    extract_tables: TableExtractor = extract_ese_tables,
    read: RawReader = read_raw,
) -> WindowsArtifactCollection:
    """
    Win10+ BITS: dump the Jobs and Files tables and merge them on file id.

    Raises ReadFailure when the database cannot be parsed and MissingExpectedTable
    when either table is absent. A failed carving read is only recorded.
    """
    tables = extract_tables(str(path), [JOBS_TABLE, FILES_TABLE])
    try:
        jobs, files = decode_tables(tables)
    except MissingExpectedTable as err:
        raise MissingExpectedTable(err.table, str(path)) from None

    collection = WindowsArtifactCollection(entries=join_jobs_files(jobs, files, lookup_username))

    # Jobs and files carved from a whole database are not combined
    if carve:
        try:
            data = read(str(path))
        except ReadFailure as err:
            collection.errors.append(SourceError(str(path), err))
        else:
            _append_carved(collection, carve_bits(data, False), str(path))
    return collection


def legacy_bits(
    path: str,
    carve: bool = False,
    *,
    lookup_username: UsernameLookup | None = None,
    read: RawReader = read_raw,
) -> WindowsArtifactCollection:
    """Parse one pre-Win10 qmgr file. Raises ReadFailure if it cannot be read."""
    data = read(str(path))
    queue = decode_legacy_queue(data)

    collection = WindowsArtifactCollection(
        entries=join_jobs_files(queue.jobs, queue.files, lookup_username)
    )
    if queue.error is not None:
        collection.errors.append(SourceError(str(path), queue.error))

    if carve:
        _append_carved(collection, carve_bits(data, True, lookup_username), str(path))
    return collection


def decode_legacy(
    system_drive: str,
    carve: bool = False,
    *,
    root: Path | None = None,
    lookup_username: UsernameLookup | None = None,
    read: RawReader = read_raw,
) -> WindowsArtifactCollection:
    """Pre-Win10 BITS: both qmgr files, each decoded independently if present."""
    collection = WindowsArtifactCollection()
    for name in LEGACY_NAMES:
        path = drive_path(system_drive, name, root)
        if not Path(path).is_file():
            continue
        try:
            collection.extend(legacy_bits(path, carve, lookup_username=lookup_username, read=read))
        except ReadFailure as err:
            collection.errors.append(SourceError(path, err))
    return collection
