"""
Prefetch volume information entries.

All three supported layouts share the first 36 bytes of an entry; what follows is
an unknown region whose size depends on the prefetch format version.
https://github.com/libyal/libscca/blob/main/documentation/Windows%20Prefetch%20File%20(PF)%20format.asciidoc
"""

from dataclasses import dataclass, field
from enum import IntEnum

from artifact_errors import ArtifactError, UnknownSignature, UnsupportedFormatVersion
from binparse import ByteCursor, InsufficientData

UTF16_ADJUST = 2


class VolumeVersion(IntEnum):
    WIN_VISTA_7 = 23
    WIN_8 = 26
    WIN_10 = 30


# Unknown bytes after the fixed header of one volume entry
_TRAILER_SIZES: dict[VolumeVersion, int] = {
    VolumeVersion.WIN_VISTA_7: 68,
    VolumeVersion.WIN_8: 68,
    VolumeVersion.WIN_10: 60,
}


def volume_trailer_size(version: int) -> int:
    """Size of the trailing unknown region, or UnsupportedFormatVersion."""
    try:
        return _TRAILER_SIZES[VolumeVersion(version)]
    except ValueError:
        raise UnsupportedFormatVersion(version, "prefetch volume info") from None


@dataclass
class VolumeRecord:
    volume_path_offset: int
    volume_number_chars: int
    volume_path: str
    volume_creation: int
    volume_serial: int
    file_ref_offset: int
    file_ref_data_size: int
    directory_strings_offset: int
    number_directory_strings: int
    directories: list[str] = field(default_factory=list)


@dataclass
class VolumeDecodeResult:
    remaining: bytes
    volumes: list[VolumeRecord]
    # Set when decoding stopped early; volumes then holds what was decoded before
    error: ArtifactError | None = None

    @property
    def complete(self) -> bool:
        return self.error is None


def decode_volume_records(data: bytes, offset: int, count: int, version: int) -> VolumeDecodeResult:
    """
    Decode `count` volume entries starting at `offset`.

    Offsets inside an entry are relative to the start of the whole set, not to the
    entry. Running out of bytes or meeting an unsupported version stops the set and
    returns the entries collected so far; `remaining` then starts at the entry
    where decoding stopped.
    """
    volumes: list[VolumeRecord] = []
    try:
        cursor = ByteCursor(data).skip(offset)
    except InsufficientData as err:
        return VolumeDecodeResult(b"", volumes, err)

    base = cursor
    while len(volumes) < count:
        start = cursor
        try:
            volume, cursor = _decode_volume(base, cursor)
        except InsufficientData as err:
            return VolumeDecodeResult(cursor.rest(), volumes, err)
        volumes.append(volume)

        try:
            cursor = cursor.skip(volume_trailer_size(version))
        except (UnsupportedFormatVersion, InsufficientData) as err:
            return VolumeDecodeResult(start.rest(), volumes, err)

    return VolumeDecodeResult(cursor.rest(), volumes)


def _decode_volume(base: ByteCursor, cursor: ByteCursor) -> tuple[VolumeRecord, ByteCursor]:
    path_offset, cursor = cursor.read_u32()
    number_chars, cursor = cursor.read_u32()
    creation, cursor = cursor.read_filetime()
    serial, cursor = cursor.read_u32()
    file_ref_offset, cursor = cursor.read_u32()
    file_ref_size, cursor = cursor.read_u32()
    directory_offset, cursor = cursor.read_u32()
    number_directories, cursor = cursor.read_u32()

    path_start = base.seek(base.pos + path_offset)
    volume_path, _ = path_start.read_utf16_string(number_chars * UTF16_ADJUST)

    directories = get_directories(base, directory_offset, number_directories)

    volume = VolumeRecord(
        volume_path_offset=path_offset,
        volume_number_chars=number_chars,
        volume_path=volume_path,
        volume_creation=creation,
        volume_serial=serial,
        file_ref_offset=file_ref_offset,
        file_ref_data_size=file_ref_size,
        directory_strings_offset=directory_offset,
        number_directory_strings=number_directories,
        directories=directories,
    )
    return volume, cursor


def get_directories(base: ByteCursor, offset: int, entries: int) -> list[str]:
    """Accessed directories: u16 char count, the chars, then a UTF-16 NUL."""
    cursor = base.seek(base.pos + offset)
    directories: list[str] = []
    while len(directories) < entries:
        size, cursor = cursor.read_u16()
        path, cursor = cursor.read_utf16_string(size * UTF16_ADJUST)
        cursor = cursor.skip(UTF16_ADJUST)
        directories.append(path)
    return directories


# Prefetch file header
SCCA_SIGNATURE = b"SCCA"
MAM_SIGNATURE = b"MAM"
VOLUMES_OFFSET_FIELD = 0x6C
VOLUMES_COUNT_FIELD = 0x70
EXECUTABLE_NAME_FIELD = 0x10
EXECUTABLE_NAME_SIZE = 60


@dataclass
class PrefetchVolumes:
    executable: str
    version: int
    volumes: list[VolumeRecord] = field(default_factory=list)
    error: ArtifactError | None = None


def decode_prefetch_volumes(data: bytes) -> PrefetchVolumes:
    """
    Volume entries of an uncompressed prefetch file.

    Windows 10+ stores prefetch files MAM compressed; those must be decompressed
    before they get here.
    """
    if data[:3] == MAM_SIGNATURE:
        raise UnsupportedFormatVersion(data[3] if len(data) > 3 else 0, "compressed prefetch (MAM)")

    cursor = ByteCursor(data)
    version, cursor = cursor.read_u32()
    signature, _ = cursor.take(4)
    if signature != SCCA_SIGNATURE:
        raise UnknownSignature("prefetch", signature)

    executable, _ = cursor.seek(EXECUTABLE_NAME_FIELD).read_utf16_string(EXECUTABLE_NAME_SIZE)
    volumes_offset, _ = cursor.seek(VOLUMES_OFFSET_FIELD).read_u32()
    volumes_count, _ = cursor.seek(VOLUMES_COUNT_FIELD).read_u32()

    result = decode_volume_records(data, volumes_offset, volumes_count, version)
    return PrefetchVolumes(
        executable=executable,
        version=version,
        volumes=result.volumes,
        error=result.error,
    )
